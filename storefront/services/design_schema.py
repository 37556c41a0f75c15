# storefront/services/design_schema.py
"""
Shapes the design model may answer with.

A reply is exactly one of
    {"type": "text",   "message": "..."}
    {"type": "design", "message": "...", "design": <delta or full payload>}
Anything else is rejected.
"""
from __future__ import annotations

import re
from typing import Annotated, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator

from .css_sanitizer import sanitize

_FORBIDDEN = re.compile(r"[;{}<>\\]")
_NUM = r"-?(\d+(\.\d+)?|\.\d+)"
_HSL = re.compile(rf"^{_NUM}\s+{_NUM}%\s+{_NUM}%(\s*/\s*{_NUM}%?)?$")
_LENGTH = re.compile(rf"^{_NUM}(px|rem|em|%|vh|vw|ms|s)?$")
_PLAIN = re.compile(r"^[\w\s#%.,()/+*'\"-]{1,120}$")


def is_safe_css_value(value) -> bool:
    """True for values that can sit after `--name:` without ending the declaration."""
    if not isinstance(value, str):
        return False
    v = value.strip()
    if not v or _FORBIDDEN.search(v) or not sanitize(v).safe:
        return False
    return bool(_HSL.match(v) or _LENGTH.match(v) or _PLAIN.match(v))


def _check_css_value(value: str) -> str:
    if not is_safe_css_value(value):
        raise ValueError("Invalid CSS variable value")
    return value


class DesignLayout(BaseModel):
    model_config = ConfigDict(extra="ignore")

    product_grid_cols: Literal["2", "3", "4"] | None = None
    section_padding: Literal["compact", "normal", "spacious"] | None = None
    hero_style: Literal["image", "gradient"] | None = None

    @field_validator("product_grid_cols", mode="before")
    @classmethod
    def _cols_as_text(cls, v):
        return str(v) if isinstance(v, int) else v


class DesignPayload(BaseModel):
    """A complete design: what gets stored in history and applied to a store."""
    model_config = ConfigDict(extra="ignore")

    summary: str
    css_variables: dict[str, str] | None = None
    dark_css_variables: dict[str, str] | None = None
    layout: DesignLayout | None = None
    css_overrides: str | None = None
    changes_list: list[str] = Field(default_factory=list)

    @field_validator("css_variables", "dark_css_variables")
    @classmethod
    def _values_look_like_css(cls, v):
        if v is not None:
            for value in v.values():
                _check_css_value(value)
        return v


class DesignChange(BaseModel):
    model_config = ConfigDict(extra="ignore")

    action_type: Literal["css_variable", "css_variable_dark", "css_override", "layout"]
    key: str | None = None
    value: str | None = None
    selector: str | None = None
    css: str | None = None


class DeltaDesign(BaseModel):
    """Only the changes, to be merged onto the store's current design."""
    model_config = ConfigDict(extra="ignore")

    summary: str
    changes: list[DesignChange]
    changes_list: list[str] = Field(default_factory=list)


class TextResponse(BaseModel):
    type: Literal["text"]
    message: str


class DesignResponse(BaseModel):
    type: Literal["design"]
    message: str = ""
    # delta is tried first; a full payload has no `changes`
    design: Union[DeltaDesign, DesignPayload] = Field(union_mode="left_to_right")


ModelReply = Annotated[Union[TextResponse, DesignResponse], Field(discriminator="type")]

_reply_adapter = TypeAdapter(ModelReply)


def parse_model_reply(obj) -> TextResponse | DesignResponse:
    """Raises pydantic.ValidationError when obj matches neither shape."""
    return _reply_adapter.validate_python(obj)
