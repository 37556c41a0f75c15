# storefront/services/design_service.py
"""
Metered AI design pipeline.

    reserve token -> build prompt -> call model -> parse/validate reply
        text   : returned as is, nothing charged, nothing stored
        design : merged onto the current design, CSS sanitized and minified,
                 history row written and token debited in one commit

Generated designs are never applied implicitly; `apply_design` copies a
history entry (or an explicit payload) into the store's design state.
"""
from __future__ import annotations

import json
import re
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from pydantic import ValidationError as SchemaError

from ..config import logger
from ..errors import (
    DesignTooLarge,
    MalformedModelResponse,
    ModelRefusal,
    NotFound,
    ValidationError,
)
from ..extensions import db
from ..model import DesignHistoryEntry, Store, StoreDesignState
from ..model.types import as_uuid
from ..utils.dates import iso, utcnow
from . import token_ledger
from .css_sanitizer import minify_css, parse_css_blocks, rebuild_css, sanitize
from .design_schema import (
    DeltaDesign,
    DesignChange,
    DesignPayload,
    DesignResponse,
    TextResponse,
    is_safe_css_value,
    parse_model_reply,
)
from .model_client import DesignerSettings

MAX_CSS_SIZE = 15000
MAX_RESPONSE_SIZE = 10000
MAX_PROMPT_LENGTH = 2000
CONVERSATION_WINDOW = 20
HISTORY_CONTEXT_SIZE = 20
MAX_VERSION_HISTORY = 10
SIMILARITY_THRESHOLD = 0.3


# ---- reply parsing ---------------------------------------------------------

REFUSAL_PHRASES = (
    "i'm sorry", "i cannot", "i can't", "i am not able", "i'm not able",
    "i'm unable", "i am unable", "not appropriate", "against my guidelines",
    "i must decline", "i will not", "harmful content", "as an ai",
)


def is_refusal(content) -> bool:
    if not content:
        return False
    lower = content.strip().lower()
    return not lower.startswith("{") and any(p in lower for p in REFUSAL_PHRASES)


_FENCE = re.compile(r"```(?:json)?\s*([\s\S]*?)```")


def extract_json(content) -> dict:
    """Raw JSON, a fenced block, or the first '{' .. last '}' span."""
    if not content or not isinstance(content, str):
        raise MalformedModelResponse()

    candidates = [content]
    fence = _FENCE.search(content)
    if fence:
        candidates.append(fence.group(1).strip())
    start, end = content.find("{"), content.rfind("}")
    if start != -1 and end > start:
        candidates.append(content[start:end + 1])

    for candidate in candidates:
        try:
            obj = json.loads(candidate)
        except ValueError:
            continue
        if isinstance(obj, dict):
            return obj
    raise MalformedModelResponse()


# ---- prompt classification -------------------------------------------------

DESIGN_KEYWORDS = (
    "color", "colour", "blue", "red", "green", "yellow", "purple", "pink", "orange",
    "design", "style", "layout", "change", "make", "update", "modify", "add",
    "button", "card", "section", "header", "footer", "banner", "product",
    "font", "text", "size", "padding", "margin", "border", "radius", "round",
    "shadow", "gradient", "background", "foreground", "theme",
    "dark", "light", "modern", "elegant", "minimalist", "bold",
    "spacing", "grid", "column", "row", "align", "center", "fix", "visible",
)

DESIGN_SYNONYMS = {
    "colour": "color", "colours": "color", "colors": "color",
    "btn": "button", "buttons": "button",
    "bg": "background", "backgrounds": "background",
    "txt": "text", "texts": "text",
    "hdr": "header", "nav": "header", "navbar": "header",
    "ftr": "footer", "foot": "footer",
    "img": "image", "images": "image", "photo": "image",
    "card": "product-card", "cards": "product-card",
    "invisible": "visible", "hidden": "visible",
    "font": "text", "typography": "text",
    "padding": "spacing", "margin": "spacing", "space": "spacing",
    "round": "radius", "rounded": "radius", "circular": "radius",
    "dark": "theme", "light": "theme", "mode": "theme",
}

STOP_WORDS = {"the", "a", "an", "is", "are", "not", "to", "in", "on", "it", "make", "change", "please", "can", "you"}


def is_design_request(prompt: str) -> bool:
    lower = (prompt or "").lower()
    return any(kw in lower for kw in DESIGN_KEYWORDS)


def extract_keywords(prompt: str) -> list[str]:
    words = re.sub(r"[^a-z0-9\s]", " ", (prompt or "").lower()).split()
    return [DESIGN_SYNONYMS.get(w, w) for w in words if len(w) > 2 and w not in STOP_WORDS]


def prompt_similarity(a: str, b: str) -> float:
    """Jaccard similarity of the prompts' keyword sets."""
    ka, kb = set(extract_keywords(a)), set(extract_keywords(b))
    if not ka or not kb:
        return 0.0
    return len(ka & kb) / len(ka | kb)


# ---- system prompt ---------------------------------------------------------

SECTION_SELECTORS = {
    '[data-ai="header"]': "Header: logo, navigation, cart icon, search",
    '[data-ai="section-hero"]': "Hero banner with call to action",
    '[data-ai="section-categories"]': "Shop by Category section",
    '[data-ai="section-featured"]': "Featured Products section",
    '[data-ai="section-reviews"]': "Customer reviews section",
    '[data-ai="section-new-arrivals"]': "New Arrivals section",
    '[data-ai="section-cta"]': "Call-to-action banner",
    '[data-ai="section-reels"]': "Instagram reels section",
    '[data-ai="section-footer"]': "Footer: links, contact info, social icons",
    '[data-ai="category-card"]': "each category card wrapper",
    '[data-ai="product-card"]': "each product card wrapper",
    '[data-ai="product-card"] .card': "product card inner element",
    '[data-ai="product-card"] .text-lg': "product price",
    '[data-ai="product-card"] img': "product image",
    '[data-ai="product-card"] button': "View Details button",
}

DEFAULT_CSS_VARIABLES = {
    "primary": ("217 91% 60%", "buttons, links, accents, CTA background"),
    "background": ("0 0% 100%", "page and header background"),
    "foreground": ("222 47% 11%", "main text, headings"),
    "card": ("0 0% 100%", "product cards, review cards, footer"),
    "muted": ("210 40% 96%", "subtle backgrounds, badges"),
    "muted-foreground": ("215 16% 47%", "secondary text"),
    "border": ("214 32% 91%", "card, header and footer borders"),
    "radius": ("0.5rem", "card and button border radius"),
}

LAYOUT_OPTIONS = {
    "product_grid_cols": '"2" | "3" | "4"',
    "section_padding": '"compact" | "normal" | "spacious"',
    "hero_style": '"image" | "gradient"',
}

RESPONSE_FORMAT = (
    "RESPOND WITH ONE JSON OBJECT ONLY. Start with { and end with }. No markdown.\n"
    'Questions and advice: {"type": "text", "message": "..."}\n'
    'Design changes: {"type": "design", "message": "...", "design": {"summary": "...", '
    '"changes": [{"action_type": "css_variable", "key": "--primary", "value": "142 71% 45%"}, '
    '{"action_type": "css_variable_dark", "key": "--primary", "value": "142 71% 50%"}, '
    '{"action_type": "layout", "key": "product_grid_cols", "value": "3"}, '
    '{"action_type": "css_override", "selector": "[data-ai=\'product-card\'] .card", '
    '"css": "box-shadow: 0 8px 30px hsl(var(--primary)/0.15) !important"}], '
    '"changes_list": ["Change 1"]}}\n'
    "Only include what the user asked to change. Omitted fields stay unchanged."
)


def _catalog() -> str:
    lines = ["ADDRESSABLE SELECTORS (use in css_override changes):"]
    lines += [f"- {sel} -> {desc}" for sel, desc in SECTION_SELECTORS.items()]
    lines.append("")
    lines.append("CSS VARIABLES (HSL without the hsl() wrapper):")
    lines += [f"--{k}: {v}    ({desc})" for k, (v, desc) in DEFAULT_CSS_VARIABLES.items()]
    lines.append("")
    lines.append("LAYOUT OPTIONS:")
    lines += [f"{k}: {v}" for k, v in LAYOUT_OPTIONS.items()]
    return "\n".join(lines)


def _failure_context(prompt: str, history: list[DesignHistoryEntry]) -> str:
    similar = [
        h for h in history
        if not h.applied and prompt_similarity(prompt, h.prompt) > SIMILARITY_THRESHOLD
    ]
    if len(similar) < 2:
        return ""
    lines = [
        f"This request has been attempted {len(similar)} times and the results were not applied.",
        "Previous solutions did not work. Use a different CSS approach this time.",
    ]
    lines += [f'{i}. User asked: "{h.prompt}" (not applied)' for i, h in enumerate(similar[:2], 1)]
    return "\n".join(lines)


def build_system_prompt(store: Store, current_design: dict | None,
                        history: list[DesignHistoryEntry], prompt: str) -> str:
    parts = [
        f'You are an expert UI/UX designer for the e-commerce store "{store.name}"'
        + (f" - {store.description}" if store.description else "") + ".",
    ]
    if current_design:
        parts.append(
            "CURRENT PUBLISHED DESIGN:\n" + json.dumps(current_design, indent=2)
            + "\nPreserve these settings unless the user explicitly asks to change them."
        )
    else:
        parts.append("CURRENT DESIGN: the store uses platform defaults (no customizations yet).")

    failures = _failure_context(prompt, history)
    if failures:
        parts.append("FAILED ATTEMPTS:\n" + failures)

    if history:
        recent = [
            f'{i}. "{h.prompt}" applied: {"yes" if h.applied else "no"}'
            for i, h in enumerate(history[:10], 1)
        ]
        parts.append("RECENT DESIGN REQUESTS:\n" + "\n".join(recent))

    parts.append(_catalog())
    parts.append(RESPONSE_FORMAT)
    return "\n\n".join(parts)


def build_chat_prompt(store: Store) -> str:
    return (
        f"You are a friendly AI design assistant for the {store.name} e-commerce store.\n"
        "You help store owners customize colors, layout and section styling.\n"
        'For casual chat answer {"type": "text", "message": "..."}. '
        "If the user wants design help, ask what they want to change.\n\n"
        + RESPONSE_FORMAT
    )


# ---- design payloads -------------------------------------------------------

def normalize_css_variable_key(key: str) -> str:
    return re.sub(r"^[\s\-$]+", "", str(key or "")).strip()


def normalize_css_variable_keys(variables: dict | None) -> dict:
    out = {}
    for key, value in (variables or {}).items():
        name = normalize_css_variable_key(key)
        if name:
            out[name] = value
    return out


def _declarations(css: str) -> str:
    body = (css or "").strip()
    if "{" in body and body.endswith("}"):
        body = body[body.index("{") + 1:-1].strip()
    return body


def payload_changes(design: DesignPayload) -> list[DesignChange]:
    """Express a full payload as changes so it merges like a delta."""
    changes = [
        DesignChange(action_type="css_variable", key=k, value=v)
        for k, v in (design.css_variables or {}).items()
    ]
    changes += [
        DesignChange(action_type="css_variable_dark", key=k, value=v)
        for k, v in (design.dark_css_variables or {}).items()
    ]
    if design.layout:
        changes += [
            DesignChange(action_type="layout", key=k, value=v)
            for k, v in design.layout.model_dump(exclude_none=True).items()
        ]
    for key, body in parse_css_blocks(design.css_overrides or "").items():
        selector = key[0] if isinstance(key, tuple) else key
        changes.append(DesignChange(action_type="css_override", selector=selector, css=body))
    return changes


def apply_delta(current_design: dict | None, summary: str, changes: list[DesignChange],
                changes_list: list[str] | None = None) -> dict:
    current = current_design or {}
    css_variables = normalize_css_variable_keys(current.get("css_variables"))
    dark_css_variables = normalize_css_variable_keys(current.get("dark_css_variables"))
    layout = dict(current.get("layout") or {})
    blocks = parse_css_blocks(current.get("css_overrides") or "")

    for change in changes:
        if change.action_type == "css_variable" and change.key and change.value:
            css_variables[normalize_css_variable_key(change.key)] = change.value
        elif change.action_type == "css_variable_dark" and change.key and change.value:
            dark_css_variables[normalize_css_variable_key(change.key)] = change.value
        elif change.action_type == "layout" and change.key and change.value:
            layout[change.key] = change.value
        elif change.action_type == "css_override" and change.selector and change.css:
            # same selector replaces the earlier rule
            blocks[change.selector.strip()] = _declarations(change.css)

    merged = {"summary": summary, "changes_list": list(changes_list or [])}
    if css_variables:
        merged["css_variables"] = css_variables
    if dark_css_variables:
        merged["dark_css_variables"] = dark_css_variables
    if layout:
        merged["layout"] = layout
    css = rebuild_css(blocks)
    if css:
        merged["css_overrides"] = css
    return merged


def check_design_size(design: dict) -> None:
    css = design.get("css_overrides") or ""
    if len(css) > MAX_CSS_SIZE:
        raise DesignTooLarge(f"CSS too large ({len(css)} > {MAX_CSS_SIZE} chars). Please simplify.")
    size = len(json.dumps(design))
    if size > MAX_RESPONSE_SIZE:
        raise DesignTooLarge(f"Response too large ({size} > {MAX_RESPONSE_SIZE} chars). Please simplify.")


def clean_design(design: dict) -> tuple[dict, list[str]]:
    """Validate, normalise variable keys and sanitize overrides. Returns (design, blocked)."""
    try:
        payload = DesignPayload.model_validate(design)
    except SchemaError as e:
        raise ValidationError(f"Invalid design: {e.errors()[0].get('msg')}")

    cleaned = payload.model_dump(exclude_none=True)
    for k in ("css_variables", "dark_css_variables"):
        if k in cleaned:
            cleaned[k] = normalize_css_variable_keys(cleaned[k])

    blocked: list[str] = []
    if cleaned.get("css_overrides"):
        # minify first: stripping comments can join fragments into a pattern
        result = sanitize(minify_css(cleaned["css_overrides"]))
        blocked = result.blocked
        if blocked:
            logger.warning(f"blocked CSS patterns: {', '.join(blocked)}")
        cleaned["css_overrides"] = result.sanitized
    return cleaned, blocked


def _variable_declarations(variables: dict) -> str:
    return " ".join(f"--{k}: {v};" for k, v in variables.items() if is_safe_css_value(v))


def build_design_css(design: dict | None) -> str:
    if not design:
        return ""
    out = []
    light = normalize_css_variable_keys(design.get("css_variables"))
    dark = normalize_css_variable_keys(design.get("dark_css_variables"))
    if light:
        out.append(":root { " + _variable_declarations(light) + " }")
    if dark:
        out.append(".dark { " + _variable_declarations(dark) + " }")
    if design.get("css_overrides"):
        out.append(design["css_overrides"])
    return "\n".join(out)


# ---- results ---------------------------------------------------------------

@dataclass
class TextResult:
    message: str
    model: str | None = None

    def as_api(self):
        return {"type": "text", "message": self.message, "design": None}


@dataclass
class DesignResult:
    message: str
    design: dict
    history_id: object
    tokens_remaining: int
    model: str | None = None
    blocked: list[str] = field(default_factory=list)

    @property
    def css_sanitized(self) -> bool:
        return bool(self.blocked)

    def as_api(self):
        return {
            "type": "design",
            "message": self.message,
            "design": self.design,
            "history_id": str(self.history_id),
            "tokens_remaining": self.tokens_remaining,
            "css_sanitized": self.css_sanitized,
            "blocked": self.blocked,
        }


def log_metrics(store_id, action: str, *, model=None, tokens=0, started=None,
                sanitized=False, success=True, error=None):
    latency = int((time.monotonic() - started) * 1000) if started else 0
    logger.info(
        f"designer metrics store={store_id} action={action} model={model} tokens={tokens} "
        f"latency_ms={latency} sanitized={sanitized} success={success}"
        + (f" error={error}" if error else "")
    )


# ---- pipeline --------------------------------------------------------------

def _load_store(store_id) -> Store:
    store = db.session.get(Store, as_uuid(store_id)) if as_uuid(store_id) else None
    if not store:
        raise NotFound("store not found")
    return store


def _current_design(store_id) -> dict | None:
    state = db.session.get(StoreDesignState, store_id)
    return state.current_design if state else None


def validate_messages(messages) -> tuple[list[dict], str]:
    if not isinstance(messages, list) or not messages:
        raise ValidationError("messages must be a non-empty list")
    cleaned = []
    for i, m in enumerate(messages):
        if not isinstance(m, dict) or m.get("role") not in ("user", "assistant") \
                or not isinstance(m.get("content"), str):
            raise ValidationError(f"messages[{i}] must be {{role: user|assistant, content: string}}")
        cleaned.append({"role": m["role"], "content": m["content"]})

    prompt = next((m["content"] for m in reversed(cleaned) if m["role"] == "user"), "").strip()
    if not prompt:
        raise ValidationError("messages must contain a user message")
    if len(prompt) > MAX_PROMPT_LENGTH:
        raise ValidationError(
            f"Prompt too long. Please keep your request under {MAX_PROMPT_LENGTH} characters.")
    return cleaned[-CONVERSATION_WINDOW:], prompt


class DesignPipeline:
    def __init__(self, settings: DesignerSettings, client):
        self.settings = settings
        self.client = client

    def generate(self, store_id, user_id, messages, now: datetime | None = None):
        started = time.monotonic()
        window, prompt = validate_messages(messages)
        store = _load_store(store_id)

        # no model call without a token to pay for it
        reservation = token_ledger.reserve(store.id, now=now)

        current = _current_design(store.id)
        if is_design_request(prompt):
            history = (
                DesignHistoryEntry.query
                .filter(DesignHistoryEntry.store_id == store.id)
                .order_by(DesignHistoryEntry.created_at.desc())
                .limit(HISTORY_CONTEXT_SIZE)
                .all()
            )
            system_prompt = build_system_prompt(store, current, history, prompt)
        else:
            system_prompt = build_chat_prompt(store)

        try:
            completion = self.client.complete(system_prompt, window)
            if is_refusal(completion.content):
                raise ModelRefusal()
            try:
                reply = parse_model_reply(extract_json(completion.content))
            except SchemaError:
                raise MalformedModelResponse("AI returned an incomplete design. No token charged. Please try again.")
        except Exception as e:
            log_metrics(store.id, "chat", started=started, success=False, error=type(e).__name__)
            raise

        if isinstance(reply, TextResponse):
            log_metrics(store.id, "chat", model=completion.model, started=started)
            return TextResult(message=reply.message, model=completion.model)

        return self._record_design(store, user_id, prompt, reply, current, reservation,
                                   completion.model, started, now)

    def _record_design(self, store, user_id, prompt, reply: DesignResponse, current,
                       reservation, model, started, now):
        design = reply.design
        if isinstance(design, DeltaDesign):
            merged = apply_delta(current, design.summary, design.changes, design.changes_list)
        else:
            merged = apply_delta(current, design.summary, payload_changes(design), design.changes_list)

        try:
            final, blocked = clean_design(merged)
        except ValidationError:
            raise MalformedModelResponse("AI returned an incomplete design. No token charged. Please try again.")
        check_design_size(final)

        css_overrides = final.pop("css_overrides", None)
        entry = DesignHistoryEntry(
            store_id=store.id,
            user_id=user_id,
            prompt=prompt,
            ai_response=final,
            css_overrides=css_overrides,
            response_size_bytes=len(json.dumps(final)) + len(css_overrides or ""),
            tokens_used=1,
            applied=False,
        )
        try:
            db.session.add(entry)
            token_ledger.commit(reservation, now=now)
            db.session.commit()
        except Exception:
            db.session.rollback()
            log_metrics(store.id, "chat", model=model, started=started, success=False, error="persist_failed")
            raise

        balance = token_ledger.get_balance(store.id, now=now)
        log_metrics(store.id, "chat", model=model, tokens=1, started=started, sanitized=bool(blocked))
        return DesignResult(
            message=reply.message,
            design=entry.design_payload(),
            history_id=entry.id,
            tokens_remaining=balance.tokens_remaining,
            model=model,
            blocked=blocked,
        )


# ---- design state ----------------------------------------------------------

def _set_live_design(store_id, design: dict, now: datetime) -> StoreDesignState:
    state = db.session.get(StoreDesignState, store_id)
    if state is None:
        state = StoreDesignState(store_id=store_id, version=0, version_history=[])
        db.session.add(state)

    if state.current_design:
        previous = {"version": state.version or 0, "design": state.current_design, "applied_at": iso(now)}
        state.version_history = [previous, *(state.version_history or [])][:MAX_VERSION_HISTORY]
    state.current_design = design
    state.version = (state.version or 0) + 1
    state.last_applied_at = now
    return state


def apply_design(store_id, history_id=None, design: dict | None = None, now: datetime | None = None):
    """Publish a generated (or explicitly given) design. Returns (state, blocked)."""
    started = time.monotonic()
    now = now or utcnow()
    store = _load_store(store_id)

    entry = None
    if history_id:
        hid = as_uuid(history_id)
        entry = db.session.get(DesignHistoryEntry, hid) if hid else None
        if not entry or entry.store_id != store.id:
            raise NotFound("design history entry not found")
        design = entry.design_payload()
    if not design or not isinstance(design, dict):
        raise ValidationError("history_id or design is required")

    cleaned, blocked = clean_design(design)
    state = _set_live_design(store.id, cleaned, now)
    if entry is not None:
        entry.applied = True
    db.session.commit()

    log_metrics(store.id, "apply_design", started=started, sanitized=bool(blocked))
    return state, blocked


def reset_design(store_id) -> bool:
    store = _load_store(store_id)
    state = db.session.get(StoreDesignState, store.id)
    if not state:
        return False
    db.session.delete(state)
    db.session.commit()
    logger.info(f"design reset to platform defaults for store {store.id}")
    return True


def rollback_design(store_id, version, now: datetime | None = None) -> StoreDesignState:
    """Re-publish an earlier version; the design being replaced goes onto the history."""
    now = now or utcnow()
    store = _load_store(store_id)
    try:
        version = int(version)
    except (TypeError, ValueError):
        raise ValidationError("version must be an integer")

    state = db.session.get(StoreDesignState, store.id)
    if not state or not state.version_history:
        raise NotFound("No version history found")
    target = next((v for v in state.version_history if v.get("version") == version), None)
    if not target:
        raise NotFound("Version not found")

    _set_live_design(store.id, target["design"], now)
    db.session.commit()
    logger.info(f"design of store {store.id} rolled back to version {version}")
    return state


def get_design_state(store_id) -> dict:
    store = _load_store(store_id)
    state = db.session.get(StoreDesignState, store.id)
    if not state:
        return {"store_id": str(store.id), "current_design": None, "version": 0,
                "versions": [], "last_applied_at": None, "css": ""}
    return {**state.as_api(), "css": build_design_css(state.current_design)}


def list_history(store_id, limit: int = 20) -> list[DesignHistoryEntry]:
    store = _load_store(store_id)
    limit = max(1, min(int(limit or 20), 100))
    return (
        DesignHistoryEntry.query
        .filter(DesignHistoryEntry.store_id == store.id)
        .order_by(DesignHistoryEntry.created_at.desc())
        .limit(limit)
        .all()
    )


def purge_history(older_than_days: int = 30, now: datetime | None = None) -> int:
    cutoff = (now or utcnow()) - timedelta(days=older_than_days)
    deleted = (
        DesignHistoryEntry.query
        .filter(DesignHistoryEntry.created_at < cutoff)
        .delete(synchronize_session=False)
    )
    db.session.commit()
    logger.info(f"purged {deleted} design history rows older than {older_than_days} days")
    return deleted
