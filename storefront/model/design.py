# --- storefront/model/design.py ---
from ..extensions import db
from ..utils.dates import utcnow, iso
from .types import GUID, new_id


class StoreDesignState(db.Model):
    """The live design of a store. No row means platform defaults."""
    __tablename__ = "store_design_state"

    store_id = db.Column(GUID(), db.ForeignKey("stores.id", ondelete="CASCADE"), primary_key=True)
    current_design = db.Column(db.JSON, nullable=True)
    version = db.Column(db.Integer, nullable=False, default=0)
    version_history = db.Column(db.JSON, nullable=True)   # [{version, design, applied_at}], newest first
    last_applied_at = db.Column(db.DateTime, nullable=True)
    created_at = db.Column(db.DateTime, default=utcnow)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)

    def as_api(self):
        return {
            "store_id": str(self.store_id),
            "current_design": self.current_design,
            "version": self.version,
            "versions": [
                {"version": v.get("version"), "applied_at": v.get("applied_at")}
                for v in (self.version_history or [])
            ],
            "last_applied_at": iso(self.last_applied_at),
        }


class DesignHistoryEntry(db.Model):
    __tablename__ = "ai_designer_history"

    id = db.Column(GUID(), primary_key=True, default=new_id)
    store_id = db.Column(GUID(), db.ForeignKey("stores.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    prompt = db.Column(db.Text, nullable=False)
    ai_response = db.Column(db.JSON, nullable=False)       # design payload without css_overrides
    css_overrides = db.Column(db.Text, nullable=True)      # stored apart from the JSON payload
    response_size_bytes = db.Column(db.Integer, nullable=True)
    tokens_used = db.Column(db.Integer, nullable=False, default=1)
    applied = db.Column(db.Boolean, nullable=False, default=False, index=True)
    created_at = db.Column(db.DateTime, default=utcnow, index=True)

    def design_payload(self) -> dict:
        design = dict(self.ai_response or {})
        if self.css_overrides:
            design["css_overrides"] = self.css_overrides
        return design

    def as_api(self):
        return {
            "id": str(self.id),
            "prompt": self.prompt,
            "design": self.design_payload(),
            "tokens_used": self.tokens_used,
            "applied": self.applied,
            "created_at": iso(self.created_at),
        }
