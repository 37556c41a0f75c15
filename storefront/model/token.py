# --- storefront/model/token.py ---
from enum import Enum

from ..extensions import db
from ..utils.dates import utcnow, iso
from .types import GUID, new_id


class PurchaseStatus(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"
    EXPIRED = "expired"


class TokenPackage(db.Model):
    __tablename__ = "ai_token_packages"

    id = db.Column(GUID(), primary_key=True, default=new_id)
    name = db.Column(db.String(120), nullable=False)
    description = db.Column(db.Text, nullable=True)
    tokens_included = db.Column(db.Integer, nullable=False)
    price = db.Column(db.Numeric(10, 2), nullable=False)
    currency = db.Column(db.String(8), nullable=False, default="INR")
    is_active = db.Column(db.Boolean, default=True, index=True)
    display_order = db.Column(db.Integer, default=0)
    created_at = db.Column(db.DateTime, default=utcnow)

    def as_api(self):
        return {
            "id": str(self.id),
            "name": self.name,
            "description": self.description,
            "tokens_included": self.tokens_included,
            "price": float(self.price or 0),
            "currency": self.currency,
            "display_order": self.display_order,
        }


class TokenPurchase(db.Model):
    __tablename__ = "ai_token_purchases"
    __table_args__ = (
        db.CheckConstraint("tokens_remaining >= 0", name="ck_token_purchase_remaining_non_negative"),
    )

    id = db.Column(GUID(), primary_key=True, default=new_id)
    store_id = db.Column(GUID(), db.ForeignKey("stores.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    package_id = db.Column(GUID(), db.ForeignKey("ai_token_packages.id"), nullable=True)

    tokens_purchased = db.Column(db.Integer, nullable=False, default=0)
    tokens_used = db.Column(db.Integer, nullable=False, default=0)
    tokens_remaining = db.Column(db.Integer, nullable=False, default=0)
    amount_paid = db.Column(db.Numeric(10, 2), nullable=False, default=0)

    payment_order_id = db.Column(db.String(64), nullable=True, unique=True, index=True)
    payment_id = db.Column(db.String(64), nullable=True)

    status = db.Column(db.String(16), nullable=False, default=PurchaseStatus.PENDING.value, index=True)
    purchased_at = db.Column(db.DateTime, nullable=True)
    expires_at = db.Column(db.DateTime, nullable=True, index=True)
    created_at = db.Column(db.DateTime, default=utcnow, index=True)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)

    def as_api(self):
        return {
            "id": str(self.id),
            "store_id": str(self.store_id),
            "package_id": str(self.package_id) if self.package_id else None,
            "tokens_purchased": self.tokens_purchased,
            "tokens_used": self.tokens_used,
            "tokens_remaining": self.tokens_remaining,
            "amount_paid": float(self.amount_paid or 0),
            "status": self.status,
            "payment_order_id": self.payment_order_id,
            "expires_at": iso(self.expires_at),
            "created_at": iso(self.created_at),
        }
