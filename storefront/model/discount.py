# --- storefront/model/discount.py ---
from enum import Enum

from ..extensions import db
from ..utils.dates import utcnow, iso
from .types import GUID, new_id


# Enums restrict stored strings to known values
class RuleType(str, Enum):
    TIERED_VALUE = "tiered_value"
    NEW_CUSTOMER = "new_customer"
    RETURNING_CUSTOMER = "returning_customer"
    CATEGORY = "category"
    QUANTITY = "quantity"


class OrderType(str, Enum):
    ALL = "all"
    ONLINE = "online"
    COD = "cod"


class RuleStatus(str, Enum):
    ACTIVE = "active"
    DISABLED = "disabled"


class DiscountType(str, Enum):
    PERCENTAGE = "percentage"
    FLAT = "flat"


class DiscountRule(db.Model):
    __tablename__ = "discount_rules"

    id = db.Column(GUID(), primary_key=True, default=new_id)
    store_id = db.Column(GUID(), db.ForeignKey("stores.id", ondelete="CASCADE"), nullable=False, index=True)
    rule_name = db.Column(db.String(180), nullable=False)
    rule_description = db.Column(db.Text, nullable=True)

    rule_type = db.Column(db.String(32), nullable=False)    # RuleType
    order_type = db.Column(db.String(16), nullable=False, default=OrderType.ALL.value)
    status = db.Column(db.String(16), nullable=False, default=RuleStatus.ACTIVE.value, index=True)

    start_date = db.Column(db.DateTime, nullable=False)
    expiry_date = db.Column(db.DateTime, nullable=False)

    created_at = db.Column(db.DateTime, default=utcnow, index=True)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)

    tiers = db.relationship(
        "DiscountTier",
        back_populates="rule",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="DiscountTier.tier_order.asc()",
    )
    conditions = db.relationship(
        "DiscountRuleCondition",
        back_populates="rule",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="DiscountRuleCondition.created_at.asc()",
    )

    def as_api(self):
        return {
            "id": str(self.id),
            "store_id": str(self.store_id),
            "rule_name": self.rule_name,
            "rule_description": self.rule_description,
            "rule_type": self.rule_type,
            "order_type": self.order_type,
            "status": self.status,
            "start_date": iso(self.start_date),
            "expiry_date": iso(self.expiry_date),
            "tiers": [t.as_api() for t in self.tiers],
            "conditions": [c.as_api() for c in self.conditions],
            "created_at": iso(self.created_at),
        }


class DiscountTier(db.Model):
    __tablename__ = "discount_tiers"

    id = db.Column(GUID(), primary_key=True, default=new_id)
    discount_id = db.Column(GUID(), db.ForeignKey("discount_rules.id", ondelete="CASCADE"), nullable=False, index=True)
    tier_order = db.Column(db.Integer, nullable=False, default=0)
    min_order_value = db.Column(db.Numeric(12, 2), nullable=True)
    discount_type = db.Column(db.String(16), nullable=False)   # DiscountType
    discount_value = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    created_at = db.Column(db.DateTime, default=utcnow)

    rule = db.relationship("DiscountRule", back_populates="tiers")

    def as_api(self):
        return {
            "id": str(self.id),
            "tier_order": self.tier_order,
            "min_order_value": float(self.min_order_value) if self.min_order_value is not None else None,
            "discount_type": self.discount_type,
            "discount_value": float(self.discount_value or 0),
        }


class DiscountRuleCondition(db.Model):
    __tablename__ = "discount_rule_conditions"

    id = db.Column(GUID(), primary_key=True, default=new_id)
    discount_id = db.Column(GUID(), db.ForeignKey("discount_rules.id", ondelete="CASCADE"), nullable=False, index=True)
    # category id for category rules, minimum quantity for quantity rules, unused otherwise
    rule_value = db.Column(db.String(255), nullable=True)
    discount_type = db.Column(db.String(16), nullable=False)
    discount_value = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    created_at = db.Column(db.DateTime, default=utcnow)

    rule = db.relationship("DiscountRule", back_populates="conditions")

    def as_api(self):
        return {
            "id": str(self.id),
            "rule_value": self.rule_value,
            "discount_type": self.discount_type,
            "discount_value": float(self.discount_value or 0),
        }
