# ------ storefront/model/__init__.py ------

from .user import User
from .store import Store
from .order import Order
from .types import GUID
from .discount import (
    DiscountRule,
    DiscountTier,
    DiscountRuleCondition,
    RuleType,
    OrderType,
    RuleStatus,
    DiscountType,
)
from .token import TokenPackage, TokenPurchase, PurchaseStatus
from .design import StoreDesignState, DesignHistoryEntry

__all__ = [
    "User",
    "Store",
    "Order",
    "GUID",
    "DiscountRule",
    "DiscountTier",
    "DiscountRuleCondition",
    "RuleType",
    "OrderType",
    "RuleStatus",
    "DiscountType",
    "TokenPackage",
    "TokenPurchase",
    "PurchaseStatus",
    "StoreDesignState",
    "DesignHistoryEntry",
]
