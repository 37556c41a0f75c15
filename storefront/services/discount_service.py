# storefront/services/discount_service.py
"""
Automatic discount evaluation.

Given a cart snapshot, every live rule of the store is evaluated and the
single rule giving the largest discount amount is returned. Evaluation order:
  1) active rules of the store, oldest first (created_at, id)
  2) drop rules outside [start_date, expiry_date)
  3) drop rules whose order_type conflicts with the payment method
  4) one evaluator per RuleType
  5) keep the strictly largest positive amount (first seen wins ties)
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Callable

from sqlalchemy import func, or_

from ..config import logger
from ..errors import NotFound, ValidationError
from ..extensions import db
from ..model import (
    DiscountRule,
    DiscountRuleCondition,
    DiscountTier,
    DiscountType,
    Order,
    OrderType,
    RuleStatus,
    RuleType,
)
from ..model.types import as_uuid
from ..utils.dates import parse_iso8601, utcnow
from ..utils.money import D, ZERO, Money, to_float


# ---- cart snapshot ---------------------------------------------------------

@dataclass
class CartLine:
    id: str
    name: str
    price: Money
    quantity: int
    category_id: str | None = None

    @property
    def line_total(self) -> Money:
        return self.price * self.quantity


@dataclass
class CartSnapshot:
    items: list[CartLine]
    cart_total: Money
    payment_method: str
    customer_phone: str | None = None
    customer_email: str | None = None

    @property
    def categories(self) -> list[str]:
        seen = []
        for it in self.items:
            if it.category_id and it.category_id not in seen:
                seen.append(it.category_id)
        return seen

    @property
    def item_count(self) -> int:
        return sum(it.quantity for it in self.items)

    def category_total(self, category_id: str) -> Money:
        return sum((it.line_total for it in self.items if it.category_id == category_id), ZERO)

    @classmethod
    def from_payload(cls, data: dict) -> "CartSnapshot":
        """Build from a checkout body; accepts snake_case or the storefront's camelCase keys."""
        def pick(*keys):
            for k in keys:
                if k in data and data[k] is not None:
                    return data[k]
            return None

        raw_items = pick("cart_items", "cartItems", "items")
        raw_total = pick("cart_total", "cartTotal")
        method = pick("payment_method", "selectedPaymentMethod", "paymentMethod")

        missing = [name for name, v in (
            ("cart_items", raw_items), ("cart_total", raw_total), ("payment_method", method),
        ) if v is None or v == ""]
        if missing:
            raise ValidationError(f"Missing required fields: {', '.join(missing)}")
        if not isinstance(raw_items, list):
            raise ValidationError("cart_items must be a list")

        try:
            cart_total = D(raw_total)
        except ValueError:
            raise ValidationError("cart_total must be numeric")
        if cart_total < 0:
            raise ValidationError("cart_total must be >= 0")

        items = []
        for i, raw in enumerate(raw_items):
            if not isinstance(raw, dict):
                raise ValidationError(f"cart_items[{i}] must be an object")
            try:
                price = D(raw.get("price"))
                qty = int(raw.get("quantity") or raw.get("qty") or 0)
            except (TypeError, ValueError):
                raise ValidationError(f"cart_items[{i}] has an invalid price or quantity")
            category = raw.get("category_id", raw.get("categoryId"))
            items.append(CartLine(
                id=str(raw.get("id") or ""),
                name=str(raw.get("name") or ""),
                price=price,
                quantity=max(qty, 0),
                category_id=str(category) if category not in (None, "") else None,
            ))

        phone = str(pick("customer_phone", "customerPhone") or "").strip() or None
        email = str(pick("customer_email", "customerEmail") or "").strip().lower() or None
        return cls(
            items=items,
            cart_total=cart_total,
            payment_method=str(method).strip().lower(),
            customer_phone=phone,
            customer_email=email,
        )


# ---- results ---------------------------------------------------------------

@dataclass
class RuleOutcome:
    discount: Money
    discount_type: str
    discount_value: Money


@dataclass
class AutoDiscountResult:
    applicable: bool = False
    discount: Money = ZERO
    rule_id: str | None = None
    rule_name: str | None = None
    discount_type: str | None = None
    discount_value: Money | None = None

    def as_api(self):
        # key names follow the checkout caller's contract
        payload = {"applicable": self.applicable, "discount": to_float(self.discount)}
        if self.applicable:
            payload.update({
                "id": self.rule_id,
                "ruleName": self.rule_name,
                "discountType": self.discount_type,
                "discountValue": float(self.discount_value),
                "discountPercentage": float(self.discount_value)
                if self.discount_type == DiscountType.PERCENTAGE.value else None,
            })
        return payload


# ---- money -----------------------------------------------------------------

def calculate_discount_amount(base, discount_type: str, discount_value) -> Money:
    """percentage: base * value / 100; flat: min(value, base). Never negative."""
    base = max(D(base), ZERO)
    value = max(D(discount_value), ZERO)
    if discount_type == DiscountType.PERCENTAGE.value:
        return base * value / Decimal(100)
    if discount_type == DiscountType.FLAT.value:
        return min(value, base)
    raise ValueError(f"unknown discount type: {discount_type!r}")


# ---- predicates ------------------------------------------------------------

def is_rule_live(rule: DiscountRule, now: datetime) -> bool:
    return rule.status == RuleStatus.ACTIVE.value and rule.start_date <= now < rule.expiry_date


def is_payment_method_compatible(order_type: str, payment_method: str) -> bool:
    if order_type == OrderType.ALL.value:
        return True
    if order_type == OrderType.ONLINE.value:
        return payment_method != "cod"
    if order_type == OrderType.COD.value:
        return payment_method == "cod"
    return False


def select_tier(tiers, cart_total) -> DiscountTier | None:
    """Tier with the greatest min_order_value <= cart_total; a missing minimum counts as 0."""
    cart_total = D(cart_total)
    matched = None
    for tier in sorted(tiers, key=lambda t: (D(t.min_order_value), t.tier_order or 0)):
        if D(tier.min_order_value) <= cart_total:
            matched = tier
    return matched


def has_prior_orders(store_id, phone: str | None, email: str | None) -> bool:
    clauses = []
    if phone:
        clauses.append(Order.customer_phone == phone)
    if email:
        clauses.append(func.lower(Order.customer_email) == email)
    if not clauses:
        return False
    q = db.session.query(Order.id).filter(Order.store_id == store_id, or_(*clauses)).limit(1)
    return q.first() is not None


# ---- evaluators ------------------------------------------------------------

@dataclass
class _EvalContext:
    store_id: object
    cart: CartSnapshot
    _prior_orders: bool | None = field(default=None, repr=False)

    @property
    def has_identity(self) -> bool:
        return bool(self.cart.customer_phone or self.cart.customer_email)

    def prior_orders(self) -> bool:
        if self._prior_orders is None:
            self._prior_orders = has_prior_orders(
                self.store_id, self.cart.customer_phone, self.cart.customer_email)
        return self._prior_orders


def _outcome(base, discount_type, discount_value) -> RuleOutcome:
    return RuleOutcome(
        discount=calculate_discount_amount(base, discount_type, discount_value),
        discount_type=discount_type,
        discount_value=D(discount_value),
    )


def _first_condition(rule: DiscountRule) -> DiscountRuleCondition | None:
    return rule.conditions[0] if rule.conditions else None


def _evaluate_tiered(rule: DiscountRule, ctx: _EvalContext) -> RuleOutcome | None:
    tier = select_tier(rule.tiers, ctx.cart.cart_total)
    if not tier:
        return None
    return _outcome(ctx.cart.cart_total, tier.discount_type, tier.discount_value)


def _evaluate_new_customer(rule: DiscountRule, ctx: _EvalContext) -> RuleOutcome | None:
    if not ctx.has_identity or ctx.prior_orders():
        return None
    cond = _first_condition(rule)
    if not cond:
        return None
    return _outcome(ctx.cart.cart_total, cond.discount_type, cond.discount_value)


def _evaluate_returning_customer(rule: DiscountRule, ctx: _EvalContext) -> RuleOutcome | None:
    if not ctx.has_identity or not ctx.prior_orders():
        return None
    cond = _first_condition(rule)
    if not cond:
        return None
    return _outcome(ctx.cart.cart_total, cond.discount_type, cond.discount_value)


def _evaluate_category(rule: DiscountRule, ctx: _EvalContext) -> RuleOutcome | None:
    categories = ctx.cart.categories
    cond = next((c for c in rule.conditions if c.rule_value in categories), None)
    if not cond:
        return None
    # only the lines of that category form the base
    return _outcome(ctx.cart.category_total(cond.rule_value), cond.discount_type, cond.discount_value)


def _evaluate_quantity(rule: DiscountRule, ctx: _EvalContext) -> RuleOutcome | None:
    cond = _first_condition(rule)
    if not cond:
        return None
    min_quantity = int(str(cond.rule_value).strip())
    if ctx.cart.item_count < min_quantity:
        return None
    return _outcome(ctx.cart.cart_total, cond.discount_type, cond.discount_value)


EVALUATORS: dict[RuleType, Callable[[DiscountRule, _EvalContext], RuleOutcome | None]] = {
    RuleType.TIERED_VALUE: _evaluate_tiered,
    RuleType.NEW_CUSTOMER: _evaluate_new_customer,
    RuleType.RETURNING_CUSTOMER: _evaluate_returning_customer,
    RuleType.CATEGORY: _evaluate_category,
    RuleType.QUANTITY: _evaluate_quantity,
}

_unhandled = set(RuleType) - set(EVALUATORS)
if _unhandled:
    raise RuntimeError(f"no discount evaluator for: {sorted(t.value for t in _unhandled)}")


# ---- engine ----------------------------------------------------------------

def load_active_rules(store_id) -> list[DiscountRule]:
    return (
        DiscountRule.query
        .filter(DiscountRule.store_id == store_id, DiscountRule.status == RuleStatus.ACTIVE.value)
        .order_by(DiscountRule.created_at.asc(), DiscountRule.id.asc())
        .all()
    )


def evaluate(store_id, cart: CartSnapshot, now: datetime | None = None) -> AutoDiscountResult:
    best = AutoDiscountResult()
    now = now or utcnow()
    ctx = _EvalContext(store_id=store_id, cart=cart)

    for rule in load_active_rules(store_id):
        if not is_rule_live(rule, now):
            continue
        if not is_payment_method_compatible(rule.order_type, cart.payment_method):
            continue
        try:
            evaluator = EVALUATORS[RuleType(rule.rule_type)]
            outcome = evaluator(rule, ctx)
        except Exception as e:
            logger.warning(f"discount rule {rule.id} skipped: {e!r}")
            continue

        if outcome and outcome.discount > best.discount:
            best = AutoDiscountResult(
                applicable=True,
                discount=outcome.discount,
                rule_id=str(rule.id),
                rule_name=rule.rule_name,
                discount_type=outcome.discount_type,
                discount_value=outcome.discount_value,
            )

    if best.applicable:
        logger.info(f"auto discount for store {store_id}: {best.rule_name} -> {to_float(best.discount)}")
    return best


def evaluate_auto_discount(payload: dict, now: datetime | None = None) -> AutoDiscountResult:
    """Checkout entry point: validate the top-level fields, then evaluate."""
    store_id = as_uuid(payload.get("store_id") or payload.get("storeId"))
    if not store_id:
        raise ValidationError("Missing required fields: store_id")
    cart = CartSnapshot.from_payload(payload)
    return evaluate(store_id, cart, now=now)


# ---- rule administration ---------------------------------------------------

def _enum_value(enum_cls, raw, field_name: str) -> str:
    try:
        return enum_cls(str(raw or "").strip().lower()).value
    except ValueError:
        allowed = ", ".join(e.value for e in enum_cls)
        raise ValidationError(f"{field_name} must be one of: {allowed}")


def _discount_fields(data: dict, where: str) -> tuple[str, Money]:
    dtype = _enum_value(DiscountType, data.get("discount_type"), f"{where}.discount_type")
    try:
        dval = D(data.get("discount_value"))
    except ValueError:
        raise ValidationError(f"{where}.discount_value must be numeric")
    if dval <= 0:
        raise ValidationError(f"{where}.discount_value must be > 0")
    if dtype == DiscountType.PERCENTAGE.value and dval > 100:
        raise ValidationError(f"{where}.discount_value must be <= 100 for percentage discounts")
    return dtype, dval


def create_rule(store_id, data: dict) -> DiscountRule:
    name = (data.get("rule_name") or "").strip()
    if not name:
        raise ValidationError("rule_name is required")
    rule_type = _enum_value(RuleType, data.get("rule_type"), "rule_type")
    order_type = _enum_value(OrderType, data.get("order_type") or OrderType.ALL.value, "order_type")
    status = _enum_value(RuleStatus, data.get("status") or RuleStatus.ACTIVE.value, "status")

    start_date = parse_iso8601(data.get("start_date"))
    expiry_date = parse_iso8601(data.get("expiry_date"))
    if not start_date or not expiry_date:
        raise ValidationError("start_date and expiry_date must be ISO-8601 datetimes")
    if start_date >= expiry_date:
        raise ValidationError("expiry_date must be after start_date")

    rule = DiscountRule(
        store_id=store_id,
        rule_name=name,
        rule_description=(data.get("rule_description") or "").strip() or None,
        rule_type=rule_type,
        order_type=order_type,
        status=status,
        start_date=start_date,
        expiry_date=expiry_date,
    )

    if rule_type == RuleType.TIERED_VALUE.value:
        tiers = data.get("tiers") or []
        if not isinstance(tiers, list) or not tiers:
            raise ValidationError("tiered_value rules need at least one tier")
        for i, t in enumerate(tiers):
            dtype, dval = _discount_fields(t, f"tiers[{i}]")
            try:
                min_value = D(t.get("min_order_value"))
            except ValueError:
                raise ValidationError(f"tiers[{i}].min_order_value must be numeric")
            if min_value < 0:
                raise ValidationError(f"tiers[{i}].min_order_value must be >= 0")
            rule.tiers.append(DiscountTier(
                tier_order=int(t.get("tier_order", i)),
                min_order_value=min_value,
                discount_type=dtype,
                discount_value=dval,
            ))
    else:
        conditions = data.get("conditions") or []
        if not isinstance(conditions, list) or not conditions:
            raise ValidationError(f"{rule_type} rules need at least one condition")
        for i, c in enumerate(conditions):
            dtype, dval = _discount_fields(c, f"conditions[{i}]")
            rule_value = str(c.get("rule_value") or "").strip() or None
            if rule_type == RuleType.CATEGORY.value and not rule_value:
                raise ValidationError(f"conditions[{i}].rule_value must name a category")
            if rule_type == RuleType.QUANTITY.value:
                if not rule_value or not rule_value.isdigit() or int(rule_value) < 1:
                    raise ValidationError(f"conditions[{i}].rule_value must be a quantity >= 1")
            rule.conditions.append(DiscountRuleCondition(
                rule_value=rule_value,
                discount_type=dtype,
                discount_value=dval,
            ))

    db.session.add(rule)
    db.session.commit()
    return rule


def list_rules(store_id) -> list[DiscountRule]:
    return (
        DiscountRule.query
        .filter(DiscountRule.store_id == store_id)
        .order_by(DiscountRule.created_at.desc())
        .all()
    )


def get_rule(store_id, rule_id) -> DiscountRule:
    rule = db.session.get(DiscountRule, as_uuid(rule_id)) if as_uuid(rule_id) else None
    if not rule or rule.store_id != store_id:
        raise NotFound("discount rule not found")
    return rule


def set_rule_status(store_id, rule_id, status) -> DiscountRule:
    rule = get_rule(store_id, rule_id)
    rule.status = _enum_value(RuleStatus, status, "status")
    db.session.commit()
    return rule


def delete_rule(store_id, rule_id) -> None:
    rule = get_rule(store_id, rule_id)
    db.session.delete(rule)
    db.session.commit()


def rule_stats(store_id) -> dict:
    total = DiscountRule.query.filter(DiscountRule.store_id == store_id).count()
    active = DiscountRule.query.filter(
        DiscountRule.store_id == store_id, DiscountRule.status == RuleStatus.ACTIVE.value
    ).count()
    return {"total_rules": total, "active_rules": active}
