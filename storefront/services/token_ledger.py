# storefront/services/token_ledger.py
"""
AI design token ledger.

Balance = sum of tokens_remaining over a store's active purchases. Each
design generation consumes exactly one token from exactly one purchase,
the one expiring soonest (purchases without expiry last).

Debits are optimistic: the UPDATE is conditioned on the tokens_remaining
value seen at reservation time, so two concurrent requests can never both
spend the last token. Nothing here commits the debit; the caller commits it
together with whatever it records for the call.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy import func, or_

from ..config import logger
from ..errors import InsufficientTokens, NotFound, StorefrontError, ValidationError
from ..extensions import db
from ..model import PurchaseStatus, Store, TokenPackage, TokenPurchase
from ..utils.dates import iso, utcnow

MAX_DEBIT_ATTEMPTS = 3
DEFAULT_PENDING_TTL = timedelta(hours=24)


@dataclass
class TokenBalance:
    tokens_remaining: int
    expires_at: datetime | None = None

    @property
    def has_tokens(self) -> bool:
        return self.tokens_remaining > 0

    def as_api(self):
        return {
            "tokens_remaining": self.tokens_remaining,
            "expires_at": iso(self.expires_at),
            "has_tokens": self.has_tokens,
        }


@dataclass
class TokenReservation:
    store_id: object
    purchase_id: object
    tokens_remaining: int


# ---- maintenance -----------------------------------------------------------

def sweep(store_id, now: datetime | None = None, pending_ttl: timedelta = DEFAULT_PENDING_TTL) -> dict:
    """Expire overdue purchases, drop expired rows and abandoned pending checkouts."""
    now = now or utcnow()

    expired = (
        TokenPurchase.query
        .filter(
            TokenPurchase.store_id == store_id,
            TokenPurchase.status == PurchaseStatus.ACTIVE.value,
            TokenPurchase.expires_at.isnot(None),
            TokenPurchase.expires_at < now,
        )
        .update({"status": PurchaseStatus.EXPIRED.value, "updated_at": now}, synchronize_session=False)
    )
    deleted = (
        TokenPurchase.query
        .filter(TokenPurchase.store_id == store_id, TokenPurchase.status == PurchaseStatus.EXPIRED.value)
        .delete(synchronize_session=False)
    )
    abandoned = (
        TokenPurchase.query
        .filter(
            TokenPurchase.store_id == store_id,
            TokenPurchase.status == PurchaseStatus.PENDING.value,
            TokenPurchase.created_at < now - pending_ttl,
        )
        .delete(synchronize_session=False)
    )
    db.session.commit()

    if expired or deleted or abandoned:
        logger.info(
            f"token sweep store={store_id}: expired={expired} deleted={deleted} abandoned_pending={abandoned}"
        )
    return {"expired": expired, "deleted": deleted, "abandoned_pending": abandoned}


def sweep_all(now: datetime | None = None, pending_ttl: timedelta = DEFAULT_PENDING_TTL) -> dict:
    now = now or utcnow()
    totals = {"stores": 0, "expired": 0, "deleted": 0, "abandoned_pending": 0}
    store_ids = [sid for (sid,) in db.session.query(TokenPurchase.store_id).distinct().all()]
    for store_id in store_ids:
        counts = sweep(store_id, now=now, pending_ttl=pending_ttl)
        totals["stores"] += 1
        for k, v in counts.items():
            totals[k] += v
    return totals


# ---- reads -----------------------------------------------------------------

def _usable(store_id, now: datetime):
    return (
        TokenPurchase.store_id == store_id,
        TokenPurchase.status == PurchaseStatus.ACTIVE.value,
        TokenPurchase.tokens_remaining > 0,
        or_(TokenPurchase.expires_at.is_(None), TokenPurchase.expires_at >= now),
    )


def get_balance(store_id, now: datetime | None = None, pending_ttl: timedelta = DEFAULT_PENDING_TTL) -> TokenBalance:
    now = now or utcnow()
    sweep(store_id, now=now, pending_ttl=pending_ttl)

    total, soonest = (
        db.session.query(
            func.coalesce(func.sum(TokenPurchase.tokens_remaining), 0),
            func.min(TokenPurchase.expires_at),
        )
        .filter(*_usable(store_id, now))
        .one()
    )
    return TokenBalance(tokens_remaining=int(total or 0), expires_at=soonest)


def reserve(store_id, now: datetime | None = None) -> TokenReservation:
    """Pick the purchase to debit without writing anything."""
    now = now or utcnow()
    # column query: values come from the database, not the identity map
    row = (
        db.session.query(TokenPurchase.id, TokenPurchase.tokens_remaining)
        .filter(*_usable(store_id, now))
        .order_by(
            TokenPurchase.expires_at.is_(None),
            TokenPurchase.expires_at.asc(),
            TokenPurchase.created_at.asc(),
        )
        .first()
    )
    if row is None:
        raise InsufficientTokens()
    return TokenReservation(store_id=store_id, purchase_id=row.id, tokens_remaining=row.tokens_remaining)


# ---- writes ----------------------------------------------------------------

def commit(reservation: TokenReservation, now: datetime | None = None):
    """Debit one token from the reserved purchase. Returns the purchase id actually debited."""
    now = now or utcnow()
    current = reservation
    for attempt in range(1, MAX_DEBIT_ATTEMPTS + 1):
        updated = (
            TokenPurchase.query
            .filter(
                TokenPurchase.id == current.purchase_id,
                TokenPurchase.status == PurchaseStatus.ACTIVE.value,
                TokenPurchase.tokens_remaining == current.tokens_remaining,
                TokenPurchase.tokens_remaining > 0,
            )
            .update(
                {
                    "tokens_remaining": TokenPurchase.tokens_remaining - 1,
                    "tokens_used": TokenPurchase.tokens_used + 1,
                    "updated_at": now,
                },
                synchronize_session=False,
            )
        )
        if updated == 1:
            return current.purchase_id

        logger.warning(
            f"token debit conflict store={current.store_id} purchase={current.purchase_id} attempt={attempt}"
        )
        current = reserve(current.store_id, now=now)

    raise StorefrontError("Token balance changed during the request. Please try again.", 409)


def reserve_and_debit(store_id, now: datetime | None = None):
    return commit(reserve(store_id, now=now), now=now)


def create_pending_purchase(store_id, user_id, package: TokenPackage, payment_order_id: str) -> TokenPurchase:
    purchase = TokenPurchase(
        store_id=store_id,
        user_id=user_id,
        package_id=package.id,
        tokens_purchased=package.tokens_included,
        tokens_used=0,
        tokens_remaining=0,
        amount_paid=package.price,
        payment_order_id=payment_order_id,
        status=PurchaseStatus.PENDING.value,
    )
    db.session.add(purchase)
    db.session.commit()
    return purchase


def activate_purchase(payment_order_id: str, payment_id: str, now: datetime | None = None,
                      expiry_days: int = 365, store_id=None) -> TokenPurchase:
    """pending -> active. Calling it again for an active purchase is a no-op."""
    now = now or utcnow()
    q = TokenPurchase.query.filter(TokenPurchase.payment_order_id == payment_order_id)
    if store_id is not None:
        q = q.filter(TokenPurchase.store_id == store_id)
    purchase = q.first()
    if not purchase:
        raise NotFound("purchase not found")
    if purchase.status == PurchaseStatus.ACTIVE.value:
        return purchase
    if purchase.status != PurchaseStatus.PENDING.value:
        raise StorefrontError(f"purchase is {purchase.status}", 409)

    purchase.status = PurchaseStatus.ACTIVE.value
    purchase.payment_id = payment_id
    purchase.tokens_remaining = purchase.tokens_purchased
    purchase.tokens_used = 0
    purchase.purchased_at = now
    purchase.expires_at = now + timedelta(days=expiry_days) if expiry_days > 0 else None
    db.session.commit()

    logger.info(
        f"token purchase activated store={purchase.store_id} order={payment_order_id} tokens={purchase.tokens_purchased}"
    )
    return purchase


def grant_tokens(store_id, tokens: int, now: datetime | None = None, expiry_days: int = 365) -> TokenPurchase:
    """Credit tokens without a payment (admin grants, seeding)."""
    if tokens <= 0:
        raise ValidationError("tokens must be > 0")
    if not db.session.get(Store, store_id):
        raise NotFound("store not found")
    now = now or utcnow()
    purchase = TokenPurchase(
        store_id=store_id,
        tokens_purchased=tokens,
        tokens_remaining=tokens,
        tokens_used=0,
        amount_paid=0,
        status=PurchaseStatus.ACTIVE.value,
        purchased_at=now,
        expires_at=now + timedelta(days=expiry_days) if expiry_days > 0 else None,
    )
    db.session.add(purchase)
    db.session.commit()
    return purchase
