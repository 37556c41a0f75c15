# storefront/tokens/routes.py
from datetime import timedelta

from flask import current_app, request

from . import bp
from ..config import logger
from ..extensions import db
from ..model import TokenPackage
from ..model.types import as_uuid
from ..utils.api import ok, err
from ..utils.decorators import store_access_required
from ..services import token_ledger
from ..services.payment_service import (
    RazorpaySettings,
    create_payment_order,
    verify_payment_signature,
)


def _pending_ttl():
    return timedelta(hours=current_app.config.get("PENDING_PURCHASE_TTL_HOURS", 24))


@bp.get("/packages")
def list_packages():
    packages = (
        TokenPackage.query
        .filter(TokenPackage.is_active.is_(True))
        .order_by(TokenPackage.display_order.asc(), TokenPackage.price.asc())
        .all()
    )
    return ok("OK", {"packages": [p.as_api() for p in packages]})


@bp.get("/<uuid:store_id>/balance")
@store_access_required
def balance(store_id, user, store):
    bal = token_ledger.get_balance(store.id, pending_ttl=_pending_ttl())
    return ok("OK", bal.as_api())


@bp.post("/<uuid:store_id>/orders")
@store_access_required
def create_order(store_id, user, store):
    data = request.get_json(silent=True) or {}
    package_id = as_uuid(data.get("package_id"))
    if not package_id:
        return err("package_id is required", 400)

    package = db.session.get(TokenPackage, package_id)
    if not package or not package.is_active:
        return err("package not found", 404)

    settings = RazorpaySettings.from_config(current_app.config)
    order = create_payment_order(
        settings,
        amount=package.price,
        currency=package.currency,
        notes={"type": "ai_tokens", "package_id": package.id, "store_id": store.id},
        receipt=f"tok_{str(store.id)[:8]}_{str(package.id)[:8]}",
        client=current_app.extensions.get("payment_client"),
    )
    purchase = token_ledger.create_pending_purchase(store.id, user.id, package, order["order_id"])
    logger.info(f"token order created store={store.id} order={order['order_id']} package={package.id}")
    return ok("Payment order created", {"order": order, "purchase": purchase.as_api()}, 201)


@bp.post("/<uuid:store_id>/verify")
@store_access_required
def verify(store_id, user, store):
    data = request.get_json(silent=True) or {}
    order_id = data.get("razorpay_order_id") or data.get("order_id")
    payment_id = data.get("razorpay_payment_id") or data.get("payment_id")
    signature = data.get("razorpay_signature") or data.get("signature")

    settings = RazorpaySettings.from_config(current_app.config)
    verify_payment_signature(settings, order_id, payment_id, signature,
                             client=current_app.extensions.get("payment_client"))

    purchase = token_ledger.activate_purchase(
        order_id,
        payment_id,
        expiry_days=current_app.config.get("TOKEN_EXPIRY_DAYS", 365),
        store_id=store.id,
    )
    bal = token_ledger.get_balance(store.id, pending_ttl=_pending_ttl())
    return ok("Payment verified", {"purchase": purchase.as_api(), "balance": bal.as_api()})
