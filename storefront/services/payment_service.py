# storefront/services/payment_service.py
"""
Razorpay order creation and payment signature verification for token purchases.
"""
from __future__ import annotations

from dataclasses import dataclass

import razorpay
import requests
from razorpay.errors import BadRequestError, GatewayError, ServerError, SignatureVerificationError

from ..config import logger
from ..errors import (
    PaymentNotConfigured,
    PaymentVerificationFailed,
    UpstreamTimeout,
    UpstreamUnavailable,
)
from ..utils.money import D, round_money


@dataclass(frozen=True)
class RazorpaySettings:
    key_id: str
    key_secret: str
    timeout: int = 15

    @property
    def configured(self) -> bool:
        return bool(self.key_id and self.key_secret)

    @classmethod
    def from_config(cls, config) -> "RazorpaySettings":
        return cls(
            key_id=config.get("RAZORPAY_KEY_ID") or "",
            key_secret=config.get("RAZORPAY_KEY_SECRET") or "",
            timeout=int(config.get("PAYMENT_REQUEST_TIMEOUT") or cls.timeout),
        )


def razorpay_client(settings: RazorpaySettings, client=None):
    if not settings.configured:
        raise PaymentNotConfigured()
    return client or razorpay.Client(auth=(settings.key_id, settings.key_secret))


def create_payment_order(settings: RazorpaySettings, amount, currency: str = "INR",
                         notes: dict | None = None, receipt: str | None = None, client=None) -> dict:
    """Create a gateway order. `amount` is in rupees; the gateway wants paise."""
    rzp = razorpay_client(settings, client)

    amount = round_money(D(amount))
    payload = {
        "amount": int(amount * 100),
        "currency": currency,
        "notes": {k: str(v) for k, v in (notes or {}).items()},
    }
    if receipt:
        payload["receipt"] = receipt[:40]

    try:
        rp_order = rzp.order.create(payload, timeout=settings.timeout)
    except requests.Timeout:
        logger.warning("razorpay order creation timed out")
        raise UpstreamTimeout("Payment gateway timed out. Please try again.")
    except (BadRequestError, GatewayError, ServerError) as e:
        logger.warning(f"razorpay order creation rejected: {e}")
        raise UpstreamUnavailable("Payment gateway rejected the order. Please try again.")
    except requests.RequestException as e:
        logger.warning(f"razorpay order creation failed: {e!r}")
        raise UpstreamUnavailable("Unable to reach the payment gateway. Please try again.")

    order_id = rp_order.get("id") if isinstance(rp_order, dict) else None
    if not order_id:
        raise UpstreamUnavailable("Payment gateway returned an unexpected response.")

    return {
        "order_id": order_id,
        "amount": payload["amount"],
        "currency": currency,
        "key_id": settings.key_id,
    }


def verify_payment_signature(settings: RazorpaySettings, order_id: str, payment_id: str, signature: str,
                             client=None) -> bool:
    rzp = razorpay_client(settings, client)
    if not (order_id and payment_id and signature):
        raise PaymentVerificationFailed("Missing payment verification fields")

    try:
        valid = rzp.utility.verify_payment_signature({
            "razorpay_order_id": order_id,
            "razorpay_payment_id": payment_id,
            "razorpay_signature": str(signature),
        })
    except SignatureVerificationError:
        valid = False
    if not valid:
        logger.warning(f"razorpay signature mismatch for order {order_id}")
        raise PaymentVerificationFailed()
    return True
