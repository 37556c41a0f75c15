# storefront/errors.py
from flask import jsonify

from .utils.api import api_error


class StorefrontError(Exception):
    status_code = 400
    message = "Request failed"

    def __init__(self, message: str | None = None, status_code: int | None = None, data: dict | None = None):
        super().__init__(message or self.message)
        self.message = message or self.message
        if status_code is not None:
            self.status_code = status_code
        self.data = data or {}


class ValidationError(StorefrontError):
    status_code = 400
    message = "Missing required fields"


class NotFound(StorefrontError):
    status_code = 404
    message = "Not found"


class Forbidden(StorefrontError):
    status_code = 403
    message = "Forbidden"


class InsufficientTokens(StorefrontError):
    status_code = 402
    message = "No tokens remaining. Please buy tokens to continue."


class UpstreamTimeout(StorefrontError):
    status_code = 504
    message = "Request timed out. Please try again."


class UpstreamUnavailable(StorefrontError):
    status_code = 502
    message = "Unable to connect to AI. Please try again in a moment."


class MalformedModelResponse(StorefrontError):
    status_code = 502
    message = "AI response was unreadable. No token charged. Please try again."


class ModelRefusal(MalformedModelResponse):
    status_code = 400
    message = "AI could not process this request. Please rephrase your prompt."


class DesignTooLarge(MalformedModelResponse):
    status_code = 400
    message = "Design too large. Please simplify."


class PaymentNotConfigured(StorefrontError):
    status_code = 503
    message = "Payment not configured"


class PaymentVerificationFailed(StorefrontError):
    status_code = 400
    message = "Payment verification failed"


def register_error_handlers(app):
    @app.errorhandler(StorefrontError)
    def handle_storefront_error(e: StorefrontError):
        r = jsonify(api_error(e.message, e.data))
        r.status_code = e.status_code
        return r
