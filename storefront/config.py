import os
import logging
from datetime import timedelta

# Logging
logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s | %(levelname)s | %(message)s",
)
logger = logging.getLogger("storefront")


def _int_env(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, default))
    except (TypeError, ValueError):
        return default


class Config:
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    JSON_SORT_KEYS = False
    ENV = os.getenv("FLASK_ENV", "development")
    JWT_SECRET_KEY = os.environ.get("JWT_SECRET_KEY", "dev-secret-change-me")
    JWT_ACCESS_TOKEN_EXPIRES = timedelta(days=1)

    # AI designer (OpenRouter)
    OPENROUTER_API_KEY = os.getenv("OPENROUTER_API_KEY", "")
    OPENROUTER_MODEL = os.getenv("OPENROUTER_MODEL", "moonshotai/kimi-k2")
    OPENROUTER_FALLBACK_MODEL = os.getenv("OPENROUTER_FALLBACK_MODEL", "") or None
    OPENROUTER_URL = os.getenv("OPENROUTER_URL", "https://openrouter.ai/api/v1/chat/completions")
    OPENROUTER_REFERER = os.getenv("OPENROUTER_REFERER", "https://localhost")
    AI_REQUEST_TIMEOUT = _int_env("AI_REQUEST_TIMEOUT", 45)
    AI_MAX_RETRIES = _int_env("AI_MAX_RETRIES", 3)

    # Payments (Razorpay)
    RAZORPAY_KEY_ID = os.getenv("RAZORPAY_KEY_ID", "")
    RAZORPAY_KEY_SECRET = os.getenv("RAZORPAY_KEY_SECRET", "")
    PAYMENT_REQUEST_TIMEOUT = _int_env("PAYMENT_REQUEST_TIMEOUT", 15)

    # Token ledger
    TOKEN_EXPIRY_DAYS = _int_env("TOKEN_EXPIRY_DAYS", 365)  # 0 = tokens never expire
    PENDING_PURCHASE_TTL_HOURS = _int_env("PENDING_PURCHASE_TTL_HOURS", 24)
    DESIGN_HISTORY_RETENTION_DAYS = _int_env("DESIGN_HISTORY_RETENTION_DAYS", 30)

    @staticmethod
    def init_app(app):
        if not os.getenv("DATABASE_URL"):
            os.makedirs(app.instance_path, exist_ok=True)
            app.config["SQLALCHEMY_DATABASE_URI"] = f"sqlite:///{os.path.join(app.instance_path, 'app.db')}"
        else:
            app.config["SQLALCHEMY_DATABASE_URI"] = os.getenv("DATABASE_URL")


class TestConfig(Config):
    TESTING = True
    JWT_SECRET_KEY = "test-secret-key-with-enough-length-for-hs256"
    OPENROUTER_API_KEY = "test-key"
    OPENROUTER_FALLBACK_MODEL = None
    AI_MAX_RETRIES = 1
    RAZORPAY_KEY_ID = "rzp_test_key"
    RAZORPAY_KEY_SECRET = "rzp_test_secret"

    @staticmethod
    def init_app(app):
        app.config["SQLALCHEMY_DATABASE_URI"] = "sqlite://"
