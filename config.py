"""
Application configuration

All settings come from environment variables (a local .env file is loaded
if present). Modules read them as ``config.NAME`` at call time so tests can
monkeypatch individual values.
"""

import os

from dotenv import load_dotenv

load_dotenv()


def _flag(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


# ----- Runtime -----
ENVIRONMENT = os.getenv("ENVIRONMENT", "development")
PORT = int(os.getenv("PORT", 8000))
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
CORS_ORIGINS = [o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()]

# ----- Database -----
DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_NAME = os.getenv("DATABASE_NAME")

# ----- Payments -----
RAZORPAY_KEY_ID = os.getenv("RAZORPAY_KEY_ID", "")
RAZORPAY_KEY_SECRET = os.getenv("RAZORPAY_KEY_SECRET", "")
RAZORPAY_WEBHOOK_SECRET = os.getenv("RAZORPAY_WEBHOOK_SECRET", "")
RAZORPAY_API_URL = os.getenv("RAZORPAY_API_URL", "https://api.razorpay.com/v1")
PAYMENT_CURRENCY = os.getenv("PAYMENT_CURRENCY", "INR")
PAYMENT_TIMEOUT = float(os.getenv("PAYMENT_TIMEOUT", 15))

# ----- Order lifecycle -----
# Off by default: admins may set any order status, as the shop always allowed.
STRICT_ORDER_TRANSITIONS = _flag("STRICT_ORDER_TRANSITIONS", False)
STOCK_UPDATE_RETRIES = int(os.getenv("STOCK_UPDATE_RETRIES", 5))

# ----- Pagination -----
DEFAULT_PAGE_SIZE = int(os.getenv("DEFAULT_PAGE_SIZE", 10))
MAX_PAGE_SIZE = int(os.getenv("MAX_PAGE_SIZE", 100))


def is_production() -> bool:
    return ENVIRONMENT.lower() == "production"
