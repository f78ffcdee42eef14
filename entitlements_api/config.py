"""Environment-driven configuration for the Entitlement Sync API.

Values are read once at import time. Components never read the environment
themselves; dependencies.py passes these values into them explicitly.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import List, Literal


def _bool_env(name: str, default: bool = False) -> bool:
    raw = str(os.environ.get(name, "")).strip().lower()
    if not raw:
        return default
    return raw in ("1", "true", "yes", "on")


def _str_env(name: str, default: str = "") -> str:
    return str(os.environ.get(name, default) or "").strip()


def _list_env(name: str, default: str) -> List[str]:
    return [item.strip().rstrip("/") for item in _str_env(name, default).split(",") if item.strip()]


# =============================================================================
# GENERAL
# =============================================================================

API_DIR = Path(__file__).parent
PROJECT_DIR = API_DIR.parent

API_VERSION = "1.0.0"
DEBUG_MODE = _bool_env("DEBUG", False)

# "development" selects Apple's sandbox verifyReceipt endpoint.
DEPLOYMENT_ENV = (_str_env("DEPLOYMENT_ENV") or _str_env("NODE_ENV") or "production").lower()

ALLOWED_ORIGINS = _list_env(
    "ALLOWED_ORIGINS",
    "http://localhost:5173,http://localhost:3000",
)

LOG_DIR = Path(_str_env("LOG_DIR") or str(PROJECT_DIR / "logs"))

RATE_LIMIT_ENABLED = _bool_env("RATE_LIMIT_ENABLED", True)

# =============================================================================
# FIREBASE
# =============================================================================

SERVICE_ACCOUNT_PATH = _str_env(
    "GOOGLE_APPLICATION_CREDENTIALS",
    str(PROJECT_DIR / "firebase-adminsdk.json"),
)
MAX_TOKEN_AGE_SECONDS = int(os.environ.get("MAX_TOKEN_AGE_SECONDS", 3600))
CLOCK_SKEW_SECONDS = int(os.environ.get("CLOCK_SKEW_SECONDS", 300))
SKIP_TOKEN_AGE_CHECK = _bool_env("SKIP_TOKEN_AGE_CHECK", False)

USERS_COLLECTION = "users"
SUBSCRIPTIONS_COLLECTION = "subscriptions"
BILLING_EVENTS_COLLECTION = "billingEvents"

# =============================================================================
# BILLING PROVIDERS
# =============================================================================

REVENUECAT_WEBHOOK_SECRET = _str_env("REVENUECAT_WEBHOOK_SECRET")

APPLE_SHARED_SECRET = _str_env("APPLE_SHARED_SECRET")
APPLE_API_TIMEOUT_SEC = float(os.environ.get("APPLE_API_TIMEOUT_SEC", "8"))
APPLE_VERIFY_RECEIPT_PRODUCTION_URL = "https://buy.itunes.apple.com/verifyReceipt"
APPLE_VERIFY_RECEIPT_SANDBOX_URL = "https://sandbox.itunes.apple.com/verifyReceipt"

GOOGLE_PLAY_PACKAGE_NAME = _str_env("GOOGLE_PLAY_PACKAGE_NAME")
GOOGLE_API_TIMEOUT_SEC = float(os.environ.get("GOOGLE_API_TIMEOUT_SEC", "8"))

# Fallback subscription length when a store reports no expiry.
DEFAULT_SUBSCRIPTION_DAYS = 365

# "event_time": drop webhook events older than the last applied one.
# "arrival": apply every webhook event in the order it is received.
OrderingPolicy = Literal["event_time", "arrival"]
WEBHOOK_EVENT_ORDERING: OrderingPolicy = (
    "arrival" if _str_env("WEBHOOK_EVENT_ORDERING").lower() == "arrival" else "event_time"
)
