# backend/settlement/config.py
from __future__ import annotations
import os


def _env_bool(name: str, default: str = "false") -> bool:
    return os.environ.get(name, default).strip().lower() in {"1", "true", "yes", "on"}


class Config:
    # Optional "SECRET_KEY", with default dev key
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key-change-me")

    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL",
        "sqlite:///settlement.sqlite3",
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Buyer payment window; unpaid orders past this are cancelled by the expiry sweep
    PAYMENT_WINDOW_MINUTES = int(os.environ.get("PAYMENT_WINDOW_MINUTES", "3"))
    CURRENCY = os.environ.get("CURRENCY", "MYR")
    PUBLIC_BASE_URL = os.environ.get("PUBLIC_BASE_URL", "http://localhost:5000")

    # Capability secrets
    EMAIL_ACTION_SECRET = os.environ.get("EMAIL_ACTION_SECRET", "dev-email-action-secret")
    CRON_SECRET = os.environ.get("CRON_SECRET", "dev-cron-secret")

    # Notifications: "log", "memory" or "http"
    NOTIFICATION_BACKEND = os.environ.get("NOTIFICATION_BACKEND", "log")
    EMAIL_RELAY_URL = os.environ.get("EMAIL_RELAY_URL", "")
    EMAIL_FROM = os.environ.get("EMAIL_FROM", "no-reply@marketplace.local")
    ADMIN_EMAIL = os.environ.get("ADMIN_EMAIL", "ops@marketplace.local")

    RECEIPT_MAX_BYTES = int(os.environ.get("RECEIPT_MAX_BYTES", str(5 * 1024 * 1024)))

    # Gateways
    GATEWAY_TIMEOUT_SECONDS = float(os.environ.get("GATEWAY_TIMEOUT_SECONDS", "20"))

    BILLPLZ_API_KEY = os.environ.get("BILLPLZ_API_KEY", "")
    BILLPLZ_COLLECTION_ID = os.environ.get("BILLPLZ_COLLECTION_ID", "")
    BILLPLZ_X_SIGNATURE_KEY = os.environ.get("BILLPLZ_X_SIGNATURE_KEY", "")
    BILLPLZ_SANDBOX = _env_bool("BILLPLZ_SANDBOX", "true")

    CHIP_API_KEY = os.environ.get("CHIP_API_KEY", "")
    CHIP_BRAND_ID = os.environ.get("CHIP_BRAND_ID", "")
    CHIP_WEBHOOK_SECRET = os.environ.get("CHIP_WEBHOOK_SECRET", "")
    CHIP_API_BASE_URL = os.environ.get("CHIP_API_BASE_URL", "https://gate.chip-in.asia/api/v1")

    SANDBOX_GATEWAY_SECRET = os.environ.get("SANDBOX_GATEWAY_SECRET", "dev-sandbox-secret")
