import os
from datetime import timedelta

from dotenv import load_dotenv

load_dotenv()


def _env(name: str, default: str = "") -> str:
    return (os.getenv(name) or default).strip()


def _env_int(name: str, default: int) -> int:
    try:
        return int(_env(name, str(default)))
    except (TypeError, ValueError):
        return default


class Config:
    # -----------------------------
    # Security
    # -----------------------------
    JWT_SECRET_KEY = _env("JWT_SECRET_KEY", "change-me-in-production")
    JWT_ACCESS_TOKEN_EXPIRES = timedelta(hours=_env_int("JWT_EXPIRES_HOURS", 12))
    DEFAULT_ADMIN_EMAIL = _env("DEFAULT_ADMIN_EMAIL", "admin@prestige-designs.store").lower()
    DEFAULT_ADMIN_NAME = _env("DEFAULT_ADMIN_NAME", "Prestige Admin")
    TRUSTED_PROXY_HOPS = _env_int("TRUSTED_PROXY_HOPS", 1)

    # -----------------------------
    # Database
    # -----------------------------
    MONGO_URI = _env("MONGO_URI", "mongodb://localhost:27017/prestige_designs")

    # -----------------------------
    # Uploads
    # -----------------------------
    BASE_DIR = os.path.abspath(os.path.dirname(__file__))
    UPLOAD_FOLDER = os.path.join(BASE_DIR, "uploads")
    DESIGN_UPLOAD_FOLDER = os.path.join(UPLOAD_FOLDER, "designs")
    MAX_CONTENT_LENGTH = _env_int("MAX_UPLOAD_SIZE_MB", 100) * 1024 * 1024

    # -----------------------------
    # PayPal
    # -----------------------------
    PAYPAL_CLIENT_ID = _env("PAYPAL_CLIENT_ID")
    PAYPAL_CLIENT_SECRET = _env("PAYPAL_CLIENT_SECRET")
    PAYPAL_ENV = _env("PAYPAL_ENV", "sandbox").lower()
    PAYPAL_WEBHOOK_ID = _env("PAYPAL_WEBHOOK_ID")
    PAYPAL_TIMEOUT_SECONDS = _env_int("PAYPAL_TIMEOUT_SECONDS", 20)

    # -----------------------------
    # Email (Resend)
    # -----------------------------
    RESEND_API_KEY = _env("RESEND_API_KEY")
    ORDER_SENDER_EMAIL = _env(
        "ORDER_SENDER_EMAIL", "Prestige Designs <orders@prestige-designs.store>"
    )
    ADMIN_NOTIFICATION_EMAIL = _env("ADMIN_NOTIFICATION_EMAIL")

    # -----------------------------
    # Site
    # -----------------------------
    SITE_URL = _env("SITE_URL", "http://localhost:3000").rstrip("/")
    API_BASE_URL = _env("API_BASE_URL", "http://localhost:5000").rstrip("/")
    CORS_ALLOWED_ORIGINS = _env("CORS_ALLOWED_ORIGINS")
    LOG_LEVEL = _env("LOG_LEVEL", "INFO").upper()
