# backend/tableside/config.py
from __future__ import annotations
import os


def _env_bool(name: str, default: bool) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


class Config:
    # Optional "SECRET_KEY", with default dev key
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key-change-me")

    # SQLite DB stored in backend/instance/tableside.sqlite3
    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL", #optional alternative location
        "sqlite:///tableside.sqlite3", #default local location
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Shared secret for waiter/kitchen/admin apps
    STAFF_API_KEY = os.environ.get("STAFF_API_KEY", "dev-staff-key-change-me")

    # Guest-facing session checks demand a table token
    TABLE_TOKEN_REQUIRED = _env_bool("TABLE_TOKEN_REQUIRED", True)
    GUEST_TOKEN_TTL_HOURS = int(os.environ.get("GUEST_TOKEN_TTL_HOURS", "4"))
    OPERATOR_TOKEN_TTL_HOURS = int(os.environ.get("OPERATOR_TOKEN_TTL_HOURS", "8"))

    # Order activity windows used by session checks
    ACTIVE_ORDER_WINDOW_HOURS = int(os.environ.get("ACTIVE_ORDER_WINDOW_HOURS", "3"))
    RECENT_ORDER_WINDOW_HOURS = int(os.environ.get("RECENT_ORDER_WINDOW_HOURS", "2"))

    PAYMENT_WINDOW_MINUTES = int(os.environ.get("PAYMENT_WINDOW_MINUTES", "30"))
    PAYMENT_WEBHOOK_SECRET = os.environ.get("PAYMENT_WEBHOOK_SECRET")

    PIX_KEY = os.environ.get("PIX_KEY", "restaurante@exemplo.com")
    PIX_MERCHANT_NAME = os.environ.get("PIX_MERCHANT_NAME", "NOME DO RESTAURANTE")
    PIX_MERCHANT_CITY = os.environ.get("PIX_MERCHANT_CITY", "SAO PAULO")

    # Used to build the client access URL handed out with table tokens
    PUBLIC_BASE_URL = os.environ.get("PUBLIC_BASE_URL", "")

    CORS_ALLOWED_ORIGINS = [
        origin.strip()
        for origin in os.environ.get(
            "CORS_ALLOWED_ORIGINS",
            "http://localhost:3000,http://127.0.0.1:3000",
        ).split(",")
        if origin.strip()
    ]

    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")
