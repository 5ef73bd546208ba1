# backend/salecore/config.py
from __future__ import annotations
import os


def _env_int(name: str, default: int) -> int:
    raw = (os.environ.get(name) or "").strip()
    if not raw:
        return default
    return int(raw)


class Config:
    # Optional "SECRET_KEY", with default dev key
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key-change-me")

    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL",
        "sqlite:///salecore.sqlite3",
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

    # Loyalty: 100 points are worth one currency unit; one point per 10.00 spent
    LOYALTY_POINTS_PER_CURRENCY_UNIT = _env_int("LOYALTY_POINTS_PER_CURRENCY_UNIT", 100)
    LOYALTY_EARN_CENTS_PER_POINT = _env_int("LOYALTY_EARN_CENTS_PER_POINT", 1000)
    # REJECT: over-balance redemption is an error. CLAMP: redeem what is available.
    LOYALTY_REDEMPTION_POLICY = os.environ.get("LOYALTY_REDEMPTION_POLICY", "REJECT")

    # Mobile money (STK push)
    MOBILE_MONEY_PENDING_TIMEOUT_SECONDS = _env_int("MOBILE_MONEY_PENDING_TIMEOUT_SECONDS", 180)
    MOBILE_MONEY_CALLBACK_TOKEN = os.environ.get("MOBILE_MONEY_CALLBACK_TOKEN", "")

    MPESA_BASE_URL = os.environ.get("MPESA_BASE_URL", "https://sandbox.safaricom.co.ke")
    MPESA_CONSUMER_KEY = os.environ.get("MPESA_CONSUMER_KEY", "")
    MPESA_CONSUMER_SECRET = os.environ.get("MPESA_CONSUMER_SECRET", "")
    MPESA_PASSKEY = os.environ.get("MPESA_PASSKEY", "")
    MPESA_SHORTCODE = os.environ.get("MPESA_SHORTCODE", "")
    MPESA_CALLBACK_URL = os.environ.get("MPESA_CALLBACK_URL", "")
    MPESA_HTTP_TIMEOUT_SECONDS = _env_int("MPESA_HTTP_TIMEOUT_SECONDS", 15)
