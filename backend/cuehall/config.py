# backend/cuehall/config.py
from __future__ import annotations
import os


def _int_env(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    return int(raw)


def _bool_env(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


class Config:
    # Optional "SECRET_KEY", with default dev key
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key-change-me")

    # SQLite DB stored in backend/instance/cuehall.sqlite3
    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL", #optional alternative location
        "sqlite:///cuehall.sqlite3", #default local location
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Device protocol
    # Required for device traffic; signed requests fail until it is set
    IOT_HMAC_SECRET = os.environ.get("IOT_HMAC_SECRET") or None
    IOT_NONCE_WINDOW_SECONDS = _int_env("IOT_NONCE_WINDOW_SECONDS", 300)
    IOT_NONCE_PURGE_INTERVAL_SECONDS = _int_env("IOT_NONCE_PURGE_INTERVAL_SECONDS", 60)
    IOT_GATEWAY_DEVICE_ID = os.environ.get("IOT_GATEWAY_DEVICE_ID") or None
    IOT_DEVICE_LIVENESS_SECONDS = _int_env("IOT_DEVICE_LIVENESS_SECONDS", 300)

    # Billing timer
    BILLING_SWEEP_INTERVAL_SECONDS = _int_env("BILLING_SWEEP_INTERVAL_SECONDS", 30)
    BILLING_WARNING_LEAD_MINUTES = _int_env("BILLING_WARNING_LEAD_MINUTES", 5)

    # Owner re-authentication grant lifetime
    REAUTH_TTL_SECONDS = _int_env("REAUTH_TTL_SECONDS", 300)

    # Light test mode
    TABLE_TEST_DEFAULT_SECONDS = _int_env("TABLE_TEST_DEFAULT_SECONDS", 10)
    TABLE_TEST_MAX_SECONDS = _int_env("TABLE_TEST_MAX_SECONDS", 300)

    # wsgi.py starts the sweep and nonce janitor. Enable in exactly one process;
    # set to false on secondary workers.
    BACKGROUND_JOBS_ENABLED = _bool_env("BACKGROUND_JOBS_ENABLED", True)

    # Browser origins allowed to call the API (comma separated)
    CORS_ALLOWED_ORIGINS = [
        o.strip()
        for o in os.environ.get("CORS_ALLOWED_ORIGINS", "http://localhost:5173,http://127.0.0.1:5173").split(",")
        if o.strip()
    ]
