# backend/posledger/config.py
from __future__ import annotations
import os


def _env_flag(name: str, default: bool = False) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


class Config:
    # Optional "SECRET_KEY", with default dev key
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key-change-me")

    # SQLite DB stored in backend/instance/posledger.sqlite3
    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL",
        "sqlite:///posledger.sqlite3",
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

    # bcrypt cost factor; tests lower this to keep fixtures fast
    BCRYPT_ROUNDS = int(os.environ.get("BCRYPT_ROUNDS", "12"))
    SESSION_IDLE_MINUTES = 120

    # Payments may differ from the computed total by at most this many cents
    PAYMENT_TOLERANCE_CENTS = 1

    # Identical sales from the same user inside this window are refused
    DUPLICATE_SALE_WINDOW_SECONDS = int(os.environ.get("DUPLICATE_SALE_WINDOW_SECONDS", "10"))

    # Creator/checker separation always applies. Strict mode adds the
    # sender/receiver/completer rules.
    TRANSFER_STRICT_SOD = _env_flag("TRANSFER_STRICT_SOD")
    TRANSFER_SOD_EXEMPT_ROLES: tuple[str, ...] = ()

    CORS_ALLOWED_ORIGINS = {
        "http://localhost:5173",
        "http://127.0.0.1:5173",
    }
