# backend/ims/config.py
from __future__ import annotations
import os


def _env_bool(name: str, default: bool = False) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


class Config:
    # Optional "SECRET_KEY", with default dev key
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key-change-me")

    # SQLite DB stored in backend/instance/ims.sqlite3
    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL", #optional alternative location
        "sqlite:///ims.sqlite3", #default local location
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    LOG_LEVEL = os.environ.get("IMS_LOG_LEVEL", "INFO")
    LOG_JSON = _env_bool("IMS_LOG_JSON")

    # Caller-side retry policy for ConcurrentModificationError (see services/concurrency.py)
    CONCURRENCY_RETRY_ATTEMPTS = int(os.environ.get("IMS_RETRY_ATTEMPTS", "3"))
    CONCURRENCY_RETRY_BACKOFF = float(os.environ.get("IMS_RETRY_BACKOFF", "0.05"))

    DEFAULT_CURRENCY = "USD"

    # Callable(user_id) -> truthy when the user exists. None accepts any positive id.
    IDENTITY_RESOLVER = None
