# farmgate/settings.py
"""
Environment-driven configuration.

Every value is read lazily through a helper so tests (and a late-loaded .env)
see the current environment. Nothing here is cached.
"""

from __future__ import annotations

import os
from typing import Optional

_TRUE_VALUES = ("1", "true", "yes", "on")


def _env(name: str) -> Optional[str]:
    v = os.getenv(name)
    return v.strip() if v else None


def _env_flag(name: str, default: bool) -> bool:
    v = _env(name)
    if v is None:
        return default
    return v.lower() in _TRUE_VALUES


def _env_float(name: str, default: float) -> float:
    v = _env(name)
    if v is None:
        return default
    try:
        return float(v)
    except ValueError:
        return default


def database_url() -> str:
    return _env("DATABASE_URL") or "sqlite:///./farmgate.db"


def secret_key() -> str:
    return _env("SECRET_KEY") or "CHANGE_ME_TO_SOMETHING_RANDOM_AND_LONG"


def access_token_expire_minutes() -> int:
    return int(_env_float("ACCESS_TOKEN_EXPIRE_MINUTES", 1440))


def feed_poll_seconds() -> float:
    """How often the store-backed feed re-reads an account record."""
    return max(0.05, _env_float("FEED_POLL_SECONDS", 2.0))


def feed_max_backoff_seconds() -> float:
    return max(feed_poll_seconds(), _env_float("FEED_MAX_BACKOFF_SECONDS", 30.0))


def auto_provision_trial() -> bool:
    # default = enabled unless explicitly false-like
    return _env_flag("AUTO_PROVISION_TRIAL", True)


def log_level() -> str:
    return (_env("LOG_LEVEL") or "INFO").upper()
