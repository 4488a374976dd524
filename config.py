"""
config.py

Single source of truth for:
- Environment variable reads
- Admin config DB helpers (runtime overrides)
- Search and worker defaults

Nothing here should contain route handlers or business logic beyond config resolution.
"""

import os
from typing import Optional

from sqlalchemy.orm import Session


# =====================================================================
# SECTION: ENV VARS
# =====================================================================

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

ADMIN_API_TOKEN = os.getenv("ADMIN_API_TOKEN")

# Duffel
DUFFEL_ACCESS_TOKEN = os.getenv("DUFFEL_ACCESS_TOKEN")
DUFFEL_API_TOKEN = os.getenv("DUFFEL_API_TOKEN") or DUFFEL_ACCESS_TOKEN
DUFFEL_API_BASE = os.getenv("DUFFEL_API_BASE", "https://api.duffel.com").rstrip("/")
DUFFEL_VERSION = os.getenv("DUFFEL_VERSION", "v2")
DUFFEL_TIMEOUT_SECONDS = int(os.getenv("DUFFEL_TIMEOUT_SECONDS", "45"))

# QStash (durable queue with signed webhooks)
QSTASH_URL = os.getenv("QSTASH_URL", "https://qstash.upstash.io").rstrip("/")
QSTASH_TOKEN = os.getenv("QSTASH_TOKEN", "")
QSTASH_CURRENT_SIGNING_KEY = os.getenv("QSTASH_CURRENT_SIGNING_KEY", "")
QSTASH_NEXT_SIGNING_KEY = os.getenv("QSTASH_NEXT_SIGNING_KEY", "")
QSTASH_RETRIES = int(os.getenv("QSTASH_RETRIES", "3"))
QSTASH_TOLERANCE_SECONDS = int(os.getenv("QSTASH_TOLERANCE_SECONDS", "300"))

# Public URL of the worker webhook (POST /jobs/process), quotes stripped
WORKER_URL = (os.getenv("WORKER_URL") or "").strip().strip('"')

# memory | postgres
CHANGE_FEED = os.getenv("CHANGE_FEED", "memory").lower().strip()
CHANGE_FEED_CHANNEL = "search_job_updates"

REQUIRE_SEARCH_OWNER = os.getenv("REQUIRE_SEARCH_OWNER", "false").lower() == "true"

# Search caps (hard limits enforced in code, not overridable by admin config)
MAX_OFFER_LIMIT_HARD = 200
MAX_AIRPORTS_PER_CITY_HARD = 4
SEARCH_TIMEOUT_SECONDS_HARD = 300
DISPATCH_WORKERS = 6

DEFAULT_OFFER_SORT = "total_amount"
DEFAULT_OFFER_LIMIT = 15
MAX_OFFER_LIMIT = 50
MAX_AIRPORTS_PER_CITY = 2
SEARCH_TIMEOUT_SECONDS = 60
WORKER_STALE_SECONDS = 120


# =====================================================================
# SECTION: ADMIN CONFIG DB HELPERS
# Read runtime configuration values stored in admin_config table.
# =====================================================================

def _get_config_row(db: Session, key: str):
    from models import AdminConfig
    return db.query(AdminConfig).filter(AdminConfig.key == key).first()


def get_config_str(key: str, default_value: Optional[str] = None) -> Optional[str]:
    """Read a config value from admin_config as string."""
    from db import SessionLocal
    db = SessionLocal()
    try:
        row = _get_config_row(db, key)
        if not row or row.value is None:
            return default_value
        return str(row.value)
    finally:
        db.close()


def get_config_int(key: str, default_value: int) -> int:
    """Read a config value from admin_config and cast to int."""
    raw = get_config_str(key, None)
    if raw is None:
        return default_value
    try:
        return int(raw)
    except ValueError:
        return default_value


def get_config_bool(key: str, default_value: bool) -> bool:
    """Read a config value from admin_config and cast to bool."""
    raw = get_config_str(key, None)
    if raw is None:
        return default_value
    s = str(raw).strip().lower()
    if s in ("1", "true", "yes", "y", "on"):
        return True
    if s in ("0", "false", "no", "n", "off"):
        return False
    return default_value


# =====================================================================
# SECTION: EFFECTIVE SEARCH SETTINGS
# Admin overrides clamped to the hard ceilings above.
# =====================================================================

def search_timeout_seconds() -> int:
    value = get_config_int("SEARCH_TIMEOUT_SECONDS", SEARCH_TIMEOUT_SECONDS)
    return max(1, min(value, SEARCH_TIMEOUT_SECONDS_HARD))


def max_offer_limit() -> int:
    value = get_config_int("MAX_OFFER_LIMIT", MAX_OFFER_LIMIT)
    return max(1, min(value, MAX_OFFER_LIMIT_HARD))


def default_offer_limit() -> int:
    value = get_config_int("DEFAULT_OFFER_LIMIT", DEFAULT_OFFER_LIMIT)
    return max(1, min(value, max_offer_limit()))


def default_offer_sort() -> str:
    return get_config_str("DEFAULT_OFFER_SORT", DEFAULT_OFFER_SORT) or DEFAULT_OFFER_SORT


def max_airports_per_city() -> int:
    value = get_config_int("MAX_AIRPORTS_PER_CITY", MAX_AIRPORTS_PER_CITY)
    return max(1, min(value, MAX_AIRPORTS_PER_CITY_HARD))


def worker_stale_seconds() -> int:
    return max(1, get_config_int("WORKER_STALE_SECONDS", WORKER_STALE_SECONDS))


def require_search_owner() -> bool:
    return get_config_bool("REQUIRE_SEARCH_OWNER", REQUIRE_SEARCH_OWNER)
