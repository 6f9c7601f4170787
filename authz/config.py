"""
Centralised configuration constants and environment helpers.
"""

import os
import sys

from dotenv import load_dotenv

load_dotenv()


def _int_env(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return int(value)
    except ValueError:
        print(f"ERROR: env var {name} must be an integer, got {value!r}", file=sys.stderr)
        sys.exit(1)


# ── Storage / identity ───────────────────────────────────────────────
DATABASE_ID = os.getenv("DATABASE_ID", "immune-me-db")
AUDIT_COLLECTION = "access_audit_log"

# ── Role configuration source ────────────────────────────────────────
# JSON file with "roles", "resources" and "security_rules" sections.
# When unset, the built-in catalog in authz.defaults is used.
ROLE_CONFIG_PATH = os.getenv("ROLE_CONFIG_PATH")

# ── Cache lifetimes (seconds) ────────────────────────────────────────
CONFIG_CACHE_TTL_SECONDS = _int_env("CONFIG_CACHE_TTL_SECONDS", 300)
ROLE_CACHE_TTL_SECONDS = _int_env("ROLE_CACHE_TTL_SECONDS", 300)
DECISION_CACHE_TTL_SECONDS = _int_env("DECISION_CACHE_TTL_SECONDS", 60)
CACHE_SWEEP_INTERVAL_SECONDS = _int_env("CACHE_SWEEP_INTERVAL_SECONDS", 60)
MAX_CACHE_ENTRIES = 10000

# ── Secure queries ───────────────────────────────────────────────────
QUERY_DEFAULT_LIMIT = _int_env("QUERY_DEFAULT_LIMIT", 25)
QUERY_MAX_LIMIT = _int_env("QUERY_MAX_LIMIT", 100)

# ── Migration ────────────────────────────────────────────────────────
MIGRATION_DRY_RUN = os.getenv("MIGRATION_DRY_RUN", "").lower() in {"1", "true", "yes"}

# ── Labels / groups ──────────────────────────────────────────────────
FACILITY_LABEL_PREFIX = "facility_"
FACILITY_GROUP_PREFIX = "facility-"
ACTIVE_USER_STATUSES = {"active", "true", "1"}


def get_env(name: str) -> str:
    """Return an environment variable or exit with an error message."""
    value = os.getenv(name)
    if not value:
        print(f"ERROR: env var {name} is not set", file=sys.stderr)
        sys.exit(1)
    return value
