"""
Centralised configuration constants and environment helpers.
"""

import os
import sys

from dotenv import load_dotenv

load_dotenv()

# ── Query limits ─────────────────────────────────────────────────────
MAX_RESULT_ROWS = 1000
QUERY_TIMEOUT_MS = int(os.getenv("QUERY_TIMEOUT_MS", "120000"))

# Sales detail rows switch from daily to monthly buckets past this span.
MONTHLY_GROUPING_THRESHOLD_DAYS = 62

# ── Filter defaults ("default range = no filter") ────────────────────
PRICE_RANGE_DEFAULT_MAX = 100000
PERCENT_RANGE_DEFAULT_MAX = 100

# Median-relative evolution only considers evolutions inside this band.
EVOLUTION_BAND = (-100.0, 100.0)

# ── Cache ────────────────────────────────────────────────────────────
REDIS_URL = os.getenv("REDIS_URL", "")
CACHE_ENABLED = os.getenv("CACHE_ENABLED", "false").strip().lower() == "true" and bool(REDIS_URL)

CACHE_TTL_REFERENCE = 43200  # 12 hours, slow-changing reference analytics
CACHE_TTL_SALES = 3600       # 1 hour, transactional sales

# ── Logging ──────────────────────────────────────────────────────────
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

# ── API server ───────────────────────────────────────────────────────
SECRET_KEY = os.getenv("JWT_SECRET_KEY", "dev-secret-key-change-in-production")
TOKEN_EXPIRY_HOURS = int(os.getenv("TOKEN_EXPIRY_HOURS", "24"))


def get_env(name: str) -> str:
    """Return an environment variable or exit with an error message."""
    value = os.getenv(name)
    if not value:
        print(f"ERROR: env var {name} is not set", file=sys.stderr)
        sys.exit(1)
    return value
