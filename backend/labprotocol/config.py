"""Environment-driven settings for the protocol analysis service."""

from __future__ import annotations

import os

# purpose: centralize tunables read from the process environment at import time
# status: pilot


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError:
        return default


ANALYSIS_BATCH_LIMIT = _int_env("ANALYSIS_BATCH_LIMIT", 10)
ANALYSIS_MAX_WORKERS = _int_env("ANALYSIS_MAX_WORKERS", 4)
ANALYSIS_CACHE_TTL_SECONDS = _int_env("ANALYSIS_CACHE_TTL_SECONDS", 0)
ANALYSIS_MAX_SUGGESTIONS = _int_env("ANALYSIS_MAX_SUGGESTIONS", 10)
REGISTRY_CATALOG_DIR = os.getenv("REGISTRY_CATALOG_DIR") or None
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
SENTRY_DSN = os.getenv("SENTRY_DSN")
TESTING = os.getenv("TESTING") == "1"
CORS_ORIGINS = os.getenv("CORS_ORIGINS", "http://localhost:3000").split(",")
