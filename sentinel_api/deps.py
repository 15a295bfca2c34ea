from __future__ import annotations

import os
from functools import lru_cache

from sentinel.config import DEFAULT_SETTINGS_PATH, resolve_settings
from sentinel.service import SentinelService


@lru_cache(maxsize=1)
def get_service() -> SentinelService:
    """Process-wide service built from ``SENTINEL_SETTINGS``; overridden in tests."""
    settings = resolve_settings(os.getenv("SENTINEL_SETTINGS", DEFAULT_SETTINGS_PATH))
    return SentinelService(settings)
