from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any

import yaml

DEFAULT_SETTINGS_PATH = "config/settings.yaml"


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in {"1", "true", "yes", "on"}


def setup_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )


def load_yaml(path: str) -> dict[str, Any]:
    with open(path, "r", encoding="utf-8") as handle:
        return yaml.safe_load(handle) or {}


def resolve_settings(path: str | None = None) -> dict[str, Any]:
    """Load the YAML settings file (if any) and fill in defaults and env overrides."""
    settings = load_yaml(path) if path and Path(path).exists() else {}
    settings.setdefault("paths", {})
    settings.setdefault("rules", {})
    settings.setdefault("metrics", {})
    settings.setdefault("scheduler", {})
    settings.setdefault("cache", {})
    settings.setdefault("alerts", {})
    settings.setdefault("smtp", {})
    settings.setdefault("webhooks", {})
    settings.setdefault("retention", {})
    settings["paths"].setdefault("db_path", os.getenv("SENTINEL_DB_PATH", "/data/sentinel.db"))
    settings["paths"].setdefault("workflows_dir", os.getenv("SENTINEL_WORKFLOWS_DIR", "/data/workflows"))
    settings["rules"].setdefault("points", {"critical": 25, "high": 15, "medium": 10, "low": 3})
    settings["rules"].setdefault("long_chain_threshold", 10)
    settings["rules"].setdefault("disabled", [])
    settings["metrics"].setdefault("trend_margin_pct", 10.0)
    settings["scheduler"].setdefault("tick_seconds", float(os.getenv("SENTINEL_TICK_SECONDS", "60")))
    settings["scheduler"].setdefault("max_concurrent_scans", int(os.getenv("SENTINEL_MAX_CONCURRENT_SCANS", "4")))
    settings["scheduler"].setdefault(
        "workflow_timeout_seconds", float(os.getenv("SENTINEL_WORKFLOW_TIMEOUT_SECONDS", "30"))
    )
    settings["cache"].setdefault("backend", os.getenv("SENTINEL_CACHE_BACKEND", "local"))
    settings["cache"].setdefault("redis_url", os.getenv("REDIS_URL"))
    settings["cache"].setdefault("ttl_seconds", int(os.getenv("SENTINEL_CACHE_TTL_SECONDS", "300")))
    settings["cache"].setdefault("max_entries", 1024)
    settings["alerts"].setdefault("cooldown_minutes", int(os.getenv("ALERT_COOLDOWN_MINUTES", "60")))
    settings["smtp"].setdefault("host", os.getenv("SMTP_HOST"))
    settings["smtp"].setdefault("port", int(os.getenv("SMTP_PORT", "587")))
    settings["smtp"].setdefault("user", os.getenv("SMTP_USER"))
    settings["smtp"].setdefault("password", os.getenv("SMTP_PASSWORD"))
    settings["smtp"].setdefault("from_address", os.getenv("SMTP_FROM", "alerts@localhost"))
    settings["smtp"].setdefault("use_tls", _env_bool("SMTP_USE_TLS", "true"))
    settings["webhooks"].setdefault("timeout_seconds", float(os.getenv("WEBHOOK_TIMEOUT_SECONDS", "10")))
    settings["webhooks"].setdefault("retry_count", int(os.getenv("WEBHOOK_RETRY_COUNT", "3")))
    settings["webhooks"].setdefault("secret", os.getenv("WEBHOOK_SECRET"))
    settings["retention"].setdefault("enabled", _env_bool("SENTINEL_RETENTION_ENABLED", "false"))
    settings["retention"].setdefault("executions_days", 90)
    settings["retention"].setdefault("health_scores_days", 180)
    return settings
