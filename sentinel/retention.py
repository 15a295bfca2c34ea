from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any

from sentinel.models import utc_now
from sentinel.storage import delete_executions_before, delete_health_scores_before

LOGGER = logging.getLogger(__name__)


def apply_retention(settings: dict[str, Any], now: datetime | None = None, dry_run: bool = False) -> dict[str, int | bool]:
    """Prune execution records and health-score snapshots. Scan history is kept."""
    retention = settings.get("retention", {})
    enabled = bool(retention.get("enabled", False))
    if not enabled:
        return {"executions_removed": 0, "health_scores_removed": 0, "dry_run": dry_run}

    executions_days = int(retention.get("executions_days", 90))
    health_scores_days = int(retention.get("health_scores_days", 180))
    db_path = settings["paths"]["db_path"]
    now = now or utc_now()

    executions_removed = delete_executions_before(db_path, now - timedelta(days=executions_days), dry_run=dry_run)
    health_scores_removed = delete_health_scores_before(db_path, now - timedelta(days=health_scores_days), dry_run=dry_run)
    LOGGER.info(
        "Retention %s: %d execution records, %d health score snapshots",
        "preview" if dry_run else "applied",
        executions_removed,
        health_scores_removed,
    )
    return {
        "executions_removed": executions_removed,
        "health_scores_removed": health_scores_removed,
        "dry_run": dry_run,
    }
