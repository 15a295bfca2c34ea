"""Rolling failure statistics over the execution log.

All functions are read-only snapshot queries over ``(now - window, now]``.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any

from sentinel.cache import Cache, build_cache_key
from sentinel.models import ExecutionRecord, ExecutionStatus, FailureMetrics, Trend, to_iso, utc_now
from sentinel.storage import list_executions

LOGGER = logging.getLogger(__name__)

DEFAULT_TREND_MARGIN_PCT = 10.0
METRICS_CACHE_TTL_SECONDS = 60


def failure_rate(records: list[ExecutionRecord]) -> float:
    if not records:
        return 0.0
    failed = sum(1 for record in records if record.status is ExecutionStatus.FAILED)
    return round(failed / len(records) * 100, 2)


def classify_trend(first_half_rate: float, second_half_rate: float, margin_pct: float = DEFAULT_TREND_MARGIN_PCT) -> Trend:
    delta = second_half_rate - first_half_rate
    if delta > margin_pct:
        return Trend.WORSENING
    if delta < -margin_pct:
        return Trend.IMPROVING
    return Trend.STABLE


def _last_failure(records: list[ExecutionRecord]) -> dict[str, Any] | None:
    # records are newest first
    for record in records:
        if record.status is ExecutionStatus.FAILED:
            return {
                "occurred_at": to_iso(record.occurred_at),
                "failed_action_id": record.failed_action_id,
                "failed_action_name": record.failed_action_name,
                "error_message": record.error_message,
            }
    return None


def compute_failure_metrics(
    db_path: str,
    workflow_id: str,
    window_hours: int,
    now: datetime | None = None,
    tenant_id: str | None = None,
    trend_margin_pct: float = DEFAULT_TREND_MARGIN_PCT,
    cache: Cache | None = None,
) -> FailureMetrics:
    if window_hours < 1:
        raise ValueError("window_hours must be at least 1")
    window_end = now or utc_now()
    window_start = window_end - timedelta(hours=window_hours)

    cache_key = None
    if cache is not None:
        cache_key = build_cache_key(
            "failure_metrics",
            tenant_id or "",
            workflow_id,
            {"window_hours": window_hours, "minute": window_end.strftime("%Y%m%d%H%M"), "margin": trend_margin_pct},
        )
        cached = cache.get(cache_key)
        if cached is not None:
            return FailureMetrics.from_dict(cached)

    records = list_executions(db_path, workflow_id, start=window_start, end=window_end, tenant_id=tenant_id)
    midpoint = window_start + (window_end - window_start) / 2
    first_half = [record for record in records if record.occurred_at <= midpoint]
    second_half = [record for record in records if record.occurred_at > midpoint]

    timed = [record.execution_time_ms for record in records if record.execution_time_ms is not None]
    metrics = FailureMetrics(
        workflow_id=workflow_id,
        window_start=window_start,
        window_end=window_end,
        total_executions=len(records),
        failed_executions=sum(1 for record in records if record.status is ExecutionStatus.FAILED),
        failure_rate_pct=failure_rate(records),
        trend=classify_trend(failure_rate(first_half), failure_rate(second_half), trend_margin_pct),
        avg_execution_time_ms=round(sum(timed) / len(timed), 2) if timed else 0.0,
        last_failure=_last_failure(records),
    )
    LOGGER.debug(
        "Metrics for workflow %s over %sh: %s/%s failed (%s)",
        workflow_id,
        window_hours,
        metrics.failed_executions,
        metrics.total_executions,
        metrics.trend.value,
    )
    if cache is not None and cache_key is not None:
        cache.set(cache_key, metrics.to_dict(), ttl_seconds=METRICS_CACHE_TTL_SECONDS)
    return metrics


def recent_failures(
    db_path: str,
    workflow_id: str,
    hours: int,
    now: datetime | None = None,
    tenant_id: str | None = None,
) -> list[ExecutionRecord]:
    """Failed executions of the last ``hours``, newest first."""
    end = now or utc_now()
    return list_executions(
        db_path,
        workflow_id,
        start=end - timedelta(hours=hours),
        end=end,
        tenant_id=tenant_id,
        status=ExecutionStatus.FAILED,
    )


def failures_in_window(
    db_path: str,
    workflow_id: str,
    hours: int,
    now: datetime | None = None,
    tenant_id: str | None = None,
) -> int:
    return len(recent_failures(db_path, workflow_id, hours, now=now, tenant_id=tenant_id))


def execution_history(
    db_path: str,
    workflow_id: str,
    limit: int = 50,
    tenant_id: str | None = None,
) -> list[ExecutionRecord]:
    return list_executions(db_path, workflow_id, tenant_id=tenant_id, limit=limit)
