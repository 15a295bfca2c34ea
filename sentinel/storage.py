from __future__ import annotations

import json
import logging
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterator

from sentinel.errors import StoreUnavailable
from sentinel.models import (
    AlertSettings,
    DispatchResult,
    ExecutionRecord,
    ExecutionStatus,
    Finding,
    HealthScore,
    ScanHistoryEntry,
    ScanSchedule,
    ScanStatus,
    parse_datetime,
)

LOGGER = logging.getLogger(__name__)


SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS execution_records (
    id TEXT PRIMARY KEY,
    tenant_id TEXT NOT NULL,
    workflow_id TEXT NOT NULL,
    status TEXT NOT NULL,
    execution_time_ms INTEGER,
    failed_action_id TEXT,
    failed_action_name TEXT,
    error_message TEXT,
    occurred_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS scan_history (
    id TEXT PRIMARY KEY,
    schedule_id TEXT,
    tenant_id TEXT NOT NULL,
    started_at TEXT NOT NULL,
    completed_at TEXT NOT NULL,
    status TEXT NOT NULL,
    workflows_scanned INTEGER NOT NULL DEFAULT 0,
    issues_found INTEGER NOT NULL DEFAULT 0,
    critical_issues INTEGER NOT NULL DEFAULT 0,
    trigger TEXT NOT NULL DEFAULT 'manual',
    error_message TEXT
);

CREATE TABLE IF NOT EXISTS alert_settings (
    tenant_id TEXT PRIMARY KEY,
    enabled INTEGER NOT NULL,
    failure_threshold INTEGER NOT NULL,
    time_window_hours INTEGER NOT NULL,
    alert_on_critical INTEGER NOT NULL,
    alert_email TEXT,
    webhook_url TEXT,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS scan_schedules (
    tenant_id TEXT PRIMARY KEY,
    id TEXT NOT NULL,
    enabled INTEGER NOT NULL,
    frequency TEXT NOT NULL,
    preferred_time TEXT NOT NULL,
    timezone TEXT NOT NULL,
    scan_scope TEXT NOT NULL,
    day_of_week INTEGER NOT NULL,
    next_scan_at TEXT,
    last_scan_at TEXT,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS health_scores (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    tenant_id TEXT NOT NULL,
    workflow_id TEXT NOT NULL,
    workflow_name TEXT NOT NULL,
    score INTEGER NOT NULL,
    grade TEXT NOT NULL,
    findings_json TEXT NOT NULL,
    scan_id TEXT,
    computed_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS alert_deliveries (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    tenant_id TEXT NOT NULL,
    fingerprint TEXT NOT NULL,
    channel TEXT NOT NULL,
    success INTEGER NOT NULL,
    error TEXT,
    payload TEXT NOT NULL,
    delivered_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_executions_workflow ON execution_records(tenant_id, workflow_id, occurred_at);
CREATE INDEX IF NOT EXISTS idx_executions_occurred_at ON execution_records(occurred_at);
CREATE INDEX IF NOT EXISTS idx_scan_history_tenant ON scan_history(tenant_id, started_at);
CREATE INDEX IF NOT EXISTS idx_health_scores_workflow ON health_scores(tenant_id, workflow_id, computed_at);
CREATE INDEX IF NOT EXISTS idx_deliveries_fingerprint ON alert_deliveries(tenant_id, fingerprint, delivered_at);
"""


def to_db_timestamp(value: datetime) -> str:
    """Fixed-width UTC timestamp so that string comparison matches time order."""
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%f+00:00")


def _optional_timestamp(value: datetime | None) -> str | None:
    return to_db_timestamp(value) if value is not None else None


@contextmanager
def connect(db_path: str) -> Iterator[sqlite3.Connection]:
    try:
        path = Path(db_path)
        path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(path, timeout=30)
    except (OSError, sqlite3.Error) as exc:
        raise StoreUnavailable(f"Cannot open database {db_path}: {exc}") from exc
    conn.row_factory = sqlite3.Row
    try:
        yield conn
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()


def init_db(db_path: str) -> None:
    with connect(db_path) as conn:
        conn.execute("PRAGMA journal_mode=WAL")
        conn.executescript(SCHEMA_SQL)
    LOGGER.info("SQLite initialized at %s", db_path)


# ---------------------------------------------------------------------------
# Execution log
# ---------------------------------------------------------------------------

def append_execution(db_path: str, record: ExecutionRecord) -> None:
    with connect(db_path) as conn:
        conn.execute(
            """
            INSERT INTO execution_records (
                id, tenant_id, workflow_id, status, execution_time_ms,
                failed_action_id, failed_action_name, error_message, occurred_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                record.id,
                record.tenant_id,
                record.workflow_id,
                record.status.value,
                record.execution_time_ms,
                record.failed_action_id,
                record.failed_action_name,
                record.error_message,
                to_db_timestamp(record.occurred_at),
            ),
        )
    LOGGER.debug("Execution %s recorded for workflow %s: %s", record.id, record.workflow_id, record.status.value)


def _execution_from_row(row: sqlite3.Row) -> ExecutionRecord:
    return ExecutionRecord(
        id=row["id"],
        tenant_id=row["tenant_id"],
        workflow_id=row["workflow_id"],
        status=ExecutionStatus(row["status"]),
        occurred_at=parse_datetime(row["occurred_at"]),
        execution_time_ms=row["execution_time_ms"],
        failed_action_id=row["failed_action_id"],
        failed_action_name=row["failed_action_name"],
        error_message=row["error_message"],
    )


def list_executions(
    db_path: str,
    workflow_id: str,
    start: datetime | None = None,
    end: datetime | None = None,
    tenant_id: str | None = None,
    status: ExecutionStatus | None = None,
    limit: int | None = None,
) -> list[ExecutionRecord]:
    """Executions of a workflow in ``(start, end]``, newest first."""
    query = "SELECT * FROM execution_records WHERE workflow_id = ?"
    params: list[Any] = [workflow_id]
    if tenant_id:
        query += " AND tenant_id = ?"
        params.append(tenant_id)
    if start is not None:
        query += " AND occurred_at > ?"
        params.append(to_db_timestamp(start))
    if end is not None:
        query += " AND occurred_at <= ?"
        params.append(to_db_timestamp(end))
    if status is not None:
        query += " AND status = ?"
        params.append(status.value)
    query += " ORDER BY occurred_at DESC"
    if limit is not None:
        query += " LIMIT ?"
        params.append(limit)
    with connect(db_path) as conn:
        rows = conn.execute(query, params).fetchall()
    return [_execution_from_row(row) for row in rows]


def delete_executions_before(db_path: str, cutoff: datetime, dry_run: bool = False) -> int:
    with connect(db_path) as conn:
        if dry_run:
            return conn.execute(
                "SELECT COUNT(*) AS value FROM execution_records WHERE occurred_at < ?",
                (to_db_timestamp(cutoff),),
            ).fetchone()["value"]
        cursor = conn.execute("DELETE FROM execution_records WHERE occurred_at < ?", (to_db_timestamp(cutoff),))
        return cursor.rowcount


# ---------------------------------------------------------------------------
# Scan history
# ---------------------------------------------------------------------------

def append_scan_history(db_path: str, entry: ScanHistoryEntry) -> None:
    with connect(db_path) as conn:
        conn.execute(
            """
            INSERT INTO scan_history (
                id, schedule_id, tenant_id, started_at, completed_at, status,
                workflows_scanned, issues_found, critical_issues, trigger, error_message
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                entry.id,
                entry.schedule_id,
                entry.tenant_id,
                to_db_timestamp(entry.started_at),
                to_db_timestamp(entry.completed_at),
                entry.status.value,
                entry.workflows_scanned,
                entry.issues_found,
                entry.critical_issues,
                entry.trigger,
                entry.error_message,
            ),
        )
    LOGGER.info(
        "Persisted scan %s for tenant %s: %s (%s workflows, %s issues)",
        entry.id,
        entry.tenant_id,
        entry.status.value,
        entry.workflows_scanned,
        entry.issues_found,
    )


def list_scan_history(db_path: str, tenant_id: str, limit: int = 20) -> list[ScanHistoryEntry]:
    with connect(db_path) as conn:
        rows = conn.execute(
            "SELECT * FROM scan_history WHERE tenant_id = ? ORDER BY started_at DESC LIMIT ?",
            (tenant_id, limit),
        ).fetchall()
    return [
        ScanHistoryEntry(
            id=row["id"],
            schedule_id=row["schedule_id"],
            tenant_id=row["tenant_id"],
            started_at=parse_datetime(row["started_at"]),
            completed_at=parse_datetime(row["completed_at"]),
            status=ScanStatus(row["status"]),
            workflows_scanned=row["workflows_scanned"],
            issues_found=row["issues_found"],
            critical_issues=row["critical_issues"],
            trigger=row["trigger"],
            error_message=row["error_message"],
        )
        for row in rows
    ]


# ---------------------------------------------------------------------------
# Alert settings (one row per tenant, replaced wholesale)
# ---------------------------------------------------------------------------

def upsert_alert_settings(db_path: str, tenant_id: str, settings: AlertSettings, updated_at: datetime) -> None:
    with connect(db_path) as conn:
        conn.execute(
            """
            INSERT OR REPLACE INTO alert_settings (
                tenant_id, enabled, failure_threshold, time_window_hours,
                alert_on_critical, alert_email, webhook_url, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                tenant_id,
                int(settings.enabled),
                settings.failure_threshold,
                settings.time_window_hours,
                int(settings.alert_on_critical),
                settings.alert_email,
                settings.webhook_url,
                to_db_timestamp(updated_at),
            ),
        )
    LOGGER.info("Alert settings replaced for tenant %s", tenant_id)


def get_alert_settings(db_path: str, tenant_id: str) -> AlertSettings | None:
    with connect(db_path) as conn:
        row = conn.execute("SELECT * FROM alert_settings WHERE tenant_id = ?", (tenant_id,)).fetchone()
    if row is None:
        return None
    return AlertSettings(
        enabled=bool(row["enabled"]),
        failure_threshold=row["failure_threshold"],
        time_window_hours=row["time_window_hours"],
        alert_on_critical=bool(row["alert_on_critical"]),
        alert_email=row["alert_email"],
        webhook_url=row["webhook_url"],
    )


# ---------------------------------------------------------------------------
# Scan schedules (at most one per tenant)
# ---------------------------------------------------------------------------

def _schedule_from_row(row: sqlite3.Row) -> ScanSchedule:
    return ScanSchedule(
        id=row["id"],
        tenant_id=row["tenant_id"],
        enabled=bool(row["enabled"]),
        frequency=row["frequency"],
        preferred_time=row["preferred_time"],
        timezone=row["timezone"],
        scan_scope=row["scan_scope"],
        day_of_week=row["day_of_week"],
        next_scan_at=parse_datetime(row["next_scan_at"]),
        last_scan_at=parse_datetime(row["last_scan_at"]),
    )


def upsert_schedule(db_path: str, schedule: ScanSchedule, updated_at: datetime) -> None:
    with connect(db_path) as conn:
        conn.execute(
            """
            INSERT OR REPLACE INTO scan_schedules (
                tenant_id, id, enabled, frequency, preferred_time, timezone,
                scan_scope, day_of_week, next_scan_at, last_scan_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                schedule.tenant_id,
                schedule.id,
                int(schedule.enabled),
                schedule.frequency.value,
                schedule.preferred_time,
                schedule.timezone,
                schedule.scan_scope.value,
                schedule.day_of_week,
                _optional_timestamp(schedule.next_scan_at),
                _optional_timestamp(schedule.last_scan_at),
                to_db_timestamp(updated_at),
            ),
        )


def get_schedule(db_path: str, tenant_id: str) -> ScanSchedule | None:
    with connect(db_path) as conn:
        row = conn.execute("SELECT * FROM scan_schedules WHERE tenant_id = ?", (tenant_id,)).fetchone()
    return _schedule_from_row(row) if row else None


def delete_schedule(db_path: str, tenant_id: str) -> bool:
    with connect(db_path) as conn:
        cursor = conn.execute("DELETE FROM scan_schedules WHERE tenant_id = ?", (tenant_id,))
        return cursor.rowcount > 0


def list_due_schedules(db_path: str, now: datetime) -> list[ScanSchedule]:
    with connect(db_path) as conn:
        rows = conn.execute(
            """
            SELECT * FROM scan_schedules
            WHERE enabled = 1 AND next_scan_at IS NOT NULL AND next_scan_at <= ?
            ORDER BY next_scan_at ASC
            """,
            (to_db_timestamp(now),),
        ).fetchall()
    return [_schedule_from_row(row) for row in rows]


def list_enabled_schedules(db_path: str) -> list[ScanSchedule]:
    with connect(db_path) as conn:
        rows = conn.execute("SELECT * FROM scan_schedules WHERE enabled = 1 ORDER BY tenant_id").fetchall()
    return [_schedule_from_row(row) for row in rows]


def record_schedule_run(db_path: str, tenant_id: str, last_scan_at: datetime, next_scan_at: datetime) -> bool:
    with connect(db_path) as conn:
        cursor = conn.execute(
            "UPDATE scan_schedules SET last_scan_at = ?, next_scan_at = ?, updated_at = ? WHERE tenant_id = ?",
            (to_db_timestamp(last_scan_at), to_db_timestamp(next_scan_at), to_db_timestamp(last_scan_at), tenant_id),
        )
        return cursor.rowcount > 0


# ---------------------------------------------------------------------------
# Health score snapshots
# ---------------------------------------------------------------------------

def save_health_score(db_path: str, tenant_id: str, health: HealthScore, scan_id: str | None = None) -> None:
    with connect(db_path) as conn:
        conn.execute(
            """
            INSERT INTO health_scores (
                tenant_id, workflow_id, workflow_name, score, grade, findings_json, scan_id, computed_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                tenant_id,
                health.workflow_id,
                health.workflow_name,
                health.score,
                health.grade,
                json.dumps([finding.to_dict() for finding in health.findings], ensure_ascii=False),
                scan_id,
                to_db_timestamp(health.computed_at),
            ),
        )


def latest_health_score(db_path: str, tenant_id: str, workflow_id: str) -> HealthScore | None:
    with connect(db_path) as conn:
        row = conn.execute(
            """
            SELECT * FROM health_scores
            WHERE tenant_id = ? AND workflow_id = ?
            ORDER BY computed_at DESC, id DESC LIMIT 1
            """,
            (tenant_id, workflow_id),
        ).fetchone()
    if row is None:
        return None
    return HealthScore(
        workflow_id=row["workflow_id"],
        workflow_name=row["workflow_name"],
        score=row["score"],
        grade=row["grade"],
        findings=[Finding.from_dict(item) for item in json.loads(row["findings_json"])],
        computed_at=parse_datetime(row["computed_at"]),
    )


def delete_health_scores_before(db_path: str, cutoff: datetime, dry_run: bool = False) -> int:
    with connect(db_path) as conn:
        if dry_run:
            return conn.execute(
                "SELECT COUNT(*) AS value FROM health_scores WHERE computed_at < ?",
                (to_db_timestamp(cutoff),),
            ).fetchone()["value"]
        cursor = conn.execute("DELETE FROM health_scores WHERE computed_at < ?", (to_db_timestamp(cutoff),))
        return cursor.rowcount


# ---------------------------------------------------------------------------
# Alert delivery log
# ---------------------------------------------------------------------------

def log_delivery(
    db_path: str,
    tenant_id: str,
    fingerprint: str,
    result: DispatchResult,
    payload: dict[str, Any],
    delivered_at: datetime,
) -> None:
    with connect(db_path) as conn:
        conn.execute(
            """
            INSERT INTO alert_deliveries (tenant_id, fingerprint, channel, success, error, payload, delivered_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                tenant_id,
                fingerprint,
                result.channel,
                int(result.success),
                result.error,
                json.dumps(payload, ensure_ascii=False, default=str),
                to_db_timestamp(delivered_at),
            ),
        )


def last_successful_delivery(db_path: str, tenant_id: str, fingerprint: str) -> datetime | None:
    with connect(db_path) as conn:
        row = conn.execute(
            """
            SELECT MAX(delivered_at) AS value FROM alert_deliveries
            WHERE tenant_id = ? AND fingerprint = ? AND success = 1
            """,
            (tenant_id, fingerprint),
        ).fetchone()
    return parse_datetime(row["value"]) if row and row["value"] else None


def list_deliveries(db_path: str, tenant_id: str, limit: int = 50) -> list[dict[str, Any]]:
    with connect(db_path) as conn:
        rows = conn.execute(
            "SELECT * FROM alert_deliveries WHERE tenant_id = ? ORDER BY delivered_at DESC, id DESC LIMIT ?",
            (tenant_id, limit),
        ).fetchall()
    return [dict(row) for row in rows]


def write_json_file(path: str | Path, payload: dict | list) -> None:
    output = Path(path)
    output.parent.mkdir(parents=True, exist_ok=True)
    with output.open("w", encoding="utf-8") as handle:
        json.dump(payload, handle, indent=2, ensure_ascii=False)
