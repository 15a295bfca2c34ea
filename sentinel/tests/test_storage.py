from __future__ import annotations

from datetime import timedelta

import pytest

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
    Severity,
)
from sentinel.storage import (
    append_execution,
    append_scan_history,
    connect,
    delete_schedule,
    get_alert_settings,
    get_schedule,
    last_successful_delivery,
    latest_health_score,
    list_due_schedules,
    list_executions,
    list_scan_history,
    log_delivery,
    record_schedule_run,
    save_health_score,
    to_db_timestamp,
    upsert_alert_settings,
    upsert_schedule,
)


def test_timestamps_are_fixed_width_utc(now):
    assert to_db_timestamp(now) == "2024-03-06T12:00:00.000000+00:00"
    assert len(to_db_timestamp(now + timedelta(microseconds=5))) == len(to_db_timestamp(now))


def test_execution_window_is_half_open(db_path, now):
    for hours_ago in (0, 1, 24, 25):
        append_execution(
            db_path,
            ExecutionRecord(
                workflow_id="wf-1",
                tenant_id="t1",
                status=ExecutionStatus.FAILED,
                occurred_at=now - timedelta(hours=hours_ago),
            ),
        )
    records = list_executions(db_path, "wf-1", start=now - timedelta(hours=24), end=now, tenant_id="t1")
    assert [record.occurred_at for record in records] == [now, now - timedelta(hours=1)]


def test_executions_are_scoped_by_tenant(db_path, now):
    append_execution(db_path, ExecutionRecord("wf-1", ExecutionStatus.SUCCESS, now, tenant_id="t1"))
    append_execution(db_path, ExecutionRecord("wf-1", ExecutionStatus.SUCCESS, now, tenant_id="t2"))
    assert len(list_executions(db_path, "wf-1", tenant_id="t1")) == 1
    assert len(list_executions(db_path, "wf-1")) == 2


def test_alert_settings_are_replaced_wholesale(db_path, now):
    assert get_alert_settings(db_path, "t1") is None
    upsert_alert_settings(db_path, "t1", AlertSettings(failure_threshold=5, alert_email="ops@example.com"), now)
    upsert_alert_settings(db_path, "t1", AlertSettings(failure_threshold=2), now)
    stored = get_alert_settings(db_path, "t1")
    assert stored == AlertSettings(failure_threshold=2)


def test_schedule_round_trip_and_due_lookup(db_path, now):
    schedule = ScanSchedule(tenant_id="t1", next_scan_at=now - timedelta(minutes=1))
    upsert_schedule(db_path, schedule, now)
    upsert_schedule(db_path, ScanSchedule(tenant_id="t2", next_scan_at=now + timedelta(hours=1)), now)
    upsert_schedule(db_path, ScanSchedule(tenant_id="t3", enabled=False, next_scan_at=now - timedelta(hours=1)), now)

    assert get_schedule(db_path, "t1").to_dict() == schedule.to_dict()
    assert [item.tenant_id for item in list_due_schedules(db_path, now)] == ["t1"]

    assert record_schedule_run(db_path, "t1", now, now + timedelta(days=1))
    assert get_schedule(db_path, "t1").next_scan_at == now + timedelta(days=1)
    assert list_due_schedules(db_path, now) == []


def test_delete_schedule_keeps_history(db_path, now):
    upsert_schedule(db_path, ScanSchedule(tenant_id="t1"), now)
    append_scan_history(
        db_path,
        ScanHistoryEntry(tenant_id="t1", started_at=now, completed_at=now, status=ScanStatus.SUCCESS),
    )
    assert delete_schedule(db_path, "t1") is True
    assert delete_schedule(db_path, "t1") is False
    assert len(list_scan_history(db_path, "t1")) == 1


def test_scan_history_is_newest_first(db_path, now):
    for minutes in (0, 10, 5):
        started = now + timedelta(minutes=minutes)
        append_scan_history(
            db_path,
            ScanHistoryEntry(tenant_id="t1", started_at=started, completed_at=started, status=ScanStatus.PARTIAL),
        )
    history = list_scan_history(db_path, "t1", limit=2)
    assert [entry.started_at for entry in history] == [now + timedelta(minutes=10), now + timedelta(minutes=5)]


def test_latest_health_score_restores_findings(db_path, now):
    finding = Finding("cycle", Severity.CRITICAL, "loop", 25, node_id="a", node_ids=("a", "b", "a"))
    save_health_score(db_path, "t1", HealthScore("wf-1", 75, [finding], now - timedelta(hours=1), grade="Good"))
    save_health_score(db_path, "t1", HealthScore("wf-1", 100, [], now, grade="Excellent"))

    latest = latest_health_score(db_path, "t1", "wf-1")
    assert latest.score == 100
    assert latest_health_score(db_path, "t2", "wf-1") is None

    save_health_score(db_path, "t2", HealthScore("wf-1", 75, [finding], now, grade="Good"))
    assert latest_health_score(db_path, "t2", "wf-1").findings == [finding]


def test_last_successful_delivery_ignores_failures(db_path, now):
    log_delivery(db_path, "t1", "fp", DispatchResult("webhook", True), {}, now - timedelta(minutes=30))
    log_delivery(db_path, "t1", "fp", DispatchResult("webhook", False, "HTTP 500"), {}, now)
    assert last_successful_delivery(db_path, "t1", "fp") == now - timedelta(minutes=30)
    assert last_successful_delivery(db_path, "t1", "other") is None


def test_failed_transaction_rolls_back(db_path, now):
    with pytest.raises(RuntimeError):
        with connect(db_path) as conn:
            conn.execute(
                "INSERT INTO scan_history (id, tenant_id, started_at, completed_at, status) VALUES (?, ?, ?, ?, ?)",
                ("x", "t1", to_db_timestamp(now), to_db_timestamp(now), "success"),
            )
            raise RuntimeError("boom")
    assert list_scan_history(db_path, "t1") == []


def test_unopenable_database_raises_store_unavailable(tmp_path):
    blocker = tmp_path / "file"
    blocker.write_text("x", encoding="utf-8")
    with pytest.raises(StoreUnavailable):
        with connect(str(blocker / "sentinel.db")):
            pass
