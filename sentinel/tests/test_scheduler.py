from __future__ import annotations

import json
import threading
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock, patch

import pytest

from sentinel.errors import ScanInProgress, ScheduleNotFound, SourceUnavailable
from sentinel.models import AlertSettings, ScanSchedule, ScanStatus
from sentinel.rules import analyze
from sentinel.scheduler import ScanScheduler, ScheduleState, compute_next_scan_at
from sentinel.sources import DirectoryWorkflowSource, StaticWorkflowSource
from sentinel.storage import get_schedule, list_scan_history, upsert_alert_settings


def utc(*args):
    return datetime(*args, tzinfo=timezone.utc)


class Clock:
    def __init__(self, value):
        self.value = value

    def __call__(self):
        return self.value


class BlockingSource:
    def __init__(self, graphs):
        self.graphs = graphs
        self.entered = threading.Event()
        self.release = threading.Event()

    def fetch_workflows(self, tenant_id):
        self.entered.set()
        self.release.wait(timeout=5)
        return list(self.graphs)


class BrokenSource:
    def fetch_workflows(self, tenant_id):
        raise SourceUnavailable("platform API returned 502")


@pytest.fixture
def clock(now):
    return Clock(now)


@pytest.fixture
def healthy_graph(make_graph):
    return make_graph([("t", "trigger"), ("a", "action", {"retry": 2})], [("t", "a")], workflow_id="wf-ok")


@pytest.fixture
def make_scheduler(db_path, clock):
    created = []

    def _make(source, **kwargs):
        scheduler = ScanScheduler(db_path, source, clock=clock, **kwargs)
        created.append(scheduler)
        return scheduler

    yield _make
    for scheduler in created:
        scheduler.shutdown()


# ---------------------------------------------------------------------------
# next run computation
# ---------------------------------------------------------------------------

def test_daily_later_today_in_local_time():
    # 01:00 CST
    assert compute_next_scan_at("daily", "02:00", "America/Chicago", utc(2024, 3, 6, 7, 0)) == utc(2024, 3, 6, 8, 0)


def test_daily_already_passed_rolls_to_tomorrow(now):
    assert compute_next_scan_at("daily", "02:00", "America/Chicago", now) == utc(2024, 3, 7, 8, 0)


def test_next_run_is_strictly_in_the_future():
    exact = utc(2024, 3, 6, 8, 0)
    assert compute_next_scan_at("daily", "02:00", "America/Chicago", exact) == utc(2024, 3, 7, 8, 0)


def test_daily_after_dst_change_uses_new_offset():
    assert compute_next_scan_at("daily", "02:00", "America/Chicago", utc(2024, 3, 11, 12, 0)) == utc(2024, 3, 12, 7, 0)


def test_weekly_on_a_skipped_local_time_resolves_after_the_jump(now):
    # Sunday 2024-03-10 02:00 does not exist in Chicago
    assert compute_next_scan_at("weekly", "02:00", "America/Chicago", now) == utc(2024, 3, 10, 8, 0)


def test_weekly_on_a_given_weekday(now):
    assert compute_next_scan_at("weekly", "09:30", "UTC", now, day_of_week=2) == utc(2024, 3, 13, 9, 30)
    assert compute_next_scan_at("weekly", "13:00", "UTC", now, day_of_week=2) == utc(2024, 3, 6, 13, 0)


# ---------------------------------------------------------------------------
# scans
# ---------------------------------------------------------------------------

def test_successful_scan_persists_history(db_path, make_scheduler, healthy_graph):
    scheduler = make_scheduler(StaticWorkflowSource({"t1": [healthy_graph]}))
    entry = scheduler.run_scan("t1")
    assert entry.status is ScanStatus.SUCCESS
    assert entry.workflows_scanned == 1
    assert entry.trigger == "manual"
    assert list_scan_history(db_path, "t1")[0].id == entry.id


def test_invalid_graph_makes_the_scan_partial(make_scheduler, make_graph, healthy_graph):
    broken = make_graph([("t", "trigger")], [("t", "ghost")], workflow_id="wf-broken")
    scheduler = make_scheduler(StaticWorkflowSource({"t1": [healthy_graph, broken]}))
    entry = scheduler.run_scan("t1")
    assert entry.status is ScanStatus.PARTIAL
    assert entry.workflows_scanned == 1
    assert "wf-broken" in entry.error_message


def test_crash_in_one_workflow_does_not_abort_the_scan(db_path, make_scheduler, make_graph, healthy_graph):
    crashing = make_graph([("t", "trigger")], workflow_id="wf-crash")

    def crash_on_one(graph, config=None, budget=None):
        if graph.id == "wf-crash":
            raise AttributeError("'int' object has no attribute 'lower'")
        return analyze(graph, config, budget)

    scheduler = make_scheduler(StaticWorkflowSource({"t1": [healthy_graph, crashing]}))
    with patch("sentinel.scheduler.analyze", side_effect=crash_on_one):
        entry = scheduler.run_scan("t1", "all")

    assert entry.status is ScanStatus.PARTIAL
    assert entry.workflows_scanned == 1
    assert "wf-crash" in entry.error_message
    assert [item.id for item in list_scan_history(db_path, "t1")] == [entry.id]


def test_numeric_edge_label_is_analysed(make_scheduler, make_graph, healthy_graph):
    labelled = make_graph(
        [("t", "trigger"), ("a", "action", {"retry": 1})], [("t", "a", 1)], workflow_id="wf-labelled"
    )
    entry = make_scheduler(StaticWorkflowSource({"t1": [healthy_graph, labelled]})).run_scan("t1", "all")
    assert entry.status is ScanStatus.SUCCESS
    assert entry.workflows_scanned == 2


def test_unreadable_exports_make_the_scan_partial(db_path, make_scheduler, tmp_path):
    tenant_dir = tmp_path / "exports" / "t1"
    tenant_dir.mkdir(parents=True)
    good = {"id": "wf-good", "nodes": [{"id": "t", "type": "form_submitted"}], "edges": []}
    (tenant_dir / "good.json").write_text(json.dumps(good), encoding="utf-8")
    (tenant_dir / "bad.json").write_text(json.dumps({"id": "wf-bad", "edges": [{"source": "t"}]}), encoding="utf-8")
    (tenant_dir / "list.json").write_text("[]", encoding="utf-8")

    entry = make_scheduler(DirectoryWorkflowSource(tmp_path / "exports")).run_scan("t1", "all")

    assert entry.status is ScanStatus.PARTIAL
    assert entry.workflows_scanned == 1
    assert "bad.json" in entry.error_message
    assert "list.json" in entry.error_message
    assert [item.id for item in list_scan_history(db_path, "t1")] == [entry.id]


def test_nothing_analysed_is_a_failed_scan(make_scheduler, make_graph):
    broken = make_graph([("t", "trigger")], [("t", "ghost")], workflow_id="wf-broken")
    scheduler = make_scheduler(StaticWorkflowSource({"t1": [broken]}))
    assert scheduler.run_scan("t1").status is ScanStatus.FAILED


def test_unavailable_source_is_recorded_as_failed(db_path, make_scheduler):
    scheduler = make_scheduler(BrokenSource())
    entry = scheduler.run_scan("t1")
    assert entry.status is ScanStatus.FAILED
    assert entry.error_message == "platform API returned 502"
    assert list_scan_history(db_path, "t1")[0].status is ScanStatus.FAILED
    assert not scheduler.is_running("t1")


def test_scope_filters_inactive_workflows(make_scheduler, make_graph, healthy_graph):
    draft = make_graph([("t", "trigger")], workflow_id="wf-draft", status="draft")
    scheduler = make_scheduler(StaticWorkflowSource({"t1": [healthy_graph, draft]}))
    assert scheduler.run_scan("t1").workflows_scanned == 1
    assert scheduler.run_scan("t1", scope="all").workflows_scanned == 2


def test_concurrent_scan_for_same_tenant_is_rejected(make_scheduler, healthy_graph):
    source = BlockingSource([healthy_graph])
    scheduler = make_scheduler(source)
    results = []
    worker = threading.Thread(target=lambda: results.append(scheduler.run_scan("t1")))
    worker.start()
    assert source.entered.wait(timeout=5)

    assert scheduler.state("t1") is ScheduleState.RUNNING
    with pytest.raises(ScanInProgress):
        scheduler.run_scan("t1")

    source.release.set()
    worker.join(timeout=5)
    assert results[0].status is ScanStatus.SUCCESS
    assert scheduler.state("t1") is ScheduleState.IDLE


# ---------------------------------------------------------------------------
# schedule management
# ---------------------------------------------------------------------------

def test_upsert_computes_next_run_and_keeps_id(db_path, make_scheduler, now):
    scheduler = make_scheduler(StaticWorkflowSource())
    first = scheduler.upsert_schedule("t1", ScanSchedule(tenant_id="t1"))
    assert first.next_scan_at == utc(2024, 3, 7, 8, 0)
    assert scheduler.state("t1") is ScheduleState.SCHEDULED

    second = scheduler.upsert_schedule("t1", ScanSchedule(tenant_id="t1", preferred_time="23:00", timezone="UTC"))
    assert second.id == first.id
    assert get_schedule(db_path, "t1").next_scan_at == utc(2024, 3, 6, 23, 0)


def test_disabled_schedule_has_no_next_run(make_scheduler):
    scheduler = make_scheduler(StaticWorkflowSource())
    schedule = scheduler.upsert_schedule("t1", ScanSchedule(tenant_id="t1", enabled=False))
    assert schedule.next_scan_at is None
    assert scheduler.state("t1") is ScheduleState.IDLE


def test_missing_schedule_raises(make_scheduler):
    scheduler = make_scheduler(StaticWorkflowSource())
    with pytest.raises(ScheduleNotFound):
        scheduler.get_schedule("t1")
    with pytest.raises(ScheduleNotFound):
        scheduler.delete_schedule("t1")
    with pytest.raises(ScheduleNotFound):
        scheduler.run_schedule_now("t1")


def test_delete_keeps_scan_history(db_path, make_scheduler, healthy_graph):
    scheduler = make_scheduler(StaticWorkflowSource({"t1": [healthy_graph]}))
    scheduler.upsert_schedule("t1", ScanSchedule(tenant_id="t1"))
    entry = scheduler.run_schedule_now("t1")
    assert entry.schedule_id is not None

    scheduler.delete_schedule("t1")
    assert scheduler.state("t1") is ScheduleState.IDLE
    assert [item.id for item in list_scan_history(db_path, "t1")] == [entry.id]


# ---------------------------------------------------------------------------
# tick loop
# ---------------------------------------------------------------------------

def test_tick_runs_due_schedules_and_reschedules(db_path, make_scheduler, clock, healthy_graph):
    scheduler = make_scheduler(StaticWorkflowSource({"t1": [healthy_graph], "t2": [healthy_graph]}))
    scheduler.upsert_schedule("t1", ScanSchedule(tenant_id="t1"))
    scheduler.upsert_schedule("t2", ScanSchedule(tenant_id="t2", frequency="weekly"))

    assert scheduler.tick() == []

    clock.value = utc(2024, 3, 7, 9, 0)
    assert scheduler.tick() == ["t1"]
    scheduler.wait_idle(timeout=5)

    history = list_scan_history(db_path, "t1")
    assert [(entry.trigger, entry.status) for entry in history] == [("scheduled", ScanStatus.SUCCESS)]
    schedule = get_schedule(db_path, "t1")
    assert schedule.last_scan_at == clock.value
    assert schedule.next_scan_at == utc(2024, 3, 8, 8, 0)
    assert scheduler.tick() == []


def test_tick_skips_tenant_with_running_scan(make_scheduler, healthy_graph, clock):
    source = BlockingSource([healthy_graph])
    scheduler = make_scheduler(source)
    scheduler.upsert_schedule("t1", ScanSchedule(tenant_id="t1"))
    worker = threading.Thread(target=scheduler.run_schedule_now, args=("t1",))
    worker.start()
    assert source.entered.wait(timeout=5)

    clock.value = utc(2024, 3, 7, 9, 0)
    assert scheduler.tick() == []

    source.release.set()
    worker.join(timeout=5)
    assert scheduler.state("t1") is ScheduleState.SCHEDULED


def test_missed_runs_fire_once(db_path, make_scheduler, clock, healthy_graph):
    scheduler = make_scheduler(StaticWorkflowSource({"t1": [healthy_graph]}))
    scheduler.upsert_schedule("t1", ScanSchedule(tenant_id="t1"))

    clock.value = utc(2024, 3, 10, 12, 0)
    assert scheduler.tick() == ["t1"]
    scheduler.wait_idle(timeout=5)
    assert scheduler.tick() == []
    assert len(list_scan_history(db_path, "t1")) == 1


def test_run_forever_stops_on_event(make_scheduler):
    scheduler = make_scheduler(StaticWorkflowSource(), tick_seconds=0.01)
    stop = threading.Event()
    loop = threading.Thread(target=scheduler.run_forever, args=(stop,))
    loop.start()
    stop.set()
    loop.join(timeout=5)
    assert not loop.is_alive()


# ---------------------------------------------------------------------------
# alerts after scans
# ---------------------------------------------------------------------------

def test_critical_findings_are_dispatched_after_the_scan(db_path, make_scheduler, make_graph, now):
    looping = make_graph(
        [("t", "trigger"), ("a", "action", {"retry": 1}), ("b", "action", {"retry": 1})],
        [("t", "a"), ("a", "b"), ("b", "a")],
        workflow_id="wf-loop",
        name="Nurture",
    )
    dispatcher = MagicMock()
    scheduler = make_scheduler(StaticWorkflowSource({"t1": [looping]}), dispatcher=dispatcher)
    upsert_alert_settings(db_path, "t1", AlertSettings(webhook_url="https://hooks.example.com/a"), now)

    entry = scheduler.run_scan("t1")
    scheduler.wait_idle(timeout=5)

    assert entry.critical_issues == 1
    alert, settings = dispatcher.dispatch_sync.call_args.args
    assert alert.type == "critical_issue"
    assert alert.workflow_id == "wf-loop"
    assert alert.workflow_name == "Nurture"
    assert settings.webhook_url == "https://hooks.example.com/a"


def test_no_alert_without_settings(make_scheduler, make_graph):
    looping = make_graph([("t", "trigger"), ("a", "action")], [("t", "a"), ("a", "a")])
    dispatcher = MagicMock()
    scheduler = make_scheduler(StaticWorkflowSource({"t1": [looping]}), dispatcher=dispatcher)
    scheduler.run_scan("t1")
    scheduler.wait_idle(timeout=5)
    dispatcher.dispatch_sync.assert_not_called()


def test_dispatch_errors_do_not_escape(make_scheduler):
    dispatcher = MagicMock()
    dispatcher.dispatch_sync.side_effect = RuntimeError("smtp exploded")
    scheduler = make_scheduler(StaticWorkflowSource(), dispatcher=dispatcher)
    alert = MagicMock(tenant_id="t1")
    future = scheduler.submit_alert(alert, AlertSettings())
    assert future.result(timeout=5) is None
