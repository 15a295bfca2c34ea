"""Recurring per-tenant scans.

Each tenant has at most one schedule. A schedule moves through
``idle -> scheduled -> running -> completed|failed -> scheduled`` and back to
``idle`` when it is disabled or deleted. Due schedules are found by ``tick``,
which runs on a fixed interval from ``run_forever`` or from an external
trigger, and scans run on a bounded thread pool. A tenant never has two scans
running at once.
"""

from __future__ import annotations

import logging
import sqlite3
import threading
from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable

from sentinel.alerting import Alert, build_alert, evaluate
from sentinel.cache import Cache
from sentinel.dispatcher import AlertDispatcher
from sentinel.errors import InvalidGraph, ScanInProgress, ScheduleNotFound, SourceUnavailable, StoreUnavailable
from sentinel.metrics import DEFAULT_TREND_MARGIN_PCT, compute_failure_metrics
from sentinel.models import (
    SUNDAY,
    AlertSettings,
    Frequency,
    HealthScore,
    ScanHistoryEntry,
    ScanSchedule,
    ScanScope,
    ScanStatus,
    Severity,
    WorkflowGraph,
    load_timezone,
    new_id,
    parse_preferred_time,
    utc_now,
)
from sentinel.rules import RuleConfig, TraversalBudget, analyze
from sentinel.scoring import score
from sentinel.sources import WorkflowSource, collect_workflows
from sentinel import storage

LOGGER = logging.getLogger(__name__)

MAX_ERROR_MESSAGE_LENGTH = 2000


class ScheduleState(str, Enum):
    IDLE = "idle"
    SCHEDULED = "scheduled"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


def compute_next_scan_at(
    frequency: Frequency | str,
    preferred_time: str,
    timezone_name: str,
    now: datetime,
    day_of_week: int = SUNDAY,
) -> datetime:
    """Next occurrence of ``preferred_time`` (local to ``timezone_name``) strictly after ``now``.

    Daily schedules fire today if the local time is still ahead, otherwise
    tomorrow. Weekly schedules fire on ``day_of_week`` (0 = Monday). The result
    is in UTC. A local time skipped by a DST jump resolves to the equivalent
    post-transition instant.
    """
    frequency = Frequency(frequency)
    hour, minute = parse_preferred_time(preferred_time)
    tz = load_timezone(timezone_name)
    local_today = now.astimezone(tz).date()

    for offset in range(0, 15):
        day = local_today + timedelta(days=offset)
        if frequency is Frequency.WEEKLY and day.weekday() != day_of_week:
            continue
        candidate = datetime(day.year, day.month, day.day, hour, minute, tzinfo=tz).astimezone(timezone.utc)
        if candidate > now:
            return candidate
    raise ValueError(f"Cannot compute next run for {frequency.value} schedule at {preferred_time} {timezone_name}")


class ScanScheduler:
    def __init__(
        self,
        db_path: str,
        source: WorkflowSource,
        rule_config: RuleConfig | None = None,
        dispatcher: AlertDispatcher | None = None,
        cache: Cache | None = None,
        max_concurrent_scans: int = 4,
        tick_seconds: float = 60,
        workflow_timeout_seconds: float | None = None,
        trend_margin_pct: float = DEFAULT_TREND_MARGIN_PCT,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.db_path = db_path
        self.source = source
        self.rule_config = rule_config or RuleConfig()
        self.dispatcher = dispatcher
        self.cache = cache
        self.tick_seconds = tick_seconds
        self.workflow_timeout_seconds = workflow_timeout_seconds
        self.trend_margin_pct = trend_margin_pct
        self._clock = clock
        self._lock = threading.Lock()
        self._running: set[str] = set()
        self._states: dict[str, ScheduleState] = {}
        self._futures: list[Future] = []
        self._scan_pool = ThreadPoolExecutor(max_workers=max(1, max_concurrent_scans), thread_name_prefix="tenant-scan")
        self._dispatch_pool = ThreadPoolExecutor(max_workers=2, thread_name_prefix="alert-dispatch")

    @classmethod
    def from_settings(
        cls,
        settings: dict[str, Any],
        source: WorkflowSource,
        dispatcher: AlertDispatcher | None = None,
        cache: Cache | None = None,
    ) -> "ScanScheduler":
        scheduler_cfg = settings.get("scheduler", {})
        timeout = scheduler_cfg.get("workflow_timeout_seconds")
        return cls(
            db_path=settings["paths"]["db_path"],
            source=source,
            rule_config=RuleConfig.from_settings(settings),
            dispatcher=dispatcher,
            cache=cache,
            max_concurrent_scans=int(scheduler_cfg.get("max_concurrent_scans", 4)),
            tick_seconds=float(scheduler_cfg.get("tick_seconds", 60)),
            workflow_timeout_seconds=float(timeout) if timeout else None,
            trend_margin_pct=float(settings.get("metrics", {}).get("trend_margin_pct", DEFAULT_TREND_MARGIN_PCT)),
        )

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    def _transition(self, tenant_id: str, state: ScheduleState) -> None:
        previous = self._states.get(tenant_id, ScheduleState.IDLE)
        self._states[tenant_id] = state
        LOGGER.debug("Tenant %s schedule state %s -> %s", tenant_id, previous.value, state.value)

    def state(self, tenant_id: str) -> ScheduleState:
        with self._lock:
            if tenant_id in self._running:
                return ScheduleState.RUNNING
            if tenant_id in self._states:
                return self._states[tenant_id]
        schedule = storage.get_schedule(self.db_path, tenant_id)
        if schedule is not None and schedule.enabled:
            return ScheduleState.SCHEDULED
        return ScheduleState.IDLE

    def is_running(self, tenant_id: str) -> bool:
        with self._lock:
            return tenant_id in self._running

    def _acquire(self, tenant_id: str) -> None:
        with self._lock:
            if tenant_id in self._running:
                raise ScanInProgress(tenant_id)
            self._running.add(tenant_id)
            self._transition(tenant_id, ScheduleState.RUNNING)

    def _release(self, tenant_id: str, outcome: ScheduleState) -> None:
        with self._lock:
            self._running.discard(tenant_id)
            self._transition(tenant_id, outcome)
        try:
            schedule = storage.get_schedule(self.db_path, tenant_id)
        except (sqlite3.Error, StoreUnavailable):
            schedule = None
        with self._lock:
            if tenant_id in self._running:
                return
            if schedule is not None and schedule.enabled:
                self._transition(tenant_id, ScheduleState.SCHEDULED)
            else:
                self._transition(tenant_id, ScheduleState.IDLE)

    # ------------------------------------------------------------------
    # Schedule management
    # ------------------------------------------------------------------

    def upsert_schedule(self, tenant_id: str, schedule: ScanSchedule) -> ScanSchedule:
        """Create or fully replace the tenant's schedule and compute its next run."""
        existing = storage.get_schedule(self.db_path, tenant_id)
        now = self._clock()
        schedule.tenant_id = tenant_id
        if existing is not None:
            schedule.id = existing.id
            schedule.last_scan_at = schedule.last_scan_at or existing.last_scan_at
        if schedule.enabled:
            schedule.next_scan_at = compute_next_scan_at(
                schedule.frequency, schedule.preferred_time, schedule.timezone, now, schedule.day_of_week
            )
        else:
            schedule.next_scan_at = None
        storage.upsert_schedule(self.db_path, schedule, updated_at=now)

        with self._lock:
            if tenant_id not in self._running:
                self._transition(tenant_id, ScheduleState.SCHEDULED if schedule.enabled else ScheduleState.IDLE)
        LOGGER.info(
            "Schedule %s for tenant %s saved: %s at %s %s (next run %s)",
            schedule.id,
            tenant_id,
            schedule.frequency.value,
            schedule.preferred_time,
            schedule.timezone,
            schedule.next_scan_at.isoformat() if schedule.next_scan_at else "disabled",
        )
        return schedule

    def get_schedule(self, tenant_id: str) -> ScanSchedule:
        schedule = storage.get_schedule(self.db_path, tenant_id)
        if schedule is None:
            raise ScheduleNotFound(tenant_id)
        return schedule

    def delete_schedule(self, tenant_id: str) -> None:
        """Remove the tenant's schedule. Scan history is kept."""
        if not storage.delete_schedule(self.db_path, tenant_id):
            raise ScheduleNotFound(tenant_id)
        with self._lock:
            if tenant_id not in self._running:
                self._transition(tenant_id, ScheduleState.IDLE)
        LOGGER.info("Schedule for tenant %s deleted", tenant_id)

    # ------------------------------------------------------------------
    # Scans
    # ------------------------------------------------------------------

    def run_scan(
        self,
        tenant_id: str,
        scope: ScanScope | str | None = None,
        trigger: str = "manual",
    ) -> ScanHistoryEntry:
        """Scan the tenant's workflows now, in the caller's thread.

        Raises ``ScanInProgress`` when a scan for the tenant is already running.
        """
        self._acquire(tenant_id)
        outcome = ScheduleState.FAILED
        try:
            entry = self._execute_scan(tenant_id, scope, trigger)
            if entry.status is not ScanStatus.FAILED:
                outcome = ScheduleState.COMPLETED
            return entry
        finally:
            self._release(tenant_id, outcome)

    def run_schedule_now(self, tenant_id: str) -> ScanHistoryEntry:
        schedule = self.get_schedule(tenant_id)
        return self.run_scan(tenant_id, schedule.scan_scope, trigger="manual")

    def _analyze_graph(self, graph: WorkflowGraph) -> HealthScore:
        budget = TraversalBudget(graph.id, self.workflow_timeout_seconds)
        findings = analyze(graph, self.rule_config, budget)
        return score(findings, graph.id, graph.name, computed_at=self._clock())

    def _execute_scan(self, tenant_id: str, scope: ScanScope | str | None, trigger: str) -> ScanHistoryEntry:
        started_at = self._clock()
        infrastructure_error: str | None = None
        try:
            schedule = storage.get_schedule(self.db_path, tenant_id)
        except (sqlite3.Error, StoreUnavailable) as exc:
            LOGGER.error("Cannot load schedule for tenant %s: %s", tenant_id, exc)
            schedule = None
            infrastructure_error = str(exc)
        if scope is None:
            scope = schedule.scan_scope if schedule is not None else ScanScope.ACTIVE
        scope = ScanScope(scope)
        LOGGER.info("Scan started for tenant %s (scope=%s, trigger=%s)", tenant_id, scope.value, trigger)

        results: list[tuple[WorkflowGraph, HealthScore]] = []
        failures: list[str] = []
        graphs: list[WorkflowGraph] = []

        if infrastructure_error is None:
            try:
                batch = collect_workflows(self.source, tenant_id)
                graphs = batch.graphs
                failures.extend(batch.errors)
            except SourceUnavailable as exc:
                LOGGER.error("Workflow source unavailable for tenant %s: %s", tenant_id, exc)
                infrastructure_error = str(exc)

        if scope is ScanScope.ACTIVE:
            graphs = [graph for graph in graphs if graph.is_active]

        entry_id = new_id()
        for graph in graphs:
            try:
                health = self._analyze_graph(graph)
            except InvalidGraph as exc:
                LOGGER.warning("Workflow %s skipped in scan of tenant %s: %s", graph.id, tenant_id, exc)
                failures.append(str(exc))
                continue
            except Exception as exc:  # noqa: BLE001
                LOGGER.exception("Analysis of workflow %s crashed in scan of tenant %s", graph.id, tenant_id)
                failures.append(f"Workflow {graph.id}: analysis failed ({exc.__class__.__name__}: {exc})")
                continue
            try:
                storage.save_health_score(self.db_path, tenant_id, health, scan_id=entry_id)
            except (sqlite3.Error, StoreUnavailable) as exc:
                LOGGER.error("Cannot persist health score for workflow %s: %s", graph.id, exc)
                infrastructure_error = str(exc)
                break
            results.append((graph, health))

        if infrastructure_error:
            status = ScanStatus.FAILED
        elif not failures:
            status = ScanStatus.SUCCESS
        elif results:
            status = ScanStatus.PARTIAL
        else:
            status = ScanStatus.FAILED

        messages = ([infrastructure_error] if infrastructure_error else []) + failures
        findings = [finding for _, health in results for finding in health.findings]
        entry = ScanHistoryEntry(
            id=entry_id,
            schedule_id=schedule.id if schedule is not None else None,
            tenant_id=tenant_id,
            started_at=started_at,
            completed_at=self._clock(),
            status=status,
            workflows_scanned=len(results),
            issues_found=len(findings),
            critical_issues=sum(1 for finding in findings if finding.severity is Severity.CRITICAL),
            trigger=trigger,
            error_message="; ".join(messages)[:MAX_ERROR_MESSAGE_LENGTH] or None,
        )

        try:
            storage.append_scan_history(self.db_path, entry)
            if schedule is not None and schedule.enabled:
                next_scan_at = compute_next_scan_at(
                    schedule.frequency, schedule.preferred_time, schedule.timezone, entry.completed_at, schedule.day_of_week
                )
                storage.record_schedule_run(self.db_path, tenant_id, entry.completed_at, next_scan_at)
        except (sqlite3.Error, StoreUnavailable) as exc:
            LOGGER.error("Cannot persist scan %s for tenant %s: %s", entry.id, tenant_id, exc)
            return entry

        LOGGER.info(
            "Scan %s for tenant %s completed: %s (%d workflows, %d issues, %d critical)",
            entry.id,
            tenant_id,
            entry.status.value,
            entry.workflows_scanned,
            entry.issues_found,
            entry.critical_issues,
        )
        self._evaluate_alerts(tenant_id, results)
        return entry

    # ------------------------------------------------------------------
    # Alerts
    # ------------------------------------------------------------------

    def _evaluate_alerts(self, tenant_id: str, results: list[tuple[WorkflowGraph, HealthScore]]) -> None:
        if self.dispatcher is None or not results:
            return
        try:
            settings = storage.get_alert_settings(self.db_path, tenant_id)
        except (sqlite3.Error, StoreUnavailable) as exc:
            LOGGER.warning("Cannot load alert settings for tenant %s: %s", tenant_id, exc)
            return
        if settings is None or not settings.enabled:
            return

        for graph, health in results:
            try:
                metrics = compute_failure_metrics(
                    self.db_path,
                    graph.id,
                    settings.time_window_hours,
                    now=self._clock(),
                    tenant_id=tenant_id,
                    trend_margin_pct=self.trend_margin_pct,
                    cache=self.cache,
                )
            except (sqlite3.Error, StoreUnavailable) as exc:
                LOGGER.warning("Cannot compute metrics for workflow %s: %s", graph.id, exc)
                metrics = None
            decision = evaluate(settings, metrics, health.findings)
            if not decision.should_fire:
                continue
            if decision.workflow_id is None:
                decision = replace(decision, workflow_id=graph.id)
            alert = build_alert(
                decision,
                tenant_id,
                settings,
                metrics=metrics,
                findings=health.findings,
                workflow_name=graph.name,
                now=self._clock(),
            )
            self.submit_alert(alert, settings)

    def submit_alert(self, alert: Alert, settings: AlertSettings) -> Future | None:
        """Hand an alert to the dispatch pool without waiting for delivery."""
        if self.dispatcher is None:
            return None
        future = self._dispatch_pool.submit(self._deliver, alert, settings)
        self._track(future)
        return future

    def _deliver(self, alert: Alert, settings: AlertSettings) -> None:
        try:
            self.dispatcher.dispatch_sync(alert, settings)
        except Exception:  # noqa: BLE001
            LOGGER.exception("Alert dispatch failed for tenant %s", alert.tenant_id)

    # ------------------------------------------------------------------
    # Loop
    # ------------------------------------------------------------------

    def _track(self, future: Future) -> None:
        with self._lock:
            self._futures = [item for item in self._futures if not item.done()]
            self._futures.append(future)

    def _run_scheduled(self, tenant_id: str) -> None:
        outcome = ScheduleState.FAILED
        try:
            entry = self._execute_scan(tenant_id, None, "scheduled")
            if entry.status is not ScanStatus.FAILED:
                outcome = ScheduleState.COMPLETED
        except Exception:  # noqa: BLE001
            LOGGER.exception("Scheduled scan crashed for tenant %s", tenant_id)
        finally:
            self._release(tenant_id, outcome)

    def tick(self, now: datetime | None = None) -> list[str]:
        """Submit every due schedule to the scan pool; returns the submitted tenant ids."""
        now = now or self._clock()
        submitted = []
        for schedule in storage.list_due_schedules(self.db_path, now):
            try:
                self._acquire(schedule.tenant_id)
            except ScanInProgress:
                LOGGER.info("Tenant %s still scanning, skipping this tick", schedule.tenant_id)
                continue
            self._track(self._scan_pool.submit(self._run_scheduled, schedule.tenant_id))
            submitted.append(schedule.tenant_id)
        if submitted:
            LOGGER.info("Tick at %s submitted %d scans", now.isoformat(), len(submitted))
        return submitted

    def run_forever(self, stop_event: threading.Event) -> None:
        LOGGER.info("Scheduler loop started (tick every %ss)", self.tick_seconds)
        while not stop_event.is_set():
            try:
                self.tick()
            except (sqlite3.Error, StoreUnavailable) as exc:
                LOGGER.error("Scheduler tick failed: %s", exc)
            stop_event.wait(self.tick_seconds)
        LOGGER.info("Scheduler loop stopped")

    def wait_idle(self, timeout: float | None = None) -> None:
        """Block until every submitted scan and alert delivery has finished."""
        while True:
            with self._lock:
                pending = [item for item in self._futures if not item.done()]
            if not pending:
                return
            wait(pending, timeout=timeout)
            if timeout is not None:
                return

    def shutdown(self, wait_for_pending: bool = True) -> None:
        self._scan_pool.shutdown(wait=wait_for_pending)
        self._dispatch_pool.shutdown(wait=wait_for_pending)
