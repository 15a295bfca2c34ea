"""Core operations shared by the CLI and the HTTP API."""

from __future__ import annotations

import logging
import sqlite3
from dataclasses import replace
from typing import Any

from sentinel import storage
from sentinel.alerting import build_alert, build_test_alert, evaluate
from sentinel.cache import Cache, build_cache
from sentinel.dispatcher import AlertDispatcher
from sentinel.errors import SourceUnavailable, StoreUnavailable, WorkflowNotFound
from sentinel.metrics import compute_failure_metrics, execution_history, recent_failures
from sentinel.models import (
    AlertDecision,
    AlertSettings,
    DispatchResult,
    ExecutionRecord,
    ExecutionStatus,
    FailureMetrics,
    HealthScore,
    ScanHistoryEntry,
    ScanSchedule,
    ScanScope,
    WorkflowGraph,
    utc_now,
)
from sentinel.rules import RuleConfig, TraversalBudget, analyze
from sentinel.scheduler import ScanScheduler, ScheduleState
from sentinel.scoring import recommendations, score
from sentinel.sources import DirectoryWorkflowSource, WorkflowSource

LOGGER = logging.getLogger(__name__)


class SentinelService:
    def __init__(
        self,
        settings: dict[str, Any],
        source: WorkflowSource | None = None,
        dispatcher: AlertDispatcher | None = None,
        cache: Cache | None = None,
    ) -> None:
        self.settings = settings
        self.db_path = settings["paths"]["db_path"]
        storage.init_db(self.db_path)
        self.source = source or DirectoryWorkflowSource(settings["paths"]["workflows_dir"])
        self.dispatcher = dispatcher or AlertDispatcher.from_settings(settings)
        self.cache = cache if cache is not None else build_cache(settings)
        self.rule_config = RuleConfig.from_settings(settings)
        self.trend_margin_pct = float(settings["metrics"].get("trend_margin_pct", 10.0))
        self.scheduler = ScanScheduler.from_settings(settings, self.source, dispatcher=self.dispatcher, cache=self.cache)

    def close(self) -> None:
        self.scheduler.shutdown()

    # ------------------------------------------------------------------
    # Scans and analysis
    # ------------------------------------------------------------------

    def run_scan(self, tenant_id: str, scope: ScanScope | str | None = None) -> ScanHistoryEntry:
        return self.scheduler.run_scan(tenant_id, scope, trigger="manual")

    def _find_workflow(self, tenant_id: str, workflow_id: str) -> WorkflowGraph:
        for graph in self.source.fetch_workflows(tenant_id):
            if graph.id == workflow_id:
                return graph
        raise WorkflowNotFound(tenant_id, workflow_id)

    def analyze_workflow(self, graph: WorkflowGraph) -> HealthScore:
        budget = TraversalBudget(graph.id, self.scheduler.workflow_timeout_seconds)
        return score(analyze(graph, self.rule_config, budget), graph.id, graph.name)

    def get_health_score(self, tenant_id: str, workflow_id: str) -> HealthScore:
        """Analyse the current version of a workflow and keep the result as a snapshot.

        When the workflow source is unreachable the most recent snapshot is
        returned instead.
        """
        try:
            graph = self._find_workflow(tenant_id, workflow_id)
        except SourceUnavailable:
            snapshot = storage.latest_health_score(self.db_path, tenant_id, workflow_id)
            if snapshot is None:
                raise
            LOGGER.warning("Source unavailable, serving health snapshot of %s for %s", snapshot.computed_at, workflow_id)
            return snapshot
        health = self.analyze_workflow(graph)
        storage.save_health_score(self.db_path, tenant_id, health)
        return health

    def get_recommendations(self, tenant_id: str, workflow_id: str) -> list[str]:
        graph = self._find_workflow(tenant_id, workflow_id)
        return recommendations(self.analyze_workflow(graph).findings, graph)

    # ------------------------------------------------------------------
    # Execution monitoring
    # ------------------------------------------------------------------

    def get_failure_metrics(self, tenant_id: str, workflow_id: str, window_hours: int | None = None) -> FailureMetrics:
        if window_hours is None:
            window_hours = self.get_alert_settings(tenant_id).time_window_hours
        return compute_failure_metrics(
            self.db_path,
            workflow_id,
            window_hours,
            tenant_id=tenant_id,
            trend_margin_pct=self.trend_margin_pct,
            cache=self.cache,
        )

    def get_recent_failures(self, tenant_id: str, workflow_id: str, hours: int = 24) -> list[ExecutionRecord]:
        return recent_failures(self.db_path, workflow_id, hours, tenant_id=tenant_id)

    def get_execution_history(self, tenant_id: str, workflow_id: str, limit: int = 50) -> list[ExecutionRecord]:
        return execution_history(self.db_path, workflow_id, limit=limit, tenant_id=tenant_id)

    def record_execution(self, tenant_id: str, record: ExecutionRecord) -> AlertDecision:
        """Append an execution outcome and alert when it crosses the tenant's failure threshold."""
        if record.tenant_id != tenant_id:
            record = replace(record, tenant_id=tenant_id)
        storage.append_execution(self.db_path, record)
        if record.status is not ExecutionStatus.FAILED:
            return AlertDecision(False, "execution_succeeded", workflow_id=record.workflow_id)

        settings = self.get_alert_settings(tenant_id)
        metrics = compute_failure_metrics(
            self.db_path,
            record.workflow_id,
            settings.time_window_hours,
            tenant_id=tenant_id,
            trend_margin_pct=self.trend_margin_pct,
        )
        decision = evaluate(settings, metrics, [])
        if decision.should_fire:
            alert = build_alert(decision, tenant_id, settings, metrics=metrics)
            self.scheduler.submit_alert(alert, settings)
        return decision

    # ------------------------------------------------------------------
    # Alert settings
    # ------------------------------------------------------------------

    def upsert_alert_settings(self, tenant_id: str, settings: AlertSettings) -> AlertSettings:
        storage.upsert_alert_settings(self.db_path, tenant_id, settings, updated_at=utc_now())
        return settings

    def get_alert_settings(self, tenant_id: str) -> AlertSettings:
        return storage.get_alert_settings(self.db_path, tenant_id) or AlertSettings()

    async def send_test_alert(self, tenant_id: str) -> list[DispatchResult]:
        settings = self.get_alert_settings(tenant_id)
        return await self.dispatcher.send_test_alert(build_test_alert(tenant_id), settings)

    # ------------------------------------------------------------------
    # Schedules and history
    # ------------------------------------------------------------------

    def upsert_scan_schedule(self, tenant_id: str, schedule: ScanSchedule) -> ScanSchedule:
        return self.scheduler.upsert_schedule(tenant_id, schedule)

    def get_scan_schedule(self, tenant_id: str) -> ScanSchedule:
        return self.scheduler.get_schedule(tenant_id)

    def delete_scan_schedule(self, tenant_id: str) -> None:
        self.scheduler.delete_schedule(tenant_id)

    def get_schedule_state(self, tenant_id: str) -> ScheduleState:
        return self.scheduler.state(tenant_id)

    def run_schedule_now(self, tenant_id: str) -> ScanHistoryEntry:
        return self.scheduler.run_schedule_now(tenant_id)

    def get_scan_history(self, tenant_id: str, limit: int = 20) -> list[ScanHistoryEntry]:
        return storage.list_scan_history(self.db_path, tenant_id, limit)

    def ready(self) -> dict[str, Any]:
        """Readiness probe: checks the database is reachable."""
        try:
            with storage.connect(self.db_path) as conn:
                conn.execute("SELECT 1")
        except (sqlite3.Error, StoreUnavailable) as exc:
            return {"ready": False, "database": str(exc)}
        return {"ready": True, "database": "ok", "cache": getattr(self.cache, "name", "unknown")}


