"""Alert evaluation.

``evaluate`` is pure: it only looks at the tenant's settings, the failure
metrics of one workflow and the findings of its latest analysis, and decides
whether an alert should fire. ``build_alert`` turns a positive decision into
the payload handed to the dispatcher.
"""

from __future__ import annotations

import hashlib
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from sentinel.models import (
    AlertDecision,
    AlertSettings,
    FailureMetrics,
    Finding,
    Severity,
    to_iso,
    utc_now,
)

REASON_DISABLED = "alerts_disabled"
REASON_FAILURE_THRESHOLD = "failure_threshold"
REASON_CRITICAL_ISSUE = "critical_issue"
REASON_NO_TRIGGER = "below_threshold"
REASON_TEST = "test"


@dataclass(frozen=True)
class Alert:
    tenant_id: str
    type: str
    severity: str
    message: str
    workflow_id: str | None = None
    workflow_name: str = ""
    details: dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utc_now)

    @property
    def title(self) -> str:
        subject = self.workflow_name or self.workflow_id or "workflows"
        return f"{self.type.replace('_', ' ').title()}: {subject}"

    @property
    def fingerprint(self) -> str:
        raw = f"{self.tenant_id}|{self.type}|{self.workflow_id or ''}"
        return hashlib.sha256(raw.encode("utf-8")).hexdigest()

    def to_dict(self) -> dict[str, Any]:
        return {
            "timestamp": to_iso(self.created_at),
            "tenant_id": self.tenant_id,
            "type": self.type,
            "severity": self.severity,
            "workflow": {"id": self.workflow_id, "name": self.workflow_name},
            "message": self.message,
            "details": self.details,
        }


def evaluate(
    settings: AlertSettings,
    metrics: FailureMetrics | None,
    findings: list[Finding] | None = None,
) -> AlertDecision:
    """Decide whether a workflow's state warrants an alert.

    ``metrics`` must cover ``settings.time_window_hours``; the failure count is
    compared to the threshold inclusively.
    """
    workflow_id = metrics.workflow_id if metrics is not None else None
    if not settings.enabled:
        return AlertDecision(False, REASON_DISABLED, workflow_id=workflow_id)

    if metrics is not None and metrics.failed_executions >= settings.failure_threshold:
        severity = "critical" if metrics.failed_executions >= 2 * settings.failure_threshold else "warning"
        return AlertDecision(True, REASON_FAILURE_THRESHOLD, severity=severity, workflow_id=workflow_id)

    critical = [finding for finding in findings or [] if finding.severity is Severity.CRITICAL]
    if settings.alert_on_critical and critical:
        return AlertDecision(True, REASON_CRITICAL_ISSUE, severity="critical", workflow_id=workflow_id)

    return AlertDecision(False, REASON_NO_TRIGGER, workflow_id=workflow_id)


def build_alert(
    decision: AlertDecision,
    tenant_id: str,
    settings: AlertSettings,
    metrics: FailureMetrics | None = None,
    findings: list[Finding] | None = None,
    workflow_name: str = "",
    now: datetime | None = None,
) -> Alert:
    if not decision.should_fire:
        raise ValueError(f"Cannot build an alert from a negative decision ({decision.reason})")

    details: dict[str, Any] = {}
    if decision.reason == REASON_FAILURE_THRESHOLD and metrics is not None:
        message = (
            f"{metrics.failed_executions} failed executions in the last {settings.time_window_hours}h "
            f"(threshold {settings.failure_threshold}, failure rate {metrics.failure_rate_pct}%)"
        )
        details["metrics"] = metrics.to_dict()
        alert_type = "failure"
    else:
        critical = [finding for finding in findings or [] if finding.severity is Severity.CRITICAL]
        plural = "s" if len(critical) != 1 else ""
        message = f"{len(critical)} critical issue{plural} detected"
        details["findings"] = [finding.to_dict() for finding in critical]
        alert_type = "critical_issue"

    return Alert(
        tenant_id=tenant_id,
        type=alert_type,
        severity=decision.severity,
        message=message,
        workflow_id=decision.workflow_id,
        workflow_name=workflow_name,
        details=details,
        created_at=now or utc_now(),
    )


def build_test_alert(tenant_id: str, now: datetime | None = None) -> Alert:
    created_at = now or utc_now()
    return Alert(
        tenant_id=tenant_id,
        type=REASON_TEST,
        severity="info",
        message="This is a test alert to verify your notification settings are working correctly.",
        workflow_id="test-workflow",
        workflow_name="Test Workflow",
        details={"test": True, "timestamp": to_iso(created_at)},
        created_at=created_at,
    )
