from __future__ import annotations

from datetime import timedelta

import pytest

from sentinel.alerting import (
    REASON_CRITICAL_ISSUE,
    REASON_DISABLED,
    REASON_FAILURE_THRESHOLD,
    REASON_NO_TRIGGER,
    build_alert,
    build_test_alert,
    evaluate,
)
from sentinel.metrics import compute_failure_metrics
from sentinel.models import AlertDecision, AlertSettings, ExecutionRecord, ExecutionStatus, Finding, Severity
from sentinel.storage import append_execution


def _failures(db_path, now, count):
    for index in range(count):
        append_execution(
            db_path,
            ExecutionRecord(
                workflow_id="wf-1",
                tenant_id="t1",
                status=ExecutionStatus.FAILED,
                occurred_at=now - timedelta(hours=index + 1),
            ),
        )


CRITICAL = Finding("cycle", Severity.CRITICAL, "loop", 25, node_id="a")
HIGH = Finding("missing_error_handling", Severity.HIGH, "no fallback", 15, node_id="b")


def test_three_failures_reach_the_default_threshold(db_path, now):
    _failures(db_path, now, 3)
    metrics = compute_failure_metrics(db_path, "wf-1", 24, now=now, tenant_id="t1")
    decision = evaluate(AlertSettings(), metrics)
    assert decision.should_fire is True
    assert decision.reason == REASON_FAILURE_THRESHOLD
    assert decision.severity == "warning"
    assert decision.workflow_id == "wf-1"


def test_two_failures_stay_below_the_threshold(db_path, now):
    _failures(db_path, now, 2)
    metrics = compute_failure_metrics(db_path, "wf-1", 24, now=now, tenant_id="t1")
    decision = evaluate(AlertSettings(), metrics)
    assert decision.should_fire is False
    assert decision.reason == REASON_NO_TRIGGER


def test_double_the_threshold_is_critical(db_path, now):
    _failures(db_path, now, 6)
    metrics = compute_failure_metrics(db_path, "wf-1", 24, now=now, tenant_id="t1")
    assert evaluate(AlertSettings(), metrics).severity == "critical"


def test_critical_findings_fire_when_enabled():
    decision = evaluate(AlertSettings(), None, [HIGH, CRITICAL])
    assert (decision.should_fire, decision.reason, decision.severity) == (True, REASON_CRITICAL_ISSUE, "critical")
    assert evaluate(AlertSettings(alert_on_critical=False), None, [CRITICAL]).should_fire is False
    assert evaluate(AlertSettings(), None, [HIGH]).should_fire is False


def test_disabled_settings_never_fire(db_path, now):
    _failures(db_path, now, 10)
    metrics = compute_failure_metrics(db_path, "wf-1", 24, now=now, tenant_id="t1")
    decision = evaluate(AlertSettings(enabled=False), metrics, [CRITICAL])
    assert decision.should_fire is False
    assert decision.reason == REASON_DISABLED


def test_build_failure_alert(db_path, now):
    _failures(db_path, now, 3)
    settings = AlertSettings()
    metrics = compute_failure_metrics(db_path, "wf-1", 24, now=now, tenant_id="t1")
    alert = build_alert(evaluate(settings, metrics), "t1", settings, metrics=metrics, workflow_name="Welcome", now=now)

    payload = alert.to_dict()
    assert payload["type"] == "failure"
    assert payload["workflow"] == {"id": "wf-1", "name": "Welcome"}
    assert payload["timestamp"] == now.isoformat()
    assert payload["message"].startswith("3 failed executions in the last 24h")
    assert payload["details"]["metrics"]["failed_executions"] == 3
    assert alert.title == "Failure: Welcome"


def test_build_critical_issue_alert():
    settings = AlertSettings()
    decision = AlertDecision(True, REASON_CRITICAL_ISSUE, severity="critical", workflow_id="wf-1")
    alert = build_alert(decision, "t1", settings, findings=[CRITICAL, HIGH])
    assert alert.type == "critical_issue"
    assert alert.message == "1 critical issue detected"
    assert [item["rule_id"] for item in alert.details["findings"]] == ["cycle"]


def test_negative_decision_cannot_build_an_alert():
    with pytest.raises(ValueError):
        build_alert(AlertDecision(False, REASON_NO_TRIGGER), "t1", AlertSettings())


def test_fingerprint_groups_by_tenant_type_and_workflow(now):
    decision = AlertDecision(True, REASON_CRITICAL_ISSUE, severity="critical", workflow_id="wf-1")
    first = build_alert(decision, "t1", AlertSettings(), findings=[CRITICAL], now=now)
    later = build_alert(decision, "t1", AlertSettings(), findings=[CRITICAL], now=now + timedelta(hours=1))
    other_tenant = build_alert(decision, "t2", AlertSettings(), findings=[CRITICAL], now=now)
    assert first.fingerprint == later.fingerprint
    assert first.fingerprint != other_tenant.fingerprint


def test_test_alert_shape(now):
    alert = build_test_alert("t1", now=now)
    payload = alert.to_dict()
    assert payload["type"] == "test"
    assert payload["severity"] == "info"
    assert payload["workflow"]["id"] == "test-workflow"
    assert payload["details"]["test"] is True
