from __future__ import annotations

import pytest

from sentinel.errors import InvalidGraph, InvalidSettings
from sentinel.models import (
    AlertSettings,
    ExecutionRecord,
    ExecutionStatus,
    NodeKind,
    ScanSchedule,
    WorkflowGraph,
    classify_node_type,
    parse_datetime,
)


def test_classify_platform_node_types():
    assert classify_node_type("contact_tag_added") is NodeKind.TRIGGER
    assert classify_node_type("trigger_form") is NodeKind.TRIGGER
    assert classify_node_type("if_else") is NodeKind.CONDITION
    assert classify_node_type("wait") is NodeKind.DELAY
    assert classify_node_type("send_email") is NodeKind.ACTION
    assert classify_node_type("webhook", allow_trigger=False) is NodeKind.ACTION


def test_parse_canonical_format():
    graph = WorkflowGraph.from_dict(
        {
            "id": "wf-1",
            "name": "Welcome",
            "status": "published",
            "nodes": [
                {"id": "t", "kind": "trigger", "attributes": {"type": "contact_created"}},
                {"id": "a", "kind": "action", "name": "Send email", "attributes": {"to": "{{contact.email}}"}},
            ],
            "edges": [{"id": "e1", "source": "t", "target": "a"}],
        }
    )
    graph.validate()
    assert graph.is_active
    assert graph.node("a").attributes["to"] == "{{contact.email}}"
    assert graph.successors("t") == ["a"]
    assert graph.triggers()[0].node_type == "contact_created"


def test_parse_connections_format():
    graph = WorkflowGraph.from_dict(
        {
            "id": "wf-2",
            "nodes": [
                {"id": "t", "type": "form_submitted", "config": {"form_id": "f1"}},
                {"id": "c", "type": "if_else"},
                {"id": "yes", "type": "send_sms"},
                {"id": "no", "type": "wait"},
            ],
            "connections": [
                {"from": "t", "to": "c"},
                {"from": "c", "to": "yes", "branch": "true"},
                {"from": "c", "to": "no", "branch": "false"},
            ],
        }
    )
    assert [node.kind for node in graph.nodes] == [NodeKind.TRIGGER, NodeKind.CONDITION, NodeKind.ACTION, NodeKind.DELAY]
    assert graph.node("t").attributes["form_id"] == "f1"
    assert sorted(edge.label for edge in graph.outgoing("c")) == ["false", "true"]


def test_parse_legacy_format_chains_actions_and_branches():
    graph = WorkflowGraph.from_dict(
        {
            "id": "wf-3",
            "status": "draft",
            "triggers": [{"type": "contact_tag_added"}],
            "actions": [
                {"id": "a1", "type": "send_email"},
                {"id": "a2", "type": "if_else", "branches": [{"condition": "opened", "next": "a4"}]},
                {"id": "a3", "type": "send_sms"},
                {"id": "a4", "type": "webhook"},
            ],
        }
    )
    graph.validate()
    assert not graph.is_active
    assert graph.successors("trigger_0") == ["a1"]
    assert graph.successors("a1") == ["a2"]
    assert graph.outgoing("a2")[0].label == "opened"
    assert graph.successors("a2") == ["a4"]
    assert graph.successors("a3") == ["a4"]
    assert graph.node("a4").kind is NodeKind.ACTION


def test_validate_rejects_duplicates_and_dangling_edges():
    duplicate = WorkflowGraph.from_dict({"id": "wf", "nodes": [{"id": "a"}, {"id": "a"}], "edges": []})
    with pytest.raises(InvalidGraph):
        duplicate.validate()

    dangling = WorkflowGraph.from_dict({"id": "wf", "nodes": [{"id": "a"}], "edges": [{"source": "a", "target": "b"}]})
    with pytest.raises(InvalidGraph, match="unknown node b"):
        dangling.validate()


def test_missing_workflow_id_is_invalid():
    with pytest.raises(InvalidGraph):
        WorkflowGraph.from_dict({"nodes": []})


@pytest.mark.parametrize("payload", [[], "workflow", {"id": "wf", "edges": ["t->a"]}, {"id": "wf", "nodes": [1]}])
def test_non_mapping_payloads_are_invalid(payload):
    with pytest.raises(InvalidGraph):
        WorkflowGraph.from_dict(payload)


def test_edge_labels_are_strings():
    graph = WorkflowGraph.from_dict(
        {"id": "wf", "nodes": [{"id": "t", "type": "form_submitted"}, {"id": "a"}], "connections": [{"from": "t", "to": "a", "branch": 1}]}
    )
    assert graph.edges[0].label == "1"


def test_alert_settings_defaults_and_validation():
    settings = AlertSettings()
    assert (settings.enabled, settings.failure_threshold, settings.time_window_hours, settings.alert_on_critical) == (
        True,
        3,
        24,
        True,
    )
    with pytest.raises(InvalidSettings):
        AlertSettings(failure_threshold=0)
    with pytest.raises(InvalidSettings):
        AlertSettings(alert_email="not-an-email")
    with pytest.raises(InvalidSettings):
        AlertSettings(webhook_url="ftp://example.com/hook")


def test_scan_schedule_validation():
    with pytest.raises(InvalidSettings):
        ScanSchedule(tenant_id="t1", preferred_time="25:00")
    with pytest.raises(InvalidSettings):
        ScanSchedule(tenant_id="t1", timezone="Mars/Olympus")
    schedule = ScanSchedule.from_dict({"tenant_id": "t1", "frequency": "weekly"})
    assert schedule.day_of_week == 6
    assert schedule.to_dict()["scan_scope"] == "active"


def test_execution_record_from_dict():
    record = ExecutionRecord.from_dict(
        {"workflow_id": "wf", "status": "FAILED", "occurred_at": "2024-03-06T10:00:00Z", "execution_time_ms": "1200"}
    )
    assert record.status is ExecutionStatus.FAILED
    assert record.execution_time_ms == 1200
    assert record.occurred_at == parse_datetime("2024-03-06T10:00:00+00:00")
