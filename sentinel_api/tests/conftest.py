"""
Pytest configuration and shared fixtures for the HTTP API tests.
"""
import pytest
from fastapi.testclient import TestClient

from sentinel.models import Edge, Node, NodeKind, WorkflowGraph
from sentinel.service import SentinelService
from sentinel.sources import StaticWorkflowSource
from sentinel_api.app import app
from sentinel_api.deps import get_service


def looping_workflow() -> WorkflowGraph:
    nodes = [
        Node("t", NodeKind.TRIGGER, "Form submitted", {"type": "form_submitted", "description": "Entry"}),
        Node("a", NodeKind.ACTION, "Send SMS", {"type": "send_sms", "description": "Reminder", "retry": 2}),
        Node("b", NodeKind.DELAY, "Wait", {"type": "wait", "description": "One day"}),
    ]
    edges = [Edge("e1", "t", "a"), Edge("e2", "a", "b"), Edge("e3", "b", "a")]
    return WorkflowGraph(id="wf-loop", name="Reminder loop", nodes=nodes, edges=edges)


@pytest.fixture
def api_settings(tmp_path):
    return {
        "paths": {"db_path": str(tmp_path / "api.db"), "workflows_dir": str(tmp_path / "workflows")},
        "rules": {},
        "metrics": {"trend_margin_pct": 10.0},
        "scheduler": {"tick_seconds": 1, "max_concurrent_scans": 2, "workflow_timeout_seconds": 5},
        "cache": {"backend": "local", "ttl_seconds": 60},
        "alerts": {"cooldown_minutes": 60},
        "smtp": {"host": None},
        "webhooks": {"timeout_seconds": 1, "retry_count": 1},
        "retention": {"enabled": False},
    }


@pytest.fixture
def source():
    return StaticWorkflowSource({"t1": [looping_workflow()]})


@pytest.fixture
def service(api_settings, source):
    svc = SentinelService(api_settings, source=source)
    yield svc
    svc.close()


@pytest.fixture
def client(service):
    app.dependency_overrides[get_service] = lambda: service
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()
