"""
Shared fixtures for the core sentinel tests.
"""
from __future__ import annotations

from datetime import datetime, timezone

import pytest

from sentinel.models import Edge, Node, NodeKind, WorkflowGraph
from sentinel.storage import init_db

NOW = datetime(2024, 3, 6, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def db_path(tmp_path):
    path = str(tmp_path / "sentinel.db")
    init_db(path)
    return path


@pytest.fixture
def now():
    return NOW


@pytest.fixture
def make_graph():
    """Build a graph from ``(id, kind)`` / ``(id, kind, attributes)`` tuples and ``(source, target[, label])`` edges."""

    def _make(nodes, edges=(), workflow_id="wf-1", status="active", name="Test workflow"):
        built_nodes = []
        for item in nodes:
            node_id, kind = item[0], item[1]
            attributes = dict(item[2]) if len(item) > 2 else {}
            attributes.setdefault("description", f"{node_id} step")
            built_nodes.append(Node(id=node_id, kind=NodeKind(kind), name=node_id.upper(), attributes=attributes))
        built_edges = [
            Edge(
                id=f"e{index}",
                source_node_id=edge[0],
                target_node_id=edge[1],
                label=edge[2] if len(edge) > 2 else None,
            )
            for index, edge in enumerate(edges)
        ]
        return WorkflowGraph(id=workflow_id, name=name, nodes=built_nodes, edges=built_edges, status=status)

    return _make


@pytest.fixture
def settings(tmp_path):
    return {
        "paths": {"db_path": str(tmp_path / "sentinel.db"), "workflows_dir": str(tmp_path / "workflows")},
        "rules": {},
        "metrics": {"trend_margin_pct": 10.0},
        "scheduler": {"tick_seconds": 1, "max_concurrent_scans": 2, "workflow_timeout_seconds": 5},
        "cache": {"backend": "none"},
        "alerts": {"cooldown_minutes": 60},
        "smtp": {"host": None, "port": 587, "from_address": "alerts@example.com"},
        "webhooks": {"timeout_seconds": 1, "retry_count": 3, "secret": None},
        "retention": {"enabled": True, "executions_days": 30, "health_scores_days": 60},
    }
