from __future__ import annotations

import re
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from sentinel.errors import InvalidGraph, InvalidSettings


def utc_now() -> datetime:
    return datetime.now(timezone.utc).replace(microsecond=0)


def utc_now_iso() -> str:
    return utc_now().isoformat()


def to_iso(value: datetime | None) -> str | None:
    if value is None:
        return None
    return value.astimezone(timezone.utc).isoformat()


def parse_datetime(value: Any) -> datetime | None:
    """Parse an ISO-8601 string (or pass through a datetime), assuming UTC when naive."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


class NodeKind(str, Enum):
    TRIGGER = "trigger"
    ACTION = "action"
    CONDITION = "condition"
    DELAY = "delay"


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]


_SEVERITY_RANK = {Severity.LOW: 1, Severity.MEDIUM: 2, Severity.HIGH: 3, Severity.CRITICAL: 4}

TRIGGER_TYPES = {
    "trigger",
    "contact_created",
    "contact_updated",
    "contact_tag_added",
    "form_submit",
    "form_submitted",
    "appointment_booked",
    "inbound_webhook",
    "webhook",
}
CONDITION_TYPES = {"condition", "if", "if_else", "branch", "split", "filter"}
DELAY_TYPES = {"delay", "wait", "wait_until"}

ACTIVE_STATUSES = {"active", "published"}


def classify_node_type(node_type: str, allow_trigger: bool = True) -> NodeKind:
    """Map a platform node type (e.g. ``send_email``, ``if_else``) to a node kind."""
    lowered = (node_type or "").strip().lower()
    if allow_trigger and (lowered in TRIGGER_TYPES or lowered.startswith("trigger")):
        return NodeKind.TRIGGER
    if lowered in CONDITION_TYPES:
        return NodeKind.CONDITION
    if lowered in DELAY_TYPES:
        return NodeKind.DELAY
    return NodeKind.ACTION


@dataclass
class Node:
    id: str
    kind: NodeKind
    name: str = ""
    attributes: dict[str, Any] = field(default_factory=dict)

    @property
    def label(self) -> str:
        return self.name or self.id

    @property
    def node_type(self) -> str:
        return str(self.attributes.get("type") or self.kind.value).lower()

    @property
    def description(self) -> str:
        return str(self.attributes.get("description") or "").strip()

    def to_dict(self) -> dict[str, Any]:
        return {"id": self.id, "kind": self.kind.value, "name": self.name, "attributes": self.attributes}


@dataclass
class Edge:
    id: str
    source_node_id: str
    target_node_id: str
    label: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


_RESERVED_NODE_KEYS = {"id", "kind", "name", "attributes", "config", "next", "branches"}


def _edge_label(value: Any) -> str | None:
    return None if value is None else str(value)


def _node_from_dict(item: dict[str, Any], workflow_id: str, allow_trigger: bool = True) -> Node:
    if not isinstance(item, dict):
        raise InvalidGraph(workflow_id, f"node must be a mapping, got {type(item).__name__}")
    node_id = item.get("id")
    if not node_id:
        raise InvalidGraph(workflow_id, f"node without id: {item!r}")
    node_type = str(item.get("type") or item.get("kind") or "action")
    kind_value = str(item.get("kind") or "").lower()
    if kind_value in {kind.value for kind in NodeKind}:
        kind = NodeKind(kind_value)
    else:
        kind = classify_node_type(node_type, allow_trigger=allow_trigger)

    attributes: dict[str, Any] = {key: value for key, value in item.items() if key not in _RESERVED_NODE_KEYS}
    attributes.update(item.get("config") or {})
    attributes.update(item.get("attributes") or {})
    attributes.setdefault("type", node_type)
    return Node(id=str(node_id), kind=kind, name=str(item.get("name") or ""), attributes=attributes)


@dataclass
class WorkflowGraph:
    id: str
    name: str
    nodes: list[Node] = field(default_factory=list)
    edges: list[Edge] = field(default_factory=list)
    status: str = "active"

    def __post_init__(self) -> None:
        self._index: dict[str, Node] = {}
        self._outgoing: dict[str, list[Edge]] = {}
        self._incoming: dict[str, list[Edge]] = {}
        for node in self.nodes:
            self._index.setdefault(node.id, node)
        for edge in self.edges:
            self._outgoing.setdefault(edge.source_node_id, []).append(edge)
            self._incoming.setdefault(edge.target_node_id, []).append(edge)

    @property
    def is_active(self) -> bool:
        return self.status.lower() in ACTIVE_STATUSES

    def node(self, node_id: str) -> Node | None:
        return self._index.get(node_id)

    def outgoing(self, node_id: str) -> list[Edge]:
        return self._outgoing.get(node_id, [])

    def incoming(self, node_id: str) -> list[Edge]:
        return self._incoming.get(node_id, [])

    def successors(self, node_id: str) -> list[str]:
        return [edge.target_node_id for edge in self.outgoing(node_id)]

    def triggers(self) -> list[Node]:
        return [node for node in self.nodes if node.kind is NodeKind.TRIGGER]

    def nodes_of_kind(self, kind: NodeKind) -> list[Node]:
        return [node for node in self.nodes if node.kind is kind]

    def validate(self) -> None:
        """Raise InvalidGraph when node ids repeat or an edge endpoint is unknown."""
        seen_nodes: set[str] = set()
        for node in self.nodes:
            if node.id in seen_nodes:
                raise InvalidGraph(self.id, f"duplicate node id {node.id}")
            seen_nodes.add(node.id)

        seen_edges: set[str] = set()
        for edge in self.edges:
            if edge.id in seen_edges:
                raise InvalidGraph(self.id, f"duplicate edge id {edge.id}")
            seen_edges.add(edge.id)
            for endpoint in (edge.source_node_id, edge.target_node_id):
                if endpoint not in seen_nodes:
                    raise InvalidGraph(self.id, f"edge {edge.id} references unknown node {endpoint}")

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "status": self.status,
            "nodes": [node.to_dict() for node in self.nodes],
            "edges": [edge.to_dict() for edge in self.edges],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "WorkflowGraph":
        """Build a graph from the canonical, platform "modern" or platform "legacy" payload."""
        if not isinstance(data, dict):
            raise InvalidGraph("<unknown>", f"workflow payload must be a mapping, got {type(data).__name__}")
        workflow_id = str(data.get("id") or data.get("workflow_id") or "")
        if not workflow_id:
            raise InvalidGraph("<unknown>", "workflow id is required")
        name = str(data.get("name") or workflow_id)
        status = str(data.get("status") or "active")

        if "edges" in data:
            return cls._from_canonical(workflow_id, name, status, data)
        if "connections" in data:
            return cls._from_connections(workflow_id, name, status, data)
        if "actions" in data or "triggers" in data:
            return cls._from_legacy(workflow_id, name, status, data)
        nodes = [_node_from_dict(item, workflow_id) for item in data.get("nodes") or []]
        return cls(id=workflow_id, name=name, nodes=nodes, edges=[], status=status)

    @classmethod
    def _from_canonical(cls, workflow_id: str, name: str, status: str, data: dict[str, Any]) -> "WorkflowGraph":
        nodes = [_node_from_dict(item, workflow_id) for item in data.get("nodes") or []]
        edges = []
        for index, item in enumerate(data.get("edges") or []):
            if not isinstance(item, dict):
                raise InvalidGraph(workflow_id, f"edge #{index} must be a mapping")
            source = item.get("source") or item.get("source_node_id")
            target = item.get("target") or item.get("target_node_id")
            if not source or not target:
                raise InvalidGraph(workflow_id, f"edge #{index} is missing an endpoint")
            edges.append(
                Edge(
                    id=str(item.get("id") or f"edge_{source}_{target}_{index}"),
                    source_node_id=str(source),
                    target_node_id=str(target),
                    label=_edge_label(item.get("label")),
                )
            )
        return cls(id=workflow_id, name=name, nodes=nodes, edges=edges, status=status)

    @classmethod
    def _from_connections(cls, workflow_id: str, name: str, status: str, data: dict[str, Any]) -> "WorkflowGraph":
        nodes = [_node_from_dict(item, workflow_id) for item in data.get("nodes") or []]
        edges = []
        for index, conn in enumerate(data.get("connections") or []):
            if not isinstance(conn, dict):
                raise InvalidGraph(workflow_id, f"connection #{index} must be a mapping")
            source, target = conn.get("from"), conn.get("to")
            if not source or not target:
                raise InvalidGraph(workflow_id, f"connection #{index} is missing an endpoint")
            edges.append(
                Edge(
                    id=f"edge_{source}_{target}_{index}",
                    source_node_id=str(source),
                    target_node_id=str(target),
                    label=_edge_label(conn.get("branch")),
                )
            )
        return cls(id=workflow_id, name=name, nodes=nodes, edges=edges, status=status)

    @classmethod
    def _from_legacy(cls, workflow_id: str, name: str, status: str, data: dict[str, Any]) -> "WorkflowGraph":
        nodes: list[Node] = []
        edges: list[Edge] = []

        for index, trigger in enumerate(data.get("triggers") or []):
            item = dict(trigger)
            item.setdefault("id", f"trigger_{index}")
            item["kind"] = NodeKind.TRIGGER.value
            nodes.append(_node_from_dict(item, workflow_id))

        trigger_ids = [node.id for node in nodes]
        actions = []
        for index, action in enumerate(data.get("actions") or []):
            item = dict(action)
            item.setdefault("id", f"action_{index}")
            actions.append(item)
            nodes.append(_node_from_dict(item, workflow_id, allow_trigger=False))

        def add_edge(source: str, target: str, label: str | None = None) -> None:
            edges.append(Edge(id=f"edge_{source}_{target}_{len(edges)}", source_node_id=source, target_node_id=target, label=label))

        if actions:
            for trigger_id in trigger_ids:
                add_edge(trigger_id, str(actions[0]["id"]))

        for index, action in enumerate(actions):
            action_id = str(action["id"])
            explicit_next = action.get("next")
            branches = action.get("branches") or []
            for branch in branches:
                if branch.get("next"):
                    add_edge(action_id, str(branch["next"]), _edge_label(branch.get("condition")))
            if explicit_next:
                targets = explicit_next if isinstance(explicit_next, list) else [explicit_next]
                for target in targets:
                    add_edge(action_id, str(target))
            elif not branches and index + 1 < len(actions):
                add_edge(action_id, str(actions[index + 1]["id"]))

        return cls(id=workflow_id, name=name, nodes=nodes, edges=edges, status=status)


@dataclass(frozen=True)
class Finding:
    rule_id: str
    severity: Severity
    description: str
    points_deducted: int
    node_id: str | None = None
    title: str = ""
    category: str = ""
    fix: str = ""
    node_ids: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "rule_id": self.rule_id,
            "severity": self.severity.value,
            "node_id": self.node_id,
            "description": self.description,
            "points_deducted": self.points_deducted,
            "title": self.title,
            "category": self.category,
            "fix": self.fix,
            "node_ids": list(self.node_ids),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Finding":
        return cls(
            rule_id=data["rule_id"],
            severity=Severity(data["severity"]),
            description=data.get("description", ""),
            points_deducted=int(data.get("points_deducted", 0)),
            node_id=data.get("node_id"),
            title=data.get("title", ""),
            category=data.get("category", ""),
            fix=data.get("fix", ""),
            node_ids=tuple(data.get("node_ids") or ()),
        )


@dataclass
class HealthScore:
    workflow_id: str
    score: int
    findings: list[Finding]
    computed_at: datetime
    workflow_name: str = ""
    grade: str = ""

    def severity_counts(self) -> dict[str, int]:
        counts = {severity.value: 0 for severity in Severity}
        for finding in self.findings:
            counts[finding.severity.value] += 1
        return counts

    def to_dict(self) -> dict[str, Any]:
        return {
            "workflow_id": self.workflow_id,
            "workflow_name": self.workflow_name,
            "score": self.score,
            "grade": self.grade,
            "severity_counts": self.severity_counts(),
            "findings": [finding.to_dict() for finding in self.findings],
            "computed_at": to_iso(self.computed_at),
        }


class ExecutionStatus(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"


@dataclass(frozen=True)
class ExecutionRecord:
    workflow_id: str
    status: ExecutionStatus
    occurred_at: datetime
    execution_time_ms: int | None = None
    failed_action_id: str | None = None
    failed_action_name: str | None = None
    error_message: str | None = None
    tenant_id: str = ""
    id: str = field(default_factory=new_id)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "workflow_id": self.workflow_id,
            "status": self.status.value,
            "execution_time_ms": self.execution_time_ms,
            "failed_action_id": self.failed_action_id,
            "failed_action_name": self.failed_action_name,
            "error_message": self.error_message,
            "occurred_at": to_iso(self.occurred_at),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ExecutionRecord":
        occurred_at = parse_datetime(data.get("occurred_at")) or utc_now()
        execution_time = data.get("execution_time_ms")
        return cls(
            id=str(data.get("id") or new_id()),
            tenant_id=str(data.get("tenant_id") or ""),
            workflow_id=str(data["workflow_id"]),
            status=ExecutionStatus(str(data["status"]).lower()),
            occurred_at=occurred_at,
            execution_time_ms=int(execution_time) if execution_time is not None else None,
            failed_action_id=data.get("failed_action_id"),
            failed_action_name=data.get("failed_action_name"),
            error_message=data.get("error_message"),
        )


class Trend(str, Enum):
    IMPROVING = "improving"
    WORSENING = "worsening"
    STABLE = "stable"


@dataclass
class FailureMetrics:
    window_start: datetime
    window_end: datetime
    total_executions: int
    failed_executions: int
    failure_rate_pct: float
    trend: Trend
    workflow_id: str = ""
    avg_execution_time_ms: float = 0.0
    last_failure: dict[str, Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "workflow_id": self.workflow_id,
            "window_start": to_iso(self.window_start),
            "window_end": to_iso(self.window_end),
            "total_executions": self.total_executions,
            "failed_executions": self.failed_executions,
            "failure_rate_pct": self.failure_rate_pct,
            "trend": self.trend.value,
            "avg_execution_time_ms": self.avg_execution_time_ms,
            "last_failure": self.last_failure,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "FailureMetrics":
        return cls(
            workflow_id=str(data.get("workflow_id") or ""),
            window_start=parse_datetime(data["window_start"]),
            window_end=parse_datetime(data["window_end"]),
            total_executions=int(data["total_executions"]),
            failed_executions=int(data["failed_executions"]),
            failure_rate_pct=float(data["failure_rate_pct"]),
            trend=Trend(data["trend"]),
            avg_execution_time_ms=float(data.get("avg_execution_time_ms") or 0.0),
            last_failure=data.get("last_failure"),
        )


_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


@dataclass(frozen=True)
class AlertSettings:
    enabled: bool = True
    failure_threshold: int = 3
    time_window_hours: int = 24
    alert_on_critical: bool = True
    alert_email: str | None = None
    webhook_url: str | None = None

    def __post_init__(self) -> None:
        if self.failure_threshold < 1:
            raise InvalidSettings("failure_threshold must be at least 1")
        if self.time_window_hours < 1:
            raise InvalidSettings("time_window_hours must be at least 1")
        if self.alert_email and not _EMAIL_RE.match(self.alert_email):
            raise InvalidSettings(f"Invalid alert email: {self.alert_email}")
        if self.webhook_url and not self.webhook_url.startswith(("http://", "https://")):
            raise InvalidSettings(f"Webhook URL must be http(s): {self.webhook_url}")

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "AlertSettings":
        return cls(
            enabled=bool(data.get("enabled", True)),
            failure_threshold=int(data.get("failure_threshold", 3)),
            time_window_hours=int(data.get("time_window_hours", 24)),
            alert_on_critical=bool(data.get("alert_on_critical", True)),
            alert_email=data.get("alert_email") or None,
            webhook_url=data.get("webhook_url") or None,
        )


class Frequency(str, Enum):
    DAILY = "daily"
    WEEKLY = "weekly"


class ScanScope(str, Enum):
    ALL = "all"
    ACTIVE = "active"


_TIME_RE = re.compile(r"^([01]\d|2[0-3]):([0-5]\d)$")

SUNDAY = 6


def parse_preferred_time(value: str) -> tuple[int, int]:
    match = _TIME_RE.match(value or "")
    if not match:
        raise InvalidSettings(f"preferred_time must be HH:MM, got {value!r}")
    return int(match.group(1)), int(match.group(2))


def load_timezone(name: str) -> ZoneInfo:
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise InvalidSettings(f"Unknown timezone: {name}") from exc


@dataclass
class ScanSchedule:
    tenant_id: str
    enabled: bool = True
    frequency: Frequency = Frequency.DAILY
    preferred_time: str = "02:00"
    timezone: str = "America/Chicago"
    scan_scope: ScanScope = ScanScope.ACTIVE
    day_of_week: int = SUNDAY
    next_scan_at: datetime | None = None
    last_scan_at: datetime | None = None
    id: str = field(default_factory=new_id)

    def __post_init__(self) -> None:
        self.frequency = Frequency(self.frequency)
        self.scan_scope = ScanScope(self.scan_scope)
        parse_preferred_time(self.preferred_time)
        load_timezone(self.timezone)
        if not 0 <= int(self.day_of_week) <= 6:
            raise InvalidSettings("day_of_week must be between 0 (Monday) and 6 (Sunday)")

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "enabled": self.enabled,
            "frequency": self.frequency.value,
            "preferred_time": self.preferred_time,
            "timezone": self.timezone,
            "scan_scope": self.scan_scope.value,
            "day_of_week": self.day_of_week,
            "next_scan_at": to_iso(self.next_scan_at),
            "last_scan_at": to_iso(self.last_scan_at),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ScanSchedule":
        return cls(
            id=str(data.get("id") or new_id()),
            tenant_id=str(data["tenant_id"]),
            enabled=bool(data.get("enabled", True)),
            frequency=Frequency(data.get("frequency", "daily")),
            preferred_time=str(data.get("preferred_time", "02:00")),
            timezone=str(data.get("timezone", "America/Chicago")),
            scan_scope=ScanScope(data.get("scan_scope", "active")),
            day_of_week=int(data.get("day_of_week", SUNDAY)),
            next_scan_at=parse_datetime(data.get("next_scan_at")),
            last_scan_at=parse_datetime(data.get("last_scan_at")),
        )


class ScanStatus(str, Enum):
    SUCCESS = "success"
    PARTIAL = "partial"
    FAILED = "failed"


@dataclass(frozen=True)
class ScanHistoryEntry:
    tenant_id: str
    started_at: datetime
    completed_at: datetime
    status: ScanStatus
    workflows_scanned: int = 0
    issues_found: int = 0
    critical_issues: int = 0
    schedule_id: str | None = None
    trigger: str = "manual"
    error_message: str | None = None
    id: str = field(default_factory=new_id)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "schedule_id": self.schedule_id,
            "tenant_id": self.tenant_id,
            "started_at": to_iso(self.started_at),
            "completed_at": to_iso(self.completed_at),
            "status": self.status.value,
            "workflows_scanned": self.workflows_scanned,
            "issues_found": self.issues_found,
            "critical_issues": self.critical_issues,
            "trigger": self.trigger,
            "error_message": self.error_message,
        }


@dataclass(frozen=True)
class AlertDecision:
    should_fire: bool
    reason: str
    severity: str = "info"
    workflow_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class DispatchResult:
    channel: str
    success: bool
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)
