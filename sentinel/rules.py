"""Workflow defect detectors.

Each detector is a plain function ``detector(graph, context) -> list[Finding]``.
Detectors are independent: none of them sees another detector's output, and
``analyze`` simply concatenates their results in registry order (then by node
id) so two scans of the same graph always produce the same list.
"""

from __future__ import annotations

import re
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Iterator

from sentinel.errors import AnalysisTimeout
from sentinel.models import Finding, Node, NodeKind, Severity, WorkflowGraph

DEFAULT_POINTS = {"critical": 25, "high": 15, "medium": 10, "low": 3}
DEFAULT_DEPRECATED_VERSIONS = ("v1", "v2", "beta", "alpha")
DEFAULT_DEPRECATED_INTEGRATIONS = ("zapier_legacy", "legacy_webhook", "mailchimp_v2")
DEFAULT_LONG_CHAIN_THRESHOLD = 10

# Trigger types that fire on the same underlying contact event.
OVERLAPPING_TRIGGER_PAIRS = (
    frozenset({"contact_tag_added", "contact_updated"}),
    frozenset({"form_submit", "webhook"}),
    frozenset({"contact_created", "contact_tag_added"}),
)

FAILURE_EDGE_LABELS = {"on_error", "on_failure", "error", "failure", "fallback", "else_error"}
ERROR_HANDLING_ATTRIBUTES = (
    "retry",
    "retries",
    "max_retries",
    "maxRetries",
    "retry_count",
    "retryLogic",
    "on_error",
    "onError",
    "error_handling",
    "errorHandling",
    "fallback",
    "fallback_action_id",
    "fallbackActionId",
)
RETRY_ATTRIBUTES = ("retry", "retries", "max_retries", "maxRetries", "retry_count", "retryLogic")
TIMEOUT_ATTRIBUTES = ("timeout", "timeout_seconds", "timeoutSeconds", "timeout_ms", "timeoutMs")

EXTERNAL_CALL_TYPES = {"api", "webhook", "webhook_call", "http_request", "custom_api", "integration"}
PAYMENT_TYPES = {"payment", "charge", "stripe_payment"}

LOCALHOST_RE = re.compile(r"https?://(localhost|127\.0\.0\.1|0\.0\.0\.0|\[::1\])(:\d+)?(/|$)", re.IGNORECASE)
PHONE_RE = re.compile(r"^\+?\d{10,}$")
EMAIL_KEYS = {"to", "recipient", "email", "to_email"}
PHONE_KEYS = {"to", "phone", "phone_number", "phoneNumber"}
SECRET_KEYS = {"api_key", "apiKey", "token", "auth_token", "authToken", "secret"}
URL_KEYS = ("url", "endpoint", "webhook_url")
SKIPPED_TEXT_KEYS = {"description", "name", "type"}

SEQUENTIAL_KINDS = {NodeKind.ACTION, NodeKind.DELAY}


@dataclass(frozen=True)
class RuleConfig:
    points: dict[str, int] = field(default_factory=lambda: dict(DEFAULT_POINTS))
    long_chain_threshold: int = DEFAULT_LONG_CHAIN_THRESHOLD
    deprecated_versions: tuple[str, ...] = DEFAULT_DEPRECATED_VERSIONS
    deprecated_integrations: tuple[str, ...] = DEFAULT_DEPRECATED_INTEGRATIONS
    disabled_rules: tuple[str, ...] = ()

    def points_for(self, severity: Severity) -> int:
        return int(self.points.get(severity.value, DEFAULT_POINTS[severity.value]))

    @classmethod
    def from_settings(cls, settings: dict[str, Any]) -> "RuleConfig":
        rules = settings.get("rules", {})
        points = dict(DEFAULT_POINTS)
        points.update({str(key).lower(): int(value) for key, value in (rules.get("points") or {}).items()})
        return cls(
            points=points,
            long_chain_threshold=int(rules.get("long_chain_threshold", DEFAULT_LONG_CHAIN_THRESHOLD)),
            deprecated_versions=tuple(rules.get("deprecated_versions", DEFAULT_DEPRECATED_VERSIONS)),
            deprecated_integrations=tuple(rules.get("deprecated_integrations", DEFAULT_DEPRECATED_INTEGRATIONS)),
            disabled_rules=tuple(rules.get("disabled", ())),
        )


class TraversalBudget:
    """Wall-clock budget for analysing one workflow."""

    def __init__(self, workflow_id: str, timeout_seconds: float | None = None, clock: Callable[[], float] = time.monotonic) -> None:
        self.workflow_id = workflow_id
        self.timeout_seconds = timeout_seconds
        self._clock = clock
        self._deadline = clock() + timeout_seconds if timeout_seconds else None

    def check(self) -> None:
        if self._deadline is not None and self._clock() > self._deadline:
            raise AnalysisTimeout(self.workflow_id, f"analysis exceeded {self.timeout_seconds}s")


@dataclass
class RuleContext:
    config: RuleConfig
    budget: TraversalBudget

    def finding(
        self,
        rule_id: str,
        severity: Severity,
        description: str,
        node_id: str | None = None,
        title: str = "",
        category: str = "",
        fix: str = "",
        node_ids: tuple[str, ...] = (),
    ) -> Finding:
        return Finding(
            rule_id=rule_id,
            severity=severity,
            description=description,
            points_deducted=self.config.points_for(severity),
            node_id=node_id,
            title=title,
            category=category,
            fix=fix,
            node_ids=node_ids or ((node_id,) if node_id else ()),
        )


Detector = Callable[[WorkflowGraph, RuleContext], list[Finding]]


def _has_any(attributes: dict[str, Any], keys: tuple[str, ...]) -> bool:
    return any(attributes.get(key) not in (None, "", False) for key in keys)


def _iter_text(value: Any, key: str = "") -> Iterator[tuple[str, str]]:
    if isinstance(value, str):
        yield key, value
    elif isinstance(value, dict):
        for child_key, child in value.items():
            if child_key in SKIPPED_TEXT_KEYS:
                continue
            yield from _iter_text(child, str(child_key))
    elif isinstance(value, (list, tuple)):
        for child in value:
            yield from _iter_text(child, key)


def _is_templated(value: str) -> bool:
    return "{{" in value or value.startswith("$")


# ---------------------------------------------------------------------------
# Detectors required for every scan
# ---------------------------------------------------------------------------

def detect_cycles(graph: WorkflowGraph, ctx: RuleContext) -> list[Finding]:
    """Depth-first walk from every trigger; an edge back onto the walk stack is an infinite loop."""
    on_stack, done = 1, 2
    state: dict[str, int] = {}
    findings: list[Finding] = []

    for trigger in graph.triggers():
        if trigger.id in state:
            continue
        path = [trigger.id]
        state[trigger.id] = on_stack
        stack = [(trigger.id, iter(graph.outgoing(trigger.id)))]
        while stack:
            ctx.budget.check()
            node_id, edges = stack[-1]
            edge = next(edges, None)
            if edge is None:
                stack.pop()
                path.pop()
                state[node_id] = done
                continue
            target = edge.target_node_id
            status = state.get(target)
            if status == on_stack:
                loop = path[path.index(target):] + [target]
                labels = [graph.node(item).label if graph.node(item) else item for item in loop]
                findings.append(
                    ctx.finding(
                        "cycle",
                        Severity.CRITICAL,
                        f"Circular path detected: {' -> '.join(labels)}. The workflow can run indefinitely.",
                        node_id=node_id,
                        title="Infinite Loop Detected",
                        category="Graph Structure",
                        fix="Add a condition node with an exit path, or a counter that breaks the loop",
                        node_ids=tuple(loop),
                    )
                )
            elif status is None:
                state[target] = on_stack
                path.append(target)
                stack.append((target, iter(graph.outgoing(target))))
    return findings


def _trigger_filters(node: Node) -> Any:
    return node.attributes.get("filters") or None


def detect_trigger_conflicts(graph: WorkflowGraph, ctx: RuleContext) -> list[Finding]:
    findings: list[Finding] = []
    triggers = graph.triggers()
    for index, first in enumerate(triggers):
        for second in triggers[index + 1:]:
            first_type, second_type = first.node_type, second.node_type
            severity = None
            if first_type == second_type:
                first_filters, second_filters = _trigger_filters(first), _trigger_filters(second)
                if first_filters is None or second_filters is None or first_filters == second_filters:
                    severity = Severity.HIGH
            elif frozenset({first_type, second_type}) in OVERLAPPING_TRIGGER_PAIRS:
                severity = Severity.MEDIUM
            if severity is None:
                continue
            findings.append(
                ctx.finding(
                    "trigger_conflict",
                    severity,
                    f'Triggers "{first.label}" ({first_type}) and "{second.label}" ({second_type}) may fire for the same event',
                    node_id=first.id,
                    title="Trigger Conflict Detected",
                    category="Triggers",
                    fix="Add trigger filters that make the triggers mutually exclusive, or merge them into one entry point",
                    node_ids=(first.id, second.id),
                )
            )
    return findings


def detect_missing_error_handling(graph: WorkflowGraph, ctx: RuleContext) -> list[Finding]:
    findings: list[Finding] = []
    for node in graph.nodes_of_kind(NodeKind.ACTION):
        has_failure_edge = any(str(edge.label or "").lower() in FAILURE_EDGE_LABELS for edge in graph.outgoing(node.id))
        if has_failure_edge or _has_any(node.attributes, ERROR_HANDLING_ATTRIBUTES):
            continue
        findings.append(
            ctx.finding(
                "missing_error_handling",
                Severity.HIGH,
                f'Action "{node.label}" has no failure path and no retry policy; a failure stops the workflow',
                node_id=node.id,
                title="Action Without Error Handling",
                category="Error Handling",
                fix="Attach an on_error branch or configure retries for this action",
            )
        )
    return findings


def detect_hardcoded_values(graph: WorkflowGraph, ctx: RuleContext) -> list[Finding]:
    findings: list[Finding] = []
    for node in graph.nodes_of_kind(NodeKind.ACTION):
        localhost_url = None
        generic: list[str] = []
        for key, value in _iter_text(node.attributes):
            if LOCALHOST_RE.search(value):
                localhost_url = localhost_url or value
                continue
            if _is_templated(value):
                continue
            if key in EMAIL_KEYS and "@" in value:
                generic.append(f"recipient {value}")
            elif key in PHONE_KEYS and PHONE_RE.match(value):
                generic.append(f"phone number {value}")
            elif key in SECRET_KEYS and len(value) > 10:
                generic.append(f"credential in '{key}'")

        if localhost_url:
            findings.append(
                ctx.finding(
                    "hardcoded_value",
                    Severity.CRITICAL,
                    f'Action "{node.label}" points to {localhost_url}, which external services cannot reach',
                    node_id=node.id,
                    title="Webhook Points to Localhost",
                    category="Configuration",
                    fix="Replace the localhost URL with a publicly reachable endpoint",
                )
            )
        elif generic:
            findings.append(
                ctx.finding(
                    "hardcoded_value",
                    Severity.MEDIUM,
                    f'Action "{node.label}" hardcodes {", ".join(generic)}',
                    node_id=node.id,
                    title="Hardcoded Value",
                    category="Best Practices",
                    fix="Use contact fields, custom values or secrets instead of literal values",
                )
            )
    return findings


def _deprecated_reason(node: Node, config: RuleConfig) -> str | None:
    attributes = node.attributes
    for key in URL_KEYS:
        url = attributes.get(key)
        if not isinstance(url, str):
            continue
        segments = [segment.lower() for segment in url.split("?")[0].split("/")]
        for version in config.deprecated_versions:
            if version.lower() in segments:
                return f"uses deprecated API version '{version}' in {url}"
    api_version = str(attributes.get("api_version") or attributes.get("apiVersion") or "").lower()
    if api_version and api_version in {version.lower() for version in config.deprecated_versions}:
        return f"is configured with deprecated API version '{api_version}'"
    integration = str(attributes.get("integration") or "").lower()
    denylisted = {item.lower() for item in config.deprecated_integrations}
    for candidate in (integration, node.node_type):
        if candidate and candidate in denylisted:
            return f"uses deprecated integration '{candidate}'"
    return None


def detect_deprecated_apis(graph: WorkflowGraph, ctx: RuleContext) -> list[Finding]:
    findings: list[Finding] = []
    for node in graph.nodes_of_kind(NodeKind.ACTION):
        reason = _deprecated_reason(node, ctx.config)
        if reason is None:
            continue
        findings.append(
            ctx.finding(
                "deprecated_api",
                Severity.MEDIUM,
                f'Action "{node.label}" {reason}',
                node_id=node.id,
                title="Deprecated API Usage",
                category="Maintenance",
                fix="Migrate the action to the current stable API or integration",
            )
        )
    return findings


def _reachable(graph: WorkflowGraph, start: str, ctx: RuleContext) -> list[str]:
    seen = {start}
    order = [start]
    queue = [start]
    while queue:
        ctx.budget.check()
        node_id = queue.pop(0)
        for successor in graph.successors(node_id):
            if successor not in seen:
                seen.add(successor)
                order.append(successor)
                queue.append(successor)
    return order


def _sequential_runs(graph: WorkflowGraph, ctx: RuleContext) -> dict[str, int]:
    """Longest run of consecutive action/delay nodes starting at each such node.

    Runs are measured over the strongly connected components of the
    action/delay subgraph, so a loop of such nodes counts each of its members
    once and the result does not depend on node order.
    """

    def sequential_successors(node_id: str) -> list[str]:
        successors = []
        for successor in graph.successors(node_id):
            node = graph.node(successor)
            if node is not None and node.kind in SEQUENTIAL_KINDS:
                successors.append(successor)
        return successors

    # Tarjan's algorithm; components come out sinks first.
    index_of: dict[str, int] = {}
    lowlink: dict[str, int] = {}
    on_stack: set[str] = set()
    stack: list[str] = []
    components: list[list[str]] = []

    for root in graph.nodes:
        if root.kind not in SEQUENTIAL_KINDS or root.id in index_of:
            continue
        index_of[root.id] = lowlink[root.id] = len(index_of)
        stack.append(root.id)
        on_stack.add(root.id)
        work = [(root.id, iter(sequential_successors(root.id)))]
        while work:
            ctx.budget.check()
            node_id, successors = work[-1]
            descended = False
            for successor in successors:
                if successor not in index_of:
                    index_of[successor] = lowlink[successor] = len(index_of)
                    stack.append(successor)
                    on_stack.add(successor)
                    work.append((successor, iter(sequential_successors(successor))))
                    descended = True
                    break
                if successor in on_stack:
                    lowlink[node_id] = min(lowlink[node_id], index_of[successor])
            if descended:
                continue
            work.pop()
            if work:
                parent = work[-1][0]
                lowlink[parent] = min(lowlink[parent], lowlink[node_id])
            if lowlink[node_id] == index_of[node_id]:
                component = []
                while True:
                    member = stack.pop()
                    on_stack.discard(member)
                    component.append(member)
                    if member == node_id:
                        break
                components.append(component)

    lengths: dict[str, int] = {}
    for component in components:
        members = set(component)
        downstream = 0
        for member in component:
            for successor in sequential_successors(member):
                if successor not in members:
                    downstream = max(downstream, lengths[successor])
        for member in component:
            lengths[member] = len(component) + downstream
    return lengths


def detect_long_chains(graph: WorkflowGraph, ctx: RuleContext) -> list[Finding]:
    threshold = ctx.config.long_chain_threshold
    lengths = _sequential_runs(graph, ctx)
    findings: list[Finding] = []
    reported_heads: set[str] = set()

    for trigger in graph.triggers():
        head, longest = None, 0
        for node_id in _reachable(graph, trigger.id, ctx):
            if lengths.get(node_id, 0) > longest:
                head, longest = node_id, lengths[node_id]
        if head is None or longest <= threshold or head in reported_heads:
            continue
        reported_heads.add(head)

        chain = [head]
        while len(chain) < longest:
            following = max(
                (node_id for node_id in graph.successors(chain[-1]) if node_id in lengths and node_id not in chain),
                key=lambda node_id: lengths[node_id],
                default=None,
            )
            if following is None:
                break
            chain.append(following)

        severity = Severity.LOW if longest <= threshold * 2 else Severity.MEDIUM
        findings.append(
            ctx.finding(
                "long_chain",
                severity,
                f'Flow from "{trigger.label}" runs {longest} sequential steps without a condition checkpoint',
                node_id=head,
                title="Long Chain Without Checkpoints",
                category="Complexity",
                fix="Add condition nodes to validate data at key points, or split the flow into smaller workflows",
                node_ids=tuple(chain),
            )
        )
    return findings


def detect_missing_descriptions(graph: WorkflowGraph, ctx: RuleContext) -> list[Finding]:
    return [
        ctx.finding(
            "missing_description",
            Severity.LOW,
            f'{node.kind.value.capitalize()} "{node.label}" has no description',
            node_id=node.id,
            title="Missing Description",
            category="Documentation",
            fix="Add a short description explaining what this step does",
        )
        for node in graph.nodes
        if not node.description
    ]


# ---------------------------------------------------------------------------
# Additional detectors
# ---------------------------------------------------------------------------

def detect_payment_without_retry(graph: WorkflowGraph, ctx: RuleContext) -> list[Finding]:
    return [
        ctx.finding(
            "payment_retry",
            Severity.CRITICAL,
            f'Payment action "{node.label}" has no retry policy; transient failures lose revenue',
            node_id=node.id,
            title="Payment Action Without Retry Logic",
            category="Payment",
            fix="Configure retries with backoff for the payment action",
        )
        for node in graph.nodes_of_kind(NodeKind.ACTION)
        if node.node_type in PAYMENT_TYPES and not _has_any(node.attributes, RETRY_ATTRIBUTES)
    ]


def detect_missing_timeouts(graph: WorkflowGraph, ctx: RuleContext) -> list[Finding]:
    return [
        ctx.finding(
            "missing_timeout",
            Severity.MEDIUM,
            f'Action "{node.label}" calls an external service without a timeout',
            node_id=node.id,
            title="External Call Without Timeout",
            category="Resilience",
            fix="Set a timeout (for example 30 seconds for webhooks, 10 seconds for APIs)",
        )
        for node in graph.nodes_of_kind(NodeKind.ACTION)
        if node.node_type in EXTERNAL_CALL_TYPES and not any(key in node.attributes for key in TIMEOUT_ATTRIBUTES)
    ]


def detect_disconnected_nodes(graph: WorkflowGraph, ctx: RuleContext) -> list[Finding]:
    return [
        ctx.finding(
            "disconnected_node",
            Severity.LOW,
            f'Node "{node.label}" is not connected to the workflow',
            node_id=node.id,
            title="Disconnected Node",
            category="Code Quality",
            fix="Connect the node to the flow or remove it",
        )
        for node in graph.nodes
        if node.kind is not NodeKind.TRIGGER and not graph.incoming(node.id) and not graph.outgoing(node.id)
    ]


def detect_single_branch_conditions(graph: WorkflowGraph, ctx: RuleContext) -> list[Finding]:
    return [
        ctx.finding(
            "single_branch_condition",
            Severity.LOW,
            f'Condition "{node.label}" has {len(graph.outgoing(node.id))} outgoing branch(es)',
            node_id=node.id,
            title="Condition With Single Branch",
            category="Code Quality",
            fix="Add an else branch or remove the condition",
        )
        for node in graph.nodes_of_kind(NodeKind.CONDITION)
        if len(graph.outgoing(node.id)) < 2
    ]


DETECTORS: tuple[tuple[str, Detector], ...] = (
    ("cycle", detect_cycles),
    ("trigger_conflict", detect_trigger_conflicts),
    ("missing_error_handling", detect_missing_error_handling),
    ("hardcoded_value", detect_hardcoded_values),
    ("deprecated_api", detect_deprecated_apis),
    ("long_chain", detect_long_chains),
    ("missing_description", detect_missing_descriptions),
    ("payment_retry", detect_payment_without_retry),
    ("missing_timeout", detect_missing_timeouts),
    ("disconnected_node", detect_disconnected_nodes),
    ("single_branch_condition", detect_single_branch_conditions),
)

RULE_IDS = tuple(rule_id for rule_id, _ in DETECTORS)


def analyze(graph: WorkflowGraph, config: RuleConfig | None = None, budget: TraversalBudget | None = None) -> list[Finding]:
    """Run every enabled detector over ``graph``.

    Raises InvalidGraph for malformed graphs and AnalysisTimeout when the
    budget runs out; callers decide whether that aborts anything beyond this
    workflow.
    """
    config = config or RuleConfig()
    graph.validate()
    context = RuleContext(config=config, budget=budget or TraversalBudget(graph.id))
    findings: list[Finding] = []
    for rule_id, detector in DETECTORS:
        if rule_id in config.disabled_rules:
            continue
        context.budget.check()
        findings.extend(sorted(detector(graph, context), key=lambda finding: finding.node_id or ""))
    return findings
