"""Health scoring for analysed workflows.

Turns a findings list into a 0-100 health score, a grade and a short list of
plain-text recommendations.
"""

from __future__ import annotations

from datetime import datetime
from typing import Iterable

from sentinel.models import Finding, HealthScore, Severity, WorkflowGraph, utc_now

# Lower bound (inclusive) of each grade band.
GRADE_BANDS = (
    (90, "Excellent"),
    (70, "Good"),
    (50, "Needs Attention"),
    (30, "High Risk"),
    (0, "Critical"),
)

CATEGORY_RECOMMENDATIONS = {
    "Graph Structure": "Review the workflow for loops and make sure every loop has an exit condition",
    "Error Handling": "Add error branches or retries to actions that call external services",
    "Configuration": "Verify webhook URLs and API endpoints are correct and publicly reachable",
    "Best Practices": "Replace hardcoded recipients and credentials with contact fields or secrets",
    "Triggers": "Make overlapping triggers mutually exclusive with filters",
    "Maintenance": "Upgrade actions that still use deprecated API versions",
}


def clamp_score(value: int) -> int:
    return max(0, min(100, value))


def grade_for(score: int) -> str:
    for lower_bound, grade in GRADE_BANDS:
        if score >= lower_bound:
            return grade
    return "Critical"


def severity_counts(findings: Iterable[Finding]) -> dict[str, int]:
    counts = {severity.value: 0 for severity in Severity}
    for finding in findings:
        counts[finding.severity.value] += 1
    return counts


def score(
    findings: list[Finding],
    workflow_id: str,
    workflow_name: str = "",
    computed_at: datetime | None = None,
) -> HealthScore:
    """Score = 100 minus the sum of deducted points, clamped to [0, 100]."""
    deducted = sum(finding.points_deducted for finding in findings)
    value = clamp_score(100 - deducted)
    return HealthScore(
        workflow_id=workflow_id,
        workflow_name=workflow_name,
        score=value,
        findings=list(findings),
        computed_at=computed_at or utc_now(),
        grade=grade_for(value),
    )


def recommendations(findings: list[Finding], graph: WorkflowGraph | None = None) -> list[str]:
    counts = severity_counts(findings)
    items: list[str] = []
    if counts["critical"]:
        plural = "s" if counts["critical"] > 1 else ""
        items.append(f"Fix {counts['critical']} critical issue{plural} immediately to prevent workflow failures")

    seen_categories: list[str] = []
    for finding in findings:
        if finding.category in CATEGORY_RECOMMENDATIONS and finding.category not in seen_categories:
            seen_categories.append(finding.category)
    items.extend(CATEGORY_RECOMMENDATIONS[category] for category in seen_categories)

    if counts["medium"] > 5:
        items.append(f"Address {counts['medium']} medium-priority issues to improve reliability")
    if graph is not None:
        if graph.is_active and findings:
            items.append("This workflow is active: test fixes on a copy before publishing")
        if len(graph.nodes) > 30:
            items.append("Consider splitting this workflow into smaller sub-workflows")
    return items
