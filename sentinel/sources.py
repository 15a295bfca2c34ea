from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Protocol

import yaml

from sentinel.errors import InvalidGraph, SourceUnavailable
from sentinel.models import WorkflowGraph

LOGGER = logging.getLogger(__name__)

WORKFLOW_SUFFIXES = (".json", ".yaml", ".yml")


class WorkflowSource(Protocol):
    def fetch_workflows(self, tenant_id: str) -> list[WorkflowGraph]: ...


@dataclass
class WorkflowBatch:
    """Workflows of one tenant, plus the exports that could not be turned into a graph."""

    graphs: list[WorkflowGraph] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)


def collect_workflows(source: WorkflowSource, tenant_id: str) -> WorkflowBatch:
    """Fetch a tenant's workflows, keeping per-workflow load errors when the source reports them."""
    load = getattr(source, "load", None)
    if load is not None:
        return load(tenant_id)
    return WorkflowBatch(graphs=list(source.fetch_workflows(tenant_id)))


class StaticWorkflowSource:
    """In-memory source, keyed by tenant id."""

    def __init__(self, workflows: dict[str, list[WorkflowGraph]] | None = None) -> None:
        self._workflows: dict[str, list[WorkflowGraph]] = dict(workflows or {})

    def add(self, tenant_id: str, graph: WorkflowGraph) -> None:
        self._workflows.setdefault(tenant_id, []).append(graph)

    def fetch_workflows(self, tenant_id: str) -> list[WorkflowGraph]:
        return list(self._workflows.get(tenant_id, []))


def load_workflow_file(path: Path) -> Any:
    with path.open("r", encoding="utf-8") as handle:
        if path.suffix == ".json":
            return json.load(handle)
        return yaml.safe_load(handle) or {}


class DirectoryWorkflowSource:
    """Reads ``<root>/<tenant_id>/*.json|yaml`` exports, one workflow per file.

    ``load`` reports files that do not parse into a graph as per-file errors;
    ``fetch_workflows`` returns only the graphs. An unreadable tenant directory
    raises ``SourceUnavailable``.
    """

    def __init__(self, root: str | Path) -> None:
        self.root = Path(root)

    def load(self, tenant_id: str) -> WorkflowBatch:
        tenant_dir = self.root / tenant_id
        if not tenant_dir.is_dir():
            raise SourceUnavailable(f"No workflow export directory for tenant {tenant_id} under {self.root}")

        try:
            paths = sorted(path for path in tenant_dir.iterdir() if path.suffix in WORKFLOW_SUFFIXES)
        except OSError as exc:
            raise SourceUnavailable(f"Cannot list {tenant_dir}: {exc}") from exc

        batch = WorkflowBatch()
        for path in paths:
            try:
                payload = load_workflow_file(path)
            except OSError as exc:
                raise SourceUnavailable(f"Cannot read {path}: {exc}") from exc
            except (json.JSONDecodeError, yaml.YAMLError) as exc:
                LOGGER.warning("Skipping unparsable workflow file %s: %s", path, exc)
                batch.errors.append(f"{path.name}: not valid JSON/YAML")
                continue
            try:
                batch.graphs.append(WorkflowGraph.from_dict(payload))
            except InvalidGraph as exc:
                LOGGER.warning("Skipping workflow file %s: %s", path, exc)
                batch.errors.append(f"{path.name}: {exc}")
        LOGGER.debug(
            "Loaded %d workflows for tenant %s from %s (%d unreadable)",
            len(batch.graphs),
            tenant_id,
            tenant_dir,
            len(batch.errors),
        )
        return batch

    def fetch_workflows(self, tenant_id: str) -> list[WorkflowGraph]:
        return self.load(tenant_id).graphs
