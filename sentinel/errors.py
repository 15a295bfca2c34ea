from __future__ import annotations


class SentinelError(Exception):
    """Base class for workflow sentinel errors."""


class InvalidGraph(SentinelError):
    """A workflow graph is malformed (dangling edges, duplicate ids...)."""

    def __init__(self, workflow_id: str, message: str) -> None:
        super().__init__(f"Workflow {workflow_id}: {message}")
        self.workflow_id = workflow_id


class AnalysisTimeout(InvalidGraph):
    """Analysis of a single workflow exceeded its traversal budget."""


class ScanInProgress(SentinelError):
    def __init__(self, tenant_id: str) -> None:
        super().__init__(f"A scan is already running for tenant {tenant_id}; retry later")
        self.tenant_id = tenant_id


class ScheduleNotFound(SentinelError):
    def __init__(self, tenant_id: str) -> None:
        super().__init__(f"No scan schedule found for tenant {tenant_id}")
        self.tenant_id = tenant_id


class WorkflowNotFound(SentinelError):
    def __init__(self, tenant_id: str, workflow_id: str) -> None:
        super().__init__(f"Workflow {workflow_id} not found for tenant {tenant_id}")
        self.tenant_id = tenant_id
        self.workflow_id = workflow_id


class DispatchFailure(SentinelError):
    def __init__(self, channel: str, message: str) -> None:
        super().__init__(f"{channel}: {message}")
        self.channel = channel


class SourceUnavailable(SentinelError):
    """The workflow source could not be reached."""


class StoreUnavailable(SentinelError):
    """The persistence layer could not be reached."""


class InvalidSettings(SentinelError, ValueError):
    """A configuration record failed validation."""
