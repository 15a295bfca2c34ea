from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, Field


class ScanRequest(BaseModel):
    scope: Literal["all", "active"] | None = None


class AlertSettingsPayload(BaseModel):
    enabled: bool = True
    failure_threshold: int = Field(default=3, ge=1)
    time_window_hours: int = Field(default=24, ge=1)
    alert_on_critical: bool = True
    alert_email: str | None = None
    webhook_url: str | None = None


class ScanSchedulePayload(BaseModel):
    enabled: bool = True
    frequency: Literal["daily", "weekly"] = "daily"
    preferred_time: str = Field(default="02:00", pattern=r"^([01]\d|2[0-3]):[0-5]\d$")
    timezone: str = "America/Chicago"
    scan_scope: Literal["all", "active"] = "active"
    day_of_week: int = Field(default=6, ge=0, le=6)


class ExecutionPayload(BaseModel):
    workflow_id: str
    status: Literal["success", "failed"]
    execution_time_ms: int | None = Field(default=None, ge=0)
    failed_action_id: str | None = None
    failed_action_name: str | None = None
    error_message: str | None = None
    occurred_at: str | None = None


class ScheduleResponse(BaseModel):
    id: str
    tenant_id: str
    enabled: bool
    frequency: str
    preferred_time: str
    timezone: str
    scan_scope: str
    day_of_week: int
    next_scan_at: str | None = None
    last_scan_at: str | None = None
    state: str


class ScanHistoryRecord(BaseModel):
    id: str
    schedule_id: str | None = None
    tenant_id: str
    started_at: str
    completed_at: str
    status: str
    workflows_scanned: int
    issues_found: int
    critical_issues: int
    trigger: str
    error_message: str | None = None
