from __future__ import annotations

import logging
import os

from fastapi import Depends, FastAPI, Query, Request, status
from fastapi.responses import JSONResponse

from sentinel.config import setup_logging
from sentinel.errors import (
    InvalidGraph,
    InvalidSettings,
    ScanInProgress,
    ScheduleNotFound,
    SourceUnavailable,
    StoreUnavailable,
    WorkflowNotFound,
)
from sentinel.models import AlertSettings, ExecutionRecord, ScanSchedule
from sentinel.service import SentinelService
from sentinel_api.deps import get_service
from sentinel_api.models import (
    AlertSettingsPayload,
    ExecutionPayload,
    ScanHistoryRecord,
    ScanRequest,
    ScanSchedulePayload,
    ScheduleResponse,
)
from sentinel_api.monitoring import router as monitoring_router

LOGGER = logging.getLogger(__name__)

APP_TITLE = "Workflow Sentinel"
SCAN_RETRY_AFTER_SECONDS = int(os.getenv("SENTINEL_SCAN_RETRY_AFTER_SECONDS", "30"))

setup_logging(os.getenv("LOG_LEVEL", "INFO"))

app = FastAPI(title=APP_TITLE)

# Add monitoring endpoints
app.include_router(monitoring_router, prefix="/api")


@app.middleware("http")
async def security_middleware(request: Request, call_next):
    response = await call_next(request)
    response.headers["X-Content-Type-Options"] = "nosniff"
    response.headers["X-Frame-Options"] = "DENY"
    response.headers["Referrer-Policy"] = "no-referrer"
    response.headers["Cache-Control"] = "no-store"
    return response


# ---------------------------------------------------------------------------
# Error mapping
# ---------------------------------------------------------------------------

@app.exception_handler(ScanInProgress)
async def scan_in_progress_handler(request: Request, exc: ScanInProgress) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_409_CONFLICT,
        content={"detail": str(exc)},
        headers={"Retry-After": str(SCAN_RETRY_AFTER_SECONDS)},
    )


@app.exception_handler(ScheduleNotFound)
@app.exception_handler(WorkflowNotFound)
async def not_found_handler(request: Request, exc: Exception) -> JSONResponse:
    return JSONResponse(status_code=status.HTTP_404_NOT_FOUND, content={"detail": str(exc)})


@app.exception_handler(InvalidSettings)
@app.exception_handler(InvalidGraph)
async def invalid_handler(request: Request, exc: Exception) -> JSONResponse:
    return JSONResponse(status_code=422, content={"detail": str(exc)})


@app.exception_handler(SourceUnavailable)
@app.exception_handler(StoreUnavailable)
async def unavailable_handler(request: Request, exc: Exception) -> JSONResponse:
    LOGGER.error("Dependency unavailable for %s: %s", request.url.path, exc)
    return JSONResponse(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, content={"detail": str(exc)})


# ---------------------------------------------------------------------------
# Scans and health
# ---------------------------------------------------------------------------

@app.post("/api/tenants/{tenant_id}/scans", status_code=status.HTTP_201_CREATED, response_model=ScanHistoryRecord)
def run_scan(
    tenant_id: str,
    payload: ScanRequest | None = None,
    service: SentinelService = Depends(get_service),
) -> dict:
    entry = service.run_scan(tenant_id, payload.scope if payload else None)
    return entry.to_dict()


@app.get("/api/tenants/{tenant_id}/workflows/{workflow_id}/health")
def workflow_health(tenant_id: str, workflow_id: str, service: SentinelService = Depends(get_service)) -> dict:
    return service.get_health_score(tenant_id, workflow_id).to_dict()


@app.get("/api/tenants/{tenant_id}/workflows/{workflow_id}/metrics")
def workflow_metrics(
    tenant_id: str,
    workflow_id: str,
    window_hours: int | None = Query(default=None, ge=1, le=24 * 90),
    service: SentinelService = Depends(get_service),
) -> dict:
    return service.get_failure_metrics(tenant_id, workflow_id, window_hours).to_dict()


@app.get("/api/tenants/{tenant_id}/workflows/{workflow_id}/failures")
def workflow_failures(
    tenant_id: str,
    workflow_id: str,
    hours: int = Query(default=24, ge=1, le=24 * 90),
    service: SentinelService = Depends(get_service),
) -> list[dict]:
    return [record.to_dict() for record in service.get_recent_failures(tenant_id, workflow_id, hours)]


@app.post("/api/tenants/{tenant_id}/executions", status_code=status.HTTP_202_ACCEPTED)
def record_execution(
    tenant_id: str,
    payload: ExecutionPayload,
    service: SentinelService = Depends(get_service),
) -> dict:
    record = ExecutionRecord.from_dict({**payload.model_dump(), "tenant_id": tenant_id})
    decision = service.record_execution(tenant_id, record)
    return {"id": record.id, "alert": decision.to_dict()}


# ---------------------------------------------------------------------------
# Alert settings
# ---------------------------------------------------------------------------

@app.put("/api/tenants/{tenant_id}/alert-settings")
def put_alert_settings(
    tenant_id: str,
    payload: AlertSettingsPayload,
    service: SentinelService = Depends(get_service),
) -> dict:
    settings = AlertSettings.from_dict(payload.model_dump())
    return service.upsert_alert_settings(tenant_id, settings).to_dict()


@app.get("/api/tenants/{tenant_id}/alert-settings")
def get_alert_settings(tenant_id: str, service: SentinelService = Depends(get_service)) -> dict:
    return service.get_alert_settings(tenant_id).to_dict()


@app.post("/api/tenants/{tenant_id}/alerts/test")
async def send_test_alert(tenant_id: str, service: SentinelService = Depends(get_service)) -> dict:
    results = await service.send_test_alert(tenant_id)
    return {"results": [result.to_dict() for result in results]}


# ---------------------------------------------------------------------------
# Scan schedule and history
# ---------------------------------------------------------------------------

def _schedule_response(service: SentinelService, schedule: ScanSchedule) -> dict:
    return {**schedule.to_dict(), "state": service.get_schedule_state(schedule.tenant_id).value}


@app.put("/api/tenants/{tenant_id}/schedule", response_model=ScheduleResponse)
def put_schedule(
    tenant_id: str,
    payload: ScanSchedulePayload,
    service: SentinelService = Depends(get_service),
) -> dict:
    schedule = ScanSchedule.from_dict({**payload.model_dump(), "tenant_id": tenant_id})
    return _schedule_response(service, service.upsert_scan_schedule(tenant_id, schedule))


@app.get("/api/tenants/{tenant_id}/schedule", response_model=ScheduleResponse)
def get_schedule(tenant_id: str, service: SentinelService = Depends(get_service)) -> dict:
    return _schedule_response(service, service.get_scan_schedule(tenant_id))


@app.delete("/api/tenants/{tenant_id}/schedule")
def delete_schedule(tenant_id: str, service: SentinelService = Depends(get_service)) -> dict:
    service.delete_scan_schedule(tenant_id)
    return {"status": "deleted", "tenant_id": tenant_id}


@app.post("/api/tenants/{tenant_id}/schedule/run", status_code=status.HTTP_201_CREATED, response_model=ScanHistoryRecord)
def run_schedule_now(tenant_id: str, service: SentinelService = Depends(get_service)) -> dict:
    return service.run_schedule_now(tenant_id).to_dict()


@app.get("/api/tenants/{tenant_id}/scan-history", response_model=list[ScanHistoryRecord])
def scan_history(
    tenant_id: str,
    limit: int = Query(default=20, ge=1, le=500),
    service: SentinelService = Depends(get_service),
) -> list[dict]:
    return [entry.to_dict() for entry in service.get_scan_history(tenant_id, limit)]
