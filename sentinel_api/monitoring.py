"""
Health check and monitoring endpoints for the workflow sentinel API.
"""
import time
from datetime import datetime, timezone
from typing import Any, Dict

from fastapi import APIRouter, Depends, Response, status
from pydantic import BaseModel

from sentinel.service import SentinelService
from sentinel_api.deps import get_service

router = APIRouter(tags=["monitoring"])

APP_VERSION = "1.0.0"

# Application start time
START_TIME = time.time()


class HealthResponse(BaseModel):
    """Health check response model."""

    status: str
    timestamp: str
    uptime_seconds: float
    version: str
    component: str


class ReadinessResponse(BaseModel):
    """Readiness check response model."""

    ready: bool
    checks: Dict[str, Dict[str, Any]]


@router.get("/health", response_model=HealthResponse, status_code=status.HTTP_200_OK)
async def health_check() -> HealthResponse:
    """
    Basic health check endpoint.
    Returns 200 OK if the service is running.
    """
    return HealthResponse(
        status="healthy",
        timestamp=datetime.now(timezone.utc).isoformat(),
        uptime_seconds=round(time.time() - START_TIME, 2),
        version=APP_VERSION,
        component="api",
    )


@router.get("/ready", response_model=ReadinessResponse)
def readiness_check(response: Response, service: SentinelService = Depends(get_service)) -> ReadinessResponse:
    """
    Readiness check endpoint.
    Verifies that the database is reachable.
    """
    result = service.ready()
    checks = {
        "database": {"status": "ok" if result["ready"] else "error", "detail": result["database"]},
        "cache": {"status": "ok", "backend": result.get("cache", "unknown")},
    }
    if not result["ready"]:
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    return ReadinessResponse(ready=result["ready"], checks=checks)


@router.get("/metrics")
async def metrics() -> Dict[str, Any]:
    """
    Basic metrics endpoint.
    Returns application metrics in JSON format.
    """
    return {
        "app_uptime_seconds": round(time.time() - START_TIME, 2),
        "app_version": APP_VERSION,
        "app_name": "workflow-sentinel",
        "component": "api",
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
