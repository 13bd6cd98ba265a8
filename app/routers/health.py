"""
Health Check Router

Provides health check endpoints for monitoring application status.
Readiness additionally probes the item store through the executor.
"""

import asyncio
import os
import sys
import time
from datetime import datetime, timezone

from fastapi import APIRouter, Depends, HTTPException

from app.db.errors import StoreUnavailable
from app.db.executor import AccessPatternExecutor
from app.dependencies import get_executor
from app.models.schemas import HealthCheckResponse

# Initialize router
router = APIRouter()

# Application start time for uptime calculation
_start_time = time.time()

READINESS_TIMEOUT = 2.0


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


@router.get("/health", response_model=HealthCheckResponse, summary="Basic Health Check")
async def health_check():
    """
    Basic health check endpoint

    Returns application status, version, and environment information.
    This endpoint is used by load balancers and monitoring systems.
    """
    return HealthCheckResponse(
        status="healthy",
        version=os.getenv("APP_VERSION", "1.0.0"),
        environment=os.getenv("ENVIRONMENT", "development"),
        uptime=time.time() - _start_time,
    )


@router.get("/health/detailed", summary="Detailed Health Check")
async def detailed_health_check(executor: AccessPatternExecutor = Depends(get_executor)):
    """
    Detailed health check with store connectivity and retry settings
    """
    try:
        store_ok = await executor.ping(timeout=READINESS_TIMEOUT)
        store_error = None
    except (StoreUnavailable, asyncio.TimeoutError) as exc:
        store_ok = False
        store_error = str(exc) or exc.__class__.__name__

    config = executor.config
    return {
        "status": "healthy" if store_ok else "degraded",
        "version": os.getenv("APP_VERSION", "1.0.0"),
        "environment": os.getenv("ENVIRONMENT", "development"),
        "timestamp": _now(),
        "uptime": time.time() - _start_time,
        "components": {
            "store": {"reachable": store_ok, "error": store_error},
        },
        "details": {
            "max_attempts": config.max_attempts,
            "page_size": config.page_size,
            "python_version": sys.version,
            "startup_time": datetime.fromtimestamp(_start_time, timezone.utc).isoformat(),
        },
    }


@router.get("/health/ready", summary="Readiness Check")
async def readiness_check(executor: AccessPatternExecutor = Depends(get_executor)):
    """
    Kubernetes-style readiness probe

    Returns 200 if the store answers, 503 otherwise.
    """
    try:
        await executor.ping(timeout=READINESS_TIMEOUT)
    except (StoreUnavailable, asyncio.TimeoutError) as exc:
        raise HTTPException(
            status_code=503,
            detail=f"Application not ready: {str(exc) or exc.__class__.__name__}",
        )
    return {"status": "ready", "timestamp": _now()}


@router.get("/health/live", summary="Liveness Check")
async def liveness_check():
    """
    Kubernetes-style liveness probe
    """
    return {
        "status": "alive",
        "timestamp": _now(),
        "pid": os.getpid(),
    }
