"""Health check and monitoring endpoints.

This module provides:
- GET /healthz - Liveness check, no dependencies consulted
- GET /metrics - Prometheus metrics
"""
import time

from fastapi import APIRouter
from fastapi.responses import Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from skyproxy.app.schemas import HealthResponse

router = APIRouter(tags=["Health"])


@router.get("/healthz", response_model=HealthResponse)
async def healthz() -> HealthResponse:
    """Health check endpoint for supervisors and load balancers."""
    return HealthResponse(status="ok", timestamp=int(time.time() * 1000))


@router.get("/metrics")
async def metrics() -> Response:
    """Prometheus metrics endpoint."""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
