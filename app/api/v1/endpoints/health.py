"""
Health check endpoints.

GET /health     — root-level health (no auth required, used by Docker/k8s probes)
GET /v1/health  — versioned alias
"""

from __future__ import annotations

import logging
import time

import aiosqlite
from fastapi import APIRouter, Request

from app.core.config import get_settings
from app.schemas.health import ComponentStatus, HealthResponse

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Health"])

# Recorded at import time: a rough approximation of process start.
_START_TIME = time.time()


async def _build_health_response(request: Request) -> HealthResponse:
    settings = get_settings()
    state = request.app.state

    try:
        total = await state.records.count()
        database = ComponentStatus(
            name="database", ready=True, detail=f"{settings.database_path} ({total} analyses)"
        )
    except (aiosqlite.Error, RuntimeError) as exc:
        logger.warning("Health probe: database unavailable: %s", exc)
        database = ComponentStatus(name="database", ready=False, detail=str(exc))

    components = [
        database,
        ComponentStatus(name="blob_store", ready=True, detail=state.blobs.backend),
        ComponentStatus(
            name="llm",
            ready=settings.llm_key_configured,
            detail=settings.llm_default_model,
        ),
    ]

    if not database.ready:
        overall = "unhealthy"
    elif not all(c.ready for c in components):
        overall = "degraded"
    else:
        overall = "ok"

    return HealthResponse(
        status=overall,
        version=settings.app_version,
        environment=settings.environment,
        uptime_seconds=round(time.time() - _START_TIME, 1),
        live_connections=state.bus.connection_count(),
        components=components,
    )


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Service health check",
    description=(
        "Returns the overall service status and the readiness of each component. "
        "Does not require authentication. Suitable for Docker HEALTHCHECK and "
        "Kubernetes liveness/readiness probes."
    ),
)
async def health_root(request: Request) -> HealthResponse:
    return await _build_health_response(request)


@router.get(
    "/v1/health",
    response_model=HealthResponse,
    summary="Service health check (versioned alias)",
)
async def health_v1(request: Request) -> HealthResponse:
    return await _build_health_response(request)
