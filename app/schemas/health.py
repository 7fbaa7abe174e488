"""
Health check response schemas.
"""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, Field


class ComponentStatus(BaseModel):
    name: str = Field(description="Internal component name.")
    ready: bool = Field(description="True if the component can serve requests.")
    detail: str | None = Field(
        default=None,
        description="Backend in use, or the error seen while probing it.",
    )


class HealthResponse(BaseModel):
    """Response body for GET /health and GET /v1/health"""

    status: Literal["ok", "degraded", "unhealthy"] = Field(
        description=(
            "ok        — every component ready.\n"
            "degraded  — jobs can be submitted but analysis will fail "
            "            (no LLM provider key configured).\n"
            "unhealthy — the job database is unreachable."
        )
    )
    version: str = Field(description="Service version string.", examples=["1.0.0"])
    environment: str = Field(examples=["production"])
    uptime_seconds: float = Field(description="Seconds since the process started.")
    live_connections: int = Field(description="Open live-update (SSE) connections.")
    components: list[ComponentStatus]
