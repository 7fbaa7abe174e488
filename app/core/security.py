"""
Request-level access dependencies.

`AuthDep` — service API key. When `API_KEY` env var is empty the dependency
is a no-op so the service works without authentication in development mode.

`CallerDep` — identity of the submitting user, taken from the optional
`X-User-Id` header set by the fronting web app. Absent header means an
anonymous caller; anonymous jobs can be managed by anonymous callers.
"""

from __future__ import annotations

from typing import Annotated

from fastapi import Depends, Header, HTTPException, Security, status
from fastapi.security import APIKeyHeader

from app.core.config import get_settings

_KEY_HEADER = APIKeyHeader(
    name="X-Api-Key",
    auto_error=False,      # we raise a custom error below
    description="API key for service authentication. "
                "Set the `API_KEY` environment variable on the server to enable.",
)


async def verify_api_key(
    key: Annotated[str | None, Security(_KEY_HEADER)],
) -> None:
    """
    FastAPI dependency that enforces API key authentication.

    - If `API_KEY` env var is blank: authentication is disabled, all requests pass.
    - If `API_KEY` env var is set: the incoming `X-Api-Key` header must match exactly.
    """
    settings = get_settings()

    if not settings.auth_enabled:
        return

    if not key or key != settings.api_key:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={
                "error": "unauthorized",
                "message": "Missing or invalid X-Api-Key header.",
            },
            headers={"WWW-Authenticate": "ApiKey"},
        )


async def caller_id(
    x_user_id: Annotated[
        str | None,
        Header(max_length=128, description="Identifier of the end user, if signed in."),
    ] = None,
) -> str | None:
    if x_user_id is None:
        return None
    return x_user_id.strip() or None


# Convenience type aliases used as FastAPI dependencies.
AuthDep = Annotated[None, Depends(verify_api_key)]
CallerDep = Annotated[str | None, Depends(caller_id)]
