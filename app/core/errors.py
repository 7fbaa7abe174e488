"""
Structured error responses and global exception handlers.

Every error returned by the API follows this envelope:

    {
        "error": "snake_case_code",
        "message": "Human-readable description.",
        "detail": { ... }   // optional, only in development mode
    }

Upstream (LLM provider) errors share the same base class but never reach
an HTTP response: the job controller records them on the failed job and
pushes `message` to the live-update channel instead.
"""

from __future__ import annotations

import logging
from typing import Any

from fastapi import FastAPI, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import ValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

logger = logging.getLogger(__name__)


# --------------------------------------------------------------------------- #
# Canonical error envelope
# --------------------------------------------------------------------------- #

def error_response(
    code: str,
    message: str,
    status_code: int,
    detail: Any = None,
) -> JSONResponse:
    body: dict[str, Any] = {"error": code, "message": message}
    if detail is not None:
        body["detail"] = detail
    return JSONResponse(status_code=status_code, content=body)


# --------------------------------------------------------------------------- #
# Custom exception classes
# --------------------------------------------------------------------------- #

class GlowAPIError(Exception):
    """Base exception for all domain errors raised inside services."""

    def __init__(
        self,
        code: str,
        message: str,
        status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR,
    ) -> None:
        self.code = code
        self.message = message
        self.status_code = status_code
        super().__init__(message)

    def to_descriptor(self) -> dict[str, str]:
        return {"code": self.code, "message": self.message}


# -- synchronous request errors --------------------------------------------- #

class InvalidInputError(GlowAPIError):
    def __init__(self, message: str, code: str = "invalid_input") -> None:
        super().__init__(code, message, status.HTTP_400_BAD_REQUEST)


class MissingImageError(InvalidInputError):
    def __init__(self) -> None:
        super().__init__("No image file provided.", code="missing_image")


class UnsupportedImageTypeError(InvalidInputError):
    def __init__(self, received: str) -> None:
        super().__init__(
            f"Only JPEG, JPG, PNG, and WEBP images are allowed (received {received!r}).",
            code="unsupported_image_type",
        )


class ImageTooLargeError(InvalidInputError):
    def __init__(self, size_bytes: int, max_bytes: int) -> None:
        super().__init__(
            f"Image is {size_bytes:,} bytes; maximum allowed is {max_bytes:,} bytes.",
            code="image_too_large",
        )


class ImageDecodeError(InvalidInputError):
    def __init__(self, message: str) -> None:
        super().__init__(message, code="image_decode_error")


class JobNotFoundError(GlowAPIError):
    def __init__(self, job_id: int) -> None:
        super().__init__(
            "not_found", f"Analysis {job_id} not found.", status.HTTP_404_NOT_FOUND
        )


class ForbiddenError(GlowAPIError):
    def __init__(self, job_id: int) -> None:
        super().__init__(
            "forbidden",
            f"Analysis {job_id} belongs to another user.",
            status.HTTP_403_FORBIDDEN,
        )


# -- upstream (asynchronous pipeline) errors -------------------------------- #

class UpstreamError(GlowAPIError):
    """Failure of the external vision-language call. Always terminal for a job."""

    def __init__(self, code: str, message: str, detail: str | None = None) -> None:
        super().__init__(code, message, status.HTTP_502_BAD_GATEWAY)
        self.detail = detail

    def to_descriptor(self) -> dict[str, str]:
        descriptor = super().to_descriptor()
        if self.detail:
            descriptor["detail"] = self.detail
        return descriptor


class MalformedResponseError(UpstreamError):
    def __init__(self, detail: str | None = None) -> None:
        super().__init__(
            "malformed_response",
            "AI response was incomplete. Try again or simplify your image.",
            detail,
        )


class UpstreamRateLimitedError(UpstreamError):
    def __init__(self, detail: str | None = None) -> None:
        super().__init__(
            "upstream_rate_limited",
            "The analysis service is busy right now. Please try again in a few minutes.",
            detail,
        )


class UpstreamQuotaExceededError(UpstreamError):
    def __init__(self, detail: str | None = None) -> None:
        super().__init__(
            "upstream_quota_exceeded",
            "The analysis service is currently unavailable. Please contact support.",
            detail,
        )


class UpstreamUnknownError(UpstreamError):
    def __init__(self, detail: str | None = None) -> None:
        super().__init__(
            "upstream_error",
            "Analysis failed due to an upstream error. Please try again later.",
            detail,
        )


# --------------------------------------------------------------------------- #
# FastAPI exception handlers, registered via register_exception_handlers()
# --------------------------------------------------------------------------- #

def register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(GlowAPIError)
    async def glow_api_error_handler(
        request: Request, exc: GlowAPIError
    ) -> JSONResponse:
        logger.warning("GlowAPIError [%s]: %s", exc.code, exc.message)
        return error_response(exc.code, exc.message, exc.status_code)

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(
        request: Request, exc: StarletteHTTPException
    ) -> JSONResponse:
        # Dependencies raise HTTPException with the envelope as `detail`.
        if isinstance(exc.detail, dict) and "error" in exc.detail:
            return JSONResponse(
                status_code=exc.status_code, content=exc.detail, headers=exc.headers
            )
        return error_response(
            code="http_error",
            message=str(exc.detail),
            status_code=exc.status_code,
        )

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(
        request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        logger.debug("RequestValidationError: %s", exc.errors())
        return error_response(
            code="validation_error",
            message="Request body or query parameters failed validation.",
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=jsonable_errors(exc.errors()),
        )

    @app.exception_handler(ValidationError)
    async def pydantic_validation_handler(
        request: Request, exc: ValidationError
    ) -> JSONResponse:
        return error_response(
            code="validation_error",
            message="Internal data validation error.",
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=jsonable_errors(exc.errors()),
        )

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(
        request: Request, exc: Exception
    ) -> JSONResponse:
        logger.exception("Unhandled exception: %s", exc)
        return error_response(
            code="internal_error",
            message="An unexpected error occurred. Please try again later.",
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        )


def jsonable_errors(errors: Any) -> Any:
    # Validation errors may carry raw bytes (multipart bodies) or exception
    # objects in `input` / `ctx`, which JSONResponse cannot serialise.
    return jsonable_encoder(errors, custom_encoder={bytes: lambda b: f"<{len(b)} bytes>"})
