"""
FastAPI application entrypoint.

Startup sequence:
  1. Configure structured logging.
  2. Open the job database and build the services (blob store, inference
     client, progress bus, prompt manager, job controller) once, inside
     the lifespan context, stored on `app.state`.
  3. Register versioned routers.
  4. Register global exception handlers.
  5. Optionally attach rate limiter.

Shutdown cancels in-flight analyses (recording them as failed), closes
every live-update connection and then the database.

The app is served by Uvicorn: `uvicorn app.main:app`.
"""

from __future__ import annotations

import logging
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from pathlib import Path
from typing import AsyncIterator, Callable

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.staticfiles import StaticFiles
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from slowapi.util import get_remote_address

from app.api.v1.endpoints.health import router as health_router
from app.api.v1.router import v1_router
from app.core.config import Settings, get_settings
from app.core.errors import register_exception_handlers
from app.core.logging import configure_logging
from app.services.blob_store import build_blob_store
from app.services.inference_client import InferenceClient
from app.services.job_controller import AnalysisJobController
from app.services.progress_bus import ProgressBus
from app.services.prompts import PromptManager
from app.services.record_store import AnalysisRecordStore

logger = logging.getLogger(__name__)


def make_lifespan(
    inference: InferenceClient | None = None,
) -> Callable[[FastAPI], AbstractAsyncContextManager[None]]:
    """
    Build the lifespan handler. `inference` replaces the settings-driven
    LiteLLM client (tests use a scripted one).
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        settings = get_settings()
        configure_logging(level=settings.log_level, json_logs=settings.log_json)

        logger.info(
            "Starting %s v%s [%s]",
            settings.app_name,
            settings.app_version,
            settings.environment,
        )
        logger.info(
            "Auth: %s | Rate limiting: %s | Storage: %s | Model: %s",
            "enabled" if settings.auth_enabled else "disabled (open mode)",
            "enabled" if settings.rate_limit_enabled else "disabled",
            settings.storage_backend,
            settings.llm_default_model,
        )
        if not settings.llm_key_configured and inference is None:
            logger.warning("No LLM provider key configured; analyses will fail.")

        if app.state.blobs.backend == "local":
            Path(settings.uploads_dir).mkdir(parents=True, exist_ok=True)

        records = AnalysisRecordStore(settings.database_path)
        await records.open()

        bus = ProgressBus()
        prompts = PromptManager(settings.prompt_config_path)
        controller = AnalysisJobController(
            records=records,
            blobs=app.state.blobs,
            inference=inference or InferenceClient(settings),
            bus=bus,
            prompts=prompts,
            settings=settings,
        )
        app.state.records = records
        app.state.bus = bus
        app.state.prompts = prompts
        app.state.controller = controller

        logger.info("Service ready.")
        yield

        logger.info("Shutting down %s.", settings.app_name)
        await controller.aclose()
        bus.close_all()
        await records.close()

    return lifespan


def create_app(inference: InferenceClient | None = None) -> FastAPI:
    settings = get_settings()

    app = FastAPI(
        title="getglow-api",
        description=(
            "Photo wellness analysis service.\n\n"
            "Upload a photo, start an analysis, and follow its progress live over "
            "Server-Sent Events. The analysis itself is produced by a vision-capable "
            "LLM and stored with its scores and recommendations.\n\n"
            "**Authentication**: Pass your API key in the `X-Api-Key` header. "
            "Authentication is disabled when the `API_KEY` environment variable is unset. "
            "Jobs are attributed to the user named in the optional `X-User-Id` header."
        ),
        version=settings.app_version,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=make_lifespan(inference),
    )

    # The blob store exists before startup so its directory can be mounted.
    app.state.blobs = build_blob_store(settings)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=False,
        allow_methods=["GET", "POST", "PUT", "DELETE"],
        allow_headers=["*"],
    )

    if settings.rate_limit_enabled:
        _attach_rate_limiter(app, settings)

    # Routers.
    app.include_router(health_router)   # /health (no prefix, no auth)
    app.include_router(v1_router)       # /v1/jobs, /v1/prompts

    if app.state.blobs.backend == "local":
        _mount_uploads(app, settings)

    # Global exception handlers (must come after routers).
    register_exception_handlers(app)

    return app


def _mount_uploads(app: FastAPI, settings: Settings) -> None:
    # The directory is created at startup, after the mount is declared.
    app.mount(
        settings.uploads_url_prefix,
        StaticFiles(directory=settings.uploads_dir, check_dir=False),
        name="uploads",
    )


def _attach_rate_limiter(app: FastAPI, settings: Settings) -> None:
    limiter = Limiter(
        key_func=get_remote_address,
        default_limits=[f"{settings.rate_limit_per_minute}/minute"],
    )
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
    app.add_middleware(SlowAPIMiddleware)
    logger.info("Rate limiter: %d req/min per IP", settings.rate_limit_per_minute)


app = create_app()
