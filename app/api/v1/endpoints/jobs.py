"""
Analysis job endpoints.

POST   /v1/jobs               — upload an image, create a pending job
POST   /v1/jobs/{id}/start    — kick off the analysis (returns immediately)
GET    /v1/jobs               — caller's jobs, newest first
GET    /v1/jobs/{id}          — current record
GET    /v1/jobs/{id}/events   — live updates (Server-Sent Events)
DELETE /v1/jobs/{id}          — remove a job and its image
"""

from __future__ import annotations

import asyncio
import logging
from typing import AsyncIterator

from fastapi import APIRouter, File, Request, Response, UploadFile, status
from fastapi.responses import StreamingResponse

from app.api.deps import BusDep, ControllerDep
from app.core.config import get_settings
from app.core.errors import GlowAPIError, MissingImageError
from app.core.security import AuthDep, CallerDep
from app.schemas.job import (
    AnalysisJob,
    JobCreatedResponse,
    JobEvent,
    JobListResponse,
    JobStartedResponse,
    JobStatus,
)
from app.services.job_controller import AnalysisJobController
from app.services.progress_bus import ProgressBus, QueueChannel

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/jobs", tags=["Analysis jobs"])

_SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",     # disable nginx buffering
}


@router.post(
    "",
    response_model=JobCreatedResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Upload a photo for analysis",
    description=(
        "Accepts a JPEG, PNG or WEBP photo as multipart field `image`. "
        "Large photos are resized and re-encoded before storage. "
        "The job is created in `pending` state; call `/start` to analyse it."
    ),
    responses={
        400: {"description": "Missing file, unsupported type, too large, or undecodable."},
        401: {"description": "Missing or invalid X-Api-Key header."},
    },
)
async def create_job(
    controller: ControllerDep,
    caller: CallerDep,
    _auth: AuthDep,
    image: UploadFile | None = File(default=None, description="Photo to analyse."),
) -> JobCreatedResponse:
    if image is None:
        raise MissingImageError()

    settings = get_settings()
    # Read one byte past the limit so oversize uploads are detected without
    # buffering the whole body.
    data = await image.read(settings.max_upload_bytes + 1)
    job = await controller.submit(
        data,
        filename=image.filename or "",
        content_type=image.content_type,
        owner_id=caller,
    )
    return JobCreatedResponse(id=job.id, image_ref=job.image_ref, status=job.status)


@router.post(
    "/{job_id}/start",
    response_model=JobStartedResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Start analysing an uploaded photo",
    description=(
        "Moves the job to `processing` and returns immediately; the analysis "
        "runs in the background. Follow it on `/events` or poll `GET /v1/jobs/{id}`. "
        "Calling this again for a job that already started is a no-op."
    ),
    responses={403: {"description": "Job belongs to another user."}, 404: {}},
)
async def start_job(
    job_id: int, controller: ControllerDep, caller: CallerDep, _auth: AuthDep
) -> JobStartedResponse:
    job = await controller.start(job_id, caller)
    return JobStartedResponse(id=job.id, status=job.status)


@router.get("", response_model=JobListResponse, summary="List the caller's analyses")
async def list_jobs(
    controller: ControllerDep, caller: CallerDep, _auth: AuthDep
) -> JobListResponse:
    jobs = await controller.list_jobs(caller)
    return JobListResponse(total=len(jobs), jobs=jobs)


@router.get(
    "/{job_id}",
    response_model=AnalysisJob,
    summary="Get an analysis",
    responses={404: {"description": "Analysis not found."}},
)
async def get_job(job_id: int, controller: ControllerDep, _auth: AuthDep) -> AnalysisJob:
    return await controller.get(job_id)


@router.get(
    "/{job_id}/events",
    summary="Live updates for an analysis (Server-Sent Events)",
    description=(
        "Streams `processing`, optional `progress`, then exactly one of "
        "`completed` / `failed`, and closes. If the job is already finished "
        "the terminal record is sent immediately."
    ),
    response_class=StreamingResponse,
    responses={200: {"content": {"text/event-stream": {}}}, 404: {}},
)
async def job_events(
    job_id: int,
    request: Request,
    controller: ControllerDep,
    bus: BusDep,
    _auth: AuthDep,
) -> StreamingResponse:
    job = await controller.get(job_id)
    if job.status is not None and job.status.is_terminal:
        stream = _single_event(JobEvent.snapshot(job))
    else:
        stream = _live_events(job_id, request, controller, bus)
    return StreamingResponse(stream, media_type="text/event-stream", headers=_SSE_HEADERS)


@router.delete(
    "/{job_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Delete an analysis",
    responses={403: {"description": "Job belongs to another user."}, 404: {}},
)
async def delete_job(
    job_id: int, controller: ControllerDep, caller: CallerDep, _auth: AuthDep
) -> Response:
    await controller.delete(job_id, caller)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# --------------------------------------------------------------------------- #
# SSE helpers
# --------------------------------------------------------------------------- #

def format_sse(event: JobEvent) -> str:
    return f"event: {event.event_name}\ndata: {event.model_dump_json()}\n\n"


async def _single_event(event: JobEvent) -> AsyncIterator[str]:
    yield format_sse(event)


async def _live_events(
    job_id: int,
    request: Request,
    controller: AnalysisJobController,
    bus: ProgressBus,
) -> AsyncIterator[str]:
    settings = get_settings()
    channel = QueueChannel(maxsize=settings.sse_channel_buffer)
    # Subscribe before re-reading the record: a transition that lands after
    # the read is then guaranteed to reach this channel.
    bus.subscribe(job_id, channel)
    try:
        yield ": connected\n\n"

        try:
            job = await controller.get(job_id)
        except GlowAPIError:
            return

        last_sent: JobEvent | None = None
        if job.status is not None and job.status is not JobStatus.pending:
            last_sent = JobEvent.snapshot(job)
            yield format_sse(last_sent)
            if last_sent.is_terminal:
                return

        while True:
            if await request.is_disconnected():
                logger.debug("SSE client for analysis %d disconnected", job_id)
                return
            try:
                event = await channel.next_event(timeout=settings.sse_keepalive_seconds)
            except asyncio.TimeoutError:
                yield ": keepalive\n\n"
                continue
            if event is None:
                return
            if event == last_sent:
                continue
            last_sent = event
            yield format_sse(event)
            if event.is_terminal:
                return
    finally:
        bus.unsubscribe(job_id, channel)
