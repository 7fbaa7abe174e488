"""
Analysis job lifecycle.

    submit ──► pending ──start──► processing ──► completed
                                       │
                                       └──────► failed

Every transition is a compare-and-set on the stored status, so each job
leaves `pending` once and reaches a terminal state once, no matter how
many times `start` or the outcome handlers are called. Each successful
transition is published on the ProgressBus.

`start` returns as soon as the job is `processing`; the LLM call runs in a
background task owned by the controller. Anything that goes wrong in that
task ends the job as `failed`; nothing escapes into the event loop.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any

from app.core.config import Settings
from app.core.errors import (
    ForbiddenError,
    JobNotFoundError,
    UpstreamError,
    UpstreamUnknownError,
)
from app.schemas.job import AnalysisJob, JobEvent, JobStatus
from app.services.blob_store import BlobStore
from app.services.image_preprocessor import preprocess_image
from app.services.inference_client import InferenceClient
from app.services.progress_bus import ProgressBus
from app.services.prompts import PromptManager
from app.services.record_store import AnalysisRecordStore

logger = logging.getLogger(__name__)

# Upstream document key → score column.
_SCORE_FIELDS = {
    "overallScore": "overall_score",
    "skinHealth": "skin_health",
    "eyeHealth": "eye_health",
    "circulation": "circulation",
    "symmetry": "symmetry",
}
_ZERO_SCORES = {column: 0 for column in _SCORE_FIELDS.values()}

# How much of the raw model output is kept alongside the parsed result.
_RAW_RESPONSE_CHARS = 1000


class AnalysisJobController:
    def __init__(
        self,
        records: AnalysisRecordStore,
        blobs: BlobStore,
        inference: InferenceClient,
        bus: ProgressBus,
        prompts: PromptManager,
        settings: Settings,
    ) -> None:
        self.records = records
        self.blobs = blobs
        self.inference = inference
        self.bus = bus
        self.prompts = prompts
        self.settings = settings
        self._tasks: dict[int, asyncio.Task[None]] = {}
        # Why a task was cancelled, recorded on the job when it fails.
        self._cancel_reasons: dict[int, str] = {}

    # ------------------------------------------------------------------ #
    # Synchronous (request-scoped) operations
    # ------------------------------------------------------------------ #

    async def submit(
        self,
        data: bytes,
        filename: str,
        content_type: str | None,
        owner_id: str | None = None,
    ) -> AnalysisJob:
        processed = await asyncio.to_thread(
            preprocess_image, data, filename, content_type, self.settings
        )
        blob = await self.blobs.store(processed.data, filename, processed.content_type)

        try:
            job = await self.records.create({
                "owner_id": owner_id,
                "image_ref": blob.url,
                "file_name": filename,
                "file_size": processed.original_size,
                "processed_size": processed.processed_size,
                "original_dimensions": processed.original_dimensions,
                "processed_dimensions": processed.processed_dimensions,
                "status": JobStatus.pending,
                **_ZERO_SCORES,
            })
        except Exception:
            await self.blobs.delete(blob.url)
            raise
        logger.info(
            "Analysis %d created | owner=%s image=%s",
            job.id, owner_id or "anonymous", blob.url, extra={"job_id": job.id},
        )
        return job

    async def start(self, job_id: int, caller_id: str | None = None) -> AnalysisJob:
        """
        Move a pending job to processing and launch the analysis in the background.

        Idempotent: a job that already left `pending` is returned unchanged and
        no second upstream call is made.
        """
        job = await self._get_owned(job_id, caller_id)

        started = await self.records.transition(
            job_id, JobStatus.pending, {"status": JobStatus.processing}
        )
        if started is None:
            logger.info(
                "Ignoring start for analysis %d (status=%s)",
                job_id, job.status.value if job.status else None,
                extra={"job_id": job_id},
            )
            return await self.get(job_id)

        logger.info("Analysis %d processing", job_id, extra={"job_id": job_id})
        self.bus.publish(job_id, JobEvent.snapshot(started))

        task = asyncio.create_task(self._run(started), name=f"analysis-{job_id}")
        self._tasks[job_id] = task
        task.add_done_callback(lambda _: self._tasks.pop(job_id, None))
        return started

    async def get(self, job_id: int) -> AnalysisJob:
        job = await self.records.get(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return _with_status(job)

    async def list_jobs(self, owner_id: str | None) -> list[AnalysisJob]:
        return [_with_status(job) for job in await self.records.list_by_owner(owner_id)]

    async def delete(self, job_id: int, caller_id: str | None = None) -> None:
        job = await self._get_owned(job_id, caller_id)
        task = self._tasks.get(job_id)
        if task is not None:
            self._cancel_reasons[job_id] = "Analysis was cancelled because it was deleted."
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
            self._cancel_reasons.pop(job_id, None)
        await self.records.delete(job_id)
        self.bus.close(job_id)
        await self.blobs.delete(job.image_ref)
        logger.info("Analysis %d deleted", job_id, extra={"job_id": job_id})

    # ------------------------------------------------------------------ #
    # Outcome handlers
    # ------------------------------------------------------------------ #

    async def on_inference_success(self, job_id: int, result: dict[str, Any]) -> bool:
        """Record a completed analysis. Returns False if the job was not processing."""
        scores = {column: _coerce_score(result.get(key)) for key, column in _SCORE_FIELDS.items()}
        payload = {k: v for k, v in result.items() if k != "recommendations"}
        recommendations = result.get("recommendations")
        if not isinstance(recommendations, dict):
            recommendations = {}

        job = await self.records.transition(
            job_id,
            JobStatus.processing,
            {
                "status": JobStatus.completed,
                **scores,
                "result_payload": payload,
                "recommendations": recommendations,
            },
        )
        if job is None:
            logger.warning(
                "Discarding result for analysis %d: no longer processing",
                job_id, extra={"job_id": job_id},
            )
            return False

        logger.info(
            "Analysis %d completed | overall=%d", job_id, job.scores.overall,
            extra={"job_id": job_id},
        )
        self.bus.publish(job_id, JobEvent.snapshot(job))
        return True

    async def on_inference_failure(self, job_id: int, error: UpstreamError) -> bool:
        """Record a failed analysis. Returns False if the job was not processing."""
        job = await self.records.transition(
            job_id,
            JobStatus.processing,
            {
                "status": JobStatus.failed,
                **_ZERO_SCORES,
                "result_payload": {"error": error.to_descriptor()},
            },
        )
        if job is None:
            logger.warning(
                "Discarding failure for analysis %d: no longer processing",
                job_id, extra={"job_id": job_id},
            )
            return False

        logger.warning(
            "Analysis %d failed [%s]: %s", job_id, error.code, error.detail or error.message,
            extra={"job_id": job_id},
        )
        self.bus.publish(
            job_id,
            JobEvent(job_id=job_id, status=JobStatus.failed, message=error.message, job=job),
        )
        return True

    async def report_progress(self, job_id: int, progress: float) -> None:
        self.bus.publish(
            job_id,
            JobEvent(job_id=job_id, status=JobStatus.processing, progress=round(progress, 1)),
        )

    # ------------------------------------------------------------------ #
    # Background pipeline
    # ------------------------------------------------------------------ #

    async def _run(self, job: AnalysisJob) -> None:
        job_id = job.id
        try:
            image = await self.blobs.load(job.image_ref)
            content_type = _content_type_for(job.image_ref)

            async def on_progress(progress: float) -> None:
                await self.report_progress(job_id, progress)

            result = await self.inference.analyse(
                image, content_type, self.prompts.active, on_progress=on_progress
            )
        except asyncio.CancelledError:
            reason = self._cancel_reasons.pop(
                job_id, "Analysis was interrupted by a server shutdown."
            )
            await self.on_inference_failure(job_id, UpstreamUnknownError(reason))
            raise
        except UpstreamError as exc:
            await self.on_inference_failure(job_id, exc)
            return
        except Exception as exc:
            logger.exception("Unexpected error analysing %d", job_id, extra={"job_id": job_id})
            await self.on_inference_failure(
                job_id, UpstreamUnknownError(f"{type(exc).__name__}: {exc}")
            )
            return

        data = dict(result.data)
        data["rawAnalysis"] = {
            "model": result.model_used,
            "responseTime": datetime.now(timezone.utc).isoformat(),
            "fullResponse": result.raw_text[:_RAW_RESPONSE_CHARS],
        }
        try:
            await self.on_inference_success(job_id, data)
        except Exception as exc:
            logger.exception("Could not record result for %d", job_id, extra={"job_id": job_id})
            await self.on_inference_failure(
                job_id, UpstreamUnknownError(f"{type(exc).__name__}: {exc}")
            )

    async def wait_idle(self) -> None:
        """Wait until every in-flight analysis has finished."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks.values()), return_exceptions=True)
            await asyncio.sleep(0)

    async def aclose(self) -> None:
        """Cancel in-flight analyses; each is recorded as failed."""
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        if tasks:
            logger.info("Cancelling %d in-flight analyses", len(tasks))
            await asyncio.gather(*tasks, return_exceptions=True)

    @property
    def in_flight(self) -> int:
        return len(self._tasks)

    # ------------------------------------------------------------------ #
    # Helpers
    # ------------------------------------------------------------------ #

    async def _get_owned(self, job_id: int, caller_id: str | None) -> AnalysisJob:
        job = await self.get(job_id)
        if job.owner_id is not None and job.owner_id != caller_id:
            raise ForbiddenError(job_id)
        return job


def _with_status(job: AnalysisJob) -> AnalysisJob:
    if job.status is not None:
        return job
    # Rows written before status existed: scores imply the outcome.
    inferred = JobStatus.completed if job.scores.overall > 0 else JobStatus.processing
    return job.model_copy(update={"status": inferred})


def _coerce_score(value: Any) -> int:
    """Missing or non-numeric sub-scores count as 0; the rest clamp to [0, 100]."""
    if isinstance(value, bool):
        return 0
    try:
        score = round(float(value))
    except (TypeError, ValueError, OverflowError):
        return 0
    return min(max(score, 0), 100)


def _content_type_for(url: str) -> str:
    lowered = url.lower()
    if lowered.endswith(".png"):
        return "image/png"
    if lowered.endswith(".webp"):
        return "image/webp"
    return "image/jpeg"
