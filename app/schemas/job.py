"""
Schemas for analysis jobs and their live-update events.

An analysis job moves through `pending → processing → completed | failed`.
The same `AnalysisJob` shape is used for completed and failed jobs so that
clients can render a single failure branch: a failed job carries
`result_payload = {"error": {...}}` and zeroed scores.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class JobStatus(str, Enum):
    pending = "pending"
    processing = "processing"
    completed = "completed"
    failed = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.completed, JobStatus.failed)


class Scores(BaseModel):
    overall: int = Field(0, ge=0, le=100, examples=[82])
    skin: int = Field(0, ge=0, le=100)
    eye: int = Field(0, ge=0, le=100)
    circulation: int = Field(0, ge=0, le=100)
    symmetry: int = Field(0, ge=0, le=100)


class AnalysisJob(BaseModel):
    """One uploaded image and everything known about its analysis."""

    id: int
    status: JobStatus | None = Field(
        default=None,
        description="Null only on legacy rows; the controller infers it on read.",
    )
    owner_id: str | None = None
    image_ref: str = Field(description="URL of the stored, processed image.")
    file_name: str
    file_size: int | None = Field(default=None, description="Original upload size in bytes.")
    processed_size: int | None = Field(default=None, description="Stored image size in bytes.")
    original_dimensions: str | None = Field(default=None, examples=["3024x4032"])
    processed_dimensions: str | None = Field(default=None, examples=["900x1200"])
    scores: Scores = Field(default_factory=Scores)
    result_payload: dict[str, Any] | None = Field(
        default=None,
        description="Full analysis document when completed, error record when failed.",
    )
    recommendations: dict[str, Any] | None = None
    created_at: datetime


class JobCreatedResponse(BaseModel):
    id: int
    image_ref: str
    status: JobStatus


class JobStartedResponse(BaseModel):
    id: int
    status: JobStatus


class JobListResponse(BaseModel):
    total: int
    jobs: list[AnalysisJob]


class JobEvent(BaseModel):
    """Payload pushed to live-update channels."""

    job_id: int
    status: JobStatus
    progress: float | None = Field(
        default=None, ge=0, le=100,
        description="Approximate completion percentage while processing (capped at 95).",
    )
    message: str | None = Field(default=None, description="Human-readable failure message.")
    job: AnalysisJob | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @property
    def event_name(self) -> str:
        return "progress" if self.progress is not None else self.status.value

    @classmethod
    def snapshot(cls, job: AnalysisJob) -> "JobEvent":
        if job.status is None:
            raise ValueError(f"Analysis {job.id} has no status to publish")
        message = None
        if job.status is JobStatus.failed and job.result_payload:
            message = job.result_payload.get("error", {}).get("message")
        return cls(job_id=job.id, status=job.status, message=message, job=job)
