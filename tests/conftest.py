"""
Shared pytest fixtures.

Strategy: we never call a real LLM provider in tests.
The app and the job controller are built with a ScriptedInference client
that returns canned documents (or raises canned upstream errors) so tests
are fast and deterministic. Each test gets its own SQLite file, upload
directory and prompt file under `tmp_path`.
"""

from __future__ import annotations

import asyncio
import io
import os
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, AsyncIterator, Callable
from unittest.mock import patch

import pytest
from fastapi.testclient import TestClient
from PIL import Image

from app.core.config import Settings, get_settings
from app.schemas.job import JobEvent
from app.schemas.prompts import PromptConfig
from app.services.blob_store import LocalBlobStore
from app.services.inference_client import InferenceResult, ProgressCallback
from app.services.job_controller import AnalysisJobController
from app.services.progress_bus import ChannelClosedError, ProgressBus
from app.services.prompts import PromptManager
from app.services.record_store import AnalysisRecordStore


# ------------------------------------------------------------------ #
# Canned upstream documents
# ------------------------------------------------------------------ #

def wellness_document(overall: int = 82, **overrides: Any) -> dict[str, Any]:
    doc: dict[str, Any] = {
        "overallScore": overall,
        "skinHealth": 78,
        "eyeHealth": 85,
        "circulation": 80,
        "symmetry": 90,
        "estimatedAge": 31,
        "analysisData": {
            "skinAnalysis": {"hydration": "good", "texture": "smooth"},
            "eyeAnalysis": {"underEyeCircles": "minimal", "puffiness": "none"},
        },
        "recommendations": {
            "immediate": [{"title": "Apply Sunscreen", "description": "SPF 30+ daily."}],
            "lifestyle": [{"title": "Improve Sleep", "description": "Aim for 7-9 hours."}],
        },
    }
    doc.update(overrides)
    return doc


# ------------------------------------------------------------------ #
# Scripted inference client
# ------------------------------------------------------------------ #

@dataclass
class ScriptedInference:
    """
    Stand-in for InferenceClient.

    `outcome` is either a result document (dict), an exception to raise, or
    a callable returning one of those. `progress` values are reported through
    the progress callback before the outcome. When `gate` is set, the call
    blocks until the test releases it; `delay` sleeps for that many seconds
    instead.
    """

    outcome: Any = field(default_factory=wellness_document)
    progress: list[float] = field(default_factory=list)
    gate: asyncio.Event | None = None
    delay: float = 0.0
    calls: int = 0
    prompts: list[PromptConfig] = field(default_factory=list)

    async def analyse(
        self,
        image: bytes,
        content_type: str,
        prompt: PromptConfig,
        on_progress: ProgressCallback | None = None,
    ) -> InferenceResult:
        self.calls += 1
        self.prompts.append(prompt)
        assert image, "controller must pass the stored image bytes"
        for pct in self.progress:
            if on_progress is not None:
                await on_progress(pct)
        if self.gate is not None:
            await self.gate.wait()
        if self.delay:
            await asyncio.sleep(self.delay)

        outcome = self.outcome() if callable(self.outcome) else self.outcome
        if isinstance(outcome, BaseException):
            raise outcome
        return InferenceResult(data=outcome, model_used="test/model", raw_text=str(outcome))


# ------------------------------------------------------------------ #
# Progress bus test channel
# ------------------------------------------------------------------ #

class RecordingChannel:
    def __init__(self, fail: bool = False) -> None:
        self.events: list[JobEvent] = []
        self.closed = False
        self.fail = fail

    def send(self, event: JobEvent) -> None:
        if self.fail:
            raise ChannelClosedError("client went away")
        self.events.append(event)

    def close(self) -> None:
        self.closed = True

    @property
    def statuses(self) -> list[str]:
        return [e.status.value for e in self.events]


# ------------------------------------------------------------------ #
# Images
# ------------------------------------------------------------------ #

def make_image(
    width: int = 64, height: int = 48, fmt: str = "JPEG", noise: bool = False
) -> bytes:
    if noise:
        image = Image.frombytes("RGB", (width, height), os.urandom(width * height * 3))
    else:
        image = Image.new("RGB", (width, height), (200, 150, 120))
    buffer = io.BytesIO()
    options = {"quality": 95} if fmt == "JPEG" else {}
    image.save(buffer, format=fmt, **options)
    return buffer.getvalue()


# ------------------------------------------------------------------ #
# Controller environment (for async unit tests)
# ------------------------------------------------------------------ #

def make_settings(tmp_path: Path, **overrides: Any) -> Settings:
    values: dict[str, Any] = {
        "database_path": str(tmp_path / "analyses.db"),
        "uploads_dir": str(tmp_path / "uploads"),
        "prompt_config_path": str(tmp_path / "active-prompt.json"),
        "rate_limit_enabled": False,
        "log_json": False,
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)


@dataclass
class ControllerEnv:
    controller: AnalysisJobController
    records: AnalysisRecordStore
    bus: ProgressBus
    inference: Any
    blobs: LocalBlobStore


@asynccontextmanager
async def controller_env(
    tmp_path: Path, inference: Any = None
) -> AsyncIterator[ControllerEnv]:
    settings = make_settings(tmp_path)
    records = AnalysisRecordStore(":memory:")
    await records.open()
    blobs = LocalBlobStore(settings.uploads_dir, settings.uploads_url_prefix)
    bus = ProgressBus()
    inference = inference or ScriptedInference()
    controller = AnalysisJobController(
        records=records,
        blobs=blobs,
        inference=inference,  # type: ignore[arg-type]
        bus=bus,
        prompts=PromptManager(settings.prompt_config_path),
        settings=settings,
    )
    try:
        yield ControllerEnv(controller, records, bus, inference, blobs)
    finally:
        await controller.aclose()
        await records.close()


def run(coro_fn: Callable[[], Any]) -> Any:
    """Run an async test scenario to completion."""
    return asyncio.run(coro_fn())


# ------------------------------------------------------------------ #
# Test client fixtures
# ------------------------------------------------------------------ #

def _test_env(tmp_path: Path, api_key: str = "") -> dict[str, str]:
    return {
        "API_KEY": api_key,
        "RATE_LIMIT_ENABLED": "false",
        "DATABASE_PATH": str(tmp_path / "analyses.db"),
        "UPLOADS_DIR": str(tmp_path / "uploads"),
        "PROMPT_CONFIG_PATH": str(tmp_path / "active-prompt.json"),
        "STORAGE_BACKEND": "local",
        "LOG_JSON": "false",
        "SSE_KEEPALIVE_SECONDS": "0.2",
    }


@pytest.fixture()
def inference() -> ScriptedInference:
    return ScriptedInference()


@pytest.fixture()
def client(tmp_path: Path, inference: ScriptedInference) -> TestClient:
    """
    Return a FastAPI TestClient with:
      - API_KEY authentication disabled (open mode)
      - the scripted inference client injected
      - database, uploads and prompt file under tmp_path
    """
    from app.main import create_app

    with patch.dict("os.environ", _test_env(tmp_path)):
        get_settings.cache_clear()
        test_app = create_app(inference=inference)  # type: ignore[arg-type]
        with TestClient(test_app, raise_server_exceptions=False) as c:
            yield c
    get_settings.cache_clear()


@pytest.fixture()
def authed_client(tmp_path: Path, inference: ScriptedInference) -> TestClient:
    """TestClient with API_KEY=test-secret enforced."""
    from app.main import create_app

    with patch.dict("os.environ", _test_env(tmp_path, api_key="test-secret")):
        get_settings.cache_clear()
        test_app = create_app(inference=inference)  # type: ignore[arg-type]
        with TestClient(test_app, raise_server_exceptions=False) as c:
            yield c
    get_settings.cache_clear()


# ------------------------------------------------------------------ #
# Shared test helpers
# ------------------------------------------------------------------ #

def upload(client: TestClient, data: bytes | None = None, name: str = "face.jpg",
           content_type: str = "image/jpeg", headers: dict[str, str] | None = None) -> Any:
    return client.post(
        "/v1/jobs",
        files={"image": (name, data if data is not None else make_image(), content_type)},
        headers=headers or {},
    )


def wait_for_terminal(client: TestClient, job_id: int, timeout: float = 5.0) -> dict[str, Any]:
    """Poll GET /v1/jobs/{id} until the job completes or fails."""
    deadline = time.monotonic() + timeout
    while True:
        body = client.get(f"/v1/jobs/{job_id}").json()
        if body["status"] in ("completed", "failed"):
            return body
        if time.monotonic() > deadline:
            raise AssertionError(f"job {job_id} still {body['status']} after {timeout}s")
        time.sleep(0.02)


def parse_sse(text: str) -> list[tuple[str, str]]:
    """Split an SSE body into (event, data) pairs, skipping comments."""
    events = []
    for block in text.split("\n\n"):
        name, data = "message", None
        for line in block.splitlines():
            if line.startswith("event: "):
                name = line[len("event: "):]
            elif line.startswith("data: "):
                data = line[len("data: "):]
        if data is not None:
            events.append((name, data))
    return events
