"""
Unit tests for the analysis job lifecycle.

The controller runs against an in-memory SQLite store, a local blob store
under tmp_path and a scripted inference client.
"""

from __future__ import annotations

import asyncio
from pathlib import Path
from types import SimpleNamespace

import pytest

from app.core.errors import (
    ForbiddenError,
    ImageDecodeError,
    JobNotFoundError,
    MalformedResponseError,
    UpstreamRateLimitedError,
)
from app.schemas.job import JobStatus
from app.services.inference_client import InferenceClient
from app.services.progress_bus import QueueChannel
from tests.conftest import (
    RecordingChannel,
    ScriptedInference,
    controller_env,
    make_image,
    make_settings,
    run,
    wellness_document,
)


def _blob_path(env, url: str) -> Path:
    return env.blobs.root / Path(url).name


class TestSubmit:
    def test_creates_pending_job_with_stored_image(self, tmp_path: Path) -> None:
        async def scenario() -> None:
            async with controller_env(tmp_path) as env:
                data = make_image(80, 60)
                job = await env.controller.submit(data, "me.jpg", "image/jpeg", owner_id="u1")

                assert job.status is JobStatus.pending
                assert job.owner_id == "u1"
                assert job.file_name == "me.jpg"
                assert job.file_size == len(data)
                assert job.original_dimensions == "80x60"
                assert job.scores.overall == 0
                assert job.image_ref.startswith("/uploads/")
                assert _blob_path(env, job.image_ref).read_bytes() == data
                assert env.inference.calls == 0

        run(scenario)

    def test_bad_image_creates_nothing(self, tmp_path: Path) -> None:
        async def scenario() -> None:
            async with controller_env(tmp_path) as env:
                with pytest.raises(ImageDecodeError):
                    await env.controller.submit(b"garbage", "me.jpg", "image/jpeg")
                assert await env.controller.list_jobs(None) == []

        run(scenario)

    def test_failed_insert_removes_the_stored_image(self, tmp_path: Path) -> None:
        async def scenario() -> None:
            async with controller_env(tmp_path) as env:
                async def broken_create(values):
                    raise RuntimeError("database is locked")

                env.records.create = broken_create
                with pytest.raises(RuntimeError):
                    await env.controller.submit(make_image(), "me.jpg", "image/jpeg")
                assert not env.blobs.root.exists() or not any(env.blobs.root.iterdir())

        run(scenario)


class TestStart:
    def test_successful_run_completes_with_scores(self, tmp_path: Path) -> None:
        async def scenario() -> None:
            async with controller_env(tmp_path) as env:
                job = await env.controller.submit(make_image(), "me.jpg", "image/jpeg")
                channel = RecordingChannel()
                env.bus.subscribe(job.id, channel)

                started = await env.controller.start(job.id)
                assert started.status is JobStatus.processing
                await env.controller.wait_idle()

                done = await env.controller.get(job.id)
                assert done.status is JobStatus.completed
                assert done.scores.overall == 82
                assert done.scores.skin == 78
                assert done.scores.eye == 85
                assert done.scores.circulation == 80
                assert done.scores.symmetry == 90
                assert done.recommendations["immediate"][0]["title"] == "Apply Sunscreen"
                assert "recommendations" not in done.result_payload
                assert done.result_payload["rawAnalysis"]["model"] == "test/model"

                assert channel.statuses == ["processing", "completed"]
                assert channel.closed
                assert env.bus.connection_count() == 0

        run(scenario)

    def test_progress_is_published_before_the_terminal_event(self, tmp_path: Path) -> None:
        async def scenario() -> None:
            inference = ScriptedInference(progress=[10.0, 20.0])
            async with controller_env(tmp_path, inference) as env:
                job = await env.controller.submit(make_image(), "me.jpg", "image/jpeg")
                channel = RecordingChannel()
                env.bus.subscribe(job.id, channel)

                await env.controller.start(job.id)
                await env.controller.wait_idle()

                names = [e.event_name for e in channel.events]
                assert names == ["processing", "progress", "progress", "completed"]
                assert [e.progress for e in channel.events[1:3]] == [10.0, 20.0]

        run(scenario)

    def test_start_is_idempotent(self, tmp_path: Path) -> None:
        async def scenario() -> None:
            gate = asyncio.Event()
            inference = ScriptedInference(gate=gate)
            async with controller_env(tmp_path, inference) as env:
                job = await env.controller.submit(make_image(), "me.jpg", "image/jpeg")
                channel = RecordingChannel()
                env.bus.subscribe(job.id, channel)

                first = await env.controller.start(job.id)
                second = await env.controller.start(job.id)
                assert first.status is second.status is JobStatus.processing

                gate.set()
                await env.controller.wait_idle()
                third = await env.controller.start(job.id)

                assert third.status is JobStatus.completed
                assert inference.calls == 1
                assert channel.statuses == ["processing", "completed"]

        run(scenario)

    def test_job_completes_without_any_viewer(self, tmp_path: Path) -> None:
        async def scenario() -> None:
            async with controller_env(tmp_path) as env:
                job = await env.controller.submit(make_image(), "me.jpg", "image/jpeg")
                await env.controller.start(job.id)
                await env.controller.wait_idle()
                assert (await env.controller.get(job.id)).status is JobStatus.completed

        run(scenario)

    def test_unknown_job(self, tmp_path: Path) -> None:
        async def scenario() -> None:
            async with controller_env(tmp_path) as env:
                with pytest.raises(JobNotFoundError):
                    await env.controller.start(404)

        run(scenario)


class TestFailures:
    @pytest.mark.parametrize(
        "error, code",
        [
            (UpstreamRateLimitedError("429 from provider"), "upstream_rate_limited"),
            (MalformedResponseError("cut off"), "malformed_response"),
            (ValueError("boom"), "upstream_error"),
        ],
    )
    def test_errors_end_the_job_as_failed(self, tmp_path: Path, error, code) -> None:
        async def scenario() -> None:
            async with controller_env(tmp_path, ScriptedInference(outcome=error)) as env:
                job = await env.controller.submit(make_image(), "me.jpg", "image/jpeg")
                channel = RecordingChannel()
                env.bus.subscribe(job.id, channel)

                await env.controller.start(job.id)
                await env.controller.wait_idle()

                failed = await env.controller.get(job.id)
                assert failed.status is JobStatus.failed
                assert failed.scores.overall == 0
                assert failed.result_payload["error"]["code"] == code
                assert channel.statuses == ["processing", "failed"]
                assert channel.events[-1].message == failed.result_payload["error"]["message"]

        run(scenario)

    def test_shutdown_fails_in_flight_jobs(self, tmp_path: Path) -> None:
        async def scenario() -> None:
            inference = ScriptedInference(gate=asyncio.Event())   # never released
            async with controller_env(tmp_path, inference) as env:
                job = await env.controller.submit(make_image(), "me.jpg", "image/jpeg")
                await env.controller.start(job.id)
                await asyncio.sleep(0.01)
                assert env.controller.in_flight == 1

                await env.controller.aclose()

                failed = await env.controller.get(job.id)
                assert failed.status is JobStatus.failed
                assert failed.result_payload["error"]["code"] == "upstream_error"
                assert env.controller.in_flight == 0

        run(scenario)


class TestOutcomeHandlers:
    def test_at_most_one_terminal_transition(self, tmp_path: Path) -> None:
        async def scenario() -> None:
            async with controller_env(tmp_path) as env:
                job = await env.controller.submit(make_image(), "me.jpg", "image/jpeg")
                channel = RecordingChannel()
                env.bus.subscribe(job.id, channel)

                # Not processing yet: both handlers refuse.
                assert await env.controller.on_inference_success(job.id, {}) is False
                assert await env.controller.on_inference_failure(
                    job.id, MalformedResponseError()
                ) is False

                await env.records.transition(
                    job.id, JobStatus.pending, {"status": JobStatus.processing}
                )
                assert await env.controller.on_inference_success(
                    job.id, wellness_document(overall=55)
                ) is True
                assert await env.controller.on_inference_failure(
                    job.id, MalformedResponseError()
                ) is False

                final = await env.controller.get(job.id)
                assert final.status is JobStatus.completed
                assert final.scores.overall == 55
                assert channel.statuses == ["completed"]

        run(scenario)

    def test_scores_are_coerced(self, tmp_path: Path) -> None:
        async def scenario() -> None:
            async with controller_env(tmp_path) as env:
                job = await env.controller.submit(make_image(), "me.jpg", "image/jpeg")
                await env.records.transition(
                    job.id, JobStatus.pending, {"status": JobStatus.processing}
                )
                await env.controller.on_inference_success(
                    job.id,
                    {
                        "overallScore": "88",
                        "skinHealth": 150,
                        "eyeHealth": None,
                        "circulation": True,
                        "symmetry": -5,
                        "recommendations": ["not", "a", "dict"],
                    },
                )
                done = await env.controller.get(job.id)
                assert done.scores.model_dump() == {
                    "overall": 88, "skin": 100, "eye": 0, "circulation": 0, "symmetry": 0,
                }
                assert done.recommendations == {}

        run(scenario)


class TestReadsAndOwnership:
    def test_legacy_rows_get_an_inferred_status(self, tmp_path: Path) -> None:
        async def scenario() -> None:
            async with controller_env(tmp_path) as env:
                base = {"image_ref": "/uploads/old.jpg", "file_name": "old.jpg", "status": None}
                scored = await env.records.create({**base, "overall_score": 64})
                unscored = await env.records.create(base)

                assert (await env.controller.get(scored.id)).status is JobStatus.completed
                assert (await env.controller.get(unscored.id)).status is JobStatus.processing
                listed = await env.controller.list_jobs(None)
                assert {j.status for j in listed} == {JobStatus.completed, JobStatus.processing}

        run(scenario)

    def test_only_the_owner_may_start_or_delete(self, tmp_path: Path) -> None:
        async def scenario() -> None:
            async with controller_env(tmp_path) as env:
                job = await env.controller.submit(make_image(), "me.jpg", "image/jpeg", "alice")

                with pytest.raises(ForbiddenError):
                    await env.controller.start(job.id, "mallory")
                with pytest.raises(ForbiddenError):
                    await env.controller.delete(job.id, None)
                assert (await env.controller.get(job.id)).status is JobStatus.pending

        run(scenario)

    def test_list_is_scoped_to_owner(self, tmp_path: Path) -> None:
        async def scenario() -> None:
            async with controller_env(tmp_path) as env:
                mine = await env.controller.submit(make_image(), "a.jpg", "image/jpeg", "alice")
                await env.controller.submit(make_image(), "b.jpg", "image/jpeg", "bob")

                assert [j.id for j in await env.controller.list_jobs("alice")] == [mine.id]

        run(scenario)

    def test_delete_removes_record_image_and_viewers(self, tmp_path: Path) -> None:
        async def scenario() -> None:
            async with controller_env(tmp_path) as env:
                job = await env.controller.submit(make_image(), "me.jpg", "image/jpeg", "alice")
                channel = RecordingChannel()
                env.bus.subscribe(job.id, channel)

                await env.controller.delete(job.id, "alice")

                assert await env.records.get(job.id) is None
                assert not _blob_path(env, job.image_ref).exists()
                assert channel.closed
                with pytest.raises(JobNotFoundError):
                    await env.controller.get(job.id)

        run(scenario)

    def test_deleting_a_processing_job_fails_it_first(self, tmp_path: Path) -> None:
        async def scenario() -> None:
            inference = ScriptedInference(gate=asyncio.Event())   # never released
            async with controller_env(tmp_path, inference) as env:
                job = await env.controller.submit(make_image(), "me.jpg", "image/jpeg")
                channel = RecordingChannel()
                env.bus.subscribe(job.id, channel)
                await env.controller.start(job.id)
                await asyncio.sleep(0.01)

                await env.controller.delete(job.id)

                assert channel.statuses == ["processing", "failed"]
                failed = channel.events[-1].job
                assert failed.result_payload["error"]["detail"] == (
                    "Analysis was cancelled because it was deleted."
                )
                assert await env.records.get(job.id) is None
                assert not _blob_path(env, job.image_ref).exists()
                assert env.controller.in_flight == 0

        run(scenario)


class TestEndToEnd:
    def test_large_upload_happy_path_over_a_live_channel(self, tmp_path: Path) -> None:
        async def scenario() -> None:
            async with controller_env(tmp_path) as env:
                data = make_image(1600, 1400, noise=True)

                job = await env.controller.submit(data, "big.jpg", "image/jpeg")
                assert job.status is JobStatus.pending
                assert job.processed_dimensions == "1200x1050"

                channel = QueueChannel()
                env.bus.subscribe(job.id, channel)
                await env.controller.start(job.id)

                first = await channel.next_event(timeout=1)
                assert first.status is JobStatus.processing
                last = await channel.next_event(timeout=5)
                assert last.status is JobStatus.completed
                assert last.job.scores.overall == 82
                assert await channel.next_event(timeout=1) is None
                assert channel.closed

                await env.controller.wait_idle()
                assert await env.controller.get(job.id) == last.job

        run(scenario)

    def test_truncated_model_output_fails_the_job(self, tmp_path: Path) -> None:
        async def truncated(**kwargs):
            return SimpleNamespace(
                model="test/model",
                choices=[SimpleNamespace(
                    message=SimpleNamespace(content='{"overallScore": 80, "skinHealth":')
                )],
            )

        async def scenario() -> None:
            client = InferenceClient(make_settings(tmp_path, llm_stream=False), truncated)
            async with controller_env(tmp_path, client) as env:
                job = await env.controller.submit(make_image(), "me.jpg", "image/jpeg")
                await env.controller.start(job.id)
                await env.controller.wait_idle()

                failed = await env.controller.get(job.id)
                assert failed.status is JobStatus.failed
                assert failed.result_payload["error"]["code"] == "malformed_response"
                assert "incomplete" in failed.result_payload["error"]["message"]

        run(scenario)
