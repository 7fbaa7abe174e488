"""Unit tests for the aiosqlite-backed analysis record store."""

from __future__ import annotations

from pathlib import Path

import pytest

from app.schemas.job import JobStatus
from app.services.record_store import AnalysisRecordStore
from tests.conftest import run


def _fields(owner: str | None = "user-1", **extra):
    return {
        "owner_id": owner,
        "image_ref": "/uploads/a.jpg",
        "file_name": "a.jpg",
        "file_size": 1234,
        "status": JobStatus.pending,
        **extra,
    }


def test_create_and_get_roundtrip(tmp_path: Path) -> None:
    async def scenario() -> None:
        store = AnalysisRecordStore(tmp_path / "db" / "analyses.db")
        await store.open()
        try:
            job = await store.create(_fields(original_dimensions="640x480"))
            assert job.id > 0
            assert job.status is JobStatus.pending
            assert job.image_ref == "/uploads/a.jpg"
            assert job.original_dimensions == "640x480"
            assert job.scores.overall == 0
            assert job.result_payload is None

            again = await store.get(job.id)
            assert again == job
        finally:
            await store.close()

    run(scenario)


def test_data_survives_reopen(tmp_path: Path) -> None:
    async def scenario() -> int:
        store = AnalysisRecordStore(tmp_path / "analyses.db")
        await store.open()
        job = await store.create(_fields())
        await store.update(job.id, {"result_payload": {"overallScore": 90}, "overall_score": 90})
        await store.close()
        return job.id

    job_id = run(scenario)

    async def reopen() -> None:
        store = AnalysisRecordStore(tmp_path / "analyses.db")
        await store.open()
        job = await store.get(job_id)
        await store.close()
        assert job is not None
        assert job.scores.overall == 90
        assert job.result_payload == {"overallScore": 90}

    run(reopen)


def test_transition_is_compare_and_set() -> None:
    async def scenario() -> None:
        store = AnalysisRecordStore(":memory:")
        await store.open()
        job = await store.create(_fields())

        first = await store.transition(job.id, JobStatus.pending, {"status": JobStatus.processing})
        second = await store.transition(job.id, JobStatus.pending, {"status": JobStatus.processing})
        missing = await store.transition(999, JobStatus.pending, {"status": JobStatus.processing})

        assert first is not None and first.status is JobStatus.processing
        assert second is None
        assert missing is None
        await store.close()

    run(scenario)


def test_list_by_owner_is_newest_first_and_scoped() -> None:
    async def scenario() -> None:
        store = AnalysisRecordStore(":memory:")
        await store.open()
        a = await store.create(_fields("alice"))
        await store.create(_fields("bob"))
        b = await store.create(_fields("alice"))
        anon = await store.create(_fields(None))

        assert [j.id for j in await store.list_by_owner("alice")] == [b.id, a.id]
        assert [j.id for j in await store.list_by_owner(None)] == [anon.id]
        assert await store.list_by_owner("carol") == []
        await store.close()

    run(scenario)


def test_delete_reports_whether_a_row_existed() -> None:
    async def scenario() -> None:
        store = AnalysisRecordStore(":memory:")
        await store.open()
        job = await store.create(_fields())
        assert await store.count() == 1
        assert await store.delete(job.id) is True
        assert await store.count() == 0
        assert await store.delete(job.id) is False
        assert await store.get(job.id) is None
        await store.close()

    run(scenario)


def test_unknown_fields_are_rejected() -> None:
    async def scenario() -> None:
        store = AnalysisRecordStore(":memory:")
        await store.open()
        with pytest.raises(ValueError):
            await store.create({**_fields(), "colour": "red"})
        await store.close()

    run(scenario)


def test_store_must_be_opened() -> None:
    async def scenario() -> None:
        with pytest.raises(RuntimeError):
            await AnalysisRecordStore(":memory:").get(1)

    run(scenario)


def test_create_raises_if_the_row_cannot_be_read_back() -> None:
    async def scenario() -> None:
        store = AnalysisRecordStore(":memory:")
        await store.open()
        try:
            async def missing(job_id):
                return None

            store.get = missing
            with pytest.raises(RuntimeError, match="vanished"):
                await store.create(_fields())
        finally:
            await store.close()

    run(scenario)
