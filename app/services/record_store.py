"""
Durable table of analysis jobs (SQLite via aiosqlite).

The store is the single source of truth for job state. It knows nothing
about the state machine itself; `transition` is the one primitive the
controller needs from it: an atomic compare-and-set on `status`, so a
job can leave a given state exactly once even if two callers race.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import aiosqlite

from app.schemas.job import AnalysisJob, JobStatus, Scores

logger = logging.getLogger(__name__)

_SCHEMA = """
    CREATE TABLE IF NOT EXISTS analyses (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        owner_id TEXT,
        image_url TEXT NOT NULL,
        file_name TEXT NOT NULL,
        file_size INTEGER,
        processed_size INTEGER,
        original_dimensions TEXT,
        processed_dimensions TEXT,
        status TEXT,
        overall_score INTEGER NOT NULL DEFAULT 0,
        skin_health INTEGER NOT NULL DEFAULT 0,
        eye_health INTEGER NOT NULL DEFAULT 0,
        circulation INTEGER NOT NULL DEFAULT 0,
        symmetry INTEGER NOT NULL DEFAULT 0,
        analysis_data TEXT,
        recommendations TEXT,
        created_at TIMESTAMP NOT NULL
    )
"""

# Public field name → column name, for every field callers may write.
_COLUMNS: dict[str, str] = {
    "owner_id": "owner_id",
    "image_ref": "image_url",
    "file_name": "file_name",
    "file_size": "file_size",
    "processed_size": "processed_size",
    "original_dimensions": "original_dimensions",
    "processed_dimensions": "processed_dimensions",
    "status": "status",
    "overall_score": "overall_score",
    "skin_health": "skin_health",
    "eye_health": "eye_health",
    "circulation": "circulation",
    "symmetry": "symmetry",
    "result_payload": "analysis_data",
    "recommendations": "recommendations",
}
_JSON_FIELDS = {"result_payload", "recommendations"}


class AnalysisRecordStore:
    def __init__(self, database_path: str | Path) -> None:
        self.database_path = str(database_path)
        self._conn: aiosqlite.Connection | None = None

    # ------------------------------------------------------------------ #
    # Lifecycle
    # ------------------------------------------------------------------ #

    async def open(self) -> None:
        if self._conn is not None:
            return
        if self.database_path != ":memory:":
            Path(self.database_path).parent.mkdir(parents=True, exist_ok=True)
        self._conn = await aiosqlite.connect(self.database_path)
        self._conn.row_factory = aiosqlite.Row
        await self._conn.execute(_SCHEMA)
        await self._conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_analyses_owner_created "
            "ON analyses(owner_id, created_at)"
        )
        await self._conn.commit()
        logger.info("Record store ready at %s", self.database_path)

    async def close(self) -> None:
        if self._conn is not None:
            await self._conn.close()
            self._conn = None

    @property
    def conn(self) -> aiosqlite.Connection:
        if self._conn is None:
            raise RuntimeError("AnalysisRecordStore is not open")
        return self._conn

    # ------------------------------------------------------------------ #
    # CRUD
    # ------------------------------------------------------------------ #

    async def create(self, fields: dict[str, Any]) -> AnalysisJob:
        columns, values = _to_columns(fields)
        columns.append("created_at")
        values.append(datetime.now(timezone.utc).isoformat())
        placeholders = ", ".join("?" for _ in columns)
        cursor = await self.conn.execute(
            f"INSERT INTO analyses ({', '.join(columns)}) VALUES ({placeholders})",
            values,
        )
        await self.conn.commit()
        job = await self.get(cursor.lastrowid)
        if job is None:
            raise RuntimeError(f"Analysis {cursor.lastrowid} vanished right after insert")
        return job

    async def update(self, job_id: int, fields: dict[str, Any]) -> AnalysisJob | None:
        columns, values = _to_columns(fields)
        assignments = ", ".join(f"{column} = ?" for column in columns)
        await self.conn.execute(
            f"UPDATE analyses SET {assignments} WHERE id = ?", [*values, job_id]
        )
        await self.conn.commit()
        return await self.get(job_id)

    async def transition(
        self, job_id: int, expected: JobStatus, fields: dict[str, Any]
    ) -> AnalysisJob | None:
        """
        Apply `fields` only if the job is currently in `expected` status.
        Returns the updated job, or None if the row was missing or had moved on.
        """
        columns, values = _to_columns(fields)
        assignments = ", ".join(f"{column} = ?" for column in columns)
        cursor = await self.conn.execute(
            f"UPDATE analyses SET {assignments} WHERE id = ? AND status = ?",
            [*values, job_id, expected.value],
        )
        await self.conn.commit()
        if cursor.rowcount != 1:
            return None
        return await self.get(job_id)

    async def get(self, job_id: int) -> AnalysisJob | None:
        cursor = await self.conn.execute("SELECT * FROM analyses WHERE id = ?", (job_id,))
        row = await cursor.fetchone()
        return _row_to_job(row) if row else None

    async def list_by_owner(self, owner_id: str | None) -> list[AnalysisJob]:
        """Jobs for `owner_id` (anonymous jobs when None), newest first."""
        if owner_id is None:
            query = "SELECT * FROM analyses WHERE owner_id IS NULL"
            params: tuple[Any, ...] = ()
        else:
            query = "SELECT * FROM analyses WHERE owner_id = ?"
            params = (owner_id,)
        cursor = await self.conn.execute(f"{query} ORDER BY created_at DESC, id DESC", params)
        return [_row_to_job(row) for row in await cursor.fetchall()]

    async def delete(self, job_id: int) -> bool:
        cursor = await self.conn.execute("DELETE FROM analyses WHERE id = ?", (job_id,))
        await self.conn.commit()
        return cursor.rowcount == 1

    async def count(self) -> int:
        cursor = await self.conn.execute("SELECT COUNT(*) FROM analyses")
        row = await cursor.fetchone()
        return row[0] if row else 0


def _to_columns(fields: dict[str, Any]) -> tuple[list[str], list[Any]]:
    unknown = set(fields) - set(_COLUMNS)
    if unknown:
        raise ValueError(f"Unknown analysis fields: {sorted(unknown)}")
    columns, values = [], []
    for name, value in fields.items():
        if name in _JSON_FIELDS and value is not None:
            value = json.dumps(value)
        elif isinstance(value, JobStatus):
            value = value.value
        columns.append(_COLUMNS[name])
        values.append(value)
    return columns, values


def _load_json(raw: str | None) -> dict[str, Any] | None:
    return json.loads(raw) if raw else None


def _row_to_job(row: aiosqlite.Row) -> AnalysisJob:
    return AnalysisJob(
        id=row["id"],
        status=JobStatus(row["status"]) if row["status"] else None,
        owner_id=row["owner_id"],
        image_ref=row["image_url"],
        file_name=row["file_name"],
        file_size=row["file_size"],
        processed_size=row["processed_size"],
        original_dimensions=row["original_dimensions"],
        processed_dimensions=row["processed_dimensions"],
        scores=Scores(
            overall=row["overall_score"],
            skin=row["skin_health"],
            eye=row["eye_health"],
            circulation=row["circulation"],
            symmetry=row["symmetry"],
        ),
        result_payload=_load_json(row["analysis_data"]),
        recommendations=_load_json(row["recommendations"]),
        created_at=datetime.fromisoformat(row["created_at"]),
    )
