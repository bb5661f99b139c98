"""
shipyard — run history repositories

Purpose
- Read and write Run records and their per-stage results in the state DB.

Functional requirements
- ``save`` is an upsert covering the run row and every stage row in one
  transaction so readers never see a run without its stages.
- Payloads are redacted before they are written.

Non-functional requirements
- Listing is paginated; whole-history loads are never required.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from datetime import datetime
from typing import Final, cast

from shipyard.domain import ids
from shipyard.domain.errors import ErrorKind
from shipyard.domain.models import (
    JSONValue,
    Run,
    RunStatus,
    StageResult,
    StageStatus,
    iso8601z,
    utc_now,
)
from shipyard.persistence.state_db import RowValue, SQLParams, StateDB, canonical_json
from shipyard.security.redaction import redact_structure

_MAX_PAGE_SIZE: Final[int] = 1_000


@dataclass(frozen=True, slots=True)
class StageHistoryEntry:
    """One stage execution as recorded for a past run."""

    run_id: str
    stage: str
    status: StageStatus
    attempts: int
    reason: str | None = None
    error_kind: ErrorKind | None = None
    started_at: str | None = None
    finished_at: str | None = None


class _BaseRepo:
    def __init__(self, db: StateDB) -> None:
        self._db = db
        self._db.migrate()

    @staticmethod
    def _validate_page(limit: int, offset: int) -> None:
        if limit <= 0 or limit > _MAX_PAGE_SIZE:
            raise ValueError(f"limit must be in [1, {_MAX_PAGE_SIZE}]")
        if offset < 0:
            raise ValueError("offset must be >= 0")


class RunRepo(_BaseRepo):
    """Repository for run records and stage results."""

    def save(self, run: Run) -> Run:
        sanitized = _sanitize_run(run)
        updated_at = iso8601z(utc_now())
        with self._db.transaction() as conn:
            self._db.execute(
                """
                INSERT INTO runs (
                    id,
                    pipeline_name,
                    status,
                    branch,
                    commit_ref,
                    created_at,
                    started_at,
                    finished_at,
                    reason,
                    payload_json,
                    updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    status=excluded.status,
                    started_at=excluded.started_at,
                    finished_at=excluded.finished_at,
                    reason=excluded.reason,
                    payload_json=excluded.payload_json,
                    updated_at=excluded.updated_at
                """,
                (
                    sanitized.id,
                    sanitized.pipeline.name,
                    sanitized.status.value,
                    sanitized.trigger.branch,
                    sanitized.trigger.commit_ref,
                    iso8601z(sanitized.created_at),
                    _optional_iso(sanitized.started_at),
                    _optional_iso(sanitized.finished_at),
                    sanitized.reason,
                    sanitized.to_json(),
                    updated_at,
                ),
                conn=conn,
            )
            for stage_name, result in sanitized.stage_results.items():
                self._db.execute(
                    """
                    INSERT INTO stage_results (
                        run_id,
                        stage,
                        status,
                        started_at,
                        finished_at,
                        reason,
                        error_kind,
                        attempts,
                        payload_json
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(run_id, stage) DO UPDATE SET
                        status=excluded.status,
                        started_at=excluded.started_at,
                        finished_at=excluded.finished_at,
                        reason=excluded.reason,
                        error_kind=excluded.error_kind,
                        attempts=excluded.attempts,
                        payload_json=excluded.payload_json
                    """,
                    _stage_params(sanitized.id, stage_name, result),
                    conn=conn,
                )
        return sanitized

    def get(self, run_id: str) -> Run | None:
        ids.validate_run_id(run_id)
        row = self._db.query_one("SELECT payload_json FROM runs WHERE id = ?", (run_id,))
        if row is None:
            return None
        return Run.from_json(_row_text(row, "payload_json", "runs.payload_json"))

    def list(
        self,
        *,
        status: RunStatus | str | None = None,
        branch: str | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[Run]:
        self._validate_page(limit, offset)
        clauses: list[str] = []
        params: list[object] = []
        if status is not None:
            clauses.append("status = ?")
            params.append(RunStatus(status).value)
        if branch is not None:
            clauses.append("branch = ?")
            params.append(branch)
        sql = "SELECT payload_json FROM runs"
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        sql += " ORDER BY created_at DESC, id DESC LIMIT ? OFFSET ?"
        params.extend((limit, offset))
        rows = self._db.query_all(sql, cast("SQLParams", tuple(params)))
        return [Run.from_json(_row_text(row, "payload_json", "runs.payload_json")) for row in rows]

    def stage_history(self, stage: str, *, limit: int = 20) -> list[StageHistoryEntry]:
        """Most recent results recorded for ``stage`` across runs, newest first."""

        self._validate_page(limit, 0)
        rows = self._db.query_all(
            """
            SELECT s.run_id, s.stage, s.status, s.attempts, s.reason, s.error_kind,
                   s.started_at, s.finished_at
            FROM stage_results AS s
            JOIN runs AS r ON r.id = s.run_id
            WHERE s.stage = ?
            ORDER BY r.created_at DESC, s.run_id DESC
            LIMIT ?
            """,
            (stage, limit),
        )
        return [_history_entry(row) for row in rows]

    def count(self, *, status: RunStatus | str | None = None) -> int:
        if status is None:
            row = self._db.query_one("SELECT COUNT(*) AS total FROM runs")
        else:
            row = self._db.query_one(
                "SELECT COUNT(*) AS total FROM runs WHERE status = ?",
                (RunStatus(status).value,),
            )
        if row is None or not isinstance(row["total"], int):
            return 0
        return row["total"]


def _sanitize_run(run: Run) -> Run:
    payload = redact_structure(run.to_dict(), redact_keys=False)
    return Run.from_dict(_as_mapping(payload, "Run"))


def _stage_params(run_id: str, stage_name: str, result: StageResult) -> SQLParams:
    return (
        run_id,
        stage_name,
        result.status.value,
        _optional_iso(result.started_at),
        _optional_iso(result.finished_at),
        result.reason,
        result.error_kind.value if result.error_kind is not None else None,
        result.attempts,
        canonical_json(cast("JSONValue", result.to_dict())),
    )


def _history_entry(row: Mapping[str, RowValue]) -> StageHistoryEntry:
    error_kind = row.get("error_kind")
    attempts = row.get("attempts")
    return StageHistoryEntry(
        run_id=_row_text(row, "run_id", "stage_results.run_id"),
        stage=_row_text(row, "stage", "stage_results.stage"),
        status=StageStatus(_row_text(row, "status", "stage_results.status")),
        attempts=attempts if isinstance(attempts, int) else 0,
        reason=_optional_text(row.get("reason")),
        error_kind=ErrorKind(error_kind) if isinstance(error_kind, str) else None,
        started_at=_optional_text(row.get("started_at")),
        finished_at=_optional_text(row.get("finished_at")),
    )


def _row_text(row: Mapping[str, RowValue], key: str, path: str) -> str:
    value = row.get(key)
    if not isinstance(value, str):
        raise ValueError(f"{path}: expected text column")
    return value


def _optional_text(value: RowValue) -> str | None:
    return value if isinstance(value, str) else None


def _optional_iso(value: datetime | None) -> str | None:
    return iso8601z(value) if value is not None else None


def _as_mapping(value: object, path: str) -> Mapping[str, object]:
    if not isinstance(value, Mapping):
        raise ValueError(f"{path}: expected object")
    return value


__all__ = ["RunRepo", "StageHistoryEntry"]
