"""Shared deterministic fixtures and builders for persistence tests."""

from __future__ import annotations

import re
import sqlite3
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from typing import Final

from shipyard.domain import ids
from shipyard.domain.models import (
    PipelineDefinition,
    Run,
    RunStatus,
    StageDefinition,
    StageStatus,
    StepDefinition,
    TriggerEvent,
)

_BASE_TS: Final[datetime] = datetime(2026, 2, 1, 12, 0, 0, tzinfo=UTC)

_IDENTIFIER_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


def fixed_now(seed: int) -> datetime:
    return _BASE_TS + timedelta(seconds=seed)


def _randbytes(seed: int) -> Callable[[int], bytes]:
    byte_value = (seed % 251) + 1

    def _provider(size: int) -> bytes:
        return bytes([byte_value]) * size

    return _provider


def make_pipeline() -> PipelineDefinition:
    return PipelineDefinition(
        name="ci",
        stages=(
            StageDefinition(name="test", steps=(StepDefinition(name="unit", run="make test"),)),
            StageDefinition(
                name="deploy",
                needs=("test",),
                steps=(StepDefinition(name="apply", run="kubectl apply -f k8s/"),),
            ),
        ),
    )


def make_run(
    seed: int,
    *,
    branch: str = "main",
    status: RunStatus = RunStatus.CREATED,
    reason: str | None = None,
) -> Run:
    run = Run.create(
        make_pipeline(),
        TriggerEvent(branch=branch, commit_ref=f"{seed:07x}", received_at=fixed_now(seed)),
        run_id=ids.generate_run_id(
            timestamp_ms=1_700_000_100_000 + seed,
            randbytes=_randbytes(seed),
        ),
    )
    run.created_at = fixed_now(seed)
    if status is not RunStatus.CREATED:
        run.status = status
        run.started_at = fixed_now(seed)
    if status in {RunStatus.SUCCEEDED, RunStatus.FAILED, RunStatus.CANCELLED}:
        run.finished_at = fixed_now(seed + 1)
        run.reason = reason or status.value
    return run


def finish_stage(run: Run, stage: str, status: StageStatus, *, reason: str | None = None) -> None:
    result = run.stage_results[stage]
    if status is StageStatus.SKIPPED:
        result.transition(status, reason=reason or "dependency 'test' failed")
        return
    result.transition(StageStatus.RUNNING, at=fixed_now(1))
    result.attempts = 1
    result.transition(status, reason=reason or status.value, at=fixed_now(2))


def collect_text_cells(conn: sqlite3.Connection) -> str:
    """Every TEXT value stored in any user table, newline-joined."""
    tables = conn.execute(
        "SELECT name FROM sqlite_master WHERE type = 'table' AND name NOT LIKE 'sqlite_%' ORDER BY name"
    ).fetchall()
    return "\n".join(
        value
        for (table,) in tables
        if _IDENTIFIER_RE.fullmatch(table)
        for row in conn.execute(f"SELECT * FROM {table}")
        for value in row
        if isinstance(value, str)
    )


__all__ = [
    "collect_text_cells",
    "finish_stage",
    "fixed_now",
    "make_pipeline",
    "make_run",
]
