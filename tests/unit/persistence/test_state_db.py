"""Unit tests for the run history database: migrations, transactions and busy handling."""

from __future__ import annotations

from typing import TYPE_CHECKING

import pytest

from shipyard.constants import STATE_DB_SCHEMA_VERSION
from shipyard.persistence.state_db import (
    StateDB,
    StateDBBusyError,
    StateDBMigrationError,
    canonical_json,
)

if TYPE_CHECKING:
    from pathlib import Path


def _db(tmp_path: Path, **kwargs: int) -> StateDB:
    return StateDB(tmp_path / "state" / "state.sqlite3", **kwargs)


@pytest.mark.unit
def test_migrate_is_idempotent_and_records_history(tmp_path: Path) -> None:
    db = _db(tmp_path)

    assert db.migrate() == STATE_DB_SCHEMA_VERSION
    assert db.migrate() == STATE_DB_SCHEMA_VERSION

    history = db.schema_history()
    assert [record.version for record in history] == [1]
    assert history[0].name == "initial_run_history"
    assert len(history[0].checksum) == 64
    tables = {
        row["name"]
        for row in db.query_all("SELECT name FROM sqlite_master WHERE type = 'table'")
    }
    assert {"runs", "stage_results", "schema_versions"} <= tables


@pytest.mark.unit
def test_connections_use_wal_and_foreign_keys(tmp_path: Path) -> None:
    db = _db(tmp_path)
    db.migrate()

    with db.connection() as conn:
        assert str(conn.execute("PRAGMA journal_mode").fetchone()[0]).lower() == "wal"
        assert conn.execute("PRAGMA foreign_keys").fetchone()[0] == 1


@pytest.mark.unit
def test_checksum_mismatch_is_refused(tmp_path: Path) -> None:
    db = _db(tmp_path)
    db.migrate()
    db.execute("UPDATE schema_versions SET checksum = ? WHERE version = 1", ("a" * 64,))

    with pytest.raises(StateDBMigrationError, match="checksum mismatch"):
        db.migrate()


@pytest.mark.unit
def test_newer_database_is_refused(tmp_path: Path) -> None:
    db = _db(tmp_path)
    db.migrate()
    db.execute(
        "INSERT INTO schema_versions (version, name, checksum, applied_at) VALUES (?, ?, ?, ?)",
        (STATE_DB_SCHEMA_VERSION + 1, "future", "b" * 64, "2030-01-01T00:00:00Z"),
    )

    with pytest.raises(StateDBMigrationError, match="newer"):
        db.migrate()


@pytest.mark.unit
def test_transaction_rolls_back_on_error(tmp_path: Path) -> None:
    db = _db(tmp_path)
    db.migrate()
    db.execute("CREATE TABLE notes (value TEXT NOT NULL)")

    with pytest.raises(RuntimeError):
        with db.transaction() as conn:
            db.execute("INSERT INTO notes (value) VALUES (?)", ("lost",), conn=conn)
            raise RuntimeError("abort")

    assert db.query_all("SELECT value FROM notes") == []


@pytest.mark.unit
def test_nested_transaction_rolls_back_only_the_savepoint(tmp_path: Path) -> None:
    db = _db(tmp_path)
    db.migrate()
    db.execute("CREATE TABLE notes (value TEXT NOT NULL)")

    with db.transaction() as conn:
        db.execute("INSERT INTO notes (value) VALUES (?)", ("kept",), conn=conn)
        with pytest.raises(RuntimeError):
            with db.transaction(conn=conn):
                db.execute("INSERT INTO notes (value) VALUES (?)", ("dropped",), conn=conn)
                raise RuntimeError("inner")

    assert db.query_all("SELECT value FROM notes") == [{"value": "kept"}]


@pytest.mark.unit
def test_busy_database_raises_after_bounded_retries(tmp_path: Path) -> None:
    writer = _db(tmp_path)
    writer.migrate()
    contender = _db(tmp_path, busy_timeout_ms=0, busy_retry_limit=1, busy_retry_backoff_ms=1)

    with writer.transaction():
        with pytest.raises(StateDBBusyError):
            contender.execute("DELETE FROM runs")


@pytest.mark.unit
def test_integrity_check_and_query_helpers(tmp_path: Path) -> None:
    db = _db(tmp_path)
    db.migrate()

    assert db.integrity_check() == ()
    assert db.query_one("SELECT id FROM runs WHERE id = ?", ("missing",)) is None
    with pytest.raises(ValueError):
        db.integrity_check(max_errors=0)


@pytest.mark.unit
def test_context_manager_migrates(tmp_path: Path) -> None:
    with _db(tmp_path) as db:
        assert db.schema_version() == STATE_DB_SCHEMA_VERSION


@pytest.mark.unit
@pytest.mark.parametrize(
    "kwargs",
    [
        {"busy_timeout_ms": -1},
        {"busy_retry_limit": -1},
        {"busy_retry_backoff_ms": -1},
    ],
)
def test_invalid_busy_settings_are_rejected(tmp_path: Path, kwargs: dict[str, int]) -> None:
    with pytest.raises(ValueError):
        _db(tmp_path, **kwargs)


@pytest.mark.unit
def test_canonical_json_is_deterministic() -> None:
    assert canonical_json({"b": 1, "a": ["é", None]}) == '{"a":["é",null],"b":1}'
