"""
shipyard — run history database

Purpose
- SQLite schema, migrations and connection handling for the run history store.

Functional requirements
- Migrations are checksummed and applied once; a database written by a newer
  schema is refused rather than downgraded.
- SQLITE_BUSY is retried with bounded exponential backoff before surfacing.

Non-functional requirements
- One short-lived connection per operation so `shipyard history` never queues
  behind a running pipeline for long.
"""

from __future__ import annotations

import hashlib
import json
import sqlite3
import time
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Final

from shipyard.constants import STATE_DB_SCHEMA_VERSION
from shipyard.domain.models import RunStatus, StageStatus

SQLValue = str | int | float | bytes | None
SQLParams = Sequence[SQLValue]
RowValue = SQLValue

DEFAULT_BUSY_TIMEOUT_MS: Final[int] = 5_000
DEFAULT_BUSY_RETRY_LIMIT: Final[int] = 4
DEFAULT_BUSY_RETRY_BACKOFF_MS: Final[int] = 25


class StateDBError(RuntimeError):
    """Base class for run history database failures."""


class StateDBBusyError(StateDBError):
    """The database stayed locked through every retry."""


class StateDBMigrationError(StateDBError):
    """The on-disk schema cannot be brought to the version this code expects."""


class StateDBCorruptionError(StateDBError):
    """SQLite reported a malformed or foreign database file."""


def _check_list(enum_type: type[RunStatus] | type[StageStatus]) -> str:
    return ", ".join(f"'{member.value}'" for member in sorted(enum_type, key=lambda item: item.value))


_VERSIONS_DDL: Final[str] = """
CREATE TABLE IF NOT EXISTS schema_versions (
    version INTEGER PRIMARY KEY CHECK (version > 0),
    name TEXT NOT NULL,
    checksum TEXT NOT NULL CHECK (length(checksum) = 64),
    applied_at TEXT NOT NULL
)
"""

_RUN_HISTORY_DDL: Final[tuple[str, ...]] = (
    _VERSIONS_DDL,
    f"""
    CREATE TABLE IF NOT EXISTS runs (
        id TEXT PRIMARY KEY,
        pipeline_name TEXT NOT NULL,
        status TEXT NOT NULL CHECK (status IN ({_check_list(RunStatus)})),
        branch TEXT NOT NULL,
        commit_ref TEXT NOT NULL,
        created_at TEXT NOT NULL,
        started_at TEXT,
        finished_at TEXT,
        reason TEXT,
        payload_json TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_runs_created_at ON runs(created_at DESC)",
    "CREATE INDEX IF NOT EXISTS idx_runs_status_branch ON runs(status, branch)",
    f"""
    CREATE TABLE IF NOT EXISTS stage_results (
        run_id TEXT NOT NULL REFERENCES runs(id) ON DELETE CASCADE,
        stage TEXT NOT NULL,
        status TEXT NOT NULL CHECK (status IN ({_check_list(StageStatus)})),
        started_at TEXT,
        finished_at TEXT,
        reason TEXT,
        error_kind TEXT,
        attempts INTEGER NOT NULL CHECK (attempts >= 0),
        payload_json TEXT NOT NULL,
        PRIMARY KEY (run_id, stage)
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_stage_results_stage ON stage_results(stage, finished_at DESC)",
)


@dataclass(frozen=True, slots=True)
class MigrationRecord:
    """One row of ``schema_versions``."""

    version: int
    name: str
    checksum: str
    applied_at: str


@dataclass(frozen=True, slots=True)
class Migration:
    version: int
    name: str
    statements: tuple[str, ...]

    @property
    def checksum(self) -> str:
        # Trailing whitespace is not part of the checksum.
        digest = hashlib.sha256(f"{self.version}:{self.name}\n".encode())
        for statement in self.statements:
            lines = (line.rstrip() for line in statement.strip().splitlines())
            digest.update("\n".join(lines).encode("utf-8") + b"\n--\n")
        return digest.hexdigest()


MIGRATIONS: Final[tuple[Migration, ...]] = (
    Migration(version=1, name="initial_run_history", statements=_RUN_HISTORY_DDL),
)

_BUSY_CODES: Final[frozenset[int]] = frozenset(
    code
    for name in ("SQLITE_BUSY", "SQLITE_BUSY_RECOVERY", "SQLITE_BUSY_SNAPSHOT", "SQLITE_LOCKED")
    if isinstance(code := getattr(sqlite3, name, None), int)
)
_CORRUPT_CODES: Final[frozenset[int]] = frozenset(
    code
    for name in ("SQLITE_CORRUPT", "SQLITE_NOTADB")
    if isinstance(code := getattr(sqlite3, name, None), int)
)
_BUSY_MARKERS: Final[tuple[str, ...]] = ("database is locked", "table is locked", "schema is locked")
_CORRUPT_MARKERS: Final[tuple[str, ...]] = ("malformed", "file is not a database")


def _matches(exc: sqlite3.Error, codes: frozenset[int], markers: tuple[str, ...]) -> bool:
    code = getattr(exc, "sqlite_errorcode", None)
    if isinstance(code, int) and code in codes:
        return True
    message = str(exc).lower()
    return any(marker in message for marker in markers)


class StateDB:
    """Run history database at ``path`` (created on first use, WAL journal)."""

    def __init__(
        self,
        path: str | Path,
        *,
        busy_timeout_ms: int = DEFAULT_BUSY_TIMEOUT_MS,
        busy_retry_limit: int = DEFAULT_BUSY_RETRY_LIMIT,
        busy_retry_backoff_ms: int = DEFAULT_BUSY_RETRY_BACKOFF_MS,
    ) -> None:
        for name, value in (
            ("busy_timeout_ms", busy_timeout_ms),
            ("busy_retry_limit", busy_retry_limit),
            ("busy_retry_backoff_ms", busy_retry_backoff_ms),
        ):
            if value < 0:
                raise ValueError(f"{name} must be >= 0")
        self._path = Path(path).expanduser()
        self._busy_timeout_ms = busy_timeout_ms
        self._busy_retry_limit = busy_retry_limit
        self._busy_retry_backoff_ms = busy_retry_backoff_ms
        self._savepoints = 0

    @property
    def path(self) -> Path:
        return self._path

    def __enter__(self) -> StateDB:
        self.migrate()
        return self

    def __exit__(self, exc_type: object, exc: object, tb: object) -> None:
        return None

    # -- connections ---------------------------------------------------------

    def connect(self) -> sqlite3.Connection:
        """Open a connection in autocommit mode with foreign keys and WAL enabled."""

        self._path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(
            self._path,
            timeout=self._busy_timeout_ms / 1000.0,
            isolation_level=None,
            check_same_thread=False,
        )
        conn.row_factory = sqlite3.Row
        try:
            self._run(conn, "PRAGMA foreign_keys=ON", (), "enable foreign keys")
            self._run(conn, f"PRAGMA busy_timeout={self._busy_timeout_ms}", (), "set busy timeout")
            row = self._run(conn, "PRAGMA journal_mode=WAL", (), "enable WAL").fetchone()
            if row is None or str(row[0]).lower() != "wal":
                raise StateDBError(f"{self._path} could not be switched to WAL journal mode")
        except BaseException:
            conn.close()
            raise
        return conn

    @contextmanager
    def connection(self) -> Iterator[sqlite3.Connection]:
        conn = self.connect()
        try:
            yield conn
        finally:
            conn.close()

    @contextmanager
    def transaction(
        self,
        *,
        conn: sqlite3.Connection | None = None,
        immediate: bool = True,
    ) -> Iterator[sqlite3.Connection]:
        """
        Atomic unit of work.

        Without ``conn`` a private connection is opened for the duration. On a
        connection already inside a transaction a savepoint is used instead, so
        an inner failure only undoes the inner block.
        """

        if conn is None:
            with self.connection() as owned, self.transaction(conn=owned, immediate=immediate) as tx:
                yield tx
            return

        if conn.in_transaction:
            self._savepoints += 1
            name = f"sp_{self._savepoints}"
            begin, commit, rollback = (
                f"SAVEPOINT {name}",
                (f"RELEASE SAVEPOINT {name}",),
                (f"ROLLBACK TO SAVEPOINT {name}", f"RELEASE SAVEPOINT {name}"),
            )
        else:
            begin, commit, rollback = ("BEGIN IMMEDIATE" if immediate else "BEGIN"), ("COMMIT",), ("ROLLBACK",)

        self._run(conn, begin, (), "begin transaction")
        try:
            yield conn
        except BaseException:
            for statement in rollback:
                self._run(conn, statement, (), "roll back transaction")
            raise
        for statement in commit:
            self._run(conn, statement, (), "commit transaction")

    # -- schema --------------------------------------------------------------

    def migrate(self) -> int:
        """Bring the schema to ``STATE_DB_SCHEMA_VERSION``; returns the resulting version."""

        known = {migration.version for migration in MIGRATIONS}
        missing = [version for version in range(1, STATE_DB_SCHEMA_VERSION + 1) if version not in known]
        if missing:
            raise StateDBMigrationError(f"no migration defined for schema version(s) {missing}")

        with self.connection() as conn:
            self._run(conn, _VERSIONS_DDL, (), "create schema_versions")
            applied = self._applied(conn)
            on_disk = max(applied, default=0)
            if on_disk > STATE_DB_SCHEMA_VERSION:
                raise StateDBMigrationError(
                    f"{self._path} has schema version {on_disk}, newer than supported "
                    f"version {STATE_DB_SCHEMA_VERSION}; upgrade shipyard to read it"
                )

            for migration in MIGRATIONS:
                if migration.version > STATE_DB_SCHEMA_VERSION:
                    break
                record = applied.get(migration.version)
                if record is not None:
                    if record.checksum != migration.checksum:
                        raise StateDBMigrationError(
                            f"migration checksum mismatch for version {migration.version}: "
                            f"db={record.checksum} code={migration.checksum}"
                        )
                    continue
                with self.transaction(conn=conn) as tx:
                    for statement in migration.statements:
                        self._run(tx, statement, (), f"apply migration {migration.version}")
                    self._run(
                        tx,
                        "INSERT INTO schema_versions (version, name, checksum, applied_at) VALUES (?, ?, ?, ?)",
                        (migration.version, migration.name, migration.checksum, _utc_now_iso()),
                        f"record migration {migration.version}",
                    )

            return self.schema_version(conn=conn)

    def schema_version(self, *, conn: sqlite3.Connection | None = None) -> int:
        row = self.query_one("SELECT COALESCE(MAX(version), 0) AS version FROM schema_versions", conn=conn)
        version = 0 if row is None else row["version"]
        if not isinstance(version, int):
            raise StateDBMigrationError("schema_versions.version must be an integer")
        return version

    def schema_history(self) -> list[MigrationRecord]:
        with self.connection() as conn:
            applied = self._applied(conn)
        return [applied[version] for version in sorted(applied)]

    # -- statements ----------------------------------------------------------

    def execute(self, sql: str, params: SQLParams = (), *, conn: sqlite3.Connection | None = None) -> int:
        """Run one write statement; returns the affected row count."""

        if conn is not None:
            return self._run(conn, sql, params, "execute statement").rowcount
        with self.transaction() as tx:
            return self._run(tx, sql, params, "execute statement").rowcount

    def query_all(
        self,
        sql: str,
        params: SQLParams = (),
        *,
        conn: sqlite3.Connection | None = None,
    ) -> list[dict[str, RowValue]]:
        if conn is not None:
            return [dict(row) for row in self._run(conn, sql, params, "query").fetchall()]
        with self.connection() as owned:
            return [dict(row) for row in self._run(owned, sql, params, "query").fetchall()]

    def query_one(
        self,
        sql: str,
        params: SQLParams = (),
        *,
        conn: sqlite3.Connection | None = None,
    ) -> dict[str, RowValue] | None:
        rows = self.query_all(sql, params, conn=conn)
        return rows[0] if rows else None

    def integrity_check(self, *, max_errors: int = 100) -> tuple[str, ...]:
        """Run ``PRAGMA integrity_check``; an empty tuple means the file is sound."""

        if max_errors <= 0:
            raise ValueError("max_errors must be > 0")
        messages = tuple(
            str(row.get("integrity_check", "")) for row in self.query_all(f"PRAGMA integrity_check({max_errors})")
        )
        return () if messages == ("ok",) else messages

    # -- internals -----------------------------------------------------------

    def _applied(self, conn: sqlite3.Connection) -> dict[int, MigrationRecord]:
        rows = self._run(
            conn,
            "SELECT version, name, checksum, applied_at FROM schema_versions ORDER BY version",
            (),
            "read schema_versions",
        ).fetchall()
        applied: dict[int, MigrationRecord] = {}
        for row in rows:
            if not isinstance(row["version"], int) or not isinstance(row["checksum"], str):
                raise StateDBMigrationError("schema_versions contains a malformed row")
            applied[row["version"]] = MigrationRecord(
                version=row["version"],
                name=str(row["name"]),
                checksum=row["checksum"],
                applied_at=str(row["applied_at"]),
            )
        return applied

    def _run(self, conn: sqlite3.Connection, sql: str, params: SQLParams, operation: str) -> sqlite3.Cursor:
        attempt = 0
        while True:
            try:
                return conn.execute(sql, tuple(params))
            except sqlite3.IntegrityError:
                raise
            except sqlite3.Error as exc:
                busy = _matches(exc, _BUSY_CODES, _BUSY_MARKERS)
                if busy and attempt < self._busy_retry_limit:
                    time.sleep(self._busy_retry_backoff_ms / 1000.0 * (2**attempt))
                    attempt += 1
                    continue
                if _matches(exc, _CORRUPT_CODES, _CORRUPT_MARKERS):
                    raise StateDBCorruptionError(
                        f"{operation} failed for {self._path}: {exc}; run integrity_check() "
                        "and restore the file from a backup if needed"
                    ) from exc
                if busy:
                    raise StateDBBusyError(
                        f"{operation} hit SQLITE_BUSY for {self._path} after {attempt + 1} attempt(s): {exc}"
                    ) from exc
                raise StateDBError(f"{operation} failed for {self._path}: {exc}") from exc


def _utc_now_iso() -> str:
    return datetime.now(UTC).isoformat(timespec="microseconds").replace("+00:00", "Z")


def canonical_json(value: object) -> str:
    """Deterministic JSON for persisted payloads."""

    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


__all__ = [
    "DEFAULT_BUSY_RETRY_BACKOFF_MS",
    "DEFAULT_BUSY_RETRY_LIMIT",
    "DEFAULT_BUSY_TIMEOUT_MS",
    "MIGRATIONS",
    "Migration",
    "MigrationRecord",
    "RowValue",
    "SQLParams",
    "SQLValue",
    "StateDB",
    "StateDBBusyError",
    "StateDBCorruptionError",
    "StateDBError",
    "StateDBMigrationError",
    "canonical_json",
]
