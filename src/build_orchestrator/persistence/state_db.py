"""
SQLite state database.

One file holds builds, checkpoints, the per-build event log and escalation
records. The schema is created by numbered migrations; each applied migration is
recorded with a checksum of its SQL so an edited migration is caught instead of
silently diverging. Checkpoint and event rows are protected by triggers, which
makes the log append-only at the storage level and not just by convention.

Connections are opened per operation in WAL mode, so a CLI ``status`` call can
read while the orchestrator holds a write transaction. SQLITE_BUSY is retried
with exponential backoff before it surfaces as ``StateDBBusyError``.
"""

from __future__ import annotations

import hashlib
import itertools
import sqlite3
import time
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Final

from build_orchestrator.constants import STATE_DB_SCHEMA_VERSION
from build_orchestrator.domain.models import BuildStatus, EscalationTrigger
from build_orchestrator.utils.hashing import canonical_json

try:
    from datetime import UTC
except ImportError:
    UTC = timezone.utc  # noqa: UP017

SQLValue = str | int | float | bytes | None
SQLParams = Sequence[SQLValue]
RowValue = str | int | float | bytes | None

DEFAULT_BUSY_TIMEOUT_MS: Final[int] = 5_000
DEFAULT_BUSY_RETRY_LIMIT: Final[int] = 4
DEFAULT_BUSY_RETRY_BACKOFF_MS: Final[int] = 25


def _sql_enum(values: Sequence[str]) -> str:
    return ",".join(f"'{value}'" for value in values)


_BUILD_STATUS_VALUES: Final[tuple[str, ...]] = tuple(sorted(item.value for item in BuildStatus))
_TRIGGER_VALUES: Final[tuple[str, ...]] = tuple(sorted(item.value for item in EscalationTrigger))

_SCHEMA_VERSIONS_TABLE_SQL: Final[str] = """
CREATE TABLE IF NOT EXISTS schema_versions (
    version INTEGER PRIMARY KEY CHECK (version > 0),
    name TEXT NOT NULL,
    checksum TEXT NOT NULL CHECK (length(checksum) = 64),
    applied_at TEXT NOT NULL
)
"""

_MIGRATION_0001_STATEMENTS: Final[tuple[str, ...]] = (
    _SCHEMA_VERSIONS_TABLE_SQL,
    f"""
    CREATE TABLE IF NOT EXISTS builds (
        id TEXT PRIMARY KEY,
        graph_id TEXT NOT NULL,
        title TEXT NOT NULL,
        status TEXT NOT NULL CHECK (status IN ({_sql_enum(_BUILD_STATUS_VALUES)})),
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        payload_json TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS checkpoints (
        seq INTEGER PRIMARY KEY AUTOINCREMENT,
        id TEXT NOT NULL UNIQUE,
        build_id TEXT NOT NULL,
        schema_version INTEGER NOT NULL CHECK (schema_version > 0),
        created_at TEXT NOT NULL,
        sha256 TEXT NOT NULL CHECK (length(sha256) = 64),
        payload_json TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS events (
        build_id TEXT NOT NULL,
        sequence_number INTEGER NOT NULL CHECK (sequence_number >= 1),
        timestamp TEXT NOT NULL,
        kind TEXT NOT NULL,
        payload_json TEXT NOT NULL,
        PRIMARY KEY (build_id, sequence_number)
    )
    """,
    """
    CREATE TRIGGER IF NOT EXISTS checkpoints_immutable_update
    BEFORE UPDATE ON checkpoints
    BEGIN
        SELECT RAISE(ABORT, 'checkpoints are immutable');
    END
    """,
    """
    CREATE TRIGGER IF NOT EXISTS events_append_only_update
    BEFORE UPDATE ON events
    BEGIN
        SELECT RAISE(ABORT, 'events are append-only');
    END
    """,
    """
    CREATE TRIGGER IF NOT EXISTS events_append_only_delete
    BEFORE DELETE ON events
    BEGIN
        SELECT RAISE(ABORT, 'events are append-only');
    END
    """,
    "CREATE INDEX IF NOT EXISTS idx_builds_status_updated ON builds(status, updated_at DESC)",
    "CREATE INDEX IF NOT EXISTS idx_checkpoints_build_seq ON checkpoints(build_id, seq DESC)",
    "CREATE INDEX IF NOT EXISTS idx_checkpoints_created ON checkpoints(created_at)",
)

_MIGRATION_0002_STATEMENTS: Final[tuple[str, ...]] = (
    f"""
    CREATE TABLE IF NOT EXISTS escalations (
        id TEXT PRIMARY KEY,
        build_id TEXT NOT NULL,
        trigger_kind TEXT NOT NULL CHECK (trigger_kind IN ({_sql_enum(_TRIGGER_VALUES)})),
        is_open INTEGER NOT NULL CHECK (is_open IN (0, 1)),
        created_at TEXT NOT NULL,
        artifact_path TEXT,
        payload_json TEXT NOT NULL
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_escalations_build_open
    ON escalations(build_id, is_open, created_at DESC)
    """,
)




@dataclass(frozen=True, slots=True)
class MigrationRecord:
    """A row of ``schema_versions``."""

    version: int
    name: str
    checksum: str
    applied_at: str


@dataclass(frozen=True, slots=True)
class _Migration:
    version: int
    name: str
    statements: tuple[str, ...]

    @property
    def checksum(self) -> str:
        # Trailing whitespace is ignored so reformatting a statement is not a schema change.
        digest = hashlib.sha256(f"{self.version}:{self.name}\n".encode())
        for statement in self.statements:
            lines = (line.rstrip() for line in statement.strip().splitlines())
            digest.update("\n".join(lines).encode("utf-8") + b"\n--\n")
        return digest.hexdigest()


_MIGRATIONS: Final[dict[int, _Migration]] = {
    migration.version: migration
    for migration in (
        _Migration(1, "initial_build_state_schema", _MIGRATION_0001_STATEMENTS),
        _Migration(2, "escalation_records", _MIGRATION_0002_STATEMENTS),
    )
}

# Primary result codes; extended codes carry these in their low byte.
_SQLITE_BUSY: Final[int] = 5
_SQLITE_LOCKED: Final[int] = 6
_SQLITE_CORRUPT: Final[int] = 11
_SQLITE_NOTADB: Final[int] = 26

_BUSY_MESSAGES: Final[tuple[str, ...]] = (
    "database is locked",
    "database table is locked",
    "database schema is locked",
)
_CORRUPTION_MESSAGES: Final[tuple[str, ...]] = (
    "database disk image is malformed",
    "malformed database",
    "file is not a database",
)


class StateDBError(RuntimeError):
    """Base class for state database failures."""


class StateDBBusyError(StateDBError):
    """SQLITE_BUSY persisted through every retry."""


class StateDBMigrationError(StateDBError):
    """The schema on disk cannot be brought to the version this code expects."""


class StateDBCorruptionError(StateDBError):
    """SQLite reported a damaged or foreign database file."""


class StateDB:
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
        self._backoff_seconds = busy_retry_backoff_ms / 1000.0
        self._savepoint_ids = itertools.count(1)
        self._migrated = False

    @property
    def path(self) -> Path:
        return self._path

    def connect(self) -> sqlite3.Connection:
        """Open a new autocommit connection in WAL mode; the caller closes it."""
        self._path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(
            self._path,
            timeout=self._busy_timeout_ms / 1000.0,
            isolation_level=None,
            check_same_thread=False,
        )
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys=ON")
        conn.execute(f"PRAGMA busy_timeout={self._busy_timeout_ms}")
        (mode,) = conn.execute("PRAGMA journal_mode=WAL").fetchone()
        if str(mode).lower() != "wal":
            conn.close()
            raise StateDBError(f"journal_mode must be WAL, got {mode!r}")
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
        Commit everything done on the yielded connection at once, or nothing.

        Without ``conn`` a connection is opened for the duration. Inside an
        already open transaction a savepoint is used, so an inner failure only
        discards the inner work.
        """
        if conn is None:
            with self.connection() as owned:
                with self.transaction(conn=owned, immediate=immediate) as tx:
                    yield tx
            return

        if conn.in_transaction:
            savepoint = f"sp_{next(self._savepoint_ids)}"
            begin = [f"SAVEPOINT {savepoint}"]
            commit = [f"RELEASE SAVEPOINT {savepoint}"]
            rollback = [f"ROLLBACK TO SAVEPOINT {savepoint}", f"RELEASE SAVEPOINT {savepoint}"]
        else:
            begin = ["BEGIN IMMEDIATE" if immediate else "BEGIN"]
            commit = ["COMMIT"]
            rollback = ["ROLLBACK"]

        for sql in begin:
            self._run(conn, sql, operation="begin transaction")
        try:
            yield conn
        except BaseException:
            for sql in rollback:
                self._run(conn, sql, operation="roll back transaction")
            raise
        for sql in commit:
            self._run(conn, sql, operation="commit transaction")

    def migrate(self) -> int:
        """Apply pending migrations and return the resulting schema version."""
        missing = [v for v in range(1, STATE_DB_SCHEMA_VERSION + 1) if v not in _MIGRATIONS]
        if missing:
            raise StateDBMigrationError(f"missing migration for schema version {missing[0]}")

        with self.connection() as conn:
            self._run(conn, _SCHEMA_VERSIONS_TABLE_SQL, operation="create schema_versions table")
            applied = {record.version: record for record in self._applied(conn)}
            on_disk = max(applied, default=0)
            if on_disk > STATE_DB_SCHEMA_VERSION:
                raise StateDBMigrationError(
                    "database schema is newer than supported by this build "
                    f"(db={on_disk}, code={STATE_DB_SCHEMA_VERSION})"
                )
            for version in range(1, STATE_DB_SCHEMA_VERSION + 1):
                migration = _MIGRATIONS[version]
                recorded = applied.get(version)
                if recorded is None:
                    self._apply(conn, migration)
                elif recorded.checksum != migration.checksum:
                    raise StateDBMigrationError(
                        f"migration checksum mismatch for version {version}: "
                        f"db={recorded.checksum} code={migration.checksum}"
                    )
            version = self.schema_version(conn=conn)
        self._migrated = True
        return version

    def ensure_schema(self) -> int:
        """``migrate`` on first use; later calls on this instance do nothing."""
        if self._migrated:
            return STATE_DB_SCHEMA_VERSION
        return self.migrate()

    def schema_version(self, *, conn: sqlite3.Connection | None = None) -> int:
        row = self.query_one(
            "SELECT COALESCE(MAX(version), 0) AS version FROM schema_versions", conn=conn
        )
        version = None if row is None else row["version"]
        if not isinstance(version, int):
            raise StateDBMigrationError("schema_versions.version must be an integer")
        return version

    def schema_history(self) -> list[MigrationRecord]:
        with self.connection() as conn:
            return self._applied(conn)

    def execute(
        self,
        sql: str,
        params: SQLParams = (),
        *,
        conn: sqlite3.Connection | None = None,
    ) -> int:
        """Run one write statement and return the affected row count."""
        if conn is not None:
            return self._run(conn, sql, params, operation="execute statement").rowcount
        with self.transaction() as tx:
            return self._run(tx, sql, params, operation="execute statement").rowcount

    def query_all(
        self,
        sql: str,
        params: SQLParams = (),
        *,
        conn: sqlite3.Connection | None = None,
    ) -> list[dict[str, RowValue]]:
        with self._borrow(conn) as active:
            rows = self._run(active, sql, params, operation="query all").fetchall()
        return [dict(row) for row in rows]

    def query_one(
        self,
        sql: str,
        params: SQLParams = (),
        *,
        conn: sqlite3.Connection | None = None,
    ) -> dict[str, RowValue] | None:
        with self._borrow(conn) as active:
            row = self._run(active, sql, params, operation="query one").fetchone()
        return None if row is None else dict(row)

    def integrity_check(self, *, max_errors: int = 100) -> tuple[str, ...]:
        """SQLite's own consistency report; an empty tuple means the file is sound."""
        if max_errors <= 0:
            raise ValueError("max_errors must be > 0")
        rows = self.query_all(f"PRAGMA integrity_check({max_errors})")
        messages = tuple(str(row.get("integrity_check", "")) for row in rows)
        return () if messages == ("ok",) else messages

    def close(self) -> None:
        """Nothing to release: connections never outlive a single operation."""

    def __enter__(self) -> StateDB:
        self.migrate()
        return self

    def __exit__(self, exc_type: object, exc: object, tb: object) -> None:
        self.close()

    @contextmanager
    def _borrow(self, conn: sqlite3.Connection | None) -> Iterator[sqlite3.Connection]:
        if conn is not None:
            yield conn
            return
        with self.connection() as owned:
            yield owned

    def _apply(self, conn: sqlite3.Connection, migration: _Migration) -> None:
        operation = f"apply migration {migration.version}"
        with self.transaction(conn=conn) as tx:
            for statement in migration.statements:
                self._run(tx, statement, operation=operation)
            self._run(
                tx,
                "INSERT INTO schema_versions (version, name, checksum, applied_at) "
                "VALUES (?, ?, ?, ?)",
                (migration.version, migration.name, migration.checksum, _utc_now_iso()),
                operation=operation,
            )

    def _applied(self, conn: sqlite3.Connection) -> list[MigrationRecord]:
        rows = self._run(
            conn,
            "SELECT version, name, checksum, applied_at FROM schema_versions ORDER BY version",
            operation="load schema_versions",
        ).fetchall()
        records: list[MigrationRecord] = []
        for raw in rows:
            row = dict(raw)
            version = row["version"]
            if isinstance(version, bool) or not isinstance(version, int):
                raise StateDBMigrationError("schema_versions.version must be integer")
            records.append(
                MigrationRecord(
                    version=version,
                    name=row_text(row, "name", "schema_versions.name"),
                    checksum=row_text(row, "checksum", "schema_versions.checksum"),
                    applied_at=row_text(row, "applied_at", "schema_versions.applied_at"),
                )
            )
        return records

    def _run(
        self,
        conn: sqlite3.Connection,
        sql: str,
        params: SQLParams = (),
        *,
        operation: str,
    ) -> sqlite3.Cursor:
        attempt = 0
        while True:
            try:
                return conn.execute(sql, tuple(params))
            except sqlite3.IntegrityError:
                # Constraint and trigger aborts are the caller's to interpret.
                raise
            except sqlite3.Error as exc:
                if _is_busy(exc) and attempt < self._busy_retry_limit:
                    time.sleep(self._backoff_seconds * 2**attempt)
                    attempt += 1
                    continue
                raise self._translate(exc, operation, attempts=attempt + 1) from exc

    def _translate(self, exc: sqlite3.Error, operation: str, *, attempts: int) -> StateDBError:
        if _is_corruption(exc):
            return StateDBCorruptionError(
                f"{operation} failed for {self._path}: {exc}. "
                "Run `StateDB.integrity_check()` and restore from a backup if needed."
            )
        if _is_busy(exc):
            return StateDBBusyError(
                f"{operation} hit SQLITE_BUSY for {self._path} after {attempts} attempt(s): {exc}"
            )
        return StateDBError(f"{operation} failed for {self._path}: {exc}")


def _primary_code(exc: sqlite3.Error) -> int | None:
    code = getattr(exc, "sqlite_errorcode", None)
    return code & 0xFF if isinstance(code, int) else None


def _is_busy(exc: sqlite3.Error) -> bool:
    if _primary_code(exc) in (_SQLITE_BUSY, _SQLITE_LOCKED):
        return True
    return any(text in str(exc).lower() for text in _BUSY_MESSAGES)


def _is_corruption(exc: sqlite3.Error) -> bool:
    if _primary_code(exc) in (_SQLITE_CORRUPT, _SQLITE_NOTADB):
        return True
    return any(text in str(exc).lower() for text in _CORRUPTION_MESSAGES)


def _utc_now_iso() -> str:
    return datetime.now(UTC).isoformat(timespec="microseconds").replace("+00:00", "Z")


def row_text(row: dict[str, RowValue], key: str, path: str) -> str:
    value = row.get(key)
    if not isinstance(value, str):
        raise StateDBError(f"{path} must be text")
    return value


__all__ = [
    "DEFAULT_BUSY_RETRY_BACKOFF_MS",
    "DEFAULT_BUSY_RETRY_LIMIT",
    "DEFAULT_BUSY_TIMEOUT_MS",
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
    "row_text",
]
