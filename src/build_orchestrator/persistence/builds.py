"""Repository for the current state of submitted builds."""

from __future__ import annotations

import sqlite3
from typing import Final

from build_orchestrator.domain import ids
from build_orchestrator.domain.models import Build, BuildStatus, iso_utc
from build_orchestrator.persistence.state_db import StateDB, row_text

_MAX_PAGE_SIZE: Final[int] = 1_000


class BuildStore:
    """Latest committed state of every build, keyed by build id."""

    def __init__(self, db: StateDB) -> None:
        self._db = db
        self._db.ensure_schema()

    def save(self, build: Build, *, conn: sqlite3.Connection | None = None) -> Build:
        self._db.execute(
            """
            INSERT INTO builds (id, graph_id, title, status, created_at, updated_at, payload_json)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                status=excluded.status,
                updated_at=excluded.updated_at,
                payload_json=excluded.payload_json
            """,
            (
                build.id,
                build.graph_id,
                build.title,
                build.status.value,
                iso_utc(build.created_at),
                iso_utc(build.updated_at),
                build.to_json(),
            ),
            conn=conn,
        )
        return build

    def get(self, build_id: str, *, conn: sqlite3.Connection | None = None) -> Build | None:
        ids.validate_build_id(build_id)
        row = self._db.query_one(
            "SELECT payload_json FROM builds WHERE id = ?", (build_id,), conn=conn
        )
        if row is None:
            return None
        return Build.from_json(row_text(row, "payload_json", "builds.payload_json"))

    def exists(self, build_id: str) -> bool:
        row = self._db.query_one("SELECT 1 AS present FROM builds WHERE id = ?", (build_id,))
        return row is not None

    def list(
        self,
        *,
        status: BuildStatus | str | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[Build]:
        if limit <= 0 or limit > _MAX_PAGE_SIZE:
            raise ValueError(f"limit must be in [1, {_MAX_PAGE_SIZE}]")
        if offset < 0:
            raise ValueError("offset must be >= 0")
        sql = "SELECT payload_json FROM builds"
        params: list[str | int] = []
        if status is not None:
            sql += " WHERE status = ?"
            params.append(BuildStatus(status).value)
        sql += " ORDER BY updated_at DESC, id DESC LIMIT ? OFFSET ?"
        params.extend((limit, offset))
        rows = self._db.query_all(sql, tuple(params))
        return [
            Build.from_json(row_text(row, "payload_json", "builds.payload_json")) for row in rows
        ]


__all__ = ["BuildStore"]
