"""SQLite-backed TaskStore.

Stores one row per task with timestamps as UTC epoch seconds and the
payload/result as JSON text. Each store call runs in a worker thread via
``asyncio.to_thread`` against a single shared connection guarded by a
lock; state changes use ``BEGIN IMMEDIATE`` plus a conditional
``UPDATE ... WHERE status IN (...)`` so a claim is atomic across processes
sharing the database file.
"""

from __future__ import annotations

import asyncio
import json
import logging
import sqlite3
import threading
from collections.abc import Callable, Collection, Iterator, Mapping
from contextlib import contextmanager
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from typing import Any, TypeVar

from storyqueue.errors import ErrorCode, StoreError, ValidationError, store_unavailable
from storyqueue.tasks.models import (
    Task,
    TaskFilters,
    TaskPriority,
    TaskStatus,
    TaskType,
)
from storyqueue.tasks.store import check_changes

logger = logging.getLogger(__name__)

T = TypeVar("T")

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS tasks (
    id TEXT PRIMARY KEY,
    owner_id TEXT NOT NULL,
    task_type TEXT NOT NULL,
    priority TEXT NOT NULL,
    priority_weight INTEGER NOT NULL,
    status TEXT NOT NULL,
    payload TEXT NOT NULL,
    progress INTEGER NOT NULL DEFAULT 0,
    current_step TEXT,
    result TEXT,
    error TEXT,
    retry_count INTEGER NOT NULL DEFAULT 0,
    max_retries INTEGER NOT NULL DEFAULT 3,
    estimated_time INTEGER,
    actual_time INTEGER,
    created_at REAL NOT NULL,
    queued_at REAL NOT NULL,
    started_at REAL,
    completed_at REAL,
    updated_at REAL NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_tasks_schedule
    ON tasks (status, priority_weight DESC, queued_at, created_at);
CREATE INDEX IF NOT EXISTS idx_tasks_owner ON tasks (owner_id, status);
CREATE INDEX IF NOT EXISTS idx_tasks_completed ON tasks (status, completed_at);
"""

_COLUMNS = (
    "id",
    "owner_id",
    "task_type",
    "priority",
    "priority_weight",
    "status",
    "payload",
    "progress",
    "current_step",
    "result",
    "error",
    "retry_count",
    "max_retries",
    "estimated_time",
    "actual_time",
    "created_at",
    "queued_at",
    "started_at",
    "completed_at",
    "updated_at",
)
_JSON_COLUMNS = frozenset({"payload", "result"})
_ORDER_BY = "ORDER BY priority_weight DESC, queued_at ASC, created_at ASC"


def _ts(value: datetime | None) -> float | None:
    return value.timestamp() if value is not None else None


def _dt(value: float | None) -> datetime | None:
    return datetime.fromtimestamp(value, UTC) if value is not None else None


def _encode(column: str, value: Any) -> Any:
    if column in _JSON_COLUMNS:
        if value is None and column == "result":
            return None
        try:
            return json.dumps(value)
        except (TypeError, ValueError) as e:
            raise ValidationError(
                f"Task {column} is not JSON serializable: {e}",
                field=column,
                code=ErrorCode.VAL_INVALID_PAYLOAD,
                cause=e,
            ) from e
    if isinstance(value, datetime):
        return _ts(value)
    if isinstance(value, Enum):
        return value.value
    return value


def _task_to_row(task: Task) -> dict[str, Any]:
    row = {
        name: _encode(name, getattr(task, name)) for name in _COLUMNS if name != "priority_weight"
    }
    row["priority_weight"] = task.priority.weight
    return row


def _row_to_task(row: sqlite3.Row) -> Task:
    return Task(
        id=row["id"],
        owner_id=row["owner_id"],
        task_type=TaskType(row["task_type"]),
        priority=TaskPriority(row["priority"]),
        status=TaskStatus(row["status"]),
        payload=json.loads(row["payload"]),
        progress=row["progress"],
        current_step=row["current_step"],
        result=json.loads(row["result"]) if row["result"] is not None else None,
        error=row["error"],
        retry_count=row["retry_count"],
        max_retries=row["max_retries"],
        estimated_time=row["estimated_time"],
        actual_time=row["actual_time"],
        created_at=_dt(row["created_at"]),  # type: ignore[arg-type]
        queued_at=_dt(row["queued_at"]),  # type: ignore[arg-type]
        started_at=_dt(row["started_at"]),
        completed_at=_dt(row["completed_at"]),
        updated_at=_dt(row["updated_at"]),  # type: ignore[arg-type]
    )


def _placeholders(values: Collection[Any]) -> str:
    return ", ".join("?" for _ in values)


class SQLiteTaskStore:
    """TaskStore persisted in a SQLite database file.

    Args:
        db_path: Database file. ``":memory:"`` keeps everything in RAM.
    """

    def __init__(self, db_path: Path | str) -> None:
        self.db_path = str(db_path)
        if self.db_path != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        self._conn: sqlite3.Connection | None = None
        self._init_schema()

    def _get_connection(self) -> sqlite3.Connection:
        if self._conn is None:
            # isolation_level=None so transactions are opened explicitly below
            conn = sqlite3.connect(
                self.db_path, timeout=30.0, check_same_thread=False, isolation_level=None
            )
            conn.row_factory = sqlite3.Row
            if self.db_path != ":memory:":
                conn.execute("PRAGMA journal_mode = WAL")
            conn.execute("PRAGMA synchronous = NORMAL")
            self._conn = conn
        return self._conn

    @contextmanager
    def connection(self) -> Iterator[sqlite3.Connection]:
        """Exclusive write transaction on the shared connection.

        Yields:
            SQLite connection with row_factory set to sqlite3.Row.
        """
        with self._lock:
            conn = self._get_connection()
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
                conn.execute("COMMIT")
            except Exception:
                conn.execute("ROLLBACK")
                raise

    def _init_schema(self) -> None:
        try:
            with self._lock:
                self._get_connection().executescript(SCHEMA_SQL)
        except sqlite3.Error as e:
            raise store_unavailable("schema initialization", cause=e) from e

    def close(self) -> None:
        """Close the shared connection."""
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None

    async def _run(self, operation: str, fn: Callable[[sqlite3.Connection], T]) -> T:
        def call() -> T:
            with self.connection() as conn:
                return fn(conn)

        try:
            return await asyncio.to_thread(call)
        except sqlite3.IntegrityError as e:
            raise ValidationError(f"Task store rejected {operation}: {e}", cause=e) from e
        except sqlite3.OperationalError as e:
            logger.error("SQLite %s failed: %s", operation, e)
            raise store_unavailable(operation, cause=e) from e
        except sqlite3.Error as e:
            raise StoreError(
                f"Task store query failed during {operation}: {e}",
                code=ErrorCode.STO_QUERY_FAILED,
                details={"operation": operation},
                cause=e,
            ) from e

    @staticmethod
    def _fetch(conn: sqlite3.Connection, task_id: str) -> Task | None:
        row = conn.execute("SELECT * FROM tasks WHERE id = ?", (task_id,)).fetchone()
        return _row_to_task(row) if row else None

    async def insert(self, task: Task) -> None:
        row = _task_to_row(task)
        sql = f"INSERT INTO tasks ({', '.join(row)}) VALUES ({_placeholders(row)})"
        await self._run("insert", lambda conn: conn.execute(sql, tuple(row.values())))

    async def get(self, task_id: str) -> Task | None:
        return await self._run("get", lambda conn: self._fetch(conn, task_id))

    async def update(
        self,
        task_id: str,
        changes: Mapping[str, Any],
        expected: Collection[TaskStatus] | None = None,
    ) -> Task | None:
        check_changes(changes)
        values = {name: _encode(name, value) for name, value in changes.items()}
        if "priority" in changes:
            values["priority_weight"] = TaskPriority(changes["priority"]).weight
        if "updated_at" not in values:
            values["updated_at"] = datetime.now(UTC).timestamp()

        assignments = ", ".join(f"{name} = ?" for name in values)
        sql = f"UPDATE tasks SET {assignments} WHERE id = ?"
        params: list[Any] = [*values.values(), task_id]
        if expected is not None:
            statuses = [TaskStatus(s).value for s in expected]
            if not statuses:
                return None
            sql += f" AND status IN ({_placeholders(statuses)})"
            params.extend(statuses)

        def apply(conn: sqlite3.Connection) -> Task | None:
            cursor = conn.execute(sql, params)
            if cursor.rowcount == 0:
                return None
            return self._fetch(conn, task_id)

        return await self._run("update", apply)

    async def claim(self, task_id: str, now: datetime) -> Task | None:
        return await self.update(
            task_id,
            {"status": TaskStatus.RUNNING, "started_at": now, "updated_at": now},
            expected=(TaskStatus.QUEUED,),
        )

    async def advance_progress(
        self,
        task_id: str,
        progress: int,
        current_step: str | None,
        now: datetime,
    ) -> Task | None:
        def apply(conn: sqlite3.Connection) -> Task | None:
            cursor = conn.execute(
                "UPDATE tasks SET progress = MAX(progress, ?), "
                "current_step = COALESCE(?, current_step), updated_at = ? "
                "WHERE id = ? AND status = ?",
                (progress, current_step, _ts(now), task_id, TaskStatus.RUNNING.value),
            )
            if cursor.rowcount == 0:
                return None
            return self._fetch(conn, task_id)

        return await self._run("advance_progress", apply)

    async def delete(self, task_id: str) -> bool:
        def apply(conn: sqlite3.Connection) -> bool:
            return conn.execute("DELETE FROM tasks WHERE id = ?", (task_id,)).rowcount > 0

        return await self._run("delete", apply)

    async def list_tasks(
        self,
        owner_id: str | None = None,
        filters: TaskFilters | None = None,
    ) -> tuple[list[Task], int]:
        filters = filters or TaskFilters()
        clauses: list[str] = []
        params: list[Any] = []
        if owner_id is not None:
            clauses.append("owner_id = ?")
            params.append(owner_id)
        for column, selected in (
            ("status", filters.statuses),
            ("task_type", filters.types),
            ("priority", filters.priorities),
        ):
            if selected:
                clauses.append(f"{column} IN ({_placeholders(selected)})")
                params.extend(item.value for item in selected)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""

        def query(conn: sqlite3.Connection) -> tuple[list[Task], int]:
            total = conn.execute(f"SELECT COUNT(*) FROM tasks {where}", params).fetchone()[0]
            rows = conn.execute(
                f"SELECT * FROM tasks {where} {_ORDER_BY} LIMIT ? OFFSET ?",
                [*params, filters.limit, filters.offset],
            ).fetchall()
            return [_row_to_task(row) for row in rows], total

        return await self._run("list_tasks", query)

    async def list_due(
        self,
        now: datetime,
        task_types: Collection[TaskType],
        limit: int,
        exclude: Collection[str] = (),
    ) -> list[Task]:
        if limit <= 0 or not task_types:
            return []
        types = [TaskType(t).value for t in task_types]
        excluded = list(exclude)
        sql = (
            "SELECT * FROM tasks WHERE status = ? AND queued_at <= ? "
            f"AND task_type IN ({_placeholders(types)})"
        )
        params: list[Any] = [TaskStatus.QUEUED.value, _ts(now), *types]
        if excluded:
            sql += f" AND id NOT IN ({_placeholders(excluded)})"
            params.extend(excluded)
        sql += f" {_ORDER_BY} LIMIT ?"
        params.append(limit)

        def query(conn: sqlite3.Connection) -> list[Task]:
            return [_row_to_task(row) for row in conn.execute(sql, params).fetchall()]

        return await self._run("list_due", query)

    async def list_by_status(self, status: TaskStatus) -> list[Task]:
        def query(conn: sqlite3.Connection) -> list[Task]:
            rows = conn.execute(
                f"SELECT * FROM tasks WHERE status = ? {_ORDER_BY}", (status.value,)
            ).fetchall()
            return [_row_to_task(row) for row in rows]

        return await self._run("list_by_status", query)

    async def count_by_status(self) -> dict[TaskStatus, int]:
        def query(conn: sqlite3.Connection) -> dict[TaskStatus, int]:
            counts = {status: 0 for status in TaskStatus}
            for row in conn.execute("SELECT status, COUNT(*) AS n FROM tasks GROUP BY status"):
                counts[TaskStatus(row["status"])] = row["n"]
            return counts

        return await self._run("count_by_status", query)

    async def count_ahead(self, task: Task) -> int:
        weight = task.priority.weight
        queued_at = _ts(task.queued_at)

        def query(conn: sqlite3.Connection) -> int:
            row = conn.execute(
                "SELECT COUNT(*) FROM tasks WHERE status = ? AND id != ? "
                "AND (priority_weight > ? OR (priority_weight = ? AND queued_at < ?))",
                (TaskStatus.QUEUED.value, task.id, weight, weight, queued_at),
            ).fetchone()
            return int(row[0])

        return await self._run("count_ahead", query)

    async def list_finished_since(self, since: datetime) -> list[Task]:
        def query(conn: sqlite3.Connection) -> list[Task]:
            rows = conn.execute(
                "SELECT * FROM tasks WHERE status IN (?, ?) AND completed_at >= ?",
                (TaskStatus.COMPLETED.value, TaskStatus.FAILED.value, _ts(since)),
            ).fetchall()
            return [_row_to_task(row) for row in rows]

        return await self._run("list_finished_since", query)

    async def delete_finished_before(self, cutoff: datetime) -> int:
        terminal = [s.value for s in (TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.CANCELED)]

        def apply(conn: sqlite3.Connection) -> int:
            cursor = conn.execute(
                f"DELETE FROM tasks WHERE status IN ({_placeholders(terminal)}) "
                "AND completed_at IS NOT NULL AND completed_at < ?",
                (*terminal, _ts(cutoff)),
            )
            return cursor.rowcount

        deleted = await self._run("delete_finished_before", apply)
        if deleted:
            logger.debug("Deleted %d finished tasks older than %s", deleted, cutoff)
        return deleted


__all__ = ["SCHEMA_SQL", "SQLiteTaskStore"]
