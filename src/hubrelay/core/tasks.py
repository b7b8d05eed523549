"""Persistent task records.

One SQLite table keyed by the server-generated ``unique_id``, with
secondary lookups by ``client_id`` (reconciliation) and ``task_id``
(completion and deletion by upstream identifier).

The schema is evolved by an ordered list of migrations tracked with
``PRAGMA user_version``. Rows are read by column name, so columns added by
later migrations never break older readers.
"""
from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
import json
import logging
import os
import sqlite3
from typing import Any, Dict, Iterator, List, Optional

logger = logging.getLogger("hubrelay.tasks")

# Task statuses
WAITING = "WAITING"
RETRY = "RETRY"
QUEUED = "QUEUED"
RUNNING = "RUNNING"
SUCCESS = "SUCCESS"
FAILED = "FAILED"

TASK_STATUSES = {WAITING, RETRY, QUEUED, RUNNING, SUCCESS, FAILED}
PENDING_STATUSES = {WAITING, RETRY}
ACTIVE_STATUSES = {QUEUED, RUNNING}
TERMINAL_STATUSES = {SUCCESS, FAILED}


def utc_now_iso() -> str:
    """Current UTC time in the same shape browsers produce with toISOString()."""
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def accepted_status(upstream_status: Any) -> str:
    """Map the sub-state reported by upstream at acceptance time."""
    if isinstance(upstream_status, str) and upstream_status.strip().upper() == RUNNING:
        return RUNNING
    return QUEUED


class StorageError(RuntimeError):
    """Raised when the task database cannot be read or written."""


@dataclass
class TaskRecord:
    unique_id: str
    client_id: str
    status: str
    created_at: str
    task_id: Optional[str] = None
    node_info_list: Optional[List[Dict[str, Any]]] = None
    result: Any = None
    error: Optional[str] = None
    completed_at: Optional[str] = None
    api_key: Optional[str] = None
    workflow_id: Optional[str] = None
    updated_at: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def to_dict(self) -> dict:
        """Wire form sent to browsers. Never includes the api key."""
        return {
            "uniqueId": self.unique_id,
            "taskId": self.task_id,
            "clientId": self.client_id,
            "status": self.status,
            "nodeInfoList": self.node_info_list or [],
            "result": self.result,
            "error": self.error,
            "createdAt": self.created_at,
            "completedAt": self.completed_at,
        }


# Each entry is one schema version; never edit a published entry, append a new one.
MIGRATIONS: List[List[str]] = [
    [
        """
        CREATE TABLE IF NOT EXISTS tasks (
            unique_id TEXT PRIMARY KEY,
            task_id TEXT,
            client_id TEXT NOT NULL,
            status TEXT NOT NULL,
            node_info_list TEXT,
            result TEXT,
            error TEXT,
            created_at TEXT NOT NULL,
            completed_at TEXT
        )
        """,
        "CREATE INDEX IF NOT EXISTS idx_tasks_client ON tasks(client_id)",
        "CREATE INDEX IF NOT EXISTS idx_tasks_task_id ON tasks(task_id)",
    ],
    [
        "ALTER TABLE tasks ADD COLUMN api_key TEXT",
        "ALTER TABLE tasks ADD COLUMN workflow_id TEXT",
        "ALTER TABLE tasks ADD COLUMN updated_at TEXT",
        "CREATE INDEX IF NOT EXISTS idx_tasks_created ON tasks(created_at)",
    ],
]

_JSON_COLUMNS = {"node_info_list", "result"}
_UPDATABLE_COLUMNS = {
    "task_id", "status", "node_info_list", "result", "error",
    "completed_at", "api_key", "workflow_id",
}


class TaskStore:
    """SQLite-backed task record store.

    Each method opens its own connection; the store holds no open handles
    between calls.
    """

    def __init__(self, db_path: str) -> None:
        self.db_path = db_path
        dir_path = os.path.dirname(db_path)
        if dir_path:
            os.makedirs(dir_path, exist_ok=True)
        self._migrate()
        logger.info("TaskStore ready db=%s version=%d", db_path, self.schema_version())

    # ── low-level helpers ────────────────────────────────────

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        try:
            conn = sqlite3.connect(self.db_path, timeout=30.0)
        except sqlite3.Error as exc:
            raise StorageError(f"cannot open task database: {exc}") from exc
        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        except sqlite3.Error as exc:
            conn.rollback()
            raise StorageError(str(exc)) from exc
        finally:
            conn.close()

    def schema_version(self) -> int:
        with self._connect() as conn:
            (version,) = conn.execute("PRAGMA user_version").fetchone()
            return int(version)

    def _migrate(self) -> None:
        with self._connect() as conn:
            (current,) = conn.execute("PRAGMA user_version").fetchone()
            for version, statements in enumerate(MIGRATIONS, start=1):
                if version <= current:
                    continue
                for statement in statements:
                    conn.execute(statement)
                conn.execute(f"PRAGMA user_version = {version}")
                logger.info("TaskStore migration: schema version %d applied", version)

    @staticmethod
    def _encode(value: Any) -> Optional[str]:
        if value is None:
            return None
        return json.dumps(value, ensure_ascii=False, default=str)

    @staticmethod
    def _decode(raw: Optional[str], column: str) -> Any:
        if raw is None or raw == "":
            return None
        try:
            return json.loads(raw)
        except ValueError:
            logger.warning("Undecodable %s column value; reading as None", column)
            return None

    def _row_to_record(self, row: sqlite3.Row) -> TaskRecord:
        keys = set(row.keys())

        def col(name: str) -> Any:
            return row[name] if name in keys else None

        return TaskRecord(
            unique_id=row["unique_id"],
            task_id=col("task_id"),
            client_id=row["client_id"],
            status=row["status"],
            node_info_list=self._decode(col("node_info_list"), "node_info_list"),
            result=self._decode(col("result"), "result"),
            error=col("error"),
            created_at=row["created_at"],
            completed_at=col("completed_at"),
            api_key=col("api_key"),
            workflow_id=col("workflow_id"),
            updated_at=col("updated_at"),
        )

    # ── public API ───────────────────────────────────────────

    def count(self) -> int:
        with self._connect() as conn:
            (n,) = conn.execute("SELECT COUNT(*) FROM tasks").fetchone()
            return int(n)

    def insert(self, record: TaskRecord) -> None:
        record.updated_at = utc_now_iso()
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO tasks(
                    unique_id, task_id, client_id, status, node_info_list,
                    result, error, created_at, completed_at,
                    api_key, workflow_id, updated_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    record.unique_id,
                    record.task_id,
                    record.client_id,
                    record.status,
                    self._encode(record.node_info_list),
                    self._encode(record.result),
                    record.error,
                    record.created_at,
                    record.completed_at,
                    record.api_key,
                    record.workflow_id,
                    record.updated_at,
                ),
            )
        logger.debug("Task stored unique_id=%s status=%s", record.unique_id, record.status)

    def get(self, unique_id: str) -> Optional[TaskRecord]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM tasks WHERE unique_id = ?", (unique_id,)).fetchone()
            return self._row_to_record(row) if row else None

    def get_by_task_id(self, task_id: str) -> Optional[TaskRecord]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM tasks WHERE task_id = ? ORDER BY created_at DESC LIMIT 1",
                (task_id,),
            ).fetchone()
            return self._row_to_record(row) if row else None

    def get_by_created_at(self, created_at: str, client_id: Optional[str] = None) -> Optional[TaskRecord]:
        sql = "SELECT * FROM tasks WHERE created_at = ?"
        params: list[Any] = [created_at]
        if client_id:
            sql += " AND client_id = ?"
            params.append(client_id)
        with self._connect() as conn:
            row = conn.execute(sql + " LIMIT 1", params).fetchone()
            return self._row_to_record(row) if row else None

    def list_for_client(self, client_id: str) -> List[TaskRecord]:
        """All records of one client, most recent first."""
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM tasks WHERE client_id = ? ORDER BY created_at DESC",
                (client_id,),
            ).fetchall()
            return [self._row_to_record(r) for r in rows]

    def list_pending(self) -> List[TaskRecord]:
        """Records that may still need an upstream submission, oldest first."""
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM tasks
                WHERE status IN ('WAITING', 'RETRY')
                   OR (status = 'QUEUED' AND task_id IS NULL)
                ORDER BY created_at ASC
                """
            ).fetchall()
            return [self._row_to_record(r) for r in rows]

    def update(self, unique_id: str, **fields: Any) -> bool:
        unknown = set(fields) - _UPDATABLE_COLUMNS
        if unknown:
            raise ValueError(f"unknown task columns: {sorted(unknown)}")
        if not fields:
            return False
        assignments: list[str] = []
        params: list[Any] = []
        for name, value in fields.items():
            assignments.append(f"{name} = ?")
            params.append(self._encode(value) if name in _JSON_COLUMNS else value)
        assignments.append("updated_at = ?")
        params.append(utc_now_iso())
        params.append(unique_id)
        with self._connect() as conn:
            cur = conn.execute(
                f"UPDATE tasks SET {', '.join(assignments)} WHERE unique_id = ?",
                params,
            )
            return cur.rowcount == 1

    def delete(self, unique_id: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM tasks WHERE unique_id = ?", (unique_id,))
            return cur.rowcount > 0

    def delete_by_task_id(self, task_id: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM tasks WHERE task_id = ?", (task_id,))
            return cur.rowcount > 0
