"""PostgreSQL storage backend for task records.

Terms:
- Migration: creating tables/indexes before normal reads/writes.
- JSONB: PostgreSQL JSON type; the whole Task document lives in `task_json`.
- Row lock: `SELECT ... FOR UPDATE` holds one task's row until commit, so
  updates to the same task serialize while other tasks proceed.
"""

from __future__ import annotations

import json
import uuid
from collections.abc import Callable, Iterable
from datetime import UTC, datetime
from typing import Any

from tes_api.app.errors import NotFoundError
from tes_api.app.models import ExecutorLog, OutputFileLog, State, Task, TaskLog
from tes_api.storage.base import (
    apply_append_executor_log,
    apply_append_task_log,
    apply_finalize_task_log,
    apply_transition,
    prepare_new_task,
)
from tes_api.storage.models import TaskRecord


# Advisory lock key held while inserting a task.
CREATE_LOCK_KEY = 0x7465735F637265


class PostgresTaskStorage:
    """Persist tasks in PostgreSQL."""

    def __init__(self, database_url: str) -> None:
        if not database_url:
            raise ValueError("TES_DATABASE_URL is required")
        self.database_url = database_url
        self._psycopg, self._dict_row, self._json_wrapper = self._load_psycopg()

    def migrate(self) -> None:
        """Create required table and indexes if they do not already exist."""
        with self._connect() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS tes_tasks (
                    task_id TEXT PRIMARY KEY,
                    seq BIGSERIAL UNIQUE,
                    state TEXT NOT NULL,
                    name TEXT NOT NULL DEFAULT '',
                    project TEXT NOT NULL DEFAULT '',
                    task_json JSONB NOT NULL,
                    created_at TIMESTAMPTZ NOT NULL,
                    updated_at TIMESTAMPTZ NOT NULL
                )
                """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_tes_tasks_project_seq
                ON tes_tasks(project, seq)
                """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_tes_tasks_state
                ON tes_tasks(state)
                """)
            conn.commit()

    def create_task(self, task: Task) -> str:
        task_id = str(uuid.uuid4())
        record = prepare_new_task(task, task_id)
        now = datetime.now(tz=UTC)
        with self._connect() as conn:
            # Creations are serialized so `seq` order is commit order.
            conn.execute("SELECT pg_advisory_xact_lock(%s)", (CREATE_LOCK_KEY,))
            conn.execute(
                """
                INSERT INTO tes_tasks (
                    task_id,
                    state,
                    name,
                    project,
                    task_json,
                    created_at,
                    updated_at
                ) VALUES (%s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    task_id,
                    record.state.value,
                    record.name,
                    record.project,
                    self._json_wrapper(record.model_dump(mode="json")),
                    now,
                    now,
                ),
            )
            conn.commit()
        return task_id

    def get_task(self, task_id: str) -> Task | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT task_json FROM tes_tasks WHERE task_id = %s",
                (task_id,),
            ).fetchone()
        if row is None:
            return None
        return self._parse_task(row["task_json"])

    def list_tasks(
        self,
        *,
        project: str = "",
        name_prefix: str = "",
        after_seq: int = 0,
        limit: int,
    ) -> list[TaskRecord]:
        clauses = ["seq > %s"]
        params: list[Any] = [after_seq]
        if project:
            clauses.append("project = %s")
            params.append(project)
        if name_prefix:
            clauses.append("name LIKE %s ESCAPE '\\'")
            params.append(self._escape_like(name_prefix) + "%")
        params.append(limit)
        query = (
            "SELECT seq, task_json, created_at, updated_at FROM tes_tasks "
            f"WHERE {' AND '.join(clauses)} ORDER BY seq ASC LIMIT %s"
        )
        with self._connect() as conn:
            rows = conn.execute(query, tuple(params)).fetchall()
        return [self._row_to_record(row) for row in rows]

    def list_task_ids(self, states: Iterable[State]) -> list[str]:
        values = [state.value for state in states]
        if not values:
            return []
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT task_id FROM tes_tasks WHERE state = ANY(%s) ORDER BY seq ASC",
                (values,),
            ).fetchall()
        return [str(row["task_id"]) for row in rows]

    def transition_task(self, task_id: str, target: State) -> Task:
        return self._mutate(task_id, lambda task: apply_transition(task, target))

    def append_task_log(self, task_id: str, log: TaskLog) -> int:
        attempt: list[int] = []

        def mutation(task: Task) -> Task:
            updated, index = apply_append_task_log(task, log)
            attempt.append(index)
            return updated

        self._mutate(task_id, mutation)
        return attempt[0]

    def append_executor_log(self, task_id: str, attempt: int, log: ExecutorLog) -> Task:
        return self._mutate(task_id, lambda task: apply_append_executor_log(task, attempt, log))

    def finalize_task_log(
        self,
        task_id: str,
        attempt: int,
        *,
        end_time: str,
        outputs: list[OutputFileLog],
        metadata: dict[str, str] | None = None,
    ) -> Task:
        return self._mutate(
            task_id,
            lambda task: apply_finalize_task_log(
                task, attempt, end_time=end_time, outputs=outputs, metadata=metadata
            ),
        )

    def _mutate(self, task_id: str, mutation: Callable[[Task], Task]) -> Task:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT task_json FROM tes_tasks WHERE task_id = %s FOR UPDATE",
                (task_id,),
            ).fetchone()
            if row is None:
                conn.rollback()
                raise NotFoundError(f"Task {task_id} not found")
            try:
                updated = mutation(self._parse_task(row["task_json"]))
            except Exception:
                conn.rollback()
                raise
            conn.execute(
                """
                UPDATE tes_tasks
                SET state = %s,
                    task_json = %s,
                    updated_at = %s
                WHERE task_id = %s
                """,
                (
                    updated.state.value,
                    self._json_wrapper(updated.model_dump(mode="json")),
                    datetime.now(tz=UTC),
                    task_id,
                ),
            )
            conn.commit()
        return updated

    def _connect(self) -> Any:
        """Open a psycopg connection that yields dict-like rows."""
        return self._psycopg.connect(self.database_url, row_factory=self._dict_row)

    @staticmethod
    def _load_psycopg() -> tuple[Any, Any, Any]:
        try:
            import psycopg
            from psycopg.rows import dict_row
            from psycopg.types.json import Json
        except ImportError as exc:  # pragma: no cover - exercised only without dependency
            raise RuntimeError(
                "PostgreSQL storage requires psycopg. Install with: "
                'python -m pip install "psycopg[binary]>=3.2,<4.0"'
            ) from exc
        return psycopg, dict_row, Json

    @staticmethod
    def _escape_like(value: str) -> str:
        return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")

    @staticmethod
    def _parse_task(raw: Any) -> Task:
        if isinstance(raw, str):
            return Task.model_validate(json.loads(raw))
        return Task.model_validate(raw)

    @staticmethod
    def _parse_datetime(raw: Any) -> datetime:
        if isinstance(raw, datetime):
            return raw
        if isinstance(raw, str):
            return datetime.fromisoformat(raw)
        raise TypeError(f"Unsupported datetime value: {type(raw)!r}")

    @classmethod
    def _row_to_record(cls, row: Any) -> TaskRecord:
        return TaskRecord(
            seq=int(row["seq"]),
            task=cls._parse_task(row["task_json"]),
            created_at=cls._parse_datetime(row["created_at"]),
            updated_at=cls._parse_datetime(row["updated_at"]),
        )
