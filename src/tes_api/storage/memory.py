"""In-memory storage backend.

Used by default for single-process deployments and in tests. Updates to one
task are serialized on that task's lock; different tasks never contend
beyond the short index lock.
"""

from __future__ import annotations

import itertools
import threading
from collections.abc import Callable, Iterable
from datetime import UTC, datetime
from uuid import uuid4

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


class InMemoryTaskStorage:
    def __init__(self) -> None:
        self._records: dict[str, TaskRecord] = {}
        self._record_locks: dict[str, threading.Lock] = {}
        # Guards the two dicts above, never held while a mutation runs.
        self._index_lock = threading.Lock()
        self._seq = itertools.count(1)

    def migrate(self) -> None:
        return None

    def create_task(self, task: Task) -> str:
        task_id = str(uuid4())
        now = datetime.now(UTC)
        with self._index_lock:
            record = TaskRecord(
                seq=next(self._seq),
                task=prepare_new_task(task, task_id),
                created_at=now,
                updated_at=now,
            )
            self._records[task_id] = record
            self._record_locks[task_id] = threading.Lock()
        return task_id

    def get_task(self, task_id: str) -> Task | None:
        with self._index_lock:
            record = self._records.get(task_id)
        return record.task.model_copy(deep=True) if record else None

    def list_tasks(
        self,
        *,
        project: str = "",
        name_prefix: str = "",
        after_seq: int = 0,
        limit: int,
    ) -> list[TaskRecord]:
        with self._index_lock:
            records = sorted(self._records.values(), key=lambda item: item.seq)
        matched: list[TaskRecord] = []
        for record in records:
            if record.seq <= after_seq:
                continue
            if project and record.task.project != project:
                continue
            if name_prefix and not record.task.name.startswith(name_prefix):
                continue
            matched.append(record.model_copy(deep=True))
            if len(matched) >= limit:
                break
        return matched

    def list_task_ids(self, states: Iterable[State]) -> list[str]:
        wanted = set(states)
        with self._index_lock:
            records = sorted(self._records.values(), key=lambda item: item.seq)
        return [record.task.id for record in records if record.task.state in wanted]

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
        with self._index_lock:
            lock = self._record_locks.get(task_id)
        if lock is None:
            raise NotFoundError(f"Task {task_id} not found")
        with lock:
            with self._index_lock:
                current = self._records[task_id]
            updated = mutation(current.task)
            with self._index_lock:
                self._records[task_id] = current.model_copy(
                    update={"task": updated, "updated_at": datetime.now(UTC)}
                )
        return updated.model_copy(deep=True)
