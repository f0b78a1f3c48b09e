"""Storage interface and the record mutations every backend applies.

Backends only differ in how they lock and persist a record; the rules for
what a mutation may change live in the `apply_*` functions below and run
while the backend holds the record's lock.
"""

from __future__ import annotations

from collections.abc import Iterable
from typing import Protocol

from tes_api.app.errors import FailedPreconditionError
from tes_api.app.models import ExecutorLog, OutputFileLog, State, Task, TaskLog
from tes_api.app.state_machine import INITIAL_STATE, validate_transition
from tes_api.storage.models import TaskRecord


class TaskStorage(Protocol):
    def migrate(self) -> None: ...

    def create_task(self, task: Task) -> str: ...

    def get_task(self, task_id: str) -> Task | None: ...

    def list_tasks(
        self,
        *,
        project: str = "",
        name_prefix: str = "",
        after_seq: int = 0,
        limit: int,
    ) -> list[TaskRecord]: ...

    def list_task_ids(self, states: Iterable[State]) -> list[str]: ...

    def transition_task(self, task_id: str, target: State) -> Task: ...

    def append_task_log(self, task_id: str, log: TaskLog) -> int: ...

    def append_executor_log(self, task_id: str, attempt: int, log: ExecutorLog) -> Task: ...

    def finalize_task_log(
        self,
        task_id: str,
        attempt: int,
        *,
        end_time: str,
        outputs: list[OutputFileLog],
        metadata: dict[str, str] | None = None,
    ) -> Task: ...


def prepare_new_task(task: Task, task_id: str) -> Task:
    """Fresh record: server-assigned id, initial state, no logs."""
    return task.model_copy(
        update={"id": task_id, "state": INITIAL_STATE, "logs": []},
        deep=True,
    )


def apply_transition(task: Task, target: State) -> Task:
    validate_transition(task.state, target)
    return task.model_copy(update={"state": target}, deep=True)


def apply_append_task_log(task: Task, log: TaskLog) -> tuple[Task, int]:
    if task.logs and not task.logs[-1].end_time:
        raise FailedPreconditionError(
            f"Task {task.id} attempt {len(task.logs) - 1} is still open"
        )
    updated = task.model_copy(deep=True)
    updated.logs.append(log.model_copy(deep=True))
    return updated, len(updated.logs) - 1


def apply_append_executor_log(task: Task, attempt: int, log: ExecutorLog) -> Task:
    _require_open_attempt(task, attempt)
    if len(task.logs[attempt].logs) >= len(task.executors):
        raise FailedPreconditionError(
            f"Task {task.id} attempt {attempt} already has a log for every executor"
        )
    updated = task.model_copy(deep=True)
    updated.logs[attempt].logs.append(log.model_copy(deep=True))
    return updated


def apply_finalize_task_log(
    task: Task,
    attempt: int,
    *,
    end_time: str,
    outputs: list[OutputFileLog],
    metadata: dict[str, str] | None = None,
) -> Task:
    _require_open_attempt(task, attempt)
    updated = task.model_copy(deep=True)
    current = updated.logs[attempt]
    current.end_time = end_time
    current.outputs = [item.model_copy() for item in outputs]
    if metadata:
        current.metadata.update(metadata)
    return updated


def _require_open_attempt(task: Task, attempt: int) -> None:
    # Only the newest attempt is writable, and only until it is sealed.
    if attempt < 0 or attempt != len(task.logs) - 1:
        raise FailedPreconditionError(
            f"Task {task.id} attempt {attempt} is not the current attempt"
        )
    if task.logs[attempt].end_time:
        raise FailedPreconditionError(f"Task {task.id} attempt {attempt} is sealed")
