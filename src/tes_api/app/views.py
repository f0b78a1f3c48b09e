"""Response projection for the MINIMAL / BASIC / FULL task views."""

from __future__ import annotations

from .errors import InvalidArgumentError
from .models import Task, TaskView

DEFAULT_VIEW = TaskView.MINIMAL


def parse_view(raw: str | None) -> TaskView:
    if raw is None or raw == "":
        return DEFAULT_VIEW
    try:
        return TaskView(raw.strip().upper())
    except ValueError as exc:
        allowed = ", ".join(view.value for view in TaskView)
        raise InvalidArgumentError(f"Unknown view {raw!r}; expected one of {allowed}") from exc


def project_task(task: Task, view: TaskView) -> Task:
    """Copy of `task` containing only the fields `view` exposes."""
    if view is TaskView.MINIMAL:
        return Task(id=task.id, state=task.state)
    if view is TaskView.BASIC:
        projected = _fully_set_copy(task)
        for param in [*projected.inputs, *projected.outputs]:
            param.contents = ""
        for attempt in projected.logs:
            for executor_log in attempt.logs:
                executor_log.stdout = ""
                executor_log.stderr = ""
        return projected
    if view is TaskView.FULL:
        return _fully_set_copy(task)
    raise InvalidArgumentError(f"Unsupported view: {view!r}")


def _fully_set_copy(task: Task) -> Task:
    # Marks every field set so exclude_unset renders the whole document.
    return Task.model_validate(task.model_dump())
