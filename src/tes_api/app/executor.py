"""Runs a task's executors in order, one attempt at a time.

Flow for one task:
1) QUEUED -> INITIALIZING, open a TaskLog, stage inputs into the workspace.
2) INITIALIZING -> RUNNING, then each executor in order through the sandbox.
   Execution stops at the first non-zero exit code (ERROR).
3) Upload outputs, seal the TaskLog, move to COMPLETE / ERROR / SYSTEM_ERROR.

Cancellation and pause requests are observed between executors. A cancel
also force-terminates the executor that is currently running.
"""

from __future__ import annotations

import logging
import socket
import threading
from pathlib import Path

from tes_api.storage.base import TaskStorage

from .errors import InvalidTransitionError, NotFoundError, SystemFailureError
from .models import ExecutorLog, OutputFileLog, State, Task
from .object_store import ObjectStore, stage_inputs
from .sandbox import Sandbox, SandboxContext, container_mounts
from .task_logs import LogAggregator, utc_now_rfc3339
from .workspace import TaskWorkspace

logger = logging.getLogger(__name__)


class TaskCanceled(Exception):
    """Raised inside the runner once the task is observed as canceled."""


class TaskControl:
    """Cooperative cancel / pause flags shared between the API and one runner."""

    def __init__(self) -> None:
        self._condition = threading.Condition()
        self._pause_requested = False
        # Handed to the sandbox so it can kill the running process.
        self.cancel_event = threading.Event()

    @property
    def cancel_requested(self) -> bool:
        return self.cancel_event.is_set()

    @property
    def pause_requested(self) -> bool:
        with self._condition:
            return self._pause_requested

    def request_cancel(self) -> None:
        with self._condition:
            self.cancel_event.set()
            self._condition.notify_all()

    def request_pause(self) -> None:
        with self._condition:
            self._pause_requested = True
            self._condition.notify_all()

    def request_resume(self) -> None:
        with self._condition:
            self._pause_requested = False
            self._condition.notify_all()

    def wait(self, timeout_s: float) -> None:
        """Block until a flag changes or `timeout_s` elapses."""
        with self._condition:
            if self._pause_requested and not self.cancel_event.is_set():
                self._condition.wait(timeout=timeout_s)


class ExecutorRunner:
    def __init__(
        self,
        *,
        storage: TaskStorage,
        sandbox: Sandbox,
        object_store: ObjectStore,
        work_dir: Path,
        system_error_retries: int = 0,
        keep_workspaces: bool = False,
        poll_interval_s: float = 0.2,
    ) -> None:
        self.storage = storage
        self.sandbox = sandbox
        self.object_store = object_store
        self.work_dir = work_dir
        self.system_error_retries = max(0, system_error_retries)
        self.keep_workspaces = keep_workspaces
        self.poll_interval_s = poll_interval_s
        self.log_aggregator = LogAggregator(storage=storage, object_store=object_store)

    def run_task(self, task_id: str, control: TaskControl | None = None) -> State:
        """Execute a QUEUED task to a terminal state and return that state."""
        control = control or TaskControl()
        task = self.storage.get_task(task_id)
        if task is None:
            logger.warning("task_run event=missing task_id=%s", task_id)
            return State.UNKNOWN
        if task.state is not State.QUEUED:
            logger.info("task_run event=skipped task_id=%s state=%s", task_id, task.state)
            return task.state

        logger.info(
            "task_run event=start task_id=%s executors=%s sandbox=%s",
            task_id,
            len(task.executors),
            self.sandbox.name,
        )
        try:
            self._transition(task_id, State.INITIALIZING)
            outcome = self._run_attempts(task, control)
            if outcome is not State.CANCELED:
                self._transition(task_id, outcome)
        except TaskCanceled:
            pass

        final_state = self._current_state(task_id)
        logger.info("task_run event=completed task_id=%s state=%s", task_id, final_state)
        return final_state

    def _run_attempts(self, task: Task, control: TaskControl) -> State:
        attempts = self.system_error_retries + 1
        outcome = State.SYSTEM_ERROR
        for number in range(1, attempts + 1):
            outcome = self._run_attempt(task, control, number)
            if outcome is not State.SYSTEM_ERROR or control.cancel_requested:
                break
            if number < attempts:
                logger.warning(
                    "task_run event=retry task_id=%s attempt=%s of=%s",
                    task.id,
                    number + 1,
                    attempts,
                )
        return outcome

    def _run_attempt(self, task: Task, control: TaskControl, number: int) -> State:
        attempt = self.log_aggregator.open_attempt(
            task.id,
            metadata={
                "attempt": str(number),
                "sandbox": self.sandbox.name,
                "hostname": socket.gethostname(),
            },
        )
        workspace = TaskWorkspace.create(self.work_dir, task.id, attempt)
        outputs: list[OutputFileLog] = []
        extra_metadata: dict[str, str] = {}
        try:
            outcome = self._run_executors(task, attempt, workspace, control)
            outputs = self.log_aggregator.collect_outputs(
                task.outputs, workspace, strict=outcome is State.COMPLETE
            )
        except TaskCanceled:
            outcome = State.CANCELED
        except SystemFailureError as exc:
            logger.error(
                "task_run event=system_error task_id=%s attempt=%s error=%s",
                task.id,
                attempt,
                exc,
            )
            outcome = State.SYSTEM_ERROR
            extra_metadata["system_error"] = str(exc)
        finally:
            if not self.keep_workspaces:
                workspace.remove()

        self.log_aggregator.finalize_attempt(
            task.id, attempt, outputs=outputs, metadata=extra_metadata
        )
        return outcome

    def _run_executors(
        self,
        task: Task,
        attempt: int,
        workspace: TaskWorkspace,
        control: TaskControl,
    ) -> State:
        stage_inputs(task.inputs, workspace, self.object_store)
        self._transition(task.id, State.RUNNING)
        mounts = container_mounts(task)

        for index, executor in enumerate(task.executors):
            self._checkpoint(task.id, control)
            start_time = utc_now_rfc3339()
            result = self.sandbox.run(
                executor,
                context=SandboxContext(
                    task_id=task.id,
                    index=index,
                    workspace=workspace,
                    cancel_event=control.cancel_event,
                    mounts=mounts,
                ),
            )
            self.log_aggregator.record_executor(
                task.id,
                attempt,
                ExecutorLog(
                    start_time=start_time,
                    end_time=utc_now_rfc3339(),
                    stdout=result.stdout,
                    stderr=result.stderr,
                    exit_code=result.exit_code,
                    host_ip=result.host_ip,
                    ports=result.ports,
                ),
            )
            logger.info(
                "executor event=finished task_id=%s attempt=%s index=%s exit_code=%s",
                task.id,
                attempt,
                index,
                result.exit_code,
            )
            if control.cancel_requested:
                raise TaskCanceled
            if result.exit_code != 0:
                return State.ERROR
        return State.COMPLETE

    def _checkpoint(self, task_id: str, control: TaskControl) -> None:
        """Executor boundary: honour cancel, and block here while paused."""
        self._raise_if_canceled(task_id, control)
        if not control.pause_requested:
            return
        self._transition(task_id, State.PAUSED)
        logger.info("task_run event=paused task_id=%s", task_id)
        while control.pause_requested:
            control.wait(self.poll_interval_s)
            self._raise_if_canceled(task_id, control)
        self._transition(task_id, State.RUNNING)
        logger.info("task_run event=resumed task_id=%s", task_id)

    def _raise_if_canceled(self, task_id: str, control: TaskControl) -> None:
        # The stored state also covers cancels issued by another process.
        if control.cancel_requested or self._current_state(task_id) is State.CANCELED:
            raise TaskCanceled

    def _transition(self, task_id: str, target: State) -> None:
        if self._current_state(task_id) is target:
            return
        try:
            self.storage.transition_task(task_id, target)
        except InvalidTransitionError:
            if self._current_state(task_id) is State.CANCELED:
                raise TaskCanceled from None
            raise

    def _current_state(self, task_id: str) -> State:
        task = self.storage.get_task(task_id)
        return task.state if task is not None else State.UNKNOWN


def drive_to_system_error(storage: TaskStorage, task_id: str, reason: str) -> State:
    """Force a non-terminal task to SYSTEM_ERROR along legal edges, sealing any open log."""
    task = storage.get_task(task_id)
    if task is None:
        raise NotFoundError(f"Task {task_id} not found")
    if task.logs and not task.logs[-1].end_time:
        storage.finalize_task_log(
            task_id,
            len(task.logs) - 1,
            end_time=utc_now_rfc3339(),
            outputs=[],
            metadata={"system_error": reason},
        )
    path = {
        State.QUEUED: [State.INITIALIZING, State.SYSTEM_ERROR],
        State.INITIALIZING: [State.SYSTEM_ERROR],
        State.RUNNING: [State.SYSTEM_ERROR],
        State.PAUSED: [State.RUNNING, State.SYSTEM_ERROR],
    }.get(task.state, [])
    state = task.state
    for target in path:
        try:
            state = storage.transition_task(task_id, target).state
        except InvalidTransitionError:
            # Lost a race, most likely with a cancel; the stored state stands.
            break
    logger.error("task_run event=forced_system_error task_id=%s reason=%s", task_id, reason)
    return state
