"""Background execution of submitted tasks.

Submission returns as soon as the record exists; a worker thread picks the
task up and runs it through the ExecutorRunner. Tasks run concurrently with
each other; each task's executors run sequentially inside its worker.
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError

from tes_api.storage.base import TaskStorage

from .errors import FailedPreconditionError, NotFoundError, TaskServiceError
from .executor import ExecutorRunner, TaskControl, drive_to_system_error
from .models import State, Task

logger = logging.getLogger(__name__)

# States whose worker died with a previous process.
ORPHANED_STATES = (State.INITIALIZING, State.RUNNING, State.PAUSED)


class TaskScheduler:
    def __init__(
        self,
        *,
        storage: TaskStorage,
        runner: ExecutorRunner,
        max_workers: int = 4,
    ) -> None:
        self.storage = storage
        self.runner = runner
        self._pool = ThreadPoolExecutor(
            max_workers=max(1, max_workers), thread_name_prefix="tes-worker"
        )
        self._controls: dict[str, TaskControl] = {}
        self._futures: dict[str, Future[State]] = {}
        self._lock = threading.Lock()

    def submit(self, task_id: str) -> Future[State]:
        control = TaskControl()
        with self._lock:
            self._controls[task_id] = control
            future = self._pool.submit(self._run, task_id, control)
            self._futures[task_id] = future
        future.add_done_callback(lambda _: self._forget_future(task_id))
        logger.info("scheduler event=submitted task_id=%s", task_id)
        return future

    def cancel(self, task_id: str) -> Task:
        """Store CANCELED now and stop the running executor, if any."""
        task = self.storage.transition_task(task_id, State.CANCELED)
        with self._lock:
            control = self._controls.get(task_id)
        if control is not None:
            control.request_cancel()
        logger.info(
            "scheduler event=canceled task_id=%s in_flight=%s", task_id, control is not None
        )
        return task

    def pause(self, task_id: str) -> None:
        task = self._require_task(task_id)
        if task.state not in (State.INITIALIZING, State.RUNNING):
            raise FailedPreconditionError(f"Task in state {task.state} cannot be paused")
        self._require_control(task_id).request_pause()
        logger.info("scheduler event=pause_requested task_id=%s", task_id)

    def resume(self, task_id: str) -> None:
        task = self._require_task(task_id)
        with self._lock:
            control = self._controls.get(task_id)
        if control is None or (task.state is not State.PAUSED and not control.pause_requested):
            raise FailedPreconditionError(f"Task in state {task.state} is not paused")
        control.request_resume()
        logger.info("scheduler event=resume_requested task_id=%s", task_id)

    def wait(self, task_id: str, timeout_s: float | None = None) -> State:
        """Block until the task's worker finishes; return the stored state."""
        with self._lock:
            future = self._futures.get(task_id)
        if future is not None:
            try:
                future.result(timeout=timeout_s)
            except FutureTimeoutError:
                pass
        task = self.storage.get_task(task_id)
        return task.state if task is not None else State.UNKNOWN

    def recover(self) -> None:
        """Resubmit QUEUED tasks and fail tasks whose worker no longer exists."""
        for task_id in self.storage.list_task_ids(ORPHANED_STATES):
            drive_to_system_error(self.storage, task_id, reason="worker lost before completion")
        queued = self.storage.list_task_ids([State.QUEUED])
        for task_id in queued:
            self.submit(task_id)
        logger.info("scheduler event=recovered resubmitted=%s", len(queued))

    def shutdown(self, *, wait: bool = True) -> None:
        # Not-yet-started work stays QUEUED in storage and is resubmitted by recover().
        # In-flight tasks stop at their executor and are failed by the next recover().
        with self._lock:
            controls = list(self._controls.values())
        for control in controls:
            control.request_cancel()
        self._pool.shutdown(wait=wait, cancel_futures=True)
        logger.info("scheduler event=shutdown")

    def _run(self, task_id: str, control: TaskControl) -> State:
        try:
            return self.runner.run_task(task_id, control)
        except Exception as exc:  # noqa: BLE001
            logger.exception("scheduler event=worker_failed task_id=%s", task_id)
            try:
                return drive_to_system_error(self.storage, task_id, reason=str(exc))
            except TaskServiceError:
                logger.exception("scheduler event=recovery_failed task_id=%s", task_id)
                return State.SYSTEM_ERROR
        finally:
            with self._lock:
                self._controls.pop(task_id, None)

    def _forget_future(self, task_id: str) -> None:
        with self._lock:
            self._futures.pop(task_id, None)

    def _require_task(self, task_id: str) -> Task:
        task = self.storage.get_task(task_id)
        if task is None:
            raise NotFoundError(f"Task {task_id} not found")
        return task

    def _require_control(self, task_id: str) -> TaskControl:
        with self._lock:
            control = self._controls.get(task_id)
        if control is None:
            raise FailedPreconditionError(f"Task {task_id} is not executing on this server")
        return control
