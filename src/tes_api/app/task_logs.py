"""Append-only task log bookkeeping: one TaskLog per attempt.

An attempt is opened with a start time, receives one ExecutorLog per executor
as each finishes, and is sealed with an end time and the flattened output
file list. Sealed attempts are never modified again.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from pathlib import Path

from tes_api.storage.base import TaskStorage

from .errors import ObjectStoreError
from .models import ExecutorLog, FileType, OutputFileLog, TaskLog, TaskParameter
from .object_store import ObjectStore
from .workspace import TaskWorkspace

logger = logging.getLogger(__name__)


def utc_now_rfc3339() -> str:
    return datetime.now(tz=UTC).isoformat()


class LogAggregator:
    def __init__(self, *, storage: TaskStorage, object_store: ObjectStore) -> None:
        self.storage = storage
        self.object_store = object_store

    def open_attempt(self, task_id: str, metadata: dict[str, str] | None = None) -> int:
        log = TaskLog(
            logs=[],
            metadata=dict(metadata or {}),
            start_time=utc_now_rfc3339(),
            end_time="",
            outputs=[],
        )
        attempt = self.storage.append_task_log(task_id, log)
        logger.info("task_log event=opened task_id=%s attempt=%s", task_id, attempt)
        return attempt

    def record_executor(self, task_id: str, attempt: int, log: ExecutorLog) -> None:
        self.storage.append_executor_log(task_id, attempt, log)

    def collect_outputs(
        self,
        outputs: list[TaskParameter],
        workspace: TaskWorkspace,
        *,
        strict: bool,
    ) -> list[OutputFileLog]:
        """Upload declared outputs, one OutputFileLog per physical file.

        With `strict`, a missing output or failed upload raises ObjectStoreError;
        otherwise it is logged and skipped.
        """
        collected: list[OutputFileLog] = []
        for param in outputs:
            source = workspace.host_path(param.path)
            try:
                if param.type is FileType.DIRECTORY:
                    collected.extend(self._upload_directory(param, source))
                else:
                    collected.append(self._upload_file(source, url=param.url, path=param.path))
            except ObjectStoreError:
                if strict:
                    raise
                logger.warning(
                    "task_log event=output_skipped path=%s url=%s", param.path, param.url
                )
        return collected

    def finalize_attempt(
        self,
        task_id: str,
        attempt: int,
        *,
        outputs: list[OutputFileLog],
        metadata: dict[str, str] | None = None,
    ) -> None:
        self.storage.finalize_task_log(
            task_id,
            attempt,
            end_time=utc_now_rfc3339(),
            outputs=outputs,
            metadata=metadata,
        )
        logger.info(
            "task_log event=sealed task_id=%s attempt=%s outputs=%s",
            task_id,
            attempt,
            len(outputs),
        )

    def _upload_file(self, source: Path, *, url: str, path: str) -> OutputFileLog:
        if not source.is_file():
            raise ObjectStoreError(f"Output file not found: {path}")
        size = source.stat().st_size
        resolved_url = self.object_store.put(source, url)
        return OutputFileLog(url=resolved_url, path=path, size_bytes=size)

    def _upload_directory(self, param: TaskParameter, source: Path) -> list[OutputFileLog]:
        if not source.is_dir():
            raise ObjectStoreError(f"Output directory not found: {param.path}")
        base_url = param.url.rstrip("/")
        base_path = param.path.rstrip("/")
        entries: list[OutputFileLog] = []
        for file_path in sorted(item for item in source.rglob("*") if item.is_file()):
            relative = file_path.relative_to(source).as_posix()
            entries.append(
                self._upload_file(
                    file_path,
                    url=f"{base_url}/{relative}",
                    path=f"{base_path}/{relative}",
                )
            )
        return entries
