"""Per-attempt host directory that stands in for the container filesystem."""

from __future__ import annotations

import logging
import shutil
from dataclasses import dataclass
from pathlib import Path, PurePosixPath

from .errors import InvalidArgumentError

logger = logging.getLogger(__name__)


def is_safe_container_path(path: str) -> bool:
    """Absolute POSIX path without `..` segments."""
    pure = PurePosixPath(path)
    return pure.is_absolute() and ".." not in pure.parts


@dataclass(frozen=True)
class TaskWorkspace:
    root: Path

    @classmethod
    def create(cls, base_dir: Path, task_id: str, attempt: int) -> TaskWorkspace:
        root = (base_dir / task_id / f"attempt-{attempt}").resolve()
        root.mkdir(parents=True, exist_ok=True)
        return cls(root=root)

    def host_path(self, container_path: str) -> Path:
        """Map an absolute container path to its location under `root`."""
        if not is_safe_container_path(container_path):
            raise InvalidArgumentError(f"Container path must be absolute: {container_path!r}")
        relative = PurePosixPath(container_path).relative_to("/")
        return self.root.joinpath(*relative.parts)

    def remove(self) -> None:
        shutil.rmtree(self.root, ignore_errors=True)
        logger.debug("workspace event=removed root=%s", self.root)
