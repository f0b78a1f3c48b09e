"""Synchronous checks on a submitted task, run before anything is persisted."""

from __future__ import annotations

from .errors import InvalidArgumentError
from .models import FileType, Task, TaskParameter
from .object_store import url_scheme
from .workspace import is_safe_container_path

DEFAULT_MAX_INPUT_CONTENTS_BYTES = 1024 * 1024


def validate_new_task(
    task: Task,
    *,
    supported_schemes: frozenset[str],
    writable_schemes: frozenset[str] | None = None,
    max_contents_bytes: int = DEFAULT_MAX_INPUT_CONTENTS_BYTES,
) -> Task:
    """Return the normalized task to store, or raise InvalidArgumentError listing every problem."""
    if writable_schemes is None:
        writable_schemes = supported_schemes
    reasons: list[str] = []

    if not task.executors:
        reasons.append("executors: at least one executor is required")
    for index, executor in enumerate(task.executors):
        prefix = f"executors[{index}]"
        if not executor.image_name.strip():
            reasons.append(f"{prefix}.image_name is required")
        if not executor.cmd:
            reasons.append(f"{prefix}.cmd is required")
        for field_name in ("workdir", "stdin", "stdout", "stderr"):
            value = getattr(executor, field_name)
            if value and not is_safe_container_path(value):
                reasons.append(f"{prefix}.{field_name} must be an absolute container path")
        for port_index, port in enumerate(executor.ports):
            if port.container == 0:
                reasons.append(f"{prefix}.ports[{port_index}].container is required")

    normalized_inputs: list[TaskParameter] = []
    for index, param in enumerate(task.inputs):
        prefix = f"inputs[{index}]"
        _check_path(param, prefix, reasons)
        if param.contents:
            if param.type is FileType.DIRECTORY:
                reasons.append(f"{prefix}.contents is only allowed for FILE inputs")
            if len(param.contents.encode("utf-8")) > max_contents_bytes:
                reasons.append(f"{prefix}.contents exceeds {max_contents_bytes} bytes")
            # Inline contents are authoritative; drop the url so it is never used.
            normalized_inputs.append(param.model_copy(update={"url": ""}))
            continue
        if not param.url:
            reasons.append(f"{prefix}: either url or contents is required")
        else:
            _check_scheme(param.url, prefix, supported_schemes, reasons)
        normalized_inputs.append(param.model_copy())

    for index, param in enumerate(task.outputs):
        prefix = f"outputs[{index}]"
        _check_path(param, prefix, reasons)
        if param.contents:
            reasons.append(f"{prefix}.contents is not allowed for outputs")
        if not param.url:
            reasons.append(f"{prefix}.url is required")
        else:
            _check_scheme(
                param.url, prefix, supported_schemes, reasons, writable_schemes=writable_schemes
            )

    for index, volume in enumerate(task.volumes):
        if not is_safe_container_path(volume):
            reasons.append(f"volumes[{index}] must be an absolute container path")

    if reasons:
        raise InvalidArgumentError("Invalid task: " + "; ".join(reasons))

    return task.model_copy(
        update={"id": "", "logs": [], "inputs": normalized_inputs},
        deep=True,
    )


def _check_path(param: TaskParameter, prefix: str, reasons: list[str]) -> None:
    if not param.path:
        reasons.append(f"{prefix}.path is required")
    elif not is_safe_container_path(param.path):
        reasons.append(f"{prefix}.path must be an absolute container path")


def _check_scheme(
    url: str,
    prefix: str,
    supported_schemes: frozenset[str],
    reasons: list[str],
    *,
    writable_schemes: frozenset[str] | None = None,
) -> None:
    scheme = url_scheme(url)
    if scheme not in supported_schemes:
        reasons.append(f"{prefix}.url uses unsupported scheme {scheme or '(none)'!r}")
    elif writable_schemes is not None and scheme not in writable_schemes:
        reasons.append(f"{prefix}.url uses read-only scheme {scheme!r}")
