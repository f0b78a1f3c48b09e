"""Error taxonomy shared by the API, storage and execution layers."""

from __future__ import annotations


class TaskServiceError(Exception):
    """Base class. `status_code` is the HTTP status used at the API boundary."""

    status_code = 500


class InvalidArgumentError(TaskServiceError):
    status_code = 400


class NotFoundError(TaskServiceError):
    status_code = 404


class FailedPreconditionError(TaskServiceError):
    status_code = 409


class InvalidTransitionError(FailedPreconditionError):
    """Requested state change is not in the transition table."""

    def __init__(self, current: str, target: str, message: str | None = None) -> None:
        self.current = current
        self.target = target
        super().__init__(message or f"Invalid state transition {current} -> {target}")


class SystemFailureError(TaskServiceError):
    """Infrastructure fault. Surfaces as task state SYSTEM_ERROR, never as an RPC error."""


class SandboxError(SystemFailureError):
    pass


class ObjectStoreError(SystemFailureError):
    pass
