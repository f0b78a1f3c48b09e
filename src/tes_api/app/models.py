"""Pydantic models for the task execution wire contract.

Terms used in this file:
- Task: one submitted batch job (inputs, outputs, ordered executors) plus its logs.
- Executor: one containerized command; a task runs its executors in order.
- Attempt: one full pass over the executors, recorded as one TaskLog.
- View: how much of a Task a read request returns (MINIMAL, BASIC, FULL).
"""

from __future__ import annotations

from enum import StrEnum

from pydantic import BaseModel, Field


class State(StrEnum):
    """Task lifecycle states."""

    UNKNOWN = "UNKNOWN"
    QUEUED = "QUEUED"
    INITIALIZING = "INITIALIZING"
    RUNNING = "RUNNING"
    PAUSED = "PAUSED"
    COMPLETE = "COMPLETE"
    ERROR = "ERROR"
    SYSTEM_ERROR = "SYSTEM_ERROR"
    CANCELED = "CANCELED"


class FileType(StrEnum):
    FILE = "FILE"
    DIRECTORY = "DIRECTORY"


class TaskView(StrEnum):
    """Field projection applied to Task responses."""

    MINIMAL = "MINIMAL"
    BASIC = "BASIC"
    FULL = "FULL"


class TaskParameter(BaseModel):
    """Input or output file binding.

    When `contents` is non-empty it is authoritative and `url` is ignored.
    """

    name: str = ""
    description: str = ""
    # Long-term storage location, e.g. file:///data/in.txt or s3://bucket/key.
    url: str = ""
    # Absolute path inside the container.
    path: str = ""
    type: FileType = FileType.FILE
    contents: str = ""


class Ports(BaseModel):
    """Port binding between container and host."""

    container: int = Field(default=0, ge=0, le=65535)
    # 0 lets the sandbox pick a host port.
    host: int = Field(default=0, ge=0, le=65535)


class Executor(BaseModel):
    """One command step of a task."""

    image_name: str = ""
    cmd: list[str] = Field(default_factory=list)
    workdir: str = ""
    # Redirection paths inside the container.
    stdin: str = ""
    stdout: str = ""
    stderr: str = ""
    ports: list[Ports] = Field(default_factory=list)
    environ: dict[str, str] = Field(default_factory=dict)


class Resources(BaseModel):
    """Placement hints. Not enforced by the service."""

    cpu_cores: int = Field(default=0, ge=0)
    preemptible: bool = False
    ram_gb: float = Field(default=0.0, ge=0.0)
    size_gb: float = Field(default=0.0, ge=0.0)
    zones: list[str] = Field(default_factory=list)


class ExecutorLog(BaseModel):
    """Outcome of one executor within one attempt."""

    start_time: str = ""
    end_time: str = ""
    # Tails only; the full streams go to the executor's redirection files.
    stdout: str = ""
    stderr: str = ""
    exit_code: int = 0
    host_ip: str = ""
    ports: list[Ports] = Field(default_factory=list)


class OutputFileLog(BaseModel):
    """One uploaded output file. Directory outputs produce one entry per file."""

    url: str = ""
    path: str = ""
    size_bytes: int = 0


class TaskLog(BaseModel):
    """One execution attempt."""

    logs: list[ExecutorLog] = Field(default_factory=list)
    metadata: dict[str, str] = Field(default_factory=dict)
    start_time: str = ""
    end_time: str = ""
    outputs: list[OutputFileLog] = Field(default_factory=list)


class Task(BaseModel):
    """Canonical task shape used for requests, storage and responses."""

    # Output only: assigned by the server.
    id: str = ""
    state: State = State.UNKNOWN
    name: str = ""
    project: str = ""
    description: str = ""
    inputs: list[TaskParameter] = Field(default_factory=list)
    outputs: list[TaskParameter] = Field(default_factory=list)
    resources: Resources | None = None
    executors: list[Executor] = Field(default_factory=list)
    volumes: list[str] = Field(default_factory=list)
    tags: dict[str, str] = Field(default_factory=dict)
    # Output only: one entry per attempt, append-only.
    logs: list[TaskLog] = Field(default_factory=list)


class CreateTaskResponse(BaseModel):
    id: str


class ListTasksResponse(BaseModel):
    tasks: list[Task] = Field(default_factory=list)
    # Empty when there are no further pages.
    next_page_token: str = ""


class CancelTaskResponse(BaseModel):
    pass


class ServiceInfo(BaseModel):
    name: str = ""
    doc: str = ""
    storage: list[str] = Field(default_factory=list)
