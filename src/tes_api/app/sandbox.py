"""Sandboxes that run a single executor and report its outcome.

`LocalSandbox` runs the command as a host process inside the task workspace.
`DockerSandbox` runs it in a container through the docker CLI with the
workspace bind-mounted at the declared container paths.
"""

from __future__ import annotations

import logging
import os
import socket
import subprocess
import threading
import time
from collections import deque
from collections.abc import Callable
from contextlib import ExitStack
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath
from typing import IO, Protocol

from .errors import SandboxError
from .models import Executor, FileType, Ports, Task
from .workspace import TaskWorkspace

logger = logging.getLogger(__name__)

# Exit code used by shells when the command cannot be found.
COMMAND_NOT_FOUND_EXIT_CODE = 127
# `docker run` exit code for failures of the daemon itself (pull errors, bad flags).
DOCKER_DAEMON_EXIT_CODE = 125
READ_CHUNK_BYTES = 64 * 1024


@dataclass(frozen=True)
class SandboxContext:
    task_id: str
    index: int
    workspace: TaskWorkspace
    cancel_event: threading.Event
    mounts: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class ExecutionResult:
    exit_code: int
    stdout: str = ""
    stderr: str = ""
    host_ip: str = ""
    ports: list[Ports] = field(default_factory=list)


class Sandbox(Protocol):
    name: str

    def run(self, executor: Executor, *, context: SandboxContext) -> ExecutionResult: ...


def container_mounts(task: Task) -> list[str]:
    """Container directories that must be shared between executors."""
    candidates: list[str] = []
    for param in [*task.inputs, *task.outputs]:
        path = PurePosixPath(param.path)
        if param.type is FileType.DIRECTORY or path.parent == PurePosixPath("/"):
            candidates.append(str(path))
        else:
            candidates.append(str(path.parent))
    candidates.extend(task.volumes)

    mounts: list[str] = []
    for candidate in sorted(set(candidates)):
        if any(candidate.startswith(existing.rstrip("/") + "/") for existing in mounts):
            continue
        mounts.append(candidate)
    return mounts


def tail_text(data: bytes, limit: int) -> str:
    if limit > 0 and len(data) > limit:
        data = data[-limit:]
    return data.decode("utf-8", errors="replace")


def local_host_ip() -> str:
    try:
        return socket.gethostbyname(socket.gethostname())
    except OSError:
        return "127.0.0.1"


class _PipeTail:
    """Drains a pipe on a background thread, keeping only its last `limit` bytes."""

    def __init__(self, stream: IO[bytes], limit: int) -> None:
        self._stream = stream
        self._limit = limit
        self._chunks: deque[bytes] = deque()
        self._size = 0
        self._thread = threading.Thread(target=self._drain, daemon=True)
        self._thread.start()

    def _drain(self) -> None:
        with self._stream:
            while True:
                chunk = self._stream.read(READ_CHUNK_BYTES)
                if not chunk:
                    break
                self._chunks.append(chunk)
                self._size += len(chunk)
                while len(self._chunks) > 1 and self._size - len(self._chunks[0]) >= self._limit:
                    self._size -= len(self._chunks.popleft())

    def result(self) -> bytes:
        self._thread.join()
        return b"".join(self._chunks)


def read_file_tail(path: Path, limit: int) -> bytes:
    with path.open("rb") as fh:
        fh.seek(0, os.SEEK_END)
        fh.seek(max(0, fh.tell() - limit))
        return fh.read()


class _ProcessSandbox:
    """Shared subprocess handling: stdio redirection, polling, forced termination.

    Redirected streams go straight to their workspace file; the others are
    drained through `_PipeTail`. Either way only `tail_bytes` per stream is
    held in memory.
    """

    name = "process"

    def __init__(
        self,
        *,
        tail_bytes: int = 10240,
        poll_interval_s: float = 0.2,
        kill_grace_s: float = 5.0,
    ) -> None:
        self.tail_bytes = tail_bytes
        self.poll_interval_s = poll_interval_s
        self.kill_grace_s = kill_grace_s

    def _run_process(
        self,
        argv: list[str],
        *,
        executor: Executor,
        context: SandboxContext,
        cwd: Path | None,
        env: dict[str, str] | None,
        on_poll: Callable[[subprocess.Popen[bytes]], None] | None = None,
    ) -> tuple[int, bytes, bytes]:
        workspace = context.workspace
        stdout_path = workspace.host_path(executor.stdout) if executor.stdout else None
        stderr_path = workspace.host_path(executor.stderr) if executor.stderr else None

        with ExitStack() as stack:
            stdin_handle = None
            if executor.stdin:
                try:
                    stdin_handle = stack.enter_context(
                        workspace.host_path(executor.stdin).open("rb")
                    )
                except OSError as exc:
                    raise SandboxError(f"Cannot open stdin {executor.stdin}: {exc}") from exc
            stdout_handle = self._open_redirection(stack, executor.stdout, stdout_path)
            if stderr_path is not None and stderr_path == stdout_path:
                stderr_handle = stdout_handle
            else:
                stderr_handle = self._open_redirection(stack, executor.stderr, stderr_path)

            try:
                proc = subprocess.Popen(  # noqa: S603
                    argv,
                    cwd=str(cwd) if cwd is not None else None,
                    env=env,
                    stdin=stdin_handle if stdin_handle is not None else subprocess.DEVNULL,
                    stdout=stdout_handle if stdout_handle is not None else subprocess.PIPE,
                    stderr=stderr_handle if stderr_handle is not None else subprocess.PIPE,
                )
            except FileNotFoundError:
                raise
            except OSError as exc:
                raise SandboxError(f"Failed to start {argv[0]!r}: {exc}") from exc

            stdout_tail = _PipeTail(proc.stdout, self.tail_bytes) if proc.stdout else None
            stderr_tail = _PipeTail(proc.stderr, self.tail_bytes) if proc.stderr else None
            self._wait(proc, context, on_poll)
            stdout = stdout_tail.result() if stdout_tail is not None else b""
            stderr = stderr_tail.result() if stderr_tail is not None else b""

        if stdout_path is not None:
            stdout = read_file_tail(stdout_path, self.tail_bytes)
        if stderr_path is not None:
            stderr = read_file_tail(stderr_path, self.tail_bytes)
        return proc.returncode, stdout, stderr

    def _wait(
        self,
        proc: subprocess.Popen[bytes],
        context: SandboxContext,
        on_poll: Callable[[subprocess.Popen[bytes]], None] | None,
    ) -> None:
        terminated_at: float | None = None
        while True:
            try:
                proc.wait(timeout=self.poll_interval_s)
                return
            except subprocess.TimeoutExpired:
                if on_poll is not None:
                    on_poll(proc)
                if not context.cancel_event.is_set():
                    continue
                if terminated_at is None:
                    logger.info(
                        "sandbox event=terminate task_id=%s executor=%s pid=%s",
                        context.task_id,
                        context.index,
                        proc.pid,
                    )
                    self._on_cancel(context)
                    proc.terminate()
                    terminated_at = time.monotonic()
                elif time.monotonic() - terminated_at > self.kill_grace_s:
                    proc.kill()

    def _on_cancel(self, context: SandboxContext) -> None:
        return None

    @staticmethod
    def _open_redirection(
        stack: ExitStack, container_path: str, target: Path | None
    ) -> IO[bytes] | None:
        if target is None:
            return None
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            return stack.enter_context(target.open("wb"))
        except OSError as exc:
            raise SandboxError(f"Cannot write redirection {container_path}: {exc}") from exc

    @staticmethod
    def _write_stream(workspace: TaskWorkspace, container_path: str, data: bytes) -> None:
        if not container_path:
            return
        target = workspace.host_path(container_path)
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(data)
        except OSError as exc:
            raise SandboxError(f"Cannot write redirection {container_path}: {exc}") from exc


class LocalSandbox(_ProcessSandbox):
    """Runs commands directly on the host. `image_name` is recorded but not used."""

    name = "local"

    def run(self, executor: Executor, *, context: SandboxContext) -> ExecutionResult:
        workspace = context.workspace
        cwd = workspace.host_path(executor.workdir) if executor.workdir else workspace.root
        for mount in context.mounts:
            workspace.host_path(mount).mkdir(parents=True, exist_ok=True)
        try:
            cwd.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise SandboxError(f"Cannot create workdir {executor.workdir}: {exc}") from exc

        env = {"PATH": os.environ.get("PATH", os.defpath), **executor.environ}
        logger.debug(
            "sandbox event=start backend=local task_id=%s executor=%s image=%s",
            context.task_id,
            context.index,
            executor.image_name,
        )
        try:
            exit_code, stdout, stderr = self._run_process(
                list(executor.cmd),
                executor=executor,
                context=context,
                cwd=cwd,
                env=env,
            )
        except FileNotFoundError as exc:
            message = f"{executor.cmd[0]}: command not found ({exc})\n".encode()
            self._write_stream(workspace, executor.stderr, message)
            return ExecutionResult(
                exit_code=COMMAND_NOT_FOUND_EXIT_CODE,
                stderr=tail_text(message, self.tail_bytes),
                host_ip=local_host_ip(),
                ports=self._bound_ports(executor),
            )

        return ExecutionResult(
            exit_code=exit_code,
            stdout=tail_text(stdout, self.tail_bytes),
            stderr=tail_text(stderr, self.tail_bytes),
            host_ip=local_host_ip(),
            ports=self._bound_ports(executor),
        )

    @staticmethod
    def _bound_ports(executor: Executor) -> list[Ports]:
        # Host processes bind the container port directly.
        return [
            Ports(container=port.container, host=port.host or port.container)
            for port in executor.ports
        ]


class DockerSandbox(_ProcessSandbox):
    """Runs each executor with `docker run --rm`."""

    name = "docker"

    def __init__(self, *, docker_binary: str = "docker", **kwargs: float | int) -> None:
        super().__init__(**kwargs)
        self.docker_binary = docker_binary

    def container_name(self, context: SandboxContext) -> str:
        return f"tes-{context.task_id}-{context.index}"

    def build_command(self, executor: Executor, *, context: SandboxContext) -> list[str]:
        argv = [self.docker_binary, "run", "--rm", "--name", self.container_name(context)]
        if executor.stdin:
            argv.append("-i")
        for key, value in sorted(executor.environ.items()):
            argv.extend(["-e", f"{key}={value}"])
        for port in executor.ports:
            binding = f"{port.host}:{port.container}" if port.host else str(port.container)
            argv.extend(["-p", binding])
        for mount in context.mounts:
            argv.extend(["-v", f"{context.workspace.host_path(mount)}:{mount}"])
        if executor.workdir:
            argv.extend(["-w", executor.workdir])
        argv.append(executor.image_name)
        argv.extend(executor.cmd)
        return argv

    def run(self, executor: Executor, *, context: SandboxContext) -> ExecutionResult:
        for mount in context.mounts:
            context.workspace.host_path(mount).mkdir(parents=True, exist_ok=True)
        argv = self.build_command(executor, context=context)
        resolved: dict[int, int] = {
            port.container: port.host for port in executor.ports if port.host
        }
        pending = [port.container for port in executor.ports if not port.host]

        def resolve_ports(proc: subprocess.Popen[bytes]) -> None:
            for container_port in list(pending):
                host_port = self._lookup_host_port(context, container_port)
                if host_port:
                    resolved[container_port] = host_port
                    pending.remove(container_port)

        logger.debug(
            "sandbox event=start backend=docker task_id=%s executor=%s image=%s",
            context.task_id,
            context.index,
            executor.image_name,
        )
        try:
            exit_code, stdout, stderr = self._run_process(
                argv,
                executor=executor,
                context=context,
                cwd=None,
                env=None,
                on_poll=resolve_ports if pending else None,
            )
        except FileNotFoundError as exc:
            raise SandboxError(f"Docker CLI not found: {self.docker_binary}") from exc

        if exit_code == DOCKER_DAEMON_EXIT_CODE:
            raise SandboxError(
                f"docker run failed for image {executor.image_name!r}: "
                f"{tail_text(stderr, self.tail_bytes).strip()}"
            )
        return ExecutionResult(
            exit_code=exit_code,
            stdout=tail_text(stdout, self.tail_bytes),
            stderr=tail_text(stderr, self.tail_bytes),
            host_ip=local_host_ip(),
            ports=[
                Ports(container=port.container, host=resolved.get(port.container, 0))
                for port in executor.ports
            ],
        )

    def _lookup_host_port(self, context: SandboxContext, container_port: int) -> int:
        try:
            completed = subprocess.run(  # noqa: S603
                [self.docker_binary, "port", self.container_name(context), str(container_port)],
                capture_output=True,
                text=True,
                timeout=5.0,
            )
        except (OSError, subprocess.TimeoutExpired):
            return 0
        if completed.returncode != 0:
            return 0
        for line in completed.stdout.splitlines():
            _, _, port = line.strip().rpartition(":")
            if port.isdigit():
                return int(port)
        return 0

    def _on_cancel(self, context: SandboxContext) -> None:
        try:
            subprocess.run(  # noqa: S603
                [self.docker_binary, "kill", self.container_name(context)],
                capture_output=True,
                timeout=10.0,
                check=False,
            )
        except (OSError, subprocess.TimeoutExpired) as exc:
            logger.warning(
                "sandbox event=kill_failed task_id=%s executor=%s error=%s",
                context.task_id,
                context.index,
                exc,
            )
