"""FastAPI application wiring for the task execution service.

Terms used in this file:
- FastAPI app: the main web application object.
- Route/path operation: a function exposed over HTTP (for example, GET /v1/tasks).
- response_model: Pydantic model used to validate/shape API responses.
- app.state: shared runtime objects (storage, scheduler, page token codec).
- lifespan: startup/shutdown hook; recovers queued work and stops workers.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from .app.errors import NotFoundError, TaskServiceError
from .app.executor import ExecutorRunner
from .app.models import (
    CancelTaskResponse,
    CreateTaskResponse,
    ListTasksResponse,
    ServiceInfo,
    Task,
)
from .app.object_store import ObjectStore, build_default_object_store
from .app.pagination import PageTokenCodec, paginate
from .app.sandbox import DockerSandbox, LocalSandbox, Sandbox
from .app.scheduler import TaskScheduler
from .app.validation import validate_new_task
from .app.views import parse_view, project_task
from .config.settings import Settings, get_settings
from .logging_setup import configure_logging
from .storage.base import TaskStorage
from .storage.memory import InMemoryTaskStorage
from .storage.postgres import PostgresTaskStorage

logger = logging.getLogger(__name__)


def create_app(
    *,
    storage: TaskStorage | None = None,
    settings_override: Settings | None = None,
    sandbox: Sandbox | None = None,
    object_store: ObjectStore | None = None,
) -> FastAPI:
    """Application factory.

    Collaborators can be injected so tests get a fresh, isolated app.
    """
    settings = settings_override or get_settings()
    configure_logging(settings.log_level)

    task_storage = storage or _build_storage(settings)
    task_object_store = object_store or build_default_object_store(
        http_timeout_s=settings.http_fetch_timeout_s
    )
    runner = ExecutorRunner(
        storage=task_storage,
        sandbox=sandbox or _build_sandbox(settings),
        object_store=task_object_store,
        work_dir=settings.work_dir,
        system_error_retries=settings.system_error_retries,
        keep_workspaces=settings.keep_workspaces,
        poll_interval_s=settings.poll_interval_s,
    )
    scheduler = TaskScheduler(
        storage=task_storage, runner=runner, max_workers=settings.max_workers
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        app.state.scheduler.recover()
        yield
        app.state.scheduler.shutdown()

    app = FastAPI(title=settings.service_name, version="0.1.0", lifespan=lifespan)
    app.state.settings = settings
    app.state.storage = task_storage
    app.state.object_store = task_object_store
    app.state.scheduler = scheduler
    app.state.page_tokens = PageTokenCodec(settings.page_token_secret or None)

    @app.exception_handler(TaskServiceError)
    async def handle_service_error(_: Request, exc: TaskServiceError) -> JSONResponse:
        return JSONResponse(status_code=exc.status_code, content={"detail": str(exc)})

    # Malformed bodies and query parameters are InvalidArgument, not 422.
    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(_: Request, exc: RequestValidationError) -> JSONResponse:
        reasons = [
            f"{'.'.join(str(part) for part in error.get('loc', ()))}: {error.get('msg', '')}"
            for error in exc.errors()
        ]
        return JSONResponse(
            status_code=400, content={"detail": "Invalid request: " + "; ".join(reasons)}
        )

    @app.get("/health")
    @app.get("/healthz")
    @app.get("/live")
    def health() -> dict[str, str]:
        return {"status": "ok"}

    # Declared before /v1/tasks/{task_id} so "service-info" is not read as an id.
    @app.get("/v1/tasks/service-info", response_model=ServiceInfo)
    def get_service_info() -> ServiceInfo:
        return ServiceInfo(
            name=settings.service_name,
            doc=settings.service_doc,
            storage=list(settings.storage_locations),
        )

    @app.post("/v1/tasks", response_model=CreateTaskResponse)
    def create_task(payload: Task) -> CreateTaskResponse:
        task = validate_new_task(
            payload,
            supported_schemes=app.state.object_store.schemes,
            writable_schemes=app.state.object_store.writable_schemes,
            max_contents_bytes=settings.max_input_contents_bytes,
        )
        task_id = app.state.storage.create_task(task)
        logger.info(
            "task_api event=created task_id=%s project=%s executors=%s",
            task_id,
            task.project,
            len(task.executors),
        )
        app.state.scheduler.submit(task_id)
        return CreateTaskResponse(id=task_id)

    # Unset fields are omitted, so a MINIMAL task renders as just id and state.
    @app.get("/v1/tasks", response_model=ListTasksResponse, response_model_exclude_unset=True)
    def list_tasks(
        project: str = "",
        name_prefix: str = "",
        page_size: int | None = None,
        page_token: str = "",
        view: str | None = None,
    ) -> ListTasksResponse:
        task_view = parse_view(view)
        tasks, next_page_token = paginate(
            app.state.storage,
            app.state.page_tokens,
            project=project,
            name_prefix=name_prefix,
            page_size=page_size,
            page_token=page_token,
        )
        return ListTasksResponse(
            tasks=[project_task(task, task_view) for task in tasks],
            next_page_token=next_page_token,
        )

    @app.get("/v1/tasks/{task_id}", response_model=Task, response_model_exclude_unset=True)
    def get_task(task_id: str, view: str | None = None) -> Task:
        task_view = parse_view(view)
        task = app.state.storage.get_task(task_id)
        if task is None:
            raise NotFoundError(f"Task {task_id} not found")
        return project_task(task, task_view)

    @app.post("/v1/tasks/{task_id}:cancel", response_model=CancelTaskResponse)
    def cancel_task(task_id: str) -> CancelTaskResponse:
        app.state.scheduler.cancel(task_id)
        return CancelTaskResponse()

    @app.post("/v1/tasks/{task_id}:pause")
    def pause_task(task_id: str) -> dict[str, str]:
        app.state.scheduler.pause(task_id)
        return {}

    @app.post("/v1/tasks/{task_id}:resume")
    def resume_task(task_id: str) -> dict[str, str]:
        app.state.scheduler.resume(task_id)
        return {}

    return app


def _build_storage(settings: Settings) -> TaskStorage:
    """Pick the storage backend; fail fast on incomplete configuration."""
    if settings.storage_backend == "postgres":
        if not settings.database_url.strip():
            raise RuntimeError("TES_DATABASE_URL is required when TES_STORAGE_BACKEND=postgres.")
        storage: TaskStorage = PostgresTaskStorage(database_url=settings.database_url.strip())
    else:
        storage = InMemoryTaskStorage()
    storage.migrate()
    return storage


def _build_sandbox(settings: Settings) -> Sandbox:
    options = {
        "tail_bytes": settings.executor_log_tail_bytes,
        "poll_interval_s": settings.poll_interval_s,
    }
    if settings.sandbox_backend == "docker":
        return DockerSandbox(docker_binary=settings.docker_binary, **options)
    return LocalSandbox(**options)


# Module-level app for `uvicorn tes_api.main:app`.
app = create_app()
