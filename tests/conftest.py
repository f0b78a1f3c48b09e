from __future__ import annotations

from collections.abc import Iterator
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

from fakes import RecordingObjectStore, ScriptedSandbox
from tes_api.app.executor import ExecutorRunner
from tes_api.app.object_store import build_default_object_store
from tes_api.config.settings import Settings
from tes_api.main import create_app
from tes_api.storage.memory import InMemoryTaskStorage


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return Settings(
        _env_file=None,
        work_dir=tmp_path / "work",
        page_token_secret="test-secret",
        poll_interval_s=0.01,
        max_workers=2,
    )


@pytest.fixture
def storage() -> InMemoryTaskStorage:
    return InMemoryTaskStorage()


@pytest.fixture
def sandbox() -> Iterator[ScriptedSandbox]:
    fake = ScriptedSandbox()
    yield fake
    fake.release()


@pytest.fixture
def object_store() -> RecordingObjectStore:
    return RecordingObjectStore(build_default_object_store())


@pytest.fixture
def runner(
    storage: InMemoryTaskStorage,
    sandbox: ScriptedSandbox,
    object_store: RecordingObjectStore,
    settings: Settings,
) -> ExecutorRunner:
    return ExecutorRunner(
        storage=storage,
        sandbox=sandbox,
        object_store=object_store,
        work_dir=settings.work_dir,
        poll_interval_s=settings.poll_interval_s,
    )


@pytest.fixture
def client(
    storage: InMemoryTaskStorage,
    sandbox: ScriptedSandbox,
    object_store: RecordingObjectStore,
    settings: Settings,
) -> Iterator[TestClient]:
    app = create_app(
        storage=storage,
        settings_override=settings,
        sandbox=sandbox,
        object_store=object_store,
    )
    with TestClient(app) as test_client:
        yield test_client
        sandbox.release()

