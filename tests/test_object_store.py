from __future__ import annotations

from pathlib import Path

import pytest

from fakes import RecordingObjectStore
from tes_api.app.errors import InvalidArgumentError, ObjectStoreError
from tes_api.app.models import FileType, TaskParameter
from tes_api.app.object_store import (
    HttpObjectStore,
    LocalObjectStore,
    ObjectStoreRouter,
    build_default_object_store,
    stage_inputs,
    url_scheme,
)
from tes_api.app.workspace import TaskWorkspace, is_safe_container_path


@pytest.fixture
def workspace(tmp_path: Path) -> TaskWorkspace:
    return TaskWorkspace.create(tmp_path / "work", "task-1", 0)


def test_workspace_layout_is_per_task_and_attempt(tmp_path: Path) -> None:
    workspace = TaskWorkspace.create(tmp_path, "task-1", 2)

    assert workspace.root == (tmp_path / "task-1" / "attempt-2").resolve()
    assert workspace.root.is_dir()
    assert workspace.host_path("/data/in.txt") == workspace.root / "data" / "in.txt"


@pytest.mark.parametrize("path", ["relative/in.txt", "/data/../../escape", ""])
def test_workspace_refuses_paths_outside_root(workspace: TaskWorkspace, path: str) -> None:
    assert not is_safe_container_path(path)
    with pytest.raises(InvalidArgumentError):
        workspace.host_path(path)


def test_workspace_remove(workspace: TaskWorkspace) -> None:
    workspace.host_path("/a/b.txt").parent.mkdir(parents=True)

    workspace.remove()

    assert not workspace.root.exists()


@pytest.mark.parametrize(
    ("url", "scheme"),
    [
        ("file:///data/a.txt", "file"),
        ("/data/a.txt", "file"),
        ("HTTPS://example.org/a", "https"),
        ("s3://bucket/key", "s3"),
        ("no-scheme", ""),
    ],
)
def test_url_scheme(url: str, scheme: str) -> None:
    assert url_scheme(url) == scheme


def test_local_store_copies_files_and_directories(tmp_path: Path) -> None:
    store = LocalObjectStore()
    source_dir = tmp_path / "source"
    (source_dir / "nested").mkdir(parents=True)
    (source_dir / "a.txt").write_text("a", encoding="utf-8")
    (source_dir / "nested" / "b.txt").write_text("bb", encoding="utf-8")

    store.get((source_dir / "a.txt").as_uri(), tmp_path / "copy" / "a.txt", FileType.FILE)
    store.get(str(source_dir), tmp_path / "tree", FileType.DIRECTORY)
    uploaded = store.put(source_dir / "a.txt", (tmp_path / "results" / "a.txt").as_uri())

    assert (tmp_path / "copy" / "a.txt").read_text(encoding="utf-8") == "a"
    assert (tmp_path / "tree" / "nested" / "b.txt").read_text(encoding="utf-8") == "bb"
    assert uploaded == (tmp_path / "results" / "a.txt").as_uri()
    assert (tmp_path / "results" / "a.txt").read_text(encoding="utf-8") == "a"


def test_local_store_missing_source_is_object_store_error(tmp_path: Path) -> None:
    with pytest.raises(ObjectStoreError, match="Failed to fetch"):
        LocalObjectStore().get(str(tmp_path / "missing"), tmp_path / "dest", FileType.FILE)


def test_local_store_rejects_remote_hosts(tmp_path: Path) -> None:
    with pytest.raises(ObjectStoreError, match="Remote file hosts"):
        LocalObjectStore().get("file://otherhost/data", tmp_path / "dest", FileType.FILE)


def test_http_store_is_read_only(tmp_path: Path) -> None:
    store = HttpObjectStore(timeout_s=1.0)

    with pytest.raises(ObjectStoreError, match="read-only"):
        store.put(tmp_path / "a.txt", "https://example.org/a.txt")
    with pytest.raises(ObjectStoreError, match="Directory inputs"):
        store.get("https://example.org/dir", tmp_path / "dir", FileType.DIRECTORY)


def test_router_dispatches_by_scheme(tmp_path: Path) -> None:
    router = build_default_object_store()
    source = tmp_path / "a.txt"
    source.write_text("a", encoding="utf-8")

    router.get(source.as_uri(), tmp_path / "b.txt", FileType.FILE)

    assert router.schemes == frozenset({"file", "http", "https"})
    assert router.writable_schemes == frozenset({"file"})
    assert (tmp_path / "b.txt").read_text(encoding="utf-8") == "a"
    with pytest.raises(ObjectStoreError, match="No object store configured for scheme 's3'"):
        router.get("s3://bucket/key", tmp_path / "c.txt", FileType.FILE)


def test_stage_inputs_writes_contents_without_fetching(
    tmp_path: Path, workspace: TaskWorkspace
) -> None:
    source = tmp_path / "remote.txt"
    source.write_text("from url", encoding="utf-8")
    store = RecordingObjectStore(ObjectStoreRouter([LocalObjectStore()]))
    inputs = [
        TaskParameter(path="/in/inline.txt", url=source.as_uri(), contents="inline"),
        TaskParameter(path="/in/fetched.txt", url=source.as_uri()),
    ]

    stage_inputs(inputs, workspace, store)

    assert workspace.host_path("/in/inline.txt").read_text(encoding="utf-8") == "inline"
    assert workspace.host_path("/in/fetched.txt").read_text(encoding="utf-8") == "from url"
    assert store.gets == [source.as_uri()]
