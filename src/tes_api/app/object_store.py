"""Object storage adapters used to stage inputs and upload outputs."""

from __future__ import annotations

import logging
import shutil
from pathlib import Path
from typing import Protocol
from urllib import error, parse, request

from .errors import ObjectStoreError
from .models import FileType, TaskParameter
from .workspace import TaskWorkspace

logger = logging.getLogger(__name__)


class ObjectStore(Protocol):
    """Resolves `url` values to bytes and back."""

    schemes: frozenset[str]
    writable_schemes: frozenset[str]

    def get(self, url: str, dest: Path, file_type: FileType) -> None: ...

    def put(self, src: Path, url: str) -> str: ...


def url_scheme(url: str) -> str:
    """Scheme of `url`; bare absolute paths count as `file`."""
    if url.startswith("/"):
        return "file"
    return parse.urlsplit(url).scheme.lower()


class LocalObjectStore:
    """Shared-filesystem storage for `file://` URLs and bare absolute paths."""

    schemes = frozenset({"file"})
    writable_schemes = schemes

    def get(self, url: str, dest: Path, file_type: FileType) -> None:
        source = self._local_path(url)
        dest.parent.mkdir(parents=True, exist_ok=True)
        try:
            if file_type is FileType.DIRECTORY:
                shutil.copytree(source, dest, dirs_exist_ok=True)
            else:
                shutil.copyfile(source, dest)
        except OSError as exc:
            raise ObjectStoreError(f"Failed to fetch {url}: {exc}") from exc

    def put(self, src: Path, url: str) -> str:
        target = self._local_path(url)
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            shutil.copyfile(src, target)
        except OSError as exc:
            raise ObjectStoreError(f"Failed to upload {src} to {url}: {exc}") from exc
        return url

    @staticmethod
    def _local_path(url: str) -> Path:
        if url.startswith("/"):
            return Path(url)
        parts = parse.urlsplit(url)
        if parts.scheme.lower() != "file":
            raise ObjectStoreError(f"Not a file URL: {url}")
        if parts.netloc not in ("", "localhost"):
            raise ObjectStoreError(f"Remote file hosts are not supported: {url}")
        return Path(parse.unquote(parts.path))


class HttpObjectStore:
    """Read-only inputs over HTTP(S); no scheme is writable."""

    schemes = frozenset({"http", "https"})
    writable_schemes: frozenset[str] = frozenset()

    def __init__(self, *, timeout_s: float = 30.0) -> None:
        self.timeout_s = timeout_s

    def get(self, url: str, dest: Path, file_type: FileType) -> None:
        if file_type is FileType.DIRECTORY:
            raise ObjectStoreError(f"Directory inputs are not supported over HTTP: {url}")
        dest.parent.mkdir(parents=True, exist_ok=True)
        try:
            with request.urlopen(url, timeout=self.timeout_s) as response, dest.open("wb") as fh:
                shutil.copyfileobj(response, fh)
        except (error.URLError, OSError) as exc:
            raise ObjectStoreError(f"Failed to fetch {url}: {exc}") from exc

    def put(self, src: Path, url: str) -> str:
        raise ObjectStoreError(f"HTTP storage is read-only: {url}")


class ObjectStoreRouter:
    """Dispatches each URL to the store registered for its scheme."""

    def __init__(self, stores: list[ObjectStore]) -> None:
        self._by_scheme: dict[str, ObjectStore] = {}
        for store in stores:
            for scheme in store.schemes:
                self._by_scheme[scheme] = store
        self.schemes = frozenset(self._by_scheme)
        self.writable_schemes = frozenset(
            scheme
            for scheme, store in self._by_scheme.items()
            if scheme in store.writable_schemes
        )

    def get(self, url: str, dest: Path, file_type: FileType) -> None:
        self._store_for(url).get(url, dest, file_type)

    def put(self, src: Path, url: str) -> str:
        return self._store_for(url).put(src, url)

    def _store_for(self, url: str) -> ObjectStore:
        scheme = url_scheme(url)
        store = self._by_scheme.get(scheme)
        if store is None:
            raise ObjectStoreError(f"No object store configured for scheme {scheme!r}: {url}")
        return store


def build_default_object_store(*, http_timeout_s: float = 30.0) -> ObjectStoreRouter:
    return ObjectStoreRouter([LocalObjectStore(), HttpObjectStore(timeout_s=http_timeout_s)])


def stage_inputs(
    inputs: list[TaskParameter], workspace: TaskWorkspace, store: ObjectStore
) -> None:
    """Materialize every input at its container path inside `workspace`."""
    for param in inputs:
        dest = workspace.host_path(param.path)
        if param.contents:
            # Inline contents win; the url is never dereferenced.
            dest.parent.mkdir(parents=True, exist_ok=True)
            try:
                dest.write_text(param.contents, encoding="utf-8")
            except OSError as exc:
                raise ObjectStoreError(f"Failed to write input {param.path}: {exc}") from exc
            continue
        store.get(param.url, dest, param.type)
        logger.debug("stage_inputs event=fetched url=%s path=%s", param.url, param.path)
