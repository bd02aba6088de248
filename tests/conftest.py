"""Shared fixtures: an in-memory provider adapter and a wired registry."""

import dataclasses
import hashlib
import threading
from collections.abc import Iterable, Iterator
from datetime import datetime, timedelta, timezone
from typing import Optional

import pytest

from pycloudsync.config import EngineSettings
from pycloudsync.events import EventPublisher
from pycloudsync.exceptions import AuthenticationError, NotFoundError
from pycloudsync.jobs.engine import JobEngine
from pycloudsync.models import (
    EntryKind,
    FileEntry,
    ProviderCapabilities,
    ProviderConnection,
)
from pycloudsync.providers.base import ProviderAdapter
from pycloudsync.registry import ProviderRegistry
from pycloudsync.utils import base_name, join_path, normalize_path, parent_path

BASE_TIME = datetime(2024, 1, 15, 12, 0, 0, tzinfo=timezone.utc)
CHUNK = 64 * 1024


class InMemoryProvider(ProviderAdapter):
    """Provider adapter backed by dictionaries, with failure injection.

    ``fail(operation, path, *errors)`` queues errors raised by the next
    calls of that backend hook for that path.
    """

    provider_type = "memory"
    display_name = "In-memory"
    capabilities = ProviderCapabilities(
        supports_concurrent_requests=True,
        supports_range_requests=True,
        supports_checksums=True,
        supports_timestamps=True,
    )

    def __init__(self, config, **kwargs):
        super().__init__(config, **kwargs)
        self.files: dict[str, tuple[bytes, datetime]] = {}
        self.folders: set[str] = {"/"}
        self.reject_login = False
        self.unreachable = False
        self.login_count = 0
        self.calls: list[tuple[str, str]] = []
        self._failures: dict[tuple[str, str], list[Exception]] = {}
        self._lock = threading.Lock()

    # Test helpers

    def add_folder(self, path: str) -> None:
        path = normalize_path(path)
        while path not in self.folders:
            self.folders.add(path)
            path = parent_path(path)

    def add_file(
        self,
        path: str,
        content: bytes = b"",
        modified_at: Optional[datetime] = None,
    ) -> None:
        path = normalize_path(path)
        self.add_folder(parent_path(path))
        self.files[path] = (content, modified_at or BASE_TIME)

    def read(self, path: str) -> bytes:
        return self.files[normalize_path(path)][0]

    def fail(self, operation: str, path: str, *errors: Exception) -> None:
        self._failures.setdefault((operation, normalize_path(path)), []).extend(
            errors
        )

    def calls_of(self, operation: str) -> list[str]:
        return [p for op, p in self.calls if op == operation]

    def _enter(self, operation: str, path: str) -> None:
        with self._lock:
            self.calls.append((operation, path))
            queue = self._failures.get((operation, path))
            error = queue.pop(0) if queue else None
        if error is not None:
            raise error

    def _entry(self, path: str) -> FileEntry:
        if path in self.folders:
            return FileEntry(
                id=f"folder:{path}",
                name=base_name(path),
                kind=EntryKind.FOLDER,
                path=path,
                modified_at=BASE_TIME,
            )
        if path in self.files:
            content, modified_at = self.files[path]
            return FileEntry(
                id=f"file:{path}",
                name=base_name(path),
                kind=EntryKind.FILE,
                path=path,
                size=len(content),
                modified_at=modified_at,
                mime_type="text/plain" if path.endswith(".txt") else None,
                checksum=hashlib.md5(content).hexdigest(),
            )
        raise NotFoundError(f"Not found: {path}", self.provider_type, path)

    # Backend hooks

    def _login(self):
        self.login_count += 1
        if self.reject_login:
            raise AuthenticationError("bad credentials", self.provider_type)
        return f"token-{self.login_count}", None

    def _ping(self) -> None:
        if self.unreachable:
            raise NotFoundError("host unreachable", self.provider_type)

    def _list_files(self, path: str) -> list[FileEntry]:
        self._enter("list_files", path)
        if path not in self.folders:
            raise NotFoundError(f"Not found: {path}", self.provider_type, path)
        children = [
            p
            for p in list(self.folders) + list(self.files)
            if p != "/" and parent_path(p) == path
        ]
        return [self._entry(p) for p in children]

    def _get_file_info(self, path: str) -> FileEntry:
        self._enter("get_file_info", path)
        return self._entry(path)

    def _upload_file(
        self,
        path: str,
        name: str,
        content: Iterable[bytes],
        size: int,
        modified_at: Optional[datetime],
    ) -> FileEntry:
        target = join_path(path, name)
        self._enter("upload_file", target)
        if path not in self.folders:
            raise NotFoundError(f"Parent missing: {path}", self.provider_type, path)
        data = b"".join(content)
        self.files[target] = (data, modified_at or BASE_TIME + timedelta(days=1))
        return self._entry(target)

    def _download_file(self, path: str, offset: int) -> Iterator[bytes]:
        self._enter("download_file", path)
        if path not in self.files:
            raise NotFoundError(f"Not found: {path}", self.provider_type, path)
        data = self.files[path][0][offset:]
        return iter([data[i : i + CHUNK] for i in range(0, len(data), CHUNK)])

    def _delete_file(self, path: str) -> None:
        self._enter("delete_file", path)
        if path in self.files:
            del self.files[path]
            return
        if path not in self.folders:
            raise NotFoundError(f"Not found: {path}", self.provider_type, path)
        prefix = path + "/"
        self.folders = {
            f for f in self.folders if f != path and not f.startswith(prefix)
        }
        self.files = {k: v for k, v in self.files.items() if not k.startswith(prefix)}

    def _create_directory(self, path: str) -> None:
        self._enter("create_directory", path)
        if parent_path(path) not in self.folders:
            raise NotFoundError(
                f"Parent missing: {parent_path(path)}", self.provider_type, path
            )
        self.folders.add(path)


class SerialMemoryProvider(InMemoryProvider):
    """In-memory provider that cannot serve parallel requests."""

    provider_type = "serial-memory"
    capabilities = ProviderCapabilities(
        supports_concurrent_requests=False,
        supports_checksums=True,
        supports_timestamps=True,
    )


class PlainMemoryProvider(InMemoryProvider):
    """In-memory provider without checksums or timestamps (like WebDAV)."""

    provider_type = "plain-memory"
    capabilities = ProviderCapabilities()

    def _entry(self, path: str) -> FileEntry:
        return dataclasses.replace(super()._entry(path), checksum=None)


@pytest.fixture
def registry():
    """Registry with two in-memory connections, "src" and "dst"."""
    reg = ProviderRegistry()
    reg.register_provider(InMemoryProvider.provider_type, InMemoryProvider)
    reg.register_provider(SerialMemoryProvider.provider_type, SerialMemoryProvider)
    reg.register_provider(PlainMemoryProvider.provider_type, PlainMemoryProvider)
    reg.add_connection(ProviderConnection(id="src", provider_type="memory"))
    reg.add_connection(ProviderConnection(id="dst", provider_type="memory"))
    yield reg
    reg.close()


@pytest.fixture
def source(registry) -> InMemoryProvider:
    return registry.get_provider("src")


@pytest.fixture
def destination(registry) -> InMemoryProvider:
    return registry.get_provider("dst")


@pytest.fixture
def settings() -> EngineSettings:
    """Engine settings without backoff delays."""
    return EngineSettings(max_workers=4, max_retries=3, retry_delay=0.0)


@pytest.fixture
def publisher():
    pub = EventPublisher(buffer_size=10000)
    yield pub
    pub.close()


@pytest.fixture
def engine(registry, publisher, settings):
    eng = JobEngine(registry, publisher, settings)
    yield eng
    eng.shutdown()
