"""Shared fixtures: in-memory remote store, index store and clock."""

import asyncio
import io
import json
import zipfile
from datetime import datetime, timedelta, timezone
from typing import Optional, Union

import pytest

from tasksync.exceptions import NetworkError
from tasksync.models import entity_path
from tasksync.sync import LongpollResult, SyncIndex, SyncSettings
from tasksync.utils import INDEX_PATH

BASE_TIME = datetime(2025, 1, 1, tzinfo=timezone.utc)


def ts(seconds: float) -> datetime:
    """Fixed test timestamp ``seconds`` after BASE_TIME."""
    return BASE_TIME + timedelta(seconds=seconds)


class FakeRemoteStore:
    """In-memory remote store with failure injection."""

    def __init__(self, signed_in: bool = True):
        self.files: dict[str, str] = {}
        self.signed_in = signed_in
        self.fail_uploads: set[str] = set()
        self.fail_downloads: set[str] = set()
        self.fail_deletes: set[str] = set()
        self.fail_archives: set[str] = set()
        self.calls: list[tuple[str, str]] = []
        self.longpoll_results: list[Union[LongpollResult, Exception]] = []
        self.cursor_error: Optional[Exception] = None
        self._cursor_count = 0

    @property
    def is_signed_in(self) -> bool:
        return self.signed_in

    async def upload_file(self, path: str, content: str) -> None:
        self.calls.append(("upload", path))
        if path in self.fail_uploads:
            raise NetworkError(f"upload of {path} failed")
        self.files[path] = content

    async def download_file(self, path: str) -> Optional[str]:
        self.calls.append(("download", path))
        if path in self.fail_downloads:
            raise NetworkError(f"download of {path} failed")
        return self.files.get(path)

    async def delete_file(self, path: str) -> None:
        self.calls.append(("delete", path))
        if path in self.fail_deletes:
            raise NetworkError(f"delete of {path} failed")
        self.files.pop(path, None)

    async def download_folder_archive(self, folder_path: str) -> Optional[bytes]:
        self.calls.append(("archive", folder_path))
        if folder_path in self.fail_archives:
            raise NetworkError(f"archive of {folder_path} failed")
        prefix = folder_path.rstrip("/") + "/"
        entries = {
            path: content
            for path, content in self.files.items()
            if path.startswith(prefix) and "/" not in path[len(prefix) :]
        }
        if not entries:
            return None
        buffer = io.BytesIO()
        with zipfile.ZipFile(buffer, "w") as archive:
            for path, content in entries.items():
                archive.writestr(path.lstrip("/"), content)
        return buffer.getvalue()

    async def get_latest_cursor(self) -> str:
        self.calls.append(("cursor", ""))
        if self.cursor_error is not None:
            raise self.cursor_error
        self._cursor_count += 1
        return f"cursor-{self._cursor_count}"

    async def longpoll(self, cursor: str, timeout: int) -> LongpollResult:
        self.calls.append(("longpoll", cursor))
        if self.longpoll_results:
            result = self.longpoll_results.pop(0)
            if isinstance(result, Exception):
                raise result
            return result
        await asyncio.sleep(3600)
        return LongpollResult(changes=False)

    # Test helpers

    def put_entity(self, key: str, data: dict, modified_at: datetime) -> None:
        """Store an entity file and record it in the remote index."""
        self.files[entity_path(key)] = json.dumps(data)
        index = self.index or SyncIndex()
        index.record_upsert(key, modified_at)
        self.files[INDEX_PATH] = index.to_json()

    def put_tombstone(self, key: str, deleted_at: datetime) -> None:
        self.files.pop(entity_path(key), None)
        index = self.index or SyncIndex()
        index.record_deletion(key, deleted_at)
        self.files[INDEX_PATH] = index.to_json()

    @property
    def index(self) -> Optional[SyncIndex]:
        content = self.files.get(INDEX_PATH)
        return SyncIndex.from_json(content) if content is not None else None

    def entity(self, key: str) -> Optional[dict]:
        content = self.files.get(entity_path(key))
        return json.loads(content) if content is not None else None

    def count(self, operation: str, path: Optional[str] = None) -> int:
        return sum(
            1
            for op, p in self.calls
            if op == operation and (path is None or p == path)
        )


class MemoryIndexStore:
    """LocalIndexStore keeping saved copies in memory."""

    def __init__(self, index: Optional[SyncIndex] = None):
        self.index = index.copy() if index is not None else SyncIndex()
        self.saves = 0

    async def load_index(self) -> SyncIndex:
        return self.index.copy()

    async def save_index(self, index: SyncIndex) -> None:
        self.index = index.copy()
        self.saves += 1


class FakeClock:
    """Controllable clock for timestamping local changes."""

    def __init__(self, start: datetime = BASE_TIME):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float = 1.0) -> datetime:
        self.now += timedelta(seconds=seconds)
        return self.now


@pytest.fixture
def fake_remote():
    """Create a signed-in in-memory remote store."""
    return FakeRemoteStore()


@pytest.fixture
def index_store():
    """Create an in-memory local index store."""
    return MemoryIndexStore()


@pytest.fixture
def clock():
    """Create a clock starting at BASE_TIME + 1000s."""
    return FakeClock(ts(1000))


@pytest.fixture
def fast_settings():
    """Sync settings with tiny delays for tests."""
    return SyncSettings(
        debounce_seconds=0.01,
        cursor_retry_delay=0.01,
        error_backoff=0.01,
    )
