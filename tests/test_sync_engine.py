"""Tests for the sync engine."""

import asyncio
import json
from unittest.mock import AsyncMock, Mock

import pytest
import pytest_asyncio
from conftest import FakeRemoteStore, MemoryIndexStore, ts

from tasksync.exceptions import InvalidIndexError
from tasksync.models import Snapshot
from tasksync.sync import LongpollResult, SyncEngine, SyncIndex
from tasksync.utils import INDEX_PATH, LEGACY_SNAPSHOT_PATH


def make_snapshot(entities: dict, last_modified=None) -> Snapshot:
    return Snapshot(entities=entities, last_modified=last_modified or ts(0))


def task(entity_id: str, title: str = "") -> dict:
    return {"id": entity_id, "title": title or entity_id}


@pytest_asyncio.fixture
async def engine(fake_remote, index_store, fast_settings, clock):
    """Create a sync engine on the in-memory remote store."""
    engine = SyncEngine(fake_remote, index_store, fast_settings, clock=clock)
    yield engine
    await engine.close()


async def setup_local(engine, entities: dict, index: SyncIndex) -> Snapshot:
    """Give the engine a local index and return the matching snapshot."""
    engine.index_store.index = index.copy()
    snapshot = make_snapshot(entities)
    await engine.init(snapshot)
    return snapshot


class TestInit:
    """Tests for loading the local index."""

    @pytest.mark.asyncio
    async def test_init_indexes_untracked_entities(self, engine, index_store):
        index_store.index = SyncIndex(entities={"tasks/a": ts(5)})
        snapshot = make_snapshot(
            {"tasks/a": task("a"), "lists/b": {"id": "b"}}, last_modified=ts(9)
        )

        await engine.init(snapshot)

        assert engine.local_index.entities == {"tasks/a": ts(5), "lists/b": ts(9)}
        assert index_store.index.entities == engine.local_index.entities

    @pytest.mark.asyncio
    async def test_init_keeps_tombstones(self, engine, index_store):
        index_store.index = SyncIndex(deletions={"tasks/gone": ts(3)})

        await engine.init(make_snapshot({}))

        assert engine.local_index.deletions == {"tasks/gone": ts(3)}


class TestBootstrap:
    """Tests for full sync against an empty remote store."""

    @pytest.mark.asyncio
    async def test_empty_remote_uploads_everything(self, engine, fake_remote, clock):
        snapshot = await setup_local(
            engine,
            {"tasks/a": task("a"), "tags/t": {"id": "t"}},
            SyncIndex(deletions={"tasks/old": ts(1)}),
        )

        result = await engine.full_sync(snapshot)

        assert result.entities == snapshot.entities
        assert result is not snapshot
        assert fake_remote.entity("tasks/a") == task("a")
        assert fake_remote.index.entities == {
            "tasks/a": clock.now,
            "tags/t": clock.now,
        }
        assert fake_remote.index.deletions == {}
        assert engine.local_index.entities == fake_remote.index.entities
        assert engine.local_index.deletions == {}
        assert engine.stats["uploads"] == 2

    @pytest.mark.asyncio
    async def test_newer_legacy_snapshot_wins(self, engine, fake_remote):
        legacy = {
            "tasks": [task("legacy")],
            "lists": [],
            "lastModified": "2025-06-01T00:00:00Z",
        }
        fake_remote.files[LEGACY_SNAPSHOT_PATH] = json.dumps(legacy)
        snapshot = await setup_local(engine, {"tasks/a": task("a")}, SyncIndex())

        result = await engine.full_sync(snapshot)

        assert result.keys() == ["tasks/legacy"]
        assert LEGACY_SNAPSHOT_PATH not in fake_remote.files
        assert set(fake_remote.index.entities) == {"tasks/legacy"}

    @pytest.mark.asyncio
    async def test_older_legacy_snapshot_loses(self, engine, fake_remote):
        legacy = {"tasks": [task("legacy")], "lastModified": "2020-01-01T00:00:00Z"}
        fake_remote.files[LEGACY_SNAPSHOT_PATH] = json.dumps(legacy)
        snapshot = await setup_local(engine, {"tasks/a": task("a")}, SyncIndex())
        snapshot.last_modified = ts(100)

        result = await engine.full_sync(snapshot)

        assert result.keys() == ["tasks/a"]
        assert LEGACY_SNAPSHOT_PATH not in fake_remote.files
        assert set(fake_remote.index.entities) == {"tasks/a"}

    @pytest.mark.asyncio
    async def test_malformed_legacy_snapshot_keeps_local(self, engine, fake_remote):
        fake_remote.files[LEGACY_SNAPSHOT_PATH] = "{not json"
        snapshot = await setup_local(engine, {"tasks/a": task("a")}, SyncIndex())

        result = await engine.full_sync(snapshot)

        assert result.keys() == ["tasks/a"]
        assert set(fake_remote.index.entities) == {"tasks/a"}

    @pytest.mark.asyncio
    async def test_legacy_snapshot_with_non_list_field_keeps_local(
        self, engine, fake_remote
    ):
        fake_remote.files[LEGACY_SNAPSHOT_PATH] = json.dumps(
            {"tasks": 5, "lastModified": "2030-01-01T00:00:00Z"}
        )
        snapshot = await setup_local(engine, {"tasks/a": task("a")}, SyncIndex())

        result = await engine.full_sync(snapshot)

        assert result.keys() == ["tasks/a"]
        assert set(fake_remote.index.entities) == {"tasks/a"}
        assert LEGACY_SNAPSHOT_PATH not in fake_remote.files

    @pytest.mark.asyncio
    async def test_malformed_remote_index_raises(self, engine, fake_remote):
        fake_remote.files[INDEX_PATH] = "[1, 2"
        snapshot = await setup_local(engine, {"tasks/a": task("a")}, SyncIndex())

        with pytest.raises(InvalidIndexError):
            await engine.full_sync(snapshot)

    @pytest.mark.asyncio
    async def test_not_signed_in_is_noop(self, engine, fake_remote):
        fake_remote.signed_in = False
        snapshot = make_snapshot({"tasks/a": task("a")})

        result = await engine.full_sync(snapshot)

        assert result.entities == snapshot.entities
        assert fake_remote.calls == []
        assert await engine.force_download_all() is None


class TestReconciliation:
    """Tests for last-writer-wins reconciliation."""

    @pytest.mark.asyncio
    async def test_local_newer_is_uploaded(self, engine, fake_remote):
        fake_remote.put_entity("tasks/t1", task("t1", "remote"), ts(50))
        snapshot = await setup_local(
            engine,
            {"tasks/t1": task("t1", "local")},
            SyncIndex(entities={"tasks/t1": ts(100)}),
        )

        result = await engine.full_sync(snapshot)

        assert fake_remote.entity("tasks/t1")["title"] == "local"
        assert fake_remote.index.entities["tasks/t1"] == ts(100)
        assert result.get("tasks/t1")["title"] == "local"
        assert engine.stats["uploads"] == 1
        assert engine.stats["downloads"] == 0

    @pytest.mark.asyncio
    async def test_remote_newer_is_downloaded(self, engine, fake_remote, clock):
        fake_remote.put_entity("tasks/t1", task("t1", "remote"), ts(100))
        snapshot = await setup_local(
            engine,
            {"tasks/t1": task("t1", "local")},
            SyncIndex(entities={"tasks/t1": ts(50)}),
        )

        result = await engine.full_sync(snapshot)

        assert result.get("tasks/t1")["title"] == "remote"
        assert result.last_modified == clock.now
        assert engine.local_index.entities["tasks/t1"] == ts(100)
        assert fake_remote.entity("tasks/t1")["title"] == "remote"
        assert fake_remote.count("upload") == 0
        # Input snapshot is not modified
        assert snapshot.get("tasks/t1")["title"] == "local"

    @pytest.mark.asyncio
    async def test_equal_timestamps_do_nothing(self, engine, fake_remote):
        fake_remote.put_entity("tasks/t1", task("t1", "remote"), ts(100))
        snapshot = await setup_local(
            engine,
            {"tasks/t1": task("t1", "local")},
            SyncIndex(entities={"tasks/t1": ts(100)}),
        )

        result = await engine.full_sync(snapshot)

        assert result.get("tasks/t1")["title"] == "local"
        assert result.last_modified == snapshot.last_modified
        assert fake_remote.count("upload") == 0
        assert engine.stats["skips"] == 1

    @pytest.mark.asyncio
    async def test_new_remote_entity_is_downloaded(self, engine, fake_remote):
        fake_remote.put_entity("lists/l1", {"id": "l1"}, ts(10))
        snapshot = await setup_local(engine, {}, SyncIndex())

        result = await engine.full_sync(snapshot)

        assert result.get("lists/l1") == {"id": "l1"}
        assert engine.local_index.entities == {"lists/l1": ts(10)}

    @pytest.mark.asyncio
    async def test_newer_remote_deletion_removes_local(self, engine, fake_remote):
        fake_remote.put_tombstone("tasks/t1", ts(100))
        snapshot = await setup_local(
            engine,
            {"tasks/t1": task("t1")},
            SyncIndex(entities={"tasks/t1": ts(50)}),
        )

        result = await engine.full_sync(snapshot)

        assert "tasks/t1" not in result
        assert engine.local_index.deletions == {"tasks/t1": ts(100)}
        assert "tasks/t1" not in engine.local_index.entities
        assert engine.stats["deletes_local"] == 1
        assert fake_remote.count("upload", INDEX_PATH) == 0

    @pytest.mark.asyncio
    async def test_older_remote_deletion_loses_to_local_edit(
        self, engine, fake_remote
    ):
        fake_remote.put_tombstone("tasks/t1", ts(50))
        snapshot = await setup_local(
            engine,
            {"tasks/t1": task("t1")},
            SyncIndex(entities={"tasks/t1": ts(100)}),
        )

        result = await engine.full_sync(snapshot)

        assert "tasks/t1" in result
        assert fake_remote.index.entities == {"tasks/t1": ts(100)}
        assert fake_remote.index.deletions == {}
        assert fake_remote.entity("tasks/t1") == task("t1")

    @pytest.mark.asyncio
    async def test_remote_tombstone_for_unknown_key(self, engine, fake_remote):
        fake_remote.put_tombstone("tasks/t1", ts(100))
        snapshot = await setup_local(engine, {}, SyncIndex())

        await engine.full_sync(snapshot)

        assert engine.local_index.deletions == {"tasks/t1": ts(100)}

    @pytest.mark.asyncio
    async def test_newer_local_deletion_deletes_remote(self, engine, fake_remote):
        fake_remote.put_entity("tasks/t1", task("t1"), ts(50))
        snapshot = await setup_local(
            engine, {}, SyncIndex(deletions={"tasks/t1": ts(100)})
        )

        result = await engine.full_sync(snapshot)

        assert "tasks/t1" not in result
        assert fake_remote.entity("tasks/t1") is None
        assert fake_remote.index.entities == {}
        assert fake_remote.index.deletions == {"tasks/t1": ts(100)}
        assert engine.stats["deletes_remote"] == 1

    @pytest.mark.asyncio
    async def test_failed_remote_delete_still_writes_tombstone(
        self, engine, fake_remote
    ):
        fake_remote.put_entity("tasks/t1", task("t1"), ts(50))
        fake_remote.fail_deletes.add("/tasks/t1.json")
        snapshot = await setup_local(
            engine, {}, SyncIndex(deletions={"tasks/t1": ts(100)})
        )

        await engine.full_sync(snapshot)

        assert fake_remote.index.deletions == {"tasks/t1": ts(100)}
        assert engine.stats["failures"] == 1

    @pytest.mark.asyncio
    async def test_remote_recreation_after_local_deletion(self, engine, fake_remote):
        fake_remote.put_entity("tasks/t1", task("t1", "again"), ts(100))
        snapshot = await setup_local(
            engine, {}, SyncIndex(deletions={"tasks/t1": ts(50)})
        )

        result = await engine.full_sync(snapshot)

        assert result.get("tasks/t1")["title"] == "again"
        assert engine.local_index.entities == {"tasks/t1": ts(100)}
        assert engine.local_index.deletions == {}

    @pytest.mark.asyncio
    async def test_failed_upload_not_recorded_remotely(self, engine, fake_remote):
        fake_remote.put_entity("tasks/other", task("other"), ts(10))
        fake_remote.fail_uploads.add("/tasks/t1.json")
        snapshot = await setup_local(
            engine,
            {"tasks/t1": task("t1"), "tasks/other": task("other")},
            SyncIndex(entities={"tasks/t1": ts(100), "tasks/other": ts(10)}),
        )

        await engine.full_sync(snapshot)

        assert "tasks/t1" not in fake_remote.index.entities
        assert engine.stats["failures"] == 1
        assert engine.stats["uploads"] == 0

    @pytest.mark.asyncio
    async def test_unparseable_remote_entity_is_skipped(self, engine, fake_remote):
        fake_remote.put_entity("tasks/t1", task("t1"), ts(100))
        fake_remote.files["/tasks/t1.json"] = "{broken"
        snapshot = await setup_local(engine, {}, SyncIndex())

        result = await engine.full_sync(snapshot)

        assert "tasks/t1" not in result
        assert "tasks/t1" not in engine.local_index.entities
        assert engine.stats["failures"] == 1

    @pytest.mark.asyncio
    async def test_indexed_entity_missing_from_snapshot_not_uploaded(
        self, engine, fake_remote
    ):
        fake_remote.put_entity("tasks/other", task("other"), ts(10))
        snapshot = await setup_local(
            engine,
            {"tasks/other": task("other")},
            SyncIndex(entities={"tasks/ghost": ts(100), "tasks/other": ts(10)}),
        )

        await engine.full_sync(snapshot)

        assert fake_remote.count("upload", "/tasks/ghost.json") == 0
        assert "tasks/ghost" not in fake_remote.index.entities

    @pytest.mark.asyncio
    async def test_second_sync_changes_nothing(self, engine, fake_remote):
        fake_remote.put_entity("tasks/remote", task("remote"), ts(200))
        fake_remote.put_entity("tasks/stale", task("stale"), ts(250))
        snapshot = await setup_local(
            engine,
            {"tasks/local": task("local")},
            SyncIndex(
                entities={"tasks/local": ts(100)},
                deletions={"tasks/stale": ts(300)},
            ),
        )

        first = await engine.full_sync(snapshot)
        index_uploads = fake_remote.count("upload", INDEX_PATH)
        second = await engine.full_sync(first)

        assert second.entities == first.entities
        assert second.last_modified == first.last_modified
        assert fake_remote.count("upload", INDEX_PATH) == index_uploads
        assert engine.stats["uploads"] == 0
        assert engine.stats["downloads"] == 0
        assert engine.stats["deletes_remote"] == 0
        assert engine.stats["deletes_local"] == 0

    @pytest.mark.asyncio
    async def test_local_index_is_persisted(self, engine, fake_remote, index_store):
        fake_remote.put_entity("tasks/t1", task("t1"), ts(100))
        snapshot = await setup_local(engine, {}, SyncIndex())

        await engine.full_sync(snapshot)

        assert index_store.index.entities == {"tasks/t1": ts(100)}

    @pytest.mark.asyncio
    async def test_full_sync_flushes_pending_changes_first(
        self, engine, fake_remote, clock
    ):
        fake_remote.put_entity("tasks/other", task("other"), ts(10))
        snapshot = await setup_local(
            engine,
            {"tasks/other": task("other")},
            SyncIndex(entities={"tasks/other": ts(10)}),
        )
        engine.push_entity("tasks/new", task("new"))
        snapshot.put("tasks/new", task("new"))

        await engine.full_sync(snapshot)

        assert fake_remote.index.entities["tasks/new"] == clock.now
        assert engine.changes.pending_count == 0


class TestBulkTransfer:
    """Tests for archive downloads during a pass."""

    @pytest.mark.asyncio
    async def test_large_batch_uses_archive(self, engine, fake_remote):
        for i in range(5):
            fake_remote.put_entity(f"tasks/t{i}", task(f"t{i}"), ts(i))
        fake_remote.put_entity("lists/l1", {"id": "l1"}, ts(9))
        snapshot = await setup_local(engine, {}, SyncIndex())

        result = await engine.full_sync(snapshot)

        assert len(result) == 6
        assert fake_remote.count("archive", "/tasks") == 1
        assert fake_remote.count("archive", "/lists") == 1
        assert fake_remote.count("download", "/tasks/t0.json") == 0

    @pytest.mark.asyncio
    async def test_failed_archive_falls_back(self, engine, fake_remote):
        for i in range(5):
            fake_remote.put_entity(f"tasks/t{i}", task(f"t{i}"), ts(i))
        fake_remote.fail_archives.add("/tasks")
        snapshot = await setup_local(engine, {}, SyncIndex())

        result = await engine.full_sync(snapshot)

        assert sorted(result.keys()) == [f"tasks/t{i}" for i in range(5)]
        assert fake_remote.count("download", "/tasks/t0.json") == 1
        assert engine.stats["downloads"] == 5


class TestForceOperations:
    """Tests for force upload and force download."""

    @pytest.mark.asyncio
    async def test_force_upload_rebuilds_remote_index(
        self, engine, fake_remote, clock
    ):
        fake_remote.put_entity("tasks/stale", task("stale"), ts(7))
        fake_remote.put_tombstone("tasks/gone", ts(8))
        snapshot = await setup_local(
            engine,
            {"tasks/a": task("a"), "lists/b": {"id": "b"}},
            SyncIndex(
                entities={"tasks/a": ts(1), "lists/b": ts(1)},
                deletions={"tasks/old": ts(2)},
            ),
        )

        await engine.force_upload_all(snapshot)

        assert fake_remote.index.entities == {
            "tasks/a": clock.now,
            "lists/b": clock.now,
        }
        assert fake_remote.index.deletions == {}
        assert engine.local_index.entities == {
            "tasks/a": clock.now,
            "lists/b": clock.now,
        }
        assert engine.local_index.deletions == {}

    @pytest.mark.asyncio
    async def test_force_download_replaces_local_data(self, engine, fake_remote):
        fake_remote.put_entity("tasks/t1", task("t1"), ts(10))
        fake_remote.put_entity("lists/l1", {"id": "l1"}, ts(20))
        fake_remote.put_tombstone("tasks/t2", ts(30))
        await setup_local(
            engine, {"tasks/x": task("x")}, SyncIndex(entities={"tasks/x": ts(1)})
        )

        result = await engine.force_download_all()

        assert sorted(result.keys()) == ["lists/l1", "tasks/t1"]
        assert engine.local_index.entities == {
            "tasks/t1": ts(10),
            "lists/l1": ts(20),
        }
        assert engine.local_index.deletions == {"tasks/t2": ts(30)}
        assert fake_remote.count("upload") == 0


class TestPullRemoteChanges:
    """Tests for incremental pulls."""

    @pytest.mark.asyncio
    async def test_pull_applies_remote_changes_only(self, engine, fake_remote, clock):
        fake_remote.put_entity("tasks/t1", task("t1", "remote"), ts(50))
        fake_remote.put_entity("tasks/t2", task("t2"), ts(200))
        snapshot = await setup_local(
            engine,
            {"tasks/t1": task("t1", "local")},
            SyncIndex(entities={"tasks/t1": ts(100)}),
        )

        result, changed = await engine.pull_remote_changes(snapshot)

        assert changed is True
        assert result.get("tasks/t2") == task("t2")
        assert result.get("tasks/t1")["title"] == "local"
        assert result.last_modified == clock.now
        assert fake_remote.count("upload") == 0
        assert "tasks/t2" not in snapshot

    @pytest.mark.asyncio
    async def test_pull_without_remote_index(self, engine, fake_remote):
        snapshot = await setup_local(engine, {"tasks/a": task("a")}, SyncIndex())

        result, changed = await engine.pull_remote_changes(snapshot)

        assert changed is False
        assert result is snapshot
        assert fake_remote.count("upload") == 0

    @pytest.mark.asyncio
    async def test_pull_failure_is_logged(self, engine, fake_remote):
        fake_remote.fail_downloads.add(INDEX_PATH)
        snapshot = await setup_local(engine, {}, SyncIndex())

        result, changed = await engine.pull_remote_changes(snapshot)

        assert changed is False
        assert result is snapshot


class TestRemotePolling:
    """Tests for the polling lifecycle."""

    @pytest.mark.asyncio
    async def test_resume_pulls_and_starts_polling(self, engine, fake_remote):
        fake_remote.put_entity("tasks/t2", task("t2"), ts(200))
        snapshot = await setup_local(engine, {}, SyncIndex())
        callback = Mock()
        engine.on_remote_data_changed = callback

        await engine.resume(lambda: snapshot)

        callback.assert_called_once()
        assert "tasks/t2" in callback.call_args[0][0]
        assert engine.polling

        await engine.pause()
        assert not engine.polling

    @pytest.mark.asyncio
    async def test_poll_change_triggers_pull(self, engine, fake_remote):
        snapshot = await setup_local(engine, {}, SyncIndex())
        callback = AsyncMock()
        engine.on_remote_data_changed = callback
        fake_remote.put_entity("tasks/t1", task("t1"), ts(10))
        fake_remote.longpoll_results = [LongpollResult(changes=True)]

        engine.start_remote_polling(lambda: snapshot)
        for _ in range(100):
            if callback.await_count:
                break
            await asyncio.sleep(0.01)

        callback.assert_awaited_once()
        assert "tasks/t1" in callback.call_args[0][0]
        await engine.stop_remote_polling()

    @pytest.mark.asyncio
    async def test_resume_not_signed_in(self, engine, fake_remote):
        fake_remote.signed_in = False

        await engine.resume(lambda: make_snapshot({}))

        assert not engine.polling


class TestEngineWithoutFixture:
    """Tests constructing engines directly."""

    @pytest.mark.asyncio
    async def test_default_settings(self):
        engine = SyncEngine(FakeRemoteStore(), MemoryIndexStore())
        try:
            assert engine.settings.debounce_seconds == 0.5
            assert engine.settings.max_upload_concurrency == 4
            assert engine.stats == {
                "uploads": 0,
                "downloads": 0,
                "deletes_local": 0,
                "deletes_remote": 0,
                "skips": 0,
                "failures": 0,
            }
        finally:
            await engine.close()


class GatedRemoteStore(FakeRemoteStore):
    """Remote store whose entity transfers block until released."""

    def __init__(self):
        super().__init__()
        self.gated = False
        self.transfer_started = asyncio.Event()
        self.release = asyncio.Event()

    async def _gate(self, path: str) -> None:
        if self.gated and path != INDEX_PATH:
            self.transfer_started.set()
            await self.release.wait()

    async def upload_file(self, path: str, content: str) -> None:
        await self._gate(path)
        await super().upload_file(path, content)

    async def download_file(self, path: str):
        await self._gate(path)
        return await super().download_file(path)

    async def download_folder_archive(self, folder_path: str):
        await self._gate(folder_path)
        return await super().download_folder_archive(folder_path)


@pytest.fixture
def gated_remote():
    return GatedRemoteStore()


@pytest_asyncio.fixture
async def gated_engine(gated_remote, index_store, fast_settings, clock):
    """Create a sync engine whose transfers can be held mid-pass."""
    engine = SyncEngine(gated_remote, index_store, fast_settings, clock=clock)
    yield engine
    await engine.close()


async def run_with_pushes(remote, clock, pass_coro, pushes):
    """Run a pass, applying local pushes while its transfers are blocked."""
    remote.gated = True
    task_ = asyncio.ensure_future(pass_coro)
    await remote.transfer_started.wait()
    clock.advance(5)
    pushes()
    remote.release.set()
    return await task_


class TestChangesDuringPass:
    """Local changes pushed while a pass awaits the network keep their index entry."""

    @pytest.mark.asyncio
    async def test_force_upload_keeps_concurrent_pushes(
        self, gated_engine, gated_remote, index_store, clock
    ):
        upload_time = clock.now
        snapshot = await setup_local(
            gated_engine,
            {"tasks/a": task("a"), "tasks/b": task("b")},
            SyncIndex(
                entities={"tasks/a": ts(1), "tasks/b": ts(1)},
                deletions={"tasks/old": ts(2)},
            ),
        )

        def pushes():
            gated_engine.push_entity("tasks/new", task("new"))
            gated_engine.push_deletion("tasks/b")

        await run_with_pushes(
            gated_remote, clock, gated_engine.force_upload_all(snapshot), pushes
        )

        index = gated_engine.local_index
        assert index.entities["tasks/a"] == upload_time
        assert index.entities["tasks/new"] == clock.now
        assert "tasks/b" not in index.entities
        assert index.deletions == {"tasks/b": clock.now}
        assert index_store.index.entities["tasks/new"] == clock.now

    @pytest.mark.asyncio
    async def test_bootstrap_keeps_concurrent_deletion(
        self, gated_engine, gated_remote, clock
    ):
        snapshot = await setup_local(
            gated_engine, {"tasks/a": task("a"), "tasks/b": task("b")}, SyncIndex()
        )

        await run_with_pushes(
            gated_remote,
            clock,
            gated_engine.full_sync(snapshot),
            lambda: gated_engine.push_deletion("tasks/b"),
        )

        assert gated_engine.local_index.deletions == {"tasks/b": clock.now}
        assert "tasks/b" not in gated_engine.local_index.entities

    @pytest.mark.asyncio
    async def test_full_sync_keeps_local_edit_of_downloaded_key(
        self, gated_engine, gated_remote, clock
    ):
        gated_remote.put_entity("tasks/r", task("r", "remote"), ts(500))
        snapshot = await setup_local(
            gated_engine,
            {"tasks/r": task("r", "old")},
            SyncIndex(entities={"tasks/r": ts(100)}),
        )

        def pushes():
            gated_engine.push_entity("tasks/r", task("r", "edited"))
            gated_engine.push_entity("tasks/new", task("new"))

        await run_with_pushes(
            gated_remote, clock, gated_engine.full_sync(snapshot), pushes
        )

        assert gated_engine.local_index.entities["tasks/r"] == clock.now
        assert gated_engine.local_index.entities["tasks/new"] == clock.now

    @pytest.mark.asyncio
    async def test_pull_keeps_local_edit_of_remotely_deleted_key(
        self, gated_engine, gated_remote, clock
    ):
        gated_remote.put_entity("tasks/r", task("r"), ts(500))
        gated_remote.put_tombstone("tasks/a", ts(600))
        snapshot = await setup_local(
            gated_engine,
            {"tasks/a": task("a")},
            SyncIndex(entities={"tasks/a": ts(100)}),
        )

        result, changed = await run_with_pushes(
            gated_remote,
            clock,
            gated_engine.pull_remote_changes(snapshot),
            lambda: gated_engine.push_entity("tasks/a", task("a", "edited")),
        )

        assert changed is True
        assert result.get("tasks/r") == task("r")
        assert gated_engine.local_index.entities["tasks/a"] == clock.now
        assert "tasks/a" not in gated_engine.local_index.deletions
        assert gated_engine.local_index.entities["tasks/r"] == ts(500)
