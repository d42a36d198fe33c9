"""Sync engine: reconciliation passes, forced transfers and remote polling."""

import inspect
import json
import logging
from datetime import datetime
from typing import Any, Callable, Optional

from ..models import Snapshot
from ..utils import utc_now
from .comparator import IndexComparator, SyncAction, SyncDecision
from .config import SyncSettings
from .index import SyncIndex
from .modes import SyncMode
from .operations import SyncOperations
from .pusher import ChangeQueue
from .remote import RemoteStore
from .serializer import OperationChain
from .state import LocalIndexStore
from .transfer import BulkTransferSelector
from .watcher import ChangeWatcher

logger = logging.getLogger(__name__)

SnapshotProvider = Callable[[], Snapshot]

# (key, time, is_deletion) changes to the local index made by one pass
_IndexUpdate = tuple[str, datetime, bool]


def _empty_stats() -> dict[str, int]:
    return {
        "uploads": 0,
        "downloads": 0,
        "deletes_local": 0,
        "deletes_remote": 0,
        "skips": 0,
        "failures": 0,
    }


def _index_entry(
    index: SyncIndex, key: str
) -> tuple[Optional[datetime], Optional[datetime]]:
    return index.entities.get(key), index.deletions.get(key)


def _parse_entity(key: str, content: Optional[str]) -> Optional[dict[str, Any]]:
    if content is None:
        logger.warning(f"No content for remote {key}, skipping")
        return None
    try:
        data = json.loads(content)
    except json.JSONDecodeError as e:
        logger.warning(f"Skipping unparseable remote {key}: {e}")
        return None
    if not isinstance(data, dict):
        logger.warning(f"Skipping remote {key}: document is not an object")
        return None
    return data


class SyncEngine:
    """Keeps a local snapshot and the remote store in sync.

    Local changes go through :attr:`changes` (``push_entity`` /
    ``push_deletion``) and are flushed in debounced batches. Full passes,
    forced transfers and incremental pulls run one at a time on the same
    operation chain as the batch flushes.

    Example:
        >>> engine = SyncEngine(DropboxClient(), JsonIndexStore(path))
        >>> await engine.init(snapshot)
        >>> snapshot = await engine.full_sync(snapshot)
    """

    def __init__(
        self,
        remote: RemoteStore,
        index_store: LocalIndexStore,
        settings: Optional[SyncSettings] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        """Initialize sync engine.

        Args:
            remote: Remote object store
            index_store: Persistence for the local sync index
            settings: Sync settings (defaults if omitted)
            clock: Source of timestamps for local changes
        """
        self.remote = remote
        self.index_store = index_store
        self.settings = settings or SyncSettings()
        self.clock = clock

        self.local_index = SyncIndex()
        self.operations = SyncOperations(remote, self.settings)
        self.transfer = BulkTransferSelector(self.operations, self.settings)
        self.chain = OperationChain()
        self.changes = ChangeQueue(
            self.operations,
            index_store,
            self.chain,
            lambda: self.local_index,
            settings=self.settings,
            clock=clock,
        )

        self.on_remote_data_changed: Optional[Callable[[Snapshot], Any]] = None
        """Called with the new snapshot after polling pulled remote changes"""

        self.stats = _empty_stats()
        self._watcher: Optional[ChangeWatcher] = None
        self._snapshot_provider: Optional[SnapshotProvider] = None

    @property
    def is_signed_in(self) -> bool:
        return self.remote.is_signed_in

    # =========================================================================
    # Setup and local changes
    # =========================================================================

    async def init(self, snapshot: Snapshot) -> None:
        """Load the local index and index entities it does not know yet.

        Entities present in the snapshot but missing from the index (for
        example data created before syncing was enabled) get the snapshot's
        ``last_modified`` time.
        """
        self.local_index = await self.index_store.load_index()
        added = 0
        for key in snapshot:
            if key not in self.local_index.entities:
                self.local_index.record_upsert(key, snapshot.last_modified)
                added += 1
        if added:
            logger.info(f"Indexed {added} previously untracked entities")
        await self.index_store.save_index(self.local_index.copy())

    def push_entity(self, key: str, data: dict[str, Any]) -> None:
        """Record a created or updated entity (see :class:`ChangeQueue`)."""
        self.changes.push_entity(key, data)

    def push_deletion(self, key: str) -> None:
        """Record a deleted entity (see :class:`ChangeQueue`)."""
        self.changes.push_deletion(key)

    async def flush(self) -> None:
        """Push pending local changes now and wait for them."""
        await self.changes.drain()

    # =========================================================================
    # Reconciliation entry points
    # =========================================================================

    async def full_sync(self, snapshot: Snapshot) -> Snapshot:
        """Run a full two-way reconciliation pass.

        Args:
            snapshot: Current local data (not modified)

        Returns:
            New snapshot with remote changes applied

        Raises:
            RemoteStoreError: If the remote index could not be read or written
            InvalidIndexError: If the remote index is malformed
        """
        if not self.is_signed_in:
            logger.debug("Not signed in, skipping full sync")
            return snapshot.copy()

        await self.changes.drain()
        return await self.chain.submit(lambda: self._perform_full_sync(snapshot))

    async def force_upload_all(self, snapshot: Snapshot) -> None:
        """Replace the remote contents with the local snapshot."""
        if not self.is_signed_in:
            logger.debug("Not signed in, skipping force upload")
            return

        await self.changes.drain()
        await self.chain.submit(lambda: self._perform_force_upload(snapshot))

    async def force_download_all(self) -> Optional[Snapshot]:
        """Replace local data with everything the remote store holds.

        Returns:
            New snapshot, or None if not signed in
        """
        if not self.is_signed_in:
            logger.debug("Not signed in, skipping force download")
            return None

        await self.changes.drain()
        return await self.chain.submit(self._perform_force_download)

    async def pull_remote_changes(self, snapshot: Snapshot) -> tuple[Snapshot, bool]:
        """Apply remote deletions and newer remote entities only.

        Errors are logged, never raised.

        Returns:
            Tuple of (snapshot, changed). The snapshot is a new object if
            changed is True.
        """
        if not self.is_signed_in:
            return snapshot, False

        try:
            return await self.chain.submit(lambda: self._perform_pull(snapshot))
        except Exception as e:
            logger.error(f"Pulling remote changes failed: {e}")
            return snapshot, False

    # =========================================================================
    # Remote polling and app lifecycle
    # =========================================================================

    @property
    def polling(self) -> bool:
        return self._watcher is not None and self._watcher.running

    def start_remote_polling(self, snapshot_provider: SnapshotProvider) -> None:
        """Start the long-poll loop. Does nothing if it is already running.

        Args:
            snapshot_provider: Returns the application's current snapshot
                whenever remote changes need to be applied
        """
        self._snapshot_provider = snapshot_provider
        if self._watcher is None:
            self._watcher = ChangeWatcher(
                self.remote, self._on_remote_changes, self.settings
            )
        self._watcher.start()

    async def stop_remote_polling(self) -> None:
        if self._watcher is not None:
            await self._watcher.stop()

    async def resume(self, snapshot_provider: SnapshotProvider) -> None:
        """App came to the foreground: pull once, then start polling."""
        if not self.is_signed_in:
            return
        await self._pull_and_notify(snapshot_provider)
        self.start_remote_polling(snapshot_provider)

    async def pause(self) -> None:
        """App went to the background: stop polling."""
        await self.stop_remote_polling()

    async def _on_remote_changes(self) -> None:
        if self._snapshot_provider is not None:
            await self._pull_and_notify(self._snapshot_provider)

    async def _pull_and_notify(self, snapshot_provider: SnapshotProvider) -> None:
        snapshot, changed = await self.pull_remote_changes(snapshot_provider())
        if not changed or self.on_remote_data_changed is None:
            return
        try:
            result = self.on_remote_data_changed(snapshot)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            logger.error(f"Remote data change handler failed: {e}")

    async def close(self) -> None:
        """Stop polling and release the operation chain."""
        await self.stop_remote_polling()
        self.changes.close()
        await self.chain.close()

    # =========================================================================
    # Pass implementations (run on the operation chain)
    # =========================================================================

    def _start_pass(self) -> SyncIndex:
        self.stats = _empty_stats()
        self.transfer.clear_cache()
        return self.local_index.copy()

    async def _perform_full_sync(self, original: Snapshot) -> Snapshot:
        start = self._start_pass()
        snapshot = original.copy()

        remote_index = await self.operations.download_index()
        if remote_index is None:
            return await self._bootstrap(start, snapshot)

        decisions = IndexComparator(SyncMode.TWO_WAY).compare(start, remote_index)
        updates: list[_IndexUpdate] = []
        changed = await self._apply_remote_changes(
            snapshot, remote_index, decisions, updates
        )

        remote_before = remote_index.to_dict()
        await self._push_local_upserts(snapshot, remote_index, decisions)
        await self._push_local_deletions(remote_index, decisions)

        if remote_index.to_dict() != remote_before:
            await self.operations.upload_index(remote_index)
        self._commit_local_updates(start, updates)
        await self.index_store.save_index(self.local_index.copy())

        if changed:
            snapshot.last_modified = self.clock()
        logger.info(f"Full sync finished: {self._format_stats()}")
        return snapshot

    async def _perform_pull(self, original: Snapshot) -> tuple[Snapshot, bool]:
        start = self._start_pass()
        remote_index = await self.operations.download_index()
        if remote_index is None:
            logger.debug("No remote index, nothing to pull")
            return original, False

        decisions = IndexComparator(SyncMode.PULL).compare(start, remote_index)
        snapshot = original.copy()
        updates: list[_IndexUpdate] = []
        changed = await self._apply_remote_changes(
            snapshot, remote_index, decisions, updates
        )
        if updates:
            self._commit_local_updates(start, updates)
            await self.index_store.save_index(self.local_index.copy())
        if not changed:
            return original, False

        snapshot.last_modified = self.clock()
        logger.info(f"Pulled remote changes: {self._format_stats()}")
        return snapshot, True

    async def _perform_force_upload(self, snapshot: Snapshot) -> None:
        start = self._start_pass()
        await self._upload_all(start, snapshot)
        logger.info(f"Force upload finished: {self._format_stats()}")

    async def _perform_force_download(self) -> Snapshot:
        self._start_pass()
        remote_index = await self.operations.download_index() or SyncIndex()
        snapshot = Snapshot()
        new_index = SyncIndex(deletions=dict(remote_index.deletions))

        keys = [k for k in remote_index.entities if k not in remote_index.deletions]
        contents = await self.transfer.fetch(keys, len(remote_index.entities))
        for key in keys:
            data = _parse_entity(key, contents.get(key))
            if data is None:
                self.stats["failures"] += 1
                continue
            snapshot.put(key, data)
            new_index.entities[key] = remote_index.entities[key]
            self.stats["downloads"] += 1

        self.local_index = new_index
        await self.index_store.save_index(self.local_index.copy())
        logger.info(f"Force download finished: {self._format_stats()}")
        return snapshot

    # =========================================================================
    # Pass steps
    # =========================================================================

    async def _apply_remote_changes(
        self,
        snapshot: Snapshot,
        remote_index: SyncIndex,
        decisions: list[SyncDecision],
        updates: list[_IndexUpdate],
    ) -> bool:
        """Apply remote deletions and downloads to ``snapshot``.

        Returns:
            True if the snapshot changed
        """
        changed = False
        for decision in decisions:
            if decision.action == SyncAction.SKIP:
                self.stats["skips"] += 1
            elif decision.action == SyncAction.DELETE_LOCAL:
                if snapshot.remove(decision.key):
                    changed = True
                    self.stats["deletes_local"] += 1
                    logger.debug(f"Removed {decision.key}: {decision.reason}")
                updates.append((decision.key, decision.remote_time, True))

        downloads = [d.key for d in decisions if d.action == SyncAction.DOWNLOAD]
        contents = await self.transfer.fetch(downloads, len(remote_index.entities))
        for key in downloads:
            data = _parse_entity(key, contents.get(key))
            if data is None:
                self.stats["failures"] += 1
                continue
            snapshot.put(key, data)
            updates.append((key, remote_index.entities[key], False))
            changed = True
            self.stats["downloads"] += 1
        return changed

    async def _push_local_upserts(
        self,
        snapshot: Snapshot,
        remote_index: SyncIndex,
        decisions: list[SyncDecision],
    ) -> None:
        local_times: dict[str, datetime] = {}
        documents: dict[str, dict[str, Any]] = {}
        for decision in decisions:
            if decision.action != SyncAction.UPLOAD:
                continue
            data = snapshot.get(decision.key)
            if data is None:
                logger.debug(f"{decision.key} is indexed but not in snapshot")
                continue
            documents[decision.key] = data
            local_times[decision.key] = decision.local_time

        results = await self.operations.upload_entities(documents)
        for key, ok in results.items():
            if ok:
                remote_index.record_upsert(key, local_times[key])
                self.stats["uploads"] += 1
            else:
                self.stats["failures"] += 1

    async def _push_local_deletions(
        self, remote_index: SyncIndex, decisions: list[SyncDecision]
    ) -> None:
        deletions = {
            d.key: d.local_time
            for d in decisions
            if d.action == SyncAction.DELETE_REMOTE
        }
        results = await self.operations.delete_entities(list(deletions))
        for key, deleted_at in deletions.items():
            if results.get(key):
                self.stats["deletes_remote"] += 1
            else:
                self.stats["failures"] += 1
            remote_index.record_deletion(key, deleted_at)

    def _commit_local_updates(
        self, start: SyncIndex, updates: list[_IndexUpdate]
    ) -> None:
        """Apply a pass's index changes to the live local index.

        Keys changed locally while the pass was running keep their newer
        local state.
        """
        for key, time, is_deletion in updates:
            if _index_entry(self.local_index, key) != _index_entry(start, key):
                logger.debug(f"Keeping local change to {key} made during sync")
                continue
            if is_deletion:
                self.local_index.record_deletion(key, time)
            else:
                self.local_index.record_upsert(key, time)

    # =========================================================================
    # Bootstrap
    # =========================================================================

    async def _bootstrap(self, start: SyncIndex, snapshot: Snapshot) -> Snapshot:
        """Seed an empty remote store, migrating the legacy document if any."""
        legacy_content = await self.operations.download_legacy_snapshot()
        if legacy_content is None:
            logger.info("Remote store is empty, uploading local data")
            await self._upload_all(start, snapshot)
            return snapshot

        base = snapshot
        try:
            legacy_data = json.loads(legacy_content)
            if not isinstance(legacy_data, dict):
                raise ValueError("document is not an object")
            legacy = Snapshot.from_dict(legacy_data)
        except ValueError as e:
            logger.error(f"Legacy snapshot is malformed, keeping local data: {e}")
        else:
            if legacy.last_modified > snapshot.last_modified:
                logger.info("Migrating from legacy snapshot (newer than local)")
                base = legacy
            else:
                logger.info("Migrating local data (newer than legacy snapshot)")

        await self._upload_all(start, base)
        await self.operations.delete_legacy_snapshot()
        return base

    async def _upload_all(self, start: SyncIndex, snapshot: Snapshot) -> None:
        """Upload every entity and rebuild the remote index from scratch.

        Local tombstones from ``start`` are dropped, except for keys pushed
        while the uploads were running.
        """
        now = self.clock()
        remote_index = SyncIndex()
        updates: list[_IndexUpdate] = []

        documents = {key: snapshot.get(key) for key in snapshot}
        results = await self.operations.upload_entities(documents)
        for key, ok in results.items():
            if ok:
                remote_index.record_upsert(key, now)
                updates.append((key, now, False))
                self.stats["uploads"] += 1
            else:
                self.stats["failures"] += 1

        await self.operations.upload_index(remote_index)
        self._commit_local_updates(start, updates)
        for key in start.deletions:
            if _index_entry(self.local_index, key) == _index_entry(start, key):
                del self.local_index.deletions[key]
        await self.index_store.save_index(self.local_index.copy())

    def _format_stats(self) -> str:
        return ", ".join(f"{name}={count}" for name, count in self.stats.items())
