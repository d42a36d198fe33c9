"""Debounced push of local changes to the remote store."""

import asyncio
import copy
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Optional

from ..models import parse_entity_key
from ..utils import utc_now
from .config import SyncSettings
from .index import SyncIndex
from .operations import SyncOperations
from .serializer import OperationChain
from .state import LocalIndexStore

logger = logging.getLogger(__name__)


@dataclass
class PendingChange:
    """A local change waiting for the next batch flush."""

    data: Optional[dict[str, Any]]
    """Entity document, or None for a deletion"""

    timestamp: datetime
    """Time recorded in the local index when the change was pushed"""

    @property
    def is_deletion(self) -> bool:
        return self.data is None


class ChangeQueue:
    """Collects local mutations and flushes them in debounced batches.

    ``push_entity`` and ``push_deletion`` are synchronous and cheap: they update
    the local index right away and leave the network work to a flush that runs
    on the operation chain once no new change arrived for
    ``settings.debounce_seconds``. They must be called from the event loop
    thread.
    """

    def __init__(
        self,
        operations: SyncOperations,
        index_store: LocalIndexStore,
        chain: OperationChain,
        index_provider: Callable[[], SyncIndex],
        settings: Optional[SyncSettings] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        """Initialize change queue.

        Args:
            operations: Transfer helpers bound to the remote store
            index_store: Persistence for the local index
            chain: Operation chain that flushes are serialized on
            index_provider: Returns the engine's current local index
            settings: Debounce and concurrency settings
            clock: Source of change timestamps
        """
        self.operations = operations
        self.index_store = index_store
        self.chain = chain
        self.settings = settings or SyncSettings()
        self.clock = clock
        self._index_provider = index_provider
        self._pending: dict[str, PendingChange] = {}
        self._timer: Optional[asyncio.TimerHandle] = None
        self._save_tasks: set[asyncio.Task] = set()

    @property
    def pending_count(self) -> int:
        """Number of changes waiting for the next flush."""
        return len(self._pending)

    def push_entity(self, key: str, data: dict[str, Any]) -> None:
        """Record a created or updated entity.

        Args:
            key: Entity key (``"<kind>/<id>"``)
            data: Entity document

        Raises:
            ValueError: If the key is invalid
        """
        parse_entity_key(key)
        now = self.clock()
        index = self._index_provider()
        index.record_upsert(key, now)
        self._save_index_in_background(index)
        self._queue(key, PendingChange(data=copy.deepcopy(data), timestamp=now))

    def push_deletion(self, key: str) -> None:
        """Record a deleted entity.

        Raises:
            ValueError: If the key is invalid
        """
        parse_entity_key(key)
        now = self.clock()
        index = self._index_provider()
        index.record_deletion(key, now)
        self._save_index_in_background(index)
        self._queue(key, PendingChange(data=None, timestamp=now))

    def _queue(self, key: str, change: PendingChange) -> None:
        if not self.operations.remote.is_signed_in:
            return
        self._pending[key] = change
        self._schedule_flush()

    def _schedule_flush(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
        loop = asyncio.get_running_loop()
        self._timer = loop.call_later(
            self.settings.debounce_seconds, self.flush_pending_changes
        )

    def _save_index_in_background(self, index: SyncIndex) -> None:
        task = asyncio.get_running_loop().create_task(
            self.index_store.save_index(index.copy())
        )
        self._save_tasks.add(task)
        task.add_done_callback(self._on_save_done)

    def _on_save_done(self, task: asyncio.Task) -> None:
        self._save_tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error(f"Failed to save local sync index: {error}")

    def flush_pending_changes(self) -> Optional["asyncio.Future[None]"]:
        """Send the current batch now.

        The batch is swapped out before anything is awaited, so changes pushed
        while the flush runs go into the next batch.

        Returns:
            Future completing when the flush has run, or None if nothing was
            pending
        """
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        if not self._pending:
            return None

        batch = self._pending
        self._pending = {}
        logger.debug(f"Flushing {len(batch)} pending changes")
        return self.chain.submit(lambda: self._flush(batch))

    async def _flush(self, batch: dict[str, PendingChange]) -> None:
        upserts = {
            key: change.data
            for key, change in batch.items()
            if change.data is not None
        }
        deletions = [key for key, change in batch.items() if change.is_deletion]

        try:
            uploaded, _ = await asyncio.gather(
                self.operations.upload_entities(upserts),
                self.operations.delete_entities(deletions),
            )

            remote_index = await self.operations.download_index() or SyncIndex()
            for key, change in batch.items():
                if change.is_deletion:
                    remote_index.record_deletion(key, change.timestamp)
                elif uploaded.get(key):
                    remote_index.record_upsert(key, change.timestamp)
            await self.operations.upload_index(remote_index)
        except Exception as e:
            logger.error(f"Batch sync of {len(batch)} changes failed: {e}")
            return

        failed = len(upserts) - sum(1 for ok in uploaded.values() if ok)
        if failed:
            logger.warning(f"{failed} of {len(upserts)} uploads failed in batch")
        logger.debug(
            f"Pushed {len(upserts)} upserts and {len(deletions)} deletions"
        )

    async def drain(self) -> None:
        """Flush immediately and wait for all queued operations to finish."""
        self.flush_pending_changes()
        await self.chain.join()
        if self._save_tasks:
            await asyncio.gather(*list(self._save_tasks), return_exceptions=True)

    def close(self) -> None:
        """Cancel the debounce timer. Pending changes are dropped."""
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        if self._pending:
            logger.warning(f"Dropping {len(self._pending)} unsent changes")
        self._pending.clear()
