"""Background long-poll loop that detects remote changes."""

import asyncio
import logging
from typing import Awaitable, Callable, Optional

from ..exceptions import CursorResetError
from .config import SyncSettings
from .remote import RemoteStore

logger = logging.getLogger(__name__)


class ChangeWatcher:
    """Long-polls the remote store and calls ``on_changes`` when it changed.

    The loop runs as a single task until :meth:`stop` is called or the remote
    store reports that it is no longer signed in. Errors never end the loop;
    they drop the cursor and back off.
    """

    def __init__(
        self,
        remote: RemoteStore,
        on_changes: Callable[[], Awaitable[None]],
        settings: Optional[SyncSettings] = None,
    ):
        """Initialize change watcher.

        Args:
            remote: Remote store to poll
            on_changes: Coroutine function run after changes were detected
            settings: Poll timeout and retry delays
        """
        self.remote = remote
        self.on_changes = on_changes
        self.settings = settings or SyncSettings()
        self._task: Optional[asyncio.Task] = None
        self._stop_event = asyncio.Event()
        self._cursor: Optional[str] = None
        self._polling = False

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        """Start polling. Does nothing if already running."""
        if self.running:
            return
        self._stop_event.clear()
        self._task = asyncio.get_running_loop().create_task(
            self._run(), name="remote-change-watcher"
        )
        logger.debug("Remote change watcher started")

    async def stop(self) -> None:
        """Stop polling and wait for the loop to exit.

        A long-poll call in flight is cancelled. A running ``on_changes``
        callback is allowed to finish.
        """
        self._stop_event.set()
        task = self._task
        if task is None:
            return
        if not task.done() and self._polling:
            task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.debug("Remote change watcher stopped")

    async def _sleep(self, seconds: float) -> None:
        """Sleep unless stopped first."""
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

    async def _run(self) -> None:
        while not self._stop_event.is_set():
            if not self.remote.is_signed_in:
                logger.info("Not signed in, stopping remote change watcher")
                break

            if self._cursor is None:
                try:
                    self._cursor = await self.remote.get_latest_cursor()
                except Exception as e:
                    logger.warning(f"Could not obtain change cursor: {e}")
                    await self._sleep(self.settings.cursor_retry_delay)
                    continue

            try:
                self._polling = True
                try:
                    result = await self.remote.longpoll(
                        self._cursor, self.settings.longpoll_timeout
                    )
                finally:
                    self._polling = False

                if self._stop_event.is_set():
                    break

                # Cursor first: changes made during the pull show up next poll
                self._cursor = await self.remote.get_latest_cursor()
                if result.changes:
                    logger.debug("Remote changes detected")
                    await self.on_changes()
                if result.backoff:
                    logger.debug(f"Remote asked to back off {result.backoff}s")
                    await self._sleep(result.backoff)
            except CursorResetError:
                logger.info("Change cursor expired, requesting a new one")
                self._cursor = None
                await self._sleep(self.settings.error_backoff)
            except Exception as e:
                logger.warning(f"Remote change poll failed: {e}")
                self._cursor = None
                await self._sleep(self.settings.error_backoff)
