"""Sync operations wrapper around the remote store with bounded concurrency."""

import asyncio
import json
import logging
from typing import Any, Awaitable, Callable, Optional, TypeVar

from ..models import entity_path
from ..utils import INDEX_PATH, LEGACY_SNAPSHOT_PATH
from .config import SyncSettings
from .index import SyncIndex
from .remote import RemoteStore

logger = logging.getLogger(__name__)

T = TypeVar("T")


class SyncOperations:
    """Entity and index transfers with a common interface.

    Uploads and deletes share one pool, downloads another. Batch helpers
    never raise for a single entity: failures are logged and reported in the
    returned mapping.
    """

    def __init__(self, remote: RemoteStore, settings: Optional[SyncSettings] = None):
        """Initialize sync operations.

        Args:
            remote: Remote object store
            settings: Concurrency settings (defaults if omitted)
        """
        self.remote = remote
        self.settings = settings or SyncSettings()
        self._upload_slots = asyncio.Semaphore(self.settings.max_upload_concurrency)
        self._download_slots = asyncio.Semaphore(
            self.settings.max_download_concurrency
        )

    # -------------------------------------------------------------------------
    # Single entity
    # -------------------------------------------------------------------------

    async def upload_entity(self, key: str, data: dict[str, Any]) -> None:
        """Upload one entity document to ``/<key>.json``."""
        content = json.dumps(data)
        async with self._upload_slots:
            await self.remote.upload_file(entity_path(key), content)
        logger.debug(f"Uploaded {key}")

    async def download_entity(self, key: str) -> Optional[str]:
        """Download one entity document, or None if it does not exist."""
        async with self._download_slots:
            content = await self.remote.download_file(entity_path(key))
        if content is None:
            logger.debug(f"Remote {key} not found")
        else:
            logger.debug(f"Downloaded {key}")
        return content

    async def delete_entity(self, key: str) -> None:
        """Delete one entity file. Missing files are not an error."""
        async with self._upload_slots:
            await self.remote.delete_file(entity_path(key))
        logger.debug(f"Deleted remote {key}")

    # -------------------------------------------------------------------------
    # Batches
    # -------------------------------------------------------------------------

    async def upload_entities(
        self, items: dict[str, dict[str, Any]]
    ) -> dict[str, bool]:
        """Upload many entities.

        Returns:
            Key -> True if the upload succeeded
        """
        return await self._run_all(
            {
                key: (lambda k=key, d=data: self.upload_entity(k, d))
                for key, data in items.items()
            },
            "upload",
            success=lambda _: True,
            failure=False,
        )

    async def delete_entities(self, keys: list[str]) -> dict[str, bool]:
        """Delete many entity files.

        Returns:
            Key -> True if the delete succeeded
        """
        return await self._run_all(
            {key: (lambda k=key: self.delete_entity(k)) for key in keys},
            "delete",
            success=lambda _: True,
            failure=False,
        )

    async def download_entities(self, keys: list[str]) -> dict[str, Optional[str]]:
        """Download many entities.

        Returns:
            Key -> content, or None if missing or failed
        """
        return await self._run_all(
            {key: (lambda k=key: self.download_entity(k)) for key in keys},
            "download",
            success=lambda content: content,
            failure=None,
        )

    async def _run_all(
        self,
        factories: dict[str, Callable[[], Awaitable[T]]],
        verb: str,
        success: Callable[[T], Any],
        failure: Any,
    ) -> dict[str, Any]:
        if not factories:
            return {}

        keys = list(factories)
        outcomes = await asyncio.gather(
            *(factories[key]() for key in keys), return_exceptions=True
        )

        results: dict[str, Any] = {}
        for key, outcome in zip(keys, outcomes):
            if isinstance(outcome, asyncio.CancelledError):
                raise outcome
            if isinstance(outcome, Exception):
                logger.warning(f"Failed to {verb} {key}: {outcome}")
                results[key] = failure
            else:
                results[key] = success(outcome)
        return results

    # -------------------------------------------------------------------------
    # Index and legacy document
    # -------------------------------------------------------------------------

    async def download_index(self) -> Optional[SyncIndex]:
        """Download the remote index, or None if there is none.

        Raises:
            InvalidIndexError: If the remote index is malformed
        """
        content = await self.remote.download_file(INDEX_PATH)
        if content is None:
            return None
        return SyncIndex.from_json(content)

    async def upload_index(self, index: SyncIndex) -> None:
        await self.remote.upload_file(INDEX_PATH, index.to_json())
        logger.debug(
            f"Uploaded remote index ({len(index.entities)} entities, "
            f"{len(index.deletions)} tombstones)"
        )

    async def download_legacy_snapshot(self) -> Optional[str]:
        return await self.remote.download_file(LEGACY_SNAPSHOT_PATH)

    async def delete_legacy_snapshot(self) -> None:
        """Remove the legacy snapshot document. Failures are logged."""
        try:
            await self.remote.delete_file(LEGACY_SNAPSHOT_PATH)
        except Exception as e:
            logger.warning(f"Failed to delete legacy {LEGACY_SNAPSHOT_PATH}: {e}")
