"""Choose between per-entity downloads and whole-folder archives."""

import asyncio
import io
import logging
import zipfile
from typing import Optional

from ..models import EntityKind, parse_entity_key
from .config import SyncSettings
from .operations import SyncOperations

logger = logging.getLogger(__name__)


def parse_folder_archive(kind: EntityKind, data: bytes) -> dict[str, str]:
    """Read entity documents out of a folder zip.

    Entries are named ``<folder>/<id>.json`` (a leading slash is tolerated).
    Entries of other folders, nested paths and non-JSON files are ignored.

    Args:
        kind: Entity kind the archive was requested for
        data: Raw zip bytes

    Returns:
        Entity key -> document text

    Raises:
        zipfile.BadZipFile: If the data is not a zip archive
    """
    documents: dict[str, str] = {}
    with zipfile.ZipFile(io.BytesIO(data)) as archive:
        for info in archive.infolist():
            if info.is_dir():
                continue
            name = info.filename.lstrip("/")
            if not name.endswith(".json"):
                continue
            key = name[: -len(".json")]
            try:
                entry_kind, entity_id = parse_entity_key(key)
            except ValueError:
                logger.debug(f"Ignoring archive entry {info.filename}")
                continue
            if entry_kind != kind or "/" in entity_id:
                continue
            try:
                documents[key] = archive.read(info).decode("utf-8")
            except UnicodeDecodeError as e:
                logger.warning(f"Skipping undecodable archive entry {name}: {e}")
    return documents


class BulkTransferSelector:
    """Fetches entity content, switching to folder archives for large batches.

    Archives are cached per folder until :meth:`clear_cache` is called at the
    start of the next reconciliation pass.
    """

    def __init__(
        self, operations: SyncOperations, settings: Optional[SyncSettings] = None
    ):
        self.operations = operations
        self.settings = settings or SyncSettings()
        self._archives: dict[EntityKind, dict[str, str]] = {}

    def use_archive(self, count: int, total: int) -> bool:
        """Whether fetching ``count`` of ``total`` entities warrants archives."""
        if count <= 0:
            return False
        if count >= self.settings.archive_absolute_threshold:
            return True
        return total > 0 and count / total >= self.settings.archive_ratio_threshold

    def clear_cache(self) -> None:
        self._archives.clear()

    async def fetch(
        self, keys: list[str], total_remote_entities: int
    ) -> dict[str, Optional[str]]:
        """Fetch the content of ``keys``.

        Args:
            keys: Entity keys to fetch
            total_remote_entities: Number of live entities in the remote index

        Returns:
            Key -> document text, or None if missing or failed
        """
        if not keys:
            return {}

        if not self.use_archive(len(keys), total_remote_entities):
            logger.debug(f"Fetching {len(keys)} entities individually")
            return await self.operations.download_entities(keys)

        by_kind: dict[EntityKind, list[str]] = {}
        for key in keys:
            kind, _ = parse_entity_key(key)
            by_kind.setdefault(kind, []).append(key)

        logger.debug(
            f"Fetching {len(keys)} entities via archives of "
            f"{', '.join(kind.value for kind in by_kind)}"
        )
        missing = [kind for kind in by_kind if kind not in self._archives]
        loaded = await asyncio.gather(*(self._load_archive(kind) for kind in missing))
        for kind, documents in zip(missing, loaded):
            if documents is not None:
                self._archives[kind] = documents

        results: dict[str, Optional[str]] = {}
        fallback: list[str] = []
        for kind, kind_keys in by_kind.items():
            documents = self._archives.get(kind)
            if documents is None:
                fallback.extend(kind_keys)
                continue
            for key in kind_keys:
                results[key] = documents.get(key)

        if fallback:
            logger.info(
                f"Falling back to individual downloads for {len(fallback)} entities"
            )
            results.update(await self.operations.download_entities(fallback))
        return results

    async def _load_archive(self, kind: EntityKind) -> Optional[dict[str, str]]:
        """Download and unpack one folder. Returns None if that failed."""
        try:
            remote = self.operations.remote
            data = await remote.download_folder_archive(kind.folder_path)
        except Exception as e:
            logger.warning(f"Failed to download archive of {kind.folder_path}: {e}")
            return None

        if data is None:
            logger.debug(f"Remote folder {kind.folder_path} does not exist")
            return {}

        try:
            documents = parse_folder_archive(kind, data)
        except zipfile.BadZipFile as e:
            logger.warning(f"Invalid archive for {kind.folder_path}: {e}")
            return None
        logger.debug(f"Unpacked {len(documents)} entities from {kind.folder_path}")
        return documents
