"""Local persistence for the sync index and app snapshot.

The engine only talks to the :class:`LocalIndexStore` and
:class:`SnapshotStore` protocols, so the storage medium can be swapped.
The JSON file stores below are the default implementation.
"""

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any, Optional, Protocol

from ..exceptions import InvalidIndexError
from ..models import Snapshot
from .index import SyncIndex

logger = logging.getLogger(__name__)


class LocalIndexStore(Protocol):
    """Persists the device's local sync index."""

    async def load_index(self) -> SyncIndex: ...

    async def save_index(self, index: SyncIndex) -> None: ...


class SnapshotStore(Protocol):
    """Persists the canonical local snapshot."""

    async def load_snapshot(self) -> Snapshot: ...

    async def save_snapshot(self, snapshot: Snapshot) -> None: ...


def _atomic_write_json(path: Path, data: Any) -> None:
    """Write JSON so readers never see a partially written file."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2)
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise


def _read_json(path: Path) -> Optional[Any]:
    if not path.exists():
        logger.debug(f"No state file at {path}")
        return None
    try:
        with open(path, encoding="utf-8") as f:
            return json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        logger.warning(f"Failed to load {path}: {e}")
        return None


class JsonIndexStore:
    """Stores the local sync index in a JSON file.

    The save methods do not await anything, so saves scheduled as background
    tasks are written in the order they were scheduled.
    """

    def __init__(self, path: Path):
        """Initialize index store.

        Args:
            path: Index file location
        """
        self.path = Path(path)

    async def load_index(self) -> SyncIndex:
        """Load the index. Missing or corrupt files load as an empty index."""
        data = _read_json(self.path)
        if data is None:
            return SyncIndex()
        try:
            index = SyncIndex.from_dict(data)
        except InvalidIndexError as e:
            logger.warning(f"Ignoring corrupt sync index {self.path}: {e}")
            return SyncIndex()
        logger.debug(
            f"Loaded sync index with {len(index.entities)} entities "
            f"and {len(index.deletions)} tombstones"
        )
        return index

    async def save_index(self, index: SyncIndex) -> None:
        _atomic_write_json(self.path, index.to_dict())
        logger.debug(f"Saved sync index to {self.path}")

    def clear(self) -> bool:
        """Delete the index file. Returns True if it existed."""
        if self.path.exists():
            self.path.unlink()
            logger.debug(f"Cleared sync index at {self.path}")
            return True
        return False


class JsonSnapshotStore:
    """Stores the app snapshot in a JSON file."""

    def __init__(self, path: Path):
        self.path = Path(path)

    async def load_snapshot(self) -> Snapshot:
        """Load the snapshot. Missing or corrupt files load as empty."""
        data = _read_json(self.path)
        if not isinstance(data, dict):
            return Snapshot()
        try:
            return Snapshot.from_dict(data)
        except ValueError as e:
            logger.warning(f"Ignoring corrupt snapshot {self.path}: {e}")
            return Snapshot()

    async def save_snapshot(self, snapshot: Snapshot) -> None:
        _atomic_write_json(self.path, snapshot.to_dict())
        logger.debug(f"Saved snapshot with {len(snapshot)} entities to {self.path}")

    def clear(self) -> bool:
        if self.path.exists():
            self.path.unlink()
            return True
        return False
