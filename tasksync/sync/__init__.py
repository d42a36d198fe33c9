"""Sync engine for tasksync - offline-first sync with a remote object store."""

from .comparator import IndexComparator, SyncAction, SyncDecision
from .config import SyncConfigError, SyncSettings, load_sync_settings_from_json
from .engine import SyncEngine
from .index import SyncIndex
from .modes import SyncMode
from .operations import SyncOperations
from .pusher import ChangeQueue, PendingChange
from .remote import LongpollResult, RemoteStore
from .serializer import OperationChain
from .state import JsonIndexStore, JsonSnapshotStore, LocalIndexStore, SnapshotStore
from .transfer import BulkTransferSelector, parse_folder_archive
from .watcher import ChangeWatcher

__all__ = [
    "SyncEngine",
    "SyncMode",
    "SyncIndex",
    "SyncSettings",
    "SyncOperations",
    "SyncConfigError",
    "load_sync_settings_from_json",
    "IndexComparator",
    "SyncAction",
    "SyncDecision",
    "ChangeQueue",
    "PendingChange",
    "RemoteStore",
    "LongpollResult",
    "OperationChain",
    "LocalIndexStore",
    "SnapshotStore",
    "JsonIndexStore",
    "JsonSnapshotStore",
    "BulkTransferSelector",
    "parse_folder_archive",
    "ChangeWatcher",
]
