"""tasksync - offline-first sync of task data with a Dropbox app folder."""

from .api import DropboxClient
from .exceptions import (
    AuthenticationError,
    ConfigError,
    CursorResetError,
    InvalidIndexError,
    InvalidResponseError,
    NetworkError,
    NotFoundError,
    PermissionDeniedError,
    RateLimitError,
    RemoteStoreError,
    TaskSyncError,
)
from .models import EntityKind, Snapshot, entity_key, parse_entity_key

__all__ = [
    "DropboxClient",
    "EntityKind",
    "Snapshot",
    "entity_key",
    "parse_entity_key",
    "TaskSyncError",
    "ConfigError",
    "InvalidIndexError",
    "RemoteStoreError",
    "AuthenticationError",
    "PermissionDeniedError",
    "RateLimitError",
    "NotFoundError",
    "NetworkError",
    "InvalidResponseError",
    "CursorResetError",
]
