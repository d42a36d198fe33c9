"""Exceptions raised by tasksync."""

from typing import Optional


class TaskSyncError(Exception):
    """Base exception for all tasksync errors."""


class ConfigError(TaskSyncError):
    """Configuration is missing or invalid."""


class InvalidIndexError(TaskSyncError):
    """A sync index document could not be parsed."""


class RemoteStoreError(TaskSyncError):
    """A request to the remote object store failed."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class AuthenticationError(RemoteStoreError):
    """The access token is missing, expired or revoked."""


class PermissionDeniedError(RemoteStoreError):
    """The access token lacks the required scope."""


class RateLimitError(RemoteStoreError):
    """The remote store asked us to slow down."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = 429,
        retry_after: Optional[float] = None,
    ):
        super().__init__(message, status_code)
        self.retry_after = retry_after


class NotFoundError(RemoteStoreError):
    """The requested path does not exist."""


class NetworkError(RemoteStoreError):
    """The remote store could not be reached."""


class InvalidResponseError(RemoteStoreError):
    """The remote store returned something we could not understand."""


class CursorResetError(RemoteStoreError):
    """The long-poll cursor is no longer valid and must be refreshed."""
