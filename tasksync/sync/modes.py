"""Sync directions."""

from enum import Enum


class SyncMode(str, Enum):
    """Which sides of a reconciliation pass may be changed."""

    TWO_WAY = "twoWay"
    """Pull remote changes and push local ones"""

    PULL = "pull"
    """Only apply remote changes locally (incremental pull)"""

    @property
    def allows_upload(self) -> bool:
        return self == SyncMode.TWO_WAY

    @property
    def allows_remote_delete(self) -> bool:
        return self == SyncMode.TWO_WAY
