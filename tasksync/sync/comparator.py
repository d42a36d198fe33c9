"""Index comparison logic for reconciliation passes."""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional

from .index import SyncIndex
from .modes import SyncMode


class SyncAction(str, Enum):
    """Actions that can be taken during sync."""

    DELETE_LOCAL = "delete_local"
    """Remove entity from the local snapshot (remote tombstone is newer)"""

    DOWNLOAD = "download"
    """Fetch remote entity into the local snapshot"""

    UPLOAD = "upload"
    """Push local entity to the remote store"""

    DELETE_REMOTE = "delete_remote"
    """Delete remote entity file (local tombstone is newer)"""

    SKIP = "skip"
    """Both sides agree (no action needed)"""


@dataclass
class SyncDecision:
    """Represents a decision about how to sync one entity."""

    action: SyncAction
    """Action to take"""

    reason: str
    """Human-readable reason for this decision"""

    key: str
    """Entity key"""

    local_time: Optional[datetime] = None
    """Local entity or tombstone time"""

    remote_time: Optional[datetime] = None
    """Remote entity or tombstone time that wins (or ties)"""


class IndexComparator:
    """Compares the local and remote index to decide per-entity actions.

    Last writer wins per entity key. Remote tombstones are looked at before
    remote entities, and equal timestamps never trigger an action.
    """

    def __init__(self, sync_mode: SyncMode = SyncMode.TWO_WAY):
        """Initialize index comparator.

        Args:
            sync_mode: Sync mode to use for comparison
        """
        self.sync_mode = sync_mode

    def compare(self, local: SyncIndex, remote: SyncIndex) -> list[SyncDecision]:
        """Compare indices and determine sync actions.

        Decisions are returned grouped in execution order: local deletions,
        downloads, uploads, remote deletions, then skips.

        Args:
            local: This device's index
            remote: The remote index

        Returns:
            List of SyncDecision objects
        """
        decisions: list[SyncDecision] = []
        decisions.extend(self._remote_deletions(local, remote))
        decisions.extend(self._remote_upserts(local, remote))
        if self.sync_mode.allows_upload:
            decisions.extend(self._local_upserts(local, remote))
        if self.sync_mode.allows_remote_delete:
            decisions.extend(self._local_deletions(local, remote))

        order = list(SyncAction)
        decisions.sort(key=lambda d: order.index(d.action))
        return decisions

    def _remote_deletions(
        self, local: SyncIndex, remote: SyncIndex
    ) -> list[SyncDecision]:
        decisions = []
        for key, deleted_at in remote.deletions.items():
            local_time = local.entities.get(key)
            if local_time is not None:
                if deleted_at > local_time:
                    decisions.append(
                        SyncDecision(
                            action=SyncAction.DELETE_LOCAL,
                            reason="Deleted remotely after last local change",
                            key=key,
                            local_time=local_time,
                            remote_time=deleted_at,
                        )
                    )
                elif deleted_at == local_time:
                    decisions.append(
                        SyncDecision(
                            action=SyncAction.SKIP,
                            reason="Remote deletion and local change at same time",
                            key=key,
                            local_time=local_time,
                            remote_time=deleted_at,
                        )
                    )
                continue

            local_deleted = local.deletions.get(key)
            if local_deleted is None or deleted_at > local_deleted:
                decisions.append(
                    SyncDecision(
                        action=SyncAction.DELETE_LOCAL,
                        reason="Remote tombstone not yet known locally",
                        key=key,
                        local_time=local_deleted,
                        remote_time=deleted_at,
                    )
                )
        return decisions

    def _remote_upserts(
        self, local: SyncIndex, remote: SyncIndex
    ) -> list[SyncDecision]:
        decisions = []
        for key, modified_at in remote.entities.items():
            if key in remote.deletions:
                continue

            local_time = local.entities.get(key)
            if local_time is not None:
                if modified_at > local_time:
                    decisions.append(
                        SyncDecision(
                            action=SyncAction.DOWNLOAD,
                            reason="Remote entity is newer",
                            key=key,
                            local_time=local_time,
                            remote_time=modified_at,
                        )
                    )
                elif modified_at == local_time:
                    decisions.append(
                        SyncDecision(
                            action=SyncAction.SKIP,
                            reason="Entity is in sync",
                            key=key,
                            local_time=local_time,
                            remote_time=modified_at,
                        )
                    )
                continue

            local_deleted = local.deletions.get(key)
            if local_deleted is None:
                reason = "New remote entity"
            elif modified_at > local_deleted:
                reason = "Remote entity re-created after local deletion"
            else:
                continue
            decisions.append(
                SyncDecision(
                    action=SyncAction.DOWNLOAD,
                    reason=reason,
                    key=key,
                    local_time=local_deleted,
                    remote_time=modified_at,
                )
            )
        return decisions

    def _local_upserts(self, local: SyncIndex, remote: SyncIndex) -> list[SyncDecision]:
        decisions = []
        for key, modified_at in local.entities.items():
            if key in local.deletions:
                continue

            remote_deleted = remote.deletions.get(key)
            if remote_deleted is not None and remote_deleted >= modified_at:
                continue

            remote_time = remote.entities.get(key)
            if remote_time is None or modified_at > remote_time:
                decisions.append(
                    SyncDecision(
                        action=SyncAction.UPLOAD,
                        reason=(
                            "New local entity"
                            if remote_time is None
                            else "Local entity is newer"
                        ),
                        key=key,
                        local_time=modified_at,
                        remote_time=remote_time,
                    )
                )
        return decisions

    def _local_deletions(
        self, local: SyncIndex, remote: SyncIndex
    ) -> list[SyncDecision]:
        decisions = []
        for key, deleted_at in local.deletions.items():
            remote_time = remote.entities.get(key)
            if remote_time is not None and deleted_at > remote_time:
                decisions.append(
                    SyncDecision(
                        action=SyncAction.DELETE_REMOTE,
                        reason="Deleted locally after last remote change",
                        key=key,
                        local_time=deleted_at,
                        remote_time=remote_time,
                    )
                )
        return decisions
