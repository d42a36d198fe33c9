"""Remote object store contract used by the sync engine."""

from dataclasses import dataclass
from typing import Optional, Protocol


@dataclass
class LongpollResult:
    """Outcome of a long-poll call."""

    changes: bool
    """True if the folder tree changed since the cursor was issued"""

    backoff: Optional[int] = None
    """Seconds the store asks us to wait before polling again"""


class RemoteStore(Protocol):
    """Path-addressed object store holding one file per entity.

    Implementations raise :class:`~tasksync.exceptions.RemoteStoreError`
    subclasses for failures. "Not found" is never an error: downloads return
    None and deletes succeed.
    """

    @property
    def is_signed_in(self) -> bool: ...

    async def upload_file(self, path: str, content: str) -> None:
        """Write ``content`` to ``path``, replacing any existing file."""

    async def download_file(self, path: str) -> Optional[str]:
        """Read a file, or None if it does not exist."""

    async def delete_file(self, path: str) -> None:
        """Remove a file. Missing files are not an error."""

    async def download_folder_archive(self, folder_path: str) -> Optional[bytes]:
        """Zip of the folder's immediate contents, or None if it does not exist.

        Entries are named ``<folder>/<id>.json``.
        """

    async def get_latest_cursor(self) -> str:
        """Opaque token for the current state of the folder tree."""

    async def longpoll(self, cursor: str, timeout: int) -> LongpollResult:
        """Block up to ``timeout`` seconds waiting for changes after ``cursor``.

        Raises:
            CursorResetError: If the cursor is no longer valid
        """
