"""Tunable settings for the sync engine."""

import json
import logging
from dataclasses import asdict, dataclass, fields
from pathlib import Path
from typing import Any, Union

from ..exceptions import ConfigError

logger = logging.getLogger(__name__)


class SyncConfigError(ConfigError):
    """Raised when sync settings are invalid."""


@dataclass
class SyncSettings:
    """Timing, concurrency and bulk-transfer settings."""

    debounce_seconds: float = 0.5
    """Quiet period after the last local change before a batch is flushed"""

    max_download_concurrency: int = 10
    """Concurrent downloads within one pass"""

    max_upload_concurrency: int = 4
    """Concurrent uploads/deletes within one flush or pass"""

    archive_ratio_threshold: float = 0.30
    """Fetch folder archives when this fraction of remote entities changed"""

    archive_absolute_threshold: int = 100
    """Fetch folder archives when at least this many entities changed"""

    longpoll_timeout: int = 120
    """Seconds a single long-poll call may block"""

    cursor_retry_delay: float = 30.0
    """Wait after failing to obtain a cursor"""

    error_backoff: float = 10.0
    """Wait after a long-poll error before retrying"""

    def validate(self) -> None:
        """Check value ranges.

        Raises:
            SyncConfigError: If a value is out of range
        """
        if self.debounce_seconds < 0:
            raise SyncConfigError("debounce_seconds must be >= 0")
        if self.max_download_concurrency < 1:
            raise SyncConfigError("max_download_concurrency must be >= 1")
        if self.max_upload_concurrency < 1:
            raise SyncConfigError("max_upload_concurrency must be >= 1")
        if not 0 < self.archive_ratio_threshold <= 1:
            raise SyncConfigError("archive_ratio_threshold must be in (0, 1]")
        if self.archive_absolute_threshold < 1:
            raise SyncConfigError("archive_absolute_threshold must be >= 1")
        # Dropbox accepts 30..480 seconds
        if not 30 <= self.longpoll_timeout <= 480:
            raise SyncConfigError("longpoll_timeout must be between 30 and 480")
        if self.cursor_retry_delay < 0 or self.error_backoff < 0:
            raise SyncConfigError("retry delays must be >= 0")

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "SyncSettings":
        """Create settings from a dictionary, rejecting unknown keys."""
        known = {f.name for f in fields(cls)}
        unknown = set(data) - known
        if unknown:
            names = ", ".join(sorted(unknown))
            raise SyncConfigError(f"Unknown sync settings: {names}")

        try:
            settings = cls(**data)
        except TypeError as e:
            raise SyncConfigError(str(e)) from e
        settings.validate()
        return settings


def load_sync_settings_from_json(path: Union[str, Path]) -> SyncSettings:
    """Load sync settings from a JSON file.

    Args:
        path: Settings file. A missing file yields the defaults.

    Returns:
        SyncSettings instance

    Raises:
        SyncConfigError: If the file is unreadable or invalid
    """
    path = Path(path)
    if not path.exists():
        logger.debug(f"No sync settings at {path}, using defaults")
        return SyncSettings()

    try:
        with open(path, encoding="utf-8") as f:
            data = json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        raise SyncConfigError(f"Failed to read sync settings from {path}: {e}") from e

    if not isinstance(data, dict):
        raise SyncConfigError(f"Sync settings in {path} must be a JSON object")
    return SyncSettings.from_dict(data)
