"""Configuration management for tasksync."""

import json
import logging
import os
from pathlib import Path
from typing import Any, Optional

from .exceptions import ConfigError

logger = logging.getLogger(__name__)

CONFIG_DIR_ENV = "TASKSYNC_CONFIG_DIR"
ACCESS_TOKEN_ENV = "TASKSYNC_ACCESS_TOKEN"


class Config:
    """User configuration stored in ``config.json``.

    The configuration directory is ``$TASKSYNC_CONFIG_DIR`` if set, otherwise
    ``~/.config/tasksync``. It also holds the local sync state unless
    ``data_dir`` is configured.
    """

    def __init__(self, config_dir: Optional[Path] = None):
        if config_dir is None:
            env_dir = os.environ.get(CONFIG_DIR_ENV)
            config_dir = (
                Path(env_dir) if env_dir else Path.home() / ".config" / "tasksync"
            )
        self.config_dir = Path(config_dir)
        self.config_file = self.config_dir / "config.json"
        self._data: dict[str, Any] = self._load()

    def _load(self) -> dict[str, Any]:
        if not self.config_file.exists():
            return {}
        try:
            with open(self.config_file, encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.warning(f"Ignoring unreadable config {self.config_file}: {e}")
            return {}
        if not isinstance(data, dict):
            logger.warning(f"Ignoring config {self.config_file}: not an object")
            return {}
        return data

    def _save(self) -> None:
        try:
            self.config_dir.mkdir(parents=True, exist_ok=True)
            with open(self.config_file, "w", encoding="utf-8") as f:
                json.dump(self._data, f, indent=2)
            # The file holds a bearer token
            self.config_file.chmod(0o600)
        except OSError as e:
            raise ConfigError(f"Failed to write {self.config_file}: {e}") from e

    def get_config_path(self) -> Path:
        return self.config_file

    @property
    def access_token(self) -> Optional[str]:
        """Access token from the environment or the config file."""
        return os.environ.get(ACCESS_TOKEN_ENV) or self._data.get("access_token")

    def save_access_token(self, token: str) -> None:
        """Store the access token in the config file.

        Raises:
            ConfigError: If the token is empty or the file cannot be written
        """
        token = token.strip()
        if not token:
            raise ConfigError("Access token must not be empty")
        self._data["access_token"] = token
        self._save()

    def clear_access_token(self) -> bool:
        """Remove the stored access token. Returns True if one was stored."""
        if "access_token" not in self._data:
            return False
        del self._data["access_token"]
        self._save()
        return True

    def is_configured(self) -> bool:
        return bool(self.access_token)

    @property
    def data_dir(self) -> Path:
        """Directory holding the snapshot, index and sync settings."""
        configured = self._data.get("data_dir")
        if configured:
            return Path(configured).expanduser()
        return self.config_dir

    @property
    def snapshot_path(self) -> Path:
        return self.data_dir / "snapshot.json"

    @property
    def index_path(self) -> Path:
        return self.data_dir / "sync_index.json"

    @property
    def sync_settings_path(self) -> Path:
        return self.data_dir / "sync_settings.json"


# Global config instance
config = Config()
