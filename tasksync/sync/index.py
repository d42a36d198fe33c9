"""Sync index tracking per-entity modification and deletion times.

The same structure is stored remotely as ``/index.json`` and locally on each
device. Comparing the two tells the engine which entities to pull, push or
delete.
"""

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from ..exceptions import InvalidIndexError
from ..utils import format_iso_timestamp, parse_iso_timestamp

logger = logging.getLogger(__name__)


def _parse_time_map(raw: Optional[dict], field_name: str) -> dict[str, datetime]:
    if raw is None:
        return {}
    if not isinstance(raw, dict):
        raise InvalidIndexError(f"Index field '{field_name}' is not an object")

    result: dict[str, datetime] = {}
    for key, value in raw.items():
        parsed = parse_iso_timestamp(value)
        if parsed is None:
            logger.warning(f"Ignoring {field_name} entry {key} with bad time {value!r}")
            continue
        result[key] = parsed
    return result


@dataclass
class SyncIndex:
    """Entity key -> timestamp maps for live entities and tombstones.

    A key is in at most one of ``entities`` and ``deletions``.
    """

    entities: dict[str, datetime] = field(default_factory=dict)
    """Entity key -> last modified time"""

    deletions: dict[str, datetime] = field(default_factory=dict)
    """Entity key -> deletion time (tombstones)"""

    def record_upsert(self, key: str, time: datetime) -> None:
        """Mark an entity as existing, last modified at ``time``."""
        self.deletions.pop(key, None)
        self.entities[key] = time

    def record_deletion(self, key: str, time: datetime) -> None:
        """Mark an entity as deleted at ``time``."""
        self.entities.pop(key, None)
        self.deletions[key] = time

    def copy(self) -> "SyncIndex":
        return SyncIndex(entities=dict(self.entities), deletions=dict(self.deletions))

    def to_dict(self) -> dict:
        """Convert index to dictionary for JSON serialization."""
        return {
            "entities": {k: format_iso_timestamp(v) for k, v in self.entities.items()},
            "deletions": {
                k: format_iso_timestamp(v) for k, v in self.deletions.items()
            },
        }

    @classmethod
    def from_dict(cls, data: dict) -> "SyncIndex":
        """Create SyncIndex from dictionary. Missing fields become empty maps."""
        if not isinstance(data, dict):
            raise InvalidIndexError("Index document is not an object")
        return cls(
            entities=_parse_time_map(data.get("entities"), "entities"),
            deletions=_parse_time_map(data.get("deletions"), "deletions"),
        )

    def to_json(self) -> str:
        return json.dumps(self.to_dict())

    @classmethod
    def from_json(cls, text: str) -> "SyncIndex":
        """Parse an index document.

        Raises:
            InvalidIndexError: If the text is not a valid index document
        """
        try:
            data = json.loads(text)
        except (json.JSONDecodeError, TypeError) as e:
            raise InvalidIndexError(f"Malformed index document: {e}") from e
        return cls.from_dict(data)
