"""Entity model for synchronized app data.

Entities are opaque JSON documents. The sync engine only cares about an
entity's key (``"<kind>/<id>"``) and the timestamp recorded for it in a
:class:`~tasksync.sync.index.SyncIndex`.
"""

import copy
import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Iterator, Optional

from .utils import format_iso_timestamp, parse_iso_timestamp, utc_now

logger = logging.getLogger(__name__)


class EntityKind(str, Enum):
    """Kinds of synchronized entities.

    The value doubles as the remote folder name.
    """

    TASKS = "tasks"
    LISTS = "lists"
    FOLDERS = "folders"
    TAGS = "tags"
    SMART_LISTS = "smart_lists"

    @property
    def document_field(self) -> str:
        """Field holding this kind in the snapshot document."""
        return _DOCUMENT_FIELDS[self]

    @property
    def folder_path(self) -> str:
        """Remote folder holding entities of this kind."""
        return f"/{self.value}"


_DOCUMENT_FIELDS = {
    EntityKind.TASKS: "tasks",
    EntityKind.LISTS: "lists",
    EntityKind.FOLDERS: "folders",
    EntityKind.TAGS: "tags",
    EntityKind.SMART_LISTS: "smartLists",
}


def entity_key(kind: "EntityKind | str", entity_id: str) -> str:
    """Build an entity key.

    Examples:
        >>> entity_key(EntityKind.TASKS, "abc")
        'tasks/abc'
    """
    kind = EntityKind(kind)
    if not entity_id:
        raise ValueError("Entity id must not be empty")
    return f"{kind.value}/{entity_id}"


def parse_entity_key(key: str) -> tuple[EntityKind, str]:
    """Split an entity key into its kind and id.

    Raises:
        ValueError: If the key has an unknown kind or no id
    """
    kind_str, sep, entity_id = key.partition("/")
    if not sep or not entity_id:
        raise ValueError(f"Invalid entity key: {key!r}")
    try:
        kind = EntityKind(kind_str)
    except ValueError:
        raise ValueError(f"Unknown entity kind in key: {key!r}") from None
    return kind, entity_id


def entity_path(key: str) -> str:
    """Remote path of an entity file.

    Examples:
        >>> entity_path("tasks/abc")
        '/tasks/abc.json'
    """
    parse_entity_key(key)
    return f"/{key}.json"


@dataclass
class Snapshot:
    """A value-type copy of all local app data.

    Reconciliation receives a snapshot and hands back a new one, so the
    snapshot held by the application is never mutated behind its back.
    """

    entities: dict[str, dict[str, Any]] = field(default_factory=dict)
    """Entity key -> JSON document"""

    last_modified: datetime = field(default_factory=utc_now)
    """When any entity in the snapshot last changed"""

    def get(self, key: str) -> Optional[dict[str, Any]]:
        """Return a copy of an entity's document, or None."""
        data = self.entities.get(key)
        return copy.deepcopy(data) if data is not None else None

    def put(self, key: str, data: dict[str, Any]) -> None:
        """Insert or replace an entity."""
        parse_entity_key(key)
        self.entities[key] = copy.deepcopy(data)

    def remove(self, key: str) -> bool:
        """Remove an entity. Returns True if it was present."""
        return self.entities.pop(key, None) is not None

    def keys(self) -> list[str]:
        return list(self.entities)

    def __contains__(self, key: object) -> bool:
        return key in self.entities

    def __len__(self) -> int:
        return len(self.entities)

    def __iter__(self) -> Iterator[str]:
        return iter(self.entities)

    def count_by_kind(self) -> dict[EntityKind, int]:
        counts = {kind: 0 for kind in EntityKind}
        for key in self.entities:
            kind, _ = parse_entity_key(key)
            counts[kind] += 1
        return counts

    def copy(self) -> "Snapshot":
        return Snapshot(
            entities=copy.deepcopy(self.entities),
            last_modified=self.last_modified,
        )

    def to_dict(self) -> dict:
        """Convert to the app's snapshot document (lists per kind)."""
        data: dict[str, Any] = {kind.document_field: [] for kind in EntityKind}
        for key, entity in self.entities.items():
            kind, _ = parse_entity_key(key)
            data[kind.document_field].append(copy.deepcopy(entity))
        data["lastModified"] = format_iso_timestamp(self.last_modified)
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "Snapshot":
        """Create a Snapshot from the app's snapshot document.

        Entities without a string ``id`` are skipped.

        Raises:
            ValueError: If a kind field is present but not a list
        """
        entities: dict[str, dict[str, Any]] = {}
        for kind in EntityKind:
            items = data.get(kind.document_field)
            if items is None:
                continue
            if not isinstance(items, list):
                raise ValueError(
                    f"Snapshot field '{kind.document_field}' is not a list"
                )
            for item in items:
                entity_id = item.get("id") if isinstance(item, dict) else None
                if not isinstance(entity_id, str) or not entity_id:
                    logger.warning(f"Skipping {kind.value} entry without id")
                    continue
                entities[entity_key(kind, entity_id)] = copy.deepcopy(item)

        last_modified = parse_iso_timestamp(data.get("lastModified")) or utc_now()
        return cls(entities=entities, last_modified=last_modified)
