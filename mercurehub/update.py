"""Updates published to the hub and dispatched to subscribers."""

from __future__ import annotations

import json
import uuid
from dataclasses import dataclass, field
from typing import Any


def _field(values: dict[str, Any], name: str, kind: type, default: Any) -> Any:
    value = values.get(name)
    if value is None:
        return default
    if not isinstance(value, kind) or (kind is int and isinstance(value, bool)):
        raise ValueError(f"invalid update JSON: {name!r} has the wrong type")
    return value


@dataclass
class Update:
    """An update to send to subscribers, with the server-sent event it carries."""

    topics: list[str] = field(default_factory=list)
    private: bool = False
    debug: bool = False
    data: str = ""
    id: str = ""
    type: str = ""
    retry: int = 0

    def log_fields(self) -> dict[str, Any]:
        """Return the structured fields used when logging this update."""
        fields: dict[str, Any] = {
            "id": self.id,
            "type": self.type,
            "retry": self.retry,
            "topics": list(self.topics),
            "private": self.private,
        }
        if self.debug:
            fields["data"] = self.data
        return fields

    def to_json(self) -> str:
        """Serialize the update for storage."""
        return json.dumps(
            {
                "Topics": list(self.topics),
                "Private": self.private,
                "Debug": self.debug,
                "Data": self.data,
                "ID": self.id,
                "Type": self.type,
                "Retry": self.retry,
            },
            separators=(",", ":"),
            ensure_ascii=False,
        )

    @classmethod
    def from_json(cls, data: str | bytes) -> Update:
        """Build an update from its stored JSON form; keys match case-insensitively."""
        try:
            raw = json.loads(data)
        except ValueError as exc:
            raise ValueError(f"invalid update JSON: {exc}") from exc
        if not isinstance(raw, dict):
            raise ValueError("invalid update JSON: expected an object")
        values = {str(key).lower(): value for key, value in raw.items()}

        topics = _field(values, "topics", list, [])
        if not all(isinstance(t, str) for t in topics):
            raise ValueError("invalid update JSON: 'topics' must be a list of strings")
        retry = _field(values, "retry", int, 0)
        if retry < 0:
            raise ValueError("invalid update JSON: 'retry' must be non-negative")

        return cls(
            topics=list(topics),
            private=_field(values, "private", bool, False),
            debug=_field(values, "debug", bool, False),
            data=_field(values, "data", str, ""),
            id=_field(values, "id", str, ""),
            type=_field(values, "type", str, ""),
            retry=retry,
        )


def assign_uuid(update: Update) -> None:
    """Give the update a fresh UUID URN unless it already has an ID."""
    if not update.id:
        update.id = f"urn:uuid:{uuid.uuid4()}"