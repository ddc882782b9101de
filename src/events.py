"""
Watch Events - Parsing of Kubernetes watch stream events.

The API server streams one JSON object per line for a watch request. Each
carries an event type and the affected object (or a Status on ERROR).
"""

import json
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional, Union

from resources import NamespacedName


class EventType(Enum):
    """Types of watch events."""

    ADDED = "ADDED"
    MODIFIED = "MODIFIED"
    DELETED = "DELETED"
    BOOKMARK = "BOOKMARK"
    ERROR = "ERROR"


@dataclass
class WatchEvent:
    """A single event from a watch stream."""

    event_type: EventType
    object: Dict[str, Any]

    @classmethod
    def from_line(cls, line: Union[bytes, str]) -> "WatchEvent":
        """
        Parse one line of a watch stream.

        Args:
            line: Raw JSON line as received from the API server

        Returns:
            The parsed WatchEvent

        Raises:
            ValueError: If the line is not a valid watch event
        """
        if isinstance(line, bytes):
            line = line.decode("utf-8")

        try:
            data = json.loads(line)
        except json.JSONDecodeError as e:
            raise ValueError(f"Malformed watch event: {e}") from e

        if not isinstance(data, dict):
            raise ValueError("Malformed watch event: expected a JSON object")

        try:
            event_type = EventType(data.get("type"))
        except ValueError:
            raise ValueError(f"Unknown watch event type: {data.get('type')!r}")

        return cls(event_type=event_type, object=data.get("object") or {})

    @property
    def metadata(self) -> Dict[str, Any]:
        return self.object.get("metadata") or {}

    @property
    def resource_version(self) -> Optional[str]:
        return self.metadata.get("resourceVersion")

    @property
    def namespaced_name(self) -> Optional[NamespacedName]:
        """Key of the affected object, None for events without one."""
        name = self.metadata.get("name")
        if not name:
            return None
        return NamespacedName(self.metadata.get("namespace", ""), name)

    @property
    def status_code(self) -> Optional[int]:
        """HTTP code carried by an ERROR event's Status object."""
        if self.event_type != EventType.ERROR:
            return None
        return self.object.get("code")
