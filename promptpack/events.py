"""Deploy and watch event stream.

Events are plain frozen dataclasses; `to_dict()` adds an `event` tag so a
sink can render them as JSON lines without knowing the concrete type.
"""

from __future__ import annotations

import json
import sys
from dataclasses import dataclass, fields
from typing import Any, Callable, TextIO


@dataclass(frozen=True)
class Event:
    event_name = "event"

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"event": self.event_name}
        for f in fields(self):
            v = getattr(self, f.name)
            out[f.name] = list(v) if isinstance(v, tuple) else v
        return out


# -------------------------
# Deploy


@dataclass(frozen=True)
class DeployStarted(Event):
    event_name = "start"
    total: int


@dataclass(frozen=True)
class FileWritten(Event):
    event_name = "file_written"
    index: int
    path: str


@dataclass(frozen=True)
class FileSkipped(Event):
    event_name = "file_skipped"
    index: int
    path: str
    reason: str


@dataclass(frozen=True)
class FileError(Event):
    event_name = "file_error"
    index: int
    path: str
    error: str


@dataclass(frozen=True)
class OrphansDetected(Event):
    event_name = "orphans_detected"
    total: int
    safe_to_delete: int


@dataclass(frozen=True)
class OrphanDeleted(Event):
    event_name = "orphan_deleted"
    path: str


@dataclass(frozen=True)
class DeployComplete(Event):
    event_name = "complete"
    written: int
    skipped: int
    deleted: int
    errors: int


# -------------------------
# Watch


@dataclass(frozen=True)
class WatchStarted(Event):
    event_name = "watch_started"
    source: str
    watching: tuple[str, ...] = ()


@dataclass(frozen=True)
class FileChanged(Event):
    event_name = "file_changed"
    path: str


@dataclass(frozen=True)
class SyncStarted(Event):
    event_name = "sync_started"


@dataclass(frozen=True)
class SyncComplete(Event):
    event_name = "sync_complete"
    written: int
    skipped: int
    errors: int


@dataclass(frozen=True)
class WatchError(Event):
    event_name = "error"
    message: str


@dataclass(frozen=True)
class Shutdown(Event):
    event_name = "shutdown"


EventSink = Callable[[Event], None]


def noop_sink(event: Event) -> None:
    return None


class CollectingSink:
    def __init__(self) -> None:
        self.events: list[Event] = []

    def __call__(self, event: Event) -> None:
        self.events.append(event)

    def names(self) -> list[str]:
        return [e.event_name for e in self.events]


class JsonLinesSink:
    """Write one JSON object per event, tagged with the command name."""

    def __init__(self, command: str, stream: TextIO | None = None) -> None:
        self.command = command
        self.stream = stream

    def __call__(self, event: Event) -> None:
        data = event.to_dict()
        data["command"] = self.command
        out = self.stream or sys.stdout
        out.write(json.dumps(data, sort_keys=True, ensure_ascii=False) + "\n")
        out.flush()
