"""Structured JSONL diagnostics for a reconstruction run."""

from __future__ import annotations

import json
from collections.abc import Iterable, Mapping
from dataclasses import asdict, dataclass
from datetime import UTC, datetime
from pathlib import Path

INFO = "info"
WARNING = "warning"


@dataclass(slots=True, frozen=True)
class DiagnosticEvent:
    """One recoverable irregularity or progress note."""

    timestamp: str
    level: str
    code: str
    message: str
    metadata: dict[str, object]


def utc_timestamp() -> str:
    """Return an ISO-8601 UTC timestamp."""
    return datetime.now(tz=UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def sanitize_metadata(metadata: Mapping[str, object]) -> dict[str, object]:
    """Convert metadata values to JSON-safe primitives with stable ordering."""
    sanitized: dict[str, object] = {}
    for key in sorted(metadata.keys()):
        sanitized[key] = _sanitize_value(metadata[key])
    return sanitized


def _sanitize_value(value: object) -> object:
    if isinstance(value, (str, int, float, bool)) or value is None:
        return value
    if isinstance(value, datetime):
        return value.astimezone(UTC).isoformat(timespec="seconds").replace("+00:00", "Z")
    if isinstance(value, Mapping):
        return {str(key): _sanitize_value(value[key]) for key in sorted(value.keys(), key=str)}
    if isinstance(value, (set, frozenset)):
        return sorted(str(item) for item in value)
    if isinstance(value, Iterable):
        return [_sanitize_value(item) for item in value]
    return str(value)


class DiagnosticsLog:
    """In-memory diagnostics with optional append-only JSONL persistence."""

    def __init__(self, path: Path | None = None) -> None:
        self._path = path
        self._events: list[DiagnosticEvent] = []
        if self._path is not None:
            self._path.parent.mkdir(parents=True, exist_ok=True)

    @property
    def path(self) -> Path | None:
        """Return on-disk JSONL path, if persisted."""
        return self._path

    @property
    def events(self) -> tuple[DiagnosticEvent, ...]:
        return tuple(self._events)

    def info(self, code: str, message: str, **metadata: object) -> None:
        self.append(INFO, code, message, metadata)

    def warning(self, code: str, message: str, **metadata: object) -> None:
        self.append(WARNING, code, message, metadata)

    def append(self, level: str, code: str, message: str, metadata: Mapping[str, object]) -> None:
        """Record an event and append it as one JSON object per line."""
        event = DiagnosticEvent(
            timestamp=utc_timestamp(),
            level=level,
            code=code,
            message=message,
            metadata=sanitize_metadata(metadata),
        )
        self._events.append(event)
        if self._path is None:
            return
        with self._path.open("a", encoding="utf-8") as handle:
            handle.write(json.dumps(asdict(event), sort_keys=True))
            handle.write("\n")

    def warnings(self) -> list[DiagnosticEvent]:
        return [event for event in self._events if event.level == WARNING]

    def codes(self, level: str | None = None) -> list[str]:
        """Return event codes in emission order, optionally for one level."""
        return [event.code for event in self._events if level is None or event.level == level]

    def summary(self) -> dict[str, int]:
        """Count warnings per code."""
        counts: dict[str, int] = {}
        for event in self.warnings():
            counts[event.code] = counts.get(event.code, 0) + 1
        return dict(sorted(counts.items()))
