"""Persistent replay state for incremental imports."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path

from history_import.graph.loader import format_timestamp, parse_timestamp
from history_import.graph.models import VersionRef

STATE_SCHEMA_VERSION = 1
STATE_FILE_NAME = "state.json"


@dataclass(slots=True, frozen=True)
class StateStatus:
    """Current replay state snapshot."""

    state_status: str
    last_run_timestamp: str | None
    last_id: int
    branch_count: int


@dataclass(slots=True, frozen=True)
class StateSchemaUnsupportedError(Exception):
    """Raised when stored replay state schema does not match supported version."""

    found: int
    expected: int


@dataclass(slots=True)
class ReplayState:
    """Everything a later run needs to continue from the previous emission.

    Changesets are referenced by emitted id; versions by element oid and
    branch/number coordinates.
    """

    roots: tuple[str, ...] = (".",)
    branch_patterns: tuple[str, ...] = ()
    branch_parents: dict[str, str | None] = field(default_factory=dict)
    last_id: int = 0
    started_branches: dict[str, int | None] = field(default_factory=dict)
    branch_tips: dict[str, int] = field(default_factory=dict)
    names_by_branch: dict[str, dict[str, list[str]]] = field(default_factory=dict)
    versions_by_branch: dict[str, dict[str, VersionRef]] = field(default_factory=dict)
    high_water: datetime | None = None

    def to_payload(self) -> dict[str, object]:
        return {
            "schema_version": STATE_SCHEMA_VERSION,
            "last_run_timestamp": _utc_now_iso(),
            "roots": list(self.roots),
            "branch_patterns": list(self.branch_patterns),
            "branch_parents": dict(self.branch_parents),
            "last_id": self.last_id,
            "started_branches": dict(self.started_branches),
            "branch_tips": dict(self.branch_tips),
            "names_by_branch": {
                branch: {oid: sorted(names) for oid, names in names_map.items()}
                for branch, names_map in self.names_by_branch.items()
            },
            "versions_by_branch": {
                branch: {
                    oid: {"branch": ref.branch, "number": ref.number}
                    for oid, ref in versions_map.items()
                }
                for branch, versions_map in self.versions_by_branch.items()
            },
            "high_water": None if self.high_water is None else format_timestamp(self.high_water),
        }

    @classmethod
    def from_payload(cls, payload: dict[str, object]) -> ReplayState:
        """Validate a stored payload and build the state it describes."""
        schema = payload.get("schema_version")
        if not isinstance(schema, int) or schema != STATE_SCHEMA_VERSION:
            raise StateSchemaUnsupportedError(
                found=schema if isinstance(schema, int) else -1,
                expected=STATE_SCHEMA_VERSION,
            )
        versions_by_branch: dict[str, dict[str, VersionRef]] = {}
        for branch, raw_map in _as_mapping(payload.get("versions_by_branch"), "versions").items():
            refs: dict[str, VersionRef] = {}
            for oid, raw_ref in _as_mapping(raw_map, f"versions_by_branch.{branch}").items():
                ref = _as_mapping(raw_ref, f"versions_by_branch.{branch}.{oid}")
                refs[oid] = VersionRef(
                    oid=oid,
                    branch=str(ref.get("branch", "")),
                    number=_as_int(ref.get("number"), "number"),
                )
            versions_by_branch[branch] = refs
        names_by_branch = {
            branch: {
                oid: [str(name) for name in names]
                for oid, names in _as_mapping(raw_map, f"names_by_branch.{branch}").items()
                if isinstance(names, list)
            }
            for branch, raw_map in _as_mapping(payload.get("names_by_branch"), "names").items()
        }
        started = {
            branch: None if value is None else _as_int(value, f"started_branches.{branch}")
            for branch, value in _as_mapping(payload.get("started_branches"), "started").items()
        }
        high_water = payload.get("high_water")
        return cls(
            roots=tuple(str(root) for root in _as_list(payload.get("roots"), "roots")),
            branch_patterns=tuple(
                str(pattern) for pattern in _as_list(payload.get("branch_patterns"), "patterns")
            ),
            branch_parents={
                branch: None if parent is None else str(parent)
                for branch, parent in _as_mapping(
                    payload.get("branch_parents"), "branch_parents"
                ).items()
            },
            last_id=_as_int(payload.get("last_id", 0), "last_id"),
            started_branches=started,
            branch_tips={
                branch: _as_int(value, f"branch_tips.{branch}")
                for branch, value in _as_mapping(payload.get("branch_tips"), "tips").items()
            },
            names_by_branch=names_by_branch,
            versions_by_branch=versions_by_branch,
            high_water=parse_timestamp(high_water) if isinstance(high_water, str) else None,
        )


class ReplayStateStore:
    """Reads and atomically writes the replay state file."""

    def __init__(self, data_dir: Path) -> None:
        self._data_dir = data_dir.resolve()
        self._path = self._data_dir / STATE_FILE_NAME

    @property
    def path(self) -> Path:
        return self._path

    def status(self) -> StateStatus:
        """Return status derived from the state file, if present."""
        payload = self._read_payload()
        if payload is None:
            return StateStatus(
                state_status="not_started", last_run_timestamp=None, last_id=0, branch_count=0
            )
        schema = payload.get("schema_version")
        if not isinstance(schema, int) or schema != STATE_SCHEMA_VERSION:
            return StateStatus(
                state_status="schema_mismatch", last_run_timestamp=None, last_id=0, branch_count=0
            )
        started = payload.get("started_branches")
        last_id = payload.get("last_id")
        last_run = payload.get("last_run_timestamp")
        return StateStatus(
            state_status="ready",
            last_run_timestamp=last_run if isinstance(last_run, str) else None,
            last_id=last_id if isinstance(last_id, int) else 0,
            branch_count=len(started) if isinstance(started, dict) else 0,
        )

    def load(self) -> ReplayState | None:
        """Load the stored state; ``None`` when no previous run was saved."""
        payload = self._read_payload()
        if payload is None:
            return None
        return ReplayState.from_payload(payload)

    def save(self, state: ReplayState) -> None:
        self._data_dir.mkdir(parents=True, exist_ok=True)
        _atomic_write_json(self._path, state.to_payload())

    def _read_payload(self) -> dict[str, object] | None:
        if not self._path.exists():
            return None
        with self._path.open("r", encoding="utf-8") as handle:
            payload = json.load(handle)
        if not isinstance(payload, dict):
            return None
        return payload


def _atomic_write_json(path: Path, payload: dict[str, object]) -> None:
    tmp = path.with_suffix(path.suffix + ".tmp")
    with tmp.open("w", encoding="utf-8") as handle:
        json.dump(payload, handle, sort_keys=True)
        handle.write("\n")
    tmp.replace(path)


def _utc_now_iso() -> str:
    return datetime.now(tz=UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _as_mapping(value: object, name: str) -> dict[str, object]:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ValueError(f"State field '{name}' must be an object.")
    return value


def _as_list(value: object, name: str) -> list[object]:
    if value is None:
        return []
    if not isinstance(value, list):
        raise ValueError(f"State field '{name}' must be a list.")
    return value


def _as_int(value: object, name: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"State field '{name}' must be an integer.")
    return value
