"""Load an exported version graph and apply date bounds."""

from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path

from history_import.errors import HistoryError
from history_import.graph.models import (
    DIRECTORY,
    FILE,
    SYMLINK,
    LabelMeta,
    VersionGraph,
    VersionRef,
    branch_short_name,
)

GRAPH_SCHEMA_VERSION = 1


@dataclass(slots=True, frozen=True)
class GraphSchemaUnsupportedError(Exception):
    """Raised when an exported graph does not match the supported schema."""

    found: int
    expected: int


def parse_timestamp(value: str) -> datetime:
    """Parse an ISO-8601 timestamp, treating naive values as UTC."""
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=UTC)
    return parsed.astimezone(UTC)


def format_timestamp(value: datetime) -> str:
    """Render a timestamp the way exports and snapshots store it."""
    return value.astimezone(UTC).isoformat(timespec="seconds").replace("+00:00", "Z")


def load_graph(path: Path) -> VersionGraph:
    """Load and validate a JSON graph export."""
    with path.open("r", encoding="utf-8") as handle:
        payload = json.load(handle)
    if not isinstance(payload, dict):
        raise HistoryError(code="INVALID_GRAPH", message=f"{path} must contain a JSON object.")
    return graph_from_payload(payload)


def graph_from_payload(payload: dict[str, object]) -> VersionGraph:
    """Build a graph from a decoded export payload."""
    schema = payload.get("schema_version")
    if not isinstance(schema, int):
        raise GraphSchemaUnsupportedError(found=-1, expected=GRAPH_SCHEMA_VERSION)
    if schema != GRAPH_SCHEMA_VERSION:
        raise GraphSchemaUnsupportedError(found=schema, expected=GRAPH_SCHEMA_VERSION)

    graph = VersionGraph()
    elements = payload.get("elements", [])
    if not isinstance(elements, list):
        raise HistoryError(code="INVALID_GRAPH", message="'elements' must be a list.")
    for raw_element in elements:
        _load_element(graph, _as_dict(raw_element, "element"))

    labels = payload.get("labels", [])
    if not isinstance(labels, list):
        raise HistoryError(code="INVALID_GRAPH", message="'labels' must be a list.")
    for raw_label in labels:
        label = _as_dict(raw_label, "label")
        graph.add_label_meta(
            LabelMeta(
                name=_require_str(label, "name"),
                author_name=_optional_str(label, "author_name"),
                author_login=_optional_str(label, "author_login"),
                created=parse_timestamp(_require_str(label, "created")),
            )
        )
    graph.validate()
    return graph


def apply_date_bounds(
    graph: VersionGraph, apex_date: datetime | None, origin_date: datetime | None
) -> int:
    """Drop versions after ``origin_date`` and fudge flagged elements to ``apex_date``.

    Returns the number of versions dropped.
    """
    dropped = 0
    if origin_date is not None:
        for oid in list(graph.elements):
            element = graph.elements[oid]
            for name in list(element.branches):
                branch = element.branches[name]
                kept = [version for version in branch.versions if version.date <= origin_date]
                dropped += len(branch.versions) - len(kept)
                branch.versions[:] = kept
                if not kept:
                    del element.branches[name]
            if not element.branches and not element.is_symlink:
                del graph.elements[oid]
    if apex_date is not None:
        for element in graph.elements.values():
            if not element.fudge_date:
                continue
            for branch in element.branches.values():
                for version in branch.versions:
                    version.date = apex_date
    return dropped


def _load_element(graph: VersionGraph, raw: dict[str, object]) -> None:
    oid = _require_str(raw, "oid")
    kind = raw.get("kind", FILE)
    if kind not in (FILE, DIRECTORY, SYMLINK):
        raise HistoryError(code="INVALID_GRAPH", message=f"Element {oid} has unknown kind {kind}.")
    fudge_date = raw.get("fudge_date", False)
    if not isinstance(fudge_date, bool):
        raise HistoryError(
            code="INVALID_GRAPH", message=f"Element {oid} 'fudge_date' must be bool."
        )
    graph.add_element(
        oid=oid,
        name=_require_str(raw, "name"),
        kind=str(kind),
        target=raw.get("target") if isinstance(raw.get("target"), str) else None,
        directory=raw.get("directory") if isinstance(raw.get("directory"), str) else None,
        fudge_date=fudge_date,
    )
    if kind == SYMLINK:
        return
    branches = raw.get("branches", [])
    if not isinstance(branches, list):
        raise HistoryError(
            code="INVALID_GRAPH", message=f"Element {oid} 'branches' must be a list."
        )
    for raw_branch in branches:
        branch = _as_dict(raw_branch, "branch")
        full_name = _require_str(branch, "full_name")
        branching_point = None
        raw_point = branch.get("branching_point")
        if raw_point is not None:
            branching_point = _version_ref(oid, _as_dict(raw_point, "branching_point"))
        graph.add_branch(oid, full_name, branching_point)
        short_name = branch_short_name(full_name)
        raw_versions = branch.get("versions", [])
        if not isinstance(raw_versions, list):
            raise HistoryError(
                code="INVALID_GRAPH",
                message=f"Branch {full_name} of {oid} 'versions' must be a list.",
            )
        for raw_version in raw_versions:
            _load_version(graph, oid, short_name, _as_dict(raw_version, "version"))


def _load_version(graph: VersionGraph, oid: str, branch: str, raw: dict[str, object]) -> None:
    number = raw.get("number")
    if not isinstance(number, int) or number < 0:
        raise HistoryError(
            code="INVALID_GRAPH", message=f"Version of {oid} on {branch} has invalid number."
        )
    content: list[tuple[str, str]] | None = None
    raw_content = raw.get("content")
    if raw_content is not None:
        if not isinstance(raw_content, list):
            raise HistoryError(code="INVALID_GRAPH", message=f"{oid} content must be a list.")
        content = []
        for entry in raw_content:
            if (
                not isinstance(entry, list)
                or len(entry) != 2
                or not all(isinstance(part, str) for part in entry)
            ):
                raise HistoryError(
                    code="INVALID_GRAPH",
                    message=f"{oid} content entries must be [name, oid] pairs.",
                )
            content.append((entry[0], entry[1]))
    graph.add_version(
        oid=oid,
        branch=branch,
        number=number,
        author_name=_optional_str(raw, "author_name"),
        author_login=_optional_str(raw, "author_login"),
        date=parse_timestamp(_require_str(raw, "date")),
        comment=_optional_str(raw, "comment"),
        activity=_optional_str(raw, "activity"),
        labels=_string_list(raw, "labels"),
        merges_to=[_version_ref(oid, _as_dict(item, "merge")) for item in _list(raw, "merges_to")],
        merges_from=[
            _version_ref(oid, _as_dict(item, "merge")) for item in _list(raw, "merges_from")
        ],
        content=content,
    )


def _version_ref(default_oid: str, raw: dict[str, object]) -> VersionRef:
    number = raw.get("number")
    if not isinstance(number, int):
        raise HistoryError(
            code="INVALID_GRAPH", message=f"Reference from {default_oid} lacks number."
        )
    oid = raw.get("oid", default_oid)
    if not isinstance(oid, str):
        raise HistoryError(
            code="INVALID_GRAPH", message=f"Reference from {default_oid} has bad oid."
        )
    return VersionRef(oid=oid, branch=_require_str(raw, "branch"), number=number)


def _as_dict(value: object, what: str) -> dict[str, object]:
    if not isinstance(value, dict):
        raise HistoryError(code="INVALID_GRAPH", message=f"Each {what} must be a JSON object.")
    return value


def _list(raw: dict[str, object], key: str) -> list[object]:
    value = raw.get(key, [])
    if not isinstance(value, list):
        raise HistoryError(code="INVALID_GRAPH", message=f"'{key}' must be a list.")
    return value


def _string_list(raw: dict[str, object], key: str) -> list[str]:
    output: list[str] = []
    for item in _list(raw, key):
        if not isinstance(item, str):
            raise HistoryError(code="INVALID_GRAPH", message=f"'{key}' must contain only strings.")
        output.append(item)
    return output


def _require_str(raw: dict[str, object], key: str) -> str:
    value = raw.get(key)
    if not isinstance(value, str):
        raise HistoryError(code="INVALID_GRAPH", message=f"Field '{key}' must be a string.")
    return value


def _optional_str(raw: dict[str, object], key: str) -> str:
    value = raw.get(key)
    if isinstance(value, str):
        return value
    return ""
