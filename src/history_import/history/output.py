"""Serializable records for emitted changesets and label outcomes."""

from __future__ import annotations

import json
from pathlib import Path

from history_import.graph.loader import format_timestamp
from history_import.history.branches import case_collision_renames
from history_import.history.changeset import ChangeSet, build_commit_message
from history_import.history.trackers import LabelInfo


def branch_renames_for(changesets: list[ChangeSet]) -> dict[str, str]:
    """Target-side renames for branch names that differ only by case."""
    branches: dict[str, None] = {}
    for changeset in changesets:
        branches.setdefault(changeset.branch, None)
    return case_collision_renames(branches)


def changeset_to_record(
    changeset: ChangeSet, branch_renames: dict[str, str] | None = None
) -> dict[str, object]:
    """Convert a changeset into the JSON record handed to the target writer."""
    renames = branch_renames or {}
    point = changeset.branching_point
    return {
        "id": changeset.id,
        "branch": renames.get(changeset.branch, changeset.branch),
        "author_name": changeset.author_name,
        "author_login": changeset.author_login,
        "start": format_timestamp(changeset.start),
        "finish": format_timestamp(changeset.finish),
        "message": build_commit_message(changeset),
        "branching_point": None if point is None else point.id,
        "merges": [merged.id for merged in changeset.merges],
        "labels": list(changeset.labels),
        "renamed": [[old, new] for old, new in changeset.renamed],
        "copied": [[source, target] for source, target in changeset.copied],
        "removed": list(changeset.removed),
        "symlinks": [[path, target] for path, target in changeset.symlinks],
        "files": [
            {
                "oid": named.version.oid,
                "branch": named.version.branch,
                "number": named.version.number,
                "names": list(named.names),
            }
            for named in changeset.versions
            if not named.version.is_directory and named.names
        ],
    }


def label_report(
    labels: dict[str, LabelInfo], changesets: list[ChangeSet]
) -> list[dict[str, object]]:
    """Describe where every retained label ended up."""
    applied: dict[str, int] = {}
    for changeset in changesets:
        for label in changeset.labels:
            applied[label] = changeset.id
    output: list[dict[str, object]] = []
    for name in sorted(labels):
        info = labels[name]
        output.append(
            {
                "name": name,
                "changeset": applied.get(name),
                "forced": info.forced,
                "missing": [str(version) for version in info.sorted_missing()],
                "possibly_broken": [
                    {
                        "expected": str(expected),
                        "actual": None if actual is None else str(actual),
                    }
                    for expected, actual in info.possibly_broken
                ],
            }
        )
    return output


def write_changesets(
    path: Path, changesets: list[ChangeSet], branch_renames: dict[str, str] | None = None
) -> None:
    """Write one JSON record per changeset, replacing the file atomically."""
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(path.suffix + ".tmp")
    with tmp.open("w", encoding="utf-8") as handle:
        for changeset in changesets:
            record = changeset_to_record(changeset, branch_renames)
            handle.write(json.dumps(record, sort_keys=True))
            handle.write("\n")
    tmp.replace(path)


def write_json(path: Path, payload: object) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(path.suffix + ".tmp")
    with tmp.open("w", encoding="utf-8") as handle:
        json.dump(payload, handle, sort_keys=True, indent=2)
        handle.write("\n")
    tmp.replace(path)
