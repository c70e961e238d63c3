"""Label and merge consistency trackers shared across replay passes."""

from __future__ import annotations

from collections.abc import Hashable
from dataclasses import dataclass, field
from typing import TypeVar

from history_import.graph.models import Version, version_sort_key
from history_import.history.changeset import ChangeSet

K = TypeVar("K", bound=Hashable)
V = TypeVar("V")


def add_to_collection(mapping: dict[K, list[V]], key: K, value: V) -> None:
    """Append ``value`` under ``key``, creating the list on first use."""
    mapping.setdefault(key, []).append(value)


def remove_from_collection(mapping: dict[K, list[V]], key: K, value: V) -> bool:
    """Remove one ``value`` under ``key``; drop the key once its list is empty."""
    values = mapping.get(key)
    if values is None or value not in values:
        return False
    values.remove(value)
    if not values:
        del mapping[key]
    return True


def discard_from_set(mapping: dict[K, set[V]], key: K, value: V) -> bool:
    """Discard ``value`` under ``key``; drop the key once its set is empty."""
    values = mapping.get(key)
    if values is None or value not in values:
        return False
    values.discard(value)
    if not values:
        del mapping[key]
    return True


@dataclass(slots=True)
class LabelInfo:
    """Versions a label covers and the ones not yet observed during replay."""

    name: str
    versions: list[Version] = field(default_factory=list)
    missing: dict[str, set[Version]] = field(default_factory=dict)
    possibly_broken: list[tuple[Version, Version | None]] = field(default_factory=list)
    forced: bool = False

    def reset(self) -> None:
        """Rebuild the per-branch missing sets from non-zero versions."""
        self.missing = {}
        for version in self.versions:
            if version.number == 0:
                continue
            self.missing.setdefault(version.branch, set()).add(version)

    def sorted_missing(self) -> list[Version]:
        output = [version for values in self.missing.values() for version in values]
        return sorted(output, key=version_sort_key)


@dataclass(slots=True)
class MergeInfo:
    """Pairs version-level merge links between a branch and its parent.

    Keys are object identities, so insertion order is the only iteration order.
    """

    from_branch: str
    to_branch: str
    seen_from: set[Version] = field(default_factory=set)
    seen_to: set[Version] = field(default_factory=set)
    missing_from: dict[Version, ChangeSet] = field(default_factory=dict)
    missing_to: dict[Version, ChangeSet] = field(default_factory=dict)
    missing_to_by_changeset: dict[ChangeSet, set[Version]] = field(default_factory=dict)
    merges: dict[ChangeSet, ChangeSet] = field(default_factory=dict)

    def record_target(
        self, changeset: ChangeSet, from_version: Version, to_version: Version
    ) -> None:
        """Record a link whose target version lives in ``changeset``."""
        if to_version in self.seen_to:
            return
        self.seen_to.add(to_version)
        from_changeset = self.missing_to.pop(to_version, None)
        if from_changeset is None:
            self.missing_from[from_version] = changeset
            return
        pending = self.missing_to_by_changeset[from_changeset]
        pending.discard(to_version)
        if not pending:
            del self.missing_to_by_changeset[from_changeset]
            self.merges[from_changeset] = changeset

    def record_source(
        self, changeset: ChangeSet, from_version: Version, to_version: Version
    ) -> None:
        """Record a link whose source version lives in ``changeset``."""
        if from_version in self.seen_from:
            return
        self.seen_from.add(from_version)
        to_changeset = self.missing_from.pop(from_version, None)
        if to_changeset is None:
            self.missing_to[to_version] = changeset
            self.missing_to_by_changeset.setdefault(changeset, set()).add(to_version)
            return
        existing = self.merges.get(changeset)
        if existing is None or existing.id < to_changeset.id:
            self.merges[changeset] = to_changeset

    @property
    def is_complete(self) -> bool:
        return not self.missing_from and not self.missing_to

    def __str__(self) -> str:
        return f"{self.from_branch} -> {self.to_branch}"
