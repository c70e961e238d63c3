"""Raw clustering of versions into per-branch, per-author changesets."""

from __future__ import annotations

from bisect import bisect_left
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import timedelta

from history_import.graph.models import (
    MAIN_BRANCH,
    Element,
    Version,
    VersionGraph,
    normalize_path,
)
from history_import.history.branches import filter_branches, infer_branch_parents
from history_import.history.changeset import ChangeSet
from history_import.history.trackers import LabelInfo
from history_import.logging import DiagnosticsLog


def is_inside_roots(path: str, roots: Iterable[str]) -> bool:
    """Return True when ``path`` is one of the roots or lies below one."""
    normalized = normalize_path(path)
    root_list = [normalize_path(root) for root in roots]
    if not root_list or "." in root_list or normalized == ".":
        return True
    return any(normalized == root or normalized.startswith(root + "/") for root in root_list)


@dataclass(slots=True)
class ClusterResult:
    """Raw changesets plus the branch hierarchy and labels discovered while clustering."""

    changesets: list[ChangeSet]
    branch_parents: dict[str, str | None]
    labels: dict[str, LabelInfo]
    removed_branches: set[str] = field(default_factory=set)


class RawClusterer:
    """Groups versions by (branch, author) into changesets within a time window."""

    def __init__(
        self,
        graph: VersionGraph,
        diagnostics: DiagnosticsLog,
        roots: tuple[str, ...] = (".",),
        branch_patterns: tuple[str, ...] = (),
        labels: tuple[str, ...] | None = None,
        max_delay: timedelta = timedelta(minutes=30),
    ) -> None:
        self._graph = graph
        self._diagnostics = diagnostics
        self._roots = roots
        self._branch_patterns = branch_patterns
        self._label_filter = None if labels is None else set(labels)
        self._max_delay = max_delay
        self._groups: dict[str, dict[str, list[ChangeSet]]] = {}
        self._labels: dict[str, LabelInfo] = {}

    def build(self, new_versions: list[Version] | None = None) -> ClusterResult:
        """Cluster every version in scope, or only ``new_versions`` when given."""
        self._groups = {}
        self._labels = {}
        full_names: set[str] = set()

        if new_versions is not None:
            fresh = set(new_versions)
            for version in new_versions:
                element = self._graph.element(version.oid)
                if not is_inside_roots(element.name, self._roots):
                    continue
                full_names.add(element.branches[version.branch].full_name)
                self._process_version(element, version, fresh)
        else:
            for element in self._graph.elements.values():
                if not is_inside_roots(element.name, self._roots):
                    continue
                for branch in element.branches.values():
                    full_names.add(branch.full_name)
                    for version in branch.versions:
                        self._process_version(element, version, None)

        branch_parents = infer_branch_parents(full_names, self._diagnostics)
        removed = filter_branches(branch_parents, self._branch_patterns, self._diagnostics)
        for branch in removed:
            self._groups.pop(branch, None)
        self._filter_labels(branch_parents)

        changesets = [
            changeset
            for by_author in self._groups.values()
            for group in by_author.values()
            for changeset in group
        ]
        changesets.sort(key=lambda cs: (cs.start, cs.branch, cs.author_login, cs.finish))
        return ClusterResult(
            changesets=changesets,
            branch_parents=branch_parents,
            labels=self._labels,
            removed_branches=removed,
        )

    def _process_version(
        self, element: Element, version: Version, fresh: set[Version] | None
    ) -> None:
        label_version = self._version_for_label(element, version)
        if fresh is None or label_version in fresh:
            for label in version.labels:
                if label not in label_version.labels:
                    label_version.labels.append(label)
                if self._label_filter is not None and label not in self._label_filter:
                    continue
                info = self._labels.get(label)
                if info is None:
                    info = LabelInfo(name=label)
                    self._labels[label] = info
                if label_version not in info.versions:
                    info.versions.append(label_version)
        if label_version is not version:
            version.labels.clear()

        if version.number == 0 and (element.is_directory or not self._graph.is_solo(element.oid)):
            return
        by_author = self._groups.setdefault(version.branch, {})
        group = by_author.setdefault(version.author_login, [])
        self._add_version(group, version)

    def _version_for_label(self, element: Element, version: Version) -> Version:
        """Follow version 0 back to the branching point it is identical to."""
        current = version
        while current.number == 0:
            owner = self._graph.element(current.oid).branches[current.branch]
            if owner.branching_point is None:
                break
            point = self._graph.resolve(owner.branching_point)
            if point is None:
                break
            current = point
        return current

    def _add_version(self, group: list[ChangeSet], version: Version) -> None:
        if not group:
            group.append(self._new_changeset(version))
            return
        index = bisect_left(group, version.date, key=lambda cs: cs.start)
        if index < len(group) and group[index].start == version.date:
            group[index].add(version)
            return
        delay = self._max_delay
        if index == len(group):
            last = group[-1]
            if version.date <= last.finish + delay:
                last.add(version)
            else:
                group.append(self._new_changeset(version))
            return
        if index == 0:
            first = group[0]
            if version.date >= first.start - delay:
                first.add(version)
            else:
                group.insert(0, self._new_changeset(version))
            return

        left = group[index - 1]
        right = group[index]
        joins_left = version.date <= left.finish + delay
        joins_right = version.date >= right.start - delay
        if joins_left and not joins_right:
            left.add(version)
        elif joins_right and not joins_left:
            right.add(version)
        elif not joins_left:
            group.insert(index, self._new_changeset(version))
        else:
            # the version bridges both neighbours
            left.add(version)
            for named in right.versions:
                left.add(named.version)
            left.skipped_versions.extend(right.skipped_versions)
            del group[index]

    def _new_changeset(self, version: Version) -> ChangeSet:
        changeset = ChangeSet.starting_at(
            version.author_name, version.author_login, version.branch, version.date
        )
        changeset.add(version)
        return changeset

    def _filter_labels(self, branch_parents: dict[str, str | None]) -> None:
        for name in list(self._labels):
            info = self._labels[name]
            excluded = sorted(
                {
                    version.branch
                    for version in info.versions
                    if version.branch != MAIN_BRANCH and version.branch not in branch_parents
                }
            )
            if excluded:
                self._diagnostics.info(
                    "LABEL_FILTERED",
                    f"Label {name} filtered : was on excluded branch(es) {', '.join(excluded)}",
                    label=name,
                    branches=excluded,
                )
                del self._labels[name]
                continue
            if not any(
                is_inside_roots(self._graph.element(version.oid).name, self._roots)
                for version in info.versions
            ):
                self._diagnostics.info(
                    "LABEL_FILTERED",
                    f"Label {name} filtered : no version inside the imported roots",
                    label=name,
                )
                del self._labels[name]
                continue
            info.reset()
