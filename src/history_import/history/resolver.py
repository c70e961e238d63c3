"""Per-changeset directory resolution into names and tree operations."""

from __future__ import annotations

import hashlib
from dataclasses import dataclass

from history_import.errors import HistoryError
from history_import.graph.models import (
    MAIN_BRANCH,
    Element,
    Version,
    VersionGraph,
    join_path,
    normalize_path,
)
from history_import.history.changeset import ChangeSet, NamedVersion
from history_import.history.trackers import (
    add_to_collection,
    discard_from_set,
    remove_from_collection,
)
from history_import.logging import DiagnosticsLog

OrphanMap = dict[str, list[tuple[str, NamedVersion]]]


@dataclass(slots=True, frozen=True)
class _PendingAdd:
    oid: str
    base: str | None
    name: str
    ancestors: frozenset[str]


class TreeResolver:
    """Resolves one changeset against the branch's current names and versions.

    ``names`` and ``versions`` are the branch state and are updated in place;
    ``orphans`` is shared across branches for the whole replay.
    """

    def __init__(
        self,
        graph: VersionGraph,
        changeset: ChangeSet,
        names: dict[str, set[str]],
        versions: dict[str, Version],
        orphans: OrphanMap,
        roots: tuple[str, ...],
        diagnostics: DiagnosticsLog,
    ) -> None:
        self._graph = graph
        self._changeset = changeset
        self._names = names
        self._versions = versions
        self._orphans = orphans
        self._roots = {normalize_path(root) for root in roots}
        self._diagnostics = diagnostics
        self._old_versions: dict[str, Version | None] = {}
        self._new_orphans: list[Version] = []

    def resolve(self) -> list[Version]:
        """Apply the changeset and return the versions that became orphans."""
        changeset = self._changeset
        for named in changeset.versions:
            oid = named.version.oid
            if oid not in self._old_versions:
                self._old_versions[oid] = self._versions.get(oid)
            self._versions[oid] = named.version

        self._process_directory_changes()

        for named in list(changeset.versions):
            version = named.version
            solo = self._graph.is_solo(version.oid)
            if named.names and not solo:
                continue
            element_names = self._names.get(version.oid)
            if element_names is None:
                if named.names:
                    raise HistoryError(
                        code="MISSING_NAME_ENTRY",
                        message=f"Version {version} was named but has no name entry.",
                    )
                if version.number == 0 and not solo:
                    continue
                self._diagnostics.info(
                    "ORPHAN_VERSION",
                    f"Version {version} not yet visible in any imported directory version",
                    version=str(version),
                    changeset=changeset.id,
                )
                add_to_collection(self._orphans, version.oid, (changeset.branch, named))
                changeset.versions.remove(named)
                self._new_orphans.append(version)
                continue
            if solo and version.number == 0:
                self._diagnostics.info(
                    "SOLO_VERSION_KEPT",
                    f"Keeping {version} because it is the only version of its element",
                    version=str(version),
                )
            for name in sorted(element_names):
                if name not in named.names:
                    named.names.append(name)
        return self._new_orphans

    def _process_directory_changes(self) -> None:
        ordered = self._ordered_directory_versions()
        removed: dict[str, list[tuple[str, str]]] = {}
        added: dict[str, list[tuple[str, str]]] = {}
        for version in ordered:
            if version.number == 0:
                continue
            self._diff_with_previous(version, removed, added)

        renamed = self._process_removals(removed, added)

        for version in ordered:
            if any(
                other.oid == version.oid and other.number > version.number for other in ordered
            ):
                continue
            element_names = self._names.get(version.oid)
            if element_names is None:
                root_name = normalize_path(self._graph.element(version.oid).name)
                if root_name not in self._roots:
                    continue
                element_names = {root_name}
                self._names[version.oid] = element_names
            for base in sorted(element_names):
                self._update_child_names(version, base)

        self._process_renames(renamed, added)

        for oid, entries in list(added.items()):
            for parent_oid, name in entries:
                parent_names = self._names.get(parent_oid)
                if not parent_names:
                    self._add_element(oid, None, name)
                    continue
                for base in sorted(parent_names):
                    self._add_element(oid, base, name)

    def _ordered_directory_versions(self) -> list[Version]:
        """Order directory versions so that containers come before their content."""
        unordered = [
            named.version for named in self._changeset.versions if named.version.is_directory
        ]
        ordered: list[Version] = []
        while unordered:
            referenced = {child for version in unordered for _, child in version.content}
            layer = [version for version in unordered if version.oid not in referenced]
            if not layer:
                raise HistoryError(
                    code="DIRECTORY_CYCLE",
                    message=(
                        f"Circular references among directory versions of changeset "
                        f"{self._changeset.id}: "
                        + ", ".join(str(version) for version in unordered)
                    ),
                )
            unordered = [
                version
                for version in unordered
                if not any(version is member for member in layer)
            ]
            ordered.extend(sorted(layer, key=lambda version: version.number))
        return ordered

    def _diff_with_previous(
        self,
        version: Version,
        removed: dict[str, list[tuple[str, str]]],
        added: dict[str, list[tuple[str, str]]],
    ) -> None:
        previous = self._graph.previous_version(version)
        if previous is None or previous.number == 0:
            previous = self._old_versions.get(version.oid)
        current_entries = set(version.content)
        previous_entries = set(previous.content) if previous is not None else set()

        for name, child in previous.content if previous is not None else ():
            if (name, child) in current_entries:
                continue
            entry = (version.oid, name)
            if not remove_from_collection(added, child, entry):
                add_to_collection(removed, child, entry)
        for name, child in version.content:
            if (name, child) not in previous_entries:
                add_to_collection(added, child, (version.oid, name))

        previous_children = {child for _, child in previous_entries}
        for child in list(added):
            if child not in removed or child in previous_children:
                continue
            for entry in list(added[child]):
                if child in removed and entry in removed[child]:
                    self._diagnostics.info(
                        "NOOP_ENTRY_DISCARDED",
                        f"Entry {entry[1]} of {child} added and removed in the same changeset",
                        element=child,
                        name=entry[1],
                    )
                    remove_from_collection(added, child, entry)
                    remove_from_collection(removed, child, entry)

    def _process_removals(
        self,
        removed: dict[str, list[tuple[str, str]]],
        added: dict[str, list[tuple[str, str]]],
    ) -> list[tuple[str, str]]:
        """Remove old names; return (element, old name) pairs that become renames."""
        changeset = self._changeset
        renamed: list[tuple[str, str]] = []
        removed_names: dict[str, set[str]] = {}
        for oid, entries in removed.items():
            element = self._graph.element(oid)
            unversioned = not element.is_symlink and (
                oid not in self._versions
                or (oid in self._old_versions and self._old_versions[oid] is None)
            )
            if unversioned:
                self._diagnostics.info(
                    "REMOVED_BEFORE_VERSION",
                    f"Element {element.name} removed before any of its versions was imported",
                    element=oid,
                )
            is_renamed = (
                not unversioned
                and oid in added
                and not element.is_symlink
                and not self._was_empty_directory(oid)
            )
            for parent_oid, name in entries:
                parent_names = self._names.get(parent_oid) or removed_names.get(parent_oid)
                if not parent_names:
                    continue
                for parent_name in sorted(parent_names):
                    old_name = join_path(parent_name, name)
                    if is_renamed and not any(pending == oid for pending, _ in renamed):
                        renamed.append((oid, old_name))
                        continue
                    if (
                        not unversioned
                        and not self._was_empty_directory(oid)
                        and old_name not in changeset.removed
                        and not any(old_name.startswith(path + "/") for path in changeset.removed)
                    ):
                        changeset.removed.append(old_name)
                    self._remove_element_name(oid, old_name, removed_names)
        return renamed

    def _was_empty_directory(self, oid: str) -> bool:
        seen: set[str] = set()
        stack = [oid]
        while stack:
            current = stack.pop()
            if current in seen:
                continue
            seen.add(current)
            element = self._graph.find_element(current)
            if element is None or not element.is_directory:
                return False
            version = self._previous_state(current)
            if version is not None:
                stack.extend(child for _, child in version.content)
        return True

    def _previous_state(self, oid: str) -> Version | None:
        if oid in self._old_versions:
            return self._old_versions[oid]
        return self._versions.get(oid)

    def _remove_element_name(
        self, oid: str, name: str, removed_names: dict[str, set[str]]
    ) -> None:
        stack: list[tuple[str, str, frozenset[str]]] = [(oid, name, frozenset())]
        while stack:
            current, path, ancestors = stack.pop()
            discard_from_set(self._names, current, path)
            element = self._graph.find_element(current)
            if element is None or not element.is_directory or current in ancestors:
                continue
            removed_names.setdefault(current, set()).add(path)
            version = self._previous_state(current)
            if version is None:
                continue
            for child_name, child in version.content:
                stack.append((child, join_path(path, child_name), ancestors | {current}))

    def _update_child_names(self, version: Version, base: str) -> None:
        stack: list[tuple[Version, str, frozenset[str]]] = [
            (version, base, frozenset({version.oid}))
        ]
        while stack:
            directory, path, ancestors = stack.pop()
            for child_name, child in directory.content:
                child_path = join_path(path, child_name)
                self._names.setdefault(child, set()).add(child_path)
                if child in ancestors:
                    continue
                element = self._graph.find_element(child)
                if element is None or not element.is_directory:
                    continue
                child_version = self._versions.get(child)
                if child_version is not None:
                    stack.append((child_version, child_path, ancestors | {child}))

    def _process_renames(
        self, renamed: list[tuple[str, str]], added: dict[str, list[tuple[str, str]]]
    ) -> None:
        changeset = self._changeset
        for oid, original_name in renamed:
            self._remove_element_name(oid, original_name, {})
            old_name = original_name
            conflicting = -1
            for index, (source, target) in enumerate(changeset.renamed):
                if old_name.startswith(source + "/"):
                    old_name = target + old_name[len(source) :]
                if target == old_name:
                    conflicting = index

            renamed_to: str | None = None
            for parent_oid, child_name in added.get(oid, []):
                parent_names = self._names.get(parent_oid)
                if not parent_names:
                    continue
                for parent_name in sorted(parent_names):
                    target = join_path(parent_name, child_name)
                    self._retarget_children(target, old_name)
                    if renamed_to is None:
                        renamed_to = target
                        self._record_rename(old_name, target, conflicting)
                    else:
                        changeset.copied.append((renamed_to, target))
                    if target in changeset.removed:
                        changeset.removed.remove(target)

            if renamed_to is None:
                self._diagnostics.info(
                    "RENAME_TARGET_NOT_VISIBLE",
                    f"Element {old_name} moved to a directory outside the imported tree",
                    element=oid,
                    name=old_name,
                )
                if old_name not in changeset.removed:
                    changeset.removed.append(old_name)
            added.pop(oid, None)
        self._rebase_removals()

    def _record_rename(self, old_name: str, target: str, conflicting: int) -> None:
        renames = self._changeset.renamed
        if conflicting == -1:
            renames.append((old_name, target))
        elif renames[conflicting][0] != target:
            # the earlier rename writes to our old name, so move out of its way first
            renames.insert(conflicting, (old_name, target))
        else:
            temporary = _temporary_name(old_name, target)
            renames[conflicting] = (target, temporary)
            renames.append((old_name, target))
            renames.append((temporary, old_name))

    def _retarget_children(self, target: str, old_name: str) -> None:
        """Point earlier operations below ``target`` at ``old_name`` before it moves."""
        prefix = target + "/"
        changeset = self._changeset
        for index, (source, destination) in enumerate(changeset.renamed):
            if destination.startswith(prefix):
                changeset.renamed[index] = (source, old_name + "/" + destination[len(prefix) :])
        for index, (source, destination) in enumerate(changeset.copied):
            if destination.startswith(prefix):
                changeset.copied[index] = (source, old_name + "/" + destination[len(prefix) :])

    def _rebase_removals(self) -> None:
        """Express removals relative to the tree after renames and copies are applied."""
        changeset = self._changeset
        for index, path in enumerate(changeset.removed):
            for source, target in changeset.renamed:
                if path.startswith(source + "/"):
                    path = target + path[len(source) :]
            changeset.removed[index] = path

    def _add_element(self, oid: str, base: str | None, name: str) -> None:
        stack = [_PendingAdd(oid=oid, base=base, name=name, ancestors=frozenset())]
        while stack:
            pending = stack.pop()
            element = self._graph.find_element(pending.oid)
            if element is None:
                continue
            full_name = None if pending.base is None else join_path(pending.base, pending.name)
            if element.is_symlink:
                if full_name is not None:
                    target = (element.target or "").replace("\\", "/")
                    self._changeset.symlinks.append((full_name, target))
                continue
            version = self._versions.get(pending.oid)
            if version is None and self._graph.is_solo(pending.oid):
                version = self._graph.version(pending.oid, MAIN_BRANCH, 0)
            if version is None:
                continue
            if element.is_directory:
                if pending.oid in pending.ancestors:
                    continue
                ancestors = pending.ancestors | {pending.oid}
                for child_name, child in reversed(version.content):
                    stack.append(
                        _PendingAdd(
                            oid=child, base=full_name, name=child_name, ancestors=ancestors
                        )
                    )
                continue
            self._add_file(element, version, full_name)

    def _add_file(self, element: Element, version: Version, full_name: str | None) -> None:
        changeset = self._changeset
        existing = [named for named in changeset.versions if named.version.oid == element.oid]
        if len(existing) > 1:
            raise HistoryError(
                code="VERSION_MISMATCH",
                message=(
                    f"Element {element.name} appears more than once "
                    f"in changeset {changeset.id}."
                ),
            )
        if existing:
            named = existing[0]
            if named.version is not version:
                raise HistoryError(
                    code="VERSION_MISMATCH",
                    message=(
                        f"Element {element.name} should be at version {version} "
                        f"but changeset {changeset.id} holds {named.version}."
                    ),
                )
            if full_name is not None and full_name not in named.names:
                named.names.append(full_name)
            return

        if full_name is None:
            orphan = NamedVersion(version=version, in_raw_changeset=False)
            add_to_collection(self._orphans, element.oid, (changeset.branch, orphan))
            if not any(candidate is version for candidate in self._new_orphans):
                self._new_orphans.append(version)
            return

        changeset.add(version, full_name, in_raw=False)
        entries = self._orphans.get(element.oid)
        if entries:
            for entry in list(entries):
                if entry[0] == changeset.branch and entry[1].version is version:
                    entries.remove(entry)
            if not entries:
                del self._orphans[element.oid]
        self._new_orphans[:] = [
            candidate for candidate in self._new_orphans if candidate is not version
        ]


def _temporary_name(old_name: str, target: str) -> str:
    digest = hashlib.sha256(f"{old_name}\n{target}".encode()).hexdigest()[:12]
    return f"{old_name}.swap-{digest}"
