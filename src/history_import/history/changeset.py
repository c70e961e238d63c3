"""Changeset model and commit message generation."""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime

from history_import.graph.models import Version

FILE_NAMES_SHOWN = 3


@dataclass(slots=True, eq=False)
class NamedVersion:
    """A version inside a changeset with the paths it is visible under."""

    version: Version
    names: list[str] = field(default_factory=list)
    in_raw_changeset: bool = True

    def __str__(self) -> str:
        names = ", ".join(self.names) if self.names else "<unknown>"
        return f"{self.version} as {names}"


@dataclass(slots=True, eq=False)
class ChangeSet:
    """Versions sharing author, branch and close check-in times.

    Identity is the object itself; ``id`` is assigned during replay and
    renumbered at emission.
    """

    author_name: str
    author_login: str
    branch: str
    start: datetime
    finish: datetime
    id: int = 0
    versions: list[NamedVersion] = field(default_factory=list)
    skipped_versions: list[Version] = field(default_factory=list)
    renamed: list[tuple[str, str]] = field(default_factory=list)
    removed: list[str] = field(default_factory=list)
    copied: list[tuple[str, str]] = field(default_factory=list)
    symlinks: list[tuple[str, str]] = field(default_factory=list)
    branching_point: ChangeSet | None = None
    is_branching_point: bool = False
    merges: list[ChangeSet] = field(default_factory=list)
    is_merged: bool = False
    labels: list[str] = field(default_factory=list)

    @classmethod
    def starting_at(
        cls, author_name: str, author_login: str, branch: str, time: datetime
    ) -> ChangeSet:
        return cls(
            author_name=author_name,
            author_login=author_login,
            branch=branch,
            start=time,
            finish=time,
        )

    def add(self, version: Version, name: str | None = None, in_raw: bool = True) -> NamedVersion:
        """Add a version, keeping only the latest version of each file element."""
        existing = self.find(version.oid)
        if existing is not None and not version.is_directory:
            if existing.names and name is not None and name not in existing.names:
                existing.names.append(name)
            skipped: Version | None = None
            if existing.version.number < version.number:
                skipped = existing.version
                existing.version = version
            elif existing.version.number > version.number:
                skipped = version
            if skipped is not None and (skipped.labels or skipped.merges_from or skipped.merges_to):
                self.skipped_versions.append(skipped)
            result = existing
        else:
            result = NamedVersion(
                version=version,
                names=[name] if name is not None else [],
                in_raw_changeset=in_raw,
            )
            self.versions.append(result)
        if in_raw:
            if version.date < self.start:
                self.start = version.date
            if version.date > self.finish:
                self.finish = version.date
        return result

    def find(self, oid: str) -> NamedVersion | None:
        for named in self.versions:
            if named.version.oid == oid:
                return named
        return None

    @property
    def is_empty_commit(self) -> bool:
        """True when applying the changeset would not change the target tree."""
        return (
            not self.merges
            and not self.renamed
            and not self.copied
            and not self.removed
            and not self.symlinks
            and not any(not named.version.is_directory and named.names for named in self.versions)
        )

    def __str__(self) -> str:
        changes = len(self.versions) + len(self.renamed) + len(self.removed) + len(self.symlinks)
        return (
            f"Id {self.id}, {self.author_name}@{self.branch} : {changes} changes "
            f"between {self.start.isoformat()} and {self.finish.isoformat()}"
        )


def build_commit_message(changeset: ChangeSet) -> str:
    """Derive a commit message from file counts, comments and activities."""
    file_changes = [
        named
        for named in changeset.versions
        if named.in_raw_changeset and named.names and not named.version.is_directory
    ]
    file_count = len(file_changes)
    tree_count = (
        len(changeset.removed)
        + len(changeset.renamed)
        + len(changeset.copied)
        + len(changeset.symlinks)
        + sum(
            1
            for named in changeset.versions
            if not named.in_raw_changeset and named.names and not named.version.is_directory
        )
    )
    if file_count == 0:
        if tree_count > 0:
            return f"{tree_count} tree modification{_plural(tree_count)}"
        return "No actual change"

    comments = _group_by_text(
        (named.names[0], named.version.comment) for named in file_changes
    )
    activities = _group_by_text(
        (named.names[0], named.version.activity) for named in file_changes
    )
    files_message = _display_file_names([named.names[0] for named in file_changes], False)
    if tree_count > 0:
        tree_message = (
            f"{file_count} file modification{_plural(file_count)} and "
            f"{tree_count} tree modification{_plural(tree_count)}"
        )
    else:
        tree_message = f"{file_count} file modification{_plural(file_count)}"

    if not comments and not activities:
        return f"{tree_message} : {files_message}"

    threshold = file_count // 2 + 1
    activity_title = _title(activities, threshold)
    comment_title = _title(comments, threshold)
    if activity_title is not None and comment_title is not None:
        message = (
            f"{comment_title} {{ {activity_title} }}  ( {tree_message} ) : {files_message}"
        )
    elif activity_title is not None:
        message = f"{activity_title} ( {tree_message} ) : {files_message}"
    elif comment_title is not None:
        message = f"{comment_title} ( {tree_message} ) : {files_message}"
    else:
        message = f"{tree_message} : {files_message}"

    details: list[str] = []
    if len(activities) > 1:
        details.append("\n")
        for text, names in activities:
            details.append("\n" + _display_file_names(names, True) + " :\n\t")
            details.append(text.replace("\n", "\n\t"))
    if len(comments) > 1:
        details.append("\n")
        for text, names in comments:
            details.append("\n" + _display_file_names(names, True) + ":\n\t")
            details.append(text.replace("\n", "\n\t"))
    return message + "".join(details)


def _group_by_text(entries: Iterable[tuple[str, str]]) -> list[tuple[str, list[str]]]:
    groups: dict[str, list[str]] = {}
    for name, text in entries:
        if not text or not text.strip():
            continue
        key = text.strip().replace("\r", "")
        groups.setdefault(key, []).append(name)
    return sorted(groups.items(), key=lambda item: -len(item[1]))


def _title(groups: list[tuple[str, list[str]]], threshold: int) -> str | None:
    if not groups:
        return None
    text, names = groups[0]
    if len(names) >= threshold and "\n" not in text:
        return text
    return None


def _display_file_names(names: list[str], show_hidden_count: bool) -> str:
    shown = FILE_NAMES_SHOWN if len(names) > FILE_NAMES_SHOWN + 1 else len(names)
    output = ", ".join(name.rsplit("/", 1)[-1] for name in names[:shown])
    if len(names) > FILE_NAMES_SHOWN + 1:
        output += ", ..."
        if show_hidden_count:
            output += f" ({len(names) - FILE_NAMES_SHOWN} more)"
    return output


def _plural(count: int) -> str:
    return "s" if count > 1 else ""
