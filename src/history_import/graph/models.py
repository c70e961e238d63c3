"""Typed models for the legacy version graph."""

from __future__ import annotations

from collections.abc import Iterator
from dataclasses import dataclass, field
from datetime import datetime

from history_import.errors import HistoryError

MAIN_BRANCH = "main"
BRANCH_SEPARATOR = "/"

FILE = "file"
DIRECTORY = "directory"
SYMLINK = "symlink"
ELEMENT_KINDS = (FILE, DIRECTORY, SYMLINK)


@dataclass(slots=True, frozen=True)
class VersionRef:
    """Stable address of one version: element oid, branch name, version number."""

    oid: str
    branch: str
    number: int

    def __str__(self) -> str:
        return f"{self.oid}@@/{self.branch}/{self.number}"


@dataclass(slots=True, frozen=True)
class LabelMeta:
    """Label type metadata recorded by the legacy system."""

    name: str
    author_name: str
    author_login: str
    created: datetime


@dataclass(slots=True, eq=False)
class Version:
    """One version of an element on one branch.

    Identity is the object itself; ``ref`` gives the persisted address. Directory
    versions carry ``content`` as ordered ``(child_name, child_oid)`` pairs.
    """

    oid: str
    kind: str
    branch: str
    number: int
    author_name: str
    author_login: str
    date: datetime
    comment: str = ""
    activity: str = ""
    labels: list[str] = field(default_factory=list)
    merges_to: list[VersionRef] = field(default_factory=list)
    merges_from: list[VersionRef] = field(default_factory=list)
    content: tuple[tuple[str, str], ...] = ()

    @property
    def ref(self) -> VersionRef:
        return VersionRef(oid=self.oid, branch=self.branch, number=self.number)

    @property
    def is_directory(self) -> bool:
        return self.kind == DIRECTORY

    def __str__(self) -> str:
        return str(self.ref)


@dataclass(slots=True)
class Branch:
    """Versions of one element on one branch, ordered by number."""

    name: str
    full_name: str
    branching_point: VersionRef | None = None
    versions: list[Version] = field(default_factory=list)


@dataclass(slots=True)
class Element:
    """A versioned file, directory or symbolic link."""

    oid: str
    name: str
    kind: str
    branches: dict[str, Branch] = field(default_factory=dict)
    target: str | None = None
    directory: str | None = None
    fudge_date: bool = False

    @property
    def is_directory(self) -> bool:
        return self.kind == DIRECTORY

    @property
    def is_symlink(self) -> bool:
        return self.kind == SYMLINK


def branch_short_name(full_name: str) -> str:
    """Return the last segment of a hierarchical branch name."""
    return full_name.rsplit(BRANCH_SEPARATOR, 1)[-1]


def normalize_path(path: str) -> str:
    """Normalize an element path to a slash-separated path relative to the import root."""
    normalized = path.replace("\\", "/").strip()
    while normalized.startswith("./"):
        normalized = normalized[2:]
    normalized = normalized.strip("/")
    return normalized or "."


def join_path(base: str, name: str) -> str:
    """Join a child name onto a normalized directory path."""
    if base == ".":
        return name
    return f"{base}/{name}"


def version_sort_key(version: Version) -> tuple[datetime, str, str, int]:
    """Deterministic ordering key used wherever versions are ranked."""
    return (version.date, version.oid, version.branch, version.number)


class VersionGraph:
    """Arena of elements keyed by oid, with id-based version lookups."""

    def __init__(self) -> None:
        self._elements: dict[str, Element] = {}
        self._labels: dict[str, LabelMeta] = {}

    @property
    def elements(self) -> dict[str, Element]:
        return self._elements

    @property
    def label_metas(self) -> dict[str, LabelMeta]:
        return self._labels

    def add_element(
        self,
        oid: str,
        name: str,
        kind: str,
        target: str | None = None,
        directory: str | None = None,
        fudge_date: bool = False,
    ) -> Element:
        """Register a new element."""
        if kind not in ELEMENT_KINDS:
            raise HistoryError(code="INVALID_GRAPH", message=f"Unknown element kind '{kind}'.")
        if oid in self._elements:
            raise HistoryError(code="INVALID_GRAPH", message=f"Duplicate element oid {oid}.")
        element = Element(
            oid=oid,
            name=name,
            kind=kind,
            target=target,
            directory=directory,
            fudge_date=fudge_date,
        )
        self._elements[oid] = element
        return element

    def add_branch(
        self, oid: str, full_name: str, branching_point: VersionRef | None = None
    ) -> Branch:
        """Register a branch of an element."""
        element = self.element(oid)
        if element.is_symlink:
            raise HistoryError(
                code="INVALID_GRAPH", message=f"Symbolic link {oid} cannot carry branches."
            )
        name = branch_short_name(full_name)
        if name in element.branches:
            raise HistoryError(
                code="INVALID_GRAPH", message=f"Duplicate branch {name} on element {oid}."
            )
        branch = Branch(name=name, full_name=full_name, branching_point=branching_point)
        element.branches[name] = branch
        return branch

    def add_version(
        self,
        oid: str,
        branch: str,
        number: int,
        author_name: str,
        author_login: str,
        date: datetime,
        comment: str = "",
        activity: str = "",
        labels: list[str] | None = None,
        merges_to: list[VersionRef] | None = None,
        merges_from: list[VersionRef] | None = None,
        content: list[tuple[str, str]] | None = None,
    ) -> Version:
        """Append a version to an existing branch, keeping number order."""
        element = self.element(oid)
        owner = element.branches.get(branch)
        if owner is None:
            raise HistoryError(
                code="INVALID_GRAPH", message=f"Unknown branch {branch} on element {oid}."
            )
        if owner.versions and owner.versions[-1].number >= number:
            raise HistoryError(
                code="INVALID_GRAPH",
                message=f"Version {oid}@@/{branch}/{number} is not after the branch tip.",
            )
        if content is not None and not element.is_directory:
            raise HistoryError(
                code="INVALID_GRAPH", message=f"Only directory versions carry content ({oid})."
            )
        version = Version(
            oid=oid,
            kind=element.kind,
            branch=branch,
            number=number,
            author_name=author_name,
            author_login=author_login,
            date=date,
            comment=comment,
            activity=activity,
            labels=list(labels or []),
            merges_to=list(merges_to or []),
            merges_from=list(merges_from or []),
            content=tuple(content or ()),
        )
        owner.versions.append(version)
        return version

    def add_label_meta(self, meta: LabelMeta) -> None:
        self._labels[meta.name] = meta

    def element(self, oid: str) -> Element:
        """Return an element by oid."""
        element = self._elements.get(oid)
        if element is None:
            raise HistoryError(code="INVALID_GRAPH", message=f"Unknown element oid {oid}.")
        return element

    def find_element(self, oid: str) -> Element | None:
        return self._elements.get(oid)

    def version(self, oid: str, branch: str, number: int) -> Version | None:
        """Return a version by its coordinates, or None when absent."""
        element = self._elements.get(oid)
        if element is None:
            return None
        owner = element.branches.get(branch)
        if owner is None:
            return None
        for candidate in owner.versions:
            if candidate.number == number:
                return candidate
        return None

    def resolve(self, ref: VersionRef) -> Version | None:
        return self.version(ref.oid, ref.branch, ref.number)

    def previous_version(self, version: Version) -> Version | None:
        """Return the version preceding ``version`` on its line of descent.

        For the first version of a branch this is the branching point on the
        parent branch; ``None`` only for the first version of ``main``.
        """
        owner = self.element(version.oid).branches[version.branch]
        index = _index_of(owner.versions, version)
        if index > 0:
            return owner.versions[index - 1]
        if owner.branching_point is None:
            return None
        return self.resolve(owner.branching_point)

    def is_ancestor(self, candidate: Version, version: Version) -> bool:
        """Return True when ``candidate`` precedes ``version`` on its line of descent."""
        if candidate.oid != version.oid:
            return False
        current = self.previous_version(version)
        while current is not None:
            if current is candidate:
                return True
            current = self.previous_version(current)
        return False

    def is_solo(self, oid: str) -> bool:
        """Return True when the element's only version is main/0."""
        element = self._elements.get(oid)
        if element is None or len(element.branches) != 1:
            return False
        main = element.branches.get(MAIN_BRANCH)
        return main is not None and len(main.versions) == 1 and main.versions[0].number == 0

    def iter_versions(self) -> Iterator[Version]:
        """Yield every version in arena order (element, branch, number)."""
        for element in self._elements.values():
            for branch in element.branches.values():
                yield from branch.versions

    def validate(self) -> None:
        """Check branch origins and the child oids listed by directory versions."""
        for element in self._elements.values():
            for branch in element.branches.values():
                for version in branch.versions:
                    for name, child in version.content:
                        if child not in self._elements:
                            raise HistoryError(
                                code="INVALID_GRAPH",
                                message=(
                                    f"Directory version {version} lists {name} "
                                    f"as unknown element {child}."
                                ),
                            )
                if branch.name == MAIN_BRANCH:
                    continue
                if branch.branching_point is None or self.resolve(branch.branching_point) is None:
                    raise HistoryError(
                        code="MISSING_PREDECESSOR",
                        message=(
                            f"Branch {branch.full_name} of element {element.oid} "
                            "has no resolvable branching point."
                        ),
                    )


def _index_of(versions: list[Version], version: Version) -> int:
    for index, candidate in enumerate(versions):
        if candidate is version:
            return index
    raise HistoryError(
        code="INVALID_GRAPH", message=f"Version {version} is not owned by its branch."
    )
