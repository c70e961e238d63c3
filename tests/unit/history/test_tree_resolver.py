from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest

from history_import.errors import HistoryError
from history_import.graph import DIRECTORY, FILE, SYMLINK, Version, VersionGraph
from history_import.history import ChangeSet, TreeResolver
from history_import.history.resolver import OrphanMap
from history_import.logging import DiagnosticsLog

T0 = datetime(2024, 3, 1, 9, 0, tzinfo=UTC)


def _element(graph: VersionGraph, oid: str, name: str, kind: str = FILE) -> None:
    graph.add_element(oid, name, kind)
    graph.add_branch(oid, "main")


def _version(graph: VersionGraph, oid: str, number: int, minute: int, **kwargs: object) -> Version:
    date = T0 + timedelta(minutes=minute)
    return graph.add_version(oid, "main", number, "Ann", "ann", date, **kwargs)


def _changeset(*versions: Version) -> ChangeSet:
    changeset = ChangeSet.starting_at("Ann", "ann", "main", versions[0].date)
    for version in versions:
        changeset.add(version)
    return changeset


class _Branch:
    def __init__(self, graph: VersionGraph) -> None:
        self.graph = graph
        self.names: dict[str, set[str]] = {}
        self.versions: dict[str, Version] = {}
        self.orphans: OrphanMap = {}
        self.diagnostics = DiagnosticsLog()

    def resolve(self, changeset: ChangeSet) -> list[Version]:
        resolver = TreeResolver(
            self.graph,
            changeset,
            self.names,
            self.versions,
            self.orphans,
            (".",),
            self.diagnostics,
        )
        return resolver.resolve()


def _graph() -> VersionGraph:
    graph = VersionGraph()
    _element(graph, "root", ".", DIRECTORY)
    _version(graph, "root", 0, 0, content=[])
    _version(graph, "root", 1, 1, content=[("a.txt", "fa")])
    _element(graph, "fa", "a.txt")
    _version(graph, "fa", 0, 1)
    _version(graph, "fa", 1, 1)
    _element(graph, "fn", "n.txt")
    _version(graph, "fn", 0, 1)
    _version(graph, "fn", 1, 1)
    return graph


def test_unlisted_file_becomes_orphan() -> None:
    graph = _graph()
    branch = _Branch(graph)
    changeset = _changeset(
        graph.version("root", "main", 1),
        graph.version("fa", "main", 1),
        graph.version("fn", "main", 1),
    )

    orphans = branch.resolve(changeset)

    assert [str(version) for version in orphans] == ["fn@@/main/1"]
    assert changeset.find("fn") is None
    assert changeset.find("fa").names == ["a.txt"]
    assert list(branch.orphans) == ["fn"]
    assert "ORPHAN_VERSION" in branch.diagnostics.codes("info")


def test_orphan_is_adopted_once_a_directory_lists_it() -> None:
    graph = _graph()
    branch = _Branch(graph)
    branch.resolve(
        _changeset(
            graph.version("root", "main", 1),
            graph.version("fa", "main", 1),
            graph.version("fn", "main", 1),
        )
    )
    listing = _version(graph, "root", 2, 100, content=[("a.txt", "fa"), ("n.txt", "fn")])
    changeset = _changeset(listing)

    orphans = branch.resolve(changeset)

    adopted = changeset.find("fn")
    assert orphans == []
    assert adopted is not None
    assert adopted.names == ["n.txt"]
    assert adopted.in_raw_changeset is False
    assert branch.orphans == {}


def test_symbolic_link_entries_become_symlink_operations() -> None:
    graph = _graph()
    graph.add_element("sl", "lib", SYMLINK, target="..\\shared\\lib")
    branch = _Branch(graph)
    branch.resolve(_changeset(graph.version("root", "main", 1), graph.version("fa", "main", 1)))
    listing = _version(graph, "root", 2, 100, content=[("a.txt", "fa"), ("lib", "sl")])
    changeset = _changeset(listing)

    branch.resolve(changeset)

    assert changeset.symlinks == [("lib", "../shared/lib")]
    assert changeset.renamed == []


def test_removed_directory_reports_only_its_own_path() -> None:
    graph = VersionGraph()
    _element(graph, "root", ".", DIRECTORY)
    _version(graph, "root", 0, 0, content=[])
    _version(graph, "root", 1, 1, content=[("src", "d")])
    _element(graph, "d", "src", DIRECTORY)
    _version(graph, "d", 0, 1, content=[])
    _version(graph, "d", 1, 1, content=[("a.txt", "fa")])
    _element(graph, "fa", "src/a.txt")
    _version(graph, "fa", 0, 1)
    _version(graph, "fa", 1, 1)
    branch = _Branch(graph)
    branch.resolve(
        _changeset(
            graph.version("root", "main", 1),
            graph.version("d", "main", 1),
            graph.version("fa", "main", 1),
        )
    )
    changeset = _changeset(_version(graph, "root", 2, 100, content=[]))

    branch.resolve(changeset)

    assert changeset.removed == ["src"]
    assert "fa" not in branch.names


def test_directory_cycle_in_one_changeset_is_fatal() -> None:
    graph = VersionGraph()
    _element(graph, "root", ".", DIRECTORY)
    _version(graph, "root", 0, 0, content=[])
    _version(graph, "root", 1, 1, content=[("one", "d1")])
    _element(graph, "d1", "one", DIRECTORY)
    _version(graph, "d1", 0, 1, content=[])
    _version(graph, "d1", 1, 1, content=[("two", "d2")])
    _element(graph, "d2", "one/two", DIRECTORY)
    _version(graph, "d2", 0, 1, content=[])
    _version(graph, "d2", 1, 1, content=[("back", "d1")])
    changeset = _changeset(
        graph.version("root", "main", 1),
        graph.version("d1", "main", 1),
        graph.version("d2", "main", 1),
    )

    with pytest.raises(HistoryError) as exc_info:
        _Branch(graph).resolve(changeset)

    assert exc_info.value.code == "DIRECTORY_CYCLE"
