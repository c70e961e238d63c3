from __future__ import annotations

from datetime import UTC, datetime, timedelta

from history_import.graph import DIRECTORY, FILE, Version, VersionGraph, VersionRef
from history_import.history import ChangeSet, HistoryScheduler, ReplayResult
from history_import.logging import DiagnosticsLog

T0 = datetime(2024, 1, 1, 10, 0, tzinfo=UTC)


def _element(graph: VersionGraph, oid: str, name: str, kind: str = FILE) -> None:
    graph.add_element(oid, name, kind)
    graph.add_branch(oid, "main")


def _version(
    graph: VersionGraph,
    oid: str,
    number: int,
    minute: int,
    login: str = "ann",
    branch: str = "main",
    **kwargs: object,
) -> Version:
    return graph.add_version(
        oid, branch, number, login.title(), login, T0 + timedelta(minutes=minute), **kwargs
    )


def _two_file_graph() -> VersionGraph:
    graph = VersionGraph()
    _element(graph, "root", ".", DIRECTORY)
    _version(graph, "root", 0, 0, content=[])
    _version(graph, "root", 1, 1, content=[("a.txt", "fa"), ("b.txt", "fb")])
    _element(graph, "fa", "a.txt")
    _version(graph, "fa", 0, 1)
    _version(graph, "fa", 1, 1)
    _element(graph, "fb", "b.txt")
    _version(graph, "fb", 0, 1)
    _version(graph, "fb", 1, 1)
    return graph


def _assert_references_precede(result: ReplayResult) -> None:
    ids = [changeset.id for changeset in result.changesets]
    assert ids == list(range(1, len(ids) + 1))
    emitted: set[int] = set()
    for changeset in result.changesets:
        point = changeset.branching_point
        if point is not None and point in result.changesets:
            assert point.id < changeset.id
            assert point.id in emitted
        for merged in changeset.merges:
            assert merged.id < changeset.id
        emitted.add(changeset.id)


def _names(changeset: ChangeSet) -> dict[str, list[str]]:
    return {named.version.oid: named.names for named in changeset.versions if named.names}


def test_first_changeset_names_files_from_directory_content() -> None:
    graph = _two_file_graph()

    result = HistoryScheduler(graph, DiagnosticsLog()).build()

    assert len(result.changesets) == 1
    changeset = result.changesets[0]
    assert changeset.id == 1
    assert _names(changeset)["fa"] == ["a.txt"]
    assert _names(changeset)["fb"] == ["b.txt"]
    assert changeset.removed == []
    _assert_references_precede(result)


def test_move_between_directories_becomes_rename() -> None:
    graph = VersionGraph()
    _element(graph, "root", ".", DIRECTORY)
    _version(graph, "root", 0, 0, content=[])
    _version(graph, "root", 1, 1, content=[("D", "d"), ("E", "e")])
    _element(graph, "d", "D", DIRECTORY)
    _version(graph, "d", 0, 1, content=[])
    _version(graph, "d", 1, 1, content=[("a", "fa")])
    _version(graph, "d", 2, 100, content=[])
    _element(graph, "e", "E", DIRECTORY)
    _version(graph, "e", 0, 1, content=[])
    _version(graph, "e", 1, 100, content=[("a", "fa")])
    _element(graph, "fa", "D/a")
    _version(graph, "fa", 0, 1)
    _version(graph, "fa", 1, 1)

    result = HistoryScheduler(graph, DiagnosticsLog()).build()

    assert len(result.changesets) == 2
    moved = result.changesets[1]
    assert moved.renamed == [("D/a", "E/a")]
    assert moved.removed == []
    assert moved.copied == []
    _assert_references_precede(result)


def test_swapped_names_go_through_a_temporary_name() -> None:
    graph = _two_file_graph()
    _version(graph, "root", 2, 100, content=[("a.txt", "fb"), ("b.txt", "fa")])

    result = HistoryScheduler(graph, DiagnosticsLog()).build()

    swap = result.changesets[1].renamed
    assert len(swap) == 3
    temporary = swap[0][1]
    assert swap[0][0] == "a.txt"
    assert temporary.startswith("a.txt.swap-")
    assert swap[1] == ("b.txt", "a.txt")
    assert swap[2] == (temporary, "b.txt")


def test_second_destination_becomes_copy() -> None:
    graph = _two_file_graph()
    _version(graph, "root", 2, 100, content=[("c.txt", "fa"), ("d.txt", "fa"), ("b.txt", "fb")])

    result = HistoryScheduler(graph, DiagnosticsLog()).build()

    changeset = result.changesets[1]
    assert changeset.renamed == [("a.txt", "c.txt")]
    assert changeset.copied == [("c.txt", "d.txt")]


def test_removed_file_is_reported_once() -> None:
    graph = _two_file_graph()
    _version(graph, "root", 2, 100, content=[("b.txt", "fb")])

    result = HistoryScheduler(graph, DiagnosticsLog()).build()

    assert result.changesets[1].removed == ["a.txt"]


def test_solo_version_zero_is_kept_and_named() -> None:
    graph = _two_file_graph()
    graph.element("root").branches["main"].versions[1].content = (
        ("a.txt", "fa"),
        ("b.txt", "fb"),
        ("solo.txt", "fs"),
    )
    _element(graph, "fs", "solo.txt")
    _version(graph, "fs", 0, 1)
    diagnostics = DiagnosticsLog()

    result = HistoryScheduler(graph, diagnostics).build()

    assert _names(result.changesets[0])["fs"] == ["solo.txt"]
    assert "SOLO_VERSION_KEPT" in diagnostics.codes("info")


def test_label_on_filtered_branch_is_never_emitted() -> None:
    graph = _two_file_graph()
    graph.add_branch("fa", "main/feature", VersionRef(oid="fa", branch="main", number=1))
    _version(graph, "fa", 0, 20, branch="feature")
    _version(graph, "fa", 1, 30, branch="feature", labels=["FEAT"])
    diagnostics = DiagnosticsLog()

    result = HistoryScheduler(graph, diagnostics, branch_patterns=("^release$",)).build()

    assert all(not changeset.labels for changeset in result.changesets)
    assert "FEAT" not in result.labels
    assert {changeset.branch for changeset in result.changesets} == {"main"}


def test_unstarted_parent_branch_gets_bridging_changeset() -> None:
    graph = _two_file_graph()
    graph.add_branch("fa", "main/parent", VersionRef(oid="fa", branch="main", number=1))
    _version(graph, "fa", 0, 2, branch="parent")
    graph.add_branch("fa", "main/parent/child", VersionRef(oid="fa", branch="parent", number=0))
    _version(graph, "fa", 0, 3, branch="child")
    _version(graph, "fa", 1, 5, branch="child")
    diagnostics = DiagnosticsLog()

    result = HistoryScheduler(graph, diagnostics).build()

    assert [changeset.branch for changeset in result.changesets] == ["main", "parent", "child"]
    main, bridge, child = result.changesets
    assert bridge.versions == []
    assert bridge.branching_point is main
    assert child.branching_point is bridge
    assert _names(child)["fa"] == ["a.txt"]
    assert "BRANCH_BRIDGED" in diagnostics.codes("info")
    _assert_references_precede(result)


def test_label_spawns_child_through_parent_without_changesets() -> None:
    graph = _two_file_graph()
    graph.version("fa", "main", 1).labels.append("L")
    graph.add_branch("fb", "main/parent", VersionRef(oid="fb", branch="main", number=1))
    _version(graph, "fb", 0, 2, branch="parent")
    graph.add_branch("fb", "main/parent/child", VersionRef(oid="fb", branch="parent", number=0))
    _version(graph, "fb", 0, 3, branch="child")
    _version(graph, "fb", 1, 5, branch="child", labels=["L"])
    _version(graph, "fa", 2, 4, login="bob")
    diagnostics = DiagnosticsLog()

    result = HistoryScheduler(graph, diagnostics).build()

    branches = [changeset.branch for changeset in result.changesets]
    assert branches == ["main", "parent", "child", "main"]
    main, bridge, child, later = result.changesets
    assert bridge.versions == []
    assert child.branching_point is bridge
    assert child.labels == ["L"]
    assert later.author_login == "bob"
    assert result.labels["L"].forced is False
    assert "BRANCH_SPAWNED_EARLY" in diagnostics.codes("info")
    assert "BRANCH_BRIDGED" in diagnostics.codes("info")
    assert "LABEL_DROPPED" not in diagnostics.codes("warning")
    _assert_references_precede(result)


def test_branch_before_any_main_changeset_synthesizes_main() -> None:
    graph = VersionGraph()
    _element(graph, "root", ".", DIRECTORY)
    _version(graph, "root", 0, 0, content=[("a.txt", "fa")])
    _element(graph, "fa", "a.txt")
    _version(graph, "fa", 0, 0)
    graph.add_branch("fa", "main/dev", VersionRef(oid="fa", branch="main", number=0))
    _version(graph, "fa", 0, 1, branch="dev")
    _version(graph, "fa", 1, 2, branch="dev")
    diagnostics = DiagnosticsLog()

    result = HistoryScheduler(graph, diagnostics).build()

    assert result.changesets[0].branch == "main"
    assert "MAIN_SYNTHESIZED" in diagnostics.codes("warning")
    assert [str(version) for version in result.lost_versions] == ["fa@@/dev/1"]
    assert "LOST_VERSION" in diagnostics.codes("warning")


def test_label_applied_once_all_versions_are_seen() -> None:
    graph = _two_file_graph()
    graph.version("fa", "main", 1).labels.append("L1")
    graph.version("fb", "main", 1).labels.append("L1")

    result = HistoryScheduler(graph, DiagnosticsLog()).build()

    assert result.changesets[0].labels == ["L1"]
    assert result.labels["L1"].forced is False


def test_label_lookahead_pulls_completing_changeset_forward() -> None:
    graph = _two_file_graph()
    graph.version("fa", "main", 1).labels.append("L")
    _version(graph, "fa", 2, 50, login="carl")
    _version(graph, "fb", 2, 100, login="bob", labels=["L"])
    diagnostics = DiagnosticsLog()

    result = HistoryScheduler(graph, diagnostics).build()

    assert [changeset.author_login for changeset in result.changesets] == ["ann", "bob", "carl"]
    assert result.changesets[1].labels == ["L"]
    assert "LABEL_LOOKAHEAD" in diagnostics.codes("info")
    _assert_references_precede(result)


def test_label_version_checked_in_too_late_is_abandoned() -> None:
    graph = _two_file_graph()
    graph.version("fa", "main", 1).labels.append("L")
    _version(graph, "fa", 2, 50, login="carl")
    _version(graph, "fb", 2, 60 * 24, login="bob", labels=["L"])
    diagnostics = DiagnosticsLog()

    result = HistoryScheduler(graph, diagnostics).build()

    assert [changeset.author_login for changeset in result.changesets] == ["ann", "carl", "bob"]
    assert "LABEL_TOO_LATE" in diagnostics.codes("warning")
    assert result.labels["L"].forced is True
    assert result.changesets[0].labels == ["L"]


def test_merge_links_become_changeset_merges() -> None:
    graph = _two_file_graph()
    graph.add_branch("fa", "main/dev", VersionRef(oid="fa", branch="main", number=1))
    _version(graph, "fa", 0, 2, branch="dev")
    _version(
        graph,
        "fa",
        1,
        10,
        branch="dev",
        merges_to=[VersionRef(oid="fa", branch="main", number=2)],
    )
    _version(
        graph,
        "fa",
        2,
        100,
        login="bob",
        merges_from=[VersionRef(oid="fa", branch="dev", number=1)],
    )
    diagnostics = DiagnosticsLog()

    result = HistoryScheduler(graph, diagnostics).build()

    main, dev, merge = result.changesets
    assert dev.branch == "dev"
    assert dev.branching_point is main
    assert merge.merges == [dev]
    assert dev.is_merged is True
    assert "MERGE_INCOMPLETE" not in diagnostics.codes("warning")
    _assert_references_precede(result)


def test_empty_changeset_is_dropped_and_labels_move_back() -> None:
    graph = _two_file_graph()
    _version(
        graph,
        "root",
        2,
        100,
        login="carl",
        content=[("a.txt", "fa"), ("b.txt", "fb")],
        labels=["L2"],
    )
    _version(graph, "fa", 2, 200, login="dave")
    diagnostics = DiagnosticsLog()

    result = HistoryScheduler(graph, diagnostics).build()

    assert [changeset.author_login for changeset in result.changesets] == ["ann", "dave"]
    assert [changeset.id for changeset in result.changesets] == [1, 2]
    assert result.changesets[0].labels == ["L2"]
    assert "LABELS_RELOCATED" in diagnostics.codes("info")


def test_replay_is_deterministic() -> None:
    first = HistoryScheduler(_two_file_graph(), DiagnosticsLog()).build()
    second = HistoryScheduler(_two_file_graph(), DiagnosticsLog()).build()

    assert [_names(cs) for cs in first.changesets] == [_names(cs) for cs in second.changesets]
