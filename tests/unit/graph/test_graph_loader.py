from __future__ import annotations

import json
from datetime import UTC, datetime
from pathlib import Path

import pytest

from history_import.errors import HistoryError
from history_import.graph import (
    GraphSchemaUnsupportedError,
    apply_date_bounds,
    graph_from_payload,
    load_graph,
    parse_timestamp,
)


def _payload() -> dict[str, object]:
    return {
        "schema_version": 1,
        "elements": [
            {
                "oid": "root",
                "name": ".",
                "kind": "directory",
                "branches": [
                    {
                        "full_name": "main",
                        "versions": [
                            {"number": 0, "date": "2024-01-01T09:00:00Z", "content": []},
                            {
                                "number": 1,
                                "author_name": "Ann",
                                "author_login": "ann",
                                "date": "2024-01-01T09:01:00Z",
                                "content": [["a.c", "fa"], ["lnk", "ln"]],
                            },
                        ],
                    }
                ],
            },
            {
                "oid": "fa",
                "name": "a.c",
                "kind": "file",
                "branches": [
                    {
                        "full_name": "main",
                        "versions": [
                            {"number": 0, "date": "2024-01-01T09:01:00Z"},
                            {
                                "number": 1,
                                "author_name": "Ann",
                                "author_login": "ann",
                                "date": "2024-01-01T09:02:00",
                                "comment": "first",
                                "labels": ["REL_1"],
                            },
                        ],
                    },
                    {
                        "full_name": "main/dev",
                        "branching_point": {"branch": "main", "number": 1},
                        "versions": [
                            {"number": 0, "date": "2024-01-02T09:00:00Z"},
                            {
                                "number": 1,
                                "date": "2024-01-03T09:00:00Z",
                                "merges_to": [{"branch": "main", "number": 2}],
                            },
                        ],
                    },
                ],
            },
            {"oid": "ln", "name": "lnk", "kind": "symlink", "target": "a.c"},
        ],
        "labels": [
            {"name": "REL_1", "author_name": "Ann", "created": "2024-01-01T10:00:00Z"},
        ],
    }


def test_graph_from_payload_builds_arena() -> None:
    graph = graph_from_payload(_payload())

    assert list(graph.elements) == ["root", "fa", "ln"]
    root_one = graph.version("root", "main", 1)
    assert root_one is not None
    assert root_one.content == (("a.c", "fa"), ("lnk", "ln"))
    fa_one = graph.version("fa", "main", 1)
    assert fa_one is not None
    assert fa_one.labels == ["REL_1"]
    assert fa_one.date == datetime(2024, 1, 1, 9, 2, tzinfo=UTC)
    dev = graph.element("fa").branches["dev"]
    assert dev.branching_point is not None
    assert dev.branching_point.oid == "fa"
    assert graph.version("fa", "dev", 1).merges_to[0].number == 2
    assert graph.element("ln").target == "a.c"
    assert graph.label_metas["REL_1"].created == parse_timestamp("2024-01-01T10:00:00Z")


def test_load_graph_reads_json_file(tmp_path: Path) -> None:
    path = tmp_path / "export.json"
    path.write_text(json.dumps(_payload()), encoding="utf-8")

    graph = load_graph(path)

    assert graph.is_solo("fa") is False


def test_schema_version_mismatch_is_explicit() -> None:
    payload = _payload()
    payload["schema_version"] = 99

    with pytest.raises(GraphSchemaUnsupportedError) as excinfo:
        graph_from_payload(payload)

    assert excinfo.value.found == 99
    assert excinfo.value.expected == 1


def test_missing_branching_point_is_fatal() -> None:
    payload = _payload()
    fa = payload["elements"][1]
    del fa["branches"][1]["branching_point"]

    with pytest.raises(HistoryError) as excinfo:
        graph_from_payload(payload)

    assert excinfo.value.code == "MISSING_PREDECESSOR"


def test_malformed_content_entry_is_rejected() -> None:
    payload = _payload()
    payload["elements"][0]["branches"][0]["versions"][1]["content"] = [["only-name"]]

    with pytest.raises(HistoryError, match="name, oid"):
        graph_from_payload(payload)


def test_directory_content_naming_unknown_element_is_rejected() -> None:
    payload = _payload()
    payload["elements"][0]["branches"][0]["versions"][1]["content"] = [["x.c", "ghost"]]

    with pytest.raises(HistoryError, match="unknown element ghost") as excinfo:
        graph_from_payload(payload)

    assert excinfo.value.code == "INVALID_GRAPH"


def test_origin_date_drops_later_versions_and_empty_branches() -> None:
    graph = graph_from_payload(_payload())

    dropped = apply_date_bounds(graph, None, parse_timestamp("2024-01-01T12:00:00Z"))

    assert dropped == 2
    assert "dev" not in graph.element("fa").branches
    assert "ln" in graph.elements


def test_apex_date_fudges_flagged_elements() -> None:
    payload = _payload()
    payload["elements"][1]["fudge_date"] = True
    graph = graph_from_payload(payload)
    apex = parse_timestamp("2023-12-31T00:00:00Z")

    apply_date_bounds(graph, apex, None)

    assert {version.date for version in graph.element("fa").branches["main"].versions} == {apex}
    assert graph.version("root", "main", 1).date != apex
