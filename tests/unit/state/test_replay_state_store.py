from __future__ import annotations

import json
from datetime import UTC, datetime
from pathlib import Path

import pytest

from history_import.graph import VersionRef
from history_import.history import (
    STATE_SCHEMA_VERSION,
    ReplayState,
    ReplayStateStore,
    StateSchemaUnsupportedError,
)


def _state() -> ReplayState:
    return ReplayState(
        roots=("src",),
        branch_patterns=("^rel",),
        branch_parents={"main": None, "release": "main"},
        last_id=12,
        started_branches={"main": None, "release": 4},
        branch_tips={"main": 11, "release": 12},
        names_by_branch={"main": {"fa": ["src/b.txt", "src/a.txt"]}},
        versions_by_branch={"main": {"fa": VersionRef(oid="fa", branch="main", number=3)}},
        high_water=datetime(2024, 6, 1, 17, 30, tzinfo=UTC),
    )


def test_status_reports_not_started_without_state_file(tmp_path: Path) -> None:
    store = ReplayStateStore(tmp_path)

    status = store.status()

    assert status.state_status == "not_started"
    assert status.last_id == 0
    assert store.load() is None


def test_saved_state_loads_back(tmp_path: Path) -> None:
    store = ReplayStateStore(tmp_path / "data")
    store.save(_state())

    loaded = store.load()
    status = store.status()

    assert loaded is not None
    assert loaded.roots == ("src",)
    assert loaded.branch_parents == {"main": None, "release": "main"}
    assert loaded.started_branches == {"main": None, "release": 4}
    assert loaded.names_by_branch == {"main": {"fa": ["src/a.txt", "src/b.txt"]}}
    assert loaded.versions_by_branch["main"]["fa"].number == 3
    assert loaded.high_water == datetime(2024, 6, 1, 17, 30, tzinfo=UTC)
    assert status.state_status == "ready"
    assert status.last_id == 12
    assert status.branch_count == 2
    assert not (tmp_path / "data" / "state.json.tmp").exists()


def test_schema_mismatch_is_reported_and_refused(tmp_path: Path) -> None:
    payload = _state().to_payload()
    payload["schema_version"] = STATE_SCHEMA_VERSION + 1
    (tmp_path / "state.json").write_text(json.dumps(payload) + "\n", encoding="utf-8")
    store = ReplayStateStore(tmp_path)

    assert store.status().state_status == "schema_mismatch"
    with pytest.raises(StateSchemaUnsupportedError) as exc_info:
        store.load()

    assert exc_info.value.found == STATE_SCHEMA_VERSION + 1
    assert exc_info.value.expected == STATE_SCHEMA_VERSION


def test_malformed_field_raises_value_error(tmp_path: Path) -> None:
    payload = _state().to_payload()
    payload["branch_tips"] = {"main": "eleven"}
    (tmp_path / "state.json").write_text(json.dumps(payload) + "\n", encoding="utf-8")

    with pytest.raises(ValueError, match="branch_tips.main"):
        ReplayStateStore(tmp_path).load()
