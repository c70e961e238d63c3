from __future__ import annotations

from datetime import UTC, datetime
from pathlib import Path

from history_import.config import CliOverrides, load_effective_config


def _write_config(work_dir: Path, lines: list[str]) -> None:
    (work_dir / "history_import.toml").write_text("\n".join(lines), encoding="utf-8")


def test_defaults_without_config_file(tmp_path: Path) -> None:
    config = load_effective_config(tmp_path)

    assert config.filters.roots == (".",)
    assert config.filters.branch_patterns == ()
    assert config.filters.labels is None
    assert config.timing.max_delay_seconds == 1800
    assert config.timing.label_too_late_hours == 8.0
    assert config.data_dir == tmp_path.resolve() / ".history_import"


def test_merge_order_defaults_then_file_then_cli(tmp_path: Path) -> None:
    _write_config(
        tmp_path,
        [
            "[filters]",
            'roots = ["./src/", "docs\\\\guide"]',
            'branches = ["^release"]',
            'labels = ["REL_1"]',
            "",
            "[timing]",
            "max_delay_seconds = 600",
            "label_too_late_hours = 2",
        ],
    )
    overrides = CliOverrides(max_delay_seconds=900, labels=("REL_2",))

    config = load_effective_config(tmp_path, overrides)

    assert config.filters.roots == ("src", "docs/guide")
    assert config.filters.branch_patterns == ("^release",)
    assert config.filters.labels == ("REL_2",)
    assert config.timing.max_delay_seconds == 900
    assert config.timing.label_too_late_hours == 2.0


def test_dates_are_parsed_as_utc(tmp_path: Path) -> None:
    _write_config(
        tmp_path,
        [
            "[timing]",
            'apex_date = "2020-01-01T00:00:00"',
            'origin_date = "2024-01-01T12:00:00+02:00"',
        ],
    )

    config = load_effective_config(tmp_path)

    assert config.timing.apex_date == datetime(2020, 1, 1, tzinfo=UTC)
    assert config.timing.origin_date == datetime(2024, 1, 1, 10, 0, tzinfo=UTC)
    assert config.to_public_dict()["timing"]["origin_date"] == "2024-01-01T10:00:00Z"


def test_data_dir_override_has_highest_precedence(tmp_path: Path) -> None:
    custom = tmp_path / "out"

    config = load_effective_config(tmp_path, CliOverrides(data_dir=custom))

    assert config.data_dir == custom.resolve()
    assert config.to_public_dict()["data_dir"] == str(custom.resolve())
