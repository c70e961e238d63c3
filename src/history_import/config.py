"""Configuration loading and deterministic merge order."""

from __future__ import annotations

import re
import tomllib
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path

from history_import.graph.models import normalize_path

CONFIG_FILE_NAME = "history_import.toml"
DEFAULT_ROOTS = (".",)
DEFAULT_MAX_DELAY_SECONDS = 30 * 60
DEFAULT_LABEL_TOO_LATE_HOURS = 8.0
MAX_DELAY_SECONDS_CAP = 7 * 24 * 3600


@dataclass(slots=True, frozen=True)
class FilterConfig:
    """Scope filters for elements, branches and labels."""

    roots: tuple[str, ...]
    branch_patterns: tuple[str, ...]
    labels: tuple[str, ...] | None


@dataclass(slots=True, frozen=True)
class TimingConfig:
    """Clustering window, label heuristic and date bounds."""

    max_delay_seconds: int
    label_too_late_hours: float
    apex_date: datetime | None
    origin_date: datetime | None


@dataclass(slots=True, frozen=True)
class ImportConfig:
    """Fully merged importer configuration."""

    work_dir: Path
    data_dir: Path
    filters: FilterConfig
    timing: TimingConfig

    def to_public_dict(self) -> dict[str, object]:
        """Return serializable config snapshot for run summaries."""
        return {
            "work_dir": str(self.work_dir),
            "data_dir": str(self.data_dir),
            "filters": {
                "roots": list(self.filters.roots),
                "branches": list(self.filters.branch_patterns),
                "labels": None if self.filters.labels is None else list(self.filters.labels),
            },
            "timing": {
                "max_delay_seconds": self.timing.max_delay_seconds,
                "label_too_late_hours": self.timing.label_too_late_hours,
                "apex_date": _format_optional_date(self.timing.apex_date),
                "origin_date": _format_optional_date(self.timing.origin_date),
            },
        }


@dataclass(slots=True, frozen=True)
class CliOverrides:
    """Optional startup overrides applied at highest precedence."""

    data_dir: Path | None = None
    roots: tuple[str, ...] | None = None
    branch_patterns: tuple[str, ...] | None = None
    labels: tuple[str, ...] | None = None
    max_delay_seconds: int | None = None
    label_too_late_hours: float | None = None
    apex_date: str | None = None
    origin_date: str | None = None


def default_config(work_dir: Path) -> ImportConfig:
    """Build default config for a given working directory."""
    resolved = work_dir.resolve()
    return ImportConfig(
        work_dir=resolved,
        data_dir=resolved / ".history_import",
        filters=FilterConfig(roots=DEFAULT_ROOTS, branch_patterns=(), labels=None),
        timing=TimingConfig(
            max_delay_seconds=DEFAULT_MAX_DELAY_SECONDS,
            label_too_late_hours=DEFAULT_LABEL_TOO_LATE_HOURS,
            apex_date=None,
            origin_date=None,
        ),
    )


def load_config_file(work_dir: Path) -> dict[str, object]:
    """Load optional history_import.toml from the working directory."""
    config_path = work_dir / CONFIG_FILE_NAME
    if not config_path.exists():
        return {}
    with config_path.open("rb") as handle:
        payload = tomllib.load(handle)
    if not isinstance(payload, dict):
        raise ValueError(f"{CONFIG_FILE_NAME} must contain a top-level table.")
    return payload


def _get_table(payload: dict[str, object], key: str) -> dict[str, object]:
    value = payload.get(key, {})
    if not isinstance(value, dict):
        raise ValueError(f"Config section '{key}' must be a table.")
    return value


def _tuple_of_strings(value: object, section: str, field: str) -> tuple[str, ...]:
    if not isinstance(value, list):
        raise ValueError(f"Config field '{section}.{field}' must be a list of strings.")
    output: list[str] = []
    for item in value:
        if not isinstance(item, str):
            raise ValueError(f"Config field '{section}.{field}' must contain only strings.")
        output.append(item)
    return tuple(output)


def merge_config(
    base: ImportConfig, file_payload: dict[str, object], overrides: CliOverrides
) -> ImportConfig:
    """Merge defaults, config file, then CLI overrides."""
    filters_payload = _get_table(file_payload, "filters")
    timing_payload = _get_table(file_payload, "timing")

    roots = base.filters.roots
    if "roots" in filters_payload:
        roots = _normalize_roots(_tuple_of_strings(filters_payload["roots"], "filters", "roots"))
    branch_patterns = base.filters.branch_patterns
    if "branches" in filters_payload:
        branch_patterns = _validated_patterns(
            _tuple_of_strings(filters_payload["branches"], "filters", "branches"),
            "filters.branches",
        )
    labels = base.filters.labels
    if "labels" in filters_payload:
        labels = _tuple_of_strings(filters_payload["labels"], "filters", "labels")

    max_delay_seconds = _optional_positive_int_with_cap(
        timing_payload.get("max_delay_seconds"),
        "timing.max_delay_seconds",
        base.timing.max_delay_seconds,
        MAX_DELAY_SECONDS_CAP,
    )
    label_too_late_hours = _optional_positive_number(
        timing_payload.get("label_too_late_hours"),
        "timing.label_too_late_hours",
        base.timing.label_too_late_hours,
    )
    apex_date = _optional_date(
        timing_payload.get("apex_date"), "timing.apex_date", base.timing.apex_date
    )
    origin_date = _optional_date(
        timing_payload.get("origin_date"), "timing.origin_date", base.timing.origin_date
    )

    merged = ImportConfig(
        work_dir=base.work_dir,
        data_dir=base.data_dir,
        filters=FilterConfig(roots=roots, branch_patterns=branch_patterns, labels=labels),
        timing=TimingConfig(
            max_delay_seconds=max_delay_seconds,
            label_too_late_hours=label_too_late_hours,
            apex_date=apex_date,
            origin_date=origin_date,
        ),
    )
    return apply_cli_overrides(merged, overrides)


def apply_cli_overrides(config: ImportConfig, overrides: CliOverrides) -> ImportConfig:
    """Apply startup overrides at highest precedence."""
    roots = config.filters.roots
    if overrides.roots is not None:
        roots = _normalize_roots(overrides.roots)
    branch_patterns = config.filters.branch_patterns
    if overrides.branch_patterns is not None:
        branch_patterns = _validated_patterns(overrides.branch_patterns, "overrides.branches")
    labels = overrides.labels if overrides.labels is not None else config.filters.labels

    timing = TimingConfig(
        max_delay_seconds=_optional_positive_int_with_cap(
            overrides.max_delay_seconds,
            "overrides.max_delay_seconds",
            config.timing.max_delay_seconds,
            MAX_DELAY_SECONDS_CAP,
        ),
        label_too_late_hours=_optional_positive_number(
            overrides.label_too_late_hours,
            "overrides.label_too_late_hours",
            config.timing.label_too_late_hours,
        ),
        apex_date=_optional_date(
            overrides.apex_date, "overrides.apex_date", config.timing.apex_date
        ),
        origin_date=_optional_date(
            overrides.origin_date, "overrides.origin_date", config.timing.origin_date
        ),
    )
    data_dir = overrides.data_dir or config.data_dir
    return ImportConfig(
        work_dir=config.work_dir,
        data_dir=data_dir.resolve(),
        filters=FilterConfig(roots=roots, branch_patterns=branch_patterns, labels=labels),
        timing=timing,
    )


def load_effective_config(work_dir: Path, overrides: CliOverrides | None = None) -> ImportConfig:
    """Load effective config using merge order defaults -> config file -> overrides."""
    resolved = work_dir.resolve()
    base = default_config(resolved)
    payload = load_config_file(resolved)
    return merge_config(base, payload, overrides or CliOverrides())


def normalize_root(root: str) -> str:
    """Normalize a root filter to a slash-separated relative path."""
    return normalize_path(root)


def _normalize_roots(roots: tuple[str, ...]) -> tuple[str, ...]:
    output: list[str] = []
    for root in roots:
        normalized = normalize_root(root)
        if normalized not in output:
            output.append(normalized)
    return tuple(output)


def _validated_patterns(patterns: tuple[str, ...], name: str) -> tuple[str, ...]:
    for pattern in patterns:
        try:
            re.compile(pattern)
        except re.error as exc:
            raise ValueError(f"Config field '{name}' has invalid regex {pattern!r}: {exc}") from exc
    return patterns


def _optional_positive_int_with_cap(
    value: object,
    name: str,
    default: int,
    cap: int | None,
) -> int:
    if value is None:
        return default
    if isinstance(value, bool) or not isinstance(value, int) or value < 1:
        raise ValueError(f"Config field '{name}' must be a positive integer.")
    if cap is not None and value > cap:
        raise ValueError(f"Config field '{name}' must be <= {cap}.")
    return value


def _optional_positive_number(value: object, name: str, default: float) -> float:
    if value is None:
        return default
    if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
        raise ValueError(f"Config field '{name}' must be a positive number.")
    return float(value)


def _optional_date(value: object, name: str, default: datetime | None) -> datetime | None:
    if value is None:
        return default
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError as exc:
            raise ValueError(f"Config field '{name}' must be an ISO-8601 date.") from exc
    else:
        raise ValueError(f"Config field '{name}' must be an ISO-8601 date.")
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=UTC)
    return parsed.astimezone(UTC)


def _format_optional_date(value: datetime | None) -> str | None:
    if value is None:
        return None
    return value.isoformat(timespec="seconds").replace("+00:00", "Z")
