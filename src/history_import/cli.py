"""Command-line entrypoint for a history reconstruction run."""

from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path
from typing import TextIO

from history_import.config import CliOverrides, ImportConfig, load_effective_config
from history_import.errors import HistoryError
from history_import.graph import (
    GraphSchemaUnsupportedError,
    VersionGraph,
    apply_date_bounds,
    format_timestamp,
    load_graph,
)
from history_import.history import (
    HistoryScheduler,
    ReplayStateStore,
    StateSchemaUnsupportedError,
    branch_renames_for,
    label_report,
    write_changesets,
    write_json,
)
from history_import.logging import DiagnosticsLog

CHANGESETS_FILE_NAME = "changesets.jsonl"
LABELS_FILE_NAME = "labels.json"
DIAGNOSTICS_FILE_NAME = "diagnostics.jsonl"


def build_arg_parser() -> argparse.ArgumentParser:
    """Build argument parser for an import run."""
    parser = argparse.ArgumentParser(prog="history-import")
    parser.add_argument("--graph", required=False, default=None)
    parser.add_argument("--work-dir", required=False, default=".")
    parser.add_argument("--data-dir", required=False, default=None)
    parser.add_argument("--root", action="append", dest="roots", default=None)
    parser.add_argument("--branch", action="append", dest="branches", default=None)
    parser.add_argument("--label", action="append", dest="labels", default=None)
    parser.add_argument("--max-delay-seconds", type=int, required=False, default=None)
    parser.add_argument("--label-too-late-hours", type=float, required=False, default=None)
    parser.add_argument("--apex-date", required=False, default=None)
    parser.add_argument("--origin-date", required=False, default=None)
    parser.add_argument("--incremental", action="store_true")
    parser.add_argument("--print-config", action="store_true")
    return parser


def overrides_from_args(args: argparse.Namespace) -> CliOverrides:
    return CliOverrides(
        data_dir=Path(args.data_dir).resolve() if args.data_dir is not None else None,
        roots=tuple(args.roots) if args.roots is not None else None,
        branch_patterns=tuple(args.branches) if args.branches is not None else None,
        labels=tuple(args.labels) if args.labels is not None else None,
        max_delay_seconds=args.max_delay_seconds,
        label_too_late_hours=args.label_too_late_hours,
        apex_date=args.apex_date,
        origin_date=args.origin_date,
    )


def run_import(
    config: ImportConfig, graph: VersionGraph, incremental: bool = False
) -> dict[str, object]:
    """Replay ``graph`` into changesets and write every run artifact to the data dir."""
    data_dir = config.data_dir
    data_dir.mkdir(parents=True, exist_ok=True)
    diagnostics = DiagnosticsLog(path=data_dir / DIAGNOSTICS_FILE_NAME)
    dropped = apply_date_bounds(graph, config.timing.apex_date, config.timing.origin_date)
    if dropped:
        diagnostics.info(
            "VERSIONS_AFTER_ORIGIN",
            f"Ignoring {dropped} version(s) created after the origin date",
            count=dropped,
        )

    store = ReplayStateStore(data_dir)
    scheduler = HistoryScheduler.from_config(graph, config, diagnostics)
    new_versions = None
    if incremental:
        state = store.load()
        if state is not None:
            scheduler.restore(state)
            high_water = state.high_water
            new_versions = [
                version
                for version in graph.iter_versions()
                if high_water is None or version.date > high_water
            ]

    result = scheduler.build(new_versions)
    renames = branch_renames_for(result.changesets)
    for branch, renamed in renames.items():
        diagnostics.warning(
            "BRANCH_RENAMED",
            f"Branch {branch} renamed to {renamed} to avoid a case-insensitive collision",
            branch=branch,
            renamed=renamed,
        )
    write_changesets(data_dir / CHANGESETS_FILE_NAME, result.changesets, renames)
    write_json(data_dir / LABELS_FILE_NAME, label_report(result.labels, result.changesets))
    store.save(scheduler.snapshot())

    high_water = scheduler.high_water
    return {
        "changesets": len(result.changesets),
        "first_id": result.changesets[0].id if result.changesets else None,
        "last_id": scheduler.last_id,
        "labels": len(result.labels),
        "lost_versions": len(result.lost_versions),
        "lost_outside_roots": len(result.lost_outside_roots),
        "high_water": None if high_water is None else format_timestamp(high_water),
        "incremental": new_versions is not None,
        "warnings": diagnostics.summary(),
        "data_dir": str(data_dir),
    }


def main(argv: list[str] | None = None, out_stream: TextIO | None = None) -> int:
    """Entrypoint for the history import process."""
    out = out_stream or sys.stdout
    parser = build_arg_parser()
    args = parser.parse_args(argv)
    try:
        config = load_effective_config(Path(args.work_dir), overrides_from_args(args))
    except ValueError as exc:
        sys.stderr.write(f"Invalid configuration: {exc}\n")
        return 1
    if args.print_config:
        out.write(json.dumps(config.to_public_dict(), sort_keys=True) + "\n")
        return 0
    if args.graph is None:
        parser.error("--graph is required unless --print-config is given")

    try:
        graph = load_graph(Path(args.graph))
        summary = run_import(config, graph, incremental=args.incremental)
    except (GraphSchemaUnsupportedError, StateSchemaUnsupportedError) as exc:
        sys.stderr.write(
            f"Unsupported schema version {exc.found} (expected {exc.expected}).\n"
        )
        return 1
    except HistoryError as exc:
        sys.stderr.write(f"History reconstruction failed: {exc}\n")
        return 2
    except ValueError as exc:
        sys.stderr.write(f"Invalid input: {exc}\n")
        return 1
    out.write(json.dumps(summary, sort_keys=True) + "\n")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
