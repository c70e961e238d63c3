"""Changeset reconstruction package."""

from .branches import (
    case_collision_renames,
    collect_potential_parents,
    filter_branches,
    find_cycles,
    infer_branch_parents,
)
from .changeset import ChangeSet, NamedVersion, build_commit_message
from .clusterer import ClusterResult, RawClusterer, is_inside_roots
from .output import (
    branch_renames_for,
    changeset_to_record,
    label_report,
    write_changesets,
    write_json,
)
from .resolver import TreeResolver
from .scheduler import HistoryScheduler, ReplayResult
from .state import (
    STATE_SCHEMA_VERSION,
    ReplayState,
    ReplayStateStore,
    StateSchemaUnsupportedError,
    StateStatus,
)
from .trackers import LabelInfo, MergeInfo

__all__ = [
    "ChangeSet",
    "ClusterResult",
    "HistoryScheduler",
    "LabelInfo",
    "MergeInfo",
    "NamedVersion",
    "RawClusterer",
    "ReplayResult",
    "ReplayState",
    "ReplayStateStore",
    "STATE_SCHEMA_VERSION",
    "StateSchemaUnsupportedError",
    "StateStatus",
    "TreeResolver",
    "branch_renames_for",
    "build_commit_message",
    "case_collision_renames",
    "changeset_to_record",
    "collect_potential_parents",
    "filter_branches",
    "find_cycles",
    "infer_branch_parents",
    "is_inside_roots",
    "label_report",
    "write_changesets",
    "write_json",
]
