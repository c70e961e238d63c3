"""Legacy version graph package."""

from .loader import (
    GRAPH_SCHEMA_VERSION,
    GraphSchemaUnsupportedError,
    apply_date_bounds,
    format_timestamp,
    graph_from_payload,
    load_graph,
    parse_timestamp,
)
from .models import (
    BRANCH_SEPARATOR,
    DIRECTORY,
    FILE,
    MAIN_BRANCH,
    SYMLINK,
    Branch,
    Element,
    LabelMeta,
    Version,
    VersionGraph,
    VersionRef,
    branch_short_name,
    join_path,
    normalize_path,
    version_sort_key,
)

__all__ = [
    "BRANCH_SEPARATOR",
    "Branch",
    "DIRECTORY",
    "Element",
    "FILE",
    "GRAPH_SCHEMA_VERSION",
    "GraphSchemaUnsupportedError",
    "LabelMeta",
    "MAIN_BRANCH",
    "SYMLINK",
    "Version",
    "VersionGraph",
    "VersionRef",
    "apply_date_bounds",
    "branch_short_name",
    "format_timestamp",
    "graph_from_payload",
    "join_path",
    "load_graph",
    "normalize_path",
    "parse_timestamp",
    "version_sort_key",
]
