"""Global branch hierarchy inference from hierarchical branch names."""

from __future__ import annotations

import re
from collections.abc import Iterable

from history_import.graph.models import BRANCH_SEPARATOR, MAIN_BRANCH
from history_import.logging import DiagnosticsLog


def collect_potential_parents(full_names: Iterable[str]) -> dict[str, list[str]]:
    """Map each branch to every branch seen immediately above it in a full name."""
    potential: dict[str, list[str]] = {}
    for full_name in sorted(set(full_names)):
        path = full_name.split(BRANCH_SEPARATOR)
        for index in range(1, len(path)):
            child = path[index]
            if child == MAIN_BRANCH:
                continue
            parents = potential.setdefault(child, [])
            if path[index - 1] not in parents:
                parents.append(path[index - 1])
    return potential


def find_cycles(potential: dict[str, list[str]]) -> list[tuple[str, ...]]:
    """Return every distinct parent cycle, each rotated to start at its smallest name.

    A cycle lists branches child first, so consecutive pairs are (child, parent)
    edges and the last entry links back to the first.
    """
    found: dict[tuple[str, ...], None] = {}
    for start in potential:
        stack: list[tuple[str, tuple[str, ...]]] = [(start, (start,))]
        while stack:
            node, chain = stack.pop()
            for parent in reversed(potential.get(node, [])):
                if parent == MAIN_BRANCH:
                    continue
                if parent in chain:
                    found.setdefault(_canonical(chain[chain.index(parent) :]), None)
                    continue
                stack.append((parent, (*chain, parent)))
    return list(found)


def remove_cycles(potential: dict[str, list[str]], diagnostics: DiagnosticsLog) -> None:
    """Break parent cycles by removing the edge shared by the most cycles."""
    cycles = find_cycles(potential)
    while cycles:
        counts: dict[tuple[str, str], int] = {}
        for cycle in cycles:
            for index, child in enumerate(cycle):
                edge = (child, cycle[(index + 1) % len(cycle)])
                counts[edge] = counts.get(edge, 0) + 1
        best = max(counts.values())
        candidates = [edge for edge, count in counts.items() if count == best]
        child, parent = max(candidates, key=lambda edge: len(potential[edge[0]]))
        diagnostics.warning(
            "BRANCH_CYCLE_BROKEN",
            f"Branch cycle(s) {_describe_cycles(cycles)}, "
            f"removing {parent} as a potential parent of {child}",
            child=child,
            parent=parent,
        )
        potential[child].remove(parent)
        cycles = find_cycles(potential)


def infer_branch_parents(
    full_names: Iterable[str], diagnostics: DiagnosticsLog
) -> dict[str, str | None]:
    """Choose each branch's parent as its deepest potential parent."""
    potential = collect_potential_parents(full_names)
    remove_cycles(potential, diagnostics)

    depths = dict.fromkeys(potential, 0)
    depths[MAIN_BRANCH] = 1
    changed = True
    while changed:
        changed = False
        for branch, parents in potential.items():
            if not parents:
                continue
            depth = max(depths.get(parent, 0) for parent in parents) + 1
            if depth > depths[branch]:
                depths[branch] = depth
                changed = True

    result: dict[str, str | None] = {MAIN_BRANCH: None}
    for branch, parents in potential.items():
        if not parents:
            result[branch] = MAIN_BRANCH
            continue
        max_depth = max(depths.get(parent, 0) for parent in parents)
        candidates = [parent for parent in parents if depths.get(parent, 0) == max_depth]
        if len(candidates) > 1:
            diagnostics.warning(
                "AMBIGUOUS_BRANCH_PARENT",
                f"Branch {branch} parent is ambiguous between {' and '.join(candidates)}, "
                f"choosing {candidates[0]}",
                branch=branch,
                candidates=candidates,
            )
        result[branch] = candidates[0]
    return result


def filter_branches(
    parents: dict[str, str | None], patterns: tuple[str, ...], diagnostics: DiagnosticsLog
) -> set[str]:
    """Remove branches outside the allow-list that no retained branch spawns from.

    ``parents`` is updated in place; the removed branch names are returned.
    """
    if not patterns:
        return set()
    compiled = [re.compile(pattern) for pattern in patterns]
    candidates = [
        branch
        for branch in parents
        if branch != MAIN_BRANCH and not any(regex.search(branch) for regex in compiled)
    ]
    removed: set[str] = set()
    changed = True
    while changed:
        changed = False
        for branch in candidates:
            if branch in removed or branch in parents.values():
                continue
            diagnostics.info("BRANCH_FILTERED", f"Branch {branch} filtered out", branch=branch)
            del parents[branch]
            removed.add(branch)
            changed = True
    return removed


def case_collision_renames(branches: Iterable[str]) -> dict[str, str]:
    """Rename branches whose names collide when compared case-insensitively."""
    seen: set[str] = set()
    renames: dict[str, str] = {}
    for branch in branches:
        lowered = branch.lower()
        if lowered not in seen:
            seen.add(lowered)
            continue
        suffix = 0
        while True:
            suffix += 1
            candidate = f"{branch}_{suffix}"
            if candidate.lower() not in seen:
                break
        renames[branch] = candidate
        seen.add(candidate.lower())
    return renames


def _canonical(cycle: tuple[str, ...]) -> tuple[str, ...]:
    pivot = cycle.index(min(cycle))
    return cycle[pivot:] + cycle[:pivot]


def _describe_cycles(cycles: list[tuple[str, ...]]) -> str:
    return " ; ".join(" -> ".join((*cycle, cycle[0])) for cycle in cycles)
