"""Changeset replay: branch spawning, label lookahead, merges and emission order."""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta

from history_import.config import ImportConfig
from history_import.errors import HistoryError
from history_import.graph.models import MAIN_BRANCH, Version, VersionGraph, version_sort_key
from history_import.history.changeset import ChangeSet
from history_import.history.clusterer import RawClusterer, is_inside_roots
from history_import.history.resolver import OrphanMap, TreeResolver
from history_import.history.state import ReplayState
from history_import.history.trackers import LabelInfo, MergeInfo, discard_from_set
from history_import.logging import DiagnosticsLog

PLACEHOLDER_TIME = datetime(1970, 1, 1, tzinfo=UTC)


@dataclass(slots=True)
class ReplayResult:
    """Emitted changesets of one run plus what could not be imported."""

    changesets: list[ChangeSet]
    labels: dict[str, LabelInfo]
    branch_parents: dict[str, str | None]
    lost_versions: list[Version] = field(default_factory=list)
    lost_outside_roots: list[Version] = field(default_factory=list)


@dataclass(slots=True)
class _Frame:
    position: int
    dependencies: list[int] | None = None
    next_dependency: int = 0


class HistoryScheduler:
    """Replays raw changesets in a label- and branch-consistent order.

    One scheduler instance carries branch state across runs: restore a
    previous ``snapshot()`` and call ``build`` with the newly exported
    versions to continue where the previous run stopped.
    """

    def __init__(
        self,
        graph: VersionGraph,
        diagnostics: DiagnosticsLog,
        roots: tuple[str, ...] = (".",),
        branch_patterns: tuple[str, ...] = (),
        labels: tuple[str, ...] | None = None,
        max_delay: timedelta = timedelta(minutes=30),
        label_too_late: timedelta = timedelta(hours=8),
    ) -> None:
        self._graph = graph
        self._diagnostics = diagnostics
        self._roots = roots
        self._branch_patterns = branch_patterns
        self._label_filter = labels
        self._max_delay = max_delay
        self._label_too_late = label_too_late

        self._branch_parents: dict[str, str | None] | None = None
        self._last_id = 0
        self._started: dict[str, ChangeSet | None] = {}
        self._names_by_branch: dict[str, dict[str, set[str]]] = {}
        self._versions_by_branch: dict[str, dict[str, Version]] = {}
        self._tips: dict[str, ChangeSet] = {}
        self._high_water: datetime | None = None

        self._labels: dict[str, LabelInfo] = {}
        self._pending: list[ChangeSet | None] = []
        self._cursor = 0
        self._merges: dict[tuple[str, str], MergeInfo] = {}

    @classmethod
    def from_config(
        cls, graph: VersionGraph, config: ImportConfig, diagnostics: DiagnosticsLog
    ) -> HistoryScheduler:
        return cls(
            graph,
            diagnostics,
            roots=config.filters.roots,
            branch_patterns=config.filters.branch_patterns,
            labels=config.filters.labels,
            max_delay=timedelta(seconds=config.timing.max_delay_seconds),
            label_too_late=timedelta(hours=config.timing.label_too_late_hours),
        )

    @property
    def last_id(self) -> int:
        return self._last_id

    @property
    def high_water(self) -> datetime | None:
        return self._high_water

    @property
    def branch_parents(self) -> dict[str, str | None]:
        return dict(self._branch_parents or {})

    def build(self, new_versions: list[Version] | None = None) -> ReplayResult:
        """Cluster, replay and emit every version in scope, or only ``new_versions``."""
        clusterer = RawClusterer(
            self._graph,
            self._diagnostics,
            roots=self._roots,
            branch_patterns=self._branch_patterns,
            labels=self._label_filter,
            max_delay=self._max_delay,
        )
        clustered = clusterer.build(new_versions)
        self._merge_branch_parents(clustered.branch_parents)
        self._labels = dict(clustered.labels)
        self._pending = list(clustered.changesets)
        self._cursor = 0
        self._merges = {}
        earlier_tips = dict(self._tips)
        starting_id = self._last_id + 1

        for changeset in clustered.changesets:
            if self._high_water is None or changeset.finish > self._high_water:
                self._high_water = changeset.finish

        replayed, lost = self._replay()
        history = self._emission_order(replayed)
        history = self._cleanup(history, earlier_tips)
        for offset, changeset in enumerate(history):
            changeset.id = starting_id + offset
        self._last_id = starting_id + len(history) - 1

        result = ReplayResult(
            changesets=history,
            labels=clustered.labels,
            branch_parents=self.branch_parents,
        )
        for version in lost:
            element = self._graph.element(version.oid)
            inside = is_inside_roots(element.name, self._roots)
            if inside:
                result.lost_versions.append(version)
            else:
                result.lost_outside_roots.append(version)
            self._diagnostics.warning(
                "LOST_VERSION",
                f"Version {version} was never visible in an imported directory version",
                version=str(version),
                inside_roots=inside,
            )
        return result

    def snapshot(self) -> ReplayState:
        """Capture the state a later incremental run continues from."""
        return ReplayState(
            roots=self._roots,
            branch_patterns=self._branch_patterns,
            branch_parents=dict(self._branch_parents or {}),
            last_id=self._last_id,
            started_branches={
                branch: None if point is None else point.id
                for branch, point in self._started.items()
            },
            branch_tips={branch: tip.id for branch, tip in self._tips.items()},
            names_by_branch={
                branch: {oid: sorted(names) for oid, names in names_map.items()}
                for branch, names_map in self._names_by_branch.items()
            },
            versions_by_branch={
                branch: {oid: version.ref for oid, version in versions_map.items()}
                for branch, versions_map in self._versions_by_branch.items()
            },
            high_water=self._high_water,
        )

    def restore(self, state: ReplayState) -> None:
        """Continue from a stored snapshot of an earlier run."""
        if tuple(state.roots) != tuple(self._roots) or tuple(state.branch_patterns) != tuple(
            self._branch_patterns
        ):
            self._diagnostics.warning(
                "STATE_FILTERS_CHANGED",
                "Stored filters differ from the configured ones; keeping the stored filters",
                stored_roots=list(state.roots),
                stored_branches=list(state.branch_patterns),
            )
            self._roots = tuple(state.roots)
            self._branch_patterns = tuple(state.branch_patterns)

        placeholders: dict[int, ChangeSet] = {}

        def placeholder(branch: str, changeset_id: int) -> ChangeSet:
            existing = placeholders.get(changeset_id)
            if existing is None:
                existing = ChangeSet.starting_at("", "", branch, PLACEHOLDER_TIME)
                existing.id = changeset_id
                existing.is_branching_point = True
                placeholders[changeset_id] = existing
            return existing

        self._branch_parents = dict(state.branch_parents)
        self._last_id = state.last_id
        self._high_water = state.high_water
        self._tips = {
            branch: placeholder(branch, tip_id) for branch, tip_id in state.branch_tips.items()
        }
        self._started = {}
        for branch, point_id in state.started_branches.items():
            if point_id is None:
                self._started[branch] = None
                continue
            parent = self._branch_parents.get(branch) or MAIN_BRANCH
            self._started[branch] = placeholder(parent, point_id)

        self._names_by_branch = {}
        for branch, names_map in state.names_by_branch.items():
            names: dict[str, set[str]] = {}
            for oid, values in names_map.items():
                if self._graph.find_element(oid) is None:
                    self._warn_unknown_element(oid, branch)
                    continue
                names[oid] = set(values)
            self._names_by_branch[branch] = names

        self._versions_by_branch = {}
        for branch, refs in state.versions_by_branch.items():
            versions: dict[str, Version] = {}
            for oid, ref in refs.items():
                version = self._graph.resolve(ref)
                if version is None:
                    self._warn_unknown_element(oid, branch)
                    continue
                versions[oid] = version
            self._versions_by_branch[branch] = versions

    def _warn_unknown_element(self, oid: str, branch: str) -> None:
        self._diagnostics.warning(
            "STATE_UNKNOWN_ELEMENT",
            f"Stored state on branch {branch} refers to element {oid} missing from the graph",
            element=oid,
            branch=branch,
        )

    def _merge_branch_parents(self, discovered: dict[str, str | None]) -> None:
        if self._branch_parents is None:
            self._branch_parents = dict(discovered)
            return
        for branch, parent in discovered.items():
            if branch not in self._branch_parents:
                self._branch_parents[branch] = parent
                continue
            if self._branch_parents[branch] != parent:
                raise HistoryError(
                    code="INCONSISTENT_BRANCH",
                    message=(
                        f"Branch {branch} now derives from {parent} "
                        f"but was imported from {self._branch_parents[branch]}."
                    ),
                )

    def _parent_of(self, branch: str) -> str:
        parent = (self._branch_parents or {}).get(branch)
        if parent is None:
            raise HistoryError(
                code="UNKNOWN_PARENT_BRANCH", message=f"Branch {branch} has no known parent."
            )
        return parent

    def _replay(self) -> tuple[list[ChangeSet], list[Version]]:
        replayed: list[ChangeSet] = []
        orphans: OrphanMap = {}
        labeled_orphans: list[Version] = []
        queue: deque[ChangeSet] = deque()
        while True:
            if not queue:
                queue.extend(self._find_next_changesets())
                if not queue:
                    break
            changeset = queue.popleft()
            names, versions = self._enter_branch(changeset, replayed)
            self._last_id += 1
            changeset.id = self._last_id
            replayed.append(changeset)
            self._tips[changeset.branch] = changeset
            resolver = TreeResolver(
                self._graph, changeset, names, versions, orphans, self._roots, self._diagnostics
            )
            new_orphans = resolver.resolve()
            self._process_labels(changeset, versions, new_orphans, labeled_orphans)

        lost: list[Version] = []
        for entries in orphans.values():
            for _, named in entries:
                if not any(named.version is version for version in lost):
                    lost.append(named.version)

        for changeset in replayed:
            self._process_merges(changeset, lost)
        self._compute_all_merges()

        for version in labeled_orphans:
            if any(version is missing for missing in lost):
                self._diagnostics.warning(
                    "LABELED_ORPHAN",
                    f"Label(s) {', '.join(version.labels)} completed by a version never imported",
                    version=str(version),
                    labels=list(version.labels),
                )
        for info in self._labels.values():
            missing = info.sorted_missing()
            self._diagnostics.warning(
                "LABEL_INCOMPLETE",
                f"Label {info.name} has {len(missing)} missing version(s) : not applied",
                label=info.name,
                missing=[str(version) for version in missing],
            )
        return replayed, lost

    def _enter_branch(
        self, changeset: ChangeSet, replayed: list[ChangeSet]
    ) -> tuple[dict[str, set[str]], dict[str, Version]]:
        branch = changeset.branch
        if branch in self._started:
            return (
                self._names_by_branch.setdefault(branch, {}),
                self._versions_by_branch.setdefault(branch, {}),
            )
        if branch == MAIN_BRANCH:
            self._start_main()
            return self._names_by_branch[MAIN_BRANCH], self._versions_by_branch[MAIN_BRANCH]

        parent = self._parent_of(branch)
        self._bootstrap_ancestors(parent, changeset, replayed)
        tip = self._spawn_tip(parent, branch)
        changeset.branching_point = tip
        self._started[branch] = tip
        return self._copy_maps(parent, branch)

    def _start_main(self) -> None:
        self._started[MAIN_BRANCH] = None
        self._names_by_branch[MAIN_BRANCH] = {}
        self._versions_by_branch[MAIN_BRANCH] = {}

    def _spawn_tip(self, parent: str, branch: str) -> ChangeSet:
        tip = self._tips.get(parent)
        if tip is None:
            raise HistoryError(
                code="MISSING_SPAWNING_POINT",
                message=f"Branch {parent} has no changeset to spawn {branch} from.",
            )
        tip.is_branching_point = True
        return tip

    def _bootstrap_ancestors(
        self, parent: str, changeset: ChangeSet, replayed: list[ChangeSet]
    ) -> None:
        """Start every unstarted ancestor of a branch, root first."""
        chain: list[str] = []
        current = parent
        while current not in self._started and current != MAIN_BRANCH:
            chain.append(current)
            current = self._parent_of(current)

        if current == MAIN_BRANCH and MAIN_BRANCH not in self._started:
            self._diagnostics.warning(
                "MAIN_SYNTHESIZED",
                f"{MAIN_BRANCH} was never started before {changeset.branch}; "
                "creating an empty changeset to spawn from",
                branch=changeset.branch,
            )
            self._start_main()
            main = ChangeSet.starting_at(
                changeset.author_name, changeset.author_login, MAIN_BRANCH, changeset.start
            )
            self._append_synthetic(main, replayed)

        for ancestor in reversed(chain):
            ancestor_parent = self._parent_of(ancestor)
            tip = self._spawn_tip(ancestor_parent, ancestor)
            bridge = ChangeSet.starting_at(tip.author_name, tip.author_login, ancestor, tip.finish)
            bridge.branching_point = tip
            self._started[ancestor] = tip
            self._copy_maps(ancestor_parent, ancestor)
            self._diagnostics.info(
                "BRANCH_BRIDGED",
                f"Starting branch {ancestor} from {ancestor_parent} to spawn {changeset.branch}",
                branch=ancestor,
                parent=ancestor_parent,
            )
            self._append_synthetic(bridge, replayed)

    def _append_synthetic(self, changeset: ChangeSet, replayed: list[ChangeSet]) -> None:
        self._last_id += 1
        changeset.id = self._last_id
        replayed.append(changeset)
        self._tips[changeset.branch] = changeset

    def _copy_maps(
        self, source: str, target: str
    ) -> tuple[dict[str, set[str]], dict[str, Version]]:
        names = {oid: set(values) for oid, values in self._names_by_branch[source].items()}
        versions = dict(self._versions_by_branch[source])
        self._names_by_branch[target] = names
        self._versions_by_branch[target] = versions
        return names, versions

    def _find_next_changesets(self) -> list[ChangeSet]:
        pending = self._pending
        while self._cursor < len(pending) and pending[self._cursor] is None:
            self._cursor += 1
        if self._cursor >= len(pending):
            return []
        changeset = pending[self._cursor]
        if changeset is None:
            return []

        for label, branch in self._find_would_break_labels(changeset):
            info = self._labels.get(label)
            if info is None:
                continue
            if branch not in info.missing:
                spawn = self._find_branch_to_spawn(info, branch)
                if spawn is None:
                    self._diagnostics.warning(
                        "LABEL_DROPPED",
                        f"Label {label} broken : no pending changeset starts a branch "
                        f"below {branch} holding its missing versions",
                        label=label,
                        branch=branch,
                    )
                    del self._labels[label]
                    continue
                self._diagnostics.info(
                    "BRANCH_SPAWNED_EARLY",
                    f"Spawning branch {spawn.branch} before {changeset} to keep label {label}",
                    label=label,
                    branch=spawn.branch,
                )
                return [spawn]

            remaining = self._drop_too_late_versions(info, branch, changeset)
            if not remaining:
                if not info.missing:
                    self._settle_abandoned_label(info, branch)
                continue

            needed: set[int] = set()
            to_find = set(remaining)
            index = self._cursor
            while to_find and index < len(pending):
                candidate = pending[index]
                index += 1
                if candidate is None or candidate.branch != branch:
                    continue
                for version in _changeset_versions(candidate):
                    if version in to_find:
                        needed.add(index - 1)
                        to_find.discard(version)
            if to_find:
                self._diagnostics.warning(
                    "LABEL_DROPPED",
                    f"Label {label} broken : version(s) "
                    f"{', '.join(sorted(str(version) for version in to_find))} "
                    f"not found in any further changeset on branch {branch}",
                    label=label,
                    branch=branch,
                )
                del self._labels[label]
                continue

            if not self._process_dependencies(needed, label, index):
                info.forced = True
                self._diagnostics.info(
                    "LABEL_INCONSISTENT",
                    f"Label {label} is inconsistent at {changeset} : forcing it anyway",
                    label=label,
                )
            result: list[ChangeSet] = []
            for position in sorted(needed):
                selected = pending[position]
                if selected is not None:
                    result.append(selected)
                pending[position] = None
            self._diagnostics.info(
                "LABEL_LOOKAHEAD",
                f"Applying {len(result)} changeset(s) ahead of {changeset} to complete {label}",
                label=label,
                count=len(result),
            )
            return result

        pending[self._cursor] = None
        self._cursor += 1
        return [changeset]

    def _drop_too_late_versions(
        self, info: LabelInfo, branch: str, changeset: ChangeSet
    ) -> set[Version]:
        """Abandon missing versions checked in long after both the label and this changeset."""
        missing = set(info.missing.get(branch, ()))
        meta = self._graph.label_metas.get(info.name)
        threshold = self._label_too_late
        while missing:
            latest = max(missing, key=version_sort_key)
            if changeset.finish + threshold >= latest.date:
                break
            if meta is not None and meta.created + threshold >= latest.date:
                break
            self._diagnostics.warning(
                "LABEL_TOO_LATE",
                f"Label {info.name} : dropping {latest}, checked in too long after the label",
                label=info.name,
                version=str(latest),
            )
            info.versions[:] = [version for version in info.versions if version is not latest]
            discard_from_set(info.missing, branch, latest)
            info.possibly_broken.append((latest, None))
            missing.discard(latest)
        return missing

    def _settle_abandoned_label(self, info: LabelInfo, branch: str) -> None:
        del self._labels[info.name]
        tip = self._tips.get(branch)
        if tip is None:
            self._diagnostics.warning(
                "LABEL_DROPPED",
                f"Label {info.name} broken : no changeset on {branch} to apply it to",
                label=info.name,
                branch=branch,
            )
            return
        info.forced = True
        tip.labels.append(info.name)
        self._diagnostics.info(
            "LABEL_INCONSISTENT",
            f"Label {info.name} applied to {tip} without its abandoned versions",
            label=info.name,
        )

    def _find_branch_to_spawn(self, info: LabelInfo, branch: str) -> ChangeSet | None:
        """Take the first pending changeset of an unstarted branch below ``branch``.

        Candidates are tried from the branch nearest ``branch`` downwards, so an
        intermediate branch without changesets of its own gets bridged when one
        of its descendants is spawned.
        """
        parents = self._branch_parents or {}
        candidates: list[str] = []
        for missing_branch in sorted(info.missing):
            chain: list[str] = []
            current: str | None = missing_branch
            while current is not None and current not in self._started:
                chain.append(current)
                if parents.get(current) == branch:
                    for name in reversed(chain):
                        if name not in candidates:
                            candidates.append(name)
                    break
                current = parents.get(current)
        for target in candidates:
            for index in range(self._cursor, len(self._pending)):
                changeset = self._pending[index]
                if changeset is not None and changeset.branch == target:
                    self._pending[index] = None
                    return changeset
        return None

    def _process_dependencies(self, needed: set[int], label: str, stop: int) -> bool:
        """Pull earlier changesets the needed ones depend on; False if that breaks ``label``."""
        pending = self._pending
        selected: dict[str, list[Version]] = {}
        for position in sorted(needed):
            changeset = pending[position]
            for named in changeset.versions if changeset is not None else ():
                selected.setdefault(named.version.oid, []).append(named.version)

        for position in range(stop - 1, self._cursor - 1, -1):
            candidate = pending[position]
            if candidate is None:
                continue
            if position in needed:
                if self._breaks_label(candidate, label):
                    return False
                continue
            if not any(
                self._graph.is_ancestor(named.version, other)
                for named in candidate.versions
                for other in selected.get(named.version.oid, ())
            ):
                continue
            if self._breaks_label(candidate, label):
                return False
            needed.add(position)
            for named in candidate.versions:
                selected.setdefault(named.version.oid, []).append(named.version)
        return True

    def _breaks_label(self, changeset: ChangeSet, label: str) -> bool:
        return any(name == label for name, _ in self._find_would_break_labels(changeset))

    def _find_would_break_labels(self, changeset: ChangeSet) -> list[tuple[str, str]]:
        """Labels (with their blocking branch) that applying ``changeset`` now would break."""
        parents = self._branch_parents or {}
        result: dict[tuple[str, str], None] = {}
        branch = changeset.branch
        if branch not in self._started:
            ancestor = parents.get(branch)
            while ancestor is not None:
                for info in self._labels.values():
                    if branch in info.missing and ancestor in info.missing:
                        result.setdefault((info.name, ancestor), None)
                ancestor = parents.get(ancestor)

        for named in changeset.versions:
            previous = self._graph.previous_version(named.version)
            while previous is not None and previous.number == 0:
                previous = self._graph.previous_version(previous)
            if previous is None:
                continue
            for label in previous.labels:
                info = self._labels.get(label)
                if info is not None and self._label_blocks(info, branch):
                    result.setdefault((label, branch), None)
        return list(result)

    def _label_blocks(self, info: LabelInfo, branch: str) -> bool:
        if branch in info.missing:
            return True
        parents = self._branch_parents or {}
        for missing_branch in info.missing:
            current: str | None = missing_branch
            while current is not None and current not in self._started:
                parent = parents.get(current)
                if parent == branch:
                    return True
                current = parent
        return False

    def _process_labels(
        self,
        changeset: ChangeSet,
        versions: dict[str, Version],
        new_orphans: list[Version],
        labeled_orphans: list[Version],
    ) -> None:
        for version in new_orphans:
            finished = self._process_version_labels(changeset, version, versions)
            if finished:
                if not any(version is known for known in labeled_orphans):
                    labeled_orphans.append(version)
                self._diagnostics.info(
                    "LABEL_COMPLETED_BY_ORPHAN",
                    f"Label(s) {', '.join(finished)} completed by orphan version {version}",
                    version=str(version),
                    labels=finished,
                )
                changeset.labels.extend(finished)
        for version in _changeset_versions(changeset):
            changeset.labels.extend(self._process_version_labels(changeset, version, versions))

    def _process_version_labels(
        self, changeset: ChangeSet, version: Version, versions: dict[str, Version]
    ) -> list[str]:
        applied: list[str] = []
        for label in list(version.labels):
            info = self._labels.get(label)
            if info is None:
                continue
            discard_from_set(info.missing, version.branch, version)
            if info.missing:
                continue
            del self._labels[label]
            consistent = True
            for expected in list(info.versions):
                current = versions.get(expected.oid)
                if current is expected or (current is None and expected.number == 0):
                    continue
                if current is not None and current.number == 0:
                    self._diagnostics.warning(
                        "LABEL_INCONSISTENT",
                        f"Label {label} : removing {current}, the label expects {expected}",
                        label=label,
                        expected=str(expected),
                        actual=str(current),
                    )
                    changeset.versions[:] = [
                        named for named in changeset.versions if named.version is not current
                    ]
                else:
                    self._diagnostics.info(
                        "LABEL_INCONSISTENT",
                        f"Label {label} : expected {expected} but found "
                        f"{current if current is not None else 'no version'}",
                        label=label,
                        expected=str(expected),
                        actual=None if current is None else str(current),
                    )
                info.possibly_broken.append((expected, current))
                consistent = False
            if not consistent:
                info.forced = True
                self._diagnostics.warning(
                    "LABEL_FORCED",
                    f"Label {label} was inconsistent but is applied to {changeset} anyway",
                    label=label,
                    broken=len(info.possibly_broken),
                )
            applied.append(label)
        return applied

    def _process_merges(self, changeset: ChangeSet, lost: list[Version]) -> None:
        for named in changeset.versions:
            version = named.version
            for ref in version.merges_to:
                target = self._graph.resolve(ref)
                if target is not None:
                    self._process_merge(changeset, version, target, False, lost)
            for ref in version.merges_from:
                source = self._graph.resolve(ref)
                if source is not None:
                    self._process_merge(changeset, source, version, True, lost)
        for version in changeset.skipped_versions:
            for ref in version.merges_from:
                source = self._graph.resolve(ref)
                if source is not None:
                    self._process_merge(changeset, source, version, True, lost)

    def _process_merge(
        self,
        changeset: ChangeSet,
        from_version: Version,
        to_version: Version,
        target_in_changeset: bool,
        lost: list[Version],
    ) -> None:
        if any(version is from_version or version is to_version for version in lost):
            return
        if (self._branch_parents or {}).get(from_version.branch) != to_version.branch:
            return
        if from_version.number == 0 or not _is_latest_merge(from_version, to_version):
            return
        key = (from_version.branch, to_version.branch)
        info = self._merges.get(key)
        if info is None:
            info = MergeInfo(from_branch=from_version.branch, to_branch=to_version.branch)
            self._merges[key] = info
        if target_in_changeset:
            info.record_target(changeset, from_version, to_version)
        else:
            info.record_source(changeset, from_version, to_version)

    def _compute_all_merges(self) -> None:
        for info in self._merges.values():
            current_to: int | None = None
            sources = sorted(info.merges, key=lambda changeset: changeset.id, reverse=True)
            for source in sources:
                target: ChangeSet | None = None
                for candidate in sources:
                    if candidate.id > source.id:
                        continue
                    candidate_target = info.merges[candidate]
                    if target is None or candidate_target.id > target.id:
                        target = candidate_target
                if target is None or (current_to is not None and target.id >= current_to):
                    continue
                spawn = self._started.get(source.branch)
                spawn_id = spawn.id if spawn is not None else 0
                if target.id <= spawn_id:
                    self._diagnostics.warning(
                        "MERGE_INVALID",
                        f"Merge {info} : {target} precedes the spawning point of {source.branch}",
                        source=source.id,
                        target=target.id,
                    )
                    break
                current_to = target.id
                target.merges.append(source)
                source.is_merged = True
            if not info.is_complete:
                self._diagnostics.warning(
                    "MERGE_INCOMPLETE",
                    f"Merge {info} has unmatched version links",
                    from_branch=info.from_branch,
                    to_branch=info.to_branch,
                    missing_from=len(info.missing_from),
                    missing_to=len(info.missing_to),
                )

    def _emission_order(self, replayed: list[ChangeSet]) -> list[ChangeSet]:
        """Reorder so that branching points and merge sources precede their dependents."""
        index_of = {changeset: position for position, changeset in enumerate(replayed)}
        source: list[ChangeSet | None] = list(replayed)
        output: list[ChangeSet] = []
        for top in range(len(source)):
            if source[top] is None:
                continue
            stack = [_Frame(position=top)]
            active = {top}
            while stack:
                frame = stack[-1]
                current = source[frame.position]
                if current is None:
                    stack.pop()
                    active.discard(frame.position)
                    continue
                if frame.dependencies is None:
                    frame.dependencies = self._dependencies(current, source, index_of, top)
                pushed = False
                while frame.next_dependency < len(frame.dependencies):
                    dependency = frame.dependencies[frame.next_dependency]
                    frame.next_dependency += 1
                    if source[dependency] is not None and dependency not in active:
                        stack.append(_Frame(position=dependency))
                        active.add(dependency)
                        pushed = True
                        break
                if pushed:
                    continue
                stack.pop()
                active.discard(frame.position)
                output.append(current)
                source[frame.position] = None
        return output

    def _dependencies(
        self,
        changeset: ChangeSet,
        source: list[ChangeSet | None],
        index_of: dict[ChangeSet, int],
        first: int,
    ) -> list[int]:
        anchors: list[ChangeSet] = []
        if changeset.branching_point is not None:
            anchors.append(changeset.branching_point)
        anchors.extend(changeset.merges)
        output: list[int] = []
        for anchor in anchors:
            position = index_of.get(anchor)
            if position is None or source[position] is None:
                continue
            if anchor in changeset.merges:
                self._diagnostics.info(
                    "MERGE_REORDERED",
                    f"Emitting {anchor} early as merge source of {changeset}",
                    source=anchor.id,
                    target=changeset.id,
                )
            for index in range(first, position + 1):
                candidate = source[index]
                if candidate is not None and candidate.branch == anchor.branch:
                    output.append(index)
        return output

    def _cleanup(
        self, history: list[ChangeSet], earlier_tips: dict[str, ChangeSet]
    ) -> list[ChangeSet]:
        """Drop changesets with no effect, relocating their labels and branch origins."""
        by_branch: dict[str, list[ChangeSet]] = {}
        position: dict[ChangeSet, int] = {}
        for changeset in history:
            branch_list = by_branch.setdefault(changeset.branch, [])
            position[changeset] = len(branch_list)
            branch_list.append(changeset)

        dropped: set[ChangeSet] = set()
        for changeset in history:
            if (
                not changeset.is_empty_commit
                or changeset.is_branching_point
                or changeset.is_merged
            ):
                continue
            target: ChangeSet | None = None
            if changeset.labels:
                target = self._kept_predecessor(
                    changeset, by_branch, position, dropped, earlier_tips
                )
                if target is not None and target not in position:
                    self._diagnostics.info(
                        "LABELS_KEPT_ON_EMPTY",
                        f"Keeping empty {changeset} to carry label(s) "
                        f"{', '.join(changeset.labels)} : its predecessor {target.id} "
                        "was emitted by an earlier run",
                        labels=list(changeset.labels),
                    )
                    continue
            dropped.add(changeset)
            if changeset.labels:
                if target is None:
                    self._diagnostics.warning(
                        "LABELS_DROPPED_NO_TARGET",
                        f"Label(s) {', '.join(changeset.labels)} of empty {changeset} "
                        "have no earlier changeset to move to",
                        labels=list(changeset.labels),
                    )
                else:
                    target.labels.extend(changeset.labels)
                    self._diagnostics.info(
                        "LABELS_RELOCATED",
                        f"Moving label(s) {', '.join(changeset.labels)} from empty "
                        f"{changeset} to {target}",
                        labels=list(changeset.labels),
                    )
                changeset.labels.clear()
            if changeset.branching_point is not None:
                branch_list = by_branch[changeset.branch]
                successor = position[changeset] + 1
                if successor < len(branch_list):
                    branch_list[successor].branching_point = changeset.branching_point

        for branch, tip in list(self._tips.items()):
            if tip not in dropped:
                continue
            replacement = self._kept_predecessor(tip, by_branch, position, dropped, earlier_tips)
            if replacement is None:
                del self._tips[branch]
            else:
                self._tips[branch] = replacement
        return [changeset for changeset in history if changeset not in dropped]

    @staticmethod
    def _kept_predecessor(
        changeset: ChangeSet,
        by_branch: dict[str, list[ChangeSet]],
        position: dict[ChangeSet, int],
        dropped: set[ChangeSet],
        earlier_tips: dict[str, ChangeSet],
    ) -> ChangeSet | None:
        current = changeset
        while True:
            index = position.get(current)
            if index is None:
                return None
            if index > 0:
                current = by_branch[current.branch][index - 1]
            elif current.branching_point is not None:
                current = current.branching_point
            else:
                return earlier_tips.get(current.branch)
            if current not in dropped:
                return current


def _changeset_versions(changeset: ChangeSet) -> list[Version]:
    output = [named.version for named in changeset.versions]
    output.extend(changeset.skipped_versions)
    return output


def _is_latest_merge(from_version: Version, to_version: Version) -> bool:
    """True unless a later version of either side carries the same merge."""
    for ref in from_version.merges_to:
        if ref.oid == to_version.oid and ref.branch == to_version.branch:
            if ref.number > to_version.number:
                return False
    for ref in to_version.merges_from:
        if ref.oid == from_version.oid and ref.branch == from_version.branch:
            if ref.number > from_version.number:
                return False
    return True

