"""Scheduling properties derived from a protocol dependency graph."""

from __future__ import annotations

import logging
from collections import defaultdict, deque
from dataclasses import dataclass
from typing import Literal, Mapping

from .errors import CircularDependencyError
from .protocol_graph import DependencyGraph, DependencyKind

# purpose: compute levels, critical path, parallel groups, and bottlenecks without mutating the graph
# inputs: DependencyGraph from protocol_graph.build_dependency_graph
# outputs: SchedulingReport consumed by the advisor and the analysis record
# status: pilot

logger = logging.getLogger(__name__)

COMPLEXITY_BANDS: tuple[tuple[float, str], ...] = ((10.0, "low"), (25.0, "medium"))


@dataclass(frozen=True)
class CriticalPath:
    steps: tuple[str, ...]
    duration: float


@dataclass(frozen=True)
class ParallelGroup:
    """Steps on one level that may run concurrently."""

    level: int
    steps: tuple[str, ...]
    potential_time_saving: float
    feasibility: Literal["full", "partial", "none"]


@dataclass(frozen=True)
class Bottleneck:
    kind: Literal["critical_step", "exclusive_instrument", "resource"]
    step_id: str | None
    resource: str | None
    reason: str
    duration_reduction: float = 0.0


@dataclass(frozen=True)
class SchedulingReport:
    """Scheduling view of one dependency graph."""

    levels: tuple[tuple[str, ...], ...]
    level_of: Mapping[str, int]
    critical_path: CriticalPath
    parallel_groups: tuple[ParallelGroup, ...]
    bottlenecks: tuple[Bottleneck, ...]

    @property
    def depth(self) -> int:
        return len(self.levels)


def compute_levels(graph: DependencyGraph) -> tuple[tuple[str, ...], ...]:
    """Assign topological levels with Kahn's algorithm over ordering edges."""

    indegree = {step_id: 0 for step_id in graph.steps}
    for step_id in graph.steps:
        indegree[step_id] = len(graph.predecessors(step_id))

    level_of: dict[str, int] = {}
    queue = deque(sorted(step_id for step_id, degree in indegree.items() if degree == 0))
    for step_id in queue:
        level_of[step_id] = 0
    while queue:
        current = queue.popleft()
        for successor in graph.successors(current):
            level_of[successor] = max(level_of.get(successor, 0), level_of[current] + 1)
            indegree[successor] -= 1
            if indegree[successor] == 0:
                queue.append(successor)

    if len(level_of) != len(graph.steps) or any(indegree.values()):
        remaining = sorted(step_id for step_id, degree in indegree.items() if degree > 0)
        raise CircularDependencyError(remaining)

    buckets: dict[int, list[str]] = defaultdict(list)
    for step_id, level in level_of.items():
        buckets[level].append(step_id)
    return tuple(tuple(sorted(buckets[level])) for level in sorted(buckets))


def _longest_path(
    graph: DependencyGraph,
    levels: tuple[tuple[str, ...], ...],
    durations: Mapping[str, float],
) -> CriticalPath:
    best: dict[str, float] = {}
    parent: dict[str, str | None] = {}
    for level in levels:
        for step_id in level:
            chosen: str | None = None
            chosen_total = 0.0
            for predecessor in graph.predecessors(step_id):
                total = best[predecessor]
                if chosen is None or total > chosen_total:
                    chosen, chosen_total = predecessor, total
            best[step_id] = chosen_total + durations[step_id]
            parent[step_id] = chosen

    if not best:
        return CriticalPath(steps=(), duration=0.0)

    end = min(best, key=lambda step_id: (-best[step_id], step_id))
    path: list[str] = []
    cursor: str | None = end
    while cursor is not None:
        path.append(cursor)
        cursor = parent[cursor]
    path.reverse()
    return CriticalPath(steps=tuple(path), duration=best[end])


def find_critical_path(graph: DependencyGraph, levels=None) -> CriticalPath:
    """Longest duration-weighted chain; unknown durations count as zero."""

    levels = levels if levels is not None else compute_levels(graph)
    durations = {step_id: step.effective_duration for step_id, step in graph.steps.items()}
    return _longest_path(graph, levels, durations)


def _has_resource_conflict(graph: DependencyGraph, step_id: str, members: list[str]) -> bool:
    for member in members:
        for edge in graph.edges_between(step_id, member):
            if edge.kind == DependencyKind.RESOURCE:
                return True
    return False


def partition_parallel_groups(
    graph: DependencyGraph, levels: tuple[tuple[str, ...], ...]
) -> tuple[ParallelGroup, ...]:
    """Greedy per-level partition into subsets free of resource conflicts."""

    groups: list[ParallelGroup] = []
    for level_index, level in enumerate(levels):
        subsets: list[list[str]] = []
        isolated: list[list[str]] = []
        for step_id in level:
            step = graph.steps[step_id]
            if not step.parallelizable:
                isolated.append([step_id])
                continue
            for subset in subsets:
                if not _has_resource_conflict(graph, step_id, subset):
                    subset.append(step_id)
                    break
            else:
                subsets.append([step_id])

        for members in sorted(subsets + isolated, key=lambda item: item[0]):
            durations = [graph.steps[member].effective_duration for member in members]
            saving = max(sum(durations) - max(durations), 0.0)
            if len(members) < 2:
                feasibility = "none"
            elif all(graph.steps[member].duration is not None for member in members):
                feasibility = "full"
            else:
                feasibility = "partial"
            groups.append(
                ParallelGroup(
                    level=level_index,
                    steps=tuple(members),
                    potential_time_saving=saving,
                    feasibility=feasibility,
                )
            )
    return tuple(groups)


def detect_bottlenecks(
    graph: DependencyGraph,
    levels: tuple[tuple[str, ...], ...],
    critical_path: CriticalPath,
) -> tuple[Bottleneck, ...]:
    """Evaluate step removal and resource pressure hypothetically."""

    durations = {step_id: step.effective_duration for step_id, step in graph.steps.items()}
    level_of = {step_id: index for index, level in enumerate(levels) for step_id in level}
    findings: list[Bottleneck] = []
    flagged: set[str] = set()

    for step_id in critical_path.steps:
        if durations[step_id] <= 0:
            continue
        # removing a node and rewiring its neighbours leaves the same paths minus its weight
        trial = dict(durations)
        trial[step_id] = 0.0
        reduced = _longest_path(graph, levels, trial).duration
        if reduced < critical_path.duration:
            flagged.add(step_id)
            findings.append(
                Bottleneck(
                    kind="critical_step",
                    step_id=step_id,
                    resource=None,
                    reason="removing this step shortens the critical path",
                    duration_reduction=critical_path.duration - reduced,
                )
            )

    instrument_levels: dict[str, dict[int, list[str]]] = defaultdict(lambda: defaultdict(list))
    for step_id, step in graph.steps.items():
        for instrument in step.instruments:
            instrument_levels[instrument][level_of[step_id]].append(step_id)

    for step_id in critical_path.steps:
        if step_id in flagged:
            continue
        level = level_of[step_id]
        for instrument in graph.steps[step_id].instruments:
            by_level = instrument_levels[instrument]
            if by_level[level] != [step_id]:
                continue
            if by_level.get(level - 1) or by_level.get(level + 1):
                flagged.add(step_id)
                findings.append(
                    Bottleneck(
                        kind="exclusive_instrument",
                        step_id=step_id,
                        resource=instrument,
                        reason=f"sole user of {instrument} while it is busy in an adjacent level",
                    )
                )
                break

    resource_levels: dict[str, set[int]] = defaultdict(set)
    for step_id in graph.steps:
        for key in graph.resource_keys(step_id):
            resource_levels[key].add(level_of[step_id])
    for key in sorted(resource_levels):
        busy = sorted(resource_levels[key])
        run = longest = 1
        for previous, current in zip(busy, busy[1:]):
            run = run + 1 if current == previous + 1 else 1
            longest = max(longest, run)
        if longest >= 2:
            findings.append(
                Bottleneck(
                    kind="resource",
                    step_id=None,
                    resource=key.split(":", 1)[1],
                    reason=f"{key} has no idle capacity across {longest} consecutive levels",
                )
            )
    return tuple(findings)


def complexity_score(graph: DependencyGraph, report: SchedulingReport) -> float:
    return round(len(graph.steps) * 0.3 + len(graph.edges) * 0.4 + report.depth * 0.3, 2)


def complexity_band(score: float) -> str:
    for limit, band in COMPLEXITY_BANDS:
        if score < limit:
            return band
    return "high"


def analyze_schedule(graph: DependencyGraph) -> SchedulingReport:
    """Compute the scheduling report for a dependency graph."""

    levels = compute_levels(graph)
    critical_path = find_critical_path(graph, levels)
    report = SchedulingReport(
        levels=levels,
        level_of={step_id: index for index, level in enumerate(levels) for step_id in level},
        critical_path=critical_path,
        parallel_groups=partition_parallel_groups(graph, levels),
        bottlenecks=detect_bottlenecks(graph, levels, critical_path),
    )
    logger.debug(
        "scheduling computed levels=%d critical_duration=%.1f bottlenecks=%d",
        len(levels),
        critical_path.duration,
        len(report.bottlenecks),
    )
    return report


__all__ = [
    "Bottleneck",
    "CriticalPath",
    "ParallelGroup",
    "SchedulingReport",
    "analyze_schedule",
    "complexity_band",
    "complexity_score",
    "compute_levels",
    "detect_bottlenecks",
    "find_critical_path",
    "partition_parallel_groups",
]
