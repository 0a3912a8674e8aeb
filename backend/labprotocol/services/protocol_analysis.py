"""Aggregate protocol analysis with caching, batch execution, and comparison."""

from __future__ import annotations

import copy
import logging
import time
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from threading import Lock
from typing import Any, Callable, Iterable, Sequence, TypeVar

from .. import config, schemas
from ..registry import InstrumentRegistry
from .advisor import RISK_RANK, assess
from .errors import BatchLimitExceeded, ProcedureNotFound, ProtocolAnalysisError
from .protocol_graph import DependencyGraph, build_dependency_graph
from .resource_requirements import (
    analyze_resources,
    critical_issues,
    estimate_resource_cost,
    reliability,
)
from .scheduling import SchedulingReport, analyze_schedule, complexity_band, complexity_score
from .validation import ValidationOptions, ValidationRule, validate_graph

# purpose: map one procedure document to one analysis record and orchestrate repeated requests
# inputs: procedure documents or stored procedure ids, registry, validation options
# outputs: schemas.ProtocolAnalysis, batch summaries, and comparison tables
# status: pilot
# depends_on: backend.labprotocol.services.protocol_graph, backend.labprotocol.services.scheduling,
#   backend.labprotocol.services.validation, backend.labprotocol.services.advisor,
#   backend.labprotocol.services.resource_requirements

logger = logging.getLogger(__name__)

ANALYSIS_TYPES: tuple[str, ...] = (
    "full", "dependencies", "validation", "resources", "risks", "optimizations"
)

T = TypeVar("T")


def dependency_analysis(graph: DependencyGraph, schedule: SchedulingReport) -> schemas.DependencyAnalysis:
    """Serialize the graph and its scheduling report."""

    ordered = sorted(graph.steps.values(), key=lambda step: step.position)
    return schemas.DependencyAnalysis(
        steps=[
            schemas.StepSummary(
                id=step.id,
                block_type=step.block_type,
                kind=step.kind.value,
                duration=step.duration,
                instruments=list(step.instruments),
                reagents=list(step.reagents),
                produces=list(step.produces),
                consumes=list(step.consumes),
                parallelizable=step.parallelizable,
                parent_id=step.parent_id,
                depth=step.depth,
            )
            for step in ordered
        ],
        edges=[
            schemas.DependencyOut(
                id=edge.id,
                source=edge.source,
                target=edge.target,
                kind=edge.kind.value,
                detail=edge.detail,
            )
            for edge in sorted(graph.edges.values(), key=lambda item: item.id)
        ],
        levels=[list(level) for level in schedule.levels],
        critical_path=schemas.CriticalPathOut(
            steps=list(schedule.critical_path.steps),
            duration=schedule.critical_path.duration,
        ),
        parallel_groups=[
            schemas.ParallelGroupOut(
                level=group.level,
                steps=list(group.steps),
                potential_time_saving=group.potential_time_saving,
                feasibility=group.feasibility,
            )
            for group in schedule.parallel_groups
        ],
        bottlenecks=[
            schemas.BottleneckOut(
                kind=item.kind,
                step_id=item.step_id,
                resource=item.resource,
                reason=item.reason,
                duration_reduction=item.duration_reduction,
            )
            for item in schedule.bottlenecks
        ],
        issues=[
            schemas.BuildIssueOut(
                code=issue.code,
                step_id=issue.step_id,
                message=issue.message,
                subject=issue.subject,
            )
            for issue in graph.issues
        ],
    )


def build_metadata(
    graph: DependencyGraph,
    schedule: SchedulingReport,
    registry: InstrumentRegistry | None,
    analysis_type: str = "full",
) -> schemas.AnalysisMetadata:
    score = complexity_score(graph, schedule)
    return schemas.AnalysisMetadata(
        analysis_type=analysis_type,
        step_count=len(graph.steps),
        instrument_count=len(graph.instrument_keys()),
        estimated_total_duration=sum(
            step.duration for step in graph.steps.values() if step.duration is not None
        ),
        critical_path_duration=schedule.critical_path.duration,
        estimated_resource_cost=estimate_resource_cost(graph, registry),
        complexity_score=score,
        complexity=complexity_band(score),
    )


def analyze_procedure(
    document: Any,
    registry: InstrumentRegistry | None = None,
    *,
    analysis_type: str = "full",
    options: ValidationOptions | None = None,
    rules: Sequence[ValidationRule] | None = None,
    max_suggestions: int = config.ANALYSIS_MAX_SUGGESTIONS,
) -> schemas.ProtocolAnalysis:
    """Run the full pipeline for one procedure document.

    Raises ``MalformedStepError`` and ``CircularDependencyError`` from graph
    construction; every other finding is reported inside the record.
    """

    if analysis_type not in ANALYSIS_TYPES:
        raise ValueError(f"unknown analysis type {analysis_type!r}")
    graph = build_dependency_graph(document)
    schedule = analyze_schedule(graph)
    metadata = build_metadata(graph, schedule, registry, analysis_type)
    analysis = schemas.ProtocolAnalysis(
        procedure_id=graph.procedure_id,
        version=graph.version,
        name=graph.name,
        dependencies=dependency_analysis(graph, schedule),
        metadata=metadata,
    )
    if analysis_type == "dependencies":
        return analysis

    validation = validate_graph(graph, registry, options, rules)
    if analysis_type == "validation":
        return analysis.model_copy(update={"dependencies": None, "validation": validation})

    advice = assess(graph, validation, schedule, registry, max_suggestions)
    full = analysis.model_copy(
        update={
            "metadata": metadata.model_copy(
                update={"reliability": reliability(validation, advice.risks)}
            ),
            "validation": validation,
            "resources": analyze_resources(graph, schedule, registry, validation),
            "critical_issues": critical_issues(validation, advice.risks),
            "risks": advice.risks,
            "optimizations": list(advice.optimizations),
            "recommendations": list(advice.recommendations),
        }
    )
    return project_analysis(full, analysis_type)


def project_analysis(analysis: schemas.ProtocolAnalysis, analysis_type: str) -> schemas.ProtocolAnalysis:
    """Reduce a full analysis record to the sections an analysis type selects."""

    metadata = analysis.metadata.model_copy(update={"analysis_type": analysis_type})
    if analysis_type == "full":
        return analysis.model_copy(update={"metadata": metadata})
    keep = {
        "dependencies": ("dependencies",),
        "validation": ("validation",),
        "resources": ("resources",),
        "risks": ("risks", "critical_issues"),
        "optimizations": ("optimizations", "recommendations"),
    }[analysis_type]
    if "critical_issues" not in keep:
        metadata = metadata.model_copy(update={"reliability": None})
    update: dict[str, Any] = {"metadata": metadata}
    for section in ("dependencies", "validation", "resources", "risks", "optimizations"):
        if section not in keep:
            update[section] = None
    for section in ("recommendations", "critical_issues"):
        if section not in keep:
            update[section] = []
    return analysis.model_copy(update=update)


@dataclass
class _CacheEntry:
    future: Future
    created_at: float


class AnalysisCache:
    """Single-flight cache keyed by (procedure_id, version)."""

    def __init__(self, ttl_seconds: float = 0, clock: Callable[[], float] = time.monotonic) -> None:
        self._ttl = ttl_seconds
        self._clock = clock
        self._lock = Lock()
        self._entries: dict[tuple[str, int], _CacheEntry] = {}
        self.hits = 0
        self.misses = 0

    def _expired(self, entry: _CacheEntry) -> bool:
        if self._ttl <= 0 or not entry.future.done():
            return False
        return self._clock() - entry.created_at >= self._ttl

    def get_or_compute(self, key: tuple[str, int], compute: Callable[[], T]) -> T:
        with self._lock:
            entry = self._entries.get(key)
            if entry is not None and not self._expired(entry):
                self.hits += 1
                owner = False
            else:
                entry = _CacheEntry(future=Future(), created_at=self._clock())
                self._entries[key] = entry
                self.misses += 1
                owner = True

        if not owner:
            logger.debug("analysis cache hit key=%s", key)
            return entry.future.result()

        try:
            result = compute()
        except BaseException as exc:
            with self._lock:
                if self._entries.get(key) is entry:
                    del self._entries[key]
            entry.future.set_exception(exc)
            raise
        entry.future.set_result(result)
        return result

    def invalidate(self, procedure_id: str) -> int:
        """Drop every cached version of a procedure."""

        with self._lock:
            stale = [key for key in self._entries if key[0] == procedure_id]
            for key in stale:
                del self._entries[key]
        if stale:
            logger.debug("analysis cache invalidated procedure=%s entries=%d", procedure_id, len(stale))
        return len(stale)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


class InMemoryProcedureStore:
    """Versioned procedure documents; every save invalidates cached analyses."""

    def __init__(self, cache: AnalysisCache | None = None) -> None:
        self._lock = Lock()
        self._documents: dict[str, dict[str, Any]] = {}
        self._cache = cache

    def save(self, procedure_id: str, document: dict[str, Any]) -> int:
        with self._lock:
            previous = self._documents.get(procedure_id)
            version = previous["version"] + 1 if previous is not None else 1
            stored = copy.deepcopy(document)
            stored["id"] = procedure_id
            stored["version"] = version
            self._documents[procedure_id] = stored
        if self._cache is not None:
            self._cache.invalidate(procedure_id)
        return version

    def get(self, procedure_id: str) -> dict[str, Any]:
        with self._lock:
            document = self._documents.get(procedure_id)
            if document is None:
                raise ProcedureNotFound(f"procedure {procedure_id} not found")
            return copy.deepcopy(document)

    def __contains__(self, procedure_id: object) -> bool:
        with self._lock:
            return procedure_id in self._documents


class ProtocolAnalysisService:
    """Stateful facade over the pure analysis pipeline."""

    def __init__(
        self,
        store: InMemoryProcedureStore | None = None,
        registry: InstrumentRegistry | None = None,
        cache: AnalysisCache | None = None,
        *,
        rules: Sequence[ValidationRule] | None = None,
        batch_limit: int = config.ANALYSIS_BATCH_LIMIT,
        max_workers: int = config.ANALYSIS_MAX_WORKERS,
        max_suggestions: int = config.ANALYSIS_MAX_SUGGESTIONS,
    ) -> None:
        self.cache = cache if cache is not None else AnalysisCache(config.ANALYSIS_CACHE_TTL_SECONDS)
        self.store = store if store is not None else InMemoryProcedureStore(self.cache)
        self.registry = registry
        self.rules = tuple(rules) if rules is not None else None
        self.batch_limit = batch_limit
        self.max_workers = max(max_workers, 1)
        self.max_suggestions = max_suggestions

    def save_procedure(self, procedure_id: str, document: dict[str, Any]) -> schemas.ProcedureStored:
        version = self.store.save(procedure_id, document)
        return schemas.ProcedureStored(procedure_id=procedure_id, version=version)

    def analyze_document(
        self,
        document: Any,
        analysis_type: str = "full",
        options: ValidationOptions | None = None,
        max_suggestions: int | None = None,
    ) -> schemas.ProtocolAnalysis:
        return analyze_procedure(
            document,
            self.registry,
            analysis_type=analysis_type,
            options=options,
            rules=self.rules,
            max_suggestions=self.max_suggestions if max_suggestions is None else max_suggestions,
        )

    def analyze_procedure(
        self,
        procedure_id: str,
        analysis_type: str = "full",
        options: ValidationOptions | None = None,
        max_suggestions: int | None = None,
    ) -> schemas.ProtocolAnalysis:
        """Analyze a stored procedure, sharing cached default-option results."""

        if analysis_type not in ANALYSIS_TYPES:
            raise ValueError(f"unknown analysis type {analysis_type!r}")
        document = self.store.get(procedure_id)
        customized = options is not None or (
            max_suggestions is not None and max_suggestions != self.max_suggestions
        )
        if customized:
            return self.analyze_document(document, analysis_type, options, max_suggestions)
        full = self.cache.get_or_compute(
            (procedure_id, int(document["version"])),
            lambda: self.analyze_document(document, "full"),
        )
        return project_analysis(full, analysis_type)

    def dependencies(self, procedure_id: str) -> schemas.DependencyAnalysis:
        return self.analyze_procedure(procedure_id, "dependencies").dependencies

    def validate(self, procedure_id: str, options: ValidationOptions | None = None) -> schemas.ValidationResult:
        return self.analyze_procedure(procedure_id, "validation", options=options).validation

    def resources(self, procedure_id: str) -> schemas.ResourceRequirements:
        return self.analyze_procedure(procedure_id, "resources").resources

    def risks(self, procedure_id: str) -> schemas.RiskAssessment:
        return self.analyze_procedure(procedure_id, "risks").risks

    def optimizations(self, procedure_id: str) -> schemas.ProtocolAnalysis:
        return self.analyze_procedure(procedure_id, "optimizations")

    def _batch_item(self, procedure_id: str, analysis_type: str) -> schemas.BatchAnalysisItem:
        try:
            result = self.analyze_procedure(procedure_id, analysis_type)
        except ProtocolAnalysisError as exc:
            logger.info("batch analysis failed procedure=%s error=%s", procedure_id, exc)
            return schemas.BatchAnalysisItem(procedure_id=procedure_id, success=False, error=str(exc))
        except Exception as exc:
            logger.exception("batch analysis crashed procedure=%s", procedure_id)
            return schemas.BatchAnalysisItem(
                procedure_id=procedure_id,
                success=False,
                error=f"{type(exc).__name__}: {exc}",
            )
        return schemas.BatchAnalysisItem(procedure_id=procedure_id, success=True, result=result)

    def run_batch(self, procedure_ids: Iterable[str], analysis_type: str = "full") -> schemas.BatchAnalysisResponse:
        """Analyze procedures independently; one failure never aborts the others."""

        ids = list(procedure_ids)
        if len(ids) > self.batch_limit:
            raise BatchLimitExceeded(
                f"batch of {len(ids)} procedures exceeds the limit of {self.batch_limit}"
            )
        if analysis_type not in ANALYSIS_TYPES:
            raise ValueError(f"unknown analysis type {analysis_type!r}")
        if ids:
            with ThreadPoolExecutor(max_workers=min(self.max_workers, len(ids))) as executor:
                results = list(executor.map(lambda item: self._batch_item(item, analysis_type), ids))
        else:
            results = []
        successful = sum(1 for item in results if item.success)
        summary = schemas.BatchSummary(total=len(results), successful=successful, failed=len(results) - successful)
        logger.info(
            "batch analysis finished total=%d successful=%d failed=%d",
            summary.total,
            summary.successful,
            summary.failed,
        )
        return schemas.BatchAnalysisResponse(results=results, summary=summary)

    def compare(self, procedure_ids: Sequence[str]) -> schemas.ComparisonResponse:
        """Side-by-side complexity, duration, resource, and risk figures."""

        if not 2 <= len(procedure_ids) <= 5:
            raise ValueError("comparison requires between 2 and 5 procedures")
        entries: list[schemas.ComparisonEntry] = []
        for procedure_id in procedure_ids:
            analysis = self.analyze_procedure(procedure_id, "full")
            metadata = analysis.metadata
            saving = sum(
                group.potential_time_saving for group in analysis.dependencies.parallel_groups
            )
            entries.append(
                schemas.ComparisonEntry(
                    procedure_id=procedure_id,
                    step_count=metadata.step_count,
                    complexity_score=metadata.complexity_score,
                    complexity=metadata.complexity,
                    critical_path_duration=metadata.critical_path_duration,
                    estimated_total_duration=metadata.estimated_total_duration,
                    parallel_time_saving=saving,
                    instrument_count=metadata.instrument_count,
                    estimated_resource_cost=metadata.estimated_resource_cost,
                    validation_score=analysis.validation.score,
                    reliability=metadata.reliability,
                    risk_level=analysis.risks.overall_level,
                )
            )
        return schemas.ComparisonResponse(
            entries=entries,
            simplest=min(entries, key=lambda entry: entry.complexity_score).procedure_id,
            fastest=min(entries, key=lambda entry: entry.critical_path_duration).procedure_id,
            lowest_risk=min(entries, key=lambda entry: RISK_RANK[entry.risk_level]).procedure_id,
            cheapest=min(entries, key=lambda entry: entry.estimated_resource_cost).procedure_id,
        )
