"""Instrument and reagent requirements, reliability, and critical issues."""

from __future__ import annotations

from .. import schemas
from ..registry import InstrumentRegistry
from .protocol_graph import DependencyGraph
from .scheduling import SchedulingReport

# purpose: summarize what a procedure needs from the lab and how far its findings erode confidence
# inputs: DependencyGraph, SchedulingReport, optional registry, ValidationResult, RiskAssessment
# outputs: schemas.ResourceRequirements, reliability percentage, schemas.CriticalIssue list
# status: pilot
# depends_on: backend.labprotocol.registry, backend.labprotocol.services.scheduling

STEP_COST = 10.0
INSTRUMENT_FLAT_COST = 50.0
ALTERNATIVE_LIMIT = 5

_RELIABILITY_PENALTIES = {
    "error": 15.0,
    "warning": 5.0,
    "critical": 15.0,
    "high": 10.0,
    "medium": 5.0,
}


def estimate_resource_cost(graph: DependencyGraph, registry: InstrumentRegistry | None) -> float:
    """Flat per-step cost plus instrument time priced from the registry when known."""

    total = STEP_COST * sum(1 for step in graph.steps.values() if step.is_process_step)
    for key in graph.instrument_keys():
        record = registry.lookup_instrument(key) if registry is not None else None
        hours = sum(
            step.effective_duration for step in graph.steps.values() if key in step.instruments
        ) / 3600.0
        if record is not None and record.cost_per_hour is not None and hours > 0:
            total += record.cost_per_hour * hours
        else:
            total += INSTRUMENT_FLAT_COST
    return round(total, 2)


def find_alternatives(
    registry: InstrumentRegistry, instrument_type: str, exclude: str, limit: int = ALTERNATIVE_LIMIT
) -> list[schemas.InstrumentAlternative]:
    """Available instruments of ``instrument_type`` other than ``exclude``."""

    return [
        schemas.InstrumentAlternative(
            id=candidate.id,
            name=candidate.name,
            availability=candidate.availability,
            capabilities=list(candidate.capabilities),
        )
        for candidate in registry.instruments_of_type(instrument_type)
        if candidate.id != exclude and candidate.is_available
    ][:limit]


def _instrument_requirement(
    graph: DependencyGraph, registry: InstrumentRegistry | None, key: str
) -> schemas.InstrumentRequirement:
    ordered = sorted(graph.steps.values(), key=lambda item: item.position)
    users = [step for step in ordered if key in step.instruments]
    declared = next((step.instrument_type for step in users if step.instrument_type), None)
    if registry is None:
        return schemas.InstrumentRequirement(
            instrument=key,
            type=declared or key,
            step_ids=[step.id for step in users],
            total_duration=sum(step.effective_duration for step in users),
        )
    record = registry.lookup_instrument(key)
    if record is None:
        return schemas.InstrumentRequirement(
            instrument=key,
            type=declared or key,
            step_ids=[step.id for step in users],
            total_duration=sum(step.effective_duration for step in users),
            alternatives=find_alternatives(registry, declared or key, key),
        )
    return schemas.InstrumentRequirement(
        instrument=key,
        type=record.type,
        step_ids=[step.id for step in users],
        total_duration=sum(step.effective_duration for step in users),
        registered=True,
        available=record.is_available,
        calibrated=record.is_calibrated,
        capabilities=list(record.capabilities),
        alternatives=find_alternatives(registry, record.type, record.id),
    )


def _reagent_requirements(
    graph: DependencyGraph, registry: InstrumentRegistry | None
) -> list[schemas.ReagentRequirement]:
    users: dict[str, list[str]] = {}
    for step in sorted(graph.steps.values(), key=lambda item: item.position):
        for name in step.reagents:
            users.setdefault(name, []).append(step.id)
    requirements = []
    for name, step_ids in users.items():
        record = registry.lookup_reagent(name) if registry is not None else None
        requirements.append(
            schemas.ReagentRequirement(
                reagent=name,
                step_ids=list(dict.fromkeys(step_ids)),
                registered=record is not None,
                exclusive=name in graph.exclusive_reagents,
                hazards=list(record.hazards) if record is not None else [],
                stock_status=record.stock_status if record is not None else None,
            )
        )
    return requirements


def analyze_resources(
    graph: DependencyGraph,
    schedule: SchedulingReport,
    registry: InstrumentRegistry | None = None,
    validation: schemas.ValidationResult | None = None,
) -> schemas.ResourceRequirements:
    """Collect instrument and reagent needs with registry status and alternatives.

    ``availability_issues`` echoes failed resource-category outcomes, so it is
    empty when validation did not run or excluded that category.
    """

    issues: list[str] = []
    if validation is not None and "resource" in validation.categories:
        issues = [
            outcome.message
            for outcome in validation.categories["resource"].outcomes
            if not outcome.passed
        ]
    return schemas.ResourceRequirements(
        instruments=[_instrument_requirement(graph, registry, key) for key in graph.instrument_keys()],
        reagents=_reagent_requirements(graph, registry),
        conflicts=[item.reason for item in schedule.bottlenecks if item.kind == "resource"],
        availability_issues=issues,
        estimated_cost=estimate_resource_cost(graph, registry),
    )


def reliability(
    validation: schemas.ValidationResult | None, risks: schemas.RiskAssessment | None
) -> float:
    """Deduct from 100 for each failed blocking or warning outcome and each elevated risk."""

    penalty = 0.0
    if validation is not None:
        penalty += _RELIABILITY_PENALTIES["error"] * len(validation.errors)
        penalty += _RELIABILITY_PENALTIES["warning"] * len(validation.warnings)
    if risks is not None:
        for item in risks.risks:
            penalty += _RELIABILITY_PENALTIES.get(item.severity, 0.0)
    return round(min(max(100.0 - penalty, 0.0), 100.0), 2)


def critical_issues(
    validation: schemas.ValidationResult | None, risks: schemas.RiskAssessment | None
) -> list[schemas.CriticalIssue]:
    issues: list[schemas.CriticalIssue] = []
    if validation is not None:
        for outcome in validation.errors:
            issues.append(
                schemas.CriticalIssue(
                    source="validation",
                    severity=outcome.severity,
                    category=outcome.category,
                    message=outcome.message,
                    location=outcome.location,
                    step_ids=list(outcome.details.get("step_ids") or []),
                    mitigation=outcome.suggestions[0] if outcome.suggestions else None,
                )
            )
    if risks is not None:
        for item in risks.risks:
            if item.severity not in ("high", "critical"):
                continue
            issues.append(
                schemas.CriticalIssue(
                    source="risk",
                    severity=item.severity,
                    category=item.category,
                    message=item.description,
                    location=item.step_ids[0] if item.step_ids else None,
                    step_ids=list(item.step_ids),
                    mitigation=item.mitigation,
                )
            )
    return issues
