"""Risk assessment and optimization advice for analyzed procedures."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterable

from .. import schemas
from ..registry import InstrumentRegistry
from .protocol_graph import DependencyGraph, StepKind
from .scheduling import SchedulingReport

# purpose: translate validation failures and graph shape into risks, suggestions, and recommendations
# inputs: DependencyGraph, ValidationResult, SchedulingReport, optional registry
# outputs: Advice bundling a RiskAssessment, ranked suggestions, and top recommendations
# status: pilot

logger = logging.getLogger(__name__)

RISK_RANK = {"low": 0, "medium": 1, "high": 2, "critical": 3}
SEVERITY_TO_RISK = {"critical": "critical", "error": "high", "warning": "medium", "info": "low"}
_RISK_PROFILE = {
    "critical": (0.7, 1.0),
    "high": (0.5, 0.8),
    "medium": (0.3, 0.5),
    "low": (0.1, 0.2),
}
SCORE_THRESHOLD = 70.0
AUTOMATION_TRANSFER_THRESHOLD = 3
RECOMMENDATION_COUNT = 3


@dataclass(frozen=True)
class Advice:
    risks: schemas.RiskAssessment
    optimizations: tuple[schemas.OptimizationSuggestion, ...]
    recommendations: tuple[schemas.Recommendation, ...]


def _risk(
    category: str,
    severity: str,
    description: str,
    step_ids: Iterable[str] = (),
    mitigation: str | None = None,
    key: str | None = None,
) -> schemas.RiskItem:
    probability, impact = _RISK_PROFILE[severity]
    return schemas.RiskItem(
        id=f"{category}:{key or description}",
        category=category,
        severity=severity,
        probability=probability,
        impact=impact,
        description=description,
        step_ids=list(dict.fromkeys(step_ids)),
        mitigation=mitigation,
    )


def _failed_outcomes(validation: schemas.ValidationResult | None, category: str):
    if validation is None or category not in validation.categories:
        return []
    return [
        outcome
        for outcome in validation.categories[category].outcomes
        if not outcome.passed and not outcome.details.get("degraded")
    ]


def _instrument_type(graph: DependencyGraph, registry: InstrumentRegistry | None, key: str) -> str:
    for step in graph.steps.values():
        if key in step.instruments and step.instrument_type:
            return step.instrument_type
    if registry is not None:
        record = registry.lookup_instrument(key)
        if record is not None:
            return record.type
    return key


def _available_capacity(graph: DependencyGraph, registry: InstrumentRegistry | None, key: str) -> int:
    if registry is None:
        return 1
    records = registry.instruments_of_type(_instrument_type(graph, registry, key))
    return max(sum(1 for record in records if record.is_available), 1)


def assess_risks(
    graph: DependencyGraph,
    validation: schemas.ValidationResult | None,
    schedule: SchedulingReport,
    registry: InstrumentRegistry | None = None,
) -> schemas.RiskAssessment:
    """Derive categorized risks; the overall level is the maximum severity."""

    risks: list[schemas.RiskItem] = []
    for category, risk_category in (("safety", "safety"), ("compliance", "regulatory")):
        for outcome in _failed_outcomes(validation, category):
            risks.append(
                _risk(
                    risk_category,
                    SEVERITY_TO_RISK[outcome.severity],
                    outcome.message,
                    outcome.details.get("step_ids", []),
                    outcome.suggestions[0] if outcome.suggestions else None,
                    key=outcome.rule_id,
                )
            )

    instrument_keys = set(graph.instrument_keys())
    seen_instruments: set[str] = set()
    for bottleneck in schedule.bottlenecks:
        resource = bottleneck.resource
        if resource is None or resource not in instrument_keys or resource in seen_instruments:
            continue
        seen_instruments.add(resource)
        if _available_capacity(graph, registry, resource) > 1:
            continue
        users = graph.resource_users().get(f"instrument:{resource}", [])
        risks.append(
            _risk(
                "equipment_failure",
                "high",
                f"{resource} is a bottleneck with no backup instrument",
                users,
                "Reserve a backup instrument of the same type",
                key=f"backup:{resource}",
            )
        )

    for outcome in _failed_outcomes(validation, "resource"):
        if outcome.rule_id != "instrument_calibration":
            continue
        risks.append(
            _risk(
                "equipment_failure",
                "medium",
                outcome.message,
                outcome.details.get("step_ids", []),
                "Calibrate instruments before the run",
                key="calibration",
            )
        )

    untraced = [
        step.id
        for step in graph.steps.values()
        if step.kind in (StepKind.MEASUREMENT, StepKind.INSTRUMENT_OPERATION) and not step.produces
    ]
    if untraced:
        risks.append(
            _risk(
                "data_loss",
                "medium",
                f"{len(untraced)} measurements are not captured in a result variable",
                untraced,
                "Store every measurement in RESULT_VAR",
                key="untraced_results",
            )
        )

    transfers = [step.id for step in graph.steps.values() if step.kind == StepKind.TRANSFER]
    washes = [step for step in graph.steps.values() if step.kind == StepKind.WASH]
    if transfers and not washes:
        risks.append(
            _risk(
                "contamination",
                "medium",
                f"{len(transfers)} transfers occur without any wash step",
                transfers,
                "Add wash steps between transfers of different samples",
                key="no_wash",
            )
        )

    if registry is not None:
        hazardous: dict[str, list[str]] = {}
        for step in sorted(graph.steps.values(), key=lambda item: item.position):
            for name in step.reagents:
                record = registry.lookup_reagent(name)
                if record is not None and record.environmental_hazard:
                    hazardous.setdefault(record.name, []).append(step.id)
        for name, step_ids in hazardous.items():
            risks.append(
                _risk(
                    "environmental",
                    "medium",
                    f"{name} requires controlled disposal",
                    step_ids,
                    "Collect waste for hazardous disposal",
                    key=name,
                )
            )

    overall = "low"
    for risk in risks:
        if RISK_RANK[risk.severity] > RISK_RANK[overall]:
            overall = risk.severity
    return schemas.RiskAssessment(overall_level=overall, risks=risks)


def _suggestion(
    category: str,
    strategy: str,
    description: str,
    impact: float,
    effort: float,
    step_ids: Iterable[str] = (),
    saving: float | None = None,
) -> schemas.OptimizationSuggestion:
    impact = min(max(impact, 0.0), 1.0)
    effort = min(max(effort, 0.0), 1.0)
    return schemas.OptimizationSuggestion(
        id=f"{category}:{strategy}",
        category=category,
        strategy=strategy,
        description=description,
        impact=round(impact, 3),
        effort=round(effort, 3),
        priority=round(impact - effort, 3),
        step_ids=list(step_ids),
        estimated_time_saving=saving,
    )


def suggest_optimizations(
    graph: DependencyGraph,
    validation: schemas.ValidationResult | None,
    schedule: SchedulingReport,
    registry: InstrumentRegistry | None = None,
    max_suggestions: int = 10,
) -> list[schemas.OptimizationSuggestion]:
    """Rank suggestions by impact minus effort and keep the top ``max_suggestions``."""

    suggestions: list[schemas.OptimizationSuggestion] = []
    critical = schedule.critical_path.duration
    for group in schedule.parallel_groups:
        if group.potential_time_saving <= 0 or len(group.steps) < 2:
            continue
        impact = group.potential_time_saving / critical if critical > 0 else 0.5
        suggestions.append(
            _suggestion(
                "time",
                f"parallelize_level_{group.level}_{group.steps[0]}",
                f"Run {', '.join(group.steps)} concurrently to save "
                f"{group.potential_time_saving / 60:g} min",
                impact,
                0.3 if group.feasibility == "full" else 0.4,
                group.steps,
                group.potential_time_saving,
            )
        )

    for key, users in sorted(graph.resource_users().items()):
        kind, label = key.split(":", 1)
        capacity = _available_capacity(graph, registry, label) if kind == "instrument" else 1
        if len(users) <= capacity:
            continue
        suggestions.append(
            _suggestion(
                "resource",
                f"add_capacity_{label}",
                f"{label} is needed by {len(users)} steps but only {capacity} available",
                0.2 + 0.2 * (len(users) - capacity),
                0.5 if kind == "instrument" else 0.3,
                users,
            )
        )

    if validation is not None:
        for category, result in validation.categories.items():
            if result.evaluated == 0 or result.score >= SCORE_THRESHOLD:
                continue
            target = "safety" if category in ("safety", "compliance") else "quality"
            suggestions.append(
                _suggestion(
                    target,
                    f"improve_{category}",
                    f"{category} checks score {result.score:g}; address failed rules",
                    0.3 + (SCORE_THRESHOLD - result.score) / 100.0,
                    0.4,
                )
            )

    transfers = [step.id for step in graph.steps.values() if step.kind == StepKind.TRANSFER]
    automated = any("liquid_handler" in (step.instrument_type or "") for step in graph.steps.values())
    if len(transfers) >= AUTOMATION_TRANSFER_THRESHOLD and not automated:
        suggestions.append(
            _suggestion(
                "automation",
                "automated_liquid_handling",
                f"Automate {len(transfers)} manual transfers with a liquid handler",
                0.6,
                0.5,
                transfers,
            )
        )

    suggestions.sort(key=lambda item: (-item.priority, item.category, item.strategy))
    return suggestions[: max(max_suggestions, 0)]


def _most_severe(risks: schemas.RiskAssessment) -> schemas.RiskItem | None:
    if not risks.risks:
        return None
    return min(
        risks.risks,
        key=lambda risk: (-RISK_RANK[risk.severity], -(risk.probability * risk.impact), risk.id),
    )


def build_recommendations(
    optimizations: Iterable[schemas.OptimizationSuggestion],
    risks: schemas.RiskAssessment | None,
    count: int = RECOMMENDATION_COUNT,
) -> list[schemas.Recommendation]:
    recommendations = [
        schemas.Recommendation(
            source="optimization",
            category=item.category,
            message=item.description,
            priority=item.priority,
        )
        for item in list(optimizations)[:count]
    ]
    top_risk = _most_severe(risks) if risks is not None else None
    if top_risk is not None:
        recommendations.append(
            schemas.Recommendation(
                source="risk",
                category=top_risk.category,
                message=top_risk.mitigation or top_risk.description,
                severity=top_risk.severity,
            )
        )
    return recommendations


def assess(
    graph: DependencyGraph,
    validation: schemas.ValidationResult | None,
    schedule: SchedulingReport,
    registry: InstrumentRegistry | None = None,
    max_suggestions: int = 10,
) -> Advice:
    """Combine risks, ranked optimizations, and recommendations."""

    risks = assess_risks(graph, validation, schedule, registry)
    optimizations = suggest_optimizations(graph, validation, schedule, registry, max_suggestions)
    advice = Advice(
        risks=risks,
        optimizations=tuple(optimizations),
        recommendations=tuple(build_recommendations(optimizations, risks)),
    )
    logger.debug(
        "advice computed procedure=%s risk_level=%s risks=%d suggestions=%d",
        graph.procedure_id,
        risks.overall_level,
        len(risks.risks),
        len(optimizations),
    )
    return advice
