"""Weighted multi-category validation of protocol dependency graphs."""

from __future__ import annotations

import logging
from types import MappingProxyType
from typing import Mapping, Sequence

from .. import schemas
from ..registry import InstrumentRegistry
from .errors import RegistryLookupMiss, RuleEvaluationError
from .protocol_graph import DependencyGraph
from .validation_rules import (
    RuleCheck,
    RuleContext,
    ValidationOptions,
    ValidationRule,
    build_default_rules,
)

# purpose: score procedures against categorized rules without aborting on individual rule failures
# inputs: DependencyGraph, optional registry, ValidationOptions, immutable rule tuple
# outputs: schemas.ValidationResult with per-category outcomes and a normalized weighted score
# status: pilot
# depends_on: backend.labprotocol.services.validation_rules

logger = logging.getLogger(__name__)

CATEGORY_ORDER: tuple[str, ...] = (
    "structural",
    "safety",
    "efficiency",
    "compliance",
    "resource",
    "quality",
)

CATEGORY_WEIGHTS: Mapping[str, float] = MappingProxyType(
    {
        "structural": 20.0,
        "safety": 30.0,
        "efficiency": 10.0,
        "compliance": 25.0,
        "resource": 10.0,
        "quality": 15.0,
    }
)

_BLOCKING_SEVERITIES = frozenset({"critical", "error"})


def _run_rule(rule: ValidationRule, context: RuleContext) -> schemas.RuleOutcome:
    try:
        check = rule.evaluate(context)
    except RegistryLookupMiss as exc:
        error = RuleEvaluationError(rule.id, str(exc))
        return schemas.RuleOutcome(
            rule_id=rule.id,
            category=rule.category,
            severity="warning",
            passed=False,
            message=str(error),
            suggestions=[f"Register {exc.kind} '{exc.key}' so this rule can be evaluated"],
            details={
                "degraded": True,
                "missing_kind": exc.kind,
                "missing_key": exc.key,
                "missing_keys": list(exc.keys),
            },
        )
    except Exception as exc:  # rule bodies are isolated from the run
        logger.exception("validation rule %s raised during evaluation", rule.id)
        error = RuleEvaluationError(rule.id, f"{type(exc).__name__}: {exc}")
        return schemas.RuleOutcome(
            rule_id=rule.id,
            category=rule.category,
            severity="warning",
            passed=False,
            message=str(error),
            details={"degraded": True},
        )
    if not isinstance(check, RuleCheck):
        error = RuleEvaluationError(rule.id, f"returned {type(check).__name__} instead of RuleCheck")
        return schemas.RuleOutcome(
            rule_id=rule.id,
            category=rule.category,
            severity="warning",
            passed=False,
            message=str(error),
            details={"degraded": True},
        )
    return schemas.RuleOutcome(
        rule_id=rule.id,
        category=rule.category,
        severity=rule.severity,
        passed=check.passed,
        message=check.message or rule.description,
        suggestions=list(check.suggestions),
        location=check.location,
        details=dict(check.details),
    )


def validate_graph(
    graph: DependencyGraph,
    registry: InstrumentRegistry | None = None,
    options: ValidationOptions | None = None,
    rules: Sequence[ValidationRule] | None = None,
) -> schemas.ValidationResult:
    """Evaluate ``rules`` category by category and aggregate a weighted score.

    Weights are normalized over the categories that evaluated at least one rule,
    so restricting the run to a subset of categories never skews the score.
    """

    options = options or ValidationOptions()
    rules = tuple(rules) if rules is not None else build_default_rules()
    context = RuleContext(graph=graph, registry=registry, options=options)

    outcomes_by_category: dict[str, list[schemas.RuleOutcome]] = {}
    for category in CATEGORY_ORDER:
        if options.categories is not None and category not in options.categories:
            continue
        selected = [rule for rule in rules if rule.category == category and options.selects(rule)]
        outcomes_by_category[category] = [_run_rule(rule, context) for rule in selected]

    raw_scores: dict[str, float] = {}
    for category, outcomes in outcomes_by_category.items():
        if outcomes:
            passed = sum(1 for outcome in outcomes if outcome.passed)
            raw_scores[category] = passed / len(outcomes) * 100.0
        else:
            raw_scores[category] = 100.0

    total_weight = sum(
        CATEGORY_WEIGHTS[category]
        for category, outcomes in outcomes_by_category.items()
        if outcomes
    )
    categories: dict[str, schemas.CategoryResult] = {}
    aggregate = 0.0
    for category, outcomes in outcomes_by_category.items():
        weight = CATEGORY_WEIGHTS[category] / total_weight if outcomes and total_weight else 0.0
        aggregate += raw_scores[category] * weight
        categories[category] = schemas.CategoryResult(
            category=category,
            weight=round(weight * 100.0, 2),
            score=round(raw_scores[category], 2),
            evaluated=len(outcomes),
            passed=sum(1 for outcome in outcomes if outcome.passed),
            outcomes=outcomes,
        )
    score = round(aggregate, 2) if total_weight else 100.0
    score = min(max(score, 0.0), 100.0)

    failures = [
        outcome
        for outcomes in outcomes_by_category.values()
        for outcome in outcomes
        if not outcome.passed
    ]
    errors = [outcome for outcome in failures if outcome.severity in _BLOCKING_SEVERITIES]
    result = schemas.ValidationResult(
        is_valid=not errors,
        score=score,
        categories=categories,
        errors=errors,
        warnings=[outcome for outcome in failures if outcome.severity == "warning"],
        info=[outcome for outcome in failures if outcome.severity == "info"],
    )
    logger.debug(
        "validated procedure=%s score=%.2f errors=%d warnings=%d",
        graph.procedure_id,
        result.score,
        len(result.errors),
        len(result.warnings),
    )
    return result


__all__ = [
    "CATEGORY_ORDER",
    "CATEGORY_WEIGHTS",
    "RuleCheck",
    "RuleContext",
    "ValidationOptions",
    "ValidationRule",
    "build_default_rules",
    "validate_graph",
]
