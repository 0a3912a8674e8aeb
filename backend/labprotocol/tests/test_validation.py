"""Tests for the weighted validation rule engine and built-in rules."""

# purpose: verify scoring, isolation of failing rules, and individual rule verdicts
# status: pilot

import pytest

from labprotocol.registry import ReagentRecord, StaticRegistry
from labprotocol.services.protocol_graph import build_dependency_graph
from labprotocol.services.validation import (
    RuleCheck,
    ValidationOptions,
    ValidationRule,
    build_default_rules,
    validate_graph,
)


def _outcome(result, rule_id):
    for category in result.categories.values():
        for outcome in category.outcomes:
            if outcome.rule_id == rule_id:
                return outcome
    raise AssertionError(f"rule {rule_id} was not evaluated")


def _with_step(document, extra):
    document["blocks"].append(extra)
    return document


def test_clean_procedure_scores_full_marks(clean_document, registry):
    result = validate_graph(build_dependency_graph(clean_document), registry)

    assert result.is_valid
    assert result.score == 100.0
    assert result.errors == []
    assert result.warnings == []
    assert sum(category.evaluated for category in result.categories.values()) == len(build_default_rules())


def test_undeclared_variable_is_a_structural_warning(clean_document, registry):
    clean_document["blocks"][0]["next"]["next"]["next"]["fields"]["SAMPLE"] = "ghost"

    result = validate_graph(build_dependency_graph(clean_document), registry)

    outcome = _outcome(result, "variable_references")
    assert not outcome.passed
    assert outcome.severity == "warning"
    assert outcome.category == "structural"
    assert outcome in result.warnings
    assert result.is_valid
    assert 0 <= result.score < 100


def test_error_rule_failure_invalidates_regardless_of_score(clean_document, registry, block):
    _with_step(clean_document, block("incubation_step", "hot", TEMPERATURE=150, DURATION=5, DESCRIPTION="boil"))

    result = validate_graph(build_dependency_graph(clean_document), registry)

    outcome = _outcome(result, "temperature_limits")
    assert not outcome.passed
    assert outcome.location == "hot"
    assert outcome in result.errors
    assert not result.is_valid
    assert 0 <= result.score <= 100


def test_weights_are_normalized_over_evaluated_categories(clean_document, block):
    graph = build_dependency_graph(
        _with_step(clean_document, block("incubation_step", "cold", TEMPERATURE=-120, DESCRIPTION="freeze"))
    )

    result = validate_graph(graph, None, ValidationOptions(categories=frozenset({"safety"})))

    assert list(result.categories) == ["safety"]
    assert result.categories["safety"].weight == 100.0
    assert result.categories["safety"].score == 75.0
    assert result.score == 75.0


def test_custom_rule_set_uses_normalized_weights(clean_document):
    rules = (
        ValidationRule("always_pass", "structural", "warning", "passes", lambda ctx: RuleCheck(True)),
        ValidationRule("always_fail", "safety", "warning", "fails", lambda ctx: RuleCheck(False, "nope")),
    )

    result = validate_graph(build_dependency_graph(clean_document), None, None, rules)

    # structural 20 at 100, safety 30 at 0
    assert result.score == 40.0
    assert result.is_valid
    assert result.categories["efficiency"].evaluated == 0
    assert result.categories["efficiency"].weight == 0.0


def test_empty_rule_set_scores_one_hundred(clean_document):
    result = validate_graph(build_dependency_graph(clean_document), None, None, ())

    assert result.score == 100.0
    assert result.is_valid


def test_raising_rule_is_isolated_as_warning(clean_document):
    def boom(ctx):
        raise RuntimeError("registry offline")

    rules = (
        ValidationRule("boom", "quality", "critical", "explodes", boom),
        ValidationRule("fine", "quality", "info", "passes", lambda ctx: RuleCheck(True, "ok")),
    )

    result = validate_graph(build_dependency_graph(clean_document), None, None, rules)

    outcome = _outcome(result, "boom")
    assert outcome.severity == "warning"
    assert not outcome.passed
    assert "rule boom failed to evaluate" in outcome.message
    assert "registry offline" in outcome.message
    assert result.is_valid
    assert _outcome(result, "fine").passed
    assert result.score == 50.0


def test_registry_miss_degrades_rule_to_warning(clean_document, registry, block):
    _with_step(
        clean_document,
        block("centrifuge_step", "spin", INSTRUMENT_ID="centrifuge-9", SPEED=5000, DESCRIPTION="pellet"),
    )

    result = validate_graph(build_dependency_graph(clean_document), registry)

    speed = _outcome(result, "centrifuge_speed_limits")
    availability = _outcome(result, "instrument_availability")
    for outcome in (speed, availability):
        assert outcome.severity == "warning"
        assert outcome.details["degraded"] is True
        assert outcome.details["missing_key"] == "centrifuge-9"
        assert "not found in registry" in outcome.message
    assert result.is_valid


def test_min_severity_filters_rules(clean_document, registry):
    result = validate_graph(
        build_dependency_graph(clean_document), registry, ValidationOptions(min_severity="error")
    )

    evaluated = {
        outcome.rule_id for category in result.categories.values() for outcome in category.outcomes
    }
    assert evaluated == {
        "non_empty_procedure",
        "temperature_limits",
        "chemical_compatibility",
        "centrifuge_speed_limits",
        "instrument_availability",
    }


def test_incompatible_reagents_fail_compatibility(clean_document, registry, block):
    _with_step(
        clean_document,
        block("mixing_step", "danger", REAGENT_A="Bleach", REAGENT_B="Ammonia", DESCRIPTION="do not do this"),
    )

    result = validate_graph(build_dependency_graph(clean_document), registry)

    compatibility = _outcome(result, "chemical_compatibility")
    assert not compatibility.passed
    assert compatibility.details["pairs"] == ["Bleach + Ammonia"]
    assert not _outcome(result, "hazardous_reagents").passed
    assert not result.is_valid


def test_safety_notes_satisfy_hazard_rule(clean_document, registry, block):
    _with_step(
        clean_document,
        block("wash_step", "rinse", REAGENT="Ethanol", PPE="gloves, goggles", DESCRIPTION="rinse"),
    )

    result = validate_graph(build_dependency_graph(clean_document), registry)

    assert _outcome(result, "hazardous_reagents").passed


@pytest.mark.parametrize(
    ("instrument_id", "rule_id"),
    [
        ("centrifuge-2", "instrument_availability"),
        ("mass-spec-1", "instrument_calibration"),
    ],
)
def test_registry_status_rules(clean_document, registry, block, instrument_id, rule_id):
    _with_step(
        clean_document,
        block("instrument_generic", "run", INSTRUMENT_ID=instrument_id, RESULT_VAR="trace", DESCRIPTION="run"),
    )

    result = validate_graph(build_dependency_graph(clean_document), registry)

    outcome = _outcome(result, rule_id)
    assert not outcome.passed
    assert outcome.location == "run"


def test_centrifuge_speed_above_rating_fails(clean_document, registry, block):
    _with_step(
        clean_document,
        block("centrifuge_step", "spin", INSTRUMENT_ID="centrifuge-1", SPEED=20000, DESCRIPTION="pellet"),
    )

    result = validate_graph(build_dependency_graph(clean_document), registry)

    assert not _outcome(result, "centrifuge_speed_limits").passed
    assert not result.is_valid


def test_out_of_stock_reagent_warns(clean_document, registry, block):
    _with_step(clean_document, block("mixing_step", "pcr", REAGENT="Taq polymerase", DESCRIPTION="master mix"))

    result = validate_graph(build_dependency_graph(clean_document), registry)

    outcome = _outcome(result, "reagent_availability")
    assert not outcome.passed
    assert outcome.details["reagents"] == ["Taq polymerase"]


def test_empty_procedure_is_invalid():
    result = validate_graph(build_dependency_graph({"blocks": []}))

    assert not _outcome(result, "non_empty_procedure").passed
    assert not result.is_valid


def test_structural_rules_flag_empty_and_unused(block, sequence):
    graph = build_dependency_graph(
        {
            "name": "Loose ends",
            "blocks": [
                sequence(
                    block("parameter_variable", "temp-decl", NAME="setpoint"),
                    block("controls_if", "branch"),
                    block("mixing_step", "mix", DESCRIPTION="mix"),
                ),
                block("wash_step", "stray", DESCRIPTION="orphan"),
            ],
        }
    )

    result = validate_graph(graph, None, ValidationOptions(categories=frozenset({"structural"})))

    assert _outcome(result, "empty_containers").location == "branch"
    assert _outcome(result, "unused_variables").location == "temp-decl"
    assert _outcome(result, "orphaned_steps").details["step_ids"] == ["stray"]


def test_efficiency_rules(block, sequence):
    graph = build_dependency_graph(
        [
            sequence(
                block("mixing_step", "mix-1", SAMPLE="a", DURATION=5),
                block("mixing_step", "mix-2", SAMPLE="a", DURATION=5),
                block("wash_step", "wash", SAMPLE="b"),
                block("wait_step", "wait", DURATION=6, DURATION_UNIT="hours"),
            )
        ]
    )

    result = validate_graph(graph, None, ValidationOptions(categories=frozenset({"efficiency"})))

    assert _outcome(result, "redundant_steps").details["step_ids"] == ["mix-2"]
    assert _outcome(result, "excessive_waits").location == "wait"
    assert _outcome(result, "serialized_independent_steps").details["step_ids"] == ["wash"]


def test_compliance_and_quality_rules(block, sequence):
    steps = [block("transfer_step", f"t{index}") for index in range(5)]
    steps.append(block("measurement_step", "read", REPLICATES=1))
    graph = build_dependency_graph([sequence(*steps)])

    result = validate_graph(
        graph,
        None,
        ValidationOptions(categories=frozenset({"compliance", "quality"}), min_replicates=3),
    )

    assert not _outcome(result, "protocol_documentation").passed
    assert _outcome(result, "result_traceability").location == "read"
    assert not _outcome(result, "checkpoint_coverage").passed
    assert not _outcome(result, "control_points").passed
    assert _outcome(result, "measurement_replicates").location == "read"
    assert result.score == 0.0


def test_unregistered_reagent_does_not_hide_incompatible_pair(clean_document, registry, block):
    _with_step(
        clean_document,
        block(
            "mixing_step",
            "danger",
            REAGENT_A="bleach",
            REAGENT_B="ammonia",
            SAFETY_NOTES="fume hood",
            DESCRIPTION="do not do this",
        ),
    )
    _with_step(
        clean_document,
        block("wash_step", "w", REAGENT_A="house-buffer", REAGENT_B="pbs", DESCRIPTION="rinse"),
    )

    result = validate_graph(build_dependency_graph(clean_document), registry)

    compatibility = _outcome(result, "chemical_compatibility")
    assert not compatibility.passed
    assert compatibility.severity == "error"
    assert compatibility.details["pairs"] == ["Bleach + Ammonia"]
    assert compatibility.details["missing_reagents"] == ["house-buffer"]
    assert not result.is_valid

    hazards = _outcome(result, "hazardous_reagents")
    assert hazards.severity == "warning"
    assert hazards.details["degraded"] is True
    assert hazards.details["missing_keys"] == ["house-buffer"]


def test_undecidable_pairs_degrade_to_warning(clean_document, registry, block):
    _with_step(
        clean_document,
        block("mixing_step", "mystery", REAGENT_A="house-buffer", REAGENT_B="pbs", DESCRIPTION="mix"),
    )

    result = validate_graph(build_dependency_graph(clean_document), registry)

    compatibility = _outcome(result, "chemical_compatibility")
    assert compatibility.severity == "warning"
    assert compatibility.details["missing_key"] == "house-buffer"
    assert result.is_valid


def test_registered_reagent_can_reject_unregistered_partner(clean_document, block):
    registry = StaticRegistry(
        reagents=[ReagentRecord(id="bleach", name="Bleach", incompatible_with=("Vinegar",))]
    )
    _with_step(
        clean_document,
        block("mixing_step", "clean-up", REAGENT_A="Bleach", REAGENT_B="vinegar", DESCRIPTION="wipe"),
    )

    result = validate_graph(build_dependency_graph(clean_document), registry)

    compatibility = _outcome(result, "chemical_compatibility")
    assert not compatibility.passed
    assert compatibility.details["pairs"] == ["Bleach + vinegar"]


def test_unregistered_instrument_does_not_hide_unavailable_one(clean_document, registry, block):
    _with_step(
        clean_document,
        block("centrifuge_step", "spin-a", INSTRUMENT_ID="centrifuge-2", DESCRIPTION="pellet"),
    )
    _with_step(
        clean_document,
        block("centrifuge_step", "spin-b", INSTRUMENT_ID="centrifuge-9", DESCRIPTION="pellet"),
    )

    result = validate_graph(build_dependency_graph(clean_document), registry)

    availability = _outcome(result, "instrument_availability")
    assert availability.severity == "error"
    assert availability.details["step_ids"] == ["spin-a"]
    assert availability.details["missing_instruments"] == ["centrifuge-9"]
    assert not result.is_valid
