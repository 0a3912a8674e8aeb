"""Tests for analysis aggregation, caching, batch runs, and comparison."""

# purpose: exercise the orchestration layer end to end without HTTP
# status: pilot

import threading
import time
from concurrent.futures import ThreadPoolExecutor

import pytest

from labprotocol import schemas
from labprotocol.services.errors import BatchLimitExceeded, ProcedureNotFound
from labprotocol.services.protocol_analysis import (
    AnalysisCache,
    InMemoryProcedureStore,
    ProtocolAnalysisService,
    analyze_procedure,
)
from labprotocol.services.resource_requirements import critical_issues, reliability


def _cyclic_document(block, sequence):
    return {
        "name": "Loop",
        "blocks": [sequence(block("mixing_step", "a", AFTER="b"), block("wash_step", "b"))],
    }


def test_full_analysis_record(scenario_a, registry):
    analysis = analyze_procedure(scenario_a, registry)

    assert analysis.procedure_id == "scenario-a"
    assert analysis.dependencies.levels == [["A", "D"], ["B"], ["C"]]
    assert analysis.dependencies.critical_path.duration == 1080
    assert analysis.validation is not None
    assert analysis.risks is not None
    assert analysis.optimizations is not None
    metadata = analysis.metadata
    assert metadata.step_count == 4
    assert metadata.instrument_count == 0
    assert metadata.estimated_total_duration == 1320
    assert metadata.critical_path_duration == 1080
    assert metadata.estimated_resource_cost == 40.0
    assert metadata.complexity == "low"
    assert analysis.resources is not None
    assert metadata.reliability is not None


def test_analysis_is_idempotent(scenario_a, registry):
    first = analyze_procedure(scenario_a, registry)
    second = analyze_procedure(scenario_a, registry)

    assert first.dependencies.levels == second.dependencies.levels
    assert first.dependencies.critical_path == second.dependencies.critical_path
    assert first.validation.score == second.validation.score
    assert first.model_dump() == second.model_dump()


@pytest.mark.parametrize(
    ("analysis_type", "present", "absent"),
    [
        ("dependencies", {"dependencies"}, {"validation", "risks", "optimizations"}),
        ("validation", {"validation"}, {"dependencies", "risks", "optimizations"}),
        ("resources", {"resources"}, {"dependencies", "validation", "risks", "optimizations"}),
        ("risks", {"risks"}, {"dependencies", "validation", "optimizations"}),
        ("optimizations", {"optimizations"}, {"dependencies", "validation", "risks"}),
    ],
)
def test_analysis_type_selects_sections(scenario_a, registry, analysis_type, present, absent):
    analysis = analyze_procedure(scenario_a, registry, analysis_type=analysis_type)

    for section in present:
        assert getattr(analysis, section) is not None
    for section in absent:
        assert getattr(analysis, section) is None
    assert analysis.metadata.analysis_type == analysis_type


def test_registry_cost_prices_instrument_time(registry, block):
    analysis = analyze_procedure(
        [block("centrifuge_step", "spin", INSTRUMENT_ID="centrifuge-1", DURATION=30)], registry
    )

    # one process step plus half an hour at 12.0 per hour
    assert analysis.metadata.estimated_resource_cost == 16.0
    assert analysis.metadata.instrument_count == 1


def test_unknown_analysis_type_is_rejected(scenario_a):
    with pytest.raises(ValueError):
        analyze_procedure(scenario_a, analysis_type="everything")


def test_cache_single_flight_shares_in_flight_result():
    cache = AnalysisCache()
    gate = threading.Event()
    calls = []

    def compute():
        calls.append(1)
        gate.wait(timeout=5)
        return object()

    with ThreadPoolExecutor(max_workers=5) as executor:
        futures = [executor.submit(cache.get_or_compute, ("p", 1), compute) for _ in range(5)]
        deadline = time.monotonic() + 5
        while cache.hits < 4 and time.monotonic() < deadline:
            time.sleep(0.01)
        gate.set()
        results = [future.result(timeout=5) for future in futures]

    assert len(calls) == 1
    assert all(result is results[0] for result in results)
    assert cache.misses == 1


def test_cache_does_not_keep_failures():
    cache = AnalysisCache()
    attempts = []

    def flaky():
        attempts.append(1)
        if len(attempts) == 1:
            raise RuntimeError("transient")
        return "ok"

    with pytest.raises(RuntimeError):
        cache.get_or_compute(("p", 1), flaky)

    assert cache.get_or_compute(("p", 1), flaky) == "ok"
    assert len(attempts) == 2


def test_cache_ttl_and_invalidation():
    now = [100.0]
    cache = AnalysisCache(ttl_seconds=10, clock=lambda: now[0])
    values = iter(range(10))

    first = cache.get_or_compute(("p", 1), lambda: next(values))
    assert cache.get_or_compute(("p", 1), lambda: next(values)) == first
    now[0] += 11
    refreshed = cache.get_or_compute(("p", 1), lambda: next(values))
    assert refreshed != first

    cache.get_or_compute(("p", 2), lambda: next(values))
    cache.get_or_compute(("q", 1), lambda: next(values))
    assert cache.invalidate("p") == 2
    assert len(cache) == 1


def test_store_versions_and_invalidates_cache(scenario_a):
    cache = AnalysisCache()
    store = InMemoryProcedureStore(cache)
    assert store.save("proc", scenario_a) == 1
    cache.get_or_compute(("proc", 1), lambda: "cached")

    assert store.save("proc", scenario_a) == 2
    assert len(cache) == 0
    assert store.get("proc")["version"] == 2
    with pytest.raises(ProcedureNotFound):
        store.get("missing")


def test_service_reuses_cached_analysis_until_edit(scenario_a, service):
    service.save_procedure("proc", scenario_a)
    first = service.analyze_procedure("proc")
    second = service.analyze_procedure("proc", "risks")

    assert service.cache.misses == 1
    assert service.cache.hits == 1
    assert second.risks == first.risks

    scenario_a["name"] = "Scenario A (edited)"
    stored = service.save_procedure("proc", scenario_a)
    third = service.analyze_procedure("proc")

    assert stored.version == 2
    assert third.version == 2
    assert third.name == "Scenario A (edited)"
    assert service.cache.misses == 2


def test_custom_options_bypass_cache(scenario_a, service):
    from labprotocol.services.validation import ValidationOptions

    service.save_procedure("proc", scenario_a)
    result = service.validate("proc", ValidationOptions(categories=frozenset({"structural"})))

    assert list(result.categories) == ["structural"]
    assert len(service.cache) == 0


def test_batch_isolates_failures(scenario_a, clean_document, service, block, sequence):
    service.save_procedure("good", scenario_a)
    service.save_procedure("also-good", clean_document)
    service.save_procedure("cyclic", _cyclic_document(block, sequence))

    response = service.run_batch(["good", "missing", "cyclic", "also-good"], "validation")

    assert [item.procedure_id for item in response.results] == ["good", "missing", "cyclic", "also-good"]
    assert [item.success for item in response.results] == [True, False, False, True]
    assert "not found" in response.results[1].error
    assert "circular dependency" in response.results[2].error
    assert response.summary.model_dump() == {"total": 4, "successful": 2, "failed": 2}
    assert response.results[0].result.validation is not None
    assert response.results[0].result.dependencies is None


def test_batch_limit(service):
    with pytest.raises(BatchLimitExceeded):
        service.run_batch([f"p{index}" for index in range(11)])


def test_compare_procedures(scenario_a, clean_document, service):
    service.save_procedure("scenario", scenario_a)
    service.save_procedure("clean", clean_document)

    comparison = service.compare(["scenario", "clean"])

    assert [entry.procedure_id for entry in comparison.entries] == ["scenario", "clean"]
    assert comparison.fastest == "clean"
    by_id = {entry.procedure_id: entry for entry in comparison.entries}
    assert by_id["scenario"].parallel_time_saving == 240
    with pytest.raises(ValueError):
        service.compare(["scenario"])


def test_service_without_store_entries_raises_not_found():
    service = ProtocolAnalysisService()

    with pytest.raises(ProcedureNotFound):
        service.analyze_procedure("nope")


def _resource_document(block):
    return [
        block("reagent_variable", "enzyme", NAME="polymerase", EXCLUSIVE=True),
        block("centrifuge_step", "spin", INSTRUMENT_ID="centrifuge-2", DURATION=10),
        block("wash_step", "rinse", REAGENT="Ethanol", DESCRIPTION="rinse"),
        block("mixing_step", "mix", SAMPLE="polymerase"),
    ]


def test_resource_requirements_offer_alternatives(registry, block):
    analysis = analyze_procedure(_resource_document(block), registry, analysis_type="resources")

    resources = analysis.resources
    assert analysis.validation is None
    centrifuge = next(item for item in resources.instruments if item.instrument == "centrifuge-2")
    assert centrifuge.type == "centrifuge"
    assert centrifuge.step_ids == ["spin"]
    assert centrifuge.registered
    assert centrifuge.available is False
    assert centrifuge.capabilities == ["pelleting"]
    assert [alternative.id for alternative in centrifuge.alternatives] == ["centrifuge-1"]
    assert "instruments unavailable: centrifuge-2 (maintenance)" in resources.availability_issues

    reagents = {item.reagent: item for item in resources.reagents}
    assert reagents["Ethanol"].registered
    assert reagents["Ethanol"].hazards == ["flammable"]
    assert reagents["Ethanol"].stock_status == "in_stock"
    assert not reagents["Ethanol"].exclusive
    assert reagents["polymerase"].exclusive
    assert "mix" in reagents["polymerase"].step_ids
    assert resources.estimated_cost == analysis.metadata.estimated_resource_cost


def test_unavailable_instrument_is_a_critical_issue(registry, block):
    analysis = analyze_procedure(_resource_document(block), registry)

    issues = [issue for issue in analysis.critical_issues if issue.source == "validation"]
    assert any(issue.category == "resource" and issue.step_ids == ["spin"] for issue in issues)
    assert analysis.metadata.reliability < 100.0


def _outcome(rule_id, severity):
    return schemas.RuleOutcome(
        rule_id=rule_id,
        category="safety",
        severity=severity,
        passed=False,
        message=f"{rule_id} failed",
        suggestions=[f"fix {rule_id}"],
        location="s1",
        details={"step_ids": ["s1"]},
    )


def _risk_item(risk_id, severity):
    return schemas.RiskItem(
        id=risk_id,
        category="safety",
        severity=severity,
        probability=0.5,
        impact=0.5,
        description=f"{risk_id} may happen",
        step_ids=["s2"],
        mitigation=f"guard against {risk_id}",
    )


def test_reliability_deducts_per_finding():
    validation = schemas.ValidationResult(
        is_valid=False,
        score=50.0,
        errors=[_outcome("hazard", "error")],
        warnings=[_outcome("ppe", "warning"), _outcome("notes", "warning")],
    )
    risks = schemas.RiskAssessment(
        overall_level="critical",
        risks=[
            _risk_item("spill", "critical"),
            _risk_item("burn", "high"),
            _risk_item("drift", "medium"),
            _risk_item("typo", "low"),
        ],
    )

    # 15 + 2 * 5 for validation, 15 + 10 + 5 for risks
    assert reliability(validation, risks) == 45.0
    assert reliability(None, None) == 100.0

    crowded = schemas.ValidationResult(
        is_valid=False, score=0.0, errors=[_outcome(f"r{index}", "error") for index in range(8)]
    )
    assert reliability(crowded, None) == 0.0


def test_critical_issues_collect_errors_and_high_risks():
    validation = schemas.ValidationResult(
        is_valid=False,
        score=50.0,
        errors=[_outcome("hazard", "error")],
        warnings=[_outcome("ppe", "warning")],
    )
    risks = schemas.RiskAssessment(
        overall_level="high",
        risks=[_risk_item("burn", "high"), _risk_item("drift", "medium")],
    )

    issues = critical_issues(validation, risks)

    assert [(issue.source, issue.severity) for issue in issues] == [
        ("validation", "error"),
        ("risk", "high"),
    ]
    assert issues[0].message == "hazard failed"
    assert issues[0].step_ids == ["s1"]
    assert issues[0].mitigation == "fix hazard"
    assert issues[1].message == "burn may happen"
    assert issues[1].location == "s2"
    assert issues[1].mitigation == "guard against burn"


def test_projection_keeps_reliability_with_risks_only(scenario_a, registry):
    risks = analyze_procedure(scenario_a, registry, analysis_type="risks")
    optimizations = analyze_procedure(scenario_a, registry, analysis_type="optimizations")

    assert risks.metadata.reliability is not None
    assert optimizations.metadata.reliability is None
    assert optimizations.critical_issues == []
    assert optimizations.resources is None
