"""Tests for dependency graph construction from editor exports."""

# purpose: cover edge derivation, ingestion validation, and cycle detection
# status: pilot

import pytest

from labprotocol.services.errors import CircularDependencyError, MalformedStepError
from labprotocol.services.protocol_graph import (
    DependencyKind,
    StepKind,
    build_dependency_graph,
    parse_duration,
    resolve_block_spec,
)


def _edge_pairs(graph, kind):
    return {(edge.source, edge.target) for edge in graph.edges.values() if edge.kind == kind}


def test_scenario_a_edges_and_metadata(scenario_a):
    graph = build_dependency_graph(scenario_a)

    assert list(graph.steps) == ["A", "B", "C", "D"]
    assert graph.procedure_id == "scenario-a"
    assert graph.version == 1
    assert _edge_pairs(graph, DependencyKind.TEMPORAL) == {("A", "B"), ("B", "C"), ("D", "B")}
    assert graph.steps["A"].duration == 300
    assert graph.steps["C"].produces == ("reading",)
    assert graph.issues == ()


def test_ids_are_assigned_in_pre_order_when_missing(block, sequence):
    document = [
        sequence(
            block(
                "preparation_step",
                inputs={"SUBSTEPS": [block("mixing_step"), block("wash_step")]},
            ),
            block("incubation_step"),
        )
    ]

    graph = build_dependency_graph(document)

    assert [step.block_type for step in graph.steps.values()] == [
        "preparation_step",
        "mixing_step",
        "wash_step",
        "incubation_step",
    ]
    assert list(graph.steps) == ["step-001", "step-002", "step-003", "step-004"]
    assert graph.steps["step-002"].parent_id == "step-001"
    assert graph.steps["step-002"].depth == 1


def test_parallel_branches_are_not_linked_and_join_their_successor(block, sequence):
    parallel = block(
        "parallel_steps",
        "P",
        inputs={
            "BRANCH1": [sequence(block("mixing_step", "x1"), block("incubation_step", "x2"))],
            "BRANCH2": {"block": block("wash_step", "y1")},
        },
    )
    graph = build_dependency_graph({"blocks": [sequence(parallel, block("measurement_step", "Z", RESULT_VAR="r"))]})

    temporal = _edge_pairs(graph, DependencyKind.TEMPORAL)
    assert ("P", "x1") in temporal
    assert ("P", "y1") in temporal
    assert ("x1", "x2") in temporal
    assert ("x2", "Z") in temporal
    assert ("y1", "Z") in temporal
    assert not {("x1", "y1"), ("y1", "x1"), ("x2", "y1"), ("y1", "x2")} & temporal
    assert _edge_pairs(graph, DependencyKind.CONTROL_FLOW) == {("P", "x1"), ("P", "x2"), ("P", "y1")}
    branch_edges = [edge for edge in graph.edges.values() if edge.detail == "branch"]
    assert {edge.target for edge in branch_edges} == {"x1", "y1"}


def test_data_edges_follow_most_recent_declaration(block, sequence):
    graph = build_dependency_graph(
        [
            sequence(
                block("sample_variable", "first", NAME="lysate"),
                block("set_variable", "second", VAR_NAME="lysate"),
                block("mixing_step", "mix", SAMPLE="lysate"),
                block("measurement_step", "read", SAMPLE="lysate", RESULT_VAR="od"),
                block("get_variable", "get", VAR_NAME="od"),
            )
        ]
    )

    data = _edge_pairs(graph, DependencyKind.DATA)
    assert ("second", "mix") in data
    assert ("first", "mix") not in data
    assert ("read", "get") in data


def test_undeclared_reference_is_recorded_not_raised(block, sequence):
    graph = build_dependency_graph([sequence(block("mixing_step", "mix", SAMPLE="ghost"))])

    assert len(graph.issues) == 1
    issue = graph.issues[0]
    assert issue.code == "undeclared_variable"
    assert issue.step_id == "mix"
    assert issue.subject == "ghost"


def test_unknown_after_reference_is_recorded(block):
    graph = build_dependency_graph([block("mixing_step", "mix", AFTER="missing")])

    assert [issue.code for issue in graph.issues] == ["unknown_step_reference"]


def test_wait_for_resolves_step_names(block):
    graph = build_dependency_graph(
        [
            block("incubation_step", "inc", NAME="overnight", DURATION=12, DURATION_UNIT="hours"),
            block("wash_step", "wash", WAIT_FOR="overnight"),
        ]
    )

    assert ("inc", "wash") in _edge_pairs(graph, DependencyKind.TEMPORAL)


def test_unsequenced_instrument_users_get_symmetric_resource_edges(block):
    graph = build_dependency_graph(
        [
            block("centrifuge_step", "spin-a", INSTRUMENT_ID="centrifuge-1"),
            block("centrifuge_step", "spin-b", INSTRUMENT_ID="centrifuge-1"),
        ]
    )

    resource = _edge_pairs(graph, DependencyKind.RESOURCE)
    assert resource == {("spin-a", "spin-b"), ("spin-b", "spin-a")}
    assert {edge.detail for edge in graph.edges_between("spin-a", "spin-b")} == {"centrifuge-1"}


def test_sequenced_instrument_users_get_usage_edge(block, sequence):
    graph = build_dependency_graph(
        [
            sequence(
                block("centrifuge_step", "spin-a"),
                block("mixing_step", "mix"),
                block("centrifuge_step", "spin-b"),
            )
        ]
    )

    assert _edge_pairs(graph, DependencyKind.INSTRUMENT_USAGE) == {("spin-a", "spin-b")}
    assert _edge_pairs(graph, DependencyKind.RESOURCE) == set()
    assert graph.steps["spin-a"].instruments == ("centrifuge",)


def test_exclusive_reagents_become_resources(block):
    graph = build_dependency_graph(
        [
            block("reagent_variable", "enzyme", NAME="polymerase", EXCLUSIVE=True),
            block("mixing_step", "mix-a", SAMPLE="polymerase"),
            block("mixing_step", "mix-b", MATERIALS="polymerase"),
        ]
    )

    assert "polymerase" in graph.steps["mix-a"].reagents
    assert ("mix-a", "mix-b") in _edge_pairs(graph, DependencyKind.RESOURCE)
    assert "reagent:polymerase" in graph.resource_users()


def test_instrument_blocks_resolve_types():
    spec = resolve_block_spec("instrument_plate_reader")
    assert spec.kind == StepKind.INSTRUMENT_OPERATION
    assert spec.instrument_type == "plate_reader"
    assert not spec.parallelizable
    assert resolve_block_spec("flow_cytometer").instrument_type == "flow_cytometer"
    assert resolve_block_spec("instrument_") is None
    assert resolve_block_spec("teleporter") is None


def test_cycle_through_explicit_ordering_names_the_steps(block, sequence):
    document = [
        sequence(
            block("preparation_step", "A", AFTER="C"),
            block("mixing_step", "B"),
            block("measurement_step", "C", RESULT_VAR="r"),
        )
    ]

    with pytest.raises(CircularDependencyError) as excinfo:
        build_dependency_graph(document)

    assert {"A", "C"} <= set(excinfo.value.cycle)
    assert excinfo.value.cycle[0] == excinfo.value.cycle[-1]
    assert "A" in str(excinfo.value)


@pytest.mark.parametrize(
    ("payload", "step_id"),
    [
        ([{"type": "teleport_step", "id": "t1", "fields": {}}], "t1"),
        ([{"type": "sample_variable", "id": "s1", "fields": {}}], "s1"),
        ([{"type": "mixing_step", "id": "m1", "fields": {"DURATION": -5}}], "m1"),
        ([{"type": "mixing_step", "id": "m2", "fields": {"DURATION": "soon"}}], "m2"),
        ([{"type": "mixing_step", "id": "m3", "fields": {"DURATION": 1, "DURATION_UNIT": "fortnights"}}], "m3"),
        ([{"type": "mixing_step", "id": "m4", "inputs": {"STEPS": []}}], "m4"),
    ],
)
def test_malformed_steps_name_the_offender(payload, step_id):
    with pytest.raises(MalformedStepError) as excinfo:
        build_dependency_graph(payload)

    assert excinfo.value.step_id == step_id


def test_duplicate_ids_are_rejected(block):
    with pytest.raises(MalformedStepError) as excinfo:
        build_dependency_graph([block("mixing_step", "dup"), block("wash_step", "dup")])

    assert excinfo.value.step_id == "dup"


def test_duration_units():
    assert parse_duration("s", {"DURATION": 90, "DURATION_UNIT": "seconds"}) == 90
    assert parse_duration("s", {"TIME": 2, "TIME_UNIT": "hours"}) == 7200
    assert parse_duration("s", {"DURATION": "1.5"}) == 90
    assert parse_duration("s", {"TIME": 1, "UNIT": "days"}) == 86400
    assert parse_duration("s", {"NAME": "no estimate"}) is None


def test_deep_nesting_does_not_exhaust_the_call_stack(block):
    depth = 1500
    root = current = block("controls_repeat_ext", "loop-0")
    for index in range(1, depth):
        child = block("controls_repeat_ext", f"loop-{index}")
        current["inputs"] = {"DO": [child]}
        current = child
    current["inputs"] = {"DO": [block("mixing_step", "leaf", DURATION=1)]}

    graph = build_dependency_graph([root])

    assert len(graph.steps) == depth + 1
    assert graph.steps["leaf"].depth == depth
