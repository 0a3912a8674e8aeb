"""Dependency graph construction for block-based laboratory procedures."""

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass, field, replace
from enum import Enum
from types import MappingProxyType
from typing import Any, Iterable, Mapping, Sequence

from .errors import CircularDependencyError, MalformedStepError

# purpose: turn editor step trees into typed steps and typed dependency edges
# inputs: procedure document exported by the visual editor (blocks, fields, statement inputs)
# outputs: immutable DependencyGraph consumed by scheduling, validation, and advisor services
# status: pilot

logger = logging.getLogger(__name__)


class StepKind(str, Enum):
    PREPARATION = "preparation"
    MIXING = "mixing"
    INCUBATION = "incubation"
    MEASUREMENT = "measurement"
    TRANSFER = "transfer"
    CENTRIFUGATION = "centrifugation"
    WASH = "wash"
    OBSERVATION = "observation"
    INSTRUMENT_OPERATION = "instrument_operation"
    CONTROL_FLOW = "control_flow"
    QUALITY_CHECK = "quality_check"
    WAIT = "wait"
    CHECKPOINT = "checkpoint"
    VARIABLE = "variable"
    PROTOCOL_IO = "protocol_io"


class DependencyKind(str, Enum):
    DATA = "data"
    RESOURCE = "resource"
    TEMPORAL = "temporal"
    CONTROL_FLOW = "control_flow"
    INSTRUMENT_USAGE = "instrument_usage"


ORDERING_KINDS = frozenset(
    {DependencyKind.DATA, DependencyKind.TEMPORAL, DependencyKind.CONTROL_FLOW}
)

PROCESS_KINDS = frozenset(
    {
        StepKind.PREPARATION,
        StepKind.MIXING,
        StepKind.INCUBATION,
        StepKind.MEASUREMENT,
        StepKind.TRANSFER,
        StepKind.CENTRIFUGATION,
        StepKind.WASH,
        StepKind.OBSERVATION,
        StepKind.INSTRUMENT_OPERATION,
    }
)

_UNIT_SECONDS = {
    "s": 1.0,
    "sec": 1.0,
    "second": 1.0,
    "seconds": 1.0,
    "m": 60.0,
    "min": 60.0,
    "minute": 60.0,
    "minutes": 60.0,
    "h": 3600.0,
    "hr": 3600.0,
    "hour": 3600.0,
    "hours": 3600.0,
    "d": 86400.0,
    "day": 86400.0,
    "days": 86400.0,
}

_REFERENCE_FIELDS = ("SAMPLE", "SOURCE", "DESTINATION", "BUFFER", "MATERIALS", "PARAMETERS")


@dataclass(frozen=True)
class BlockSpec:
    """Static description of an editor block type."""

    kind: StepKind
    slots: tuple[str, ...] = ()
    parallel_slots: bool = False
    required_fields: tuple[str, ...] = ()
    produces_fields: tuple[str, ...] = ()
    consumes_fields: tuple[str, ...] = _REFERENCE_FIELDS
    instrument_type: str | None = None
    parallelizable: bool = True


_CONTROL = StepKind.CONTROL_FLOW

BLOCK_SPECS: Mapping[str, BlockSpec] = MappingProxyType(
    {
        # structure and control flow
        "protocol_definition": BlockSpec(
            _CONTROL,
            slots=("INPUTS", "STEPS", "OUTPUTS"),
            required_fields=("PROTOCOL_NAME",),
            parallelizable=False,
        ),
        "protocol_sequence": BlockSpec(_CONTROL, slots=("STEPS",), parallelizable=False),
        "parallel_steps": BlockSpec(
            _CONTROL,
            slots=("BRANCH1", "BRANCH2", "BRANCH3"),
            parallel_slots=True,
            parallelizable=False,
        ),
        "conditional_step": BlockSpec(
            _CONTROL, slots=("THEN_STEPS", "ELSE_STEPS"), parallelizable=False
        ),
        "controls_if": BlockSpec(_CONTROL, slots=("DO0", "ELSE"), parallelizable=False),
        "controls_repeat_ext": BlockSpec(_CONTROL, slots=("DO",), parallelizable=False),
        "controls_whileUntil": BlockSpec(_CONTROL, slots=("DO",), parallelizable=False),
        "controls_for": BlockSpec(_CONTROL, slots=("DO",), parallelizable=False),
        "protocol_call": BlockSpec(
            _CONTROL,
            slots=("PARAMETERS",),
            required_fields=("PROTOCOL_NAME",),
            produces_fields=("RESULT_VAR",),
            parallelizable=False,
        ),
        "protocol_input": BlockSpec(
            StepKind.PROTOCOL_IO,
            required_fields=("INPUT_NAME",),
            produces_fields=("INPUT_NAME",),
            consumes_fields=(),
        ),
        "protocol_output": BlockSpec(
            StepKind.PROTOCOL_IO, required_fields=("OUTPUT_NAME",), consumes_fields=()
        ),
        "quality_check": BlockSpec(StepKind.QUALITY_CHECK, parallelizable=False),
        "wait_step": BlockSpec(StepKind.WAIT),
        "checkpoint": BlockSpec(StepKind.CHECKPOINT, parallelizable=False),
        # experiment steps
        "preparation_step": BlockSpec(StepKind.PREPARATION, slots=("SUBSTEPS",)),
        "mixing_step": BlockSpec(StepKind.MIXING),
        "incubation_step": BlockSpec(StepKind.INCUBATION),
        "measurement_step": BlockSpec(StepKind.MEASUREMENT, produces_fields=("RESULT_VAR",)),
        "transfer_step": BlockSpec(StepKind.TRANSFER),
        "centrifuge_step": BlockSpec(
            StepKind.CENTRIFUGATION, instrument_type="centrifuge", parallelizable=False
        ),
        "wash_step": BlockSpec(StepKind.WASH),
        "observation_step": BlockSpec(StepKind.OBSERVATION, produces_fields=("RECORD_VAR",)),
        # variable declarations and access
        "sample_variable": BlockSpec(
            StepKind.VARIABLE, required_fields=("NAME",), produces_fields=("NAME",), consumes_fields=()
        ),
        "reagent_variable": BlockSpec(
            StepKind.VARIABLE, required_fields=("NAME",), produces_fields=("NAME",), consumes_fields=()
        ),
        "equipment_variable": BlockSpec(
            StepKind.VARIABLE, required_fields=("NAME",), produces_fields=("NAME",), consumes_fields=()
        ),
        "parameter_variable": BlockSpec(
            StepKind.VARIABLE, required_fields=("NAME",), produces_fields=("NAME",), consumes_fields=()
        ),
        "set_variable": BlockSpec(
            StepKind.VARIABLE,
            required_fields=("VAR_NAME",),
            produces_fields=("VAR_NAME",),
            consumes_fields=(),
        ),
        "get_variable": BlockSpec(
            StepKind.VARIABLE, required_fields=("VAR_NAME",), consumes_fields=("VAR_NAME",)
        ),
    }
)

SPECIALIZED_INSTRUMENTS = (
    "flow_cytometer",
    "mass_spectrometer",
    "nmr_spectrometer",
    "liquid_handler",
    "high_content_imaging",
    "qpcr_system",
    "ngs_sequencer",
    "protein_purification",
    "cell_sorter",
    "automated_western",
)


def resolve_block_spec(block_type: str) -> BlockSpec | None:
    """Return the block descriptor for a type tag, or None when unknown."""

    spec = BLOCK_SPECS.get(block_type)
    if spec is not None:
        return spec
    instrument_type: str | None = None
    if block_type in SPECIALIZED_INSTRUMENTS:
        instrument_type = block_type
    elif block_type.startswith("instrument_") and len(block_type) > len("instrument_"):
        instrument_type = block_type[len("instrument_"):]
    if instrument_type is None:
        return None
    return BlockSpec(
        StepKind.INSTRUMENT_OPERATION,
        produces_fields=("RESULT_VAR",),
        instrument_type=instrument_type,
        parallelizable=False,
    )


@dataclass(frozen=True)
class Step:
    """Typed graph node built from one editor block."""

    id: str
    block_type: str
    kind: StepKind
    fields: Mapping[str, Any]
    position: int
    duration: float | None = None
    instruments: tuple[str, ...] = ()
    instrument_type: str | None = None
    reagents: tuple[str, ...] = ()
    produces: tuple[str, ...] = ()
    consumes: tuple[str, ...] = ()
    parallelizable: bool = True
    parent_id: str | None = None
    slot: str | None = None
    depth: int = 0

    @property
    def effective_duration(self) -> float:
        return self.duration if self.duration is not None else 0.0

    @property
    def is_process_step(self) -> bool:
        return self.kind in PROCESS_KINDS

    def field_str(self, name: str, default: str | None = None) -> str | None:
        value = self.fields.get(name)
        if value is None or isinstance(value, bool):
            return default
        text = str(value).strip()
        return text or default

    def field_float(self, name: str) -> float | None:
        value = self.fields.get(name)
        if value is None or isinstance(value, bool):
            return None
        try:
            return float(value)
        except (TypeError, ValueError):
            return None

    def field_bool(self, name: str, default: bool = False) -> bool:
        value = self.fields.get(name)
        if value is None:
            return default
        if isinstance(value, bool):
            return value
        return str(value).strip().lower() in {"true", "1", "yes", "on"}

    @property
    def temperature(self) -> float | None:
        return self.field_float("TEMPERATURE")

    @property
    def speed(self) -> float | None:
        return self.field_float("SPEED")

    @property
    def description(self) -> str | None:
        return self.field_str("DESCRIPTION")


@dataclass(frozen=True)
class Dependency:
    """Directed, typed constraint between two steps."""

    source: str
    target: str
    kind: DependencyKind
    detail: str = ""

    @property
    def id(self) -> str:
        return f"{self.kind.value}:{self.source}->{self.target}"


@dataclass(frozen=True)
class BuildIssue:
    """Non-fatal finding recorded while building the graph."""

    code: str
    step_id: str
    message: str
    subject: str | None = None


class DependencyGraph:
    """Immutable typed dependency graph for one procedure."""

    def __init__(
        self,
        steps: Mapping[str, Step],
        edges: Iterable[Dependency],
        *,
        issues: Sequence[BuildIssue] = (),
        exclusive_reagents: Iterable[str] = (),
        procedure_id: str | None = None,
        version: int | None = None,
        name: str | None = None,
    ) -> None:
        self.steps: Mapping[str, Step] = MappingProxyType(dict(steps))
        edge_map: dict[str, Dependency] = {}
        for edge in edges:
            if edge.source not in self.steps or edge.target not in self.steps:
                raise MalformedStepError(
                    edge.target if edge.source in self.steps else edge.source,
                    f"edge {edge.id} references an unknown step",
                )
            edge_map.setdefault(edge.id, edge)
        self.edges: Mapping[str, Dependency] = MappingProxyType(edge_map)
        self.issues: tuple[BuildIssue, ...] = tuple(issues)
        self.exclusive_reagents = frozenset(exclusive_reagents)
        self.procedure_id = procedure_id
        self.version = version
        self.name = name

        outgoing: dict[str, list[Dependency]] = defaultdict(list)
        incoming: dict[str, list[Dependency]] = defaultdict(list)
        for edge in self.edges.values():
            outgoing[edge.source].append(edge)
            incoming[edge.target].append(edge)
        self._outgoing = {key: tuple(value) for key, value in outgoing.items()}
        self._incoming = {key: tuple(value) for key, value in incoming.items()}

    def __len__(self) -> int:
        return len(self.steps)

    def outgoing(self, step_id: str) -> tuple[Dependency, ...]:
        return self._outgoing.get(step_id, ())

    def incoming(self, step_id: str) -> tuple[Dependency, ...]:
        return self._incoming.get(step_id, ())

    def predecessors(self, step_id: str, kinds: Iterable[DependencyKind] = ORDERING_KINDS) -> list[str]:
        allowed = frozenset(kinds)
        return sorted({edge.source for edge in self.incoming(step_id) if edge.kind in allowed})

    def successors(self, step_id: str, kinds: Iterable[DependencyKind] = ORDERING_KINDS) -> list[str]:
        allowed = frozenset(kinds)
        return sorted({edge.target for edge in self.outgoing(step_id) if edge.kind in allowed})

    def edges_between(self, first: str, second: str) -> list[Dependency]:
        return [
            edge
            for edge in self.outgoing(first) + self.outgoing(second)
            if {edge.source, edge.target} == {first, second}
        ]

    def edges_of_kind(self, kind: DependencyKind) -> list[Dependency]:
        return [edge for edge in self.edges.values() if edge.kind == kind]

    def resource_keys(self, step_id: str) -> tuple[str, ...]:
        """Return namespaced exclusive resource keys referenced by a step."""

        step = self.steps[step_id]
        keys = [f"instrument:{key}" for key in step.instruments]
        keys.extend(
            f"reagent:{name}" for name in step.reagents if name in self.exclusive_reagents
        )
        return tuple(keys)

    def resource_users(self) -> dict[str, list[str]]:
        """Map each exclusive resource key to its users in tree order."""

        users: dict[str, list[str]] = defaultdict(list)
        for step in sorted(self.steps.values(), key=lambda item: item.position):
            for key in self.resource_keys(step.id):
                users[key].append(step.id)
        return dict(users)

    def instrument_keys(self) -> list[str]:
        keys: set[str] = set()
        for step in self.steps.values():
            keys.update(step.instruments)
        return sorted(keys)


@dataclass
class _Node:
    raw: dict[str, Any]
    parent_id: str | None
    slot: str | None
    depth: int
    sequence_key: tuple[str, str, int]
    index: int


@dataclass
class _BuildState:
    steps: dict[str, Step] = field(default_factory=dict)
    sequences: dict[tuple[str, str, int], list[str | None]] = field(default_factory=dict)
    child_sequences: dict[str, list[tuple[str, tuple[str, str, int]]]] = field(
        default_factory=lambda: defaultdict(list)
    )
    edges: list[Dependency] = field(default_factory=list)
    issues: list[BuildIssue] = field(default_factory=list)
    exclusive_reagents: set[str] = field(default_factory=set)


def _unwrap(value: Any) -> Any:
    """Accept both bare blocks and the editor's {"block": {...}} wrapper."""

    if isinstance(value, dict) and "block" in value and "type" not in value:
        return value["block"]
    return value


def _flatten_chain(head: Any, where: str) -> list[dict[str, Any]]:
    """Follow ``next`` links from a stack head into a flat list of blocks."""

    chain: list[dict[str, Any]] = []
    seen: set[int] = set()
    current = _unwrap(head)
    while current is not None:
        if not isinstance(current, dict):
            raise MalformedStepError(where, "block must be an object")
        if id(current) in seen:
            raise MalformedStepError(str(current.get("id", where)), "block chain loops onto itself")
        seen.add(id(current))
        chain.append(current)
        current = _unwrap(current.get("next"))
    return chain


def _slot_blocks(value: Any, where: str) -> list[dict[str, Any]]:
    value = _unwrap(value)
    if value is None:
        return []
    if isinstance(value, dict):
        return _flatten_chain(value, where)
    if isinstance(value, (list, tuple)):
        blocks: list[dict[str, Any]] = []
        for entry in value:
            blocks.extend(_flatten_chain(entry, where))
        return blocks
    raise MalformedStepError(where, "statement input must hold a block or a list of blocks")


def _document_blocks(document: Any) -> tuple[list[Any], dict[str, Any]]:
    if isinstance(document, (list, tuple)):
        return list(document), {}
    if isinstance(document, dict):
        blocks = document.get("blocks")
        if isinstance(blocks, dict):
            blocks = blocks.get("blocks", [])
        if blocks is None:
            blocks = []
        if not isinstance(blocks, list):
            raise MalformedStepError("document", "'blocks' must be a list")
        return blocks, document
    raise MalformedStepError("document", "procedure must be an object or a list of blocks")


def parse_duration(step_id: str, fields: Mapping[str, Any]) -> float | None:
    """Return the step duration in seconds, or None when no estimate is given."""

    for value_key, unit_keys in (
        ("DURATION", ("DURATION_UNIT", "UNIT")),
        ("TIME", ("TIME_UNIT", "UNIT")),
    ):
        raw = fields.get(value_key)
        if raw is None or raw == "":
            continue
        if isinstance(raw, bool):
            raise MalformedStepError(step_id, f"{value_key} must be numeric")
        try:
            amount = float(raw)
        except (TypeError, ValueError) as exc:
            raise MalformedStepError(step_id, f"{value_key} must be numeric") from exc
        if amount < 0:
            raise MalformedStepError(step_id, f"{value_key} must not be negative")
        unit = "minutes"
        for unit_key in unit_keys:
            candidate = fields.get(unit_key)
            if isinstance(candidate, str) and candidate.strip().lower() in _UNIT_SECONDS:
                unit = candidate.strip().lower()
                break
            if unit_key != "UNIT" and candidate not in (None, ""):
                raise MalformedStepError(step_id, f"unknown time unit {candidate!r}")
        return amount * _UNIT_SECONDS[unit]
    return None


def _split_names(value: Any) -> list[str]:
    if value is None or isinstance(value, (bool, int, float)):
        return []
    return [part.strip() for part in str(value).split(",") if part.strip()]


def _reagent_fields(fields: Mapping[str, Any]) -> list[str]:
    names: list[str] = []
    for key, value in fields.items():
        if ("REAGENT" in key or "CHEMICAL" in key) and not key.endswith(
            ("_AMOUNT", "_CONC", "_VOLUME", "_UNITS")
        ):
            names.extend(_split_names(value))
    return names


def _validate_fields(step_id: str, raw: dict[str, Any], spec: BlockSpec) -> dict[str, Any]:
    fields = raw.get("fields") or {}
    if not isinstance(fields, dict):
        raise MalformedStepError(step_id, "fields must be an object")
    for key, value in fields.items():
        if value is not None and not isinstance(value, (str, int, float, bool)):
            raise MalformedStepError(step_id, f"field {key} must be a scalar value")
    for required in spec.required_fields:
        value = fields.get(required)
        if value is None or (isinstance(value, str) and not value.strip()):
            raise MalformedStepError(step_id, f"missing required field {required}")
    return dict(fields)


def _walk(blocks: list[Any], state: _BuildState) -> None:
    """Assign ids in pre-order using an explicit work stack."""

    stack: list[_Node] = []
    for root_index, head in reversed(list(enumerate(blocks))):
        chain = _flatten_chain(head, f"root[{root_index}]")
        key = ("", "", root_index)
        state.sequences[key] = [None] * len(chain)
        for index in range(len(chain) - 1, -1, -1):
            stack.append(_Node(chain[index], None, None, 0, key, index))

    visited: set[int] = set()
    position = 0
    while stack:
        node = stack.pop()
        raw = node.raw
        if id(raw) in visited:
            raise MalformedStepError(str(raw.get("id", position)), "block appears more than once")
        visited.add(id(raw))

        raw_id = raw.get("id")
        step_id = str(raw_id).strip() if raw_id not in (None, "") else f"step-{position + 1:03d}"
        if step_id in state.steps:
            raise MalformedStepError(step_id, "duplicate step id")
        block_type = raw.get("type")
        if not isinstance(block_type, str) or not block_type:
            raise MalformedStepError(step_id, "missing block type")
        spec = resolve_block_spec(block_type)
        if spec is None:
            raise MalformedStepError(step_id, f"unknown step type {block_type!r}")
        fields = _validate_fields(step_id, raw, spec)

        produces = [
            name for key in spec.produces_fields for name in _split_names(fields.get(key))
        ]
        consumes = [
            name for key in spec.consumes_fields for name in _split_names(fields.get(key))
        ]
        instrument_id = fields.get("INSTRUMENT_ID")
        instruments: tuple[str, ...] = ()
        if isinstance(instrument_id, str) and instrument_id.strip():
            instruments = (instrument_id.strip(),)
        elif spec.instrument_type:
            instruments = (spec.instrument_type,)
        reagents = _reagent_fields(fields)
        if block_type == "reagent_variable":
            reagents.extend(produces)

        position += 1
        state.steps[step_id] = Step(
            id=step_id,
            block_type=block_type,
            kind=spec.kind,
            fields=MappingProxyType(fields),
            position=position,
            duration=parse_duration(step_id, fields),
            instruments=instruments,
            instrument_type=spec.instrument_type,
            reagents=tuple(dict.fromkeys(reagents)),
            produces=tuple(dict.fromkeys(produces)),
            consumes=tuple(dict.fromkeys(consumes)),
            parallelizable=spec.parallelizable,
            parent_id=node.parent_id,
            slot=node.slot,
            depth=node.depth,
        )
        if block_type == "reagent_variable" and state.steps[step_id].field_bool("EXCLUSIVE"):
            state.exclusive_reagents.update(produces)
        state.sequences[node.sequence_key][node.index] = step_id

        inputs = raw.get("inputs") or {}
        if not isinstance(inputs, dict):
            raise MalformedStepError(step_id, "inputs must be an object")
        unknown_slots = sorted(slot for slot in inputs if slot not in spec.slots)
        if unknown_slots:
            raise MalformedStepError(
                step_id, f"{block_type} does not accept inputs {', '.join(unknown_slots)}"
            )
        pending: list[_Node] = []
        for slot_index, slot in enumerate(spec.slots):
            children = _slot_blocks(inputs.get(slot), step_id)
            if not children:
                continue
            key = (step_id, slot, slot_index)
            state.sequences[key] = [None] * len(children)
            state.child_sequences[step_id].append((slot, key))
            for index, child in enumerate(children):
                pending.append(_Node(child, step_id, slot, node.depth + 1, key, index))
        stack.extend(reversed(pending))


def _exits(step_id: str, state: _BuildState, memo: dict[str, frozenset[str]]) -> frozenset[str]:
    """Steps that must finish before a step's structural successor may start."""

    cached = memo.get(step_id)
    if cached is not None:
        return cached
    result: set[str] = {step_id}
    for _slot, key in state.child_sequences.get(step_id, []):
        tail = state.sequences[key][-1]
        if tail is not None:
            result.update(memo[tail])
    frozen = frozenset(result)
    memo[step_id] = frozen
    return frozen


def _structural_edges(state: _BuildState) -> None:
    memo: dict[str, frozenset[str]] = {}
    for step in sorted(state.steps.values(), key=lambda item: item.position, reverse=True):
        _exits(step.id, state, memo)

    for key, members in state.sequences.items():
        ordered = [member for member in members if member is not None]
        for current, following in zip(ordered, ordered[1:]):
            state.edges.append(Dependency(current, following, DependencyKind.TEMPORAL, "sequence"))
            for tail in sorted(memo[current] - {current}):
                state.edges.append(Dependency(tail, following, DependencyKind.TEMPORAL, "join"))

    for container_id, slots in state.child_sequences.items():
        spec = resolve_block_spec(state.steps[container_id].block_type)
        for slot, key in slots:
            members = [member for member in state.sequences[key] if member is not None]
            if not members:
                continue
            detail = "branch" if spec is not None and spec.parallel_slots else "enter"
            state.edges.append(Dependency(container_id, members[0], DependencyKind.TEMPORAL, detail))
            for member in members:
                state.edges.append(
                    Dependency(container_id, member, DependencyKind.CONTROL_FLOW, slot.lower())
                )


def _explicit_ordering_edges(state: _BuildState) -> None:
    by_name: dict[str, str] = {}
    for step in sorted(state.steps.values(), key=lambda item: item.position):
        name = step.field_str("NAME")
        if name and name not in by_name:
            by_name[name] = step.id

    for step in state.steps.values():
        for reference in _split_names(step.fields.get("AFTER")):
            if reference in state.steps:
                state.edges.append(Dependency(reference, step.id, DependencyKind.TEMPORAL, "after"))
            else:
                state.issues.append(
                    BuildIssue(
                        "unknown_step_reference",
                        step.id,
                        f"AFTER references unknown step '{reference}'",
                        reference,
                    )
                )
        for reference in _split_names(step.fields.get("WAIT_FOR")):
            source = by_name.get(reference) or (reference if reference in state.steps else None)
            if source is not None:
                state.edges.append(Dependency(source, step.id, DependencyKind.TEMPORAL, "wait_for"))
            else:
                state.issues.append(
                    BuildIssue(
                        "unknown_step_reference",
                        step.id,
                        f"WAIT_FOR references unknown step '{reference}'",
                        reference,
                    )
                )


def _data_edges(state: _BuildState) -> None:
    symbols: dict[str, str] = {}
    reagent_names: set[str] = set()
    ordered = sorted(state.steps.values(), key=lambda item: item.position)
    updated: dict[str, Step] = {}
    for step in ordered:
        extra_reagents: list[str] = []
        for name in step.consumes:
            producer = symbols.get(name)
            if producer is None:
                state.issues.append(
                    BuildIssue(
                        "undeclared_variable",
                        step.id,
                        f"{step.block_type} reads '{name}' before it is declared",
                        name,
                    )
                )
                continue
            if producer != step.id:
                state.edges.append(Dependency(producer, step.id, DependencyKind.DATA, name))
            if name in reagent_names:
                extra_reagents.append(name)
        for name in step.produces:
            symbols[name] = step.id
            if step.block_type == "reagent_variable":
                reagent_names.add(name)
        if extra_reagents:
            merged = tuple(dict.fromkeys(step.reagents + tuple(extra_reagents)))
            updated[step.id] = replace(step, reagents=merged)
    state.steps.update(updated)


def find_cycle(step_ids: Iterable[str], edges: Iterable[Dependency]) -> list[str] | None:
    """Return the step ids of one cycle in the ordering edges, or None."""

    adjacency: dict[str, list[str]] = defaultdict(list)
    for edge in edges:
        if edge.kind != DependencyKind.RESOURCE:
            adjacency[edge.source].append(edge.target)
    for targets in adjacency.values():
        targets.sort()

    visited: set[str] = set()
    for start in sorted(step_ids):
        if start in visited:
            continue
        on_stack: dict[str, int] = {start: 0}
        path = [start]
        iterators = [iter(adjacency.get(start, []))]
        visited.add(start)
        while iterators:
            advanced = False
            for target in iterators[-1]:
                if target in on_stack:
                    return path[on_stack[target]:] + [target]
                if target not in visited:
                    visited.add(target)
                    on_stack[target] = len(path)
                    path.append(target)
                    iterators.append(iter(adjacency.get(target, [])))
                    advanced = True
                    break
            if not advanced:
                iterators.pop()
                on_stack.pop(path.pop(), None)
    return None


def _reachable_from(
    source: str, adjacency: Mapping[str, list[str]], memo: dict[str, frozenset[str]]
) -> frozenset[str]:
    cached = memo.get(source)
    if cached is not None:
        return cached
    seen: set[str] = set()
    frontier = list(adjacency.get(source, []))
    while frontier:
        current = frontier.pop()
        if current in seen:
            continue
        seen.add(current)
        frontier.extend(adjacency.get(current, []))
    frozen = frozenset(seen)
    memo[source] = frozen
    return frozen


def _resource_edges(state: _BuildState) -> None:
    adjacency: dict[str, list[str]] = defaultdict(list)
    for edge in state.edges:
        if edge.kind in ORDERING_KINDS:
            adjacency[edge.source].append(edge.target)
    memo: dict[str, frozenset[str]] = {}

    users: dict[str, list[Step]] = defaultdict(list)
    for step in sorted(state.steps.values(), key=lambda item: item.position):
        for key in step.instruments:
            users[f"instrument:{key}"].append(step)
        for name in step.reagents:
            if name in state.exclusive_reagents:
                users[f"reagent:{name}"].append(step)

    for resource, members in users.items():
        label = resource.split(":", 1)[1]
        previous: Step | None = None
        for index, first in enumerate(members):
            for second in members[index + 1:]:
                forward = second.id in _reachable_from(first.id, adjacency, memo)
                backward = first.id in _reachable_from(second.id, adjacency, memo)
                if forward or backward:
                    continue
                state.edges.append(Dependency(first.id, second.id, DependencyKind.RESOURCE, label))
                state.edges.append(Dependency(second.id, first.id, DependencyKind.RESOURCE, label))
            if previous is not None:
                if first.id in _reachable_from(previous.id, adjacency, memo):
                    state.edges.append(
                        Dependency(previous.id, first.id, DependencyKind.INSTRUMENT_USAGE, label)
                    )
                elif previous.id in _reachable_from(first.id, adjacency, memo):
                    state.edges.append(
                        Dependency(first.id, previous.id, DependencyKind.INSTRUMENT_USAGE, label)
                    )
            previous = first


def build_dependency_graph(document: Any) -> DependencyGraph:
    """Build the typed dependency graph for an exported procedure.

    Raises ``MalformedStepError`` for unknown block types or invalid fields and
    ``CircularDependencyError`` when the ordering edges do not form a DAG.
    Undeclared variable references are recorded on ``graph.issues``.
    """

    blocks, metadata = _document_blocks(document)
    state = _BuildState()
    _walk(blocks, state)
    _structural_edges(state)
    _explicit_ordering_edges(state)
    _data_edges(state)

    cycle = find_cycle(state.steps.keys(), state.edges)
    if cycle is not None:
        raise CircularDependencyError(cycle)
    _resource_edges(state)

    version = metadata.get("version")
    graph = DependencyGraph(
        state.steps,
        state.edges,
        issues=state.issues,
        exclusive_reagents=state.exclusive_reagents,
        procedure_id=str(metadata["id"]) if metadata.get("id") is not None else None,
        version=int(version) if isinstance(version, (int, float)) and not isinstance(version, bool) else None,
        name=metadata.get("name") if isinstance(metadata.get("name"), str) else None,
    )
    logger.debug(
        "built dependency graph procedure=%s steps=%d edges=%d issues=%d",
        graph.procedure_id,
        len(graph.steps),
        len(graph.edges),
        len(graph.issues),
    )
    return graph
