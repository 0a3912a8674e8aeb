"""Built-in validation rule descriptors for laboratory procedures."""

from __future__ import annotations

from dataclasses import dataclass, field
from itertools import combinations
from typing import Any, Callable, Iterable, Literal, Mapping, TypeVar

from ..registry import InstrumentRecord, InstrumentRegistry, ReagentRecord
from .errors import RegistryLookupMiss
from .protocol_graph import DependencyGraph, DependencyKind, Step, StepKind

# purpose: declare the default rule set as immutable descriptors evaluated by the validation engine
# inputs: RuleContext bundling the dependency graph, registry reads, and thresholds
# outputs: RuleCheck verdicts with messages, suggestions, and locations
# status: pilot

RuleCategory = Literal["structural", "safety", "efficiency", "compliance", "resource", "quality"]
Severity = Literal["critical", "error", "warning", "info"]

SEVERITY_RANK: Mapping[str, int] = {"info": 0, "warning": 1, "error": 2, "critical": 3}

R = TypeVar("R")


def _resolve(
    lookup: Callable[[str], R | None] | None, keys: Iterable[str]
) -> tuple[dict[str, R], list[str]]:
    records: dict[str, R] = {}
    missing: list[str] = []
    for key in dict.fromkeys(keys):
        record = lookup(key) if lookup is not None else None
        if record is None:
            missing.append(key)
        else:
            records[key] = record
    return records, missing


def _undecided(kind: str, missing: list[str]) -> RegistryLookupMiss:
    return RegistryLookupMiss(kind, missing[0], missing)


@dataclass(frozen=True)
class ValidationOptions:
    """Rule selection and thresholds for one validation run."""

    categories: frozenset[str] | None = None
    min_severity: Severity | None = None
    max_safe_temperature: float = 100.0
    min_safe_temperature: float = -80.0
    max_wait_seconds: float = 4 * 3600.0
    min_control_ratio: float = 0.1
    min_replicates: int = 1

    def selects(self, rule: "ValidationRule") -> bool:
        if self.categories is not None and rule.category not in self.categories:
            return False
        if self.min_severity is not None:
            return SEVERITY_RANK[rule.severity] >= SEVERITY_RANK[self.min_severity]
        return True


@dataclass(frozen=True)
class RuleCheck:
    passed: bool
    message: str = ""
    suggestions: tuple[str, ...] = ()
    location: str | None = None
    details: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class RuleContext:
    graph: DependencyGraph
    registry: InstrumentRegistry | None
    options: ValidationOptions

    def instruments(self, keys: Iterable[str]) -> tuple[dict[str, InstrumentRecord], list[str]]:
        """Resolve what the registry knows; return the records and the missed keys."""

        lookup = self.registry.lookup_instrument if self.registry is not None else None
        return _resolve(lookup, keys)

    def reagents(self, names: Iterable[str]) -> tuple[dict[str, ReagentRecord], list[str]]:
        lookup = self.registry.lookup_reagent if self.registry is not None else None
        return _resolve(lookup, names)

    def steps(self, *kinds: StepKind) -> list[Step]:
        ordered = sorted(self.graph.steps.values(), key=lambda step: step.position)
        if not kinds:
            return ordered
        return [step for step in ordered if step.kind in kinds]

    def process_steps(self) -> list[Step]:
        return [step for step in self.steps() if step.is_process_step]


@dataclass(frozen=True)
class ValidationRule:
    id: str
    category: RuleCategory
    severity: Severity
    description: str
    evaluate: Callable[[RuleContext], RuleCheck]


def _passed(message: str) -> RuleCheck:
    return RuleCheck(passed=True, message=message)


def _failed(message: str, offenders: list[str], *suggestions: str, **details: Any) -> RuleCheck:
    return RuleCheck(
        passed=False,
        message=message,
        suggestions=tuple(suggestions),
        location=offenders[0] if offenders else None,
        details={"step_ids": offenders, **details},
    )


# structural


def _non_empty_procedure(ctx: RuleContext) -> RuleCheck:
    actionable = [
        step
        for step in ctx.steps()
        if step.kind not in (StepKind.VARIABLE, StepKind.PROTOCOL_IO, StepKind.CONTROL_FLOW)
    ]
    if actionable:
        return _passed(f"procedure contains {len(actionable)} actionable steps")
    return _failed(
        "procedure contains no actionable steps",
        [],
        "Add at least one preparation, processing, or measurement step",
    )


def _variable_references(ctx: RuleContext) -> RuleCheck:
    issues = [
        issue
        for issue in ctx.graph.issues
        if issue.code in ("undeclared_variable", "unknown_step_reference")
    ]
    if not issues:
        return _passed("all references resolve to earlier declarations")
    names = sorted({issue.subject for issue in issues if issue.subject})
    return _failed(
        f"{len(issues)} unresolved references: {', '.join(names)}",
        [issue.step_id for issue in issues],
        "Declare each variable before the step that reads it",
        "Check AFTER and WAIT_FOR fields for typos",
        references=names,
    )


def _orphaned_steps(ctx: RuleContext) -> RuleCheck:
    graph = ctx.graph
    if len(graph.steps) < 2:
        return _passed("single-step procedure")
    orphans = [
        step.id
        for step in ctx.process_steps()
        if not graph.predecessors(step.id) and not graph.successors(step.id)
    ]
    if not orphans:
        return _passed("every step is connected to the procedure flow")
    return _failed(
        f"{len(orphans)} steps are not connected to any other step",
        orphans,
        "Attach the step to a sequence or remove it",
    )


_EMPTY_CHECKED = frozenset(
    {
        "protocol_definition",
        "protocol_sequence",
        "parallel_steps",
        "conditional_step",
        "controls_if",
        "controls_repeat_ext",
        "controls_whileUntil",
        "controls_for",
    }
)


def _empty_containers(ctx: RuleContext) -> RuleCheck:
    graph = ctx.graph
    empty = [
        step.id
        for step in ctx.steps(StepKind.CONTROL_FLOW)
        if step.block_type in _EMPTY_CHECKED
        and not any(edge.kind == DependencyKind.CONTROL_FLOW for edge in graph.outgoing(step.id))
    ]
    if not empty:
        return _passed("all control structures contain steps")
    return _failed(
        f"{len(empty)} control structures are empty",
        empty,
        "Add steps inside the block or delete it",
    )


def _unused_variables(ctx: RuleContext) -> RuleCheck:
    consumed = {name for step in ctx.steps() for name in step.consumes}
    unused = [
        step.id
        for step in ctx.steps(StepKind.VARIABLE)
        if step.produces and not any(name in consumed for name in step.produces)
    ]
    if not unused:
        return _passed("all declared variables are used")
    return _failed(
        f"{len(unused)} declared variables are never read",
        unused,
        "Remove unused declarations to keep the procedure readable",
    )


# safety


def _temperature_limits(ctx: RuleContext) -> RuleCheck:
    options = ctx.options
    offenders = [
        step.id
        for step in ctx.steps()
        if step.temperature is not None
        and not options.min_safe_temperature <= step.temperature <= options.max_safe_temperature
    ]
    if not offenders:
        return _passed("all temperatures are within safe limits")
    return _failed(
        f"{len(offenders)} steps exceed safe temperature limits "
        f"({options.min_safe_temperature:g} to {options.max_safe_temperature:g} °C)",
        offenders,
        "Use equipment rated for the temperature or adjust the setpoint",
    )


def _reagent_names(record: ReagentRecord) -> set[str]:
    return {record.id.lower(), record.name.lower()}


def _rejects(record: ReagentRecord, names: set[str]) -> bool:
    return bool({item.lower() for item in record.incompatible_with} & names)


def _pair_verdict(
    first: ReagentRecord | None,
    second: ReagentRecord | None,
    first_name: str,
    second_name: str,
) -> bool | None:
    """True when incompatible, False when compatible, None when it cannot be decided."""

    if first is not None and second is not None:
        return _rejects(first, _reagent_names(second)) or _rejects(second, _reagent_names(first))
    # a registered reagent may still name an unregistered one as incompatible
    if first is not None and _rejects(first, {second_name.strip().lower()}):
        return True
    if second is not None and _rejects(second, {first_name.strip().lower()}):
        return True
    return None


def _display(records: Mapping[str, ReagentRecord], name: str) -> str:
    return records[name].name if name in records else name


def _chemical_compatibility(ctx: RuleContext) -> RuleCheck:
    mixed = [step for step in ctx.steps() if len(step.reagents) >= 2]
    records, missing = ctx.reagents(name for step in mixed for name in step.reagents)
    offenders: list[str] = []
    pairs: list[str] = []
    undecided = False
    for step in mixed:
        for first, second in combinations(step.reagents, 2):
            verdict = _pair_verdict(records.get(first), records.get(second), first, second)
            if verdict is None:
                undecided = True
            elif verdict:
                offenders.append(step.id)
                pairs.append(f"{_display(records, first)} + {_display(records, second)}")
    if offenders:
        return _failed(
            f"incompatible reagents combined: {', '.join(pairs)}",
            list(dict.fromkeys(offenders)),
            "Separate incompatible reagents into different steps",
            "Consult the safety data sheet before mixing",
            pairs=pairs,
            missing_reagents=missing,
        )
    if undecided:
        raise _undecided("reagent", missing)
    return _passed("no incompatible reagent combinations")


def _centrifuge_speed_limits(ctx: RuleContext) -> RuleCheck:
    spins = [
        step
        for step in ctx.steps(StepKind.CENTRIFUGATION)
        if step.speed is not None and step.instruments
    ]
    records, missing = ctx.instruments(step.instruments[0] for step in spins)
    offenders: list[str] = []
    for step in spins:
        record = records.get(step.instruments[0])
        if record is not None and record.max_speed is not None and step.speed > record.max_speed:
            offenders.append(step.id)
    if offenders:
        return _failed(
            f"{len(offenders)} centrifuge steps exceed the rotor rating",
            offenders,
            "Lower the speed or use a centrifuge rated for it",
            missing_instruments=missing,
        )
    if missing:
        raise _undecided("instrument", missing)
    return _passed("centrifuge speeds are within rated limits")


def _hazardous_reagents(ctx: RuleContext) -> RuleCheck:
    users: dict[str, list[Step]] = {}
    for step in ctx.steps():
        for name in step.reagents:
            users.setdefault(name, []).append(step)
    records, missing = ctx.reagents(users)
    undocumented: list[str] = []
    flagged: list[str] = []
    for name, steps in users.items():
        record = records.get(name)
        if record is None or not record.is_hazardous:
            continue
        if any(step.field_str("SAFETY_NOTES") or step.field_str("PPE") for step in steps):
            continue
        flagged.append(name)
        undocumented.extend(step.id for step in steps)
    if flagged:
        return _failed(
            f"hazardous reagents without safety notes: {', '.join(flagged)}",
            list(dict.fromkeys(undocumented)),
            "Add SAFETY_NOTES or PPE requirements to steps handling hazardous reagents",
            reagents=flagged,
            missing_reagents=missing,
        )
    if missing:
        raise _undecided("reagent", missing)
    return _passed("hazardous reagents carry safety notes")


# efficiency

_IGNORED_FOR_REDUNDANCY = frozenset({"NAME", "DESCRIPTION", "AFTER", "WAIT_FOR"})


def _comparable_fields(step: Step) -> dict[str, Any]:
    return {key: value for key, value in step.fields.items() if key not in _IGNORED_FOR_REDUNDANCY}


def _redundant_steps(ctx: RuleContext) -> RuleCheck:
    graph = ctx.graph
    offenders: list[str] = []
    for edge in graph.edges_of_kind(DependencyKind.TEMPORAL):
        if edge.detail != "sequence":
            continue
        first, second = graph.steps[edge.source], graph.steps[edge.target]
        if not first.is_process_step or first.block_type != second.block_type:
            continue
        if _comparable_fields(first) == _comparable_fields(second):
            offenders.append(second.id)
    if not offenders:
        return _passed("no consecutive duplicate steps")
    return _failed(
        f"{len(offenders)} steps repeat the previous step exactly",
        sorted(offenders),
        "Merge duplicate steps or use a repeat block",
    )


def _excessive_waits(ctx: RuleContext) -> RuleCheck:
    limit = ctx.options.max_wait_seconds
    offenders = [
        step.id
        for step in ctx.steps(StepKind.WAIT)
        if step.duration is not None and step.duration > limit
    ]
    if not offenders:
        return _passed("wait times are within limits")
    return _failed(
        f"{len(offenders)} wait steps exceed {limit / 3600:g} h",
        offenders,
        "Split long waits or schedule other work in the gap",
    )


def _serialized_independent_steps(ctx: RuleContext) -> RuleCheck:
    graph = ctx.graph
    offenders: list[str] = []
    for edge in graph.edges_of_kind(DependencyKind.TEMPORAL):
        if edge.detail != "sequence":
            continue
        first, second = graph.steps[edge.source], graph.steps[edge.target]
        if not (first.is_process_step and second.is_process_step):
            continue
        if not (first.parallelizable and second.parallelizable):
            continue
        first_sample, second_sample = first.field_str("SAMPLE"), second.field_str("SAMPLE")
        if not first_sample or not second_sample or first_sample == second_sample:
            continue
        if set(first.reagents) & set(second.reagents) or set(first.produces) & set(second.consumes):
            continue
        offenders.append(second.id)
    if not offenders:
        return _passed("no independent steps are needlessly serialized")
    return _failed(
        f"{len(offenders)} steps on different samples run in sequence",
        sorted(offenders),
        "Move independent sample handling into a parallel block",
    )


# compliance


def _protocol_documentation(ctx: RuleContext) -> RuleCheck:
    named = bool(ctx.graph.name) or any(
        step.block_type == "protocol_definition" for step in ctx.steps(StepKind.CONTROL_FLOW)
    )
    process = ctx.process_steps()
    undocumented = [step.id for step in process if not step.description]
    if named and len(undocumented) * 2 <= len(process):
        return _passed("procedure and steps are documented")
    problems = []
    if not named:
        problems.append("procedure has no name")
    if len(undocumented) * 2 > len(process):
        problems.append(f"{len(undocumented)} of {len(process)} steps lack a description")
    return _failed(
        "; ".join(problems),
        undocumented,
        "Name the procedure and describe each step",
    )


def _result_traceability(ctx: RuleContext) -> RuleCheck:
    untraced = [
        step.id
        for step in ctx.steps(StepKind.MEASUREMENT, StepKind.INSTRUMENT_OPERATION, StepKind.OBSERVATION)
        if not step.produces
    ]
    if not untraced:
        return _passed("every measurement stores its result")
    return _failed(
        f"{len(untraced)} measurements do not record a result variable",
        untraced,
        "Set RESULT_VAR or RECORD_VAR so results can be traced",
    )


def _checkpoint_coverage(ctx: RuleContext) -> RuleCheck:
    process = ctx.process_steps()
    gates = ctx.steps(StepKind.CHECKPOINT, StepKind.QUALITY_CHECK)
    if len(process) < 5 or gates:
        return _passed("checkpoint coverage is adequate")
    return _failed(
        f"{len(process)} steps run without a checkpoint",
        [step.id for step in process],
        "Add a checkpoint or quality check at critical transitions",
    )


# resource


def _instrument_records(
    ctx: RuleContext,
) -> tuple[list[tuple[str, InstrumentRecord, list[str]]], list[str]]:
    users: dict[str, list[str]] = {}
    for step in ctx.steps():
        for key in step.instruments:
            users.setdefault(key, []).append(step.id)
    records, missing = ctx.instruments(users)
    resolved = [(key, records[key], step_ids) for key, step_ids in users.items() if key in records]
    return resolved, missing


def _instrument_availability(ctx: RuleContext) -> RuleCheck:
    resolved, missing = _instrument_records(ctx)
    offenders: list[str] = []
    unavailable: list[str] = []
    for key, record, step_ids in resolved:
        if not record.is_available:
            unavailable.append(f"{key} ({record.availability})")
            offenders.extend(step_ids)
    if unavailable:
        return _failed(
            f"instruments unavailable: {', '.join(unavailable)}",
            offenders,
            "Reserve an alternative instrument of the same type",
            instruments=unavailable,
            missing_instruments=missing,
        )
    if missing:
        raise _undecided("instrument", missing)
    return _passed("all required instruments are available")


def _instrument_calibration(ctx: RuleContext) -> RuleCheck:
    resolved, missing = _instrument_records(ctx)
    offenders: list[str] = []
    stale: list[str] = []
    for key, record, step_ids in resolved:
        if not record.is_calibrated:
            stale.append(key)
            offenders.extend(step_ids)
    if stale:
        return _failed(
            f"instruments need calibration: {', '.join(stale)}",
            offenders,
            "Schedule calibration before running the procedure",
            instruments=stale,
            missing_instruments=missing,
        )
    if missing:
        raise _undecided("instrument", missing)
    return _passed("all instruments are calibrated")


def _reagent_availability(ctx: RuleContext) -> RuleCheck:
    steps = ctx.steps()
    records, unregistered = ctx.reagents(name for step in steps for name in step.reagents)
    missing: list[str] = []
    offenders: list[str] = []
    for step in steps:
        for name in step.reagents:
            record = records.get(name)
            if record is not None and record.stock_status == "out_of_stock":
                if name not in missing:
                    missing.append(name)
                offenders.append(step.id)
    if missing:
        return _failed(
            f"reagents out of stock: {', '.join(missing)}",
            list(dict.fromkeys(offenders)),
            "Order reagents before scheduling the run",
            reagents=missing,
            missing_reagents=unregistered,
        )
    if unregistered:
        raise _undecided("reagent", unregistered)
    return _passed("all reagents are in stock")


# quality


def _control_points(ctx: RuleContext) -> RuleCheck:
    process = ctx.process_steps()
    measured = ctx.steps(StepKind.MEASUREMENT, StepKind.INSTRUMENT_OPERATION)
    if not measured:
        return _passed("no measurements require controls")
    controls = ctx.steps(StepKind.QUALITY_CHECK, StepKind.CHECKPOINT)
    ratio = len(controls) / len(process)
    if ratio >= ctx.options.min_control_ratio:
        return _passed(f"control ratio {ratio:.2f}")
    return _failed(
        f"control ratio {ratio:.2f} is below {ctx.options.min_control_ratio:.2f}",
        [step.id for step in measured],
        "Add a quality check before measurements",
        ratio=ratio,
    )


def _measurement_replicates(ctx: RuleContext) -> RuleCheck:
    required = ctx.options.min_replicates
    offenders: list[str] = []
    for step in ctx.steps(StepKind.MEASUREMENT):
        replicates = step.field_float("REPLICATES")
        if (replicates if replicates is not None else 1) < required:
            offenders.append(step.id)
    if not offenders:
        return _passed("measurement replicates are sufficient")
    return _failed(
        f"{len(offenders)} measurements have fewer than {required} replicates",
        offenders,
        "Increase REPLICATES for statistically meaningful results",
    )


def build_default_rules() -> tuple[ValidationRule, ...]:
    """Return the built-in rule set in evaluation order."""

    return (
        ValidationRule("non_empty_procedure", "structural", "error", "Procedure contains actionable steps", _non_empty_procedure),
        ValidationRule("variable_references", "structural", "warning", "References resolve to declared variables and steps", _variable_references),
        ValidationRule("orphaned_steps", "structural", "warning", "Every step participates in the procedure flow", _orphaned_steps),
        ValidationRule("empty_containers", "structural", "warning", "Control structures contain steps", _empty_containers),
        ValidationRule("unused_variables", "structural", "info", "Declared variables are read", _unused_variables),
        ValidationRule("temperature_limits", "safety", "error", "Temperatures stay within safe limits", _temperature_limits),
        ValidationRule("chemical_compatibility", "safety", "error", "Incompatible reagents are not combined", _chemical_compatibility),
        ValidationRule("centrifuge_speed_limits", "safety", "error", "Centrifuge speeds respect rotor ratings", _centrifuge_speed_limits),
        ValidationRule("hazardous_reagents", "safety", "warning", "Hazardous reagents carry safety notes", _hazardous_reagents),
        ValidationRule("redundant_steps", "efficiency", "warning", "No duplicated consecutive steps", _redundant_steps),
        ValidationRule("excessive_waits", "efficiency", "warning", "Wait steps stay within limits", _excessive_waits),
        ValidationRule("serialized_independent_steps", "efficiency", "info", "Independent work is not serialized", _serialized_independent_steps),
        ValidationRule("protocol_documentation", "compliance", "warning", "Procedure and steps are documented", _protocol_documentation),
        ValidationRule("result_traceability", "compliance", "warning", "Measurements record their results", _result_traceability),
        ValidationRule("checkpoint_coverage", "compliance", "warning", "Long procedures include checkpoints", _checkpoint_coverage),
        ValidationRule("instrument_availability", "resource", "error", "Required instruments are available", _instrument_availability),
        ValidationRule("instrument_calibration", "resource", "warning", "Required instruments are calibrated", _instrument_calibration),
        ValidationRule("reagent_availability", "resource", "warning", "Reagents are in stock", _reagent_availability),
        ValidationRule("control_points", "quality", "warning", "Measurements are covered by controls", _control_points),
        ValidationRule("measurement_replicates", "quality", "info", "Measurements use enough replicates", _measurement_replicates),
    )
