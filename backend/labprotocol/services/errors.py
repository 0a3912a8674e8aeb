"""Error taxonomy shared by the protocol analysis services."""

from __future__ import annotations

from typing import Sequence

# purpose: separate fatal graph construction failures from non-fatal validation degradations
# status: pilot
# depends_on: backend.labprotocol.services.protocol_graph, backend.labprotocol.services.validation


class ProtocolAnalysisError(RuntimeError):
    """Base error for protocol analysis orchestration."""


class MalformedStepError(ProtocolAnalysisError):
    """Raised when a step has an unknown type or an invalid field."""

    def __init__(self, step_id: str, reason: str) -> None:
        super().__init__(f"step {step_id}: {reason}")
        self.step_id = step_id
        self.reason = reason


class CircularDependencyError(ProtocolAnalysisError):
    """Raised when ordering dependencies form a cycle."""

    def __init__(self, cycle: Sequence[str]) -> None:
        self.cycle = tuple(cycle)
        super().__init__("circular dependency: " + " -> ".join(self.cycle))


class RegistryLookupMiss(ProtocolAnalysisError):
    """Raised by rules when registry data they depend on is missing."""

    def __init__(self, kind: str, key: str, keys: Sequence[str] = ()) -> None:
        super().__init__(f"{kind} '{key}' not found in registry")
        self.kind = kind
        self.key = key
        self.keys = tuple(keys) or (key,)


class RuleEvaluationError(ProtocolAnalysisError):
    """Wraps an exception raised while evaluating a single validation rule."""

    def __init__(self, rule_id: str, reason: str) -> None:
        super().__init__(f"rule {rule_id} failed to evaluate: {reason}")
        self.rule_id = rule_id
        self.reason = reason


class ProcedureNotFound(ProtocolAnalysisError):
    """Raised when a procedure id is not present in the store."""


class BatchLimitExceeded(ProtocolAnalysisError):
    """Raised when a batch request names more procedures than allowed."""
