"""Pydantic schemas for protocol dependency and validation analysis."""

from __future__ import annotations

from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

RuleCategory = Literal["structural", "safety", "efficiency", "compliance", "resource", "quality"]
Severity = Literal["critical", "error", "warning", "info"]
RiskLevel = Literal["low", "medium", "high", "critical"]
RiskCategory = Literal[
    "safety", "contamination", "equipment_failure", "data_loss", "regulatory", "environmental"
]
OptimizationCategory = Literal["time", "cost", "resource", "quality", "safety", "automation"]
AnalysisType = Literal["full", "dependencies", "validation", "resources", "risks", "optimizations"]


class _Frozen(BaseModel):
    model_config = ConfigDict(frozen=True)


class ProcedureDocument(BaseModel):
    """Editor export of a procedure: stacks of blocks with fields and statement inputs."""

    id: Optional[str] = None
    version: int = 1
    name: Optional[str] = None
    blocks: list[dict[str, Any]] = Field(default_factory=list)

    def to_payload(self) -> dict[str, Any]:
        return self.model_dump()


class StepSummary(_Frozen):
    id: str
    block_type: str
    kind: str
    duration: Optional[float] = None
    instruments: list[str] = Field(default_factory=list)
    reagents: list[str] = Field(default_factory=list)
    produces: list[str] = Field(default_factory=list)
    consumes: list[str] = Field(default_factory=list)
    parallelizable: bool = True
    parent_id: Optional[str] = None
    depth: int = 0


class DependencyOut(_Frozen):
    id: str
    source: str
    target: str
    kind: str
    detail: str = ""


class BuildIssueOut(_Frozen):
    code: str
    step_id: str
    message: str
    subject: Optional[str] = None


class CriticalPathOut(_Frozen):
    steps: list[str]
    duration: float


class ParallelGroupOut(_Frozen):
    level: int
    steps: list[str]
    potential_time_saving: float
    feasibility: str


class BottleneckOut(_Frozen):
    kind: str
    step_id: Optional[str] = None
    resource: Optional[str] = None
    reason: str
    duration_reduction: float = 0.0


class DependencyAnalysis(_Frozen):
    steps: list[StepSummary]
    edges: list[DependencyOut]
    levels: list[list[str]]
    critical_path: CriticalPathOut
    parallel_groups: list[ParallelGroupOut]
    bottlenecks: list[BottleneckOut]
    issues: list[BuildIssueOut] = Field(default_factory=list)


class RuleOutcome(_Frozen):
    rule_id: str
    category: RuleCategory
    severity: Severity
    passed: bool
    message: str
    suggestions: list[str] = Field(default_factory=list)
    location: Optional[str] = None
    details: dict[str, Any] = Field(default_factory=dict)


class CategoryResult(_Frozen):
    category: RuleCategory
    weight: float
    score: float
    evaluated: int
    passed: int
    outcomes: list[RuleOutcome] = Field(default_factory=list)


class ValidationResult(_Frozen):
    is_valid: bool
    score: float = Field(ge=0.0, le=100.0)
    categories: dict[str, CategoryResult] = Field(default_factory=dict)
    errors: list[RuleOutcome] = Field(default_factory=list)
    warnings: list[RuleOutcome] = Field(default_factory=list)
    info: list[RuleOutcome] = Field(default_factory=list)


class RiskItem(_Frozen):
    id: str
    category: RiskCategory
    severity: RiskLevel
    probability: float = Field(ge=0.0, le=1.0)
    impact: float = Field(ge=0.0, le=1.0)
    description: str
    step_ids: list[str] = Field(default_factory=list)
    mitigation: Optional[str] = None


class RiskAssessment(_Frozen):
    overall_level: RiskLevel
    risks: list[RiskItem] = Field(default_factory=list)


class OptimizationSuggestion(_Frozen):
    id: str
    category: OptimizationCategory
    strategy: str
    description: str
    impact: float = Field(ge=0.0, le=1.0)
    effort: float = Field(ge=0.0, le=1.0)
    priority: float
    step_ids: list[str] = Field(default_factory=list)
    estimated_time_saving: Optional[float] = None


class Recommendation(_Frozen):
    source: Literal["optimization", "risk"]
    category: str
    message: str
    priority: Optional[float] = None
    severity: Optional[RiskLevel] = None


class InstrumentAlternative(_Frozen):
    id: str
    name: str = ""
    availability: str
    capabilities: list[str] = Field(default_factory=list)


class InstrumentRequirement(_Frozen):
    instrument: str
    type: str
    step_ids: list[str]
    total_duration: float = 0.0
    registered: bool = False
    available: Optional[bool] = None
    calibrated: Optional[bool] = None
    capabilities: list[str] = Field(default_factory=list)
    alternatives: list[InstrumentAlternative] = Field(default_factory=list)


class ReagentRequirement(_Frozen):
    reagent: str
    step_ids: list[str]
    registered: bool = False
    exclusive: bool = False
    hazards: list[str] = Field(default_factory=list)
    stock_status: Optional[str] = None


class ResourceRequirements(_Frozen):
    instruments: list[InstrumentRequirement] = Field(default_factory=list)
    reagents: list[ReagentRequirement] = Field(default_factory=list)
    conflicts: list[str] = Field(default_factory=list)
    availability_issues: list[str] = Field(default_factory=list)
    estimated_cost: float = 0.0


class CriticalIssue(_Frozen):
    source: Literal["validation", "risk"]
    severity: Literal["critical", "error", "high"]
    category: str
    message: str
    location: Optional[str] = None
    step_ids: list[str] = Field(default_factory=list)
    mitigation: Optional[str] = None


class AnalysisMetadata(_Frozen):
    analysis_type: AnalysisType = "full"
    step_count: int
    instrument_count: int
    estimated_total_duration: float
    critical_path_duration: float
    estimated_resource_cost: float
    complexity_score: float
    complexity: Literal["low", "medium", "high"]
    reliability: Optional[float] = Field(default=None, ge=0.0, le=100.0)


class ProtocolAnalysis(_Frozen):
    procedure_id: Optional[str] = None
    version: Optional[int] = None
    name: Optional[str] = None
    dependencies: Optional[DependencyAnalysis] = None
    validation: Optional[ValidationResult] = None
    resources: Optional[ResourceRequirements] = None
    risks: Optional[RiskAssessment] = None
    optimizations: Optional[list[OptimizationSuggestion]] = None
    recommendations: list[Recommendation] = Field(default_factory=list)
    critical_issues: list[CriticalIssue] = Field(default_factory=list)
    metadata: AnalysisMetadata


class AnalysisOptions(BaseModel):
    analysis_type: AnalysisType = "full"
    categories: Optional[list[RuleCategory]] = None
    min_severity: Optional[Severity] = None
    max_suggestions: Optional[int] = Field(default=None, ge=0, le=50)


class AnalyzeDocumentRequest(AnalysisOptions):
    document: ProcedureDocument


class ValidationRequest(BaseModel):
    categories: Optional[list[RuleCategory]] = None
    min_severity: Optional[Severity] = None


class ProcedureStored(BaseModel):
    procedure_id: str
    version: int


class BatchAnalysisRequest(BaseModel):
    procedure_ids: list[str] = Field(min_length=1)
    analysis_type: AnalysisType = "full"


class BatchAnalysisItem(BaseModel):
    procedure_id: str
    success: bool
    result: Optional[ProtocolAnalysis] = None
    error: Optional[str] = None


class BatchSummary(BaseModel):
    total: int
    successful: int
    failed: int


class BatchAnalysisResponse(BaseModel):
    results: list[BatchAnalysisItem]
    summary: BatchSummary


class CompareRequest(BaseModel):
    procedure_ids: list[str]

    @field_validator("procedure_ids")
    @classmethod
    def _bounded(cls, value: list[str]) -> list[str]:
        if not 2 <= len(value) <= 5:
            raise ValueError("comparison requires between 2 and 5 procedures")
        if len(set(value)) != len(value):
            raise ValueError("procedure ids must be unique")
        return value


class ComparisonEntry(BaseModel):
    procedure_id: str
    step_count: int
    complexity_score: float
    complexity: str
    critical_path_duration: float
    estimated_total_duration: float
    parallel_time_saving: float
    instrument_count: int
    estimated_resource_cost: float
    validation_score: float
    reliability: float
    risk_level: RiskLevel


class ComparisonResponse(BaseModel):
    entries: list[ComparisonEntry]
    simplest: str
    fastest: str
    lowest_risk: str
    cheapest: str
