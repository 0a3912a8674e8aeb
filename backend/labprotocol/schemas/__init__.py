"""Pydantic schemas consolidating the protocol analysis API contracts."""

# purpose: aggregate request and response schemas for FastAPI surfaces and services
# status: pilot

from .protocol_analysis import (
    AnalysisMetadata,
    AnalysisOptions,
    AnalysisType,
    AnalyzeDocumentRequest,
    BatchAnalysisItem,
    BatchAnalysisRequest,
    BatchAnalysisResponse,
    BatchSummary,
    BottleneckOut,
    BuildIssueOut,
    CategoryResult,
    CompareRequest,
    ComparisonEntry,
    ComparisonResponse,
    CriticalIssue,
    CriticalPathOut,
    DependencyAnalysis,
    DependencyOut,
    InstrumentAlternative,
    InstrumentRequirement,
    OptimizationSuggestion,
    ParallelGroupOut,
    ProcedureDocument,
    ProcedureStored,
    ProtocolAnalysis,
    Recommendation,
    ReagentRequirement,
    ResourceRequirements,
    RiskAssessment,
    RiskItem,
    RuleCategory,
    RuleOutcome,
    Severity,
    StepSummary,
    ValidationRequest,
    ValidationResult,
)

__all__ = [
    "AnalysisMetadata",
    "AnalysisOptions",
    "AnalysisType",
    "AnalyzeDocumentRequest",
    "BatchAnalysisItem",
    "BatchAnalysisRequest",
    "BatchAnalysisResponse",
    "BatchSummary",
    "BottleneckOut",
    "BuildIssueOut",
    "CategoryResult",
    "CompareRequest",
    "ComparisonEntry",
    "ComparisonResponse",
    "CriticalIssue",
    "CriticalPathOut",
    "DependencyAnalysis",
    "DependencyOut",
    "InstrumentAlternative",
    "InstrumentRequirement",
    "OptimizationSuggestion",
    "ParallelGroupOut",
    "ProcedureDocument",
    "ProcedureStored",
    "ProtocolAnalysis",
    "Recommendation",
    "ReagentRequirement",
    "ResourceRequirements",
    "RiskAssessment",
    "RiskItem",
    "RuleCategory",
    "RuleOutcome",
    "Severity",
    "StepSummary",
    "ValidationRequest",
    "ValidationResult",
]
