"""Protocol dependency and validation analysis API routes."""

from __future__ import annotations

from functools import lru_cache

from fastapi import APIRouter, Body, Depends, HTTPException, Query, Request, status
from slowapi import Limiter
from slowapi.util import get_remote_address

from .. import config, schemas
from ..registry import load_default_registry
from ..services.errors import (
    BatchLimitExceeded,
    CircularDependencyError,
    MalformedStepError,
    ProcedureNotFound,
    ProtocolAnalysisError,
)
from ..services.protocol_analysis import ProtocolAnalysisService
from ..services.validation import ValidationOptions

# purpose: expose analysis, validation, risk, optimization, batch, and comparison endpoints
# status: pilot
# depends_on: backend.labprotocol.services.protocol_analysis

limiter = Limiter(key_func=get_remote_address)


def rate_limit(limit: str):
    if config.TESTING:
        def wrapper(func):
            return func
        return wrapper
    return limiter.limit(limit)


router = APIRouter(prefix="/api/protocol-analysis", tags=["protocol-analysis"])


@lru_cache(maxsize=1)
def get_analysis_service() -> ProtocolAnalysisService:
    return ProtocolAnalysisService(registry=load_default_registry())


def _validation_options(categories, min_severity) -> ValidationOptions | None:
    if not categories and min_severity is None:
        return None
    return ValidationOptions(
        categories=frozenset(categories) if categories else None,
        min_severity=min_severity,
    )


def _http_error(exc: ProtocolAnalysisError) -> HTTPException:
    if isinstance(exc, ProcedureNotFound):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))
    if isinstance(exc, BatchLimitExceeded):
        return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
    if isinstance(exc, CircularDependencyError):
        return HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail={"message": str(exc), "cycle": list(exc.cycle)},
        )
    if isinstance(exc, MalformedStepError):
        return HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail={"message": str(exc), "step_id": exc.step_id},
        )
    return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))


@router.post("/analyze", response_model=schemas.ProtocolAnalysis)
@rate_limit("30/minute")
def analyze_document(
    request: Request,
    payload: schemas.AnalyzeDocumentRequest,
    service: ProtocolAnalysisService = Depends(get_analysis_service),
):
    try:
        return service.analyze_document(
            payload.document.to_payload(),
            payload.analysis_type,
            _validation_options(payload.categories, payload.min_severity),
            payload.max_suggestions,
        )
    except ProtocolAnalysisError as exc:
        raise _http_error(exc) from exc


@router.put("/procedures/{procedure_id}", response_model=schemas.ProcedureStored)
def store_procedure(
    procedure_id: str,
    payload: schemas.ProcedureDocument,
    service: ProtocolAnalysisService = Depends(get_analysis_service),
):
    return service.save_procedure(procedure_id, payload.to_payload())


@router.post("/batch-analyze", response_model=schemas.BatchAnalysisResponse)
@rate_limit("10/minute")
def batch_analyze(
    request: Request,
    payload: schemas.BatchAnalysisRequest,
    service: ProtocolAnalysisService = Depends(get_analysis_service),
):
    try:
        return service.run_batch(payload.procedure_ids, payload.analysis_type)
    except ProtocolAnalysisError as exc:
        raise _http_error(exc) from exc


@router.post("/compare", response_model=schemas.ComparisonResponse)
def compare_procedures(
    payload: schemas.CompareRequest,
    service: ProtocolAnalysisService = Depends(get_analysis_service),
):
    try:
        return service.compare(payload.procedure_ids)
    except ProtocolAnalysisError as exc:
        raise _http_error(exc) from exc


@router.post("/{procedure_id}/analyze", response_model=schemas.ProtocolAnalysis)
@rate_limit("30/minute")
def analyze_stored_procedure(
    request: Request,
    procedure_id: str,
    payload: schemas.AnalysisOptions | None = Body(default=None),
    service: ProtocolAnalysisService = Depends(get_analysis_service),
):
    payload = payload or schemas.AnalysisOptions()
    try:
        return service.analyze_procedure(
            procedure_id,
            payload.analysis_type,
            _validation_options(payload.categories, payload.min_severity),
            payload.max_suggestions,
        )
    except ProtocolAnalysisError as exc:
        raise _http_error(exc) from exc


@router.get("/{procedure_id}/dependencies", response_model=schemas.DependencyAnalysis)
def get_dependencies(
    procedure_id: str,
    service: ProtocolAnalysisService = Depends(get_analysis_service),
):
    try:
        return service.dependencies(procedure_id)
    except ProtocolAnalysisError as exc:
        raise _http_error(exc) from exc


@router.post("/{procedure_id}/validate", response_model=schemas.ValidationResult)
def validate_procedure(
    procedure_id: str,
    payload: schemas.ValidationRequest | None = Body(default=None),
    service: ProtocolAnalysisService = Depends(get_analysis_service),
):
    payload = payload or schemas.ValidationRequest()
    try:
        return service.validate(
            procedure_id, _validation_options(payload.categories, payload.min_severity)
        )
    except ProtocolAnalysisError as exc:
        raise _http_error(exc) from exc


@router.get("/{procedure_id}/resources", response_model=schemas.ResourceRequirements)
def get_resources(
    procedure_id: str,
    service: ProtocolAnalysisService = Depends(get_analysis_service),
):
    try:
        return service.resources(procedure_id)
    except ProtocolAnalysisError as exc:
        raise _http_error(exc) from exc


@router.get("/{procedure_id}/risks", response_model=schemas.RiskAssessment)
def get_risks(
    procedure_id: str,
    service: ProtocolAnalysisService = Depends(get_analysis_service),
):
    try:
        return service.risks(procedure_id)
    except ProtocolAnalysisError as exc:
        raise _http_error(exc) from exc


@router.get("/{procedure_id}/optimizations", response_model=schemas.ProtocolAnalysis)
def get_optimizations(
    procedure_id: str,
    max_suggestions: int | None = Query(default=None, ge=0, le=50),
    service: ProtocolAnalysisService = Depends(get_analysis_service),
):
    try:
        return service.analyze_procedure(
            procedure_id, "optimizations", max_suggestions=max_suggestions
        )
    except ProtocolAnalysisError as exc:
        raise _http_error(exc) from exc
