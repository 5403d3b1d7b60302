"""API router for the reporting module."""

from typing import Any, Dict, List, Optional
from fastapi import APIRouter, Depends, Query, Response
from report_engine.core.dependencies import TenantDep, get_report_query_service, get_report_scheduler
from report_engine.query.expression import ExpressionValidationResult
from report_engine.query.schemas import CompiledQuery, QuerySpecification
from report_engine.reporting.executor import get_cache_status, reset_cache_status
from report_engine.reporting.scheduler import ReportScheduler
from report_engine.reporting.schemas import (
    CacheInvalidationResult,
    CompiledQueryRead,
    ExecutionStats,
    ExpressionFunctions,
    ExpressionValidationRequest,
    OutputColumnRead,
    QueryResult,
    ReportCreate,
    ReportExecutionRead,
    ReportRead,
    ReportSchedule,
    ScheduledRunRequest,
    ScheduledRunSummary,
)
from report_engine.reporting.service import ReportQueryService

router = APIRouter(prefix="/reports", tags=["reporting"])

CACHE_STATUS_HEADER = "X-Report-Cache"


def _columns(compiled: CompiledQuery) -> List[OutputColumnRead]:
    return [OutputColumnRead.model_validate(column) for column in compiled.columns]


def _query_result(compiled: CompiledQuery, result) -> QueryResult:
    return QueryResult(
        columns=_columns(compiled),
        rows=result.rows,
        row_count=result.row_count,
        execution_time_ms=result.execution_time_ms,
        cache_status=result.cache_status,
        execution_id=result.execution_id,
        limit_clamped=result.limit_clamped,
        fingerprint=compiled.fingerprint,
    )


def _attach_cache_status(response: Response) -> None:
    """Copy the per-call cache status onto the response, then clear it for the next call."""
    status = get_cache_status()
    if status is not None:
        response.headers[CACHE_STATUS_HEADER] = status
    reset_cache_status()


# ===== SCHEMA DISCOVERY =====


@router.get("/tables", response_model=List[Dict[str, Any]])
def list_tables(
    extension: Optional[str] = None,
    category: Optional[str] = None,
    service: ReportQueryService = Depends(get_report_query_service),
) -> List[Dict[str, Any]]:
    """List reportable tables, optionally filtered by extension or category."""
    return service.list_tables(extension, category)


@router.get("/tables/{table_name}", response_model=Dict[str, Any])
def get_table(table_name: str, service: ReportQueryService = Depends(get_report_query_service)) -> Dict[str, Any]:
    return service.get_table_schema(table_name)


@router.get("/tables/{table_name}/columns", response_model=List[Dict[str, Any]])
def get_table_columns(
    table_name: str, service: ReportQueryService = Depends(get_report_query_service)
) -> List[Dict[str, Any]]:
    """Visible columns plus the dotted columns reachable through auto-join relationships."""
    return service.get_table_columns(table_name)


@router.get("/tables/{table_name}/relationships", response_model=List[Dict[str, Any]])
def get_table_relationships(
    table_name: str, service: ReportQueryService = Depends(get_report_query_service)
) -> List[Dict[str, Any]]:
    return service.get_table_relationships(table_name)


# ===== EXPRESSIONS =====


@router.get("/expressions/functions", response_model=ExpressionFunctions)
def get_expression_functions(service: ReportQueryService = Depends(get_report_query_service)) -> ExpressionFunctions:
    return ExpressionFunctions(**service.get_expression_functions())


@router.post("/expressions/validate", response_model=ExpressionValidationResult)
def validate_expression(
    request: ExpressionValidationRequest, service: ReportQueryService = Depends(get_report_query_service)
) -> ExpressionValidationResult:
    return service.validate_expression(request.expression, request.table)


# ===== QUERIES =====


@router.post("/query/compile", response_model=CompiledQueryRead)
def compile_query(
    spec: QuerySpecification, tenant: TenantDep, service: ReportQueryService = Depends(get_report_query_service)
) -> CompiledQueryRead:
    """Compile without executing. Returns the SQL preview, the cache fingerprint and any non-fatal warnings."""
    compiled = service.compile(spec, tenant)
    metadata = compiled.metadata()
    return CompiledQueryRead(
        table=compiled.table_name,
        sql=compiled.to_sql(),
        fingerprint=compiled.fingerprint,
        effective_limit=compiled.effective_limit,
        requested_limit=compiled.requested_limit,
        limit_clamped=compiled.limit_clamped,
        offset=compiled.offset,
        columns=_columns(compiled),
        joins=metadata["joins"],
        required_permissions=metadata["required_permissions"],
        warnings=metadata["warnings"],
        summary=metadata["summary"],
    )


@router.post("/query/execute", response_model=QueryResult)
def execute_query(
    spec: QuerySpecification,
    tenant: TenantDep,
    response: Response,
    service: ReportQueryService = Depends(get_report_query_service),
) -> QueryResult:
    try:
        compiled, result = service.execute(spec, tenant)
        _attach_cache_status(response)
    finally:
        reset_cache_status()
    return _query_result(compiled, result)


@router.post("/query/export")
def export_query(
    spec: QuerySpecification,
    tenant: TenantDep,
    format: str = Query("csv"),
    service: ReportQueryService = Depends(get_report_query_service),
) -> Response:
    try:
        exported = service.export(spec, tenant, format)
        status = get_cache_status()
    finally:
        reset_cache_status()

    headers = {"Content-Disposition": f"attachment; filename={exported.filename(spec.from_)}"}
    if status is not None:
        headers[CACHE_STATUS_HEADER] = status
    return Response(content=exported.content, media_type=exported.media_type, headers=headers)


@router.delete("/cache/{table_name}", response_model=CacheInvalidationResult)
def invalidate_cache(
    table_name: str,
    prefix: Optional[str] = None,
    service: ReportQueryService = Depends(get_report_query_service),
) -> CacheInvalidationResult:
    invalidated = service.invalidate_cache(table_name, prefix)
    return CacheInvalidationResult(table=table_name, prefix=prefix, invalidated=invalidated)


# ===== SCHEDULED RUNS =====


@router.post("/scheduled/run-due", response_model=ScheduledRunSummary)
def run_due_reports(
    request: ScheduledRunRequest,
    tenant: TenantDep,
    scheduler: ReportScheduler = Depends(get_report_scheduler),
) -> ScheduledRunSummary:
    """Run every due scheduled report now (or one report when report_id is given)."""
    if request.report_id is not None:
        scheduler.service.get_report(request.report_id, tenant)
    summary = scheduler.run_due(report_id=request.report_id, dry_run=request.dry_run)
    reset_cache_status()
    return ScheduledRunSummary(
        successes=summary.successes,
        failures=summary.failures,
        skipped=summary.skipped,
        dry_run=summary.dry_run,
        report_ids=summary.report_ids,
        errors=summary.errors,
    )


# ===== SAVED REPORTS =====


@router.get("/", response_model=List[ReportRead])
def list_reports(tenant: TenantDep, service: ReportQueryService = Depends(get_report_query_service)) -> List[ReportRead]:
    return service.list_reports(tenant)


@router.post("/", response_model=ReportRead, status_code=201)
def create_report(
    request: ReportCreate, tenant: TenantDep, service: ReportQueryService = Depends(get_report_query_service)
) -> ReportRead:
    return service.create_report(request.title, request.query, tenant, description=request.description)


@router.get("/{report_id}", response_model=ReportRead)
def get_report(report_id: int, tenant: TenantDep, service: ReportQueryService = Depends(get_report_query_service)) -> ReportRead:
    return service.get_report(report_id, tenant)


@router.delete("/{report_id}")
def delete_report(
    report_id: int, tenant: TenantDep, service: ReportQueryService = Depends(get_report_query_service)
) -> Dict[str, str]:
    service.delete_report(report_id, tenant)
    return {"message": "Report deleted successfully"}


@router.post("/{report_id}/run", response_model=QueryResult)
def run_report(
    report_id: int,
    tenant: TenantDep,
    response: Response,
    service: ReportQueryService = Depends(get_report_query_service),
) -> QueryResult:
    try:
        compiled, result = service.run_report(report_id, tenant)
        _attach_cache_status(response)
    finally:
        reset_cache_status()
    return _query_result(compiled, result)


@router.put("/{report_id}/schedule", response_model=ReportRead)
def schedule_report(
    report_id: int,
    request: ReportSchedule,
    tenant: TenantDep,
    scheduler: ReportScheduler = Depends(get_report_scheduler),
) -> ReportRead:
    report = scheduler.service.get_report(report_id, tenant)
    return scheduler.schedule(report, request.frequency, request.time, request.timezone, actor_id=tenant.actor_id)


@router.get("/{report_id}/executions", response_model=List[ReportExecutionRead])
def get_report_executions(
    report_id: int,
    tenant: TenantDep,
    limit: int = Query(50, ge=1, le=500),
    service: ReportQueryService = Depends(get_report_query_service),
) -> List[ReportExecutionRead]:
    return service.get_report_executions(report_id, tenant, limit)


@router.get("/{report_id}/executions/stats", response_model=ExecutionStats)
def get_report_execution_stats(
    report_id: int, tenant: TenantDep, service: ReportQueryService = Depends(get_report_query_service)
) -> ExecutionStats:
    return ExecutionStats(**service.get_report_execution_stats(report_id, tenant))
