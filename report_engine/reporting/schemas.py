"""Pydantic request/response models for the reporting API."""

from pydantic import BaseModel, ConfigDict, Field, field_validator
from typing import Any, Dict, List, Optional
from datetime import datetime
import re

from report_engine.query.schemas import QuerySpecification

_TIME_PATTERN = re.compile(r"^([01]\d|2[0-3]):[0-5]\d$")


class ExpressionValidationRequest(BaseModel):
    expression: str
    table: str


class ExpressionFunctions(BaseModel):
    functions: List[str]
    operators: List[str]


class OutputColumnRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    alias: str
    label: str
    type: str
    source: str
    aggregate: Optional[str] = None


class CompiledQueryRead(BaseModel):
    """Preview of a compiled query; the SQL carries placeholders, never literal values."""

    table: str
    sql: str
    fingerprint: str
    effective_limit: Optional[int] = None
    requested_limit: Optional[int] = None
    limit_clamped: bool = False
    offset: Optional[int] = None
    columns: List[OutputColumnRead]
    joins: List[Dict[str, Any]]
    required_permissions: List[str]
    warnings: List[str] = Field(default_factory=list)
    summary: Dict[str, Any] = Field(default_factory=dict)


class QueryResult(BaseModel):
    columns: List[OutputColumnRead]
    rows: List[Dict[str, Any]]
    row_count: int
    execution_time_ms: float
    cache_status: str
    execution_id: Optional[int] = None
    limit_clamped: bool = False
    fingerprint: str


class CacheInvalidationResult(BaseModel):
    table: str
    prefix: Optional[str] = None
    invalidated: int


class ReportCreate(BaseModel):
    title: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = None
    query: QuerySpecification

    @field_validator("title")
    @classmethod
    def validate_title(cls, v):
        if not v.strip():
            raise ValueError("Report title cannot be empty")
        return v.strip()


class ReportRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    title: str
    description: Optional[str] = None
    tenant_id: str
    created_by: str
    query_spec: Dict[str, Any]
    is_scheduled: bool
    schedule_frequency: Optional[str] = None
    schedule_time: Optional[str] = None
    schedule_timezone: Optional[str] = None
    next_scheduled_run: Optional[datetime] = None
    last_executed_at: Optional[datetime] = None
    last_row_count: Optional[int] = None
    last_execution_time_ms: Optional[float] = None
    created_date: Optional[datetime] = None
    updated_date: Optional[datetime] = None


class ReportSchedule(BaseModel):
    frequency: str
    time: Optional[str] = None
    timezone: str = "UTC"

    @field_validator("time")
    @classmethod
    def validate_time(cls, v):
        if v is not None and not _TIME_PATTERN.match(v):
            raise ValueError("Schedule time must be in HH:MM format")
        return v


class ReportExecutionRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    report_id: Optional[int] = None
    tenant_id: str
    actor_id: Optional[str] = None
    fingerprint: str
    status: str
    execution_time_ms: Optional[float] = None
    row_count: Optional[int] = None
    error_message: Optional[str] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    created_at: Optional[datetime] = None


class ExecutionStats(BaseModel):
    total_executions: int
    successful_executions: int
    failed_executions: int
    success_rate: float
    average_execution_time_ms: float
    last_execution_date: Optional[datetime] = None
    last_successful_execution: Optional[datetime] = None


class ScheduledRunRequest(BaseModel):
    report_id: Optional[int] = None
    dry_run: bool = False


class ScheduledRunSummary(BaseModel):
    successes: int
    failures: int
    skipped: int
    dry_run: bool
    report_ids: List[int]
    errors: Dict[int, str]
