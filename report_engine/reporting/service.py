# report_engine/reporting/service.py
"""Report service: compile, execute, export and audit report queries for one tenant."""

import logging
import time
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from report_engine.core.exceptions import ReportEngineError, ReportNotFoundError
from report_engine.query.compiler import QueryCompiler
from report_engine.query.expression import ExpressionValidationResult, ExpressionValidator
from report_engine.query.schemas import CompiledQuery, QuerySpecification, TenantContext
from report_engine.reporting.audit import AuditRecorder
from report_engine.reporting.execution_dao import ReportExecutionDAO
from report_engine.reporting.executor import ExecutionResult, ReportExecutor
from report_engine.reporting.exporters import DataFrameExporter, ExportedFile
from report_engine.reporting.models import Report, ReportExecution
from report_engine.reporting.report_dao import ReportDAO
from report_engine.schema.registry import SchemaRegistry

logger = logging.getLogger(__name__)


class ReportQueryService:
    """Entry point used by the HTTP boundary and the task queue."""

    def __init__(
        self,
        registry: SchemaRegistry,
        executor: ReportExecutor,
        report_dao: ReportDAO,
        execution_dao: ReportExecutionDAO,
        audit: AuditRecorder,
        exporter: Optional[DataFrameExporter] = None,
        compiler: Optional[QueryCompiler] = None,
    ):
        self.registry = registry
        self.validator = ExpressionValidator(registry)
        self.compiler = compiler or QueryCompiler(registry, self.validator)
        self.executor = executor
        self.report_dao = report_dao
        self.execution_dao = execution_dao
        self.audit = audit
        self.exporter = exporter or DataFrameExporter()

    # ===== SCHEMA DISCOVERY =====

    def list_tables(self, extension: Optional[str] = None, category: Optional[str] = None) -> List[Dict[str, Any]]:
        return self.registry.get_available_tables(extension, category)

    def get_table_schema(self, table_name: str) -> Dict[str, Any]:
        return self.registry.get_table_schema(table_name)

    def get_table_columns(self, table_name: str) -> List[Dict[str, Any]]:
        return self.registry.get_table_columns(table_name)

    def get_table_relationships(self, table_name: str) -> List[Dict[str, Any]]:
        return self.registry.get_table_relationships(table_name)

    # ===== EXPRESSIONS =====

    def validate_expression(self, expression: str, table_name: str) -> ExpressionValidationResult:
        return self.validator.validate(expression, table_name)

    def get_expression_functions(self) -> Dict[str, List[str]]:
        return {
            "functions": self.validator.get_allowed_functions(),
            "operators": self.validator.get_allowed_operators(),
        }

    # ===== QUERIES =====

    def compile(self, spec: QuerySpecification, tenant: TenantContext) -> CompiledQuery:
        return self.compiler.compile(spec, tenant)

    def execute(
        self, spec: QuerySpecification, tenant: TenantContext, report_id: Optional[int] = None
    ) -> Tuple[CompiledQuery, ExecutionResult]:
        """Compile and execute, auditing the outcome either way."""
        start_time = time.perf_counter()
        try:
            compiled = self.compiler.compile(spec, tenant)
            result = self.executor.execute(compiled, tenant, report_id=report_id)
        except ReportEngineError as exc:
            self.audit.record_audit(
                tenant.actor_id,
                tenant.tenant_id,
                "execute",
                "failure",
                spec=spec.snapshot(),
                error=str(exc),
                timing=(time.perf_counter() - start_time) * 1000,
                report_id=report_id,
            )
            raise

        self.audit.record_audit(
            tenant.actor_id,
            tenant.tenant_id,
            "execute",
            "success",
            spec=compiled.specification,
            timing=result.execution_time_ms,
            report_id=report_id,
            row_count=result.row_count,
            details={"cache_status": result.cache_status, "fingerprint": compiled.fingerprint},
        )
        return compiled, result

    def export(self, spec: QuerySpecification, tenant: TenantContext, fmt: str) -> ExportedFile:
        compiled, result = self.execute(spec, tenant)
        try:
            exported = self.exporter.export(
                result.rows,
                compiled.aliases,
                fmt,
                labels={column.alias: column.label for column in compiled.columns},
                sheet_name=compiled.table_name,
            )
        except ReportEngineError as exc:
            self.audit.record_audit(
                tenant.actor_id, tenant.tenant_id, "export", "failure", spec=compiled.specification, error=str(exc)
            )
            raise
        self.audit.record_audit(
            tenant.actor_id,
            tenant.tenant_id,
            "export",
            "success",
            spec=compiled.specification,
            row_count=result.row_count,
            details={"format": exported.extension, "bytes": len(exported.content)},
        )
        return exported

    def invalidate_cache(self, table_name: str, fingerprint_prefix: Optional[str] = None) -> int:
        self.registry.get_table(table_name)
        return self.executor.invalidate(table_name, fingerprint_prefix)

    # ===== SAVED REPORTS =====

    def create_report(
        self, title: str, spec: QuerySpecification, tenant: TenantContext, description: Optional[str] = None
    ) -> Report:
        # Saved specifications must compile at save time
        self.compiler.compile(spec, tenant)
        report = self.report_dao.create(
            title=title,
            tenant_id=tenant.tenant_id,
            query_spec=spec.snapshot(),
            created_by=tenant.actor_id or "system",
            description=description,
        )
        self.audit.record_audit(
            tenant.actor_id, tenant.tenant_id, "create", "success", spec=report.query_spec, report_id=report.id
        )
        logger.info(f"Created report {report.id} '{title}' for tenant '{tenant.tenant_id}'")
        return report

    def get_report(self, report_id: int, tenant: TenantContext) -> Report:
        report = self.report_dao.get_by_id(report_id, tenant_id=tenant.tenant_id)
        if report is None:
            raise ReportNotFoundError(report_id)
        return report

    def list_reports(self, tenant: TenantContext) -> List[Report]:
        return self.report_dao.get_all(tenant_id=tenant.tenant_id)

    def delete_report(self, report_id: int, tenant: TenantContext) -> None:
        report = self.get_report(report_id, tenant)
        self.report_dao.delete(report)
        self.audit.record_audit(tenant.actor_id, tenant.tenant_id, "delete", "success", report_id=report_id)

    def run_report(self, report_id: int, tenant: TenantContext) -> Tuple[CompiledQuery, ExecutionResult]:
        return self.run_saved_report(self.get_report(report_id, tenant), tenant.actor_id)

    def run_saved_report(self, report: Report, actor_id: Optional[str]) -> Tuple[CompiledQuery, ExecutionResult]:
        """Execute a saved report in its owner's tenant and record the last-run fields."""
        tenant = TenantContext(tenant_id=report.tenant_id, actor_id=actor_id)
        spec = QuerySpecification.model_validate(report.query_spec)
        compiled, result = self.execute(spec, tenant, report_id=report.id)
        self.report_dao.update(
            report,
            last_executed_at=datetime.utcnow(),
            last_row_count=result.row_count,
            last_execution_time_ms=result.execution_time_ms,
        )
        return compiled, result

    def get_report_executions(self, report_id: int, tenant: TenantContext, limit: int = 50) -> List[ReportExecution]:
        self.get_report(report_id, tenant)
        return self.execution_dao.get_by_report_id(report_id, limit)

    def get_report_execution_stats(self, report_id: int, tenant: TenantContext) -> Dict[str, Any]:
        self.get_report(report_id, tenant)
        return self.execution_dao.get_execution_stats_by_report(report_id)
