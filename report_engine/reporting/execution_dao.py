# report_engine/reporting/execution_dao.py
"""Data Access Object for report execution records."""

from sqlalchemy.orm import Session
from sqlalchemy import desc
from typing import List, Optional, Dict, Any
from datetime import datetime
from report_engine.core.exceptions import ConcurrentExecutionError
from report_engine.reporting.models import ExecutionStatus, ReportExecution

MAX_ERROR_LENGTH = 1000


class ReportExecutionDAO:
    """DAO for report execution operations."""

    def __init__(self, db_session: Session):
        self.db = db_session

    def create(
        self,
        tenant_id: str,
        query_spec: Dict[str, Any],
        fingerprint: str,
        actor_id: Optional[str] = None,
        report_id: Optional[int] = None,
    ) -> ReportExecution:
        """Create a new execution in the pending state."""
        execution = ReportExecution(
            report_id=report_id,
            tenant_id=tenant_id,
            actor_id=actor_id,
            query_spec=query_spec,
            fingerprint=fingerprint,
            status=ExecutionStatus.PENDING,
        )
        self.db.add(execution)
        self.db.commit()
        self.db.refresh(execution)
        return execution

    def is_report_running(self, report_id: int, exclude_id: Optional[int] = None) -> bool:
        query = self.db.query(ReportExecution).filter(
            ReportExecution.report_id == report_id,
            ReportExecution.status == ExecutionStatus.RUNNING,
        )
        if exclude_id is not None:
            query = query.filter(ReportExecution.id != exclude_id)
        return query.first() is not None

    def mark_running(self, execution: ReportExecution) -> ReportExecution:
        """
        Transition pending -> running.

        Saved reports may only have one running execution; the check happens
        immediately before the transition.
        """
        if execution.report_id is not None and self.is_report_running(execution.report_id, exclude_id=execution.id):
            self.mark_failed(execution, f"Report {execution.report_id} already has a running execution")
            raise ConcurrentExecutionError(
                f"Report {execution.report_id} already has a running execution", execution_id=execution.id
            )
        execution.status = ExecutionStatus.RUNNING
        execution.started_at = datetime.utcnow()
        self.db.commit()
        return execution

    def mark_completed(self, execution: ReportExecution, row_count: int, execution_time_ms: float) -> ReportExecution:
        execution.status = ExecutionStatus.COMPLETED
        execution.row_count = row_count
        execution.execution_time_ms = execution_time_ms
        execution.completed_at = datetime.utcnow()
        self.db.commit()
        return execution

    def mark_failed(
        self, execution: ReportExecution, error_message: str, execution_time_ms: Optional[float] = None
    ) -> ReportExecution:
        execution.status = ExecutionStatus.FAILED
        execution.error_message = (error_message or "")[:MAX_ERROR_LENGTH]
        execution.execution_time_ms = execution_time_ms
        execution.completed_at = datetime.utcnow()
        self.db.commit()
        return execution

    def get_by_id(self, execution_id: int) -> Optional[ReportExecution]:
        """Get execution by ID."""
        return self.db.query(ReportExecution).filter(ReportExecution.id == execution_id).first()

    def get_by_report_id(self, report_id: int, limit: int = 50) -> List[ReportExecution]:
        """Get executions for a specific report, most recent first."""
        return (
            self.db.query(ReportExecution)
            .filter(ReportExecution.report_id == report_id)
            .order_by(desc(ReportExecution.created_at), desc(ReportExecution.id))
            .limit(limit)
            .all()
        )

    def get_recent(self, tenant_id: Optional[str] = None, limit: int = 100) -> List[ReportExecution]:
        """Get recent executions across all reports."""
        query = self.db.query(ReportExecution)
        if tenant_id is not None:
            query = query.filter(ReportExecution.tenant_id == tenant_id)
        return query.order_by(desc(ReportExecution.created_at), desc(ReportExecution.id)).limit(limit).all()

    def get_failed(self, limit: int = 50) -> List[ReportExecution]:
        """Get recent failed executions."""
        return (
            self.db.query(ReportExecution)
            .filter(ReportExecution.status == ExecutionStatus.FAILED)
            .order_by(desc(ReportExecution.created_at), desc(ReportExecution.id))
            .limit(limit)
            .all()
        )

    def get_execution_stats_by_report(self, report_id: int) -> Dict[str, Any]:
        """Get execution statistics for a specific report."""
        executions = self.db.query(ReportExecution).filter(ReportExecution.report_id == report_id).all()

        if not executions:
            return {
                "total_executions": 0,
                "successful_executions": 0,
                "failed_executions": 0,
                "success_rate": 0.0,
                "average_execution_time_ms": 0.0,
                "last_execution_date": None,
                "last_successful_execution": None,
            }

        successful = [e for e in executions if e.status == ExecutionStatus.COMPLETED]
        failed = [e for e in executions if e.status == ExecutionStatus.FAILED]

        # Average over successful runs only
        execution_times = [e.execution_time_ms for e in successful if e.execution_time_ms is not None]
        avg_execution_time = sum(execution_times) / len(execution_times) if execution_times else 0.0

        sorted_all = sorted(executions, key=lambda e: e.created_at, reverse=True)
        successful_sorted = sorted(successful, key=lambda e: e.completed_at or e.created_at, reverse=True)

        return {
            "total_executions": len(executions),
            "successful_executions": len(successful),
            "failed_executions": len(failed),
            "success_rate": len(successful) / len(executions) * 100,
            "average_execution_time_ms": avg_execution_time,
            "last_execution_date": sorted_all[0].created_at,
            "last_successful_execution": successful_sorted[0].completed_at if successful_sorted else None,
        }
