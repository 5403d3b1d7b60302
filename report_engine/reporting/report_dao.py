# report_engine/reporting/report_dao.py
"""Data Access Object for saved reports."""

from sqlalchemy.orm import Session
from sqlalchemy import select
from typing import Any, Dict, List, Optional
from datetime import datetime
from report_engine.reporting.models import Report


class ReportDAO:
    """DAO for saved report operations."""

    def __init__(self, db_session: Session):
        self.db = db_session

    def get_all(self, tenant_id: Optional[str] = None) -> List[Report]:
        """Get all active reports, newest first."""
        stmt = select(Report).where(Report.is_active == True)  # noqa: E712
        if tenant_id is not None:
            stmt = stmt.where(Report.tenant_id == tenant_id)
        stmt = stmt.order_by(Report.created_date.desc(), Report.id.desc())
        return list(self.db.execute(stmt).scalars().all())

    def get_by_id(self, report_id: int, tenant_id: Optional[str] = None) -> Optional[Report]:
        stmt = select(Report).where(Report.id == report_id, Report.is_active == True)  # noqa: E712
        if tenant_id is not None:
            stmt = stmt.where(Report.tenant_id == tenant_id)
        return self.db.execute(stmt).scalars().first()

    def create(
        self,
        title: str,
        tenant_id: str,
        query_spec: Dict[str, Any],
        created_by: str = "system",
        description: Optional[str] = None,
    ) -> Report:
        report = Report(
            title=title,
            description=description,
            tenant_id=tenant_id,
            created_by=created_by,
            query_spec=query_spec,
        )
        self.db.add(report)
        self.db.commit()
        self.db.refresh(report)
        return report

    def update(self, report: Report, **fields) -> Report:
        for name, value in fields.items():
            setattr(report, name, value)
        self.db.commit()
        self.db.refresh(report)
        return report

    def delete(self, report: Report) -> None:
        """Soft delete: saved reports keep their execution history."""
        report.is_active = False
        report.is_scheduled = False
        report.next_scheduled_run = None
        self.db.commit()

    def get_due_reports(self, now: datetime) -> List[Report]:
        """Scheduled, active reports whose next run is at or before ``now`` (naive UTC)."""
        stmt = (
            select(Report)
            .where(
                Report.is_active == True,  # noqa: E712
                Report.is_scheduled == True,  # noqa: E712
                Report.next_scheduled_run.is_not(None),
                Report.next_scheduled_run <= now,
            )
            .order_by(Report.next_scheduled_run, Report.id)
        )
        return list(self.db.execute(stmt).scalars().all())
