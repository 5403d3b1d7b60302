# report_engine/reporting/models.py

from sqlalchemy import Column, Integer, String, Text, Boolean, DateTime, ForeignKey, JSON, Float
from sqlalchemy.orm import relationship
from datetime import datetime
from report_engine.core.database import Base


class ExecutionStatus:
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"

    TERMINAL = (COMPLETED, FAILED)


class Report(Base):
    """Saved report: a query specification plus optional recurring schedule."""

    __tablename__ = "reports"

    id = Column(Integer, primary_key=True, index=True)
    title = Column(String, nullable=False, index=True)
    description = Column(Text, nullable=True)
    tenant_id = Column(String, nullable=False, index=True)
    created_by = Column(String, nullable=False, default="system")
    query_spec = Column(JSON, nullable=False)

    # Scheduling
    is_scheduled = Column(Boolean, default=False, nullable=False)
    schedule_frequency = Column(String, nullable=True)  # hourly, daily, weekly, monthly
    schedule_time = Column(String, nullable=True)  # HH:MM in schedule_timezone
    schedule_timezone = Column(String, nullable=True, default="UTC")
    next_scheduled_run = Column(DateTime, nullable=True, index=True)  # naive UTC

    last_executed_at = Column(DateTime, nullable=True)
    last_row_count = Column(Integer, nullable=True)
    last_execution_time_ms = Column(Float, nullable=True)

    is_active = Column(Boolean, default=True)
    created_date = Column(DateTime, default=datetime.utcnow)
    updated_date = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    executions = relationship("ReportExecution", back_populates="report")


class ReportExecution(Base):
    """One execution attempt. Status moves pending -> running -> completed|failed."""

    __tablename__ = "report_executions"

    id = Column(Integer, primary_key=True, index=True)
    report_id = Column(Integer, ForeignKey("reports.id"), nullable=True, index=True)
    tenant_id = Column(String, nullable=False, index=True)
    actor_id = Column(String, nullable=True)
    query_spec = Column(JSON, nullable=False)
    fingerprint = Column(String(64), nullable=False, index=True)
    status = Column(String, nullable=False, default=ExecutionStatus.PENDING, index=True)
    execution_time_ms = Column(Float, nullable=True)
    row_count = Column(Integer, nullable=True)
    error_message = Column(String(1000), nullable=True)
    started_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    report = relationship("Report", back_populates="executions")


class ReportCacheEntry(Base):
    """Serialized result of a cacheable query, keyed by table and fingerprint."""

    __tablename__ = "report_cache"

    id = Column(Integer, primary_key=True, index=True)
    cache_key = Column(String, nullable=False, unique=True, index=True)
    table_name = Column(String, nullable=True, index=True)
    fingerprint = Column(String(64), nullable=True)
    payload = Column(Text, nullable=False)
    row_count = Column(Integer, nullable=True)
    execution_time_ms = Column(Float, nullable=True)
    expires_at = Column(DateTime, nullable=False, index=True)
    created_at = Column(DateTime, default=datetime.utcnow)


class ReportAuditLog(Base):
    """Append-only audit trail. Each entry carries the hash of its predecessor."""

    __tablename__ = "report_audit_logs"

    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(String, nullable=True, index=True)
    actor_id = Column(String, nullable=True, index=True)
    report_id = Column(Integer, nullable=True, index=True)
    action = Column(String(20), nullable=False, index=True)  # execute, export, create, update, delete, schedule
    outcome = Column(String(20), nullable=False)  # success, failure
    query_spec = Column(JSON, nullable=True)
    error_message = Column(Text, nullable=True)
    execution_time_ms = Column(Float, nullable=True)
    row_count = Column(Integer, nullable=True)
    details = Column(JSON, nullable=True)
    previous_hash = Column(String(64), nullable=True)
    entry_hash = Column(String(64), nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
