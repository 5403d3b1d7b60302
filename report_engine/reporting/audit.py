# report_engine/reporting/audit.py
"""Append-only, hash-chained audit trail for report operations."""

import hashlib
import json
import logging
import threading
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy import desc
from sqlalchemy.orm import Session

from report_engine.core.database import SessionLocal
from report_engine.reporting.models import ReportAuditLog

logger = logging.getLogger(__name__)

AUDIT_ACTIONS = ("execute", "export", "create", "update", "delete", "schedule")
AUDIT_OUTCOMES = ("success", "failure")


def _entry_hash(previous_hash: Optional[str], entry: Dict[str, Any]) -> str:
    canonical = json.dumps(entry, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(((previous_hash or "") + canonical).encode("utf-8")).hexdigest()


def _canonical(log: ReportAuditLog) -> Dict[str, Any]:
    return {
        "tenant_id": log.tenant_id,
        "actor_id": log.actor_id,
        "report_id": log.report_id,
        "action": log.action,
        "outcome": log.outcome,
        "query_spec": log.query_spec,
        "error_message": log.error_message,
        "execution_time_ms": log.execution_time_ms,
        "row_count": log.row_count,
        "details": log.details,
        "created_at": log.created_at.isoformat() if log.created_at else None,
    }


class AuditRecorder:
    """
    Writes ReportAuditLog entries on a dedicated session.

    Recording never raises: an audit store failure is logged and the caller
    carries on, so report delivery never depends on audit availability.
    """

    def __init__(self, session_factory: Callable[[], Session] = SessionLocal):
        self.session_factory = session_factory
        self._lock = threading.Lock()

    def record_audit(
        self,
        actor: Optional[str],
        tenant: Optional[str],
        action: str,
        outcome: str,
        spec: Optional[Dict[str, Any]] = None,
        error: Optional[str] = None,
        timing: Optional[float] = None,
        report_id: Optional[int] = None,
        row_count: Optional[int] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> Optional[ReportAuditLog]:
        try:
            if action not in AUDIT_ACTIONS:
                raise ValueError(f"Unknown audit action '{action}'")
            if outcome not in AUDIT_OUTCOMES:
                raise ValueError(f"Unknown audit outcome '{outcome}'")

            with self._lock:
                db = self.session_factory()
                try:
                    previous = db.query(ReportAuditLog).order_by(desc(ReportAuditLog.id)).first()
                    log = ReportAuditLog(
                        tenant_id=tenant,
                        actor_id=actor,
                        report_id=report_id,
                        action=action,
                        outcome=outcome,
                        query_spec=spec,
                        error_message=str(error) if error is not None else None,
                        execution_time_ms=timing,
                        row_count=row_count,
                        details=details,
                        created_at=datetime.utcnow(),
                        previous_hash=previous.entry_hash if previous is not None else None,
                    )
                    log.entry_hash = _entry_hash(log.previous_hash, _canonical(log))
                    db.add(log)
                    db.commit()
                    db.refresh(log)
                    db.expunge(log)
                    return log
                except Exception:
                    db.rollback()
                    raise
                finally:
                    db.close()
        except Exception as exc:
            logger.warning(f"Failed to record audit entry ({action}/{outcome}) for tenant '{tenant}': {exc}")
            return None

    def get_entries(self, tenant: Optional[str] = None, limit: int = 100) -> List[ReportAuditLog]:
        db = self.session_factory()
        try:
            query = db.query(ReportAuditLog)
            if tenant is not None:
                query = query.filter(ReportAuditLog.tenant_id == tenant)
            entries = query.order_by(desc(ReportAuditLog.id)).limit(limit).all()
            for entry in entries:
                db.expunge(entry)
            return entries
        finally:
            db.close()

    def verify_chain(self) -> Dict[str, Any]:
        """Recompute every hash in insertion order. Reports the first entry that does not match."""
        db = self.session_factory()
        try:
            previous_hash = None
            checked = 0
            for log in db.query(ReportAuditLog).order_by(ReportAuditLog.id).yield_per(500):
                expected = _entry_hash(previous_hash, _canonical(log))
                if log.previous_hash != previous_hash or log.entry_hash != expected:
                    logger.warning(f"Audit chain broken at entry {log.id}")
                    return {"valid": False, "checked": checked, "broken_at": log.id}
                previous_hash = log.entry_hash
                checked += 1
            return {"valid": True, "checked": checked, "broken_at": None}
        finally:
            db.close()


_recorder: Optional[AuditRecorder] = None
_recorder_lock = threading.Lock()


def get_audit_recorder() -> AuditRecorder:
    global _recorder
    if _recorder is None:
        with _recorder_lock:
            if _recorder is None:
                _recorder = AuditRecorder()
    return _recorder
