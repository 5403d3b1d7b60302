# report_engine/reporting/scheduler.py
"""Recurring report runs: next-run calculation and the due-report loop."""

import logging
from dataclasses import dataclass, field
from datetime import datetime, time, timedelta, timezone as dt_timezone
from typing import Dict, List, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from report_engine.core.exceptions import ReportEngineError, ReportNotFoundError, SchemaDefinitionError
from report_engine.reporting.models import Report
from report_engine.reporting.service import ReportQueryService

logger = logging.getLogger(__name__)

FREQUENCIES = ("hourly", "daily", "weekly", "monthly")
SCHEDULER_ACTOR = "scheduler"


def _parse_time(schedule_time: Optional[str]) -> time:
    if not schedule_time:
        return time(0, 0)
    try:
        hours, minutes = schedule_time.split(":")[:2]
        return time(int(hours), int(minutes))
    except ValueError:
        raise ValueError(f"Schedule time must be HH:MM, got '{schedule_time}'")


def _zone(name: Optional[str]) -> ZoneInfo:
    try:
        return ZoneInfo(name or "UTC")
    except (ZoneInfoNotFoundError, ValueError):
        raise ValueError(f"Unknown timezone '{name}'")


def calculate_next_run(
    frequency: Optional[str],
    schedule_time: Optional[str] = None,
    timezone: Optional[str] = "UTC",
    now: Optional[datetime] = None,
) -> datetime:
    """
    Next run for a schedule, as naive UTC.

    ``now`` is naive UTC. The wall-clock time is interpreted in ``timezone``:
    daily runs today at that time (tomorrow if already passed), weekly runs on
    the next Monday, monthly on the 1st of next month. Hourly and unknown
    frequencies run one hour from now.
    """
    now = now or datetime.utcnow()
    zone = _zone(timezone)
    at = _parse_time(schedule_time)
    local_now = now.replace(tzinfo=dt_timezone.utc).astimezone(zone)

    if frequency == "daily":
        local_next = local_now.replace(hour=at.hour, minute=at.minute, second=0, microsecond=0)
        if local_next <= local_now:
            local_next = local_next + timedelta(days=1)
    elif frequency == "weekly":
        days_ahead = 7 - local_now.weekday()
        local_next = (local_now + timedelta(days=days_ahead)).replace(
            hour=at.hour, minute=at.minute, second=0, microsecond=0
        )
    elif frequency == "monthly":
        year, month = (local_now.year + 1, 1) if local_now.month == 12 else (local_now.year, local_now.month + 1)
        local_next = datetime(year, month, 1, at.hour, at.minute, tzinfo=zone)
    else:
        return now + timedelta(hours=1)

    # Re-attach the zone so DST offsets are those of the target date
    local_next = datetime.combine(local_next.date(), local_next.time(), tzinfo=zone)
    return local_next.astimezone(dt_timezone.utc).replace(tzinfo=None)


@dataclass
class ScheduleRunSummary:
    successes: int = 0
    failures: int = 0
    skipped: int = 0
    report_ids: List[int] = field(default_factory=list)
    errors: Dict[int, str] = field(default_factory=dict)
    dry_run: bool = False


class ReportScheduler:
    """Runs due saved reports one at a time; one report's failure never aborts the batch."""

    def __init__(self, service: ReportQueryService):
        self.service = service
        self.report_dao = service.report_dao
        self.execution_dao = service.execution_dao
        self.audit = service.audit

    def schedule(
        self,
        report: Report,
        frequency: str,
        schedule_time: Optional[str] = None,
        timezone: str = "UTC",
        actor_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Report:
        if frequency not in FREQUENCIES:
            raise SchemaDefinitionError(f"Unknown schedule frequency '{frequency}'. Allowed: {', '.join(FREQUENCIES)}")
        try:
            next_run = calculate_next_run(frequency, schedule_time, timezone, now)
        except ValueError as exc:
            raise SchemaDefinitionError(str(exc))

        report = self.report_dao.update(
            report,
            is_scheduled=True,
            schedule_frequency=frequency,
            schedule_time=schedule_time,
            schedule_timezone=timezone,
            next_scheduled_run=next_run,
        )
        self.audit.record_audit(
            actor_id,
            report.tenant_id,
            "schedule",
            "success",
            report_id=report.id,
            details={"frequency": frequency, "time": schedule_time, "timezone": timezone, "next_run": next_run.isoformat()},
        )
        logger.info(f"Scheduled report {report.id} ({frequency}); next run at {next_run.isoformat()} UTC")
        return report

    def unschedule(self, report: Report, actor_id: Optional[str] = None) -> Report:
        report = self.report_dao.update(report, is_scheduled=False, next_scheduled_run=None)
        self.audit.record_audit(actor_id, report.tenant_id, "schedule", "success", report_id=report.id, details={"enabled": False})
        return report

    def find_due_reports(self, now: Optional[datetime] = None) -> List[Report]:
        return self.report_dao.get_due_reports(now or datetime.utcnow())

    def run_due(self, now: Optional[datetime] = None, report_id: Optional[int] = None, dry_run: bool = False) -> ScheduleRunSummary:
        now = now or datetime.utcnow()
        if report_id is not None:
            report = self.report_dao.get_by_id(report_id)
            if report is None:
                raise ReportNotFoundError(report_id)
            reports = [report]
        else:
            reports = self.find_due_reports(now)

        summary = ScheduleRunSummary(dry_run=dry_run)
        if not reports:
            logger.info("No scheduled reports are due for execution")
            return summary

        logger.info(f"Found {len(reports)} report(s) due for execution")
        for report in reports:
            summary.report_ids.append(report.id)
            if dry_run:
                logger.info(f"Would execute report {report.id} '{report.title}' ({report.schedule_frequency})")
                continue
            if self.execution_dao.is_report_running(report.id):
                logger.warning(f"Skipping report {report.id}: an execution is already running")
                summary.skipped += 1
                continue
            error = self._run_one(report, now)
            if error is None:
                summary.successes += 1
            else:
                summary.failures += 1
                summary.errors[report.id] = error

        logger.info(f"Scheduled run complete: {summary.successes} successful, {summary.failures} failed, {summary.skipped} skipped")
        return summary

    def _run_one(self, report: Report, now: datetime) -> Optional[str]:
        """Run one report; returns the error message on failure."""
        report_id, title, tenant_id = report.id, report.title, report.tenant_id
        try:
            _, result = self.service.run_saved_report(report, SCHEDULER_ACTOR)
            if report.is_scheduled:
                self.report_dao.update(
                    report,
                    next_scheduled_run=calculate_next_run(
                        report.schedule_frequency, report.schedule_time, report.schedule_timezone, now
                    ),
                )
        except Exception as exc:
            self.report_dao.db.rollback()
            logger.error(f"Scheduled report {report_id} '{title}' failed: {exc}")
            if not isinstance(exc, ReportEngineError):
                # Engine errors were already audited by the service
                self.audit.record_audit(
                    SCHEDULER_ACTOR, tenant_id, "execute", "failure", error=str(exc), report_id=report_id
                )
            return str(exc)
        logger.info(
            f"Scheduled report {report_id} '{title}' executed in {result.execution_time_ms:.2f}ms ({result.row_count} rows)"
        )
        return None
