"""
Report execution tasks
"""

import logging
from datetime import datetime

from celery import shared_task

from report_engine.core.database import DWSessionLocal, SessionLocal
from report_engine.core.dependencies import build_report_service
from report_engine.logging.config import configure_logging
from report_engine.reporting.scheduler import SCHEDULER_ACTOR, ReportScheduler

# Report tasks write to their own log file
configure_logging(log_file='report_tasks.log')
logger = logging.getLogger('report_engine.tasks.reports')


def _summary_dict(summary):
    return {
        'successes': summary.successes,
        'failures': summary.failures,
        'skipped': summary.skipped,
        'dry_run': summary.dry_run,
        'report_ids': summary.report_ids,
        'errors': {str(report_id): error for report_id, error in summary.errors.items()},
    }


@shared_task(name='task_queue.tasks.reports.run_scheduled_reports')
def run_scheduled_reports(dry_run=False):
    """
    Execute every scheduled report that is due

    Returns:
        dict: success/failure/skipped counts for the batch
    """
    config_db = SessionLocal()
    dw_db = DWSessionLocal()
    try:
        scheduler = ReportScheduler(build_report_service(config_db, dw_db))
        summary = scheduler.run_due(now=datetime.utcnow(), dry_run=dry_run)
        logger.info(
            f"Scheduled report batch finished: {summary.successes} successful, "
            f"{summary.failures} failed, {summary.skipped} skipped"
        )
        return _summary_dict(summary)
    finally:
        dw_db.close()
        config_db.close()


@shared_task(bind=True, name='task_queue.tasks.reports.execute_saved_report')
def execute_saved_report(self, report_id, actor_id=None):
    """
    Execute one saved report in its owner's tenant

    Args:
        report_id: The ID of the saved report
        actor_id: Who triggered the run (defaults to the scheduler identity)

    Returns:
        dict: row count, timing and cache status of the run
    """
    logger.info(f"Executing saved report {report_id} (task {self.request.id})")
    config_db = SessionLocal()
    dw_db = DWSessionLocal()
    try:
        service = build_report_service(config_db, dw_db)
        report = service.report_dao.get_by_id(report_id)
        if report is None:
            logger.error(f"Saved report {report_id} not found")
            return {'report_id': report_id, 'status': 'not_found'}

        compiled, result = service.run_saved_report(report, actor_id or SCHEDULER_ACTOR)
        logger.info(f"Saved report {report_id} returned {result.row_count} rows in {result.execution_time_ms:.2f}ms")
        return {
            'report_id': report_id,
            'status': 'completed',
            'row_count': result.row_count,
            'execution_time_ms': result.execution_time_ms,
            'cache_status': result.cache_status,
            'execution_id': result.execution_id,
            'fingerprint': compiled.fingerprint,
        }
    except Exception as e:
        logger.exception(f"Unexpected error during report {report_id} execution: {str(e)}")
        raise
    finally:
        dw_db.close()
        config_db.close()
