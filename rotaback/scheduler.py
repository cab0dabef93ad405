"""
Cron scheduling of backup jobs with APScheduler.

One BackgroundScheduler per process that serves the API. Each enabled job
with a cron expression gets a scheduler entry named backup_<id>; manual
triggers are one-shot entries named manual_<id>_<timestamp>_<random>.

Failed sources are not retried here: the job simply runs again at its next
fire time.
"""

import logging
import uuid
from datetime import datetime, timedelta, timezone
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.date import DateTrigger
from apscheduler.jobstores.sqlalchemy import SQLAlchemyJobStore
from apscheduler.jobstores.base import JobLookupError
from apscheduler.executors.pool import ThreadPoolExecutor

from rotaback import db
from rotaback.models import BackupJob
from rotaback.backup.executor import execute_backup_job

logger = logging.getLogger(__name__)

SCHEDULED_PREFIX = 'backup_'
MANUAL_PREFIX = 'manual_'

JOB_DEFAULTS = {
    'coalesce': True,  # Run once after downtime, not once per missed slot
    'max_instances': 1,  # A job never overlaps itself
    'misfire_grace_time': 300
}

# Set by init_scheduler; background threads push their own app context
scheduler = None
flask_app = None


def init_scheduler(app):
    """
    Create the process-wide scheduler (idempotent).

    Jobs are persisted in the application database so that one-shot manual
    triggers survive until they fire.

    Args:
        app: Flask app whose configuration and context the jobs use
    """
    global scheduler, flask_app

    if scheduler is not None:
        return scheduler

    flask_app = app

    scheduler = BackgroundScheduler(
        jobstores={'default': SQLAlchemyJobStore(url=app.config['SQLALCHEMY_DATABASE_URI'])},
        executors={'default': ThreadPoolExecutor(max_workers=app.config.get('SCHEDULER_THREADS', 3))},
        job_defaults=dict(JOB_DEFAULTS),
        timezone=app.config.get('SCHEDULER_TIMEZONE', 'UTC')
    )

    return scheduler


def _describe(job) -> dict:
    return {
        'id': job.id,
        'name': job.name,
        'next_run': job.next_run_time.isoformat() if job.next_run_time else None,
        'trigger': str(job.trigger)
    }


def start_scheduler():
    """
    Start the scheduler created by init_scheduler.

    Raises:
        RuntimeError: If init_scheduler has not been called
    """
    if scheduler is None:
        raise RuntimeError("Scheduler not initialized. Call init_scheduler() first.")

    if scheduler.running:
        logger.info(f"Scheduler already running (state={scheduler.state})")
        return

    scheduler.start()
    logger.info(f"APScheduler started (state={scheduler.state})")

    for entry in map(_describe, scheduler.get_jobs()):
        logger.info(f"  - {entry['id']}: {entry['name']} (next run: {entry['next_run'] or 'N/A'})")


def stop_scheduler():
    if scheduler is not None and scheduler.running:
        scheduler.shutdown()
        logger.info("APScheduler stopped")


def sync_backup_jobs():
    """
    Make the scheduler's cron entries match the backup_jobs table.

    Called at startup and after every job change. Stale manual triggers are
    dropped; entries for disabled, unscheduled or deleted jobs are removed.
    """
    if scheduler is None:
        logger.debug("Scheduler not running in this process, skipping sync")
        return

    stale = set()
    for entry in scheduler.get_jobs():
        if entry.id.startswith(MANUAL_PREFIX):
            scheduler.remove_job(entry.id)
            logger.info(f"Cleaned up old manual job: {entry.id}")
        elif entry.id.startswith(SCHEDULED_PREFIX):
            stale.add(entry.id)

    for backup_job in BackupJob.query.all():
        if not (backup_job.enabled and backup_job.schedule_cron):
            continue
        _schedule_job(backup_job)
        stale.discard(f"{SCHEDULED_PREFIX}{backup_job.id}")

    for entry_id in stale:
        try:
            scheduler.remove_job(entry_id)
            logger.info(f"Removed scheduled job: {entry_id}")
        except JobLookupError:
            logger.debug(f"Scheduled job already gone: {entry_id}")


def _schedule_job(backup_job: BackupJob):
    """
    Add or replace the cron entry of one job.

    An invalid cron expression is logged and the job stays unscheduled.
    """
    try:
        trigger = CronTrigger.from_crontab(backup_job.schedule_cron, timezone=scheduler.timezone)
    except ValueError as e:
        logger.error(f"Invalid cron expression for {backup_job.name} ({backup_job.schedule_cron}): {e}")
        return

    scheduler.add_job(
        func=_execute_backup_wrapper,
        args=[backup_job.id],
        trigger=trigger,
        id=f"{SCHEDULED_PREFIX}{backup_job.id}",
        name=f"Backup: {backup_job.name}",
        replace_existing=True
    )
    logger.info(f"Scheduled backup job: {backup_job.name} ({backup_job.schedule_cron})")


def _execute_backup_wrapper(job_id: int, allow_disabled: bool = False, dry_run: bool = False):
    """
    Scheduler entry point: run one job inside the stored app's context.

    Errors are logged here; an exception escaping into APScheduler would
    only be reported by its own logger.
    """
    with flask_app.app_context():
        try:
            logger.info(f"Scheduler executing backup job ID: {job_id} (dry_run={dry_run})")
            run = execute_backup_job(job_id, dry_run=dry_run, allow_disabled=allow_disabled)
            logger.info(f"Backup job {job_id} completed with status: {run.status}")
        except Exception:
            logger.exception(f"Scheduler backup job {job_id} failed")
        finally:
            db.session.remove()


def trigger_backup_now(job_id: int, dry_run: bool = False):
    """
    Queue a one-shot run of a job, disabled or not.

    Args:
        job_id: BackupJob ID
        dry_run: Report what would happen without writing anything

    Raises:
        RuntimeError: If this process has no scheduler
        ValueError: If the job does not exist
    """
    if scheduler is None:
        raise RuntimeError("Scheduler not initialized")

    backup_job = db.session.get(BackupJob, job_id)
    if backup_job is None:
        raise ValueError(f"Backup job not found: {job_id}")

    # Fire a second later so the queuing request has committed. The random
    # suffix keeps ids unique for repeated triggers within one second.
    now = datetime.now(timezone.utc)
    scheduler.add_job(
        func=_execute_backup_wrapper,
        args=[job_id, True, dry_run],
        trigger=DateTrigger(run_date=now + timedelta(seconds=1)),
        id=f"{MANUAL_PREFIX}{job_id}_{int(now.timestamp())}_{uuid.uuid4().hex[:8]}",
        name=f"Manual{' dry run' if dry_run else ''}: {backup_job.name}",
        replace_existing=False
    )

    logger.info(f"Manually triggered backup job: {backup_job.name} (dry_run={dry_run})")


def get_scheduled_jobs() -> list:
    """Scheduler entries as dicts (id, name, next_run, trigger)."""
    if scheduler is None:
        return []

    return [_describe(job) for job in scheduler.get_jobs()]


def is_scheduler_running() -> bool:
    return scheduler is not None and scheduler.running
