"""
Backup executor - runs a stored BackupJob and records its history.

Workflow:
1. Create BackupRun record (status: running)
2. Build the orchestrator from the job and app configuration
3. Run all sources (cancellation checked between sources)
4. Store one SourceOutcome per source and the run's event log
5. Update BackupRun (status: success/warning/failed/cancelled)
"""

import json
import logging
import threading
import time
from datetime import datetime

from flask import current_app

from rotaback import db
from rotaback.models import BackupJob, BackupRun, SourceOutcome
from .compression import TarArchiveCreator
from .orchestrator import BackupOrchestrator, BackupRequest
from .retention import RetentionPolicy

logger = logging.getLogger(__name__)


class CancellationFlag:
    """
    Polls a run's cancellation_requested column.

    Callable from any thread: each poll uses its own app context, and polls
    are rate-limited because archive creation checks once per member.
    """

    def __init__(self, app, run_id: int, interval: float = 1.0):
        self.app = app
        self.run_id = run_id
        self.interval = interval
        self._cancelled = False
        self._last_poll = None
        self._lock = threading.Lock()

    def __call__(self) -> bool:
        with self._lock:
            if self._cancelled:
                return True

            now = time.monotonic()
            if self._last_poll is not None and now - self._last_poll < self.interval:
                return False
            self._last_poll = now

            with self.app.app_context():
                requested = db.session.execute(
                    db.select(BackupRun.cancellation_requested).where(BackupRun.id == self.run_id)
                ).scalar()

            self._cancelled = bool(requested)
            return self._cancelled


class BackupExecutor:
    """
    Executes one BackupJob through the backup orchestrator.
    """

    def __init__(self, job: BackupJob, dry_run: bool = False):
        """
        Initialize backup executor.

        Args:
            job: BackupJob instance to execute
            dry_run: Report what would happen without writing or deleting anything
        """
        self.job = job
        self.dry_run = dry_run
        self.run_record = None
        self.result = None

    def execute(self) -> BackupRun:
        """
        Execute the backup job.

        Returns:
            BackupRun record with execution results
        """
        self.run_record = BackupRun(
            job_id=self.job.id,
            status='running',
            dry_run=self.dry_run,
            started_at=datetime.utcnow()
        )
        db.session.add(self.run_record)
        db.session.commit()

        logger.info(f"Starting backup job: {self.job.name} (dry_run={self.dry_run})")

        orchestrator = None

        try:
            orchestrator = self._build_orchestrator()
            requests = [
                BackupRequest(source_directory=path, dry_run=self.dry_run)
                for path in self.job.get_source_paths()
            ]
            self.result = orchestrator.run(requests)

            self._store_outcomes()
            self.run_record.status = self.result.status
            if self.result.failed:
                self.run_record.error_message = '\n'.join(o.summary for o in self.result.failed)

        except Exception as e:
            # Engine outcomes never raise; this covers configuration and database errors
            logger.exception(f"Backup job {self.job.name} failed")
            db.session.rollback()
            self.run_record.status = 'failed'
            self.run_record.error_message = str(e)

        finally:
            self.run_record.completed_at = datetime.utcnow()
            if orchestrator is not None:
                self.run_record.logs = '\n'.join(_format_event(e) for e in orchestrator.events)
            db.session.commit()

        logger.info(f"Backup job {self.job.name} finished with status: {self.run_record.status}")
        return self.run_record

    def _build_orchestrator(self) -> BackupOrchestrator:
        """Create an orchestrator from the job and app configuration."""
        config = current_app.config
        cancel_check = CancellationFlag(current_app._get_current_object(), self.run_record.id)

        max_archives = self.job.max_archives or config['MAX_ARCHIVES_PER_SOURCE']
        creator = TarArchiveCreator(
            timeout=config.get('ARCHIVE_TIMEOUT_SECONDS'),
            cancel_check=cancel_check
        )

        return BackupOrchestrator(
            destination_root=self.job.destination_dir or config['BACKUP_DEST_DIR'],
            policy=RetentionPolicy(max_archives),
            creator=creator,
            max_workers=config.get('BACKUP_WORKERS', 1),
            cancel_check=cancel_check
        )

    def _store_outcomes(self):
        """Persist one SourceOutcome row per engine outcome."""
        for position, outcome in enumerate(self.result.outcomes):
            record = outcome.record or outcome.planned_record
            db.session.add(SourceOutcome(
                run_id=self.run_record.id,
                position=position,
                source_path=str(outcome.request.source_directory),
                source_name=outcome.source_name,
                status=outcome.status.value,
                archive_path=str(record.path) if record else None,
                file_size_bytes=outcome.record.size_bytes if outcome.record else None,
                deleted_archives=json.dumps([r.filename for r in outcome.deleted]),
                planned_deletions=json.dumps([r.filename for r in outcome.planned_deletions]),
                warnings=json.dumps([w.message for w in outcome.warnings]),
                error_kind=outcome.error.kind if outcome.error else None,
                error_message=outcome.error.message if outcome.error else None,
                summary=outcome.summary
            ))


def _format_event(event: dict) -> str:
    return f"[{event['timestamp']}] {event['level']} [{event['source_name'] or '-'}] {event['event']}: {event['detail']}"


def execute_backup_job(job_id: int, dry_run: bool = False, allow_disabled: bool = False) -> BackupRun:
    """
    Execute a backup job by ID.

    Args:
        job_id: ID of BackupJob to execute
        dry_run: Simulate the run without touching the filesystem
        allow_disabled: If True, allow execution of disabled jobs (for manual triggers)

    Returns:
        BackupRun record with execution results

    Raises:
        ValueError: If job not found, or if disabled and not allowed
    """
    job = db.session.get(BackupJob, job_id)

    if not job:
        raise ValueError(f"Backup job not found: {job_id}")

    if not job.enabled and not allow_disabled:
        raise ValueError(f"Backup job is disabled: {job.name}")

    executor = BackupExecutor(job, dry_run=dry_run)
    return executor.execute()


def execute_backup_job_by_name(job_name: str, dry_run: bool = False, allow_disabled: bool = False) -> BackupRun:
    """
    Execute a backup job by name.

    Args:
        job_name: Name of BackupJob to execute
        dry_run: Simulate the run without touching the filesystem
        allow_disabled: If True, allow execution of disabled jobs

    Returns:
        BackupRun record with execution results

    Raises:
        ValueError: If job not found or disabled
    """
    job = BackupJob.query.filter_by(name=job_name).first()

    if not job:
        raise ValueError(f"Backup job not found: {job_name}")

    if not job.enabled and not allow_disabled:
        raise ValueError(f"Backup job is disabled: {job_name}")

    executor = BackupExecutor(job, dry_run=dry_run)
    return executor.execute()
