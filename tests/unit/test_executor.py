"""
Unit tests for backup executor (rotaback/backup/executor.py).

Tests BackupExecutor running stored jobs end to end and recording history.
"""

import json
from datetime import datetime
from pathlib import Path
from unittest.mock import patch

import pytest

from rotaback.backup.executor import (
    BackupExecutor,
    CancellationFlag,
    execute_backup_job,
    execute_backup_job_by_name
)
from rotaback.models import BackupJob, BackupRun


def _archives(directory):
    return sorted(p.name for p in Path(directory).iterdir() if p.name.endswith('.tar.gz'))


class TestBackupExecutor:
    """Test BackupExecutor class."""

    def test_executor_initialization(self, db, backup_job):
        executor = BackupExecutor(backup_job)

        assert executor.job == backup_job
        assert executor.dry_run is False
        assert executor.run_record is None
        assert executor.result is None

    def test_successful_backup(self, db, backup_job, app):
        """Test successful run creates an archive and records history."""
        run = BackupExecutor(backup_job).execute()

        assert run.id is not None
        assert run.status == 'success'
        assert run.dry_run is False
        assert run.completed_at is not None
        assert run.error_message is None

        assert len(run.outcomes) == 1
        outcome = run.outcomes[0]
        assert outcome.status == 'created'
        assert outcome.source_name == 'docs'
        assert outcome.file_size_bytes > 0
        assert Path(outcome.archive_path).exists()
        assert Path(outcome.archive_path).parent == Path(app.config['BACKUP_DEST_DIR'])
        assert run.total_size_bytes == outcome.file_size_bytes

    def test_logs_contain_events(self, db, backup_job):
        run = BackupExecutor(backup_job).execute()

        assert 'run_started' in run.logs
        assert '[docs] archive_created' in run.logs
        assert 'run_finished' in run.logs

    def test_rotation_recorded(self, db, backup_job, app, make_archives):
        dest = Path(app.config['BACKUP_DEST_DIR'])
        old = make_archives(dest, 'docs', 5)

        run = BackupExecutor(backup_job).execute()

        outcome = run.outcomes[0]
        assert json.loads(outcome.deleted_archives) == [p.name for p in old[:3]]
        assert len(_archives(dest)) == 3

    def test_dry_run(self, db, backup_job, app, make_archives):
        dest = Path(app.config['BACKUP_DEST_DIR'])
        make_archives(dest, 'docs', 4)
        before = _archives(dest)

        run = BackupExecutor(backup_job, dry_run=True).execute()

        assert run.status == 'success'
        assert run.dry_run is True
        outcome = run.outcomes[0]
        assert outcome.status == 'dry_run_skipped'
        assert outcome.file_size_bytes is None
        assert outcome.archive_path.endswith('.tar.gz')
        assert len(json.loads(outcome.planned_deletions)) == 2
        assert outcome.summary.startswith('[DRY RUN]')
        assert _archives(dest) == before

    def test_failed_source_does_not_stop_others(self, db, backup_job, source_dir, tmp_path):
        backup_job.set_source_paths([str(tmp_path / 'missing'), str(source_dir)])
        db.session.commit()

        run = BackupExecutor(backup_job).execute()

        assert run.status == 'failed'
        assert [o.status for o in run.outcomes] == ['failed', 'created']
        assert run.outcomes[0].error_kind == 'validation_error'
        assert 'missing: FAILED (validation_error)' in run.error_message

    def test_uses_configured_defaults(self, db, backup_job, app, make_archives):
        """Jobs without their own limit or destination use app configuration."""
        dest = Path(app.config['BACKUP_DEST_DIR'])
        app.config['MAX_ARCHIVES_PER_SOURCE'] = 2
        backup_job.max_archives = None
        backup_job.destination_dir = None
        db.session.commit()
        make_archives(dest, 'docs', 4)

        run = BackupExecutor(backup_job).execute()

        assert run.status == 'success'
        assert len(_archives(dest)) == 2

    def test_job_destination_overrides_config(self, db, backup_job, tmp_path):
        own_dest = tmp_path / 'own'
        own_dest.mkdir()
        backup_job.destination_dir = str(own_dest)
        db.session.commit()

        run = BackupExecutor(backup_job).execute()

        assert Path(run.outcomes[0].archive_path).parent == own_dest

    def test_configuration_error_marks_run_failed(self, db, backup_job, app):
        """Errors outside the engine still leave a finished run record."""
        app.config['BACKUP_WORKERS'] = 0

        run = BackupExecutor(backup_job).execute()

        assert run.status == 'failed'
        assert 'max_workers' in run.error_message
        assert run.completed_at is not None
        assert run.outcomes == []

    def test_cancelled_run(self, db, backup_job):
        with patch.object(CancellationFlag, '__call__', return_value=True):
            run = BackupExecutor(backup_job).execute()

        assert run.status == 'cancelled'
        assert run.outcomes[0].error_kind == 'cancelled'


class TestCancellationFlag:
    """Test polling of the cancellation column."""

    def _run(self, db, backup_job, cancellation_requested=False):
        run = BackupRun(
            job_id=backup_job.id,
            status='running',
            started_at=datetime.utcnow(),
            cancellation_requested=cancellation_requested
        )
        db.session.add(run)
        db.session.commit()
        return run

    def test_not_requested(self, app, db, backup_job):
        run = self._run(db, backup_job)
        assert CancellationFlag(app, run.id)() is False

    def test_requested(self, app, db, backup_job):
        run = self._run(db, backup_job, cancellation_requested=True)
        assert CancellationFlag(app, run.id)() is True

    def test_polls_are_rate_limited(self, app, db, backup_job):
        run = self._run(db, backup_job)
        flag = CancellationFlag(app, run.id, interval=3600)
        assert flag() is False

        run.cancellation_requested = True
        db.session.commit()

        assert flag() is False

    def test_cancellation_is_sticky(self, app, db, backup_job):
        run = self._run(db, backup_job, cancellation_requested=True)
        flag = CancellationFlag(app, run.id, interval=0)
        assert flag() is True

        run.cancellation_requested = False
        db.session.commit()

        assert flag() is True


class TestExecuteBackupJob:
    """Test execute_backup_job helpers."""

    def test_execute_by_id(self, db, backup_job):
        run = execute_backup_job(backup_job.id)

        assert run.status == 'success'
        assert run.job_id == backup_job.id

    def test_execute_by_id_dry_run(self, db, backup_job):
        run = execute_backup_job(backup_job.id, dry_run=True)
        assert run.dry_run is True

    def test_execute_nonexistent_job(self, db):
        with pytest.raises(ValueError, match="Backup job not found"):
            execute_backup_job(99999)

    def test_execute_disabled_job(self, db, backup_job):
        backup_job.enabled = False
        db.session.commit()

        with pytest.raises(ValueError, match="Backup job is disabled"):
            execute_backup_job(backup_job.id)

    def test_execute_disabled_job_allowed(self, db, backup_job):
        backup_job.enabled = False
        db.session.commit()

        run = execute_backup_job(backup_job.id, allow_disabled=True)

        assert run.status == 'success'

    def test_execute_by_name(self, db, backup_job):
        run = execute_backup_job_by_name('test_docs_backup')
        assert run.status == 'success'

    def test_execute_by_name_not_found(self, db):
        with pytest.raises(ValueError, match="Backup job not found"):
            execute_backup_job_by_name('nope')

    def test_history_accumulates(self, db, backup_job):
        execute_backup_job(backup_job.id)
        execute_backup_job(backup_job.id, dry_run=True)

        job = db.session.get(BackupJob, backup_job.id)
        assert job.runs.count() == 2
