"""
Dashboard routes - Overview and statistics endpoints.
"""

from flask import Blueprint, jsonify
from datetime import datetime, timedelta
from sqlalchemy import func

from rotaback import db
from rotaback.models import BackupJob, BackupRun, SourceOutcome
from rotaback.scheduler import get_scheduled_jobs, is_scheduler_running


bp = Blueprint('dashboard', __name__, url_prefix='/api/dashboard')


@bp.route('/overview', methods=['GET'])
def get_overview():
    """
    Get dashboard overview statistics.

    Returns:
        JSON with overview stats:
        - total_jobs: Total number of backup jobs
        - active_jobs: Number of enabled backup jobs
        - last_run: Most recent real (non dry-run) run
        - scheduler_status: Scheduler running status
    """
    total_jobs = BackupJob.query.count()
    active_jobs = BackupJob.query.filter_by(enabled=True).count()

    last_run = BackupRun.query.filter_by(dry_run=False).order_by(
        BackupRun.started_at.desc()
    ).first()

    last_run_info = None
    if last_run:
        last_run_info = {
            'job_name': last_run.job.name,
            'status': last_run.status,
            'completed_at': last_run.completed_at.isoformat() if last_run.completed_at else None,
            'total_size_mb': round(last_run.total_size_bytes / 1024 / 1024, 2)
        }

    return jsonify({
        'total_jobs': total_jobs,
        'active_jobs': active_jobs,
        'last_run': last_run_info,
        'scheduler_status': 'running' if is_scheduler_running() else 'stopped'
    })


@bp.route('/statistics', methods=['GET'])
def get_statistics():
    """
    Get backup statistics over real runs (dry runs excluded).

    Returns:
        JSON with statistics:
        - total_runs, successful_runs, warning_runs, failed_runs
        - archives_created: Number of archives written
        - rotations_with_deletions: Source outcomes that deleted old archives
        - total_size_gb: Total size of created archives in GB
        - runs_last_7_days, runs_last_30_days
    """
    runs = BackupRun.query.filter_by(dry_run=False)

    total_size_bytes = db.session.query(
        func.sum(SourceOutcome.file_size_bytes)
    ).filter(
        SourceOutcome.status == 'created'
    ).scalar() or 0

    archives_created = SourceOutcome.query.filter_by(status='created').count()
    rotations_with_deletions = SourceOutcome.query.filter(
        SourceOutcome.status == 'created',
        SourceOutcome.deleted_archives != '[]'
    ).count()

    now = datetime.utcnow()

    return jsonify({
        'total_runs': runs.count(),
        'successful_runs': runs.filter(BackupRun.status == 'success').count(),
        'warning_runs': runs.filter(BackupRun.status == 'warning').count(),
        'failed_runs': runs.filter(BackupRun.status == 'failed').count(),
        'archives_created': archives_created,
        'rotations_with_deletions': rotations_with_deletions,
        'total_size_gb': round(total_size_bytes / 1024 / 1024 / 1024, 2),
        'runs_last_7_days': runs.filter(BackupRun.started_at >= now - timedelta(days=7)).count(),
        'runs_last_30_days': runs.filter(BackupRun.started_at >= now - timedelta(days=30)).count()
    })


@bp.route('/scheduled-jobs', methods=['GET'])
def get_scheduled_jobs_info():
    """
    Get information about currently scheduled jobs.
    """
    return jsonify(get_scheduled_jobs())
