"""
Backup run routes - View and manage backup run history.
"""

from flask import Blueprint, jsonify, request
from datetime import datetime, timedelta

from rotaback import db
from rotaback.models import BackupRun


bp = Blueprint('runs', __name__, url_prefix='/api/runs')

RUN_STATUSES = ['running', 'success', 'warning', 'failed', 'cancelling', 'cancelled']


def serialize_run(run: BackupRun, include_outcomes: bool = False) -> dict:
    duration_seconds = None
    if run.completed_at:
        duration_seconds = int((run.completed_at - run.started_at).total_seconds())

    data = {
        'id': run.id,
        'job_id': run.job_id,
        'job_name': run.job.name,
        'status': run.status,
        'dry_run': run.dry_run,
        'started_at': run.started_at.isoformat(),
        'completed_at': run.completed_at.isoformat() if run.completed_at else None,
        'duration_seconds': duration_seconds,
        'total_size_bytes': run.total_size_bytes,
        'error_message': run.error_message,
        'has_logs': bool(run.logs)
    }

    if include_outcomes:
        data['outcomes'] = [outcome.to_dict() for outcome in run.outcomes]

    return data


@bp.route('/', methods=['GET'])
def list_runs():
    """
    Get run history with filtering and pagination.

    Query params:
        - status: Filter by status
        - job_id: Filter by job ID
        - dry_run: 'true' or 'false'
        - days: Only show runs from last N days
        - limit: Max number of records (default: 50, max: 200)
        - offset: Number of records to skip (default: 0)

    Returns:
        JSON with run records and metadata
    """
    status_filter = request.args.get('status')
    job_id_filter = request.args.get('job_id', type=int)
    dry_run_filter = request.args.get('dry_run')
    days_filter = request.args.get('days', type=int)
    limit = min(request.args.get('limit', 50, type=int), 200)
    offset = max(request.args.get('offset', 0, type=int), 0)

    query = BackupRun.query

    if status_filter:
        if status_filter not in RUN_STATUSES:
            return jsonify({'error': 'Invalid status filter'}), 400
        query = query.filter(BackupRun.status == status_filter)

    if job_id_filter:
        query = query.filter(BackupRun.job_id == job_id_filter)

    if dry_run_filter is not None:
        query = query.filter(BackupRun.dry_run == (dry_run_filter.lower() == 'true'))

    if days_filter and days_filter > 0:
        cutoff_date = datetime.utcnow() - timedelta(days=days_filter)
        query = query.filter(BackupRun.started_at >= cutoff_date)

    total_count = query.count()

    runs = query.order_by(
        BackupRun.started_at.desc()
    ).limit(limit).offset(offset).all()

    return jsonify({
        'records': [serialize_run(run) for run in runs],
        'total': total_count,
        'limit': limit,
        'offset': offset
    })


@bp.route('/<int:run_id>', methods=['GET'])
def get_run_detail(run_id):
    """
    Get a run with its per-source outcomes.
    """
    run = db.get_or_404(BackupRun, run_id)
    return jsonify(serialize_run(run, include_outcomes=True))


@bp.route('/<int:run_id>/logs', methods=['GET'])
def get_run_logs(run_id):
    """
    Get the event log of a run.
    """
    run = db.get_or_404(BackupRun, run_id)

    return jsonify({
        'id': run.id,
        'job_name': run.job.name,
        'status': run.status,
        'logs': run.logs or 'No logs available'
    })


@bp.route('/<int:run_id>/cancel', methods=['POST'])
def cancel_run(run_id):
    """
    Request cancellation of a running backup.

    Sources already started finish normally; sources not yet started fail
    as cancelled.
    """
    run = db.get_or_404(BackupRun, run_id)

    if run.status not in ('running', 'cancelling'):
        return jsonify({
            'error': f'Cannot cancel run with status: {run.status}'
        }), 400

    if run.cancellation_requested:
        return jsonify({
            'message': 'Cancellation already requested',
            'status': 'cancelling'
        })

    run.cancellation_requested = True
    run.status = 'cancelling'
    db.session.commit()

    return jsonify({
        'message': 'Cancellation requested. The run will stop before its next source.',
        'status': 'cancelling'
    })


@bp.route('/cleanup', methods=['POST'])
def cleanup_old_runs():
    """
    Delete old run history records. Archives on disk are not affected.

    Request body:
        - days: Delete records older than N days (required, >= 30)
    """
    data = request.get_json(silent=True) or {}

    days = data.get('days')
    if not days:
        return jsonify({'error': 'days parameter is required'}), 400

    if not isinstance(days, int) or days < 30:
        return jsonify({'error': 'Cannot delete records newer than 30 days'}), 400

    cutoff_date = datetime.utcnow() - timedelta(days=days)
    old_runs = BackupRun.query.filter(BackupRun.started_at < cutoff_date).all()

    for run in old_runs:
        db.session.delete(run)
    db.session.commit()

    return jsonify({
        'message': f'Deleted {len(old_runs)} old run records',
        'deleted_count': len(old_runs)
    })
