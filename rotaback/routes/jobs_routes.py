"""
Backup jobs routes - CRUD operations, job execution and archive listing.
"""

import os

from flask import Blueprint, current_app, jsonify, request

from rotaback import db
from rotaback.models import BackupJob, BackupRun
from rotaback.scheduler import sync_backup_jobs, trigger_backup_now, is_scheduler_running
from rotaback.backup.executor import execute_backup_job
from rotaback.backup.naming import source_name_for
from rotaback.backup.errors import InvalidSourceName
from rotaback.backup.storage import ArchiveStore, StorageError
from rotaback.routes.runs_routes import serialize_run


bp = Blueprint('jobs', __name__, url_prefix='/api/jobs')


def serialize_job(job: BackupJob) -> dict:
    return {
        'id': job.id,
        'name': job.name,
        'description': job.description,
        'enabled': job.enabled,
        'source_paths': job.get_source_paths(),
        'destination_dir': job.destination_dir,
        'max_archives': job.max_archives,
        'schedule_cron': job.schedule_cron,
        'created_at': job.created_at.isoformat(),
        'updated_at': job.updated_at.isoformat()
    }


def _validate_job_fields(data: dict, partial: bool = False):
    """
    Validate job fields from a request body.

    Returns:
        Error message, or None if valid
    """
    if not partial or 'name' in data:
        if not data.get('name'):
            return 'Job name is required'

    if not partial or 'source_paths' in data:
        paths = data.get('source_paths')
        if not paths or not isinstance(paths, list) or not all(isinstance(p, str) and p for p in paths):
            return 'source_paths must be a non-empty list of directory paths'
        # Each source needs its own archive names and retention window
        owners = {}
        for path in paths:
            try:
                source_name = source_name_for(path)
            except InvalidSourceName:
                return f'Source path has no usable name: {path}'
            owner = owners.setdefault(source_name, path)
            if os.path.normpath(owner) != os.path.normpath(path):
                return f"Source paths {owner} and {path} would both be archived as '{source_name}'"

    if data.get('max_archives') is not None:
        value = data['max_archives']
        if isinstance(value, bool) or not isinstance(value, int) or value < 1:
            return 'max_archives must be an integer >= 1'

    return None


@bp.route('/', methods=['GET'])
def list_jobs():
    """
    Get list of all backup jobs.

    Returns:
        JSON array of backup jobs
    """
    jobs = BackupJob.query.order_by(BackupJob.created_at.desc()).all()
    return jsonify([serialize_job(job) for job in jobs])


@bp.route('/<int:job_id>', methods=['GET'])
def get_job(job_id):
    """
    Get a single backup job by ID.
    """
    job = db.get_or_404(BackupJob, job_id)
    return jsonify(serialize_job(job))


@bp.route('/', methods=['POST'])
def create_job():
    """
    Create a new backup job.

    Request body:
        - name: Job name (required)
        - source_paths: List of directories (required)
        - description: Job description (optional)
        - enabled: Enable job (default: true)
        - destination_dir: Destination root (default: BACKUP_DEST_DIR)
        - max_archives: Archives kept per source (default: MAX_ARCHIVES_PER_SOURCE)
        - schedule_cron: Cron expression (optional)

    Returns:
        JSON with created job ID
    """
    data = request.get_json(silent=True) or {}

    error = _validate_job_fields(data)
    if error:
        return jsonify({'error': error}), 400

    if BackupJob.query.filter_by(name=data['name']).first():
        return jsonify({'error': 'Job name already exists'}), 400

    job = BackupJob(
        name=data['name'],
        description=data.get('description', ''),
        enabled=data.get('enabled', True),
        destination_dir=data.get('destination_dir'),
        max_archives=data.get('max_archives'),
        schedule_cron=data.get('schedule_cron')
    )
    job.set_source_paths(data['source_paths'])

    db.session.add(job)
    db.session.commit()

    sync_backup_jobs()

    return jsonify({
        'id': job.id,
        'message': 'Backup job created successfully'
    }), 201


@bp.route('/<int:job_id>', methods=['PUT'])
def update_job(job_id):
    """
    Update an existing backup job.

    Request body: Same as create_job (all fields optional)
    """
    job = db.get_or_404(BackupJob, job_id)
    data = request.get_json(silent=True) or {}

    error = _validate_job_fields(data, partial=True)
    if error:
        return jsonify({'error': error}), 400

    if 'name' in data and data['name'] != job.name:
        if BackupJob.query.filter_by(name=data['name']).first():
            return jsonify({'error': 'Job name already exists'}), 400
        job.name = data['name']

    if 'source_paths' in data:
        job.set_source_paths(data['source_paths'])

    for field in ('description', 'enabled', 'destination_dir', 'max_archives', 'schedule_cron'):
        if field in data:
            setattr(job, field, data[field])

    db.session.commit()

    sync_backup_jobs()

    return jsonify({'message': 'Backup job updated successfully'})


@bp.route('/<int:job_id>', methods=['DELETE'])
def delete_job(job_id):
    """
    Delete a backup job and its run history. Archives on disk are kept.
    """
    job = db.get_or_404(BackupJob, job_id)

    db.session.delete(job)
    db.session.commit()

    sync_backup_jobs()

    return jsonify({'message': 'Backup job deleted successfully'})


@bp.route('/<int:job_id>/toggle', methods=['POST'])
def toggle_job(job_id):
    """
    Toggle a job's enabled status.
    """
    job = db.get_or_404(BackupJob, job_id)

    job.enabled = not job.enabled
    db.session.commit()

    sync_backup_jobs()

    return jsonify({
        'enabled': job.enabled,
        'message': f"Job {'enabled' if job.enabled else 'disabled'} successfully"
    })


@bp.route('/<int:job_id>/run', methods=['POST'])
def run_job_now(job_id):
    """
    Run a backup job now.

    Query params:
        - dry_run: 'true' to simulate (default: false)
        - wait: 'true' to run inside the request (default: queue on the scheduler)

    Without a scheduler in this process the job always runs inside the request.
    """
    job = db.get_or_404(BackupJob, job_id)
    dry_run = request.args.get('dry_run', 'false').lower() == 'true'
    wait = request.args.get('wait', 'false').lower() == 'true'

    if is_scheduler_running() and not wait:
        trigger_backup_now(job_id, dry_run=dry_run)
        return jsonify({
            'message': f"Backup job '{job.name}' has been queued for immediate execution",
            'dry_run': dry_run
        }), 202

    run = execute_backup_job(job_id, dry_run=dry_run, allow_disabled=True)
    return jsonify(serialize_run(run, include_outcomes=True))


@bp.route('/<int:job_id>/history', methods=['GET'])
def get_job_history(job_id):
    """
    Get run history for a specific job.

    Query params:
        - limit: Max number of records (default: 50, max: 200)
    """
    db.get_or_404(BackupJob, job_id)

    limit = min(request.args.get('limit', 50, type=int), 200)

    runs = BackupRun.query.filter_by(job_id=job_id).order_by(
        BackupRun.started_at.desc()
    ).limit(limit).all()

    return jsonify([serialize_run(run) for run in runs])


@bp.route('/<int:job_id>/archives', methods=['GET'])
def list_job_archives(job_id):
    """
    List the archives currently on disk for each source of a job.

    Read straight from the destination directory; run history is not consulted.
    """
    job = db.get_or_404(BackupJob, job_id)
    store = ArchiveStore(job.destination_dir or current_app.config['BACKUP_DEST_DIR'])

    sources = []
    for path in job.get_source_paths():
        source_name = source_name_for(path)
        try:
            records = store.list_archives(source_name)
        except StorageError as e:
            return jsonify({'error': e.message}), 500

        records.sort(key=lambda r: (r.created_at, r.sequence), reverse=True)
        sources.append({
            'source_path': path,
            'source_name': source_name,
            'archives': [r.to_dict() for r in records]
        })

    return jsonify({
        'destination_dir': str(store.root),
        'max_archives': job.max_archives or current_app.config['MAX_ARCHIVES_PER_SOURCE'],
        'sources': sources
    })
