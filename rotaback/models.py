import json
from datetime import datetime
from rotaback import db


class BackupJob(db.Model):
    """Backup job configuration: a set of sources rotated into one destination"""
    __tablename__ = 'backup_jobs'

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(255), unique=True, nullable=False)
    description = db.Column(db.Text)
    enabled = db.Column(db.Boolean, default=True, nullable=False)
    source_paths = db.Column(db.Text, nullable=False)  # JSON list of directories
    destination_dir = db.Column(db.String(500))  # null = BACKUP_DEST_DIR
    max_archives = db.Column(db.Integer)  # null = MAX_ARCHIVES_PER_SOURCE
    schedule_cron = db.Column(db.String(100))  # Cron expression
    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    # Relationship
    runs = db.relationship('BackupRun', back_populates='job', cascade='all, delete-orphan', lazy='dynamic')

    def get_source_paths(self) -> list:
        return json.loads(self.source_paths or '[]')

    def set_source_paths(self, paths: list):
        self.source_paths = json.dumps(list(paths))

    def __repr__(self):
        return f'<BackupJob {self.name} sources={len(self.get_source_paths())} enabled={self.enabled}>'


class BackupRun(db.Model):
    """One execution of a backup job"""
    __tablename__ = 'backup_runs'

    id = db.Column(db.Integer, primary_key=True)
    job_id = db.Column(db.Integer, db.ForeignKey('backup_jobs.id'), nullable=False)
    status = db.Column(db.String(20), nullable=False)  # running, success, warning, failed, cancelling, cancelled
    dry_run = db.Column(db.Boolean, default=False, nullable=False)
    started_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
    completed_at = db.Column(db.DateTime)
    error_message = db.Column(db.Text)
    logs = db.Column(db.Text)  # Structured engine events, one per line
    cancellation_requested = db.Column(db.Boolean, default=False, nullable=False)

    # Relationships
    job = db.relationship('BackupJob', back_populates='runs')
    outcomes = db.relationship(
        'SourceOutcome',
        back_populates='run',
        cascade='all, delete-orphan',
        order_by='SourceOutcome.position'
    )

    @property
    def total_size_bytes(self) -> int:
        return sum(o.file_size_bytes or 0 for o in self.outcomes)

    def __repr__(self):
        return f'<BackupRun job_id={self.job_id} status={self.status} dry_run={self.dry_run}>'


class SourceOutcome(db.Model):
    """Outcome of one source within a run"""
    __tablename__ = 'source_outcomes'

    id = db.Column(db.Integer, primary_key=True)
    run_id = db.Column(db.Integer, db.ForeignKey('backup_runs.id'), nullable=False)
    position = db.Column(db.Integer, nullable=False)  # Input order within the run
    source_path = db.Column(db.String(500), nullable=False)
    source_name = db.Column(db.String(255))
    status = db.Column(db.String(20), nullable=False)  # created, dry_run_skipped, failed
    archive_path = db.Column(db.String(500))
    file_size_bytes = db.Column(db.BigInteger)
    deleted_archives = db.Column(db.Text)  # JSON list of filenames
    planned_deletions = db.Column(db.Text)  # JSON list of filenames (dry run)
    warnings = db.Column(db.Text)  # JSON list of messages
    error_kind = db.Column(db.String(50))
    error_message = db.Column(db.Text)
    summary = db.Column(db.Text, nullable=False)

    # Relationship
    run = db.relationship('BackupRun', back_populates='outcomes')

    def to_dict(self) -> dict:
        return {
            'position': self.position,
            'source_path': self.source_path,
            'source_name': self.source_name,
            'status': self.status,
            'archive_path': self.archive_path,
            'file_size_bytes': self.file_size_bytes,
            'deleted_archives': json.loads(self.deleted_archives or '[]'),
            'planned_deletions': json.loads(self.planned_deletions or '[]'),
            'warnings': json.loads(self.warnings or '[]'),
            'error_kind': self.error_kind,
            'error_message': self.error_message,
            'summary': self.summary
        }

    def __repr__(self):
        return f'<SourceOutcome run_id={self.run_id} source={self.source_name} status={self.status}>'
