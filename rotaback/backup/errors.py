"""
Error taxonomy for the backup engine.

Every failure the engine can report for a single source is one of these
types. They are attached to outcomes rather than propagated, so a failure in
one source never aborts the rest of a run.
"""


class BackupError(Exception):
    """Base class for all backup engine errors."""

    kind = 'backup_error'

    def __init__(self, message: str, source_name: str = None):
        super().__init__(message)
        self.message = message
        self.source_name = source_name

    def to_dict(self) -> dict:
        return {
            'kind': self.kind,
            'message': self.message,
            'source_name': self.source_name
        }


class ValidationError(BackupError):
    """Raised when a source or the destination root fails validation."""

    kind = 'validation_error'


class CreationError(BackupError):
    """Raised when the archive creator fails."""

    kind = 'creation_error'


class ArchiveExistsError(CreationError):
    """Raised when the target archive path is already taken at publish time."""

    kind = 'archive_exists'


class VerificationError(BackupError):
    """Raised when a freshly created archive is missing or empty."""

    kind = 'verification_error'


class InvalidSourceName(BackupError, ValueError):
    """Raised when a source name sanitizes to an empty string."""

    kind = 'invalid_source_name'


class BackupCancelled(BackupError):
    """Raised for sources stopped or never started because the run was cancelled."""

    kind = 'cancelled'


class DeletionWarning(BackupError):
    """
    A failed deletion of one excess archive during rotation.

    Never raised by the engine: instances are attached to an otherwise
    successful outcome. record is None when rotation could not list the
    destination at all.
    """

    kind = 'deletion_warning'

    def __init__(self, reason: str, record=None, source_name: str = None):
        if record is not None:
            message = f"Failed to delete {record.path.name}: {reason}"
            source_name = record.source_name
        else:
            message = f"Rotation skipped: {reason}"
        super().__init__(message, source_name=source_name)
        self.record = record
        self.reason = reason

    def to_dict(self) -> dict:
        data = super().to_dict()
        data['path'] = str(self.record.path) if self.record is not None else None
        return data
