"""
Archive storage in a local destination root.

All archives live directly in the root, named by the naming scheme. The
directory listing is the index: nothing is cached between calls, and files
that do not parse as archive names are never touched.
"""

import os
from pathlib import Path
from datetime import datetime
from typing import List, Tuple, Union

from .errors import BackupError, ValidationError
from .naming import ArchiveRecord, build_name, parse_name


class StorageError(BackupError):
    """Raised when storage operation fails."""

    kind = 'storage_error'


class ArchiveStore:
    """
    Handler for the archives of one destination root.
    """

    def __init__(self, root: Union[str, Path]):
        """
        Initialize archive store.

        Args:
            root: Destination root directory (not created here)
        """
        self.root = Path(root)

    def validate_writable(self):
        """
        Check that the destination root can receive archives.

        Raises:
            ValidationError: If the root is missing, not a directory, or not writable
        """
        if not self.root.exists():
            raise ValidationError(f"Destination does not exist: {self.root}")
        if not self.root.is_dir():
            raise ValidationError(f"Destination is not a directory: {self.root}")
        if not os.access(self.root, os.W_OK | os.X_OK):
            raise ValidationError(f"Destination is not writable: {self.root}")

    def list_archives(self, source_name: str) -> List[ArchiveRecord]:
        """
        List all archives of a source, read fresh from disk.

        Args:
            source_name: Sanitized source name

        Returns:
            ArchiveRecords with size populated, in directory order

        Raises:
            StorageError: If the root cannot be listed
        """
        records = []

        try:
            with os.scandir(self.root) as entries:
                for entry in entries:
                    record = parse_name(entry.name, self.root)
                    if record is None or record.source_name != source_name:
                        continue
                    try:
                        if not entry.is_file(follow_symlinks=False):
                            continue
                        size = entry.stat(follow_symlinks=False).st_size
                    except FileNotFoundError:
                        # Removed between listing and stat
                        continue
                    records.append(record.with_size(size))
        except OSError as e:
            raise StorageError(f"Failed to list archives in {self.root}: {e}", source_name=source_name)

        return records

    def allocate_path(self, source_name: str, created_at: datetime) -> Tuple[Path, int]:
        """
        Pick the first free archive path for a source and second.

        Args:
            source_name: Sanitized source name
            created_at: Archive timestamp

        Returns:
            Tuple of (path, sequence)
        """
        taken = {
            record.sequence
            for record in self.list_archives(source_name)
            if record.created_at == created_at
        }

        sequence = 0
        while sequence in taken or (self.root / build_name(source_name, created_at, sequence)).exists():
            sequence += 1

        return self.root / build_name(source_name, created_at, sequence), sequence

    def delete(self, record: ArchiveRecord):
        """
        Delete one archive.

        Args:
            record: Archive to delete

        Raises:
            FileNotFoundError: If the archive is already gone
            StorageError: If the path is not an archive in this root, or deletion fails
        """
        path = Path(record.path)

        if path.parent.resolve() != self.root.resolve() or parse_name(path.name) is None:
            raise StorageError(f"Refusing to delete non-archive path: {path}", source_name=record.source_name)

        try:
            path.unlink()
        except FileNotFoundError:
            raise
        except PermissionError as e:
            raise StorageError(f"Permission denied deleting {path}: {e}", source_name=record.source_name)
        except OSError as e:
            raise StorageError(f"Failed to delete {path}: {e}", source_name=record.source_name)

    def remove_partial(self, path: Union[str, Path]) -> bool:
        """
        Remove a partial or empty artifact, if present.

        Returns:
            True if a file was removed
        """
        try:
            Path(path).unlink()
            return True
        except FileNotFoundError:
            return False
