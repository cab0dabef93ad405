"""
Archive creation for backups.

Creates gzip-compressed tar archives atomically: the archive is written to a
temporary file next to its destination and published only once complete.
On any failure the destination does not exist and the temporary file is
removed.
"""

import errno
import logging
import os
import tarfile
import tempfile
import time
from pathlib import Path
from typing import Callable, Optional, Union

from .errors import CreationError, ArchiveExistsError, BackupCancelled

logger = logging.getLogger(__name__)

PARTIAL_SUFFIX = '.partial'


class _Interrupted(Exception):
    """Internal signal that an archive ran past its timeout."""


class TarArchiveCreator:
    """
    Archive creator backed by the tarfile module.

    Satisfies the creator contract: create(source_path, destination_path)
    returns the archive size in bytes, or raises CreationError (or
    BackupCancelled when cancel_check fires) leaving
    nothing at destination_path. Existing destinations are never
    overwritten.
    """

    def __init__(
        self,
        timeout: Optional[float] = None,
        cancel_check: Optional[Callable[[], bool]] = None,
        compresslevel: int = 6
    ):
        """
        Initialize archive creator.

        Args:
            timeout: Maximum seconds per archive (None = unbounded)
            cancel_check: Callable returning True when creation should stop
            compresslevel: gzip compression level (1-9)
        """
        if timeout is not None and timeout <= 0:
            raise ValueError(f"Timeout must be positive, got {timeout}")
        if not 1 <= compresslevel <= 9:
            raise ValueError(f"compresslevel must be between 1 and 9, got {compresslevel}")

        self.timeout = timeout
        self.cancel_check = cancel_check
        self.compresslevel = compresslevel

    def create(self, source_path: Union[str, Path], destination_path: Union[str, Path]) -> int:
        """
        Create a .tar.gz archive of a directory.

        Args:
            source_path: Directory to archive (stored under its base name)
            destination_path: Final archive path

        Returns:
            Size of the published archive in bytes

        Raises:
            ArchiveExistsError: If destination_path already exists
            BackupCancelled: If cancel_check returned True during creation
            CreationError: On any other failure
        """
        source = Path(source_path)
        destination = Path(destination_path)

        if destination.exists():
            raise ArchiveExistsError(f"Archive already exists: {destination}")

        deadline = time.monotonic() + self.timeout if self.timeout else None

        def check_member(tarinfo):
            if deadline is not None and time.monotonic() > deadline:
                raise _Interrupted(f"timed out after {self.timeout}s")
            if self.cancel_check is not None and self.cancel_check():
                raise BackupCancelled(f"Run cancelled while archiving {source}")
            return tarinfo

        try:
            fd, temp_name = tempfile.mkstemp(
                prefix=f".{destination.name}.",
                suffix=PARTIAL_SUFFIX,
                dir=destination.parent
            )
        except OSError as e:
            raise CreationError(f"Cannot create temporary archive in {destination.parent}: {e}")
        temp_path = Path(temp_name)

        try:
            with os.fdopen(fd, 'wb') as raw:
                with tarfile.open(fileobj=raw, mode='w:gz', compresslevel=self.compresslevel) as tar:
                    tar.add(source, arcname=source.name, recursive=True, filter=check_member)
                raw.flush()
                os.fsync(raw.fileno())

            _publish(temp_path, destination)
            return get_archive_size(destination)

        except (ArchiveExistsError, BackupCancelled):
            raise
        except _Interrupted as e:
            raise CreationError(f"Archive creation interrupted for {source}: {e}")
        except Exception as e:
            raise CreationError(f"Failed to create archive of {source}: {e}")
        finally:
            _remove_quietly(temp_path)


def _publish(temp_path: Path, destination: Path):
    """
    Move a finished archive into place without replacing an existing file.

    Hard link first (atomic, fails if the name is taken). Filesystems without
    hard links fall back to claiming the name exclusively and renaming over
    the claim.
    """
    try:
        os.link(temp_path, destination)
        return
    except FileExistsError:
        raise ArchiveExistsError(f"Archive already exists: {destination}")
    except OSError as e:
        if e.errno not in (errno.EPERM, errno.ENOTSUP, errno.EOPNOTSUPP, errno.EXDEV, errno.EMLINK):
            raise
        logger.debug(f"Hard links unavailable for {destination.parent} ({e}), using rename")

    try:
        claim = os.open(destination, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
    except FileExistsError:
        raise ArchiveExistsError(f"Archive already exists: {destination}")
    os.close(claim)

    try:
        os.replace(temp_path, destination)
    except OSError:
        _remove_quietly(destination)
        raise


def _remove_quietly(path: Path):
    try:
        path.unlink()
    except FileNotFoundError:
        pass
    except OSError as e:
        logger.warning(f"Failed to remove temporary file {path}: {e}")


def get_archive_size(archive_path: Union[str, Path]) -> int:
    """
    Get the size of an archive file in bytes.

    Args:
        archive_path: Path to the archive file

    Returns:
        File size in bytes

    Raises:
        CreationError: If file doesn't exist or cannot be accessed
    """
    try:
        return os.path.getsize(archive_path)
    except FileNotFoundError:
        raise CreationError(f"Archive not found: {archive_path}")
    except OSError as e:
        raise CreationError(f"Failed to get archive size: {e}")
