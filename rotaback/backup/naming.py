"""
Archive naming scheme.

Format: {source_name}_{YYYYMMDD}_{HHMMSS}.tar.gz

A second archive of the same source within the same second gets a
monotonic suffix: {source_name}_{YYYYMMDD}_{HHMMSS}-{N}.tar.gz

The filename is the only persisted metadata of an archive, so building and
parsing must round-trip exactly.
"""

import os
import re
from dataclasses import dataclass, replace
from datetime import datetime
from pathlib import Path
from typing import Optional, Union

from .errors import InvalidSourceName


ARCHIVE_EXTENSION = '.tar.gz'
TIMESTAMP_FORMAT = '%Y%m%d_%H%M%S'

_SEPARATORS = {'/', '\\', '\0', os.sep} | ({os.altsep} if os.altsep else set())

# Greedy name group: the timestamp is always anchored at the end.
_ARCHIVE_PATTERN = re.compile(
    r'^(?P<name>.+)_(?P<date>\d{8})_(?P<time>\d{6})(?:-(?P<seq>[1-9]\d*))?\.tar\.gz\Z',
    re.DOTALL
)


@dataclass(frozen=True)
class ArchiveRecord:
    """One stored backup archive."""

    source_name: str
    created_at: datetime
    path: Path
    size_bytes: Optional[int] = None
    sequence: int = 0

    @property
    def filename(self) -> str:
        return self.path.name

    def with_size(self, size_bytes: int) -> 'ArchiveRecord':
        return replace(self, size_bytes=size_bytes)

    def to_dict(self) -> dict:
        return {
            'source_name': self.source_name,
            'created_at': self.created_at.isoformat(),
            'path': str(self.path),
            'size_bytes': self.size_bytes,
            'sequence': self.sequence
        }


def sanitize_source_name(source_name: str) -> str:
    """
    Replace path separators in a source name with underscores.

    Args:
        source_name: Raw logical source name

    Returns:
        Sanitized name, safe to embed in a single filename

    Raises:
        InvalidSourceName: If the sanitized name is empty
    """
    sanitized = ''.join('_' if c in _SEPARATORS else c for c in (source_name or ''))

    if not sanitized:
        raise InvalidSourceName(f"Invalid source name: {source_name!r}", source_name=source_name)

    return sanitized


def source_name_for(source_directory: Union[str, Path]) -> str:
    """
    Derive the logical source name from a directory path.

    Uses the directory's base name, ignoring trailing separators.

    Raises:
        InvalidSourceName: If the path has no usable base name (e.g. '/')
    """
    base = os.path.basename(str(source_directory).rstrip('/\\'))
    return sanitize_source_name(base)


def build_name(source_name: str, created_at: datetime, sequence: int = 0) -> str:
    """
    Build the archive filename for a source and timestamp.

    Args:
        source_name: Logical source name (sanitized here)
        created_at: Creation timestamp, second resolution
        sequence: Same-second disambiguation counter (0 = none)

    Returns:
        Filename without directory

    Raises:
        InvalidSourceName: If the source name sanitizes to empty
        ValueError: If sequence is negative
    """
    if sequence < 0:
        raise ValueError(f"Sequence must be >= 0, got {sequence}")

    safe_name = sanitize_source_name(source_name)
    # strftime does not zero-pad years below 1000 on every platform
    stamp = (
        f"{created_at.year:04d}{created_at.month:02d}{created_at.day:02d}_"
        f"{created_at.hour:02d}{created_at.minute:02d}{created_at.second:02d}"
    )
    suffix = f"-{sequence}" if sequence else ''

    return f"{safe_name}_{stamp}{suffix}{ARCHIVE_EXTENSION}"


def parse_name(filename: str, directory: Union[str, Path, None] = None) -> Optional[ArchiveRecord]:
    """
    Parse an archive filename back into an ArchiveRecord.

    Non-matching names return None: a destination root may hold unrelated
    files, which must be ignored.

    Args:
        filename: Bare filename
        directory: Optional directory to build the record's path from

    Returns:
        ArchiveRecord without size, or None
    """
    match = _ARCHIVE_PATTERN.match(filename)
    if not match:
        return None

    try:
        created_at = datetime.strptime(f"{match['date']}_{match['time']}", TIMESTAMP_FORMAT)
    except ValueError:
        return None

    path = Path(directory) / filename if directory is not None else Path(filename)

    return ArchiveRecord(
        source_name=match['name'],
        created_at=created_at,
        path=path,
        sequence=int(match['seq']) if match['seq'] else 0
    )
