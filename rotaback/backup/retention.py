"""
Retention policy enforcement for backups.

Count-based retention: keep the newest N archives of each source, delete the
rest. Ordering uses the timestamp embedded in the archive filename, never the
filesystem mtime, so copied or restored archives keep their logical age.
"""

from typing import List, Sequence

from .naming import ArchiveRecord


def _newest_first_key(record: ArchiveRecord):
    return (record.created_at, record.sequence, str(record.path))


def select_for_deletion(records: Sequence[ArchiveRecord], max_keep: int) -> List[ArchiveRecord]:
    """
    Select the archives that fall outside the retention window.

    Args:
        records: Archive records of a single source
        max_keep: Number of newest archives to keep (>= 1)

    Returns:
        Records to delete, oldest first. Empty if len(records) <= max_keep.
    """
    if len(records) <= max_keep:
        return []

    newest_first = sorted(records, key=_newest_first_key, reverse=True)
    excess = newest_first[max_keep:]
    excess.reverse()
    return excess


class RetentionPolicy:
    """
    Maximum number of archives kept per source.

    Stateless value object; owns no data.
    """

    __slots__ = ('_max_archives_per_source',)

    def __init__(self, max_archives_per_source: int):
        """
        Args:
            max_archives_per_source: Positive integer >= 1

        Raises:
            ValueError: If the value is not an integer >= 1
        """
        if isinstance(max_archives_per_source, bool) or not isinstance(max_archives_per_source, int):
            raise ValueError(f"max_archives_per_source must be an integer, got {max_archives_per_source!r}")
        if max_archives_per_source < 1:
            raise ValueError(f"max_archives_per_source must be >= 1, got {max_archives_per_source}")

        self._max_archives_per_source = max_archives_per_source

    @property
    def max_archives_per_source(self) -> int:
        return self._max_archives_per_source

    def select_for_deletion(self, records: Sequence[ArchiveRecord]) -> List[ArchiveRecord]:
        return select_for_deletion(records, self._max_archives_per_source)

    def __eq__(self, other):
        if not isinstance(other, RetentionPolicy):
            return NotImplemented
        return self._max_archives_per_source == other._max_archives_per_source

    def __hash__(self):
        return hash(self._max_archives_per_source)

    def __repr__(self):
        return f'<RetentionPolicy max_archives_per_source={self._max_archives_per_source}>'
