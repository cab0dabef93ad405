"""
Unit tests for archive storage (rotaback/backup/storage.py).

Tests listing, path allocation and guarded deletion in a destination root.
"""

from datetime import datetime
from pathlib import Path
from unittest.mock import patch

import pytest

from rotaback.backup.errors import ValidationError
from rotaback.backup.naming import ArchiveRecord, build_name, parse_name
from rotaback.backup.storage import ArchiveStore, StorageError


class TestValidateWritable:
    """Test destination root validation."""

    def test_existing_directory_passes(self, dest_root):
        ArchiveStore(dest_root).validate_writable()

    def test_missing_root(self, tmp_path):
        with pytest.raises(ValidationError, match="does not exist"):
            ArchiveStore(tmp_path / 'missing').validate_writable()

    def test_root_is_a_file(self, tmp_path):
        path = tmp_path / 'file'
        path.write_text('x')

        with pytest.raises(ValidationError, match="not a directory"):
            ArchiveStore(path).validate_writable()

    def test_root_not_writable(self, dest_root):
        with patch('rotaback.backup.storage.os.access', return_value=False):
            with pytest.raises(ValidationError, match="not writable"):
                ArchiveStore(dest_root).validate_writable()


class TestListArchives:
    """Test listing archives of one source."""

    def test_lists_only_matching_source(self, dest_root, make_archives):
        make_archives(dest_root, 'docs', 3)
        make_archives(dest_root, 'db', 2)

        records = ArchiveStore(dest_root).list_archives('docs')

        assert len(records) == 3
        assert all(r.source_name == 'docs' for r in records)

    def test_ignores_unrelated_files(self, dest_root, make_archives):
        """Files that do not parse as archive names are invisible."""
        make_archives(dest_root, 'docs', 2)
        (dest_root / 'notes.txt').write_text('keep me')
        (dest_root / 'readme.md').write_text('keep me')
        (dest_root / '.docs_20240101_000000.tar.gz.x1.partial').write_bytes(b'partial')

        records = ArchiveStore(dest_root).list_archives('docs')

        assert len(records) == 2

    def test_prefix_sources_are_distinct(self, dest_root, make_archives):
        """'docs' must not claim archives of 'docs_old'."""
        make_archives(dest_root, 'docs', 1)
        make_archives(dest_root, 'docs_old', 4)

        assert len(ArchiveStore(dest_root).list_archives('docs')) == 1
        assert len(ArchiveStore(dest_root).list_archives('docs_old')) == 4

    def test_ignores_directories_with_archive_names(self, dest_root):
        (dest_root / build_name('docs', datetime(2024, 1, 1))).mkdir()

        assert ArchiveStore(dest_root).list_archives('docs') == []

    def test_populates_size_and_path(self, dest_root, make_archives):
        paths = make_archives(dest_root, 'docs', 1)

        record = ArchiveStore(dest_root).list_archives('docs')[0]

        assert record.path == paths[0]
        assert record.size_bytes == len(b'archive data')
        assert record.created_at == datetime(2024, 1, 1)

    def test_reads_fresh_each_call(self, dest_root, make_archives):
        store = ArchiveStore(dest_root)
        make_archives(dest_root, 'docs', 1)
        assert len(store.list_archives('docs')) == 1

        make_archives(dest_root, 'docs', 1, start=datetime(2024, 2, 1))
        assert len(store.list_archives('docs')) == 2

    def test_missing_root_raises_storage_error(self, tmp_path):
        with pytest.raises(StorageError):
            ArchiveStore(tmp_path / 'missing').list_archives('docs')


class TestAllocatePath:
    """Test picking collision-free archive paths."""

    def test_first_archive_has_no_suffix(self, dest_root):
        created_at = datetime(2024, 1, 15, 12, 0, 0)

        path, sequence = ArchiveStore(dest_root).allocate_path('docs', created_at)

        assert path == dest_root / 'docs_20240115_120000.tar.gz'
        assert sequence == 0

    def test_same_second_gets_next_sequence(self, dest_root):
        created_at = datetime(2024, 1, 15, 12, 0, 0)
        store = ArchiveStore(dest_root)
        (dest_root / build_name('db', created_at)).write_bytes(b'x')
        (dest_root / build_name('db', created_at, 1)).write_bytes(b'x')

        path, sequence = store.allocate_path('db', created_at)

        assert sequence == 2
        assert path.name == 'db_20240115_120000-2.tar.gz'

    def test_other_seconds_do_not_matter(self, dest_root, make_archives):
        make_archives(dest_root, 'docs', 3)

        _, sequence = ArchiveStore(dest_root).allocate_path('docs', datetime(2024, 6, 1))

        assert sequence == 0

    def test_allocated_name_round_trips(self, dest_root):
        created_at = datetime(2024, 1, 15, 12, 0, 0)
        (dest_root / build_name('db', created_at)).write_bytes(b'x')

        path, sequence = ArchiveStore(dest_root).allocate_path('db', created_at)
        record = parse_name(path.name)

        assert record.source_name == 'db'
        assert record.created_at == created_at
        assert record.sequence == sequence


class TestDelete:
    """Test guarded archive deletion."""

    def test_delete_archive(self, dest_root, make_archives):
        make_archives(dest_root, 'docs', 2)
        store = ArchiveStore(dest_root)
        oldest = sorted(store.list_archives('docs'), key=lambda r: r.created_at)[0]

        store.delete(oldest)

        assert not oldest.path.exists()
        assert len(store.list_archives('docs')) == 1

    def test_already_deleted_raises_file_not_found(self, dest_root):
        record = parse_name(build_name('docs', datetime(2024, 1, 1)), dest_root)

        with pytest.raises(FileNotFoundError):
            ArchiveStore(dest_root).delete(record)

    def test_refuses_path_outside_root(self, dest_root, tmp_path, make_archives):
        other = tmp_path / 'other'
        other.mkdir()
        path = make_archives(other, 'docs', 1)[0]
        record = parse_name(path.name, other)

        with pytest.raises(StorageError, match="Refusing"):
            ArchiveStore(dest_root).delete(record)

        assert path.exists()

    def test_refuses_non_archive_name(self, dest_root):
        notes = dest_root / 'notes.txt'
        notes.write_text('keep me')
        record = ArchiveRecord('docs', datetime(2024, 1, 1), notes)

        with pytest.raises(StorageError, match="Refusing"):
            ArchiveStore(dest_root).delete(record)

        assert notes.exists()

    def test_permission_error_becomes_storage_error(self, dest_root, make_archives):
        path = make_archives(dest_root, 'docs', 1)[0]
        record = parse_name(path.name, dest_root)

        with patch.object(Path, 'unlink', side_effect=PermissionError('denied')):
            with pytest.raises(StorageError, match="Permission denied") as exc_info:
                ArchiveStore(dest_root).delete(record)

        assert exc_info.value.source_name == 'docs'
        assert path.exists()


class TestRemovePartial:
    """Test removal of partial artifacts."""

    def test_removes_existing_file(self, dest_root):
        path = dest_root / 'docs_20240101_000000.tar.gz'
        path.write_bytes(b'')

        assert ArchiveStore(dest_root).remove_partial(path) is True
        assert not path.exists()

    def test_missing_file(self, dest_root):
        assert ArchiveStore(dest_root).remove_partial(dest_root / 'nothing') is False
