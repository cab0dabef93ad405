"""
Shared pytest fixtures for rotaback tests.

This module provides fixtures for:
- Flask app and test client
- Database setup with in-memory SQLite
- Backup job fixtures
- Source directory and destination root fixtures
- A controllable clock and archive-planting helpers
"""

from datetime import datetime, timedelta

import pytest

from rotaback import create_app, db as _db
from rotaback.models import BackupJob
from rotaback.backup.naming import build_name


class FixedClock:
    """Clock returning a fixed time, advanced explicitly by tests."""

    def __init__(self, now=datetime(2024, 1, 15, 12, 0, 0)):
        self.current = now

    def now(self):
        return self.current

    def advance(self, seconds=1):
        self.current += timedelta(seconds=seconds)


@pytest.fixture(scope='function')
def app(tmp_path):
    """
    Create Flask app with test configuration.

    Uses in-memory SQLite database and a per-test destination root.
    """
    app = create_app('testing')

    dest_dir = tmp_path / 'backups'
    dest_dir.mkdir()
    app.config.update({
        'BACKUP_DEST_DIR': str(dest_dir),
    })

    yield app


@pytest.fixture(scope='function')
def db(app):
    """
    Create database with all tables.

    Each test gets a fresh database.
    """
    with app.app_context():
        _db.create_all()
        yield _db
        _db.session.remove()
        _db.drop_all()


@pytest.fixture(scope='function')
def client(app, db):
    """Flask test client for making HTTP requests."""
    return app.test_client()


@pytest.fixture(scope='function')
def runner(app):
    """Flask CLI test runner."""
    return app.test_cli_runner()


@pytest.fixture
def clock():
    return FixedClock()


@pytest.fixture
def dest_root(tmp_path):
    """Empty destination root for engine tests."""
    root = tmp_path / 'dest'
    root.mkdir()
    return root


@pytest.fixture
def source_dir(tmp_path):
    """
    Create a source directory named 'docs' with a few files.

    Creates:
    - docs/readme.txt
    - docs/guide.md
    - docs/nested/chapter1.txt
    """
    source = tmp_path / 'src' / 'docs'
    source.mkdir(parents=True)
    (source / 'readme.txt').write_text('Read me')
    (source / 'guide.md').write_text('# Guide')

    nested = source / 'nested'
    nested.mkdir()
    (nested / 'chapter1.txt').write_text('Chapter one')

    return source


@pytest.fixture
def make_archives():
    """
    Plant fake archives of one source in a directory.

    Returns a function (root, source_name, count, start, step) -> list of paths,
    with timestamps ascending from start.
    """
    def _make(root, source_name, count, start=datetime(2024, 1, 1, 0, 0, 0), step=timedelta(hours=1)):
        paths = []
        for i in range(count):
            path = root / build_name(source_name, start + step * i)
            path.write_bytes(b'archive data')
            paths.append(path)
        return paths

    return _make


@pytest.fixture(scope='function')
def backup_job(db, source_dir, app):
    """
    Create a backup job with one local source, keeping 3 archives.
    """
    job = BackupJob(
        name='test_docs_backup',
        description='Test docs backup job',
        enabled=True,
        destination_dir=app.config['BACKUP_DEST_DIR'],
        max_archives=3,
        schedule_cron='0 2 * * *'  # Daily at 2 AM
    )
    job.set_source_paths([str(source_dir)])
    db.session.add(job)
    db.session.commit()
    return job
