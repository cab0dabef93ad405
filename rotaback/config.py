import os
import tempfile


def _env_int(name, default):
    value = os.environ.get(name)
    return int(value) if value else default


def _env_float(name, default=None):
    value = os.environ.get(name)
    return float(value) if value else default


class Config:
    """Base configuration"""

    # Database (run history only; archives on disk are the source of truth)
    SQLALCHEMY_DATABASE_URI = os.environ.get('DATABASE_URL') or 'sqlite:////data/rotaback.db'
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Backups
    BACKUP_DEST_DIR = os.environ.get('BACKUP_DEST_DIR') or '/data/backups'
    MAX_ARCHIVES_PER_SOURCE = _env_int('MAX_ARCHIVES_PER_SOURCE', 7)
    ARCHIVE_TIMEOUT_SECONDS = _env_float('ARCHIVE_TIMEOUT_SECONDS')
    BACKUP_WORKERS = _env_int('BACKUP_WORKERS', 1)

    # Logging (None = console only)
    LOG_DIR = os.environ.get('LOG_DIR') or '/data/logs'

    # Scheduler
    SCHEDULER_ENABLED = os.environ.get('SCHEDULER_ENABLED', 'true').lower() == 'true'
    SCHEDULER_TIMEZONE = os.environ.get('SCHEDULER_TIMEZONE') or 'UTC'
    SCHEDULER_THREADS = _env_int('SCHEDULER_THREADS', 3)


class DevelopmentConfig(Config):
    """Development configuration"""
    DEBUG = True
    SQLALCHEMY_ECHO = True

    # Use local data directory for development
    BASE_DIR = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))
    DATA_DIR = os.path.join(BASE_DIR, 'data')
    SQLALCHEMY_DATABASE_URI = f'sqlite:///{os.path.join(DATA_DIR, "rotaback.db")}'
    BACKUP_DEST_DIR = os.path.join(DATA_DIR, 'backups')
    LOG_DIR = os.path.join(DATA_DIR, 'logs')


class ProductionConfig(Config):
    """Production configuration"""
    DEBUG = False
    SQLALCHEMY_ECHO = False


class TestingConfig(Config):
    """Test configuration: in-memory database, no scheduler, console logging"""
    TESTING = True
    DEBUG = False
    SQLALCHEMY_DATABASE_URI = 'sqlite:///:memory:'
    BACKUP_DEST_DIR = os.path.join(tempfile.gettempdir(), 'rotaback-test-backups')
    LOG_DIR = None
    SCHEDULER_ENABLED = False
    MAX_ARCHIVES_PER_SOURCE = 7
    ARCHIVE_TIMEOUT_SECONDS = None
    BACKUP_WORKERS = 1


# Configuration dictionary
config = {
    'development': DevelopmentConfig,
    'production': ProductionConfig,
    'testing': TestingConfig,
    'default': ProductionConfig
}
