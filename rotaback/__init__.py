import os
import logging
from logging.handlers import RotatingFileHandler
from flask import Flask, jsonify
from flask_sqlalchemy import SQLAlchemy
from sqlalchemy import inspect


# Initialize extensions
db = SQLAlchemy()

logger = logging.getLogger(__name__)


def configure_logging(app):
    """Configure application logging"""

    # Set log level based on environment
    log_level = logging.DEBUG if app.config.get('DEBUG', False) else logging.INFO

    # Console handler
    console_handler = logging.StreamHandler()
    console_handler.setLevel(log_level)
    console_formatter = logging.Formatter(
        '[%(asctime)s] %(levelname)s in %(module)s: %(message)s'
    )
    console_handler.setFormatter(console_formatter)
    handlers = [console_handler]

    # File handler, when a log directory is configured
    log_dir = app.config.get('LOG_DIR')
    if log_dir:
        os.makedirs(log_dir, exist_ok=True)
        file_handler = RotatingFileHandler(
            os.path.join(log_dir, 'rotaback.log'),
            maxBytes=10485760,  # 10MB
            backupCount=10
        )
        file_handler.setLevel(log_level)
        file_formatter = logging.Formatter(
            '[%(asctime)s] %(levelname)s [%(name)s.%(funcName)s:%(lineno)d] %(message)s'
        )
        file_handler.setFormatter(file_formatter)
        handlers.append(file_handler)

    # Configure root logger
    logging.basicConfig(level=log_level, handlers=handlers)

    app.logger.setLevel(log_level)
    app.logger.info(f"Logging configured (level: {logging.getLevelName(log_level)})")


def init_database_schema(app):
    """
    Create tables if they don't exist.

    Safe to call from several workers at once: a worker that loses the race
    to create the schema logs the error and continues.
    """
    with app.app_context():
        existing_tables = inspect(db.engine).get_table_names()

        if 'backup_jobs' in existing_tables:
            return

        logger.info("No tables found - creating database schema")
        try:
            db.create_all()
            logger.info("Database schema created successfully")
        except Exception as e:
            logger.error(f"Failed to create database schema: {e}")


def create_app(config_name=None, start_scheduler=None):
    """
    Flask application factory

    Args:
        config_name: Key of rotaback.config.config (default: $FLASK_ENV or 'production')
        start_scheduler: Override SCHEDULER_ENABLED (the CLI passes False)
    """
    app = Flask(__name__)

    # Load configuration
    if config_name is None:
        config_name = os.environ.get('FLASK_ENV', 'production')

    from rotaback.config import config
    app.config.from_object(config[config_name])

    # Configure logging
    configure_logging(app)

    # Ensure required directories exist
    os.makedirs(app.config['BACKUP_DEST_DIR'], exist_ok=True)
    database_uri = app.config['SQLALCHEMY_DATABASE_URI']
    if database_uri.startswith('sqlite:///') and ':memory:' not in database_uri:
        database_dir = os.path.dirname(database_uri.replace('sqlite:///', ''))
        if database_dir:
            os.makedirs(database_dir, exist_ok=True)

    # Initialize extensions
    db.init_app(app)

    # Register blueprints
    from rotaback.routes import dashboard_routes, jobs_routes, runs_routes
    app.register_blueprint(dashboard_routes.bp)
    app.register_blueprint(jobs_routes.bp)
    app.register_blueprint(runs_routes.bp)

    # CLI commands
    from rotaback.cli import backup_cli
    app.cli.add_command(backup_cli)

    # Health check endpoint
    @app.route('/health')
    def health():
        return jsonify({'status': 'healthy'}), 200

    from rotaback import models  # noqa: F401 (register tables)
    init_database_schema(app)

    if start_scheduler is None:
        start_scheduler = app.config.get('SCHEDULER_ENABLED', False)

    # Development server: only the reloader child runs the scheduler
    if start_scheduler and app.config.get('DEBUG', False):
        start_scheduler = os.environ.get('WERKZEUG_RUN_MAIN') == 'true'

    if start_scheduler:
        from rotaback.scheduler import init_scheduler, start_scheduler as start, sync_backup_jobs, stop_scheduler
        import atexit

        app.logger.info("Initializing scheduler in this process...")
        init_scheduler(app)
        start()

        # Sync backup jobs from database to scheduler
        with app.app_context():
            sync_backup_jobs()

        # Register cleanup function to stop scheduler on app shutdown
        atexit.register(stop_scheduler)
        app.logger.info("Scheduler initialized and started successfully")
    else:
        app.logger.info("Scheduler initialization skipped in this process")

    return app
