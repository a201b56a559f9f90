import os
import logging
from logging.handlers import RotatingFileHandler
from flask import Flask
from flask_sqlalchemy import SQLAlchemy
from flask_login import LoginManager
from sqlalchemy.exc import OperationalError


# Initialize extensions
db = SQLAlchemy()
login_manager = LoginManager()


def configure_logging(app):
    """Configure application logging"""

    log_dir = app.config['LOG_DIR']
    os.makedirs(log_dir, exist_ok=True)

    # Set log level based on environment
    log_level = logging.DEBUG if app.config.get('DEBUG', False) else logging.INFO

    # Console handler
    console_handler = logging.StreamHandler()
    console_handler.setLevel(log_level)
    console_formatter = logging.Formatter(
        '[%(asctime)s] %(levelname)s in %(module)s: %(message)s'
    )
    console_handler.setFormatter(console_formatter)

    # File handler
    file_handler = RotatingFileHandler(
        os.path.join(log_dir, 'backups.log'),
        maxBytes=10485760,  # 10MB
        backupCount=10
    )
    file_handler.setLevel(log_level)
    file_formatter = logging.Formatter(
        '[%(asctime)s] %(levelname)s [%(name)s.%(funcName)s:%(lineno)d] %(message)s'
    )
    file_handler.setFormatter(file_formatter)

    # Configure root logger
    logging.basicConfig(level=log_level, handlers=[console_handler, file_handler])

    # Flask's logger is named 'app', the parent of every module logger here;
    # it reaches the handlers through the root logger.
    app.logger.setLevel(log_level)

    app.logger.info(f"Logging configured (level: {logging.getLevelName(log_level)})")


def init_database_schema(app):
    """
    Create the backup log table if it does not exist yet.

    Safe to call from several workers at once.
    """
    with app.app_context():
        try:
            db.create_all()
        except OperationalError as e:
            # Another worker created the table first
            app.logger.warning(f"Database schema creation raced with another worker: {e}")


def create_app(config_name=None, test_config=None):
    """Flask application factory"""

    app = Flask(__name__)

    # Load configuration
    if config_name is None:
        config_name = os.environ.get('FLASK_ENV', 'production')

    from app.config import config
    app.config.from_object(config[config_name])

    if test_config:
        app.config.update(test_config)

    # Configure logging
    configure_logging(app)

    # Ensure required directories exist
    os.makedirs(app.config['TEMP_DIR'], exist_ok=True)
    if app.config['BACKUP_STORAGE'] == 'local':
        os.makedirs(app.config['LOCAL_BACKUP_DIR'], exist_ok=True)
    db_uri = app.config['SQLALCHEMY_DATABASE_URI']
    if db_uri.startswith('sqlite:///') and db_uri != 'sqlite:///:memory:':
        os.makedirs(os.path.dirname(db_uri.replace('sqlite:///', '')) or '.', exist_ok=True)

    # Initialize extensions
    db.init_app(app)
    login_manager.init_app(app)

    from app.auth import load_operator_from_request
    login_manager.request_loader(load_operator_from_request)

    # Register blueprints
    from app.routes import backups_routes
    app.register_blueprint(backups_routes.bp)

    # Health check endpoint
    @app.route('/health')
    def health():
        return {'status': 'healthy'}, 200

    # Initialize database schema
    from app import models
    init_database_schema(app)

    # Wire the backup service (storage, exporter, log, retention, scheduler)
    from app.scheduler import init_backup_service
    backup_scheduler = init_backup_service(app)

    # Only the designated worker runs the scheduler (see docker/gunicorn_conf.py)
    import atexit

    is_scheduler_worker = os.environ.get('SCHEDULER_WORKER', 'true').lower() == 'true'
    should_start_scheduler = app.config.get('SCHEDULER_ENABLED', True) and is_scheduler_worker

    if app.config.get('DEBUG', False) and not app.config.get('TESTING', False):
        # Flask reloader: only the child process runs jobs
        should_start_scheduler = should_start_scheduler and os.environ.get('WERKZEUG_RUN_MAIN') == 'true'

    if should_start_scheduler:
        app.logger.info("Starting backup scheduler in this process...")
        backup_scheduler.start()
        atexit.register(backup_scheduler.stop)
    else:
        app.logger.info("Backup scheduler not started in this process (not designated scheduler worker)")

    return app
