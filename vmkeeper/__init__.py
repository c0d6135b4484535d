import os
import logging
from logging.handlers import RotatingFileHandler
from flask import Flask
from flask_sqlalchemy import SQLAlchemy


# Initialize extensions
db = SQLAlchemy()


def configure_logging(app):
    """Configure application logging"""

    # Create logs directory if it doesn't exist
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
        os.path.join(log_dir, 'vmkeeper.log'),
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

    # Configure Flask app logger
    app.logger.setLevel(log_level)
    app.logger.addHandler(console_handler)
    app.logger.addHandler(file_handler)

    app.logger.info(f"Logging configured (level: {logging.getLevelName(log_level)})")


def init_secrets(app):
    """Initialize the crypto manager used to decrypt enc: values in the backup settings"""
    from vmkeeper.utils.crypto import crypto_manager

    passphrase = app.config.get('SECRET_PASSPHRASE')
    salt = app.config.get('SECRET_SALT')

    if passphrase and salt:
        crypto_manager.initialize(passphrase, bytes.fromhex(salt))
        app.logger.info("Crypto manager initialized from VMKEEPER_PASSPHRASE")
    elif passphrase:
        app.logger.warning("VMKEEPER_PASSPHRASE is set without VMKEEPER_SALT - encrypted secrets cannot be read")
    else:
        app.logger.info("No passphrase configured - only plaintext secrets can be used")


def create_app(config_name=None, overrides=None):
    """Flask application factory"""

    app = Flask(__name__)

    # Load configuration
    if config_name is None:
        config_name = os.environ.get('FLASK_ENV', 'production')

    from vmkeeper.config import config
    app.config.from_object(config[config_name])
    if overrides:
        app.config.update(overrides)

    # Configure logging
    configure_logging(app)

    # Ensure the database directory exists
    db_uri = app.config['SQLALCHEMY_DATABASE_URI']
    if db_uri.startswith('sqlite:///') and ':memory:' not in db_uri:
        os.makedirs(os.path.dirname(db_uri.replace('sqlite:///', '')), exist_ok=True)

    # Initialize extensions
    db.init_app(app)

    # Register blueprints and CLI commands
    from vmkeeper.routes import runs_routes
    from vmkeeper import cli
    app.register_blueprint(runs_routes.bp)
    cli.register_commands(app)

    # Health check endpoint
    @app.route('/health')
    def health():
        return {'status': 'healthy'}, 200

    # Initialize database schema
    from vmkeeper import models
    from vmkeeper.migrations import init_database_schema
    init_database_schema(app)

    init_secrets(app)

    # Initialize and start scheduler (only in the designated scheduler process)
    from vmkeeper.scheduler import init_scheduler, start_scheduler, stop_scheduler
    import atexit

    is_scheduler_worker = os.environ.get('SCHEDULER_WORKER', 'true').lower() == 'true'

    if app.config.get('SCHEDULER_ENABLED', False) and is_scheduler_worker:
        app.logger.info("Initializing scheduler in this process...")
        if init_scheduler(app) is not None:
            start_scheduler()

            # Register cleanup function to stop scheduler on app shutdown
            atexit.register(stop_scheduler)
    else:
        app.logger.info("Scheduler initialization skipped in this process")

    return app
