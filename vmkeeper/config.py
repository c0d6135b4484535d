import os


class Config:
    """Base configuration"""

    # Database
    SQLALCHEMY_DATABASE_URI = os.environ.get('DATABASE_URL') or 'sqlite:////data/vmkeeper.db'
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Backup settings document (VMs, targets, remotes, notification)
    BACKUP_CONFIG_FILE = os.environ.get('BACKUP_CONFIG_FILE') or '/data/backup.json'

    # Application log (the per-run logs live under the backup settings log_path)
    LOG_DIR = os.environ.get('LOG_DIR') or '/data/logs'

    # Secrets stored as enc:<token> in the backup settings are decrypted with these
    SECRET_PASSPHRASE = os.environ.get('VMKEEPER_PASSPHRASE')
    SECRET_SALT = os.environ.get('VMKEEPER_SALT')

    # Scheduler
    SCHEDULER_ENABLED = os.environ.get('SCHEDULER_ENABLED', 'true').lower() == 'true'
    SCHEDULER_TIMEZONE = os.environ.get('SCHEDULER_TIMEZONE') or 'UTC'


class DevelopmentConfig(Config):
    """Development configuration"""
    DEBUG = True
    SQLALCHEMY_ECHO = False

    # Use local data directory for development
    BASE_DIR = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))
    DATA_DIR = os.path.join(BASE_DIR, 'data')
    SQLALCHEMY_DATABASE_URI = f'sqlite:///{os.path.join(DATA_DIR, "vmkeeper.db")}'
    BACKUP_CONFIG_FILE = os.environ.get('BACKUP_CONFIG_FILE') or os.path.join(DATA_DIR, 'backup.json')
    LOG_DIR = os.path.join(DATA_DIR, 'logs')


class ProductionConfig(Config):
    """Production configuration"""
    DEBUG = False
    SQLALCHEMY_ECHO = False


class TestingConfig(Config):
    """Test configuration (in-memory database, no background scheduler)"""
    TESTING = True
    DEBUG = False
    SQLALCHEMY_DATABASE_URI = 'sqlite:///:memory:'
    SCHEDULER_ENABLED = False


# Configuration dictionary
config = {
    'development': DevelopmentConfig,
    'production': ProductionConfig,
    'testing': TestingConfig,
    'default': ProductionConfig
}
