import os


def _env_list(name, default):
    value = os.environ.get(name)
    if value is None:
        return list(default)
    return [item.strip() for item in value.split(',') if item.strip()]


class Config:
    """Base configuration"""

    # Flask
    SECRET_KEY = os.environ.get('SECRET_KEY') or os.urandom(32).hex()

    # Backup log database
    SQLALCHEMY_DATABASE_URI = os.environ.get('DATABASE_URL') or 'sqlite:////data/backups.db'
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Finance data store that gets snapshotted (defaults to the same database)
    FINANCE_DATABASE_URL = os.environ.get('FINANCE_DATABASE_URL') or SQLALCHEMY_DATABASE_URI
    BACKUP_EXCLUDE_TABLES = _env_list('BACKUP_EXCLUDE_TABLES', ['backup_log'])

    # Artifact storage
    BACKUP_STORAGE = os.environ.get('BACKUP_STORAGE', 'local')
    TEMP_DIR = os.environ.get('TEMP_DIR') or '/data/temp'
    LOCAL_BACKUP_DIR = os.environ.get('LOCAL_BACKUP_DIR') or '/data/local_backups'
    BACKUP_COMPRESSION_FORMAT = os.environ.get('BACKUP_COMPRESSION_FORMAT', 'tar.gz')

    # S3 (credentials fall back to the boto3 default chain when unset)
    S3_BUCKET = os.environ.get('S3_BUCKET')
    S3_REGION = os.environ.get('S3_REGION', 'us-east-1')
    S3_PREFIX = os.environ.get('S3_PREFIX', 'backups')
    AWS_ACCESS_KEY_ID = os.environ.get('AWS_ACCESS_KEY_ID')
    AWS_SECRET_ACCESS_KEY = os.environ.get('AWS_SECRET_ACCESS_KEY')

    # Retention
    BACKUP_KEEP_DAILY = int(os.environ.get('BACKUP_KEEP_DAILY', 7))
    BACKUP_KEEP_WEEKLY = int(os.environ.get('BACKUP_KEEP_WEEKLY', 4))

    # Scheduler
    SCHEDULER_TIMEZONE = 'UTC'
    SCHEDULER_ENABLED = os.environ.get('SCHEDULER_ENABLED', 'true').lower() == 'true'

    # Operator API
    BACKUP_ADMIN_TOKEN = os.environ.get('BACKUP_ADMIN_TOKEN')

    # Logging
    LOG_DIR = os.environ.get('LOG_DIR') or os.path.join(
        os.path.dirname(os.path.dirname(__file__)), 'data', 'logs'
    )


class DevelopmentConfig(Config):
    """Development configuration"""
    DEBUG = True

    # Use local data directory for development
    BASE_DIR = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))
    DATA_DIR = os.path.join(BASE_DIR, 'data')
    SQLALCHEMY_DATABASE_URI = f'sqlite:///{os.path.join(DATA_DIR, "backups.db")}'
    FINANCE_DATABASE_URL = os.environ.get('FINANCE_DATABASE_URL') or SQLALCHEMY_DATABASE_URI
    TEMP_DIR = os.path.join(DATA_DIR, 'temp')
    LOCAL_BACKUP_DIR = os.path.join(DATA_DIR, 'local_backups')


class ProductionConfig(Config):
    """Production configuration"""
    DEBUG = False


class TestingConfig(Config):
    """Test configuration - in-memory log, no background scheduler"""
    TESTING = True
    DEBUG = False
    SQLALCHEMY_DATABASE_URI = 'sqlite:///:memory:'
    FINANCE_DATABASE_URL = 'sqlite:///:memory:'
    SCHEDULER_ENABLED = False
    BACKUP_STORAGE = 'local'
    BACKUP_ADMIN_TOKEN = 'test-admin-token'
    BACKUP_KEEP_DAILY = 7
    BACKUP_KEEP_WEEKLY = 4


# Configuration dictionary
config = {
    'development': DevelopmentConfig,
    'production': ProductionConfig,
    'testing': TestingConfig,
    'default': ProductionConfig
}
