import os
import tempfile


def _env_bool(name: str, default: str = 'false') -> bool:
    return os.environ.get(name, default).lower() in ('1', 'true', 'yes')


class Config:
    """Base configuration"""

    # Database (run history)
    SQLALCHEMY_DATABASE_URI = os.environ.get('DATABASE_URL') or 'sqlite:////data/pgshuttle.db'
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Temp files for dumps in transit
    TEMP_DIR = os.environ.get('TEMP_DIR') or '/data/temp'
    LOG_DIR = os.environ.get('LOG_DIR') or '/data/logs'

    # Scheduler
    SCHEDULER_ENABLED = _env_bool('SCHEDULER_WORKER', 'true')
    SCHEDULER_TIMEZONE = 'UTC'
    PIPELINE_KIND = os.environ.get('PIPELINE_KIND', 'restore')
    CRON_SCHEDULE = os.environ.get('CRON_SCHEDULE', '0 3 * * *')
    RUN_ON_STARTUP = _env_bool('RUN_ON_STARTUP')

    # Object store
    S3_BUCKET = os.environ.get('S3_BUCKET')
    S3_REGION = os.environ.get('S3_REGION')
    S3_ENDPOINT_URL = os.environ.get('S3_ENDPOINT_URL')
    AWS_ACCESS_KEY_ID = os.environ.get('AWS_ACCESS_KEY_ID')
    AWS_SECRET_ACCESS_KEY = os.environ.get('AWS_SECRET_ACCESS_KEY')
    ARTIFACT_PREFIX = os.environ.get('ARTIFACT_PREFIX', 'backup-')
    ARTIFACT_SUFFIX = os.environ.get('ARTIFACT_SUFFIX', '.dump')

    # Databases
    SOURCE_DATABASE_URL = os.environ.get('SOURCE_DATABASE_URL')
    TARGET_DATABASE_URL = os.environ.get('TARGET_DATABASE_URL')
    TARGET_SCHEMA = os.environ.get('TARGET_SCHEMA', 'public')
    VERIFY_CONNECTION = _env_bool('VERIFY_CONNECTION', 'true')

    # Retry and timeouts (seconds)
    RETRY_MAX_ATTEMPTS = os.environ.get('RETRY_MAX_ATTEMPTS', '3')
    RETRY_INITIAL_DELAY = os.environ.get('RETRY_INITIAL_DELAY', '5')
    RETRY_BACKOFF_MULTIPLIER = os.environ.get('RETRY_BACKOFF_MULTIPLIER', '2')
    COMMAND_TIMEOUT = os.environ.get('COMMAND_TIMEOUT', '60')
    RESTORE_TIMEOUT = os.environ.get('RESTORE_TIMEOUT', '1200')  # 20 minutes
    DUMP_TIMEOUT = os.environ.get('DUMP_TIMEOUT', '1200')
    MAX_OUTPUT_BYTES = os.environ.get('MAX_OUTPUT_BYTES', str(500 * 1024 * 1024))


class DevelopmentConfig(Config):
    """Development configuration"""
    DEBUG = True

    # Use local data directory for development
    BASE_DIR = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))
    DATA_DIR = os.path.join(BASE_DIR, 'data')
    SQLALCHEMY_DATABASE_URI = f'sqlite:///{os.path.join(DATA_DIR, "pgshuttle.db")}'
    TEMP_DIR = os.path.join(DATA_DIR, 'temp')
    LOG_DIR = os.path.join(DATA_DIR, 'logs')


class ProductionConfig(Config):
    """Production configuration"""
    DEBUG = False


class TestingConfig(DevelopmentConfig):
    """Test suite configuration"""
    DEBUG = False
    TESTING = True
    SQLALCHEMY_DATABASE_URI = 'sqlite:///:memory:'
    TEMP_DIR = os.path.join(tempfile.gettempdir(), 'pgshuttle-test', 'temp')
    LOG_DIR = os.path.join(tempfile.gettempdir(), 'pgshuttle-test', 'logs')
    SCHEDULER_ENABLED = False
    RUN_ON_STARTUP = False
    RETRY_INITIAL_DELAY = '0'


# Configuration dictionary
config = {
    'development': DevelopmentConfig,
    'production': ProductionConfig,
    'testing': TestingConfig,
    'default': ProductionConfig
}
