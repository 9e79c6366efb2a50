import os
from datetime import timedelta


# Tables exported when BACKUP_RECORD_SETS is not set
DEFAULT_RECORD_SETS = [
    'products',
    'categories',
    'customers',
    'orders',
    'order_items',
    'cart_items',
    'invoices',
    'invoice_items',
    'user_roles',
]


def _env_list(name, default=None):
    """Read a comma separated environment variable into a list of names."""
    value = os.environ.get(name)
    if value is None:
        return list(default or [])
    return [item.strip() for item in value.split(',') if item.strip()]


def _env_flag(name, default='false'):
    return os.environ.get(name, default).lower() == 'true'


class Config:
    """Base configuration"""

    # Flask
    # Get SECRET_KEY from environment, or generate a non-persistent one
    SECRET_KEY = os.environ.get('SECRET_KEY')
    if not SECRET_KEY:
        import secrets
        SECRET_KEY = secrets.token_hex(32)
        print("WARNING: Using non-persistent SECRET_KEY. Set SECRET_KEY environment variable.")

    # Database (users and backup history)
    SQLALCHEMY_DATABASE_URI = os.environ.get('DATABASE_URL') or 'sqlite:////data/tenant_backup.db'
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Tenant data store (record sets); None means the application database
    TENANT_DATABASE_URL = os.environ.get('TENANT_DATABASE_URL')

    # Bearer tokens
    JWT_ALGORITHM = 'HS256'
    TOKEN_TTL = timedelta(minutes=int(os.environ.get('TOKEN_TTL_MINUTES', 60)))

    # Object storage (S3 or any S3-compatible endpoint)
    S3_ENDPOINT_URL = os.environ.get('S3_ENDPOINT_URL')
    S3_REGION = os.environ.get('S3_REGION', 'us-east-1')
    AWS_ACCESS_KEY_ID = os.environ.get('AWS_ACCESS_KEY_ID')
    AWS_SECRET_ACCESS_KEY = os.environ.get('AWS_SECRET_ACCESS_KEY')

    # Backup catalog
    BACKUP_RECORD_SETS = _env_list('BACKUP_RECORD_SETS', DEFAULT_RECORD_SETS)
    BACKUP_CONTAINERS = _env_list('BACKUP_CONTAINERS')
    BACKUP_DISCOVER_CONTAINERS = _env_flag('BACKUP_DISCOVER_CONTAINERS')

    # Backup pipeline tuning
    BACKUP_COMPRESSION_LEVEL = int(os.environ.get('BACKUP_COMPRESSION_LEVEL', 9))
    BACKUP_FETCH_WORKERS = int(os.environ.get('BACKUP_FETCH_WORKERS', 4))
    BACKUP_FETCH_QUEUE_SIZE = int(os.environ.get('BACKUP_FETCH_QUEUE_SIZE', 8))
    BACKUP_OBJECT_BUFFER_LIMIT = int(os.environ.get('BACKUP_OBJECT_BUFFER_LIMIT', 32 * 1024 * 1024))
    BACKUP_CHUNK_SIZE = int(os.environ.get('BACKUP_CHUNK_SIZE', 1024 * 1024))
    BACKUP_INCLUDE_MANIFEST = _env_flag('BACKUP_INCLUDE_MANIFEST', 'true')

    # Logging
    LOG_DIR = os.environ.get('LOG_DIR') or '/data/logs'


class DevelopmentConfig(Config):
    """Development configuration"""
    DEBUG = True
    SQLALCHEMY_ECHO = True

    # Use local data directory for development
    BASE_DIR = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))
    DATA_DIR = os.path.join(BASE_DIR, 'data')
    SQLALCHEMY_DATABASE_URI = f'sqlite:///{os.path.join(DATA_DIR, "tenant_backup.db")}'
    LOG_DIR = os.path.join(DATA_DIR, 'logs')


class ProductionConfig(Config):
    """Production configuration"""
    DEBUG = False
    SQLALCHEMY_ECHO = False


class TestingConfig(Config):
    """Test configuration (in-memory database, console logging only)"""
    TESTING = True
    DEBUG = False
    SECRET_KEY = 'test-secret-key'
    SQLALCHEMY_DATABASE_URI = 'sqlite:///:memory:'
    LOG_DIR = None
    BACKUP_RECORD_SETS = ['products', 'customers']
    BACKUP_CONTAINERS = ['avatars']
    BACKUP_DISCOVER_CONTAINERS = False
    BACKUP_FETCH_WORKERS = 2
    BACKUP_FETCH_QUEUE_SIZE = 2
    S3_ENDPOINT_URL = None
    AWS_ACCESS_KEY_ID = 'testing'
    AWS_SECRET_ACCESS_KEY = 'testing'


# Configuration dictionary
config = {
    'development': DevelopmentConfig,
    'production': ProductionConfig,
    'testing': TestingConfig,
    'default': ProductionConfig
}
