# Process configuration for the asset server.  Every value can be set
# through the environment (docker-compose.yml in deployments); the
# defaults suit a local development run.
import os


def _bool(name, default='false'):
    return os.getenv(name, default).lower() in ('1', 'true', 'yes', 'y', 't')


def _list(name, default=''):
    return [item.strip() for item in os.getenv(name, default).split(',') if item.strip()]


def _optional_int(name):
    value = os.getenv(name)
    return int(value) if value else None


# Server
PORT = int(os.getenv('PORT', '8080'))
SERVER = os.getenv('SERVER', 'wsgiref')  # any bottle server adapter; 'paste' or 'gunicorn' in production
DEBUG_APP = _bool('DEBUG_APP')
LOG_LEVEL = os.getenv('LOG_LEVEL', 'INFO').upper()
LOG_FILE = os.getenv('LOG_FILE') or None

# Auth.  Admin endpoints require an HMAC token when KEY is set.
KEY = os.getenv('KEY') or None
TIME_TOLERANCE = _optional_int('TIME_TOLERANCE') or 600
WEBHOOK_SECRET = os.getenv('WEBHOOK_SECRET') or None

# Storage.  's3' reads the S3_* variables (see assetflow.storage_config).
STORAGE_BACKEND = os.getenv('STORAGE_BACKEND', 's3').lower()
LOCAL_ROOT = os.getenv('LOCAL_ROOT', './attachments')
PUBLIC_BASE_URL = os.getenv('PUBLIC_BASE_URL', f"http://localhost:{PORT}")

# Upload limits
GLOBAL_MAX_FILE_SIZE_MB = float(os.getenv('GLOBAL_MAX_FILE_SIZE_MB', '100'))
SIGNED_URL_EXPIRES_MINUTES = int(os.getenv('SIGNED_URL_EXPIRES_MINUTES', '15'))
FILE_SIZE_LIMITS = os.getenv('FILE_SIZE_LIMITS') or None

# Database
SQL_HOST = os.getenv('SQL_HOST', 'localhost')
SQL_PORT = int(os.getenv('SQL_PORT', '3306'))
SQL_USER = os.getenv('SQL_USER', 'root')
SQL_PASSWORD = os.getenv('SQL_PASSWORD', '')
SQL_DATABASE = os.getenv('SQL_DATABASE', 'assets')
SQL_POOL_SIZE = _optional_int('SQL_POOL_SIZE')

# Event ingress.  An empty SOURCE_PREFIXES means "the permanent location's prefix".
SOURCE_PREFIXES = _list('SOURCE_PREFIXES')
SOURCE_BUCKETS = _list('SOURCE_BUCKETS')
DERIVATIVE_PREFIX = os.getenv('DERIVATIVE_PREFIX', 'thumbs/')

# Derivative generation
DERIVATIVE_MAX_WORKERS = int(os.getenv('DERIVATIVE_MAX_WORKERS', '4'))
DERIVATIVE_TIMEOUT_SECONDS = float(os.getenv('DERIVATIVE_TIMEOUT_SECONDS', '120'))
