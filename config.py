# ==============================================================================
# config.py
# ------------------------------------------------------------------------------
# Configuration settings for the Flask application.
# Uses environment variables for sensitive data to keep them out of version control.
# ==============================================================================

import os
import tempfile
from dotenv import load_dotenv

# Determine the absolute path of the project directory
basedir = os.path.abspath(os.path.dirname(__file__))

# Load environment variables from a .env file located in the project root
load_dotenv(os.path.join(basedir, '.env'))


def _env_int(name, default):
    value = os.environ.get(name)
    return int(value) if value else default


class Config:
    """
    Base configuration class. Contains default settings that can be overridden
    by environment-specific configurations.
    """
    # --- Security ---
    SECRET_KEY = os.environ.get('SECRET_KEY') or 'you-should-really-set-a-secret-key-in-your-env-file'

    # Bearer tokens for the JSON API
    JWT_SECRET_KEY = os.environ.get('JWT_SECRET_KEY') or SECRET_KEY
    JWT_ALGORITHM = os.environ.get('JWT_ALGORITHM') or 'HS256'
    JWT_EXPIRES_MINUTES = _env_int('JWT_EXPIRES_MINUTES', 7 * 24 * 60)

    # Seeded administrator (see `flask seed`)
    ADMIN_EMAIL = os.environ.get('ADMIN_EMAIL') or 'admin@example.com'
    ADMIN_PASSWORD = os.environ.get('ADMIN_PASSWORD') or 'change-this-default-password'

    # --- Database Configuration ---
    # Postgres in production via DATABASE_URL, SQLite in the instance folder otherwise.
    SQLALCHEMY_DATABASE_URI = os.environ.get('DATABASE_URL') or \
        'sqlite:///' + os.path.join(basedir, 'instance/app.db')
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # --- CRM webhooks ---
    HUBSPOT_WEBHOOK_SECRET = os.environ.get('HUBSPOT_WEBHOOK_SECRET')
    WEBHOOK_MAX_AGE_SECONDS = _env_int('WEBHOOK_MAX_AGE_SECONDS', 300)
    WEBHOOK_EVENT_RETENTION_DAYS = _env_int('WEBHOOK_EVENT_RETENTION_DAYS', 30)

    # --- File Upload Configuration ---
    # Deal import files are staged here before validation.
    UPLOAD_FOLDER = os.path.join(basedir, 'instance/uploads')
    ALLOWED_EXTENSIONS = {'.xlsx', '.csv'}
    MAX_CONTENT_LENGTH = 16 * 1024 * 1024

    DEFAULT_CURRENCY = os.environ.get('DEFAULT_CURRENCY') or 'GBP'
    API_PAGE_SIZE = _env_int('API_PAGE_SIZE', 50)


class TestConfig(Config):
    """Configuration used by the test-suite: in-memory database, fixed secrets."""
    TESTING = True
    SQLALCHEMY_DATABASE_URI = 'sqlite:///:memory:'
    SECRET_KEY = 'test-secret-key-which-is-long-enough-for-hmac'
    JWT_SECRET_KEY = 'test-jwt-secret-key-which-is-long-enough-for-hs256'
    HUBSPOT_WEBHOOK_SECRET = 'test-hubspot-webhook-secret'
    ADMIN_EMAIL = 'admin@example.com'
    ADMIN_PASSWORD = 'admin-password'
    UPLOAD_FOLDER = os.path.join(tempfile.gettempdir(), 'commission-tracker-test-uploads')
