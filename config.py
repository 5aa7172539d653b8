"""Configuration module for Flask application."""
import os
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()


class Config:
    """Base configuration class."""

    # Flask
    SECRET_KEY = os.getenv('SECRET_KEY', 'dev-secret-key-change-in-production')
    DEBUG = os.getenv('FLASK_DEBUG', '1') == '1'
    ENV = os.getenv('FLASK_ENV', 'development')
    TESTING = False

    # Session Configuration (Production-safe defaults)
    SESSION_COOKIE_SECURE = os.getenv('SESSION_COOKIE_SECURE', 'false').lower() == 'true'
    SESSION_COOKIE_HTTPONLY = True
    SESSION_COOKIE_SAMESITE = os.getenv('SESSION_COOKIE_SAMESITE', 'Lax')
    PERMANENT_SESSION_LIFETIME = 86400  # 24 hours

    # Public URL of the storefront (payment link redirects)
    APP_URL = os.getenv('APP_URL', 'http://localhost:5000')

    # Database - Support multiple environment variable naming conventions
    # Priority: DATABASE_URL > DB_* > POSTGRES_*
    DATABASE_URL = os.getenv('DATABASE_URL')

    if not DATABASE_URL:
        # Try DB_* variables (Docker style)
        DB_HOST = os.getenv('DB_HOST') or os.getenv('POSTGRES_HOST', 'localhost')
        DB_PORT = os.getenv('DB_PORT') or os.getenv('POSTGRES_PORT', '5432')
        DB_NAME = os.getenv('DB_NAME') or os.getenv('POSTGRES_DB', 'storefront')
        DB_USER = os.getenv('DB_USER') or os.getenv('POSTGRES_USER', 'storefront')
        DB_PASSWORD = os.getenv('DB_PASSWORD') or os.getenv('POSTGRES_PASSWORD', 'storefront')

        DATABASE_URL = (
            f"postgresql+psycopg://{DB_USER}:{DB_PASSWORD}"
            f"@{DB_HOST}:{DB_PORT}/{DB_NAME}"
        )

    # SQLAlchemy
    SQLALCHEMY_DATABASE_URI = DATABASE_URL
    SQLALCHEMY_ECHO = os.getenv('SQLALCHEMY_ECHO', 'false').lower() == 'true'

    # Pricing defaults (overridable at runtime through the `setting` table)
    TAX_RATE = os.getenv('TAX_RATE', '0.21')  # IVA 21%
    FREE_SHIPPING_THRESHOLD = os.getenv('FREE_SHIPPING_THRESHOLD', '100')
    POINTS_PER_EURO = os.getenv('POINTS_PER_EURO', '1')
    EXTRAS_PRICING_POLICY = os.getenv('EXTRAS_PRICING_POLICY', 'meter_table')

    # Quotes (presupuestos)
    QUOTE_VALID_DAYS = int(os.getenv('QUOTE_VALID_DAYS', '15'))

    # Payments (Stripe payment links)
    STRIPE_SECRET_KEY = os.getenv('STRIPE_SECRET_KEY', '')
    STRIPE_API_BASE = os.getenv('STRIPE_API_BASE', 'https://api.stripe.com')
    STRIPE_CURRENCY = os.getenv('STRIPE_CURRENCY', 'eur')

    # Cron endpoints (expire quotes, voucher expiration)
    CRON_SECRET = os.getenv('CRON_SECRET')

    # Email configuration
    MAIL_SERVER = os.getenv('SMTP_HOST', 'smtp.gmail.com')
    MAIL_PORT = int(os.getenv('SMTP_PORT', 587))
    MAIL_USE_TLS = True
    MAIL_USE_SSL = False
    MAIL_USERNAME = os.getenv('SMTP_USER') or ''
    MAIL_PASSWORD = os.getenv('SMTP_PASSWORD') or ''
    MAIL_DEFAULT_SENDER = (
        os.getenv('SMTP_FROM')
        or MAIL_USERNAME
        or 'no-reply@localhost'
    )
    MAIL_SUPPRESS_SEND = False
    ADMIN_EMAIL = os.getenv('ADMIN_EMAIL', '')

    # Redis Cache Configuration
    # Shared layer for runtime settings (ConfigProvider)
    REDIS_URL = os.getenv('REDIS_URL', 'redis://redis:6379/0')
    CACHE_ENABLED = os.getenv('CACHE_ENABLED', 'true').lower() == 'true'
    CACHE_DEFAULT_TTL = int(os.getenv('CACHE_DEFAULT_TTL', '60'))  # seconds
    CACHE_KEY_PREFIX = os.getenv('CACHE_KEY_PREFIX', 'storefront')
    CONFIG_CACHE_TTL = int(os.getenv('CONFIG_CACHE_TTL', '300'))  # 5 minutes


class TestingConfig(Config):
    """Configuration used by the test suite (SQLite, no Redis, no SMTP)."""

    TESTING = True
    DEBUG = False
    WTF_CSRF_ENABLED = False
    SQLALCHEMY_DATABASE_URI = os.getenv('TEST_DATABASE_URL', 'sqlite:///:memory:')
    SQLALCHEMY_ECHO = False
    CACHE_ENABLED = False
    MAIL_SUPPRESS_SEND = True
    CRON_SECRET = 'test-cron-secret'
    STRIPE_SECRET_KEY = 'sk_test_dummy'
