import os
from dotenv import load_dotenv

load_dotenv()


def _database_url():
    database_url = os.environ.get('DATABASE_URL')
    if not database_url:
        raise ValueError("DATABASE_URL is not set in .env file")
    if database_url.startswith('postgres://'):
        database_url = database_url.replace('postgres://', 'postgresql://', 1)
    return database_url


def _env_flag(name, default='false'):
    return os.environ.get(name, default).lower() in ('1', 'true', 'yes')


class Config:
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SECRET_KEY = os.environ.get('SECRET_KEY', 'xYz9wV1uT0sR9qP8oN7mL6kJ5iH4gF3eD2cB1a')
    CORS_ORIGINS = [o for o in os.environ.get('CORS_ORIGINS', 'http://localhost:3000').split(',') if o]

    SESSION_TYPE = 'sqlalchemy'
    SESSION_PERMANENT = False
    SESSION_COOKIE_SECURE = True
    SESSION_COOKIE_HTTPONLY = True
    SESSION_COOKIE_SAMESITE = 'Lax'

    # Background sweeps (reservation expiry, overdue reminders)
    SCHEDULER_ENABLED = _env_flag('SCHEDULER_ENABLED', 'true')
    SCHEDULER_TIMEZONE = os.environ.get('SCHEDULER_TIMEZONE', 'UTC')

    # Transaction wrapper retries OperationalError this many times
    TX_MAX_ATTEMPTS = int(os.environ.get('TX_MAX_ATTEMPTS', 3))
    TX_RETRY_DELAY = float(os.environ.get('TX_RETRY_DELAY', 1))

    NOTIFICATION_RETENTION_DAYS = int(os.environ.get('NOTIFICATION_RETENTION_DAYS', 30))
    LOG_LEVEL = os.environ.get('LOG_LEVEL', 'DEBUG')

    def __init__(self):
        self.SQLALCHEMY_DATABASE_URI = _database_url()
        self.SQLALCHEMY_ENGINE_OPTIONS = {
            'pool_size': 5,
            'max_overflow': 10,
            'pool_timeout': 30,
        }
        if self.SQLALCHEMY_DATABASE_URI.startswith('postgresql'):
            self.SQLALCHEMY_ENGINE_OPTIONS['connect_args'] = {'connect_timeout': 10}
            # For Neon cloud deployment
            if _env_flag('DATABASE_SSL'):
                self.SQLALCHEMY_ENGINE_OPTIONS['connect_args']['sslmode'] = 'require'


class TestingConfig(Config):
    TESTING = True
    SESSION_TYPE = None
    SESSION_COOKIE_SECURE = False
    SCHEDULER_ENABLED = False
    TX_MAX_ATTEMPTS = 10
    TX_RETRY_DELAY = 0.05

    def __init__(self, database_url='sqlite://'):
        self.SQLALCHEMY_DATABASE_URI = database_url
        self.SQLALCHEMY_ENGINE_OPTIONS = {
            'connect_args': {'check_same_thread': False, 'timeout': 30},
        }
