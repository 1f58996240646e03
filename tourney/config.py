import os

basedir = os.path.abspath(os.path.dirname(__file__))


def _env_bool(name, default=False):
    raw = os.environ.get(name)
    if raw is None:
        return default
    return str(raw).strip().lower() in {'1', 'true', 'yes', 'on'}


def _env_int(name, default):
    raw = os.environ.get(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except (TypeError, ValueError):
        return default


def _env_float(name, default):
    raw = os.environ.get(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except (TypeError, ValueError):
        return default


def _normalize_database_url(raw_url):
    if not raw_url:
        return raw_url
    if raw_url.startswith('postgres://'):
        return raw_url.replace('postgres://', 'postgresql://', 1)
    return raw_url


class BaseConfig:
    SECRET_KEY = os.environ.get('SECRET_KEY', 'dev-secret-key-change-in-prod')
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    CORS_ALLOWED_ORIGINS = os.environ.get('CORS_ALLOWED_ORIGINS', '*')
    SOCKETIO_ASYNC_MODE = os.environ.get('SOCKETIO_ASYNC_MODE', 'threading')
    LOG_LEVEL = os.environ.get('LOG_LEVEL', 'INFO')

    # Tournament rules
    MATCH_WIN_POINTS = _env_int('MATCH_WIN_POINTS', 3)
    PRIZE_POOL_PAYOUT_RATIO = _env_float('PRIZE_POOL_PAYOUT_RATIO', 0.9)
    MAX_TOURNAMENT_PARTICIPANTS = _env_int('MAX_TOURNAMENT_PARTICIPANTS', 256)
    MAX_SCORE = _env_int('MAX_SCORE', 1_000_000)
    PAYOUT_MAX_ATTEMPTS = _env_int('PAYOUT_MAX_ATTEMPTS', 10)

    # Wallet service hosting the ledger, inventory and badge endpoints
    WALLET_SERVICE_URL = os.environ.get('WALLET_SERVICE_URL', 'http://localhost:5100')
    WALLET_SERVICE_TOKEN = os.environ.get('WALLET_SERVICE_TOKEN', '')
    WALLET_SERVICE_TIMEOUT = _env_float('WALLET_SERVICE_TIMEOUT', 5.0)
    NOTIFICATIONS_ENABLED = _env_bool('NOTIFICATIONS_ENABLED', True)


class DevelopmentConfig(BaseConfig):
    DEBUG = True
    LOG_LEVEL = os.environ.get('LOG_LEVEL', 'DEBUG')
    SQLALCHEMY_DATABASE_URI = _normalize_database_url(
        os.environ.get(
            'DATABASE_URL',
            'sqlite:///' + os.path.join(basedir, '..', 'tourney_dev.db')
        )
    )


class TestingConfig(BaseConfig):
    TESTING = True
    SQLALCHEMY_DATABASE_URI = 'sqlite:///:memory:'
    MATCH_WIN_POINTS = 3
    PRIZE_POOL_PAYOUT_RATIO = 0.9
    PAYOUT_MAX_ATTEMPTS = 3
    NOTIFICATIONS_ENABLED = True


class ProductionConfig(BaseConfig):
    DEBUG = False
    SQLALCHEMY_DATABASE_URI = _normalize_database_url(os.environ.get('DATABASE_URL'))


config = {
    'development': DevelopmentConfig,
    'testing': TestingConfig,
    'production': ProductionConfig,
}
