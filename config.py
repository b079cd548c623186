import os

from dotenv import load_dotenv

load_dotenv()


def _env_bool(name, default):
    value = os.environ.get(name)
    if value is None or value.strip() == '':
        return default
    return value.strip().lower() in ('1', 'true', 'yes', 'on')


class Config:
    """Настройки приложения (берутся из окружения / .env)"""

    APP_NAME = os.environ.get('APP_NAME', 'ОптМаркет РФ — Telegram Mini App')

    # Telegram
    TELEGRAM_BOT_TOKEN = os.environ.get('TELEGRAM_BOT_TOKEN', '')
    ADMIN_TG_ID = int(os.environ.get('ADMIN_TG_ID', '25125327') or 0)
    INIT_DATA_MAX_AGE = int(os.environ.get('INIT_DATA_MAX_AGE', str(60 * 60 * 24)))
    NOTIFY_ORDERS = _env_bool('NOTIFY_ORDERS', True)

    # Сессия
    SESSION_SECRET = os.environ.get('SESSION_SECRET', 'change-this-in-production-session-secret')
    SESSION_COOKIE_NAME = os.environ.get('SESSION_COOKIE_NAME', 'om_session')
    SESSION_TTL_SECONDS = int(os.environ.get('SESSION_TTL_SECONDS', str(60 * 60 * 24 * 14)))
    SECURE_COOKIES = os.environ.get('FLASK_ENV') == 'production'

    # База данных
    DATABASE_URL = os.environ.get('DATABASE_URL')
    DATABASE_PATH = os.environ.get('DATABASE_PATH', 'data/database.db')
    SEED_DEMO_DATA = _env_bool('SEED_DEMO_DATA', True)

    # Магазин
    DEMO_LOGIN_ENABLED = _env_bool('DEMO_LOGIN_ENABLED', True)
    DELIVERY_FEE_RUB = int(os.environ.get('DELIVERY_FEE_RUB', '2000'))
    UPLOAD_FOLDER = os.environ.get('UPLOAD_FOLDER', 'static/images/products')
    MAX_CONTENT_LENGTH = 10 * 1024 * 1024
