import os
import json
import time
import tempfile

import pytest

# Окружение задается до импорта приложения: Config читает его при импорте
TEST_DIR = tempfile.mkdtemp(prefix='optmarket-tests-')
BOT_TOKEN = '123456:TEST-BOT-TOKEN'
ADMIN_TG_ID = 25125327

os.environ['TELEGRAM_BOT_TOKEN'] = BOT_TOKEN
os.environ['SESSION_SECRET'] = 'test-session-secret'
os.environ['DATABASE_URL'] = ''
os.environ['DATABASE_PATH'] = os.path.join(TEST_DIR, 'test.db')
os.environ['UPLOAD_FOLDER'] = os.path.join(TEST_DIR, 'uploads')
os.environ['ADMIN_TG_ID'] = str(ADMIN_TG_ID)
os.environ['SEED_DEMO_DATA'] = 'true'
os.environ['DEMO_LOGIN_ENABLED'] = 'true'
os.environ['NOTIFY_ORDERS'] = 'false'
os.environ['FLASK_ENV'] = 'testing'

import app as app_module  # noqa: E402
from telegram_auth import sign_init_data  # noqa: E402


def make_init_data(user, auth_date=None, bot_token=BOT_TOKEN, **extra):
    """initData, подписанная тем же способом, что и Telegram"""
    fields = {
        'query_id': 'AAHdF6IQAAAAAN0XohDhrOrc',
        'user': json.dumps(user, separators=(',', ':')),
        'auth_date': str(int(time.time()) if auth_date is None else auth_date),
    }
    fields.update(extra)
    return sign_init_data(fields, bot_token)


@pytest.fixture
def app():
    app_module.db.reset()
    app_module.app.config['TESTING'] = True
    return app_module.app


@pytest.fixture
def client(app):
    with app.test_client() as client:
        yield client


def login_as(client, role):
    response = client.post('/api/auth/demo-login', json={'role': role})
    assert response.status_code == 200, response.get_json()
    return response.get_json()['user']


@pytest.fixture
def admin_client(client):
    login_as(client, 'admin')
    return client


@pytest.fixture
def seller_client(client):
    login_as(client, 'seller')
    return client


@pytest.fixture
def buyer_client(client):
    login_as(client, 'buyer')
    return client


@pytest.fixture
def snapshot():
    """Текущее состояние базы"""
    from data_store import read_db
    return lambda: read_db(app_module.db)
