import hmac
import hashlib
import json
import time
from urllib.parse import parse_qsl, urlencode


class InitDataError(Exception):
    """initData не прошла проверку"""


def _data_check_string(pairs):
    """Строка для проверки: все пары кроме hash, отсортированные по ключу"""
    filtered = [(key, value) for key, value in pairs if key != 'hash']
    filtered.sort(key=lambda pair: pair[0])
    return "\n".join(f"{key}={value}" for key, value in filtered)


def _calculate_hash(data_check_string, bot_token):
    # Секретный ключ: HMAC-SHA256 токена бота с ключом "WebAppData"
    secret_key = hmac.new(
        b"WebAppData",
        bot_token.encode(),
        hashlib.sha256
    ).digest()

    return hmac.new(
        secret_key,
        data_check_string.encode(),
        hashlib.sha256
    ).hexdigest()


def sign_init_data(fields, bot_token):
    """Подписывает набор полей так же, как это делает Telegram.

    Возвращает готовую строку initData (query string) с полем hash.
    Используется в тестах и для локальной отладки Mini App.
    """
    pairs = [(key, str(value)) for key, value in fields.items() if key != 'hash']
    calculated_hash = _calculate_hash(_data_check_string(pairs), bot_token)
    return urlencode(pairs + [('hash', calculated_hash)])


def _user_id(value):
    # Только целые: True и 1.9 не превращаются молча в 1
    if isinstance(value, bool):
        raise InitDataError("Invalid telegram user id")
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    if isinstance(value, str) and value.strip().isdigit():
        value = int(value)
    if not isinstance(value, int) or value <= 0:
        raise InitDataError("Invalid telegram user id")
    return value


def validate_init_data(init_data, bot_token, max_age=60 * 60 * 24, now=None):
    """Проверка подписи initData Telegram Web App.

    Возвращает словарь {'user', 'auth_date', 'query_id'} либо бросает
    InitDataError с описанием причины.
    """
    if not init_data or not init_data.strip():
        raise InitDataError("initData is empty")

    pairs = parse_qsl(init_data, keep_blank_values=True)
    params = {}
    for key, value in pairs:
        params.setdefault(key, value)

    hash_value = params.get('hash')
    if not hash_value:
        raise InitDataError("hash is missing in initData")

    calculated_hash = _calculate_hash(_data_check_string(pairs), bot_token)
    supplied = hash_value.strip().lower().encode('utf-8')
    if not hmac.compare_digest(calculated_hash.encode('utf-8'), supplied):
        raise InitDataError("Invalid initData hash")

    try:
        auth_date = int(params.get('auth_date') or 0)
    except ValueError:
        auth_date = 0
    if not auth_date:
        raise InitDataError("auth_date is missing")

    now_seconds = int(now if now is not None else time.time())
    if now_seconds - auth_date > max_age:
        raise InitDataError("initData expired")

    user_json = params.get('user')
    if not user_json:
        raise InitDataError("user is missing in initData")

    try:
        user = json.loads(user_json)
    except ValueError:
        raise InitDataError("Cannot parse user from initData")

    if not isinstance(user, dict):
        raise InitDataError("Invalid telegram user id")
    user['id'] = _user_id(user.get('id'))

    return {
        'user': user,
        'auth_date': auth_date,
        'query_id': params.get('query_id')
    }


def display_name(telegram_user):
    """Имя для профиля: имя + фамилия, иначе username, иначе User <id>"""
    parts = [telegram_user.get('first_name'), telegram_user.get('last_name')]
    full_name = " ".join(part for part in parts if part)
    return full_name or telegram_user.get('username') or f"User {telegram_user.get('id')}"
