import base64
import hmac
import hashlib
import json
import time

from flask import request

from config import Config

ROLES = ('admin', 'seller', 'buyer')
AUTH_METHODS = ('demo', 'telegram')


def _b64url_encode(raw):
    return base64.urlsafe_b64encode(raw).rstrip(b'=').decode('ascii')


def _b64url_decode(value):
    padding = '=' * (-len(value) % 4)
    return base64.urlsafe_b64decode(value + padding)


def _sign(body, secret):
    digest = hmac.new(secret.encode(), body.encode(), hashlib.sha256).digest()
    return _b64url_encode(digest)


def create_session_token(payload, secret):
    """Токен вида <base64url(json)>.<base64url(hmac)>"""
    body = _b64url_encode(json.dumps(payload, separators=(',', ':')).encode('utf-8'))
    return f"{body}.{_sign(body, secret)}"


def parse_session_token(token, secret, ttl, now=None):
    """Проверка токена сессии. Возвращает payload или None"""
    if not token:
        return None

    parts = token.split('.')
    if len(parts) != 2 or not parts[0] or not parts[1]:
        return None
    body, signature = parts

    expected = _sign(body, secret)
    if not hmac.compare_digest(signature.encode('utf-8'), expected.encode('utf-8')):
        return None

    try:
        payload = json.loads(_b64url_decode(body).decode('utf-8'))
    except (ValueError, UnicodeDecodeError):
        return None

    if not isinstance(payload, dict):
        return None
    issued_at = payload.get('issued_at')
    if not isinstance(payload.get('user_id'), str) or not payload['user_id']:
        return None
    if payload.get('role') not in ROLES or payload.get('auth_method') not in AUTH_METHODS:
        return None
    if not isinstance(issued_at, int) or isinstance(issued_at, bool):
        return None

    now_seconds = int(now if now is not None else time.time())
    if issued_at < now_seconds - ttl:
        return None

    return payload


def read_session():
    """Сессия текущего запроса (или None)"""
    token = request.cookies.get(Config.SESSION_COOKIE_NAME)
    return parse_session_token(token, Config.SESSION_SECRET, Config.SESSION_TTL_SECONDS)


def issue_session(response, user_id, role, auth_method):
    """Выставляет cookie сессии в ответ"""
    token = create_session_token({
        'user_id': user_id,
        'role': role,
        'auth_method': auth_method,
        'issued_at': int(time.time())
    }, Config.SESSION_SECRET)

    response.set_cookie(
        Config.SESSION_COOKIE_NAME,
        token,
        max_age=Config.SESSION_TTL_SECONDS,
        path='/',
        httponly=True,
        samesite='Lax',
        secure=Config.SECURE_COOKIES
    )
    return response


def clear_session(response):
    response.set_cookie(
        Config.SESSION_COOKIE_NAME,
        '',
        max_age=0,
        path='/',
        httponly=True,
        samesite='Lax',
        secure=Config.SECURE_COOKIES
    )
    return response
