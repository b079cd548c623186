import json
import time
from urllib.parse import parse_qsl, urlencode

import pytest

from telegram_auth import InitDataError, validate_init_data, sign_init_data, display_name

from conftest import BOT_TOKEN, make_init_data

USER = {'id': 777000, 'first_name': 'Иван', 'last_name': 'Петров', 'username': 'ivan_opt'}


def _pairs(init_data):
    return parse_qsl(init_data, keep_blank_values=True)


def test_valid_init_data_is_accepted():
    init_data = make_init_data(USER)

    result = validate_init_data(init_data, BOT_TOKEN)

    assert result['user']['id'] == 777000
    assert result['user']['username'] == 'ivan_opt'
    assert result['query_id'] == 'AAHdF6IQAAAAAN0XohDhrOrc'
    assert abs(result['auth_date'] - int(time.time())) < 5


def test_parameter_order_does_not_change_hash():
    init_data = make_init_data(USER)
    reordered = urlencode(list(reversed(_pairs(init_data))))

    assert validate_init_data(reordered, BOT_TOKEN)['user']['id'] == 777000


def test_uppercase_hash_is_accepted():
    pairs = [(key, value.upper() if key == 'hash' else value) for key, value in _pairs(make_init_data(USER))]

    assert validate_init_data(urlencode(pairs), BOT_TOKEN)['user']['id'] == 777000


@pytest.mark.parametrize('field, value', [
    ('user', json.dumps({'id': 1, 'first_name': 'Mallory'})),
    ('auth_date', '1'),
    ('query_id', 'other'),
])
def test_tampered_field_is_rejected(field, value):
    pairs = [(key, value if key == field else original) for key, original in _pairs(make_init_data(USER))]

    with pytest.raises(InitDataError, match='Invalid initData hash'):
        validate_init_data(urlencode(pairs), BOT_TOKEN)


def test_added_field_is_rejected():
    init_data = make_init_data(USER) + '&chat_type=private'

    with pytest.raises(InitDataError, match='Invalid initData hash'):
        validate_init_data(init_data, BOT_TOKEN)


def test_wrong_bot_token_is_rejected():
    init_data = make_init_data(USER, bot_token='999:OTHER')

    with pytest.raises(InitDataError, match='Invalid initData hash'):
        validate_init_data(init_data, BOT_TOKEN)


def test_garbage_hash_is_rejected():
    pairs = [(key, 'не-hex' if key == 'hash' else value) for key, value in _pairs(make_init_data(USER))]

    with pytest.raises(InitDataError, match='Invalid initData hash'):
        validate_init_data(urlencode(pairs), BOT_TOKEN)


@pytest.mark.parametrize('init_data', ['', '   ', None])
def test_empty_init_data(init_data):
    with pytest.raises(InitDataError, match='initData is empty'):
        validate_init_data(init_data, BOT_TOKEN)


def test_missing_hash():
    init_data = urlencode([('user', json.dumps(USER)), ('auth_date', str(int(time.time())))])

    with pytest.raises(InitDataError, match='hash is missing'):
        validate_init_data(init_data, BOT_TOKEN)


def test_expired_init_data():
    now = 1_700_000_000
    init_data = make_init_data(USER, auth_date=now - 3600 - 1)

    with pytest.raises(InitDataError, match='initData expired'):
        validate_init_data(init_data, BOT_TOKEN, max_age=3600, now=now)


def test_init_data_exactly_at_window_edge_is_accepted():
    now = 1_700_000_000
    init_data = make_init_data(USER, auth_date=now - 3600)

    assert validate_init_data(init_data, BOT_TOKEN, max_age=3600, now=now)['auth_date'] == now - 3600


@pytest.mark.parametrize('auth_date', ['0', 'yesterday'])
def test_bad_auth_date(auth_date):
    init_data = make_init_data(USER, auth_date=auth_date)

    with pytest.raises(InitDataError, match='auth_date is missing'):
        validate_init_data(init_data, BOT_TOKEN)


def test_missing_user():
    init_data = sign_init_data({'auth_date': str(int(time.time()))}, BOT_TOKEN)

    with pytest.raises(InitDataError, match='user is missing'):
        validate_init_data(init_data, BOT_TOKEN)


def test_unparseable_user():
    init_data = sign_init_data({'auth_date': str(int(time.time())), 'user': '{not json'}, BOT_TOKEN)

    with pytest.raises(InitDataError, match='Cannot parse user'):
        validate_init_data(init_data, BOT_TOKEN)


@pytest.mark.parametrize('user', [
    {'first_name': 'Без id'}, {'id': 0}, {'id': 'abc'}, {'id': True}, {'id': 1.9}, {'id': '1.9'}, {'id': [5]},
])
def test_invalid_user_id(user):
    init_data = make_init_data(user)

    with pytest.raises(InitDataError, match='Invalid telegram user id'):
        validate_init_data(init_data, BOT_TOKEN)


def test_blank_values_take_part_in_signature():
    init_data = make_init_data(USER, start_param='')

    assert validate_init_data(init_data, BOT_TOKEN)['user']['id'] == 777000


def test_display_name():
    assert display_name({'id': 1, 'first_name': 'Иван', 'last_name': 'Петров'}) == 'Иван Петров'
    assert display_name({'id': 1, 'first_name': 'Иван'}) == 'Иван'
    assert display_name({'id': 1, 'username': 'ivan'}) == 'ivan'
    assert display_name({'id': 42}) == 'User 42'


def test_numeric_string_user_id_is_converted():
    result = validate_init_data(make_init_data(dict(USER, id='777000')), BOT_TOKEN)

    assert result['user']['id'] == 777000
