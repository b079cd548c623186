import pytest

from conftest import ADMIN_TG_ID, login_as


@pytest.mark.parametrize('method, path', [
    ('get', '/api/admin/stores'),
    ('post', '/api/admin/stores'),
    ('get', '/api/admin/users'),
    ('post', '/api/admin/users'),
])
def test_admin_endpoints_require_session(client, method, path):
    response = getattr(client, method)(path, json={})

    assert response.status_code == 401
    assert response.get_json()['success'] is False


@pytest.mark.parametrize('role', ['buyer', 'seller'])
def test_admin_endpoints_reject_other_roles(client, role):
    login_as(client, role)

    response = client.get('/api/admin/stores')

    assert response.status_code == 403
    assert response.get_json()['error'] == 'Admin access required'


def test_list_stores(admin_client):
    body = admin_client.get('/api/admin/stores').get_json()

    assert body['success'] is True
    assert {store['id'] for store in body['stores']} == {'store_demo1', 'store_demo2'}


def test_create_store_with_defaults(admin_client):
    response = admin_client.post('/api/admin/stores', json={
        'name': '  Хозмаг Опт ', 'city': 'Самара', 'min_order_rub': -100, 'delivery_days': 3.7
    })

    assert response.status_code == 201
    store = response.get_json()['store']
    assert store['id'].startswith('store_')
    assert store['name'] == 'Хозмаг Опт'
    assert store['verified'] is True
    assert store['rating'] == 5
    assert store['min_order_rub'] == 1
    assert store['delivery_days'] == 3
    assert store['logo_url'].startswith('https://')
    assert store['categories'] == []

    stores = admin_client.get('/api/admin/stores').get_json()['stores']
    assert store['id'] in {s['id'] for s in stores}


def test_create_store_requires_name_and_city(admin_client):
    response = admin_client.post('/api/admin/stores', json={'name': 'Без города'})

    assert response.status_code == 400
    assert response.get_json()['error'] == 'name and city are required'


def test_create_store_rejects_huge_delivery_days(admin_client, snapshot):
    response = admin_client.post('/api/admin/stores', json={'name': 'Склад', 'city': 'Тверь', 'delivery_days': 1e19})

    assert response.status_code == 400
    assert response.get_json()['error'] == 'delivery_days is out of range'
    assert len(snapshot()['stores']) == 2


def test_list_users_is_public_view(admin_client):
    users = admin_client.get('/api/admin/users').get_json()['users']

    assert len(users) == 4
    assert all(set(user) == {'id', 'role', 'full_name', 'phone', 'store_id'} for user in users)


def test_create_seller(admin_client, snapshot):
    response = admin_client.post('/api/admin/users', json={
        'full_name': 'Пётр Складов', 'role': 'seller', 'store_id': 'store_demo2', 'tg_id': '7001', 'phone': ' 8 800 '
    })

    assert response.status_code == 201
    user = response.get_json()['user']
    assert user['store_id'] == 'store_demo2'
    assert user['tg_id'] == 7001
    assert user['phone'] == '8 800'
    assert any(u['id'] == user['id'] for u in snapshot()['users'])


def test_create_buyer_drops_store(admin_client):
    response = admin_client.post('/api/admin/users', json={
        'full_name': 'Покупатель', 'role': 'buyer', 'store_id': 'store_demo1'
    })

    assert response.status_code == 201
    assert response.get_json()['user']['store_id'] is None


@pytest.mark.parametrize('payload, status, error', [
    ({'role': 'buyer'}, 400, 'full_name and role are required'),
    ({'full_name': 'X'}, 400, 'full_name and role are required'),
    ({'full_name': 'X', 'role': 'admin'}, 403, 'Admin users cannot be created via this endpoint'),
    ({'full_name': 'X', 'role': 'owner'}, 400, 'Unknown role'),
    ({'full_name': 'X', 'role': 'seller'}, 400, 'Seller must have store_id'),
    ({'full_name': 'X', 'role': 'seller', 'store_id': 'store_nope'}, 400, 'Store not found'),
    ({'full_name': 'X', 'role': 'buyer', 'tg_id': 'abc'}, 400, 'tg_id must be a number'),
    ({'full_name': 'X', 'role': 'buyer', 'tg_id': True}, 400, 'tg_id must be a number'),
    ({'full_name': 'X', 'role': 'buyer', 'tg_id': 1.5}, 400, 'tg_id must be a number'),
    ({'full_name': 'X', 'role': 'buyer', 'tg_id': 2 ** 70}, 400, 'tg_id is out of range'),
])
def test_create_user_validation(admin_client, payload, status, error):
    response = admin_client.post('/api/admin/users', json=payload)

    assert response.status_code == status
    assert response.get_json()['error'] == error


def test_create_user_with_taken_telegram_id(admin_client):
    response = admin_client.post('/api/admin/users', json={
        'full_name': 'Двойник', 'role': 'buyer', 'tg_id': ADMIN_TG_ID
    })

    assert response.status_code == 400
    assert response.get_json()['error'] == 'User with this Telegram ID already exists'
