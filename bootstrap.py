def to_public_user(user):
    """Пользователь без служебных полей (tg_id, created_at)"""
    return {
        'id': user['id'],
        'role': user['role'],
        'full_name': user['full_name'],
        'phone': user['phone'],
        'store_id': user.get('store_id')
    }


def _newest_first(items):
    return sorted(items, key=lambda item: item['created_at'], reverse=True)


def _buyer_data(snapshot, user):
    orders = [order for order in snapshot['orders'] if order['buyer_id'] == user['id']]
    return {
        'stores': snapshot['stores'],
        'products': snapshot['products'],
        'orders': _newest_first(orders)
    }


def _seller_data(snapshot, user):
    store_id = user.get('store_id')
    store = next((item for item in snapshot['stores'] if item['id'] == store_id), None)
    return {
        'store': store,
        'products': [item for item in snapshot['products'] if item['store_id'] == store_id],
        'orders': _newest_first([order for order in snapshot['orders'] if order['store_id'] == store_id])
    }


def _admin_data(snapshot):
    users = snapshot['users']
    return {
        'stores': snapshot['stores'],
        'products': snapshot['products'],
        'orders': _newest_first(snapshot['orders']),
        'users': [to_public_user(user) for user in users],
        'metrics': {
            'total_revenue_rub': sum(order['total_rub'] for order in snapshot['orders']),
            'total_orders': len(snapshot['orders']),
            'active_stores': len(snapshot['stores']),
            'sellers': sum(1 for user in users if user['role'] == 'seller'),
            'buyers': sum(1 for user in users if user['role'] == 'buyer')
        }
    }


def build_bootstrap(snapshot, user, app_name):
    """Стартовые данные Mini App в зависимости от роли пользователя"""
    payload = {
        'authenticated': True,
        'app_name': app_name,
        'user': to_public_user(user)
    }

    if user['role'] == 'buyer':
        payload['buyer_data'] = _buyer_data(snapshot, user)
    elif user['role'] == 'seller':
        payload['seller_data'] = _seller_data(snapshot, user)
    else:
        payload['admin_data'] = _admin_data(snapshot)

    return payload


def unauthenticated_bootstrap(app_name):
    return {
        'authenticated': False,
        'app_name': app_name
    }
