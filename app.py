import os
import math
from functools import wraps

from flask import Flask, request, jsonify, g, send_from_directory
from werkzeug.exceptions import HTTPException, BadRequest, Unauthorized, Forbidden, NotFound, InternalServerError

from config import Config
from database import Database
from data_store import read_db, get_user, update_db, new_id, iso_now
from bootstrap import build_bootstrap, unauthenticated_bootstrap, to_public_user
from auth_session import ROLES, read_session, issue_session, clear_session
from telegram_auth import InitDataError, validate_init_data, display_name
from notifications import notify_new_order, notify_status_change
from images import IMAGE_SIZES, ImageProcessingError, process_and_save_image, image_urls

app = Flask(__name__)
app.config.from_object(Config)
db = Database()

ORDER_STATUSES = ('new', 'confirmed', 'packing', 'shipping', 'delivered', 'cancelled')
DEFAULT_CATEGORY = 'Без категории'
MAX_DB_INTEGER = 2 ** 63 - 1
DEFAULT_PRODUCT_IMAGE = 'https://images.unsplash.com/photo-1515169067868-5387ec356754?auto=format&fit=crop&w=700&q=80'
DEFAULT_STORE_LOGO = 'https://images.unsplash.com/photo-1560179707-f14e90ef3623?auto=format&fit=crop&w=180&q=80'
DEFAULT_STORE_COVER = 'https://images.unsplash.com/photo-1607083206968-13611e3d76db?auto=format&fit=crop&w=1400&q=80'


# Разбор входных данных

def _number(value):
    """Число из произвольного значения JSON; всё нечисловое дает 0"""
    if isinstance(value, bool):
        return int(value)
    try:
        number = float(value)
    except (TypeError, ValueError):
        return 0
    if not math.isfinite(number):
        return 0
    return int(number) if number.is_integer() else number


def _in_range(number, field):
    # Колонки BIGINT / INTEGER не вмещают больше 2^63 - 1
    if abs(number) > MAX_DB_INTEGER:
        raise BadRequest(f'{field} is out of range')
    return number


def _at_least(data, field, minimum, default, whole=False):
    number = _in_range(_number(data.get(field)) or default, field)
    if whole:
        number = math.floor(number)
    return max(minimum, number)


def _text(value):
    return value.strip() if isinstance(value, str) else ''


def _tags(value):
    if value is None:
        return []
    if not isinstance(value, list):
        raise BadRequest('tags must be a list')
    return [tag.strip() for tag in value if isinstance(tag, str) and tag.strip()]


def get_payload():
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}


def _find(items, item_id):
    return next((item for item in items if item['id'] == item_id), None)


# Доступ

def role_required(*roles):
    """Пускает только пользователей с активной сессией и одной из ролей"""
    def decorator(f):
        @wraps(f)
        def decorated_function(*args, **kwargs):
            session = read_session()
            if not session:
                raise Unauthorized('Unauthorized')

            user = get_user(db, session['user_id'])
            if not user:
                raise Unauthorized('User not found')
            if roles and user['role'] not in roles:
                raise Forbidden('Admin access required' if roles == ('admin',) else 'Insufficient rights')

            g.session = session
            g.user = user
            return f(*args, **kwargs)
        return decorated_function
    return decorator


def _acting_user(snapshot, roles):
    """Пользователь запроса внутри транзакции (роль могла измениться)"""
    user = _find(snapshot['users'], g.user['id'])
    if not user:
        raise NotFound('User not found')
    if user['role'] not in roles:
        raise Forbidden('Insufficient rights')
    return user


def _verify_init_data(init_data):
    if not init_data:
        raise BadRequest('initData is required')
    if not Config.TELEGRAM_BOT_TOKEN:
        raise InternalServerError('Server has no TELEGRAM_BOT_TOKEN configured')

    try:
        return validate_init_data(init_data, Config.TELEGRAM_BOT_TOKEN, max_age=Config.INIT_DATA_MAX_AGE)
    except InitDataError as e:
        app.logger.warning(f"initData отклонена: {e}")
        raise Unauthorized(str(e))


def _login_response(user, auth_method, status=200, **extra):
    response = jsonify({
        'success': True,
        'user': {
            'id': user['id'],
            'role': user['role'],
            'full_name': user['full_name']
        },
        **extra
    })
    response.status_code = status
    return issue_session(response, user['id'], user['role'], auth_method)


def _upload_folder():
    return os.path.join(app.root_path, Config.UPLOAD_FOLDER)


@app.before_request
def before_request():
    """Действия перед каждым запросом"""
    if request.method == 'OPTIONS':
        return '', 200

    if request.path.startswith('/api/admin/'):
        app.logger.info(f"Admin API request: {request.method} {request.path}")


@app.after_request
def after_request(response):
    """Заголовки CORS для Telegram Web App"""
    response.headers.add('Access-Control-Allow-Origin', '*')
    response.headers.add('Access-Control-Allow-Headers', 'Content-Type, Authorization')
    response.headers.add('Access-Control-Allow-Methods', 'GET, POST, PATCH, OPTIONS')
    return response


@app.errorhandler(HTTPException)
def handle_http_error(error):
    return jsonify({'success': False, 'error': error.description}), error.code


@app.errorhandler(Exception)
def internal_error(error):
    """Обработчик непредвиденных ошибок"""
    app.logger.exception(f"Internal server error: {error}")
    return jsonify({'success': False, 'error': 'Internal server error'}), 500


@app.route('/api/bootstrap')
def api_bootstrap():
    """Стартовые данные Mini App для текущей сессии"""
    session = read_session()
    if not session:
        return jsonify(unauthenticated_bootstrap(Config.APP_NAME))

    snapshot = read_db(db)
    user = _find(snapshot['users'], session['user_id'])
    if not user:
        return jsonify(unauthenticated_bootstrap(Config.APP_NAME))

    return jsonify(build_bootstrap(snapshot, user, Config.APP_NAME))


# Авторизация

@app.route('/api/auth/telegram', methods=['POST'])
def api_auth_telegram():
    """Вход через initData Telegram"""
    data = get_payload()
    verified = _verify_init_data(data.get('initData'))

    telegram_user = verified['user']
    tg_id = telegram_user['id']
    full_name = display_name(telegram_user)

    if tg_id == Config.ADMIN_TG_ID:
        # Этот Telegram-аккаунт всегда администратор
        def login_admin(snapshot):
            existing = next((u for u in snapshot['users'] if u['tg_id'] == tg_id), None)
            if existing:
                existing['full_name'] = full_name
                existing['role'] = 'admin'
                return existing
            created = {
                'id': new_id('usr'),
                'tg_id': tg_id,
                'role': 'admin',
                'full_name': full_name,
                'phone': '',
                'store_id': None,
                'created_at': iso_now()
            }
            snapshot['users'].append(created)
            return created

        admin = update_db(db, login_admin)
        app.logger.info(f"Вход администратора {admin['id']} через Telegram")
        return _login_response(admin, 'telegram', registered=True)

    def refresh_user(snapshot):
        found = next((u for u in snapshot['users'] if u['tg_id'] == tg_id), None)
        if found:
            found['full_name'] = full_name
        return found

    existing = update_db(db, refresh_user)
    if existing:
        return _login_response(existing, 'telegram', registered=True)

    # Новый пользователь: фронтенд покажет форму регистрации
    return jsonify({
        'success': True,
        'registered': False,
        'telegram_user': {
            'id': tg_id,
            'first_name': telegram_user.get('first_name'),
            'last_name': telegram_user.get('last_name'),
            'username': telegram_user.get('username')
        }
    })


@app.route('/api/auth/register', methods=['POST'])
def api_auth_register():
    """Регистрация покупателя или продавца (с магазином)"""
    data = get_payload()
    verified = _verify_init_data(data.get('initData'))
    tg_id = verified['user']['id']

    role = data.get('role')
    if role not in ('buyer', 'seller'):
        raise BadRequest("Роль должна быть 'buyer' или 'seller'")

    full_name = _text(data.get('full_name'))
    phone = _text(data.get('phone'))
    if not full_name:
        raise BadRequest('Укажите имя')
    if not phone:
        raise BadRequest('Укажите телефон')

    store_data = data.get('store') if isinstance(data.get('store'), dict) else {}
    if role == 'seller':
        if not _text(store_data.get('name')):
            raise BadRequest('Укажите название магазина')
        if not _text(store_data.get('city')):
            raise BadRequest('Укажите город магазина')

    now = iso_now()

    def register(snapshot):
        if any(u['tg_id'] == tg_id for u in snapshot['users']):
            raise BadRequest('Этот Telegram-аккаунт уже зарегистрирован')

        store_id = None
        if role == 'seller':
            min_order = store_data.get('min_order_rub')
            delivery_days = store_data.get('delivery_days')
            store = {
                'id': new_id('store'),
                'name': _text(store_data.get('name')),
                'city': _text(store_data.get('city')),
                'address': _text(store_data.get('address')),
                'description': _text(store_data.get('description')),
                'phone': _text(store_data.get('phone')),
                'min_order_rub': max(0, 10000 if min_order is None else _in_range(_number(min_order), 'min_order_rub')),
                'delivery_days': max(1, math.floor(2 if delivery_days is None
                                                   else _in_range(_number(delivery_days), 'delivery_days'))),
                'rating': 0,
                'verified': False,
                'logo_url': '',
                'cover_url': '',
                'categories': [],
                'created_at': now
            }
            snapshot['stores'].append(store)
            store_id = store['id']

        user = {
            'id': new_id('usr'),
            'tg_id': tg_id,
            'role': role,
            'full_name': full_name,
            'phone': phone,
            'store_id': store_id,
            'created_at': now
        }
        snapshot['users'].append(user)
        return user

    user = update_db(db, register)
    app.logger.info(f"Зарегистрирован пользователь {user['id']} ({role})")
    return _login_response(user, 'telegram', status=201)


@app.route('/api/auth/demo-login', methods=['POST'])
def api_auth_demo_login():
    """Демо-вход под первым пользователем выбранной роли"""
    if not Config.DEMO_LOGIN_ENABLED:
        raise NotFound('Demo login is disabled')

    role = get_payload().get('role')
    if role not in ROLES:
        raise BadRequest('role is required')

    snapshot = read_db(db)
    candidates = sorted(
        (u for u in snapshot['users'] if u['role'] == role),
        key=lambda u: (u['created_at'], u['id'])
    )
    if not candidates:
        raise NotFound('No user with this role')

    return _login_response(candidates[0], 'demo')


@app.route('/api/auth/logout', methods=['POST'])
def api_auth_logout():
    return clear_session(jsonify({'success': True}))


# Администрирование

@app.route('/api/admin/stores', methods=['GET'])
@role_required('admin')
def api_admin_stores_list():
    return jsonify({'success': True, 'stores': read_db(db)['stores']})


@app.route('/api/admin/stores', methods=['POST'])
@role_required('admin')
def api_admin_stores_add():
    """Создание проверенного магазина администратором"""
    data = get_payload()
    name = _text(data.get('name'))
    city = _text(data.get('city'))
    if not name or not city:
        raise BadRequest('name and city are required')

    def create_store(snapshot):
        store = {
            'id': new_id('store'),
            'name': name,
            'city': city,
            'address': _text(data.get('address')),
            'description': _text(data.get('description')),
            'phone': _text(data.get('phone')),
            'min_order_rub': _at_least(data, 'min_order_rub', 1, 1),
            'delivery_days': _at_least(data, 'delivery_days', 1, 2, whole=True),
            'rating': 5,
            'verified': True,
            'logo_url': _text(data.get('logo_url')) or DEFAULT_STORE_LOGO,
            'cover_url': _text(data.get('cover_url')) or DEFAULT_STORE_COVER,
            'categories': [],
            'created_at': iso_now()
        }
        snapshot['stores'].insert(0, store)
        return store

    store = update_db(db, create_store)
    return jsonify({'success': True, 'store': store}), 201


@app.route('/api/admin/users', methods=['GET'])
@role_required('admin')
def api_admin_users_list():
    users = read_db(db)['users']
    return jsonify({'success': True, 'users': [to_public_user(user) for user in users]})


@app.route('/api/admin/users', methods=['POST'])
@role_required('admin')
def api_admin_users_add():
    """Создание покупателя или продавца администратором"""
    data = get_payload()
    full_name = _text(data.get('full_name'))
    role = data.get('role')

    if not full_name or not role:
        raise BadRequest('full_name and role are required')
    if role == 'admin':
        raise Forbidden('Admin users cannot be created via this endpoint')
    if role not in ROLES:
        raise BadRequest('Unknown role')

    store_id = data.get('store_id')
    if role == 'seller' and not store_id:
        raise BadRequest('Seller must have store_id')

    tg_id = None
    if data.get('tg_id'):
        tg_id = data['tg_id']
        if isinstance(tg_id, str) and tg_id.strip().isdigit():
            tg_id = int(tg_id)
        if isinstance(tg_id, bool) or not isinstance(tg_id, int):
            raise BadRequest('tg_id must be a number')
        _in_range(tg_id, 'tg_id')

    def create_user(snapshot):
        if tg_id and any(u['tg_id'] == tg_id for u in snapshot['users']):
            raise BadRequest('User with this Telegram ID already exists')
        if role == 'seller' and not _find(snapshot['stores'], store_id):
            raise BadRequest('Store not found')

        user = {
            'id': new_id('usr'),
            'tg_id': tg_id,
            'role': role,
            'full_name': full_name,
            'phone': _text(data.get('phone')),
            'store_id': store_id if role == 'seller' else None,
            'created_at': iso_now()
        }
        snapshot['users'].insert(0, user)
        return user

    user = update_db(db, create_user)
    return jsonify({'success': True, 'user': user}), 201


# Товары продавца

def _resolve_store_id(user, requested_store_id):
    if user['role'] == 'admin':
        return requested_store_id
    return user.get('store_id')


def _check_product_access(user, product):
    if user['role'] == 'seller' and user.get('store_id') != product['store_id']:
        raise Forbidden('Cannot update foreign store product')


@app.route('/api/seller/products', methods=['GET'])
@role_required('seller', 'admin')
def api_seller_products_list():
    store_id = _resolve_store_id(g.user, request.args.get('store_id'))
    if not store_id:
        raise BadRequest('store_id is required')

    products = [p for p in read_db(db)['products'] if p['store_id'] == store_id]
    return jsonify({'success': True, 'products': products})


@app.route('/api/seller/products', methods=['POST'])
@role_required('seller', 'admin')
def api_seller_products_add():
    """Добавление товара в магазин продавца (админ указывает store_id)"""
    data = get_payload()
    name = _text(data.get('name'))
    sku = _text(data.get('sku'))
    if not name or not sku:
        raise BadRequest('name and sku are required')
    tags = _tags(data.get('tags'))

    def create_product(snapshot):
        user = _acting_user(snapshot, ('seller', 'admin'))
        store_id = _resolve_store_id(user, data.get('store_id'))
        if not store_id:
            raise BadRequest('store_id is required')

        store = _find(snapshot['stores'], store_id)
        if not store:
            raise NotFound('Store not found')

        now = iso_now()
        product = {
            'id': new_id('prd'),
            'store_id': store_id,
            'name': name,
            'sku': sku,
            'category': _text(data.get('category')) or DEFAULT_CATEGORY,
            'price_rub': _at_least(data, 'price_rub', 1, 1),
            'min_qty': _at_least(data, 'min_qty', 1, 1, whole=True),
            'stock': _at_least(data, 'stock', 0, 0, whole=True),
            'image_url': _text(data.get('image_url')) or DEFAULT_PRODUCT_IMAGE,
            'description': _text(data.get('description')),
            'tags': tags,
            'created_at': now,
            'updated_at': now
        }
        snapshot['products'].insert(0, product)
        if product['category'] not in store['categories']:
            store['categories'].append(product['category'])
        return product

    product = update_db(db, create_product)
    return jsonify({'success': True, 'product': product}), 201


@app.route('/api/seller/products/<product_id>', methods=['PATCH'])
@role_required('seller', 'admin')
def api_seller_products_update(product_id):
    """Частичное обновление товара"""
    data = get_payload()
    if 'name' in data and not _text(data['name']):
        raise BadRequest('name cannot be empty')
    tags = _tags(data['tags']) if 'tags' in data else None

    def update_product(snapshot):
        user = _acting_user(snapshot, ('seller', 'admin'))
        product = _find(snapshot['products'], product_id)
        if not product:
            raise NotFound('Product not found')
        _check_product_access(user, product)

        if 'name' in data:
            product['name'] = _text(data['name'])
        if 'category' in data:
            product['category'] = _text(data['category']) or DEFAULT_CATEGORY
            store = _find(snapshot['stores'], product['store_id'])
            if store and product['category'] not in store['categories']:
                store['categories'].append(product['category'])
        if 'price_rub' in data:
            product['price_rub'] = _at_least(data, 'price_rub', 1, 1)
        if 'min_qty' in data:
            product['min_qty'] = _at_least(data, 'min_qty', 1, 1, whole=True)
        if 'stock' in data:
            product['stock'] = _at_least(data, 'stock', 0, 0, whole=True)
        if 'image_url' in data:
            product['image_url'] = _text(data['image_url'])
        if 'description' in data:
            product['description'] = _text(data['description'])
        if tags is not None:
            product['tags'] = tags

        product['updated_at'] = iso_now()
        return product

    product = update_db(db, update_product)
    return jsonify({'success': True, 'product': product})


@app.route('/api/seller/products/<product_id>/image', methods=['POST'])
@role_required('seller', 'admin')
def api_seller_products_image(product_id):
    """Загрузка фото товара: сохраняем несколько размеров"""
    image_file = request.files.get('image')
    if not image_file or not image_file.filename:
        raise BadRequest('image file is required')

    product = _find(read_db(db)['products'], product_id)
    if not product:
        raise NotFound('Product not found')
    _check_product_access(g.user, product)

    try:
        filename = process_and_save_image(image_file.read(), _upload_folder())
    except ImageProcessingError as e:
        raise BadRequest(str(e))
    urls = image_urls(filename)

    def attach_image(snapshot):
        user = _acting_user(snapshot, ('seller', 'admin'))
        target = _find(snapshot['products'], product_id)
        if not target:
            raise NotFound('Product not found')
        _check_product_access(user, target)

        target['image_url'] = urls['card']
        target['updated_at'] = iso_now()
        return target

    product = update_db(db, attach_image)
    return jsonify({'success': True, 'product': product, 'images': urls})


@app.route('/media/products/<size>/<path:filename>')
def serve_product_images(size, filename):
    """Обслуживание изображений товаров"""
    if size not in IMAGE_SIZES:
        raise NotFound('Unknown image size')
    return send_from_directory(os.path.join(_upload_folder(), size), filename)


# Заказы

@app.route('/api/orders/checkout', methods=['POST'])
@role_required('buyer', 'admin')
def api_orders_checkout():
    """Оформление корзины: по одному заказу на каждый магазин"""
    data = get_payload()
    items = data.get('items') or []
    delivery_address = _text(data.get('delivery_address'))
    comment = _text(data.get('comment')) or None

    if not isinstance(items, list) or not items:
        raise BadRequest('Cart is empty')
    if not delivery_address:
        raise BadRequest('Delivery address is required')

    def checkout(snapshot):
        buyer = _acting_user(snapshot, ('buyer', 'admin'))
        grouped = {}

        for item in items:
            if not isinstance(item, dict):
                raise BadRequest('Invalid cart item')
            qty = _number(item.get('qty'))
            qty = math.floor(qty) if qty else 0
            if not item.get('product_id') or qty <= 0:
                raise BadRequest('Invalid cart item')

            product = _find(snapshot['products'], item['product_id'])
            if not product:
                raise BadRequest(f"Product {item['product_id']} not found")
            if qty < product['min_qty']:
                raise BadRequest(f"{product['name']}: minimum order is {product['min_qty']}")
            if qty > product['stock']:
                raise BadRequest(f"{product['name']}: only {product['stock']} pcs left")

            product['stock'] -= qty
            product['updated_at'] = iso_now()
            grouped.setdefault(product['store_id'], []).append({
                'product_id': product['id'],
                'name': product['name'],
                'sku': product['sku'],
                'qty': qty,
                'price_rub': product['price_rub']
            })

        now = iso_now()
        fee = Config.DELIVERY_FEE_RUB
        orders = []
        for store_id, order_items in grouped.items():
            subtotal = sum(line['price_rub'] * line['qty'] for line in order_items)
            orders.append({
                'id': new_id('ord'),
                'buyer_id': buyer['id'],
                'store_id': store_id,
                'status': 'new',
                'items': order_items,
                'subtotal_rub': subtotal,
                'delivery_fee_rub': fee,
                'total_rub': subtotal + fee,
                'delivery_address': delivery_address,
                'comment': comment,
                'created_at': now,
                'updated_at': now
            })
        snapshot['orders'][:0] = orders

        # Получатели уведомлений: продавцы магазина и администратор
        notices = []
        for order in orders:
            recipients = [u['tg_id'] for u in snapshot['users']
                          if u['role'] == 'seller' and u['store_id'] == order['store_id'] and u['tg_id']]
            if Config.ADMIN_TG_ID:
                recipients.append(Config.ADMIN_TG_ID)
            notices.append((order, _find(snapshot['stores'], order['store_id']), recipients))
        return orders, buyer['full_name'], notices

    orders, buyer_name, notices = update_db(db, checkout)
    app.logger.info(f"Оформлено заказов: {len(orders)} ({', '.join(o['id'] for o in orders)})")

    if Config.NOTIFY_ORDERS:
        for order, store, recipients in notices:
            notify_new_order(order, store, buyer_name, recipients, Config.TELEGRAM_BOT_TOKEN)

    return jsonify({'success': True, 'orders': orders}), 201


@app.route('/api/orders/<order_id>/status', methods=['PATCH'])
@role_required('seller', 'admin')
def api_orders_status(order_id):
    """Смена статуса заказа продавцом своего магазина или администратором"""
    status = get_payload().get('status')
    if status not in ORDER_STATUSES:
        raise BadRequest('Invalid status')

    def change_status(snapshot):
        user = _acting_user(snapshot, ('seller', 'admin'))
        order = _find(snapshot['orders'], order_id)
        if not order:
            raise NotFound('Order not found')
        if user['role'] == 'seller' and user.get('store_id') != order['store_id']:
            raise Forbidden('Cannot update foreign store order')

        order['status'] = status
        order['updated_at'] = iso_now()
        buyer = _find(snapshot['users'], order['buyer_id'])
        return order, (buyer or {}).get('tg_id')

    order, buyer_tg_id = update_db(db, change_status)

    if Config.NOTIFY_ORDERS:
        notify_status_change(order, buyer_tg_id, Config.TELEGRAM_BOT_TOKEN)

    return jsonify({'success': True, 'order': order})


if __name__ == '__main__':
    os.makedirs(_upload_folder(), exist_ok=True)

    print("=" * 50)
    print(f"{Config.APP_NAME} запущен!")
    print("Сайт доступен по адресу: http://localhost:5000")
    print("=" * 50)

    app.run(debug=os.environ.get('FLASK_ENV') != 'production', host='0.0.0.0',
            port=int(os.environ.get('PORT', 5000)), threaded=True)
