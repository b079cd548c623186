"""Снимок данных маркетплейса и транзакционная запись изменений.

Все четыре таблицы читаются целиком в словарь ``{'users', 'stores',
'products', 'orders'}``. Изменения делаются через ``update_db``: мутатор
получает копию снимка, а затем разница между снимком и копией
записывается в базу одной транзакцией.
"""
import copy
import json
import threading
import uuid
from datetime import datetime, timezone

# Колонки таблиц; JSON-поля хранятся текстом, неизменяемые не попадают в UPDATE
SCHEMA = {
    'stores': {
        'columns': ('id', 'name', 'city', 'address', 'description', 'phone', 'min_order_rub',
                    'delivery_days', 'rating', 'verified', 'logo_url', 'cover_url', 'categories',
                    'created_at'),
        'json': ('categories',),
        'immutable': ('id', 'created_at'),
    },
    'users': {
        'columns': ('id', 'tg_id', 'role', 'full_name', 'phone', 'store_id', 'created_at'),
        'json': (),
        'immutable': ('id', 'created_at'),
    },
    'products': {
        'columns': ('id', 'store_id', 'name', 'sku', 'category', 'price_rub', 'min_qty', 'stock',
                    'image_url', 'description', 'tags', 'created_at', 'updated_at'),
        'json': ('tags',),
        'immutable': ('id', 'store_id', 'created_at'),
    },
    'orders': {
        'columns': ('id', 'buyer_id', 'store_id', 'status', 'items', 'subtotal_rub',
                    'delivery_fee_rub', 'total_rub', 'delivery_address', 'comment', 'created_at',
                    'updated_at'),
        'json': ('items',),
        'immutable': ('id', 'buyer_id', 'store_id', 'created_at'),
    },
}

SYNC_ORDER = ('stores', 'users', 'products', 'orders')

_write_lock = threading.Lock()


def iso_now():
    return datetime.now(timezone.utc).isoformat()


def new_id(prefix):
    return f"{prefix}_{uuid.uuid4().hex[:8]}"


def _number(value):
    if value is None:
        return 0
    if isinstance(value, float) and value.is_integer():
        return int(value)
    return value


def _json_list(value):
    if not value:
        return []
    if isinstance(value, list):
        return value
    return json.loads(value)


def row_to_user(row):
    return {
        'id': row['id'],
        'tg_id': row['tg_id'],
        'role': row['role'],
        'full_name': row['full_name'],
        'phone': row['phone'] or '',
        'store_id': row['store_id'],
        'created_at': row['created_at'],
    }


def row_to_store(row):
    return {
        'id': row['id'],
        'name': row['name'],
        'city': row['city'],
        'address': row['address'] or '',
        'description': row['description'] or '',
        'phone': row['phone'] or '',
        'min_order_rub': _number(row['min_order_rub']),
        'delivery_days': row['delivery_days'],
        'rating': _number(row['rating']),
        'verified': bool(row['verified']),
        'logo_url': row['logo_url'] or '',
        'cover_url': row['cover_url'] or '',
        'categories': _json_list(row['categories']),
        'created_at': row['created_at'],
    }


def row_to_product(row):
    return {
        'id': row['id'],
        'store_id': row['store_id'],
        'name': row['name'],
        'sku': row['sku'],
        'category': row['category'] or '',
        'price_rub': _number(row['price_rub']),
        'min_qty': row['min_qty'],
        'stock': row['stock'],
        'image_url': row['image_url'] or '',
        'description': row['description'] or '',
        'tags': _json_list(row['tags']),
        'created_at': row['created_at'],
        'updated_at': row['updated_at'],
    }


def row_to_order(row):
    return {
        'id': row['id'],
        'buyer_id': row['buyer_id'],
        'store_id': row['store_id'],
        'status': row['status'],
        'items': _json_list(row['items']),
        'subtotal_rub': _number(row['subtotal_rub']),
        'delivery_fee_rub': _number(row['delivery_fee_rub']),
        'total_rub': _number(row['total_rub']),
        'delivery_address': row['delivery_address'] or '',
        'comment': row['comment'],
        'created_at': row['created_at'],
        'updated_at': row['updated_at'],
    }


MAPPERS = {
    'users': row_to_user,
    'stores': row_to_store,
    'products': row_to_product,
    'orders': row_to_order,
}


def _load_snapshot(db, cursor):
    snapshot = {}
    for table, mapper in MAPPERS.items():
        query = f'SELECT * FROM {table}'
        if table == 'orders':
            query += ' ORDER BY created_at DESC'
        db.execute_query(cursor, query)
        snapshot[table] = [mapper(row) for row in db.fetch_dicts(cursor)]
    return snapshot


def read_db(db):
    """Читает все таблицы в один снимок"""
    conn = db.get_connection()
    cursor = conn.cursor()
    try:
        return _load_snapshot(db, cursor)
    finally:
        cursor.close()
        conn.close()


def get_user(db, user_id):
    """Пользователь по id (или None) без чтения всего снимка"""
    conn = db.get_connection()
    cursor = conn.cursor()
    try:
        db.execute_query(cursor, 'SELECT * FROM users WHERE id = ?', (user_id,))
        rows = db.fetch_dicts(cursor)
        return row_to_user(rows[0]) if rows else None
    finally:
        cursor.close()
        conn.close()


def _to_row(table, record, columns):
    json_fields = SCHEMA[table]['json']
    values = []
    for column in columns:
        value = record.get(column)
        if column in json_fields:
            value = json.dumps(value or [], ensure_ascii=False)
        values.append(value)
    return values


def _sync_table(db, cursor, table, before, after):
    """Вставка новых, обновление измененных и удаление пропавших записей"""
    columns = SCHEMA[table]['columns']
    mutable = [column for column in columns if column not in SCHEMA[table]['immutable']]
    before_by_id = {record['id']: record for record in before}
    after_ids = set()
    changes = 0

    for record in after:
        after_ids.add(record['id'])
        old = before_by_id.get(record['id'])

        if old is None:
            placeholders = ', '.join('?' for _ in columns)
            db.execute_query(cursor, f'''
                INSERT INTO {table} ({', '.join(columns)}) VALUES ({placeholders})
            ''', _to_row(table, record, columns))
            changes += 1
        elif old != record:
            assignments = ', '.join(f'{column} = ?' for column in mutable)
            db.execute_query(cursor, f'UPDATE {table} SET {assignments} WHERE id = ?',
                             _to_row(table, record, mutable) + [record['id']])
            changes += 1

    for record_id in before_by_id:
        if record_id not in after_ids:
            db.execute_query(cursor, f'DELETE FROM {table} WHERE id = ?', (record_id,))
            changes += 1

    return changes


def update_db(db, mutator):
    """Снимок -> мутация копии -> запись разницы.

    Записи сериализуются блокировкой процесса. Если мутатор бросает
    исключение, в базу ничего не пишется; ошибка записи откатывает
    транзакцию целиком. Возвращает результат мутатора.
    """
    with _write_lock:
        conn = db.get_connection()
        cursor = conn.cursor()
        try:
            before = _load_snapshot(db, cursor)
            working = copy.deepcopy(before)
            result = mutator(working)

            changes = 0
            for table in SYNC_ORDER:
                changes += _sync_table(db, cursor, table, before[table], working[table])

            conn.commit()
            if changes:
                print(f"Записано изменений: {changes}")
            return result
        except Exception:
            conn.rollback()
            raise
        finally:
            cursor.close()
            conn.close()
