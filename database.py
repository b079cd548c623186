import os
import json
import sqlite3
import traceback
from datetime import datetime, timezone
from urllib.parse import urlparse

import psycopg2

from config import Config

TABLES = ('stores', 'users', 'products', 'orders')


class Database:
    def __init__(self, database_url=None, db_path=None, seed=None):
        # URL базы данных из аргумента, окружения или Config
        if database_url is None:
            database_url = os.environ.get('DATABASE_URL', Config.DATABASE_URL)
        self.database_url = database_url
        self.seed = Config.SEED_DEMO_DATA if seed is None else seed
        self.is_postgres = False
        self.db_path = db_path or getattr(Config, 'DATABASE_PATH', 'data/database.db')

        # Проверяем, это PostgreSQL или SQLite
        if self.database_url and (self.database_url.startswith('postgres://') or self.database_url.startswith('postgresql://')):
            self.is_postgres = True
            # Конвертируем postgres:// в postgresql:// если нужно
            if self.database_url.startswith('postgres://'):
                self.database_url = self.database_url.replace('postgres://', 'postgresql://', 1)
            print(f"Используется PostgreSQL: {self.database_url[:50]}...")
        else:
            # SQLite для локальной разработки
            db_dir = os.path.dirname(self.db_path)
            if db_dir:
                os.makedirs(db_dir, exist_ok=True)
            print(f"Используется SQLite: {self.db_path}")

        self.init_db()

    def get_connection(self):
        """Возвращает соединение с базой данных"""
        if self.is_postgres:
            result = urlparse(self.database_url)
            try:
                return psycopg2.connect(
                    database=result.path[1:],
                    user=result.username,
                    password=result.password,
                    host=result.hostname,
                    port=result.port,
                    sslmode=os.environ.get('PGSSLMODE', 'require')
                )
            except psycopg2.Error as e:
                print(f"Ошибка подключения к PostgreSQL: {e}")
                raise

        return sqlite3.connect(self.db_path)

    def execute_query(self, cursor, query, params=None):
        """Универсальный метод выполнения SQL запросов"""
        if params is None:
            params = []

        if self.is_postgres:
            # Для PostgreSQL заменяем ? на %s
            query = query.replace('?', '%s')

        try:
            cursor.execute(query, params)
            return True
        except Exception as e:
            print(f"Ошибка выполнения запроса: {e}")
            print(f"Запрос: {query}")
            print(f"Параметры: {params}")
            raise

    def fetchone(self, cursor):
        return cursor.fetchone()

    def fetch_dicts(self, cursor):
        """Строки результата в виде словарей {колонка: значение}"""
        columns = [column[0] for column in cursor.description]
        return [dict(zip(columns, row)) for row in cursor.fetchall()]

    def init_db(self):
        """Инициализация базы данных"""
        print(f"Инициализация базы данных ({'PostgreSQL' if self.is_postgres else 'SQLite'})...")

        conn = self.get_connection()
        cursor = conn.cursor()

        try:
            self._create_tables(cursor)

            if self.seed:
                self._seed_initial_data(cursor)

            conn.commit()
            print("База данных успешно инициализирована!")

        except Exception as e:
            conn.rollback()
            print(f"Ошибка инициализации БД: {e}")
            traceback.print_exc()
            raise
        finally:
            cursor.close()
            conn.close()

    def reset(self):
        """Удаляет все таблицы и создает их заново (с демо-данными, если включены)"""
        conn = self.get_connection()
        cursor = conn.cursor()
        try:
            for table in reversed(TABLES):
                cursor.execute(f'DROP TABLE IF EXISTS {table}')
            conn.commit()
        finally:
            cursor.close()
            conn.close()

        self.init_db()

    def _create_tables(self, cursor):
        """Создание таблиц"""
        if self.is_postgres:
            tg_type, money_type, bool_type = 'BIGINT', 'DOUBLE PRECISION', 'BOOLEAN'
        else:
            tg_type, money_type, bool_type = 'INTEGER', 'REAL', 'INTEGER'

        # Магазины
        cursor.execute(f'''
            CREATE TABLE IF NOT EXISTS stores (
                id TEXT PRIMARY KEY,
                name TEXT NOT NULL,
                city TEXT NOT NULL,
                address TEXT,
                description TEXT,
                phone TEXT,
                min_order_rub {money_type} NOT NULL DEFAULT 0,
                delivery_days INTEGER NOT NULL DEFAULT 1,
                rating {money_type} NOT NULL DEFAULT 0,
                verified {bool_type} NOT NULL DEFAULT {'FALSE' if self.is_postgres else '0'},
                logo_url TEXT,
                cover_url TEXT,
                categories TEXT,
                created_at TEXT NOT NULL
            )
        ''')

        # Пользователи
        cursor.execute(f'''
            CREATE TABLE IF NOT EXISTS users (
                id TEXT PRIMARY KEY,
                tg_id {tg_type} UNIQUE,
                role TEXT NOT NULL,
                full_name TEXT NOT NULL,
                phone TEXT,
                store_id TEXT,
                created_at TEXT NOT NULL
            )
        ''')

        # Товары
        cursor.execute(f'''
            CREATE TABLE IF NOT EXISTS products (
                id TEXT PRIMARY KEY,
                store_id TEXT NOT NULL,
                name TEXT NOT NULL,
                sku TEXT NOT NULL,
                category TEXT,
                price_rub {money_type} NOT NULL,
                min_qty INTEGER NOT NULL DEFAULT 1,
                stock INTEGER NOT NULL DEFAULT 0,
                image_url TEXT,
                description TEXT,
                tags TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        ''')

        # Заказы (позиции хранятся JSON-массивом)
        cursor.execute(f'''
            CREATE TABLE IF NOT EXISTS orders (
                id TEXT PRIMARY KEY,
                buyer_id TEXT NOT NULL,
                store_id TEXT NOT NULL,
                status TEXT NOT NULL DEFAULT 'new',
                items TEXT,
                subtotal_rub {money_type} NOT NULL DEFAULT 0,
                delivery_fee_rub {money_type} NOT NULL DEFAULT 0,
                total_rub {money_type} NOT NULL DEFAULT 0,
                delivery_address TEXT,
                comment TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        ''')

        cursor.execute('CREATE INDEX IF NOT EXISTS idx_users_store ON users(store_id)')
        cursor.execute('CREATE INDEX IF NOT EXISTS idx_products_store ON products(store_id)')
        cursor.execute('CREATE INDEX IF NOT EXISTS idx_orders_store ON orders(store_id)')
        cursor.execute('CREATE INDEX IF NOT EXISTS idx_orders_buyer ON orders(buyer_id)')

    def _seed_initial_data(self, cursor):
        """Демо-данные: по одному пользователю каждой роли, два магазина, товары"""
        self.execute_query(cursor, 'SELECT COUNT(*) FROM users')
        if self.fetchone(cursor)[0] > 0:
            return

        print("Добавление демо-данных...")
        now = datetime.now(timezone.utc).isoformat()
        true_value = True if self.is_postgres else 1

        stores = [
            ('store_demo1', 'ТоргСнаб', 'Москва', 'ул. Складская, 12', 'Бытовая химия и хозтовары оптом',
             '+7 495 000-00-01', 15000, 2, 4.8, true_value,
             'https://images.unsplash.com/photo-1560179707-f14e90ef3623?auto=format&fit=crop&w=180&q=80',
             'https://images.unsplash.com/photo-1607083206968-13611e3d76db?auto=format&fit=crop&w=1400&q=80',
             ['Бытовая химия', 'Хозтовары']),
            ('store_demo2', 'ПродОпт Казань', 'Казань', 'пр. Победы, 3', 'Бакалея и напитки',
             '+7 843 000-00-02', 10000, 3, 4.6, true_value,
             'https://images.unsplash.com/photo-1560179707-f14e90ef3623?auto=format&fit=crop&w=180&q=80',
             'https://images.unsplash.com/photo-1607083206968-13611e3d76db?auto=format&fit=crop&w=1400&q=80',
             ['Бакалея', 'Напитки']),
        ]
        for store in stores:
            self.execute_query(cursor, '''
                INSERT INTO stores (id, name, city, address, description, phone, min_order_rub,
                                    delivery_days, rating, verified, logo_url, cover_url, categories, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ''', store[:12] + (json.dumps(store[12], ensure_ascii=False), now))

        users = [
            ('usr_admin', Config.ADMIN_TG_ID or None, 'admin', 'Администратор', '', None),
            ('usr_seller1', None, 'seller', 'Игорь Продавцов', '+7 900 000-00-11', 'store_demo1'),
            ('usr_seller2', None, 'seller', 'Алия Хасанова', '+7 900 000-00-12', 'store_demo2'),
            ('usr_buyer', None, 'buyer', 'Мария Закупкина', '+7 900 000-00-21', None),
        ]
        for user in users:
            self.execute_query(cursor, '''
                INSERT INTO users (id, tg_id, role, full_name, phone, store_id, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
            ''', user + (now,))

        image = 'https://images.unsplash.com/photo-1515169067868-5387ec356754?auto=format&fit=crop&w=700&q=80'
        products = [
            ('prd_demo1', 'store_demo1', 'Средство для посуды 5 л', 'TS-DW-5', 'Бытовая химия', 540, 10, 500, ['химия', 'кухня']),
            ('prd_demo2', 'store_demo1', 'Мешки для мусора 120 л', 'TS-BAG-120', 'Хозтовары', 210, 20, 1000, ['хозтовары']),
            ('prd_demo3', 'store_demo2', 'Рис длиннозерный 25 кг', 'PK-RICE-25', 'Бакалея', 2350, 2, 80, ['крупы']),
            ('prd_demo4', 'store_demo2', 'Вода питьевая 0,5 л (упак. 12 шт)', 'PK-WTR-05', 'Напитки', 290, 5, 300, []),
        ]
        for product_id, store_id, name, sku, category, price, min_qty, stock, tags in products:
            self.execute_query(cursor, '''
                INSERT INTO products (id, store_id, name, sku, category, price_rub, min_qty, stock,
                                      image_url, description, tags, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ''', (product_id, store_id, name, sku, category, price, min_qty, stock, image, '',
                  json.dumps(tags, ensure_ascii=False), now, now))

        items = [{'product_id': 'prd_demo1', 'name': 'Средство для посуды 5 л', 'sku': 'TS-DW-5', 'qty': 30, 'price_rub': 540}]
        self.execute_query(cursor, '''
            INSERT INTO orders (id, buyer_id, store_id, status, items, subtotal_rub, delivery_fee_rub,
                                total_rub, delivery_address, comment, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        ''', ('ord_demo1', 'usr_buyer', 'store_demo1', 'new', json.dumps(items, ensure_ascii=False),
              16200, 2000, 18200, 'Москва, ул. Тверская, 1', None, now, now))

        print(f"Добавлено: магазинов {len(stores)}, пользователей {len(users)}, товаров {len(products)}")
