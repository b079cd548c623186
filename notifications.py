import html
from datetime import datetime

import requests

STATUS_LABELS = {
    'new': 'Новый',
    'confirmed': 'Подтвержден',
    'packing': 'Комплектуется',
    'shipping': 'В пути',
    'delivered': 'Доставлен',
    'cancelled': 'Отменен'
}


def _escape(value):
    # Пользовательский текст не должен ломать разметку HTML
    return html.escape(str(value), quote=False)


def format_order_message(order, store, buyer_name):
    """Текст уведомления о новом заказе (HTML)"""
    lines = [
        f"🛒 <b>Новый заказ {_escape(order['id'])}</b>",
        "",
        f"🏪 <b>Магазин:</b> {_escape(store['name'] if store else order['store_id'])}",
        f"👤 <b>Покупатель:</b> {_escape(buyer_name)}",
        f"📍 <b>Адрес:</b> {_escape(order['delivery_address'])}",
        ""
    ]
    for item in order['items']:
        lines.append(f"• {_escape(item['name'])} ({_escape(item['sku'])}) × {item['qty']} = "
                     f"{item['qty'] * item['price_rub']:.2f} руб.")

    lines.append("")
    lines.append(f"💰 <b>Итого:</b> {order['total_rub']:.2f} руб. (доставка {order['delivery_fee_rub']:.2f} руб.)")
    if order.get('comment'):
        lines.append(f"💬 {_escape(order['comment'])}")
    lines.append(f"⏰ <b>Время:</b> {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}")
    return "\n".join(lines)


def send_telegram_message(bot_token, chat_id, text):
    """Отправка сообщения через Bot API. Возвращает True при успехе"""
    url = f"https://api.telegram.org/bot{bot_token}/sendMessage"
    payload = {
        'chat_id': chat_id,
        'text': text,
        'parse_mode': 'HTML'
    }

    try:
        response = requests.post(url, json=payload, timeout=5)
    except requests.RequestException as e:
        print(f"Ошибка отправки уведомления в {chat_id}: {e}")
        return False

    if response.status_code != 200:
        print(f"Ошибка отправки уведомления в {chat_id}: {response.text}")
        return False
    return True


def notify_new_order(order, store, buyer_name, recipients, bot_token):
    """Уведомляет продавцов магазина и администратора о новом заказе"""
    if not bot_token or not recipients:
        print(f"Нет данных для отправки уведомления о заказе {order['id']}")
        return 0

    text = format_order_message(order, store, buyer_name)
    sent = 0
    for chat_id in dict.fromkeys(recipients):
        if send_telegram_message(bot_token, chat_id, text):
            sent += 1
    return sent


def notify_status_change(order, chat_id, bot_token):
    """Сообщает покупателю о смене статуса заказа"""
    if not bot_token or not chat_id:
        return False

    label = STATUS_LABELS.get(order['status'], order['status'])
    text = f"📦 Заказ <b>{_escape(order['id'])}</b>: статус изменен на <b>{_escape(label)}</b>"
    return send_telegram_message(bot_token, chat_id, text)
