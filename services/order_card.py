"""
Текст карточки заказа для Telegram (Markdown).
"""
from typing import Any, Dict, List, Optional

from config import config
from services import routing
from services.financials import Financials, compute_financials, format_currency, resolve_tip, to_minor_units
from services.order_document import OrderDocument, OrderPhase
from services.telegram_utils import escape_markdown

PHASE_LABELS = {
    OrderPhase.NOT_STARTED: "⏳ Не начат",
    OrderPhase.DISPATCHED: "📨 Отправлен водителю",
    OrderPhase.IN_PROGRESS: "🚚 В работе",
    OrderPhase.COMPLETED: "✅ Завершён",
    OrderPhase.CANCELED: "❌ Отменён",
    OrderPhase.PING_PENDING: "🔔 Новый заказ рядом",
}

TIMESTAMP_LABELS = (
    ("created_at", "Создан"),
    ("scheduled_at", "Запланирован"),
    ("dispatched_at", "Отправлен"),
    ("started_at", "Начат"),
)
TIMESTAMP_FORMAT = "%d.%m.%Y %H:%M"


def stop_label(stop: Optional[Dict[str, Any]]) -> str:
    """Название точки: адрес, улица или имя места."""
    if not stop:
        return "—"
    for key in ("address", "street1", "name"):
        value = stop.get(key)
        if value:
            return str(value)
    return stop.get("id") or "—"


def _entity_line(entity: Dict[str, Any], currency: Optional[str]) -> str:
    name = escape_markdown(entity.get("name") or entity.get("id") or "Груз")
    price = entity.get("price")
    if price in (None, ""):
        return f"  • {name}"
    return f"  • {name} — {format_currency(to_minor_units(price), currency)}"


def _financial_lines(order: OrderDocument, fin: Financials) -> List[str]:
    """Денежный блок. Для самовывоза доставка и чаевые за доставку не показываются."""
    currency = fin.currency or config.DEFAULT_CURRENCY
    lines = [
        "💰 *Сумма*",
        f"Подытог: {format_currency(fin.subtotal, currency)}",
    ]
    if not fin.is_pickup:
        lines.append(f"Доставка: {format_currency(fin.delivery_fee, currency)}")
    if fin.tip.amount:
        # display собран с валютой заказа, которой может не быть
        tip = resolve_tip(order.get_attribute("meta.tip", 0), fin.subtotal, currency)
        lines.append(f"Чаевые: {escape_markdown(tip.display)}")
    if fin.delivery_tip.amount and not fin.is_pickup:
        tip = resolve_tip(order.get_attribute("meta.delivery_tip", 0), fin.subtotal, currency)
        lines.append(f"Чаевые за доставку: {escape_markdown(tip.display)}")
    lines.append(f"*Итого: {format_currency(fin.total, currency)}*")
    if fin.is_cod:
        lines.append(f"💵 Оплата при получении: {format_currency(fin.cod_amount, currency)}")
    return lines


def render_order_card(
    order: OrderDocument,
    driver_location: Optional[tuple] = None,
) -> str:
    """
    Карточка заказа: статус, назначение, клиент, грузы, деньги.

    driver_location: (lat, lon) водителя, если известна; тогда к назначению
    добавляется расстояние.
    """
    state = order.state
    lines = [
        f"📦 *Заказ {escape_markdown(order.id or '')}*",
        f"Статус: {PHASE_LABELS.get(state.phase, escape_markdown(order.status or '—'))}",
    ]

    if order.get_attribute("meta.is_pickup"):
        lines.append("🏬 Самовывоз")

    tracking = order.get_attribute("tracking_number.tracking_number")
    if tracking:
        lines.append(f"🔖 Трек-номер: {escape_markdown(str(tracking))}")
    for key, label in TIMESTAMP_LABELS:
        moment = order.get_timestamp(key)
        if moment is not None:
            lines.append(f"🕓 {label}: {moment.strftime(TIMESTAMP_FORMAT)}")

    lines.append("")
    lines.append(f"📍 Откуда: {escape_markdown(stop_label(routing.first_stop(order)))}")
    lines.append(f"🏁 Куда: {escape_markdown(stop_label(routing.last_stop(order)))}")

    destination = routing.current_destination(order)
    if destination is not None:
        text = f"➡️ Текущее назначение: {escape_markdown(stop_label(destination))}"
        if driver_location:
            distance = routing.distance_to(destination, driver_location[0], driver_location[1])
            if distance is not None:
                text += f" ({distance:.1f} км)"
        lines.append(text)
    elif routing.can_set_destination(order):
        lines.append("➡️ Назначение не выбрано")

    customer = order.get_attribute("customer")
    if isinstance(customer, dict) and (customer.get("name") or customer.get("phone")):
        lines.append("")
        lines.append(f"👤 Клиент: {escape_markdown(customer.get('name') or '—')}")
        if customer.get("phone"):
            lines.append(f"📞 {escape_markdown(customer['phone'])}")

    fin = compute_financials(order)
    currency = fin.currency or config.DEFAULT_CURRENCY

    groups = routing.entities_by_destination(order) if routing.is_multi_drop(order) else []
    if groups:
        lines.append("")
        lines.append("📦 *Грузы по точкам*")
        for group in groups:
            lines.append(f"_{escape_markdown(stop_label(group['waypoint']))}_")
            lines.extend(_entity_line(e, currency) for e in group["entities"])
    elif order.entities:
        lines.append("")
        lines.append("📦 *Грузы*")
        lines.extend(_entity_line(e, currency) for e in order.entities)

    lines.append("")
    lines.extend(_financial_lines(order, fin))

    notes = order.get_attribute("notes")
    if notes:
        lines.append("")
        lines.append(f"📝 {escape_markdown(str(notes))}")

    return "\n".join(lines)


def render_order_row(order: OrderDocument) -> str:
    """Короткая строка заказа для списка."""
    state = order.state
    label = PHASE_LABELS.get(state.phase, order.status or "")
    icon = label.split(" ", 1)[0] if label else "•"
    return f"{icon} {order.id} — {stop_label(routing.last_stop(order))}"
