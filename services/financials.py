"""
Денежные показатели заказа: подытог, доставка, чаевые, итог.

Все суммы хранятся целыми в минорных единицах валюты (центы, тийины).
Форматирование в мажорные единицы нужно только для отображения.
"""
import logging
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation, ROUND_DOWN
from typing import Any, Optional

from services.order_document import OrderDocument

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class ResolvedTip:
    amount: int
    display: str
    is_percentage: bool = False


@dataclass(frozen=True, slots=True)
class Financials:
    currency: Optional[str]
    subtotal: int
    delivery_fee: int
    tip: ResolvedTip
    delivery_tip: ResolvedTip
    total: int
    cod_amount: int = 0
    is_pickup: bool = False

    @property
    def is_cod(self) -> bool:
        return self.cod_amount > 0


def to_minor_units(value: Any) -> int:
    """
    Привести цену к целому числу минорных единиц.
    None, пустые и нечисловые значения считаются нулём.
    """
    if value is None or isinstance(value, bool):
        return 0
    if isinstance(value, int):
        return value
    try:
        return int(Decimal(str(value).strip()).to_integral_value(rounding=ROUND_DOWN))
    except (InvalidOperation, ValueError, OverflowError):
        logger.warning("Non-numeric amount treated as 0: %r", value)
        return 0


def format_currency(amount: int, currency: Optional[str] = None) -> str:
    major = (Decimal(amount) / 100).quantize(Decimal("0.01"))
    text = f"{major:,.2f}"
    return f"{text} {currency}" if currency else text


def entities_subtotal(order: OrderDocument) -> int:
    return sum(to_minor_units(entity.get("price")) for entity in order.entities)


def delivery_subtotal(order: OrderDocument) -> int:
    purchase_rate = order.get_attribute("purchase_rate")
    if purchase_rate:
        amount = purchase_rate.get("amount") if isinstance(purchase_rate, dict) else None
        return to_minor_units(amount)
    if order.get_attribute("meta.delivery_free"):
        return to_minor_units(order.get_attribute("meta.delivery_fee"))
    return 0


def resolve_tip(value: Any, subtotal: int, currency: Optional[str] = None) -> ResolvedTip:
    """
    Разрешить чаевые в сумму.

    Строка с "%" на конце означает процент от подытога грузов: "15%" при подытоге
    2000 даёт 300 и отображение "15% (3.00 USD)". Дробный процент
    допускается, сумма усекается до целых минорных единиц. Всё остальное трактуется как
    буквальная сумма в минорных единицах.
    """
    if isinstance(value, str) and value.strip().endswith("%"):
        raw = value.strip()
        try:
            percent = Decimal(raw[:-1].strip())
            if not percent.is_finite():
                raise InvalidOperation(raw)
        except InvalidOperation:
            logger.warning("Unparseable percentage tip %r treated as 0", value)
            return ResolvedTip(0, f"{raw} ({format_currency(0, currency)})", True)
        amount = int((percent * subtotal / 100).to_integral_value(rounding=ROUND_DOWN))
        return ResolvedTip(amount, f"{raw} ({format_currency(amount, currency)})", True)

    amount = to_minor_units(value)
    return ResolvedTip(amount, format_currency(amount, currency))


def compute_financials(order: OrderDocument) -> Financials:
    currency = order.get_attribute("meta.currency")
    subtotal = entities_subtotal(order)
    delivery_fee = delivery_subtotal(order)
    tip = resolve_tip(order.get_attribute("meta.tip", 0), subtotal, currency)
    delivery_tip = resolve_tip(order.get_attribute("meta.delivery_tip", 0), subtotal, currency)
    return Financials(
        currency=currency,
        subtotal=subtotal,
        delivery_fee=delivery_fee,
        tip=tip,
        delivery_tip=delivery_tip,
        total=subtotal + delivery_fee + tip.amount + delivery_tip.amount,
        cod_amount=to_minor_units(order.get_attribute("payload.cod_amount")),
        is_pickup=bool(order.get_attribute("meta.is_pickup")),
    )
