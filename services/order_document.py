"""
Документ заказа: обёртка над представлением заказа с сервера.

Документ не изменяется по полям: после каждой успешной операции он
целиком заменяется новым снимком. Классификация статуса сосредоточена в
classify_order(), и ею пользуются как предикаты документа, так и
ActivityResolver.
"""
from __future__ import annotations

import copy
import enum
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional, Sequence

logger = logging.getLogger(__name__)

TERMINAL_STATUSES = ("completed", "canceled")
_MISSING = object()


class OrderPhase(str, enum.Enum):
    NOT_STARTED = "not_started"
    DISPATCHED = "dispatched"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELED = "canceled"
    PING_PENDING = "order_ping"


@dataclass(frozen=True, slots=True)
class OrderState:
    """Состояние заказа глазами клиента. waypoint_id задан только для IN_PROGRESS."""
    phase: OrderPhase
    waypoint_id: Optional[str] = None


def lookup(data: Any, path: str, default: Any = None) -> Any:
    """
    Прочитать значение по пути через точку ("payload.pickup.address").

    Числовые сегменты индексируют списки. Отсутствующий или None-узел на
    любой глубине даёт default, исключение не выбрасывается.
    """
    if not path:
        return default
    node = data
    for segment in path.split("."):
        if isinstance(node, Mapping):
            node = node.get(segment, _MISSING)
        elif isinstance(node, Sequence) and not isinstance(node, (str, bytes)):
            try:
                node = node[int(segment)]
            except (ValueError, IndexError):
                return default
        else:
            return default
        if node is _MISSING or node is None:
            return default
    return node


def is_terminal_status(status: Optional[str]) -> bool:
    return (status or "").lower() in TERMINAL_STATUSES


def _is_dispatched(attributes: Mapping[str, Any]) -> bool:
    return attributes.get("dispatched_at") is not None or attributes.get("status") == "dispatched"


def _is_started(attributes: Mapping[str, Any]) -> bool:
    return attributes.get("started_at") is not None


def _is_order_ping(attributes: Mapping[str, Any]) -> bool:
    return (
        attributes.get("adhoc") is True
        and attributes.get("driver_assigned") is None
        and not is_terminal_status(attributes.get("status"))
    )


def classify_order(attributes: Mapping[str, Any]) -> OrderState:
    """
    Единственная точка классификации статуса заказа.

    Порядок проверок важен: терминальные статусы, затем order ping
    (adhoc без назначенного водителя), затем начат/отправлен.
    """
    status = (attributes.get("status") or "").lower()
    if status == "canceled":
        return OrderState(OrderPhase.CANCELED)
    if status == "completed":
        return OrderState(OrderPhase.COMPLETED)
    if _is_order_ping(attributes):
        return OrderState(OrderPhase.PING_PENDING)
    if _is_started(attributes):
        return OrderState(OrderPhase.IN_PROGRESS, lookup(attributes, "payload.current_waypoint"))
    if _is_dispatched(attributes):
        return OrderState(OrderPhase.DISPATCHED)
    return OrderState(OrderPhase.NOT_STARTED)


_NOT_STARTED_PHASES = frozenset({OrderPhase.NOT_STARTED, OrderPhase.DISPATCHED, OrderPhase.PING_PENDING})
_DISPATCHED_PHASES = frozenset({OrderPhase.DISPATCHED, OrderPhase.IN_PROGRESS})


def waypoint_in_progress(waypoint: Optional[Mapping[str, Any]]) -> bool:
    """Точка в работе, если у неё есть трекинг и его статус не completed/canceled."""
    if not waypoint:
        return False
    tracking = waypoint.get("tracking_number")
    if not isinstance(tracking, Mapping):
        return False
    return not is_terminal_status(tracking.get("status_code"))


def _parse_timestamp(value: Any) -> Optional[datetime]:
    if not isinstance(value, str) or not value:
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        logger.debug("Unparseable order timestamp: %r", value)
        return None


class OrderDocument:
    """Снимок заказа с доступом к атрибутам по пути и производными предикатами."""

    def __init__(self, attributes: Mapping[str, Any]):
        if not isinstance(attributes, Mapping):
            raise ValueError("order attributes must be a mapping")
        self._attributes: Dict[str, Any] = copy.deepcopy(dict(attributes))
        self._state = classify_order(self._attributes)

    def __repr__(self) -> str:
        return f"<OrderDocument id={self.id!r} status={self.status!r}>"

    # --- доступ к данным ---

    def get_attribute(self, path: str, default: Any = None) -> Any:
        return lookup(self._attributes, path, default)

    def has_attribute(self, path: str) -> bool:
        return lookup(self._attributes, path, _MISSING) is not _MISSING

    def is_attribute_filled(self, path: str) -> bool:
        value = self.get_attribute(path)
        return value not in (None, "", [], {})

    def serialize(self) -> Dict[str, Any]:
        """Глубокая копия для передачи на другой экран/в другой процесс."""
        return copy.deepcopy(self._attributes)

    @property
    def id(self) -> Optional[str]:
        return self._attributes.get("id")

    @property
    def status(self) -> Optional[str]:
        return self._attributes.get("status")

    @property
    def meta(self) -> Dict[str, Any]:
        meta = self._attributes.get("meta")
        return meta if isinstance(meta, dict) else {}

    @property
    def payload(self) -> Dict[str, Any]:
        payload = self._attributes.get("payload")
        return payload if isinstance(payload, dict) else {}

    @property
    def waypoints(self) -> List[Dict[str, Any]]:
        waypoints = self.get_attribute("payload.waypoints", [])
        return [w for w in waypoints if isinstance(w, dict)] if isinstance(waypoints, list) else []

    @property
    def entities(self) -> List[Dict[str, Any]]:
        entities = self.get_attribute("payload.entities", [])
        return [e for e in entities if isinstance(e, dict)] if isinstance(entities, list) else []

    @property
    def version(self) -> Optional[datetime]:
        """Момент последнего изменения на сервере (updated_at), если известен."""
        return _parse_timestamp(self._attributes.get("updated_at"))

    def get_timestamp(self, key: str) -> Optional[datetime]:
        return _parse_timestamp(self.get_attribute(key))

    # --- статус ---

    @property
    def state(self) -> OrderState:
        return self._state

    @property
    def is_not_started(self) -> bool:
        """Заказ ещё не начат и не завершён (в том числе ожидающий order ping)."""
        return self._state.phase in _NOT_STARTED_PHASES

    @property
    def is_dispatched(self) -> bool:
        """Заказ отправлен водителю и ещё не завершён; начатый заказ тоже считается отправленным."""
        return self._state.phase in _DISPATCHED_PHASES

    @property
    def is_in_progress(self) -> bool:
        return self._state.phase == OrderPhase.IN_PROGRESS

    @property
    def is_canceled(self) -> bool:
        return self._state.phase == OrderPhase.CANCELED

    @property
    def is_completed(self) -> bool:
        return self._state.phase == OrderPhase.COMPLETED

    @property
    def is_order_ping(self) -> bool:
        return self._state.phase == OrderPhase.PING_PENDING
