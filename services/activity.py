"""
Активности заказа и классификация ответа next-activity.

Граф активностей принадлежит серверу. Здесь ответ сервера только
раскладывается по видам: подтверждение отправки, завершение заказа или
выбор из нескольких переходов. Переходов, которых сервер не предложил,
резолвер не создаёт.
"""
from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional, Tuple

from services import routing
from services.order_document import OrderDocument

DISPATCHED_CODE = "dispatched"
COMPLETED_CODE = "completed"


@dataclass(frozen=True)
class Activity:
    """Кандидат на следующий статус заказа в том виде, как его прислал сервер."""
    code: str
    status: str = ""
    details: str = ""
    require_pod: bool = False
    complete: bool = False
    raw: Dict[str, Any] = field(default_factory=dict, compare=False, repr=False)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Activity":
        return cls(
            code=str(data.get("code") or ""),
            status=str(data.get("status") or ""),
            details=str(data.get("details") or ""),
            require_pod=bool(data.get("require_pod")),
            complete=bool(data.get("complete")),
            raw=dict(data),
        )

    @property
    def is_terminal(self) -> bool:
        return self.complete or self.code == COMPLETED_CODE

    def to_dict(self) -> Dict[str, Any]:
        return dict(self.raw) if self.raw else {
            "code": self.code,
            "status": self.status,
            "details": self.details,
            "require_pod": self.require_pod,
            "complete": self.complete,
        }


class ResolutionKind(str, enum.Enum):
    NONE = "none"
    CONFIRM_DISPATCH = "confirm_dispatch"
    COMPLETE = "complete"
    CHOICES = "choices"


@dataclass(frozen=True)
class ActivityResolution:
    kind: ResolutionKind
    activities: Tuple[Activity, ...] = ()
    waypoint_id: Optional[str] = None

    @property
    def requires_dispatch_confirmation(self) -> bool:
        return self.kind == ResolutionKind.CONFIRM_DISPATCH

    @property
    def is_empty(self) -> bool:
        return not self.activities


def _normalize_offered(offered: Any) -> Tuple[Activity, ...]:
    if not offered:
        return ()
    if isinstance(offered, Mapping):
        offered = [offered]
    if not isinstance(offered, (list, tuple)):
        return ()
    return tuple(
        Activity.from_dict(item)
        for item in offered
        if isinstance(item, Mapping) and item.get("code")
    )


def resolve_next_activity(
    order: Optional[OrderDocument],
    waypoint_id: Optional[str],
    offered: Any,
) -> ActivityResolution:
    """
    Классифицировать ответ сервера о следующей активности.

    Args:
        order: Текущий документ заказа (обязателен)
        waypoint_id: Текущая точка назначения, если есть
        offered: Ответ next-activity: объект, список объектов или пусто

    Returns:
        ActivityResolution. Активности в нём только предложенные сервером,
        в серверном порядке.
    """
    if order is None:
        raise ValueError("resolve_next_activity requires an order")

    known_stop_ids = {stop.get("id") for stop in routing.stops(order)}
    target = waypoint_id if waypoint_id and waypoint_id in known_stop_ids else None

    activities = _normalize_offered(offered)
    if not activities:
        return ActivityResolution(ResolutionKind.NONE, (), target)

    if order.status != DISPATCHED_CODE:
        for activity in activities:
            if activity.code == DISPATCHED_CODE:
                return ActivityResolution(ResolutionKind.CONFIRM_DISPATCH, (activity,), target)

    if len(activities) == 1 and activities[0].is_terminal:
        return ActivityResolution(ResolutionKind.COMPLETE, activities, target)

    return ActivityResolution(ResolutionKind.CHOICES, activities, target)
