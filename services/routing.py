"""
Маршрутные факты заказа: точки, текущее назначение, мульти-дроп.

Координаты в заказе хранятся как GeoJSON: [longitude, latitude].
"""
import math
from functools import lru_cache
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import urlencode

from services.order_document import OrderDocument, waypoint_in_progress

EARTH_RADIUS_KM = 6371


# Кешируем результаты для часто используемых координат
@lru_cache(maxsize=1000)
def haversine_distance(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Расстояние между двумя точками на Земле (км) по формуле Haversine."""
    phi1, phi2 = math.radians(lat1), math.radians(lat2)
    dphi = math.radians(lat2 - lat1)
    dlambda = math.radians(lon2 - lon1)

    a = math.sin(dphi / 2)**2 + math.cos(phi1) * math.cos(phi2) * math.sin(dlambda / 2)**2
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))

    return EARTH_RADIUS_KM * c


def stops(order: OrderDocument) -> List[Dict[str, Any]]:
    """Все точки заказа по порядку: pickup, waypoints, dropoff."""
    result = []
    pickup = order.get_attribute("payload.pickup")
    if isinstance(pickup, dict):
        result.append(pickup)
    result.extend(order.waypoints)
    dropoff = order.get_attribute("payload.dropoff")
    if isinstance(dropoff, dict):
        result.append(dropoff)
    return result


def find_stop(order: OrderDocument, stop_id: Optional[str]) -> Optional[Dict[str, Any]]:
    if not stop_id:
        return None
    return next((s for s in stops(order) if s.get("id") == stop_id), None)


def current_destination(order: OrderDocument) -> Optional[Dict[str, Any]]:
    """Точка, на которую указывает payload.current_waypoint."""
    return find_stop(order, order.get_attribute("payload.current_waypoint"))


def is_multi_drop(order: OrderDocument) -> bool:
    return len(order.waypoints) > 0


def waypoints_in_progress(order: OrderDocument) -> List[Dict[str, Any]]:
    return [w for w in order.waypoints if waypoint_in_progress(w)]


def can_set_destination(order: OrderDocument) -> bool:
    return is_multi_drop(order) and order.is_in_progress and current_destination(order) is None


def can_change_destination(order: OrderDocument) -> bool:
    return is_multi_drop(order) and order.is_in_progress and current_destination(order) is not None


def can_navigate(order: OrderDocument, navigation_enabled: bool) -> bool:
    return (
        order.get_attribute("payload.current_waypoint") is not None
        and current_destination(order) is not None
        and order.is_in_progress
        and navigation_enabled
    )


def entities_by_destination(order: OrderDocument) -> List[Dict[str, Any]]:
    """
    Группировка грузов по точкам назначения для мульти-дроп заказа.
    Точки без грузов пропускаются.
    """
    groups = []
    entities = order.entities
    for waypoint in order.waypoints:
        destination = waypoint.get("id")
        if not destination:
            continue
        matched = [e for e in entities if e.get("destination") == destination]
        if not matched:
            continue
        groups.append({"destination": destination, "waypoint": waypoint, "entities": matched})
    return groups


def first_stop(order: OrderDocument) -> Optional[Dict[str, Any]]:
    pickup = order.get_attribute("payload.pickup")
    if isinstance(pickup, dict):
        return pickup
    waypoints = order.waypoints
    if waypoints:
        return waypoints[0]
    return order.get_attribute("payload.dropoff")


def last_stop(order: OrderDocument) -> Optional[Dict[str, Any]]:
    dropoff = order.get_attribute("payload.dropoff")
    if isinstance(dropoff, dict):
        return dropoff
    waypoints = order.waypoints
    return waypoints[-1] if waypoints else None


def stop_coordinates(stop: Optional[Dict[str, Any]]) -> Optional[Tuple[float, float]]:
    """(lat, lon) точки или None. В GeoJSON порядок обратный."""
    if not stop:
        return None
    location = stop.get("location")
    coords = location.get("coordinates") if isinstance(location, dict) else None
    if not isinstance(coords, (list, tuple)) or len(coords) < 2:
        return None
    try:
        lon, lat = float(coords[0]), float(coords[1])
    except (TypeError, ValueError):
        return None
    return lat, lon


def distance_to(stop: Optional[Dict[str, Any]], lat: float, lon: float) -> Optional[float]:
    coords = stop_coordinates(stop)
    if coords is None:
        return None
    return haversine_distance(lat, lon, coords[0], coords[1])


def generate_navigation_url(stop: Optional[Dict[str, Any]]) -> str:
    """
    Ссылка на построение маршрута до точки от текущей геолокации.
    Пустая строка, если у точки нет координат.
    """
    coords = stop_coordinates(stop)
    if coords is None:
        return ""
    query = urlencode({"api": 1, "destination": f"{coords[0]},{coords[1]}", "travelmode": "driving"})
    return f"https://www.google.com/maps/dir/?{query}"
