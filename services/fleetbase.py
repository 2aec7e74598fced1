"""
HTTP-клиент Fleetbase REST API для операций водителя над заказами.

Конфигурация в .env:
    FLEETBASE_API_URL=https://api.fleetbase.io
    FLEETBASE_API_KEY=flb_live_...
    FLEETBASE_TIMEOUT=30

Клиент не повторяет запросы сам: любая ошибка уходит вызывающему как
FleetbaseError с сообщением сервера.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Union

import aiohttp

from config import config
from services.order_document import OrderDocument

logger = logging.getLogger(__name__)

NextActivityResponse = Union[Dict[str, Any], List[Dict[str, Any]], None]


class FleetbaseError(Exception):
    """Ошибка сервера или сети. message: текст для пользователя."""

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.status = status

    def __repr__(self) -> str:
        return f"FleetbaseError(status={self.status!r}, message={self.message!r})"


def extract_error_message(data: Any, fallback: str) -> str:
    """Вытащить текст ошибки из ответа Fleetbase: errors[0], error, message."""
    if isinstance(data, dict):
        errors = data.get("errors")
        if isinstance(errors, list) and errors:
            return str(errors[0])
        if isinstance(errors, str) and errors:
            return errors
        for key in ("error", "message"):
            value = data.get(key)
            if value:
                return str(value)
    if isinstance(data, str) and data.strip():
        return data.strip()
    return fallback


class FleetbaseClient:
    """HTTP-клиент для Fleetbase REST API (/v1)."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        timeout: Optional[float] = None,
    ):
        self.base_url = (base_url if base_url is not None else config.FLEETBASE_API_URL).rstrip("/")
        self.api_key = api_key if api_key is not None else config.FLEETBASE_API_KEY
        self.timeout = aiohttp.ClientTimeout(total=timeout if timeout is not None else config.FLEETBASE_TIMEOUT)

    def with_token(self, token: Optional[str]) -> "FleetbaseClient":
        """Клиент с токеном конкретного водителя (или тот же, если токена нет)."""
        if not token:
            return self
        return FleetbaseClient(self.base_url, token, self.timeout.total)

    def _headers(self) -> Dict[str, str]:
        headers = {"Accept": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    async def _request(self, method: str, path: str, **kwargs) -> Any:
        url = f"{self.base_url}/v1/{path.lstrip('/')}"
        try:
            async with aiohttp.ClientSession(
                headers=self._headers(), timeout=self.timeout
            ) as session:
                async with session.request(method, url, **kwargs) as resp:
                    if resp.content_type == "application/json":
                        data = await resp.json()
                    else:
                        data = await resp.text()
                    if resp.status >= 400:
                        message = extract_error_message(data, resp.reason or f"HTTP {resp.status}")
                        logger.warning("Fleetbase API error [%s %s]: %s %s", method, path, resp.status, message)
                        raise FleetbaseError(message, resp.status)
                    return data
        except asyncio.TimeoutError as e:
            logger.error("Fleetbase API timed out [%s %s]", method, path)
            raise FleetbaseError("Сервер не ответил вовремя") from e
        except aiohttp.ClientError as e:
            logger.error("Fleetbase API unreachable [%s %s]: %s", method, path, e)
            raise FleetbaseError(f"Сервер недоступен: {e}") from e
        except ValueError as e:
            # Тело с заголовком application/json, которое не разбирается как JSON
            logger.error("Fleetbase API returned malformed JSON [%s %s]: %s", method, path, e)
            raise FleetbaseError("Некорректный ответ сервера") from e

    async def _order_request(self, method: str, path: str, **kwargs) -> OrderDocument:
        data = await self._request(method, path, **kwargs)
        if not isinstance(data, dict):
            raise FleetbaseError("Некорректный ответ сервера")
        return OrderDocument(data)

    # --- заказы ---

    async def find_record(self, order_id: str) -> OrderDocument:
        return await self._order_request("GET", f"orders/{order_id}")

    async def query_orders(self, params: Dict[str, Any]) -> List[OrderDocument]:
        """
        Список заказов, например {"driver": "driver_xxx", "on": "19-10-2026"}.
        Ожидаемый формат ответа: список заказов или {"orders": [...]}.
        """
        query = {k: v for k, v in params.items() if v is not None}
        data = await self._request("GET", "orders", params=query)
        if isinstance(data, dict):
            data = data.get("orders") or data.get("data") or []
        if not isinstance(data, list):
            raise FleetbaseError("Некорректный ответ сервера")
        return [OrderDocument(item) for item in data if isinstance(item, dict)]

    async def start_order(
        self,
        order_id: str,
        skip_dispatch: bool = False,
        assign: Optional[str] = None,
    ) -> OrderDocument:
        body: Dict[str, Any] = {}
        if skip_dispatch:
            body["skipDispatch"] = True
        if assign:
            body["assign"] = assign
        return await self._order_request("POST", f"orders/{order_id}/start", json=body)

    async def update_activity(
        self,
        order_id: str,
        activity: Optional[Dict[str, Any]] = None,
        skip_dispatch: bool = False,
    ) -> OrderDocument:
        body: Dict[str, Any] = {}
        if activity is not None:
            body["activity"] = activity
        if skip_dispatch:
            body["skipDispatch"] = True
        return await self._order_request("POST", f"orders/{order_id}/update-activity", json=body)

    async def set_destination(self, order_id: str, waypoint_id: str) -> OrderDocument:
        return await self._order_request("POST", f"orders/{order_id}/set-destination/{waypoint_id}")

    async def complete_order(self, order_id: str) -> OrderDocument:
        return await self._order_request("POST", f"orders/{order_id}/complete")

    async def get_next_activity(self, order_id: str, waypoint: Optional[str] = None) -> NextActivityResponse:
        params = {"waypoint": waypoint} if waypoint else None
        data = await self._request("GET", f"orders/{order_id}/next-activity", params=params)
        if data in ("", None):
            return None
        if not isinstance(data, (dict, list)):
            raise FleetbaseError("Некорректный ответ сервера")
        return data

    # --- водитель ---

    async def get_driver(self, driver_id: str) -> Dict[str, Any]:
        data = await self._request("GET", f"drivers/{driver_id}")
        if not isinstance(data, dict):
            raise FleetbaseError("Некорректный ответ сервера")
        return data

    async def track_driver(self, driver_id: str, latitude: float, longitude: float) -> Dict[str, Any]:
        data = await self._request(
            "POST",
            f"drivers/{driver_id}/track",
            json={"latitude": latitude, "longitude": longitude},
        )
        return data if isinstance(data, dict) else {}


@dataclass(frozen=True)
class DriverSession:
    """Аутентифицированный водитель. Жизненным циклом управляют снаружи."""
    id: str
    name: str
    client: FleetbaseClient

    async def track(self, latitude: float, longitude: float) -> Dict[str, Any]:
        return await self.client.track_driver(self.id, latitude, longitude)
