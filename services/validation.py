"""
Валидация входных данных для handlers.
"""
from datetime import date, datetime
from typing import Optional
from pydantic import BaseModel, Field, field_validator
import re


# Формат даты в запросе списка заказов Fleetbase
ORDER_DATE_FORMAT = "%d-%m-%Y"

_DRIVER_ID_RE = re.compile(r"^driver_[A-Za-z0-9]+$")


class LinkDriverInput(BaseModel):
    """Аргументы команды /link <telegram_id> <driver_id> [token]."""

    telegram_id: int = Field(..., description="Telegram ID водителя")
    driver_id: str = Field(..., description="Public ID водителя в Fleetbase")
    api_token: Optional[str] = Field(default=None, description="Персональный токен API")

    @field_validator("telegram_id")
    @classmethod
    def validate_telegram_id(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("Telegram ID должен быть положительным числом")
        return v

    @field_validator("driver_id")
    @classmethod
    def validate_driver_id(cls, v: str) -> str:
        v = v.strip()
        if not _DRIVER_ID_RE.match(v):
            raise ValueError("ID водителя должен иметь вид driver_XXXX")
        return v

    @classmethod
    def from_string(cls, text: str) -> "LinkDriverInput":
        """Создать из аргументов команды."""
        parts = text.split()
        if len(parts) not in (2, 3):
            raise ValueError("Формат: /link <telegram_id> <driver_id> [token]")
        try:
            telegram_id = int(parts[0])
        except ValueError:
            raise ValueError("Telegram ID должен быть числом")
        return cls(
            telegram_id=telegram_id,
            driver_id=parts[1],
            api_token=parts[2] if len(parts) == 3 else None,
        )


class TelegramIDInput(BaseModel):
    """Валидация Telegram ID."""

    telegram_id: int = Field(..., description="Telegram ID")

    @field_validator("telegram_id")
    @classmethod
    def validate_telegram_id(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("Telegram ID должен быть положительным числом")
        return v

    @classmethod
    def from_string(cls, text: str) -> "TelegramIDInput":
        try:
            return cls(telegram_id=int(text.strip()))
        except ValueError:
            raise ValueError("Telegram ID должен быть числом")


class OrderDateInput(BaseModel):
    """Дата списка заказов: dd-mm-yyyy или dd.mm.yyyy; пусто: сегодня."""

    day: date = Field(default_factory=date.today)

    @property
    def query_value(self) -> str:
        return self.day.strftime(ORDER_DATE_FORMAT)

    @classmethod
    def from_string(cls, text: str) -> "OrderDateInput":
        text = (text or "").strip()
        if not text:
            return cls()
        for fmt in (ORDER_DATE_FORMAT, "%d.%m.%Y"):
            try:
                return cls(day=datetime.strptime(text, fmt).date())
            except ValueError:
                continue
        raise ValueError("Дата должна быть в формате ДД-ММ-ГГГГ")


def validate_input(model_class: type[BaseModel], text: str, error_message: Optional[str] = None) -> BaseModel:
    """
    Валидировать входные данные.

    Args:
        model_class: Класс модели Pydantic с методом from_string
        text: Текст для валидации
        error_message: Кастомное сообщение об ошибке

    Returns:
        Валидированный объект

    Raises:
        ValueError: При ошибке валидации
    """
    try:
        return model_class.from_string(text)
    except ValueError as e:
        if error_message:
            raise ValueError(error_message) from e
        raise
