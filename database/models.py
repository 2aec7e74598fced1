from datetime import datetime
from typing import Optional

from sqlalchemy import BigInteger, Integer, String, Boolean, DateTime, func
from sqlalchemy.orm import Mapped, mapped_column

from database.core import Base, is_sqlite


# В SQLite автоинкремент работает только для INTEGER PRIMARY KEY (rowid)
PK_INT = Integer if is_sqlite() else BigInteger


class DriverAccount(Base):
    """Привязка Telegram-пользователя к водителю Fleetbase."""
    __tablename__ = "driver_accounts"

    id: Mapped[int] = mapped_column(PK_INT, primary_key=True, autoincrement=True)
    telegram_id: Mapped[int] = mapped_column(BigInteger, unique=True, nullable=False, index=True)
    driver_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
    full_name: Mapped[str] = mapped_column(String, nullable=False)
    # Персональный токен водителя; если пуст, используется FLEETBASE_API_KEY
    api_token: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    last_location_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        {"comment": "Водители, привязанные к Telegram"},
    )
