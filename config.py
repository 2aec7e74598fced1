"""
Конфигурация приложения с валидацией через Pydantic.
"""
from typing import List, Optional
from pathlib import Path
from pydantic import Field, field_validator, computed_field
from pydantic_settings import BaseSettings, SettingsConfigDict
from dotenv import load_dotenv

load_dotenv()


class Config(BaseSettings):
    """Конфигурация приложения с валидацией."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # Database
    DB_DIALECT: str = Field(default="sqlite", description="Тип БД: postgres или sqlite")
    DB_POOL_SIZE: int = Field(default=10, description="Размер пула соединений PostgreSQL")
    DB_MAX_OVERFLOW: int = Field(default=10, description="Доп. соединений поверх pool_size")
    DB_USER: str = Field(default="postgres", description="Пользователь БД")
    DB_PASS: str = Field(default="postgres", description="Пароль БД")
    DB_HOST: str = Field(default="localhost", description="Хост БД")
    DB_PORT: str = Field(default="5432", description="Порт БД")
    DB_NAME: str = Field(default="navigator_bot", description="Имя БД")
    SQLITE_PATH: str = Field(default="navigator_bot.sqlite3", description="Путь к SQLite файлу")
    # Railway и др. платформы передают один DATABASE_URL; если задан, используем его
    DATABASE_URL_OVERRIDE: Optional[str] = Field(default=None, description="URL БД", validation_alias="DATABASE_URL")

    @field_validator("DB_DIALECT")
    @classmethod
    def validate_db_dialect(cls, v: str) -> str:
        """Валидация типа БД."""
        v = v.lower()
        if v not in ("postgres", "postgresql", "sqlite", "sqlite3"):
            raise ValueError(f"Неподдерживаемый тип БД: {v}")
        return v

    @computed_field
    @property
    def DATABASE_URL(self) -> str:
        """URL подключения к БД. Если задан DATABASE_URL, используем его."""
        raw = self.DATABASE_URL_OVERRIDE
        if raw:
            raw = raw.strip()
            # для asyncpg нужен postgresql+asyncpg://
            if raw.startswith("postgresql://") and "+asyncpg" not in raw:
                return raw.replace("postgresql://", "postgresql+asyncpg://", 1)
            return raw
        if self.DB_DIALECT in ("sqlite", "sqlite3"):
            base_dir = Path(__file__).resolve().parent
            db_path = Path(self.SQLITE_PATH)
            if not db_path.is_absolute():
                db_path = base_dir / db_path
            return f"sqlite+aiosqlite:///{db_path.resolve().as_posix()}"
        return f"postgresql+asyncpg://{self.DB_USER}:{self.DB_PASS}@{self.DB_HOST}:{self.DB_PORT}/{self.DB_NAME}"

    # Bot
    BOT_TOKEN: str = Field(default="", description="Токен Telegram бота")
    ADMIN_IDS: str = Field(default="", description="ID администраторов (диспетчеров) через запятую")

    @field_validator("BOT_TOKEN")
    @classmethod
    def validate_bot_token(cls, v: str) -> str:
        """Валидация токена бота."""
        if not v:
            raise ValueError("BOT_TOKEN обязателен для работы бота")
        return v

    @computed_field
    @property
    def ADMIN_IDS_LIST(self) -> List[int]:
        """Список ID администраторов."""
        if not self.ADMIN_IDS:
            return []
        return [int(id_str.strip()) for id_str in self.ADMIN_IDS.split(",") if id_str.strip()]

    # Redis
    REDIS_HOST: str = Field(default="localhost", description="Хост Redis")
    REDIS_PORT: int = Field(default=6379, description="Порт Redis")
    REDIS_DB: int = Field(default=0, description="Номер БД Redis")
    REDIS_PASSWORD: Optional[str] = Field(default=None, description="Пароль Redis")
    REDIS_CACHE_TTL: int = Field(default=300, description="TTL кеша водителей в секундах")

    # Fleetbase
    FLEETBASE_API_URL: str = Field(default="https://api.fleetbase.io", description="URL Fleetbase API")
    FLEETBASE_API_KEY: str = Field(default="", description="Ключ API (если у водителя нет своего токена)")
    FLEETBASE_TIMEOUT: int = Field(default=30, description="Таймаут HTTP-запросов к Fleetbase в секундах")
    ACTION_TIMEOUT: float = Field(default=45.0, description="Предельное время одной операции над заказом")
    SOCKET_URL: str = Field(
        default="wss://socket.fleetbase.io:8000/socketcluster/",
        description="URL realtime-сокета (SocketCluster)"
    )
    SOCKET_RECONNECT_MAX_DELAY: float = Field(default=30.0, description="Максимальная пауза переподключения сокета")
    NOTIFICATION_RELAY_ENABLED: bool = Field(default=True, description="Слушать канал водителя и пересылать уведомления")

    @field_validator("FLEETBASE_API_URL", "SOCKET_URL")
    @classmethod
    def validate_url(cls, v: str) -> str:
        """Валидация URL."""
        v = v.strip()
        if not v.startswith(("http://", "https://", "ws://", "wss://")):
            raise ValueError(f"Некорректный URL: {v}")
        return v

    @field_validator("ACTION_TIMEOUT")
    @classmethod
    def validate_action_timeout(cls, v: float) -> float:
        """Таймаут операции должен быть положительным."""
        if v <= 0:
            raise ValueError("ACTION_TIMEOUT должен быть больше нуля")
        return v

    # Order screen
    CONFIRM_TIMEOUT: float = Field(default=300.0, description="Сколько ждать ответа на подтверждение (сек)")
    MAPBOX_ACCESS_TOKEN: Optional[str] = Field(default=None, description="Токен навигации; без него кнопка маршрута скрыта")
    DEFAULT_CURRENCY: str = Field(default="USD", description="Валюта, если в заказе не указана")

    # Logging
    LOG_LEVEL: str = Field(default="INFO", description="Уровень логирования")
    DEBUG: bool = Field(default=False, description="Режим отладки")

    @field_validator("LOG_LEVEL")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Валидация уровня логирования."""
        v = v.upper()
        valid_levels = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")
        if v not in valid_levels:
            raise ValueError(f"Неподдерживаемый уровень логирования: {v}. Допустимые: {valid_levels}")
        return v


# Создаем экземпляр конфигурации с валидацией
try:
    config = Config()
except Exception as e:
    import sys
    print(f"❌ Ошибка загрузки конфигурации: {e}", file=sys.stderr)
    sys.exit(1)
