from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncSession
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy.pool import NullPool
from config import config


class Base(DeclarativeBase):
    pass


def is_sqlite() -> bool:
    return config.DB_DIALECT in ("sqlite", "sqlite3") and not config.DATABASE_URL.startswith("postgresql")


engine_kwargs = {
    # SQL в лог только в режиме отладки
    "echo": config.DEBUG,
    "pool_pre_ping": True,
}

# Для SQLite настройки пула PostgreSQL не применяются
if is_sqlite():
    engine_kwargs.update(
        {
            "poolclass": NullPool,
            "connect_args": {"check_same_thread": False},
        }
    )
else:
    engine_kwargs.update(
        {
            "pool_size": config.DB_POOL_SIZE,
            "max_overflow": config.DB_MAX_OVERFLOW,
            "pool_recycle": 3600,
        }
    )

engine = create_async_engine(config.DATABASE_URL, **engine_kwargs)

session_maker = async_sessionmaker(
    bind=engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autoflush=False
)
