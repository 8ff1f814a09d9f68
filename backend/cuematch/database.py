"""
Motor async de SQLAlchemy y fábrica de sesiones del proceso.
"""

from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from .config import settings
from .models import Base


class DatabaseHelper:
    def __init__(
            self,
            url: str,
            echo: bool = False,
            pool_size: int = 5,
            max_overflow: int = 10,
    ):
        engine_kwargs = {"echo": echo, "pool_pre_ping": True}
        # SQLite (desarrollo local) no admite tamaño de pool
        if not make_url(url).get_backend_name().startswith("sqlite"):
            engine_kwargs.update(pool_size=pool_size, max_overflow=max_overflow)

        self.engine: AsyncEngine = create_async_engine(url, **engine_kwargs)
        # expire_on_commit=False: el motor lee los snapshots después del commit
        self.session_factory: async_sessionmaker[AsyncSession] = async_sessionmaker(
            bind=self.engine,
            autoflush=False,
            expire_on_commit=False,
        )

    async def create_tables(self):
        """Crea las tablas que falten (entornos sin migraciones)."""
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def dispose(self):
        await self.engine.dispose()


db_helper = DatabaseHelper(
    url=settings.db.DATABASE_URL,
    echo=settings.db.DB_ECHO,
    pool_size=settings.db.DB_POOL_SIZE,
    max_overflow=settings.db.DB_MAX_OVERFLOW,
)
