from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from gallery.core.config import Settings, settings


def build_engine(config: Settings) -> AsyncEngine:
    url = config.database_url
    if url.startswith("sqlite"):
        return create_async_engine(url, future=True, connect_args={"check_same_thread": False})
    # Idle connections to a sleeping database are dropped; check them before use.
    return create_async_engine(url, future=True, pool_pre_ping=True)


engine = build_engine(settings)
SessionLocal = async_sessionmaker(engine, expire_on_commit=False, autoflush=False, class_=AsyncSession)
