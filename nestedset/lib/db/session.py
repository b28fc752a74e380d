from collections.abc import AsyncGenerator

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from nestedset.config import Settings, get_settings


def build_engine(settings: Settings) -> AsyncEngine:
    """Create the async engine, applying the configured isolation level if any."""
    options = {"echo": False, "future": True}
    if settings.isolation_level:
        # The tree mutators need either SERIALIZABLE here or a scope lock
        options["isolation_level"] = settings.isolation_level
    return create_async_engine(settings.database_url, **options)


settings = get_settings()
DATABASE_URL = settings.database_url

engine = build_engine(settings)
async_session_maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async def get_session() -> AsyncGenerator[AsyncSession, None]:
    async with async_session_maker() as session:
        yield session
