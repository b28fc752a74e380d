import logging
import os
from collections.abc import AsyncGenerator

import pytest
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine
from sqlalchemy.pool import NullPool, StaticPool

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")

from nestedset.lib.db.base import Base  # noqa: E402
from nestedset.lib.log import configure_logging  # noqa: E402
from nestedset.ops.entities.tree_node import TreeNode  # noqa: E402,F401
from nestedset.ops.services.tree_service import TreeService  # noqa: E402

TEST_DATABASE_URL = os.getenv("TEST_DATABASE_URL", os.environ["DATABASE_URL"])

configure_logging()

# Reduce logging noise during tests
logging.getLogger("asyncio").setLevel(logging.WARNING)
logging.getLogger("aiosqlite").setLevel(logging.WARNING)
logging.getLogger("faker.factory").setLevel(logging.WARNING)


@pytest.fixture(scope="function")
async def engine() -> AsyncGenerator[AsyncEngine, None]:
    if TEST_DATABASE_URL.startswith("sqlite"):
        # One shared connection so the in-memory database survives between sessions
        test_engine = create_async_engine(TEST_DATABASE_URL, poolclass=StaticPool)
    else:
        test_engine = create_async_engine(TEST_DATABASE_URL, poolclass=NullPool)

    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)

    yield test_engine
    await test_engine.dispose()


@pytest.fixture(scope="function")
async def db_session(engine: AsyncEngine) -> AsyncGenerator[AsyncSession, None]:
    async with AsyncSession(engine, expire_on_commit=False) as session:
        yield session
        await session.rollback()


@pytest.fixture(scope="function")
def service(db_session: AsyncSession) -> TreeService:
    return TreeService(db_session)
