"""
Per-scope serialization for tree mutations.

Two mutations on the same scope must never interleave their
read-compute-write sequences. A ``ScopeLock`` provides that guarantee in one
of two places:

- ``hold(key)`` wraps the whole transaction (entered before BEGIN, left after
  COMMIT/ROLLBACK), used by locks living outside the database.
- ``acquire_in_transaction(session, key)`` runs as the first statement inside
  the transaction, used by database locks released at transaction end.

Locks held outside the database end with the savepoint a tree operation
opens inside a caller's transaction, not with that transaction, so they
refuse to run there.

Keys are derived from the table name and the scope values, so operations on
disjoint scopes never wait on each other.
"""

import hashlib
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import redis.asyncio as redis
from redis.exceptions import LockNotOwnedError, RedisError
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from nestedset.config import Settings, get_settings
from nestedset.exceptions import LockError

logger = logging.getLogger(__name__)


def scope_key(table_name: str, scope: tuple) -> str:
    """Stable lock name for one forest: ``tree_nodes:org_id=acme``."""
    parts = [f"{column}={value}" for column, value in scope]
    return ":".join([table_name, *parts])


def advisory_key(key: str) -> int:
    """Map a lock name onto the signed 64-bit key space of pg_advisory_xact_lock."""
    digest = hashlib.blake2b(key.encode("utf-8"), digest_size=8).digest()
    return int.from_bytes(digest, "big", signed=True)


class ScopeLock:
    """No locking at all. Safe only with SERIALIZABLE isolation or external serialization."""

    name = "none"
    # Whether the lock lasts until the outermost transaction ends, savepoints included
    held_by_transaction = True

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        yield

    async def acquire_in_transaction(self, session: AsyncSession, key: str) -> None:
        return None


class AdvisoryScopeLock(ScopeLock):
    """PostgreSQL transaction-level advisory lock, released by the database at commit or rollback."""

    name = "advisory"

    async def acquire_in_transaction(self, session: AsyncSession, key: str) -> None:
        dialect = session.bind.dialect.name
        if dialect != "postgresql":
            # SQLite takes a database-wide write lock on the first write anyway
            logger.debug(f"Advisory lock skipped for {key} on dialect {dialect}")
            return
        await session.execute(text("SELECT pg_advisory_xact_lock(:key)"), {"key": advisory_key(key)})
        logger.debug(f"Advisory lock acquired for {key}")


class RedisScopeLock(ScopeLock):
    """Distributed lock held in Redis for the lifetime of the transaction."""

    name = "redis"
    held_by_transaction = False

    def __init__(
        self,
        client: redis.Redis,
        key_prefix: str = "nestedset:",
        ttl: float = 30.0,
        blocking_timeout: float = 10.0,
    ):
        self.client = client
        self.key_prefix = key_prefix
        self.ttl = ttl
        self.blocking_timeout = blocking_timeout

    def _lock_name(self, key: str) -> str:
        return f"{self.key_prefix}lock:{key}"

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        lock = self.client.lock(self._lock_name(key), timeout=self.ttl, blocking_timeout=self.blocking_timeout)
        try:
            acquired = await lock.acquire()
        except RedisError as e:
            raise LockError(f"Failed to acquire scope lock {key}: {e}") from e
        if not acquired:
            raise LockError(f"Timed out after {self.blocking_timeout}s waiting for scope lock {key}")

        logger.debug(f"Redis lock acquired for {key}")
        try:
            yield
        finally:
            try:
                await lock.release()
            except LockNotOwnedError:
                # The TTL ran out while the transaction was still running
                logger.warning(f"Scope lock {key} expired before release, consider raising lock_ttl")


def build_scope_lock(settings: Settings | None = None, redis_client: redis.Redis | None = None) -> ScopeLock:
    """Pick the lock strategy named by ``settings.scope_lock``."""
    settings = settings or get_settings()

    if settings.scope_lock == "advisory":
        return AdvisoryScopeLock()
    if settings.scope_lock == "redis":
        if redis_client is None:
            if not settings.redis_url:
                raise LockError("scope_lock is 'redis' but no redis_url is configured")
            redis_client = redis.from_url(settings.redis_url)
        return RedisScopeLock(
            redis_client,
            key_prefix=settings.redis_key_prefix,
            ttl=settings.lock_ttl,
            blocking_timeout=settings.lock_blocking_timeout,
        )
    return ScopeLock()
