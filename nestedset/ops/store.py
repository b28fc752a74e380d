import logging
from collections.abc import Awaitable, Callable, Iterable
from typing import Any, TypeVar

from sqlalchemy import func, inspect, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.sql.elements import ColumnElement

from nestedset.exceptions import LockError, NodeNotFoundError, StoreError
from nestedset.lib.locks import ScopeLock, scope_key
from nestedset.ops.mapping import NodeDescriptor, NodeMapping, Scope

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RelationalStore:
    """
    Narrow SQL interface the tree algorithms run against.

    Every write is a bulk ``UPDATE`` on the mapped table restricted to one
    scope. Statements skip ORM session synchronization, so records already
    loaded in the session keep their old coordinates until they are
    refreshed; reads made through this class always overwrite them.
    """

    def __init__(self, session: AsyncSession, mapping: NodeMapping, lock: ScopeLock | None = None):
        self.session = session
        self.mapping = mapping
        self.lock = lock or ScopeLock()

    def resolve(self, record: Any) -> NodeDescriptor:
        return self.mapping.resolve(record)

    def _where(self, scope: Scope, *criteria: ColumnElement[bool]) -> list[ColumnElement[bool]]:
        return [self.mapping.scope_clause(scope), *criteria]

    def _transaction(self):
        # Join a transaction the caller already opened through a savepoint
        if self.session.in_transaction():
            return self.session.begin_nested()
        return self.session.begin()

    async def run_atomic(self, fn: Callable[[], Awaitable[T]], scope: Scope, exclusive: bool = True) -> T:
        """
        Run ``fn`` as one all-or-nothing unit.

        With ``exclusive`` the scope lock is held for the whole transaction so
        concurrent mutations of the same forest are serialized. Any SQLAlchemy
        failure rolls the unit back and surfaces as ``StoreError``.
        """
        key = scope_key(self.mapping.table_name, scope)
        lock = self.lock if exclusive else ScopeLock()
        if exclusive and not lock.held_by_transaction and self.session.in_transaction():
            # A savepoint ends before the caller commits, the lock would be released too early
            raise LockError(
                f"The {lock.name} scope lock cannot guard {key} inside an already open transaction, "
                "commit it first or use the advisory lock"
            )

        async with lock.hold(key):
            try:
                async with self._transaction():
                    await lock.acquire_in_transaction(self.session, key)
                    return await fn()
            except SQLAlchemyError as e:
                logger.warning(f"Tree operation on {key} rolled back: {e}")
                await self._reload_expired()
                raise StoreError(f"Tree operation on {key} failed: {e}") from e
            except Exception:
                await self._reload_expired()
                raise

    async def _reload_expired(self) -> None:
        """
        Reload records of the mapped model that a rollback expired.

        Rolling back expires every instance in the session, and reading an
        expired attribute outside of an awaited call cannot lazy load under
        asyncio. Reloading them keeps the caller's records readable.
        """
        stale = [
            record
            for record in list(self.session.sync_session.identity_map.values())
            if isinstance(record, self.mapping.model)
            and inspect(record).persistent
            and inspect(record).expired_attributes
        ]
        if not stale:
            return
        try:
            async with self._transaction():
                for record in stale:
                    await self.session.refresh(record)
        except SQLAlchemyError as e:
            logger.warning(f"Could not reload {len(stale)} records after rollback: {e}")

    async def read(self, node: NodeDescriptor) -> NodeDescriptor:
        """Fresh coordinates of ``node`` from storage."""
        id_column = self.mapping.column("id")
        stmt = select(*self.mapping.read_columns()).where(*self._where(node.scope, id_column == node.id))
        result = await self.session.execute(stmt)
        row = result.first()
        if row is None:
            raise NodeNotFoundError(node.id, node.scope_dict)
        return self.mapping.from_row(row, node.scope)

    async def read_max(self, scope: Scope, role: str) -> int | None:
        stmt = select(func.max(self.mapping.column(role))).where(*self._where(scope))
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def conditional_shift(self, scope: Scope, role: str, predicate: ColumnElement[bool], step: int) -> int:
        """Add ``step`` to one column on every row of the scope matching ``predicate``."""
        column = self.mapping.column(role)
        stmt = (
            update(self.mapping.model)
            .where(*self._where(scope, predicate))
            .values({column: column + step})
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        return result.rowcount

    async def update(
        self, scope: Scope, ids_or_predicate: int | Iterable[int] | ColumnElement[bool], values: dict[str, Any]
    ) -> int:
        """
        Set columns on matching rows.

        ``values`` is keyed by role name (see ``mapping.ROLES``) and may hold
        SQL expressions such as ``depth + 1``.
        """
        id_column = self.mapping.column("id")
        if isinstance(ids_or_predicate, ColumnElement):
            criteria = ids_or_predicate
        elif isinstance(ids_or_predicate, int):
            criteria = id_column == ids_or_predicate
        else:
            ids = list(ids_or_predicate)
            if not ids:
                return 0
            criteria = id_column.in_(ids)

        stmt = (
            update(self.mapping.model)
            .where(*self._where(scope, criteria))
            .values({self.mapping.column(role): value for role, value in values.items()})
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        return result.rowcount

    async def count(self, scope: Scope, predicate: ColumnElement[bool]) -> int:
        stmt = select(func.count()).select_from(self.mapping.model).where(*self._where(scope, predicate))
        result = await self.session.execute(stmt)
        return result.scalar_one()

    async def pluck_ids(self, scope: Scope, predicate: ColumnElement[bool]) -> list[int]:
        stmt = select(self.mapping.column("id")).where(*self._where(scope, predicate))
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def fetch(self, scope: Scope, *criteria: ColumnElement[bool]) -> list[Any]:
        """Mapped records of the scope in traversal order (by left bound, then id)."""
        stmt = (
            select(self.mapping.model)
            .where(*self._where(scope, *criteria))
            .order_by(self.mapping.column("left"), self.mapping.column("id"))
            .execution_options(populate_existing=True)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def fetch_one(self, node: NodeDescriptor) -> Any:
        rows = await self.fetch(node.scope, self.mapping.column("id") == node.id)
        if not rows:
            raise NodeNotFoundError(node.id, node.scope_dict)
        return rows[0]

    async def insert(self, record: Any) -> None:
        self.session.add(record)
        await self.session.flush()

    async def ensure_loaded(self, *records: Any) -> None:
        """
        Reload records whose attributes were expired, typically by the
        rollback of an earlier failed operation, so they can be resolved
        without lazy loading.
        """
        needed = self.mapping.attribute_names()
        stale = [
            record
            for record in records
            if isinstance(record, self.mapping.model)
            and inspect(record).persistent
            and inspect(record).expired_attributes & needed
        ]
        if not stale:
            return

        async def _reload() -> None:
            for record in stale:
                await self.session.refresh(record)

        await self.run_atomic(_reload, (), exclusive=False)

    async def refresh(self, record: Any) -> None:
        """Reload a caller's record after bulk updates moved its coordinates."""
        if record is not None and inspect(record).persistent:
            await self.session.refresh(record)
