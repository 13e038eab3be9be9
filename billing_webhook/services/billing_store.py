from __future__ import annotations

from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, AsyncIterator, Sequence, Union

from sqlalchemy import Table, and_, func, insert, or_, select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import (
    DBAPIError,
    IntegrityError,
    InterfaceError,
    OperationalError,
    SQLAlchemyError,
)
from sqlalchemy.exc import TimeoutError as PoolTimeoutError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from billing_webhook.core.errors import DuplicateRecordError, StoreError, TransientStoreError
from billing_webhook.core.logging import get_logger
from billing_webhook.models.insurance_log import NftInsuranceLog
from billing_webhook.models.subscription import WeeklySubscription
from billing_webhook.models.transaction import BnplTransaction
from billing_webhook.models.user_access import UserAccess

logger = get_logger(__name__)

TRANSACTIONS = "bnpl_transactions"
SUBSCRIPTIONS = "weekly_subscriptions"
USERS = "users"
INSURANCE_LOGS = "nft_insurance_logs"

TABLES: dict[str, Table] = {
    TRANSACTIONS: BnplTransaction.__table__,
    SUBSCRIPTIONS: WeeklySubscription.__table__,
    USERS: UserAccess.__table__,
    INSURANCE_LOGS: NftInsuranceLog.__table__,
}

_DIALECT_INSERTS = {
    "postgresql": postgresql.insert,
    "sqlite": sqlite.insert,
}


@dataclass(frozen=True)
class KeepIfEquals:
    """Leave an existing row untouched when its `column` equals `value`."""
    column: str
    value: Any


@dataclass(frozen=True)
class KeepIfNewer:
    """Leave an existing row untouched when its `column` is greater than the incoming one."""
    column: str


UpsertGuard = Union[KeepIfEquals, KeepIfNewer]


def _is_unique_violation(e: IntegrityError) -> bool:
    msg = str(e.orig).lower()
    return "unique" in msg or "duplicate" in msg


class BillingStore:
    """
    Table-oriented access to the billing database: insert, keyed upsert,
    single-row lookup and partial update. SQLAlchemy failures come back as
    StoreError subclasses so callers can tell retryable outages
    (TransientStoreError) from unique-key conflicts (DuplicateRecordError).
    """

    def __init__(self, sessionmaker: async_sessionmaker):
        self._sessionmaker = sessionmaker

    def _table(self, name: str) -> Table:
        table = TABLES.get(name)
        if table is None:
            raise StoreError(f"unknown table: {name}", table=name)
        return table

    def _check_columns(self, table: Table, keys) -> None:
        unknown = set(keys) - set(table.c.keys())
        if unknown:
            raise StoreError(
                f"invalid columns for {table.name}: {', '.join(sorted(unknown))}",
                table=table.name,
            )

    @asynccontextmanager
    async def _transaction(self, table: str) -> AsyncIterator[AsyncSession]:
        try:
            async with self._sessionmaker.begin() as session:
                yield session
        except IntegrityError as e:
            if _is_unique_violation(e):
                raise DuplicateRecordError(f"duplicate record in {table}: {e.orig}", table=table) from e
            raise StoreError(f"integrity error in {table}: {e.orig}", table=table) from e
        except (OperationalError, InterfaceError, PoolTimeoutError, OSError) as e:
            raise TransientStoreError(f"{table} unavailable: {e}", table=table) from e
        except DBAPIError as e:
            if e.connection_invalidated:
                raise TransientStoreError(f"{table} connection lost: {e}", table=table) from e
            raise StoreError(f"{table} error: {e}", table=table) from e
        except SQLAlchemyError as e:
            raise StoreError(f"{table} error: {e}", table=table) from e

    async def insert(self, table: str, record: dict[str, Any]) -> None:
        """Plain insert; a unique-key conflict raises DuplicateRecordError."""
        t = self._table(table)
        self._check_columns(t, record)
        async with self._transaction(table) as session:
            await session.execute(insert(t).values(**record))
        logger.info("Inserted %s row", table)

    async def upsert(
        self,
        table: str,
        record: dict[str, Any],
        conflict_key: str,
        *,
        guards: Sequence[UpsertGuard] = (),
    ) -> bool:
        """
        Insert-or-update keyed on `conflict_key`. Only the columns present in
        `record` are written on conflict. Returns False when a guard kept the
        existing row.
        """
        t = self._table(table)
        self._check_columns(t, record)
        if conflict_key not in record:
            raise StoreError(f"upsert into {table} needs {conflict_key}", table=table)

        async with self._transaction(table) as session:
            dialect = session.bind.dialect.name
            dialect_insert = _DIALECT_INSERTS.get(dialect)
            if dialect_insert is None:
                raise StoreError(f"upsert not supported on {dialect}", table=table)

            stmt = dialect_insert(t).values(**record)
            changes = {k: stmt.excluded[k] for k in record if k != conflict_key}
            if not changes:
                stmt = stmt.on_conflict_do_nothing(index_elements=[conflict_key])
            else:
                if "updated_at" in t.c and "updated_at" not in changes:
                    changes["updated_at"] = func.now()
                conditions = []
                for guard in guards:
                    col = t.c[guard.column]
                    if isinstance(guard, KeepIfEquals):
                        conditions.append(or_(col.is_(None), col != guard.value))
                    elif guard.column in record:
                        incoming = stmt.excluded[guard.column]
                        conditions.append(or_(col.is_(None), incoming.is_(None), col <= incoming))
                stmt = stmt.on_conflict_do_update(
                    index_elements=[conflict_key],
                    set_=changes,
                    where=and_(*conditions) if conditions else None,
                )

            result = await session.execute(stmt)
            applied = result.rowcount != 0

        if applied:
            logger.info("Upserted %s row %s=%s", table, conflict_key, record[conflict_key])
        else:
            logger.info("Kept existing %s row %s=%s", table, conflict_key, record[conflict_key])
        return applied

    async def find_one(self, table: str, key: str, value: Any) -> dict[str, Any] | None:
        t = self._table(table)
        self._check_columns(t, [key])
        async with self._transaction(table) as session:
            result = await session.execute(select(t).where(t.c[key] == value).limit(1))
            row = result.mappings().first()
        return dict(row) if row else None

    async def update(self, table: str, key: str, value: Any, values: dict[str, Any]) -> int:
        """Partial update of rows matching key == value. Returns the row count."""
        t = self._table(table)
        self._check_columns(t, [key, *values])
        async with self._transaction(table) as session:
            result = await session.execute(update(t).where(t.c[key] == value).values(**values))
            matched = result.rowcount
        return matched

    async def ping(self) -> None:
        t = self._table(TRANSACTIONS)
        async with self._transaction(TRANSACTIONS) as session:
            await session.execute(select(t.c.id).limit(1))
