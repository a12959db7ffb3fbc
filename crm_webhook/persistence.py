"""Idempotent writes of payment rows.

Every write is a single conflict-ignoring INSERT keyed on ``payment_id``. The
unique key at the storage layer is the only serialization point for duplicate
deliveries; no application-level lock is taken. The primary write and the slab
write run in separate transactions so a slab failure never undoes the primary
row.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Optional
from sqlalchemy.dialects.mysql import insert as mysql_insert
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import async_sessionmaker

from crm_webhook.models import CrmPayment, TABLES
from crm_webhook.schemas import StoredRow
from crm_webhook.slabs import Slab

logger = logging.getLogger(__name__)


class PersistenceError(Exception):
    def __init__(self, payment_id: str, table: str, reason: str):
        super().__init__(f"Failed to store payment {payment_id} in {table}: {reason}")
        self.payment_id = payment_id
        self.table = table
        self.reason = reason


@dataclass
class PersistOutcome:
    payment_id: str
    primary_inserted: bool
    slab: Optional[str] = None
    slab_inserted: Optional[bool] = None
    partial: bool = False

    @property
    def duplicate(self) -> bool:
        return not self.primary_inserted


def insert_ignoring_duplicates(dialect_name: str, model, values: dict):
    if dialect_name == "postgresql":
        return pg_insert(model).values(**values).on_conflict_do_nothing(index_elements=["payment_id"])
    if dialect_name in ("mysql", "mariadb"):
        return mysql_insert(model).values(**values).prefix_with("IGNORE")
    return sqlite_insert(model).values(**values).on_conflict_do_nothing(index_elements=["payment_id"])


class PaymentPersister:
    def __init__(self, session_factory: async_sessionmaker, timeout: float = 5.0):
        self._session_factory = session_factory
        self._timeout = timeout

    async def _insert(self, table: str, row: StoredRow) -> bool:
        model = TABLES[table]
        values = row.model_dump()
        async with self._session_factory() as session:
            stmt = insert_ignoring_duplicates(session.get_bind().dialect.name, model, values)
            result = await session.execute(stmt)
            await session.commit()
            return result.rowcount == 1

    async def insert(self, table: str, row: StoredRow) -> bool:
        """Insert ``row`` into ``table``; returns False when the payment id already exists."""
        try:
            return await asyncio.wait_for(self._insert(table, row), timeout=self._timeout)
        except asyncio.TimeoutError:
            raise PersistenceError(row.payment_id, table, f"timed out after {self._timeout}s")
        except (SQLAlchemyError, OSError) as e:
            raise PersistenceError(row.payment_id, table, f"{type(e).__name__}: {e}")

    async def persist(self, row: StoredRow, slab: Optional[Slab] = None) -> PersistOutcome:
        primary = CrmPayment.__tablename__
        inserted = await self.insert(primary, row)
        outcome = PersistOutcome(payment_id=row.payment_id, primary_inserted=inserted)
        if inserted:
            logger.info("stored table=%s payment_id=%s", primary, row.payment_id)
        else:
            logger.info("duplicate table=%s payment_id=%s (no-op)", primary, row.payment_id)

        if slab is None:
            return outcome

        outcome.slab = slab.name
        try:
            outcome.slab_inserted = await self.insert(slab.table, row)
        except PersistenceError:
            outcome.partial = True
            logger.exception(
                "partial failure payment_id=%s slab=%s table=%s; primary row kept",
                row.payment_id, slab.name, slab.table,
            )
            return outcome

        if outcome.slab_inserted:
            logger.info("slab stored table=%s slab=%s payment_id=%s", slab.table, slab.name, row.payment_id)
        else:
            logger.info("duplicate table=%s payment_id=%s (no-op)", slab.table, row.payment_id)
        return outcome
