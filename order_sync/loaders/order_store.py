"""
Destination store for customer orders with idempotent upsert logic
"""

from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
import asyncio
from sqlalchemy import delete, func, select, text
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import StatementError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from models.customer_order import CustomerOrder
from models.sync_run import SyncRunRecord
from models.base import SyncStatus
from schemas.customer_order import CustomerOrderCreate
from schemas.sync import SyncRun
from core.exceptions import StoreTimeoutError, UpsertError
import logging

logger = logging.getLogger(__name__)


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands back naive datetimes
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class OrderStore(ABC):
    """Operations the orchestrator needs from the destination store."""

    @abstractmethod
    async def upsert_many(self, orders: List[CustomerOrderCreate]) -> Dict[str, int]:
        """Insert or update by ``id``; returns ``{"written": n, "failed": m}``."""
        pass

    @abstractmethod
    async def delete_older_than(self, cutoff: datetime) -> int:
        pass

    @abstractmethod
    async def health_check(self) -> Dict[str, Any]:
        pass

    @abstractmethod
    async def get_last_sync_timestamp(self) -> Optional[datetime]:
        pass

    @abstractmethod
    async def save_sync_run(self, run: SyncRun):
        pass

    @abstractmethod
    async def get_stats(self) -> Dict[str, Any]:
        pass


class SQLAlchemyOrderStore(OrderStore):
    """
    Order store over an async SQLAlchemy engine.

    Ensures:
    - No duplicate rows on repeated runs (INSERT ... ON CONFLICT (id) DO UPDATE)
    - ``created_at`` is written on first insert only
    - Every call is bounded by ``timeout`` seconds
    """

    def __init__(self, session_factory: async_sessionmaker, timeout: float = 30.0):
        self.session_factory = session_factory
        self.timeout = timeout

    async def _bounded(self, coro, operation: str):
        try:
            return await asyncio.wait_for(coro, timeout=self.timeout)
        except asyncio.TimeoutError as e:
            raise StoreTimeoutError(
                f"Store operation {operation} timed out after {self.timeout}s",
                context={"operation": operation, "timeout": self.timeout},
                original_exception=e
            )

    @staticmethod
    def _insert_for(session: AsyncSession):
        dialect = session.bind.dialect.name
        if dialect == "postgresql":
            return postgresql.insert
        if dialect == "sqlite":
            return sqlite.insert
        raise UpsertError(f"Upsert not supported for dialect {dialect}")

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def upsert_many(self, orders: List[CustomerOrderCreate]) -> Dict[str, int]:
        if not orders:
            return {"written": 0, "failed": 0}
        return await self._bounded(self._upsert(orders), "upsert_many")

    async def _upsert(self, orders: List[CustomerOrderCreate]) -> Dict[str, int]:
        now = datetime.now(timezone.utc)

        # A single statement cannot touch the same row twice; last occurrence wins
        rows: Dict[str, Dict[str, Any]] = {}
        for order in orders:
            row = order.model_dump()
            row["created_at"] = now
            row["updated_at"] = now
            rows[row["id"]] = row

        async with self.session_factory() as session:
            insert = self._insert_for(session)
            stmt = insert(CustomerOrder).values(list(rows.values()))
            stmt = stmt.on_conflict_do_update(
                index_elements=["id"],
                set_={
                    column: stmt.excluded[column]
                    for column in CustomerOrder.__table__.columns.keys()
                    if column not in CustomerOrder.IMMUTABLE_COLUMNS
                }
            )
            try:
                await session.execute(stmt)
                await session.commit()
            except Exception as e:
                await session.rollback()
                # StatementError text carries the SQL and the bound order values
                cause = e.orig if isinstance(e, StatementError) and e.orig is not None else e
                ids = list(rows)
                raise UpsertError(
                    f"Batch upsert failed: {type(cause).__name__}: {cause}",
                    context={"batch_size": len(ids), "first_id": ids[0], "last_id": ids[-1]},
                    original_exception=cause
                ) from cause

        logger.debug(f"Upserted {len(rows)} customer orders")
        return {"written": len(orders), "failed": 0}

    async def delete_older_than(self, cutoff: datetime) -> int:
        return await self._bounded(self._delete_older_than(cutoff), "delete_older_than")

    async def _delete_older_than(self, cutoff: datetime) -> int:
        async with self.session_factory() as session:
            result = await session.execute(
                delete(CustomerOrder).where(CustomerOrder.created_at < cutoff)
            )
            await session.commit()
            deleted = result.rowcount or 0

        logger.info(f"Deleted {deleted} customer orders created before {cutoff.isoformat()}")
        return deleted

    async def save_sync_run(self, run: SyncRun):
        await self._bounded(self._save_sync_run(run), "save_sync_run")

    async def _save_sync_run(self, run: SyncRun):
        async with self.session_factory() as session:
            session.add(SyncRunRecord(
                sync_id=run.id,
                mode=run.mode,
                status=run.status,
                filters=run.filters,
                started_at=run.started_at,
                finished_at=run.finished_at,
                duration_ms=run.duration_ms,
                records_fetched=run.records_fetched,
                records_written=run.records_written,
                records_failed=run.records_failed,
                pages_fetched=run.pages_fetched,
                pages_failed=run.pages_failed,
                last_error=run.last_error,
            ))
            await session.commit()

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_last_sync_timestamp(self) -> Optional[datetime]:
        """Start of the most recent succeeded run (incremental watermark)."""
        return await self._bounded(self._get_last_sync_timestamp(), "get_last_sync_timestamp")

    async def _get_last_sync_timestamp(self) -> Optional[datetime]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(func.max(SyncRunRecord.started_at))
                .where(SyncRunRecord.status == SyncStatus.SUCCEEDED)
            )
            return _as_utc(result.scalar())

    async def get_stats(self) -> Dict[str, Any]:
        return await self._bounded(self._get_stats(), "get_stats")

    async def _get_stats(self) -> Dict[str, Any]:
        start_of_day = datetime.now(timezone.utc).replace(hour=0, minute=0, second=0, microsecond=0)

        async with self.session_factory() as session:
            total = await session.scalar(select(func.count()).select_from(CustomerOrder))
            today = await session.scalar(
                select(func.count())
                .select_from(CustomerOrder)
                .where(CustomerOrder.created_at >= start_of_day)
            )
            last_updated = await session.scalar(select(func.max(CustomerOrder.sync_timestamp)))

        last_updated = _as_utc(last_updated)
        return {
            "total_records": total or 0,
            "today_records": today or 0,
            "last_updated": last_updated.isoformat() if last_updated else None,
        }

    async def health_check(self) -> Dict[str, Any]:
        return await self._bounded(self._health_check(), "health_check")

    async def _health_check(self) -> Dict[str, Any]:
        async with self.session_factory() as session:
            await session.execute(text("SELECT 1"))
            dialect = session.bind.dialect.name
        return {"status": "healthy", "dialect": dialect}
