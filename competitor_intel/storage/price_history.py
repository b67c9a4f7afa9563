"""Append-only ledger of competitor price observations."""

from abc import ABC, abstractmethod

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError

from competitor_intel.models.schemas import PriceHistoryRecord
from competitor_intel.storage.database import Database, PriceHistoryRow, as_utc
from competitor_intel.utils.errors import PersistenceError
from competitor_intel.utils.logger import get_logger

logger = get_logger(__name__)


class PriceHistoryStore(ABC):
    """Abstract interface for price history persistence."""

    @abstractmethod
    async def add_record(self, record: PriceHistoryRecord) -> PriceHistoryRecord:
        """Append one observation. Raises PersistenceError."""

    @abstractmethod
    async def get_history(self, entity_id: str) -> list[PriceHistoryRecord]:
        """All observations for an entity, oldest first."""


class InMemoryPriceHistoryStore(PriceHistoryStore):
    """In-memory ledger for tests and one-shot CLI runs."""

    def __init__(self):
        self._rows: list[PriceHistoryRecord] = []

    async def add_record(self, record: PriceHistoryRecord) -> PriceHistoryRecord:
        stored = record.model_copy(update={"id": len(self._rows) + 1})
        self._rows.append(stored)
        return stored

    async def get_history(self, entity_id: str) -> list[PriceHistoryRecord]:
        rows = [r for r in self._rows if r.target_entity_id == entity_id]
        return sorted(rows, key=lambda r: (r.recorded_at, r.id))

    @property
    def records(self) -> list[PriceHistoryRecord]:
        return list(self._rows)


class SqlPriceHistoryStore(PriceHistoryStore):
    """SQLAlchemy-backed ledger."""

    def __init__(self, database: Database):
        self.database = database

    async def add_record(self, record: PriceHistoryRecord) -> PriceHistoryRecord:
        row = PriceHistoryRow(
            target_entity_id=record.target_entity_id,
            analysis_id=record.analysis_id,
            competitor_name=record.competitor_name,
            price=record.price,
            currency=record.currency,
            recorded_at=record.recorded_at,
        )
        try:
            async with self.database.session() as session:
                session.add(row)
                await session.commit()
        except SQLAlchemyError as e:
            logger.error(
                "Failed to record competitor price",
                entity_id=record.target_entity_id,
                competitor=record.competitor_name,
                error=str(e),
            )
            raise PersistenceError(f"Failed to record price for {record.competitor_name}: {e}") from e
        return record.model_copy(update={"id": row.id})

    async def get_history(self, entity_id: str) -> list[PriceHistoryRecord]:
        stmt = (
            select(PriceHistoryRow)
            .where(PriceHistoryRow.target_entity_id == entity_id)
            .order_by(PriceHistoryRow.recorded_at.asc(), PriceHistoryRow.id.asc())
        )
        try:
            async with self.database.session() as session:
                rows = (await session.execute(stmt)).scalars().all()
        except SQLAlchemyError as e:
            logger.error("Failed to load price history", entity_id=entity_id, error=str(e))
            raise PersistenceError(f"Failed to load price history for {entity_id}: {e}") from e
        return [
            PriceHistoryRecord(
                id=row.id,
                target_entity_id=row.target_entity_id,
                analysis_id=row.analysis_id,
                competitor_name=row.competitor_name,
                price=row.price,
                currency=row.currency,
                recorded_at=as_utc(row.recorded_at),
            )
            for row in rows
        ]
