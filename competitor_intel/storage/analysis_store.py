"""
AnalysisRecord persistence.

Steps read the record fresh at the start of every run and write it back
after each state change, so a worker restarted between steps resumes from
whatever was last saved.
"""

from abc import ABC, abstractmethod
from typing import Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError

from competitor_intel.models.schemas import AnalysisError, AnalysisRecord, utc_now
from competitor_intel.storage.database import AnalysisRecordRow, Database, as_utc
from competitor_intel.utils.errors import NotFoundError, PersistenceError
from competitor_intel.utils.logger import get_logger

logger = get_logger(__name__)


class AnalysisStore(ABC):
    """Abstract interface for analysis record persistence."""

    @abstractmethod
    async def create(self, record: AnalysisRecord) -> AnalysisRecord:
        """Insert a new record."""

    @abstractmethod
    async def get(self, analysis_id: str) -> AnalysisRecord:
        """Load a record. Raises NotFoundError when it does not exist."""

    @abstractmethod
    async def save(self, record: AnalysisRecord) -> None:
        """Persist every field of an existing record. Raises PersistenceError."""

    @abstractmethod
    async def latest_for_entity(self, entity_id: str) -> Optional[AnalysisRecord]:
        """Most recently created record for an entity, if any."""


class InMemoryAnalysisStore(AnalysisStore):
    """In-memory store for tests and one-shot CLI runs."""

    def __init__(self):
        self._records: dict[str, AnalysisRecord] = {}

    async def create(self, record: AnalysisRecord) -> AnalysisRecord:
        self._records[record.id] = record.model_copy(deep=True)
        return record

    async def get(self, analysis_id: str) -> AnalysisRecord:
        record = self._records.get(analysis_id)
        if record is None:
            raise NotFoundError(f"Analysis {analysis_id} not found")
        return record.model_copy(deep=True)

    async def save(self, record: AnalysisRecord) -> None:
        if record.id not in self._records:
            raise PersistenceError(f"Analysis {record.id} does not exist")
        record.updated_at = utc_now()
        self._records[record.id] = record.model_copy(deep=True)

    async def latest_for_entity(self, entity_id: str) -> Optional[AnalysisRecord]:
        matching = [r for r in self._records.values() if r.target_entity_id == entity_id]
        if not matching:
            return None
        return max(matching, key=lambda r: r.created_at).model_copy(deep=True)


class SqlAnalysisStore(AnalysisStore):
    """SQLAlchemy-backed store."""

    def __init__(self, database: Database):
        self.database = database

    async def create(self, record: AnalysisRecord) -> AnalysisRecord:
        try:
            async with self.database.session() as session:
                session.add(self._to_row(record))
                await session.commit()
        except SQLAlchemyError as e:
            logger.error("Failed to create analysis record", analysis_id=record.id, error=str(e))
            raise PersistenceError(f"Failed to create analysis {record.id}: {e}") from e
        return record

    async def get(self, analysis_id: str) -> AnalysisRecord:
        try:
            async with self.database.session() as session:
                row = await session.get(AnalysisRecordRow, analysis_id)
        except SQLAlchemyError as e:
            logger.error("Failed to load analysis record", analysis_id=analysis_id, error=str(e))
            raise PersistenceError(f"Failed to load analysis {analysis_id}: {e}") from e
        if row is None:
            raise NotFoundError(f"Analysis {analysis_id} not found")
        return self._from_row(row)

    async def save(self, record: AnalysisRecord) -> None:
        record.updated_at = utc_now()
        try:
            async with self.database.session() as session:
                row = await session.get(AnalysisRecordRow, record.id)
                if row is None:
                    raise PersistenceError(f"Analysis {record.id} does not exist")
                self._apply(row, record)
                await session.commit()
        except SQLAlchemyError as e:
            logger.error("Failed to save analysis record", analysis_id=record.id, error=str(e))
            raise PersistenceError(f"Failed to save analysis {record.id}: {e}") from e

    async def latest_for_entity(self, entity_id: str) -> Optional[AnalysisRecord]:
        stmt = (
            select(AnalysisRecordRow)
            .where(AnalysisRecordRow.target_entity_id == entity_id)
            .order_by(AnalysisRecordRow.created_at.desc())
            .limit(1)
        )
        try:
            async with self.database.session() as session:
                row = (await session.execute(stmt)).scalar_one_or_none()
        except SQLAlchemyError as e:
            logger.error("Failed to load latest analysis", entity_id=entity_id, error=str(e))
            raise PersistenceError(f"Failed to load analyses for {entity_id}: {e}") from e
        return self._from_row(row) if row else None

    # =========================================================================
    # Row Mapping
    # =========================================================================

    def _to_row(self, record: AnalysisRecord) -> AnalysisRecordRow:
        row = AnalysisRecordRow(analysis_id=record.id, created_at=record.created_at)
        self._apply(row, record)
        return row

    @staticmethod
    def _apply(row: AnalysisRecordRow, record: AnalysisRecord) -> None:
        row.target_entity_id = record.target_entity_id
        row.status = record.status
        row.current_step = record.current_step
        row.progress = record.progress
        row.total_steps = record.total_steps
        row.error_message = record.error.message if record.error else None
        row.error_trace = record.error.trace if record.error else None
        row.search_results = record.search_results
        row.ai_results = record.ai_results
        row.final_data = record.final_data
        row.trigger_source = record.trigger_source
        row.updated_at = record.updated_at

    @staticmethod
    def _from_row(row: AnalysisRecordRow) -> AnalysisRecord:
        error = None
        if row.error_message is not None:
            error = AnalysisError(message=row.error_message, trace=row.error_trace)
        return AnalysisRecord(
            id=row.analysis_id,
            target_entity_id=row.target_entity_id,
            status=row.status,
            current_step=row.current_step,
            progress=row.progress,
            total_steps=row.total_steps,
            error=error,
            search_results=row.search_results,
            ai_results=row.ai_results,
            final_data=row.final_data,
            trigger_source=row.trigger_source,
            created_at=as_utc(row.created_at),
            updated_at=as_utc(row.updated_at),
        )
