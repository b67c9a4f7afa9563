"""
SQL persistence: table definitions and async engine management.

Analysis records are stored flat in ``analysis_records`` keyed by
``analysis_id``. Price observations go to ``price_history``, an append-only
table indexed on ``(target_entity_id, recorded_at)`` with no uniqueness
constraint, since repeated analyses are expected to record the same
competitor again.
"""

from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Optional

from sqlalchemy import JSON, DateTime, Index, Integer, Numeric, String, Text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from competitor_intel.utils.logger import get_logger

logger = get_logger(__name__)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    pass


# =============================================================================
# Tables
# =============================================================================

class AnalysisRecordRow(Base):
    """One analysis run with its resumable pipeline state."""

    __tablename__ = "analysis_records"

    analysis_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    target_entity_id: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")
    current_step: Mapped[str] = mapped_column(String(20), nullable=False, default="none")
    progress: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_steps: Mapped[int] = mapped_column(Integer, nullable=False, default=3)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    error_trace: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    search_results: Mapped[Optional[list[dict[str, Any]]]] = mapped_column(JSON, nullable=True)
    ai_results: Mapped[Optional[dict[str, Any]]] = mapped_column(JSON, nullable=True)
    final_data: Mapped[Optional[dict[str, Any]]] = mapped_column(JSON, nullable=True)
    trigger_source: Mapped[Optional[str]] = mapped_column(String(30), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utc_now)
    updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("idx_ar_entity_created", "target_entity_id", "created_at"),
    )


class PriceHistoryRow(Base):
    """Competitor price observation. Never updated or deleted by the pipeline."""

    __tablename__ = "price_history"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    target_entity_id: Mapped[str] = mapped_column(String(100), nullable=False)
    analysis_id: Mapped[str] = mapped_column(String(64), nullable=False)
    competitor_name: Mapped[str] = mapped_column(String(255), nullable=False)
    price: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(10), nullable=False, default="USD")
    recorded_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utc_now)

    __table_args__ = (
        Index("idx_ph_entity_recorded", "target_entity_id", "recorded_at"),
    )


# =============================================================================
# Engine and Sessions
# =============================================================================

class Database:
    """
    Owns the async engine and session factory.

    Example:
        >>> db = Database("sqlite+aiosqlite:///:memory:")
        >>> await db.init()
        >>> async with db.session() as session:
        ...     ...
        >>> await db.dispose()
    """

    def __init__(self, url: str, echo: bool = False):
        self.url = url
        self.engine: AsyncEngine = create_async_engine(
            url,
            echo=echo,
            pool_pre_ping="postgresql" in url,
        )
        self.session = async_sessionmaker(
            self.engine,
            class_=AsyncSession,
            expire_on_commit=False,
        )

    async def init(self) -> None:
        """Create tables that do not exist yet."""
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.debug("Database initialized", url=self.url)

    async def dispose(self) -> None:
        await self.engine.dispose()

    async def __aenter__(self) -> "Database":
        await self.init()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.dispose()


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite drops tzinfo on the way back; treat naive values as UTC."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)
