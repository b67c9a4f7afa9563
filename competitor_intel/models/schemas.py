"""
Pydantic models and schemas for the Competitor Intelligence Pipeline.

This module defines all data structures used throughout the pipeline,
ensuring type safety, validation, and serialization consistency.

Models:
    - Entity: Catalog item being analyzed
    - SearchHit: One web search result
    - CompetitorObservation: One competitor row produced by the AI step
    - AnalysisInsights: Validated AI payload, persisted as final_data
    - AnalysisRecord: One analysis run and its resumable pipeline state
    - PriceHistoryRecord: Append-only competitor price observation
    - Notification: Price-drop alert content
    - ProgressReport: Read model returned to callers polling a run
"""

from __future__ import annotations

import re
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Optional, Self
from uuid import uuid4

from pydantic import (
    BaseModel as PydanticBaseModel,
    ConfigDict,
    Field,
    field_serializer,
    field_validator,
)


TOTAL_STEPS = 3

_PRICE_CLEAN_PATTERN = re.compile(r"[^0-9.]")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def normalize_price(raw: Any) -> Decimal:
    """
    Convert a scraped price string into a Decimal.

    Every character outside ``[0-9.]`` is stripped first, so ``"$1,299.00"``
    becomes ``Decimal("1299.00")``. Empty or malformed input yields zero.

    Example:
        >>> normalize_price("$1,299.00")
        Decimal('1299.00')
        >>> normalize_price("n/a")
        Decimal('0')
    """
    if raw is None:
        return Decimal("0")
    cleaned = _PRICE_CLEAN_PATTERN.sub("", str(raw))
    try:
        return Decimal(cleaned)
    except InvalidOperation:
        return Decimal("0")


# =============================================================================
# Base Configuration
# =============================================================================

class BaseModel(PydanticBaseModel):
    """Base model with common configuration for all schemas."""

    model_config = ConfigDict(
        str_strip_whitespace=True,
        validate_assignment=False,
        validate_default=True,
        populate_by_name=True,
        use_enum_values=True,
    )

    def to_json(self, **kwargs) -> str:
        """Serialize model to JSON string."""
        return self.model_dump_json(indent=2, **kwargs)

    def to_dict(self, **kwargs) -> dict[str, Any]:
        """Serialize model to dictionary."""
        return self.model_dump(**kwargs)

    @classmethod
    def from_json(cls, json_str: str) -> Self:
        """Deserialize model from JSON string."""
        return cls.model_validate_json(json_str)


class TimestampMixin(BaseModel):
    """Mixin for models that need timestamp tracking."""

    created_at: datetime = Field(
        default_factory=utc_now,
        description="Record creation timestamp in ISO 8601 format",
    )
    updated_at: Optional[datetime] = Field(
        default=None,
        description="Last update timestamp in ISO 8601 format",
    )

    @field_serializer("created_at", "updated_at")
    def serialize_datetime(self, value: Optional[datetime]) -> Optional[str]:
        """Serialize datetime to ISO format string."""
        if not value:
            return None
        # If naive, assume UTC and append Z
        if value.tzinfo is None:
            return value.isoformat() + "Z"
        return value.isoformat()


# =============================================================================
# Enums
# =============================================================================

class AnalysisStatus(str, Enum):
    """Status of an analysis run."""
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class PipelineStep(str, Enum):
    """Pipeline execution steps."""
    NONE = "none"
    SEARCHING = "searching"
    ANALYZING = "analyzing"
    SAVING = "saving"


class StockStatus(str, Enum):
    """Competitor stock availability."""
    IN_STOCK = "in_stock"
    OUT_OF_STOCK = "out_of_stock"
    UNKNOWN = "unknown"


class TriggerSource(str, Enum):
    """What requested an analysis run."""
    MANUAL = "manual"
    BULK = "bulk"
    SCHEDULED = "scheduled"
    PRICE_CHANGE = "price_change"
    STOCK_CHANGE = "stock_change"
    PRODUCT_UPDATE = "product_update"


# =============================================================================
# Catalog and Search Models
# =============================================================================

class Entity(BaseModel):
    """
    Catalog item under analysis.

    Example:
        >>> entity = Entity(id="42", name="Widget Pro", price="99.99")
        >>> entity.price
        Decimal('99.99')
    """

    id: str = Field(..., min_length=1, description="Catalog item identifier")
    name: str = Field(..., min_length=1, description="Display name")
    sku: str = Field(default="", description="Stock keeping unit")
    price: Decimal = Field(default=Decimal("0"), description="Own selling price")
    description: str = Field(default="", description="Long description")
    category_terms: list[str] = Field(
        default_factory=list,
        description="Category names the item belongs to",
    )

    @field_validator("id", mode="before")
    @classmethod
    def coerce_id(cls, v: Any) -> str:
        return str(v)

    @field_validator("price", mode="before")
    @classmethod
    def coerce_price(cls, v: Any) -> Decimal:
        """Prices arrive as strings, floats or None from catalog exports."""
        if isinstance(v, Decimal):
            return v
        return normalize_price(v)


class SearchHit(BaseModel):
    """Individual web search result. Provider-specific keys are preserved."""

    model_config = ConfigDict(extra="allow")

    url: str = ""
    title: str = ""
    content: Optional[str] = None
    snippet: Optional[str] = None
    score: Optional[float] = None

    @field_validator("url", "title", mode="before")
    @classmethod
    def none_as_empty_text(cls, v: Any) -> Any:
        """Providers send explicit nulls for missing titles and urls."""
        return "" if v is None else v


# =============================================================================
# AI Output Models
# =============================================================================

class CompetitorObservation(BaseModel):
    """One competitor offer extracted by the AI step."""

    model_config = ConfigDict(extra="allow")

    name: Optional[str] = None
    url: Optional[str] = None
    price: Optional[str] = Field(
        default=None,
        description="Raw price text, may contain currency symbols",
    )
    currency: Optional[str] = None
    stock_status: StockStatus = StockStatus.UNKNOWN
    comparison_notes: Optional[str] = None

    @field_validator("price", mode="before")
    @classmethod
    def price_as_text(cls, v: Any) -> Optional[str]:
        if v is None or v == "":
            return None
        return str(v)

    @field_validator("stock_status", mode="before")
    @classmethod
    def coerce_stock_status(cls, v: Any) -> StockStatus:
        """Models invent spellings like 'In Stock'; anything unknown maps to UNKNOWN."""
        if isinstance(v, StockStatus):
            return v
        candidate = str(v or "").strip().lower().replace(" ", "_").replace("-", "_")
        try:
            return StockStatus(candidate)
        except ValueError:
            return StockStatus.UNKNOWN

    def numeric_price(self) -> Decimal:
        return normalize_price(self.price)


class AnalysisInsights(BaseModel):
    """
    Structured analysis returned by the AI provider.

    The fixed sections are always present; the optional intelligence
    sections only appear when the matching module was enabled.
    """

    model_config = ConfigDict(extra="allow")

    competitors: list[CompetitorObservation] = Field(default_factory=list)
    content_analysis: dict[str, Any] = Field(default_factory=dict)
    sentiment_analysis: dict[str, Any] = Field(default_factory=dict)
    strategy: dict[str, Any] = Field(default_factory=dict)
    pricing_intelligence: Optional[dict[str, Any]] = None
    catalog_intelligence: Optional[dict[str, Any]] = None
    marketing_intelligence: Optional[dict[str, Any]] = None

    @field_validator("competitors", mode="before")
    @classmethod
    def none_as_empty_list(cls, v: Any) -> Any:
        return [] if v is None else v

    @field_validator("content_analysis", "sentiment_analysis", "strategy", mode="before")
    @classmethod
    def none_as_empty_section(cls, v: Any) -> Any:
        return {} if v is None else v

    def to_storage(self) -> dict[str, Any]:
        """JSON-safe dict for the record's ai_results / final_data fields."""
        return self.model_dump(mode="json", exclude_none=True)


# =============================================================================
# Persisted Models
# =============================================================================

class AnalysisError(BaseModel):
    """Failure details recorded on a failed run."""

    message: str
    trace: Optional[str] = None


class AnalysisRecord(TimestampMixin):
    """
    One analysis run.

    Mutated only by the pipeline steps in sequence. At most one of
    ``search_results``, ``ai_results`` and ``final_data`` is live at a time:
    each step deletes its input when it writes its output.
    """

    model_config = ConfigDict(validate_assignment=True)

    id: str = Field(default_factory=lambda: uuid4().hex, description="Analysis identifier")
    target_entity_id: str = Field(..., min_length=1)
    status: AnalysisStatus = AnalysisStatus.PENDING
    current_step: PipelineStep = PipelineStep.NONE
    progress: int = Field(default=0, ge=0, le=TOTAL_STEPS)
    total_steps: int = Field(default=TOTAL_STEPS)
    error: Optional[AnalysisError] = None
    search_results: Optional[list[dict[str, Any]]] = None
    ai_results: Optional[dict[str, Any]] = None
    final_data: Optional[dict[str, Any]] = None
    trigger_source: Optional[TriggerSource] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in (AnalysisStatus.COMPLETED, AnalysisStatus.FAILED)

    @property
    def percentage(self) -> int:
        if self.status == AnalysisStatus.COMPLETED:
            return 100
        if not self.total_steps:
            return 0
        return round(self.progress / self.total_steps * 100)


class PriceHistoryRecord(BaseModel):
    """Append-only competitor price observation."""

    id: Optional[int] = None
    target_entity_id: str
    analysis_id: str
    competitor_name: str
    price: Decimal
    currency: str
    recorded_at: datetime = Field(default_factory=utc_now)


class Notification(BaseModel):
    """Price-drop alert ready to hand to a NotificationSender."""

    to: str
    subject: str
    body: str
    diff_pct: Decimal


class ProgressReport(BaseModel):
    """Progress snapshot of an analysis run."""

    analysis_id: str
    status: AnalysisStatus
    current_step: PipelineStep
    progress: int
    total_steps: int
    percentage: int
    error: Optional[str] = None

    @classmethod
    def from_record(cls, record: AnalysisRecord) -> "ProgressReport":
        return cls(
            analysis_id=record.id,
            status=record.status,
            current_step=record.current_step,
            progress=record.progress,
            total_steps=record.total_steps,
            percentage=record.percentage,
            error=record.error.message if record.error else None,
        )
