"""Data models module for the Competitor Intelligence Pipeline."""

from competitor_intel.models.schemas import (
    # Base Models
    BaseModel,
    TimestampMixin,

    # Enums
    AnalysisStatus,
    PipelineStep,
    StockStatus,
    TriggerSource,

    # Catalog and Search Models
    Entity,
    SearchHit,

    # AI Output Models
    CompetitorObservation,
    AnalysisInsights,

    # Persisted Models
    AnalysisError,
    AnalysisRecord,
    PriceHistoryRecord,

    # Outbound Models
    Notification,
    ProgressReport,

    # Helpers
    TOTAL_STEPS,
    normalize_price,
)

__all__ = [
    "BaseModel",
    "TimestampMixin",
    "AnalysisStatus",
    "PipelineStep",
    "StockStatus",
    "TriggerSource",
    "Entity",
    "SearchHit",
    "CompetitorObservation",
    "AnalysisInsights",
    "AnalysisError",
    "AnalysisRecord",
    "PriceHistoryRecord",
    "Notification",
    "ProgressReport",
    "TOTAL_STEPS",
    "normalize_price",
]
