"""Persistence for analysis records and price history."""

from competitor_intel.storage.analysis_store import (
    AnalysisStore,
    InMemoryAnalysisStore,
    SqlAnalysisStore,
)
from competitor_intel.storage.database import Base, Database
from competitor_intel.storage.price_history import (
    InMemoryPriceHistoryStore,
    PriceHistoryStore,
    SqlPriceHistoryStore,
)

__all__ = [
    "Base",
    "Database",
    "AnalysisStore",
    "InMemoryAnalysisStore",
    "SqlAnalysisStore",
    "PriceHistoryStore",
    "InMemoryPriceHistoryStore",
    "SqlPriceHistoryStore",
]
