"""Analysis helpers: prompt construction, output parsing, payload bounding and alerts."""

from competitor_intel.analyzers.price_alerts import PriceAlertEvaluator
from competitor_intel.analyzers.prompts import PromptBuilder, SMALL_MODEL_PATTERNS
from competitor_intel.analyzers.result_parser import ResultParser
from competitor_intel.analyzers.truncation import PayloadTruncator

__all__ = [
    "PromptBuilder",
    "SMALL_MODEL_PATTERNS",
    "ResultParser",
    "PayloadTruncator",
    "PriceAlertEvaluator",
]
