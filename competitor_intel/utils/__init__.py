"""Utils module for the Competitor Intelligence Pipeline."""

from competitor_intel.utils.logger import LogContext, get_logger, setup_logging
from competitor_intel.utils.errors import (
    ConfigurationError,
    EmptyResultError,
    ErrorType,
    InvalidStateError,
    NotFoundError,
    ParseError,
    PersistenceError,
    PipelineError,
    RateLimitError,
    UpstreamError,
)

__all__ = [
    "get_logger",
    "setup_logging",
    "LogContext",
    "ErrorType",
    "PipelineError",
    "NotFoundError",
    "UpstreamError",
    "RateLimitError",
    "EmptyResultError",
    "ParseError",
    "PersistenceError",
    "InvalidStateError",
    "ConfigurationError",
]
