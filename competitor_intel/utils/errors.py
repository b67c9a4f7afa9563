"""
Error taxonomy for the competitor analysis pipeline.

Every step catches these, records the message on the AnalysisRecord and
stops the pipeline. Provider adapters translate transport and SDK errors
into UpstreamError so steps only ever deal with this hierarchy.
"""

from enum import Enum
from typing import Optional


class ErrorType(str, Enum):
    """Error type classification."""
    NOT_FOUND_ERROR = "not_found_error"
    UPSTREAM_ERROR = "upstream_error"
    EMPTY_RESULT_ERROR = "empty_result_error"
    PARSE_ERROR = "parse_error"
    PERSISTENCE_ERROR = "persistence_error"
    INVALID_STATE_ERROR = "invalid_state_error"
    CONFIGURATION_ERROR = "configuration_error"


class PipelineError(Exception):
    """Base exception for pipeline errors."""

    error_type: ErrorType = ErrorType.UPSTREAM_ERROR

    def __init__(self, message: str, details: Optional[dict] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class NotFoundError(PipelineError):
    """Entity, analysis record or required intermediate artifact is missing."""
    error_type = ErrorType.NOT_FOUND_ERROR


class UpstreamError(PipelineError):
    """Search or AI provider call failed or returned a malformed envelope."""
    error_type = ErrorType.UPSTREAM_ERROR


class RateLimitError(UpstreamError):
    """Provider rejected the request because of rate limiting."""


class EmptyResultError(PipelineError):
    """Search returned zero hits."""
    error_type = ErrorType.EMPTY_RESULT_ERROR


class ParseError(PipelineError):
    """AI text could not be converted into a JSON object."""
    error_type = ErrorType.PARSE_ERROR


class PersistenceError(PipelineError):
    """A store write failed."""
    error_type = ErrorType.PERSISTENCE_ERROR


class InvalidStateError(PipelineError):
    """Operation is not allowed in the record's current status."""
    error_type = ErrorType.INVALID_STATE_ERROR


class ConfigurationError(PipelineError):
    """A provider was selected without the settings it needs."""
    error_type = ErrorType.CONFIGURATION_ERROR
