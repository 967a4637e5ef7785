"""Error taxonomy shared by the retrieval, cache and streaming layers."""

import logging
from datetime import datetime
from enum import Enum
from typing import Any

from logfire.integrations.pydantic import PluginSettings
from pydantic import BaseModel, Field, field_serializer


class ErrorLevel(str, Enum):
    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"

    def to_logging_level(self) -> int:
        """Convert ErrorLevel to logging level"""
        return {
            ErrorLevel.DEBUG: logging.DEBUG,
            ErrorLevel.INFO: logging.INFO,
            ErrorLevel.WARNING: logging.WARNING,
            ErrorLevel.ERROR: logging.ERROR,
            ErrorLevel.CRITICAL: logging.CRITICAL,
        }[self]


class ErrorCode(str, Enum):
    """Error codes for the application."""

    # General (1xxx)
    PROCESSING_FAILED = "1004"
    CONFIG_INVALID = "1005"
    TIMEOUT = "1007"

    # Provider access (2xxx)
    AUTHENTICATION_FAILED = "2001"
    RATE_LIMITED = "2003"
    CIRCUIT_OPEN = "2005"

    # Graph store (3xxx)
    DB_CONNECTION = "3001"
    DB_QUERY = "3002"

    # Embedding and model providers (4xxx)
    PROVIDER_TRANSIENT = "4004"
    DIMENSION_MISMATCH = "4005"

    # Infrastructure (5xxx)
    SERVICE_UNAVAILABLE = "5002"

    # Streamed tool calls (7xxx)
    STREAM_MALFORMED = "7001"
    TOOL_SCHEMA_VIOLATION = "7002"
    TOOL_UNKNOWN = "7003"

    # Semantic cache (8xxx)
    CACHE_INCONSISTENT = "8001"


class ErrorDetails(BaseModel, plugin_settings=PluginSettings(logfire={"record": "all"})):
    """Structured payload attached to every ApplicationError.

    Extra keys are allowed so call sites can add owner or scope identifiers
    without a dedicated subclass.
    """

    source: str = Field(description="Component or module where the error occurred")
    operation: str = Field(description="Operation being performed when the error occurred")
    timestamp: datetime = Field(default_factory=lambda: datetime.now(), description="When the error occurred")

    model_config = {"extra": "allow"}

    @field_serializer("timestamp")
    def serialize_timestamp(self, timestamp: datetime) -> str:
        return timestamp.isoformat()


class ServiceErrorDetails(ErrorDetails):
    """Details for service-related errors"""

    service_name: str = Field(description="Name of the service that failed")
    endpoint: str | None = Field(None, description="Service endpoint that was called")
    status_code: int | None = Field(None, description="HTTP or service status code")
    request_id: str | None = Field(None, description="Request ID for tracing")
    latency_ms: float | None = Field(None, description="Response time in milliseconds")


class AIServiceErrorDetails(ServiceErrorDetails):
    """Details for chat-completion failures"""

    model_name: str | None = Field(None, description="AI model name")
    max_tokens: int | None = Field(None, description="Maximum tokens allowed")
    temperature: float | None = Field(None, description="Temperature setting used")


class StreamErrorDetails(ErrorDetails):
    """Details for streamed tool-call protocol violations"""

    call_index: int | None = Field(None, description="Tool call index the fragment belonged to")
    expected_sequence: int | None = Field(None, description="Next fragment ordinal the call expected")
    received_sequence: int | None = Field(None, description="Fragment ordinal actually received")
    call_id: str | None = Field(None, description="Call identity established for the index")


class ToolErrorDetails(ErrorDetails):
    """Details for tool-call validation and dispatch errors"""

    function_name: str | None = Field(None, description="Tool the model asked for")
    call_id: str | None = Field(None, description="Provider call id")
    field_errors: list[str] = Field(default_factory=list, description="Field-level reasons")


class ApplicationError(Exception):
    """Root of the error taxonomy; carries a code, a severity and details."""

    def __init__(
        self,
        message: str,
        code: ErrorCode,
        level: ErrorLevel = ErrorLevel.ERROR,
        details: ErrorDetails | dict[str, Any] | None = None,
    ):
        self.message = message
        self.code = code
        self.level = level

        if details is None:
            self.details = ErrorDetails(source="unknown", operation="unknown")
        elif isinstance(details, dict):
            details = dict(details)
            source = details.pop("source", "unknown")
            operation = details.pop("operation", "unknown")
            self.details = ErrorDetails(source=source, operation=operation, **details)
        else:
            self.details = details

        super().__init__(message)