"""Specific error types for the marketplace assistant."""

from .base import (
    ApplicationError,
    ErrorCode,
    ErrorDetails,
    ErrorLevel,
    ServiceErrorDetails,
    StreamErrorDetails,
    ToolErrorDetails,
)


class ServiceError(ApplicationError):
    """Error from external service calls."""

    def __init__(
        self,
        message: str,
        details: ServiceErrorDetails | None = None,
        code: ErrorCode = ErrorCode.SERVICE_UNAVAILABLE,
    ):
        super().__init__(
            message=message,
            code=code,
            level=ErrorLevel.ERROR,
            details=details or ServiceErrorDetails(
                source="service",
                operation="external_call",
                service_name="unknown"
            )
        )


class TransientProviderError(ServiceError):
    """Embedding or model-call failure that is worth one more attempt."""

    def __init__(
        self,
        message: str,
        details: ServiceErrorDetails | None = None,
        code: ErrorCode = ErrorCode.PROVIDER_TRANSIENT,
    ):
        super().__init__(message=message, details=details, code=code)
        self.level = ErrorLevel.WARNING


class RateLimitError(TransientProviderError):
    """Rate limiting errors."""

    def __init__(self, message: str, details: ServiceErrorDetails | None = None):
        super().__init__(message=message, details=details, code=ErrorCode.RATE_LIMITED)


class ProviderTimeoutError(TransientProviderError):
    """Provider did not answer (or stopped streaming) in time."""

    def __init__(self, message: str, details: ServiceErrorDetails | None = None):
        super().__init__(message=message, details=details, code=ErrorCode.TIMEOUT)


class AuthenticationError(ApplicationError):
    """Authentication-related errors."""

    def __init__(self, message: str, details: ErrorDetails | dict | None = None):
        super().__init__(
            message=message,
            code=ErrorCode.AUTHENTICATION_FAILED,
            level=ErrorLevel.ERROR,
            details=details
        )


class ProcessingError(ApplicationError):
    """General processing errors."""

    def __init__(self, message: str, details: ErrorDetails | dict | None = None):
        super().__init__(
            message=message,
            code=ErrorCode.PROCESSING_FAILED,
            level=ErrorLevel.ERROR,
            details=details
        )


class DimensionMismatchError(ApplicationError):
    """Embedding length differs from the store's fixed dimension."""

    def __init__(self, expected: int, actual: int, operation: str):
        super().__init__(
            message=f"Embedding has {actual} dimensions, expected {expected}",
            code=ErrorCode.DIMENSION_MISMATCH,
            level=ErrorLevel.ERROR,
            details={
                "source": "vector_store",
                "operation": operation,
                "expected_dimensions": expected,
                "actual_dimensions": actual,
            },
        )
        self.expected = expected
        self.actual = actual


class MalformedStreamError(ApplicationError):
    """Tool-call fragments violated the streaming protocol (ordering or identity)."""

    def __init__(self, message: str, details: StreamErrorDetails | None = None):
        super().__init__(
            message=message,
            code=ErrorCode.STREAM_MALFORMED,
            level=ErrorLevel.ERROR,
            details=details or StreamErrorDetails(source="tool_call_reconstructor", operation="feed"),
        )


class ToolSchemaViolation(ApplicationError):
    """Tool-call arguments failed the tool's declared schema."""

    def __init__(
        self,
        message: str,
        field_errors: list[str] | None = None,
        details: ToolErrorDetails | None = None,
        code: ErrorCode = ErrorCode.TOOL_SCHEMA_VIOLATION,
    ):
        self.field_errors = list(field_errors or [])
        super().__init__(
            message=message,
            code=code,
            level=ErrorLevel.WARNING,
            details=details or ToolErrorDetails(
                source="tool_registry",
                operation="validate_arguments",
                field_errors=self.field_errors,
            ),
        )


class UnknownToolError(ToolSchemaViolation):
    """The model asked for a tool that is not registered."""

    def __init__(self, function_name: str, call_id: str | None = None):
        super().__init__(
            message=f"Unknown tool '{function_name}'",
            field_errors=[f"function_name: '{function_name}' is not a registered tool"],
            details=ToolErrorDetails(
                source="tool_registry",
                operation="resolve",
                function_name=function_name,
                call_id=call_id,
            ),
            code=ErrorCode.TOOL_UNKNOWN,
        )
        self.function_name = function_name


class CacheInconsistency(ApplicationError):
    """A cached answer predates knowledge it should have reflected."""

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(
            message=message,
            code=ErrorCode.CACHE_INCONSISTENT,
            level=ErrorLevel.WARNING,
            details=details,
        )
