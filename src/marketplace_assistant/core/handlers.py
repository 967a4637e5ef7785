"""Error handlers for the HTTP surface"""

from typing import Any

from fastapi import Request, status
from fastapi.responses import JSONResponse

from .base import ApplicationError, ErrorCode
from .error_context import ErrorContext, ErrorContextManager
from .logging import get_logger

logger = get_logger(__name__)

_STATUS_BY_CODE: dict[ErrorCode, int] = {
    ErrorCode.DIMENSION_MISMATCH: status.HTTP_422_UNPROCESSABLE_ENTITY,
    ErrorCode.TOOL_SCHEMA_VIOLATION: status.HTTP_422_UNPROCESSABLE_ENTITY,
    ErrorCode.TOOL_UNKNOWN: status.HTTP_422_UNPROCESSABLE_ENTITY,
    ErrorCode.AUTHENTICATION_FAILED: status.HTTP_502_BAD_GATEWAY,
    ErrorCode.RATE_LIMITED: status.HTTP_429_TOO_MANY_REQUESTS,
    ErrorCode.TIMEOUT: status.HTTP_504_GATEWAY_TIMEOUT,
    ErrorCode.PROVIDER_TRANSIENT: status.HTTP_503_SERVICE_UNAVAILABLE,
    ErrorCode.SERVICE_UNAVAILABLE: status.HTTP_503_SERVICE_UNAVAILABLE,
    ErrorCode.CIRCUIT_OPEN: status.HTTP_503_SERVICE_UNAVAILABLE,
    ErrorCode.DB_CONNECTION: status.HTTP_503_SERVICE_UNAVAILABLE,
    ErrorCode.DB_QUERY: status.HTTP_503_SERVICE_UNAVAILABLE,
}


def status_for(error: ApplicationError) -> int:
    return _STATUS_BY_CODE.get(error.code, status.HTTP_500_INTERNAL_SERVER_ERROR)


class GlobalErrorHandler:
    """Renders ApplicationErrors raised by endpoints as JSON bodies.

    Provider credentials failing is our problem, not the caller's, so it maps
    to 502 rather than 401.
    """

    def __init__(self, context_manager: ErrorContextManager):
        self.context_manager = context_manager

    @staticmethod
    def format_body(error_context: ErrorContext) -> dict[str, Any]:
        error = error_context.error
        body: dict[str, Any] = {
            "error": str(error),
            "error_code": ErrorCode.PROCESSING_FAILED.value,
            "level": "error",
            "trace_id": error_context.trace_id,
            "timestamp": error_context.timestamp.isoformat(),
        }
        if isinstance(error, ApplicationError):
            body["error_code"] = error.code.value
            body["level"] = error.level.value
            body["details"] = error.details.model_dump()
        return body

    async def handle_application_error(self, request: Request, error: ApplicationError) -> JSONResponse:
        error_context = self.context_manager.capture(error, path=request.url.path, method=request.method)
        status_code = status_for(error)

        logger.log(
            error.level.to_logging_level(),
            "Request failed",
            path=request.url.path,
            status_code=status_code,
            error_code=error.code.value,
            trace_id=error_context.trace_id,
            owner_id=error_context.owner_id,
        )
        return JSONResponse(status_code=status_code, content=self.format_body(error_context))
