"""Decorators for service and repository methods"""

import asyncio
import inspect
from collections.abc import Awaitable, Callable
from functools import wraps
from typing import Any, ParamSpec, TypeVar, cast

from neo4j.exceptions import DriverError, Neo4jError, ServiceUnavailable, SessionExpired

from .base import ApplicationError, ErrorCode, ErrorLevel, ServiceErrorDetails
from .error_context import ErrorContext
from .errors import ServiceError
from .logging import get_logger

logger = get_logger(__name__)
P = ParamSpec("P")
T = TypeVar("T")


def _log_failure(func: Callable[..., Any], error: Exception, default_level: ErrorLevel) -> None:
    # ApplicationErrors carry their own severity
    level = error.level if isinstance(error, ApplicationError) else default_level
    context = ErrorContext(error, function=func.__qualname__)
    logger.log(
        level.to_logging_level(),
        f"{func.__qualname__} failed: {error!s}",
        **context.to_dict(),
        exc_info=level in (ErrorLevel.ERROR, ErrorLevel.CRITICAL),
    )


def with_error_handling(
    error_level: ErrorLevel = ErrorLevel.ERROR,
    reraise: bool = True,
) -> Callable[[Callable[P, T]], Callable[P, T]]:
    """Log failures of the wrapped callable with an ErrorContext.

    Args:
        error_level: Severity for errors that are not ApplicationErrors
        reraise: Re-raise after logging; when False the call returns None,
            which is how scheduled maintenance jobs keep the scheduler alive
    """

    def decorator(func: Callable[P, T]) -> Callable[P, T]:
        original_signature = inspect.signature(func)

        if asyncio.iscoroutinefunction(func):

            @wraps(func)
            async def async_wrapper(*args: P.args, **kwargs: P.kwargs) -> T:
                try:
                    return await cast("Callable[P, Awaitable[T]]", func)(*args, **kwargs)
                except Exception as e:
                    _log_failure(func, e, error_level)
                    if reraise:
                        raise
                    return cast("T", None)

            async_wrapper.__signature__ = original_signature  # type: ignore[attr-defined]
            return cast("Callable[P, T]", async_wrapper)

        @wraps(func)
        def sync_wrapper(*args: P.args, **kwargs: P.kwargs) -> T:
            try:
                return func(*args, **kwargs)
            except Exception as e:
                _log_failure(func, e, error_level)
                if reraise:
                    raise
                return cast("T", None)

        sync_wrapper.__signature__ = original_signature  # type: ignore[attr-defined]
        return sync_wrapper

    return decorator


def _storage_error(func: Callable[..., Any], owner: Any, error: Exception) -> ServiceError:
    # Unreachable servers and broken connections are DB_CONNECTION, anything the server rejected is DB_QUERY
    connection_lost = isinstance(error, (ServiceUnavailable, SessionExpired))
    return ServiceError(
        message=f"{type(owner).__name__}.{func.__name__} failed: {error}",
        details=ServiceErrorDetails(
            source=type(owner).__name__,
            operation=func.__name__,
            service_name="neo4j",
            status_code=503,
        ),
        code=ErrorCode.DB_CONNECTION if connection_lost else ErrorCode.DB_QUERY,
    )


def with_session(driver_attr: str = "driver") -> Callable[[Callable[P, T]], Callable[P, T]]:
    """Open a Neo4j session for a repository method and pass it after ``self``.

        @with_session()
        async def count(self, session, owner_id):
            result = await session.run(query, owner_id=owner_id)

    Driver and server failures surface as ``ServiceError`` with a ``DB_*`` code.
    """

    def decorator(func: Callable[P, T]) -> Callable[P, T]:
        @wraps(func)
        async def wrapper(*args: P.args, **kwargs: P.kwargs) -> T:
            if not args:
                raise ValueError(f"{func.__name__} must be called as a method")

            driver = getattr(args[0], driver_attr, None)
            if driver is None:
                raise AttributeError(f"{type(args[0]).__name__} has no '{driver_attr}' to open a session from")

            try:
                async with driver.session() as session:
                    return await cast("Callable[..., Awaitable[T]]", func)(args[0], session, *args[1:], **kwargs)
            except (Neo4jError, DriverError) as e:
                raise _storage_error(func, args[0], e) from e

        return cast("Callable[P, T]", wrapper)

    return decorator
