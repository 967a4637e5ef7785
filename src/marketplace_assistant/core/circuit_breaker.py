"""Circuit breaker and retry policy for provider calls."""

import asyncio
import time
from collections.abc import Awaitable, Callable
from enum import Enum
from typing import Any, Generic, TypeVar

from .base import ErrorCode, ServiceErrorDetails
from .errors import ServiceError, TransientProviderError
from .logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


class CircuitState(str, Enum):
    """Circuit breaker states."""

    CLOSED = "closed"  # Normal operation
    OPEN = "open"  # Failing, rejecting calls
    HALF_OPEN = "half_open"  # Testing if service recovered


class CircuitBreaker(Generic[T]):
    """
    Circuit breaker for a single provider (embeddings or chat).

    The circuit breaker has three states:
    - CLOSED: Normal operation, calls go through
    - OPEN: Provider is failing, calls are rejected immediately
    - HALF_OPEN: Testing if the provider has recovered

    Only failures of ``expected_exception_types`` count toward opening;
    a schema or authentication problem says nothing about provider health.
    """

    def __init__(
        self,
        name: str,
        failure_threshold: int = 5,
        recovery_timeout: float = 60.0,
        expected_exception_types: tuple[type[Exception], ...] = (TransientProviderError,),
        success_threshold: int = 2,
    ):
        self.name = name
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.expected_exception_types = expected_exception_types
        self.success_threshold = success_threshold

        self.state = CircuitState.CLOSED
        self.failure_count = 0
        self.success_count = 0
        self.last_failure_time: float | None = None
        self.last_exception: Exception | None = None

    def _should_attempt_reset(self) -> bool:
        if self.last_failure_time is None:
            return False
        return time.monotonic() - self.last_failure_time >= self.recovery_timeout

    def record_success(self) -> None:
        if self.state == CircuitState.HALF_OPEN:
            self.success_count += 1
            if self.success_count >= self.success_threshold:
                logger.info("Circuit closed", breaker=self.name, successes=self.success_count)
                self.state = CircuitState.CLOSED
                self.failure_count = 0
                self.success_count = 0
                self.last_exception = None
        elif self.state == CircuitState.CLOSED:
            self.failure_count = 0

    def record_failure(self, exception: Exception) -> None:
        self.last_failure_time = time.monotonic()
        self.last_exception = exception

        if self.state == CircuitState.HALF_OPEN:
            logger.warning("Circuit reopened from half-open", breaker=self.name, error=str(exception))
            self.state = CircuitState.OPEN
            self.failure_count = 1
            self.success_count = 0
        elif self.state == CircuitState.CLOSED:
            self.failure_count += 1
            if self.failure_count >= self.failure_threshold:
                logger.error("Circuit opened", breaker=self.name, failures=self.failure_count, error=str(exception))
                self.state = CircuitState.OPEN

    def check_state(self) -> None:
        if self.state == CircuitState.OPEN and self._should_attempt_reset():
            logger.info("Circuit half-open", breaker=self.name)
            self.state = CircuitState.HALF_OPEN
            self.success_count = 0

    def ensure_available(self, operation: str) -> None:
        """Raise if the circuit is open. For callers that record outcomes themselves."""
        self.check_state()
        if self.state == CircuitState.OPEN:
            raise self._open_error(operation)

    def _open_error(self, operation: str) -> ServiceError:
        error_msg = f"Circuit breaker '{self.name}' is open"
        if self.last_exception:
            error_msg += f" (last error: {self.last_exception})"
        return ServiceError(
            message=error_msg,
            details=ServiceErrorDetails(
                source="circuit_breaker",
                operation=operation,
                service_name=self.name,
                status_code=503,
            ),
            code=ErrorCode.CIRCUIT_OPEN,
        )

    async def call_async(
        self,
        func: Callable[..., Awaitable[T]],
        *args: Any,
        **kwargs: Any,
    ) -> T:
        """
        Call an async function through the circuit breaker.

        Raises:
            ServiceError: If circuit is open
            Original exception: If the function fails
        """
        self.ensure_available("call_async")

        try:
            result = await func(*args, **kwargs)
        except self.expected_exception_types as e:
            self.record_failure(e)
            raise
        self.record_success()
        return result

    def get_state(self) -> dict[str, Any]:
        """Get current circuit breaker state for monitoring."""
        return {
            "name": self.name,
            "state": self.state.value,
            "failure_count": self.failure_count,
            "success_count": self.success_count,
            "last_exception": str(self.last_exception) if self.last_exception else None,
        }


class RetryWithCircuitBreaker:
    """
    Combines a bounded retry with the circuit breaker pattern.

    Transient provider failures are retried with exponential backoff up to
    ``max_retries`` extra attempts; everything else propagates on the first
    failure. Persistent failures open the circuit.
    """

    def __init__(
        self,
        circuit_breaker: CircuitBreaker,
        max_retries: int = 1,
        initial_delay: float = 0.5,
        backoff_factor: float = 2.0,
        max_delay: float = 10.0,
        retryable_exceptions: tuple[type[Exception], ...] = (TransientProviderError,),
    ):
        self.circuit_breaker = circuit_breaker
        self.max_retries = max_retries
        self.initial_delay = initial_delay
        self.backoff_factor = backoff_factor
        self.max_delay = max_delay
        self.retryable_exceptions = retryable_exceptions

    def backoff_delay(self, attempt: int) -> float:
        """Delay before retry number ``attempt`` (1-based)."""
        return min(self.initial_delay * self.backoff_factor ** (attempt - 1), self.max_delay)

    async def call_async(
        self,
        func: Callable[..., Awaitable[T]],
        *args: Any,
        **kwargs: Any,
    ) -> T:
        """
        Call an async function with retries and circuit breaker.

        Raises:
            ServiceError: If the circuit is open
            The last retryable exception once attempts are exhausted
        """
        attempts = self.max_retries + 1

        for attempt in range(1, attempts + 1):
            try:
                return await self.circuit_breaker.call_async(func, *args, **kwargs)
            except self.retryable_exceptions as e:
                if attempt >= attempts:
                    logger.warning("Provider call gave up", breaker=self.circuit_breaker.name, attempts=attempt, error=str(e))
                    raise
                logger.info(
                    "Retrying provider call",
                    breaker=self.circuit_breaker.name,
                    attempt=attempt,
                    delay_seconds=self.backoff_delay(attempt),
                    error=str(e),
                )
                await asyncio.sleep(self.backoff_delay(attempt))

        raise ServiceError(
            message=f"All {attempts} attempts exhausted",
            details=ServiceErrorDetails(
                source="retry_circuit_breaker",
                operation="call_async",
                service_name=self.circuit_breaker.name,
                status_code=503,
            ),
        )
