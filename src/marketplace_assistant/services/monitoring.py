"""Per-stage latency and success tracking for the retrieval pipeline.

Each tracked block opens a logfire span and records its duration and outcome
in a bounded window, which backs the stage statistics and the pipeline health
verdict exposed over HTTP.
"""

import time
from collections import deque
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any

import logfire
import numpy as np
from pydantic import BaseModel

from marketplace_assistant.core.logging import get_logger

logger = get_logger(__name__)

SLOW_OPERATION_MS = 1000.0


@dataclass(frozen=True)
class StageSample:
    operation: str
    duration_ms: float
    success: bool
    recorded_at: float


class StageStats(BaseModel):
    count: int
    success_rate: float
    avg_ms: float
    min_ms: float
    max_ms: float
    p50_ms: float
    p95_ms: float
    p99_ms: float


class StageMonitor:
    """Rolling window of stage samples.

    Thresholds follow the pipeline's service levels: mean above 2s, fewer
    than 95% successes or a p95 above 5s each count as one issue. One or two
    issues make the pipeline ``degraded``, more make it ``unhealthy``.
    """

    def __init__(
        self,
        window: int = 1000,
        max_avg_ms: float = 2000.0,
        min_success_rate: float = 95.0,
        max_p95_ms: float = 5000.0,
    ) -> None:
        self.max_avg_ms = max_avg_ms
        self.min_success_rate = min_success_rate
        self.max_p95_ms = max_p95_ms
        self._samples: deque[StageSample] = deque(maxlen=window)

    @contextmanager
    def track(self, operation: str, **attributes: Any) -> Iterator[Any]:
        """Time the block as ``operation``; failures are recorded and re-raised."""
        started = time.perf_counter()
        success = False
        with logfire.span("rag {operation}", operation=operation, **attributes) as span:
            try:
                yield span
                success = True
            finally:
                duration_ms = (time.perf_counter() - started) * 1000
                span.set_attribute("success", success)
                self.record(operation, duration_ms, success)

    def record(self, operation: str, duration_ms: float, success: bool) -> None:
        self._samples.append(StageSample(operation, duration_ms, success, time.time()))
        if duration_ms > SLOW_OPERATION_MS:
            logger.warning("Slow pipeline stage", operation=operation, duration_ms=round(duration_ms, 1))

    def operations(self) -> list[str]:
        return sorted({sample.operation for sample in self._samples})

    def stats(self, operation: str | None = None) -> StageStats | None:
        samples = [s for s in self._samples if operation is None or s.operation == operation]
        if not samples:
            return None

        durations = np.array([s.duration_ms for s in samples])
        p50, p95, p99 = np.percentile(durations, [50, 95, 99])
        return StageStats(
            count=len(samples),
            success_rate=100.0 * sum(s.success for s in samples) / len(samples),
            avg_ms=float(durations.mean()),
            min_ms=float(durations.min()),
            max_ms=float(durations.max()),
            p50_ms=float(p50),
            p95_ms=float(p95),
            p99_ms=float(p99),
        )

    def health(self) -> dict[str, Any]:
        overall = self.stats()
        issues: list[str] = []
        if overall is not None:
            if overall.avg_ms > self.max_avg_ms:
                issues.append(f"Average stage time too high: {overall.avg_ms:.0f}ms")
            if overall.success_rate < self.min_success_rate:
                issues.append(f"Success rate too low: {overall.success_rate:.1f}%")
            if overall.p95_ms > self.max_p95_ms:
                issues.append(f"95th percentile too high: {overall.p95_ms:.0f}ms")

        if not issues:
            status = "healthy"
        elif len(issues) <= 2:
            status = "degraded"
        else:
            status = "unhealthy"
        return {
            "status": status,
            "issues": issues,
            "overall": overall.model_dump() if overall else None,
            "stages": {op: stats.model_dump() for op in self.operations() if (stats := self.stats(op))},
        }
