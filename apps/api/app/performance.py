from __future__ import annotations

import math
import time
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from app.metrics import crm_operation_duration_seconds


@dataclass(frozen=True, slots=True)
class TimingSample:
    operation: str
    duration_ms: float
    recorded_at: float
    tags: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class OperationStats:
    operation: str
    count: int = 0
    min_ms: float = 0.0
    max_ms: float = 0.0
    avg_ms: float = 0.0
    p95_ms: float = 0.0


def _percentile_95(ordered: list[float]) -> float:
    index = max(0, math.ceil(len(ordered) * 0.95) - 1)
    return ordered[index]


class PerformanceRecorder:
    """Rolling buffer of operation timings.

    Only the most recent ``max_samples`` samples are kept; older ones are
    dropped by the deque. Failed operations are recorded under
    ``<operation>.error``.
    """

    def __init__(
        self,
        max_samples: int = 1000,
        window_seconds: float = 300.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.window_seconds = window_seconds
        self._clock = clock
        self._samples: deque[TimingSample] = deque(maxlen=max_samples)

    @property
    def max_samples(self) -> int:
        return self._samples.maxlen or 0

    def record(self, operation: str, duration_ms: float, tags: dict[str, Any] | None = None) -> None:
        self._samples.append(
            TimingSample(
                operation=operation,
                duration_ms=float(duration_ms),
                recorded_at=self._clock(),
                tags=dict(tags or {}),
            )
        )
        crm_operation_duration_seconds.labels(operation=operation).observe(duration_ms / 1000)

    def samples(self, operation: str | None = None) -> list[TimingSample]:
        items = list(self._samples)
        if operation is None:
            return items
        return [item for item in items if item.operation == operation]

    def _window(self, operation: str, window_seconds: float | None) -> list[float]:
        window = self.window_seconds if window_seconds is None else window_seconds
        cutoff = self._clock() - window
        return sorted(item.duration_ms for item in self.samples(operation) if item.recorded_at >= cutoff)

    def p95(self, operation: str, window_seconds: float | None = None) -> float | None:
        ordered = self._window(operation, window_seconds)
        if not ordered:
            return None
        return _percentile_95(ordered)

    def stats(self, operation: str, window_seconds: float | None = None) -> OperationStats:
        ordered = self._window(operation, window_seconds)
        if not ordered:
            return OperationStats(operation=operation)
        return OperationStats(
            operation=operation,
            count=len(ordered),
            min_ms=ordered[0],
            max_ms=ordered[-1],
            avg_ms=round(sum(ordered) / len(ordered), 3),
            p95_ms=_percentile_95(ordered),
        )

    def clear(self) -> None:
        self._samples.clear()
