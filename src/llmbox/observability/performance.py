"""Per-run stage timing with threshold-breach warnings."""

from __future__ import annotations

import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager

import structlog

from llmbox.observability.metrics import STAGE_DURATION

logger = structlog.get_logger()


class PerformanceTracker:
    """Measure named stages of one pipeline run.

    Durations are in milliseconds.  The tracker only observes; exceeding a
    threshold or the total budget produces a warning, never a cancellation.

    Args:
        clock: Monotonic clock in seconds.  Injected by tests.
    """

    def __init__(self, clock: Callable[[], float] = time.perf_counter) -> None:
        self._clock = clock
        self._started_at = clock()
        self._starts: dict[str, float] = {}
        self._durations: dict[str, float] = {}

    def start(self, label: str) -> None:
        self._starts[label] = self._clock()

    def end(self, label: str) -> float:
        """Stop timing *label* and return its duration (0 if never started)."""
        started = self._starts.pop(label, None)
        if started is None:
            return 0.0
        elapsed = self._clock() - started
        duration_ms = round(elapsed * 1000, 3)
        self._durations[label] = duration_ms
        STAGE_DURATION.labels(stage=label).observe(elapsed)
        return duration_ms

    @contextmanager
    def stage(self, label: str) -> Iterator[None]:
        """Time the enclosed block as *label*, even when it raises."""
        self.start(label)
        try:
            yield
        finally:
            self.end(label)

    def duration(self, label: str) -> float:
        return self._durations.get(label, 0.0)

    def durations(self) -> dict[str, float]:
        return dict(self._durations)

    def total_duration(self) -> float:
        return round((self._clock() - self._started_at) * 1000, 3)

    def warn_on_slow_stages(self, thresholds: dict[str, int]) -> list[str]:
        """Log ``slow_<label>`` for every recorded stage over its threshold.

        Returns:
            The labels that breached their threshold.
        """
        slow: list[str] = []
        for label, threshold_ms in thresholds.items():
            duration_ms = self._durations.get(label, 0.0)
            if duration_ms > threshold_ms:
                slow.append(label)
                logger.warning(
                    f"slow_{label}",
                    operation=label,
                    duration_ms=duration_ms,
                    threshold_ms=threshold_ms,
                )
        return slow

    def check_total_budget(self, budget_ms: int) -> bool:
        """Warn when the whole run exceeded its soft budget.  Returns True if over."""
        total_ms = self.total_duration()
        if total_ms > budget_ms:
            logger.warning(
                "slow_total_processing",
                total_processing_time_ms=total_ms,
                threshold_ms=budget_ms,
            )
            return True
        return False
