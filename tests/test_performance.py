"""Tests for PerformanceTracker stage timing and budget warnings."""

from __future__ import annotations

from structlog.testing import capture_logs

from llmbox.observability.performance import PerformanceTracker


class FakeMonotonic:
    def __init__(self) -> None:
        self.value = 100.0

    def __call__(self) -> float:
        return self.value


class TestPerformanceTracker:
    """Durations, threshold breaches, and the total budget."""

    def test_stage_records_duration(self) -> None:
        clock = FakeMonotonic()
        tracker = PerformanceTracker(clock=clock)

        with tracker.stage("completion_call"):
            clock.value += 1.5

        assert tracker.duration("completion_call") == 1500.0
        assert tracker.durations() == {"completion_call": 1500.0}

    def test_stage_records_duration_when_block_raises(self) -> None:
        clock = FakeMonotonic()
        tracker = PerformanceTracker(clock=clock)

        try:
            with tracker.stage("email_send"):
                clock.value += 0.25
                raise RuntimeError("boom")
        except RuntimeError:
            pass

        assert tracker.duration("email_send") == 250.0

    def test_end_without_start_is_zero(self) -> None:
        assert PerformanceTracker().end("never_started") == 0.0

    def test_warns_on_slow_stage(self) -> None:
        clock = FakeMonotonic()
        tracker = PerformanceTracker(clock=clock)
        with tracker.stage("webhook_parsing"):
            clock.value += 3

        with capture_logs() as logs:
            slow = tracker.warn_on_slow_stages({"webhook_parsing": 2000, "email_send": 5000})

        assert slow == ["webhook_parsing"]
        assert logs[0]["event"] == "slow_webhook_parsing"
        assert logs[0]["threshold_ms"] == 2000

    def test_total_budget(self) -> None:
        clock = FakeMonotonic()
        tracker = PerformanceTracker(clock=clock)
        clock.value += 26

        with capture_logs() as logs:
            over = tracker.check_total_budget(25000)

        assert over is True
        assert logs[0]["event"] == "slow_total_processing"
        assert not PerformanceTracker(clock=clock).check_total_budget(25000)
