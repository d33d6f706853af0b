"""Tests for the degradation detector."""

from pathlib import Path

from shipyard.degradation import DegradationDetector
from shipyard.events import EventLog


def log_with(tmp_path: Path, *results: str) -> EventLog:
    events = EventLog(tmp_path / "events.jsonl")
    for result in results:
        events.emit("daemon.spawn", issue=1)
        events.emit("pipeline.completed", issue=1, result=result, duration_s=10)
    return events


class TestDegradationDetector:
    """Tests for DegradationDetector.check()."""

    def test_no_events(self, tmp_path: Path) -> None:
        detector = DegradationDetector(EventLog(tmp_path / "events.jsonl"))
        assert detector.check() is None

    def test_partial_window_never_alerts(self, tmp_path: Path) -> None:
        """Four failures are not enough for a window of five."""
        events = log_with(tmp_path, *["failure"] * 4)
        assert DegradationDetector(events).check() is None

    def test_four_of_five_failures_alerts(self, tmp_path: Path) -> None:
        events = log_with(tmp_path, "failure", "failure", "success", "failure", "failure")

        alert = DegradationDetector(events).check()

        assert alert is not None
        assert alert.cfr_pct == 80
        assert alert.success_pct == 20
        assert alert.window == 5
        assert alert.messages == [
            "CFR 80% exceeds threshold 30%",
            "Success rate 20% below threshold 50%",
        ]
        assert "CFR 80%" in alert.summary

    def test_healthy_window(self, tmp_path: Path) -> None:
        events = log_with(tmp_path, "success", "success", "failure", "success", "success")
        assert DegradationDetector(events).check() is None

    def test_only_recent_window_counts(self, tmp_path: Path) -> None:
        events = log_with(tmp_path, *(["failure"] * 5 + ["success"] * 5))
        assert DegradationDetector(events).check() is None

    def test_cfr_only_alert(self, tmp_path: Path) -> None:
        events = log_with(tmp_path, "failure", "failure", "success", "success", "success")

        alert = DegradationDetector(events).check()

        assert alert is not None
        assert alert.messages == ["CFR 40% exceeds threshold 30%"]
        assert alert.success_pct == 60

    def test_custom_thresholds(self, tmp_path: Path) -> None:
        events = log_with(tmp_path, "failure", "success", "success")
        alert = DegradationDetector(events).check(
            window_size=3, cfr_threshold=20, success_threshold=90
        )
        assert alert is not None
        assert alert.cfr_pct == 33
        assert alert.success_pct == 66
        assert len(alert.messages) == 2

    def test_completions_spread_across_busy_log(self, tmp_path: Path) -> None:
        """Poll, heartbeat and spawn traffic between outcomes does not hide them."""
        events = EventLog(tmp_path / "events.jsonl")
        for issue in range(5):
            events.emit("pipeline.completed", issue=issue, result="failure", duration_s=10)
            for _ in range(100):
                events.emit("daemon.poll", issues_found=3, dispatched=0)

        alert = DegradationDetector(events).check()

        assert alert is not None
        assert alert.cfr_pct == 100

    def test_window_continues_into_rotated_file(self, tmp_path: Path) -> None:
        path = tmp_path / "events.jsonl"
        events = log_with(tmp_path, *["failure"] * 3)
        path.replace(tmp_path / "events.jsonl.1")
        for _ in range(2):
            events.emit("pipeline.completed", issue=2, result="failure", duration_s=10)

        alert = DegradationDetector(events).check()

        assert alert is not None
        assert alert.window == 5

    def test_zero_window_never_alerts(self, tmp_path: Path) -> None:
        events = log_with(tmp_path, *["failure"] * 5)
        assert DegradationDetector(events).check(window_size=0) is None
