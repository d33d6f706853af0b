"""Tests for preflight authentication checks."""

import subprocess
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock, patch

from shipyard.preflight import (
    CHECK_ORDER,
    CheckResult,
    PreflightGate,
    PreflightReport,
    check_agent_auth,
    check_tracker_auth,
    run_preflight,
)

NOW = datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)


class TestChecks:
    """Tests for the individual checks."""

    def test_tracker_auth_ok(self) -> None:
        with patch(
            "shipyard.preflight.subprocess.run", return_value=MagicMock(returncode=0)
        ) as run:
            result = check_tracker_auth()

        assert result.status == "ok"
        assert run.call_args[0][0] == ["gh", "auth", "status"]

    def test_tracker_auth_failed(self) -> None:
        with patch(
            "shipyard.preflight.subprocess.run", return_value=MagicMock(returncode=1)
        ):
            result = check_tracker_auth()
        assert result.status == "failed"
        assert "gh auth login" in result.message

    def test_agent_auth_timeout(self) -> None:
        with patch(
            "shipyard.preflight.subprocess.run",
            side_effect=subprocess.TimeoutExpired("claude", 15),
        ):
            result = check_agent_auth()
        assert result.status == "failed"
        assert "timed out" in result.message

    def test_agent_cli_missing(self) -> None:
        with patch("shipyard.preflight.subprocess.run", side_effect=FileNotFoundError):
            result = check_agent_auth()
        assert result.status == "failed"
        assert result.check_name == "agent_auth"


class TestRunPreflight:
    """Tests for run_preflight()."""

    def test_all_ok(self) -> None:
        with patch(
            "shipyard.preflight.subprocess.run", return_value=MagicMock(returncode=0)
        ):
            report = run_preflight(NOW)

        assert report.status == "ok"
        assert list(report.checks) == CHECK_ORDER
        assert report.failed_check is None
        assert report.pause_reason is None

    def test_later_checks_skipped_after_failure(self) -> None:
        with patch(
            "shipyard.preflight.subprocess.run", return_value=MagicMock(returncode=1)
        ) as run:
            report = run_preflight(NOW)

        assert report.status == "failed"
        assert run.call_count == 1
        assert report.checks["agent_auth"].status == "skipped"
        assert report.pause_reason == "gh_auth_failure"

    def test_agent_failure_reason(self) -> None:
        with patch(
            "shipyard.preflight.subprocess.run",
            side_effect=[MagicMock(returncode=0), MagicMock(returncode=1)],
        ):
            report = run_preflight(NOW)
        assert report.pause_reason == "claude_auth_failure"

    def test_to_dict(self) -> None:
        report = PreflightReport(
            status="ok",
            timestamp=NOW,
            checks={"tracker_auth": CheckResult("ok", "authenticated", "tracker_auth")},
        )
        data = report.to_dict()
        assert data["checks"]["tracker_auth"] == {"status": "ok", "message": "authenticated"}


class TestPreflightGate:
    """Tests for PreflightGate caching."""

    def _report(self, status: str) -> PreflightReport:
        return PreflightReport(status=status, timestamp=NOW)  # type: ignore[arg-type]

    def test_reuses_recent_success(self) -> None:
        runner = MagicMock(return_value=self._report("ok"))
        gate = PreflightGate(interval_s=300, runner=runner)

        assert gate.check(NOW) is not None
        assert gate.check(NOW + timedelta(seconds=299)) is None
        assert gate.check(NOW + timedelta(seconds=300)) is not None
        assert runner.call_count == 2

    def test_failures_are_not_cached(self) -> None:
        runner = MagicMock(return_value=self._report("failed"))
        gate = PreflightGate(runner=runner)

        gate.check(NOW)
        gate.check(NOW + timedelta(seconds=1))

        assert runner.call_count == 2
