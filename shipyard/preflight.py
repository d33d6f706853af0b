"""Preflight authentication checks run before dispatching work.

Verifies that both the issue tracker CLI and the agent backend are
authenticated. Dispatching with either one logged out only produces a
batch of guaranteed failures, so a failed check pauses the daemon instead.

Each check runs inside an OpenTelemetry span and is counted.
"""

import subprocess
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Literal

from opentelemetry import metrics, trace

# Module-level telemetry instruments
_tracer: trace.Tracer | None = None
_preflight_counter: metrics.Counter | None = None

DEFAULT_TIMEOUT = 15
CHECK_INTERVAL_S = 300

# Order in which checks run; later checks are skipped after a failure
CHECK_ORDER: list[str] = ["tracker_auth", "agent_auth"]

# Pause reason recorded when a check fails
PAUSE_REASONS: dict[str, str] = {
    "tracker_auth": "gh_auth_failure",
    "agent_auth": "claude_auth_failure",
}


def _init_telemetry() -> None:
    """Create the tracer and counter from the global providers."""
    global _tracer, _preflight_counter

    _tracer = trace.get_tracer("shipyard.preflight")
    meter = metrics.get_meter("shipyard.preflight")
    _preflight_counter = meter.create_counter(
        "shipyard_preflight_checks_total",
        description="Total preflight checks performed",
    )


@dataclass
class CheckResult:
    """Result of a single preflight check.

    Attributes:
        status: "ok", "failed", or "skipped"
        message: Human-readable explanation
        check_name: Name of the check that produced this result
    """

    status: Literal["ok", "failed", "skipped"]
    message: str
    check_name: str


@dataclass
class PreflightReport:
    """Aggregated preflight result."""

    status: Literal["ok", "failed"]
    timestamp: datetime
    checks: dict[str, CheckResult] = field(default_factory=dict)

    @property
    def failed_check(self) -> CheckResult | None:
        return next((c for c in self.checks.values() if c.status == "failed"), None)

    @property
    def pause_reason(self) -> str | None:
        failed = self.failed_check
        return PAUSE_REASONS[failed.check_name] if failed else None

    def to_dict(self) -> dict:
        return {
            "status": self.status,
            "timestamp": self.timestamp.isoformat(),
            "checks": {
                name: {"status": r.status, "message": r.message}
                for name, r in self.checks.items()
            },
        }


def _run_command(
    check_name: str,
    cmd: list[str],
    timeout: float,
    ok_message: str,
    failed_message: str,
    missing_message: str,
) -> CheckResult:
    try:
        result = subprocess.run(cmd, capture_output=True, text=True, timeout=timeout)
    except subprocess.TimeoutExpired:
        return CheckResult(
            status="failed",
            message=f"check timed out after {timeout}s",
            check_name=check_name,
        )
    except FileNotFoundError:
        return CheckResult(status="failed", message=missing_message, check_name=check_name)

    if result.returncode == 0:
        return CheckResult(status="ok", message=ok_message, check_name=check_name)
    return CheckResult(status="failed", message=failed_message, check_name=check_name)


def check_tracker_auth(timeout: float = DEFAULT_TIMEOUT) -> CheckResult:
    """Check that the GitHub CLI is authenticated."""
    return _run_command(
        "tracker_auth",
        ["gh", "auth", "status"],
        timeout,
        ok_message="authenticated",
        failed_message="not logged in - run 'gh auth login'",
        missing_message="gh CLI not available",
    )


def check_agent_auth(timeout: float = DEFAULT_TIMEOUT) -> CheckResult:
    """Check that the agent CLI can answer a one-turn prompt."""
    return _run_command(
        "agent_auth",
        ["claude", "--print", "-p", "ok", "--max-turns", "1"],
        timeout,
        ok_message="authenticated",
        failed_message="agent CLI not authenticated - run 'claude login'",
        missing_message="claude CLI not available",
    )


CHECKS: dict[str, Callable[[float], CheckResult]] = {
    "tracker_auth": check_tracker_auth,
    "agent_auth": check_agent_auth,
}


def _run_check_with_telemetry(
    check_name: str, check_fn: Callable[[], CheckResult]
) -> CheckResult:
    """Run a check inside a span and count it."""
    if _tracer is None:
        _init_telemetry()

    with _tracer.start_as_current_span(f"shipyard.preflight.{check_name}") as span:
        result = check_fn()
        span.set_attribute("check.status", result.status)
        span.set_attribute("check.message", result.message)
        if _preflight_counter is not None:
            _preflight_counter.add(1, {"check": check_name, "status": result.status})
        return result


def run_preflight(now: datetime, timeout: float = DEFAULT_TIMEOUT) -> PreflightReport:
    """Run all checks in order, skipping the rest after the first failure."""
    results: dict[str, CheckResult] = {}
    failed = False

    for check_name in CHECK_ORDER:
        if failed:
            results[check_name] = CheckResult(
                status="skipped",
                message="earlier check failed",
                check_name=check_name,
            )
            continue

        check_fn = CHECKS[check_name]
        result = _run_check_with_telemetry(check_name, lambda: check_fn(timeout))
        results[check_name] = result
        failed = result.status == "failed"

    return PreflightReport(
        status="failed" if failed else "ok", timestamp=now, checks=results
    )


class PreflightGate:
    """Runs preflight at most once per interval.

    Between runs the last successful result is reused; a failure is never
    cached, so the next cycle checks again.
    """

    def __init__(
        self,
        interval_s: int = CHECK_INTERVAL_S,
        runner: Callable[[datetime], PreflightReport] = run_preflight,
    ) -> None:
        self.interval = timedelta(seconds=interval_s)
        self.runner = runner
        self.last_ok: datetime | None = None

    def check(self, now: datetime) -> PreflightReport | None:
        """Run preflight if due.

        Returns:
            The report, or None when a recent successful check is reused
        """
        if self.last_ok is not None and now - self.last_ok < self.interval:
            return None
        report = self.runner(now)
        self.last_ok = now if report.status == "ok" else None
        return report
