"""Tests for the job scheduler."""

from datetime import datetime, timedelta, timezone
from pathlib import Path
from unittest.mock import MagicMock

import pytest

from shipyard.adaptive import AdaptiveCycleState
from shipyard.config import DaemonConfig
from shipyard.errors import SpawnError, TrackerError
from shipyard.events import EventLog
from shipyard.models import Issue, Job, QueuedIssue
from shipyard.pause import PauseFlag
from shipyard.preflight import CheckResult, PreflightGate, PreflightReport
from shipyard.scheduler import (
    SKIP_EXISTS,
    SKIP_NOT_FOUND,
    SKIP_NOT_GIT,
    JobScheduler,
    priority_class,
    priority_sort,
)
from shipyard.state import DaemonState, StateStore

NOW = datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)
PRIORITIES = ["urgent", "p0", "high", "p1", "normal", "p2", "low", "p3"]


def ok_report(now: datetime) -> PreflightReport:
    return PreflightReport(
        status="ok",
        timestamp=now,
        checks={"tracker_auth": CheckResult("ok", "authenticated", "tracker_auth")},
    )


def failed_report(now: datetime) -> PreflightReport:
    return PreflightReport(
        status="failed",
        timestamp=now,
        checks={
            "tracker_auth": CheckResult("failed", "not logged in", "tracker_auth"),
            "agent_auth": CheckResult("skipped", "earlier check failed", "agent_auth"),
        },
    )


def fake_spawn(spec, extra_args=None) -> Job:
    return Job(
        id=spec.issue_id,
        pid=10000 + spec.issue_id,
        worktree_path=f"/tmp/wt-{spec.issue_id}",
        title=spec.title,
        priority_class=spec.priority_class,
        started_at=NOW,
        retry_count=spec.retry_count,
        repo=str(spec.repo_path),
        template=spec.template,
        extra_args=list(extra_args or []),
    )


@pytest.fixture
def repo(tmp_path: Path) -> Path:
    path = tmp_path / "repo"
    (path / ".git").mkdir(parents=True)
    return path


@pytest.fixture
def env(tmp_path: Path, repo: Path):
    """Scheduler wired to fakes, with a fresh state document."""
    config = DaemonConfig(repo=str(repo), state_dir=tmp_path / "state", adaptive_cycles=False)
    tracker = MagicMock()
    tracker.discover_issues.return_value = []
    supervisor = MagicMock()
    supervisor.spawn.side_effect = fake_spawn
    store = StateStore(config.state_dir)
    store.save(DaemonState(pid=1, started_at=NOW))
    events = EventLog(config.state_dir / "events.jsonl", clock=lambda: NOW)
    pause = PauseFlag(config.state_dir)
    preflight = PreflightGate(runner=ok_report)
    scheduler = JobScheduler(config, tracker, supervisor, store, events, pause, preflight)
    return scheduler


def dispatch(scheduler: JobScheduler, max_parallel: int = 2, **kwargs):
    return scheduler.poll_and_dispatch(
        "ready-to-build", PRIORITIES, max_parallel, NOW, **kwargs
    )


class TestPriority:
    """Tests for priority ordering helpers."""

    def test_sorts_by_first_listed_label(self) -> None:
        issues = [
            Issue(id=1, title="a", labels=["low"]),
            Issue(id=2, title="b", labels=["urgent"]),
            Issue(id=3, title="c", labels=["normal"]),
        ]
        assert [i.id for i in priority_sort(issues, PRIORITIES)] == [2, 3, 1]

    def test_unlabeled_sort_last_in_discovery_order(self) -> None:
        issues = [
            Issue(id=1, title="a", labels=["bug"]),
            Issue(id=2, title="b", labels=["p3"]),
            Issue(id=3, title="c", labels=[]),
            Issue(id=4, title="d", labels=["p3"]),
        ]
        assert [i.id for i in priority_sort(issues, PRIORITIES)] == [2, 4, 1, 3]

    def test_highest_label_wins(self) -> None:
        assert priority_class(["low", "high"], PRIORITIES) == "high"

    def test_no_priority(self) -> None:
        assert priority_class(["bug"], PRIORITIES) == "none"


class TestPollAndDispatch:
    """Tests for JobScheduler.poll_and_dispatch()."""

    def test_dispatches_in_priority_order(self, env: JobScheduler) -> None:
        env.tracker.discover_issues.return_value = [
            Issue(id=1, title="a", labels=["low"]),
            Issue(id=2, title="b", labels=["urgent"]),
            Issue(id=3, title="c", labels=["normal"]),
        ]

        report = dispatch(env, max_parallel=3)

        assert report.dispatched == [2, 3, 1]
        state = env.store.load()
        assert [j.id for j in state.active_jobs] == [2, 3, 1]
        assert state.last_poll == NOW
        assert state.find_job(2).priority_class == "urgent"

    def test_queues_beyond_capacity(self, env: JobScheduler) -> None:
        env.tracker.discover_issues.return_value = [
            Issue(id=i, title=str(i), labels=["normal"]) for i in (1, 2, 3)
        ]

        report = dispatch(env, max_parallel=1)

        assert report.dispatched == [1]
        assert report.queued == [2, 3]
        state = env.store.load()
        assert [q.id for q in state.queued] == [2, 3]
        assert len(env.events.read(types=["daemon.queued"])) == 2

    def test_queued_issue_is_not_queued_twice(self, env: JobScheduler) -> None:
        env.tracker.discover_issues.return_value = [
            Issue(id=1, title="a"),
            Issue(id=2, title="b"),
        ]
        dispatch(env, max_parallel=1)
        report = dispatch(env, max_parallel=1)

        assert report.queued == []
        assert [q.id for q in env.store.load().queued] == [2]

    def test_skips_active_issue(self, env: JobScheduler) -> None:
        env.tracker.discover_issues.return_value = [Issue(id=1, title="a")]
        dispatch(env)

        for _ in range(3):
            report = dispatch(env)

        assert report.skipped == {1: SKIP_EXISTS}
        assert env.supervisor.spawn.call_count == 1
        assert env.events.read(types=["daemon.skip"]) == []

    def test_skip_reasons(self, env: JobScheduler, tmp_path: Path) -> None:
        plain_dir = tmp_path / "plain"
        plain_dir.mkdir()
        env.tracker.discover_issues.return_value = [
            Issue(id=1, title="a", repo=str(tmp_path / "missing")),
            Issue(id=2, title="b", repo=str(plain_dir)),
        ]

        report = dispatch(env)

        assert report.skipped == {1: SKIP_NOT_FOUND, 2: SKIP_NOT_GIT}
        assert report.dispatched == []
        reasons = [e["reason"] for e in env.events.read(types=["daemon.skip"])]
        assert reasons == ["not found", "not a git repo"]

    def test_emits_start_events(self, env: JobScheduler) -> None:
        env.tracker.discover_issues.return_value = [Issue(id=5, title="five")]

        dispatch(env)

        types = [e["type"] for e in env.events.read()]
        assert types == ["daemon.spawn", "pipeline.started", "daemon.poll"]
        poll = env.events.read(types=["daemon.poll"])[0]
        assert poll["issues_found"] == 1
        assert poll["dispatched"] == 1

    def test_spawn_failure_is_reported(self, env: JobScheduler) -> None:
        env.supervisor.spawn.side_effect = SpawnError("no worktree")
        env.tracker.discover_issues.return_value = [Issue(id=5, title="five")]

        report = dispatch(env)

        assert report.dispatched == []
        assert env.store.load().active_jobs == []
        assert env.events.read(types=["daemon.spawn_failed"])[0]["error"] == "no worktree"

    def test_tracker_error_is_not_fatal(self, env: JobScheduler) -> None:
        env.tracker.discover_issues.side_effect = TrackerError("gh down")

        report = dispatch(env)

        assert report.discovered == 0
        assert env.events.read(types=["daemon.poll"])

    def test_due_retries_run_before_new_issues(self, env: JobScheduler) -> None:
        with env.store.update() as state:
            state.enqueue(
                QueuedIssue(
                    id=9,
                    title="retry",
                    retry_count=1,
                    extra_args=["--max-iterations", "30"],
                    template="full",
                )
            )
        env.tracker.discover_issues.return_value = [Issue(id=1, title="a")]

        report = dispatch(env, max_parallel=1)

        assert report.dispatched == [9]
        assert report.queued == [1]
        spec, extra = env.supervisor.spawn.call_args[0]
        assert spec.retry_count == 1
        assert spec.template == "full"
        assert extra == ["--max-iterations", "30"]

    def test_retry_waits_for_backoff(self, env: JobScheduler) -> None:
        with env.store.update() as state:
            state.enqueue(
                QueuedIssue(id=9, title="retry", not_before=NOW + timedelta(seconds=30))
            )

        report = dispatch(env)

        assert report.dispatched == []
        assert env.store.load().is_queued(9)


class TestPreflight:
    """Tests for preflight gating."""

    def test_failed_preflight_skips_cycle_and_pauses(self, env: JobScheduler) -> None:
        env.preflight = PreflightGate(runner=failed_report)
        env.tracker.discover_issues.return_value = [Issue(id=1, title="a")]

        report = dispatch(env)

        assert report.paused is True
        env.tracker.discover_issues.assert_not_called()
        env.supervisor.spawn.assert_not_called()
        info = env.pause.read()
        assert info.reason == "gh_auth_failure"
        assert info.resume_after == NOW + timedelta(seconds=300)
        types = [e["type"] for e in env.events.read()]
        assert types == ["daemon.preflight_failed", "daemon.auto_pause"]

    def test_successful_preflight_is_cached(self, env: JobScheduler) -> None:
        runner = MagicMock(side_effect=ok_report)
        env.preflight = PreflightGate(interval_s=300, runner=runner)

        dispatch(env)
        dispatch(env)

        assert runner.call_count == 1


class TestAdaptiveCycles:
    """Tests for the adaptive cycle limit handed to fresh jobs."""

    def test_first_cycle_uses_base(self, env: JobScheduler) -> None:
        env.config.adaptive_cycles = True
        env.tracker.discover_issues.return_value = [Issue(id=1, title="a")]
        cycles = AdaptiveCycleState()

        report = dispatch(env, cycles=cycles)

        assert report.cycle_limit == 3
        assert cycles.prev_issue_count == 1
        _, extra = env.supervisor.spawn.call_args[0]
        assert extra == ["--compound-cycles", "3"]

    def test_converging_backlog_raises_limit(self, env: JobScheduler) -> None:
        env.config.adaptive_cycles = True
        env.tracker.discover_issues.return_value = [Issue(id=1, title="a")]

        report = dispatch(env, cycles=AdaptiveCycleState(prev_issue_count=10))

        assert report.cycle_limit == 4
        event = env.events.read(types=["daemon.adaptive_cycles"])[0]
        assert event["limit"] == 4
        assert event["prev_backlog"] == 10
