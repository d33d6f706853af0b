"""Job scheduler: discovery, priority ordering and admission control.

Each scheduling cycle checks authentication, discovers labeled issues,
orders them by priority label, and starts jobs while capacity remains.
Eligible issues beyond capacity are queued, never dropped. Retries
waiting in the queue are admitted before new issues once their backoff
has elapsed.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from pathlib import Path

from shipyard.adaptive import AdaptiveCycleState, adapt
from shipyard.config import DaemonConfig
from shipyard.errors import SpawnError, TrackerError
from shipyard.events import EventLog
from shipyard.models import Issue, QueuedIssue
from shipyard.pause import PauseFlag
from shipyard.preflight import PreflightGate
from shipyard.state import DaemonState, StateStore
from shipyard.supervisor import JobSpec, ProcessSupervisor
from shipyard.tracker import TrackerProvider

logger = logging.getLogger(__name__)

NO_PRIORITY = "none"
PREFLIGHT_PAUSE_S = 300

# Skip reasons reported for candidates that cannot be dispatched
SKIP_NOT_FOUND = "not found"
SKIP_NOT_GIT = "not a git repo"
SKIP_EXISTS = "already exists"


def priority_rank(labels: list[str], priority_labels: list[str]) -> int:
    """Position of the highest-priority label an issue carries.

    Issues without any listed label rank after all that have one.
    """
    for index, label in enumerate(priority_labels):
        if label in labels:
            return index
    return len(priority_labels)


def priority_class(labels: list[str], priority_labels: list[str]) -> str:
    rank = priority_rank(labels, priority_labels)
    return priority_labels[rank] if rank < len(priority_labels) else NO_PRIORITY


def priority_sort(issues: list[Issue], priority_labels: list[str]) -> list[Issue]:
    """Stable sort by priority rank, keeping discovery order among ties."""
    return sorted(issues, key=lambda issue: priority_rank(issue.labels, priority_labels))


@dataclass
class DispatchReport:
    """What one scheduling cycle did.

    Attributes:
        dispatched: Issue ids whose job was started
        skipped: Issue id to skip reason
        queued: Issue ids added to the queue
        paused: True if preflight failed and the cycle was skipped
        discovered: Number of issues the tracker returned
        cycle_limit: Adaptive cycle limit handed to fresh jobs
    """

    dispatched: list[int] = field(default_factory=list)
    skipped: dict[int, str] = field(default_factory=dict)
    queued: list[int] = field(default_factory=list)
    paused: bool = False
    discovered: int = 0
    cycle_limit: int | None = None


class JobScheduler:
    """Polls the tracker and admits work up to the parallelism limit."""

    def __init__(
        self,
        config: DaemonConfig,
        tracker: TrackerProvider,
        supervisor: ProcessSupervisor,
        store: StateStore,
        events: EventLog,
        pause: PauseFlag,
        preflight: PreflightGate,
    ) -> None:
        self.config = config
        self.tracker = tracker
        self.supervisor = supervisor
        self.store = store
        self.events = events
        self.pause = pause
        self.preflight = preflight

    def poll_and_dispatch(
        self,
        watch_label: str,
        priority_labels: list[str],
        max_parallel: int,
        now: datetime,
        cycles: AdaptiveCycleState | None = None,
    ) -> DispatchReport:
        """Run one discovery and dispatch pass.

        Args:
            watch_label: Label marking issues eligible for pickup
            priority_labels: Labels in descending priority
            max_parallel: Maximum number of concurrently active jobs
            now: Current time
            cycles: Adaptive cycle state, updated with this cycle's backlog

        Returns:
            DispatchReport describing dispatched, skipped and queued issues
        """
        report = DispatchReport()

        if not self._preflight_ok(now):
            report.paused = True
            return report

        try:
            issues = self.tracker.discover_issues(watch_label)
        except TrackerError as e:
            logger.warning(f"Issue discovery failed: {e}")
            issues = []
        report.discovered = len(issues)

        if cycles is not None and self.config.adaptive_cycles:
            report.cycle_limit = self._adapt_cycles(len(issues), cycles)

        candidates = priority_sort(issues, priority_labels)

        with self.store.update() as state:
            state.last_poll = now
            self._dispatch_queued(state, max_parallel, now, report)
            for issue in candidates:
                self._consider(issue, state, priority_labels, max_parallel, report)

        self.events.emit(
            "daemon.poll",
            issues_found=report.discovered,
            dispatched=len(report.dispatched),
            queued=len(report.queued),
            skipped=len(report.skipped),
        )
        return report

    def skip_reason(self, issue: Issue, state: DaemonState) -> str | None:
        """Why an issue cannot be dispatched, or None if it can."""
        repo_path = self._repo_path(issue)
        if not repo_path.exists():
            return SKIP_NOT_FOUND
        if not (repo_path / ".git").exists():
            return SKIP_NOT_GIT
        if state.is_active(issue.id):
            return SKIP_EXISTS
        return None

    def _preflight_ok(self, now: datetime) -> bool:
        preflight = self.preflight.check(now)
        if preflight is None or preflight.status == "ok":
            return True

        failed = preflight.failed_check
        reason = preflight.pause_reason
        logger.error(f"Preflight failed ({failed.check_name}): {failed.message}")
        self.pause.pause(
            reason, now, resume_after=now + timedelta(seconds=PREFLIGHT_PAUSE_S)
        )
        self.events.emit(
            "daemon.preflight_failed",
            check=failed.check_name,
            message=failed.message,
        )
        self.events.emit("daemon.auto_pause", reason=reason)
        return False

    def _adapt_cycles(self, backlog: int, cycles: AdaptiveCycleState) -> int:
        base = self.config.compound_cycles
        limit = adapt(base, backlog, cycles.prev_issue_count)
        if limit != base:
            self.events.emit(
                "daemon.adaptive_cycles",
                backlog=backlog,
                prev_backlog=cycles.prev_issue_count,
                limit=limit,
            )
        cycles.prev_issue_count = backlog
        return limit

    def _dispatch_queued(
        self, state: DaemonState, max_parallel: int, now: datetime, report: DispatchReport
    ) -> None:
        while state.active_count() < max_parallel:
            entry = state.pop_due(now)
            if entry is None:
                return
            spec = JobSpec(
                issue_id=entry.id,
                title=entry.title,
                priority_class=entry.priority_class,
                repo_path=self.config.repo_path,
                template=entry.template or self.config.pipeline_template,
                retry_count=entry.retry_count,
                failure_class_history=entry.failure_class_history,
            )
            extra = list(entry.extra_args)
            if report.cycle_limit is not None and "--compound-cycles" not in extra:
                extra += ["--compound-cycles", str(report.cycle_limit)]
            self._start(spec, extra, state, report)

    def _consider(
        self,
        issue: Issue,
        state: DaemonState,
        priority_labels: list[str],
        max_parallel: int,
        report: DispatchReport,
    ) -> None:
        if state.is_queued(issue.id) or issue.id in report.dispatched:
            return

        reason = self.skip_reason(issue, state)
        if reason is not None:
            report.skipped[issue.id] = reason
            # In-flight issues show up on every poll
            if reason != SKIP_EXISTS:
                logger.warning(f"Skipping issue #{issue.id}: {reason}")
                self.events.emit("daemon.skip", issue=issue.id, reason=reason)
            return

        pclass = priority_class(issue.labels, priority_labels)
        if state.active_count() < max_parallel:
            spec = JobSpec(
                issue_id=issue.id,
                title=issue.title,
                priority_class=pclass,
                repo_path=self._repo_path(issue),
                template=self.config.pipeline_template,
            )
            extra: list[str] = []
            if report.cycle_limit is not None:
                extra = ["--compound-cycles", str(report.cycle_limit)]
            self._start(spec, extra, state, report)
            return

        state.enqueue(QueuedIssue(id=issue.id, title=issue.title, priority_class=pclass))
        report.queued.append(issue.id)
        self.events.emit("daemon.queued", issue=issue.id, position=len(state.queued))
        logger.info(f"Queued issue #{issue.id} (at capacity: {max_parallel})")

    def _start(
        self,
        spec: JobSpec,
        extra_args: list[str],
        state: DaemonState,
        report: DispatchReport,
    ) -> None:
        try:
            job = self.supervisor.spawn(spec, extra_args)
        except SpawnError as e:
            logger.error(str(e))
            self.events.emit("daemon.spawn_failed", issue=spec.issue_id, error=str(e))
            return

        state.add_job(job)
        report.dispatched.append(job.id)
        self.events.emit(
            "daemon.spawn",
            issue=job.id,
            pid=job.pid,
            template=job.template,
            retry=job.retry_count,
        )
        self.events.emit(
            "pipeline.started",
            issue=job.id,
            title=job.title,
            template=job.template,
            repo=job.repo,
        )

    def _repo_path(self, issue: Issue) -> Path:
        if issue.repo:
            return Path(issue.repo).expanduser()
        return self.config.repo_path
