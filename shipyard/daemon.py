"""Daemon loop composing discovery, supervision and health monitoring.

One Daemon instance exists per process and owns all process-wide state
(consecutive-failure tracker, adaptive cycle state). Every cycle runs the
same phases in order and never waits on a job:

1. Reap jobs whose process has exited and act on their outcome.
2. Health-check the remaining jobs (hard limit, progress, host).
3. Every few cycles, check for outcome degradation.
4. Unless paused, poll the tracker and dispatch work.
"""

import asyncio
import logging
import signal
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable

from opentelemetry import trace

from shipyard import telemetry
from shipyard.adaptive import AdaptiveCycleState
from shipyard.config import DaemonConfig
from shipyard.degradation import DegradationDetector
from shipyard.errors import ShipyardError, TrackerError
from shipyard.events import EventLog
from shipyard.failure_classifier import tail_lines
from shipyard.health import HealthMonitor
from shipyard.lock import DaemonLock
from shipyard.memory import MemoryStore
from shipyard.models import FailureClass, Job, Outcome, QueuedIssue
from shipyard.notifier import (
    Notification,
    Notifier,
    format_auto_pause,
    format_degradation,
    format_duration,
    format_job_failed,
    format_job_succeeded,
)
from shipyard.pause import PauseFlag
from shipyard.preflight import PreflightGate
from shipyard.progress import ProgressAssessor, ProgressStore
from shipyard.retry import RetryPolicy
from shipyard.scheduler import JobScheduler
from shipyard.state import DaemonState, StateStore
from shipyard.supervisor import ConsecutiveFailureTracker, ProcessSupervisor
from shipyard.tracker import GitHubTracker, TrackerProvider

logger = logging.getLogger(__name__)

SUCCESS_MARKER = "Pipeline completed successfully"
DEGRADATION_EVERY = 5


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class Daemon:
    """The autonomous daemon.

    Attributes:
        config: Daemon configuration
        failures: Consecutive-failure tracker driving auto-pause
        cycles: Backlog size seen by the previous scheduling cycle
        cycle_count: Completed cycles since start
    """

    def __init__(
        self,
        config: DaemonConfig,
        tracker: TrackerProvider | None = None,
        supervisor: ProcessSupervisor | None = None,
        notifier: Notifier | None = None,
        preflight: PreflightGate | None = None,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self.config = config
        self.clock = clock
        state_dir = config.state_dir

        self.events = EventLog(state_dir / "events.jsonl", clock=clock)
        self.store = StateStore(state_dir)
        self.pause = PauseFlag(state_dir)
        self.lock = DaemonLock(state_dir)
        self.memory = MemoryStore(state_dir / "memory")
        self.tracker = tracker or GitHubTracker(config.repo_path)
        self.supervisor = supervisor or ProcessSupervisor(config, state_dir / "logs")
        self.notifier = notifier or Notifier(
            slack_webhook=config.notifications.slack_webhook,
            webhook_url=config.notifications.webhook_url,
        )
        self.progress = ProgressAssessor(
            ProgressStore(state_dir / "progress"),
            warn_threshold=config.health.warn_threshold,
            kill_threshold=config.health.kill_threshold,
        )
        self.retry_policy = RetryPolicy.from_config(config)

        self.failures = ConsecutiveFailureTracker()
        self.cycles = AdaptiveCycleState()
        self.cycle_count = 0

        self.scheduler = JobScheduler(
            config,
            self.tracker,
            self.supervisor,
            self.store,
            self.events,
            self.pause,
            preflight or PreflightGate(),
        )
        self.health = HealthMonitor(
            config,
            self.supervisor,
            self.progress,
            self.events,
            heartbeat_dir=state_dir / "heartbeats",
        )
        self.degradation = DegradationDetector(self.events)

        self._tracer = trace.get_tracer("shipyard.daemon")
        self._stop_requested = False

    # --- lifecycle ---------------------------------------------------------

    def initialize_state(self) -> DaemonState:
        """Create or adopt the state document for this process.

        Jobs left by a previous daemon stay tracked; they are reaped by the
        first cycle once their processes exit.
        """
        self.config.state_dir.mkdir(parents=True, exist_ok=True)
        previous = self.store.load()
        state = DaemonState.new(config=self.config.to_dict())
        if previous is not None:
            state.active_jobs = previous.active_jobs
            state.queued = previous.queued
            state.completed = previous.completed
            state.failed = previous.failed
            if previous.active_jobs:
                logger.info(f"Adopted {len(previous.active_jobs)} job(s) from previous run")
        self.store.save(state)
        self.events.emit(
            "daemon.started",
            pid=state.pid,
            max_parallel=self.config.max_parallel,
            poll_interval=self.config.poll_interval,
            watch_label=self.config.watch_label,
        )
        return state

    def request_stop(self) -> None:
        """Ask the loop to stop after the current phase."""
        logger.info("Stop requested")
        self._stop_requested = True

    async def run(self) -> None:
        """Run cycles until stopped, then shut down all jobs.

        Raises:
            ShipyardError: If another daemon already holds the state directory
        """
        if not self.lock.acquire():
            raise ShipyardError(
                f"Daemon already running (PID: {self.lock.holder_pid()})"
            )

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, self.request_stop)

        try:
            self.initialize_state()
            logger.info(
                f"Daemon started (watching '{self.config.watch_label}', "
                f"max {self.config.max_parallel} parallel, "
                f"poll every {self.config.poll_interval}s)"
            )
            while not self._stop_requested:
                try:
                    await self.run_cycle()
                except ShipyardError as e:
                    logger.error(f"Cycle failed: {e}")
                except Exception as e:
                    logger.exception(f"Unexpected error in daemon cycle: {e}")
                await self._sleep(self.config.poll_interval)
        finally:
            for sig in (signal.SIGTERM, signal.SIGINT):
                loop.remove_signal_handler(sig)
            await self.shutdown()
            self.lock.release()

    async def _sleep(self, seconds: int) -> None:
        for _ in range(max(seconds, 1)):
            if self._stop_requested:
                return
            await asyncio.sleep(1)

    async def run_cycle(self) -> None:
        """Run one full cycle of ordered phases."""
        now = self.clock()
        try:
            with self._tracer.start_as_current_span("shipyard.cycle") as span:
                span.set_attribute("cycle.number", self.cycle_count)

                self.events.rotate()
                if self.pause.auto_resume(now):
                    logger.info("Pause expired, resuming dispatch")
                    self.events.emit("daemon.resumed")

                reaped = await self.reap_jobs(now)
                span.set_attribute("cycle.reaped", reaped)

                findings = await asyncio.to_thread(self._health_check, now)
                span.set_attribute("cycle.health_findings", findings)

                if self.cycle_count % DEGRADATION_EVERY == 0:
                    await self.check_degradation()

                pause = self.pause.read()
                if pause is not None:
                    logger.info(f"Dispatch paused: {pause.reason}")
                    span.set_attribute("cycle.paused", True)
                else:
                    report = self.scheduler.poll_and_dispatch(
                        self.config.watch_label,
                        self.config.priority_labels,
                        self.config.max_parallel,
                        now,
                        cycles=self.cycles,
                    )
                    span.set_attribute("cycle.dispatched", len(report.dispatched))
                    telemetry.jobs_spawned_counter.add(len(report.dispatched))
                    if report.paused:
                        info = self.pause.read()
                        if info is not None:
                            await self._notify(format_auto_pause(info.reason))
        finally:
            self.cycle_count += 1

    def _health_check(self, now: datetime) -> int:
        with self.store.update() as state:
            return self.health.health_check(state, now)

    async def shutdown(self) -> None:
        """Terminate every live job's process tree.

        Killed jobs go back to the front of the queue so the next daemon
        run restarts them instead of counting them as failures.
        """
        killed = 0
        if self.store.exists():
            with self.store.update() as state:
                for job in list(state.active_jobs):
                    # Exited but unreaped jobs stay tracked for the next run
                    if not self.supervisor.is_alive(job.pid):
                        continue
                    logger.info(f"Stopping issue #{job.id} (PID {job.pid})")
                    await asyncio.to_thread(self.supervisor.kill_tree, job.pid)
                    killed += 1
                    state.remove_job(job.id)
                    self.progress.clear(job.id)
                    state.queued.insert(
                        0,
                        QueuedIssue(
                            id=job.id,
                            title=job.title,
                            priority_class=job.priority_class,
                            retry_count=job.retry_count,
                            extra_args=job.extra_args,
                            template=job.template or None,
                            failure_class_history=job.failure_class_history,
                        ),
                    )
        self.events.emit("daemon.stopped", killed=killed)
        logger.info(f"Daemon stopped ({killed} job(s) terminated)")

    # --- reaping -----------------------------------------------------------

    async def reap_jobs(self, now: datetime) -> int:
        """Handle every job whose process has exited.

        Returns:
            Number of jobs reaped
        """
        with self.store.update() as state:
            finished = [j for j in state.active_jobs if not self.supervisor.is_alive(j.pid)]
            for job in finished:
                try:
                    await self._reap(job, state, now)
                except Exception as e:
                    logger.exception(f"Failed to reap issue #{job.id}: {e}")
        return len(finished)

    def job_succeeded(self, job: Job, log_text: str) -> bool:
        """Decide a finished job's result.

        Killed jobs always failed. Otherwise the exit code decides when this
        daemon spawned the process; adopted jobs fall back to the log.
        """
        if job.kill_reason is not None:
            return False
        code = self.supervisor.exit_code(job.pid)
        if code is not None:
            return code == 0
        return SUCCESS_MARKER in log_text

    async def _reap(self, job: Job, state: DaemonState, now: datetime) -> None:
        # Each job is reaped at most once
        state.remove_job(job.id)
        duration = max(int((now - job.started_at).total_seconds()), 0)

        record = self.progress.record(job.id)
        last_error = record.snapshots[-1].last_error if record and record.snapshots else ""
        self.progress.clear(job.id)

        log_text = self._read_log(job)
        succeeded = self.job_succeeded(job, log_text)
        result = "success" if succeeded else "failure"
        self.supervisor.forget(job.pid)

        logger.info(f"Reaped issue #{job.id}: {result} after {format_duration(duration)}")
        self.events.emit("daemon.reap", issue=job.id, result=result, duration_s=duration)
        self.events.emit(
            "pipeline.completed",
            issue=job.id,
            result=result,
            duration_s=duration,
            repo=job.repo,
        )
        telemetry.jobs_completed_counter.add(1, {"result": result})
        telemetry.job_duration.record(duration, {"result": result})

        if succeeded:
            await self._handle_success(job, state, duration, now)
        else:
            await self._handle_failure(job, state, duration, now, log_text, last_error)

    def _read_log(self, job: Job) -> str:
        if not job.log_path:
            return ""
        path = Path(job.log_path)
        if not path.exists():
            return ""
        return path.read_text(errors="replace")

    # --- outcomes ----------------------------------------------------------

    async def _handle_success(
        self, job: Job, state: DaemonState, duration: int, now: datetime
    ) -> None:
        self.failures.record_success()
        on_success = self.config.on_success

        self._tracker_call(job.id, self.tracker.remove_label, job.id, on_success.remove_label)
        self._tracker_call(job.id, self.tracker.add_label, job.id, on_success.add_label)
        self._tracker_call(
            job.id,
            self.tracker.comment,
            job.id,
            f"Pipeline completed successfully in {format_duration(duration)}.",
        )
        if on_success.close_issue:
            self._tracker_call(job.id, self.tracker.close_issue, job.id)

        state.record_outcome(
            Outcome(
                id=job.id,
                title=job.title,
                result="success",
                duration_s=duration,
                finished_at=now,
                retry_count=job.retry_count,
            )
        )
        await self._notify(format_job_succeeded(job.id, job.title, duration))

    async def _handle_failure(
        self,
        job: Job,
        state: DaemonState,
        duration: int,
        now: datetime,
        log_text: str,
        last_error: str,
    ) -> None:
        failure_class = self.supervisor.classify_failure(log_text)
        logger.warning(f"Issue #{job.id} failed: {failure_class}")
        self.events.emit(
            "daemon.failure_classified", issue=job.id, failure_class=failure_class
        )

        pattern = f"{failure_class}: {last_error}" if last_error else failure_class
        try:
            self.memory.record_failure(job.repo or str(self.config.repo_path), pattern)
        except ShipyardError as e:
            logger.warning(f"Could not update failure memory: {e}")

        if self.failures.record_failure(failure_class):
            await self._auto_pause(failure_class, now)

        if job.kill_reason is not None:
            reason = f"killed by health monitor: {job.kill_reason}"
            await self._final_failure(
                job, state, failure_class, duration, now, log_text, reason=reason
            )
            return

        decision = self.retry_policy.decide(failure_class, job.retry_count)
        if decision.action == "retry":
            state.enqueue(
                QueuedIssue(
                    id=job.id,
                    title=job.title,
                    priority_class=job.priority_class,
                    not_before=now + timedelta(seconds=decision.backoff_s),
                    retry_count=decision.retry_count,
                    extra_args=decision.extra_args,
                    template=decision.template,
                    failure_class_history=job.failure_class_history + [failure_class],
                )
            )
            self.events.emit(
                "daemon.retry",
                issue=job.id,
                retry=decision.retry_count,
                max_retries=decision.max_retries,
                failure_class=failure_class,
                backoff_s=decision.backoff_s,
            )
            self._tracker_call(
                job.id,
                self.tracker.comment,
                job.id,
                f"Pipeline attempt failed ({failure_class}). "
                f"Retry {decision.retry_count}/{decision.max_retries} scheduled "
                f"in {format_duration(decision.backoff_s)}.",
            )
            return

        if decision.action == "skip":
            self.events.emit("daemon.skip_retry", issue=job.id, failure_class=failure_class)
            reason = "not retryable"
        else:
            self.events.emit(
                "daemon.retry_exhausted",
                issue=job.id,
                retries=job.retry_count,
                failure_class=failure_class,
            )
            reason = f"retries exhausted after {job.retry_count}"
        await self._final_failure(
            job, state, failure_class, duration, now, log_text, reason=reason
        )

    async def _final_failure(
        self,
        job: Job,
        state: DaemonState,
        failure_class: FailureClass,
        duration: int,
        now: datetime,
        log_text: str,
        reason: str,
    ) -> None:
        on_failure = self.config.on_failure
        tail = tail_lines(log_text, on_failure.comment_log_lines)

        self._tracker_call(job.id, self.tracker.add_label, job.id, on_failure.add_label)
        self._tracker_call(job.id, self.tracker.remove_label, job.id, self.config.watch_label)
        self._tracker_call(
            job.id, self.tracker.close_draft_prs, self.supervisor.branch_for(job.id)
        )
        comment = f"Pipeline failed ({failure_class}, {reason})."
        if tail:
            comment += (
                f"\n\n<details><summary>Last {on_failure.comment_log_lines} log lines</summary>\n\n"
                f"```\n{tail}\n```\n</details>"
            )
        self._tracker_call(job.id, self.tracker.comment, job.id, comment)

        state.record_outcome(
            Outcome(
                id=job.id,
                title=job.title,
                result="failure",
                duration_s=duration,
                finished_at=now,
                retry_count=job.retry_count,
                failure_class=failure_class,
                reason=reason,
            )
        )
        await self._notify(format_job_failed(job.id, job.title, failure_class, tail))

    async def _auto_pause(self, failure_class: FailureClass, now: datetime) -> None:
        if self.pause.read() is not None:
            return
        reason = f"consecutive_{failure_class}"
        self.pause.pause(reason, now)
        logger.error(
            f"{self.failures.count} consecutive {failure_class} failures - "
            "pausing dispatch until resumed"
        )
        self.events.emit(
            "daemon.auto_pause",
            reason=reason,
            failure_class=failure_class,
            count=self.failures.count,
        )
        await self._notify(format_auto_pause(reason))

    # --- degradation -------------------------------------------------------

    async def check_degradation(self) -> None:
        alerts = self.config.alerts
        alert = self.degradation.check(
            alerts.degradation_window, alerts.cfr_threshold, alerts.success_threshold
        )
        if alert is None:
            return
        self.events.emit(
            "daemon.alert",
            alerts=alert.summary,
            cfr_pct=alert.cfr_pct,
            success_pct=alert.success_pct,
        )
        telemetry.alerts_counter.add(1)
        await self._notify(
            format_degradation(alert.summary, alert.cfr_pct, alert.success_pct)
        )

    # --- helpers -----------------------------------------------------------

    def _tracker_call(self, issue_id: int, fn: Callable, *args) -> None:
        try:
            fn(*args)
        except TrackerError as e:
            logger.warning(f"Tracker update for issue #{issue_id} failed: {e}")

    async def _notify(self, notification: Notification) -> None:
        if self.notifier.enabled:
            await self.notifier.send(notification)
