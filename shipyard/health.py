"""Health monitor for running jobs.

Runs once per daemon cycle over the active jobs that are still alive:

- A job past the hard wall-clock limit is killed, whatever its progress.
- With progress sensing enabled, each job gets a fresh snapshot and a
  verdict; "stuck" jobs are killed and "stalled" jobs are nudged once.
- With progress sensing disabled, a single stale timeout applies instead.

Free disk space and event log size are checked as advisory findings.
"""

import logging
import shutil
from datetime import datetime
from pathlib import Path
from typing import Callable

from shipyard import telemetry
from shipyard.config import DaemonConfig
from shipyard.events import EventLog
from shipyard.models import Job, ProgressSnapshot
from shipyard.progress import ProgressAssessor, collect_snapshot
from shipyard.state import DaemonState
from shipyard.supervisor import ProcessSupervisor

logger = logging.getLogger(__name__)

MB = 1024 * 1024

NUDGE_TEXT = """# Nudge from the daemon health monitor

No visible progress for {checks} health checks (stage: {stage}).

If you are stuck, consider:
- Breaking the task into smaller steps
- Committing partial progress
- Running tests to validate the current state
"""

SnapshotFn = Callable[[Path, datetime, Path | None], ProgressSnapshot]


class HealthMonitor:
    """Checks job liveness and progress and kills runaway jobs."""

    def __init__(
        self,
        config: DaemonConfig,
        supervisor: ProcessSupervisor,
        assessor: ProgressAssessor,
        events: EventLog,
        heartbeat_dir: Path | None = None,
        snapshot_fn: SnapshotFn = collect_snapshot,
        disk_free_fn: Callable[[Path], int] | None = None,
    ) -> None:
        self.config = config
        self.settings = config.health
        self.supervisor = supervisor
        self.assessor = assessor
        self.events = events
        self.heartbeat_dir = heartbeat_dir
        self.snapshot_fn = snapshot_fn
        self.disk_free_fn = disk_free_fn or (lambda path: shutil.disk_usage(path).free)

    def health_check(self, state: DaemonState, now: datetime) -> int:
        """Check every live job and the host.

        Jobs killed here keep their entry (with kill_reason set) until
        the next reap removes them.

        Args:
            state: State document; job entries are updated in place
            now: Current time

        Returns:
            Number of findings this cycle
        """
        findings = 0

        for job in state.active_jobs:
            if job.kill_reason is not None or not self.supervisor.is_alive(job.pid):
                continue
            try:
                findings += self._check_job(job, now)
            except Exception as e:
                logger.exception(f"Health check failed for issue #{job.id}: {e}")

        findings += self._check_host()

        if findings > 0:
            self.events.emit("daemon.health", findings=findings)
            telemetry.health_findings_counter.add(findings)
        return findings

    def _check_job(self, job: Job, now: datetime) -> int:
        elapsed = int((now - job.started_at).total_seconds())

        hard_limit = self.settings.hard_limit_s
        if hard_limit > 0 and elapsed > hard_limit:
            logger.warning(
                f"Hard limit exceeded: issue #{job.id} ({elapsed}s > {hard_limit}s, "
                f"PID {job.pid}) - killing"
            )
            self.events.emit(
                "daemon.hard_limit",
                issue=job.id,
                elapsed_s=elapsed,
                limit_s=hard_limit,
                pid=job.pid,
            )
            self._kill(job, "hard_limit")
            return 1

        if not self.settings.progress_based:
            timeout = self.settings.stale_timeout_s
            if elapsed > timeout:
                logger.warning(
                    f"Stale job: issue #{job.id} ({elapsed}s > {timeout}s) - killing"
                )
                self.events.emit(
                    "daemon.stale_kill",
                    issue=job.id,
                    elapsed_s=elapsed,
                    timeout_s=timeout,
                    pid=job.pid,
                )
                self._kill(job, "stale")
                return 1
            return 0

        return self._check_progress(job, now, elapsed)

    def _check_progress(self, job: Job, now: datetime, elapsed: int) -> int:
        snapshot = self.snapshot_fn(
            Path(job.worktree_path), now, self._heartbeat_file(job)
        )
        if snapshot.stage != "unknown":
            job.stage = snapshot.stage

        verdict = self.assessor.assess(job.id, snapshot)
        record = self.assessor.record(job.id)
        no_progress = record.no_progress_count if record else 0

        if verdict == "slowing":
            logger.info(
                f"Issue #{job.id} slowing (no visible changes for {no_progress} checks, "
                f"{elapsed}s elapsed, stage={job.stage})"
            )
        elif verdict == "stalled":
            logger.warning(
                f"Issue #{job.id} stalled: no progress for {no_progress} checks "
                f"({elapsed}s elapsed, PID {job.pid})"
            )
            self.events.emit(
                "daemon.stalled",
                issue=job.id,
                no_progress=no_progress,
                elapsed_s=elapsed,
                pid=job.pid,
            )
            if not job.nudged:
                self._nudge(job, no_progress)
        elif verdict == "stuck":
            repeated = record.repeated_error_count if record else 0
            logger.warning(
                f"Issue #{job.id} stuck ({no_progress} checks without progress, "
                f"{repeated} repeated errors, stage={job.stage}) - killing"
            )
            self.events.emit(
                "daemon.stuck_kill",
                issue=job.id,
                no_progress=no_progress,
                repeated_errors=repeated,
                stage=job.stage,
                elapsed_s=elapsed,
                pid=job.pid,
            )
            self._kill(job, "stuck")
            return 1
        return 0

    def _check_host(self) -> int:
        findings = 0
        state_dir = self.config.state_dir
        if state_dir.exists():
            free_mb = self.disk_free_fn(state_dir) // MB
            if free_mb < self.settings.min_free_disk_mb:
                logger.warning(f"Low disk space: {free_mb}MB free")
                findings += 1

        events_mb = self.events.size_bytes() // MB
        if events_mb > self.settings.max_events_mb:
            logger.warning(f"Event log is large: {events_mb}MB")
            findings += 1
        return findings

    def _kill(self, job: Job, reason: str) -> None:
        self.supervisor.kill_tree(job.pid)
        self.assessor.clear(job.id)
        job.kill_reason = reason
        telemetry.jobs_killed_counter.add(1, {"reason": reason})

    def _nudge(self, job: Job, no_progress: int) -> None:
        nudge_file = Path(job.worktree_path) / ".claude" / "nudge.md"
        if nudge_file.exists():
            job.nudged = True
            return
        try:
            nudge_file.parent.mkdir(parents=True, exist_ok=True)
            nudge_file.write_text(NUDGE_TEXT.format(checks=no_progress, stage=job.stage))
        except OSError as e:
            logger.warning(f"Could not write nudge for issue #{job.id}: {e}")
            return
        job.nudged = True
        self.events.emit("daemon.nudge", issue=job.id, no_progress=no_progress, stage=job.stage)

    def _heartbeat_file(self, job: Job) -> Path | None:
        if self.heartbeat_dir is None:
            return None
        return self.heartbeat_dir / f"issue-{job.id}.json"
