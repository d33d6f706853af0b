"""Process supervisor for agent jobs.

Spawns each job as the leader of its own session (so it has its own
process group and never receives the daemon's terminal hangup), checks
liveness without waiting, and terminates whole process trees.
"""

import logging
import os
import signal
import subprocess
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path

from shipyard.config import DaemonConfig
from shipyard.errors import SpawnError
from shipyard.failure_classifier import classify_failure
from shipyard.lock import pid_alive
from shipyard.models import FailureClass, Job

logger = logging.getLogger(__name__)

KILL_GRACE_S = 5.0
AUTO_PAUSE_THRESHOLD = 3
GIT_TIMEOUT = 60


@dataclass
class JobSpec:
    """Everything needed to start one job.

    Attributes:
        issue_id: Issue number to work on
        title: Issue title
        priority_class: First matching priority label, or "none"
        repo_path: Repository the worktree is created from
        template: Pipeline template
        retry_count: Retries that preceded this attempt
        failure_class_history: Classifications of earlier failed attempts
    """

    issue_id: int
    title: str
    priority_class: str
    repo_path: Path
    template: str
    retry_count: int = 0
    failure_class_history: list[str] = field(default_factory=list)


@dataclass
class ConsecutiveFailureTracker:
    """Counts back-to-back failures of the same class.

    A success or a failure of a different class restarts the count.
    """

    failure_class: str | None = None
    count: int = 0
    threshold: int = AUTO_PAUSE_THRESHOLD

    def record_success(self) -> None:
        self.failure_class = None
        self.count = 0

    def record_failure(self, failure_class: FailureClass) -> bool:
        """Record a failure.

        Returns:
            True when the count for this class reached the threshold
        """
        if failure_class == self.failure_class:
            self.count += 1
        else:
            self.failure_class = failure_class
            self.count = 1
        return self.count >= self.threshold


class ProcessSupervisor:
    """Owns job processes: spawn, liveness, exit status and tree kills."""

    def __init__(self, config: DaemonConfig, logs_dir: Path) -> None:
        self.config = config
        self.logs_dir = logs_dir
        # Children spawned by this daemon; needed to read exit codes and to
        # reap zombies, which still answer os.kill(pid, 0)
        self._handles: dict[int, subprocess.Popen] = {}

    def worktree_for(self, repo_path: Path, issue_id: int) -> Path:
        return repo_path / ".worktrees" / f"daemon-issue-{issue_id}"

    def branch_for(self, issue_id: int) -> str:
        return f"daemon/issue-{issue_id}"

    def log_path_for(self, issue_id: int) -> Path:
        return self.logs_dir / f"issue-{issue_id}.log"

    def build_command(self, spec: JobSpec, extra_args: list[str]) -> list[str]:
        """Assemble the job command line."""
        cmd = list(self.config.agent_command)
        cmd += ["start", "--issue", str(spec.issue_id), "--pipeline", spec.template]
        if self.config.skip_gates:
            cmd.append("--skip-gates")
        if self.config.model:
            cmd += ["--model", self.config.model]
        return cmd + list(extra_args)

    def spawn(self, spec: JobSpec, extra_args: list[str] | None = None) -> Job:
        """Start a job process in its own worktree.

        Args:
            spec: What to run
            extra_args: Additional arguments appended to the command

        Returns:
            Job describing the running process

        Raises:
            SpawnError: If the worktree cannot be created or the command
                cannot be executed
        """
        extra = list(extra_args or [])
        worktree = self._ensure_worktree(spec.repo_path, spec.issue_id)
        log_path = self.log_path_for(spec.issue_id)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        cmd = self.build_command(spec, extra)

        # SIG_IGN survives exec, so the child ignores hangups too
        previous = signal.signal(signal.SIGHUP, signal.SIG_IGN)
        try:
            with open(log_path, "a") as log_file:
                process = subprocess.Popen(
                    cmd,
                    cwd=worktree,
                    stdin=subprocess.DEVNULL,
                    stdout=log_file,
                    stderr=subprocess.STDOUT,
                    start_new_session=True,
                )
        except OSError as e:
            raise SpawnError(f"Could not start job for issue #{spec.issue_id}: {e}") from e
        finally:
            signal.signal(signal.SIGHUP, previous)

        self._handles[process.pid] = process
        logger.info(
            f"Spawned issue #{spec.issue_id} (PID {process.pid}, "
            f"template {spec.template}, retry {spec.retry_count})"
        )

        return Job(
            id=spec.issue_id,
            pid=process.pid,
            worktree_path=str(worktree),
            title=spec.title,
            priority_class=spec.priority_class,
            started_at=datetime.now(timezone.utc),
            retry_count=spec.retry_count,
            failure_class_history=list(spec.failure_class_history),
            repo=str(spec.repo_path),
            log_path=str(log_path),
            template=spec.template,
            extra_args=extra,
        )

    def is_alive(self, pid: int) -> bool:
        """Non-blocking liveness probe."""
        handle = self._handles.get(pid)
        if handle is not None:
            return handle.poll() is None
        return pid_alive(pid)

    def exit_code(self, pid: int) -> int | None:
        """Exit code of a finished child, or None if unknown.

        The code is only known for processes spawned by this daemon
        instance; jobs adopted from a previous run report None.
        """
        handle = self._handles.get(pid)
        if handle is None:
            return None
        return handle.poll()

    def forget(self, pid: int) -> None:
        self._handles.pop(pid, None)

    def kill_tree(self, pid: int, grace_s: float = KILL_GRACE_S) -> None:
        """Terminate a job's whole process group.

        Sends SIGTERM to the group, waits up to grace_s for the leader to
        exit, then sends SIGKILL. Safe to call for processes that are gone.
        """
        if not self._signal_group(pid, signal.SIGTERM):
            return

        deadline = time.monotonic() + grace_s
        while time.monotonic() < deadline:
            if not self.is_alive(pid):
                break
            time.sleep(0.1)

        # Descendants may outlive the leader; the group kill reaches them too
        self._signal_group(pid, signal.SIGKILL)
        self.is_alive(pid)
        logger.info(f"Terminated process tree of PID {pid}")

    def classify_failure(self, output_text: str) -> FailureClass:
        """Classify a failed job's captured output."""
        return classify_failure(output_text)

    def _signal_group(self, pid: int, sig: int) -> bool:
        try:
            os.killpg(pid, sig)
            return True
        except ProcessLookupError:
            return False
        except PermissionError:
            logger.warning(f"Not permitted to signal process group {pid}")
            return False

    def _ensure_worktree(self, repo_path: Path, issue_id: int) -> Path:
        worktree = self.worktree_for(repo_path, issue_id)
        if worktree.exists():
            return worktree

        worktree.parent.mkdir(parents=True, exist_ok=True)
        try:
            result = subprocess.run(
                [
                    "git",
                    "-C",
                    str(repo_path),
                    "worktree",
                    "add",
                    "-B",
                    self.branch_for(issue_id),
                    str(worktree),
                    self.config.base_branch,
                ],
                capture_output=True,
                text=True,
                timeout=GIT_TIMEOUT,
            )
        except (subprocess.TimeoutExpired, FileNotFoundError) as e:
            raise SpawnError(f"git worktree add failed for issue #{issue_id}: {e}") from e

        if result.returncode != 0:
            raise SpawnError(
                f"git worktree add failed for issue #{issue_id}: {result.stderr.strip()}"
            )
        return worktree
