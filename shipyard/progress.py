"""Progress sensing for running jobs.

Collects behavioral snapshots from a job's worktree, keeps a bounded
history per job, and turns that history into a verdict:

    healthy -> slowing -> stalled -> stuck

A job is making progress when its stage advances or its iteration count,
diff size or touched-file count grows. Checks without progress push the
verdict towards stuck; the same error signature seen repeatedly forces
stuck regardless of the counters.
"""

import json
import logging
import subprocess
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

from pydantic import BaseModel, Field, StrictInt, StrictStr, ValidationError

from shipyard.errors import StateError
from shipyard.models import ProgressRecord, ProgressSnapshot, Verdict
from shipyard.storage import atomic_write_json

logger = logging.getLogger(__name__)

MAX_SNAPSHOTS = 10
REPEATED_ERROR_LIMIT = 3
GIT_TIMEOUT = 10


class Heartbeat(BaseModel):
    """Progress file a job process may write for the health monitor."""

    stage: StrictStr = "unknown"
    iteration: StrictInt = Field(default=0, ge=0)


class ProgressStore:
    """Per-job progress records, one JSON file per job."""

    def __init__(self, progress_dir: Path) -> None:
        self.progress_dir = progress_dir

    def path(self, job_id: int) -> Path:
        return self.progress_dir / f"issue-{job_id}.json"

    def load(self, job_id: int) -> ProgressRecord | None:
        """Load a job's record, or None if the job was never observed.

        Raises:
            StateError: If the record file is corrupt
        """
        path = self.path(job_id)
        if not path.exists():
            return None
        try:
            data = json.loads(path.read_text())
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise StateError(f"Corrupt progress record {path}: {e}") from e
        return ProgressRecord.from_dict(data)

    def save(self, record: ProgressRecord) -> None:
        atomic_write_json(self.path(record.job_id), record.to_dict())

    def clear(self, job_id: int) -> None:
        """Delete a job's record. Safe to call when none exists."""
        path = self.path(job_id)
        if path.exists():
            path.unlink()


def has_progress(previous: ProgressSnapshot, current: ProgressSnapshot) -> bool:
    """Check whether current shows forward movement relative to previous."""
    if current.stage != previous.stage and current.stage != "unknown":
        return True
    return (
        current.iteration > previous.iteration
        or current.diff_lines > previous.diff_lines
        or current.files_changed > previous.files_changed
    )


def evaluate(
    record: ProgressRecord | None,
    job_id: int,
    snapshot: ProgressSnapshot,
    warn_threshold: int = 3,
    kill_threshold: int = 6,
) -> tuple[Verdict, ProgressRecord]:
    """Assess a new snapshot against a job's record.

    Pure function: the input record is not modified.

    Args:
        record: Existing record, or None on the first observation
        job_id: Job the snapshot belongs to
        snapshot: Newly collected snapshot
        warn_threshold: No-progress checks before "stalled"
        kill_threshold: No-progress checks before "stuck"

    Returns:
        Tuple of (verdict, updated record)
    """
    if record is None:
        seeded = ProgressRecord(
            job_id=job_id,
            last_progress_at=snapshot.ts,
            snapshots=[snapshot],
        )
        return "healthy", seeded

    previous = record.snapshots[-1] if record.snapshots else snapshot
    progress = has_progress(previous, snapshot)

    repeated = record.repeated_error_count
    if snapshot.last_error:
        repeated = repeated + 1 if snapshot.last_error == previous.last_error else 0

    if progress:
        no_progress = 0
        repeated = 0
        last_progress_at = snapshot.ts
    else:
        no_progress = record.no_progress_count + 1
        last_progress_at = record.last_progress_at

    updated = ProgressRecord(
        job_id=job_id,
        last_progress_at=last_progress_at,
        snapshots=(record.snapshots + [snapshot])[-MAX_SNAPSHOTS:],
        no_progress_count=no_progress,
        repeated_error_count=repeated,
    )

    verdict: Verdict
    if repeated >= REPEATED_ERROR_LIMIT:
        verdict = "stuck"
    elif no_progress >= kill_threshold:
        verdict = "stuck"
    elif no_progress >= warn_threshold:
        verdict = "stalled"
    elif no_progress >= 1:
        verdict = "slowing"
    else:
        verdict = "healthy"

    return verdict, updated


@dataclass
class ProgressAssessor:
    """Stateful wrapper around evaluate() backed by a ProgressStore."""

    store: ProgressStore
    warn_threshold: int = 3
    kill_threshold: int = 6

    def assess(self, job_id: int, snapshot: ProgressSnapshot) -> Verdict:
        """Record a snapshot for a job and return its verdict."""
        verdict, record = evaluate(
            self.record(job_id),
            job_id,
            snapshot,
            warn_threshold=self.warn_threshold,
            kill_threshold=self.kill_threshold,
        )
        self.store.save(record)
        return verdict

    def record(self, job_id: int) -> ProgressRecord | None:
        """A job's record. Unreadable records are discarded and start over."""
        try:
            return self.store.load(job_id)
        except StateError as e:
            logger.warning(f"Discarding progress record for issue #{job_id}: {e}")
            self.store.clear(job_id)
            return None

    def clear(self, job_id: int) -> None:
        self.store.clear(job_id)


# --- snapshot collection ------------------------------------------------------


def collect_snapshot(
    worktree: Path, now: datetime, heartbeat_file: Path | None = None
) -> ProgressSnapshot:
    """Derive a snapshot from a job's heartbeat file and worktree.

    Stage and iteration come from the heartbeat file when the job writes
    one, otherwise from the pipeline state file in the worktree. Diff size
    and touched files come from git.

    Args:
        worktree: The job's checkout
        now: Timestamp for the snapshot
        heartbeat_file: Optional JSON file with "stage" and "iteration"
    """
    stage, iteration = _read_heartbeat(heartbeat_file)
    if stage == "unknown":
        stage = _read_pipeline_stage(worktree)

    diff_lines, files_changed = _git_changes(worktree)

    return ProgressSnapshot(
        ts=now,
        stage=stage,
        iteration=iteration,
        diff_lines=diff_lines,
        files_changed=files_changed,
        last_error=_last_error_signature(worktree),
    )


def _read_heartbeat(heartbeat_file: Path | None) -> tuple[str, int]:
    if heartbeat_file is None or not heartbeat_file.exists():
        return "unknown", 0
    try:
        heartbeat = Heartbeat.model_validate_json(heartbeat_file.read_bytes())
    except ValidationError as e:
        logger.debug(f"Ignoring malformed heartbeat file {heartbeat_file}: {e}")
        return "unknown", 0
    return heartbeat.stage or "unknown", heartbeat.iteration


def _read_pipeline_stage(worktree: Path) -> str:
    state_file = worktree / ".claude" / "pipeline-state.md"
    if not state_file.exists():
        return "unknown"
    for line in state_file.read_text(errors="replace").splitlines():
        if line.startswith("current_stage:"):
            return line.split(":", 1)[1].strip() or "unknown"
    return "unknown"


def _git(worktree: Path, *args: str) -> str:
    try:
        result = subprocess.run(
            ["git", "-C", str(worktree), *args],
            capture_output=True,
            text=True,
            timeout=GIT_TIMEOUT,
        )
    except (subprocess.TimeoutExpired, FileNotFoundError):
        return ""
    return result.stdout if result.returncode == 0 else ""


def _git_changes(worktree: Path) -> tuple[int, int]:
    """Return (changed lines, changed files) including untracked files."""
    diff_lines = 0
    files: set[str] = set()
    for line in _git(worktree, "diff", "--numstat", "HEAD").splitlines():
        parts = line.split("\t")
        if len(parts) != 3:
            continue
        added, deleted, name = parts
        # Binary files report "-" for both counts
        if added.isdigit():
            diff_lines += int(added)
        if deleted.isdigit():
            diff_lines += int(deleted)
        files.add(name)
    untracked = _git(worktree, "ls-files", "--others", "--exclude-standard")
    files.update(name for name in untracked.splitlines() if name)
    return diff_lines, len(files)


def _last_error_signature(worktree: Path) -> str:
    error_log = worktree / ".claude" / "pipeline-artifacts" / "error-log.jsonl"
    if not error_log.exists():
        return ""
    lines = [
        line for line in error_log.read_text(errors="replace").splitlines() if line.strip()
    ]
    if not lines:
        return ""
    try:
        entry = json.loads(lines[-1])
    except json.JSONDecodeError:
        return ""
    if not isinstance(entry, dict):
        return ""
    return str(entry.get("signature") or entry.get("error") or "")
