"""State management for daemon persistence.

Provides the DaemonState document (active jobs, queue, outcomes) and the
StateStore that performs every mutation as a locked read-modify-write with
an atomic rename, so dashboards reading the file never see a partial write.
"""

import json
import os
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterator

from pydantic import Field, StrictInt

from shipyard.errors import StateError
from shipyard.models import Document, Job, Outcome, QueuedIssue
from shipyard.storage import atomic_write_json, file_lock

STATE_VERSION = 1
STATE_FILENAME = "daemon-state.json"

# Outcome lists keep only the most recent entries
MAX_OUTCOMES = 500


class DaemonState(Document):
    """Process-wide state document.

    Attributes:
        pid: PID of the daemon that owns the document
        started_at: When that daemon started
        last_poll: When the tracker was last polled
        config: Snapshot of the main config values, for dashboards
        active_jobs: Jobs with a live (or not yet reaped) process
        queued: Issues waiting for capacity or for a retry backoff
        completed: Terminal successes (most recent MAX_OUTCOMES)
        failed: Terminal failures (most recent MAX_OUTCOMES)
    """

    pid: StrictInt
    started_at: datetime
    last_poll: datetime | None = None
    config: dict[str, Any] = Field(default_factory=dict)
    active_jobs: list[Job] = Field(default_factory=list)
    queued: list[QueuedIssue] = Field(default_factory=list)
    completed: list[Outcome] = Field(default_factory=list)
    failed: list[Outcome] = Field(default_factory=list)
    version: StrictInt = STATE_VERSION

    @classmethod
    def new(cls, config: dict[str, Any] | None = None) -> "DaemonState":
        """Create a fresh document for the current process."""
        return cls(
            pid=os.getpid(),
            started_at=datetime.now(timezone.utc),
            config=dict(config or {}),
        )

    @classmethod
    def from_dict(cls, data: Any) -> "DaemonState":
        """Parse a state document.

        Raises:
            StateError: If the document has an unknown version or shape
        """
        if not isinstance(data, dict):
            raise StateError("State document must be an object")
        keys = set(cls.model_fields)
        unknown = sorted(set(data) - keys)
        missing = sorted(keys - set(data))
        if unknown or missing:
            raise StateError(
                f"State document has unexpected shape "
                f"(unknown: {unknown or '-'}, missing: {missing or '-'})"
            )
        if data["version"] != STATE_VERSION:
            raise StateError(f"Unsupported state version: {data['version']!r}")

        return super().from_dict(data)

    # --- queries -----------------------------------------------------------

    def active_count(self) -> int:
        return len(self.active_jobs)

    def find_job(self, job_id: int) -> Job | None:
        return next((j for j in self.active_jobs if j.id == job_id), None)

    def is_active(self, job_id: int) -> bool:
        return self.find_job(job_id) is not None

    def is_queued(self, job_id: int) -> bool:
        return any(q.id == job_id for q in self.queued)

    # --- mutations ---------------------------------------------------------

    def add_job(self, job: Job) -> None:
        """Track a newly spawned job.

        The id is removed from the queue and outcome lists so each id lives
        in exactly one place.
        """
        self._forget(job.id)
        self.active_jobs.append(job)

    def remove_job(self, job_id: int) -> Job | None:
        job = self.find_job(job_id)
        if job is not None:
            self.active_jobs.remove(job)
        return job

    def enqueue(self, entry: QueuedIssue) -> bool:
        """Add an entry to the queue unless the id is already active or queued.

        Returns:
            True if the entry was added
        """
        if self.is_active(entry.id) or self.is_queued(entry.id):
            return False
        self.queued.append(entry)
        return True

    def pop_due(self, now: datetime) -> QueuedIssue | None:
        """Remove and return the first queue entry that may run now."""
        for entry in self.queued:
            if entry.is_due(now):
                self.queued.remove(entry)
                return entry
        return None

    def record_outcome(self, outcome: Outcome) -> None:
        """Record a terminal outcome in completed or failed."""
        self._forget(outcome.id)
        target = self.completed if outcome.result == "success" else self.failed
        target.append(outcome)
        del target[:-MAX_OUTCOMES]

    def _forget(self, job_id: int) -> None:
        self.queued = [q for q in self.queued if q.id != job_id]
        self.completed = [o for o in self.completed if o.id != job_id]
        self.failed = [o for o in self.failed if o.id != job_id]


class StateStore:
    """Owner of the on-disk state document.

    Usage:
        store = StateStore(state_dir)
        with store.update() as state:
            state.add_job(job)
        # Document is written atomically on exit
    """

    def __init__(self, state_dir: Path) -> None:
        self.path = state_dir / STATE_FILENAME
        self.lock_path = state_dir / "daemon-state.lock"

    def exists(self) -> bool:
        return self.path.exists()

    def load(self) -> DaemonState | None:
        """Load the state document.

        Returns:
            DaemonState if the file exists, None otherwise

        Raises:
            StateError: If the file is not valid JSON or has the wrong shape
        """
        if not self.path.exists():
            return None
        try:
            data = json.loads(self.path.read_text())
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise StateError(f"Corrupt state file {self.path}: {e}") from e
        return DaemonState.from_dict(data)

    def save(self, state: DaemonState) -> None:
        """Write the whole document atomically."""
        with file_lock(self.lock_path):
            atomic_write_json(self.path, state.to_dict())

    @contextmanager
    def update(self) -> Iterator[DaemonState]:
        """Locked read-modify-write of the state document.

        Raises:
            StateError: If no state document exists yet
        """
        with file_lock(self.lock_path):
            state = self.load()
            if state is None:
                raise StateError(f"No state document at {self.path}")
            yield state
            atomic_write_json(self.path, state.to_dict())
