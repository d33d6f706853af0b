"""Data models for the Shipyard daemon.

Defines the persisted entities (jobs, queue entries, outcomes, progress
records) and the tracker issue shape as pydantic models. Every model
round-trips through to_dict()/from_dict(); from_dict() rejects documents
with unknown keys, missing keys or wrongly-typed values instead of
guessing defaults for them.
"""

from datetime import datetime
from typing import Any, Literal

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    StrictBool,
    StrictInt,
    StrictStr,
    ValidationError,
)

from shipyard.errors import StateError

FailureClass = Literal[
    "auth_error",
    "api_error",
    "invalid_issue",
    "context_exhaustion",
    "build_failure",
    "unknown",
]

Verdict = Literal["healthy", "slowing", "stalled", "stuck"]

JobResult = Literal["success", "failure"]


def describe_errors(error: ValidationError) -> str:
    """Flatten a ValidationError into one line of "field: message" parts."""
    parts = []
    for err in error.errors():
        loc = ".".join(str(p) for p in err["loc"]) or "<root>"
        parts.append(f"{loc}: {err['msg']}")
    return "; ".join(parts)


class Document(BaseModel):
    """Base for persisted documents: unknown keys are rejected."""

    model_config = ConfigDict(extra="forbid")

    def to_dict(self) -> dict[str, Any]:
        return self.model_dump(mode="json")

    @classmethod
    def from_dict(cls, data: Any) -> Any:
        """Build a model from parsed JSON.

        Raises:
            StateError: If data is not an object or does not match the model
        """
        if not isinstance(data, dict):
            raise StateError(f"{cls.__name__} must be an object, got {type(data).__name__}")
        try:
            return cls.model_validate(data)
        except ValidationError as e:
            raise StateError(f"Invalid {cls.__name__}: {describe_errors(e)}") from e


class Issue(Document):
    """An issue as reported by a tracker provider."""

    id: StrictInt
    title: StrictStr
    labels: list[StrictStr] = Field(default_factory=list)
    state: StrictStr = "open"
    body: StrictStr = ""
    repo: StrictStr | None = None


class Job(Document):
    """A running agent job, owned by the daemon.

    Attributes:
        id: Issue number the job works on
        pid: Process (and process group) id of the job
        worktree_path: Isolated checkout the job operates in
        title: Issue title
        priority_class: First matching priority label, or "none"
        started_at: When the job process was spawned
        stage: Last pipeline stage reported by the job
        retry_count: Number of retries that preceded this attempt
        failure_class_history: Classifications of earlier failed attempts
        repo: Repository path the job belongs to
        log_path: File receiving the job's stdout/stderr
        template: Pipeline template the job was started with
        extra_args: Extra arguments passed to the job process
        kill_reason: Set when the health monitor killed the job
        nudged: Whether a nudge note was already written for this job
    """

    id: StrictInt
    pid: StrictInt
    worktree_path: StrictStr
    title: StrictStr
    priority_class: StrictStr
    started_at: datetime
    stage: StrictStr = "unknown"
    retry_count: StrictInt = 0
    failure_class_history: list[StrictStr] = Field(default_factory=list)
    repo: StrictStr = ""
    log_path: StrictStr = ""
    template: StrictStr = ""
    extra_args: list[StrictStr] = Field(default_factory=list)
    kill_reason: StrictStr | None = None
    nudged: StrictBool = False


class QueuedIssue(Document):
    """An issue waiting for capacity, or a retry waiting for its backoff.

    Attributes:
        id: Issue number
        title: Issue title
        priority_class: First matching priority label, or "none"
        not_before: Earliest dispatch time (None means as soon as possible)
        retry_count: Retries already scheduled for this issue
        extra_args: Escalation arguments carried into the next spawn
        template: Pipeline template override for the next spawn
        failure_class_history: Classifications of earlier failed attempts
    """

    id: StrictInt
    title: StrictStr
    priority_class: StrictStr = "none"
    not_before: datetime | None = None
    retry_count: StrictInt = 0
    extra_args: list[StrictStr] = Field(default_factory=list)
    template: StrictStr | None = None
    failure_class_history: list[StrictStr] = Field(default_factory=list)

    def is_due(self, now: datetime) -> bool:
        """Check if the entry may be dispatched at the given time."""
        return self.not_before is None or self.not_before <= now


class Outcome(Document):
    """Terminal result of an issue's job."""

    id: StrictInt
    title: StrictStr
    result: JobResult
    duration_s: StrictInt
    finished_at: datetime
    retry_count: StrictInt = 0
    failure_class: StrictStr | None = None
    reason: StrictStr | None = None


class ProgressSnapshot(Document):
    """One observation of a job's behavior at health-check time."""

    ts: datetime
    stage: StrictStr = "unknown"
    iteration: StrictInt = 0
    diff_lines: StrictInt = 0
    files_changed: StrictInt = 0
    last_error: StrictStr = ""


class ProgressRecord(Document):
    """Bounded snapshot history and stall counters for one job."""

    job_id: StrictInt
    last_progress_at: datetime
    snapshots: list[ProgressSnapshot] = Field(default_factory=list)
    no_progress_count: StrictInt = 0
    repeated_error_count: StrictInt = 0
