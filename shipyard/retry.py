"""Retry policy keyed by failure classification.

Decides whether a failed job is retried, how long to wait before the
respawn, and which escalation arguments the respawn carries.
"""

from dataclasses import dataclass, field
from typing import Literal

from shipyard.config import DaemonConfig
from shipyard.models import FailureClass

MAX_BACKOFF_S = 3600
MAX_RESTARTS_CEILING = 5

# Classes that never get a retry: retrying cannot change the outcome
TERMINAL_CLASSES: frozenset[str] = frozenset({"auth_error", "invalid_issue"})


@dataclass
class RetryDecision:
    """Outcome of the retry policy for one failed attempt.

    Attributes:
        action: "retry", "skip" (class is never retried) or "exhausted"
        failure_class: Classification of the failure
        retry_count: Retry number the respawn will carry (unchanged unless retrying)
        max_retries: Retry cap for this class
        backoff_s: Seconds to wait before the respawn
        extra_args: Escalation arguments for the respawn
        template: Pipeline template override for the respawn, if any
    """

    action: Literal["retry", "skip", "exhausted"]
    failure_class: FailureClass
    retry_count: int
    max_retries: int
    backoff_s: int = 0
    extra_args: list[str] = field(default_factory=list)
    template: str | None = None


@dataclass
class RetryPolicy:
    """Per-class retry caps, backoff schedule and escalation."""

    max_retries: int = 2
    retry_escalation: bool = True
    max_restarts: int = 3
    backoff_s: int = 30
    api_backoff_s: int = 300

    @classmethod
    def from_config(cls, config: DaemonConfig) -> "RetryPolicy":
        return cls(
            max_retries=config.max_retries,
            retry_escalation=config.retry_escalation,
            max_restarts=config.max_restarts,
            backoff_s=config.retry_backoff_s,
            api_backoff_s=config.api_backoff_s,
        )

    def max_retries_for(self, failure_class: FailureClass) -> int:
        """Retry cap for a failure class."""
        if failure_class in TERMINAL_CLASSES:
            return 0
        if failure_class == "api_error":
            return 4
        if failure_class in ("context_exhaustion", "build_failure"):
            return 2
        return self.max_retries

    def backoff_for(self, failure_class: FailureClass, attempt: int) -> int:
        """Seconds to wait before the given retry attempt (1-based)."""
        if failure_class == "api_error":
            return self.api_backoff_s
        return min(self.backoff_s * 2 ** (attempt - 1), MAX_BACKOFF_S)

    def escalation_for(
        self, failure_class: FailureClass, attempt: int
    ) -> tuple[list[str], str | None]:
        """Escalation arguments and template override for a retry attempt.

        Later attempts carry every argument of earlier ones.
        """
        args: list[str] = []
        template = None
        if self.retry_escalation:
            args += ["--max-iterations", "30"]
            if attempt >= 2:
                args += ["--compound-cycles", "5"]
                template = "full"
        if failure_class == "context_exhaustion":
            restarts = min(self.max_restarts + attempt, MAX_RESTARTS_CEILING)
            args += ["--max-restarts", str(restarts)]
        return args, template

    def decide(self, failure_class: FailureClass, retry_count: int) -> RetryDecision:
        """Decide what happens after a failed attempt.

        Args:
            failure_class: Classification of the failure
            retry_count: Retries that already happened for this issue

        Returns:
            RetryDecision for the next step
        """
        cap = self.max_retries_for(failure_class)
        if cap == 0:
            return RetryDecision("skip", failure_class, retry_count, cap)
        if retry_count >= cap:
            return RetryDecision("exhausted", failure_class, retry_count, cap)

        attempt = retry_count + 1
        args, template = self.escalation_for(failure_class, attempt)
        return RetryDecision(
            action="retry",
            failure_class=failure_class,
            retry_count=attempt,
            max_retries=cap,
            backoff_s=self.backoff_for(failure_class, attempt),
            extra_args=args,
            template=template,
        )
