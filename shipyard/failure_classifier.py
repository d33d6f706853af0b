"""Deterministic failure classification for job retry policy.

The policy table below is evaluated top to bottom over the tail of a
failed job's output; the first matching rule decides the class. Order
matters: an authentication failure that also mentions a failing test is
an auth_error, not a build_failure.
"""

import re
from dataclasses import dataclass

from shipyard.models import FailureClass

# Only the tail of the output is inspected
CLASSIFY_TAIL_LINES = 200


@dataclass(frozen=True)
class FailureRule:
    """One row of the classification policy table."""

    failure_class: FailureClass
    pattern: re.Pattern[str]

    def matches(self, text: str) -> bool:
        return self.pattern.search(text) is not None


def _rules(
    failure_class: FailureClass, *patterns: str, flags: int = re.IGNORECASE
) -> list[FailureRule]:
    return [FailureRule(failure_class, re.compile(p, flags)) for p in patterns]


FAILURE_POLICY: tuple[FailureRule, ...] = (
    *_rules(
        "auth_error",
        r"not logged in",
        r"unauthorized",
        r"auth.*fail",
        r"401 ",
        r"invalid.*token",
        r"api key.*invalid",
        r"authentication required",
    ),
    *_rules(
        "api_error",
        r"rate limit",
        r"429 ",
        r"503 ",
        r"502 ",
        r"overloaded",
        r"timeout",
        r"ETIMEDOUT",
        r"ECONNRESET",
        r"socket hang up",
        r"service unavailable",
    ),
    *_rules(
        "invalid_issue",
        r"issue not found",
        r"404 ",
        r"no body",
        r"could not resolve",
        r"GraphQL.*not found",
        r"issue.*does not exist",
    ),
    *_rules(
        "context_exhaustion",
        r"context window",
        r"context length",
        r"context.*exhaust",
        r"maximum context",
        r"prompt is too long",
        r"token limit",
        r"too many tokens",
    ),
    *_rules(
        "build_failure",
        r"test.*fail",
        r"build.*error",
        r"compile.*error",
        r"lint.*fail",
        r"npm ERR",
        r"exit code [1-9]",
    ),
    # Upper-case test runner marker; lower-case "fail" is too common to match
    *_rules("build_failure", r"\bFAIL\b", flags=0),
)


def tail_lines(text: str, n: int = CLASSIFY_TAIL_LINES) -> str:
    """Return the last n lines of text (nothing when n is not positive)."""
    if n <= 0:
        return ""
    return "\n".join(text.splitlines()[-n:])


def match_rule(
    output_text: str, policy: tuple[FailureRule, ...] = FAILURE_POLICY
) -> FailureRule | None:
    """Return the first policy rule matching the output tail, if any."""
    tail = tail_lines(output_text)
    return next((rule for rule in policy if rule.matches(tail)), None)


def classify_failure(output_text: str) -> FailureClass:
    """Classify a failed job's captured output.

    Args:
        output_text: Captured stdout/stderr of the job process

    Returns:
        The failure class of the first matching rule, or "unknown"
    """
    rule = match_rule(output_text)
    return rule.failure_class if rule is not None else "unknown"
