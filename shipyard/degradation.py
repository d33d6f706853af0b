"""Degradation detector over recent job outcomes.

Looks at the last N pipeline.completed events and raises an advisory
alert when the change failure rate is above its threshold or the success
rate is below its threshold. A window with fewer than N outcomes never
produces an alert.
"""

import logging
from dataclasses import dataclass, field

from shipyard.events import EventLog

logger = logging.getLogger(__name__)


@dataclass
class DegradationAlert:
    """An alert raised by the detector.

    Attributes:
        messages: One message per exceeded threshold
        cfr_pct: Failure percentage over the window
        success_pct: Success percentage over the window
        window: Number of outcomes considered
    """

    messages: list[str] = field(default_factory=list)
    cfr_pct: int = 0
    success_pct: int = 0
    window: int = 0

    @property
    def summary(self) -> str:
        return "; ".join(self.messages)


class DegradationDetector:
    """Computes rolling outcome percentages from the event log."""

    def __init__(self, events: EventLog) -> None:
        self.events = events

    def check(
        self,
        window_size: int = 5,
        cfr_threshold: int = 30,
        success_threshold: int = 50,
    ) -> DegradationAlert | None:
        """Evaluate the most recent window of outcomes.

        Args:
            window_size: Number of most recent outcomes to consider
            cfr_threshold: Alert when failure percentage is above this
            success_threshold: Alert when success percentage is below this

        Returns:
            DegradationAlert, or None when healthy or the window is incomplete
        """
        if window_size <= 0:
            return None
        window = self.events.completions(last=window_size)
        if len(window) < window_size:
            return None

        failures = sum(1 for e in window if e.get("result") == "failure")
        successes = sum(1 for e in window if e.get("result") == "success")
        cfr_pct = failures * 100 // window_size
        success_pct = successes * 100 // window_size

        messages = []
        if cfr_pct > cfr_threshold:
            messages.append(f"CFR {cfr_pct}% exceeds threshold {cfr_threshold}%")
        if success_pct < success_threshold:
            messages.append(
                f"Success rate {success_pct}% below threshold {success_threshold}%"
            )
        if not messages:
            return None

        alert = DegradationAlert(
            messages=messages,
            cfr_pct=cfr_pct,
            success_pct=success_pct,
            window=window_size,
        )
        logger.warning(f"Degradation detected: {alert.summary}")
        return alert
