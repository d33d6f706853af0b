"""DORA delivery metrics computed from the event log.

Deploy frequency, cycle time, change failure rate and mean time to
recovery over a window of days, each graded Elite/High/Medium/Low with
fixed bands.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Literal

from shipyard.events import COMPLETED_EVENT

Grade = Literal["Elite", "High", "Medium", "Low"]
Metric = Literal["deploy_freq", "cycle_time", "cfr", "mttr"]

SECONDS_PER_DAY = 86400


@dataclass
class DoraReport:
    """Graded DORA metrics for one window.

    Attributes:
        deploy_freq: Successful completions per week
        cycle_time: Median duration of successful completions (seconds)
        cycle_time_p95: 95th percentile duration of successful completions
        cfr: Failed completions as a percentage of all completions
        mttr: Mean seconds from a failure to the next success
        total: Completions in the window
        successes: Successful completions in the window
        failures: Failed completions in the window
        grades: Grade per metric
        window_days: Length of the window
        offset_days: How many days before now the window ends
    """

    deploy_freq: float
    cycle_time: int
    cycle_time_p95: int
    cfr: float
    mttr: int
    total: int
    successes: int
    failures: int
    window_days: int
    offset_days: int = 0
    grades: dict[str, Grade] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "deploy_freq": round(self.deploy_freq, 2),
            "cycle_time": self.cycle_time,
            "cycle_time_p95": self.cycle_time_p95,
            "cfr": round(self.cfr, 1),
            "mttr": self.mttr,
            "total": self.total,
            "successes": self.successes,
            "failures": self.failures,
            "window_days": self.window_days,
            "offset_days": self.offset_days,
            "grades": dict(self.grades),
        }


def dora_grade(metric: Metric, value: float) -> Grade:
    """Grade a metric value using the fixed DORA bands.

    MTTR has no Low band: anything slower than a day is Medium.
    """
    if metric == "deploy_freq":
        if value >= 7:
            return "Elite"
        if value >= 1:
            return "High"
        if value >= 0.25:
            return "Medium"
        return "Low"
    if metric == "cycle_time":
        if value < 3600:
            return "Elite"
        if value < 86400:
            return "High"
        if value < 604800:
            return "Medium"
        return "Low"
    if metric == "cfr":
        if value < 5:
            return "Elite"
        if value < 10:
            return "High"
        if value < 15:
            return "Medium"
        return "Low"
    if metric == "mttr":
        if value < 3600:
            return "Elite"
        if value < 86400:
            return "High"
        return "Medium"
    raise ValueError(f"Unknown DORA metric: {metric}")


def median(values: list[int]) -> int:
    """Lower median: for even counts the smaller middle element. 0 if empty."""
    if not values:
        return 0
    ordered = sorted(values)
    return ordered[(len(ordered) - 1) // 2]


def percentile(values: list[int], pct: int) -> int:
    """Nearest-rank percentile at index floor(len * pct / 100). 0 if empty."""
    if not values:
        return 0
    ordered = sorted(values)
    index = min(len(ordered) * pct // 100, len(ordered) - 1)
    return ordered[index]


def mean_time_to_recovery(completions: list[dict[str, Any]]) -> int:
    """Average seconds from each failure to the first later success.

    Each failure searches forward on its own, so one success can close
    several earlier failures. Failures never followed by a success are
    left out of the average.
    """
    ordered = sorted(completions, key=lambda e: e["ts_epoch"])
    deltas = []
    for i, event in enumerate(ordered):
        if event.get("result") != "failure":
            continue
        recovery = next(
            (
                later
                for later in ordered[i + 1 :]
                if later.get("result") == "success"
                and later["ts_epoch"] > event["ts_epoch"]
            ),
            None,
        )
        if recovery is not None:
            deltas.append(recovery["ts_epoch"] - event["ts_epoch"])
    if not deltas:
        return 0
    return sum(deltas) // len(deltas)


def window_bounds(
    now: datetime, window_days: int, offset_days: int = 0
) -> tuple[int, int]:
    """Epoch bounds [start, end) of a window ending offset_days before now."""
    end = now - timedelta(days=offset_days)
    start = end - timedelta(days=window_days)
    return int(start.timestamp()), int(end.timestamp())


def compute(
    events: list[dict[str, Any]],
    window_days: int = 7,
    offset_days: int = 0,
    now: datetime | None = None,
) -> DoraReport:
    """Compute graded DORA metrics for a time window.

    Args:
        events: Event records (non-completion events are ignored)
        window_days: Window length in days
        offset_days: Days between now and the end of the window
        now: Reference time (defaults to the current UTC time)

    Returns:
        DoraReport for completions with start <= ts_epoch < end
    """
    if window_days <= 0:
        raise ValueError("window_days must be positive")

    now = now or datetime.now(timezone.utc)
    start, end = window_bounds(now, window_days, offset_days)

    completions = [
        e
        for e in events
        if e.get("type") == COMPLETED_EVENT
        and isinstance(e.get("ts_epoch"), int)
        and start <= e["ts_epoch"] < end
    ]
    successes = [e for e in completions if e.get("result") == "success"]
    failures = [e for e in completions if e.get("result") == "failure"]
    total = len(completions)

    durations = [int(e.get("duration_s", 0)) for e in successes]
    deploy_freq = len(successes) * 7 / window_days
    cycle_time = median(durations)
    cfr = len(failures) / total * 100 if total else 0.0
    mttr = mean_time_to_recovery(completions)

    return DoraReport(
        deploy_freq=deploy_freq,
        cycle_time=cycle_time,
        cycle_time_p95=percentile(durations, 95),
        cfr=cfr,
        mttr=mttr,
        total=total,
        successes=len(successes),
        failures=len(failures),
        window_days=window_days,
        offset_days=offset_days,
        grades={
            "deploy_freq": dora_grade("deploy_freq", deploy_freq),
            "cycle_time": dora_grade("cycle_time", cycle_time),
            "cfr": dora_grade("cfr", cfr),
            "mttr": dora_grade("mttr", mttr),
        },
    )
