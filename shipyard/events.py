"""Append-only structured event log.

Events are newline-delimited JSON records with ``ts`` (ISO-8601, UTC),
``ts_epoch`` (integer seconds) and ``type`` plus type-specific fields.
The daemon and job processes both append to the same file; every reader
(degradation detector, DORA calculator, CLI) goes through EventLog.
"""

import json
import logging
from collections import deque
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Iterable

logger = logging.getLogger(__name__)

COMPLETED_EVENT = "pipeline.completed"

# Rotation settings
MAX_EVENTS_BYTES = 50 * 1024 * 1024
MAX_ROTATIONS = 3


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def format_ts(moment: datetime) -> str:
    """Format a timestamp the way events store it (second precision, Z suffix)."""
    return moment.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


class EventLog:
    """Reader/writer for the newline-delimited JSON event file.

    Attributes:
        path: Location of the events file
        clock: Callable returning the current time (injectable for tests)
    """

    def __init__(
        self, path: Path, clock: Callable[[], datetime] = _utc_now
    ) -> None:
        self.path = path
        self.clock = clock

    def emit(self, event_type: str, **fields: Any) -> dict[str, Any]:
        """Append one event.

        Args:
            event_type: Dotted event type, e.g. "daemon.spawn"
            **fields: Type-specific fields

        Returns:
            The record as written
        """
        now = self.clock()
        record: dict[str, Any] = {
            "ts": format_ts(now),
            "ts_epoch": int(now.timestamp()),
            "type": event_type,
        }
        record.update(fields)

        self.path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.path, "a") as f:
            f.write(json.dumps(record) + "\n")
        return record

    def exists(self) -> bool:
        return self.path.exists()

    def size_bytes(self) -> int:
        """Current size of the events file, 0 if it does not exist."""
        if not self.path.exists():
            return 0
        return self.path.stat().st_size

    def read(self, types: Iterable[str] | None = None) -> list[dict[str, Any]]:
        """Read all events, optionally filtered by type.

        Lines that are not valid JSON objects are skipped with a warning.
        """
        if not self.path.exists():
            return []
        with open(self.path) as f:
            return self._parse(f, set(types) if types is not None else None)

    def tail(self, n: int, types: Iterable[str] | None = None) -> list[dict[str, Any]]:
        """Read events from the last n lines of the file."""
        if not self.path.exists():
            return []
        with open(self.path) as f:
            lines = deque(f, maxlen=n)
        return self._parse(lines, set(types) if types is not None else None)

    def completions(self, last: int | None = None) -> list[dict[str, Any]]:
        """Return pipeline.completed events in file order.

        Args:
            last: Only return the most recent this many completions. When
                the current file holds fewer, the newest rotated file is
                read as well.
        """
        found = self.read(types=[COMPLETED_EVENT])
        if last is None:
            return found
        if len(found) < last:
            rotated = EventLog(self.path.with_name(f"{self.path.name}.1"), self.clock)
            found = rotated.read(types=[COMPLETED_EVENT]) + found
        return found[-last:] if last > 0 else []

    def rotate(
        self, max_bytes: int = MAX_EVENTS_BYTES, keep: int = MAX_ROTATIONS
    ) -> bool:
        """Rotate the events file once it exceeds max_bytes.

        Shifts events.jsonl.1 -> .2 ... up to keep files, dropping the oldest,
        then starts a fresh file and records a daemon.log_rotated event.

        Returns:
            True if the file was rotated
        """
        size = self.size_bytes()
        if size <= max_bytes:
            return False

        for i in range(keep, 1, -1):
            older = self.path.with_name(f"{self.path.name}.{i - 1}")
            if older.exists():
                older.replace(self.path.with_name(f"{self.path.name}.{i}"))
        self.path.replace(self.path.with_name(f"{self.path.name}.1"))
        self.path.touch()

        self.emit("daemon.log_rotated", previous_size=size)
        logger.info(f"Rotated {self.path.name} (was {size // 1048576}MB)")
        return True

    def _parse(
        self, lines: Iterable[str], types: set[str] | None
    ) -> list[dict[str, Any]]:
        events = []
        for line in lines:
            line = line.strip()
            if not line:
                continue
            try:
                record = json.loads(line)
            except json.JSONDecodeError:
                logger.warning(f"Skipping malformed event line in {self.path}")
                continue
            if not isinstance(record, dict):
                continue
            if types is not None and record.get("type") not in types:
                continue
            events.append(record)
        return events
