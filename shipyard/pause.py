"""Pause flag controlling new dispatch.

While the flag file exists the daemon keeps reaping and health-checking
jobs but starts no new ones. A flag may carry a resume_after time, after
which it is removed automatically; flags without one stay until cleared.
"""

import json
from datetime import datetime
from pathlib import Path
from typing import Any

from pydantic import StrictStr

from shipyard.errors import StateError
from shipyard.models import Document
from shipyard.storage import atomic_write_json

PAUSE_FILENAME = "daemon-pause.flag"


class PauseInfo(Document):
    """Contents of the pause flag."""

    reason: StrictStr
    timestamp: datetime
    resume_after: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return self.model_dump(mode="json", exclude_none=True)


class PauseFlag:
    """Reads and writes the pause flag in the state directory."""

    def __init__(self, state_dir: Path) -> None:
        self.path = state_dir / PAUSE_FILENAME

    def pause(
        self, reason: str, now: datetime, resume_after: datetime | None = None
    ) -> PauseInfo:
        info = PauseInfo(reason=reason, timestamp=now, resume_after=resume_after)
        atomic_write_json(self.path, info.to_dict())
        return info

    def read(self) -> PauseInfo | None:
        """Current pause info, or None when not paused.

        Raises:
            StateError: If the flag file exists but cannot be parsed
        """
        if not self.path.exists():
            return None
        try:
            data = json.loads(self.path.read_text())
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise StateError(f"Corrupt pause flag {self.path}: {e}") from e
        return PauseInfo.from_dict(data)

    def clear(self) -> bool:
        """Remove the flag. Returns True if a flag was present."""
        if self.path.exists():
            self.path.unlink()
            return True
        return False

    def auto_resume(self, now: datetime) -> bool:
        """Remove the flag if its resume_after time has passed.

        Returns:
            True if the flag was removed
        """
        info = self.read()
        if info is None or info.resume_after is None:
            return False
        if now >= info.resume_after:
            return self.clear()
        return False
