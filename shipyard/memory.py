"""Failure-pattern memory shared with job processes.

Each repository has one JSON document of failure patterns. Job processes
own the fix text and effectiveness rate; the daemon only reads patterns
and bumps seen counters. Counter updates take an advisory lock so two
writers never lose an increment.
"""

import json
import re
from pathlib import Path

from pydantic import StrictFloat, StrictInt, StrictStr

from shipyard.errors import StateError
from shipyard.models import Document
from shipyard.storage import atomic_write_json, file_lock


class FailurePattern(Document):
    """A remembered failure and its known fix."""

    pattern: StrictStr
    fix: StrictStr = ""
    seen_count: StrictInt = 0
    fix_effectiveness_rate: StrictFloat | StrictInt = 0.0


class MemoryDocument(Document):
    """One repository's memory file."""

    failures: list[FailurePattern]


class MemoryStore:
    """Reads and increments failure patterns per repository."""

    def __init__(self, memory_dir: Path) -> None:
        self.memory_dir = memory_dir

    def path(self, repo: str) -> Path:
        slug = re.sub(r"[^A-Za-z0-9_.-]+", "-", repo).strip("-") or "default"
        return self.memory_dir / f"{slug}.json"

    def patterns(self, repo: str) -> list[FailurePattern]:
        """All known failure patterns for a repository.

        Raises:
            StateError: If the memory document is malformed
        """
        path = self.path(repo)
        if not path.exists():
            return []
        try:
            data = json.loads(path.read_text())
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise StateError(f"Corrupt memory file {path}: {e}") from e
        return MemoryDocument.from_dict(data).failures

    def find(self, repo: str, pattern: str) -> FailurePattern | None:
        return next((p for p in self.patterns(repo) if p.pattern == pattern), None)

    def record_failure(self, repo: str, pattern: str) -> FailurePattern:
        """Increment the seen counter of a pattern, creating it if new."""
        path = self.path(repo)
        with file_lock(path.with_suffix(".lock")):
            patterns = self.patterns(repo)
            entry = next((p for p in patterns if p.pattern == pattern), None)
            if entry is None:
                entry = FailurePattern(pattern=pattern)
                patterns.append(entry)
            entry.seen_count += 1
            atomic_write_json(path, MemoryDocument(failures=patterns).to_dict())
        return entry
