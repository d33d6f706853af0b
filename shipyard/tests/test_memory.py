"""Tests for the failure-pattern memory store."""

import json
from pathlib import Path

import pytest

from shipyard.errors import StateError
from shipyard.memory import FailurePattern, MemoryStore


class TestMemoryStore:
    """Tests for MemoryStore."""

    def test_no_patterns_yet(self, tmp_path: Path) -> None:
        assert MemoryStore(tmp_path).patterns("/repo") == []

    def test_record_creates_pattern(self, tmp_path: Path) -> None:
        store = MemoryStore(tmp_path)

        entry = store.record_failure("/work/app", "build_failure: E1")

        assert entry == FailurePattern(pattern="build_failure: E1", seen_count=1)
        assert store.find("/work/app", "build_failure: E1").seen_count == 1

    def test_record_increments_and_keeps_fix(self, tmp_path: Path) -> None:
        store = MemoryStore(tmp_path)
        store.path("/work/app").write_text(
            json.dumps(
                {
                    "failures": [
                        {
                            "pattern": "api_error",
                            "fix": "wait and retry",
                            "seen_count": 4,
                            "fix_effectiveness_rate": 0.5,
                        }
                    ]
                }
            )
        )

        entry = store.record_failure("/work/app", "api_error")

        assert entry.seen_count == 5
        assert entry.fix == "wait and retry"
        assert entry.fix_effectiveness_rate == 0.5

    def test_repositories_are_separate(self, tmp_path: Path) -> None:
        store = MemoryStore(tmp_path)
        store.record_failure("/work/a", "unknown")
        assert store.patterns("/work/b") == []
        assert store.path("/work/a") != store.path("/work/b")

    def test_corrupt_document(self, tmp_path: Path) -> None:
        store = MemoryStore(tmp_path)
        store.path("/repo").write_text("{")
        with pytest.raises(StateError):
            store.patterns("/repo")

    @pytest.mark.parametrize(
        "document",
        [
            {"patterns": []},
            {"failures": [{"fix": "x"}]},
            {"failures": [{"pattern": "x", "owner": "me"}]},
        ],
    )
    def test_unexpected_shape(self, tmp_path: Path, document: dict) -> None:
        store = MemoryStore(tmp_path)
        store.path("/repo").write_text(json.dumps(document))
        with pytest.raises(StateError):
            store.patterns("/repo")
