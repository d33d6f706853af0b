"""Tests for the GitHub tracker provider."""

import json
import subprocess
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

from shipyard.errors import TrackerError
from shipyard.tracker import GitHubTracker


def gh_result(stdout: str = "", returncode: int = 0, stderr: str = "") -> MagicMock:
    return MagicMock(stdout=stdout, returncode=returncode, stderr=stderr)


@pytest.fixture
def tracker(tmp_path: Path) -> GitHubTracker:
    return GitHubTracker(tmp_path)


class TestDiscoverIssues:
    """Tests for discover_issues()."""

    def test_parses_issue_list(self, tracker: GitHubTracker) -> None:
        payload = [
            {"number": 3, "title": "A", "labels": [{"name": "urgent"}], "state": "OPEN"},
            {"number": 7, "title": "B", "labels": [], "state": "OPEN"},
        ]
        with patch(
            "shipyard.tracker.subprocess.run", return_value=gh_result(json.dumps(payload))
        ) as run:
            issues = tracker.discover_issues("ready-to-build")

        assert [i.id for i in issues] == [3, 7]
        assert issues[0].labels == ["urgent"]
        assert issues[0].state == "open"
        cmd = run.call_args[0][0]
        assert cmd[:3] == ["gh", "issue", "list"]
        assert "--label" in cmd
        assert cmd[cmd.index("--label") + 1] == "ready-to-build"
        assert run.call_args[1]["cwd"] == tracker.repo_path

    def test_empty_output(self, tracker: GitHubTracker) -> None:
        with patch("shipyard.tracker.subprocess.run", return_value=gh_result("")):
            assert tracker.discover_issues("x") == []


class TestErrors:
    """Tests for gh failures."""

    def test_non_zero_exit(self, tracker: GitHubTracker) -> None:
        with patch(
            "shipyard.tracker.subprocess.run",
            return_value=gh_result(returncode=1, stderr="HTTP 401: Bad credentials"),
        ):
            with pytest.raises(TrackerError, match="Bad credentials"):
                tracker.comment(1, "hi")

    def test_timeout(self, tracker: GitHubTracker) -> None:
        with patch(
            "shipyard.tracker.subprocess.run",
            side_effect=subprocess.TimeoutExpired("gh", 30),
        ):
            with pytest.raises(TrackerError, match="timed out"):
                tracker.close_issue(1)

    def test_gh_missing(self, tracker: GitHubTracker) -> None:
        with patch("shipyard.tracker.subprocess.run", side_effect=FileNotFoundError):
            with pytest.raises(TrackerError, match="not available"):
                tracker.add_label(1, "x")

    def test_invalid_json(self, tracker: GitHubTracker) -> None:
        with patch("shipyard.tracker.subprocess.run", return_value=gh_result("<html>")):
            with pytest.raises(TrackerError, match="invalid JSON"):
                tracker.get_issue(1)

    @pytest.mark.parametrize(
        "payload",
        [
            [{"title": "no number"}],
            [{"number": "3", "title": "A"}],
            [{"number": 3, "title": "A", "labels": ["urgent"]}],
            ["3"],
        ],
    )
    def test_unexpected_issue_shape(self, tracker: GitHubTracker, payload) -> None:
        with patch(
            "shipyard.tracker.subprocess.run", return_value=gh_result(json.dumps(payload))
        ):
            with pytest.raises(TrackerError, match="unexpected issue shape"):
                tracker.discover_issues("x")


class TestMutations:
    """Tests for commands that change the tracker."""

    def test_get_issue(self, tracker: GitHubTracker) -> None:
        payload = {"number": 9, "title": "T", "body": "details", "labels": [], "state": "OPEN"}
        with patch(
            "shipyard.tracker.subprocess.run", return_value=gh_result(json.dumps(payload))
        ):
            issue = tracker.get_issue(9)
        assert issue.body == "details"

    def test_label_commands(self, tracker: GitHubTracker) -> None:
        with patch("shipyard.tracker.subprocess.run", return_value=gh_result()) as run:
            tracker.add_label(4, "pipeline/failed")
            tracker.remove_label(4, "ready-to-build")

        assert run.call_args_list[0][0][0] == [
            "gh", "issue", "edit", "4", "--add-label", "pipeline/failed"
        ]
        assert run.call_args_list[1][0][0] == [
            "gh", "issue", "edit", "4", "--remove-label", "ready-to-build"
        ]

    def test_create_issue_returns_number(self, tracker: GitHubTracker) -> None:
        with patch(
            "shipyard.tracker.subprocess.run",
            return_value=gh_result("https://github.com/acme/app/issues/57\n"),
        ) as run:
            number = tracker.create_issue("Title", "Body", ["bug", "p1"])

        assert number == 57
        cmd = run.call_args[0][0]
        assert cmd[cmd.index("--label") + 1] == "bug,p1"

    def test_close_draft_prs(self, tracker: GitHubTracker) -> None:
        prs = [{"number": 11, "isDraft": True}, {"number": 12, "isDraft": False}]
        with patch(
            "shipyard.tracker.subprocess.run",
            side_effect=[gh_result(json.dumps(prs)), gh_result()],
        ) as run:
            closed = tracker.close_draft_prs("daemon/issue-4")

        assert closed == 1
        assert run.call_args_list[1][0][0] == [
            "gh", "pr", "close", "11", "--delete-branch"
        ]
