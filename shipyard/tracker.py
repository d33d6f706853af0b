"""Issue tracker providers.

The daemon talks to trackers only through the TrackerProvider protocol.
GitHubTracker implements it on top of the `gh` CLI, which handles
authentication and pagination for us.
"""

import json
import logging
import subprocess
from pathlib import Path
from typing import Any, Protocol

from pydantic import ValidationError

from shipyard.errors import TrackerError
from shipyard.models import Issue

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30


class TrackerProvider(Protocol):
    """Operations the daemon needs from an issue tracker."""

    def discover_issues(
        self, label: str, state: str = "open", limit: int = 100
    ) -> list[Issue]: ...

    def get_issue(self, issue_id: int) -> Issue: ...

    def comment(self, issue_id: int, text: str) -> None: ...

    def close_issue(self, issue_id: int) -> None: ...

    def add_label(self, issue_id: int, label: str) -> None: ...

    def remove_label(self, issue_id: int, label: str) -> None: ...

    def create_issue(self, title: str, body: str, labels: list[str]) -> int: ...

    def close_draft_prs(self, branch: str) -> int: ...


class GitHubTracker:
    """TrackerProvider backed by the GitHub CLI.

    Attributes:
        repo_path: Checkout whose GitHub remote is used
        timeout: Seconds allowed per gh invocation
    """

    def __init__(self, repo_path: Path, timeout: float = DEFAULT_TIMEOUT) -> None:
        self.repo_path = repo_path
        self.timeout = timeout

    def _gh(self, *args: str) -> str:
        """Run a gh command and return stdout.

        Raises:
            TrackerError: If gh is missing, times out, or exits non-zero
        """
        try:
            result = subprocess.run(
                ["gh", *args],
                cwd=self.repo_path,
                capture_output=True,
                text=True,
                timeout=self.timeout,
            )
        except subprocess.TimeoutExpired as e:
            raise TrackerError(f"gh {args[0]} timed out after {self.timeout}s") from e
        except FileNotFoundError as e:
            raise TrackerError("gh CLI not available") from e

        if result.returncode != 0:
            raise TrackerError(
                f"gh {' '.join(args[:2])} failed: {result.stderr.strip()}"
            )
        return result.stdout

    def _gh_json(self, *args: str) -> Any:
        output = self._gh(*args)
        try:
            return json.loads(output or "null")
        except json.JSONDecodeError as e:
            raise TrackerError(f"gh returned invalid JSON: {e}") from e

    @staticmethod
    def _to_issue(data: Any) -> Issue:
        try:
            return Issue(
                id=data["number"],
                title=data.get("title") or "",
                labels=[label["name"] for label in data.get("labels") or []],
                state=str(data.get("state", "open")).lower(),
                body=data.get("body") or "",
            )
        except (KeyError, TypeError, AttributeError, ValidationError) as e:
            raise TrackerError(f"gh returned an unexpected issue shape: {e}") from e

    def discover_issues(
        self, label: str, state: str = "open", limit: int = 100
    ) -> list[Issue]:
        data = self._gh_json(
            "issue",
            "list",
            "--label",
            label,
            "--state",
            state,
            "--limit",
            str(limit),
            "--json",
            "number,title,labels,state",
        )
        return [self._to_issue(item) for item in data or []]

    def get_issue(self, issue_id: int) -> Issue:
        data = self._gh_json(
            "issue", "view", str(issue_id), "--json", "number,title,body,labels,state"
        )
        return self._to_issue(data)

    def comment(self, issue_id: int, text: str) -> None:
        self._gh("issue", "comment", str(issue_id), "--body", text)

    def close_issue(self, issue_id: int) -> None:
        self._gh("issue", "close", str(issue_id))

    def add_label(self, issue_id: int, label: str) -> None:
        self._gh("issue", "edit", str(issue_id), "--add-label", label)

    def remove_label(self, issue_id: int, label: str) -> None:
        self._gh("issue", "edit", str(issue_id), "--remove-label", label)

    def create_issue(self, title: str, body: str, labels: list[str]) -> int:
        args = ["issue", "create", "--title", title, "--body", body]
        if labels:
            args += ["--label", ",".join(labels)]
        url = self._gh(*args).strip()
        # gh prints the new issue URL, ending in the issue number
        try:
            return int(url.rstrip("/").rsplit("/", 1)[-1])
        except ValueError as e:
            raise TrackerError(f"Unexpected gh issue create output: {url!r}") from e

    def close_draft_prs(self, branch: str) -> int:
        """Close draft pull requests opened from branch, deleting the branch.

        Returns:
            Number of pull requests closed
        """
        prs = self._gh_json(
            "pr", "list", "--head", branch, "--state", "open", "--json", "number,isDraft"
        )
        closed = 0
        for pr in prs or []:
            if not pr.get("isDraft"):
                continue
            self._gh("pr", "close", str(pr["number"]), "--delete-branch")
            logger.info(f"Closed draft PR #{pr['number']} on {branch}")
            closed += 1
        return closed
