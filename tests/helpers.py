"""
Git helpers and test doubles shared by the test modules.
"""

import subprocess
from pathlib import Path
from typing import Any, Optional

from ticketflow.core.workflow import PullRequestResult


def git(cwd: Path, *args: str) -> str:
    """Run git synchronously for test setup and assertions."""
    result = subprocess.run(
        ["git", "-c", "user.name=Test", "-c", "user.email=test@example.com", "-c", "commit.gpgsign=false", *args],
        cwd=cwd,
        check=True,
        capture_output=True,
        text=True,
    )
    return result.stdout.strip()


def current_branch(repo: Path) -> str:
    return git(repo, "rev-parse", "--abbrev-ref", "HEAD")


def branches(repo: Path) -> list[str]:
    return git(repo, "for-each-ref", "--format=%(refname:short)", "refs/heads").splitlines()


def commit(repo: Path, filename: str, message: str) -> None:
    (repo / filename).write_text(message + "\n")
    git(repo, "add", filename)
    git(repo, "commit", "-m", message)


class FakeGitHubCli:
    """Stands in for `gh`; records calls and returns a canned result."""

    def __init__(self, result: Optional[PullRequestResult] = None):
        self.result = result or PullRequestResult(
            success=True,
            number=42,
            url="https://github.com/example/repo/pull/42",
        )
        self.calls: list[dict[str, Any]] = []

    async def create_draft_pr(self, title: str, body: str, branch: str, cwd: str) -> PullRequestResult:
        self.calls.append({"title": title, "body": body, "branch": branch, "cwd": cwd})
        return self.result
