"""
Version-Control Adapter
=======================

Runs a fixed vocabulary of git operations against an explicit working
directory and reports every outcome as a GitResult.

Commands are always executed as argument arrays through
``asyncio.create_subprocess_exec``; no shell ever sees ticket or epic
titles that flow into branch names.
"""

import asyncio
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Sequence

import structlog

from ticketflow.core.config import settings

logger = structlog.get_logger()

TRUNK_CANDIDATES = ("main", "master")
SLUG_MAX_LENGTH = 50
SHORT_ID_LENGTH = 8


# ==========================================================================
# Branch naming
# ==========================================================================

def slugify(text: str) -> str:
    """Lowercase, collapse non-alphanumerics to '-', trim, cap at 50 chars."""
    slug = re.sub(r"[^a-z0-9]+", "-", text.lower()).strip("-")
    return slug[:SLUG_MAX_LENGTH]


def short_id(identifier: object) -> str:
    return str(identifier)[:SHORT_ID_LENGTH]


def ticket_branch_name(ticket_id: object, title: str) -> str:
    return f"feature/{short_id(ticket_id)}-{slugify(title)}"


def epic_branch_name(epic_id: object, title: str) -> str:
    return f"feature/epic-{short_id(epic_id)}-{slugify(title)}"


def worktree_path_for_epic(project_path: str, epic_id: object, title: str, location: Optional[str] = None) -> str:
    """
    Checkout location for a worktree-isolated epic.

    sibling:   <parent>/<project>-epic-<id>-<slug>
    subfolder: <project>/.worktrees/<project>-epic-<id>-<slug>
    """
    location = location or settings.WORKTREE_LOCATION
    root = Path(project_path)
    slug = slugify(title)
    name = f"{root.name}-epic-{short_id(epic_id)}"
    if slug:
        name = f"{name}-{slug}"
    if location == "subfolder":
        return str(root / ".worktrees" / name)
    return str(root.parent / name)


# ==========================================================================
# Command results
# ==========================================================================

@dataclass
class GitResult:
    """Outcome of a single command."""
    args: tuple[str, ...]
    success: bool
    output: str
    error: str = ""
    returncode: Optional[int] = None


async def run_command(
    executable: str,
    args: Sequence[str],
    cwd: str,
    timeout: float,
) -> GitResult:
    """Run ``executable args...`` in ``cwd`` with a bounded timeout."""
    cmd = (executable, *args)
    try:
        process = await asyncio.create_subprocess_exec(
            *cmd,
            cwd=cwd,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except (FileNotFoundError, NotADirectoryError, PermissionError) as e:
        return GitResult(args=cmd, success=False, output="", error=str(e))

    try:
        stdout_bytes, stderr_bytes = await asyncio.wait_for(process.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        process.kill()
        await process.wait()
        logger.warning("Command timed out", command=" ".join(cmd), cwd=cwd, timeout=timeout)
        return GitResult(
            args=cmd,
            success=False,
            output="",
            error=f"{' '.join(cmd)} timed out after {timeout:g}s",
        )

    stdout = stdout_bytes.decode("utf-8", errors="replace").strip()
    stderr = stderr_bytes.decode("utf-8", errors="replace").strip()
    success = process.returncode == 0
    if not success and not stderr:
        stderr = f"exit status {process.returncode}"
    return GitResult(
        args=cmd,
        success=success,
        output=stdout,
        error="" if success else stderr,
        returncode=process.returncode,
    )


# ==========================================================================
# Git Adapter
# ==========================================================================

class GitAdapter:
    """
    Executes git commands for the workflow engine.

    Every method takes the working directory explicitly; the adapter has
    no notion of a current repository.
    """

    def __init__(self, executable: Optional[str] = None, timeout: Optional[float] = None):
        self.executable = executable or settings.GIT_BINARY
        self.timeout = timeout or settings.GIT_COMMAND_TIMEOUT_SECONDS

    async def run(self, args: Sequence[str], cwd: str, timeout: Optional[float] = None) -> GitResult:
        result = await run_command(self.executable, args, cwd, timeout or self.timeout)
        if not result.success:
            logger.debug("git command failed", args=list(args), cwd=cwd, error=result.error)
        return result

    # ----------------------------------------------------------------------
    # Queries
    # ----------------------------------------------------------------------

    async def is_repository(self, cwd: str) -> bool:
        """True when ``cwd`` is inside a git working tree (bare repositories are not)."""
        result = await self.run(["rev-parse", "--is-inside-work-tree"], cwd)
        return result.success and result.output.strip() == "true"

    async def branch_exists(self, branch: str, cwd: str) -> bool:
        result = await self.run(["show-ref", "--verify", "--quiet", f"refs/heads/{branch}"], cwd)
        return result.success

    async def current_branch(self, cwd: str) -> Optional[str]:
        """Name of the checked-out branch, None when HEAD is detached or unborn."""
        result = await self.run(["symbolic-ref", "--quiet", "--short", "HEAD"], cwd)
        if not result.success or not result.output:
            return None
        return result.output

    async def current_ref(self, cwd: str) -> Optional[str]:
        """Branch name, or the commit sha when HEAD is detached."""
        branch = await self.current_branch(cwd)
        if branch:
            return branch
        result = await self.run(["rev-parse", "HEAD"], cwd)
        return result.output if result.success and result.output else None

    async def find_trunk_branch(self, cwd: str) -> Optional[str]:
        """`main` if it exists, else `master`, else None."""
        for candidate in TRUNK_CANDIDATES:
            if await self.branch_exists(candidate, cwd):
                return candidate
        return None

    async def commits_since(self, base: Optional[str], cwd: str) -> GitResult:
        if base:
            result = await self.run(["log", f"{base}..HEAD", "--oneline", "--no-decorate"], cwd)
            if result.success:
                return result
        return await self.run(["log", "-10", "--oneline", "--no-decorate"], cwd)

    async def changed_files_since(self, base: Optional[str], cwd: str) -> GitResult:
        if base:
            result = await self.run(["diff", "--name-only", f"{base}..HEAD"], cwd)
            if result.success:
                return result
        return await self.run(["diff", "--name-only", "HEAD~5..HEAD"], cwd)

    # ----------------------------------------------------------------------
    # Mutations
    # ----------------------------------------------------------------------

    async def checkout(self, branch: str, cwd: str) -> GitResult:
        return await self.run(["checkout", branch], cwd)

    async def create_branch(self, branch: str, cwd: str, start_point: Optional[str] = None) -> GitResult:
        """Create ``branch`` and check it out (from HEAD unless start_point)."""
        args = ["checkout", "-b", branch]
        if start_point:
            args.append(start_point)
        return await self.run(args, cwd)

    async def delete_branch(self, branch: str, cwd: str) -> GitResult:
        return await self.run(["branch", "-D", branch], cwd)

    async def push(self, branch: str, cwd: str, remote: Optional[str] = None, timeout: Optional[float] = None) -> GitResult:
        remote = remote or settings.GIT_REMOTE
        return await self.run(
            ["push", "-u", remote, branch],
            cwd,
            timeout=timeout or settings.PR_COMMAND_TIMEOUT_SECONDS,
        )

    async def add_worktree(self, path: str, branch: str, base: str, cwd: str) -> GitResult:
        """Create ``branch`` from ``base`` checked out in a new worktree at ``path``."""
        return await self.run(["worktree", "add", "-b", branch, path, base], cwd)

    async def attach_worktree(self, path: str, branch: str, cwd: str) -> GitResult:
        """Check out an existing ``branch`` in a new worktree at ``path``."""
        return await self.run(["worktree", "add", path, branch], cwd)

    async def remove_worktree(self, path: str, cwd: str) -> GitResult:
        return await self.run(["worktree", "remove", "--force", path], cwd)

    async def prune_worktrees(self, cwd: str) -> GitResult:
        return await self.run(["worktree", "prune"], cwd)


# ==========================================================================
# Pull requests (GitHub CLI)
# ==========================================================================

_PR_URL = re.compile(r"https?://\S+/pull/(\d+)")


@dataclass
class PullRequestResult:
    success: bool
    number: Optional[int] = None
    url: Optional[str] = None
    error: str = ""


class GitHubCli:
    """Opens pull requests through ``gh``; the only network-bound step."""

    def __init__(self, executable: Optional[str] = None, timeout: Optional[float] = None):
        self.executable = executable or settings.GH_BINARY
        self.timeout = timeout or settings.PR_COMMAND_TIMEOUT_SECONDS

    async def create_draft_pr(self, title: str, body: str, branch: str, cwd: str) -> PullRequestResult:
        result = await run_command(
            self.executable,
            ["pr", "create", "--draft", "--title", title, "--body", body, "--head", branch],
            cwd,
            self.timeout,
        )
        if not result.success:
            return PullRequestResult(success=False, error=result.error)

        match = _PR_URL.search(result.output)
        if not match:
            return PullRequestResult(
                success=False,
                error=f"Could not find a pull request URL in gh output: {result.output!r}",
            )
        return PullRequestResult(success=True, number=int(match.group(1)), url=match.group(0))
