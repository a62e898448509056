"""
Branch Coordinator
==================

Decides which branch (and which working directory) a ticket or epic is
worked on, performs the git side of that decision, and knows how to undo
it when the record write that follows fails.

An epic's recorded branch is authoritative: tickets of the epic always
join it, and a recorded branch that vanished from the repository is
reported rather than recreated.
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional
from uuid import UUID

import structlog
from sqlalchemy.exc import SQLAlchemyError

from ticketflow.core.errors import EpicBranchMissingError, GitError, PersistenceError
from ticketflow.core.models import Epic, EpicWorkflowState, IsolationMode, Ticket
from ticketflow.core.workflow.git import (
    GitAdapter,
    GitResult,
    epic_branch_name,
    ticket_branch_name,
    worktree_path_for_epic,
)
from ticketflow.core.workflow.store import WorkflowStore

logger = structlog.get_logger()


@dataclass
class BranchResolution:
    """
    Result of resolving a branch, with enough bookkeeping to undo it.

    ``previous_branch`` is only set when the resolution moved HEAD of the
    project checkout; worktree resolutions never do.
    """
    branch_name: str
    created: bool
    using_epic_branch: bool
    working_directory: str
    previous_branch: Optional[str] = None
    worktree_created: bool = False
    epic_state_recorded: bool = False
    epic_id: Optional[UUID] = None
    warnings: list[str] = field(default_factory=list)


def _check(result: GitResult, message: str) -> GitResult:
    if not result.success:
        raise GitError(message, command=list(result.args), stderr=result.error)
    return result


class BranchCoordinator:
    """Resolves working branches for tickets and epics."""

    def __init__(self, store: WorkflowStore, git: GitAdapter):
        self.store = store
        self.git = git

    # ======================================================================
    # Tickets
    # ======================================================================

    async def resolve_branch(self, ticket: Ticket) -> BranchResolution:
        project_path = ticket.project.path
        if ticket.epic_id is None or ticket.epic is None:
            return await self._resolve_ticket_branch(ticket, project_path)

        epic = ticket.epic
        state = await self.store.get_epic_state(epic.id)
        if state is not None and state.epic_branch_name:
            if not await self.git.branch_exists(state.epic_branch_name, project_path):
                logger.warning(
                    "Recorded epic branch missing",
                    epic_id=str(epic.id),
                    branch=state.epic_branch_name,
                )
                raise EpicBranchMissingError(epic.id, state.epic_branch_name)
            return await self._join_epic_branch(epic, state, project_path)

        return await self._initialize_epic_branch(epic, project_path, current_ticket_id=ticket.id)

    async def _resolve_ticket_branch(self, ticket: Ticket, cwd: str) -> BranchResolution:
        branch = ticket_branch_name(ticket.id, ticket.title)
        previous = await self.git.current_ref(cwd)

        if await self.git.branch_exists(branch, cwd):
            if previous == branch:
                return BranchResolution(branch, False, False, cwd)
            _check(await self.git.checkout(branch, cwd), f"checkout {branch}")
            logger.info("Checked out ticket branch", ticket_id=str(ticket.id), branch=branch)
            return BranchResolution(branch, False, False, cwd, previous_branch=previous)

        _check(await self.git.create_branch(branch, cwd), f"create branch {branch}")
        logger.info("Created ticket branch", ticket_id=str(ticket.id), branch=branch)
        return BranchResolution(branch, True, False, cwd, previous_branch=previous)

    # ======================================================================
    # Epics
    # ======================================================================

    async def resolve_epic_branch(self, epic: Epic, reinitialize: bool = False) -> BranchResolution:
        """
        Resolve the shared branch of an epic.

        A recorded branch that no longer exists raises EpicBranchMissingError
        unless ``reinitialize`` is set, in which case it is created again
        from trunk under the recorded name.
        """
        project_path = epic.project.path
        state = await self.store.get_epic_state(epic.id)
        if state is None or not state.epic_branch_name:
            return await self._initialize_epic_branch(epic, project_path)

        if await self.git.branch_exists(state.epic_branch_name, project_path):
            return await self._join_epic_branch(epic, state, project_path)

        if not reinitialize:
            raise EpicBranchMissingError(epic.id, state.epic_branch_name)

        warnings = [f"Epic branch '{state.epic_branch_name}' was missing and has been recreated from trunk."]
        if state.pr_number:
            warnings.append(
                f"Pull request #{state.pr_number} was linked to the deleted branch; "
                f"verify it still points at the intended commits."
            )
        logger.warning(
            "Reinitializing missing epic branch",
            epic_id=str(epic.id),
            branch=state.epic_branch_name,
            pr_number=state.pr_number,
        )
        if epic.isolation_mode == IsolationMode.WORKTREE:
            prune = await self.git.prune_worktrees(project_path)
            if not prune.success:
                warnings.append(f"git worktree prune failed: {prune.error}")

        resolution = await self._initialize_epic_branch(epic, project_path, branch=state.epic_branch_name)
        resolution.warnings = warnings + resolution.warnings
        return resolution

    async def _join_epic_branch(self, epic: Epic, state: EpicWorkflowState, project_path: str) -> BranchResolution:
        branch = state.epic_branch_name

        if epic.isolation_mode == IsolationMode.WORKTREE:
            worktree = state.worktree_path or worktree_path_for_epic(project_path, epic.id, epic.title)
            if Path(worktree).is_dir():
                return BranchResolution(branch, False, True, worktree, epic_id=epic.id)
            _check(
                await self.git.attach_worktree(worktree, branch, project_path),
                f"add worktree {worktree} for {branch}",
            )
            logger.info("Re-attached epic worktree", epic_id=str(epic.id), path=worktree)
            return BranchResolution(branch, False, True, worktree, worktree_created=True, epic_id=epic.id)

        previous = await self.git.current_ref(project_path)
        if previous == branch:
            return BranchResolution(branch, False, True, project_path, epic_id=epic.id)
        _check(await self.git.checkout(branch, project_path), f"checkout {branch}")
        return BranchResolution(branch, False, True, project_path, previous_branch=previous, epic_id=epic.id)

    async def _initialize_epic_branch(
        self,
        epic: Epic,
        project_path: str,
        current_ticket_id: Optional[UUID] = None,
        branch: Optional[str] = None,
    ) -> BranchResolution:
        branch = branch or epic_branch_name(epic.id, epic.title)
        trunk = await self.git.find_trunk_branch(project_path)
        if trunk is None:
            raise GitError(f"no trunk branch (main or master) found in {project_path}")
        exists = await self.git.branch_exists(branch, project_path)

        if epic.isolation_mode == IsolationMode.WORKTREE:
            worktree = worktree_path_for_epic(project_path, epic.id, epic.title)
            if exists:
                result = await self.git.attach_worktree(worktree, branch, project_path)
            else:
                result = await self.git.add_worktree(worktree, branch, trunk, project_path)
            _check(result, f"add worktree {worktree} for {branch}")
            resolution = BranchResolution(
                branch,
                created=not exists,
                using_epic_branch=True,
                working_directory=worktree,
                worktree_created=True,
                epic_id=epic.id,
            )
        else:
            previous = await self.git.current_ref(project_path)
            if exists:
                _check(await self.git.checkout(branch, project_path), f"checkout {branch}")
            else:
                _check(await self.git.checkout(trunk, project_path), f"checkout {trunk}")
                _check(await self.git.create_branch(branch, project_path), f"create branch {branch}")
            resolution = BranchResolution(
                branch,
                created=not exists,
                using_epic_branch=True,
                working_directory=project_path,
                previous_branch=previous if previous != branch else None,
                epic_id=epic.id,
            )

        logger.info(
            "Epic branch ready",
            epic_id=str(epic.id),
            branch=branch,
            created=resolution.created,
            working_directory=resolution.working_directory,
        )

        epic_id = epic.id
        try:
            await self.store.record_epic_branch(
                epic_id,
                branch,
                worktree_path=resolution.working_directory if resolution.worktree_created else None,
                current_ticket_id=current_ticket_id,
            )
            await self.store.commit()
        except SQLAlchemyError as e:
            await self.store.rollback()
            problems = await self.rollback(resolution, project_path)
            logger.error("Failed to record epic branch", epic_id=str(epic_id), error=str(e), rollback_problems=problems)
            raise PersistenceError("Failed to record epic branch", e, problems) from e

        resolution.epic_state_recorded = True
        return resolution

    # ======================================================================
    # Compensation
    # ======================================================================

    async def rollback(self, resolution: BranchResolution, project_path: str) -> list[str]:
        """
        Undo the git side of ``resolution`` and any epic record it wrote.

        Each step runs and is checked on its own; the returned list names
        every step that failed.
        """
        problems: list[str] = []

        if resolution.worktree_created:
            result = await self.git.remove_worktree(resolution.working_directory, project_path)
            if not result.success:
                problems.append(f"Could not remove worktree {resolution.working_directory}: {result.error}")
        elif resolution.previous_branch:
            result = await self.git.checkout(resolution.previous_branch, project_path)
            if not result.success:
                problems.append(f"Could not check out {resolution.previous_branch}: {result.error}")

        if resolution.created:
            result = await self.git.delete_branch(resolution.branch_name, project_path)
            if not result.success:
                problems.append(f"Could not delete branch {resolution.branch_name}: {result.error}")

        if resolution.epic_state_recorded and resolution.epic_id is not None:
            try:
                await self.store.clear_epic_branch(resolution.epic_id, resolution.branch_name)
                await self.store.commit()
            except SQLAlchemyError as e:
                await self.store.rollback()
                problems.append(f"Could not clear recorded epic branch {resolution.branch_name}: {e}")

        if problems:
            logger.error("Branch rollback incomplete", branch=resolution.branch_name, problems=problems)
        else:
            logger.info("Branch rollback complete", branch=resolution.branch_name)
        return problems
