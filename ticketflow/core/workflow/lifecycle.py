"""
Lifecycle State Machine
=======================

Moves tickets through backlog -> in_progress -> ai_review and prepares
epics for work.

Write order inside one step is fixed: git first, then the primary ticket
record (its own commit), then secondary workflow state (its own commit).
A failed primary write triggers a compensating git rollback; a failed
secondary write only adds a warning to the result.

Human review and done are owned elsewhere: the Review Gate is the only
path to human_review and nothing in the engine marks a ticket done.
"""

from pathlib import Path
from typing import Optional
from uuid import UUID

import structlog
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from ticketflow.core.errors import (
    EpicNotFoundError,
    GitError,
    InvalidStateError,
    PathNotFoundError,
    PersistenceError,
    TicketNotFoundError,
)
from ticketflow.core.models import (
    Epic,
    IsolationMode,
    PrStatus,
    Ticket,
    TicketStatus,
)
from ticketflow.core.schemas import (
    CommitInfo,
    CompleteWorkResult,
    EpicRef,
    EpicTicketSummary,
    PullRequestInfo,
    StartEpicWorkResult,
    StartWorkResult,
    SuggestedTicket,
    TicketSnapshot,
)
from ticketflow.core.workflow.branches import BranchCoordinator
from ticketflow.core.workflow.git import GitAdapter, GitHubCli
from ticketflow.core.workflow.store import WorkflowStore

logger = structlog.get_logger()


# Statuses a ticket may move to from each status through the engine.
ALLOWED_TRANSITIONS: dict[TicketStatus, frozenset[TicketStatus]] = {
    TicketStatus.BACKLOG: frozenset({TicketStatus.IN_PROGRESS}),
    TicketStatus.READY: frozenset({TicketStatus.IN_PROGRESS}),
    TicketStatus.IN_PROGRESS: frozenset({TicketStatus.AI_REVIEW}),
    TicketStatus.AI_REVIEW: frozenset({TicketStatus.HUMAN_REVIEW, TicketStatus.IN_PROGRESS}),
    TicketStatus.HUMAN_REVIEW: frozenset({TicketStatus.IN_PROGRESS}),
    TicketStatus.DONE: frozenset(),
}

AI_REVIEW_NEXT_STEPS = [
    "Run the review agents against the changes",
    "Submit each issue found as a review finding",
    "Fix critical and major findings and mark them fixed",
    "Verify the review gate with the review status check",
    "Generate the demo script to hand the ticket to human review",
]

HUMAN_REVIEW_NEXT_STEPS = [
    "Wait for the human reviewer to run the demo script",
    "Only a human approval moves the ticket to done",
]


def can_transition(current: TicketStatus, target: TicketStatus) -> bool:
    return target in ALLOWED_TRANSITIONS.get(current, frozenset())


def _parse_commits(output: str) -> list[CommitInfo]:
    commits = []
    for line in output.splitlines():
        line = line.strip()
        if not line:
            continue
        sha, _, message = line.partition(" ")
        commits.append(CommitInfo(sha=sha, message=message))
    return commits


class WorkflowEngine:
    """
    Ticket and epic lifecycle operations.

    One instance per database session. Git and PR collaborators can be
    injected; defaults are built from settings.
    """

    def __init__(
        self,
        db: AsyncSession,
        git: Optional[GitAdapter] = None,
        github: Optional[GitHubCli] = None,
    ):
        self.store = WorkflowStore(db)
        self.git = git or GitAdapter()
        self.github = github or GitHubCli()
        self.branches = BranchCoordinator(self.store, self.git)

    # ======================================================================
    # Helpers
    # ======================================================================

    async def _load_ticket(self, ticket_id: UUID) -> Ticket:
        ticket = await self.store.get_ticket(ticket_id)
        if ticket is None:
            raise TicketNotFoundError(ticket_id)
        return ticket

    async def _require_working_tree(self, path: str) -> None:
        if not Path(path).is_dir():
            raise PathNotFoundError(path)
        if not await self.git.is_repository(path):
            raise GitError(f"{path} is not a git working tree")

    async def _ticket_working_directory(self, ticket: Ticket) -> str:
        project_path = ticket.project.path
        if ticket.epic is None or ticket.epic.isolation_mode != IsolationMode.WORKTREE:
            return project_path
        state = await self.store.get_epic_state(ticket.epic.id)
        if state is not None and state.worktree_path and Path(state.worktree_path).is_dir():
            return state.worktree_path
        return project_path

    async def _snapshot(self, ticket_id: UUID) -> TicketSnapshot:
        ticket = await self.store.get_ticket(ticket_id, reload=True)
        return TicketSnapshot.from_ticket(ticket)

    # ======================================================================
    # Start Work
    # ======================================================================

    async def start_work(self, ticket_id: UUID) -> StartWorkResult:
        """
        Move a ticket to in_progress on its working branch.

        Raises:
            TicketNotFoundError, PathNotFoundError, InvalidStateError,
            EpicBranchMissingError, GitError, PersistenceError
        """
        ticket = await self._load_ticket(ticket_id)
        log = logger.bind(ticket_id=str(ticket_id))

        if ticket.status == TicketStatus.IN_PROGRESS and ticket.branch_name:
            log.info("Ticket already in progress", branch=ticket.branch_name)
            using_epic = ticket.epic is not None
            return StartWorkResult(
                ticket=await self._snapshot(ticket_id),
                branch=ticket.branch_name,
                branch_created=False,
                using_epic_branch=using_epic,
                epic_branch=ticket.branch_name if using_epic else None,
                working_directory=await self._ticket_working_directory(ticket),
                already_started=True,
                warnings=[f"Ticket is already in progress on branch {ticket.branch_name}; nothing changed."],
            )

        if ticket.status != TicketStatus.IN_PROGRESS and not can_transition(ticket.status, TicketStatus.IN_PROGRESS):
            raise InvalidStateError(
                "ticket",
                ticket.status.value,
                "backlog, ready, ai_review or human_review",
                "start work",
            )

        project_path = ticket.project.path
        await self._require_working_tree(project_path)

        previous_status = ticket.status
        resolution = await self.branches.resolve_branch(ticket)
        warnings = list(resolution.warnings)

        # Primary write
        try:
            await self.store.mark_ticket_in_progress(ticket, resolution.branch_name)
            await self.store.commit()
        except SQLAlchemyError as e:
            await self.store.rollback()
            problems = await self.branches.rollback(resolution, project_path)
            log.error(
                "Failed to persist ticket start",
                branch=resolution.branch_name,
                error=str(e),
                rollback_problems=problems,
            )
            raise PersistenceError("Failed to update ticket status", e, problems) from e

        # Secondary write
        try:
            if previous_status in (TicketStatus.AI_REVIEW, TicketStatus.HUMAN_REVIEW):
                await self.store.resume_implementation(ticket_id)
            else:
                await self.store.reset_ticket_state(ticket_id)
            await self.store.commit()
        except SQLAlchemyError as e:
            await self.store.rollback()
            log.warning("Workflow state not updated", error=str(e))
            warnings.append(f"Ticket started but workflow state was not updated: {e}")

        log.info(
            "Work started",
            branch=resolution.branch_name,
            branch_created=resolution.created,
            using_epic_branch=resolution.using_epic_branch,
            previous_status=previous_status.value,
        )
        return StartWorkResult(
            ticket=await self._snapshot(ticket_id),
            branch=resolution.branch_name,
            branch_created=resolution.created,
            using_epic_branch=resolution.using_epic_branch,
            epic_branch=resolution.branch_name if resolution.using_epic_branch else None,
            working_directory=resolution.working_directory,
            warnings=warnings,
        )

    # ======================================================================
    # Complete Work
    # ======================================================================

    async def complete_work(self, ticket_id: UUID, summary: Optional[str] = None) -> CompleteWorkResult:
        """
        Hand an in-progress ticket to AI review.

        Raises:
            TicketNotFoundError, InvalidStateError, PersistenceError
        """
        ticket = await self._load_ticket(ticket_id)
        project_id = ticket.project_id
        log = logger.bind(ticket_id=str(ticket_id))

        if ticket.status == TicketStatus.DONE:
            return CompleteWorkResult(ticket_id=ticket.id, status=ticket.status, already_complete=True)

        if ticket.status in (TicketStatus.AI_REVIEW, TicketStatus.HUMAN_REVIEW):
            state = await self.store.get_ticket_state(ticket_id)
            steps = AI_REVIEW_NEXT_STEPS if ticket.status == TicketStatus.AI_REVIEW else HUMAN_REVIEW_NEXT_STEPS
            return CompleteWorkResult(
                ticket_id=ticket.id,
                status=ticket.status,
                review_iteration=state.review_iteration if state else None,
                next_steps=list(steps),
                warnings=[f"Ticket is already in {ticket.status.value}; nothing changed."],
            )

        if not can_transition(ticket.status, TicketStatus.AI_REVIEW):
            raise InvalidStateError("ticket", ticket.status.value, TicketStatus.IN_PROGRESS.value, "complete work")

        warnings: list[str] = []
        commits: list[CommitInfo] = []
        changed_files: list[str] = []

        cwd = await self._ticket_working_directory(ticket)
        if Path(cwd).is_dir():
            trunk = await self.git.find_trunk_branch(cwd)
            log_result = await self.git.commits_since(trunk, cwd)
            if log_result.success:
                commits = _parse_commits(log_result.output)
            else:
                warnings.append(f"Could not list commits: {log_result.error}")
            diff_result = await self.git.changed_files_since(trunk, cwd)
            if diff_result.success:
                changed_files = [line for line in diff_result.output.splitlines() if line.strip()]
            else:
                warnings.append(f"Could not list changed files: {diff_result.error}")
        else:
            warnings.append(f"Working directory {cwd} not found; commit summary unavailable.")

        # Primary write
        try:
            await self.store.set_ticket_status(ticket, TicketStatus.AI_REVIEW)
            await self.store.commit()
        except SQLAlchemyError as e:
            await self.store.rollback()
            log.error("Failed to persist ticket completion", error=str(e))
            raise PersistenceError("Failed to update ticket status", e) from e

        # Secondary write
        review_iteration: Optional[int] = None
        try:
            state = await self.store.enter_ai_review(ticket_id)
            await self.store.commit()
            review_iteration = state.review_iteration
        except SQLAlchemyError as e:
            await self.store.rollback()
            log.warning("Review iteration not recorded", error=str(e))
            warnings.append(f"Ticket moved to ai_review but the review iteration was not recorded: {e}")

        suggestion: Optional[SuggestedTicket] = None
        try:
            next_ticket = await self.store.next_ticket_suggestion(project_id, ticket_id)
            if next_ticket is not None:
                suggestion = SuggestedTicket.model_validate(next_ticket)
        except SQLAlchemyError as e:
            await self.store.rollback()
            log.warning("Next ticket suggestion failed", error=str(e))
            warnings.append(f"Could not suggest a next ticket: {e}")

        log.info(
            "Work completed",
            review_iteration=review_iteration,
            commits=len(commits),
            changed_files=len(changed_files),
        )
        return CompleteWorkResult(
            ticket_id=ticket_id,
            status=TicketStatus.AI_REVIEW,
            transitioned=True,
            summary=summary,
            review_iteration=review_iteration,
            commits=commits,
            changed_files=changed_files,
            next_steps=list(AI_REVIEW_NEXT_STEPS),
            suggested_next_ticket=suggestion,
            warnings=warnings,
        )

    # ======================================================================
    # Start Epic Work
    # ======================================================================

    async def start_epic_work(
        self,
        epic_id: UUID,
        create_pr: bool = False,
        reinitialize: bool = False,
    ) -> StartEpicWorkResult:
        """
        Create or re-enter the shared branch of an epic.

        Push and pull request failures become warnings; the branch is kept.

        Raises:
            EpicNotFoundError, PathNotFoundError, EpicBranchMissingError,
            GitError, PersistenceError
        """
        epic = await self.store.get_epic(epic_id)
        if epic is None:
            raise EpicNotFoundError(epic_id)
        log = logger.bind(epic_id=str(epic_id))

        project_path = epic.project.path
        await self._require_working_tree(project_path)

        resolution = await self.branches.resolve_epic_branch(epic, reinitialize=reinitialize)
        warnings = list(resolution.warnings)

        state = await self.store.get_or_create_epic_state(epic_id)
        tickets_total, tickets_done = 0, 0
        try:
            tickets_total, tickets_done = await self.store.refresh_epic_progress(state)
            await self.store.commit()
        except SQLAlchemyError as e:
            await self.store.rollback()
            log.warning("Epic progress not updated", error=str(e))
            warnings.append(f"Epic progress counters were not updated: {e}")
            state = await self.store.get_epic_state(epic_id)
            epic = await self.store.get_epic(epic_id, reload=True)

        tickets = await self.store.list_epic_tickets(epic_id)
        epic_ref = EpicRef(id=epic.id, title=epic.title, project_name=epic.project.name)
        ticket_summaries = [EpicTicketSummary.model_validate(t) for t in tickets]

        pull_request: Optional[PullRequestInfo] = None
        if state is not None and state.pr_number and state.pr_url and state.pr_status:
            pull_request = PullRequestInfo(number=state.pr_number, url=state.pr_url, status=state.pr_status)

        if create_pr:
            if pull_request is not None and pull_request.status in (PrStatus.DRAFT, PrStatus.OPEN):
                warnings.append(f"Pull request #{pull_request.number} already exists; not creating another.")
            else:
                created, pr_warnings = await self._open_pull_request(epic, resolution.branch_name, resolution.working_directory)
                warnings.extend(pr_warnings)
                if created is not None:
                    pull_request = created

        log.info(
            "Epic work started",
            branch=resolution.branch_name,
            branch_created=resolution.created,
            tickets_total=tickets_total,
            tickets_done=tickets_done,
            pull_request=pull_request.number if pull_request else None,
        )
        return StartEpicWorkResult(
            epic=epic_ref,
            branch=resolution.branch_name,
            branch_created=resolution.created,
            working_directory=resolution.working_directory,
            tickets=ticket_summaries,
            tickets_total=tickets_total,
            tickets_done=tickets_done,
            pull_request=pull_request,
            warnings=warnings,
        )

    async def _open_pull_request(
        self,
        epic: Epic,
        branch: str,
        cwd: str,
    ) -> tuple[Optional[PullRequestInfo], list[str]]:
        """Push ``branch`` and open a draft PR. Never raises for tool failures."""
        log = logger.bind(epic_id=str(epic.id), branch=branch)

        push = await self.git.push(branch, cwd)
        if not push.success:
            log.warning("Push failed", error=push.error)
            return None, [f"Could not push {branch}: {push.error}. Create the pull request manually when ready."]

        body = f"Epic work for: {epic.title}\n\nThis PR contains all tickets from the epic."
        if epic.description:
            body = f"{body}\n\n{epic.description}"
        pr = await self.github.create_draft_pr(f"[Epic] {epic.title}", body, branch, cwd)
        if not pr.success:
            log.warning("Pull request creation failed", error=pr.error)
            return None, [f"Could not create pull request: {pr.error}. Create it manually when ready."]

        info = PullRequestInfo(number=pr.number, url=pr.url, status=PrStatus.DRAFT)
        try:
            await self.store.record_pull_request(epic.id, pr.number, pr.url, PrStatus.DRAFT)
            await self.store.commit()
        except SQLAlchemyError as e:
            await self.store.rollback()
            log.warning("Pull request not recorded", pr_url=pr.url, error=str(e))
            return info, [f"Pull request {pr.url} was created but not recorded: {e}"]

        log.info("Draft pull request created", pr_number=pr.number, pr_url=pr.url)
        return info, []
