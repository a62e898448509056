"""
Record Store
============

Row-level access to the workflow tables over an AsyncSession.

Methods stage changes on the session; callers decide where a step ends
by calling ``commit()``. ``rollback()`` discards whatever a failed step
staged.
"""

from datetime import datetime, timezone
from typing import Optional, Sequence
from uuid import UUID

from sqlalchemy import case, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from ticketflow.core.models import (
    ConversationSession,
    DemoScript,
    Epic,
    EpicWorkflowState,
    FindingSeverity,
    FindingStatus,
    PrStatus,
    ReviewFinding,
    Ticket,
    TicketStatus,
    TicketWorkflowState,
    WorkflowPhase,
)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class WorkflowStore:
    """Record store used by every workflow component."""

    def __init__(self, db: AsyncSession):
        self.db = db

    # ======================================================================
    # Transaction control
    # ======================================================================

    async def commit(self) -> None:
        await self.db.commit()

    async def rollback(self) -> None:
        await self.db.rollback()

    async def refresh(self, instance: object) -> None:
        await self.db.refresh(instance)

    # ======================================================================
    # Tickets
    # ======================================================================

    async def get_ticket(self, ticket_id: UUID, reload: bool = False) -> Optional[Ticket]:
        query = select(Ticket).where(Ticket.id == ticket_id)
        if reload:
            query = query.execution_options(populate_existing=True)
        result = await self.db.execute(query)
        return result.scalar_one_or_none()

    async def mark_ticket_in_progress(self, ticket: Ticket, branch_name: str) -> None:
        """Primary write of start_work. Also points the ticket's epic at it."""
        ticket.status = TicketStatus.IN_PROGRESS
        ticket.branch_name = branch_name
        ticket.updated_at = utcnow()
        if ticket.epic_id is not None:
            state = await self.get_epic_state(ticket.epic_id)
            if state is not None:
                await self.set_epic_current_ticket(state, ticket.id)
        await self.db.flush()

    async def set_ticket_status(self, ticket: Ticket, status: TicketStatus) -> None:
        # Human approval owns the final column; nothing here may close a ticket.
        if status == TicketStatus.DONE:
            raise ValueError("The workflow engine does not move tickets to done")
        ticket.status = status
        ticket.updated_at = utcnow()
        await self.db.flush()

    async def list_epic_tickets(self, epic_id: UUID) -> Sequence[Ticket]:
        result = await self.db.execute(
            select(Ticket).where(Ticket.epic_id == epic_id).order_by(Ticket.position)
        )
        return result.scalars().all()

    async def next_ticket_suggestion(self, project_id: UUID, exclude_id: UUID) -> Optional[Ticket]:
        """First ready ticket in the project, else first backlog ticket, by position."""
        ready_first = case((Ticket.status == TicketStatus.READY, 0), else_=1)
        result = await self.db.execute(
            select(Ticket)
            .where(
                Ticket.project_id == project_id,
                Ticket.id != exclude_id,
                Ticket.status.in_([TicketStatus.READY, TicketStatus.BACKLOG]),
            )
            .order_by(ready_first, Ticket.position)
            .limit(1)
        )
        return result.scalar_one_or_none()

    # ======================================================================
    # Epics
    # ======================================================================

    async def get_epic(self, epic_id: UUID, reload: bool = False) -> Optional[Epic]:
        query = select(Epic).where(Epic.id == epic_id)
        if reload:
            query = query.execution_options(populate_existing=True)
        result = await self.db.execute(query)
        return result.scalar_one_or_none()

    async def get_epic_state(self, epic_id: UUID) -> Optional[EpicWorkflowState]:
        result = await self.db.execute(
            select(EpicWorkflowState).where(EpicWorkflowState.epic_id == epic_id)
        )
        return result.scalar_one_or_none()

    async def get_or_create_epic_state(self, epic_id: UUID) -> EpicWorkflowState:
        state = await self.get_epic_state(epic_id)
        if state is None:
            state = EpicWorkflowState(epic_id=epic_id)
            self.db.add(state)
            await self.db.flush()
        return state

    async def record_epic_branch(
        self,
        epic_id: UUID,
        branch_name: str,
        worktree_path: Optional[str] = None,
        current_ticket_id: Optional[UUID] = None,
    ) -> EpicWorkflowState:
        state = await self.get_or_create_epic_state(epic_id)
        state.epic_branch_name = branch_name
        state.epic_branch_created_at = utcnow()
        state.worktree_path = worktree_path
        if current_ticket_id is not None:
            state.current_ticket_id = current_ticket_id
        state.updated_at = utcnow()
        await self.db.flush()
        return state

    async def clear_epic_branch(self, epic_id: UUID, branch_name: str) -> bool:
        """Forget a recorded epic branch, only if it is still ``branch_name``."""
        state = await self.get_epic_state(epic_id)
        if state is None or state.epic_branch_name != branch_name:
            return False
        state.epic_branch_name = None
        state.epic_branch_created_at = None
        state.worktree_path = None
        state.updated_at = utcnow()
        await self.db.flush()
        return True

    async def set_epic_current_ticket(self, state: EpicWorkflowState, ticket_id: UUID) -> None:
        state.current_ticket_id = ticket_id
        state.updated_at = utcnow()
        await self.db.flush()

    async def record_pull_request(self, epic_id: UUID, number: int, url: str, status: PrStatus) -> EpicWorkflowState:
        state = await self.get_or_create_epic_state(epic_id)
        state.pr_number = number
        state.pr_url = url
        state.pr_status = status
        state.updated_at = utcnow()
        await self.db.flush()
        return state

    async def refresh_epic_progress(self, state: EpicWorkflowState) -> tuple[int, int]:
        result = await self.db.execute(
            select(
                func.count(Ticket.id),
                func.count(case((Ticket.status == TicketStatus.DONE, 1))),
            ).where(Ticket.epic_id == state.epic_id)
        )
        total, done = result.one()
        state.tickets_total = total
        state.tickets_done = done
        state.updated_at = utcnow()
        await self.db.flush()
        return total, done

    # ======================================================================
    # Ticket workflow state
    # ======================================================================

    async def get_ticket_state(self, ticket_id: UUID) -> Optional[TicketWorkflowState]:
        result = await self.db.execute(
            select(TicketWorkflowState).where(TicketWorkflowState.ticket_id == ticket_id)
        )
        return result.scalar_one_or_none()

    async def reset_ticket_state(self, ticket_id: UUID) -> TicketWorkflowState:
        """Fresh implementation phase with all counters at zero."""
        state = await self.get_ticket_state(ticket_id)
        if state is None:
            state = TicketWorkflowState(ticket_id=ticket_id)
            self.db.add(state)
        state.current_phase = WorkflowPhase.IMPLEMENTATION
        state.review_iteration = 0
        state.findings_count = 0
        state.findings_fixed = 0
        state.demo_generated = False
        state.updated_at = utcnow()
        await self.db.flush()
        return state

    async def resume_implementation(self, ticket_id: UUID) -> TicketWorkflowState:
        """Back to implementation for a fix cycle; iteration and counters kept."""
        state = await self.get_ticket_state(ticket_id)
        if state is None:
            return await self.reset_ticket_state(ticket_id)
        state.current_phase = WorkflowPhase.IMPLEMENTATION
        state.demo_generated = False
        state.updated_at = utcnow()
        await self.db.flush()
        return state

    async def enter_ai_review(self, ticket_id: UUID) -> TicketWorkflowState:
        """Bump review_iteration (creating the row at 1) and set phase ai_review."""
        state = await self.get_ticket_state(ticket_id)
        if state is None:
            state = TicketWorkflowState(
                ticket_id=ticket_id,
                review_iteration=1,
                findings_count=0,
                findings_fixed=0,
                demo_generated=False,
            )
            self.db.add(state)
        else:
            state.review_iteration = (state.review_iteration or 0) + 1
        state.current_phase = WorkflowPhase.AI_REVIEW
        state.updated_at = utcnow()
        await self.db.flush()
        return state

    async def get_or_create_review_state(self, ticket_id: UUID) -> TicketWorkflowState:
        state = await self.get_ticket_state(ticket_id)
        if state is None:
            state = await self.enter_ai_review(ticket_id)
        return state

    # ======================================================================
    # Findings
    # ======================================================================

    async def add_finding(self, finding: ReviewFinding) -> ReviewFinding:
        self.db.add(finding)
        await self.db.flush()
        return finding

    async def get_finding(self, finding_id: UUID) -> Optional[ReviewFinding]:
        result = await self.db.execute(select(ReviewFinding).where(ReviewFinding.id == finding_id))
        return result.scalar_one_or_none()

    async def list_findings(
        self,
        ticket_id: UUID,
        status: Optional[FindingStatus] = None,
        severity: Optional[FindingSeverity] = None,
    ) -> Sequence[ReviewFinding]:
        query = select(ReviewFinding).where(ReviewFinding.ticket_id == ticket_id)
        if status is not None:
            query = query.where(ReviewFinding.status == status)
        if severity is not None:
            query = query.where(ReviewFinding.severity == severity)
        result = await self.db.execute(query.order_by(ReviewFinding.created_at))
        return result.scalars().all()

    # ======================================================================
    # Demo scripts
    # ======================================================================

    async def get_demo_script(self, ticket_id: UUID) -> Optional[DemoScript]:
        result = await self.db.execute(select(DemoScript).where(DemoScript.ticket_id == ticket_id))
        return result.scalar_one_or_none()

    async def save_demo_script(self, ticket_id: UUID, steps: list[dict]) -> DemoScript:
        """Store steps, replacing a previously generated script for the ticket."""
        script = await self.get_demo_script(ticket_id)
        if script is None:
            script = DemoScript(ticket_id=ticket_id, steps=steps, generated_at=utcnow())
            self.db.add(script)
        else:
            script.steps = steps
            script.generated_at = utcnow()
        await self.db.flush()
        return script

    async def update_demo_steps(self, script: DemoScript, steps: list[dict]) -> DemoScript:
        script.steps = steps
        script.completed_at = utcnow()
        await self.db.flush()
        return script

    # ======================================================================
    # Conversation sessions
    # ======================================================================

    async def get_session(self, session_id: UUID) -> Optional[ConversationSession]:
        result = await self.db.execute(
            select(ConversationSession).where(ConversationSession.id == session_id)
        )
        return result.scalar_one_or_none()

    async def list_sessions(self, ticket_id: UUID, active_only: bool = False) -> Sequence[ConversationSession]:
        query = select(ConversationSession).where(ConversationSession.ticket_id == ticket_id)
        if active_only:
            query = query.where(ConversationSession.ended_at.is_(None))
        result = await self.db.execute(query.order_by(ConversationSession.started_at))
        return result.scalars().all()

    async def add_session(self, session: ConversationSession) -> ConversationSession:
        self.db.add(session)
        await self.db.flush()
        return session
