"""
Review Gate
===========

Findings raised by AI review agents, and the check that decides whether a
ticket may leave AI review. Generating the demo script is the only way a
ticket reaches human_review.
"""

from datetime import datetime, timezone
from typing import Any, Optional, Sequence
from uuid import UUID

import structlog
from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from ticketflow.core.errors import (
    DemoScriptNotFoundError,
    DemoScriptValidationError,
    FindingNotFoundError,
    InvalidStateError,
    PersistenceError,
    ReviewGateBlockedError,
    TicketNotFoundError,
)
from ticketflow.core.models import (
    DemoScript,
    FindingSeverity,
    FindingStatus,
    ReviewFinding,
    Ticket,
    TicketStatus,
    WorkflowPhase,
)
from ticketflow.core.schemas import DemoStep, DemoStepUpdate, FindingResponse, ReviewCompletionStatus
from ticketflow.core.workflow.store import WorkflowStore

logger = structlog.get_logger()

MIN_DEMO_STEPS = 3


class ReviewGate:
    """Review findings and the AI review exit gate for one database session."""

    def __init__(self, db: AsyncSession):
        self.store = WorkflowStore(db)

    async def _load_ticket(self, ticket_id: UUID) -> Ticket:
        ticket = await self.store.get_ticket(ticket_id)
        if ticket is None:
            raise TicketNotFoundError(ticket_id)
        return ticket

    @staticmethod
    def _require_ai_review(ticket: Ticket, action: str) -> None:
        if ticket.status != TicketStatus.AI_REVIEW:
            raise InvalidStateError("ticket", ticket.status.value, TicketStatus.AI_REVIEW.value, action)

    # ======================================================================
    # Findings
    # ======================================================================

    async def submit_finding(
        self,
        ticket_id: UUID,
        agent: str,
        severity: FindingSeverity,
        category: str,
        description: str,
        file_path: Optional[str] = None,
        line_number: Optional[int] = None,
        suggested_fix: Optional[str] = None,
    ) -> tuple[ReviewFinding, list[str]]:
        """
        Record a finding against the ticket's current review iteration.

        Returns the finding and any warnings from the counter update.
        """
        ticket = await self._load_ticket(ticket_id)
        self._require_ai_review(ticket, "submit finding")
        log = logger.bind(ticket_id=str(ticket_id))

        state = await self.store.get_ticket_state(ticket_id)
        iteration = state.review_iteration if state and state.review_iteration else 1

        finding = ReviewFinding(
            ticket_id=ticket_id,
            iteration=iteration,
            agent=agent,
            severity=FindingSeverity(severity),
            category=category,
            description=description,
            file_path=file_path,
            line_number=line_number,
            suggested_fix=suggested_fix,
            status=FindingStatus.OPEN,
        )
        try:
            await self.store.add_finding(finding)
            await self.store.commit()
        except SQLAlchemyError as e:
            await self.store.rollback()
            log.error("Failed to store finding", error=str(e))
            raise PersistenceError("Failed to store review finding", e) from e

        warnings: list[str] = []
        try:
            state = await self.store.get_or_create_review_state(ticket_id)
            state.findings_count = (state.findings_count or 0) + 1
            await self.store.commit()
        except SQLAlchemyError as e:
            await self.store.rollback()
            log.warning("Findings counter not updated", error=str(e))
            warnings.append(f"Finding stored but the findings counter was not updated: {e}")

        await self.store.refresh(finding)
        log.info(
            "Finding submitted",
            finding_id=str(finding.id),
            severity=finding.severity.value,
            iteration=iteration,
            agent=agent,
        )
        return finding, warnings

    async def mark_fixed(
        self,
        finding_id: UUID,
        fix_description: Optional[str] = None,
    ) -> tuple[ReviewFinding, list[str]]:
        """Flip a finding to fixed. Marking a fixed finding again changes nothing."""
        finding = await self.store.get_finding(finding_id)
        if finding is None:
            raise FindingNotFoundError(finding_id)
        if finding.status == FindingStatus.FIXED:
            return finding, []

        ticket_id = finding.ticket_id
        log = logger.bind(ticket_id=str(ticket_id), finding_id=str(finding_id))
        finding.status = FindingStatus.FIXED
        finding.fix_description = fix_description
        finding.fixed_at = datetime.now(timezone.utc)
        try:
            await self.store.commit()
        except SQLAlchemyError as e:
            await self.store.rollback()
            log.error("Failed to mark finding fixed", error=str(e))
            raise PersistenceError("Failed to mark finding fixed", e) from e

        warnings: list[str] = []
        try:
            state = await self.store.get_or_create_review_state(ticket_id)
            state.findings_fixed = (state.findings_fixed or 0) + 1
            await self.store.commit()
        except SQLAlchemyError as e:
            await self.store.rollback()
            log.warning("Fixed counter not updated", error=str(e))
            warnings.append(f"Finding fixed but the fixed counter was not updated: {e}")
            finding = await self.store.get_finding(finding_id)

        log.info("Finding marked fixed")
        return finding, warnings

    async def get_findings(
        self,
        ticket_id: UUID,
        status: Optional[FindingStatus] = None,
        severity: Optional[FindingSeverity] = None,
    ) -> Sequence[ReviewFinding]:
        await self._load_ticket(ticket_id)
        return await self.store.list_findings(ticket_id, status=status, severity=severity)

    # ======================================================================
    # Gate
    # ======================================================================

    async def check_complete(self, ticket_id: UUID) -> ReviewCompletionStatus:
        """Ticket may proceed to human review iff no critical/major finding is open."""
        await self._load_ticket(ticket_id)
        findings = await self.store.list_findings(ticket_id)

        open_counts = {severity: 0 for severity in FindingSeverity}
        fixed = 0
        blocking = []
        for finding in findings:
            if finding.status == FindingStatus.FIXED:
                fixed += 1
                continue
            open_counts[finding.severity] += 1
            if finding.is_blocking:
                blocking.append(FindingResponse.model_validate(finding))

        return ReviewCompletionStatus(
            ticket_id=ticket_id,
            can_proceed_to_human_review=not blocking,
            open_critical=open_counts[FindingSeverity.CRITICAL],
            open_major=open_counts[FindingSeverity.MAJOR],
            open_minor=open_counts[FindingSeverity.MINOR],
            open_suggestion=open_counts[FindingSeverity.SUGGESTION],
            total_findings=len(findings),
            fixed_findings=fixed,
            blocking_findings=blocking,
        )

    # ======================================================================
    # Demo script
    # ======================================================================

    async def generate_demo_script(
        self,
        ticket_id: UUID,
        steps: Sequence[Any],
    ) -> tuple[DemoScript, list[str]]:
        """
        Store the manual verification steps and move the ticket to human_review.

        Raises:
            TicketNotFoundError, InvalidStateError, DemoScriptValidationError,
            ReviewGateBlockedError, PersistenceError
        """
        ticket = await self._load_ticket(ticket_id)
        self._require_ai_review(ticket, "generate demo script")
        log = logger.bind(ticket_id=str(ticket_id))

        try:
            validated = [DemoStep.model_validate(step) for step in steps]
        except ValidationError as e:
            raise DemoScriptValidationError(f"Invalid demo step: {e}", {"errors": e.errors()}) from e
        if len(validated) < MIN_DEMO_STEPS:
            raise DemoScriptValidationError(
                f"Demo script needs at least {MIN_DEMO_STEPS} steps, got {len(validated)}.",
                {"min_steps": MIN_DEMO_STEPS, "steps": len(validated)},
            )

        status = await self.check_complete(ticket_id)
        if not status.can_proceed_to_human_review:
            log.info(
                "Review gate blocked",
                open_critical=status.open_critical,
                open_major=status.open_major,
            )
            raise ReviewGateBlockedError(
                ticket_id,
                status.open_critical,
                status.open_major,
                [f.model_dump(mode="json") for f in status.blocking_findings],
            )

        ordered = sorted(validated, key=lambda step: step.order)
        try:
            script = await self.store.save_demo_script(ticket_id, [s.model_dump(mode="json") for s in ordered])
            await self.store.set_ticket_status(ticket, TicketStatus.HUMAN_REVIEW)
            await self.store.commit()
        except SQLAlchemyError as e:
            await self.store.rollback()
            log.error("Failed to store demo script", error=str(e))
            raise PersistenceError("Failed to store demo script", e) from e
        script_id = script.id

        warnings: list[str] = []
        try:
            state = await self.store.get_or_create_review_state(ticket_id)
            state.current_phase = WorkflowPhase.HUMAN_REVIEW
            state.demo_generated = True
            await self.store.commit()
        except SQLAlchemyError as e:
            await self.store.rollback()
            log.warning("Workflow phase not updated", error=str(e))
            warnings.append(f"Ticket moved to human_review but workflow state was not updated: {e}")

        script = await self.store.get_demo_script(ticket_id)
        log.info("Demo script generated", demo_script_id=str(script_id), steps=len(ordered))
        return script, warnings

    async def get_demo_script(self, ticket_id: UUID) -> Optional[DemoScript]:
        await self._load_ticket(ticket_id)
        return await self.store.get_demo_script(ticket_id)

    async def update_demo_step(
        self,
        ticket_id: UUID,
        order: int,
        status: str,
        notes: Optional[str] = None,
    ) -> DemoScript:
        """
        Record the reviewer's outcome for one step of the demo script.

        Existing notes are kept when ``notes`` is empty.

        Raises:
            TicketNotFoundError, DemoScriptNotFoundError,
            DemoScriptValidationError, PersistenceError
        """
        await self._load_ticket(ticket_id)
        script = await self.store.get_demo_script(ticket_id)
        if script is None:
            raise DemoScriptNotFoundError(ticket_id)
        log = logger.bind(ticket_id=str(ticket_id), step=order)

        try:
            steps = [DemoStep.model_validate(step) for step in script.steps or []]
            update = DemoStepUpdate(status=status, notes=notes)
        except ValidationError as e:
            raise DemoScriptValidationError(f"Invalid demo step update: {e}", {"errors": e.errors()}) from e

        step = next((s for s in steps if s.order == order), None)
        if step is None:
            raise DemoScriptValidationError(
                f"Step {order} not found in the demo script.",
                {"order": order, "steps": [s.order for s in steps]},
            )
        step.status = update.status
        if update.notes:
            step.notes = update.notes

        try:
            await self.store.update_demo_steps(script, [s.model_dump(mode="json") for s in steps])
            await self.store.commit()
        except SQLAlchemyError as e:
            await self.store.rollback()
            log.error("Failed to record demo step outcome", error=str(e))
            raise PersistenceError("Failed to record demo step outcome", e) from e

        log.info("Demo step updated", status=update.status)
        return script
