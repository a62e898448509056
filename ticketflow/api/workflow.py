"""
Ticket Flow - Workflow API
==========================

HTTP surface over the workflow engine, the review gate and the session
auditor. Engine errors propagate to the WorkflowError handler in
ticketflow.api.main.

Endpoints:
- POST /api/v1/workflow/tickets/{id}/start        - Start work (opens audit session)
- POST /api/v1/workflow/tickets/{id}/complete     - Complete work (ends audit session)
- POST /api/v1/workflow/epics/{id}/start          - Start epic work
- POST /api/v1/workflow/tickets/{id}/findings     - Submit review finding
- GET  /api/v1/workflow/tickets/{id}/findings     - List review findings
- POST /api/v1/workflow/findings/{id}/fix         - Mark finding fixed
- GET  /api/v1/workflow/tickets/{id}/review-status - Review gate status
- POST /api/v1/workflow/tickets/{id}/demo         - Generate demo script
- GET  /api/v1/workflow/tickets/{id}/demo         - Get demo script
- PATCH /api/v1/workflow/tickets/{id}/demo/steps/{n} - Record demo step outcome
- POST /api/v1/workflow/sessions/{id}/end         - End audit session
"""

from typing import Optional
from uuid import UUID

import structlog
from fastapi import APIRouter, HTTPException, Query, status

from ticketflow.api.deps import Auditor, Engine, Gate
from ticketflow.core.errors import WorkflowError
from ticketflow.core.models import FindingSeverity, FindingStatus, TicketStatus
from ticketflow.core.schemas import (
    CompleteWorkResult,
    DemoScriptCreate,
    DemoScriptResponse,
    DemoScriptResult,
    DemoStepUpdate,
    EpicStartRequest,
    FindingCreate,
    FindingFix,
    FindingResponse,
    FindingResult,
    ReviewCompletionStatus,
    SessionResponse,
    SessionStart,
    StartEpicWorkResult,
    WorkflowCompleteRequest,
    WorkflowStartResponse,
)

logger = structlog.get_logger()

router = APIRouter(prefix="/workflow", tags=["Workflow"])


# ==========================================================================
# Ticket lifecycle
# ==========================================================================

@router.post(
    "/tickets/{ticket_id}/start",
    response_model=WorkflowStartResponse,
    summary="Start work on a ticket",
    responses={
        404: {"description": "Ticket or project path not found"},
        409: {"description": "Ticket cannot be started in its current state"},
        502: {"description": "Git operation failed"},
    },
)
async def start_ticket_work(
    ticket_id: UUID,
    engine: Engine,
    auditor: Auditor,
    body: Optional[SessionStart] = None,
) -> WorkflowStartResponse:
    """
    Move the ticket to in_progress on its branch and open an audit session.

    Failing to open the session does not undo the start; it is reported
    in the result warnings.
    """
    result = await engine.start_work(ticket_id)

    session = None
    try:
        session = await auditor.start_session(ticket_id, body.environment if body else None)
    except WorkflowError as e:
        logger.warning("Audit session not started", ticket_id=str(ticket_id), error=e.message)
        result.warnings.append(f"Audit session was not started: {e.message}")

    return WorkflowStartResponse(
        result=result,
        session=SessionResponse.model_validate(session) if session else None,
    )


@router.post(
    "/tickets/{ticket_id}/complete",
    response_model=CompleteWorkResult,
    summary="Complete work on a ticket",
    responses={
        404: {"description": "Ticket not found"},
        409: {"description": "Ticket was never started"},
    },
)
async def complete_ticket_work(
    ticket_id: UUID,
    engine: Engine,
    auditor: Auditor,
    body: Optional[WorkflowCompleteRequest] = None,
) -> CompleteWorkResult:
    """Hand the ticket to AI review and end its active audit session."""
    result = await engine.complete_work(ticket_id, body.summary if body else None)

    if result.transitioned:
        try:
            session = await auditor.get_active_session(ticket_id)
            if session is not None:
                await auditor.end_session(session.id)
        except WorkflowError as e:
            logger.warning("Audit session not ended", ticket_id=str(ticket_id), error=e.message)
            result.warnings.append(f"Audit session was not ended: {e.message}")

    return result


@router.post(
    "/epics/{epic_id}/start",
    response_model=StartEpicWorkResult,
    summary="Start work on an epic",
    responses={
        404: {"description": "Epic or project path not found"},
        409: {"description": "Recorded epic branch is missing"},
        502: {"description": "Git operation failed"},
    },
)
async def start_epic_work(
    epic_id: UUID,
    engine: Engine,
    body: Optional[EpicStartRequest] = None,
) -> StartEpicWorkResult:
    body = body or EpicStartRequest()
    return await engine.start_epic_work(
        epic_id,
        create_pr=body.create_pr,
        reinitialize=body.reinitialize,
    )


# ==========================================================================
# Review
# ==========================================================================

@router.post(
    "/tickets/{ticket_id}/findings",
    response_model=FindingResult,
    status_code=status.HTTP_201_CREATED,
    summary="Submit a review finding",
)
async def submit_finding(ticket_id: UUID, data: FindingCreate, gate: Gate) -> FindingResult:
    finding, warnings = await gate.submit_finding(ticket_id, **data.model_dump())
    return FindingResult(finding=FindingResponse.model_validate(finding), warnings=warnings)


@router.get(
    "/tickets/{ticket_id}/findings",
    response_model=list[FindingResponse],
    summary="List review findings",
)
async def list_findings(
    ticket_id: UUID,
    gate: Gate,
    status_filter: Optional[FindingStatus] = Query(None, alias="status", description="Filter by status"),
    severity: Optional[FindingSeverity] = Query(None, description="Filter by severity"),
) -> list[FindingResponse]:
    findings = await gate.get_findings(ticket_id, status=status_filter, severity=severity)
    return [FindingResponse.model_validate(f) for f in findings]


@router.post(
    "/findings/{finding_id}/fix",
    response_model=FindingResult,
    summary="Mark a finding fixed",
)
async def mark_finding_fixed(
    finding_id: UUID,
    gate: Gate,
    body: Optional[FindingFix] = None,
) -> FindingResult:
    finding, warnings = await gate.mark_fixed(finding_id, body.fix_description if body else None)
    return FindingResult(finding=FindingResponse.model_validate(finding), warnings=warnings)


@router.get(
    "/tickets/{ticket_id}/review-status",
    response_model=ReviewCompletionStatus,
    summary="Check whether AI review is complete",
)
async def review_status(ticket_id: UUID, gate: Gate) -> ReviewCompletionStatus:
    return await gate.check_complete(ticket_id)


@router.post(
    "/tickets/{ticket_id}/demo",
    response_model=DemoScriptResult,
    status_code=status.HTTP_201_CREATED,
    summary="Generate demo script and move to human review",
    responses={
        409: {"description": "Ticket not in ai_review or review gate blocked"},
        422: {"description": "Fewer than three demo steps"},
    },
)
async def generate_demo_script(ticket_id: UUID, data: DemoScriptCreate, gate: Gate) -> DemoScriptResult:
    script, warnings = await gate.generate_demo_script(ticket_id, data.steps)
    return DemoScriptResult(
        script=DemoScriptResponse.model_validate(script),
        status=TicketStatus.HUMAN_REVIEW,
        warnings=warnings,
    )


@router.get(
    "/tickets/{ticket_id}/demo",
    response_model=DemoScriptResponse,
    summary="Get the demo script",
)
async def get_demo_script(ticket_id: UUID, gate: Gate) -> DemoScriptResponse:
    script = await gate.get_demo_script(ticket_id)
    if script is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Demo script not found",
        )
    return DemoScriptResponse.model_validate(script)


@router.patch(
    "/tickets/{ticket_id}/demo/steps/{order}",
    response_model=DemoScriptResponse,
    summary="Record the outcome of a demo step",
    responses={
        404: {"description": "Ticket or demo script not found"},
        422: {"description": "Step not found in the demo script"},
    },
)
async def update_demo_step(ticket_id: UUID, order: int, data: DemoStepUpdate, gate: Gate) -> DemoScriptResponse:
    script = await gate.update_demo_step(ticket_id, order, data.status, data.notes)
    return DemoScriptResponse.model_validate(script)


# ==========================================================================
# Audit sessions
# ==========================================================================

@router.post(
    "/sessions/{session_id}/end",
    response_model=SessionResponse,
    summary="End an audit session",
)
async def end_session(session_id: UUID, auditor: Auditor) -> SessionResponse:
    session = await auditor.end_session(session_id)
    return SessionResponse.model_validate(session)
