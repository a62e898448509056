"""
Ticket Flow - Pydantic Schemas
==============================

Structured results returned by the workflow engine, request bodies for
the HTTP layer, and typed views over the JSON payload columns.
"""

import json
from datetime import datetime
from typing import Any, Literal, Optional
from uuid import UUID

import structlog
from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError, model_validator

from ticketflow.core.models import (
    FindingSeverity,
    FindingStatus,
    PrStatus,
    Ticket,
    TicketPriority,
    TicketStatus,
)

logger = structlog.get_logger()


# ==========================================================================
# Base Schemas
# ==========================================================================

class BaseSchema(BaseModel):
    """Base schema with common configuration."""

    model_config = ConfigDict(
        from_attributes=True,
        populate_by_name=True,
        str_strip_whitespace=True,
    )


# ==========================================================================
# Ticket Payloads
# ==========================================================================

class Subtask(BaseSchema):
    """Checklist item stored in Ticket.subtasks."""

    id: str
    text: str
    completed: bool = False


class Attachment(BaseSchema):
    """File reference stored in Ticket.attachments."""

    id: Optional[str] = None
    filename: str
    path: str
    type: Optional[str] = None
    description: Optional[str] = None
    priority: Optional[Literal["primary", "supplementary"]] = None

    @model_validator(mode="before")
    @classmethod
    def accept_bare_path(cls, value: Any) -> Any:
        # Early payloads stored plain path strings
        if isinstance(value, str):
            return {"filename": value.rsplit("/", 1)[-1], "path": value}
        return value


_TAGS = TypeAdapter(list[str])
_SUBTASKS = TypeAdapter(list[Subtask])
_ATTACHMENTS = TypeAdapter(list[Attachment])


def load_payload(raw: Any, adapter: TypeAdapter, field: str, ticket_id: Any = None) -> Optional[list]:
    """
    Validate a JSON payload column.

    Accepts decoded JSON or serialized text. Returns None when the payload
    cannot be parsed or validated, so the caller can mark the field
    unavailable instead of failing the whole read.
    """
    if raw is None or raw == "":
        return []
    try:
        if isinstance(raw, (str, bytes)):
            raw = json.loads(raw)
        return adapter.validate_python(raw)
    except (ValueError, ValidationError) as e:
        logger.warning(
            "Ticket payload unreadable",
            field=field,
            ticket_id=str(ticket_id) if ticket_id else None,
            error=str(e),
        )
        return None


# ==========================================================================
# Ticket Snapshot
# ==========================================================================

class ProjectRef(BaseSchema):
    id: UUID
    name: str
    path: str


class TicketSnapshot(BaseSchema):
    """Read model of a ticket as returned by workflow operations."""

    id: UUID
    title: str
    description: Optional[str] = None
    status: TicketStatus
    priority: Optional[TicketPriority] = None
    position: int
    project: ProjectRef
    epic_id: Optional[UUID] = None
    tags: list[str] = Field(default_factory=list)
    subtasks: list[Subtask] = Field(default_factory=list)
    attachments: list[Attachment] = Field(default_factory=list)
    branch_name: Optional[str] = None
    completed_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    # Payload fields that failed validation and were left empty
    unavailable_fields: list[str] = Field(default_factory=list)

    @classmethod
    def from_ticket(cls, ticket: Ticket) -> "TicketSnapshot":
        payloads: dict[str, list] = {}
        unavailable: list[str] = []
        for field, adapter in (
            ("tags", _TAGS),
            ("subtasks", _SUBTASKS),
            ("attachments", _ATTACHMENTS),
        ):
            value = load_payload(getattr(ticket, field), adapter, field, ticket.id)
            if value is None:
                unavailable.append(field)
                value = []
            payloads[field] = value

        return cls(
            id=ticket.id,
            title=ticket.title,
            description=ticket.description,
            status=ticket.status,
            priority=ticket.priority,
            position=ticket.position,
            project=ProjectRef.model_validate(ticket.project),
            epic_id=ticket.epic_id,
            branch_name=ticket.branch_name,
            completed_at=ticket.completed_at,
            created_at=ticket.created_at,
            updated_at=ticket.updated_at,
            unavailable_fields=unavailable,
            **payloads,
        )


# ==========================================================================
# Workflow Results
# ==========================================================================

class StartWorkResult(BaseSchema):
    """Outcome of starting work on a ticket."""

    ticket: TicketSnapshot
    branch: str
    branch_created: bool
    using_epic_branch: bool
    epic_branch: Optional[str] = None
    working_directory: str
    already_started: bool = False
    warnings: list[str] = Field(default_factory=list)


class CommitInfo(BaseSchema):
    sha: str
    message: str


class SuggestedTicket(BaseSchema):
    id: UUID
    title: str
    status: TicketStatus


class CompleteWorkResult(BaseSchema):
    """Outcome of completing implementation on a ticket."""

    ticket_id: UUID
    status: TicketStatus
    already_complete: bool = False
    # True only when this call moved the ticket to ai_review
    transitioned: bool = False
    summary: Optional[str] = None
    review_iteration: Optional[int] = None
    commits: list[CommitInfo] = Field(default_factory=list)
    changed_files: list[str] = Field(default_factory=list)
    next_steps: list[str] = Field(default_factory=list)
    suggested_next_ticket: Optional[SuggestedTicket] = None
    warnings: list[str] = Field(default_factory=list)


class EpicRef(BaseSchema):
    id: UUID
    title: str
    project_name: str


class EpicTicketSummary(BaseSchema):
    id: UUID
    title: str
    status: TicketStatus
    priority: Optional[TicketPriority] = None


class PullRequestInfo(BaseSchema):
    number: int
    url: str
    status: PrStatus


class StartEpicWorkResult(BaseSchema):
    """Outcome of starting (or re-entering) an epic."""

    epic: EpicRef
    branch: str
    branch_created: bool
    working_directory: str
    tickets: list[EpicTicketSummary] = Field(default_factory=list)
    tickets_total: int = 0
    tickets_done: int = 0
    pull_request: Optional[PullRequestInfo] = None
    warnings: list[str] = Field(default_factory=list)


# ==========================================================================
# Review Schemas
# ==========================================================================

class FindingCreate(BaseSchema):
    """Request body for submitting a review finding."""

    agent: str = Field(min_length=1, max_length=100)
    severity: FindingSeverity
    category: str = Field(min_length=1, max_length=100)
    description: str = Field(min_length=1)
    file_path: Optional[str] = None
    line_number: Optional[int] = Field(None, ge=1)
    suggested_fix: Optional[str] = None


class FindingFix(BaseSchema):
    fix_description: Optional[str] = None


class FindingResponse(BaseSchema):
    id: UUID
    ticket_id: UUID
    iteration: int
    agent: str
    severity: FindingSeverity
    category: str
    description: str
    file_path: Optional[str] = None
    line_number: Optional[int] = None
    suggested_fix: Optional[str] = None
    status: FindingStatus
    fix_description: Optional[str] = None
    fixed_at: Optional[datetime] = None
    created_at: Optional[datetime] = None


class ReviewCompletionStatus(BaseSchema):
    """Whether a ticket may leave AI review."""

    ticket_id: UUID
    can_proceed_to_human_review: bool
    open_critical: int
    open_major: int
    open_minor: int
    open_suggestion: int
    total_findings: int
    fixed_findings: int
    blocking_findings: list[FindingResponse] = Field(default_factory=list)


class FindingResult(BaseSchema):
    """A finding plus warnings from its bookkeeping update."""

    finding: FindingResponse
    warnings: list[str] = Field(default_factory=list)


DemoStepStatus = Literal["pending", "passed", "failed", "skipped"]


class DemoStep(BaseSchema):
    order: int = Field(ge=1)
    description: str = Field(min_length=1)
    expected_outcome: str = Field(min_length=1)
    type: Literal["manual", "visual", "automated"] = "manual"
    status: DemoStepStatus = "pending"
    notes: Optional[str] = None


class DemoStepUpdate(BaseSchema):
    """Outcome of one step recorded by the human reviewer."""

    status: DemoStepStatus
    notes: Optional[str] = None


class DemoScriptCreate(BaseSchema):
    steps: list[DemoStep]


class DemoScriptResponse(BaseSchema):
    id: UUID
    ticket_id: UUID
    steps: list[DemoStep]
    generated_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


class DemoScriptResult(BaseSchema):
    script: DemoScriptResponse
    status: TicketStatus
    warnings: list[str] = Field(default_factory=list)


# ==========================================================================
# Sessions
# ==========================================================================

class SessionStart(BaseSchema):
    environment: Optional[str] = None


class SessionResponse(BaseSchema):
    id: UUID
    ticket_id: Optional[UUID] = None
    project_id: Optional[UUID] = None
    environment: str
    started_at: datetime
    ended_at: Optional[datetime] = None


# ==========================================================================
# HTTP Envelopes
# ==========================================================================

class WorkflowStartResponse(BaseSchema):
    """Start-work result plus the audit session opened by the API."""

    result: StartWorkResult
    session: Optional[SessionResponse] = None


class WorkflowCompleteRequest(BaseSchema):
    summary: Optional[str] = None


class EpicStartRequest(BaseSchema):
    create_pr: bool = False
    reinitialize: bool = False


class ErrorResponse(BaseSchema):
    """Error response schema."""

    error: str
    detail: Optional[str] = None
    code: Optional[str] = None
    details: Optional[dict[str, Any]] = None


class HealthResponse(BaseSchema):
    """Health check response."""

    status: str
    version: str
    environment: str
    database: str
