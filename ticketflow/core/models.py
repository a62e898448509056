"""
Ticket Flow - Database Models
=============================

SQLAlchemy models for the record store.

Status, phase and severity strings are part of the persisted schema and
are stored by value; they must stay stable across versions.
"""

import enum
from datetime import datetime
from typing import Any, Optional
from uuid import uuid4

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Enum,
    ForeignKey,
    Integer,
    String,
    Text,
    func,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from ticketflow.core.database import Base


# ==========================================================================
# Enums
# ==========================================================================

class TicketStatus(str, enum.Enum):
    """Lifecycle column a ticket sits in."""
    BACKLOG = "backlog"
    READY = "ready"
    IN_PROGRESS = "in_progress"
    AI_REVIEW = "ai_review"
    HUMAN_REVIEW = "human_review"
    DONE = "done"              # Only reachable through human approval


class TicketPriority(str, enum.Enum):
    """Ticket priority."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class WorkflowPhase(str, enum.Enum):
    """Phase tracked on the ticket workflow state."""
    IMPLEMENTATION = "implementation"
    AI_REVIEW = "ai_review"
    HUMAN_REVIEW = "human_review"


class IsolationMode(str, enum.Enum):
    """How an epic's tickets share a working tree."""
    SHARED_BRANCH = "shared_branch"  # One branch in the project checkout
    WORKTREE = "worktree"            # Dedicated git worktree per epic


class PrStatus(str, enum.Enum):
    """Pull request state recorded for an epic."""
    DRAFT = "draft"
    OPEN = "open"
    MERGED = "merged"
    CLOSED = "closed"


class FindingSeverity(str, enum.Enum):
    """Severity of a review finding."""
    CRITICAL = "critical"      # Blocks human review
    MAJOR = "major"            # Blocks human review
    MINOR = "minor"
    SUGGESTION = "suggestion"


class FindingStatus(str, enum.Enum):
    """Fix status of a review finding."""
    OPEN = "open"
    FIXED = "fixed"


def _enum_values(enum_cls: type[enum.Enum]) -> list[str]:
    return [member.value for member in enum_cls]


def value_enum(enum_cls: type[enum.Enum]) -> Enum:
    """Enum column persisted by value, not by member name."""
    return Enum(
        enum_cls,
        values_callable=_enum_values,
        native_enum=False,
        validate_strings=True,
        length=32,
    )


# ==========================================================================
# Mixins
# ==========================================================================

class TimestampMixin:
    """Mixin that adds created_at and updated_at timestamps."""

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )


# ==========================================================================
# Projects, Epics, Tickets
# ==========================================================================

class Project(Base, TimestampMixin):
    """
    A tracked repository.

    `path` is the root of the git working tree the engine operates on.
    """

    __tablename__ = "projects"

    id: Mapped[UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid4,
    )
    name: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
    )
    path: Mapped[str] = mapped_column(
        String(1024),
        nullable=False,
        unique=True,
    )

    def __repr__(self) -> str:
        return f"<Project {self.name}>"


class Epic(Base, TimestampMixin):
    """A grouping of tickets that may share one branch."""

    __tablename__ = "epics"

    id: Mapped[UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid4,
    )
    project_id: Mapped[UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("projects.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    title: Mapped[str] = mapped_column(
        String(500),
        nullable=False,
    )
    description: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
    )
    isolation_mode: Mapped[IsolationMode] = mapped_column(
        value_enum(IsolationMode),
        default=IsolationMode.SHARED_BRANCH,
        nullable=False,
    )

    project: Mapped["Project"] = relationship(lazy="selectin")

    def __repr__(self) -> str:
        return f"<Epic {self.title}>"


class Ticket(Base, TimestampMixin):
    """
    A unit of work with a single-owner lifecycle status.

    tags/subtasks/attachments are JSON payloads validated on read,
    see ticketflow.core.schemas.TicketSnapshot.
    """

    __tablename__ = "tickets"

    id: Mapped[UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid4,
    )
    project_id: Mapped[UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("projects.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    epic_id: Mapped[Optional[UUID]] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("epics.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    title: Mapped[str] = mapped_column(
        String(500),
        nullable=False,
    )
    description: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
    )
    status: Mapped[TicketStatus] = mapped_column(
        value_enum(TicketStatus),
        default=TicketStatus.BACKLOG,
        nullable=False,
        index=True,
    )
    priority: Mapped[Optional[TicketPriority]] = mapped_column(
        value_enum(TicketPriority),
        nullable=True,
    )
    position: Mapped[int] = mapped_column(
        Integer,
        default=0,
        nullable=False,
    )

    # JSON payloads
    tags: Mapped[Optional[Any]] = mapped_column(JSON, nullable=True)
    subtasks: Mapped[Optional[Any]] = mapped_column(JSON, nullable=True)
    attachments: Mapped[Optional[Any]] = mapped_column(JSON, nullable=True)

    branch_name: Mapped[Optional[str]] = mapped_column(
        String(255),
        nullable=True,
    )
    completed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    project: Mapped["Project"] = relationship(lazy="selectin")
    epic: Mapped[Optional["Epic"]] = relationship(lazy="selectin")

    def __repr__(self) -> str:
        return f"<Ticket {self.title} [{self.status.value}]>"


# ==========================================================================
# Workflow State
# ==========================================================================

class EpicWorkflowState(Base, TimestampMixin):
    """
    Durable memory of which branch an epic committed to.

    Created lazily on first start, never deleted. Once set,
    epic_branch_name is authoritative for every ticket in the epic.
    """

    __tablename__ = "epic_workflow_state"

    id: Mapped[UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid4,
    )
    epic_id: Mapped[UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("epics.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
    )
    epic_branch_name: Mapped[Optional[str]] = mapped_column(
        String(255),
        nullable=True,
    )
    epic_branch_created_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    worktree_path: Mapped[Optional[str]] = mapped_column(
        String(1024),
        nullable=True,
    )
    current_ticket_id: Mapped[Optional[UUID]] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("tickets.id", ondelete="SET NULL"),
        nullable=True,
    )
    tickets_total: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    tickets_done: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    # PR linkage
    pr_number: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    pr_url: Mapped[Optional[str]] = mapped_column(String(1024), nullable=True)
    pr_status: Mapped[Optional[PrStatus]] = mapped_column(
        value_enum(PrStatus),
        nullable=True,
    )


class TicketWorkflowState(Base, TimestampMixin):
    """
    Phase and review-iteration bookkeeping for a started ticket.

    review_iteration only grows while the ticket cycles through AI review;
    a restart from backlog/ready resets the row instead of deleting it.
    """

    __tablename__ = "ticket_workflow_state"

    id: Mapped[UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid4,
    )
    ticket_id: Mapped[UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("tickets.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
    )
    current_phase: Mapped[WorkflowPhase] = mapped_column(
        value_enum(WorkflowPhase),
        default=WorkflowPhase.IMPLEMENTATION,
        nullable=False,
    )
    review_iteration: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    findings_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    findings_fixed: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    demo_generated: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)


# ==========================================================================
# Review
# ==========================================================================

class ReviewFinding(Base):
    """
    An issue raised against a ticket's implementation.

    Append-only: fixing a finding flips its status, the row is the audit trail.
    """

    __tablename__ = "review_findings"

    id: Mapped[UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid4,
    )
    ticket_id: Mapped[UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("tickets.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    iteration: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    agent: Mapped[str] = mapped_column(String(100), nullable=False)
    severity: Mapped[FindingSeverity] = mapped_column(
        value_enum(FindingSeverity),
        nullable=False,
    )
    category: Mapped[str] = mapped_column(String(100), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    file_path: Mapped[Optional[str]] = mapped_column(String(1024), nullable=True)
    line_number: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    suggested_fix: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    status: Mapped[FindingStatus] = mapped_column(
        value_enum(FindingStatus),
        default=FindingStatus.OPEN,
        nullable=False,
        index=True,
    )
    fix_description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    fixed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )

    @property
    def is_blocking(self) -> bool:
        """Open critical/major findings block human review."""
        return self.status == FindingStatus.OPEN and self.severity in (
            FindingSeverity.CRITICAL,
            FindingSeverity.MAJOR,
        )


class DemoScript(Base):
    """Manual verification steps handed to the human reviewer."""

    __tablename__ = "demo_scripts"

    id: Mapped[UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid4,
    )
    ticket_id: Mapped[UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("tickets.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
    )
    steps: Mapped[list] = mapped_column(JSON, nullable=False)
    generated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )
    # Last time a reviewer recorded a step outcome
    completed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )


# ==========================================================================
# Audit Sessions
# ==========================================================================

class ConversationSession(Base):
    """Compliance log session bound to a ticket."""

    __tablename__ = "conversation_sessions"

    id: Mapped[UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid4,
    )
    ticket_id: Mapped[Optional[UUID]] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("tickets.id", ondelete="CASCADE"),
        nullable=True,
        index=True,
    )
    project_id: Mapped[Optional[UUID]] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("projects.id", ondelete="CASCADE"),
        nullable=True,
    )
    environment: Mapped[str] = mapped_column(
        String(50),
        default="unknown",
        nullable=False,
    )
    started_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
    )
    ended_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    @property
    def is_active(self) -> bool:
        return self.ended_at is None
