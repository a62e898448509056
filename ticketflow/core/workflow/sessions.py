"""
Session Auditor
===============

Compliance log sessions bound to a ticket. A ticket has at most one open
session; starting a new one closes any stragglers first.
"""

import os
from datetime import datetime, timezone
from typing import Mapping, Optional, Sequence
from uuid import UUID

import structlog
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from ticketflow.core.config import settings
from ticketflow.core.errors import PersistenceError, SessionNotFoundError, TicketNotFoundError
from ticketflow.core.models import ConversationSession
from ticketflow.core.workflow.store import WorkflowStore

logger = structlog.get_logger()

UNKNOWN_ENVIRONMENT = "unknown"

# Checked in order; the first environment with a matching variable wins.
ENVIRONMENT_MARKERS: tuple[tuple[str, tuple[str, ...]], ...] = (
    ("claude-code", ("CLAUDE_CODE", "CLAUDE_CODE_ENTRYPOINT", "CLAUDE_CODE_TERMINAL_ID")),
    ("opencode", ("OPENCODE", "OPENCODE_EXPERIMENTAL", "OPENCODE_DEV_DEBUG")),
    ("copilot-cli", ("COPILOT_CLI", "COPILOT_TRACE_ID", "COPILOT_SESSION", "COPILOT_CLI_VERSION")),
    ("codex", ("CODEX", "CODEX_HOME", "CODEX_SANDBOX_NETWORK_DISABLED", "CODEX_EXECUTOR")),
    ("cursor", ("CURSOR", "CURSOR_TRACE_ID", "CURSOR_SESSION", "CURSOR_PID")),
    ("vscode", ("VSCODE_PID", "VSCODE_CWD", "VSCODE_IPC_HOOK", "VSCODE_GIT_IPC_HANDLE", "VSCODE_INJECTION")),
)


def detect_environment(environ: Optional[Mapping[str, str]] = None) -> str:
    """Name the agent environment from well-known variables, else 'unknown'."""
    environ = os.environ if environ is None else environ
    for name, markers in ENVIRONMENT_MARKERS:
        if any(environ.get(marker) for marker in markers):
            return name
    if environ.get("TERM_PROGRAM") == "vscode":
        return "vscode"
    return UNKNOWN_ENVIRONMENT


class SessionAuditor:
    """Starts and ends conversation sessions for one database session."""

    def __init__(self, db: AsyncSession, environ: Optional[Mapping[str, str]] = None):
        self.store = WorkflowStore(db)
        self.environ = environ

    def resolve_environment(self, environment: Optional[str] = None) -> str:
        if environment:
            return environment
        if settings.SESSION_ENVIRONMENT:
            return settings.SESSION_ENVIRONMENT
        return detect_environment(self.environ)

    async def start_session(self, ticket_id: UUID, environment: Optional[str] = None) -> ConversationSession:
        ticket = await self.store.get_ticket(ticket_id)
        if ticket is None:
            raise TicketNotFoundError(ticket_id)
        log = logger.bind(ticket_id=str(ticket_id))

        now = datetime.now(timezone.utc)
        session = ConversationSession(
            ticket_id=ticket_id,
            project_id=ticket.project_id,
            environment=self.resolve_environment(environment),
            started_at=now,
        )
        try:
            stragglers = await self.store.list_sessions(ticket_id, active_only=True)
            for straggler in stragglers:
                straggler.ended_at = now
            await self.store.add_session(session)
            await self.store.commit()
        except SQLAlchemyError as e:
            await self.store.rollback()
            log.error("Failed to start conversation session", error=str(e))
            raise PersistenceError("Failed to start conversation session", e) from e

        if stragglers:
            log.info("Ended stale conversation sessions", count=len(stragglers))
        log.info("Conversation session started", session_id=str(session.id), environment=session.environment)
        return session

    async def end_session(self, session_id: UUID) -> ConversationSession:
        """Set ended_at. Ending an ended session returns it unchanged."""
        session = await self.store.get_session(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        if session.ended_at is not None:
            return session

        session.ended_at = datetime.now(timezone.utc)
        try:
            await self.store.commit()
        except SQLAlchemyError as e:
            await self.store.rollback()
            logger.error("Failed to end conversation session", session_id=str(session_id), error=str(e))
            raise PersistenceError("Failed to end conversation session", e) from e

        logger.info("Conversation session ended", session_id=str(session_id), ticket_id=str(session.ticket_id))
        return session

    async def get_active_session(self, ticket_id: UUID) -> Optional[ConversationSession]:
        sessions = await self.store.list_sessions(ticket_id, active_only=True)
        return sessions[-1] if sessions else None

    async def list_sessions(self, ticket_id: UUID) -> Sequence[ConversationSession]:
        return await self.store.list_sessions(ticket_id)
