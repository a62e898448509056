"""
Ticket Flow - API Dependencies
==============================

Shared dependencies for FastAPI endpoints.
"""

from typing import Annotated

from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession

from ticketflow.core.database import get_db
from ticketflow.core.workflow import (
    GitAdapter,
    GitHubCli,
    ReviewGate,
    SessionAuditor,
    WorkflowEngine,
)


# ==========================================================================
# External tools
# ==========================================================================

def get_git_adapter() -> GitAdapter:
    return GitAdapter()


def get_github_cli() -> GitHubCli:
    return GitHubCli()


# ==========================================================================
# Workflow components
# ==========================================================================

DbSession = Annotated[AsyncSession, Depends(get_db)]


def get_workflow_engine(
    db: DbSession,
    git: Annotated[GitAdapter, Depends(get_git_adapter)],
    github: Annotated[GitHubCli, Depends(get_github_cli)],
) -> WorkflowEngine:
    return WorkflowEngine(db, git=git, github=github)


def get_review_gate(db: DbSession) -> ReviewGate:
    return ReviewGate(db)


def get_session_auditor(db: DbSession) -> SessionAuditor:
    return SessionAuditor(db)


Engine = Annotated[WorkflowEngine, Depends(get_workflow_engine)]
Gate = Annotated[ReviewGate, Depends(get_review_gate)]
Auditor = Annotated[SessionAuditor, Depends(get_session_auditor)]
