"""
Ticket Flow - Workflow Orchestration Engine
===========================================

Advances tickets and epics through their lifecycle while keeping the
record store, the git working tree and epic worktrees consistent.

Components:
- WorkflowEngine: start_work, complete_work, start_epic_work
- BranchCoordinator: branch resolution and compensating rollback
- ReviewGate: findings, the AI review exit gate, demo scripts
- SessionAuditor: conversation sessions per ticket
- GitAdapter / GitHubCli: git and gh invoked as subprocesses
- WorkflowStore: record store access
- ProcessLock: advisory lock against a second host process
"""

from ticketflow.core.workflow.branches import BranchCoordinator, BranchResolution
from ticketflow.core.workflow.git import GitAdapter, GitHubCli, GitResult, PullRequestResult
from ticketflow.core.workflow.lifecycle import ALLOWED_TRANSITIONS, WorkflowEngine, can_transition
from ticketflow.core.workflow.process_lock import ProcessLock
from ticketflow.core.workflow.review import ReviewGate
from ticketflow.core.workflow.sessions import SessionAuditor, detect_environment
from ticketflow.core.workflow.store import WorkflowStore

__all__ = [
    "ALLOWED_TRANSITIONS",
    "BranchCoordinator",
    "BranchResolution",
    "GitAdapter",
    "GitHubCli",
    "GitResult",
    "ProcessLock",
    "PullRequestResult",
    "ReviewGate",
    "SessionAuditor",
    "WorkflowEngine",
    "WorkflowStore",
    "can_transition",
    "detect_environment",
]
