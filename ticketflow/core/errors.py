"""
Ticket Flow - Workflow Errors
=============================

Typed errors raised by the workflow engine.

Every error carries a machine-readable ``code`` and structured ``details``.
The presentation layer maps them to responses; the engine never formats
prose for callers beyond the message itself.
"""

from typing import Any, Optional


class WorkflowError(RuntimeError):
    """Base class for workflow engine errors."""

    code = "WORKFLOW_ERROR"

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}


# ==========================================================================
# Not Found
# ==========================================================================

class NotFoundError(WorkflowError):
    """A referenced record or path does not exist."""

    code = "NOT_FOUND"


class TicketNotFoundError(NotFoundError):
    code = "TICKET_NOT_FOUND"

    def __init__(self, ticket_id: Any) -> None:
        super().__init__(f"Ticket not found: {ticket_id}", {"ticket_id": str(ticket_id)})


class EpicNotFoundError(NotFoundError):
    code = "EPIC_NOT_FOUND"

    def __init__(self, epic_id: Any) -> None:
        super().__init__(f"Epic not found: {epic_id}", {"epic_id": str(epic_id)})


class FindingNotFoundError(NotFoundError):
    code = "FINDING_NOT_FOUND"

    def __init__(self, finding_id: Any) -> None:
        super().__init__(
            f"Review finding not found: {finding_id}",
            {"finding_id": str(finding_id)},
        )


class DemoScriptNotFoundError(NotFoundError):
    code = "DEMO_SCRIPT_NOT_FOUND"

    def __init__(self, ticket_id: Any) -> None:
        super().__init__(
            f"Demo script not found for ticket: {ticket_id}",
            {"ticket_id": str(ticket_id)},
        )


class SessionNotFoundError(NotFoundError):
    code = "SESSION_NOT_FOUND"

    def __init__(self, session_id: Any) -> None:
        super().__init__(
            f"Conversation session not found: {session_id}",
            {"session_id": str(session_id)},
        )


class PathNotFoundError(NotFoundError):
    code = "PATH_NOT_FOUND"

    def __init__(self, path: str) -> None:
        super().__init__(
            f"Path not found: {path}. Verify the project path exists on the filesystem.",
            {"path": path},
        )


# ==========================================================================
# Precondition Violations
# ==========================================================================

class PreconditionError(WorkflowError):
    """The requested transition is not allowed in the current state."""

    code = "PRECONDITION_FAILED"


class InvalidStateError(PreconditionError):
    code = "INVALID_STATE"

    def __init__(self, resource: str, current_state: str, required_state: str, action: str) -> None:
        super().__init__(
            f"Cannot {action}: {resource} is in '{current_state}' state, must be '{required_state}'.",
            {
                "resource": resource,
                "current_state": current_state,
                "required_state": required_state,
                "action": action,
            },
        )


class ReviewGateBlockedError(PreconditionError):
    """Open critical/major findings prevent leaving AI review."""

    code = "REVIEW_GATE_BLOCKED"

    def __init__(self, ticket_id: Any, open_critical: int, open_major: int, blocking: list[dict]) -> None:
        super().__init__(
            f"Cannot proceed to human review: {open_critical} critical and "
            f"{open_major} major findings are still open.",
            {
                "ticket_id": str(ticket_id),
                "open_critical": open_critical,
                "open_major": open_major,
                "blocking_findings": blocking,
            },
        )


class DemoScriptValidationError(PreconditionError):
    code = "DEMO_SCRIPT_INVALID"


class EpicBranchMissingError(PreconditionError):
    """
    The epic's recorded branch no longer exists in the repository.

    Reported instead of silently creating a replacement, which would
    split the epic's history across two branches.
    """

    code = "EPIC_BRANCH_MISSING"

    def __init__(self, epic_id: Any, branch_name: str) -> None:
        super().__init__(
            f"Epic branch '{branch_name}' recorded for epic {epic_id} no longer exists. "
            f"Re-run epic initialization (start_epic_work with reinitialize) before starting tickets.",
            {"epic_id": str(epic_id), "branch_name": branch_name},
        )


# ==========================================================================
# External Tools
# ==========================================================================

class GitError(WorkflowError):
    """A git command exited non-zero. ``stderr`` is git's own output."""

    code = "GIT_ERROR"

    def __init__(self, message: str, command: Optional[list[str]] = None, stderr: Optional[str] = None) -> None:
        details: dict[str, Any] = {}
        if command:
            details["command"] = " ".join(command)
        if stderr:
            details["stderr"] = stderr
        text = f"Git operation failed: {message}"
        if stderr:
            text = f"{text}: {stderr}"
        super().__init__(text, details)
        self.command = command
        self.stderr = stderr


# ==========================================================================
# Persistence
# ==========================================================================

class PersistenceError(WorkflowError):
    """
    The primary record write failed.

    Raised after any git side effect of the same step was compensated;
    ``details["rollback_problems"]`` lists compensation steps that failed.
    """

    code = "PERSISTENCE_ERROR"

    def __init__(self, message: str, original: BaseException, rollback_problems: Optional[list[str]] = None) -> None:
        super().__init__(
            f"{message}: {original}",
            {
                "original_error": str(original),
                "rollback_problems": list(rollback_problems or []),
            },
        )
        self.original = original
        self.rollback_problems = list(rollback_problems or [])
