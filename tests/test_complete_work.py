"""
Ticket Flow - Complete Work Tests
=================================
"""

from pathlib import Path
from uuid import uuid4

import pytest
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from ticketflow.core.errors import InvalidStateError, PersistenceError, TicketNotFoundError
from ticketflow.core.models import TicketStatus, WorkflowPhase
from ticketflow.core.workflow import WorkflowEngine, WorkflowStore
from tests.helpers import commit


class TestCompleteWork:
    """Tests for handing a ticket to AI review."""

    async def test_moves_to_ai_review(
        self,
        workflow_engine: WorkflowEngine,
        db_session: AsyncSession,
        make_ticket,
        git_repo: Path,
    ):
        ticket = await make_ticket()
        await workflow_engine.start_work(ticket.id)
        commit(git_repo, "login.py", "add form")
        commit(git_repo, "test_login.py", "add tests")

        result = await workflow_engine.complete_work(ticket.id, "added form + tests")

        assert result.status == TicketStatus.AI_REVIEW
        assert result.summary == "added form + tests"
        assert result.transitioned is True
        assert result.review_iteration == 1
        assert [c.message for c in result.commits] == ["add tests", "add form"]
        assert sorted(result.changed_files) == ["login.py", "test_login.py"]
        assert result.next_steps
        assert result.warnings == []

        state = await WorkflowStore(db_session).get_ticket_state(ticket.id)
        assert state.current_phase == WorkflowPhase.AI_REVIEW
        assert state.review_iteration == 1

    async def test_iteration_grows_each_review(
        self,
        workflow_engine: WorkflowEngine,
        make_ticket,
    ):
        ticket = await make_ticket()
        await workflow_engine.start_work(ticket.id)
        first = await workflow_engine.complete_work(ticket.id)
        await workflow_engine.start_work(ticket.id)
        second = await workflow_engine.complete_work(ticket.id)

        assert first.review_iteration == 1
        assert second.review_iteration == 2

    async def test_creates_state_when_missing(
        self,
        workflow_engine: WorkflowEngine,
        db_session: AsyncSession,
        make_ticket,
    ):
        """A ticket put in progress outside the engine starts at iteration 1."""
        ticket = await make_ticket(status=TicketStatus.IN_PROGRESS, branch_name="main")

        result = await workflow_engine.complete_work(ticket.id)

        assert result.review_iteration == 1

    async def test_suggests_ready_before_backlog(
        self,
        workflow_engine: WorkflowEngine,
        make_ticket,
    ):
        ticket = await make_ticket(title="Current")
        await make_ticket(title="Backlog first", status=TicketStatus.BACKLOG, position=0)
        ready = await make_ticket(title="Ready later", status=TicketStatus.READY, position=5)
        await workflow_engine.start_work(ticket.id)

        result = await workflow_engine.complete_work(ticket.id)

        assert result.suggested_next_ticket is not None
        assert result.suggested_next_ticket.id == ready.id

    async def test_done_is_a_no_op(self, workflow_engine: WorkflowEngine, make_ticket):
        ticket = await make_ticket(status=TicketStatus.DONE)

        result = await workflow_engine.complete_work(ticket.id)

        assert result.already_complete is True
        assert result.status == TicketStatus.DONE

    @pytest.mark.parametrize("status", [TicketStatus.AI_REVIEW, TicketStatus.HUMAN_REVIEW])
    async def test_review_states_return_guidance(
        self,
        workflow_engine: WorkflowEngine,
        db_session: AsyncSession,
        make_ticket,
        status: TicketStatus,
    ):
        ticket = await make_ticket(status=status)

        result = await workflow_engine.complete_work(ticket.id)

        assert result.status == status
        assert result.next_steps
        assert result.already_complete is False
        assert result.transitioned is False
        await db_session.refresh(ticket)
        assert ticket.status == status

    @pytest.mark.parametrize("status", [TicketStatus.BACKLOG, TicketStatus.READY])
    async def test_unstarted_ticket_is_rejected(
        self,
        workflow_engine: WorkflowEngine,
        make_ticket,
        status: TicketStatus,
    ):
        ticket = await make_ticket(status=status)

        with pytest.raises(InvalidStateError):
            await workflow_engine.complete_work(ticket.id)

    async def test_missing_ticket(self, workflow_engine: WorkflowEngine, db_session: AsyncSession):
        with pytest.raises(TicketNotFoundError):
            await workflow_engine.complete_work(uuid4())

    async def test_primary_write_failure(
        self,
        workflow_engine: WorkflowEngine,
        db_session: AsyncSession,
        make_ticket,
        monkeypatch: pytest.MonkeyPatch,
    ):
        ticket = await make_ticket()
        await workflow_engine.start_work(ticket.id)

        async def failing_status(self, ticket, status):
            raise SQLAlchemyError("simulated write failure")

        monkeypatch.setattr(WorkflowStore, "set_ticket_status", failing_status)

        with pytest.raises(PersistenceError):
            await workflow_engine.complete_work(ticket.id)

        reloaded = await WorkflowStore(db_session).get_ticket(ticket.id, reload=True)
        assert reloaded.status == TicketStatus.IN_PROGRESS

    async def test_iteration_failure_is_a_warning(
        self,
        workflow_engine: WorkflowEngine,
        make_ticket,
        monkeypatch: pytest.MonkeyPatch,
    ):
        ticket = await make_ticket()
        await workflow_engine.start_work(ticket.id)

        async def failing_iteration(self, ticket_id):
            raise SQLAlchemyError("state table locked")

        monkeypatch.setattr(WorkflowStore, "enter_ai_review", failing_iteration)

        result = await workflow_engine.complete_work(ticket.id)

        assert result.status == TicketStatus.AI_REVIEW
        assert result.review_iteration is None
        assert any("review iteration" in w for w in result.warnings)


class TestNeverDone:
    """The engine has no path that closes a ticket."""

    async def test_store_refuses_done(self, db_session: AsyncSession, make_ticket):
        ticket = await make_ticket(status=TicketStatus.HUMAN_REVIEW)

        with pytest.raises(ValueError):
            await WorkflowStore(db_session).set_ticket_status(ticket, TicketStatus.DONE)

    def test_engine_sources_never_assign_done(self):
        import ticketflow.core.workflow as workflow_pkg

        for source in Path(workflow_pkg.__file__).parent.glob("*.py"):
            text = source.read_text()
            assert "status = TicketStatus.DONE" not in text, source.name
            assert "set_ticket_status(ticket, TicketStatus.DONE" not in text, source.name
