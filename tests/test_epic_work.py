"""
Ticket Flow - Epic Workflow Tests
=================================

Shared epic branches, worktree isolation and draft pull requests.
"""

from pathlib import Path
from uuid import uuid4

import pytest
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from ticketflow.core.errors import EpicBranchMissingError, EpicNotFoundError, PersistenceError
from ticketflow.core.models import IsolationMode, PrStatus, TicketStatus
from ticketflow.core.workflow import PullRequestResult, WorkflowEngine, WorkflowStore
from ticketflow.core.workflow.git import epic_branch_name
from tests.helpers import FakeGitHubCli, branches, current_branch, git


class TestSharedEpicBranch:
    """Tickets of a shared-branch epic all work on one branch."""

    async def test_tickets_share_the_epic_branch(
        self,
        workflow_engine: WorkflowEngine,
        make_epic,
        make_ticket,
        git_repo: Path,
    ):
        epic = await make_epic()
        first = await make_ticket(title="Sign up", epic=epic, position=0)
        second = await make_ticket(title="Sign in", epic=epic, position=1)
        expected = epic_branch_name(epic.id, epic.title)

        r1 = await workflow_engine.start_work(first.id)
        r2 = await workflow_engine.start_work(second.id)

        assert r1.branch == r2.branch == expected
        assert r1.branch_created is True
        assert r2.branch_created is False
        assert r1.using_epic_branch is True
        assert r2.using_epic_branch is True
        assert r2.epic_branch == expected
        assert current_branch(git_repo) == expected

    async def test_records_current_ticket(
        self,
        workflow_engine: WorkflowEngine,
        db_session: AsyncSession,
        make_epic,
        make_ticket,
    ):
        epic = await make_epic()
        first = await make_ticket(title="Sign up", epic=epic)
        second = await make_ticket(title="Sign in", epic=epic)

        await workflow_engine.start_work(first.id)
        await workflow_engine.start_work(second.id)

        state = await WorkflowStore(db_session).get_epic_state(epic.id)
        assert state.epic_branch_name == epic_branch_name(epic.id, epic.title)
        assert state.current_ticket_id == second.id

    async def test_epic_record_cleared_on_ticket_write_failure(
        self,
        workflow_engine: WorkflowEngine,
        db_session: AsyncSession,
        make_epic,
        make_ticket,
        git_repo: Path,
        monkeypatch: pytest.MonkeyPatch,
    ):
        """The epic branch created for a failed start is fully undone."""
        epic = await make_epic()
        ticket = await make_ticket(epic=epic)

        async def failing_write(self, ticket, branch_name):
            raise SQLAlchemyError("simulated write failure")

        monkeypatch.setattr(WorkflowStore, "mark_ticket_in_progress", failing_write)

        with pytest.raises(PersistenceError) as exc_info:
            await workflow_engine.start_work(ticket.id)

        assert exc_info.value.rollback_problems == []
        assert current_branch(git_repo) == "main"
        assert epic_branch_name(epic.id, epic.title) not in branches(git_repo)
        state = await WorkflowStore(db_session).get_epic_state(epic.id)
        await db_session.refresh(state)
        assert state.epic_branch_name is None


class TestStartEpicWork:
    """Tests for preparing an epic branch directly."""

    async def test_creates_branch_and_counts_progress(
        self,
        workflow_engine: WorkflowEngine,
        db_session: AsyncSession,
        make_epic,
        make_ticket,
        git_repo: Path,
    ):
        epic = await make_epic()
        await make_ticket(title="Sign up", epic=epic, position=0)
        await make_ticket(title="Sign in", epic=epic, position=1, status=TicketStatus.DONE)
        await make_ticket(title="Reset password", epic=epic, position=2)

        result = await workflow_engine.start_epic_work(epic.id)

        assert result.branch == epic_branch_name(epic.id, epic.title)
        assert result.branch_created is True
        assert result.epic.project_name == "repo"
        assert [t.title for t in result.tickets] == ["Sign up", "Sign in", "Reset password"]
        assert result.tickets_total == 3
        assert result.tickets_done == 1
        assert result.pull_request is None
        assert current_branch(git_repo) == result.branch

        state = await WorkflowStore(db_session).get_epic_state(epic.id)
        assert state.tickets_total == 3

    async def test_second_call_reuses_branch(self, workflow_engine: WorkflowEngine, make_epic, git_repo: Path):
        epic = await make_epic()
        first = await workflow_engine.start_epic_work(epic.id)
        git(git_repo, "checkout", "main")

        second = await workflow_engine.start_epic_work(epic.id)

        assert second.branch == first.branch
        assert second.branch_created is False
        assert current_branch(git_repo) == first.branch

    async def test_tickets_join_prepared_branch(
        self,
        workflow_engine: WorkflowEngine,
        make_epic,
        make_ticket,
        git_repo: Path,
    ):
        epic = await make_epic()
        t2 = await make_ticket(title="Sign up", epic=epic)
        t3 = await make_ticket(title="Sign in", epic=epic)
        prepared = await workflow_engine.start_epic_work(epic.id)
        before = branches(git_repo)

        r2 = await workflow_engine.start_work(t2.id)
        r3 = await workflow_engine.start_work(t3.id)

        assert r2.branch == r3.branch == prepared.branch
        assert r2.using_epic_branch and r3.using_epic_branch
        assert not r2.branch_created and not r3.branch_created
        assert branches(git_repo) == before

    async def test_missing_epic(self, workflow_engine: WorkflowEngine, db_session: AsyncSession):
        with pytest.raises(EpicNotFoundError):
            await workflow_engine.start_epic_work(uuid4())


class TestDraftPullRequest:
    """Tests for pushing the epic branch and opening a draft PR."""

    async def test_opens_and_records_draft_pr(
        self,
        workflow_engine: WorkflowEngine,
        db_session: AsyncSession,
        fake_github: FakeGitHubCli,
        make_epic,
        git_remote: Path,
    ):
        epic = await make_epic(description="Accounts for shoppers")

        result = await workflow_engine.start_epic_work(epic.id, create_pr=True)

        assert result.warnings == []
        assert result.pull_request.number == 42
        assert result.pull_request.status == PrStatus.DRAFT
        assert fake_github.calls[0]["title"] == "[Epic] User accounts"
        assert "Accounts for shoppers" in fake_github.calls[0]["body"]
        assert result.branch in git(git_remote, "for-each-ref", "--format=%(refname:short)", "refs/heads")

        state = await WorkflowStore(db_session).get_epic_state(epic.id)
        assert state.pr_number == 42
        assert state.pr_url.endswith("/pull/42")

    async def test_existing_pr_is_not_duplicated(
        self,
        workflow_engine: WorkflowEngine,
        fake_github: FakeGitHubCli,
        make_epic,
        git_remote: Path,
    ):
        epic = await make_epic()
        await workflow_engine.start_epic_work(epic.id, create_pr=True)

        again = await workflow_engine.start_epic_work(epic.id, create_pr=True)

        assert len(fake_github.calls) == 1
        assert again.pull_request.number == 42
        assert any("already exists" in w for w in again.warnings)

    async def test_push_failure_is_a_warning(
        self,
        workflow_engine: WorkflowEngine,
        fake_github: FakeGitHubCli,
        make_epic,
        git_repo: Path,
    ):
        """Without a remote the branch is kept and no PR is attempted."""
        epic = await make_epic()

        result = await workflow_engine.start_epic_work(epic.id, create_pr=True)

        assert result.pull_request is None
        assert any("Could not push" in w for w in result.warnings)
        assert fake_github.calls == []
        assert result.branch in branches(git_repo)


class TestMissingEpicBranch:
    """A recorded epic branch that was deleted is reported, not recreated."""

    async def _delete_epic_branch(self, workflow_engine: WorkflowEngine, epic, git_repo: Path) -> str:
        result = await workflow_engine.start_epic_work(epic.id)
        git(git_repo, "checkout", "main")
        git(git_repo, "branch", "-D", result.branch)
        return result.branch

    async def test_start_work_reports_missing_branch(
        self,
        workflow_engine: WorkflowEngine,
        make_epic,
        make_ticket,
        git_repo: Path,
    ):
        epic = await make_epic()
        ticket = await make_ticket(epic=epic)
        branch = await self._delete_epic_branch(workflow_engine, epic, git_repo)

        with pytest.raises(EpicBranchMissingError) as exc_info:
            await workflow_engine.start_work(ticket.id)

        assert exc_info.value.details["branch_name"] == branch
        assert branch not in branches(git_repo)

    async def test_start_epic_work_reports_missing_branch(
        self,
        workflow_engine: WorkflowEngine,
        make_epic,
        git_repo: Path,
    ):
        epic = await make_epic()
        await self._delete_epic_branch(workflow_engine, epic, git_repo)

        with pytest.raises(EpicBranchMissingError):
            await workflow_engine.start_epic_work(epic.id)

    async def test_reinitialize_recreates_branch(
        self,
        workflow_engine: WorkflowEngine,
        make_epic,
        make_ticket,
        git_repo: Path,
    ):
        epic = await make_epic()
        ticket = await make_ticket(epic=epic)
        branch = await self._delete_epic_branch(workflow_engine, epic, git_repo)

        result = await workflow_engine.start_epic_work(epic.id, reinitialize=True)

        assert result.branch == branch
        assert result.branch_created is True
        assert any("recreated" in w for w in result.warnings)
        started = await workflow_engine.start_work(ticket.id)
        assert started.branch == branch


class TestWorktreeEpic:
    """Worktree-isolated epics never move HEAD of the project checkout."""

    async def test_ticket_works_in_sibling_worktree(
        self,
        workflow_engine: WorkflowEngine,
        db_session: AsyncSession,
        make_epic,
        make_ticket,
        git_repo: Path,
    ):
        epic = await make_epic(isolation_mode=IsolationMode.WORKTREE)
        first = await make_ticket(title="Sign up", epic=epic)
        second = await make_ticket(title="Sign in", epic=epic)

        r1 = await workflow_engine.start_work(first.id)
        r2 = await workflow_engine.start_work(second.id)

        worktree = Path(r1.working_directory)
        assert worktree.parent == git_repo.parent
        assert worktree.name.startswith("repo-epic-")
        assert worktree.is_dir()
        assert r2.working_directory == r1.working_directory
        assert r2.branch == r1.branch
        assert current_branch(git_repo) == "main"
        assert current_branch(worktree) == r1.branch

        state = await WorkflowStore(db_session).get_epic_state(epic.id)
        assert state.worktree_path == str(worktree)

    async def test_removed_worktree_is_reattached(
        self,
        workflow_engine: WorkflowEngine,
        make_epic,
        make_ticket,
        git_repo: Path,
    ):
        epic = await make_epic(isolation_mode=IsolationMode.WORKTREE)
        ticket = await make_ticket(epic=epic)
        first = await workflow_engine.start_epic_work(epic.id)
        git(git_repo, "worktree", "remove", first.working_directory)

        result = await workflow_engine.start_work(ticket.id)

        assert result.working_directory == first.working_directory
        assert Path(result.working_directory).is_dir()
        assert current_branch(git_repo) == "main"


class TestEpicWriteFailures:
    """Record failures around epic branches never leave git half-done."""

    async def test_epic_record_failure_undoes_branch(
        self,
        workflow_engine: WorkflowEngine,
        db_session: AsyncSession,
        make_epic,
        git_repo: Path,
        monkeypatch: pytest.MonkeyPatch,
    ):
        epic = await make_epic()

        async def failing_record(self, *args, **kwargs):
            raise SQLAlchemyError("simulated write failure")

        monkeypatch.setattr(WorkflowStore, "record_epic_branch", failing_record)

        with pytest.raises(PersistenceError) as exc_info:
            await workflow_engine.start_epic_work(epic.id)

        assert exc_info.value.rollback_problems == []
        assert current_branch(git_repo) == "main"
        assert epic_branch_name(epic.id, epic.title) not in branches(git_repo)
        assert await WorkflowStore(db_session).get_epic_state(epic.id) is None

    async def test_epic_record_failure_on_first_ticket(
        self,
        workflow_engine: WorkflowEngine,
        db_session: AsyncSession,
        make_epic,
        make_ticket,
        git_repo: Path,
        monkeypatch: pytest.MonkeyPatch,
    ):
        epic = await make_epic()
        ticket = await make_ticket(epic=epic)

        async def failing_record(self, *args, **kwargs):
            raise SQLAlchemyError("simulated write failure")

        monkeypatch.setattr(WorkflowStore, "record_epic_branch", failing_record)

        with pytest.raises(PersistenceError):
            await workflow_engine.start_work(ticket.id)

        assert current_branch(git_repo) == "main"
        assert epic_branch_name(epic.id, epic.title) not in branches(git_repo)
        reloaded = await WorkflowStore(db_session).get_ticket(ticket.id, reload=True)
        assert reloaded.status == TicketStatus.READY

    async def test_current_ticket_failure_restores_head(
        self,
        workflow_engine: WorkflowEngine,
        db_session: AsyncSession,
        make_epic,
        make_ticket,
        git_repo: Path,
        monkeypatch: pytest.MonkeyPatch,
    ):
        """Joining an existing epic branch is undone when the epic pointer cannot be written."""
        epic = await make_epic()
        first = await make_ticket(title="Sign up", epic=epic)
        second = await make_ticket(title="Sign in", epic=epic)
        started = await workflow_engine.start_work(first.id)
        git(git_repo, "checkout", "main")

        async def failing_pointer(self, state, ticket_id):
            raise SQLAlchemyError("epic state locked")

        monkeypatch.setattr(WorkflowStore, "set_epic_current_ticket", failing_pointer)

        with pytest.raises(PersistenceError):
            await workflow_engine.start_work(second.id)

        assert current_branch(git_repo) == "main"
        assert started.branch in branches(git_repo)
        reloaded = await WorkflowStore(db_session).get_ticket(second.id, reload=True)
        assert reloaded.status == TicketStatus.READY
        assert reloaded.branch_name is None

    async def test_pr_record_failure_is_a_warning(
        self,
        workflow_engine: WorkflowEngine,
        fake_github: FakeGitHubCli,
        make_epic,
        make_ticket,
        git_remote: Path,
        monkeypatch: pytest.MonkeyPatch,
    ):
        """The created PR is still returned when it cannot be recorded."""
        epic = await make_epic()
        await make_ticket(title="Sign up", epic=epic)

        async def failing_record(self, *args, **kwargs):
            raise SQLAlchemyError("epic state locked")

        monkeypatch.setattr(WorkflowStore, "record_pull_request", failing_record)

        result = await workflow_engine.start_epic_work(epic.id, create_pr=True)

        assert result.pull_request.number == 42
        assert result.pull_request.url == fake_github.result.url
        assert any("not recorded" in w for w in result.warnings)
        assert result.epic.title == "User accounts"
        assert [t.title for t in result.tickets] == ["Sign up"]

    async def test_gh_failure_after_push_is_a_warning(
        self,
        workflow_engine: WorkflowEngine,
        db_session: AsyncSession,
        fake_github: FakeGitHubCli,
        make_epic,
        git_repo: Path,
        git_remote: Path,
    ):
        """The pushed branch is kept when gh cannot open the PR."""
        fake_github.result = PullRequestResult(success=False, error="gh: authentication required")
        epic = await make_epic()

        result = await workflow_engine.start_epic_work(epic.id, create_pr=True)

        assert result.pull_request is None
        assert any("authentication required" in w for w in result.warnings)
        assert len(fake_github.calls) == 1
        assert result.branch in git(git_remote, "for-each-ref", "--format=%(refname:short)", "refs/heads")
        assert result.branch in branches(git_repo)
        state = await WorkflowStore(db_session).get_epic_state(epic.id)
        assert state.pr_number is None
