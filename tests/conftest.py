"""
Ticket Flow - Test Fixtures
===========================

Shared pytest fixtures for all tests.
"""

import shutil
from collections.abc import AsyncGenerator
from pathlib import Path
from typing import Any, Optional
from uuid import UUID, uuid4

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from ticketflow.api.deps import get_github_cli
from ticketflow.api.main import app
from ticketflow.core.database import Base, get_db
from ticketflow.core.models import Epic, IsolationMode, Project, Ticket, TicketStatus
from ticketflow.core.workflow import GitAdapter, WorkflowEngine
from tests.helpers import FakeGitHubCli, commit, git


# ==========================================================================
# Test Database Setup
# ==========================================================================

# Use in-memory SQLite for tests (fast)
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

test_engine = create_async_engine(
    TEST_DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)

TestingSessionLocal = async_sessionmaker(
    bind=test_engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autoflush=False,
)


# ==========================================================================
# Database Fixtures
# ==========================================================================

@pytest_asyncio.fixture(scope="function")
async def db_session() -> AsyncGenerator[AsyncSession, None]:
    """
    Provide a clean database session for each test.

    Creates all tables before test, drops after.
    """
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    async with TestingSessionLocal() as session:
        yield session

    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


# ==========================================================================
# Git Fixtures
# ==========================================================================

@pytest.fixture
def git_repo(tmp_path: Path) -> Path:
    """A git repository on `main` with one commit."""
    if shutil.which("git") is None:
        pytest.skip("git is not installed")
    repo = tmp_path / "repo"
    repo.mkdir()
    git(repo, "init")
    git(repo, "symbolic-ref", "HEAD", "refs/heads/main")
    commit(repo, "README.md", "initial commit")
    return repo


@pytest.fixture
def git_remote(tmp_path: Path, git_repo: Path) -> Path:
    """A bare repository registered as `origin` of git_repo."""
    remote = tmp_path / "remote.git"
    git(tmp_path, "init", "--bare", str(remote))
    git(git_repo, "remote", "add", "origin", str(remote))
    return remote


@pytest.fixture
def git_adapter() -> GitAdapter:
    return GitAdapter(executable="git", timeout=15)


@pytest.fixture
def fake_github() -> FakeGitHubCli:
    return FakeGitHubCli()


@pytest.fixture
def workflow_engine(db_session: AsyncSession, git_adapter: GitAdapter, fake_github: FakeGitHubCli) -> WorkflowEngine:
    return WorkflowEngine(db_session, git=git_adapter, github=fake_github)


# ==========================================================================
# Record Fixtures
# ==========================================================================

@pytest_asyncio.fixture
async def project(db_session: AsyncSession, git_repo: Path) -> Project:
    """Project rooted at the test repository."""
    project = Project(id=uuid4(), name="repo", path=str(git_repo))
    db_session.add(project)
    await db_session.commit()
    await db_session.refresh(project)
    return project


@pytest.fixture
def make_ticket(db_session: AsyncSession, project: Project):
    """Factory creating tickets in the test project."""

    async def _make_ticket(
        title: str = "Add login form",
        status: TicketStatus = TicketStatus.READY,
        id: Optional[UUID] = None,
        epic: Optional[Epic] = None,
        position: int = 0,
        **fields: Any,
    ) -> Ticket:
        ticket = Ticket(
            id=id or uuid4(),
            project_id=project.id,
            epic_id=epic.id if epic else None,
            title=title,
            status=status,
            position=position,
            **fields,
        )
        db_session.add(ticket)
        await db_session.commit()
        await db_session.refresh(ticket)
        return ticket

    return _make_ticket


@pytest.fixture
def make_epic(db_session: AsyncSession, project: Project):
    """Factory creating epics in the test project."""

    async def _make_epic(
        title: str = "User accounts",
        isolation_mode: IsolationMode = IsolationMode.SHARED_BRANCH,
        description: Optional[str] = None,
    ) -> Epic:
        epic = Epic(
            id=uuid4(),
            project_id=project.id,
            title=title,
            description=description,
            isolation_mode=isolation_mode,
        )
        db_session.add(epic)
        await db_session.commit()
        await db_session.refresh(epic)
        return epic

    return _make_epic


# ==========================================================================
# HTTP Client
# ==========================================================================

@pytest_asyncio.fixture(scope="function")
async def client(db_session: AsyncSession, fake_github: FakeGitHubCli) -> AsyncGenerator[AsyncClient, None]:
    """
    Provide test HTTP client with database and gh overrides.
    """
    async def override_get_db() -> AsyncGenerator[AsyncSession, None]:
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_github_cli] = lambda: fake_github

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()
