"""
Hole-in-One Engine - Test Fixtures
==================================

Shared pytest fixtures for all tests.

Each test gets its own SQLite database file so race tests can open
several sessions and run real conditional writes against each other.
"""

import os
import tempfile
from collections.abc import AsyncGenerator
from datetime import datetime, timezone
from uuid import UUID, uuid4

# Settings are read at import time
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("SWEEP_ENABLED", "false")
os.environ.setdefault("NOTIFY_ENABLED", "false")
os.environ.setdefault(
    "DATABASE_URL",
    f"sqlite+aiosqlite:///{os.path.join(tempfile.gettempdir(), 'holeinone-test.db')}",
)

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from holeinone.api.deps import create_access_token, get_clock, get_notifier
from holeinone.api.main import app
from holeinone.core.database import Base, get_db
from holeinone.core.engine.clock import FixedClock
from holeinone.core.engine.notifications import NotificationClient, NotificationRequest
from holeinone.core.models import Competition, CompetitionStatus, StaffCode


START = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


# ==========================================================================
# Collaborator Doubles
# ==========================================================================

class RecordingNotifier(NotificationClient):
    """Notification client that records commands instead of sending them."""

    def __init__(self, succeed: bool = True):
        super().__init__(enabled=False)
        self.succeed = succeed
        self.sent: list[NotificationRequest] = []

    async def send(self, request: NotificationRequest) -> bool:
        self.sent.append(request)
        return self.succeed


# ==========================================================================
# Database Fixtures
# ==========================================================================

@pytest_asyncio.fixture(scope="function")
async def engine(tmp_path) -> AsyncGenerator[AsyncEngine, None]:
    """File-backed SQLite engine with a busy timeout, tables created."""
    test_engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'engine.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield test_engine

    await test_engine.dispose()


@pytest.fixture
def session_factory(engine: AsyncEngine) -> async_sessionmaker:
    return async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


@pytest_asyncio.fixture(scope="function")
async def db_session(session_factory: async_sessionmaker) -> AsyncGenerator[AsyncSession, None]:
    """Provide a database session for each test."""
    async with session_factory() as session:
        yield session


# ==========================================================================
# Engine Collaborators
# ==========================================================================

@pytest.fixture
def clock() -> FixedClock:
    """Clock frozen at 2024-06-01 12:00 UTC."""
    return FixedClock(START)


@pytest_asyncio.fixture
async def notifier() -> AsyncGenerator[RecordingNotifier, None]:
    recording = RecordingNotifier()
    yield recording
    await recording.close()


@pytest_asyncio.fixture
async def failing_notifier() -> AsyncGenerator[RecordingNotifier, None]:
    """Notifier whose every dispatch fails."""
    recording = RecordingNotifier(succeed=False)
    yield recording
    await recording.close()


# ==========================================================================
# HTTP Client
# ==========================================================================

@pytest_asyncio.fixture(scope="function")
async def client(
    session_factory: async_sessionmaker,
    clock: FixedClock,
    notifier: RecordingNotifier,
) -> AsyncGenerator[AsyncClient, None]:
    """
    Provide test HTTP client with database, clock and notifier overrides.
    """
    async def override_get_db() -> AsyncGenerator[AsyncSession, None]:
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_clock] = lambda: clock
    app.dependency_overrides[get_notifier] = lambda: notifier

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as http_client:
        yield http_client

    app.dependency_overrides.clear()


# ==========================================================================
# Data Fixtures
# ==========================================================================

@pytest.fixture
def make_competition(session_factory: async_sessionmaker):
    """
    Factory for competitions; ACTIVE and free unless told otherwise.

    Rows are committed through a separate session and returned detached.
    """

    async def _make(
        entry_fee: int = 0,
        status: CompetitionStatus = CompetitionStatus.ACTIVE,
        end_date: datetime = None,
        name: str = "Par 3 Challenge",
    ) -> Competition:
        competition = Competition(
            id=uuid4(),
            name=name,
            entry_fee=entry_fee,
            commission_amount=0,
            status=status,
            start_date=START,
            end_date=end_date,
        )
        async with session_factory() as session:
            session.add(competition)
            await session.commit()
            await session.refresh(competition)
        return competition

    return _make


@pytest_asyncio.fixture
async def competition(make_competition) -> Competition:
    """Free, active competition."""
    return await make_competition()


@pytest_asyncio.fixture
async def paid_competition(make_competition) -> Competition:
    """Active competition with a 5.00 entry fee."""
    return await make_competition(entry_fee=500, name="Charity Hole-in-One")


@pytest.fixture
def make_staff_code(session_factory: async_sessionmaker):
    async def _make(
        prefix: str = "CLUB",
        suffix: str = "1234",
        active: bool = True,
        valid_from: datetime = None,
        valid_until: datetime = None,
        max_uses: int = None,
        current_uses: int = 0,
    ) -> StaffCode:
        code = StaffCode(
            id=uuid4(),
            code_prefix=prefix,
            code_suffix=suffix,
            active=active,
            valid_from=valid_from,
            valid_until=valid_until,
            max_uses=max_uses,
            current_uses=current_uses,
        )
        async with session_factory() as session:
            session.add(code)
            await session.commit()
            await session.refresh(code)
        return code

    return _make


# ==========================================================================
# Identity Fixtures
# ==========================================================================

@pytest.fixture
def player_id() -> UUID:
    return uuid4()


@pytest.fixture
def staff_id() -> UUID:
    return uuid4()


@pytest.fixture
def player_headers(player_id: UUID) -> dict[str, str]:
    """Authorization headers for the test player."""
    token = create_access_token(player_id, role="player")
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def other_player_headers() -> dict[str, str]:
    token = create_access_token(uuid4(), role="player")
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def staff_headers(staff_id: UUID) -> dict[str, str]:
    """Authorization headers for a staff member."""
    token = create_access_token(staff_id, role="staff")
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def service_headers() -> dict[str, str]:
    """Authorization headers for the payment collaborator."""
    token = create_access_token(uuid4(), role="service")
    return {"Authorization": f"Bearer {token}"}
