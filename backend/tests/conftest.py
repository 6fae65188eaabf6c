"""Shared pytest fixtures for the campaign engine test suite.

Provides:
- In-memory async SQLite database (no PostgreSQL needed for tests)
- Session factory and a request-style AsyncSession
- A controllable clock, a scriptable delivery provider and a recording publisher
- A fully wired runtime (stores, event log, engine) and scheduler
- FastAPI test client (httpx.AsyncClient) with dependency overrides
- Sample flow definitions
"""

import os
from datetime import datetime, timedelta
from typing import Any, AsyncGenerator

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.pool import StaticPool

# Override settings BEFORE any app imports
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("REDIS_URL", "redis://localhost:6379/0")
os.environ.setdefault("ENVIRONMENT", "testing")
os.environ.setdefault("LOG_FORMAT", "text")
os.environ.setdefault("DELIVERY_BACKEND", "log")
os.environ.setdefault("NOTIFICATION_BACKEND", "none")

from app.config import get_settings  # noqa: E402
from app.runtime import build_runtime  # noqa: E402
from campaign.jobs import InlineJobQueue  # noqa: E402
from campaign.retry_strategies import RetryStrategy  # noqa: E402
from db.base import Base  # noqa: E402
from db.database import create_session_factory  # noqa: E402
from delivery.base import DeliveryProvider, DispatchResult  # noqa: E402
from notifications.publisher import NotificationPublisher  # noqa: E402


# ---------------------------------------------------------------------------
# Test doubles
# ---------------------------------------------------------------------------

class FakeClock:
    """Naive-UTC clock that only moves when told to."""

    def __init__(self, now: datetime = datetime(2025, 1, 6, 9, 0, 0)):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class FakeDelivery(DeliveryProvider):
    """Delivery provider that succeeds unless told otherwise.

    ``script`` queues results for upcoming dispatches; once the script runs
    out every dispatch succeeds.
    """

    name = "fake"

    def __init__(self):
        self.calls: list[dict[str, Any]] = []
        self._script: list[DispatchResult] = []

    def script(self, *results: DispatchResult) -> None:
        self._script.extend(results)

    def fail_next(self, times: int = 1, retryable: bool = True, error: str = "provider unavailable") -> None:
        self.script(*[DispatchResult(success=False, error=error, retryable=retryable) for _ in range(times)])

    async def dispatch(self, recipient_context, template_ref, idempotency_key) -> DispatchResult:
        self.calls.append({
            "recipient": recipient_context,
            "template": template_ref,
            "idempotency_key": idempotency_key,
        })
        if self._script:
            return self._script.pop(0)
        return DispatchResult(success=True, provider_message_id=f"msg-{len(self.calls)}")


class RecordingPublisher(NotificationPublisher):
    def __init__(self):
        self.messages: list[tuple[str, str, dict]] = []

    async def publish(self, flow_id: str, event_type: str, payload: dict) -> None:
        self.messages.append((flow_id, event_type, payload))

    def types(self) -> list[str]:
        return [event_type for _, event_type, _ in self.messages]


async def _no_sleep(_seconds: float) -> None:
    return None


# ---------------------------------------------------------------------------
# Database fixtures
# ---------------------------------------------------------------------------

@pytest_asyncio.fixture
async def db_engine():
    """Fresh in-memory database per test; StaticPool shares one connection."""
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
        echo=False,
    )
    # Import all models so Base.metadata knows about them
    import db.models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return create_session_factory(db_engine)


@pytest_asyncio.fixture
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """A session that commits on exit, like the API's ``get_db``."""
    async with session_factory() as session:
        yield session
        await session.commit()


# ---------------------------------------------------------------------------
# Runtime fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def delivery() -> FakeDelivery:
    return FakeDelivery()


@pytest.fixture
def publisher() -> RecordingPublisher:
    return RecordingPublisher()


@pytest.fixture
def runtime(session_factory, delivery, publisher, clock):
    """Stores, event log and engine wired to the test database."""
    return build_runtime(session_factory, delivery, publisher, settings=get_settings(), clock=clock)


@pytest.fixture
def engine(runtime):
    return runtime.engine


@pytest.fixture
def job_queue(runtime) -> InlineJobQueue:
    """Runs start-run jobs to completion before ``enqueue_start_run`` returns."""
    return InlineJobQueue(
        runtime.engine,
        runtime.flows,
        runtime.failed_tasks,
        strategy=RetryStrategy.exponential(max_retries=3, base_delay=5.0, jitter=False),
        sleep=_no_sleep,
        background=False,
    )


@pytest.fixture
def scheduler(runtime, job_queue):
    return runtime.build_scheduler(job_queue)


@pytest.fixture
def make_flow(runtime):
    """Create a flow row: ``await make_flow(definition, status="active", ...)``."""

    async def _make(definition: dict, name: str = "Test flow", status: str = "active", **values):
        return await runtime.flows.create(
            name=name,
            description="",
            definition=definition,
            status=status,
            audience=values.pop("audience", []),
            **values,
        )

    return _make


# ---------------------------------------------------------------------------
# Flow definitions
# ---------------------------------------------------------------------------

@pytest.fixture
def linear_definition() -> dict:
    """start -> welcome -> followup -> end"""
    return {
        "nodes": [
            {"id": "start", "type": "start", "data": {}},
            {"id": "welcome", "type": "action", "data": {"template": "welcome", "subject": "Welcome!"}},
            {"id": "followup", "type": "action", "data": {"template": "followup", "subject": "Getting started"}},
            {"id": "end", "type": "end", "data": {}},
        ],
        "edges": [
            {"source": "start", "target": "welcome"},
            {"source": "welcome", "target": "followup"},
            {"source": "followup", "target": "end"},
        ],
    }


@pytest.fixture
def welcome_definition() -> dict:
    """Welcome, wait 2 days, remind subjects who did not open the welcome email."""
    return {
        "nodes": [
            {"id": "start", "type": "start", "data": {}},
            {"id": "welcome", "type": "action", "data": {"template": "welcome", "subject": "Welcome!"}},
            {"id": "wait", "type": "delay", "data": {"amount": 2, "unit": "days"}},
            {"id": "opened", "type": "condition", "data": {"predicateType": "action_opened"}},
            {"id": "reminder", "type": "action", "data": {"template": "reminder", "subject": "Reminder"}},
            {"id": "end", "type": "end", "data": {}},
        ],
        "edges": [
            {"source": "start", "target": "welcome"},
            {"source": "welcome", "target": "wait"},
            {"source": "wait", "target": "opened"},
            {"source": "opened", "target": "end", "branch": "true"},
            {"source": "opened", "target": "reminder", "branch": "false"},
            {"source": "reminder", "target": "end"},
        ],
    }


# ---------------------------------------------------------------------------
# App / HTTP client fixtures
# ---------------------------------------------------------------------------

@pytest_asyncio.fixture
async def app(session_factory, runtime, job_queue, scheduler):
    """FastAPI app wired to the test database and runtime (lifespan not run)."""
    from app.dependencies import get_db
    from app.main import create_app

    test_app = create_app()

    async def _get_db():
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    test_app.dependency_overrides[get_db] = _get_db
    test_app.state.runtime = runtime
    test_app.state.job_queue = job_queue
    test_app.state.scheduler = scheduler

    yield test_app

    test_app.dependency_overrides.clear()


@pytest_asyncio.fixture
async def client(app) -> AsyncGenerator[AsyncClient, None]:
    """Async HTTP test client."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test", follow_redirects=True) as ac:
        yield ac
