"""
Pytest Configuration and Fixtures

Provides fixtures for:
- Database sessions (async, in-memory SQLite)
- In-memory task broker and producer
- Test data factories (events, processor configs)
"""
import os
os.environ.setdefault("TASK_BROKER_BACKEND", "memory")

import pytest
from typing import AsyncGenerator, Callable

from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.pool import StaticPool

from eventrelay.api.dependencies import get_task_queue
from eventrelay.db.database import Base, get_db
from eventrelay.db.models.processor_config import ProcessorConfig, ProcessorType
from eventrelay.domain.schemas import Event
from eventrelay.main import app
from eventrelay.workers.producer import TaskProducer
from eventrelay.workers.queue import MemoryTaskQueue


# Test database URL (SQLite in memory for fast tests)
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

WEBHOOK_URL = "https://processor.example.com/hook"


@pytest.fixture(scope="function")
async def async_engine():
    """Create async test database engine"""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        echo=False
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest.fixture(scope="function")
def session_factory(async_engine) -> Callable[[], AsyncSession]:
    """Session maker bound to the test engine, for code that opens its own sessions"""
    return async_sessionmaker(
        async_engine,
        class_=AsyncSession,
        expire_on_commit=False
    )


@pytest.fixture(scope="function")
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Create async database session for tests"""
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest.fixture
def task_queue() -> MemoryTaskQueue:
    return MemoryTaskQueue()


@pytest.fixture
def producer(task_queue: MemoryTaskQueue) -> TaskProducer:
    return TaskProducer(task_queue, retry_delay_seconds=0)


@pytest.fixture(scope="function")
async def test_client(db_session: AsyncSession, task_queue: MemoryTaskQueue):
    """Create test client with database and broker overrides"""
    from httpx import AsyncClient, ASGITransport

    async def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_task_queue] = lambda: task_queue

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()


# ============================================================================
# Test Data Factories
# ============================================================================

@pytest.fixture
def processor_config_factory(db_session: AsyncSession):
    """Factory for creating processor configs"""
    async def _create(
        client_id: str = "client-1",
        entity_types: list | None = None,
        event_types: list | None = None,
        processor_type: str = ProcessorType.HTTP_WEBHOOK.value,
        target: dict | None = None,
        **kwargs
    ) -> ProcessorConfig:
        config = ProcessorConfig(
            client_id=client_id,
            name=kwargs.pop("name", "test processor"),
            entity_types=entity_types if entity_types is not None else ["*"],
            event_types=event_types if event_types is not None else ["*"],
            processor_type=processor_type,
            target=target if target is not None else {"webhook_url": WEBHOOK_URL},
            **kwargs
        )
        db_session.add(config)
        await db_session.commit()
        await db_session.refresh(config)
        return config

    return _create


@pytest.fixture
def event_factory():
    """Factory for domain events"""
    def _create(
        client_id: str = "client-1",
        entity_type: str = "chat_message",
        event_type: str = "created",
        **kwargs
    ) -> Event:
        return Event(
            client_id=client_id,
            entity_type=entity_type,
            event_type=event_type,
            entity_id=kwargs.pop("entity_id", "msg-1"),
            **kwargs
        )

    return _create
