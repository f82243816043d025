"""
Pytest configuration and fixtures.

Provides reusable fixtures for polymorphic component testing:
- override_env: In-memory config storage and SQLite for every test
- tracker / registry: Initialized components over a MemoryDocumentStore
- sqlite_engine / db_session: In-memory SQLite with the full model schema
- seeded_db: Jobs, tasks, clients and polymorphic rows with known ids
"""

import os
import uuid
from collections.abc import Generator
from dataclasses import dataclass, field

import pytest
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session
from sqlalchemy.pool import StaticPool

from apps.api.config import DEFAULT_POLYMORPHIC_TYPES, get_settings
from db import Base
from db.models import ActivityLog, Client, Job, Note, Task, User
from packages.polymorphic.persistence import PolymorphicConfigStore
from packages.polymorphic.registry import PolymorphicRegistry
from packages.polymorphic.relationships import InMemoryRelationshipRegistry
from packages.polymorphic.tracker import PolymorphicTracker
from packages.shared.storage.memory import MemoryDocumentStore

TEST_CONFIG_ID = "test-polymorphic-config"

# =============================================================================
# Environment Fixture
# =============================================================================


@pytest.fixture(scope="session", autouse=True)
def override_env() -> Generator[None, None, None]:
    """
    Point settings at in-memory storage and SQLite.

    Scope: session (runs once for entire test session)
    Autouse: True (automatically used by all tests)
    """
    original_env = os.environ.copy()

    os.environ["STORAGE_BACKEND"] = "memory"
    os.environ["DATABASE_URL"] = "sqlite://"
    os.environ["DISCOVERY_CACHE_TTL_SECONDS"] = "0"
    get_settings.cache_clear()

    yield

    os.environ.clear()
    os.environ.update(original_env)
    get_settings.cache_clear()


# =============================================================================
# Component Fixtures
# =============================================================================


@pytest.fixture
def memory_store() -> MemoryDocumentStore:
    """Fresh in-memory document store (shared by trackers within one test)."""
    return MemoryDocumentStore()


class FlakyDocumentStore(MemoryDocumentStore):
    """Memory store whose saves raise OSError while fail_saves is set."""

    def __init__(self) -> None:
        super().__init__()
        self.fail_saves = False

    async def save(self, key: str, document: dict) -> None:
        if self.fail_saves:
            raise OSError(f"disk full while saving {key}")
        await super().save(key, document)


@pytest.fixture
def flaky_store() -> FlakyDocumentStore:
    return FlakyDocumentStore()


@pytest.fixture
def config_store(memory_store: MemoryDocumentStore) -> PolymorphicConfigStore:
    return PolymorphicConfigStore(memory_store, max_backups=3)


@pytest.fixture
def make_tracker(config_store: PolymorphicConfigStore):
    """Factory for trackers over the same store (simulates process restarts)."""

    def _make(config_id: str = TEST_CONFIG_ID) -> PolymorphicTracker:
        return PolymorphicTracker(
            config_store,
            config_id=config_id,
            default_types=DEFAULT_POLYMORPHIC_TYPES,
        )

    return _make


@pytest.fixture
async def tracker(make_tracker) -> PolymorphicTracker:
    """Initialized tracker holding the default (empty) associations."""
    instance = make_tracker()
    await instance.initialize()
    return instance


@pytest.fixture
def relationship_registry() -> InMemoryRelationshipRegistry:
    return InMemoryRelationshipRegistry()


@pytest.fixture
async def registry(
    tracker: PolymorphicTracker,
    relationship_registry: InMemoryRelationshipRegistry,
) -> PolymorphicRegistry:
    """Initialized registry over the tracker fixture."""
    instance = PolymorphicRegistry(tracker, relationship_registry)
    await instance.initialize()
    return instance


# =============================================================================
# Database Fixtures
# =============================================================================


@pytest.fixture
def sqlite_engine() -> Generator[Engine, None, None]:
    """In-memory SQLite engine with every model table created."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def db_session(sqlite_engine: Engine) -> Generator[Session, None, None]:
    session = Session(bind=sqlite_engine)
    try:
        yield session
    finally:
        session.close()


@dataclass
class SeededData:
    """Ids of rows inserted by the seeded_db fixture."""

    client_id: uuid.UUID
    job_ids: list[uuid.UUID] = field(default_factory=list)
    task_ids: list[uuid.UUID] = field(default_factory=list)
    user_id: uuid.UUID | None = None


@pytest.fixture
def seeded_db(db_session: Session) -> SeededData:
    """
    Seed a small business dataset.

    - 1 client, 2 jobs, 1 task, 1 user
    - activity_logs: 2 on jobs, 1 on the task, 1 on the client
    - notes: 1 on a job, 1 on the client
    """
    client = Client(id=uuid.uuid4(), name="Acme Corp")
    jobs = [
        Job(id=uuid.uuid4(), title="Server migration", client_id=client.id),
        Job(id=uuid.uuid4(), title="Printer repair", client_id=client.id),
    ]
    task = Task(id=uuid.uuid4(), title="Back up data", job_id=jobs[0].id)
    user = User(id=uuid.uuid4(), email="tech@example.com", name="Tech")
    db_session.add_all([client, *jobs, task, user])
    db_session.flush()

    db_session.add_all(
        [
            ActivityLog(action="created", loggable_id=jobs[0].id, loggable_type="Job", user_id=user.id),
            ActivityLog(action="updated", loggable_id=jobs[1].id, loggable_type="Job", user_id=user.id),
            ActivityLog(action="created", loggable_id=task.id, loggable_type="Task", user_id=user.id),
            ActivityLog(action="created", loggable_id=client.id, loggable_type="Client"),
            Note(content="Bring cables", notable_id=jobs[0].id, notable_type="Job"),
            Note(content="VIP client", notable_id=client.id, notable_type="Client"),
        ]
    )
    db_session.commit()

    return SeededData(
        client_id=client.id,
        job_ids=[job.id for job in jobs],
        task_ids=[task.id],
        user_id=user.id,
    )
