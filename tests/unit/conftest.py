from __future__ import annotations

import pytest
from fakes import FakeRedis, RecordingCollaborators
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from streamix_sync.queue.handlers import build_handler_table
from streamix_sync.queue.retry import RetryPolicy
from streamix_sync.storage.jobs import JobStore
from streamix_sync.storage.models import Base


@pytest.fixture()
def fake_redis() -> FakeRedis:
    return FakeRedis()


@pytest.fixture()
def collaborators() -> RecordingCollaborators:
    return RecordingCollaborators()


@pytest.fixture()
def handlers(collaborators):
    return build_handler_table(collaborators)


@pytest.fixture()
def session_factory():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    factory = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    yield factory
    engine.dispose()


@pytest.fixture()
def job_store(session_factory) -> JobStore:
    return JobStore(
        session_factory,
        retry_policy=RetryPolicy(max_attempts=3, base_delay_sec=15, max_delay_sec=3600, jitter=0),
        unique_period_sec=300,
    )
