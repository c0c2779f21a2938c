"""Pytest configuration and fixtures for backend tests."""

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from factories import FakeBackend
from ideas_lab.db import Base
from ideas_lab.integrations.generation_api import GenerationApiClient
from ideas_lab.models import ConsolePreference  # noqa: F401
from ideas_lab.services.notify import NotificationChannel
from ideas_lab.services.preferences import InMemoryPreferenceStore


@pytest.fixture
def db_engine():
    """Create an in-memory SQLite database engine for testing."""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    return engine


@pytest.fixture
def session_factory(db_engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=db_engine)


@pytest.fixture
def backend():
    return FakeBackend()


@pytest.fixture
def client(backend):
    return GenerationApiClient(base_url="http://backend.test", token="test-token", transport=backend.transport())


@pytest.fixture
def notifications():
    return NotificationChannel(ttl_sec=60, throttle_sec=0)


@pytest.fixture
def preferences():
    return InMemoryPreferenceStore()
