"""Pytest fixtures for whatsapp-crm tests."""

import pathlib

import pytest
from dotenv import load_dotenv
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from core.models import Base
from fakes import FakeTransport


def pytest_configure(config: pytest.Config) -> None:
    """Load .env from project root so DATABASE_URL is set for integration tests."""
    root = pathlib.Path(__file__).resolve().parent.parent
    load_dotenv(root / ".env")


@pytest.fixture
def engine():
    """In-memory SQLite shared across threads (pipeline work runs in asyncio.to_thread)."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    @event.listens_for(engine, "connect")
    def _enable_foreign_keys(dbapi_connection, _record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()
