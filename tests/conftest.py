"""Shared test fixtures."""
from typing import Generator
from unittest.mock import patch

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.pool import StaticPool
from sqlmodel import Session, SQLModel, create_engine

from factories import make_ledger_client
from ledgersync.api.deps import get_db, get_ledger_client, get_optional_ledger_client
from ledgersync.api.main import create_app

# Import all models so SQLModel.metadata knows about them
from ledgersync.models.business import Bill, Client, Invoice, Payment, Vendor  # noqa: F401
from ledgersync.models.sync import LedgerConnection, SyncConflict, SyncLog, SyncWatermark  # noqa: F401
from ledgersync.sync.locks import SyncLockRegistry


@pytest.fixture(name="engine")
def engine_fixture():
    """In-memory SQLite engine. Tables recreated fresh for each test."""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SQLModel.metadata.create_all(engine)
    yield engine
    SQLModel.metadata.drop_all(engine)


@pytest.fixture(name="test_session")
def test_session_fixture(engine) -> Generator[Session, None, None]:
    """Provides a DB session connected to in-memory SQLite."""
    with Session(engine) as session:
        yield session


@pytest.fixture(name="locks")
def locks_fixture() -> SyncLockRegistry:
    """A private lock registry so tests never share asyncio locks."""
    return SyncLockRegistry()


@pytest.fixture(name="ledger")
def ledger_fixture():
    """Mock ledger client handed to the API routes."""
    return make_ledger_client()


@pytest.fixture(name="client")
def client_fixture(engine, ledger):
    """TestClient wired to the in-memory engine and the mock ledger."""
    app = create_app()
    app.dependency_overrides[get_db] = lambda: engine
    app.dependency_overrides[get_ledger_client] = lambda: ledger
    app.dependency_overrides[get_optional_ledger_client] = lambda: ledger
    with patch("ledgersync.api.main.get_engine", return_value=engine), TestClient(app) as c:
        yield c
