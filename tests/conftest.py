# tests/conftest.py

import os

# Must be set before stayledger.infrastructure.db.session is imported.
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["SYNC_WORKER_ENABLED"] = "false"
os.environ["DB_CONNECT_MAX_RETRIES"] = "1"

import pytest
from fastapi.testclient import TestClient

from stayledger.domain.booking import FeeSchedule
from stayledger.domain.clock import ONE_DAY, ManualClock
from stayledger.domain.lifecycle import BookingLifecycle
from stayledger.infrastructure.db.models import Base
from stayledger.infrastructure.db.session import SessionLocal, engine
from stayledger.infrastructure.ledger.memory_ledger import InMemoryLedger
from stayledger.infrastructure.repositories.projection_repository import SqlProjection
from stayledger.infrastructure.repositories.sync_state_repository import SqlSyncStateStore


@pytest.fixture
def clock():
    return ManualClock(start=1_700_000_000)


@pytest.fixture
def check_in(clock):
    """Midnight two days ahead of the test clock."""
    return (clock.now() // ONE_DAY + 2) * ONE_DAY


@pytest.fixture
def lifecycle(clock):
    return BookingLifecycle(
        clock=clock,
        fee_schedule=FeeSchedule(),
        arbiter="0xarbiter",
        treasury="0xtreasury",
    )


@pytest.fixture
def ledger(lifecycle):
    return InMemoryLedger(lifecycle)


@pytest.fixture
def db():
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    yield SessionLocal
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def projection(db):
    return SqlProjection(db)


@pytest.fixture
def state_store(db, clock):
    return SqlSyncStateStore(db, clock=clock)


@pytest.fixture
def client(db):
    from stayledger.main import app

    with TestClient(app) as client:
        yield client
