# tests/conftest.py

import os
import tempfile

# Point the app-level engine at a throwaway SQLite file before leadrouter is imported
os.environ.setdefault(
    "DATABASE_URL",
    f"sqlite:///{os.path.join(tempfile.mkdtemp(prefix='leadrouter-'), 'app.db')}",
)

import pytest
import pytest_asyncio
from datetime import datetime, timedelta, timezone
from uuid import uuid4

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from leadrouter.database import build_engine, init_db
from leadrouter.models import Location, LocationCapacity
from leadrouter.schemas.routing import LeadAssignmentRequest
from leadrouter.services.capacity_ledger import CapacityLedger, utc_today
from leadrouter.services.crm_client import RecordingInstructionSink
from leadrouter.services.geocoder import Geocoder, ZipCodeDirectory
from leadrouter.services.notification import RecordingAlertSink

from tests.helpers import NYC


@pytest_asyncio.fixture
async def db_engine(tmp_path):
    """Fresh SQLite file database per test (real transactions, multi-connection)."""
    engine = build_engine(f"sqlite:///{tmp_path / 'routing.db'}")
    await init_db(bind=engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)


@pytest_asyncio.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def make_location(db):
    """
    Factory: persisted, detached Location; `age_days` orders created_at (older first).

    Detached so a rollback inside the code under test never expires it.
    """
    counter = {"n": 0}

    async def _make(name=None, coords=NYC, capacity=100, active=True, age_days=None, **fields):
        counter["n"] += 1
        if age_days is None:
            age_days = 100 - counter["n"]
        location = Location(
            id=uuid4(),
            name=name or f"Location {counter['n']}",
            address=f"{counter['n']} Main St",
            latitude=coords[0] if coords else None,
            longitude=coords[1] if coords else None,
            active=active,
            max_daily_capacity=capacity,
            created_at=datetime.now(timezone.utc) - timedelta(days=age_days),
            **fields,
        )
        db.add(location)
        await db.commit()
        await db.refresh(location)
        db.expunge(location)
        return location

    return _make


@pytest.fixture
def set_usage(db):
    """Seed today's ledger row for a location."""

    async def _set(location, current, capacity_date=None):
        entry = LocationCapacity(
            location_id=location.id,
            capacity_date=capacity_date or utc_today(),
            current_leads=current,
            max_capacity=location.max_daily_capacity,
            utilization_rate=current / location.max_daily_capacity,
        )
        db.add(entry)
        await db.commit()
        db.expunge(entry)

    return _set


@pytest.fixture
def ledger(db):
    return CapacityLedger(db)


@pytest.fixture
def geocoder():
    """Table + estimate tiers only; no network provider."""
    return Geocoder(provider=None, directory=ZipCodeDirectory())


@pytest.fixture
def crm_sink():
    return RecordingInstructionSink()


@pytest.fixture
def alert_sink():
    return RecordingAlertSink()


@pytest.fixture
def lead_request():
    """Factory for normalized lead requests."""

    def _make(**overrides):
        payload = {
            "postalCode": "10001",
            "source": "google",
            "externalContactId": f"contact-{uuid4().hex[:8]}",
            "leadScore": 85,
            "firstName": "Dana",
            "lastName": "Reyes",
            "email": "dana@example.com",
        }
        payload.update(overrides)
        return LeadAssignmentRequest.model_validate(payload)

    return _make


def pytest_configure(config):
    config.addinivalue_line("markers", "unit: unit tests")
    config.addinivalue_line("markers", "integration: integration tests")
    config.addinivalue_line("markers", "slow: slow running tests")
