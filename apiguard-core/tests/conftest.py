"""
Shared fixtures: temporary SQLite store, frozen clock, capturing alert sink.
"""

from datetime import datetime, timedelta, timezone
from typing import Optional

import pytest
import pytest_asyncio

from apiguard_core.access_list import IPAccessListManager
from apiguard_core.alerts import Alerter, MemoryAlertSink
from apiguard_core.exceptions import StoreUnavailableError
from apiguard_core.metrics import MetricsRecorder
from apiguard_core.models import EventKind
from apiguard_core.responder import AutomaticResponder
from apiguard_core.store import Database, EventStore, SecurityEventRow

START = datetime(2026, 3, 2, 12, 0, 0, tzinfo=timezone.utc)


class FrozenClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now: datetime = START):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class BrokenStore:
    """Stands in for an EventStore whose database is unreachable."""

    def __getattr__(self, name):
        async def fail(*args, **kwargs):
            raise StoreUnavailableError("connection refused", operation=name)
        return fail


async def seed_events(
    database: Database,
    ip: str,
    count: int,
    at: datetime,
    kind: EventKind = EventKind.REQUEST,
    endpoint: Optional[str] = None,
    api_key: Optional[str] = None,
    status_code: Optional[int] = None,
    user_agent: Optional[str] = None,
    spacing: timedelta = timedelta(0),
) -> None:
    """Bulk insert ``count`` events, the n-th at ``at - n * spacing``."""
    metadata = {}
    if status_code is not None:
        metadata["status_code"] = status_code
    if user_agent is not None:
        metadata["user_agent"] = user_agent
    rows = [
        SecurityEventRow(
            ip_address=ip,
            event_kind=kind.value,
            endpoint=endpoint,
            api_key=api_key,
            timestamp=at - i * spacing,
            metadata_=dict(metadata),
        )
        for i in range(count)
    ]
    async with database.session() as session:
        session.add_all(rows)


@pytest.fixture
def clock():
    return FrozenClock()


@pytest_asyncio.fixture
async def database(tmp_path):
    db = Database.from_url(f"sqlite+aiosqlite:///{tmp_path / 'guard.db'}")
    await db.create_all()
    yield db
    await db.close()


@pytest.fixture
def store(database):
    return EventStore(database)


@pytest.fixture
def access_list(store, clock):
    return IPAccessListManager(store, clock=clock)


@pytest.fixture
def alert_sink():
    return MemoryAlertSink()


@pytest.fixture
def alerter(alert_sink):
    return Alerter([alert_sink])


@pytest.fixture
def metrics():
    return MetricsRecorder(service="apiguard-test", environment="test")


@pytest.fixture
def responder(store, access_list, alerter, metrics, clock):
    return AutomaticResponder(store, access_list, alerter, metrics, clock=clock)
