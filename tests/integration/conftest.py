"""HTTP fixtures: the app over ASGITransport with services on a SQLite store."""

import time

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from phi_audit.api.dependencies import build_services, get_services
from phi_audit.main import app
from tests.helpers import ManualClock


@pytest.fixture
def clock() -> ManualClock:
    # Session guards compare against real token timestamps
    return ManualClock(start=float(int(time.time())))


@pytest_asyncio.fixture
async def services(store, crypto, clock):
    services = build_services(store=store, crypto=crypto, clock=clock)
    yield services
    services.sessions.close_all()
    await services.ingestion.wait_idle()
    await services.outbox.flush()


@pytest_asyncio.fixture
async def client(services):
    app.dependency_overrides[get_services] = lambda: services
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()
