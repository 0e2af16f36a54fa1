from datetime import date, datetime, timedelta
from types import SimpleNamespace

import pytest
import pytest_asyncio
from fakeredis import aioredis as fake_aioredis

from seatsync.config import Settings
from seatsync.container import build_services
from seatsync.db.session import build_engine, create_schema
from seatsync.models import Route
from seatsync.realtime.broadcaster import LocalBroadcaster
from seatsync.services import inventory

TRAVEL_DATE = date(2026, 3, 10)
RETURN_DATE = date(2026, 3, 14)
SANDBOX_SECRET = "sandbox-secret"


class FakeClock:
    """Controllable stand-in for ``utcnow``."""

    def __init__(self, start=datetime(2026, 3, 1, 8, 0, 0)):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


class RecordingBroadcaster(LocalBroadcaster):
    def __init__(self, connections):
        super().__init__(connections)
        self.events = []

    async def seat_changed(self, event):
        self.events.append(event)
        await super().seat_changed(event)

    def statuses(self, seat_label=None):
        return [(e.scope_id, e.seat_label, e.status) for e in self.events if seat_label in (None, e.seat_label)]


def make_settings(db_path, **overrides):
    values = dict(
        DATABASE_URL=f"sqlite+aiosqlite:///{db_path}",
        AUTO_CREATE_SCHEMA=True,
        SWEEPER_MODE="off",
        BROADCAST_BACKEND="local",
        SANDBOX_PAYMENT_SECRET=SANDBOX_SECRET,
        FLUTTERWAVE_SECRET="flw-secret",
    )
    values.update(overrides)
    return Settings(_env_file=None, **values)


@pytest.fixture
def settings(tmp_path):
    return make_settings(tmp_path / "seatsync.db")


@pytest.fixture
def clock():
    return FakeClock()


@pytest_asyncio.fixture
async def redis():
    client = fake_aioredis.FakeRedis(decode_responses=True)
    await client.flushall()
    yield client
    await client.flushall()


@pytest_asyncio.fixture
async def services(settings, redis, clock):
    engine = build_engine(settings.DATABASE_URL)
    await create_schema(engine)
    svc = build_services(settings, redis=redis, engine=engine, clock=clock)
    recorder = RecordingBroadcaster(svc.connections)
    svc.broadcaster = recorder
    svc.holds.broadcaster = recorder
    yield svc
    await engine.dispose()


async def seed_inventory(session_factory):
    """Two 40-seat buses. Route 1 and 3 share bus A; route 2 is the return on bus B."""
    async with session_factory() as db:
        bus_a = await inventory.provision_vehicle(db, "UAX-001", [str(i) for i in range(1, 41)])
        bus_b = await inventory.provision_vehicle(db, "UAX-002", [str(i) for i in range(1, 41)])
        outbound = Route(name="Kampala - Gulu", origin="Kampala", destination="Gulu", vehicle_id=bus_a.id)
        inbound = Route(name="Gulu - Kampala", origin="Gulu", destination="Kampala", vehicle_id=bus_b.id)
        express = Route(name="Kampala - Gulu express", origin="Kampala", destination="Gulu", vehicle_id=bus_a.id)
        db.add_all([outbound, inbound, express])
        await db.commit()
        return SimpleNamespace(
            route_id=outbound.id,
            vehicle_id=bus_a.id,
            return_route_id=inbound.id,
            return_vehicle_id=bus_b.id,
            shared_route_id=express.id,
        )


@pytest_asyncio.fixture
async def seeded(services):
    return await seed_inventory(services.session_factory)
