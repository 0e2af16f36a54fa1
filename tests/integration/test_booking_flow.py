"""HTTP booking flow against the ASGI app, with fakeredis and a SQLite file database."""
import asyncio

import httpx
import pytest
import pytest_asyncio

from conftest import RETURN_DATE, TRAVEL_DATE
from seatsync.main import create_app

DAY = TRAVEL_DATE.isoformat()


@pytest_asyncio.fixture
async def client(settings, services, seeded):
    app = create_app(settings, services=services)
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as c:
        yield c


def user(name):
    return {"X-User-Id": name}


async def hold(client, who, route_id, label, day=DAY, **extra):
    body = {"scopeId": route_id, "seatLabel": label, "date": day}
    body.update(extra)
    return await client.post("/seats/holds", json=body, headers=user(who))


@pytest.mark.asyncio
async def test_requests_need_a_user(client, seeded):
    resp = await client.get(f"/seats/{seeded.route_id}/availability", params={"date": DAY})
    assert resp.status_code == 401


@pytest.mark.asyncio
async def test_hold_then_book(client, seeded):
    resp = await hold(client, "alice", seeded.route_id, "12")
    assert resp.status_code == 200
    body = resp.json()
    assert body["seatLabel"] == "12"
    assert body["status"] == "selected"
    assert body["expiresAt"] == "2026-03-01T08:15:00.000Z"

    seats = (await client.get(f"/seats/{seeded.route_id}/availability", params={"date": DAY}, headers=user("bob"))).json()
    assert seats["seats"]["12"] == "held"
    mine = (await client.get(f"/seats/{seeded.route_id}/availability", params={"date": DAY}, headers=user("alice"))).json()
    assert mine["seats"]["12"] == "selected"

    resp = await client.post(
        "/bookings/confirm",
        json={"scopeId": seeded.route_id, "date": DAY, "seatLabels": ["12"], "passengerData": [{"name": "Alice"}]},
        headers=user("alice"),
    )
    assert resp.status_code == 200
    booking = resp.json()
    assert booking["confirmedSeats"] == ["12"]
    assert booking["scopeId"] == seeded.route_id

    seats = (await client.get(f"/seats/{seeded.route_id}/availability", params={"date": DAY}, headers=user("bob"))).json()
    assert seats["seats"]["12"] == "booked"


@pytest.mark.asyncio
async def test_error_codes_map_to_http_statuses(client, seeded, services):
    await hold(client, "alice", seeded.route_id, "1")

    taken = await hold(client, "bob", seeded.route_id, "1")
    assert taken.status_code == 409
    assert set(taken.json()["detail"]) == {"error", "code"}
    assert taken.json()["detail"]["code"] == "seat_held"

    not_mine = await client.post(
        "/seats/holds/release", json={"scopeId": seeded.route_id, "seatLabel": "1", "date": DAY}, headers=user("bob")
    )
    assert not_mine.status_code == 403
    assert not_mine.json()["detail"]["code"] == "not_owner"

    no_hold = await client.post(
        "/seats/holds/release", json={"scopeId": seeded.route_id, "seatLabel": "2", "date": DAY}, headers=user("bob")
    )
    assert no_hold.status_code == 404
    assert no_hold.json()["detail"]["code"] == "no_hold"

    missing = await hold(client, "bob", 999, "1")
    assert missing.status_code == 404
    assert missing.json()["detail"]["code"] == "not_found"

    too_long = await hold(client, "bob", seeded.route_id, "3", durationOverride=90)
    assert too_long.status_code == 422
    assert too_long.json()["detail"]["code"] == "invalid_input"

    token = await services.locks.acquire(seeded.vehicle_id, "4")
    locked = await hold(client, "bob", seeded.route_id, "4")
    assert locked.status_code == 423
    assert locked.json()["detail"]["code"] == "seat_locked"
    await services.locks.release(seeded.vehicle_id, "4", token)


@pytest.mark.asyncio
async def test_lapsed_hold_cannot_be_confirmed(client, seeded, clock):
    await hold(client, "alice", seeded.route_id, "5")
    clock.advance(minutes=16)

    resp = await client.post(
        "/bookings/confirm",
        json={"scopeId": seeded.route_id, "date": DAY, "seatLabels": ["5"], "passengerData": [{}]},
        headers=user("alice"),
    )

    assert resp.status_code == 410
    assert resp.json()["detail"]["code"] == "expired"


@pytest.mark.asyncio
async def test_concurrent_holds_on_one_seat_have_one_winner(client, seeded):
    results = await asyncio.gather(*[hold(client, f"user{i}", seeded.route_id, "20") for i in range(10)])

    codes = sorted(r.status_code for r in results)
    assert codes.count(200) == 1
    assert set(codes) - {200} <= {409, 423}


@pytest.mark.asyncio
async def test_batch_hold_reports_failures(client, seeded):
    await hold(client, "bob", seeded.route_id, "8")

    resp = await client.post(
        "/seats/holds/batch",
        json={"scopeId": seeded.route_id, "date": DAY, "seatLabels": ["7", "8", "9"]},
        headers=user("alice"),
    )

    body = resp.json()
    assert resp.status_code == 200
    assert [h["seatLabel"] for h in body["held"]] == ["7", "9"]
    assert body["failed"] == {"8": "seat_held"}


@pytest.mark.asyncio
async def test_my_holds(client, seeded):
    await hold(client, "alice", seeded.route_id, "30")
    await hold(client, "alice", seeded.route_id, "31", day=RETURN_DATE.isoformat())

    resp = await client.get("/seats/holds/mine", headers=user("alice"))

    assert sorted((h["seatLabel"], h["date"]) for h in resp.json()) == [
        ("30", DAY),
        ("31", RETURN_DATE.isoformat()),
    ]


@pytest.mark.asyncio
async def test_round_trip(client, seeded):
    await hold(client, "alice", seeded.route_id, "2")
    await hold(client, "alice", seeded.return_route_id, "2", day=RETURN_DATE.isoformat())

    resp = await client.post(
        "/bookings/round-trip",
        json={
            "outbound": {"scopeId": seeded.route_id, "date": DAY, "seatLabels": ["2"], "passengerData": [{}]},
            "inbound": {
                "scopeId": seeded.return_route_id,
                "date": RETURN_DATE.isoformat(),
                "seatLabels": ["2"],
                "passengerData": [{}],
            },
        },
        headers=user("alice"),
    )

    body = resp.json()
    assert resp.status_code == 200, body
    assert body["groupRef"].startswith("GRP-")
    assert [b["scopeId"] for b in body["bookings"]] == [seeded.route_id, seeded.return_route_id]
    assert {b["groupRef"] for b in body["bookings"]} == {body["groupRef"]}


@pytest.mark.asyncio
async def test_health_and_metrics(client):
    assert (await client.get("/health")).json() == {"status": "ok"}
    assert (await client.get("/ready")).json() == {"status": "ready"}
    metrics = await client.get("/metrics")
    assert metrics.status_code == 200
    assert "seatsync_active_holds" in metrics.text
