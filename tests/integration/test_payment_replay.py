"""Signed payment webhooks: replayed events are ignored, failures release the holds."""
import json

import httpx
import pytest
import pytest_asyncio
from sqlalchemy import func, select

from conftest import RETURN_DATE, TRAVEL_DATE
from seatsync.main import create_app
from seatsync.models.models import Booking

DAY = TRAVEL_DATE.isoformat()


@pytest_asyncio.fixture
async def client(settings, services, seeded):
    app = create_app(settings, services=services)
    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test") as c:
        yield c


def leg(route_id, labels, day=DAY):
    return {"scopeId": route_id, "date": day, "seatLabels": labels, "passengerData": [{} for _ in labels]}


async def start_payment(client, seeded, legs):
    for payload in legs:
        resp = await client.post(
            "/seats/holds/batch",
            json={"scopeId": payload["scopeId"], "date": payload["date"], "seatLabels": payload["seatLabels"]},
            headers={"X-User-Id": "alice"},
        )
        assert resp.status_code == 200
    resp = await client.post(
        "/payments/initiate",
        json={"provider": "sandbox", "amount": "45000", "currency": "UGX", "legs": legs},
        headers={"X-User-Id": "alice"},
    )
    assert resp.status_code == 200, resp.text
    return resp.json()


async def send_webhook(client, services, payload, signature=None):
    body = json.dumps(payload).encode()
    sig = signature or services.gateways["sandbox"].sign(body)
    return await client.post(
        "/payments/webhook/sandbox", content=body, headers={"x-signature": sig, "content-type": "application/json"}
    )


@pytest.mark.asyncio
async def test_initiate_extends_holds(client, services, seeded):
    intent = await start_payment(client, seeded, [leg(seeded.route_id, ["1", "2"])])

    assert intent["provider"] == "sandbox"
    assert intent["intentId"].startswith("sbx_")
    assert intent["holdsExpireAt"] == "2026-03-01T08:20:00.000Z"


@pytest.mark.asyncio
async def test_successful_payment_books_once(client, services, seeded):
    intent = await start_payment(client, seeded, [leg(seeded.route_id, ["1", "2"])])
    event = {"id": "evt_1", "data": {"intent_id": intent["intentId"], "status": "successful"}}

    first = await send_webhook(client, services, event)
    replay = await send_webhook(client, services, event)

    assert first.json() == {"received": True, "status": "succeeded"}
    assert replay.json() == {"received": True, "status": None}
    snapshot = await services.projector.snapshot(seeded.vehicle_id, TRAVEL_DATE)
    assert snapshot["1"] == snapshot["2"] == "booked"
    booked = [e for e in services.broadcaster.events if e.status == "booked" and e.scope_id == seeded.route_id]
    assert len(booked) == 2


@pytest.mark.asyncio
async def test_new_event_for_settled_intent_is_replayed(client, services, seeded):
    intent = await start_payment(client, seeded, [leg(seeded.route_id, ["3"])])
    await send_webhook(client, services, {"id": "evt_a", "data": {"intent_id": intent["intentId"], "status": "paid"}})

    again = await send_webhook(client, services, {"id": "evt_b", "data": {"intent_id": intent["intentId"], "status": "paid"}})

    assert again.json()["status"] == "succeeded"
    async with services.session_factory() as db:
        assert (await db.execute(select(func.count(Booking.id)))).scalar_one() == 1


@pytest.mark.asyncio
async def test_failed_payment_releases_holds(client, services, seeded):
    intent = await start_payment(client, seeded, [leg(seeded.route_id, ["4", "5"])])

    resp = await send_webhook(client, services, {"id": "evt_2", "data": {"intent_id": intent["intentId"], "status": "failed"}})

    assert resp.json()["status"] == "failed"
    snapshot = await services.projector.snapshot(seeded.vehicle_id, TRAVEL_DATE)
    assert snapshot["4"] == snapshot["5"] == "available"


@pytest.mark.asyncio
async def test_pending_event_changes_nothing(client, services, seeded):
    intent = await start_payment(client, seeded, [leg(seeded.route_id, ["6"])])

    resp = await send_webhook(client, services, {"id": "evt_3", "data": {"intent_id": intent["intentId"], "status": "processing"}})

    assert resp.json() == {"received": True, "status": "pending"}
    snapshot = await services.projector.snapshot(seeded.vehicle_id, TRAVEL_DATE, "alice")
    assert snapshot["6"] == "selected"


@pytest.mark.asyncio
async def test_round_trip_payment(client, services, seeded):
    intent = await start_payment(
        client,
        seeded,
        [leg(seeded.route_id, ["7"]), leg(seeded.return_route_id, ["7"], day=RETURN_DATE.isoformat())],
    )

    resp = await send_webhook(client, services, {"id": "evt_4", "data": {"intent_id": intent["intentId"], "status": "successful"}})

    assert resp.json()["status"] == "succeeded"
    assert (await services.projector.snapshot(seeded.return_vehicle_id, RETURN_DATE))["7"] == "booked"


@pytest.mark.asyncio
async def test_bad_signature_is_rejected(client, services, seeded):
    resp = await send_webhook(client, services, {"id": "evt_5", "data": {"intent_id": "x", "status": "paid"}}, signature="0" * 64)
    assert resp.status_code == 400


@pytest.mark.asyncio
async def test_unknown_intent_is_not_found_and_can_be_retried(client, services, seeded):
    event = {"id": "evt_6", "data": {"intent_id": "sbx_missing", "status": "paid"}}

    resp = await send_webhook(client, services, event)

    assert resp.status_code == 404
    # not found is final, the event stays recorded
    assert (await send_webhook(client, services, event)).json() == {"received": True, "status": None}


@pytest.mark.asyncio
async def test_unknown_provider(client, services):
    resp = await client.post("/payments/webhook/paypal", content=b"{}")
    assert resp.status_code == 404
