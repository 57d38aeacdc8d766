from datetime import date
from types import SimpleNamespace

import httpx
import pytest

from courier_bot.models import RouteStatus
from courier_bot.route_state import status_patch
from courier_bot.webhook import create_app


@pytest.fixture
async def client(store, scheduler):
    app = create_app(SimpleNamespace(repository=store, scheduler=scheduler))
    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test") as ac:
        yield ac


async def recycled_driver(make_driver, **kw):
    data = dict(
        chat_id=123,
        journey_start_date=date(2024, 6, 10),
        journey_end_date=date(2024, 6, 15),
        stopped_window_start=date(2024, 5, 1),
        stopped_window_end=date(2024, 5, 3),
        last_reminded_date=None,
        **status_patch(RouteStatus.STOPPED),
    )
    data.update(kw)
    return await make_driver("Jonas", **data)


def payload(driver_id, **kw):
    body = {
        "type": "new_route",
        "driverId": driver_id,
        "chatId": 123,
        "windowStart": "2024-06-10",
        "windowEnd": "2024-06-15",
        "driverName": "Jonas",
    }
    body.update(kw)
    return body


async def test_health(client):
    r = await client.get("/health")
    assert r.status_code == 200
    assert r.json() == {"ok": True}


async def test_missing_fields_is_bad_request(client):
    r = await client.post("/notify", json={"type": "new_route"})
    assert r.status_code == 400
    assert "driverId" in r.json()["fields"]


async def test_garbage_body_is_bad_request(client):
    r = await client.post("/notify", content=b"{not json", headers={"content-type": "application/json"})
    assert r.status_code == 400


async def test_unsupported_type_is_bad_request(client):
    r = await client.post("/notify", json=payload("x", type="route_ended"))
    assert r.status_code == 400


async def test_unknown_driver_is_not_found(client):
    r = await client.post("/notify", json=payload("missing"))
    assert r.status_code == 404


async def test_new_route_is_announced(client, store, messenger, make_driver):
    driver = await recycled_driver(make_driver)

    r = await client.post("/notify", json=payload(driver.id))

    assert r.status_code == 200
    assert r.json() == {"ok": True, "sent": True}
    text = messenger.to(123)[0]
    assert "Start: 10.06.2024" in text and "End: 15.06.2024" in text
    assert (await store.find_driver_by_id(driver.id)).route_status == RouteStatus.NOT_STARTED_YET


async def test_no_new_route_is_success_without_send(client, messenger, make_driver):
    driver = await recycled_driver(make_driver, stopped_window_start=date(2024, 6, 10),
                                   stopped_window_end=date(2024, 6, 15), last_reminded_date=date(2024, 6, 3))

    r = await client.post("/notify", json=payload(driver.id))

    assert r.status_code == 200
    assert r.json()["sent"] is False
    assert messenger.sent == []


async def test_blocked_chat_is_reported_not_raised(client, store, messenger, make_driver):
    driver = await recycled_driver(make_driver)
    messenger.blocked.add(123)

    r = await client.post("/notify", json=payload(driver.id))

    assert r.status_code == 200
    assert r.json() == {"ok": True, "sent": False, "reason": "recipient_blocked"}
    assert (await store.find_driver_by_id(driver.id)).is_active is False


async def test_partial_payload_is_bad_request(client, messenger, make_driver):
    driver = await recycled_driver(make_driver)

    r = await client.post("/notify", json={"type": "new_route", "driverId": driver.id})

    assert r.status_code == 400
    assert set(r.json()["fields"]) == {"chatId", "windowStart", "windowEnd", "driverName"}
    assert messenger.sent == []


async def test_repeated_notify_sends_once(client, store, messenger, make_driver):
    driver = await recycled_driver(make_driver)

    first = await client.post("/notify", json=payload(driver.id))
    second = await client.post("/notify", json=payload(driver.id))

    assert first.json() == {"ok": True, "sent": True}
    assert second.json() == {"ok": True, "sent": False, "reason": "not_a_new_route"}
    assert len(messenger.to(123)) == 1
    assert (await store.find_driver_by_id(driver.id)).last_reminded_date == date(2024, 6, 3)
