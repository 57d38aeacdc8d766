from datetime import date

import pytest

from courier_bot import texts
from courier_bot.errors import (
    DriverNotBound,
    InvalidToken,
    JourneyExpired,
    PersistenceFailure,
    RouteClosed,
    TokenAlreadyClaimed,
)
from courier_bot.models import RouteStatus

VILNIUS = (54.6872, 25.2797)


async def test_unknown_or_empty_token_is_invalid(session):
    with pytest.raises(InvalidToken):
        await session.redeem_token("does-not-exist", 1)
    with pytest.raises(InvalidToken):
        await session.redeem_token("   ", 1)


async def test_redeem_binds_chat_without_touching_status(session, make_driver):
    driver = await make_driver(journey_start_date=date(2024, 6, 1), journey_end_date=date(2024, 6, 5))

    r = await session.redeem_token(driver.token, 501)

    assert r.new_route is False
    assert r.driver.chat_id == 501
    assert r.driver.linked_at
    assert r.driver.route_status == RouteStatus.NOT_STARTED_YET
    assert r.driver.is_active is False


async def test_second_chat_cannot_take_a_live_link(session, make_driver):
    driver = await make_driver(journey_start_date=date(2024, 6, 1), journey_end_date=date(2024, 6, 5))
    await session.redeem_token(driver.token, 100)
    receipt = await session.receive_location(100, *VILNIUS)
    assert receipt.driver.route_status == RouteStatus.IN_PROGRESS

    with pytest.raises(TokenAlreadyClaimed):
        await session.redeem_token(driver.token, 200)


async def test_same_chat_can_redeem_again(session, make_driver):
    driver = await make_driver(journey_start_date=date(2024, 6, 1), journey_end_date=date(2024, 6, 5))
    await session.redeem_token(driver.token, 100)
    await session.receive_location(100, *VILNIUS)

    r = await session.redeem_token(driver.token, 100)
    assert r.driver.route_status == RouteStatus.IN_PROGRESS


async def test_stopped_driver_link_can_be_reclaimed(session, make_driver):
    driver = await make_driver(chat_id=100, route_status=RouteStatus.STOPPED,
                               last_reminded_date=date(2024, 6, 1))

    r = await session.redeem_token(driver.token, 200)
    assert r.driver.chat_id == 200


async def test_restart_with_new_window_reports_new_route(session, store, now, make_driver):
    now.set(2024, 6, 8, 9, 0)
    driver = await make_driver(
        chat_id=123,
        route_status=RouteStatus.STOPPED,
        journey_start_date=date(2024, 5, 1),
        journey_end_date=date(2024, 5, 3),
        stopped_window_start=date(2024, 5, 1),
        stopped_window_end=date(2024, 5, 3),
        last_reminded_date=date(2024, 5, 3),
    )
    # admin assigns a new window and resets the reminder date
    await store.update_driver(driver.id, {
        "journey_start_date": date(2024, 6, 10),
        "journey_end_date": date(2024, 6, 15),
        "last_reminded_date": None,
    })

    r = await session.redeem_token(driver.token, 123)

    assert r.new_route is True
    assert r.driver.route_status == RouteStatus.NOT_STARTED_YET
    assert r.driver.is_active is False
    text = texts.new_route_text(r.driver.name, r.driver.window)
    assert "Start: 10.06.2024" in text
    assert "End: 15.06.2024" in text


async def test_first_time_driver_gets_plain_welcome(session, make_driver):
    driver = await make_driver(journey_start_date=date(2024, 6, 10), journey_end_date=date(2024, 6, 15))
    r = await session.redeem_token(driver.token, 9)
    assert r.new_route is False


async def test_location_from_unknown_chat_is_rejected(session):
    with pytest.raises(DriverNotBound):
        await session.receive_location(404, *VILNIUS)


async def test_first_location_starts_the_route(session, store, make_driver):
    driver = await make_driver(journey_start_date=date(2024, 6, 1), journey_end_date=date(2024, 6, 5))
    await session.redeem_token(driver.token, 77)

    first = await session.receive_location(77, *VILNIUS)
    second = await session.receive_location(77, 54.70, 25.30)

    assert first.first_contact is True
    assert second.first_contact is False
    assert first.driver.route_status == RouteStatus.IN_PROGRESS
    assert first.driver.is_active is True
    assert first.location.timezone == "Europe/Vilnius"
    assert len(await store.list_locations(driver.id)) == 2


async def test_location_after_journey_end_is_refused(session, store, now, make_driver):
    now.set(2024, 6, 6, 9, 0)
    driver = await make_driver(chat_id=77, journey_start_date=date(2024, 6, 1), journey_end_date=date(2024, 6, 5))

    with pytest.raises(JourneyExpired):
        await session.receive_location(77, *VILNIUS)

    stopped = await store.find_driver_by_id(driver.id)
    assert stopped.route_status == RouteStatus.STOPPED
    assert stopped.is_active is False
    assert await store.list_locations(driver.id) == []


async def test_expiry_uses_the_admin_day(session, store, now, make_driver):
    # 21:30 UTC on the 5th is already the 6th in Vilnius
    now.set(2024, 6, 5, 21, 30)
    await make_driver(chat_id=77, journey_start_date=date(2024, 6, 1), journey_end_date=date(2024, 6, 5))
    with pytest.raises(JourneyExpired):
        await session.receive_location(77, *VILNIUS)


async def test_stopped_route_refuses_locations(session, store, make_driver):
    driver = await make_driver(chat_id=77, route_status=RouteStatus.STOPPED,
                               journey_start_date=date(2024, 6, 1), journey_end_date=date(2024, 6, 5),
                               stopped_window_start=date(2024, 6, 1), stopped_window_end=date(2024, 6, 5),
                               last_reminded_date=date(2024, 6, 2))

    with pytest.raises(RouteClosed):
        await session.receive_location(77, *VILNIUS)
    assert await store.list_locations(driver.id) == []


async def test_stopped_driver_with_new_window_is_rearmed_by_a_location(session, store, make_driver):
    driver = await make_driver(chat_id=77, route_status=RouteStatus.STOPPED,
                               journey_start_date=date(2024, 6, 3), journey_end_date=date(2024, 6, 9),
                               stopped_window_start=date(2024, 5, 1), stopped_window_end=date(2024, 5, 3),
                               last_reminded_date=None)
    await store.insert_location(driver.id, 1.0, 1.0)

    receipt = await session.receive_location(77, *VILNIUS)

    assert receipt.driver.route_status == RouteStatus.IN_PROGRESS
    assert receipt.first_contact is False


async def test_save_failure_surfaces(session, store, make_driver, monkeypatch):
    driver = await make_driver(journey_start_date=date(2024, 6, 1), journey_end_date=date(2024, 6, 5))
    await session.redeem_token(driver.token, 77)

    async def broken(*args, **kwargs):
        raise PersistenceFailure("disk full")

    monkeypatch.setattr(store, "insert_location", broken)
    with pytest.raises(PersistenceFailure):
        await session.receive_location(77, *VILNIUS)


async def test_end_route_is_idempotent(session, store, make_driver):
    driver = await make_driver(journey_start_date=date(2024, 6, 1), journey_end_date=date(2024, 6, 5))
    await session.redeem_token(driver.token, 77)
    await session.receive_location(77, *VILNIUS)

    first = await session.end_route(77)
    second = await session.end_route(77)

    assert first.route_status == second.route_status == RouteStatus.STOPPED
    assert second.is_active is False

    with pytest.raises(DriverNotBound):
        await session.end_route(12345)


async def test_switching_links_ends_the_previous_route(session, store, make_driver):
    a = await make_driver("A", journey_start_date=date(2024, 6, 1), journey_end_date=date(2024, 6, 5))
    b = await make_driver("B", journey_start_date=date(2024, 6, 1), journey_end_date=date(2024, 6, 5))
    await session.redeem_token(a.token, 77)
    await session.receive_location(77, *VILNIUS)

    await session.redeem_token(b.token, 77)

    assert (await store.find_driver_by_id(a.id)).route_status == RouteStatus.STOPPED
    assert (await session.current_driver(77)).id == b.id


async def test_location_before_window_opens_keeps_route_waiting(session, store, make_driver):
    driver = await make_driver(journey_start_date=date(2024, 6, 10), journey_end_date=date(2024, 6, 15))
    await session.redeem_token(driver.token, 77)

    receipt = await session.receive_location(77, *VILNIUS)

    assert receipt.driver.route_status == RouteStatus.NOT_STARTED_YET
    assert receipt.driver.is_active is False
    assert len(await store.list_locations(driver.id)) == 1
    # the link is not locked to this chat yet
    r = await session.redeem_token(driver.token, 88)
    assert r.driver.chat_id == 88


async def test_new_route_on_start_counts_as_todays_reminder(session, scheduler, store, messenger, make_driver):
    driver = await make_driver(
        chat_id=123,
        route_status=RouteStatus.STOPPED,
        journey_start_date=date(2024, 6, 3),
        journey_end_date=date(2024, 6, 9),
        stopped_window_start=date(2024, 5, 1),
        stopped_window_end=date(2024, 5, 3),
    )

    r = await session.redeem_token(driver.token, 123)
    sent, reason = await scheduler.announce_new_route(await store.find_driver_by_id(driver.id))

    assert r.new_route is True
    assert r.driver.last_reminded_date == date(2024, 6, 3)
    assert (sent, reason) == (False, "not_a_new_route")
    assert messenger.sent == []
