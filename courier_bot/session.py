from dataclasses import dataclass
from typing import Optional

from .clock import AdminClock
from .config import log
from .errors import DriverNotBound, InvalidToken, JourneyExpired, RouteClosed, TokenAlreadyClaimed
from .models import Driver, Location, RouteStatus, now_iso
from .route_state import RouteStateMachine, is_new_route
from .store import Repository
from .texts import tz_at


@dataclass
class Redemption:
    driver: Driver
    new_route: bool


@dataclass
class LocationReceipt:
    driver: Driver
    location: Location
    first_contact: bool


class DriverSession:
    """What a driver can do from the chat: redeem a link, send locations, end the route."""

    def __init__(self, repository: Repository, clock: AdminClock, machine: RouteStateMachine):
        self.repository = repository
        self.clock = clock
        self.machine = machine

    async def redeem_token(self, token: str, chat_id: int) -> Redemption:
        token = (token or "").strip()
        if not token:
            raise InvalidToken("empty token")

        driver = await self.repository.find_driver_by_token(token)
        if driver is None:
            raise InvalidToken(token)

        if driver.chat_id is not None and driver.chat_id != chat_id and driver.is_active:
            log(f"Token of driver {driver.id} already used by chat {driver.chat_id}")
            raise TokenAlreadyClaimed(driver.id)

        today = await self.clock.today()
        # Judged on the record as it was before this binding: a first-time
        # driver has no chat yet and gets the plain welcome.
        new_route = is_new_route(driver, today)

        await self._release_chat(chat_id, keep=driver.id, today=today)
        driver = await self.repository.update_driver(driver.id, {"chat_id": chat_id, "linked_at": now_iso()})
        log(f"Driver {driver.id} linked to chat {chat_id}")

        if new_route:
            rearmed = await self.machine.rearm_if_new_route(driver, today)
            if rearmed is not None:
                driver = rearmed
            # the caller shows the new-route message; it stands in for today's reminder
            driver = await self.repository.update_driver(driver.id, {"last_reminded_date": today})
        return Redemption(driver=driver, new_route=new_route)

    async def _release_chat(self, chat_id: int, keep: str, today) -> None:
        # One chat drives one active route at a time.
        for other in await self.repository.list_drivers_by_status([RouteStatus.IN_PROGRESS]):
            if other.id != keep and other.chat_id == chat_id:
                log(f"Chat {chat_id} switched drivers, ending route of {other.id}")
                await self.machine.end_route(other, today)

    async def receive_location(self, chat_id: int, lat: float, lon: float) -> LocationReceipt:
        driver = await self.repository.find_driver_by_chat_id(chat_id)
        if driver is None:
            raise DriverNotBound(chat_id)

        today = await self.clock.today()

        if driver.route_status == RouteStatus.STOPPED:
            rearmed = await self.machine.rearm_if_new_route(driver, today)
            if rearmed is None:
                raise RouteClosed(driver.id)
            driver = rearmed

        window = driver.window
        if window is not None and window.end is not None and today > window.end:
            await self.machine.end_route(driver, today)
            raise JourneyExpired(driver.id)

        first_contact = not await self.repository.has_any_location(driver.id)
        window_open = window is None or window.start is None or today >= window.start
        if driver.route_status == RouteStatus.NOT_STARTED_YET and window_open:
            driver = await self.machine.activate(driver)

        loc = await self.repository.insert_location(driver.id, lat, lon, tz=tz_at(lat, lon))
        return LocationReceipt(driver=driver, location=loc, first_contact=first_contact)

    async def end_route(self, chat_id: int) -> Driver:
        driver = await self.repository.find_driver_by_chat_id(chat_id)
        if driver is None:
            raise DriverNotBound(chat_id)
        return await self.machine.end_route(driver, await self.clock.today())

    async def current_driver(self, chat_id: int) -> Optional[Driver]:
        return await self.repository.find_driver_by_chat_id(chat_id)
