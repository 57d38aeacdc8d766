"""Route status transitions.

Every status write goes through :func:`status_patch`, which derives
``is_active`` from the target status. Callers never pass ``is_active``
themselves, so the flag cannot drift from ``route_status`` even when the
driver record they decided on is stale.

    not-started-yet --first location--> in-progress
    not-started-yet --window ended----> stopped
    in-progress     --end/expiry------> stopped
    stopped         --new window------> not-started-yet
"""

from datetime import date
from typing import Any, Dict, Optional

from .config import log
from .models import Driver, JourneyWindow, RouteStatus
from .store import Repository


def status_patch(status: RouteStatus, **extra: Any) -> Dict[str, Any]:
    if "is_active" in extra:
        raise ValueError("is_active is derived from route_status")
    status = RouteStatus(status)
    patch: Dict[str, Any] = {"route_status": status, "is_active": status == RouteStatus.IN_PROGRESS}
    patch.update(extra)
    return patch


def is_new_route(driver: Optional[Driver], today: date) -> bool:
    """Whether the driver carries a freshly assigned window that has not been started.

    A stopped driver qualifies when the admin reset ``last_reminded_date``
    or when the window no longer matches the one recorded at stop time.
    A driver the admin panel already moved back to ``not-started-yet``
    qualifies while it has not been reminded in the new window yet.
    Windows that already ended never qualify.
    """
    if driver is None:
        return False
    window = driver.window
    if window is None or not window.complete:
        return False
    if driver.chat_id is None:
        return False
    if window.end < today:
        return False

    changed = not window.same_dates(driver.stopped_window_start, driver.stopped_window_end)

    if driver.route_status == RouteStatus.STOPPED:
        return driver.last_reminded_date is None or changed
    if driver.route_status == RouteStatus.NOT_STARTED_YET:
        return driver.has_stopped_window and driver.last_reminded_date is None and changed
    return False


class RouteStateMachine:
    def __init__(self, repository: Repository):
        self.repository = repository

    async def _write(self, driver_id: str, status: RouteStatus, **extra: Any) -> Driver:
        return await self.repository.update_driver(driver_id, status_patch(status, **extra))

    async def activate(self, driver: Driver) -> Driver:
        if driver.route_status == RouteStatus.IN_PROGRESS and driver.is_active:
            return driver
        log(f"Route started for driver {driver.id} ({driver.name})")
        return await self._write(driver.id, RouteStatus.IN_PROGRESS)

    async def end_route(self, driver: Driver, today: date,
                        window: Optional[JourneyWindow] = None) -> Driver:
        """Stop the route. Stopping a stopped driver is a no-op.

        The window being closed is recorded so that a later change of dates
        can be told apart from the old one. An empty ``last_reminded_date``
        is stamped with today: after a stop only an explicit admin reset of
        that field signals a new route.
        """
        current = await self.repository.find_driver_by_id(driver.id)
        if current is None:
            return driver
        if current.route_status == RouteStatus.STOPPED and not current.is_active:
            return current

        closed = window if window is not None else driver.window
        extra: Dict[str, Any] = {
            "stopped_window_start": closed.start if closed else None,
            "stopped_window_end": closed.end if closed else None,
        }
        if current.last_reminded_date is None:
            extra["last_reminded_date"] = today

        log(f"Route stopped for driver {driver.id} ({driver.name})")
        return await self._write(driver.id, RouteStatus.STOPPED, **extra)

    async def rearm(self, driver: Driver) -> Driver:
        """stopped -> not-started-yet for a new window; bookkeeping starts over."""
        log(f"New route armed for driver {driver.id} ({driver.name})")
        updated = await self._write(driver.id, RouteStatus.NOT_STARTED_YET, last_reminded_date=None)
        await self.repository.clear_notifications(driver.id)
        return updated

    async def rearm_if_new_route(self, driver: Optional[Driver], today: date) -> Optional[Driver]:
        """Re-arm a stopped driver that has a new route. Returns the updated driver or None."""
        if driver is None or driver.route_status != RouteStatus.STOPPED:
            return None
        if not is_new_route(driver, today):
            return None
        return await self.rearm(driver)

    async def mark_unreachable(self, driver_id: str) -> Driver:
        # Blocked chat: the driver goes passive but route_status is left alone.
        log(f"Driver {driver_id} blocked the bot, marking inactive")
        return await self.repository.update_driver(driver_id, {"is_active": False})
