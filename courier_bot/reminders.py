"""Daily scheduler ticks.

Each tick resolves "today" once in the admin timezone and then handles
every driver on its own: a failure is logged and counted and the loop
moves on. Re-running a tick on the same day is safe: standard reminders
are guarded by ``last_reminded_date`` and closure messages by the
``ended`` journey notification.
"""

from dataclasses import dataclass
from datetime import date
from typing import Optional, Tuple

from . import texts
from .clock import AdminClock
from .config import log, warn
from .errors import RecipientBlocked
from .messenger import Keyboard
from .models import Driver, JourneyWindow, RouteStatus
from .route_state import RouteStateMachine, is_new_route
from .store import Repository


@dataclass
class TickReport:
    reminded: int = 0
    skipped: int = 0
    closed: int = 0
    new_routes: int = 0
    notified: int = 0
    failed: int = 0


class ReminderScheduler:
    def __init__(self, repository: Repository, clock: AdminClock,
                 machine: RouteStateMachine, messenger):
        self.repository = repository
        self.clock = clock
        self.machine = machine
        self.messenger = messenger

    async def _each(self, drivers, handle, report: TickReport, tick: str) -> TickReport:
        for driver in drivers:
            try:
                await handle(driver, report)
            except RecipientBlocked:
                report.failed += 1
                try:
                    await self.machine.mark_unreachable(driver.id)
                except Exception as e:
                    warn(f"[{tick}] could not mark driver {driver.id} inactive: {e}")
            except Exception as e:
                report.failed += 1
                warn(f"[{tick}] driver {driver.id} ({driver.name}) failed: {e!r}")
        log(f"[{tick}] {report}")
        return report

    # ----------------------------
    # Morning reminder
    # ----------------------------
    async def run_daily_reminders(self) -> TickReport:
        today = await self.clock.today()
        drivers = [
            d for d in await self.repository.list_drivers_by_status(
                [RouteStatus.IN_PROGRESS, RouteStatus.NOT_STARTED_YET]
            )
            if d.chat_id is not None
        ]

        async def handle(driver: Driver, report: TickReport) -> None:
            if driver.last_reminded_date == today:
                report.skipped += 1
                return

            window = driver.window
            if window is not None and window.start is not None and today < window.start:
                report.skipped += 1
                return

            if window is not None and window.end is not None and today > window.end:
                await self._close(driver, today, report)
                return

            await self.messenger.send_message(driver.chat_id, texts.DAILY_REMINDER, Keyboard.DRIVER)
            await self.repository.update_driver(driver.id, {"last_reminded_date": today})
            report.reminded += 1

        return await self._each(drivers, handle, TickReport(), "reminders")

    async def _close(self, driver: Driver, today: date, report: TickReport) -> None:
        """Stop an expired route, then either announce a new route or say goodbye once."""
        await self.machine.end_route(driver, today)
        report.closed += 1

        fresh = await self.repository.find_driver_by_id(driver.id)
        rearmed = await self.machine.rearm_if_new_route(fresh, today)
        if rearmed is not None:
            report.new_routes += 1
            if rearmed.chat_id is not None:
                await self.messenger.send_message(
                    rearmed.chat_id, texts.new_route_text(rearmed.name, rearmed.window), Keyboard.DRIVER
                )
            await self.repository.update_driver(rearmed.id, {"last_reminded_date": today})
            return

        first = await self.repository.insert_notification_once(driver.id, "ended")
        if first and driver.chat_id is not None:
            await self.messenger.send_message(driver.chat_id, texts.JOURNEY_EXPIRED, Keyboard.REMOVE)

    # ----------------------------
    # Admin-triggered announcement
    # ----------------------------
    async def announce_new_route(self, driver: Driver,
                                 window: Optional[JourneyWindow] = None,
                                 name: Optional[str] = None) -> Tuple[bool, str]:
        """Tell a driver about a window the admin just assigned.

        Nothing is sent unless the record really carries a new route. The
        message goes to the bound chat only; the stored window and name win
        over the ones supplied by the caller. A sent announcement counts as
        today's reminder, so announcing the same route again is a no-op.
        Returns ``(sent, reason)``.
        """
        today = await self.clock.today()
        if not is_new_route(driver, today):
            log(f"No new route for driver {driver.id} ({driver.route_status.value})")
            return False, "not_a_new_route"

        rearmed = await self.machine.rearm_if_new_route(driver, today)
        if rearmed is not None:
            driver = rearmed

        text = texts.new_route_text(driver.name or name or "", driver.window or window)
        try:
            await self.messenger.send_message(driver.chat_id, text, Keyboard.DRIVER)
        except RecipientBlocked:
            await self.machine.mark_unreachable(driver.id)
            return False, "recipient_blocked"
        await self.repository.update_driver(driver.id, {"last_reminded_date": today})
        return True, "sent"

    # ----------------------------
    # Day-before notice
    # ----------------------------
    async def run_ending_soon_check(self) -> TickReport:
        tomorrow = await self.clock.tomorrow()
        drivers = await self.repository.list_drivers_with_window_ending_on(tomorrow)

        async def handle(driver: Driver, report: TickReport) -> None:
            if await self.repository.has_notification(driver.id, "ending_soon"):
                report.skipped += 1
                return
            await self.repository.insert_notification_once(driver.id, "ending_soon")
            report.notified += 1
            if driver.chat_id is not None:
                await self.messenger.send_message(driver.chat_id, texts.ending_soon_text(driver))

        return await self._each(drivers, handle, TickReport(), "ending-soon")

    # ----------------------------
    # Midnight expiry sweep
    # ----------------------------
    async def run_expiry_sweep(self) -> TickReport:
        today = await self.clock.today()
        drivers = await self.repository.list_drivers_with_window_ended_before(today)

        async def handle(driver: Driver, report: TickReport) -> None:
            await self._close(driver, today, report)

        return await self._each(drivers, handle, TickReport(), "expiry")
