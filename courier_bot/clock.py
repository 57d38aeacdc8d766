from datetime import date, datetime, timedelta, tzinfo
from typing import Callable, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from .config import DEFAULT_TIMEZONE, log
from .models import now_utc


def safe_tz(name: Optional[str], default: str = DEFAULT_TIMEZONE) -> tzinfo:
    """Safely get a timezone, falling back to the default zone."""
    for candidate in (name, default):
        if not candidate:
            continue
        try:
            return ZoneInfo(candidate)
        except (ZoneInfoNotFoundError, ValueError):
            continue
    return ZoneInfo(DEFAULT_TIMEZONE)


def fmt_date(d: Optional[date]) -> str:
    """DD.MM.YYYY as shown to drivers."""
    if not d:
        return ""
    return d.strftime("%d.%m.%Y")


class AdminClock:
    """Calendar dates as seen in the administrator's timezone.

    The timezone is read from the repository on every call so a change
    made by the admin applies from the next tick on. A failed or bogus
    lookup degrades to ``default_timezone`` instead of raising.
    """

    def __init__(self, repository, default_timezone: str = DEFAULT_TIMEZONE,
                 now: Callable[[], datetime] = now_utc):
        self.repository = repository
        self.default_timezone = default_timezone
        self._now = now

    async def timezone_name(self) -> str:
        try:
            name = await self.repository.get_admin_timezone()
        except Exception as e:
            log(f"Admin timezone lookup failed: {e}")
            return self.default_timezone
        if not name:
            return self.default_timezone
        try:
            ZoneInfo(name)
        except (ZoneInfoNotFoundError, ValueError):
            log(f"Unknown admin timezone {name!r}, using {self.default_timezone}")
            return self.default_timezone
        return name

    async def timezone(self) -> tzinfo:
        return safe_tz(await self.timezone_name(), self.default_timezone)

    async def now(self) -> datetime:
        return self._now().astimezone(await self.timezone())

    async def today(self) -> date:
        return (await self.now()).date()

    async def tomorrow(self) -> date:
        return await self.today() + timedelta(days=1)
