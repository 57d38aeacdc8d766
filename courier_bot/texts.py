import html
from datetime import datetime
from typing import Any, Optional

from timezonefinder import TimezoneFinder

from .clock import fmt_date, safe_tz
from .models import Driver, JourneyWindow, Location

LOCATION_BUTTON = "📍 Send my location"
ROUTE_FINISHED_BUTTON = "✅ Route finished"

NEED_PERSONAL_LINK = "You need a personal link to use this bot. Please ask your dispatcher."
INVALID_LINK = "This link is not valid. Please ask your dispatcher for a new one."
LINK_ALREADY_USED = "This link is already used by someone else. Please ask your dispatcher for a new one."
NOT_BOUND = "Your profile is not active. Please open your personal link first."
ROUTE_CLOSED = "🛑 Your route is finished. Locations are no longer collected."
JOURNEY_EXPIRED = "🛑 Route finished. The journey period is over."
ROUTE_ENDED = "🛑 Route finished. Reminders are stopped."
LOCATION_SAVED = "✅ Location received. Thank you!"
LOCATION_SAVE_FAILED = "❌ Could not save your location. Please try again."
REQUEST_LOCATION = "📍 Please send your current location with the button below."
DAILY_REMINDER = "Good morning! Please send your location with the button below."
NOT_A_LOCATION = f'This is not a location. Tap "{LOCATION_BUTTON}" and confirm sending.'
GENERIC_ERROR = "Something went wrong. Please try again later or contact your dispatcher."

TF = TimezoneFinder()


def h(x: Any) -> str:
    """HTML-escape a value for Telegram messages."""
    return html.escape("" if x is None else str(x), quote=False)


def welcome_text(driver: Driver) -> str:
    return (
        f"Hi, {h(driver.name)}! 👋\n\n"
        "Thanks for driving with us. We need to know where you are, "
        "so we will ask for your location every morning."
    )


def window_lines(window: Optional[JourneyWindow]) -> str:
    if window is None:
        return ""
    return f"Start: {fmt_date(window.start)}\nEnd: {fmt_date(window.end)}"


def new_route_text(name: str, window: Optional[JourneyWindow]) -> str:
    lines = [f"🆕 <b>New route</b> for {h(name)}!"]
    dates = window_lines(window)
    if dates:
        lines.append(dates)
    lines.append("")
    lines.append(REQUEST_LOCATION)
    return "\n".join(lines)


def ending_soon_text(driver: Driver) -> str:
    w = driver.window
    end = fmt_date(w.end) if w else ""
    return f"⏳ Your journey ends tomorrow ({end}). Keep sharing your location until then."


def tz_at(lat: float, lon: float) -> Optional[str]:
    try:
        return TF.timezone_at(lat=lat, lng=lon)
    except ValueError:
        return None


def admin_location_text(driver: Driver, loc: Location, fallback_tz: str, first_contact: bool = False) -> str:
    tz_name = loc.timezone or fallback_tz
    try:
        captured = datetime.fromisoformat(loc.captured_at)
    except ValueError:
        captured = None
    when = captured.astimezone(safe_tz(tz_name, fallback_tz)).strftime("%Y-%m-%d %H:%M") if captured else loc.captured_at

    lines = [
        "📍 <b>Location</b>" + (" (first)" if first_contact else ""),
        f"Driver: {h(driver.name)} ({h(driver.id)})",
        f"Coordinates: {loc.latitude:.6f}, {loc.longitude:.6f}",
        f"Time: {h(when)} ({h(tz_name)})",
    ]
    return "\n".join(lines)


def driver_line(driver: Driver) -> str:
    w = driver.window
    dates = f"{fmt_date(w.start)}–{fmt_date(w.end)}" if w else "no window"
    chat = "✅" if driver.chat_id else "❌"
    return f"• <b>{h(driver.name)}</b> <code>{h(driver.id)}</code>\n  {h(driver.route_status.value)} · {h(dates)} · chat {chat}"
