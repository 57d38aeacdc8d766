from dataclasses import dataclass, field, fields, asdict
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional


class RouteStatus(str, Enum):
    NOT_STARTED_YET = "not-started-yet"
    IN_PROGRESS = "in-progress"
    STOPPED = "stopped"


NOTIFICATION_TYPES = ("ending_soon", "ended")

DATE_FIELDS = (
    "journey_start_date",
    "journey_end_date",
    "reminder_start_date",
    "reminder_end_date",
    "last_reminded_date",
    "stopped_window_start",
    "stopped_window_end",
)


def now_utc() -> datetime:
    """Get current UTC datetime."""
    return datetime.now(timezone.utc)


def now_iso() -> str:
    """Get current UTC datetime as ISO string."""
    return now_utc().isoformat()


def try_parse_date(s: Any) -> Optional[date]:
    """Parse a stored date: date objects pass through, ISO strings are parsed, anything else is None."""
    if s is None or s == "":
        return None
    if isinstance(s, datetime):
        return s.date()
    if isinstance(s, date):
        return s
    try:
        return date.fromisoformat(str(s).strip()[:10])
    except ValueError:
        return None


@dataclass(frozen=True)
class JourneyWindow:
    """The dates a driver is expected on the road.

    ``source`` tells which pair of driver fields produced the window:
    ``"journey"`` (authoritative) or ``"reminder"`` (legacy, only read
    when both journey fields are empty).
    """

    start: Optional[date]
    end: Optional[date]
    source: str

    @property
    def complete(self) -> bool:
        return self.start is not None and self.end is not None

    def same_dates(self, start: Optional[date], end: Optional[date]) -> bool:
        return self.start == start and self.end == end


@dataclass
class Driver:
    id: str
    name: str
    token: str
    chat_id: Optional[int] = None
    route_status: RouteStatus = RouteStatus.NOT_STARTED_YET
    is_active: bool = False
    journey_start_date: Optional[date] = None
    journey_end_date: Optional[date] = None
    reminder_start_date: Optional[date] = None
    reminder_end_date: Optional[date] = None
    last_reminded_date: Optional[date] = None
    stopped_window_start: Optional[date] = None
    stopped_window_end: Optional[date] = None
    linked_at: Optional[str] = None
    created_at: str = field(default_factory=now_iso)

    @property
    def window(self) -> Optional[JourneyWindow]:
        if self.journey_start_date or self.journey_end_date:
            return JourneyWindow(self.journey_start_date, self.journey_end_date, "journey")
        if self.reminder_start_date or self.reminder_end_date:
            return JourneyWindow(self.reminder_start_date, self.reminder_end_date, "reminder")
        return None

    @property
    def has_stopped_window(self) -> bool:
        return self.stopped_window_start is not None or self.stopped_window_end is not None

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "Driver":
        known = {f.name for f in fields(cls)}
        data = {k: v for k, v in d.items() if k in known}
        for k in DATE_FIELDS:
            if k in data:
                data[k] = try_parse_date(data[k])
        status = data.get("route_status") or RouteStatus.NOT_STARTED_YET.value
        try:
            data["route_status"] = RouteStatus(status)
        except ValueError:
            data["route_status"] = RouteStatus.NOT_STARTED_YET
        data["is_active"] = bool(data.get("is_active"))
        return cls(**data)

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["route_status"] = self.route_status.value
        for k in DATE_FIELDS:
            v = d.get(k)
            d[k] = v.isoformat() if v else None
        return d


@dataclass
class Location:
    id: str
    driver_id: str
    latitude: float
    longitude: float
    captured_at: str = field(default_factory=now_iso)
    timezone: Optional[str] = None

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "Location":
        return cls(
            id=str(d.get("id")),
            driver_id=str(d.get("driver_id")),
            latitude=float(d.get("latitude")),
            longitude=float(d.get("longitude")),
            captured_at=d.get("captured_at") or now_iso(),
            timezone=d.get("timezone"),
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class JourneyNotification:
    driver_id: str
    notification_type: str
    created_at: str = field(default_factory=now_iso)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)
