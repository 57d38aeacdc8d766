import asyncio
import json
import secrets
import uuid
from abc import ABC, abstractmethod
from datetime import date
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from .config import STATE_FALLBACK, log
from .errors import PersistenceFailure
from .models import (
    NOTIFICATION_TYPES,
    Driver,
    JourneyNotification,
    Location,
    RouteStatus,
    now_iso,
)


class Repository(ABC):
    """Persistence for drivers, their location log and journey bookkeeping."""

    @abstractmethod
    async def find_driver_by_token(self, token: str) -> Optional[Driver]: ...

    @abstractmethod
    async def find_driver_by_chat_id(self, chat_id: int) -> Optional[Driver]: ...

    @abstractmethod
    async def find_driver_by_id(self, driver_id: str) -> Optional[Driver]: ...

    @abstractmethod
    async def list_drivers(self) -> List[Driver]: ...

    @abstractmethod
    async def list_drivers_by_status(self, statuses: Iterable[RouteStatus]) -> List[Driver]: ...

    @abstractmethod
    async def list_drivers_with_window_ending_on(self, day: date) -> List[Driver]: ...

    @abstractmethod
    async def list_drivers_with_window_ended_before(self, day: date) -> List[Driver]: ...

    @abstractmethod
    async def create_driver(self, name: str) -> Driver: ...

    @abstractmethod
    async def update_driver(self, driver_id: str, patch: Dict[str, Any]) -> Driver: ...

    @abstractmethod
    async def insert_location(
        self, driver_id: str, lat: float, lon: float, tz: Optional[str] = None
    ) -> Location: ...

    @abstractmethod
    async def has_any_location(self, driver_id: str) -> bool: ...

    @abstractmethod
    async def list_locations(self, driver_id: Optional[str] = None) -> List[Location]: ...

    @abstractmethod
    async def has_notification(self, driver_id: str, notification_type: str) -> bool: ...

    @abstractmethod
    async def insert_notification_once(self, driver_id: str, notification_type: str) -> bool: ...

    @abstractmethod
    async def clear_notifications(self, driver_id: str) -> None: ...

    @abstractmethod
    async def get_admin_timezone(self) -> Optional[str]: ...

    @abstractmethod
    async def set_admin_timezone(self, tz_name: str) -> None: ...


def _check_notification_type(notification_type: str) -> None:
    if notification_type not in NOTIFICATION_TYPES:
        raise ValueError(
            f"Invalid notification type: {notification_type}. Must be one of {', '.join(NOTIFICATION_TYPES)}"
        )


def _chat_lookup_rank(d: Driver):
    # Active first, then anything still on a route, then the latest binding.
    return (d.is_active, d.route_status != RouteStatus.STOPPED, d.linked_at or "")


class JsonStore(Repository):
    """Repository backed by a single JSON state file.

    Every operation loads the file, works on the dict and writes it back
    atomically while holding the store lock, so each call is one short
    transaction. Nothing is cached between calls.
    """

    def __init__(self, path: Path, fallback: Path = STATE_FALLBACK):
        self.path = Path(path)
        self.fallback = Path(fallback)
        self._lock = asyncio.Lock()

    # ----------------------------
    # State load/save
    # ----------------------------
    def _load(self) -> dict:
        if (not self.path.exists()) and self.fallback.exists():
            self.path = self.fallback

        st: Any = {}
        if self.path.exists():
            # an unreadable file must not be replaced by an empty state on the next save
            try:
                st = json.loads(self.path.read_text(encoding="utf-8"))
            except (json.JSONDecodeError, OSError) as e:
                log(f"Error loading state: {e}")
                raise PersistenceFailure(f"cannot read state at {self.path}: {e}") from e
            if not isinstance(st, dict):
                raise PersistenceFailure(f"state at {self.path} is not a JSON object")

        st.setdefault("drivers", {})
        st.setdefault("locations", [])
        st.setdefault("journey_notifications", [])
        st.setdefault("admin_settings", {})
        return st

    def _save(self, st: dict) -> None:
        def _write(path: Path) -> None:
            path.parent.mkdir(parents=True, exist_ok=True)
            tmp = path.with_suffix(".tmp")
            tmp.write_text(json.dumps(st, ensure_ascii=False, indent=2), encoding="utf-8")
            tmp.replace(path)

        try:
            _write(self.path)
        except OSError as e:
            if self.path == self.fallback:
                raise PersistenceFailure(f"save failed at {self.path}: {e}") from e
            log(f"save failed at {self.path}: {e}. Falling back to {self.fallback}")
            self.path = self.fallback
            try:
                _write(self.path)
            except OSError as e2:
                raise PersistenceFailure(f"save failed at {self.path}: {e2}") from e2

    def _drivers(self, st: dict) -> List[Driver]:
        return [Driver.from_dict(d) for d in st["drivers"].values()]

    # ----------------------------
    # Drivers
    # ----------------------------
    async def find_driver_by_token(self, token: str) -> Optional[Driver]:
        token = (token or "").strip()
        if not token:
            return None
        async with self._lock:
            st = self._load()
        for d in self._drivers(st):
            if d.token == token:
                return d
        return None

    async def find_driver_by_chat_id(self, chat_id: int) -> Optional[Driver]:
        async with self._lock:
            st = self._load()
        bound = [d for d in self._drivers(st) if d.chat_id is not None and d.chat_id == chat_id]
        if not bound:
            return None
        return max(bound, key=_chat_lookup_rank)

    async def find_driver_by_id(self, driver_id: str) -> Optional[Driver]:
        async with self._lock:
            st = self._load()
        raw = st["drivers"].get(str(driver_id))
        return Driver.from_dict(raw) if raw else None

    async def list_drivers(self) -> List[Driver]:
        async with self._lock:
            st = self._load()
        return sorted(self._drivers(st), key=lambda d: d.created_at, reverse=True)

    async def list_drivers_by_status(self, statuses: Iterable[RouteStatus]) -> List[Driver]:
        wanted = {RouteStatus(s) for s in statuses}
        return [d for d in await self.list_drivers() if d.route_status in wanted]

    async def list_drivers_with_window_ending_on(self, day: date) -> List[Driver]:
        out = []
        for d in await self.list_drivers():
            w = d.window
            if w and w.end == day and d.route_status != RouteStatus.STOPPED:
                out.append(d)
        return out

    async def list_drivers_with_window_ended_before(self, day: date) -> List[Driver]:
        out = []
        for d in await self.list_drivers():
            w = d.window
            if w and w.end is not None and w.end < day and d.route_status != RouteStatus.STOPPED:
                out.append(d)
        return out

    async def create_driver(self, name: str) -> Driver:
        async with self._lock:
            st = self._load()
            tokens = {d.get("token") for d in st["drivers"].values()}
            token = secrets.token_urlsafe(12)
            while token in tokens:
                token = secrets.token_urlsafe(12)
            driver = Driver(id=str(uuid.uuid4()), name=name.strip(), token=token)
            st["drivers"][driver.id] = driver.to_dict()
            self._save(st)
        return driver

    async def update_driver(self, driver_id: str, patch: Dict[str, Any]) -> Driver:
        async with self._lock:
            st = self._load()
            raw = st["drivers"].get(str(driver_id))
            if raw is None:
                raise KeyError(f"driver {driver_id} not found")
            driver = Driver.from_dict(raw)
            for k, v in patch.items():
                if not hasattr(driver, k):
                    raise AttributeError(f"Driver has no field {k!r}")
                setattr(driver, k, v)
            if not isinstance(driver.route_status, RouteStatus):
                driver.route_status = RouteStatus(driver.route_status)
            st["drivers"][driver.id] = driver.to_dict()
            self._save(st)
        return driver

    # ----------------------------
    # Locations
    # ----------------------------
    async def insert_location(
        self, driver_id: str, lat: float, lon: float, tz: Optional[str] = None
    ) -> Location:
        loc = Location(
            id=str(uuid.uuid4()),
            driver_id=str(driver_id),
            latitude=float(lat),
            longitude=float(lon),
            captured_at=now_iso(),
            timezone=tz,
        )
        async with self._lock:
            st = self._load()
            st["locations"].append(loc.to_dict())
            self._save(st)
        return loc

    async def has_any_location(self, driver_id: str) -> bool:
        async with self._lock:
            st = self._load()
        return any(l.get("driver_id") == str(driver_id) for l in st["locations"])

    async def list_locations(self, driver_id: Optional[str] = None) -> List[Location]:
        async with self._lock:
            st = self._load()
        rows = st["locations"]
        if driver_id is not None:
            rows = [l for l in rows if l.get("driver_id") == str(driver_id)]
        return [Location.from_dict(l) for l in rows]

    # ----------------------------
    # Journey notifications
    # ----------------------------
    async def has_notification(self, driver_id: str, notification_type: str) -> bool:
        _check_notification_type(notification_type)
        async with self._lock:
            st = self._load()
        return any(
            n.get("driver_id") == str(driver_id) and n.get("notification_type") == notification_type
            for n in st["journey_notifications"]
        )

    async def insert_notification_once(self, driver_id: str, notification_type: str) -> bool:
        """Record a notification unless one exists. Returns False when it was already there."""
        if await self.has_notification(driver_id, notification_type):
            return False
        row = JourneyNotification(driver_id=str(driver_id), notification_type=notification_type)
        async with self._lock:
            st = self._load()
            st["journey_notifications"].append(row.to_dict())
            self._save(st)
        return True

    async def clear_notifications(self, driver_id: str) -> None:
        async with self._lock:
            st = self._load()
            before = len(st["journey_notifications"])
            st["journey_notifications"] = [
                n for n in st["journey_notifications"] if n.get("driver_id") != str(driver_id)
            ]
            if len(st["journey_notifications"]) != before:
                self._save(st)

    # ----------------------------
    # Admin settings
    # ----------------------------
    async def get_admin_timezone(self) -> Optional[str]:
        async with self._lock:
            st = self._load()
        return (st["admin_settings"] or {}).get("timezone")

    async def set_admin_timezone(self, tz_name: str) -> None:
        async with self._lock:
            st = self._load()
            st["admin_settings"]["timezone"] = tz_name
            st["admin_settings"]["updated_at"] = now_iso()
            self._save(st)
