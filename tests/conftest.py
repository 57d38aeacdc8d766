from datetime import datetime, timezone

import pytest

from courier_bot.clock import AdminClock
from courier_bot.errors import RecipientBlocked
from courier_bot.reminders import ReminderScheduler
from courier_bot.route_state import RouteStateMachine
from courier_bot.session import DriverSession
from courier_bot.store import JsonStore


class FakeMessenger:
    """Records outbound messages; chats in ``blocked`` behave like a Telegram 403."""

    def __init__(self):
        self.sent = []
        self.admin = []
        self.blocked = set()
        self.broken = set()

    async def send_message(self, chat_id, text, keyboard=None):
        if chat_id in self.blocked:
            raise RecipientBlocked(chat_id)
        if chat_id in self.broken:
            raise RuntimeError("network down")
        self.sent.append((chat_id, text, keyboard))

    async def notify_admin(self, text):
        self.admin.append(text)
        return True

    def to(self, chat_id):
        return [text for cid, text, _ in self.sent if cid == chat_id]


class FrozenNow:
    def __init__(self, dt):
        self.dt = dt

    def __call__(self):
        return self.dt

    def set(self, *args):
        # UTC wall clock
        self.dt = datetime(*args, tzinfo=timezone.utc)


@pytest.fixture
def store(tmp_path):
    return JsonStore(tmp_path / "state.json", fallback=tmp_path / "fallback.json")


@pytest.fixture
def now():
    # 2024-06-03 10:00 in Vilnius
    return FrozenNow(datetime(2024, 6, 3, 7, 0, tzinfo=timezone.utc))


@pytest.fixture
def clock(store, now):
    return AdminClock(store, "Europe/Vilnius", now=now)


@pytest.fixture
def machine(store):
    return RouteStateMachine(store)


@pytest.fixture
def session(store, clock, machine):
    return DriverSession(store, clock, machine)


@pytest.fixture
def messenger():
    return FakeMessenger()


@pytest.fixture
def scheduler(store, clock, machine, messenger):
    return ReminderScheduler(store, clock, machine, messenger)


@pytest.fixture
def make_driver(store):
    async def _make(name="Jonas", **patch):
        driver = await store.create_driver(name)
        if patch:
            driver = await store.update_driver(driver.id, patch)
        return driver

    return _make
