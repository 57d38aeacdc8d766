from dataclasses import dataclass

from .clock import AdminClock
from .config import Settings
from .messenger import Messenger
from .reminders import ReminderScheduler
from .route_state import RouteStateMachine
from .session import DriverSession
from .store import JsonStore, Repository


@dataclass
class Services:
    settings: Settings
    repository: Repository
    clock: AdminClock
    machine: RouteStateMachine
    session: DriverSession
    messenger: Messenger
    scheduler: ReminderScheduler


def build_services(settings: Settings, bot, repository: Repository = None) -> Services:
    """Wire the collaborators once per process; handlers and jobs share them."""
    repository = repository or JsonStore(settings.state_file)
    clock = AdminClock(repository, settings.default_timezone)
    machine = RouteStateMachine(repository)
    messenger = Messenger(bot, settings.admin_chat_id)
    return Services(
        settings=settings,
        repository=repository,
        clock=clock,
        machine=machine,
        session=DriverSession(repository, clock, machine),
        messenger=messenger,
        scheduler=ReminderScheduler(repository, clock, machine, messenger),
    )
