from enum import Enum
from typing import Optional

from telegram import Bot, KeyboardButton, ReplyKeyboardMarkup, ReplyKeyboardRemove
from telegram.error import Forbidden, TelegramError

from .config import log, warn
from .errors import RecipientBlocked
from .texts import LOCATION_BUTTON, ROUTE_FINISHED_BUTTON


class Keyboard(str, Enum):
    DRIVER = "driver"
    REMOVE = "remove"


def build_driver_keyboard() -> ReplyKeyboardMarkup:
    """Location request button plus the route-finished button."""
    return ReplyKeyboardMarkup(
        [
            [KeyboardButton(LOCATION_BUTTON, request_location=True)],
            [KeyboardButton(ROUTE_FINISHED_BUTTON)],
        ],
        resize_keyboard=True,
    )


def reply_markup_for(keyboard: Optional[Keyboard]):
    if keyboard == Keyboard.DRIVER:
        return build_driver_keyboard()
    if keyboard == Keyboard.REMOVE:
        return ReplyKeyboardRemove()
    return None


class Messenger:
    """Outbound messages. A blocked recipient surfaces as RecipientBlocked, never as Forbidden."""

    def __init__(self, bot: Bot, admin_chat_id: Optional[int] = None):
        self.bot = bot
        self.admin_chat_id = admin_chat_id

    async def send_message(self, chat_id: int, text: str, keyboard: Optional[Keyboard] = None) -> None:
        try:
            await self.bot.send_message(
                chat_id=chat_id,
                text=text,
                parse_mode="HTML",
                reply_markup=reply_markup_for(keyboard),
            )
        except Forbidden as e:
            raise RecipientBlocked(chat_id) from e

    async def notify_admin(self, text: str) -> bool:
        if not self.admin_chat_id:
            log("ADMIN_CHAT_ID not set, admin message dropped")
            return False
        try:
            await self.send_message(self.admin_chat_id, text)
        except RecipientBlocked:
            warn("Admin chat blocked the bot")
            return False
        except TelegramError as e:
            warn(f"Admin message failed: {e}")
            return False
        return True
