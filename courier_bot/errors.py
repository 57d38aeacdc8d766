class CourierBotError(Exception):
    """Base for errors that end up as a chat reply instead of a traceback."""


class InvalidToken(CourierBotError):
    pass


class TokenAlreadyClaimed(CourierBotError):
    pass


class DriverNotBound(CourierBotError):
    pass


class RouteClosed(CourierBotError):
    pass


class JourneyExpired(CourierBotError):
    pass


class RecipientBlocked(CourierBotError):
    """The chat blocked the bot (Telegram 403)."""

    def __init__(self, chat_id):
        super().__init__(f"chat {chat_id} blocked the bot")
        self.chat_id = chat_id


class PersistenceFailure(CourierBotError):
    pass
