import asyncio

import uvicorn
from telegram import Update

from courier_bot.bot import build_application, post_init
from courier_bot.config import BOT_VERSION, Settings, load_settings, log
from courier_bot.webhook import create_app


async def run(settings: Settings) -> None:
    """Telegram polling and the HTTP endpoint share one event loop."""
    app = build_application(settings)
    web = create_app(app.bot_data["services"])
    server = uvicorn.Server(
        uvicorn.Config(
            web,
            host=settings.http_host,
            port=settings.http_port,
            log_level="info" if settings.debug else "warning",
        )
    )

    async with app:
        await post_init(app)
        await app.start()
        await app.updater.start_polling(drop_pending_updates=True, allowed_updates=Update.ALL_TYPES)
        log(f"Starting v{BOT_VERSION}, HTTP on {settings.http_host}:{settings.http_port}")
        try:
            await server.serve()
        finally:
            await app.updater.stop()
            await app.stop()


def main() -> None:
    settings = load_settings()
    asyncio.run(run(settings))


if __name__ == "__main__":
    main()
