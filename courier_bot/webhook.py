from datetime import date
from typing import Union

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from .config import BOT_VERSION, log
from .models import JourneyWindow


class NotifyRequest(BaseModel):
    type: str
    driverId: Union[int, str]
    chatId: Union[int, str]
    windowStart: date
    windowEnd: date
    driverName: str


def create_app(services) -> FastAPI:
    """HTTP side of the bot: admin panel callbacks and a health probe."""
    app = FastAPI(title="Courier Bot", version=BOT_VERSION)

    @app.exception_handler(RequestValidationError)
    async def bad_request(request: Request, exc: RequestValidationError):
        fields = [".".join(str(p) for p in e.get("loc", ()) if p != "body") for e in exc.errors()]
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={"ok": False, "error": "missing or invalid fields", "fields": fields},
        )

    @app.get("/health")
    async def health():
        return {"ok": True}

    @app.post("/notify")
    async def notify(payload: NotifyRequest):
        if payload.type != "new_route":
            return JSONResponse(
                status_code=status.HTTP_400_BAD_REQUEST,
                content={"ok": False, "error": f"unsupported type {payload.type!r}"},
            )

        driver = await services.repository.find_driver_by_id(str(payload.driverId))
        if driver is None:
            return JSONResponse(
                status_code=status.HTTP_404_NOT_FOUND,
                content={"ok": False, "error": "driver not found"},
            )

        if driver.chat_id is not None and str(driver.chat_id) != str(payload.chatId):
            # the bound chat wins; the panel may hold an outdated one
            log(f"/notify for driver {driver.id}: panel chat {payload.chatId}, bound chat {driver.chat_id}")
        window = JourneyWindow(payload.windowStart, payload.windowEnd, "journey")

        sent, reason = await services.scheduler.announce_new_route(
            driver, window=window, name=payload.driverName
        )
        body = {"ok": True, "sent": sent}
        if not sent:
            body["reason"] = reason
        return body

    return app
