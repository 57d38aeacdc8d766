import io
from datetime import date
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from telegram import ReplyKeyboardRemove, Update
from telegram.error import Conflict, Forbidden, TelegramError
from telegram.ext import (
    Application,
    ApplicationBuilder,
    CommandHandler,
    ContextTypes,
    MessageHandler,
    filters,
)

from . import texts
from .clock import fmt_date
from .config import BOT_VERSION, Settings, log, warn
from .errors import (
    CourierBotError,
    DriverNotBound,
    InvalidToken,
    JourneyExpired,
    PersistenceFailure,
    RecipientBlocked,
    RouteClosed,
    TokenAlreadyClaimed,
)
from .export import locations_workbook
from .messenger import build_driver_keyboard
from .models import RouteStatus, try_parse_date
from .services import Services, build_services
from .store import Repository
from .texts import h

ERROR_TEXTS = {
    InvalidToken: texts.INVALID_LINK,
    TokenAlreadyClaimed: texts.LINK_ALREADY_USED,
    DriverNotBound: texts.NOT_BOUND,
    RouteClosed: texts.ROUTE_CLOSED,
    JourneyExpired: texts.JOURNEY_EXPIRED,
    PersistenceFailure: texts.LOCATION_SAVE_FAILED,
}


def services_of(ctx: ContextTypes.DEFAULT_TYPE) -> Services:
    return ctx.application.bot_data["services"]


def is_admin(update: Update, s: Services) -> bool:
    """Check if the update comes from the configured admin chat."""
    admin = s.settings.admin_chat_id
    if not admin:
        return False
    chat = update.effective_chat
    user = update.effective_user
    return bool((chat and chat.id == admin) or (user and user.id == admin))


async def reply_failure(update: Update, exc: Exception) -> None:
    """Turn a handler failure into a chat reply. Blocked chats get nothing."""
    msg = update.effective_message
    if msg is None or isinstance(exc, (Forbidden, RecipientBlocked)):
        return

    if isinstance(exc, CourierBotError):
        text = ERROR_TEXTS.get(type(exc), texts.GENERIC_ERROR)
    else:
        warn(f"Unexpected error for chat {update.effective_chat.id if update.effective_chat else '?'}: {exc!r}")
        text = texts.GENERIC_ERROR

    markup = ReplyKeyboardRemove() if isinstance(exc, (RouteClosed, JourneyExpired)) else None
    try:
        await msg.reply_text(text, reply_markup=markup)
    except TelegramError as e:
        log(f"Failed to send error reply: {e}")


# ----------------------------
# Driver commands
# ----------------------------
async def start_cmd(update: Update, ctx: ContextTypes.DEFAULT_TYPE):
    """Handle /start <token>."""
    s = services_of(ctx)
    msg = update.effective_message
    chat = update.effective_chat
    if not msg or not chat:
        return

    token = " ".join(ctx.args or []).strip()
    log(f"/start from chat {chat.id}, token given: {bool(token)}")
    if not token:
        await msg.reply_text(texts.NEED_PERSONAL_LINK)
        return

    try:
        r = await s.session.redeem_token(token, chat.id)
        kb = build_driver_keyboard()
        if r.new_route:
            await msg.reply_text(texts.new_route_text(r.driver.name, r.driver.window), parse_mode="HTML", reply_markup=kb)
        else:
            await msg.reply_text(texts.welcome_text(r.driver), parse_mode="HTML", reply_markup=kb)
            await msg.reply_text(texts.REQUEST_LOCATION, reply_markup=kb)
    except Exception as e:
        await reply_failure(update, e)


async def help_cmd(update: Update, ctx: ContextTypes.DEFAULT_TYPE):
    await update.effective_message.reply_text(texts.NEED_PERSONAL_LINK)


async def whoami_cmd(update: Update, ctx: ContextTypes.DEFAULT_TYPE):
    await update.effective_message.reply_text(f"Your chat id: {update.effective_chat.id}")


async def on_location(update: Update, ctx: ContextTypes.DEFAULT_TYPE):
    """Handle location messages, including live location edits."""
    s = services_of(ctx)
    msg = update.effective_message
    chat = update.effective_chat
    if not msg or not msg.location or not chat:
        return
    edited = update.edited_message is not None

    try:
        receipt = await s.session.receive_location(chat.id, msg.location.latitude, msg.location.longitude)
    except Exception as e:
        if edited and isinstance(e, CourierBotError):
            # live location updates keep coming; don't answer each one
            log(f"Live location from chat {chat.id} rejected: {e!r}")
            return
        await reply_failure(update, e)
        return

    if not edited:
        try:
            await msg.reply_text(texts.LOCATION_SAVED, reply_markup=build_driver_keyboard())
        except Forbidden:
            await s.machine.mark_unreachable(receipt.driver.id)

    tz_name = await s.clock.timezone_name()
    await s.messenger.notify_admin(
        texts.admin_location_text(receipt.driver, receipt.location, tz_name, receipt.first_contact)
    )


async def on_text(update: Update, ctx: ContextTypes.DEFAULT_TYPE):
    """Route-finished button, otherwise a hint for bound drivers."""
    s = services_of(ctx)
    msg = update.effective_message
    chat = update.effective_chat
    if not msg or not msg.text or not chat:
        return

    try:
        if msg.text.strip() == texts.ROUTE_FINISHED_BUTTON:
            await s.session.end_route(chat.id)
            await msg.reply_text(texts.ROUTE_ENDED, reply_markup=ReplyKeyboardRemove())
            return

        driver = await s.session.current_driver(chat.id)
        if driver is None or driver.route_status == RouteStatus.STOPPED:
            return
        await msg.reply_text(texts.NOT_A_LOCATION, reply_markup=build_driver_keyboard())
    except Exception as e:
        await reply_failure(update, e)


# ----------------------------
# Admin commands
# ----------------------------
async def _admin_only(update: Update, s: Services) -> bool:
    if is_admin(update, s):
        return True
    await update.effective_message.reply_text("Admin only.")
    return False


async def testadmin_cmd(update: Update, ctx: ContextTypes.DEFAULT_TYPE):
    s = services_of(ctx)
    if not s.settings.admin_chat_id:
        await update.effective_message.reply_text("ADMIN_CHAT_ID is not set.")
        return
    ok = await s.messenger.notify_admin("✅ Test: the admin chat receives messages.")
    await update.effective_message.reply_text("Sent a test to ADMIN_CHAT_ID." if ok else "Could not reach ADMIN_CHAT_ID.")


async def ping_cmd(update: Update, ctx: ContextTypes.DEFAULT_TYPE):
    """Handle /ping command."""
    await update.effective_message.reply_text(f"pong ✅ ({BOT_VERSION})")


async def status_cmd(update: Update, ctx: ContextTypes.DEFAULT_TYPE):
    """Handle /status command."""
    s = services_of(ctx)
    if not await _admin_only(update, s):
        return

    drivers = await s.repository.list_drivers()
    counts = {st: 0 for st in RouteStatus}
    for d in drivers:
        counts[d.route_status] += 1

    lines = [
        f"<b>Status</b> ({h(BOT_VERSION)})",
        f"<b>Admin timezone:</b> {h(await s.clock.timezone_name())}",
        f"<b>Today:</b> {h(fmt_date(await s.clock.today()))}",
        f"<b>Drivers:</b> {len(drivers)}",
    ]
    lines += [f"  {h(st.value)}: {n}" for st, n in counts.items()]
    await update.effective_message.reply_text("\n".join(lines), parse_mode="HTML")


async def adddriver_cmd(update: Update, ctx: ContextTypes.DEFAULT_TYPE):
    """Handle /adddriver <name>: create a driver and hand out the personal link."""
    s = services_of(ctx)
    if not await _admin_only(update, s):
        return

    name = " ".join(ctx.args or []).strip()
    if not name:
        await update.effective_message.reply_text("Usage: /adddriver <name>")
        return

    driver = await s.repository.create_driver(name)
    link = f"https://t.me/{ctx.bot.username}?start={driver.token}"
    await update.effective_message.reply_text(
        f"✅ Driver <b>{h(driver.name)}</b> created.\nID: <code>{h(driver.id)}</code>\nLink: {h(link)}",
        parse_mode="HTML",
    )


async def drivers_cmd(update: Update, ctx: ContextTypes.DEFAULT_TYPE):
    s = services_of(ctx)
    if not await _admin_only(update, s):
        return

    drivers = await s.repository.list_drivers()
    if not drivers:
        await update.effective_message.reply_text("No drivers yet. Use /adddriver <name>.")
        return
    await update.effective_message.reply_text(
        "\n".join(texts.driver_line(d) for d in drivers), parse_mode="HTML"
    )


def parse_day(s: str) -> Optional[date]:
    """YYYY-MM-DD or DD.MM.YYYY."""
    d = try_parse_date(s)
    if d:
        return d
    try:
        dd, mm, yyyy = s.strip().split(".")
        return date(int(yyyy), int(mm), int(dd))
    except ValueError:
        return None


async def window_cmd(update: Update, ctx: ContextTypes.DEFAULT_TYPE):
    """Handle /window <driver_id> <start> <end>: assign a journey window (recycles stopped drivers)."""
    s = services_of(ctx)
    if not await _admin_only(update, s):
        return

    args = ctx.args or []
    if len(args) != 3:
        await update.effective_message.reply_text("Usage: /window <driver_id> <YYYY-MM-DD> <YYYY-MM-DD>")
        return

    driver = await s.repository.find_driver_by_id(args[0])
    start, end = parse_day(args[1]), parse_day(args[2])
    if driver is None:
        await update.effective_message.reply_text("Driver not found.")
        return
    if not start or not end or end < start:
        await update.effective_message.reply_text("Invalid dates.")
        return

    driver = await s.repository.update_driver(
        driver.id,
        {"journey_start_date": start, "journey_end_date": end, "last_reminded_date": None},
    )
    sent, reason = await s.scheduler.announce_new_route(driver)
    note = "driver notified about the new route" if sent else f"no notification ({reason})"
    await update.effective_message.reply_text(
        f"✅ Window for {h(driver.name)}: {fmt_date(start)}–{fmt_date(end)}\n{h(note)}",
        parse_mode="HTML",
    )


async def endroute_cmd(update: Update, ctx: ContextTypes.DEFAULT_TYPE):
    s = services_of(ctx)
    if not await _admin_only(update, s):
        return

    driver = await s.repository.find_driver_by_id(ctx.args[0]) if ctx.args else None
    if driver is None:
        await update.effective_message.reply_text("Usage: /endroute <driver_id>")
        return
    driver = await s.machine.end_route(driver, await s.clock.today())
    await update.effective_message.reply_text(f"🛑 Route of {driver.name} is {driver.route_status.value}.")


async def timezone_cmd(update: Update, ctx: ContextTypes.DEFAULT_TYPE):
    """Handle /timezone <IANA name>."""
    s = services_of(ctx)
    if not await _admin_only(update, s):
        return

    if not ctx.args:
        await update.effective_message.reply_text(f"Admin timezone: {await s.clock.timezone_name()}")
        return
    name = ctx.args[0].strip()
    try:
        ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        await update.effective_message.reply_text(f"Unknown timezone: {name}")
        return
    await s.repository.set_admin_timezone(name)
    await update.effective_message.reply_text(
        f"✅ Admin timezone set to {name}. Daily job times apply after a restart."
    )


async def export_cmd(update: Update, ctx: ContextTypes.DEFAULT_TYPE):
    """Handle /export [driver_id]: location log as Excel."""
    s = services_of(ctx)
    if not await _admin_only(update, s):
        return

    if ctx.args:
        driver = await s.repository.find_driver_by_id(ctx.args[0])
        if driver is None:
            await update.effective_message.reply_text("Driver not found.")
            return
        drivers = [driver]
        locations = await s.repository.list_locations(driver.id)
    else:
        drivers = await s.repository.list_drivers()
        locations = await s.repository.list_locations()

    if not locations:
        await update.effective_message.reply_text("No locations yet.")
        return

    xlsx, filename = locations_workbook(drivers, locations, await s.clock.timezone_name())
    bio = io.BytesIO(xlsx)
    bio.name = filename
    await ctx.bot.send_document(
        chat_id=update.effective_chat.id,
        document=bio,
        filename=filename,
        caption=f"📊 Locations ({len(locations)})",
    )


# ----------------------------
# Background jobs
# ----------------------------
async def reminder_job(ctx: ContextTypes.DEFAULT_TYPE) -> None:
    await services_of(ctx).scheduler.run_daily_reminders()


async def ending_soon_job(ctx: ContextTypes.DEFAULT_TYPE) -> None:
    await services_of(ctx).scheduler.run_ending_soon_check()


async def expiry_job(ctx: ContextTypes.DEFAULT_TYPE) -> None:
    await services_of(ctx).scheduler.run_expiry_sweep()


async def on_error(update: object, ctx: ContextTypes.DEFAULT_TYPE) -> None:
    if isinstance(ctx.error, Conflict):
        warn("Another instance is polling with this token; stop it so only one bot runs.")
        return
    warn(f"Unhandled error: {ctx.error!r}")


# ----------------------------
# Startup
# ----------------------------
async def schedule_jobs(app: Application) -> None:
    """Daily jobs at wall-clock times in the admin timezone as it is right now."""
    s: Services = app.bot_data["services"]
    jq = app.job_queue
    if jq is None:
        warn("JobQueue unavailable; install python-telegram-bot[job-queue]")
        return

    tz = await s.clock.timezone()
    jq.run_daily(reminder_job, time=s.settings.reminder_time.replace(tzinfo=tz), name="daily-reminders")
    jq.run_daily(ending_soon_job, time=s.settings.ending_soon_time.replace(tzinfo=tz), name="ending-soon")
    jq.run_daily(expiry_job, time=s.settings.expiry_sweep_time.replace(tzinfo=tz), name="expiry-sweep")
    log(f"Background jobs scheduled ({await s.clock.timezone_name()})")


async def post_init(app: Application) -> None:
    try:
        me = await app.bot.get_me()
        log(f"Connected as @{me.username} (id {me.id})")
    except TelegramError as e:
        log(f"get_me failed: {e}")

    await schedule_jobs(app)
    log("Ready!")


def build_application(settings: Settings, repository: Optional[Repository] = None) -> Application:
    app = ApplicationBuilder().token(settings.bot_token).post_init(post_init).build()
    app.bot_data["services"] = build_services(settings, app.bot, repository)

    # Driver side
    app.add_handler(CommandHandler("start", start_cmd))
    app.add_handler(CommandHandler("help", help_cmd))
    app.add_handler(CommandHandler("whoami", whoami_cmd))

    # Admin side
    app.add_handler(CommandHandler("testadmin", testadmin_cmd))
    app.add_handler(CommandHandler("ping", ping_cmd))
    app.add_handler(CommandHandler("status", status_cmd))
    app.add_handler(CommandHandler("adddriver", adddriver_cmd))
    app.add_handler(CommandHandler("drivers", drivers_cmd))
    app.add_handler(CommandHandler("window", window_cmd))
    app.add_handler(CommandHandler("endroute", endroute_cmd))
    app.add_handler(CommandHandler("timezone", timezone_cmd))
    app.add_handler(CommandHandler("export", export_cmd))

    app.add_handler(MessageHandler(filters.LOCATION, on_location))
    app.add_handler(MessageHandler(filters.TEXT & ~filters.COMMAND, on_text))

    app.add_error_handler(on_error)
    return app
