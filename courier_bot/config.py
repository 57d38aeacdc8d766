import os
import sys
from dataclasses import dataclass
from datetime import time
from pathlib import Path
from typing import Optional

BOT_VERSION = "2024-06-10_routes_v2"

DEFAULT_TIMEZONE = "Europe/Vilnius"
STATE_FALLBACK = Path("/tmp/courier_bot_state.json")


# ----------------------------
# Environment helpers
# ----------------------------
def _strip_quotes(s: str) -> str:
    """Remove surrounding quotes from a string."""
    s = (s or "").strip()
    if len(s) >= 2 and ((s[0] == s[-1] == '"') or (s[0] == s[-1] == "'")):
        return s[1:-1].strip()
    return s


def env_str(name: str, default: str = "") -> str:
    """Get string environment variable with optional quote stripping."""
    v = os.environ.get(name)
    if v is None:
        return default
    return _strip_quotes(v)


def env_int(name: str, default: int) -> int:
    """Get integer environment variable."""
    v = env_str(name, "")
    if not v:
        return default
    try:
        return int(v)
    except ValueError:
        return default


def env_bool(name: str, default: bool = False) -> bool:
    """Get boolean environment variable."""
    v = env_str(name, "")
    if not v:
        return default
    return v.lower() in ("1", "true", "yes", "y", "on")


def env_time(name: str, default: str) -> time:
    """Get a HH:MM wall-clock time, falling back to the default on junk."""
    v = env_str(name, "") or default
    try:
        hh, mm = v.split(":", 1)
        return time(int(hh), int(mm))
    except ValueError:
        hh, mm = default.split(":", 1)
        return time(int(hh), int(mm))


def env_chat_id(name: str) -> Optional[int]:
    v = env_str(name, "")
    if not v:
        return None
    try:
        return int(v)
    except ValueError:
        return None


# ----------------------------
# Settings
# ----------------------------
@dataclass(frozen=True)
class Settings:
    bot_token: str
    admin_chat_id: Optional[int] = None
    default_timezone: str = DEFAULT_TIMEZONE
    http_host: str = "0.0.0.0"
    http_port: int = 8080
    state_file: Path = Path("courier_state.json")
    reminder_time: time = time(9, 0)
    ending_soon_time: time = time(10, 0)
    expiry_sweep_time: time = time(0, 5)
    debug: bool = False


def load_settings() -> Settings:
    """Build settings from the process environment."""
    token = env_str("TELEGRAM_TOKEN", "") or env_str("BOT_TOKEN", "")
    if not token:
        raise RuntimeError("Missing TELEGRAM_TOKEN environment variable")

    return Settings(
        bot_token=token,
        admin_chat_id=env_chat_id("ADMIN_CHAT_ID"),
        default_timezone=env_str("DEFAULT_TIMEZONE", DEFAULT_TIMEZONE),
        http_host=env_str("HTTP_HOST", "0.0.0.0"),
        http_port=env_int("PORT", 8080),
        state_file=Path(env_str("STATE_FILE", "courier_state.json")),
        reminder_time=env_time("REMINDER_TIME", "09:00"),
        ending_soon_time=env_time("ENDING_SOON_TIME", "10:00"),
        expiry_sweep_time=env_time("EXPIRY_SWEEP_TIME", "00:05"),
        debug=env_bool("DEBUG", False),
    )


DEBUG = env_bool("DEBUG", False)


def log(msg: str) -> None:
    """Debug logging."""
    if DEBUG:
        print(f"[courier-bot {BOT_VERSION}] {msg}", flush=True)


def warn(msg: str) -> None:
    """Errors that must be visible even without DEBUG."""
    print(f"[courier-bot {BOT_VERSION}] WARNING {msg}", file=sys.stderr, flush=True)
