"""User-configurable values loaded from environment variables."""

import os
import sys
from pathlib import Path
from zoneinfo import ZoneInfo

from dotenv import load_dotenv

load_dotenv()


def _detect_local_tz() -> str:
    """Detect the system's IANA timezone name. Falls back to UTC."""
    # Debian/Ubuntu: plain text file with IANA name
    etc_tz = Path("/etc/timezone")
    if etc_tz.exists():
        name = etc_tz.read_text().strip()
        if name:
            return name

    # Most Linux/WSL: /etc/localtime is a symlink into zoneinfo
    localtime = Path("/etc/localtime")
    if localtime.is_symlink():
        target = str(localtime.resolve())
        marker = "/zoneinfo/"
        idx = target.find(marker)
        if idx != -1:
            return target[idx + len(marker) :]

    return "UTC"


def _env_number(name: str, default: float, *, cast: type = int) -> float:
    raw = os.environ.get(name)
    if not raw:
        return default
    try:
        value = cast(raw)
    except ValueError:
        print(f"Invalid value for {name}: {raw!r}", file=sys.stderr)
        raise SystemExit(1)
    if value <= 0:
        print(f"{name} must be positive, got {raw!r}", file=sys.stderr)
        raise SystemExit(1)
    return value


def _env_flag(name: str) -> bool:
    raw = os.environ.get(name, "").strip().lower()
    if raw in ("", "0", "false", "no", "off"):
        return False
    if raw in ("1", "true", "yes", "on"):
        return True
    print(f"Invalid boolean for {name}: {raw!r}", file=sys.stderr)
    raise SystemExit(1)


DATA_DIR: Path = Path(
    os.environ.get("VOICE_REMIND_DATA_DIR") or Path.home() / ".voice-remind"
).expanduser()

TZ: ZoneInfo = ZoneInfo(os.environ.get("VOICE_REMIND_TIMEZONE") or _detect_local_tz())

POLL_SECONDS: int = int(_env_number("VOICE_REMIND_POLL_SECONDS", 30))
RECONCILE_BUDGET: float = _env_number("VOICE_REMIND_RECONCILE_BUDGET", 10.0, cast=float)
SINK_TIMEOUT: float = _env_number("VOICE_REMIND_SINK_TIMEOUT", 5.0, cast=float)
SINK_RETRIES: int = int(_env_number("VOICE_REMIND_SINK_RETRIES", 3))

# Full-screen alarm instead of a plain notification; carried in trigger payloads.
USE_ALARM: bool = _env_flag("VOICE_REMIND_USE_ALARM")
