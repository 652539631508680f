import dataclasses
import logging
import os
from pathlib import Path

from dotenv import load_dotenv

# Telegram Bot API refuses uploads above 50 MB.
TELEGRAM_MAX_FILE_BYTES = 50 * 1024 * 1024
DEFAULT_MAX_DOWNLOAD_MB = 200
DEFAULT_DATABASE_URL = "sqlite+aiosqlite:///vidsave.db"

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"
QUIET_LOGGERS = ("telegram", "httpx", "httpcore", "sqlalchemy.engine")


class ConfigError(RuntimeError):
    pass


def _require(key: str) -> str:
    value = os.getenv(key)
    if value is None:
        raise ConfigError(f"{key} is required.")
    return value


def parse_allowed_hosts(raw: str) -> frozenset[str]:
    return frozenset(part.strip().lower() for part in raw.split(",") if part.strip())


def parse_bool(raw: str | None) -> bool:
    return (raw or "").strip().lower() in {"1", "true", "yes", "y"}


def parse_int(raw: str | None, default: int) -> int:
    raw = (raw or "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def parse_float(raw: str | None, default: float) -> float:
    try:
        return float((raw or "").strip())
    except ValueError:
        return default


@dataclasses.dataclass(frozen=True)
class Settings:
    bot_token: str
    allowed_hosts: frozenset[str]
    insecure_skip_verify: bool = False
    max_download_bytes: int = DEFAULT_MAX_DOWNLOAD_MB * 1024 * 1024
    proxy: str = ""
    database_url: str = DEFAULT_DATABASE_URL
    development: bool = False
    cookies_dir: Path = Path("cookies")
    request_timeout_seconds: float = 300.0
    url_expand_timeout_seconds: float = 12.0
    heartbeat_interval_seconds: int = 300
    video_caption: str = "🎬"
    support_contact: str = ""
    channel_url: str = ""

    @classmethod
    def from_env(cls) -> "Settings":
        load_dotenv(override=False)
        bot_token = _require("BOT_TOKEN").strip()
        if not bot_token:
            raise ConfigError("BOT_TOKEN is required.")
        return cls(
            bot_token=bot_token,
            allowed_hosts=parse_allowed_hosts(_require("ALLOWED_HOSTS")),
            insecure_skip_verify=parse_bool(os.getenv("INSECURE_SKIP_VERIFY")),
            max_download_bytes=parse_int(os.getenv("MAX_DOWNLOAD_MB"), DEFAULT_MAX_DOWNLOAD_MB) * 1024 * 1024,
            proxy=os.getenv("PROXY", "").strip(),
            database_url=os.getenv("DATABASE_URL", DEFAULT_DATABASE_URL).strip() or DEFAULT_DATABASE_URL,
            development=os.getenv("ENV", "").strip().lower() == "development",
            cookies_dir=Path(os.getenv("COOKIES_DIR", "cookies")),
            request_timeout_seconds=parse_float(os.getenv("REQUEST_TIMEOUT_SECONDS"), 300.0),
            url_expand_timeout_seconds=parse_float(os.getenv("URL_EXPAND_TIMEOUT_SECONDS"), 12.0),
            heartbeat_interval_seconds=parse_int(os.getenv("HEARTBEAT_INTERVAL_SECONDS"), 300),
            video_caption=os.getenv("VIDEO_CAPTION", "🎬"),
            support_contact=os.getenv("SUPPORT_CONTACT", "").strip(),
            channel_url=os.getenv("CHANNEL_URL", "").strip(),
        )


def setup_logging(settings: Settings) -> None:
    logging.basicConfig(
        level=logging.DEBUG if settings.development else logging.INFO,
        format=LOG_FORMAT,
    )
    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
