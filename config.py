import os


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    return int(raw)


def _float_env(name: str, default: float) -> float:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    return float(raw)


def _flag_env(name: str) -> bool:
    return os.getenv(name, "").strip().lower() in {"1", "true", "yes", "on"}


DB_PATH = os.getenv("DB_PATH") or os.getenv("DATABASE_URL", "bot.sqlite3")
FIXED_TZ = os.getenv("FIXED_TZ", "Europe/Moscow")

MORNING_TIME = os.getenv("MORNING_TIME", "07:30")
EVENING_TIME = os.getenv("EVENING_TIME", "20:30")
WINDOW_MINUTES = _int_env("WINDOW_MINUTES", 2)
MORNING_CATCHUP_END_HOUR = _int_env("MORNING_CATCHUP_END_HOUR", 11)
EVENING_CATCHUP_END_HOUR = _int_env("EVENING_CATCHUP_END_HOUR", 23)
WATCHDOG_SECONDS = _int_env("WATCHDOG_SECONDS", 20)
POLL_SECONDS = _int_env("WORKER_POLL_SECONDS", 60)

SEND_TIMEOUT_SECONDS = _float_env("SEND_TIMEOUT_SECONDS", 15.0)
SEND_PAUSE_SECONDS = _float_env("SEND_PAUSE_SECONDS", 0.04)
RETRY_UNSENT_SAME_DAY = _flag_env("RETRY_UNSENT_SAME_DAY")

YOOKASSA_SHOP_ID = os.getenv("YOOKASSA_SHOP_ID", "").strip()
YOOKASSA_SECRET_KEY = os.getenv("YOOKASSA_SECRET_KEY", "").strip()
YOOKASSA_WEBHOOK_USER = os.getenv("YOOKASSA_WEBHOOK_USER", "")
YOOKASSA_WEBHOOK_PASS = os.getenv("YOOKASSA_WEBHOOK_PASS", "")
BASE_URL = os.getenv("BASE_URL", "").strip()
PRICE_30_RUB = os.getenv("PRICE_30_RUB", "299.00")


def require_bot_token() -> str:
    token = os.getenv("BOT_TOKEN")
    if not token:
        raise RuntimeError("BOT_TOKEN is required")
    return token


def owner_ids() -> set[int]:
    raw = os.getenv("OWNER_CHAT_ID", "").strip()
    if not raw:
        return set()
    out: set[int] = set()
    for part in raw.split(","):
        part = part.strip()
        if not part:
            continue
        try:
            out.add(int(part))
        except ValueError:
            continue
    return out


def is_owner(chat_id: int) -> bool:
    return chat_id in owner_ids()
