from datetime import datetime, timezone
from typing import NamedTuple
from zoneinfo import ZoneInfo

from config import FIXED_TZ

SUPPORT_WEEKDAYS = frozenset({1, 3, 5})


class ClockParts(NamedTuple):
    tz: str
    date_key: str
    hour: int
    minute: int
    weekday: int  # 1..7, Mon..Sun

    @property
    def hhmm(self) -> str:
        return f"{self.hour:02d}:{self.minute:02d}"


def parts_in_tz(instant: datetime | None = None, tz_name: str = FIXED_TZ) -> ClockParts:
    """Civil date and time of ``instant`` in ``tz_name``.

    Naive instants are taken as UTC so the result never depends on the
    host zone.
    """
    if instant is None:
        instant = datetime.now(timezone.utc)
    elif instant.tzinfo is None:
        instant = instant.replace(tzinfo=timezone.utc)
    local = instant.astimezone(ZoneInfo(tz_name))
    return ClockParts(
        tz=tz_name,
        date_key=local.date().isoformat(),
        hour=local.hour,
        minute=local.minute,
        weekday=local.isoweekday(),
    )


def day_key(instant: datetime | None = None, tz_name: str = FIXED_TZ) -> str:
    return parts_in_tz(instant, tz_name).date_key


def is_support_day(parts: ClockParts) -> bool:
    return parts.weekday in SUPPORT_WEEKDAYS


def parse_hhmm(value: str) -> tuple[int, int]:
    h, m = value.split(":", 1)
    return int(h), int(m)


def in_window(parts: ClockParts, hh: int, mm: int, window_minutes: int) -> bool:
    now = parts.hour * 60 + parts.minute
    start = hh * 60 + mm
    return start <= now <= start + window_minutes


def is_after(parts: ClockParts, hh: int, mm: int) -> bool:
    return (parts.hour, parts.minute) >= (hh, mm)
