import json
from pathlib import Path

from models import SlotKind, Stage

TEXTS_DIR = Path(__file__).resolve().parent / "texts"

FREE_DAYS = range(1, 8)
PAID_DAYS = range(8, 36)
MESSAGE_SLOTS = (SlotKind.MORNING, SlotKind.EVENING)

with open(TEXTS_DIR / "program.ru.json", "r", encoding="utf-8") as f:
    PROGRAM = json.load(f)


def _day_text(stage_key: str, day: int, slot: SlotKind) -> str | None:
    entry = PROGRAM.get(stage_key, {}).get(str(day))
    if not entry:
        return None
    return entry.get(slot.value) or None


def resolve(stage: Stage | str, day: int, support_step: int, slot: SlotKind | str) -> str | None:
    """Message body for a user's position in the program, or ``None``.

    Pure lookup: free days 1..7, paid days 8..35, support rotates through
    its list by step. Anything outside those ranges resolves to ``None``.
    """
    try:
        stage = Stage(stage)
        slot = SlotKind(slot)
    except ValueError:
        return None
    if slot not in MESSAGE_SLOTS:
        return None

    if not isinstance(day, int):
        day = 0

    if stage == Stage.FREE:
        if day not in FREE_DAYS:
            return None
        return _day_text("free", day, slot)

    if stage == Stage.PAID:
        if day not in PAID_DAYS:
            return None
        return _day_text("paid", day, slot)

    if stage == Stage.SUPPORT:
        if not isinstance(support_step, int) or support_step < 1:
            return None
        rotation = PROGRAM.get("support", {}).get(slot.value) or []
        if not rotation:
            return None
        return rotation[(support_step - 1) % len(rotation)]

    return None
