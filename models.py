from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

USER_SCHEMA_VERSION = 1


class Stage(str, Enum):
    NONE = "none"
    FREE = "free"
    PAID = "paid"
    SUPPORT = "support"


class SlotKind(str, Enum):
    MORNING = "morning"
    EVENING = "evening"
    REVIEW_ASK = "review_ask"
    REVIEW_ASK_REMIND = "review_ask_remind"


@dataclass
class User:
    user_id: int
    is_active: bool = False
    stage: Stage = Stage.NONE
    current_day: int = 1
    support_step: int = 1
    last_morning_sent_key: str | None = None
    last_evening_sent_key: str | None = None
    awaiting_review: bool = False
    review_postponed: bool = False
    pending_payment_id: str | None = None
    pending_plan: str | None = None
    last_payment_id: str | None = None
    schema_version: int = USER_SCHEMA_VERSION

    def last_sent_key(self, slot: SlotKind) -> str | None:
        if slot == SlotKind.MORNING:
            return self.last_morning_sent_key
        if slot == SlotKind.EVENING:
            return self.last_evening_sent_key
        raise ValueError(f"no last-sent marker for slot {slot}")

    def set_last_sent_key(self, slot: SlotKind, key: str | None) -> None:
        if slot == SlotKind.MORNING:
            self.last_morning_sent_key = key
        elif slot == SlotKind.EVENING:
            self.last_evening_sent_key = key
        else:
            raise ValueError(f"no last-sent marker for slot {slot}")

    def to_row(self) -> dict[str, Any]:
        row = asdict(self)
        row["stage"] = self.stage.value
        row["is_active"] = int(self.is_active)
        row["awaiting_review"] = int(self.awaiting_review)
        row["review_postponed"] = int(self.review_postponed)
        return row

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "User":
        return cls(
            user_id=int(row["user_id"]),
            is_active=bool(row.get("is_active")),
            stage=Stage(row.get("stage") or Stage.NONE.value),
            current_day=int(row.get("current_day") or 1),
            support_step=int(row.get("support_step") or 1),
            last_morning_sent_key=row.get("last_morning_sent_key"),
            last_evening_sent_key=row.get("last_evening_sent_key"),
            awaiting_review=bool(row.get("awaiting_review")),
            review_postponed=bool(row.get("review_postponed")),
            pending_payment_id=row.get("pending_payment_id"),
            pending_plan=row.get("pending_plan"),
            last_payment_id=row.get("last_payment_id"),
            schema_version=int(row.get("schema_version") or USER_SCHEMA_VERSION),
        )


@dataclass
class Review:
    user_id: int
    text: str
    stage: Stage | None = None
    current_day: int | None = None
    created_at: datetime | None = None
    id: int | None = field(default=None)
