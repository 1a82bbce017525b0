"""Per-user program progression.

Stages run ``none -> free (1..7) -> paid (8..35) -> support``. The last day of
``free`` and ``paid`` is a boundary: morning deliveries stop advancing the
counter there until an external trigger (payment, support opt-in) moves the
user on. Every transition here only edits the ``User`` record; persisting it
is the caller's job.
"""

from enum import Enum

from clock import ClockParts, is_support_day
from models import Stage, User

FREE_FIRST_DAY = 1
FREE_LAST_DAY = 7
PAID_FIRST_DAY = 8
PAID_LAST_DAY = 35

PLAN_PAID_30 = "paid_30"

REVIEW_ASK_DAY = 4
REVIEW_REMIND_DAY = 6


class ExternalTrigger(str, Enum):
    ACTIVATE_PAID = "activate_paid"
    START_SUPPORT = "start_support"


BOUNDARIES: dict[Stage, tuple[int, ExternalTrigger]] = {
    Stage.FREE: (FREE_LAST_DAY, ExternalTrigger.ACTIVATE_PAID),
    Stage.PAID: (PAID_LAST_DAY, ExternalTrigger.START_SUPPORT),
}


def has_program(user: User | None) -> bool:
    return bool(user and user.is_active and user.stage != Stage.NONE)


def awaiting_external_trigger(user: User) -> ExternalTrigger | None:
    """The trigger a user parked on a boundary day is waiting for."""
    boundary = BOUNDARIES.get(user.stage)
    if boundary is None:
        return None
    last_day, trigger = boundary
    if user.current_day >= last_day:
        return trigger
    return None


def is_boundary_day(user: User) -> bool:
    return awaiting_external_trigger(user) is not None


def is_eligible(user: User, parts: ClockParts) -> bool:
    if not user.is_active or user.stage == Stage.NONE:
        return False
    if user.stage == Stage.SUPPORT and not is_support_day(parts):
        return False
    return True


def advance_after_morning(user: User) -> bool:
    if is_boundary_day(user):
        return False

    if user.stage == Stage.FREE:
        user.current_day = min(max(user.current_day, FREE_FIRST_DAY) + 1, FREE_LAST_DAY)
        return True

    if user.stage == Stage.PAID:
        user.current_day = min(max(user.current_day, PAID_FIRST_DAY) + 1, PAID_LAST_DAY)
        return True

    if user.stage == Stage.SUPPORT:
        user.support_step = max(1, user.support_step + 1)
        return True

    return False


def offer_after_evening(user: User) -> ExternalTrigger | None:
    """Offer to show after an evening delivery that landed on a boundary day."""
    if not user.is_active:
        return None
    last_day, trigger = BOUNDARIES.get(user.stage, (None, None))
    if last_day is not None and user.current_day == last_day:
        return trigger
    return None


def should_ask_review(user: User) -> bool:
    return user.is_active and user.stage == Stage.FREE and user.current_day == REVIEW_ASK_DAY


def should_remind_review(user: User) -> bool:
    return (
        user.is_active
        and user.stage == Stage.FREE
        and user.review_postponed
        and user.current_day == REVIEW_REMIND_DAY
    )


def _reset_slot_markers(user: User) -> None:
    user.last_morning_sent_key = None
    user.last_evening_sent_key = None


def start_free(user: User) -> None:
    user.is_active = True
    user.stage = Stage.FREE
    user.current_day = FREE_FIRST_DAY
    user.support_step = 1
    _reset_slot_markers(user)


def activate_paid(user: User, payment_id: str | None = None) -> bool:
    """Move the user into the paid track; a no-op on stage if already paid.

    Pending-payment fields are cleared either way so replayed webhooks leave
    the same final state.
    """
    user.pending_payment_id = None
    user.pending_plan = None
    if user.stage == Stage.PAID:
        return False
    user.is_active = True
    user.stage = Stage.PAID
    user.current_day = PAID_FIRST_DAY
    user.support_step = 1
    if payment_id:
        user.last_payment_id = payment_id
    _reset_slot_markers(user)
    return True


def cancel_pending_payment(user: User) -> None:
    user.pending_payment_id = None
    user.pending_plan = None


def start_support(user: User) -> None:
    user.is_active = True
    user.stage = Stage.SUPPORT
    user.support_step = 1
    _reset_slot_markers(user)


def stop(user: User) -> None:
    user.is_active = False
