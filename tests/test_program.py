from datetime import datetime, timezone

import program
from clock import parts_in_tz
from models import Stage, User

MONDAY = parts_in_tz(datetime(2026, 2, 16, 6, 0, tzinfo=timezone.utc))
TUESDAY = parts_in_tz(datetime(2026, 2, 17, 6, 0, tzinfo=timezone.utc))


def test_new_user_is_idle():
    user = User(user_id=1)
    assert not user.is_active
    assert user.stage == Stage.NONE
    assert not program.has_program(user)
    assert not program.is_eligible(user, MONDAY)


def test_start_free_resets():
    user = User(user_id=1, current_day=5, support_step=3, last_morning_sent_key="2026-02-01")
    program.start_free(user)
    assert user.is_active
    assert user.stage == Stage.FREE
    assert user.current_day == 1
    assert user.support_step == 1
    assert user.last_morning_sent_key is None


def test_free_advances_and_parks_on_day_seven():
    user = User(user_id=1)
    program.start_free(user)
    for expected in range(2, 8):
        assert program.advance_after_morning(user)
        assert user.current_day == expected

    assert program.awaiting_external_trigger(user) == program.ExternalTrigger.ACTIVATE_PAID
    assert not program.advance_after_morning(user)
    assert user.current_day == 7
    assert user.stage == Stage.FREE


def test_paid_parks_on_day_thirty_five():
    user = User(user_id=1, is_active=True, stage=Stage.PAID, current_day=34)
    assert program.advance_after_morning(user)
    assert user.current_day == 35
    assert not program.advance_after_morning(user)
    assert user.current_day == 35
    assert program.awaiting_external_trigger(user) == program.ExternalTrigger.START_SUPPORT


def test_support_step_grows():
    user = User(user_id=1)
    program.start_support(user)
    assert program.advance_after_morning(user)
    assert program.advance_after_morning(user)
    assert user.support_step == 3
    assert program.awaiting_external_trigger(user) is None


def test_support_eligible_only_on_support_days():
    user = User(user_id=1)
    program.start_support(user)
    assert program.is_eligible(user, MONDAY)
    assert not program.is_eligible(user, TUESDAY)


def test_offer_after_evening():
    user = User(user_id=1, is_active=True, stage=Stage.FREE, current_day=7)
    assert program.offer_after_evening(user) == program.ExternalTrigger.ACTIVATE_PAID

    user.current_day = 6
    assert program.offer_after_evening(user) is None

    paid = User(user_id=2, is_active=True, stage=Stage.PAID, current_day=35)
    assert program.offer_after_evening(paid) == program.ExternalTrigger.START_SUPPORT

    paid.is_active = False
    assert program.offer_after_evening(paid) is None


def test_activate_paid_is_replay_safe():
    user = User(user_id=1, is_active=True, stage=Stage.FREE, current_day=7)
    user.pending_payment_id = "p1"
    user.pending_plan = program.PLAN_PAID_30

    assert program.activate_paid(user, payment_id="p1")
    assert user.stage == Stage.PAID
    assert user.current_day == 8
    assert user.pending_payment_id is None
    assert user.last_payment_id == "p1"

    user.current_day = 12
    assert not program.activate_paid(user, payment_id="p1")
    assert user.current_day == 12
    assert user.pending_plan is None


def test_stop_is_idempotent():
    user = User(user_id=1)
    program.start_free(user)
    user.current_day = 3
    program.stop(user)
    program.stop(user)
    assert not user.is_active
    assert user.stage == Stage.FREE
    assert user.current_day == 3


def test_review_prompts():
    user = User(user_id=1, is_active=True, stage=Stage.FREE, current_day=4)
    assert program.should_ask_review(user)
    assert not program.should_remind_review(user)

    user.current_day = 6
    assert not program.should_remind_review(user)
    user.review_postponed = True
    assert program.should_remind_review(user)

    paid = User(user_id=2, is_active=True, stage=Stage.PAID, current_day=4)
    assert not program.should_ask_review(paid)
