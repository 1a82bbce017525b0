import threading

import db
from models import Review, SlotKind, Stage, User

KEY = "2026-02-16"


def test_ensure_user_defaults(db_path):
    user = db.ensure_user(db_path, 42)
    assert user.user_id == 42
    assert not user.is_active
    assert user.stage == Stage.NONE
    assert user.current_day == 1

    user.is_active = True
    db.upsert_user(db_path, user)
    assert db.ensure_user(db_path, 42).is_active


def test_upsert_roundtrip(db_path):
    user = User(
        user_id=7,
        is_active=True,
        stage=Stage.PAID,
        current_day=12,
        last_morning_sent_key=KEY,
        review_postponed=True,
        pending_payment_id="p-1",
    )
    db.upsert_user(db_path, user)
    assert db.get_user(db_path, 7) == user

    user.current_day = 13
    db.upsert_user(db_path, user)
    assert db.get_user(db_path, 7).current_day == 13
    assert [u.user_id for u in db.list_users(db_path)] == [7]


def test_get_missing_user(db_path):
    assert db.get_user(db_path, 999) is None


def test_claim_once(db_path):
    assert db.claim_delivery(db_path, 1, SlotKind.MORNING, KEY)
    assert not db.claim_delivery(db_path, 1, SlotKind.MORNING, KEY)
    assert db.claim_delivery(db_path, 1, SlotKind.EVENING, KEY)
    assert db.claim_delivery(db_path, 1, SlotKind.MORNING, "2026-02-17")
    assert db.claim_delivery(db_path, 2, SlotKind.MORNING, KEY)


def test_claim_concurrent_single_winner(db_path):
    results = []
    lock = threading.Lock()

    def worker():
        won = db.claim_delivery(db_path, 5, "morning", KEY)
        with lock:
            results.append(won)

    threads = [threading.Thread(target=worker) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert results.count(True) == 1
    assert len(results) == 8


def test_mark_sent_and_error(db_path):
    db.claim_delivery(db_path, 1, "morning", KEY)
    row = db.get_delivery(db_path, 1, "morning", KEY)
    assert row["sent_at"] is None and row["error"] is None

    db.mark_delivery_error(db_path, 1, "morning", KEY, "boom")
    assert db.get_delivery(db_path, 1, "morning", KEY)["error"] == "boom"

    db.mark_delivery_sent(db_path, 1, "morning", KEY)
    row = db.get_delivery(db_path, 1, "morning", KEY)
    assert row["sent_at"] is not None
    assert row["error"] is None

    first_sent_at = row["sent_at"]
    db.mark_delivery_sent(db_path, 1, "morning", KEY)
    assert db.get_delivery(db_path, 1, "morning", KEY)["sent_at"] == first_sent_at


def test_retry_unsent_reclaims_failed_once(db_path):
    assert db.claim_delivery(db_path, 1, "morning", KEY, retry_unsent=True)
    # claimed, not failed yet: still held
    assert not db.claim_delivery(db_path, 1, "morning", KEY, retry_unsent=True)

    db.mark_delivery_error(db_path, 1, "morning", KEY, "timeout")
    assert not db.claim_delivery(db_path, 1, "morning", KEY)
    assert db.claim_delivery(db_path, 1, "morning", KEY, retry_unsent=True)
    assert not db.claim_delivery(db_path, 1, "morning", KEY, retry_unsent=True)

    db.mark_delivery_sent(db_path, 1, "morning", KEY)
    assert not db.claim_delivery(db_path, 1, "morning", KEY, retry_unsent=True)


def test_stats_by_day(db_path):
    db.claim_delivery(db_path, 1, "morning", KEY)
    db.mark_delivery_sent(db_path, 1, "morning", KEY)
    db.claim_delivery(db_path, 2, "morning", KEY)
    db.mark_delivery_error(db_path, 2, "morning", KEY, "Forbidden")
    db.claim_delivery(db_path, 1, "evening", KEY)
    db.claim_delivery(db_path, 1, "morning", "2026-02-17")

    stats = db.get_delivery_stats_by_day(db_path, KEY)
    assert stats["by_kind"]["morning"] == {"total": 2, "sent": 1, "errors": 1}
    assert stats["by_kind"]["evening"] == {"total": 1, "sent": 0, "errors": 0}
    assert stats["total_all"] == 3
    assert stats["sent_all"] == 1
    assert stats["errors_all"] == 1


def test_stats_empty_day(db_path):
    stats = db.get_delivery_stats_by_day(db_path, "2030-01-01")
    assert stats["by_kind"] == {}
    assert stats["total_all"] == 0


def test_reviews(db_path):
    assert db.count_reviews(db_path) == 0
    first = db.add_review(db_path, Review(user_id=1, text="  стало спокойнее ", stage=Stage.FREE, current_day=4))
    second = db.add_review(db_path, Review(user_id=2, text="спасибо"))
    assert second > first
    assert db.count_reviews(db_path) == 2


def test_init_db_is_repeatable(db_path):
    db.ensure_user(db_path, 1)
    db.init_db(db_path)
    assert db.get_user(db_path, 1) is not None
