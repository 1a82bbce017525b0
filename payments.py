import logging
import uuid
from typing import Any, NamedTuple

from yookassa import Configuration, Payment

import db
import program
from config import BASE_URL, DB_PATH, PRICE_30_RUB, YOOKASSA_SECRET_KEY, YOOKASSA_SHOP_ID
from keyboards import COPY

LOGGER = logging.getLogger(__name__)

EVENT_SUCCEEDED = "payment.succeeded"
EVENT_CANCELED = "payment.canceled"


class PaymentsNotConfigured(RuntimeError):
    pass


class PaymentError(RuntimeError):
    pass


class PaymentEvent(NamedTuple):
    event: str
    user_id: int
    plan: str
    payment_id: str | None


def payments_enabled() -> bool:
    return bool(YOOKASSA_SHOP_ID and YOOKASSA_SECRET_KEY and BASE_URL)


def _configure() -> None:
    Configuration.account_id = YOOKASSA_SHOP_ID
    Configuration.secret_key = YOOKASSA_SECRET_KEY


def create_payment_30_days(user_id: int) -> tuple[str, str]:
    """Create a redirect payment for the 30-day track. Returns (confirmation_url, payment_id)."""
    if not payments_enabled():
        raise PaymentsNotConfigured("set YOOKASSA_SHOP_ID, YOOKASSA_SECRET_KEY, BASE_URL")

    _configure()
    payment = Payment.create(
        {
            "amount": {"value": PRICE_30_RUB, "currency": "RUB"},
            "capture": True,
            "confirmation": {
                "type": "redirect",
                "return_url": f"{BASE_URL.rstrip('/')}/success",
            },
            "description": COPY["payments"]["description"],
            "metadata": {"plan": program.PLAN_PAID_30, "chatId": str(user_id)},
        },
        uuid.uuid4().hex,
    )

    confirmation = getattr(payment, "confirmation", None)
    url = getattr(confirmation, "confirmation_url", None)
    payment_id = getattr(payment, "id", None)
    if not url or not payment_id:
        raise PaymentError("missing confirmation_url or payment id")

    LOGGER.info("payment created: user=%s payment=%s", user_id, payment_id)
    return url, str(payment_id)


def start_checkout(user_id: int) -> str:
    url, payment_id = create_payment_30_days(user_id)
    user = db.ensure_user(DB_PATH, user_id)
    user.pending_plan = program.PLAN_PAID_30
    user.pending_payment_id = payment_id
    db.upsert_user(DB_PATH, user)
    return url


def parse_event(payload: Any) -> PaymentEvent | None:
    """Pull (event, user, plan) out of a webhook body; None when it is not actionable."""
    if not isinstance(payload, dict):
        return None
    event = payload.get("event")
    obj = payload.get("object")
    if event not in (EVENT_SUCCEEDED, EVENT_CANCELED) or not isinstance(obj, dict):
        return None

    meta = obj.get("metadata") or {}
    if not isinstance(meta, dict):
        return None
    raw_user_id = meta.get("chatId")
    if raw_user_id is None:
        return None
    try:
        user_id = int(str(raw_user_id))
    except ValueError:
        return None

    payment_id = obj.get("id")
    return PaymentEvent(
        event=event,
        user_id=user_id,
        plan=str(meta.get("plan") or ""),
        payment_id=str(payment_id) if payment_id else None,
    )


def handle_event(event: PaymentEvent) -> str:
    """Apply a payment result. Safe to call repeatedly for the same event."""
    if event.plan != program.PLAN_PAID_30:
        LOGGER.info("payment event for unknown plan ignored: %s %s", event.event, event.plan)
        return "ignored"

    user = db.ensure_user(DB_PATH, event.user_id)

    if event.event == EVENT_CANCELED:
        program.cancel_pending_payment(user)
        db.upsert_user(DB_PATH, user)
        LOGGER.info("payment canceled: user=%s payment=%s", event.user_id, event.payment_id)
        return "canceled"

    activated = program.activate_paid(user, payment_id=event.payment_id)
    db.upsert_user(DB_PATH, user)
    if activated:
        LOGGER.info("paid track activated: user=%s payment=%s", event.user_id, event.payment_id)
        return "activated"
    LOGGER.info("payment replay: user=%s payment=%s", event.user_id, event.payment_id)
    return "replay"
