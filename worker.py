import asyncio
import logging
from datetime import datetime

from telegram import Bot

import content
import db
import program
from clock import ClockParts, in_window, is_after, parse_hhmm, parts_in_tz
from config import (
    DB_PATH,
    EVENING_CATCHUP_END_HOUR,
    EVENING_TIME,
    FIXED_TZ,
    MORNING_CATCHUP_END_HOUR,
    MORNING_TIME,
    POLL_SECONDS,
    RETRY_UNSENT_SAME_DAY,
    SEND_PAUSE_SECONDS,
    WINDOW_MINUTES,
    require_bot_token,
)
from keyboards import COPY, offer_markup, review_markup
from models import SlotKind, User
from transport import DeliveryError, Transport

logging.basicConfig(level=logging.INFO)
LOGGER = logging.getLogger(__name__)

SLOT_SCHEDULE = {
    SlotKind.MORNING: (MORNING_TIME, MORNING_CATCHUP_END_HOUR),
    SlotKind.EVENING: (EVENING_TIME, EVENING_CATCHUP_END_HOUR),
}


class RunGuard:
    """In-process memo of slots already run for a day key.

    Only saves a redundant list-and-scan; it is lost on restart and is never
    what prevents a double send. The delivery ledger claim does that.
    """

    def __init__(self):
        self._last_run: dict[SlotKind, str] = {}
        self._running: set[SlotKind] = set()

    def already_ran(self, slot: SlotKind, key: str) -> bool:
        return self._last_run.get(slot) == key

    def is_running(self, slot: SlotKind) -> bool:
        return slot in self._running

    def start(self, slot: SlotKind, key: str) -> None:
        self._running.add(slot)
        self._last_run[slot] = key

    def finish(self, slot: SlotKind) -> None:
        self._running.discard(slot)

    def forget(self, slot: SlotKind) -> None:
        self._last_run.pop(slot, None)


RUN_GUARD = RunGuard()


def _as_transport(bot) -> Transport:
    if isinstance(bot, Transport):
        return bot
    return Transport(bot)


async def _send_tracked(transport: Transport, user: User, kind: SlotKind, key: str, text: str, reply_markup=None) -> bool:
    """Claim-guarded one-shot send for side flows (review prompts)."""
    if not db.claim_delivery(DB_PATH, user.user_id, kind.value, key):
        return False
    try:
        await transport.send(user.user_id, text, reply_markup=reply_markup)
    except DeliveryError as e:
        db.mark_delivery_error(DB_PATH, user.user_id, kind.value, key, e.reason)
        LOGGER.warning("%s failed for %s: %s", kind.value, user.user_id, e.reason)
        return False
    db.mark_delivery_sent(DB_PATH, user.user_id, kind.value, key)
    return True


async def maybe_ask_review(transport: Transport, user: User, key: str) -> None:
    if not program.should_ask_review(user):
        return
    await _send_tracked(transport, user, SlotKind.REVIEW_ASK, key, COPY["review"]["ask"], review_markup())


async def maybe_remind_review(transport: Transport, user: User, key: str) -> None:
    if not program.should_remind_review(user):
        return
    sent = await _send_tracked(
        transport, user, SlotKind.REVIEW_ASK_REMIND, key, COPY["review"]["remind"], review_markup()
    )
    if sent:
        user.review_postponed = False


async def send_offer(transport: Transport, user: User, trigger: program.ExternalTrigger) -> bool:
    try:
        await transport.send(user.user_id, COPY["offers"][trigger.value], reply_markup=offer_markup(trigger))
    except DeliveryError as e:
        LOGGER.warning("offer %s failed for %s: %s", trigger.value, user.user_id, e.reason)
        return False
    return True


def _record_error(user: User, slot: SlotKind, key: str, reason: str) -> None:
    try:
        db.mark_delivery_error(DB_PATH, user.user_id, slot.value, key, reason)
    except Exception:
        LOGGER.exception("could not record %s error for %s", slot.value, user.user_id)


async def deliver(transport: Transport, user: User, slot: SlotKind, parts: ClockParts) -> bool:
    """Run one user through one slot. Returns True when the main message went out."""
    key = parts.date_key

    if not program.is_eligible(user, parts):
        return False
    if user.last_sent_key(slot) == key:
        return False

    text = content.resolve(user.stage, user.current_day, user.support_step, slot)
    if not text:
        return False

    if not db.claim_delivery(DB_PATH, user.user_id, slot.value, key, retry_unsent=RETRY_UNSENT_SAME_DAY):
        return False

    try:
        await transport.send(user.user_id, text)
    except DeliveryError as e:
        LOGGER.error("[%s] send error %s: %s", slot.value, user.user_id, e.reason)
        _record_error(user, slot, key, e.reason)
        if e.unreachable:
            program.stop(user)
            db.upsert_user(DB_PATH, user)
        return False

    db.mark_delivery_sent(DB_PATH, user.user_id, slot.value, key)

    if slot == SlotKind.MORNING:
        for side_flow in (maybe_ask_review, maybe_remind_review):
            try:
                await side_flow(transport, user, key)
            except Exception:
                LOGGER.exception("review prompt failed: %s", user.user_id)

    user.set_last_sent_key(slot, key)
    if slot == SlotKind.MORNING:
        program.advance_after_morning(user)
    db.upsert_user(DB_PATH, user)

    if slot == SlotKind.EVENING:
        trigger = program.offer_after_evening(user)
        if trigger is not None:
            await send_offer(transport, user, trigger)

    return True


async def run_slot(bot, slot: SlotKind, now: datetime | None = None) -> int:
    parts = parts_in_tz(now)
    transport = _as_transport(bot)

    users = db.list_users(DB_PATH)
    sent = 0
    for user in users:
        try:
            if await deliver(transport, user, slot, parts):
                sent += 1
                if SEND_PAUSE_SECONDS:
                    await asyncio.sleep(SEND_PAUSE_SECONDS)
        except Exception:
            LOGGER.exception("[%s] user loop failed: %s", slot.value, user.user_id)

    LOGGER.info("[%s] %s key=%s sent=%s", slot.value, FIXED_TZ, parts.date_key, sent)
    return sent


async def run_morning(bot, now: datetime | None = None) -> int:
    return await run_slot(bot, SlotKind.MORNING, now=now)


async def run_evening(bot, now: datetime | None = None) -> int:
    return await run_slot(bot, SlotKind.EVENING, now=now)


async def safe_run(bot, slot: SlotKind, source: str, now: datetime | None = None, guard: RunGuard = RUN_GUARD) -> int | None:
    """Entry point for every trigger source. Returns the sent count, or None if skipped."""
    parts = parts_in_tz(now)
    key = parts.date_key

    if guard.is_running(slot) or guard.already_ran(slot, key):
        return None

    guard.start(slot, key)
    try:
        LOGGER.info("[scheduler] %s fire (%s) %s %s key=%s", slot.value, source, FIXED_TZ, parts.hhmm, key)
        sent = await run_slot(bot, slot, now=now)
        LOGGER.info("[scheduler] %s done (%s) key=%s sent=%s", slot.value, source, key, sent)
        return sent
    except Exception:
        guard.forget(slot)
        LOGGER.exception("[scheduler] %s error (%s)", slot.value, source)
        return None
    finally:
        guard.finish(slot)


def due_slots(parts: ClockParts) -> list[tuple[SlotKind, str]]:
    """Slots the watchdog should fire now: inside the send window, or catching up later that day."""
    out = []
    for slot, (hhmm, catchup_end_hour) in SLOT_SCHEDULE.items():
        h, m = parse_hhmm(hhmm)
        if in_window(parts, h, m, WINDOW_MINUTES):
            out.append((slot, "watchdog-window"))
        elif is_after(parts, h, m) and parts.hour <= catchup_end_hour:
            out.append((slot, "watchdog-catchup"))
    return out


async def tick(bot, now: datetime | None = None, guard: RunGuard = RUN_GUARD) -> dict:
    """One watchdog pass: fire every slot that is due and not yet run today in this process."""
    parts = parts_in_tz(now)
    fired: dict[str, int | None] = {}
    for slot, source in due_slots(parts):
        if guard.already_ran(slot, parts.date_key):
            continue
        fired[slot.value] = await safe_run(bot, slot, source, now=now, guard=guard)
    return {"day_key": parts.date_key, "time": parts.hhmm, "fired": fired}


async def run_tick_once(bot: Bot | None = None, now: datetime | None = None, guard: RunGuard = RUN_GUARD) -> dict:
    db.init_db(DB_PATH)
    if bot is not None:
        return await tick(bot, now, guard)
    async with Bot(token=require_bot_token()) as local_bot:
        return await tick(local_bot, now, guard)


async def run_slot_once(slot: SlotKind, bot: Bot | None = None, now: datetime | None = None) -> int:
    """Manual trigger: run one slot now, bypassing the in-process guard."""
    db.init_db(DB_PATH)
    if bot is not None:
        return await run_slot(bot, slot, now=now)
    async with Bot(token=require_bot_token()) as local_bot:
        return await run_slot(local_bot, slot, now=now)


async def loop_worker() -> None:
    token = require_bot_token()
    db.init_db(DB_PATH)

    async with Bot(token=token) as bot:
        while True:
            try:
                await run_tick_once(bot=bot)
            except Exception:
                LOGGER.exception("worker loop failed")
            await asyncio.sleep(POLL_SECONDS)


if __name__ == "__main__":
    asyncio.run(loop_worker())
