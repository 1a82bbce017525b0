import asyncio
import logging
import re
from datetime import time
from zoneinfo import ZoneInfo

from telegram import Update
from telegram.error import TelegramError
from telegram.ext import (
    Application,
    CallbackQueryHandler,
    CommandHandler,
    ContextTypes,
    JobQueue,
    MessageHandler,
    filters,
)

import db
import payments
import program
import worker
from clock import day_key, parse_hhmm, parts_in_tz
from config import (
    DB_PATH,
    EVENING_TIME,
    FIXED_TZ,
    MORNING_TIME,
    WATCHDOG_SECONDS,
    YOOKASSA_WEBHOOK_PASS,
    YOOKASSA_WEBHOOK_USER,
    is_owner,
    owner_ids,
    require_bot_token,
)
from keyboards import (
    COPY,
    how_markup,
    main_markup,
    payment_markup,
    review_markup,
    subscription_markup,
    week_finished,
)
from models import Review, SlotKind, Stage, User

logging.basicConfig(level=logging.INFO)
LOGGER = logging.getLogger(__name__)

STOP_RE = re.compile(r"^стоп$", re.IGNORECASE)
DEBUG_CHUNK = 30


def chat_id_of(update: Update) -> int:
    return update.effective_chat.id


def how_text(user: User | None) -> str:
    stop_key = "how_stop_active" if program.has_program(user) else "how_stop_inactive"
    return COPY["common"]["how"].format(
        morning_time=MORNING_TIME,
        evening_time=EVENING_TIME,
        stop_line=COPY["common"][stop_key],
    )


def subscription_text(user: User | None) -> str:
    texts = COPY["subscription"]
    if user and user.stage == Stage.PAID:
        return texts["paid"]
    if user and user.stage == Stage.SUPPORT:
        return texts["support"]
    if week_finished(user):
        return texts["week_finished"]
    return texts["default"]


def short_user_line(user: User) -> str:
    return COPY["admin"]["user_line"].format(
        user_id=user.user_id,
        active="yes" if user.is_active else "no",
        stage=user.stage.value,
        day=user.current_day,
        step=user.support_step,
        morning_key=user.last_morning_sent_key or "-",
        evening_key=user.last_evening_sent_key or "-",
    )


async def _answer(update: Update) -> None:
    query = update.callback_query
    if query is None:
        return
    try:
        await query.answer()
    except TelegramError:
        LOGGER.debug("callback answer failed", exc_info=True)


async def _reply(update: Update, text: str, reply_markup=None) -> None:
    await update.effective_message.reply_text(text, reply_markup=reply_markup)


# Program menu


async def start_cmd(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    user = db.ensure_user(DB_PATH, chat_id_of(update))
    await _reply(update, COPY["common"]["start"], main_markup(user))


async def how_callback(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    await _answer(update)
    user = db.ensure_user(DB_PATH, chat_id_of(update))
    await _reply(update, how_text(user), how_markup(user))


async def back_callback(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    await _answer(update)
    user = db.ensure_user(DB_PATH, chat_id_of(update))
    await _reply(update, COPY["common"]["ok"], main_markup(user))


async def sub_info_callback(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    await _answer(update)
    user = db.ensure_user(DB_PATH, chat_id_of(update))
    await _reply(update, subscription_text(user), subscription_markup(user))


async def sub_later_callback(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    await _answer(update)
    user = db.ensure_user(DB_PATH, chat_id_of(update))
    await _reply(update, COPY["common"]["later"], main_markup(user))


async def start_free_callback(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    await _answer(update)
    user = db.ensure_user(DB_PATH, chat_id_of(update))
    program.start_free(user)
    db.upsert_user(DB_PATH, user)
    await _reply(update, COPY["common"]["after_start"].format(morning_time=MORNING_TIME), main_markup(user))


async def start_support_callback(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    await _answer(update)
    user = db.ensure_user(DB_PATH, chat_id_of(update))
    program.start_support(user)
    db.upsert_user(DB_PATH, user)
    await _reply(
        update,
        COPY["common"]["support_started"].format(morning_time=MORNING_TIME, evening_time=EVENING_TIME),
        main_markup(user),
    )


async def buy_30_callback(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    await _answer(update)
    chat_id = chat_id_of(update)
    user = db.ensure_user(DB_PATH, chat_id)

    if not payments.payments_enabled():
        await _reply(update, COPY["payments"]["not_configured"], main_markup(user))
        return

    try:
        url = await asyncio.to_thread(payments.start_checkout, chat_id)
    except Exception as e:
        LOGGER.exception("payment creation failed: %s", chat_id)
        await _reply(update, COPY["payments"]["failed"].format(error=e), main_markup(user))
        return

    await _reply(update, COPY["payments"]["checkout"], payment_markup(url))


async def stop_program(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    await _answer(update)
    user = db.ensure_user(DB_PATH, chat_id_of(update))
    program.stop(user)
    db.upsert_user(DB_PATH, user)
    await _reply(update, COPY["common"]["stopped"], main_markup(user))


# Reviews


async def review_write_callback(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    await _answer(update)
    user = db.ensure_user(DB_PATH, chat_id_of(update))
    user.awaiting_review = True
    db.upsert_user(DB_PATH, user)
    await _reply(update, COPY["review"]["write_prompt"], review_markup())


async def review_later_callback(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    await _answer(update)
    user = db.ensure_user(DB_PATH, chat_id_of(update))
    user.review_postponed = True
    user.awaiting_review = False
    db.upsert_user(DB_PATH, user)
    await _reply(update, COPY["review"]["later_reply"], main_markup(user))


async def review_text_handler(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    message = update.effective_message
    if message is None:
        return
    text = (message.text or "").strip()
    if not text:
        return

    user = db.get_user(DB_PATH, chat_id_of(update))
    if not user or not user.awaiting_review:
        return

    user.awaiting_review = False
    user.review_postponed = False
    db.upsert_user(DB_PATH, user)

    review_id = db.add_review(
        DB_PATH,
        Review(user_id=user.user_id, text=text, stage=user.stage, current_day=user.current_day),
    )
    await _reply(update, COPY["review"]["thanks"])

    notice = COPY["review"]["owner_notice"].format(
        id=review_id,
        user_id=user.user_id,
        stage=user.stage.value,
        day=user.current_day,
        text=text,
    )
    for owner_id in owner_ids():
        try:
            await context.bot.send_message(chat_id=owner_id, text=notice)
        except TelegramError:
            LOGGER.warning("review notice to owner %s failed", owner_id)


# Admin


async def _require_owner(update: Update) -> bool:
    if is_owner(chat_id_of(update)):
        return True
    await _reply(update, COPY["admin"]["forbidden"])
    return False


async def myid_cmd(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    chat = update.effective_chat
    await _reply(update, COPY["admin"]["myid"].format(chat_id=chat.id, chat_type=chat.type or "unknown"))


async def debug_users_cmd(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    if not await _require_owner(update):
        return
    users = db.list_users(DB_PATH)
    if not users:
        await _reply(update, COPY["admin"]["users_empty"])
        return
    await _reply(update, COPY["admin"]["users_header"].format(count=len(users)))
    lines = [short_user_line(u) for u in users]
    for i in range(0, len(lines), DEBUG_CHUNK):
        await _reply(update, "\n".join(lines[i : i + DEBUG_CHUNK]))


def user_stats(users: list[User]) -> dict[str, int]:
    stats = {"total": len(users), "active": sum(1 for u in users if u.is_active)}
    for stage in Stage:
        stats[stage.value] = sum(1 for u in users if u.stage == stage)
    return stats


async def stats_cmd(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    if not await _require_owner(update):
        return
    stats = user_stats(db.list_users(DB_PATH))
    await _reply(update, COPY["admin"]["stats"].format(**stats))


async def reviews_count_cmd(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    if not await _require_owner(update):
        return
    await _reply(update, COPY["admin"]["reviews_count"].format(count=db.count_reviews(DB_PATH)))


async def _manual_tick(update: Update, context: ContextTypes.DEFAULT_TYPE, slot: SlotKind) -> None:
    if not await _require_owner(update):
        return
    await _reply(update, COPY["admin"]["tick_start"].format(slot=slot.value))
    try:
        sent = await worker.run_slot(context.bot, slot)
    except Exception as e:
        LOGGER.exception("manual %s tick failed", slot.value)
        await _reply(update, COPY["admin"]["tick_failed"].format(error=e))
        return
    await _reply(update, COPY["admin"]["tick_done"].format(slot=slot.value, sent=sent))


async def tick_morning_cmd(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    await _manual_tick(update, context, SlotKind.MORNING)


async def tick_evening_cmd(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    await _manual_tick(update, context, SlotKind.EVENING)


async def deliveries_cmd(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    if not await _require_owner(update):
        return
    stats = db.get_delivery_stats_by_day(DB_PATH, day_key())
    empty = {"total": 0, "sent": 0, "errors": 0}
    m = stats["by_kind"].get(SlotKind.MORNING.value, empty)
    e = stats["by_kind"].get(SlotKind.EVENING.value, empty)
    await _reply(
        update,
        COPY["admin"]["deliveries"].format(
            tz=FIXED_TZ,
            send_key=stats["send_key"],
            m_total=m["total"],
            m_sent=m["sent"],
            m_errors=m["errors"],
            e_total=e["total"],
            e_sent=e["sent"],
            e_errors=e["errors"],
            total_all=stats["total_all"],
            sent_all=stats["sent_all"],
            errors_all=stats["errors_all"],
        ),
    )


# Schedule


async def scheduled_slot_job(context: ContextTypes.DEFAULT_TYPE) -> None:
    await worker.safe_run(context.bot, context.job.data, "job-queue")


async def watchdog_job(context: ContextTypes.DEFAULT_TYPE) -> None:
    await worker.tick(context.bot)


def schedule_jobs(job_queue: JobQueue) -> None:
    tz = ZoneInfo(FIXED_TZ)
    for slot, hhmm in ((SlotKind.MORNING, MORNING_TIME), (SlotKind.EVENING, EVENING_TIME)):
        h, m = parse_hhmm(hhmm)
        job_queue.run_daily(
            scheduled_slot_job,
            time=time(hour=h, minute=m, tzinfo=tz),
            data=slot,
            name=f"{slot.value}_slot",
        )
    job_queue.run_repeating(watchdog_job, interval=WATCHDOG_SECONDS, first=1, name="watchdog")


async def post_init(app: Application) -> None:
    parts = parts_in_tz()
    LOGGER.info("[scheduler] now %s %s day_key=%s", FIXED_TZ, parts.hhmm, parts.date_key)
    LOGGER.info("[payments] enabled=%s", payments.payments_enabled())
    LOGGER.info("[payments] webhook auth=%s", bool(YOOKASSA_WEBHOOK_USER or YOOKASSA_WEBHOOK_PASS))


def build_app(token: str) -> Application:
    app = Application.builder().token(token).post_init(post_init).build()

    app.add_handler(CommandHandler("start", start_cmd))
    app.add_handler(CommandHandler("stop", stop_program))
    app.add_handler(CommandHandler("myid", myid_cmd))
    app.add_handler(CommandHandler("debug_users", debug_users_cmd))
    app.add_handler(CommandHandler("stats", stats_cmd))
    app.add_handler(CommandHandler("reviews_count", reviews_count_cmd))
    app.add_handler(CommandHandler("tick_morning", tick_morning_cmd))
    app.add_handler(CommandHandler("tick_evening", tick_evening_cmd))
    app.add_handler(CommandHandler("deliveries", deliveries_cmd))

    app.add_handler(CallbackQueryHandler(how_callback, pattern=r"^HOW$"))
    app.add_handler(CallbackQueryHandler(back_callback, pattern=r"^BACK$"))
    app.add_handler(CallbackQueryHandler(sub_info_callback, pattern=r"^SUB_INFO$"))
    app.add_handler(CallbackQueryHandler(sub_later_callback, pattern=r"^SUB_LATER$"))
    app.add_handler(CallbackQueryHandler(start_free_callback, pattern=r"^START_FREE$"))
    app.add_handler(CallbackQueryHandler(start_support_callback, pattern=r"^START_SUPPORT$"))
    app.add_handler(CallbackQueryHandler(buy_30_callback, pattern=r"^BUY_30$"))
    app.add_handler(CallbackQueryHandler(stop_program, pattern=r"^STOP$"))
    app.add_handler(CallbackQueryHandler(review_write_callback, pattern=r"^REVIEW_WRITE$"))
    app.add_handler(CallbackQueryHandler(review_later_callback, pattern=r"^REVIEW_LATER$"))

    app.add_handler(MessageHandler(filters.TEXT & filters.Regex(STOP_RE), stop_program))
    app.add_handler(MessageHandler(filters.TEXT & ~filters.COMMAND, review_text_handler))

    if app.job_queue is not None:
        schedule_jobs(app.job_queue)

    return app


def main() -> None:
    token = require_bot_token()
    db.init_db(DB_PATH)
    app = build_app(token)
    app.run_polling(allowed_updates=Update.ALL_TYPES)


if __name__ == "__main__":
    main()
