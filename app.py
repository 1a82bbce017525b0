import asyncio
import hmac
import logging
import os
import threading

from flask import Flask, jsonify, make_response, request
from telegram import Update
from telegram.error import TelegramError

import db
import payments
from bot import build_app
from config import (
    DB_PATH,
    MORNING_TIME,
    YOOKASSA_WEBHOOK_PASS,
    YOOKASSA_WEBHOOK_USER,
    require_bot_token,
)
from keyboards import COPY
from models import SlotKind
from worker import run_slot_once, run_tick_once

LOGGER = logging.getLogger(__name__)

app = Flask(__name__)

_LOCK = threading.Lock()
_LOOP = asyncio.new_event_loop()
_TG_APP = None


def _run(coro):
    with _LOCK:
        return _LOOP.run_until_complete(coro)


def _ensure_tg_app():
    global _TG_APP
    if _TG_APP is not None:
        return _TG_APP

    token = require_bot_token()
    with _LOCK:
        if _TG_APP is None:
            db.init_db(DB_PATH)
            _TG_APP = build_app(token)
            _LOOP.run_until_complete(_TG_APP.initialize())
    return _TG_APP


def _check_telegram_secret() -> bool:
    required = os.getenv("TELEGRAM_WEBHOOK_SECRET", "").strip()
    if not required:
        return True
    got = request.headers.get("X-Telegram-Bot-Api-Secret-Token", "")
    return hmac.compare_digest(got.encode(), required.encode())


def _check_cron_secret() -> bool:
    required = os.getenv("CRON_SECRET", "").strip()
    if not required:
        return True
    got_qs = request.args.get("token", "")
    got_header = request.headers.get("X-Cron-Secret", "")
    return hmac.compare_digest(got_qs.encode(), required.encode()) or hmac.compare_digest(
        got_header.encode(), required.encode()
    )


def _check_payment_auth() -> bool:
    if not YOOKASSA_WEBHOOK_USER and not YOOKASSA_WEBHOOK_PASS:
        return True
    auth = request.authorization
    if auth is None or auth.type != "basic":
        return False
    user_ok = hmac.compare_digest((auth.username or "").encode(), YOOKASSA_WEBHOOK_USER.encode())
    pass_ok = hmac.compare_digest((auth.password or "").encode(), YOOKASSA_WEBHOOK_PASS.encode())
    return user_ok and pass_ok


def _error_body(e: Exception):
    return (
        jsonify(
            {
                "ok": False,
                "error": type(e).__name__,
                "message": str(e),
                "has_bot_token": bool(os.getenv("BOT_TOKEN")),
                "has_database_url": bool(os.getenv("DATABASE_URL") or os.getenv("DB_PATH")),
            }
        ),
        500,
    )


async def _notify_paid(bot, user_id: int) -> None:
    try:
        await bot.send_message(chat_id=user_id, text=COPY["payments"]["succeeded"].format(morning_time=MORNING_TIME))
    except TelegramError:
        LOGGER.warning("paid notice failed: %s", user_id)


def _process_payment_event(event: payments.PaymentEvent) -> None:
    """Apply a payment event once the acknowledgement has been sent."""
    try:
        outcome = payments.handle_event(event)
    except Exception:
        LOGGER.exception("payment webhook handler error")
        return

    if outcome == "activated":
        try:
            _run(_notify_paid(_ensure_tg_app().bot, event.user_id))
        except Exception:
            LOGGER.exception("paid notice failed: %s", event.user_id)


@app.get("/")
def health():
    return jsonify({"ok": True, "service": "wellness-program-bot"})


@app.post("/api/webhook")
def telegram_webhook():
    if not _check_telegram_secret():
        return jsonify({"ok": False, "error": "forbidden"}), 403

    try:
        payload = request.get_json(silent=True)
        if not isinstance(payload, dict):
            return jsonify({"ok": False, "error": "bad json"}), 400

        tg_app = _ensure_tg_app()
        update = Update.de_json(payload, tg_app.bot)
        _run(tg_app.process_update(update))
        return jsonify({"ok": True})
    except Exception as e:
        LOGGER.exception("telegram webhook failed")
        return jsonify({"ok": False, "error": type(e).__name__, "message": str(e)}), 500


@app.get("/api/cron/tick")
def cron_tick():
    if not _check_cron_secret():
        return jsonify({"ok": False, "error": "forbidden"}), 403

    try:
        result = asyncio.run(run_tick_once())
        return jsonify({"ok": True, **result})
    except Exception as e:
        LOGGER.exception("cron tick failed")
        return _error_body(e)


@app.get("/api/cron/<slot>")
def cron_slot(slot: str):
    if not _check_cron_secret():
        return jsonify({"ok": False, "error": "forbidden"}), 403
    if slot not in (SlotKind.MORNING.value, SlotKind.EVENING.value):
        return jsonify({"ok": False, "error": "unknown slot"}), 404

    try:
        sent = asyncio.run(run_slot_once(SlotKind(slot)))
        return jsonify({"ok": True, "slot": slot, "sent": sent})
    except Exception as e:
        LOGGER.exception("manual %s run failed", slot)
        return _error_body(e)


@app.post("/yookassa-webhook")
def payment_webhook():
    if not _check_payment_auth():
        return "unauthorized", 401

    payload = request.get_json(silent=True)
    event = payments.parse_event(payload)
    if event is None:
        LOGGER.info("payment webhook without actionable event")
        return "ok", 200

    response = make_response("ok", 200)
    response.call_on_close(lambda: _process_payment_event(event))
    return response


@app.get("/success")
def payment_success():
    return COPY["payments"]["success_page"], 200, {"Content-Type": "text/plain; charset=utf-8"}
