import time
from types import SimpleNamespace

import pytest

import app as app_module
import db
import program
from keyboards import COPY
from models import Stage, User


@pytest.fixture
def client(db_path, fake_bot, monkeypatch):
    monkeypatch.setattr(app_module, "_ensure_tg_app", lambda: SimpleNamespace(bot=fake_bot))
    monkeypatch.setattr(app_module, "YOOKASSA_WEBHOOK_USER", "")
    monkeypatch.setattr(app_module, "YOOKASSA_WEBHOOK_PASS", "")
    monkeypatch.delenv("CRON_SECRET", raising=False)
    monkeypatch.delenv("TELEGRAM_WEBHOOK_SECRET", raising=False)
    return app_module.app.test_client()


def _succeeded(chat_id="42"):
    return {
        "event": "payment.succeeded",
        "object": {"id": "pay-1", "metadata": {"chatId": chat_id, "plan": program.PLAN_PAID_30}},
    }


def test_health(client):
    resp = client.get("/")
    assert resp.status_code == 200
    assert resp.get_json()["ok"] is True


def test_payment_webhook_requires_basic_auth(client, monkeypatch):
    monkeypatch.setattr(app_module, "YOOKASSA_WEBHOOK_USER", "kassa")
    monkeypatch.setattr(app_module, "YOOKASSA_WEBHOOK_PASS", "s3cret")

    assert client.post("/yookassa-webhook", json=_succeeded()).status_code == 401
    assert client.post("/yookassa-webhook", json=_succeeded(), auth=("kassa", "wrong")).status_code == 401
    assert client.post("/yookassa-webhook", json=_succeeded(), auth=("kassa", "s3cret")).status_code == 200


def test_payment_webhook_malformed_body_acknowledged(client, db_path):
    resp = client.post("/yookassa-webhook", data="not json", content_type="application/json")
    assert resp.status_code == 200
    assert db.list_users(db_path) == []


def _deliver(client, **kwargs):
    # deferred webhook work runs when the response is closed, as a WSGI server does after sending it
    resp = client.post("/yookassa-webhook", **kwargs)
    resp.close()
    return resp


def test_payment_succeeded_activates_and_notifies(client, db_path, fake_bot):
    db.upsert_user(db_path, User(user_id=42, is_active=True, stage=Stage.FREE, current_day=7))

    assert _deliver(client, json=_succeeded()).status_code == 200
    assert _deliver(client, json=_succeeded()).status_code == 200

    user = db.get_user(db_path, 42)
    assert user.stage == Stage.PAID
    assert user.current_day == 8
    assert len(fake_bot.texts_for(42)) == 1
    assert fake_bot.texts_for(42)[0].startswith(COPY["payments"]["succeeded"].splitlines()[0])


def test_payment_acknowledged_before_processing(client, monkeypatch):
    handled = []

    def slow_handler(event):
        time.sleep(0.5)
        handled.append(event)
        return "replay"

    monkeypatch.setattr(app_module.payments, "handle_event", slow_handler)

    started = time.monotonic()
    resp = client.post("/yookassa-webhook", json=_succeeded())
    assert resp.status_code == 200
    assert resp.get_data(as_text=True) == "ok"
    assert handled == []
    assert time.monotonic() - started < 0.5

    resp.close()
    assert [e.user_id for e in handled] == [42]


def test_payment_handler_error_still_acknowledged(client, monkeypatch):
    def boom(event):
        raise RuntimeError("db down")

    monkeypatch.setattr(app_module.payments, "handle_event", boom)
    assert _deliver(client, json=_succeeded()).status_code == 200


def test_non_ascii_secrets_are_rejected(client, monkeypatch):
    monkeypatch.setenv("CRON_SECRET", "tok")
    assert client.get("/api/cron/tick?token=%D1%91").status_code == 403

    monkeypatch.setattr(app_module, "YOOKASSA_WEBHOOK_USER", "kassa")
    monkeypatch.setattr(app_module, "YOOKASSA_WEBHOOK_PASS", "s3cret")
    assert client.post("/yookassa-webhook", json=_succeeded(), auth=("касса", "s3cret")).status_code == 401

    monkeypatch.setenv("TELEGRAM_WEBHOOK_SECRET", "abc")
    headers = {"X-Telegram-Bot-Api-Secret-Token": "ё".encode().decode("latin-1")}
    assert client.post("/api/webhook", json={"update_id": 1}, headers=headers).status_code == 403


def test_cron_requires_secret(client, monkeypatch):
    monkeypatch.setenv("CRON_SECRET", "tok")

    async def fake_tick():
        return {"day_key": "2026-02-16", "time": "12:00", "fired": {}}

    monkeypatch.setattr(app_module, "run_tick_once", fake_tick)

    assert client.get("/api/cron/tick").status_code == 403
    resp = client.get("/api/cron/tick?token=tok")
    assert resp.status_code == 200
    assert resp.get_json()["fired"] == {}
    assert client.get("/api/cron/tick", headers={"X-Cron-Secret": "tok"}).status_code == 200


def test_cron_unknown_slot(client):
    assert client.get("/api/cron/lunch").status_code == 404


def test_cron_slot_runs(client, monkeypatch):
    calls = []

    async def fake_slot(slot):
        calls.append(slot)
        return 3

    monkeypatch.setattr(app_module, "run_slot_once", fake_slot)
    resp = client.get("/api/cron/evening")
    assert resp.status_code == 200
    assert resp.get_json() == {"ok": True, "slot": "evening", "sent": 3}
    assert [c.value for c in calls] == ["evening"]


def test_telegram_webhook_checks_secret(client, monkeypatch):
    monkeypatch.setenv("TELEGRAM_WEBHOOK_SECRET", "abc")
    assert client.post("/api/webhook", json={"update_id": 1}).status_code == 403


def test_telegram_webhook_rejects_non_object(client):
    assert client.post("/api/webhook", json=[1, 2]).status_code == 400


def test_success_page(client):
    resp = client.get("/success")
    assert resp.status_code == 200
    assert resp.get_data(as_text=True) == COPY["payments"]["success_page"]
