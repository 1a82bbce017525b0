"""Shared fixtures: a throwaway sqlite database and a recording bot."""

from __future__ import annotations

from datetime import datetime
from types import SimpleNamespace
from zoneinfo import ZoneInfo

import pytest

import bot
import db
import payments
import worker


class FakeBot:
    def __init__(self) -> None:
        self.sent: list[SimpleNamespace] = []
        self.errors: dict[int, Exception] = {}

    async def send_message(self, chat_id, text, reply_markup=None, **kwargs):
        exc = self.errors.get(chat_id)
        if exc is not None:
            raise exc
        self.sent.append(SimpleNamespace(chat_id=chat_id, text=text, reply_markup=reply_markup))

    def texts_for(self, chat_id: int) -> list[str]:
        return [m.text for m in self.sent if m.chat_id == chat_id]


MSK = ZoneInfo("Europe/Moscow")


def _msk(day: int, hour: int, minute: int = 0, month: int = 2) -> datetime:
    return datetime(2026, month, day, hour, minute, tzinfo=MSK)


@pytest.fixture
def db_path(tmp_path, monkeypatch):
    path = str(tmp_path / "test.sqlite3")
    db.init_db(path)
    for module in (worker, payments, bot):
        monkeypatch.setattr(module, "DB_PATH", path)
    monkeypatch.setattr(worker, "SEND_PAUSE_SECONDS", 0)
    monkeypatch.setattr(worker, "RETRY_UNSENT_SAME_DAY", False)
    return path


@pytest.fixture
def fake_bot():
    return FakeBot()


@pytest.fixture
def msk():
    """Instant factory for a Moscow wall-clock time in 2026."""
    return _msk
