import json

from telegram import InlineKeyboardButton, InlineKeyboardMarkup

import program
from content import TEXTS_DIR
from models import Stage, User

with open(TEXTS_DIR / "copy.ru.json", "r", encoding="utf-8") as f:
    COPY = json.load(f)

BUTTONS = COPY["buttons"]


def _button(key: str, callback_data: str) -> InlineKeyboardButton:
    return InlineKeyboardButton(BUTTONS[key], callback_data=callback_data)


def main_markup(user: User | None) -> InlineKeyboardMarkup:
    if not program.has_program(user):
        return InlineKeyboardMarkup(
            [
                [_button("start_free", "START_FREE")],
                [_button("how", "HOW")],
            ]
        )
    return InlineKeyboardMarkup([[_button("how", "HOW")]])


def how_markup(user: User | None) -> InlineKeyboardMarkup:
    if program.has_program(user):
        return InlineKeyboardMarkup(
            [
                [_button("stop", "STOP")],
                [_button("back", "BACK")],
            ]
        )
    return InlineKeyboardMarkup([[_button("back", "BACK")]])


def week_finished(user: User | None) -> bool:
    return bool(user and user.stage == Stage.FREE and user.current_day >= program.FREE_LAST_DAY)


def subscription_markup(user: User | None) -> InlineKeyboardMarkup:
    if week_finished(user):
        return InlineKeyboardMarkup(
            [
                [_button("buy_30", "BUY_30")],
                [_button("later", "SUB_LATER")],
            ]
        )
    return main_markup(user)


def upgrade_offer_markup() -> InlineKeyboardMarkup:
    return InlineKeyboardMarkup(
        [
            [_button("subscription", "SUB_INFO")],
            [_button("later", "SUB_LATER")],
        ]
    )


def support_offer_markup() -> InlineKeyboardMarkup:
    return InlineKeyboardMarkup(
        [
            [_button("start_support", "START_SUPPORT")],
            [_button("later", "SUB_LATER")],
        ]
    )


def review_markup() -> InlineKeyboardMarkup:
    return InlineKeyboardMarkup(
        [
            [_button("review_write", "REVIEW_WRITE")],
            [_button("review_later", "REVIEW_LATER")],
        ]
    )


def payment_markup(url: str) -> InlineKeyboardMarkup:
    return InlineKeyboardMarkup(
        [
            [InlineKeyboardButton(BUTTONS["pay_30"], url=url)],
            [_button("back", "BACK")],
        ]
    )


def offer_markup(trigger: program.ExternalTrigger) -> InlineKeyboardMarkup:
    if trigger == program.ExternalTrigger.ACTIVATE_PAID:
        return upgrade_offer_markup()
    return support_offer_markup()
