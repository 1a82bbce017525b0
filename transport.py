import asyncio
import logging
from enum import Enum

from telegram import Bot
from telegram.error import BadRequest, Forbidden, NetworkError, RetryAfter, TimedOut

from config import SEND_TIMEOUT_SECONDS

LOGGER = logging.getLogger(__name__)

UNREACHABLE_MARKERS = ("chat not found", "user is deactivated", "bot was blocked by the user")


class DeliveryErrorKind(str, Enum):
    UNREACHABLE = "unreachable"
    TRANSIENT = "transient"
    UNKNOWN = "unknown"


class DeliveryError(Exception):
    def __init__(self, kind: DeliveryErrorKind, reason: str):
        super().__init__(reason)
        self.kind = kind
        self.reason = reason

    @property
    def unreachable(self) -> bool:
        return self.kind == DeliveryErrorKind.UNREACHABLE


def classify(exc: BaseException) -> DeliveryErrorKind:
    if isinstance(exc, Forbidden):
        return DeliveryErrorKind.UNREACHABLE
    if isinstance(exc, BadRequest):
        message = str(exc).lower()
        if any(marker in message for marker in UNREACHABLE_MARKERS):
            return DeliveryErrorKind.UNREACHABLE
        return DeliveryErrorKind.UNKNOWN
    if isinstance(exc, (RetryAfter, TimedOut, NetworkError, asyncio.TimeoutError)):
        return DeliveryErrorKind.TRANSIENT
    return DeliveryErrorKind.UNKNOWN


class Transport:
    """Sends messages through a Telegram ``Bot`` and reports failures as ``DeliveryError``."""

    def __init__(self, bot: Bot, timeout: float | None = SEND_TIMEOUT_SECONDS):
        self.bot = bot
        self.timeout = timeout

    async def send(self, user_id: int, text: str, reply_markup=None) -> None:
        call = self.bot.send_message(chat_id=user_id, text=text, reply_markup=reply_markup)
        try:
            if self.timeout:
                await asyncio.wait_for(call, timeout=self.timeout)
            else:
                await call
        except asyncio.CancelledError:
            raise
        except Exception as e:
            kind = classify(e)
            reason = str(e) or type(e).__name__
            if kind == DeliveryErrorKind.UNREACHABLE:
                LOGGER.warning("recipient unreachable: %s (%s)", user_id, reason)
            raise DeliveryError(kind, reason) from e
