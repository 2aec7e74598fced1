"""
Утилиты для работы с Telegram API: экранирование Markdown, безопасные send/edit.
"""
import asyncio
import logging
from typing import Optional

from aiogram import Bot
from aiogram.types import Message
from aiogram.exceptions import TelegramBadRequest, TelegramNetworkError, TelegramRetryAfter

logger = logging.getLogger(__name__)

# Сетевые ошибки, при которых имеет смысл повторить запрос
RETRYABLE_EXC = (TelegramNetworkError, TelegramRetryAfter)
MAX_RETRIES = 3
RETRY_DELAY = 1.0


def escape_markdown(s: str) -> str:
    """
    Экранирует спецсимволы Markdown в тексте с сервера.
    Использовать для всех полей заказа (адреса, имена, названия грузов).
    """
    if not s or not isinstance(s, str):
        return str(s) if s is not None else ""
    # Сначала \, иначе двойное экранирование сломается
    s = s.replace("\\", "\\\\")
    # Legacy Markdown экранирует только _ * ` [, остальное показывается как есть
    for ch in "_*`[":
        s = s.replace(ch, f"\\{ch}")
    return s


def _is_parse_error(e: TelegramBadRequest) -> bool:
    msg = str(e).lower()
    return "can't parse entities" in msg or "can't find end of the entity" in msg


async def _retry_wait(e: Exception, attempt: int, what: str) -> None:
    wait = getattr(e, "retry_after", None)
    if wait is None:
        wait = RETRY_DELAY
    logger.warning("%s: %s, retry in %.1fs (attempt %s/%s)", what, e, wait, attempt + 1, MAX_RETRIES)
    await asyncio.sleep(wait)


async def safe_edit_message(
    bot: Bot,
    chat_id: int,
    message_id: int,
    text: str,
    *,
    reply_markup=None,
    parse_mode: Optional[str] = "Markdown",
) -> bool:
    """
    Безопасное редактирование сообщения по chat_id/message_id.
    "message is not modified" считается успехом, "not found", неудачей (False);
    при ошибке разметки повторяет без parse_mode, при сетевых ошибках, до MAX_RETRIES раз.
    """
    for attempt in range(MAX_RETRIES):
        try:
            await bot.edit_message_text(
                text=text,
                chat_id=chat_id,
                message_id=message_id,
                reply_markup=reply_markup,
                parse_mode=parse_mode,
            )
            return True
        except RETRYABLE_EXC as e:
            if attempt == MAX_RETRIES - 1:
                logger.error("safe_edit_message: failed after %s attempts: %s", MAX_RETRIES, e)
                raise
            await _retry_wait(e, attempt, "safe_edit_message")
        except TelegramBadRequest as e:
            msg = str(e).lower()
            if "message is not modified" in msg:
                return True
            if "message to edit not found" in msg or "message can't be edited" in msg:
                logger.debug("safe_edit_message: %s", e)
                return False
            if parse_mode and _is_parse_error(e):
                logger.warning("safe_edit_message: Markdown parse error, retrying without parse_mode: %s", e)
                parse_mode = None
                continue
            raise
    return False


async def safe_send_message(
    bot: Bot,
    chat_id: int,
    text: str,
    *,
    reply_markup=None,
    parse_mode: Optional[str] = "Markdown",
) -> Optional[Message]:
    """send_message с повтором при сетевых ошибках и без разметки при ошибке парсинга."""
    for attempt in range(MAX_RETRIES):
        try:
            return await bot.send_message(chat_id, text, reply_markup=reply_markup, parse_mode=parse_mode)
        except RETRYABLE_EXC as e:
            if attempt == MAX_RETRIES - 1:
                logger.error("safe_send_message: failed after %s attempts: %s", MAX_RETRIES, e)
                raise
            await _retry_wait(e, attempt, "safe_send_message")
        except TelegramBadRequest as e:
            if parse_mode and _is_parse_error(e):
                logger.warning("safe_send_message: Markdown parse error, retrying without parse_mode: %s", e)
                parse_mode = None
                continue
            raise
    return None
