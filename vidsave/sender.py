import asyncio
import dataclasses
import logging
from typing import Any, Awaitable, Callable

from telegram import Bot, InlineKeyboardButton, InlineKeyboardMarkup, InputFile, Message
from telegram.error import RetryAfter, TelegramError

from vidsave.errors import DeliveryFailed

logger = logging.getLogger(__name__)

# Waits after each rate-limited attempt (429); three attempts in total, the last failure is raised.
RATE_LIMIT_BACKOFF_SECONDS = (3, 10)


@dataclasses.dataclass(frozen=True)
class DeliveryReceipt:
    ref: str
    ref_unique: str


def share_keyboard(source_key: str) -> InlineKeyboardMarkup:
    return InlineKeyboardMarkup(
        [[InlineKeyboardButton("📤 Share", switch_inline_query=source_key)]]
    )


class TelegramSender:
    def __init__(
        self,
        bot: Bot,
        caption: str = "",
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.bot = bot
        self.caption = caption
        self._sleep = sleep

    async def _call(self, method: Callable[..., Awaitable[Any]], **kwargs: Any) -> Any:
        for attempt, wait in enumerate(RATE_LIMIT_BACKOFF_SECONDS, start=1):
            try:
                return await method(**kwargs)
            except RetryAfter:
                logger.warning("Rate limited by Telegram, waiting: attempt=%s wait=%ss", attempt, wait)
                await self._sleep(wait)
        return await method(**kwargs)

    async def _send_video(self, chat_id: int, video: Any, share_key: str | None) -> Message:
        return await self._call(
            self.bot.send_video,
            chat_id=chat_id,
            video=video,
            caption=self.caption or None,
            supports_streaming=True,
            reply_markup=share_keyboard(share_key) if share_key else None,
        )

    async def send_by_reference(self, chat_id: int, ref: str, share_key: str | None = None) -> None:
        try:
            await self._send_video(chat_id, ref, share_key)
        except TelegramError as err:
            raise DeliveryFailed(f"send by reference failed: {err}") from err

    async def send_by_bytes(
        self,
        chat_id: int,
        filename: str,
        data: bytes,
        share_key: str | None = None,
    ) -> DeliveryReceipt | None:
        try:
            sent = await self._send_video(chat_id, InputFile(data, filename=filename), share_key)
        except TelegramError as err:
            raise DeliveryFailed(f"upload failed: {err}") from err
        video = sent.video if sent else None
        if video is None:
            logger.warning("Telegram response has no video: chat_id=%s filename=%s", chat_id, filename)
            return None
        return DeliveryReceipt(ref=video.file_id, ref_unique=video.file_unique_id)

    async def text(self, chat_id: int, text: str, **kwargs: Any) -> Message | None:
        try:
            return await self._call(self.bot.send_message, chat_id=chat_id, text=text, **kwargs)
        except TelegramError as err:
            logger.warning("Failed to send text message: chat_id=%s err=%s", chat_id, err)
            return None

    async def edit_text(self, chat_id: int, message_id: int, text: str) -> None:
        try:
            await self._call(self.bot.edit_message_text, chat_id=chat_id, message_id=message_id, text=text)
        except TelegramError as err:
            logger.info("Could not edit status message: %s", err)

    async def delete(self, chat_id: int, message_id: int) -> None:
        try:
            await self._call(self.bot.delete_message, chat_id=chat_id, message_id=message_id)
        except TelegramError as err:
            logger.info("Could not delete message: %s", err)
