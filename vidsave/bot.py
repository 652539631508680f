"""
Usage (local):
  export BOT_TOKEN="..."
  export ALLOWED_HOSTS="www.tiktok.com,vm.tiktok.com,www.instagram.com"
  python -m vidsave
"""

import asyncio
import contextlib
import dataclasses
import hashlib
import logging

from telegram import Bot, InlineKeyboardButton, InlineKeyboardMarkup, InlineQueryResultCachedVideo, Update
from telegram.error import TelegramError
from telegram.ext import Application, CommandHandler, ContextTypes, InlineQueryHandler, MessageHandler, filters

from vidsave.config import Settings, setup_logging
from vidsave.coordinator import CoordinatorConfig, DownloadCoordinator
from vidsave.errors import (
    CacheUnavailable,
    DeliveryFailed,
    FetchFailed,
    LinkRejected,
    LinkRejectedKind,
    SizeExceeded,
    SizeLimit,
    VidsaveError,
)
from vidsave.fetch import YtDlpFetcher
from vidsave.links import resolve, resolve_link
from vidsave.sender import TelegramSender, share_keyboard
from vidsave.storage import CacheStore

logger = logging.getLogger("vidsave")

STATUS_TEXT = "⏳ Downloading"
STATUS_FRAMES = (f"{STATUS_TEXT}.", f"{STATUS_TEXT}..", f"{STATUS_TEXT}...", STATUS_TEXT)
STATUS_FRAME_SECONDS = 1.5
INLINE_CACHE_SECONDS = 300
INTERNAL_ERROR_TEXT = "❌ Internal error. Try again later."
TIMEOUT_TEXT = "⌛ That took too long. Try again later."

LINK_REJECTED_TEXT = {
    LinkRejectedKind.NOT_A_URL: "That doesn't look like a link 🧐",
    LinkRejectedKind.HOST_NOT_ALLOWED: "This site isn't supported 😕\n\nOnly TikTok and Instagram for now",
    LinkRejectedKind.UNRECOGNIZED_FORMAT: "Can't parse this link 🤔\nSend a direct link to the video",
}


def _mb(size_bytes: int) -> int:
    return size_bytes // (1024 * 1024)


def describe_error(err: Exception, support_contact: str = "") -> str:
    contact = f"\n\nIf this keeps happening, write to {support_contact}" if support_contact else ""
    if isinstance(err, LinkRejected):
        text = LINK_REJECTED_TEXT[err.kind]
        return text if err.kind is LinkRejectedKind.NOT_A_URL else text + contact
    if isinstance(err, SizeExceeded):
        where = " for Telegram" if err.limit_kind is SizeLimit.TRANSPORT else ""
        return f"The video is too large{where} ({_mb(err.size_bytes)} MB), the limit is {_mb(err.limit_bytes)} MB 😬"
    if isinstance(err, FetchFailed):
        return "Couldn't download the video 😕\nTry again later" + contact
    if isinstance(err, DeliveryFailed):
        return "Couldn't send the video 😢" + contact
    return INTERNAL_ERROR_TEXT


def inline_result_id(source_key: str) -> str:
    return hashlib.md5(source_key.encode()).hexdigest()


@contextlib.asynccontextmanager
async def download_status(sender: TelegramSender, chat_id: int, frame_seconds: float = STATUS_FRAME_SECONDS):
    status_msg = await sender.text(chat_id, STATUS_TEXT)

    async def _animate() -> None:
        frame = 0
        while True:
            await asyncio.sleep(frame_seconds)
            await sender.edit_text(chat_id, status_msg.message_id, STATUS_FRAMES[frame % len(STATUS_FRAMES)])
            frame += 1

    animation = asyncio.create_task(_animate()) if status_msg else None
    try:
        yield status_msg
    finally:
        if animation is not None:
            animation.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await animation
        if status_msg:
            await sender.delete(chat_id, status_msg.message_id)


@dataclasses.dataclass
class AppContext:
    settings: Settings
    store: CacheStore
    sender: TelegramSender
    coordinator: DownloadCoordinator


def build_context(settings: Settings, bot: Bot) -> AppContext:
    store = CacheStore(settings.database_url)
    sender = TelegramSender(bot, caption=settings.video_caption)
    fetcher = YtDlpFetcher(cookies_dir=settings.cookies_dir, insecure_skip_verify=settings.insecure_skip_verify)
    coordinator = DownloadCoordinator(
        store,
        fetcher,
        sender,
        CoordinatorConfig(proxy=settings.proxy, max_bytes=settings.max_download_bytes),
    )
    return AppContext(settings=settings, store=store, sender=sender, coordinator=coordinator)


class VidsaveBot:
    def __init__(self, ctx: AppContext) -> None:
        self.ctx = ctx

    @property
    def sender(self) -> TelegramSender:
        return self.ctx.sender

    async def handle_start(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        chat = update.effective_chat
        if not chat:
            return
        text = "Hi! 👋\n\nSend me a TikTok or Instagram video link and I'll send the video back without a watermark 🔥"
        reply_markup = None
        if self.ctx.settings.channel_url:
            reply_markup = InlineKeyboardMarkup(
                [[InlineKeyboardButton("📢 Channel", url=self.ctx.settings.channel_url)]]
            )
        await self.sender.text(chat.id, text, reply_markup=reply_markup)

    async def handle_help(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        chat = update.effective_chat
        if not chat:
            return
        await self.sender.text(
            chat.id,
            "📌 What I can do:\n\n• TikTok: a link to a video\n• Instagram: a link to a reel\n\nJust send the link 👇",
        )

    async def handle_unknown_command(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        chat = update.effective_chat
        if chat:
            await self.sender.text(chat.id, "Unknown command 🤷 Try /help")

    async def _process_link(self, chat_id: int, text: str) -> None:
        settings = self.ctx.settings
        link = await resolve_link(
            text,
            settings.allowed_hosts,
            expand_timeout=settings.url_expand_timeout_seconds,
            verify=not settings.insecure_skip_verify,
        )
        logger.info(
            "Link accepted: chat_id=%s platform=%s video_id=%s host=%s",
            chat_id,
            link.platform,
            link.video_id,
            link.host,
        )
        delivery = await self.ctx.coordinator.deliver(
            link,
            chat_id,
            progress=lambda: download_status(self.sender, chat_id),
        )
        logger.info(
            "Request done: chat_id=%s source_key=%s source=%s",
            chat_id,
            delivery.source_key,
            delivery.source.value,
        )

    async def handle_message(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        message = update.effective_message
        chat = update.effective_chat
        if not message or not chat:
            return

        text = (message.text or "").strip()
        if not text:
            await self.sender.text(chat.id, "Send me the link as text.")
            return

        try:
            await asyncio.wait_for(
                self._process_link(chat.id, text),
                timeout=self.ctx.settings.request_timeout_seconds,
            )
        except LinkRejected as err:
            logger.info("Link rejected: chat_id=%s kind=%s text=%s", chat.id, err.kind.value, err.text)
            await self.sender.text(chat.id, describe_error(err, self.ctx.settings.support_contact))
        except SizeExceeded as err:
            logger.warning("Video too large: chat_id=%s err=%s", chat.id, err)
            await self.sender.text(chat.id, describe_error(err))
        except VidsaveError as err:
            logger.error("Request failed: chat_id=%s text=%s err=%s", chat.id, text, err)
            await self.sender.text(chat.id, describe_error(err, self.ctx.settings.support_contact))
        except asyncio.TimeoutError:
            logger.warning("Request timed out: chat_id=%s text=%s", chat.id, text)
            await self.sender.text(chat.id, TIMEOUT_TEXT)
        except Exception:
            logger.exception("Unhandled error: chat_id=%s text=%s", chat.id, text)
            await self.sender.text(chat.id, INTERNAL_ERROR_TEXT)

    async def _inline_lookup(self, query: str):
        try:
            cached = await self.ctx.store.lookup_by_key(query)
            if cached is None and "://" in query:
                with contextlib.suppress(LinkRejected):
                    link = resolve(query, self.ctx.settings.allowed_hosts)
                    cached = await self.ctx.store.lookup_by_key(link.source_key)
            return cached
        except CacheUnavailable as err:
            logger.error("Inline query lookup failed: query=%s err=%s", query, err)
            return None

    async def handle_inline_query(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        inline_query = update.inline_query
        if not inline_query:
            return

        query = (inline_query.query or "").strip()
        if not query:
            return

        cached = await self._inline_lookup(query)
        try:
            if cached is None:
                logger.debug("Inline query cache miss: query=%s", query)
                await inline_query.answer(results=[], cache_time=1, is_personal=True)
                return

            result = InlineQueryResultCachedVideo(
                id=inline_result_id(cached.source_key),
                video_file_id=cached.delivery_ref,
                title="Video without watermark",
                caption=self.ctx.settings.video_caption or None,
                reply_markup=share_keyboard(cached.source_key),
            )
            await inline_query.answer(results=[result], cache_time=INLINE_CACHE_SECONDS)
        except TelegramError as err:
            logger.error("Inline query answer failed: query=%s err=%s", query, err)

    def register(self, app: Application) -> None:
        app.add_handler(CommandHandler("start", self.handle_start))
        app.add_handler(CommandHandler("help", self.handle_help))
        app.add_handler(MessageHandler(filters.COMMAND, self.handle_unknown_command))
        app.add_handler(MessageHandler(filters.TEXT & ~filters.COMMAND, self.handle_message))
        app.add_handler(InlineQueryHandler(self.handle_inline_query))


async def log_heartbeat(_: ContextTypes.DEFAULT_TYPE) -> None:
    logger.info("Bot is listening...")


# -------------------------
# Main
# -------------------------
def main() -> None:
    settings = Settings.from_env()
    setup_logging(settings)

    async def _post_init(application: Application) -> None:
        await application.bot_data["ctx"].store.init()

    async def _post_shutdown(application: Application) -> None:
        await application.bot_data["ctx"].store.dispose()

    app = (
        Application.builder()
        .token(settings.bot_token)
        .connect_timeout(60)
        .read_timeout(300)
        .write_timeout(300)
        .pool_timeout(60)
        .concurrent_updates(True)
        .post_init(_post_init)
        .post_shutdown(_post_shutdown)
        .build()
    )
    ctx = build_context(settings, app.bot)
    app.bot_data["ctx"] = ctx

    VidsaveBot(ctx).register(app)
    app.job_queue.run_repeating(log_heartbeat, interval=settings.heartbeat_interval_seconds, first=0)
    logger.info("Bot started. Polling and waiting for updates...")
    app.run_polling(close_loop=False)


if __name__ == "__main__":
    main()
