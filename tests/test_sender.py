import pytest
from telegram.error import BadRequest, RetryAfter

from vidsave.errors import DeliveryFailed
from vidsave.sender import RATE_LIMIT_BACKOFF_SECONDS, TelegramSender


class RecordingSleep:
    def __init__(self):
        self.waits = []

    async def __call__(self, seconds):
        self.waits.append(seconds)


@pytest.mark.asyncio
async def test_rate_limit_backs_off_with_escalating_waits(fake_bot):
    sleep = RecordingSleep()
    fake_bot.failures["send_video"] = [RetryAfter(1), RetryAfter(1)]
    sender = TelegramSender(fake_bot, sleep=sleep)

    receipt = await sender.send_by_bytes(1, "1.mp4", b"data", share_key="tiktok:1")

    assert sleep.waits == [3, 10]
    assert receipt.ref == "tg-file-1"
    assert receipt.ref_unique == "tg-unique-1"


@pytest.mark.asyncio
async def test_rate_limit_gives_up_after_three_attempts(fake_bot):
    sleep = RecordingSleep()
    fake_bot.failures["send_video"] = [RetryAfter(1) for _ in range(4)]
    sender = TelegramSender(fake_bot, sleep=sleep)

    with pytest.raises(DeliveryFailed):
        await sender.send_by_reference(1, "file-1")
    assert sleep.waits == list(RATE_LIMIT_BACKOFF_SECONDS)
    assert fake_bot.calls == []
    assert len(fake_bot.failures["send_video"]) == 1


@pytest.mark.asyncio
async def test_other_errors_are_not_retried(fake_bot):
    sleep = RecordingSleep()
    fake_bot.failures["send_video"] = [BadRequest("Wrong file identifier")]
    sender = TelegramSender(fake_bot, sleep=sleep)

    with pytest.raises(DeliveryFailed):
        await sender.send_by_reference(1, "file-1")
    assert sleep.waits == []


@pytest.mark.asyncio
async def test_send_by_reference_attaches_caption_and_share_button(fake_bot):
    sender = TelegramSender(fake_bot, caption="🎬 hi")

    await sender.send_by_reference(5, "file-1", share_key="instagram:abc")

    (kwargs,) = fake_bot.named("send_video")
    assert kwargs["chat_id"] == 5
    assert kwargs["video"] == "file-1"
    assert kwargs["caption"] == "🎬 hi"
    assert kwargs["supports_streaming"] is True
    button = kwargs["reply_markup"].inline_keyboard[0][0]
    assert button.switch_inline_query == "instagram:abc"


@pytest.mark.asyncio
async def test_text_failures_are_logged_not_raised(fake_bot):
    fake_bot.failures["send_message"] = [BadRequest("chat not found")]
    sender = TelegramSender(fake_bot)

    assert await sender.text(1, "hello") is None
