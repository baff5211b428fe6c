"""Channel base class, manager and the Telegram channel."""

from unittest.mock import AsyncMock, MagicMock

import pytest
from telegram.error import BadRequest

from chatgate.admission import AdmissionError
from chatgate.channels import BaseChannel, ChannelManager
from chatgate.channels.telegram import (
    BUSY_TEXT,
    NOT_AUTHORIZED_TEXT,
    REJECTED_TEXT,
    TelegramChannel,
    build_markup,
    rejection_text,
)
from chatgate.config.schema import RateLimitConfig
from chatgate.gateway import GatewayOutcome, build_gateway
from chatgate.protocol.formatting import strip_formatting
from chatgate.protocol.platforms import TelegramReply
from chatgate.protocol.types import Source
from chatgate.routing import EchoEngine

from conftest import make_request


class RecordingChannel(BaseChannel):
    """Channel that fails to start a configurable number of times."""

    failures_left = 0
    started = 0

    def __init__(self, name, gateway, config):
        super().__init__(name, gateway, config)
        self.sent = []

    async def start(self):
        if RecordingChannel.failures_left:
            RecordingChannel.failures_left -= 1
            raise ConnectionError("cannot connect")
        RecordingChannel.started += 1
        self._running = True

    async def stop(self):
        self._running = False

    async def send(self, reply):
        self.sent.append(reply)


@pytest.fixture(autouse=True)
def reset_recording_channel():
    RecordingChannel.failures_left = 0
    RecordingChannel.started = 0


@pytest.fixture
def gateway(echo_config):
    return build_gateway(echo_config, engine=EchoEngine(prefix=""))


def telegram_update(text: str = "hi", user_id: int = 42, message_id: int = 5) -> MagicMock:
    update = MagicMock()
    update.update_id = 900
    update.effective_user.id = user_id
    update.effective_chat.id = 42
    update.effective_chat.send_action = AsyncMock()
    update.message.text = text
    update.message.caption = None
    update.message.reply_text = AsyncMock()
    update.to_dict.return_value = {
        "update_id": 900,
        "message": {
            "message_id": message_id,
            "date": 1_700_000_000,
            "chat": {"id": 42, "type": "private"},
            "from": {"id": user_id, "is_bot": False, "first_name": "Ada"},
            "text": text,
        },
    }
    return update


def telegram_channel(gateway, **config) -> TelegramChannel:
    channel = TelegramChannel("telegram", gateway, {"enabled": True, "token": "123:abc", **config})
    channel._app = MagicMock()
    channel._app.bot.send_message = AsyncMock()
    return channel


class TestBaseChannel:
    def test_allow_list(self, gateway):
        open_channel = RecordingChannel("rec", gateway, {})
        closed_channel = RecordingChannel("rec", gateway, {"allow_from": ["7"]})

        assert open_channel.is_allowed("anyone")
        assert closed_channel.is_allowed("7")
        assert not closed_channel.is_allowed("8")
        assert not open_channel.enabled

    async def test_submit_delivers_reply(self, gateway):
        channel = RecordingChannel("rec", gateway, {})

        outcome = await channel._submit(make_request(content="hello"))

        assert outcome.success
        assert channel.sent == [outcome.reply]

    async def test_submit_skips_disallowed_sender(self, gateway):
        channel = RecordingChannel("rec", gateway, {"allow_from": ["7"]})
        assert await channel._submit(make_request()) is None
        assert channel.sent == []


class TestChannelManager:
    def test_disabled_channels_are_skipped(self, gateway):
        manager = ChannelManager(gateway)
        manager.init_channel("off", RecordingChannel, {"enabled": False})
        manager.init_channel("on", RecordingChannel, {"enabled": True})
        assert list(manager.channels) == ["on"]

    async def test_start_retries_with_backoff(self, gateway, sleep):
        RecordingChannel.failures_left = 2
        manager = ChannelManager(gateway, sleep=sleep)
        manager.init_channel("rec", RecordingChannel, {"enabled": True})

        await manager.start_all()

        assert sleep.delays == [1, 2]
        assert manager.get_status() == {"rec": {"running": True, "type": "RecordingChannel"}}
        await manager.stop_all()
        assert manager.get_status()["rec"]["running"] is False

    async def test_start_gives_up(self, gateway, sleep):
        RecordingChannel.failures_left = 5
        manager = ChannelManager(gateway, sleep=sleep)
        channel = RecordingChannel("rec", gateway, {"enabled": True})

        assert not await manager._start_channel_with_retry("rec", channel)
        assert sleep.delays == [1, 2]

    async def test_restart_stopped(self, gateway, sleep):
        manager = ChannelManager(gateway, sleep=sleep)
        manager.init_channel("rec", RecordingChannel, {"enabled": True})
        await manager.start_all()
        original = manager.channels["rec"]
        await original.stop()

        assert await manager.restart_stopped() == ["rec"]
        assert manager.channels["rec"] is not original
        assert manager.channels["rec"].running
        await manager.stop_all()


class TestTelegramHelpers:
    def test_build_markup(self):
        markup = build_markup(
            {
                "inline_keyboard": [
                    [{"text": "Yes", "callback_data": "y"}, {"text": "Docs", "url": "https://x.dev"}]
                ]
            }
        )
        row = markup.inline_keyboard[0]
        assert (row[0].text, row[0].callback_data) == ("Yes", "y")
        assert row[1].url == "https://x.dev"
        assert build_markup(None) is None

    def test_rejection_text(self):
        def outcome(code):
            return GatewayOutcome(
                request_id="r",
                success=False,
                status_code=400,
                error=AdmissionError(code=code, message="", status_code=400),
            )

        assert rejection_text(outcome("RATE_LIMIT_EXCEEDED")) == BUSY_TEXT
        assert rejection_text(outcome("INVALID_CONTENT")) == REJECTED_TEXT


class TestTelegramChannel:
    async def test_start_requires_token(self, gateway):
        channel = TelegramChannel("telegram", gateway, {"enabled": True})
        with pytest.raises(ValueError):
            await channel.start()

    async def test_message_round_trip(self, gateway):
        channel = telegram_channel(gateway)
        update = telegram_update("hi there")

        await channel.handle_message(update, MagicMock())

        update.effective_chat.send_action.assert_awaited_once()
        channel._app.bot.send_message.assert_awaited_once_with(
            chat_id=42,
            text="hi there",
            parse_mode="Markdown",
            reply_markup=None,
            reply_to_message_id=5,
        )
        update.message.reply_text.assert_not_awaited()

    async def test_unauthorized_sender(self, gateway):
        channel = telegram_channel(gateway, allow_from=["7"])
        update = telegram_update()

        await channel.handle_message(update, MagicMock())

        update.message.reply_text.assert_awaited_once_with(NOT_AUTHORIZED_TEXT)
        channel._app.bot.send_message.assert_not_awaited()

    async def test_rate_limited_user_is_told(self, echo_config):
        echo_config.admission.rate_limits = {"telegram": RateLimitConfig(max_requests=1)}
        channel = telegram_channel(build_gateway(echo_config, engine=EchoEngine()))

        await channel.handle_message(telegram_update(), MagicMock())
        second = telegram_update()
        await channel.handle_message(second, MagicMock())

        second.message.reply_text.assert_awaited_once_with(BUSY_TEXT)
        assert channel._app.bot.send_message.await_count == 1

    async def test_reset_command(self, gateway):
        channel = telegram_channel(gateway)
        await channel.handle_message(telegram_update(), MagicMock())
        assert await gateway.get_session("tg_session_42_42") is not None

        command = telegram_update("/reset")
        await channel.handle_command(command, MagicMock())

        assert await gateway.get_session("tg_session_42_42") is None
        command.message.reply_text.assert_awaited_once_with("🔄 Conversation reset!")

    async def test_help_command(self, gateway):
        channel = telegram_channel(gateway)
        command = telegram_update("/help")

        await channel.handle_command(command, MagicMock())

        assert command.message.reply_text.await_args.kwargs == {"parse_mode": "Markdown"}

    async def test_send_swallows_api_errors(self, gateway):
        channel = telegram_channel(gateway)
        channel._app.bot.send_message.side_effect = RuntimeError("Bad Request")

        await channel.send(TelegramReply(chat_id=1, text="x"))

    async def test_rejected_markdown_is_resent_plain(self, gateway):
        channel = telegram_channel(gateway)
        send_message = channel._app.bot.send_message
        send_message.side_effect = [BadRequest("Can't parse entities"), None]
        text = "see *file_name and **bold**"

        await channel.send(TelegramReply(chat_id=1, text=text, parse_mode="Markdown", reply_to_message_id=3))

        assert send_message.await_count == 2
        retry = send_message.await_args_list[1].kwargs
        assert retry["parse_mode"] is None
        assert retry["text"] == strip_formatting(text)
        assert retry["reply_to_message_id"] == 3

    async def test_rejected_plain_text_is_not_resent(self, gateway):
        channel = telegram_channel(gateway)
        channel._app.bot.send_message.side_effect = BadRequest("Chat not found")

        await channel.send(TelegramReply(chat_id=1, text="x"))

        assert channel._app.bot.send_message.await_count == 1

    async def test_send_without_app(self, gateway):
        channel = TelegramChannel("telegram", gateway, {"enabled": True, "token": "t"})
        await channel.send(TelegramReply(chat_id=1, text="x"))

    async def test_callback_is_routed_as_text(self, gateway):
        channel = telegram_channel(gateway)
        update = telegram_update()
        update.callback_query.data = "opt1"
        update.callback_query.answer = AsyncMock()
        update.callback_query.message.to_dict.return_value = {
            "message_id": 77,
            "date": 1_700_000_000,
            "chat": {"id": 42, "type": "private"},
            "from": {"id": 1, "is_bot": True, "first_name": "bot"},
            "text": "pick one",
        }
        update.callback_query.from_user.to_dict.return_value = {"id": 42, "is_bot": False, "first_name": "Ada"}

        await channel.handle_callback(update, MagicMock())

        update.callback_query.answer.assert_awaited_once()
        kwargs = channel._app.bot.send_message.await_args.kwargs
        assert kwargs["text"] == "opt1"
        assert kwargs["reply_to_message_id"] == 77

    def test_source_is_telegram(self, gateway):
        request = telegram_channel(gateway)._request_from_update(telegram_update(), "hi")
        assert request.source is Source.TELEGRAM
        assert request.raw_payload["message"]["message_id"] == 5
