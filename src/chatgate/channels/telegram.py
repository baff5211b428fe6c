"""
Telegram channel integration using python-telegram-bot.
"""

import logging
from typing import TYPE_CHECKING, Any

from telegram import InlineKeyboardButton, InlineKeyboardMarkup, Update
from telegram.constants import ChatAction
from telegram.error import BadRequest
from telegram.ext import (
    Application,
    CallbackQueryHandler,
    CommandHandler,
    ContextTypes,
    MessageHandler,
    filters,
)

from chatgate.channels.base import BaseChannel
from chatgate.protocol.formatting import strip_formatting
from chatgate.protocol.identifiers import derive_session_id, new_id
from chatgate.protocol.platforms.telegram import TelegramReply
from chatgate.protocol.types import IncomingRequest, Platform, Source

if TYPE_CHECKING:
    from chatgate.gateway import Gateway, GatewayOutcome

logger = logging.getLogger(__name__)

NOT_AUTHORIZED_TEXT = "Sorry, you're not authorized to use this bot."
BUSY_TEXT = "⏳ I'm a bit busy right now, please try again in a moment."
REJECTED_TEXT = "Sorry, I couldn't process that message."
HELP_TEXT = (
    "📖 *Available commands:*\n\n"
    "/start - Start the bot\n"
    "/help - Show this help\n"
    "/reset - Reset conversation\n\n"
    "Just send any message to chat with me!"
)


def rejection_text(outcome: "GatewayOutcome") -> str:
    """Short user-facing text for a request that produced no reply."""
    if outcome.error and outcome.error.code == "RATE_LIMIT_EXCEEDED":
        return BUSY_TEXT
    return REJECTED_TEXT


def build_markup(reply_markup: dict[str, Any] | None) -> InlineKeyboardMarkup | None:
    if not reply_markup:
        return None
    return InlineKeyboardMarkup(
        [
            [
                InlineKeyboardButton(
                    button["text"],
                    url=button.get("url"),
                    callback_data=button.get("callback_data"),
                )
                for button in row
            ]
            for row in reply_markup.get("inline_keyboard", [])
        ]
    )


class TelegramChannel(BaseChannel):
    """
    Telegram channel using python-telegram-bot v20+.

    Handles:
    - Text messages and captioned media
    - Inline keyboard callbacks (sent back in as messages)
    - Commands: /start, /reset, /help
    """

    def __init__(self, name: str, gateway: "Gateway", config: dict[str, Any]):
        super().__init__(name, gateway, config)
        self._app: Application | None = None
        self._handlers_registered = False

    @property
    def token(self) -> str:
        return self.config.get("token", "")

    async def start(self) -> None:
        """Start Telegram channel with long polling."""
        if not self.token:
            raise ValueError("Telegram token not configured")

        self._app = Application.builder().token(self.token).build()
        self._register_handlers()

        # PTB lifecycle: initialize → start → updater.start_polling
        await self._app.initialize()
        await self._app.start()
        assert self._app.updater is not None
        await self._app.updater.start_polling()
        self._running = True
        logger.info("Telegram channel polling (@%s...)", self.token[:8])

    def _register_handlers(self) -> None:
        """Register message and command handlers."""
        if self._handlers_registered:
            return

        # Text, or media that carries a caption
        message_filter = (filters.TEXT & ~filters.COMMAND) | filters.CAPTION
        assert self._app is not None
        self._app.add_handler(MessageHandler(message_filter, self.handle_message))
        self._app.add_handler(CommandHandler(["start", "help", "reset"], self.handle_command))
        self._app.add_handler(CallbackQueryHandler(self.handle_callback))
        self._handlers_registered = True

    def _request_from_update(self, update: Update, text: str) -> IncomingRequest:
        return IncomingRequest(
            id=new_id("tg"),
            source=Source.TELEGRAM,
            user_id=str(update.effective_user.id),
            chat_id=str(update.effective_chat.id),
            content=text,
            metadata={"update_id": update.update_id},
            raw_payload=update.to_dict(),
        )

    @staticmethod
    def _callback_payload(update: Update) -> dict[str, Any] | None:
        """Update-shaped payload for a button press, replying to the keyboard's message."""
        query = update.callback_query
        if query is None or query.message is None:
            return None
        message = query.message.to_dict()
        message["from"] = query.from_user.to_dict()
        return {"update_id": update.update_id, "message": message}

    async def handle_message(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        """Handle incoming messages from Telegram."""
        if not update.effective_user or not update.message:
            return

        if not self.is_allowed(str(update.effective_user.id)):
            await update.message.reply_text(NOT_AUTHORIZED_TEXT)
            return

        try:
            await update.effective_chat.send_action(ChatAction.TYPING)
        except Exception as e:
            logger.debug("Typing indicator failed: %s", e)

        text = update.message.text or update.message.caption or ""
        outcome = await self._submit(self._request_from_update(update, text))
        if outcome is not None and outcome.reply is None:
            await update.message.reply_text(rejection_text(outcome))

    async def handle_callback(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        """Inline keyboard presses come back in as the button's data."""
        query = update.callback_query
        if query is None or not update.effective_user or not update.effective_chat:
            return
        await query.answer()

        if not self.is_allowed(str(update.effective_user.id)):
            return

        request = IncomingRequest(
            id=new_id("tg"),
            source=Source.TELEGRAM,
            user_id=str(update.effective_user.id),
            chat_id=str(update.effective_chat.id),
            content=query.data or "",
            metadata={"update_id": update.update_id, "callback": True},
            raw_payload=self._callback_payload(update),
        )
        outcome = await self._submit(request)
        if outcome is not None and outcome.reply is None:
            await self.send(
                TelegramReply(chat_id=update.effective_chat.id, text=rejection_text(outcome))
            )

    async def handle_command(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        """Handle bot commands."""
        if not update.effective_user or not update.message:
            return

        command = update.message.text.split()[0]
        user_id = str(update.effective_user.id)

        if not self.is_allowed(user_id):
            await update.message.reply_text(NOT_AUTHORIZED_TEXT)
            return

        if command == "/start":
            await update.message.reply_text(
                "👋 Hi! Just send me a message and I'll respond!"
            )
        elif command == "/help":
            await update.message.reply_text(HELP_TEXT, parse_mode="Markdown")
        elif command == "/reset":
            session_id = derive_session_id(
                Platform.TELEGRAM, user_id, str(update.effective_chat.id)
            )
            await self.gateway.reset_session(session_id)
            await update.message.reply_text("🔄 Conversation reset!")

    async def stop(self) -> None:
        """Stop Telegram channel with proper PTB shutdown sequence."""
        self._running = False
        if self._app:
            if self._app.updater and self._app.updater.running:
                await self._app.updater.stop()
            if self._app.running:
                await self._app.stop()
                await self._app.shutdown()

    async def send(self, reply: TelegramReply) -> None:
        """Send a native reply to Telegram."""
        if not self._app:
            logger.warning("Telegram app not initialized")
            return

        logger.info("TelegramChannel sending %d chars to %s", len(reply.text), reply.chat_id)
        common = {
            "chat_id": reply.chat_id,
            "reply_markup": build_markup(reply.reply_markup),
            "reply_to_message_id": reply.reply_to_message_id,
        }
        try:
            await self._app.bot.send_message(text=reply.text, parse_mode=reply.parse_mode, **common)
            return
        except BadRequest as e:
            if reply.parse_mode is None:
                logger.error("Telegram rejected message to chat %s: %s", reply.chat_id, e)
                return
            # Engine text often has unbalanced entity markers
            logger.warning("Telegram rejected %s text (%s), resending as plain text", reply.parse_mode, e)
        except Exception:
            logger.exception("Error sending message to Telegram (chat_id: %s)", reply.chat_id)
            return

        try:
            await self._app.bot.send_message(
                text=strip_formatting(reply.text), parse_mode=None, **common
            )
        except Exception:
            logger.exception("Error sending plain-text message to Telegram (chat_id: %s)", reply.chat_id)
