"""
interfaces/telegram.py — ChatPilot Telegram Transport

Runs the agent behind a Telegram bot using python-telegram-bot (async).
Every Telegram chat is one channel: its first text message starts an
AgentSession through the AgentManager, and every message after that is
delivered to the session as a `message.new` event.

Features:
  - Authorized user whitelist (TELEGRAM_USER_ID in .env / telegram.authorized_user_ids)
  - Streamed replies as edits of a placeholder message
  - "typing…" chat action while the assistant is thinking or generating
  - /stop  — stop generating the latest reply in this chat
  - /reset — dispose this chat's agent; the next message starts a fresh thread
  - Sessions idle past agent.idle_timeout_seconds are reaped by the manager

Usage:
    python -m chatpilot --interface telegram
"""

from __future__ import annotations

import asyncio
from typing import Optional

from telegram import Bot, Update
from telegram.constants import ChatAction
from telegram.error import BadRequest, TelegramError
from telegram.ext import Application, CommandHandler, ContextTypes, MessageHandler, filters

from chatpilot.agent.manager import AgentManager
from chatpilot.config.settings import Settings
from chatpilot.exceptions import ConfigurationError, SessionStateError, TransientBackendError, TransportError
from chatpilot.interfaces.transport import (
    AI_INDICATOR_STOP,
    AI_INDICATOR_UPDATE,
    MESSAGE_NEW,
    AIState,
    ChatChannel,
    ChatMessageRef,
    ChatTransport,
    InboundEvent,
    IndicatorEvent,
)
from chatpilot.observability.logger import get_logger

log = get_logger(__name__)


_MAX_MESSAGE_LEN = 4000  # Telegram limit is 4096 chars
_PLACEHOLDER_TEXT = "…"  # Telegram rejects empty messages
_ERROR_TEXT = "⚠️ The assistant could not answer. Please try again."

_TYPING_STATES = {AIState.THINKING, AIState.GENERATING, AIState.EXTERNAL_SOURCES}


# ─────────────────────────────────────────────────────────────────────────────
# Channel + transport for one chat
# ─────────────────────────────────────────────────────────────────────────────


class TelegramChannel(ChatChannel):
    def __init__(self, bot: Bot, chat_id: str):
        self._bot = bot
        self._chat_id = chat_id
        self.last_placeholder_id: Optional[str] = None

    @property
    def id(self) -> str:
        return self._chat_id

    async def send_message(self, text: str, ai_generated: bool = True) -> ChatMessageRef:
        try:
            msg = await self._bot.send_message(
                chat_id=self._chat_id,
                text=text[:_MAX_MESSAGE_LEN] or _PLACEHOLDER_TEXT,
            )
        except TelegramError as e:
            raise TransportError(f"send_message failed in chat {self._chat_id}: {e}") from e
        ref = ChatMessageRef(channel_id=self._chat_id, message_id=str(msg.message_id))
        if ai_generated:
            self.last_placeholder_id = ref.message_id
        return ref

    async def update_message(self, message: ChatMessageRef, text: str) -> None:
        if not text.strip():
            return
        try:
            await self._bot.edit_message_text(
                text=text[:_MAX_MESSAGE_LEN],
                chat_id=self._chat_id,
                message_id=int(message.message_id),
            )
        except BadRequest as e:
            # Partial updates can repeat the previous text verbatim
            if "not modified" in str(e).lower():
                return
            raise TransportError(f"edit_message_text failed: {e}") from e
        except TelegramError as e:
            raise TransportError(f"edit_message_text failed: {e}") from e

    async def send_event(self, event: IndicatorEvent) -> None:
        # Telegram has no indicator events; typing expires by itself so clear is a no-op.
        if event.type != AI_INDICATOR_UPDATE:
            return
        if event.state in _TYPING_STATES:
            try:
                await self._bot.send_chat_action(chat_id=self._chat_id, action=ChatAction.TYPING)
            except TelegramError as e:
                raise TransportError(f"send_chat_action failed: {e}") from e
        elif event.state is AIState.ERROR:
            await self.update_message(event.message, _ERROR_TEXT)


class TelegramTransport(ChatTransport):
    """The gateway's per-chat view. disconnect() detaches it from the gateway."""

    def __init__(self, gateway: "TelegramGateway", bot: Bot, chat_id: str):
        super().__init__()
        self._gateway = gateway
        self.channel = TelegramChannel(bot, chat_id)

    async def disconnect(self) -> None:
        self._gateway.release(self.channel.id)
        self._handlers.clear()


# ─────────────────────────────────────────────────────────────────────────────
# Gateway: one bot, many chats
# ─────────────────────────────────────────────────────────────────────────────


class TelegramGateway:
    """
    ChatPilot Telegram bot.

    One TelegramTransport (and therefore one AgentSession) per chat id.
    """

    def __init__(self, settings: Settings, manager: AgentManager):
        self._settings = settings
        self._manager = manager
        self._authorized_ids: set[int] = set(settings.authorized_telegram_ids)
        self._transports: dict[str, TelegramTransport] = {}
        self._start_locks: dict[str, asyncio.Lock] = {}
        self._app: Optional[Application] = None

    # ── Lifecycle ─────────────────────────────────────────────────────────────

    async def start(self) -> None:
        """Initialize the bot and start polling. Returns once polling is running."""
        token = self._settings.telegram_bot_token
        if not token:
            raise ConfigurationError("TELEGRAM_BOT_TOKEN is not set.")

        self._app = Application.builder().token(token).build()
        self._register_handlers()

        log.info("telegram.starting", authorized_ids=sorted(self._authorized_ids))
        await self._app.initialize()
        await self._app.start()
        await self._app.updater.start_polling()
        self._manager.start()

    async def stop(self) -> None:
        await self._manager.shutdown()
        if self._app:
            if self._app.updater and self._app.updater.running:
                await self._app.updater.stop()
            await self._app.stop()
            await self._app.shutdown()
        log.info("telegram.stopped")

    def _register_handlers(self) -> None:
        app = self._app
        app.add_handler(CommandHandler("stop", self._cmd_stop))
        app.add_handler(CommandHandler("reset", self._cmd_reset))
        app.add_handler(MessageHandler(filters.TEXT & ~filters.COMMAND, self._on_text))

    # ── Transport registry ────────────────────────────────────────────────────

    def transport_for(self, bot: Bot, chat_id: str) -> TelegramTransport:
        transport = self._transports.get(chat_id)
        if transport is None:
            transport = TelegramTransport(self, bot, chat_id)
            self._transports[chat_id] = transport
        return transport

    def release(self, chat_id: str) -> None:
        self._transports.pop(chat_id, None)
        self._start_locks.pop(chat_id, None)
        log.debug("telegram.chat_released", chat_id=chat_id)

    # ── Auth helper ───────────────────────────────────────────────────────────

    def _is_authorized(self, user_id: int) -> bool:
        if not self._authorized_ids:
            return True  # no restriction configured
        return user_id in self._authorized_ids

    async def _auth_check(self, update: Update) -> bool:
        user = update.effective_user
        if not user or not self._is_authorized(user.id):
            await update.message.reply_text("⛔ Unauthorized.")
            log.warning("telegram.unauthorized", user_id=user.id if user else None)
            return False
        return True

    # ── Handlers ──────────────────────────────────────────────────────────────

    async def _ensure_agent(self, update: Update, bot: Bot) -> Optional[TelegramTransport]:
        chat_id = str(update.effective_chat.id)
        lock = self._start_locks.setdefault(chat_id, asyncio.Lock())
        async with lock:
            transport = self.transport_for(bot, chat_id)
            try:
                await self._manager.start_agent(transport, transport.channel)
            except ConfigurationError as e:
                log.error("telegram.agent_config_error", chat_id=chat_id, error=str(e))
                await update.message.reply_text("⚠️ The assistant is not configured on this server.")
                self.release(chat_id)
                return None
            except (TransientBackendError, SessionStateError) as e:
                log.warning("telegram.agent_start_failed", chat_id=chat_id, error=str(e))
                await update.message.reply_text("⚠️ The assistant is unavailable right now. Try again shortly.")
                self.release(chat_id)
                return None
        return transport

    async def _on_text(self, update: Update, ctx: ContextTypes.DEFAULT_TYPE) -> None:
        if not await self._auth_check(update):
            return
        transport = await self._ensure_agent(update, ctx.bot)
        if transport is None:
            return

        user = update.effective_user
        transport.dispatch(InboundEvent(
            type=MESSAGE_NEW,
            channel_id=transport.channel.id,
            text=update.message.text,
            ai_generated=bool(user and user.is_bot),
            message_id=str(update.message.message_id),
            user_id=str(user.id) if user else None,
        ))

    async def _cmd_stop(self, update: Update, ctx: ContextTypes.DEFAULT_TYPE) -> None:
        if not await self._auth_check(update):
            return
        transport = self._transports.get(str(update.effective_chat.id))
        if transport is None or transport.channel.last_placeholder_id is None:
            await update.message.reply_text("Nothing to stop.")
            return
        transport.dispatch(InboundEvent(
            type=AI_INDICATOR_STOP,
            channel_id=transport.channel.id,
            message_id=transport.channel.last_placeholder_id,
            user_id=str(update.effective_user.id),
        ))

    async def _cmd_reset(self, update: Update, ctx: ContextTypes.DEFAULT_TYPE) -> None:
        if not await self._auth_check(update):
            return
        stopped = await self._manager.stop_agent(str(update.effective_chat.id))
        await update.message.reply_text(
            "🔄 Conversation reset." if stopped else "No active conversation."
        )


# ── Entry point ───────────────────────────────────────────────────────────────


async def run_telegram(settings: Settings, manager: AgentManager) -> None:
    """Entry point called from main.py. Runs until cancelled."""
    gateway = TelegramGateway(settings=settings, manager=manager)
    try:
        await gateway.start()
        await asyncio.Event().wait()
    finally:
        await gateway.stop()
