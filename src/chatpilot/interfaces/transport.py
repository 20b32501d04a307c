"""
interfaces/transport.py — Chat Transport Contract

What AgentSession and ResponseStreamer need from a real-time chat service:

  Inbound   — subscribe to typed events (`message.new`, `ai_indicator.stop`)
  Outbound  — send a message, edit it, send a typed progress-indicator event
  Lifecycle — disconnect the session's transport identity on disposal

Concrete adapters (Telegram, local console) subclass ChatTransport and
ChatChannel and call dispatch() for every inbound event.

Delivery model:
  dispatch() starts one asyncio.Task per subscribed handler, in delivery
  order, and returns immediately. A handler that suspends on network I/O
  therefore does not hold back the next event. Exceptions escaping a handler
  are logged here as `transport.handler_failed`; this is the subscription's
  error channel, and it never reaches the adapter that delivered the event.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, Optional

from chatpilot.observability.logger import bind_channel, clear_channel, get_logger

log = get_logger(__name__)


# ─────────────────────────────────────────────────────────────────────────────
# Event vocabulary
# ─────────────────────────────────────────────────────────────────────────────

MESSAGE_NEW = "message.new"
AI_INDICATOR_UPDATE = "ai_indicator.update"
AI_INDICATOR_CLEAR = "ai_indicator.clear"
AI_INDICATOR_STOP = "ai_indicator.stop"


class AIState(str, Enum):
    THINKING = "AI_STATE_THINKING"
    GENERATING = "AI_STATE_GENERATING"
    EXTERNAL_SOURCES = "AI_STATE_EXTERNAL_SOURCES"
    ERROR = "AI_STATE_ERROR"
    IDLE = "AI_STATE_IDLE"


@dataclass(frozen=True)
class ChatMessageRef:
    """Identity of an outbound message, enough to edit it later."""
    channel_id: str
    message_id: str


@dataclass(frozen=True)
class InboundEvent:
    """One notification delivered by the chat service. Transient."""
    type: str
    channel_id: str
    text: Optional[str] = None
    ai_generated: bool = False
    message_id: Optional[str] = None
    user_id: Optional[str] = None


@dataclass(frozen=True)
class IndicatorEvent:
    """Side-channel progress event attached to one message."""
    type: str
    message: ChatMessageRef
    state: Optional[AIState] = None

    @classmethod
    def update(cls, message: ChatMessageRef, state: AIState) -> "IndicatorEvent":
        return cls(type=AI_INDICATOR_UPDATE, message=message, state=state)

    @classmethod
    def clear(cls, message: ChatMessageRef) -> "IndicatorEvent":
        return cls(type=AI_INDICATOR_CLEAR, message=message)


EventHandler = Callable[[InboundEvent], Awaitable[None]]


# ─────────────────────────────────────────────────────────────────────────────
# Outbound: one channel
# ─────────────────────────────────────────────────────────────────────────────


class ChatChannel(ABC):
    """
    Outbound side of one chat channel.

    Implementations raise TransportError when the service rejects a call.
    """

    @property
    @abstractmethod
    def id(self) -> str:
        ...

    @abstractmethod
    async def send_message(self, text: str, ai_generated: bool = True) -> ChatMessageRef:
        """Post a new message; return its identity for later edits."""
        ...

    @abstractmethod
    async def update_message(self, message: ChatMessageRef, text: str) -> None:
        """Replace the text of a previously sent message."""
        ...

    @abstractmethod
    async def send_event(self, event: IndicatorEvent) -> None:
        """Publish a progress-indicator event for a message."""
        ...

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} id={self.id}>"


# ─────────────────────────────────────────────────────────────────────────────
# Inbound: event subscription
# ─────────────────────────────────────────────────────────────────────────────


class ChatTransport(ABC):
    """Event subscription plus the transport identity a session holds."""

    def __init__(self) -> None:
        self._handlers: dict[str, list[EventHandler]] = {}
        self._tasks: set[asyncio.Task] = set()

    def on(self, event_type: str, handler: EventHandler) -> None:
        self._handlers.setdefault(event_type, []).append(handler)

    def off(self, event_type: str, handler: EventHandler) -> None:
        handlers = self._handlers.get(event_type)
        if handlers and handler in handlers:
            handlers.remove(handler)

    def handler_count(self, event_type: str) -> int:
        return len(self._handlers.get(event_type, ()))

    def dispatch(self, event: InboundEvent) -> list[asyncio.Task]:
        """Start every handler subscribed to event.type; do not wait for them."""
        tasks: list[asyncio.Task] = []
        for handler in list(self._handlers.get(event.type, ())):
            task = asyncio.create_task(
                self._run_handler(handler, event),
                name=f"{event.type}:{event.channel_id}",
            )
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
            tasks.append(task)
        if not tasks:
            log.debug("transport.event_unhandled", event_type=event.type, channel_id=event.channel_id)
        return tasks

    async def join(self) -> None:
        """Wait for every handler task started so far."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def _run_handler(self, handler: EventHandler, event: InboundEvent) -> None:
        bind_channel(event.channel_id, event.user_id)
        try:
            await handler(event)
        except Exception:
            log.exception("transport.handler_failed", event_type=event.type)
        finally:
            clear_channel()

    @abstractmethod
    async def disconnect(self) -> None:
        """Release this transport identity. No events are delivered afterwards."""
        ...
