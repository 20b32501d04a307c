"""
agent/session.py — Per-Channel Agent Session

One AgentSession exists per chat channel. It binds that channel to one
assistant definition and one conversation thread on the AI backend, turns
each accepted human message into a streaming run, and owns the
ResponseStreamer spawned for every run until the stream ends or the session
is disposed.

State machine:
    UNINITIALIZED ──initialize()──▶ ACTIVE ──dispose()──▶ DISPOSED

initialize() can be attempted once. dispose() is a no-op after the first
call. Messages delivered outside ACTIVE are logged and dropped.

Concurrency:
    Every inbound event is handled in its own task (see ChatTransport.dispatch),
    so a second message can start while the first is still waiting on its
    thread append. Appends are not serialized across events; under rapid
    successive messages they may reach the backend out of order.
"""

from __future__ import annotations

import time
from enum import Enum
from typing import Callable, Optional

from chatpilot.agent.streamer import ResponseStreamer
from chatpilot.brain.assistant import AssistantProvisioner, default_definition
from chatpilot.brain.backend import AssistantBackend
from chatpilot.brain.tools import ToolRegistry
from chatpilot.config.settings import Settings
from chatpilot.exceptions import (
    ConfigurationError,
    SessionStateError,
    TransientBackendError,
    TransportError,
)
from chatpilot.interfaces.transport import (
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

BackendFactory = Callable[[str], AssistantBackend]


class SessionState(str, Enum):
    UNINITIALIZED = "uninitialized"
    ACTIVE = "active"
    DISPOSED = "disposed"


class AgentSession:
    """All runtime state binding one chat channel to one assistant thread."""

    def __init__(
        self,
        transport: ChatTransport,
        channel: ChatChannel,
        settings: Settings,
        backend_factory: Optional[BackendFactory] = None,
        tools: Optional[ToolRegistry] = None,
    ):
        self.transport = transport
        self.channel = channel
        self._settings = settings
        self._backend_factory = backend_factory
        self._tools = tools or ToolRegistry()

        self._state = SessionState.UNINITIALIZED
        self._init_attempted = False
        self._backend: Optional[AssistantBackend] = None
        self._assistant_id: Optional[str] = None
        self._thread_id: Optional[str] = None

        self.created_at = time.time()
        self._last_interaction: Optional[float] = None
        self._streamers: list[ResponseStreamer] = []

        self._log = log.bind(channel_id=channel.id)

    # ── Properties ────────────────────────────────────────────────────────────

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def thread_id(self) -> Optional[str]:
        return self._thread_id

    @property
    def assistant_id(self) -> Optional[str]:
        return self._assistant_id

    @property
    def streamers(self) -> tuple[ResponseStreamer, ...]:
        return tuple(self._streamers)

    # ── Lifecycle ─────────────────────────────────────────────────────────────

    async def initialize(self) -> None:
        """
        Provision the assistant and thread, then start listening for messages.

        Raises:
            SessionStateError:  initialize() was already attempted, or the
                                session is disposed.
            ConfigurationError: OPENAI_API_KEY is missing or rejected.
            TransientBackendError: provisioning failed on the backend.
        """
        if self._init_attempted or self._state is not SessionState.UNINITIALIZED:
            raise SessionStateError(
                f"Session for channel {self.channel.id} cannot be initialized "
                f"from state '{self._state.value}'"
            )
        self._init_attempted = True

        api_key = self._settings.openai_api_key
        if not api_key:
            raise ConfigurationError("OPENAI_API_KEY is required to start an agent session")

        if self._backend_factory is not None:
            backend = self._backend_factory(api_key)
        else:
            backend = AssistantBackend.from_settings(self._settings, api_key)

        provisioner = AssistantProvisioner(backend, default_definition(self._settings))
        try:
            provisioned = await provisioner.provision()
        except Exception:
            await self._close_backend(backend)
            raise

        if self._state is SessionState.DISPOSED:
            # dispose() raced the provisioning calls
            self._log.info("session.initialize_abandoned", thread_id=provisioned.thread_id)
            await self._close_backend(backend)
            return

        self._backend = backend
        self._assistant_id = provisioned.assistant_id
        self._thread_id = provisioned.thread_id

        self.transport.on(MESSAGE_NEW, self._handle_message)
        self._state = SessionState.ACTIVE
        self._log.info(
            "session.initialized",
            assistant_id=self._assistant_id,
            thread_id=self._thread_id,
        )

    def get_last_interaction_time(self) -> Optional[float]:
        """Epoch seconds of the most recent accepted message, or None if there is none yet."""
        return self._last_interaction

    async def dispose(self) -> None:
        if self._state is SessionState.DISPOSED:
            self._log.debug("session.dispose_skipped", reason="already_disposed")
            return
        self._state = SessionState.DISPOSED

        self.transport.off(MESSAGE_NEW, self._handle_message)
        try:
            await self.transport.disconnect()
        except TransportError as e:
            self._log.warning("session.disconnect_failed", error=str(e))

        streamers, self._streamers = self._streamers, []
        for streamer in streamers:
            await streamer.dispose()

        backend, self._backend = self._backend, None
        if backend is not None:
            await self._close_backend(backend)

        self._log.info("session.disposed", streamers_disposed=len(streamers))

    # ── Inbound messages ──────────────────────────────────────────────────────

    async def _handle_message(self, event: InboundEvent) -> None:
        if self._state is not SessionState.ACTIVE:
            self._log.info("session.message_skipped", reason=f"session_{self._state.value}")
            return

        if event.ai_generated:
            self._log.debug("session.message_skipped", reason="ai_generated")
            return
        text = event.text
        if not text:
            self._log.debug("session.message_skipped", reason="empty_text")
            return

        self._touch()
        placeholder: Optional[ChatMessageRef] = None
        try:
            await self._backend.add_user_message(self._thread_id, text)
            if self._state is not SessionState.ACTIVE:
                return

            placeholder = await self.channel.send_message("", ai_generated=True)
            await self.channel.send_event(IndicatorEvent.update(placeholder, AIState.THINKING))
            if self._state is not SessionState.ACTIVE:
                await self.channel.send_event(IndicatorEvent.clear(placeholder))
                return

            run = self._backend.stream_run(self._thread_id, self._assistant_id)
        except (TransientBackendError, TransportError) as e:
            self._log.error(
                "session.message_failed",
                error=str(e),
                error_type=type(e).__name__,
                message_id=placeholder.message_id if placeholder else None,
            )
            if placeholder is not None:
                await self._report_error(placeholder)
            return

        streamer = ResponseStreamer(
            self._backend,
            self._thread_id,
            run,
            self.transport,
            self.channel,
            placeholder,
            tools=self._tools,
            update_every=self._settings.agent.stream_update_every,
            on_done=self._forget,
        )
        self._streamers.append(streamer)
        streamer.run()
        self._log.info(
            "session.message_accepted",
            message_id=placeholder.message_id,
            active_streamers=len(self._streamers),
        )

    def _touch(self) -> None:
        now = time.time()
        if self._last_interaction is None or now > self._last_interaction:
            self._last_interaction = now

    def _forget(self, streamer: ResponseStreamer) -> None:
        if streamer in self._streamers:
            self._streamers.remove(streamer)

    async def _close_backend(self, backend: AssistantBackend) -> None:
        try:
            await backend.close()
        except Exception as e:
            self._log.warning("session.backend_close_failed", error=str(e), error_type=type(e).__name__)

    async def _report_error(self, placeholder: ChatMessageRef) -> None:
        try:
            await self.channel.send_event(IndicatorEvent.update(placeholder, AIState.ERROR))
        except TransportError as e:
            self._log.warning("session.error_report_failed", error=str(e))

    # ── Summary ───────────────────────────────────────────────────────────────

    def status_summary(self) -> dict:
        return {
            "channel_id": self.channel.id,
            "state": self._state.value,
            "assistant_id": self._assistant_id,
            "thread_id": self._thread_id,
            "active_streamers": len(self._streamers),
            "last_interaction": self._last_interaction,
            "uptime_seconds": round(time.time() - self.created_at, 1),
        }

    def __repr__(self) -> str:
        return (f"<AgentSession channel={self.channel.id} state={self._state.value} "
                f"streamers={len(self._streamers)}>")
