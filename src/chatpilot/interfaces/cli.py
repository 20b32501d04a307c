"""
interfaces/cli.py — ChatPilot Local Console Channel

A single-channel REPL for trying the agent without a chat service.
Uses rich for terminal rendering. Input is read on a worker thread and the
prompt returns once the reply has finished streaming.

Commands:
  /quit   dispose the session and exit (Ctrl+D works too)

Usage:
    python -m chatpilot --interface cli
"""

from __future__ import annotations

import asyncio
import itertools

from rich.console import Console
from rich.markdown import Markdown
from rich.panel import Panel

from chatpilot.agent.manager import AgentManager
from chatpilot.agent.session import AgentSession
from chatpilot.config.settings import Settings
from chatpilot.exceptions import ConfigurationError, TransientBackendError
from chatpilot.interfaces.transport import (
    AI_INDICATOR_CLEAR,
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

CONSOLE_CHANNEL_ID = "console"

_STATE_LABELS = {
    AIState.THINKING: "thinking…",
    AIState.GENERATING: "generating…",
    AIState.EXTERNAL_SOURCES: "checking external sources…",
}


class ConsoleChannel(ChatChannel):
    """Keeps message texts in memory and renders replies when they finish."""

    def __init__(self, console: Console):
        self._console = console
        self._ids = itertools.count(1)
        self.messages: dict[str, str] = {}

    @property
    def id(self) -> str:
        return CONSOLE_CHANNEL_ID

    async def send_message(self, text: str, ai_generated: bool = True) -> ChatMessageRef:
        message_id = str(next(self._ids))
        self.messages[message_id] = text
        return ChatMessageRef(channel_id=self.id, message_id=message_id)

    async def update_message(self, message: ChatMessageRef, text: str) -> None:
        self.messages[message.message_id] = text

    async def send_event(self, event: IndicatorEvent) -> None:
        text = self.messages.get(event.message.message_id, "")
        if event.type == AI_INDICATOR_CLEAR:
            if text.strip():
                self._console.print(Panel(Markdown(text), border_style="green", title="assistant"))
        elif event.state is AIState.ERROR:
            self._console.print(Panel(text or "Something went wrong.", border_style="red", title="error"))
        elif event.state in _STATE_LABELS:
            self._console.print(f"[dim]{_STATE_LABELS[event.state]}[/dim]")


class ConsoleTransport(ChatTransport):
    def __init__(self, console: Console):
        super().__init__()
        self.channel = ConsoleChannel(console)
        self.connected = True

    async def disconnect(self) -> None:
        self.connected = False
        self._handlers.clear()


async def _wait_for_replies(transport: ConsoleTransport, session: AgentSession) -> None:
    await transport.join()
    tasks = [s.task for s in session.streamers if s.task is not None]
    if tasks:
        await asyncio.gather(*tasks, return_exceptions=True)


async def run_cli(settings: Settings, manager: AgentManager) -> None:
    """Entry point called from main.py."""
    console = Console()
    transport = ConsoleTransport(console)

    try:
        session = await manager.start_agent(transport, transport.channel)
    except (ConfigurationError, TransientBackendError) as e:
        console.print(f"[red]Could not start the assistant:[/red] {e}")
        return

    console.print(f"[bold]{settings.assistant.name}[/bold] ready — /quit to exit")
    while True:
        try:
            line = await asyncio.to_thread(console.input, "[bold cyan]you ›[/bold cyan] ")
        except (EOFError, KeyboardInterrupt):
            break

        command = line.strip()
        if command in ("/quit", "/exit"):
            break
        transport.dispatch(InboundEvent(
            type=MESSAGE_NEW,
            channel_id=CONSOLE_CHANNEL_ID,
            text=line,
            user_id="local",
        ))
        await _wait_for_replies(transport, session)

    await manager.stop_agent(CONSOLE_CHANNEL_ID)
    console.print("[dim]bye[/dim]")
