"""
agent/manager.py — Agent Session Registry + Idle Reaper

Process-wide owner of every AgentSession:
  - at most one session per channel id (a pending set guards concurrent
    starts for the same channel while initialize() is suspended)
  - a background reaper disposes sessions that have gone quiet for longer
    than agent.idle_timeout_seconds and logs a `manager.heartbeat` line on
    every sweep (liveness signal for the supervising process)
  - shutdown() disposes everything

Usage:
    manager = AgentManager(settings)
    manager.start()
    session = await manager.start_agent(transport, channel)
    ...
    await manager.shutdown()
"""

from __future__ import annotations

import asyncio
import time
from typing import Callable, Optional

from chatpilot.agent.session import AgentSession
from chatpilot.config.settings import Settings
from chatpilot.exceptions import SessionStateError
from chatpilot.interfaces.transport import ChatChannel, ChatTransport
from chatpilot.observability.logger import get_logger

log = get_logger(__name__)

SessionFactory = Callable[[ChatTransport, ChatChannel, Settings], AgentSession]


class AgentManager:
    def __init__(self, settings: Settings, session_factory: Optional[SessionFactory] = None):
        self._settings = settings
        self._session_factory = session_factory or AgentSession
        self._sessions: dict[str, AgentSession] = {}
        self._pending: set[str] = set()
        self._reaper: Optional[asyncio.Task] = None
        self._closing = False
        self._started_at = time.time()

    # ── Registry ──────────────────────────────────────────────────────────────

    def get(self, channel_id: str) -> Optional[AgentSession]:
        return self._sessions.get(channel_id)

    def __contains__(self, channel_id: str) -> bool:
        return channel_id in self._sessions

    @property
    def active_count(self) -> int:
        return len(self._sessions)

    async def start_agent(self, transport: ChatTransport, channel: ChatChannel) -> AgentSession:
        """
        Return the channel's session, creating and initializing it if needed.

        Raises:
            SessionStateError: another start for this channel is still initializing,
                               or the manager is shutting down.
            ConfigurationError / TransientBackendError: from AgentSession.initialize().
        """
        channel_id = channel.id
        if self._closing:
            raise SessionStateError(f"Agent for channel {channel_id} not started: manager is shutting down")
        existing = self._sessions.get(channel_id)
        if existing is not None:
            return existing
        if channel_id in self._pending:
            raise SessionStateError(f"Agent for channel {channel_id} is already starting")

        self._pending.add(channel_id)
        session = self._session_factory(transport, channel, self._settings)
        try:
            await session.initialize()
        except Exception:
            log.exception("manager.start_failed", channel_id=channel_id)
            await session.dispose()
            raise
        finally:
            self._pending.discard(channel_id)

        if self._closing:
            # shutdown() ran while initialize() was suspended
            await session.dispose()
            raise SessionStateError(f"Agent for channel {channel_id} not started: manager is shutting down")

        self._sessions[channel_id] = session
        log.info("manager.agent_started", channel_id=channel_id, active=len(self._sessions))
        return session

    async def stop_agent(self, channel_id: str) -> bool:
        session = self._sessions.pop(channel_id, None)
        if session is None:
            return False
        await session.dispose()
        log.info("manager.agent_stopped", channel_id=channel_id, active=len(self._sessions))
        return True

    # ── Idle reaper ───────────────────────────────────────────────────────────

    def start(self) -> None:
        """Start the background idle reaper (idempotent)."""
        if self._reaper is not None and not self._reaper.done():
            return
        self._reaper = asyncio.create_task(self._reap_loop(), name="agent-reaper")
        log.info(
            "manager.reaper_started",
            idle_timeout_s=self._settings.agent.idle_timeout_seconds,
            interval_s=self._settings.agent.reaper_interval_seconds,
        )

    async def reap_idle(self, now: Optional[float] = None) -> list[str]:
        """Dispose every session idle for longer than the timeout. Returns the reaped channel ids."""
        now = time.time() if now is None else now
        cutoff = now - self._settings.agent.idle_timeout_seconds

        idle = [
            channel_id
            for channel_id, session in self._sessions.items()
            if (session.get_last_interaction_time() or session.created_at) < cutoff
        ]
        for channel_id in idle:
            log.info("manager.reaped", channel_id=channel_id)
            await self.stop_agent(channel_id)
        return idle

    async def _reap_loop(self) -> None:
        interval = self._settings.agent.reaper_interval_seconds
        while True:
            await asyncio.sleep(interval)
            try:
                await self.reap_idle()
            except Exception:
                log.exception("manager.reap_failed")
            log.info("manager.heartbeat", active=len(self._sessions), pending=len(self._pending))

    async def shutdown(self) -> None:
        self._closing = True
        if self._reaper is not None:
            self._reaper.cancel()
            await asyncio.wait({self._reaper})
            self._reaper = None

        channel_ids = list(self._sessions)
        for channel_id in channel_ids:
            await self.stop_agent(channel_id)
        log.info("manager.shutdown", disposed=len(channel_ids))

    # ── Liveness ──────────────────────────────────────────────────────────────

    def health(self) -> dict:
        return {
            "ok": self._reaper is None or not self._reaper.done(),
            "active_agents": len(self._sessions),
            "pending": len(self._pending),
            "uptime_seconds": round(time.time() - self._started_at, 1),
        }
