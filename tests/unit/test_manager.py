"""
Tests for agent/manager.py — AgentManager registry, idle reaper, shutdown.
"""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

import chatpilot.agent.manager as manager_module
from chatpilot.agent.manager import AgentManager
from chatpilot.agent.session import AgentSession, SessionState
from chatpilot.exceptions import ConfigurationError, SessionStateError
from chatpilot.interfaces.transport import MESSAGE_NEW, InboundEvent

from fakes import FakeBackend, FakeChannel, FakeTransport, make_settings


def _fake_session(last_interaction=None, created_at=0.0):
    session = MagicMock()
    session.initialize = AsyncMock()
    session.dispose = AsyncMock()
    session.get_last_interaction_time.return_value = last_interaction
    session.created_at = created_at
    return session


def _manager(settings=None, sessions=None):
    """Manager whose factory hands out `sessions` in order (fresh fakes once exhausted)."""
    queue = list(sessions or [])
    factory = MagicMock(side_effect=lambda t, c, s: queue.pop(0) if queue else _fake_session())
    return AgentManager(settings or make_settings(), session_factory=factory), factory


# ─────────────────────────────────────────────────────────────────────────────
# Registry
# ─────────────────────────────────────────────────────────────────────────────

class TestStartAgent:
    @pytest.mark.asyncio
    async def test_creates_and_initializes_session(self):
        settings = make_settings()
        manager, factory = _manager(settings)
        transport, channel = FakeTransport(), FakeChannel()

        session = await manager.start_agent(transport, channel)

        factory.assert_called_once_with(transport, channel, settings)
        session.initialize.assert_awaited_once()
        assert "chan-1" in manager
        assert manager.get("chan-1") is session
        assert manager.active_count == 1

    @pytest.mark.asyncio
    async def test_second_start_returns_existing_session(self):
        manager, factory = _manager()
        first = await manager.start_agent(FakeTransport(), FakeChannel())
        second = await manager.start_agent(FakeTransport(), FakeChannel())

        assert first is second
        assert factory.call_count == 1

    @pytest.mark.asyncio
    async def test_concurrent_start_for_same_channel_is_rejected(self):
        gate = asyncio.Event()
        slow = _fake_session()

        async def _slow_init():
            await gate.wait()

        slow.initialize.side_effect = _slow_init
        manager, factory = _manager(sessions=[slow])

        first = asyncio.create_task(manager.start_agent(FakeTransport(), FakeChannel()))
        await asyncio.sleep(0)
        assert manager.health()["pending"] == 1

        with pytest.raises(SessionStateError):
            await manager.start_agent(FakeTransport(), FakeChannel())

        gate.set()
        assert await first is slow
        assert factory.call_count == 1
        assert manager.health()["pending"] == 0

    @pytest.mark.asyncio
    async def test_failed_initialize_disposes_and_propagates(self):
        broken = _fake_session()
        broken.initialize.side_effect = ConfigurationError("OPENAI_API_KEY is required")
        manager, factory = _manager(sessions=[broken])

        with pytest.raises(ConfigurationError):
            await manager.start_agent(FakeTransport(), FakeChannel())

        broken.dispose.assert_awaited_once()
        assert "chan-1" not in manager
        assert manager.health()["pending"] == 0

        # the channel can be retried
        await manager.start_agent(FakeTransport(), FakeChannel())
        assert factory.call_count == 2

    @pytest.mark.asyncio
    async def test_different_channels_get_different_sessions(self):
        manager, _ = _manager()
        a = await manager.start_agent(FakeTransport(), FakeChannel("a"))
        b = await manager.start_agent(FakeTransport(), FakeChannel("b"))
        assert a is not b
        assert manager.active_count == 2


class TestStopAgent:
    @pytest.mark.asyncio
    async def test_stop_disposes_and_forgets(self):
        manager, _ = _manager()
        session = await manager.start_agent(FakeTransport(), FakeChannel())

        assert await manager.stop_agent("chan-1") is True
        session.dispose.assert_awaited_once()
        assert "chan-1" not in manager

    @pytest.mark.asyncio
    async def test_stop_unknown_channel(self):
        manager, _ = _manager()
        assert await manager.stop_agent("nope") is False


# ─────────────────────────────────────────────────────────────────────────────
# Idle reaper
# ─────────────────────────────────────────────────────────────────────────────

class TestReaper:
    @pytest.mark.asyncio
    async def test_reaps_only_idle_sessions(self):
        settings = make_settings(agent={"idle_timeout_seconds": 100})
        recent = _fake_session(last_interaction=990.0, created_at=500.0)
        never_used = _fake_session(last_interaction=None, created_at=800.0)
        quiet = _fake_session(last_interaction=850.0, created_at=500.0)
        manager, _ = _manager(settings, sessions=[recent, never_used, quiet])

        for channel_id in ("recent", "never_used", "quiet"):
            await manager.start_agent(FakeTransport(), FakeChannel(channel_id))

        reaped = await manager.reap_idle(now=1000.0)

        assert sorted(reaped) == ["never_used", "quiet"]
        assert "recent" in manager
        recent.dispose.assert_not_awaited()
        never_used.dispose.assert_awaited_once()
        quiet.dispose.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_fresh_session_without_messages_is_kept(self):
        settings = make_settings(agent={"idle_timeout_seconds": 100})
        manager, _ = _manager(settings, sessions=[_fake_session(created_at=950.0)])
        await manager.start_agent(FakeTransport(), FakeChannel())

        assert await manager.reap_idle(now=1000.0) == []
        assert manager.active_count == 1

    @pytest.mark.asyncio
    async def test_background_loop_reaps(self):
        settings = make_settings(agent={"idle_timeout_seconds": 1, "reaper_interval_seconds": 0.01})
        stale = _fake_session(last_interaction=1.0, created_at=1.0)
        manager, _ = _manager(settings, sessions=[stale])
        await manager.start_agent(FakeTransport(), FakeChannel())

        manager.start()
        manager.start()  # idempotent
        for _ in range(50):
            if "chan-1" not in manager:
                break
            await asyncio.sleep(0.01)

        assert "chan-1" not in manager
        stale.dispose.assert_awaited_once()
        assert manager.health()["ok"] is True

        await manager.shutdown()

    @pytest.mark.asyncio
    async def test_background_loop_survives_failed_sweep(self, monkeypatch):
        fake_log = MagicMock()
        monkeypatch.setattr(manager_module, "log", fake_log)
        settings = make_settings(agent={"idle_timeout_seconds": 1, "reaper_interval_seconds": 0.01})
        broken = _fake_session(last_interaction=1.0, created_at=1.0)
        broken.dispose.side_effect = RuntimeError("dispose blew up")
        later = _fake_session(last_interaction=1.0, created_at=1.0)
        manager, _ = _manager(settings, sessions=[broken, later])

        await manager.start_agent(FakeTransport(), FakeChannel("broken"))
        manager.start()
        for _ in range(50):
            if fake_log.exception.called:
                break
            await asyncio.sleep(0.01)

        fake_log.exception.assert_any_call("manager.reap_failed")
        assert manager.health()["ok"] is True

        await manager.start_agent(FakeTransport(), FakeChannel("later"))
        for _ in range(50):
            if "later" not in manager:
                break
            await asyncio.sleep(0.01)

        later.dispose.assert_awaited_once()
        await manager.shutdown()

    @pytest.mark.asyncio
    async def test_each_sweep_logs_heartbeat_at_info(self, monkeypatch):
        fake_log = MagicMock()
        monkeypatch.setattr(manager_module, "log", fake_log)
        manager, _ = _manager(make_settings(agent={"reaper_interval_seconds": 0.01}))

        manager.start()
        for _ in range(50):
            if any(c.args == ("manager.heartbeat",) for c in fake_log.info.call_args_list):
                break
            await asyncio.sleep(0.01)

        fake_log.info.assert_any_call("manager.heartbeat", active=0, pending=0)
        await manager.shutdown()


# ─────────────────────────────────────────────────────────────────────────────
# Shutdown + health
# ─────────────────────────────────────────────────────────────────────────────

class TestShutdown:
    @pytest.mark.asyncio
    async def test_shutdown_disposes_everything(self):
        manager, _ = _manager()
        sessions = [
            await manager.start_agent(FakeTransport(), FakeChannel(cid))
            for cid in ("a", "b", "c")
        ]
        manager.start()

        await manager.shutdown()

        for session in sessions:
            session.dispose.assert_awaited_once()
        assert manager.active_count == 0
        assert manager.health()["ok"] is True

    @pytest.mark.asyncio
    async def test_start_in_flight_during_shutdown_is_disposed(self):
        gate = asyncio.Event()
        slow = _fake_session()

        async def _slow_init():
            await gate.wait()

        slow.initialize.side_effect = _slow_init
        manager, _ = _manager(sessions=[slow])

        start = asyncio.create_task(manager.start_agent(FakeTransport(), FakeChannel()))
        await asyncio.sleep(0)
        await manager.shutdown()
        gate.set()

        with pytest.raises(SessionStateError):
            await start
        slow.dispose.assert_awaited_once()
        assert "chan-1" not in manager
        assert manager.health()["pending"] == 0

    @pytest.mark.asyncio
    async def test_start_after_shutdown_is_refused(self):
        manager, factory = _manager()
        await manager.shutdown()

        with pytest.raises(SessionStateError):
            await manager.start_agent(FakeTransport(), FakeChannel())
        factory.assert_not_called()
        assert manager.active_count == 0

    @pytest.mark.asyncio
    async def test_health_fields(self):
        manager, _ = _manager()
        await manager.start_agent(FakeTransport(), FakeChannel())
        health = manager.health()

        assert health["active_agents"] == 1
        assert health["pending"] == 0
        assert health["uptime_seconds"] >= 0


class TestWithRealSessions:
    @pytest.mark.asyncio
    async def test_start_message_stop(self):
        backend = FakeBackend()
        manager = AgentManager(
            make_settings(),
            session_factory=lambda t, c, s: AgentSession(t, c, s, backend_factory=lambda key: backend),
        )
        transport, channel = FakeTransport(), FakeChannel()

        session = await manager.start_agent(transport, channel)
        assert session.state is SessionState.ACTIVE

        transport.dispatch(InboundEvent(type=MESSAGE_NEW, channel_id="chan-1", text="Hi"))
        await transport.join()
        backend.add_user_message.assert_awaited_once_with("thread_1", "Hi")

        await manager.stop_agent("chan-1")
        assert session.state is SessionState.DISPOSED
        assert transport.disconnects == 1
