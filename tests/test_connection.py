"""Tests for mailbot.connection."""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from tests.conftest import ErrorRecorder
from tests.fakes import FakeSessionFactory

from mailbot.config import BotConfig
from mailbot.connection import ConnectionManager, ConnectionState
from mailbot.errors import ErrorContext, ErrorSink, MailBotStateError


class Hooks:
    def __init__(self) -> None:
        self.on_ready = MagicMock()
        self.on_closing = AsyncMock()
        self.on_lost = MagicMock()


def make_manager(
    config: BotConfig, factory: FakeSessionFactory
) -> tuple[ConnectionManager, Hooks]:
    hooks = Hooks()
    manager = ConnectionManager(
        config,
        ErrorSink(config),
        factory,
        on_ready=hooks.on_ready,
        on_closing=hooks.on_closing,
        on_lost=hooks.on_lost,
    )
    return manager, hooks


async def wait_for(predicate, timeout: float = 2.0) -> None:
    async def poll() -> None:
        while not predicate():
            await asyncio.sleep(0.005)

    await asyncio.wait_for(poll(), timeout)


@pytest.fixture
def factory() -> FakeSessionFactory:
    return FakeSessionFactory()


class TestStart:
    @pytest.mark.asyncio
    async def test_start_reaches_ready(self, bot_config: BotConfig, factory: FakeSessionFactory):
        manager, hooks = make_manager(bot_config, factory)
        assert manager.state is ConnectionState.DISCONNECTED

        await manager.start()

        assert manager.state is ConnectionState.READY
        assert manager.session is factory.latest
        assert factory.latest.connects == 1
        assert factory.configs == [bot_config.imap]
        hooks.on_ready.assert_called_once_with(factory.latest)
        assert manager.is_live is True

    @pytest.mark.asyncio
    async def test_ready_leaves_no_settlement_listeners(
        self, bot_config: BotConfig, factory: FakeSessionFactory
    ):
        manager, _ = make_manager(bot_config, factory)
        await manager.start()
        session = factory.latest
        assert session.listener_count("ready") == 0
        assert session.listener_count("error") == 1
        assert session.listener_count("close") == 1

    @pytest.mark.asyncio
    async def test_connect_failure_rejects(
        self, bot_config: BotConfig, errors_seen: ErrorRecorder
    ):
        refused = ConnectionRefusedError("connection refused")
        factory = FakeSessionFactory(connect_error=refused)
        manager, hooks = make_manager(bot_config, factory)

        with pytest.raises(ConnectionRefusedError):
            await manager.start()

        assert manager.state is ConnectionState.CLOSED
        assert errors_seen.calls == [(refused, ErrorContext.CONNECTION)]
        assert factory.latest.listener_count("ready") == 0
        hooks.on_ready.assert_not_called()
        assert manager.reconnects_scheduled == 0

    @pytest.mark.asyncio
    async def test_start_twice_is_invalid(self, bot_config: BotConfig, factory: FakeSessionFactory):
        manager, _ = make_manager(bot_config, factory)
        await manager.start()
        with pytest.raises(MailBotStateError):
            await manager.start()
        assert manager.state is ConnectionState.READY
        assert len(factory.sessions) == 1

    @pytest.mark.asyncio
    async def test_new_start_drops_old_session_listeners(
        self, bot_config: BotConfig, factory: FakeSessionFactory
    ):
        manager, _ = make_manager(bot_config, factory)
        await manager.start()
        await manager.stop()
        await manager.start()

        first, second = factory.sessions
        assert first.listener_count("error") == 0
        assert first.listener_count("close") == 0
        assert manager.session is second


class TestStop:
    @pytest.mark.asyncio
    async def test_graceful_stop(self, bot_config: BotConfig, factory: FakeSessionFactory):
        manager, hooks = make_manager(bot_config, factory)
        await manager.start()
        with patch("mailbot.connection.logger") as mock_logger:
            await manager.stop()

        assert manager.state is ConnectionState.CLOSED
        assert factory.latest.ended is True
        assert factory.latest.destroyed is False
        hooks.on_closing.assert_awaited_once_with(True)
        hooks.on_lost.assert_not_called()
        warnings = [call.args[0] for call in mock_logger.warning.call_args_list]
        assert "forced_stop" not in warnings

    @pytest.mark.asyncio
    async def test_forced_stop_warns(self, bot_config: BotConfig, factory: FakeSessionFactory):
        manager, hooks = make_manager(bot_config, factory)
        await manager.start()
        with patch("mailbot.connection.logger") as mock_logger:
            await manager.stop(force=True)

        assert manager.state is ConnectionState.CLOSED
        assert factory.latest.destroyed is True
        hooks.on_closing.assert_awaited_once_with(False)
        warnings = [call.args[0] for call in mock_logger.warning.call_args_list]
        assert warnings.count("forced_stop") == 1

    @pytest.mark.asyncio
    async def test_stop_before_start_is_noop(
        self, bot_config: BotConfig, factory: FakeSessionFactory
    ):
        manager, hooks = make_manager(bot_config, factory)
        await manager.stop()
        assert manager.state is ConnectionState.DISCONNECTED
        hooks.on_closing.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_stop_twice_is_noop(self, bot_config: BotConfig, factory: FakeSessionFactory):
        manager, hooks = make_manager(bot_config, factory)
        await manager.start()
        await manager.stop()
        await manager.stop()
        assert hooks.on_closing.await_count == 1

    @pytest.mark.asyncio
    async def test_stop_does_not_reconnect(
        self, bot_config: BotConfig, factory: FakeSessionFactory
    ):
        manager, _ = make_manager(bot_config, factory)
        await manager.start()
        await manager.stop()
        await asyncio.sleep(0.05)
        assert manager.reconnects_scheduled == 0
        assert len(factory.sessions) == 1


class TestUnsolicitedClose:
    @pytest.mark.asyncio
    async def test_error_close_reconnects(
        self, bot_config: BotConfig, factory: FakeSessionFactory, errors_seen: ErrorRecorder
    ):
        manager, hooks = make_manager(bot_config, factory)
        await manager.start()
        first = factory.latest

        first.drop(ConnectionResetError("reset by peer"))
        assert manager.state is ConnectionState.CLOSED
        hooks.on_lost.assert_called_once_with()
        assert manager.reconnect_pending is True
        assert manager.is_live is True

        await wait_for(lambda: manager.state is ConnectionState.READY)
        assert manager.reconnects_scheduled == 1
        assert manager.session is factory.latest
        assert factory.latest is not first
        assert hooks.on_ready.call_count == 2
        assert errors_seen.contexts == [ErrorContext.CONNECTION]

    @pytest.mark.asyncio
    async def test_reconnect_scheduled_once(
        self, bot_config: BotConfig, factory: FakeSessionFactory
    ):
        manager, hooks = make_manager(bot_config, factory)
        await manager.start()
        session = factory.latest

        session.drop(ConnectionResetError("reset"))
        session.drop(ConnectionResetError("reset again"))
        manager._schedule_reconnect()

        assert manager.reconnects_scheduled == 1
        hooks.on_lost.assert_called_once_with()
        await wait_for(lambda: manager.state is ConnectionState.READY)
        assert len(factory.sessions) == 2

    @pytest.mark.asyncio
    async def test_no_reconnect_when_disabled(
        self, bot_config: BotConfig, factory: FakeSessionFactory
    ):
        config = bot_config.with_overrides(auto_reconnect=False)
        manager, hooks = make_manager(config, factory)
        await manager.start()

        factory.latest.drop(ConnectionResetError("reset"))
        await asyncio.sleep(0.05)

        assert manager.state is ConnectionState.CLOSED
        assert manager.reconnects_scheduled == 0
        assert manager.is_live is False
        hooks.on_lost.assert_called_once_with()
        assert len(factory.sessions) == 1

    @pytest.mark.asyncio
    async def test_clean_close_does_not_reconnect(
        self, bot_config: BotConfig, factory: FakeSessionFactory
    ):
        manager, hooks = make_manager(bot_config, factory)
        await manager.start()

        factory.latest.emit("close", None)
        await asyncio.sleep(0.05)

        assert manager.state is ConnectionState.CLOSED
        assert manager.reconnects_scheduled == 0
        hooks.on_lost.assert_called_once_with()

    @pytest.mark.asyncio
    async def test_reconnect_gives_up_after_max_attempts(
        self, bot_config: BotConfig, factory: FakeSessionFactory
    ):
        manager, _ = make_manager(bot_config, factory)
        await manager.start()

        factory.kwargs["connect_error"] = ConnectionRefusedError("refused")
        factory.latest.drop(ConnectionResetError("reset"))
        await wait_for(lambda: not manager.reconnect_pending)

        assert manager.state is ConnectionState.CLOSED
        assert len(factory.sessions) == 1 + bot_config.auto_reconnect_max_attempts
        assert manager.reconnects_scheduled == 1

    @pytest.mark.asyncio
    async def test_stop_cancels_pending_reconnect(
        self, bot_config: BotConfig, factory: FakeSessionFactory
    ):
        config = bot_config.with_overrides(auto_reconnect_timeout=0.05)
        manager, _ = make_manager(config, factory)
        await manager.start()

        factory.latest.drop(ConnectionResetError("reset"))
        assert manager.reconnect_pending is True
        await manager.stop()
        await asyncio.sleep(0.1)

        assert manager.reconnect_pending is False
        assert manager.state is ConnectionState.CLOSED
        assert len(factory.sessions) == 1

    @pytest.mark.asyncio
    async def test_close_of_stale_session_ignored(
        self, bot_config: BotConfig, factory: FakeSessionFactory
    ):
        manager, hooks = make_manager(bot_config, factory)
        await manager.start()
        await manager.stop()
        await manager.start()

        factory.sessions[0].emit("close", ConnectionResetError("late"))
        assert manager.state is ConnectionState.READY
        hooks.on_lost.assert_not_called()

    @pytest.mark.asyncio
    async def test_stop_during_reconnect_attempt(
        self, bot_config: BotConfig, factory: FakeSessionFactory
    ):
        manager, hooks = make_manager(bot_config, factory)
        await manager.start()

        factory.kwargs["connect_hangs"] = True
        factory.latest.drop(ConnectionResetError("reset"))
        await wait_for(lambda: manager.state is ConnectionState.CONNECTING)
        attempt = factory.latest

        await manager.stop()

        assert manager.state is ConnectionState.CLOSED
        assert manager.reconnect_pending is False
        assert attempt.destroyed is True
        hooks.on_closing.assert_not_awaited()

        factory.kwargs["connect_hangs"] = False
        await asyncio.sleep(0.05)
        assert manager.state is ConnectionState.CLOSED
        assert len(factory.sessions) == 2
        assert hooks.on_ready.call_count == 1

        await manager.start()
        assert manager.state is ConnectionState.READY
        assert manager.session is factory.latest
