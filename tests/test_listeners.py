"""
Unit tests for listeners/ modules

Tests cover:
- MessageFilter: disabled AI, own messages, empty text, blacklist, whitelist
- MessageFilter.from_config
- CLI event handlers and the /verbose and /monitors commands
"""

from types import SimpleNamespace
from unittest.mock import patch

import pytest

from listeners.cli import _handle_verbose_command, _show_monitors, setup_event_handlers
from listeners.filters import IncomingMessage, MessageFilter
from price_monitor import MonitorSession
from utils.console import VerboseLevel, console
from utils.events import EventEmitter


# =============================================================================
# MessageFilter Tests
# =============================================================================


def msg(handle="+1555", text="hello", **kwargs):
    return IncomingMessage(handle=handle, text=text, **kwargs)


class TestMessageFilter:
    def test_allows_by_default(self):
        assert MessageFilter().should_process(msg()) is True

    def test_disabled(self):
        assert MessageFilter(enabled=False).should_process(msg()) is False

    def test_own_message(self):
        assert MessageFilter().should_process(msg(from_me=True)) is False

    @pytest.mark.parametrize("text", [None, "", "   \n"])
    def test_empty_text(self, text):
        assert MessageFilter().should_process(msg(text=text)) is False

    def test_blacklist(self):
        f = MessageFilter(blacklist=["+1666"])
        assert f.should_process(msg("+1666")) is False
        assert f.should_process(msg("+1555")) is True

    def test_whitelist(self):
        f = MessageFilter(whitelist=["+1555"])
        assert f.should_process(msg("+1555")) is True
        assert f.should_process(msg("+1777")) is False

    def test_blacklist_beats_whitelist(self):
        f = MessageFilter(whitelist=["+1555"], blacklist=["+1555"])
        assert f.should_process(msg("+1555")) is False

    def test_setters(self):
        f = MessageFilter()
        f.set_whitelist(["+1555"])
        f.set_blacklist(None)
        assert f.whitelist == ["+1555"]
        assert f.blacklist == []

    def test_from_config(self):
        f = MessageFilter.from_config({"ai": {"enabled": False, "whitelist": ["+1"], "blacklist": None}})
        assert f.enabled is False
        assert f.whitelist == ["+1"]
        assert f.blacklist == []

    def test_from_empty_config(self):
        f = MessageFilter.from_config({})
        assert f.enabled is True


# =============================================================================
# CLI Listener Tests
# =============================================================================


class FakeMonitor(EventEmitter):
    def __init__(self, sessions=None):
        self.__init_events__()
        self._sessions = sessions or []

    def list_sessions(self, user_handle=None):
        return self._sessions


def fake_agent(sessions=None):
    agent = EventEmitter()
    agent.__init_events__()
    agent.monitor = FakeMonitor(sessions)
    return agent


class TestEventHandlers:
    def test_tool_events(self):
        agent = fake_agent()
        setup_event_handlers(agent)
        with patch("listeners.cli.console") as mock_console:
            agent.emit("tool_start", {"name": "check_token_price", "input": {"symbol": "ETH/USD"}})
            agent.emit("tool_end", {"name": "check_token_price", "result": {"price": 1}, "duration_ms": 12})
        mock_console.tool_start.assert_called_once_with("check_token_price", {"symbol": "ETH/USD"})
        mock_console.tool_end.assert_called_once_with("check_token_price", {"price": 1}, 12)

    def test_monitor_events(self):
        agent = fake_agent()
        setup_event_handlers(agent)
        with patch("listeners.cli.console") as mock_console:
            agent.monitor.emit("monitor_triggered", {
                "session_id": "s1", "symbol": "ETH/USD", "price": 2400.0,
                "threshold": 2500.0, "user_handle": "+1555",
            })
            agent.monitor.emit("purchase_end", {"session_id": "s1", "status": "error", "error": "boom"})

        text = mock_console.monitor.call_args.args[0]
        assert "ETH/USD hit $2400" in text
        assert "limit $2500" in text
        mock_console.purchase.assert_called_once_with("session s1 purchase failed: boom")

    def test_removed_is_deep_only(self):
        agent = fake_agent()
        setup_event_handlers(agent)
        with patch("listeners.cli.console") as mock_console:
            agent.monitor.emit("monitor_removed", {"session_id": "s1", "reason": "stale"})
        assert mock_console.monitor.call_args.args[1] == VerboseLevel.DEEP


class TestCommands:
    def test_show_monitors_empty(self):
        with patch("listeners.cli.console") as mock_console:
            _show_monitors(fake_agent())
        mock_console.system.assert_called_once_with("No active price monitors.")

    def test_show_monitors(self):
        session = MonitorSession("s1", "+1555", "ETH/USD", 2500.0, "https://shop.test/jacket", "Medium")
        session.last_price = 2612.5
        with patch("listeners.cli.console") as mock_console:
            _show_monitors(fake_agent([session]))
        line = mock_console.system.call_args.args[0]
        assert line.startswith("s1: ETH/USD < $2500")
        assert "[Medium]" in line
        assert "last $2612.5" in line

    def test_verbose_command(self):
        original = console.get_verbose()
        try:
            _handle_verbose_command("/verbose deep")
            assert console.get_verbose() == VerboseLevel.DEEP
            _handle_verbose_command("/verbose off")
            assert console.get_verbose() == VerboseLevel.OFF
            _handle_verbose_command("/verbose loud")
            assert console.get_verbose() == VerboseLevel.OFF
        finally:
            console.set_verbose(original)
