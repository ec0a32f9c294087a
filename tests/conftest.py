"""
Shared fixtures for the Flip test suite.

Provides temp directories, env var isolation, and in-memory fakes for the
price feed, purchaser, notifier and senders so no test touches the network.
"""

import os
import sys
from pathlib import Path
from types import SimpleNamespace
from unittest.mock import patch

import pytest

# Ensure the project root is on sys.path so tests can import project modules
PROJECT_ROOT = Path(__file__).resolve().parent.parent
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from price_monitor import PriceStatus, SessionNotFound  # noqa: E402


# =============================================================================
# Environment
# =============================================================================


@pytest.fixture
def clean_env():
    """Temporarily clear env vars that change config defaults."""
    keys = [
        "ANTHROPIC_API_KEY", "AGENT_MODEL", "AGENT_NAME",
        "SENDBLUE_API_KEY", "SENDBLUE_API_SECRET", "SENDBLUE_PHONE_NUMBER",
        "FLIP_CONFIG", "OWNER_PHONE", "WALLET_PRIVATE_KEY",
        "AI_ENABLED", "AI_WHITELIST", "AI_BLACKLIST", "DEBUG_MODE",
        "PRICE_FEED_URL", "TASK_SERVICE_URL", "NOTIFY_CHANNEL",
    ]
    saved = {}
    for key in keys:
        if key in os.environ:
            saved[key] = os.environ.pop(key)
    yield
    for key, val in saved.items():
        os.environ[key] = val
    for key in keys:
        if key not in saved and key in os.environ:
            del os.environ[key]


@pytest.fixture
def mock_anthropic_key():
    with patch.dict(os.environ, {"ANTHROPIC_API_KEY": "sk-ant-test-key-123"}):
        yield


@pytest.fixture
def sample_config(tmp_path):
    """Minimal config dict for building an Agent in tests."""
    return {
        "owner": {"phone": "+15551234567"},
        "agent": {
            "name": "Flip",
            "model": "claude-sonnet-4-20250514",
            "max_steps": 5,
            "max_tokens": 256,
            "reply_delay": 0,
        },
        "ai": {"enabled": True, "whitelist": [], "blacklist": []},
        "price_feed": {"base_url": "http://feed.test", "timeout": 5},
        "price_monitor": {"poll_interval": 3600, "update_interval": 10,
                          "max_session_age_hours": 24, "max_consecutive_failures": 3},
        "purchasing": {"task_endpoint": "http://tasks.test/tasks/create", "poll_interval": 0,
                       "max_attempts": 3, "request_timeout": 5, "wallet_key_env": "WALLET_PRIVATE_KEY"},
        "services": {"scheduling_link": "https://www.alpha-me.xyz"},
        "notifications": {"channel": "fake"},
        "conversations": {"path": str(tmp_path / "conversations.json"), "max_messages": 100},
        "channels": {"cli": {"enabled": True}, "imessage": {"enabled": False}, "sendblue": {"enabled": False}},
    }


# =============================================================================
# Fakes
# =============================================================================


class FakeFeed:
    """In-memory PriceFeed.

    `prices[session_id]` is the next price reported for that session;
    `missing` sessions raise SessionNotFound; `failing` ones raise RuntimeError.
    """

    def __init__(self):
        self.started = []
        self.stopped = []
        self.status_calls = []
        self.prices = {}
        self.thresholds = {}
        self.symbols = {}
        self.missing = set()
        self.failing = set()
        self.start_error = None
        self._counter = 0

    async def start(self, symbol, threshold, update_interval=10):
        if self.start_error:
            raise self.start_error
        self._counter += 1
        session_id = f"s{self._counter}"
        self.started.append((symbol, threshold, update_interval))
        self.thresholds[session_id] = threshold
        self.symbols[session_id] = symbol
        return session_id

    async def status(self, session_id):
        self.status_calls.append(session_id)
        if session_id in self.missing:
            raise SessionNotFound(session_id)
        if session_id in self.failing:
            raise RuntimeError("feed unavailable")
        price = self.prices.get(session_id, self.thresholds[session_id] + 100)
        threshold = self.thresholds[session_id]
        return PriceStatus(self.symbols[session_id], price, threshold, price < threshold)

    async def stop(self, session_id):
        self.stopped.append(session_id)


class FakePurchaser:
    def __init__(self, error: Exception = None):
        self.calls = []
        self.error = error

    async def purchase_product(self, product_url, variant="Any", user_handle=None):
        self.calls.append((product_url, variant, user_handle))
        if self.error:
            raise self.error
        return {"success": True, "data": {"status": "completed"}}


class FakeNotifier:
    def __init__(self):
        self.sent = []

    async def notify(self, user_handle, text):
        self.sent.append((user_handle, text))

    def texts(self):
        return [text for _, text in self.sent]


class FakeSender:
    name = "fake"
    capabilities = ["text_only"]

    def __init__(self, error: str = None):
        self.sent = []
        self.groups = []
        self.error = error

    async def send(self, to, content, **kwargs):
        self.sent.append((to, content, kwargs))
        if self.error:
            return {"error": self.error}
        return {"sent": True, "to": to}

    async def create_group(self, participants, content):
        self.groups.append((list(participants), content))
        return {"sent": True, "participants": list(participants)}


# =============================================================================
# Fake Anthropic client
# =============================================================================


def text_block(text):
    return SimpleNamespace(type="text", text=text)


def tool_use_block(name, input, id="toolu_1"):
    return SimpleNamespace(type="tool_use", name=name, input=input, id=id)


def model_response(*blocks, stop_reason=None):
    if stop_reason is None:
        stop_reason = "tool_use" if any(b.type == "tool_use" for b in blocks) else "end_turn"
    return SimpleNamespace(content=list(blocks), stop_reason=stop_reason)


class FakeMessages:
    def __init__(self, responses):
        self.responses = list(responses)
        self.calls = []

    async def create(self, **kwargs):
        self.calls.append(kwargs)
        if not self.responses:
            raise RuntimeError("no more scripted responses")
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


class FakeAnthropic:
    """Scripted stand-in for anthropic.AsyncAnthropic."""

    def __init__(self, *responses):
        self.messages = FakeMessages(responses)


@pytest.fixture
def feed():
    return FakeFeed()


@pytest.fixture
def purchaser():
    return FakePurchaser()


@pytest.fixture
def notifier():
    return FakeNotifier()
