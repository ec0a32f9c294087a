"""
Notifications - best-effort text delivery to a user.

The price monitor and the purchase flow only ever need "tell this person
this sentence". ChannelNotifier adapts any registered Sender to that
contract and guarantees it never raises to the caller.
"""

import logging
from typing import Protocol, runtime_checkable

logger = logging.getLogger(__name__)


@runtime_checkable
class NotificationSink(Protocol):
    """Deliver a short text to a user. Implementations must not raise."""

    async def notify(self, user_handle: str, text: str) -> None:
        ...


class ChannelNotifier:
    """NotificationSink backed by the agent's sender registry.

    The sender is looked up at send time, so senders registered after
    construction (e.g. during server startup) are picked up.
    """

    def __init__(self, senders: dict, channel: str):
        self.senders = senders
        self.channel = channel

    async def notify(self, user_handle: str, text: str) -> None:
        if not user_handle:
            return

        sender = self.senders.get(self.channel)
        if sender is None:
            logger.warning("No sender registered for channel %s, dropping notification to %s",
                           self.channel, user_handle)
            return

        try:
            result = await sender.send(user_handle, text)
        except Exception as e:
            logger.warning("Notification to %s via %s failed: %s", user_handle, self.channel, e)
            return

        if isinstance(result, dict) and result.get("error"):
            logger.warning("Notification to %s via %s failed: %s", user_handle, self.channel, result["error"])


class NullNotifier:
    """Sink that only logs. Used when no channel is configured."""

    async def notify(self, user_handle: str, text: str) -> None:
        logger.info("Notification for %s: %s", user_handle, text)
