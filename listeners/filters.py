"""
Inbound message filtering.

Decides whether an incoming text should reach the agent at all:
our own outbound messages, empty texts, blocked handles and (when a
whitelist is set) unknown handles are dropped before any model call.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime

logger = logging.getLogger(__name__)


@dataclass
class IncomingMessage:
    """One inbound text, independent of the channel it came from."""
    handle: str
    text: str | None
    channel: str = "imessage"
    from_me: bool = False
    is_group: bool = False
    received_at: datetime = field(default_factory=datetime.now)


class MessageFilter:
    """Whitelist/blacklist gate for inbound messages.

    An empty whitelist means everyone not blacklisted may talk to the agent.
    """

    def __init__(self, enabled: bool = True, whitelist: list[str] = None, blacklist: list[str] = None):
        self.enabled = enabled
        self.whitelist = list(whitelist or [])
        self.blacklist = list(blacklist or [])

    @classmethod
    def from_config(cls, config: dict) -> "MessageFilter":
        ai = config.get("ai", {})
        return cls(
            enabled=ai.get("enabled", True),
            whitelist=ai.get("whitelist"),
            blacklist=ai.get("blacklist"),
        )

    def should_process(self, message: IncomingMessage) -> bool:
        if not self.enabled:
            return False

        if message.from_me:
            return False

        if message.text is None or not message.text.strip():
            logger.debug("Empty message from %s, skipping", message.handle)
            return False

        if message.handle in self.blacklist:
            logger.info("Message from %s blocked by blacklist", message.handle)
            return False

        if self.whitelist and message.handle not in self.whitelist:
            logger.info("Message from %s not in whitelist", message.handle)
            return False

        return True

    def set_whitelist(self, handles: list[str]):
        self.whitelist = list(handles or [])

    def set_blacklist(self, handles: list[str]):
        self.blacklist = list(handles or [])
