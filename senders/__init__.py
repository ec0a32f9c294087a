"""
Senders - Output channels for the agent.

Senders handle outbound communication. Each sender implements a simple protocol:
- name: str - Channel identifier
- capabilities: list[str] - What this sender supports (imessage, sms, media, etc.)
- send(to, content, **kwargs) - Send a message

Usage:
    from senders.imessage import IMessageSender
    agent.register_sender("imessage", IMessageSender())
"""

from typing import Protocol, runtime_checkable


@runtime_checkable
class Sender(Protocol):
    """Protocol for channel senders.

    Implement this to add a new output channel.
    """

    name: str
    capabilities: list[str]

    async def send(self, to: str, content: str, **kwargs) -> dict:
        """Send a message.

        Args:
            to: Recipient identifier (phone number or Apple ID email)
            content: Message content
            **kwargs: Channel-specific options (new_contact, media_url, etc.)

        Returns:
            {"sent": True, ...} on success
            {"error": "..."} on failure
        """
        ...
