"""
Listeners - Input channels for the agent.

Listeners receive messages and route them to the agent. Each is a plain
async function or endpoint that:
1. Waits for input from its channel
2. Drops what MessageFilter rejects
3. Calls agent.handle_incoming_message(handle, text, channel)

Inbound channels:
- CLI (this package)
- HTTP /message and the SendBlue webhook (server.py)
"""

from listeners.cli import run_cli_listener
from listeners.filters import IncomingMessage, MessageFilter

__all__ = ["run_cli_listener", "IncomingMessage", "MessageFilter"]
