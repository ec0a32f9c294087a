"""
CLI Sender - Agent replies and notifications printed to the terminal.

Lets the whole flow (including price alerts and purchase updates) run
locally without a phone attached.
"""

from utils.console import console


class CLISender:
    """Sender that outputs to terminal with styling."""

    name = "cli"
    capabilities = ["text_only"]

    def __init__(self, prefix: str = "Flip"):
        self.prefix = prefix

    async def send(self, to: str, content: str, **kwargs) -> dict:
        """Print styled message to terminal.

        Args:
            to: Recipient; shown when it is not the local user
            content: Message to print
        """
        prefix = self.prefix if to in (None, "", "cli", "owner") else f"{self.prefix} → {to}"
        console.agent(content, prefix=prefix)
        return {"sent": True, "channel": "cli"}
