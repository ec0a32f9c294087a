"""
iMessage Sender - Send blue-bubble messages through macOS Messages.app.

Runs `osascript` with the AppleScript on -e and the recipient/message as
argv, so user text is never spliced into the script source.
Only works on macOS with Messages signed in to an iMessage account.
"""

import asyncio
import logging
import sys

logger = logging.getLogger(__name__)

# argv: recipient, message
SEND_SCRIPT = """
on run argv
    set targetBuddy to item 1 of argv
    set targetMessage to item 2 of argv
    tell application "Messages"
        set serviceID to id of 1st service whose service type = iMessage
        send targetMessage to buddy targetBuddy of service id serviceID
    end tell
end run
"""

# Messages won't open a thread to a number it has never seen until
# something (even an empty string) has been sent there first.
NEW_CONTACT_SCRIPT = """
on run argv
    set targetBuddy to item 1 of argv
    set targetMessage to item 2 of argv
    tell application "Messages"
        set serviceID to id of 1st service whose service type = iMessage
        send "" to buddy targetBuddy of service id serviceID
        send targetMessage to buddy targetBuddy of service id serviceID
    end tell
end run
"""

# argv: message, participant1, participant2, ...
GROUP_SCRIPT = """
on run argv
    set targetMessage to item 1 of argv
    tell application "Messages"
        set targetService to 1st service whose service type = iMessage
        set buddyList to {}
        repeat with i from 2 to count of argv
            set end of buddyList to buddy (item i of argv) of targetService
        end repeat
        set groupChat to make new text chat with properties {participants:buddyList}
        send targetMessage to groupChat
    end tell
end run
"""


class IMessageSender:
    """Sender that drives Messages.app via AppleScript."""

    name = "imessage"
    capabilities = ["imessage", "group_chat"]

    def __init__(self, config: dict = None):
        self.config = config or {}
        self.osascript = self.config.get("osascript", "osascript")
        self.timeout = float(self.config.get("timeout", 30))

    async def send(self, to: str, content: str, **kwargs) -> dict:
        """Send an iMessage.

        Args:
            to: Phone number or Apple ID email
            content: Message text
            new_contact: Prime the thread first (for numbers never messaged before)

        Returns:
            {"sent": True, ...} or {"error": "..."}
        """
        if not to:
            return {"error": "No recipient given"}

        script = NEW_CONTACT_SCRIPT if kwargs.get("new_contact") else SEND_SCRIPT
        error = await self._run(script, to, content)
        if error:
            return {"error": f"iMessage send failed: {error}"}

        return {
            "sent": True,
            "channel": "imessage",
            "to": to,
            "method": "new-contact" if kwargs.get("new_contact") else "applescript",
        }

    async def create_group(self, participants: list[str], content: str) -> dict:
        """Start a group chat with the given handles and send the first message."""
        if len(participants) < 2:
            return {"error": "A group chat needs at least two other participants"}

        error = await self._run(GROUP_SCRIPT, content, *participants)
        if error:
            return {"error": f"Group chat creation failed: {error}"}
        return {"sent": True, "channel": "imessage", "participants": list(participants)}

    async def _run(self, script: str, *argv: str) -> str | None:
        """Run an AppleScript. Returns an error string, or None on success."""
        if sys.platform != "darwin":
            return "iMessage is only available on macOS"

        try:
            proc = await asyncio.create_subprocess_exec(
                self.osascript, "-e", script, *argv,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
            _, stderr = await asyncio.wait_for(proc.communicate(), timeout=self.timeout)
        except FileNotFoundError:
            return f"{self.osascript} not found"
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            return "osascript timed out"

        if proc.returncode != 0:
            message = stderr.decode(errors="replace").strip()
            logger.error("osascript failed (%s): %s", proc.returncode, message)
            return message or f"exit code {proc.returncode}"
        return None
