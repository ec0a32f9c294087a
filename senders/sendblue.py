"""
SendBlue Sender - iMessage/SMS through the SendBlue API.

Used when the agent runs away from a Mac (server deployments), and as
the delivery path for webhook-originated conversations.
Requires SENDBLUE_API_KEY, SENDBLUE_API_SECRET and SENDBLUE_PHONE_NUMBER.
"""

import logging
import os

import httpx

logger = logging.getLogger(__name__)

SENDBLUE_API_BASE = "https://api.sendblue.co"


def normalize_phone(phone: str) -> str:
    """Normalize a phone number to E.164, assuming US when no country code.

    Examples:
        "(555) 123-4567" -> "+15551234567"
        "15551234567"    -> "+15551234567"
        "+447700900000"  -> "+447700900000"
    """
    cleaned = "".join(ch for ch in phone if ch not in " -().")
    if cleaned.startswith("+"):
        return cleaned
    if cleaned.startswith("1") and len(cleaned) == 11:
        return "+" + cleaned
    return "+1" + cleaned


class SendBlueSender:
    """Sender that sends SMS/iMessage via SendBlue API."""

    name = "sendblue"
    capabilities = ["sms", "imessage", "media"]

    def __init__(self, config: dict = None, transport: httpx.AsyncBaseTransport = None):
        self.config = config or {}
        self.api_base = self.config.get("api_base", SENDBLUE_API_BASE).rstrip("/")
        self._transport = transport

    @property
    def credentials(self) -> tuple[str | None, str | None, str | None]:
        return (
            self.config.get("api_key") or os.environ.get("SENDBLUE_API_KEY"),
            self.config.get("api_secret") or os.environ.get("SENDBLUE_API_SECRET"),
            self.config.get("from_number") or os.environ.get("SENDBLUE_PHONE_NUMBER"),
        )

    @property
    def from_number(self) -> str | None:
        return self.credentials[2]

    async def send(self, to: str, content: str, **kwargs) -> dict:
        """Send a message via SendBlue.

        Args:
            to: Recipient phone number (any common US format, or E.164)
            content: Message content
            media_url: Optional URL of media to attach
            send_style: Optional iMessage effect ("invisible", "gentle", "loud")

        Returns:
            {"sent": True, "message_id", "status", ...} or {"error": "..."}
        """
        api_key, api_secret, from_number = self.credentials
        if not api_key or not api_secret:
            return {"error": "SendBlue not configured. Set SENDBLUE_API_KEY and SENDBLUE_API_SECRET."}
        if not from_number:
            return {"error": "SendBlue from_number not configured. Set SENDBLUE_PHONE_NUMBER."}

        to_number = normalize_phone(to)
        payload = {"number": to_number, "content": content, "from_number": from_number}
        if kwargs.get("media_url"):
            payload["media_url"] = kwargs["media_url"]
        if kwargs.get("send_style"):
            payload["send_style"] = kwargs["send_style"]

        headers = {
            "sb-api-key-id": api_key,
            "sb-api-secret-key": api_secret,
            "Content-Type": "application/json",
        }

        try:
            async with httpx.AsyncClient(timeout=30.0, transport=self._transport) as client:
                response = await client.post(f"{self.api_base}/api/send-message", headers=headers, json=payload)
        except httpx.TimeoutException:
            return {"error": "SendBlue API timeout"}
        except httpx.HTTPError as e:
            logger.error("SendBlue send error: %s", e)
            return {"error": str(e)}

        if response.status_code in (200, 202):
            data = response.json()
            return {
                "sent": True,
                "channel": "sendblue",
                "to": to_number,
                "message_id": data.get("message_handle"),
                "status": data.get("status", "queued" if response.status_code == 202 else "sent"),
            }

        is_json = response.headers.get("content-type", "").startswith("application/json")
        error_msg = (response.json() if is_json else {}).get("error_message", response.text)
        logger.error("SendBlue send failed: %s - %s", response.status_code, error_msg)
        return {"error": f"SendBlue API error: {error_msg}"}
