"""
API Server for Flip

Provides HTTP endpoints for:
- Receiving messages (direct and SendBlue webhooks)
- Conversation admin (history, clearing, system prompt)
- Outbound sends and situation-driven messaging (REST and WebSocket)
- Price monitors and the purchases they trigger

This enables external systems to interact with the agent via HTTP.
"""

import json
import logging
import os
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Optional

from fastapi import BackgroundTasks, FastAPI, HTTPException, WebSocket, WebSocketDisconnect
from pydantic import BaseModel

from agent import Agent
from config import get_section, is_channel_enabled
from listeners.filters import IncomingMessage, MessageFilter
from price_monitor import RegistrationError
from senders.sendblue import normalize_phone
from utils.console import console

logger = logging.getLogger(__name__)


# =============================================================================
# Shared Agent Instance
# =============================================================================

agent = Agent()
message_filter = MessageFilter.from_config(agent.config)


def _register_server_senders():
    """Register senders for replies and notifications."""
    if is_channel_enabled(agent.config, "imessage") and "imessage" not in agent.senders:
        from senders.imessage import IMessageSender
        agent.register_sender("imessage", IMessageSender(agent.config["channels"].get("imessage")))

    if os.environ.get("SENDBLUE_API_KEY") and os.environ.get("SENDBLUE_API_SECRET"):
        from senders.sendblue import SendBlueSender
        agent.register_sender("sendblue", SendBlueSender(agent.config["channels"].get("sendblue")))
        logger.debug("SendBlue sender registered for webhooks")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Register senders on startup; stop the monitor loop and purchases on shutdown."""
    _register_server_senders()
    logger.info("Server started (channels: %s)", ", ".join(agent.senders) or "none")
    yield
    await agent.shutdown()


app = FastAPI(
    title="Flip API",
    description="HTTP interface for the texting agent, price monitors and purchases",
    lifespan=lifespan,
)


def _require_ai():
    """Raise 503 when the model can't be reached."""
    ai_enabled = get_section(agent.config, "ai").get("enabled", True)
    has_client = agent._client is not None or bool(os.environ.get("ANTHROPIC_API_KEY"))
    if not (ai_enabled and has_client):
        raise HTTPException(
            status_code=503,
            detail="AI handler not available - check ANTHROPIC_API_KEY and AI_ENABLED",
        )


# =============================================================================
# Request/Response Models
# =============================================================================

class MessageRequest(BaseModel):
    """Incoming text from any channel."""
    handle: str
    content: str
    channel: str = "imessage"
    async_mode: bool = False  # If true, return immediately and process in background


class ProcessConversationRequest(BaseModel):
    handle: str
    custom_prompt: Optional[str] = None


class SystemPromptRequest(BaseModel):
    prompt: str


class SendRequest(BaseModel):
    """Outbound text to any number."""
    phone_number: str
    message: str
    force_new_contact: bool = False
    channel: Optional[str] = None


class ProcessContextRequest(BaseModel):
    context: Any = None


class MonitorRequest(BaseModel):
    symbol: str
    threshold: float
    user_handle: str
    product_url: str
    variant: str = "Any"


class SendBlueWebhookPayload(BaseModel):
    """SendBlue webhook payload for inbound messages.

    See: https://docs.sendblue.com/getting-started/webhooks/
    """
    message_handle: Optional[str] = None
    from_number: Optional[str] = None
    to_number: Optional[str] = None
    content: Optional[str] = None
    media_url: Optional[str] = None
    date_sent: Optional[str] = None
    is_outbound: Optional[bool] = False
    status: Optional[str] = None
    error_code: Optional[int] = None
    error_message: Optional[str] = None
    group_id: Optional[str] = None


# =============================================================================
# Endpoints
# =============================================================================

@app.get("/health")
async def health():
    """Health check endpoint."""
    return {
        "status": "ok",
        "ai": {
            "enabled": get_section(agent.config, "ai").get("enabled", True),
            "model": agent.model,
        },
        "channels": list(agent.senders.keys()),
        "monitors_count": len(agent.monitor.sessions),
        "tools": list(agent.tools.keys()),
    }


@app.post("/message")
async def receive_message(req: MessageRequest, background_tasks: BackgroundTasks):
    """
    Receive a text and process it as if it arrived on `channel`.

    Filtered messages are acknowledged but never reach the model.
    If async_mode=true, queues the message and returns immediately.
    """
    if not message_filter.should_process(IncomingMessage(handle=req.handle, text=req.content, channel=req.channel)):
        return {"processed": False, "reason": "filtered"}

    _require_ai()
    if req.async_mode:
        background_tasks.add_task(agent.handle_incoming_message, req.handle, req.content, req.channel)
        return {"processed": True, "queued": True}

    result = await agent.handle_incoming_message(req.handle, req.content, req.channel)
    return {"processed": True, **result}


@app.post("/ai/process-conversation")
async def process_conversation(req: ProcessConversationRequest):
    """Manually re-run the model over a stored conversation."""
    _require_ai()
    if not req.handle:
        raise HTTPException(status_code=400, detail="handle is required")
    return await agent.process_conversation(req.handle, req.custom_prompt)


@app.get("/ai/conversation/{handle}")
async def get_conversation(handle: str):
    status = agent.get_conversation_status(handle)
    if not status["message_count"] and not status["context"]:
        raise HTTPException(status_code=404, detail="Conversation not found")
    return status


@app.delete("/ai/conversation/{handle}")
async def clear_conversation(handle: str):
    if not agent.clear_conversation(handle):
        raise HTTPException(status_code=404, detail="Conversation not found")
    return {"cleared": handle}


@app.get("/ai/conversations")
async def list_conversations(limit: int = 10):
    conversations = agent.get_recent_conversations(limit)
    return {"count": len(conversations), "conversations": conversations}


@app.post("/ai/system-prompt")
async def update_system_prompt(req: SystemPromptRequest):
    if not req.prompt.strip():
        raise HTTPException(status_code=400, detail="prompt is required")
    agent.update_system_prompt(req.prompt)
    return {"updated": True}


@app.post("/api/send")
async def send_message(req: SendRequest):
    """Send a text to any number, priming the thread first for new contacts."""
    channel = req.channel or agent.notify_channel
    sender = agent.senders.get(channel)
    if sender is None:
        raise HTTPException(status_code=503, detail=f"No sender registered for channel {channel}")

    result = await sender.send(req.phone_number, req.message, new_contact=req.force_new_contact)
    if result.get("error"):
        raise HTTPException(status_code=502, detail=result["error"])
    return {
        "success": True,
        "to": req.phone_number,
        "content": req.message,
        "channel": channel,
        "timestamp": datetime.now().isoformat(),
    }


@app.post("/api/process-context")
async def process_context(req: ProcessContextRequest):
    """Decide who to message about a situation, and message them."""
    if not req.context:
        raise HTTPException(status_code=400, detail="context is required")
    _require_ai()

    result = await agent.process_context(req.context)
    return {
        "context": req.context,
        "timestamp": datetime.now().isoformat(),
        **result,
    }


@app.websocket("/ws")
async def context_websocket(websocket: WebSocket):
    """
    Stream process_context progress.

    Client sends {"type": "process", "context": {...}} and receives
    thinking/action/action_result updates, then {"type": "complete", "result": ...}.
    """
    await websocket.accept()
    console.activity("ws", "client connected")
    await websocket.send_json({"type": "connected", "message": "Connected to Flip"})

    try:
        while True:
            raw = await websocket.receive_text()
            try:
                message = json.loads(raw)
            except json.JSONDecodeError:
                await websocket.send_json({"type": "error", "message": "Invalid JSON message"})
                continue

            if not isinstance(message, dict) or message.get("type") != "process":
                await websocket.send_json({
                    "type": "error",
                    "message": 'Unknown message type. Use "process" to process context.',
                })
                continue

            result = await agent.process_context(message.get("context"), on_update=websocket.send_json)
            await websocket.send_json({"type": "complete", "result": json.loads(json.dumps(result, default=str))})

    except WebSocketDisconnect:
        console.activity("ws", "client disconnected")


# =============================================================================
# Price Monitors
# =============================================================================

@app.get("/monitors")
async def list_monitors(user_handle: Optional[str] = None):
    return [s.to_dict() for s in agent.monitor.list_sessions(user_handle)]


@app.post("/monitors")
async def start_monitor(req: MonitorRequest):
    """Start a price-triggered purchase directly (no model involved)."""
    try:
        session_id = await agent.monitor.start_monitoring(
            req.symbol, req.threshold, req.user_handle, req.product_url, req.variant
        )
    except RegistrationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return {"session_id": session_id}


@app.get("/monitors/{session_id}")
async def get_monitor(session_id: str):
    session = agent.monitor.get(session_id)
    if session is None:
        raise HTTPException(status_code=404, detail="Monitor not found")
    return session.to_dict()


@app.delete("/monitors/{session_id}")
async def cancel_monitor(session_id: str):
    if not await agent.monitor.cancel_monitoring(session_id):
        raise HTTPException(status_code=404, detail="Monitor not found")
    return {"cancelled": session_id}


@app.get("/purchases/{session_id}")
async def get_purchase(session_id: str):
    status = agent.monitor.purchase_status(session_id)
    if status is None:
        raise HTTPException(status_code=404, detail="No purchase for this session")
    return json.loads(json.dumps(status, default=str))


# =============================================================================
# SendBlue Webhook
# =============================================================================

# Track processed message IDs to prevent duplicates
_sendblue_processed_ids: set[str] = set()


@app.post("/webhooks/sendblue")
async def sendblue_webhook(payload: SendBlueWebhookPayload, background_tasks: BackgroundTasks):
    """
    Receive inbound SMS/iMessage from SendBlue.

    Configure this URL in your SendBlue dashboard:
    https://your-domain.com/webhooks/sendblue

    Returns immediately; the agent runs in the background and replies via SendBlue.
    """
    global _sendblue_processed_ids

    console.activity("sendblue", f"inbound from {payload.from_number}")

    msg_id = payload.message_handle or f"{payload.from_number}:{payload.date_sent}"

    # Webhooks can be delivered more than once
    if msg_id in _sendblue_processed_ids:
        logger.debug("SendBlue webhook: skipping duplicate message %s", msg_id)
        return {"status": "ok", "message": "duplicate"}

    if payload.is_outbound:
        logger.debug("SendBlue webhook: skipping outbound message %s", msg_id)
        return {"status": "ok", "message": "outbound_ignored"}

    if not payload.content and not payload.media_url:
        logger.debug("SendBlue webhook: skipping empty message %s", msg_id)
        return {"status": "ok", "message": "empty_ignored"}

    _sendblue_processed_ids.add(msg_id)
    if len(_sendblue_processed_ids) > 1000:
        _sendblue_processed_ids = set(list(_sendblue_processed_ids)[-500:])

    handle = normalize_phone(payload.from_number or "")
    text = payload.content or ""
    if payload.media_url:
        text += f"\n\n[Media attached: {payload.media_url}]"

    incoming = IncomingMessage(handle=handle, text=text, channel="sendblue", is_group=bool(payload.group_id))
    if not message_filter.should_process(incoming):
        return {"status": "ok", "message": "filtered"}

    async def process_and_reply():
        result = await agent.handle_incoming_message(handle, text, channel="sendblue")
        if result.get("success"):
            console.activity("sendblue", f"replied to {handle}")
        else:
            logger.error("Error processing SendBlue message from %s: %s", handle, result.get("error"))

    background_tasks.add_task(process_and_reply)
    return {"status": "ok", "message": "processing"}


# =============================================================================
# Run
# =============================================================================

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=5000)
