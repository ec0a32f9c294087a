"""
Messaging Tools

Everything the agent can do to talk to people besides its normal reply.

- send_message / send_to_contact / send_link: Explicit outbound messages
- create_group_chat: Start an iMessage group
- get_conversation_history: Read stored history for a handle
- skip_response / wait_for_more_input: Suppress the automatic reply
- analyze_message: Cheap heuristics on an incoming message
- search_talent: Find experts and partners through the talent search API
"""

import asyncio
import logging
import re

import httpx

from config import get_section
from tools import ToolContext, tool, tool_error

logger = logging.getLogger(__name__)

URGENT_WORDS = re.compile(r"urgent|emergency|asap|help|problem", re.IGNORECASE)
GREETING = re.compile(r"^(hi|hello|hey|good morning|good afternoon|good evening)", re.IGNORECASE)
EMOJI = re.compile("[\U0001F600-\U0001F64F\U0001F300-\U0001F5FF\U0001F680-\U0001F6FF\U0001F1E0-\U0001F1FF]")


async def _pause(ctx: ToolContext):
    delay = float(get_section(getattr(ctx.agent, "config", {}) or {}, "agent").get("reply_delay", 0) or 0)
    if delay > 0:
        await asyncio.sleep(delay)


async def _deliver(ctx: ToolContext, to: str, content: str, **kwargs) -> dict:
    sender = ctx.sender
    if sender is None:
        return tool_error(f"No sender for channel {ctx.channel}")
    try:
        return await sender.send(to, content, **kwargs)
    except Exception as e:
        logger.error("Send via %s to %s failed: %s", ctx.channel, to, e)
        return tool_error(str(e))


@tool
async def send_message(message: str, ctx: ToolContext, reasoning: str = "") -> dict:
    """Send an extra message to the person who just messaged you.

    Your final text reply is sent automatically; use this only for messages
    that must go out before you finish (e.g. "one sec, checking...").

    Args:
        message: The message content to send
        reasoning: Why you decided to send this message now
    """
    if not ctx.recipient:
        return tool_error("No current conversation partner")

    await _pause(ctx)
    logger.info("Sending to %s: %r (%s)", ctx.recipient, message, reasoning)
    result = await _deliver(ctx, ctx.recipient, message)
    if result.get("error"):
        return result
    return {"success": True, "to": ctx.recipient, "content": message}


@tool
async def send_to_contact(phone_number: str, message: str, ctx: ToolContext,
                          is_new_contact: bool = False, reasoning: str = "") -> dict:
    """Send a message to someone other than the current conversation partner.

    Args:
        phone_number: Phone number including country code, e.g. +15551234567
        message: The message content to send
        is_new_contact: True if you have never messaged this number before
        reasoning: Why you are messaging this person
    """
    await _pause(ctx)
    logger.info("Sending to %s contact %s: %r (%s)",
                "new" if is_new_contact else "existing", phone_number, message, reasoning)
    result = await _deliver(ctx, phone_number, message, new_contact=is_new_contact)
    if result.get("error"):
        return result
    return {"success": True, "to": phone_number, "content": message, "new_contact": is_new_contact}


@tool
async def create_group_chat(phone_number1: str, phone_number2: str, message: str,
                            ctx: ToolContext, reasoning: str = "") -> dict:
    """Create a group chat with two other people and send an opening message.

    Only use this when explicitly asked to create a group.

    Args:
        phone_number1: First person's phone number
        phone_number2: Second person's phone number
        message: Initial message for the group
        reasoning: Why you are creating the group
    """
    if phone_number1 == phone_number2:
        return tool_error("Phone numbers must be different")

    sender = ctx.sender
    if sender is None or not hasattr(sender, "create_group"):
        return tool_error(f"Group chats are not supported on {ctx.channel}")

    await _pause(ctx)
    logger.info("Creating group with %s and %s (%s)", phone_number1, phone_number2, reasoning)
    result = await sender.create_group([phone_number1, phone_number2], message)
    if result.get("error"):
        return result
    return {"success": True, "participants": [phone_number1, phone_number2], "message": message}


@tool
async def send_link(ctx: ToolContext, url: str = None, context_message: str = None,
                    phone_number: str = None, is_new_contact: bool = False, reasoning: str = "") -> dict:
    """Send a scheduling link. Use when someone wants to schedule a meeting, call or consultation.

    Args:
        url: Link to send (defaults to the configured scheduling link)
        context_message: Optional message sent just before the link
        phone_number: Send to this number instead of the current conversation partner
        is_new_contact: True if phone_number has never been messaged before
        reasoning: Why you are sending the link
    """
    services = get_section(getattr(ctx.agent, "config", {}) or {}, "services")
    url = url or services.get("scheduling_link") or "https://www.alpha-me.xyz"
    target = phone_number or ctx.recipient
    if not target:
        return tool_error("No recipient for the link")

    new_contact = bool(phone_number and is_new_contact)
    await _pause(ctx)
    logger.info("Sending link %s to %s (%s)", url, target, reasoning)

    if context_message:
        result = await _deliver(ctx, target, context_message, new_contact=new_contact)
        if result.get("error"):
            return result
        new_contact = False
        await asyncio.sleep(1)

    result = await _deliver(ctx, target, url, new_contact=new_contact)
    if result.get("error"):
        return result
    return {"success": True, "to": target, "url": url, "context_message": context_message}


@tool
def get_conversation_history(handle: str, ctx: ToolContext, limit: int = 10) -> dict:
    """Get recent stored messages with a contact, oldest first.

    Args:
        handle: Phone number or email of the contact
        limit: Number of recent messages to return
    """
    conv = ctx.agent.conversations.get_conversation(handle)
    messages = conv.messages[-max(1, int(limit)):]
    return {
        "handle": handle,
        "count": len(messages),
        "messages": [
            {"role": m["role"], "content": m["content"], "timestamp": m.get("timestamp")}
            for m in messages
        ],
        "context": conv.context,
    }


@tool
def skip_response(reasoning: str, ctx: ToolContext) -> dict:
    """Don't send your text reply for this message.

    Use this ONLY when you genuinely should not respond. By default your
    text response is sent automatically.

    Args:
        reasoning: Why you are not responding
    """
    logger.info("Skipping response to %s: %s", ctx.recipient, reasoning)
    ctx.flags["skip_response"] = True
    return {"success": True, "status": "Response will not be sent"}


@tool
def wait_for_more_input(reasoning: str, ctx: ToolContext, expectation: str = "") -> dict:
    """Wait for the user's next message instead of replying now. Skips the automatic reply.

    Args:
        reasoning: Why you are waiting
        expectation: What follow-up you expect from the user
    """
    logger.info("Waiting for more input from %s: %s (expecting: %s)", ctx.recipient, reasoning, expectation)
    ctx.flags["skip_response"] = True
    return {"success": True, "status": "Waiting for more information", "expectation": expectation}


@tool
def analyze_message(message_content: str, sender_handle: str = "", is_group_message: bool = False) -> dict:
    """Analyze an incoming message for intent and urgency and suggest a response strategy.

    Args:
        message_content: The message text
        sender_handle: Who sent it
        is_group_message: Whether it came from a group chat
    """
    analysis = {
        "has_question": "?" in message_content,
        "has_urgent_words": bool(URGENT_WORDS.search(message_content)),
        "is_greeting": bool(GREETING.match(message_content.strip())),
        "is_short": len(message_content) < 20,
        "word_count": len(message_content.split(" ")),
        "has_emojis": bool(EMOJI.search(message_content)),
    }

    if analysis["has_urgent_words"]:
        recommendation = "respond_immediately"
    elif analysis["has_question"]:
        recommendation = "respond_soon"
    elif analysis["is_greeting"]:
        recommendation = "respond_politely"
    else:
        recommendation = "consider_waiting"

    return {
        "sender": sender_handle,
        "is_group": is_group_message,
        "analysis": analysis,
        "recommendation": recommendation,
    }


@tool
async def search_talent(query: str, ctx: ToolContext, top_results: int = 3, reasoning: str = "") -> dict:
    """Search for experts, professionals and business partners.

    Use this when someone asks for connections, introductions, or help finding
    specific types of professionals.

    Args:
        query: Kind of expert needed, e.g. "supply chain experts", "web3 developers"
        top_results: Number of results to return (1-10)
        reasoning: Why you are searching
    """
    services = get_section(getattr(ctx.agent, "config", {}) or {}, "services")
    api_url = services.get("talent_search_url")
    if not api_url:
        return tool_error("Talent search not configured", fix="Set TALENT_SEARCH_URL")

    body = {
        "query": query,
        "userEmail": services.get("talent_user_email", ""),
        "top_k": min(max(int(top_results), 1), 10),
    }
    logger.info("Searching talent: %r (%s)", query, reasoning)

    try:
        async with httpx.AsyncClient(timeout=30.0) as client:
            response = await client.post(api_url, json=body)
            response.raise_for_status()
            data = response.json()
    except (httpx.HTTPError, ValueError) as e:
        return tool_error(f"Talent search failed: {e}", query=query)

    people = (data.get("results") or []) if data.get("success") else []
    results = [
        {
            "name": p.get("name"),
            "title": p.get("title"),
            "company": p.get("company"),
            "industry": p.get("industry"),
            "location": p.get("location"),
            "email": p.get("email"),
            "phone": p.get("phone"),
            "expertise": (p.get("profileContext") or "")[:200],
            "connection_context": p.get("connectionContext") or p.get("connection_context")
                                  or "Connection details not available",
        }
        for p in people
    ]
    if not results:
        return {"success": True, "query": query, "count": 0, "results": [],
                "message": f'No experts found matching "{query}". Try a different search term.'}
    return {
        "success": True,
        "query": query,
        "count": len(results),
        "results": results,
        "message": f'Found {len(results)} expert{"" if len(results) == 1 else "s"} matching "{query}"',
    }
