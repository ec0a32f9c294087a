"""
Flip: a texting agent that can watch prices and buy things

Core insight: every inbound text is one run of a tool-use loop, scoped to
the person who sent it.

- Inbound text → stored in that person's conversation → model loop
- Tool calls act on behalf of that person via an explicit ToolContext
- Final text → split into short texts and sent back on the same channel

Long-running work (price watches, purchases) lives outside the loop in
the MonitorRegistry and PurchaseExecutor, which report back through the
same senders.
"""

import asyncio
import inspect
import json
import logging
import time
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Callable

import anthropic

from config import get_section, load_config
from conversations import ConversationStore
from notifications import ChannelNotifier
from price_monitor import HttpPriceFeed, MonitorRegistry
from purchasing import PurchaseExecutor
from tools import ToolContext, get_all_tools
from utils.events import EventEmitter

logger = logging.getLogger(__name__)


def json_serialize(obj):
    """JSON serializer for objects not serializable by default."""
    if isinstance(obj, datetime):
        return obj.isoformat()
    return str(obj)


DEFAULT_SYSTEM_PROMPT = """You are {name}, a friendly crypto assistant who talks to people over text message.

You can:
- Check token prices and wallet balances, and generate top-up links
- Watch a token price and automatically buy a product when it drops below a limit
- Search for products, buy them, book rides, and pay for x402-gated services
- Message other people, start group chats, and send scheduling links
- Find experts and business partners

How to reply:
- Your final text is sent automatically. Keep it short and casual, like texting.
- Put separate thoughts on separate lines; each line goes out as its own text.
- Use skip_response or wait_for_more_input only when you truly should not reply yet.
- When someone asks to buy something once a price drops, use monitor_token_and_buy.

Current time: {now}"""

CONTEXT_PROCESSING_PROMPT = """You are a messaging action specialist. When given a situation, you MUST take action by sending messages.

- Use send_to_contact to send each message. Do not just describe what you would send.
- Use send_link when someone should schedule a meeting, and create_group_chat when two people should be connected.
- Include a short "reasoning" with every tool call.
- For urgent situations, start messages with "Urgent:".
- Break long paragraphs into several short messages.
- Be professional and concise."""

CONVERSATION_REVIEW_PROMPT = "Please analyze this conversation and decide if any action is needed."


class Tool:
    """A capability the agent can use."""

    def __init__(self, name: str, description: str, parameters: dict, fn: Callable):
        self.name = name
        self.fn = fn
        self.schema = {
            "name": name,
            "description": description,
            "input_schema": parameters,
        }

    def execute(self, params: dict, ctx: ToolContext):
        return self.fn(params, ctx)


class Agent(EventEmitter):
    """
    The agent: a tool-use loop per inbound message, plus the services the
    tools act through.

    ┌──────────────────────────────────────────────┐
    │                    Agent                     │
    │  conversations   senders   tools             │
    │        │            ▲        │               │
    │        ▼            │        ▼               │
    │   model loop ──► auto-send   monitor ──► purchaser
    └──────────────────────────────────────────────┘

    Events emitted:
    - tool_start: {"name": str, "input": dict, "recipient": str}
    - tool_end: {"name": str, "result": any, "duration_ms": int}
    """

    def __init__(
        self,
        config: dict = None,
        client=None,
        load_tools: bool = True,
        conversations: ConversationStore = None,
        price_feed=None,
        purchaser=None,
        monitor: MonitorRegistry = None,
    ):
        self.__init_events__()

        self.config = config if config is not None else load_config()
        agent_cfg = get_section(self.config, "agent")
        self.name = agent_cfg.get("name", "Flip")
        self.model = agent_cfg.get("model", "claude-sonnet-4-20250514")
        self.max_steps = int(agent_cfg.get("max_steps", 10))
        self.max_tokens = int(agent_cfg.get("max_tokens", 1024))
        self.reply_delay = float(agent_cfg.get("reply_delay", 0) or 0)
        self.system_prompt = agent_cfg.get("system_prompt") or DEFAULT_SYSTEM_PROMPT

        # Created on first use so importing/constructing never needs an API key
        self._client = client

        self.tools: dict[str, Tool] = {}
        self.senders: dict = {}
        self._handle_locks: dict[str, asyncio.Lock] = {}
        self._handle_lock_users: dict[str, int] = {}

        conv_cfg = get_section(self.config, "conversations")
        self.conversations = conversations or ConversationStore(
            conv_cfg.get("path"), int(conv_cfg.get("max_messages", 100))
        )

        self.notify_channel = get_section(self.config, "notifications").get("channel", "imessage")
        self.notifier = ChannelNotifier(self.senders, self.notify_channel)

        feed_cfg = get_section(self.config, "price_feed")
        self.price_feed = price_feed or HttpPriceFeed(
            feed_cfg.get("base_url", "http://localhost:8080"), float(feed_cfg.get("timeout", 15))
        )

        buy_cfg = get_section(self.config, "purchasing")
        self.purchaser = purchaser or PurchaseExecutor(
            buy_cfg.get("task_endpoint", "http://localhost:8081/tasks/create"),
            self.notifier,
            key_env=buy_cfg.get("wallet_key_env", "WALLET_PRIVATE_KEY"),
            poll_interval=float(buy_cfg.get("poll_interval", 1.0)),
            max_attempts=int(buy_cfg.get("max_attempts", 120)),
            request_timeout=float(buy_cfg.get("request_timeout", 30.0)),
        )

        mon_cfg = get_section(self.config, "price_monitor")
        max_age_hours = mon_cfg.get("max_session_age_hours", 24)
        self.monitor = monitor or MonitorRegistry(
            self.price_feed,
            self.purchaser,
            self.notifier,
            poll_interval=float(mon_cfg.get("poll_interval", 10)),
            update_interval=int(mon_cfg.get("update_interval", 10)),
            max_session_age=float(max_age_hours) * 3600 if max_age_hours is not None else None,
            max_consecutive_failures=mon_cfg.get("max_consecutive_failures", 360),
        )

        if load_tools:
            for t in get_all_tools(Tool):
                self.register(t)

    @property
    def client(self):
        if self._client is None:
            self._client = anthropic.AsyncAnthropic()
        return self._client

    def register(self, tool: Tool):
        self.tools[tool.name] = tool

    def register_sender(self, channel: str, sender):
        """Register a channel sender for outbound messages.

        Args:
            channel: Channel name (e.g., "imessage", "sendblue", "cli")
            sender: Sender instance implementing the Sender protocol
        """
        self.senders[channel] = sender

    @asynccontextmanager
    async def _handle_lock(self, handle: str):
        """Serialize message handling per person so replies never interleave.

        The lock is dropped once nobody holds or waits for it.
        """
        lock = self._handle_locks.setdefault(handle, asyncio.Lock())
        self._handle_lock_users[handle] = self._handle_lock_users.get(handle, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._handle_lock_users[handle] -= 1
            if not self._handle_lock_users[handle]:
                del self._handle_lock_users[handle]
                del self._handle_locks[handle]

    # -------------------------------------------------------------------------
    # Inbound messages
    # -------------------------------------------------------------------------

    async def handle_incoming_message(self, handle: str, text: str, channel: str = "imessage") -> dict:
        """Process one inbound text and auto-send the reply.

        Args:
            handle: Sender's phone number or Apple ID email
            text: Message text
            channel: Channel it arrived on; the reply goes back the same way

        Returns:
            {"success", "ai_response", "tool_calls", "auto_sent", "message_count"}
            or {"success": False, "error", "fallback_action"}
        """
        async with self._handle_lock(handle):
            logger.info("Processing message from %s via %s: %r", handle, channel, text)
            ctx = ToolContext(recipient=handle, channel=channel, agent=self)

            self.conversations.add_message(handle, "user", text)
            history = self.conversations.get_conversation(handle).messages

            try:
                reply, tool_calls = await self._run_loop(
                    _history_to_messages(history), self._system_prompt_for(handle), ctx
                )
            except Exception as e:
                logger.exception("Error handling message from %s: %s", handle, e)
                return {
                    "success": False,
                    "error": str(e),
                    "fallback_action": "Could not process message with AI",
                }

            self.conversations.add_message(
                handle, "assistant", reply,
                tool_calls=[{"name": c["name"], "input": c["input"]} for c in tool_calls] or None,
                tool_results=[c["result"] for c in tool_calls] or None,
            )

            skip = bool(ctx.flags.get("skip_response"))
            lines = [] if skip else split_reply(reply)
            auto_sent = await self._send_lines(handle, channel, lines) if lines else False

            return {
                "success": True,
                "ai_response": reply,
                "tool_calls": tool_calls,
                "auto_sent": auto_sent,
                "message_count": len(lines),
            }

    async def _send_lines(self, handle: str, channel: str, lines: list[str]) -> bool:
        sender = self.senders.get(channel)
        if sender is None:
            logger.warning("No sender for channel %s, reply to %s not sent", channel, handle)
            return False

        logger.info("Auto-sending %d message(s) to %s", len(lines), handle)
        for i, line in enumerate(lines):
            if i and self.reply_delay:
                await asyncio.sleep(self.reply_delay)
            try:
                result = await sender.send(handle, line)
            except Exception as e:
                logger.error("Failed to auto-send reply to %s: %s", handle, e)
                return False
            if isinstance(result, dict) and result.get("error"):
                logger.error("Failed to auto-send reply to %s: %s", handle, result["error"])
                return False
        return True

    async def process_conversation(self, handle: str, custom_prompt: str = None) -> dict:
        """Re-run the model over a stored conversation (admin/testing)."""
        logger.info("Manually processing conversation for %s", handle)
        history = self.conversations.get_conversation(handle).messages
        messages = _history_to_messages(history + [{"role": "user", "content": CONVERSATION_REVIEW_PROMPT}])
        ctx = ToolContext(recipient=handle, channel=self.notify_channel, agent=self)

        reply, tool_calls = await self._run_loop(messages, custom_prompt or self._system_prompt_for(handle), ctx)
        return {"success": True, "response": reply, "tool_calls": tool_calls}

    async def process_context(self, context, on_update: Callable = None) -> dict:
        """Turn a structured situation into outbound messages.

        Args:
            context: Situation dict (or string) describing who needs to hear what
            on_update: Optional callback (sync or async) receiving
                {"type": "thinking" | "action" | "action_result" | "error", "message", ...}

        Returns:
            {"success", "reasoning", "tool_calls", "thinking_steps", "actions_executed"}
        """
        async def stream(update: dict):
            if on_update is None:
                return
            result = on_update(update)
            if inspect.isawaitable(result):
                await result

        ctx = ToolContext(recipient=None, channel=self.notify_channel, agent=self)
        try:
            await stream({"type": "thinking", "message": "Building context prompt and preparing AI processing..."})
            prompt = build_context_prompt(context)
            await stream({"type": "thinking", "message": "Sending context to AI for analysis and action planning..."})

            reasoning, tool_calls = await self._run_loop(
                [{"role": "user", "content": prompt}], CONTEXT_PROCESSING_PROMPT, ctx
            )
            await stream({"type": "thinking", "message": f"AI Analysis: {reasoning}"})

            for call in tool_calls:
                await stream({
                    "type": "action",
                    "message": f"Executing {call['name']}: {call['input'].get('reasoning') or 'Processing action...'}",
                })
                ok = _succeeded(call["result"])
                await stream({
                    "type": "action_result",
                    "message": (f"✅ {call['name']} completed successfully" if ok
                                else f"❌ {call['name']} failed: {call['result'].get('error', 'Unknown error')}"),
                    "details": call["result"],
                })
            if not tool_calls:
                await stream({"type": "thinking",
                              "message": "AI analysis completed, but no actions were needed for this context."})
        except Exception as e:
            logger.exception("Error processing context: %s", e)
            await stream({"type": "error", "message": f"Processing failed: {e}"})
            return {"success": False, "error": str(e), "fallback_action": "Could not process context with AI"}

        thinking_steps = [f"Analysis: {reasoning}"] if reasoning else []
        thinking_steps += [
            f"Action {i}: {c['name']} - {c['input'].get('reasoning') or 'Executing action'}"
            for i, c in enumerate(tool_calls, 1)
        ]
        return {
            "success": True,
            "reasoning": reasoning,
            "tool_calls": tool_calls,
            "thinking_steps": thinking_steps,
            "actions_executed": [
                {
                    "action": c["name"],
                    "parameters": c["input"],
                    "result": "success" if _succeeded(c["result"]) else "failed",
                    "details": c["result"],
                }
                for c in tool_calls
            ],
        }

    # -------------------------------------------------------------------------
    # Model loop
    # -------------------------------------------------------------------------

    async def _run_loop(self, messages: list, system: str, ctx: ToolContext) -> tuple[str, list[dict]]:
        """Call the model, run requested tools, repeat until it stops asking.

        At most max_steps model calls. Returns the text of the last
        response plus every tool call as {"name", "input", "result"}.
        """
        messages = list(messages)
        tool_calls = []
        text = ""

        for _ in range(self.max_steps):
            response = await self.client.messages.create(
                model=self.model,
                max_tokens=self.max_tokens,
                system=system,
                tools=self._tool_schemas(),
                messages=messages,
            )
            text = self._extract_text(response)
            messages.append({"role": "assistant", "content": response.content})

            if response.stop_reason != "tool_use":
                return text, tool_calls

            # Every tool_use needs a tool_result, even when the tool fails
            tool_results = []
            for block in response.content:
                if block.type != "tool_use":
                    continue
                result = await self._execute_tool(block.name, block.input, ctx)
                tool_calls.append({"name": block.name, "input": block.input, "result": result})

                try:
                    result_json = json.dumps(result, default=json_serialize)
                except (TypeError, ValueError) as e:
                    result_json = json.dumps({"error": f"Result serialization failed: {e}"})

                tool_results.append({
                    "type": "tool_result",
                    "tool_use_id": block.id,
                    "content": result_json,
                })

            messages.append({"role": "user", "content": tool_results})

        logger.warning("Stopped after %d model calls for %s", self.max_steps, ctx.recipient)
        return text, tool_calls

    async def _execute_tool(self, name: str, params: dict, ctx: ToolContext):
        self.emit("tool_start", {"name": name, "input": params, "recipient": ctx.recipient})
        start_time = time.time()

        try:
            if name not in self.tools:
                result = {"error": f"Tool '{name}' not found"}
            elif inspect.iscoroutinefunction(self.tools[name].fn):
                result = await self.tools[name].fn(params, ctx)
            else:
                # Sync tools: run in thread pool to prevent blocking the event loop
                result = await asyncio.to_thread(self.tools[name].execute, params, ctx)
        except Exception as e:
            logger.exception("Tool %s failed", name)
            result = {"error": f"Tool execution failed: {e}"}

        self.emit("tool_end", {
            "name": name,
            "result": result,
            "duration_ms": int((time.time() - start_time) * 1000),
        })
        return result

    def _tool_schemas(self) -> list:
        return [t.schema for t in self.tools.values()]

    def _extract_text(self, response) -> str:
        return "".join(b.text for b in response.content if getattr(b, "type", None) == "text")

    def _system_prompt_for(self, handle: str) -> str:
        base = (self.system_prompt
                .replace("{name}", self.name)
                .replace("{now}", datetime.now().strftime("%Y-%m-%d %H:%M")))
        return f"""{base}

CURRENT USER CONTEXT:
- You are currently talking to: {handle}
- This is their phone number/handle: {handle}
- Price monitors and purchases you start are for this person"""

    # -------------------------------------------------------------------------
    # Admin
    # -------------------------------------------------------------------------

    def update_system_prompt(self, prompt: str):
        """Replace the base system prompt ({name} and {now} are filled in per message)."""
        self.system_prompt = prompt
        logger.info("Updated system prompt")

    def get_conversation_status(self, handle: str) -> dict:
        conv = self.conversations.get_conversation(handle)
        return {
            "handle": handle,
            "message_count": len(conv.messages),
            "last_activity": conv.last_activity,
            "context": conv.context,
            "recent_messages": conv.messages[-5:],
        }

    def clear_conversation(self, handle: str) -> bool:
        return self.conversations.clear_conversation(handle)

    def get_recent_conversations(self, limit: int = 10) -> list[dict]:
        return self.conversations.get_recent_conversations(limit)

    async def shutdown(self):
        """Stop the price monitor loop and any purchase still in flight."""
        await self.monitor.stop_polling(cancel_purchases=True)


# =============================================================================
# Helpers
# =============================================================================

def split_reply(text: str) -> list[str]:
    """Split a reply into separate texts: one per non-empty line."""
    return [line.strip() for line in (text or "").split("\n") if line.strip()]


def _succeeded(result) -> bool:
    return isinstance(result, dict) and not result.get("error") and result.get("success", True) is not False


def _history_to_messages(history: list[dict]) -> list[dict]:
    """Stored text turns → a valid alternating message list for the API.

    Empty turns are dropped, consecutive same-role turns are merged, and
    the list always starts with a user turn.
    """
    messages = []
    for msg in history:
        role = msg.get("role")
        content = (msg.get("content") or "").strip()
        if role not in ("user", "assistant") or not content:
            continue
        if messages and messages[-1]["role"] == role:
            messages[-1]["content"] += "\n" + content
        else:
            messages.append({"role": role, "content": content})

    while messages and messages[0]["role"] != "user":
        messages.pop(0)
    return messages


def build_context_prompt(context) -> str:
    """Build the instruction for process_context from a situation payload."""
    if isinstance(context, dict) and (
        context.get("situation") == "urgent_notification"
        or context.get("event") in ("investor_call_completed", "market_alert")
    ):
        primary = context.get("primaryContact") or context.get("investor")
        secondary = context.get("secondaryContact") or context.get("partner")
        summary = context.get("message") or context.get("summary")
        transcript = context.get("transcript")
        action_points = context.get("actionPoints")
        if isinstance(action_points, list):
            action_points = ", ".join(str(p) for p in action_points)

        lines = [
            "URGENT: I need you to send messages based on this situation:",
            "",
            f"SITUATION: {context.get('situation') or context.get('event')}",
        ]
        if summary:
            lines.append(f"SUMMARY: {summary}")
        if transcript:
            lines.append(f"CALL TRANSCRIPT: {transcript}")
        if action_points:
            lines.append(f"ACTION POINTS: {action_points}")
        lines += ["", "PEOPLE TO NOTIFY:"]
        if primary:
            lines.append(f"- {primary.get('name')} (Investor) at {primary.get('phone')}")
        if secondary:
            lines.append(f"- {secondary.get('name')} (Partner) at {secondary.get('phone')}")
        lines += ["", "Please send appropriate messages to these people immediately. "
                      "Use send_to_contact for each person."]
        return "\n".join(lines)

    context_str = context if isinstance(context, str) else json.dumps(context, indent=2, default=json_serialize)
    return f"""I need you to take action based on this context:

{context_str}

Please analyze who needs to be messaged and send the appropriate messages using send_to_contact."""
