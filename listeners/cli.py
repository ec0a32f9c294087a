"""
CLI Listener - Chat with the agent from a terminal.

Simple REPL that reads from stdin and sends each line to the agent as if
it were a text from the owner. Replies come back through the CLI sender.
Subscribes to agent and monitor events for verbose output.
"""

import asyncio
import logging
import sys

from price_monitor import format_price
from utils.console import VerboseLevel, console

logger = logging.getLogger(__name__)


def setup_event_handlers(agent):
    """Subscribe to agent and price monitor events for CLI display."""

    @agent.on("tool_start")
    def on_tool_start(event):
        console.tool_start(event["name"], event.get("input"))

    @agent.on("tool_end")
    def on_tool_end(event):
        console.tool_end(event["name"], event.get("result"), event.get("duration_ms"))

    monitor = agent.monitor

    @monitor.on("monitor_started")
    def on_monitor_started(event):
        console.monitor(
            f"watching {event['symbol']} below ${format_price(event['threshold'])} "
            f"for {event['user_handle']} ({event['session_id']})"
        )

    @monitor.on("monitor_triggered")
    def on_monitor_triggered(event):
        console.monitor(
            f"{event['symbol']} hit ${format_price(event['price'])} "
            f"(limit ${format_price(event['threshold'])}), buying for {event['user_handle']}"
        )

    @monitor.on("monitor_removed")
    def on_monitor_removed(event):
        console.monitor(f"session {event['session_id']} removed ({event['reason']})", VerboseLevel.DEEP)

    @monitor.on("purchase_end")
    def on_purchase_end(event):
        if event["status"] == "ok":
            console.purchase(f"session {event['session_id']} purchase completed")
        else:
            console.purchase(f"session {event['session_id']} purchase failed: {event['error']}")


async def run_cli_listener(agent, config: dict = None):
    """Run the CLI listener.

    Args:
        agent: The Agent instance
        config: Optional configuration dict
    """
    config = config or {}
    handle = config.get("owner", {}).get("phone") or "cli"

    setup_event_handlers(agent)

    level = console.get_verbose()
    if level >= VerboseLevel.LIGHT:
        level_name = "light" if level == VerboseLevel.LIGHT else "deep"
        console.system(f"Verbose mode: {level_name} (/verbose off to hide logs)")

    console.banner(agent.name)
    console.system("Ready. Try \"buy this jacket when ETH drops below 2500\". Type 'quit' to exit.\n")

    while True:
        try:
            print(console.user_prompt(), end="", file=sys.stderr, flush=True)
            try:
                user_input = await asyncio.to_thread(input)
            except KeyboardInterrupt:
                print("", file=sys.stderr)
                continue
            user_input = user_input.strip()

            if user_input.lower().startswith("/verbose"):
                _handle_verbose_command(user_input)
                continue

            if user_input.lower() == "/monitors":
                _show_monitors(agent)
                continue

            if user_input.lower() in ("quit", "exit", "q"):
                console.system("Goodbye!")
                break

            if not user_input:
                continue

            result = await agent.handle_incoming_message(handle, user_input, channel="cli")
            if not result.get("success"):
                console.error(f"Error: {result.get('error')}")
            elif not result.get("auto_sent") and result.get("ai_response"):
                # Reply was skipped on purpose; still show it dimmed in deep mode
                console.verbose(f"(not sent) {result['ai_response']}", VerboseLevel.DEEP)

        except EOFError:
            console.system("\nGoodbye!")
            break
        except Exception as e:
            logger.exception("Unexpected error in REPL loop: %s", e)
            console.error(f"Unexpected error: {e}")


def _show_monitors(agent):
    sessions = agent.monitor.list_sessions()
    if not sessions:
        console.system("No active price monitors.")
        return
    for s in sessions:
        last = f"${format_price(s.last_price)}" if s.last_price is not None else "n/a"
        console.system(
            f"{s.session_id}: {s.symbol} < ${format_price(s.threshold)} → {s.product_url} "
            f"[{s.variant}] for {s.user_handle} (last {last})"
        )


def _handle_verbose_command(command: str):
    """Handle /verbose commands for runtime toggle."""
    parts = command.lower().split()

    if len(parts) == 1:
        level = console.get_verbose()
        console.system(f"Verbose level: {level.name.lower()} ({level.value})")
        console.system("Usage: /verbose [off|light|deep]")
        return

    level_str = parts[1]
    if level_str in ("off", "0"):
        console.set_verbose("off")
        console.system("Verbose output: off")
    elif level_str in ("light", "1", "on"):
        console.set_verbose("light")
        console.success("Verbose output: light (key operations)")
    elif level_str in ("deep", "2", "full", "all"):
        console.set_verbose("deep")
        console.success("Verbose output: deep (everything)")
    else:
        console.warning(f"Unknown verbose level: {level_str}")
        console.system("Usage: /verbose [off|light|deep]")
