"""
Flip - Texting agent with price-triggered purchases

Entry point for the agent.

Usage:
    python main.py              # Chat from the terminal (default)
    python main.py serve        # Run API server only
    python main.py serve 8080   # Run on custom port
    python main.py all          # API server + terminal chat, one shared agent
    python main.py all 8080     # Same, on custom port

Channels:
    - CLI: Terminal chat; replies and notifications print to the terminal
    - iMessage: Replies and notifications via Messages.app (macOS)
    - SendBlue: SMS/iMessage via SendBlue webhooks ('serve' or 'all' mode)

Configuration:
    Set options in config.yaml (or $FLIP_CONFIG) or via environment variables.
    See config.yaml for all available options.

Verbose Output:
    Control with FLIP_VERBOSE or `verbose:` in config.yaml:
    - 0/off: No verbose output (default)
    - 1/light: Tool calls, monitor and purchase activity
    - 2/deep: Everything (inputs, outputs, full details)

    Runtime toggle: /verbose [off|light|deep]
"""

import asyncio
import logging
import os
import sys

from utils.console import console

# Configure logging with immediate stderr output
handler = logging.StreamHandler(sys.stderr)
handler.setLevel(logging.DEBUG)
handler.setFormatter(logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s"))

# Suppress noisy library loggers
logging.getLogger("httpx").setLevel(logging.WARNING)
logging.root.addHandler(handler)
logging.root.setLevel(
    logging.DEBUG if os.environ.get("DEBUG_MODE", "").lower() in ("1", "true", "yes") else logging.INFO
)
logger = logging.getLogger(__name__)

USAGE = "Usage: python main.py [cli|serve [port]|all [port]]"


def main():
    """Main entry point."""
    command = sys.argv[1] if len(sys.argv) > 1 else "cli"
    port = int(sys.argv[2]) if len(sys.argv) > 2 else 8000

    if command == "serve":
        import uvicorn
        from server import app
        uvicorn.run(app, host="0.0.0.0", port=port)

    elif command == "all":
        asyncio.run(run_all_with_server(port))

    elif command == "cli":
        asyncio.run(run_cli_only())

    else:
        console.error(f"Unknown command: {command}")
        console.system(USAGE)
        sys.exit(1)


def _apply_verbose(config: dict):
    """Config verbose level, unless FLIP_VERBOSE already set it."""
    if not os.environ.get("FLIP_VERBOSE"):
        console.set_verbose(config.get("verbose", "off"))


async def run_cli_only():
    """Chat with the agent from the terminal."""
    from agent import Agent
    from config import get_channel_config, load_config
    from listeners.cli import run_cli_listener

    config = load_config()
    _apply_verbose(config)

    agent = Agent(config=config)
    _register_senders(agent, config)

    # Nowhere else to deliver price alerts when running locally
    if agent.notify_channel not in agent.senders:
        logger.info("Notification channel %s unavailable, sending notifications to the terminal",
                    agent.notify_channel)
        agent.notifier.channel = "cli"

    try:
        await run_cli_listener(agent, {**get_channel_config(config, "cli"), "owner": config.get("owner", {})})
    except KeyboardInterrupt:
        console.system("\nGoodbye!")
    finally:
        await agent.shutdown()


async def run_all_with_server(port: int = 8000):
    """Run API server + terminal chat together.

    The server and the CLI share the server's agent, so monitors started
    from either side show up in both.
    """
    import uvicorn
    from config import get_channel_config, is_channel_enabled, load_config

    # Import server module - this creates the shared agent
    from server import agent, app

    config = load_config()
    _apply_verbose(config)
    _register_senders(agent, config)

    tasks = []

    if is_channel_enabled(config, "cli"):
        from listeners.cli import run_cli_listener
        tasks.append(run_cli_listener(agent, {**get_channel_config(config, "cli"), "owner": config.get("owner", {})}))
        logger.info("CLI listener enabled")

    if is_channel_enabled(config, "sendblue"):
        if os.environ.get("SENDBLUE_API_KEY") and os.environ.get("SENDBLUE_API_SECRET"):
            logger.info("SendBlue enabled via webhook at /webhooks/sendblue")
        else:
            logger.warning("SendBlue enabled but API keys not set")

    server = uvicorn.Server(uvicorn.Config(app, host="0.0.0.0", port=port, log_level="info"))
    tasks.append(server.serve())

    console.system(f"\nChannels: {', '.join(agent.senders)}")
    console.system(f"API server: http://0.0.0.0:{port}")
    console.system(f"SendBlue webhook: http://0.0.0.0:{port}/webhooks/sendblue")
    console.system("Press Ctrl+C to stop\n")

    try:
        await asyncio.gather(*tasks)
    except KeyboardInterrupt:
        logger.info("Shutting down...")
    finally:
        await agent.shutdown()


def _register_senders(agent, config):
    """Register senders for enabled channels."""
    from config import get_channel_config, is_channel_enabled

    # CLI sender (always available)
    from senders.cli import CLISender
    agent.register_sender("cli", CLISender(prefix=agent.name))

    if is_channel_enabled(config, "imessage") and sys.platform == "darwin":
        from senders.imessage import IMessageSender
        agent.register_sender("imessage", IMessageSender(get_channel_config(config, "imessage")))
        logger.info("iMessage sender registered")

    if is_channel_enabled(config, "sendblue"):
        if os.environ.get("SENDBLUE_API_KEY") and os.environ.get("SENDBLUE_API_SECRET"):
            from senders.sendblue import SendBlueSender
            agent.register_sender("sendblue", SendBlueSender(get_channel_config(config, "sendblue")))
            logger.info("SendBlue sender registered")


if __name__ == "__main__":
    main()
