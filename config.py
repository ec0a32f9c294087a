"""
Configuration loader for Flip.

Loads configuration from a YAML file with environment variable substitution,
then deep-merges it over the built-in defaults.
"""

import logging
import os
import re
from pathlib import Path

logger = logging.getLogger(__name__)


def load_config(config_path: str = None) -> dict:
    """Load configuration from YAML file.

    Args:
        config_path: Path to config file. Defaults to $FLIP_CONFIG or config.yaml.

    Returns:
        Configuration dict with env vars substituted.
    """
    if config_path is None:
        config_path = os.environ.get("FLIP_CONFIG", "config.yaml")

    path = Path(config_path)
    if not path.exists():
        return _default_config()

    import yaml

    content = _substitute_env_vars(path.read_text())
    config = yaml.safe_load(content) or {}

    return _merge_with_defaults(config)


def _substitute_env_vars(content: str) -> str:
    """Replace ${VAR} and ${VAR:default} with environment values."""

    def replace(match):
        var_expr = match.group(1)
        if ":" in var_expr:
            var_name, default = var_expr.split(":", 1)
        else:
            var_name, default = var_expr, ""
        return os.environ.get(var_name, default)

    return re.sub(r"\$\{([^}]+)\}", replace, content)


def _env_flag(name: str, default: bool) -> bool:
    value = os.environ.get(name)
    if value is None or value == "":
        return default
    return value.strip().lower() not in ("0", "false", "no", "off")


def parse_handle_list(value) -> list[str]:
    """Normalize a whitelist/blacklist value into a list of handles.

    Accepts a comma-separated string, a list, or None.
    """
    if not value:
        return []
    if isinstance(value, str):
        value = value.split(",")
    return [str(item).strip() for item in value if str(item).strip()]


def _default_config() -> dict:
    """Return the default configuration."""
    task_service = os.environ.get("TASK_SERVICE_URL", "http://localhost:8081").rstrip("/")
    price_feed = os.environ.get("PRICE_FEED_URL", "http://localhost:8080").rstrip("/")
    return {
        "owner": {
            "phone": os.environ.get("OWNER_PHONE", ""),
        },
        "agent": {
            "name": os.environ.get("AGENT_NAME", "Flip"),
            "model": os.environ.get("AGENT_MODEL", "claude-sonnet-4-20250514"),
            "max_steps": 10,
            "max_tokens": 1024,
            "reply_delay": 2.0,
            "system_prompt": None,
        },
        "ai": {
            "enabled": _env_flag("AI_ENABLED", True),
            "whitelist": parse_handle_list(os.environ.get("AI_WHITELIST")),
            "blacklist": parse_handle_list(os.environ.get("AI_BLACKLIST")),
            "debug": _env_flag("DEBUG_MODE", False),
        },
        "price_feed": {
            "base_url": price_feed,
            "timeout": 15.0,
        },
        "price_monitor": {
            "poll_interval": 10.0,
            "update_interval": 10,
            "max_session_age_hours": 24,
            "max_consecutive_failures": 360,
        },
        "purchasing": {
            "task_endpoint": f"{task_service}/tasks/create",
            "poll_interval": 1.0,
            "max_attempts": 120,
            "request_timeout": 30.0,
            "wallet_key_env": "WALLET_PRIVATE_KEY",
        },
        "services": {
            "price_url": price_feed,
            "talent_search_url": os.environ.get("TALENT_SEARCH_URL", ""),
            "talent_user_email": os.environ.get("TALENT_USER_EMAIL", ""),
            "product_search_url": os.environ.get("PRODUCT_SEARCH_URL", f"{task_service}/shopify/search"),
            "onramp_url": os.environ.get("COINBASE_ONRAMP_API", f"{task_service}/coinbase/onramp"),
            "topup_redirect_url": os.environ.get("TOPUP_REDIRECT_URL", "https://example.com/success"),
            "rpc_url": os.environ.get("BASE_SEPOLIA_RPC", "https://sepolia.base.org"),
            "scheduling_link": os.environ.get("SCHEDULING_LINK", "https://www.alpha-me.xyz"),
        },
        "notifications": {
            "channel": os.environ.get("NOTIFY_CHANNEL", "imessage"),
        },
        "conversations": {
            "path": os.path.expanduser("~/.flip/conversations.json"),
            "max_messages": 100,
        },
        "channels": {
            "cli": {"enabled": True},
            "imessage": {"enabled": True},
            "sendblue": {
                "enabled": bool(os.environ.get("SENDBLUE_API_KEY")),
            },
        },
    }


def _merge_with_defaults(config: dict) -> dict:
    """Merge user config with defaults."""
    defaults = _default_config()

    def merge(base, override):
        result = base.copy()
        for key, value in override.items():
            if key in result and isinstance(result[key], dict) and isinstance(value, dict):
                result[key] = merge(result[key], value)
            else:
                result[key] = value
        return result

    merged = merge(defaults, config)
    # YAML may give lists, comma strings, or nothing at all
    merged["ai"]["whitelist"] = parse_handle_list(merged["ai"].get("whitelist"))
    merged["ai"]["blacklist"] = parse_handle_list(merged["ai"].get("blacklist"))
    return merged


def get_section(config: dict, name: str) -> dict:
    """Get a top-level config section, or an empty dict."""
    section = config.get(name)
    return section if isinstance(section, dict) else {}


def get_channel_config(config: dict, channel: str) -> dict:
    """Get configuration for a specific channel.

    Args:
        config: Full configuration dict
        channel: Channel name (cli, imessage, sendblue)

    Returns:
        Channel configuration dict, or empty dict if not found.
    """
    return config.get("channels", {}).get(channel, {})


def is_channel_enabled(config: dict, channel: str) -> bool:
    """Check if a channel is enabled."""
    return bool(get_channel_config(config, channel).get("enabled", False))
