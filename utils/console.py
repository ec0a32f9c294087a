"""
Console Output Styling for the Flip CLI

Colored, formatted terminal output with verbose levels for showing what
the agent, the price monitor and the purchase flow are doing.

Verbose Levels:
    - OFF (0): Only user/agent messages
    - LIGHT (1): Tool names, monitor triggers, purchase outcomes [default]
    - DEEP (2): Tool inputs/outputs and every monitor tick

Configuration:
    - Environment: FLIP_VERBOSE=0|1|2 or off|light|deep
    - Runtime: console.set_verbose(level) or "/verbose deep" in the CLI
"""

import os
import sys
from enum import IntEnum
from typing import Any


class VerboseLevel(IntEnum):
    """Verbose output levels."""
    OFF = 0
    LIGHT = 1
    DEEP = 2


_LEVEL_NAMES = {
    "0": VerboseLevel.OFF, "off": VerboseLevel.OFF, "none": VerboseLevel.OFF, "false": VerboseLevel.OFF,
    "1": VerboseLevel.LIGHT, "light": VerboseLevel.LIGHT, "on": VerboseLevel.LIGHT, "true": VerboseLevel.LIGHT,
    "2": VerboseLevel.DEEP, "deep": VerboseLevel.DEEP, "full": VerboseLevel.DEEP, "all": VerboseLevel.DEEP,
}


def parse_verbose_level(value: str | int | VerboseLevel) -> VerboseLevel:
    """Parse a verbose level from a string, int, or VerboseLevel.

    Unknown values map to OFF; integers are clamped to 0-2.

    Examples:
        parse_verbose_level("deep") -> VerboseLevel.DEEP
        parse_verbose_level(7) -> VerboseLevel.DEEP
    """
    if isinstance(value, VerboseLevel):
        return value
    if isinstance(value, bool):
        return VerboseLevel.LIGHT if value else VerboseLevel.OFF
    if isinstance(value, int):
        return VerboseLevel(min(max(value, 0), 2))
    return _LEVEL_NAMES.get(str(value).lower().strip(), VerboseLevel.OFF)


class Colors:
    """ANSI escape codes for terminal colors."""
    RESET = "\033[0m"
    BOLD = "\033[1m"
    DIM = "\033[2m"
    RED = "\033[31m"
    GREEN = "\033[32m"
    YELLOW = "\033[33m"
    BLUE = "\033[34m"
    MAGENTA = "\033[35m"
    CYAN = "\033[36m"
    BRIGHT_BLACK = "\033[90m"


def _supports_color() -> bool:
    """Check if the terminal supports color output."""
    if os.environ.get("NO_COLOR") or os.environ.get("FLIP_NO_COLOR"):
        return False
    if os.environ.get("FORCE_COLOR"):
        return True
    if not hasattr(sys.stderr, "isatty") or not sys.stderr.isatty():
        return False
    return os.environ.get("TERM") != "dumb"


class Console:
    """
    Styled console output for the CLI.

    Import and use the module-level `console` instance:

        from utils.console import console
        console.agent("Watching ETH/USD for you.")
        console.monitor("ETH/USD 2400 < 2500, buying")
    """

    # Parameter names whose values are always redacted in verbose output
    _SENSITIVE_KEYS = frozenset({
        "password", "secret", "api_key", "api_secret", "token",
        "access_token", "private_key", "wallet_private_key", "signature",
    })

    def __init__(self):
        self._verbose_level = parse_verbose_level(os.environ.get("FLIP_VERBOSE", "1"))
        self._use_color = _supports_color()

    def set_verbose(self, level: VerboseLevel | int | str):
        """Set verbose level at runtime."""
        self._verbose_level = parse_verbose_level(level)

    def get_verbose(self) -> VerboseLevel:
        return self._verbose_level

    def _colorize(self, text: str, *codes: str) -> str:
        if not self._use_color:
            return text
        return f"{''.join(codes)}{text}{Colors.RESET}"

    def _print(self, text: str):
        print(text, file=sys.stderr, flush=True)

    # -------------------------------------------------------------------------
    # Primary output
    # -------------------------------------------------------------------------

    def banner(self, text: str, width: int = 40):
        self._print(self._colorize(text, Colors.BOLD, Colors.BLUE))
        self._print(self._colorize("=" * width, Colors.DIM, Colors.BLUE))

    def user_prompt(self) -> str:
        return self._colorize("> ", Colors.BOLD, Colors.GREEN)

    def agent(self, text: str, prefix: str = "Flip"):
        styled_prefix = self._colorize(f"{prefix}: ", Colors.BOLD, Colors.CYAN)
        self._print(f"{styled_prefix}{text}\n")

    def system(self, text: str):
        self._print(self._colorize(text, Colors.BLUE))

    def error(self, text: str):
        self._print(self._colorize(f"Error: {text}", Colors.BOLD, Colors.RED))

    def success(self, text: str):
        self._print(self._colorize(text, Colors.GREEN))

    def warning(self, text: str):
        self._print(self._colorize(f"Warning: {text}", Colors.YELLOW))

    # -------------------------------------------------------------------------
    # Verbose output
    # -------------------------------------------------------------------------

    def verbose(self, text: str, level: VerboseLevel = VerboseLevel.LIGHT):
        """Print verbose output if the level is enabled."""
        if self._verbose_level < level:
            return
        if level == VerboseLevel.LIGHT:
            self._print(self._colorize(f"  {text}", Colors.YELLOW))
        else:
            self._print(self._colorize(f"    {text}", Colors.DIM, Colors.BRIGHT_BLACK))

    def tool_start(self, name: str, inputs: dict[str, Any] = None):
        self.verbose(f"[tool] {name}")
        if inputs and self._verbose_level >= VerboseLevel.DEEP:
            self.verbose(f"  input: {self._summarize(self.redact(inputs))}", VerboseLevel.DEEP)

    def tool_end(self, name: str, result: Any = None, duration_ms: int = None):
        timing = f" ({duration_ms}ms)" if duration_ms else ""
        self.verbose(f"[tool] {name} done{timing}")
        if result is not None and self._verbose_level >= VerboseLevel.DEEP:
            self.verbose(f"  result: {self._summarize(self.redact(result))}", VerboseLevel.DEEP)

    def monitor(self, detail: str, level: VerboseLevel = VerboseLevel.LIGHT):
        """Log price monitor activity."""
        self.verbose(self._colorize(f"[monitor] {detail}", Colors.MAGENTA), level)

    def purchase(self, detail: str):
        """Log purchase flow activity."""
        self.verbose(f"[purchase] {detail}")

    def activity(self, channel: str, detail: str):
        """Log channel or webhook activity, e.g. console.activity("sendblue", "inbound from +1555...")."""
        self.verbose(f"[{channel}] {detail}")

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    def redact(self, value: Any) -> Any:
        """Return a copy of value with sensitive dict entries replaced by '***'."""
        if isinstance(value, dict):
            return {
                k: "***" if str(k).lower() in self._SENSITIVE_KEYS else self.redact(v)
                for k, v in value.items()
            }
        if isinstance(value, list):
            return [self.redact(item) for item in value]
        return value

    def _summarize(self, value: Any, max_len: int = 80) -> str:
        text = repr(value) if not isinstance(value, str) else value
        if len(text) > max_len:
            return text[:max_len - 3] + "..."
        return text


# Global console instance
console = Console()
