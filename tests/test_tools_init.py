"""
Unit tests for tools/__init__.py

Tests cover:
- @tool decorator (both @tool and @tool(...) syntax)
- Schema generation from type hints (including Optional and generics)
- Docstring parsing for descriptions and argument docs
- ToolContext injection (ctx never appears in the schema)
- tool_error helper
- get_all_tools registration of the built-in tool modules
"""

import asyncio
from typing import Optional

import pytest

from tools import (
    ToolContext,
    _parse_docstring,
    _python_type_to_json,
    _registered_tools,
    get_all_tools,
    tool,
    tool_error,
)


# =============================================================================
# Type Conversion Tests
# =============================================================================


class TestPythonTypeToJson:
    @pytest.mark.parametrize("py_type,expected", [
        (str, "string"),
        (int, "integer"),
        (float, "number"),
        (bool, "boolean"),
        (list, "array"),
        (dict, "object"),
        (bytes, "string"),
        (list[str], "array"),
        (dict[str, int], "object"),
        (Optional[int], "integer"),
        (float | None, "number"),
        (int | str, "string"),
    ])
    def test_conversion(self, py_type, expected):
        assert _python_type_to_json(py_type) == {"type": expected}


# =============================================================================
# Docstring Parsing Tests
# =============================================================================


class TestParseDocstring:
    def test_simple_description(self):
        desc, args = _parse_docstring("Check the current price of a token.")
        assert desc == "Check the current price of a token."
        assert args == {}

    def test_with_args_section(self):
        docstring = """Watch a token price.

        Args:
            symbol: Token pair to watch
            threshold: Price in USD
        """
        desc, args = _parse_docstring(docstring)
        assert desc == "Watch a token price."
        assert args == {"symbol": "Token pair to watch", "threshold": "Price in USD"}

    def test_multiline_arg_description(self):
        docstring = """Tool.

        Args:
            threshold: Price in USD. The purchase triggers
                when the price drops BELOW this.
        """
        _, args = _parse_docstring(docstring)
        assert args["threshold"].endswith("drops BELOW this.")

    def test_returns_section_ends_args(self):
        docstring = """Tool.

        Args:
            query: Search query
        Returns:
            Dict with results
        """
        _, args = _parse_docstring(docstring)
        assert list(args) == ["query"]

    def test_arg_with_type_annotation(self):
        _, args = _parse_docstring("Tool.\n\nArgs:\n    query (str): The search query\n")
        assert args["query"] == "The search query"

    def test_empty(self):
        assert _parse_docstring("") == ("", {})
        assert _parse_docstring(None) == ("", {})


# =============================================================================
# @tool Decorator Tests
# =============================================================================


class TestToolDecorator:
    """Registration is global, so each test restores the registry afterwards."""

    def setup_method(self):
        self._saved = list(_registered_tools)
        _registered_tools.clear()

    def teardown_method(self):
        _registered_tools.clear()
        _registered_tools.extend(self._saved)

    def test_bare_decorator(self):
        @tool
        def lookup(query: str) -> dict:
            """Look something up."""
            return {}

        info = _registered_tools[0]
        assert info["name"] == "lookup"
        assert info["description"] == "Look something up."

    def test_decorator_with_options(self):
        @tool(name="custom", description="Custom description")
        def lookup(query: str) -> dict:
            """Original docstring."""
            return {}

        info = _registered_tools[0]
        assert info["name"] == "custom"
        assert info["description"] == "Custom description"

    def test_schema(self):
        @tool
        def watch(symbol: str, threshold: float, ctx: ToolContext, size: str = "Any") -> dict:
            """Watch a price.

            Args:
                symbol: Token pair
                threshold: Limit in USD
            """
            return {}

        schema = _registered_tools[0]["parameters"]
        assert schema["type"] == "object"
        assert set(schema["properties"]) == {"symbol", "threshold", "size"}
        assert schema["properties"]["threshold"] == {"type": "number", "description": "Limit in USD"}
        assert schema["required"] == ["symbol", "threshold"]

    def test_no_required_key_when_all_optional(self):
        @tool
        def lister(ctx: ToolContext, limit: int = 10) -> dict:
            """List."""
            return {}

        assert "required" not in _registered_tools[0]["parameters"]

    def test_self_excluded(self):
        @tool
        def method(self, query: str) -> dict:
            """A tool."""
            return {}

        assert "self" not in _registered_tools[0]["parameters"]["properties"]

    def test_sync_wrapper_injects_ctx(self):
        @tool
        def whoami(ctx: ToolContext) -> dict:
            """Who am I talking to."""
            return {"recipient": ctx.recipient}

        ctx = ToolContext(recipient="+1555", channel="cli")
        assert _registered_tools[0]["fn"]({}, ctx) == {"recipient": "+1555"}

    def test_async_wrapper(self):
        @tool
        async def echo(query: str) -> dict:
            """Echo."""
            return {"query": query}

        fn = _registered_tools[0]["fn"]
        result = asyncio.run(fn({"query": "eth"}, ToolContext(recipient=None, channel="cli")))
        assert result == {"query": "eth"}

    def test_wrapper_ignores_unknown_params_and_model_supplied_ctx(self):
        @tool
        def echo(query: str, ctx: ToolContext) -> dict:
            """Echo."""
            return {"query": query, "ctx": ctx}

        ctx = ToolContext(recipient="+1555", channel="cli")
        result = _registered_tools[0]["fn"]({"query": "x", "extra": 1, "ctx": "spoofed"}, ctx)
        assert result == {"query": "x", "ctx": ctx}

    def test_original_function_still_callable(self):
        @tool
        def direct(query: str) -> dict:
            """A tool."""
            return {"query": query}

        assert direct("hi") == {"query": "hi"}
        assert direct._tool_info["name"] == "direct"

    def test_no_docstring_fallback(self):
        @tool
        def no_doc(x: str) -> dict:
            return {}

        assert _registered_tools[0]["description"] == "Tool: no_doc"


# =============================================================================
# ToolContext / tool_error
# =============================================================================


class TestToolContext:
    def test_sender_lookup(self):
        class Agent:
            senders = {"sendblue": "sb"}

        assert ToolContext("+1", "sendblue", Agent()).sender == "sb"
        assert ToolContext("+1", "imessage", Agent()).sender is None
        assert ToolContext("+1", "cli").sender is None

    def test_flags_are_per_context(self):
        a = ToolContext("+1", "cli")
        b = ToolContext("+1", "cli")
        a.flags["skip_response"] = True
        assert b.flags == {}


class TestToolError:
    def test_basic_error(self):
        assert tool_error("Something went wrong") == {"error": "Something went wrong"}

    def test_error_with_fix(self):
        result = tool_error("Wallet not configured", fix="Set WALLET_PRIVATE_KEY")
        assert result == {"error": "Wallet not configured", "fix": "Set WALLET_PRIVATE_KEY"}

    def test_error_with_extras(self):
        result = tool_error("Not found", status_code=404, symbol="ETH/USD")
        assert result["status_code"] == 404
        assert result["symbol"] == "ETH/USD"


# =============================================================================
# Built-in Tools
# =============================================================================


class TestGetAllTools:
    def test_builtin_tools_registered(self):
        class Tool:
            def __init__(self, name, description, parameters, fn):
                self.name = name
                self.parameters = parameters

        names = {t.name for t in get_all_tools(Tool)}
        for expected in (
            "check_token_price", "monitor_token_and_buy", "list_price_monitors", "cancel_price_monitor",
            "check_wallet_balance", "top_up_account",
            "send_message", "send_to_contact", "create_group_chat", "send_link",
            "get_conversation_history", "skip_response", "wait_for_more_input",
            "analyze_message", "search_talent",
            "search_products", "purchase_product", "book_ride", "pay_for_service",
        ):
            assert expected in names

    def test_names_are_unique(self):
        class Tool:
            def __init__(self, name, description, parameters, fn):
                self.name = name

        names = [t.name for t in get_all_tools(Tool)]
        assert len(names) == len(set(names))

    def test_ctx_never_in_schema(self):
        class Tool:
            def __init__(self, name, description, parameters, fn):
                self.parameters = parameters

        for t in get_all_tools(Tool):
            assert "ctx" not in t.parameters["properties"]
