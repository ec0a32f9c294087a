"""
Tools Framework

Auto-registration of agent tools using decorators and type hints.

Usage:
    from tools import tool, tool_error, ToolContext

    @tool
    async def check_token_price(symbol: str, ctx: ToolContext) -> dict:
        '''Check the current price of a token.

        Args:
            symbol: Token pair such as ETH/USD
        '''
        return {"price": ...}

The @tool decorator:
- Generates JSON schema from type hints
- Extracts descriptions from docstrings
- Injects the per-message ToolContext as `ctx` (never shown to the model)
- Auto-registers when the module loads
"""

import inspect
import re
import types
import typing
from dataclasses import dataclass, field
from typing import Any, Callable, get_type_hints

_registered_tools = []

# Parameters supplied by the agent, not the model
INJECTED_PARAMS = ("ctx", "self")


@dataclass
class ToolContext:
    """Who a tool call is acting for.

    Passed explicitly to every tool so nothing depends on a global
    "current user".

    Attributes:
        recipient: Handle of the person whose message is being handled
        channel: Channel the message came in on (imessage, sendblue, cli)
        agent: The Agent running the tool loop
        flags: Per-message switches tools can set (skip_response, ...)
    """
    recipient: str | None
    channel: str
    agent: Any = None
    flags: dict = field(default_factory=dict)

    @property
    def sender(self):
        """The Sender for this context's channel, if registered."""
        if self.agent is None:
            return None
        return self.agent.senders.get(self.channel)


def tool_error(error: str, fix: str = None, **extras) -> dict:
    """Build a tool failure result.

    Args:
        error: What went wrong
        fix: Optional hint for how to fix it (shown to the model)
        **extras: Additional fields (status_code, symbol, ...)
    """
    result = {"error": error}
    if fix:
        result["fix"] = fix
    result.update(extras)
    return result


def _python_type_to_json(py_type) -> dict:
    """Convert Python type hints to JSON schema types."""
    type_map = {
        str: {"type": "string"},
        int: {"type": "integer"},
        float: {"type": "number"},
        bool: {"type": "boolean"},
        list: {"type": "array"},
        dict: {"type": "object"},
    }

    # Optional[X] / X | None -> X
    origin = typing.get_origin(py_type)
    if origin in (typing.Union, types.UnionType):
        args = [a for a in typing.get_args(py_type) if a is not type(None)]
        if len(args) == 1:
            return _python_type_to_json(args[0])
        return {"type": "string"}

    # list[str], dict[str, Any], ...
    if origin in type_map:
        return type_map[origin]

    if py_type in type_map:
        return type_map[py_type]

    return {"type": "string"}


def _parse_docstring(docstring: str) -> tuple[str, dict[str, str]]:
    """
    Parse a docstring to extract description and argument descriptions.

    Returns:
        (main_description, {arg_name: arg_description})
    """
    if not docstring:
        return "", {}

    lines = docstring.strip().split("\n")
    description_lines = []
    arg_descriptions = {}

    in_args = False
    current_arg = None

    for line in lines:
        stripped = line.strip()

        if stripped.lower() in ("args:", "arguments:", "parameters:"):
            in_args = True
            continue

        if stripped.lower() in ("returns:", "raises:", "examples:", "example:"):
            in_args = False
            continue

        if in_args:
            # "arg_name: description" or "arg_name (type): description"
            match = re.match(r"(\w+)(?:\s*\([^)]*\))?\s*:\s*(.+)", stripped)
            if match:
                current_arg = match.group(1)
                arg_descriptions[current_arg] = match.group(2).strip()
            elif current_arg and stripped:
                arg_descriptions[current_arg] += " " + stripped
        else:
            if stripped:
                description_lines.append(stripped)

    return " ".join(description_lines), arg_descriptions


def tool(fn: Callable = None, *, name: str = None, description: str = None):
    """
    Decorator to convert a function into a Tool.

    Can be used as:
        @tool
        def my_func(...): ...

    Or with options:
        @tool(name="custom_name", description="Custom description")
        def my_func(...): ...
    """
    def decorator(func: Callable):
        tool_name = name or func.__name__

        doc_desc, arg_descs = _parse_docstring(func.__doc__ or "")
        tool_description = description or doc_desc or f"Tool: {tool_name}"

        hints = get_type_hints(func) if hasattr(func, "__annotations__") else {}
        hints.pop("return", None)

        sig = inspect.signature(func)

        properties = {}
        required = []

        for param_name, param in sig.parameters.items():
            if param_name in INJECTED_PARAMS:
                continue

            prop = _python_type_to_json(hints.get(param_name, str))
            if param_name in arg_descs:
                prop["description"] = arg_descs[param_name]
            properties[param_name] = prop

            if param.default is inspect.Parameter.empty:
                required.append(param_name)

        schema = {
            "type": "object",
            "properties": properties,
        }
        if required:
            schema["required"] = required

        accepted = set(sig.parameters.keys()) - set(INJECTED_PARAMS)
        wants_ctx = "ctx" in sig.parameters

        def _kwargs(params: dict, ctx: ToolContext) -> dict:
            kwargs = {k: v for k, v in (params or {}).items() if k in accepted}
            if wants_ctx:
                kwargs["ctx"] = ctx
            return kwargs

        if inspect.iscoroutinefunction(func):
            async def wrapper(params: dict, ctx: ToolContext):
                return await func(**_kwargs(params, ctx))
        else:
            def wrapper(params: dict, ctx: ToolContext):
                return func(**_kwargs(params, ctx))

        tool_info = {
            "name": tool_name,
            "description": tool_description,
            "parameters": schema,
            "fn": wrapper,
            "original_fn": func,
        }
        _registered_tools.append(tool_info)

        # Return the original function so it can still be called directly
        func._tool_info = tool_info
        return func

    if fn is not None:
        return decorator(fn)
    return decorator


def get_all_tools(tool_class) -> list:
    """
    Get all registered tools as Tool instances.

    Later registrations with the same name replace earlier ones.

    Args:
        tool_class: The Tool class from agent.py
    """
    # Import all tool modules to trigger registration
    from tools import commerce, crypto, messaging  # noqa: F401

    by_name = {}
    for info in _registered_tools:
        by_name[info["name"]] = info

    return [
        tool_class(
            name=info["name"],
            description=info["description"],
            parameters=info["parameters"],
            fn=info["fn"],
        )
        for info in by_name.values()
    ]
