"""
Event System for Flip

Small synchronous event emitter shared by the agent and the price monitor,
so output handlers (CLI, logging, WebSocket streams) can observe what is
happening without the core knowing about them.

Events:
    Agent events:
        - tool_start: Tool execution starting
        - tool_end: Tool execution completed

    Monitor events:
        - monitor_started: A price watch was registered
        - monitor_triggered: A watched price crossed below its threshold
        - monitor_removed: A session left the registry (with a reason)
        - purchase_end: A dispatched purchase finished (ok or error)

Usage:
    registry.on("monitor_triggered", lambda e: print(e["symbol"], e["price"]))

    @agent.on("tool_start")
    def show(e):
        print(f"Running {e['name']}...")
"""

import logging
from typing import Any, Callable

logger = logging.getLogger(__name__)

Handler = Callable[[dict[str, Any]], None]


class EventEmitter:
    """
    Mixin that provides event emission and subscription.

    Supports several subscribers per event plus "*" wildcard subscribers.
    """

    def __init_events__(self):
        """Initialize event storage. Call this in your __init__ if using as mixin."""
        if not hasattr(self, "_event_handlers"):
            self._event_handlers: dict[str, list[Handler]] = {}

    def on(self, event: str, handler: Handler = None) -> Callable:
        """
        Subscribe to an event.

        Args:
            event: Event name (e.g., "monitor_triggered") or "*" for all events
            handler: Callback receiving the event data dict. Omit to use as a decorator.

        Returns:
            The handler, or a decorator if handler is None
        """
        self.__init_events__()
        handlers = self._event_handlers.setdefault(event, [])

        if handler is None:
            def decorator(fn: Handler) -> Handler:
                handlers.append(fn)
                return fn
            return decorator

        handlers.append(handler)
        return handler

    def off(self, event: str, handler: Handler = None):
        """Unsubscribe one handler, or every handler when handler is None."""
        self.__init_events__()
        if event not in self._event_handlers:
            return
        if handler is None:
            self._event_handlers[event] = []
        else:
            self._event_handlers[event] = [h for h in self._event_handlers[event] if h != handler]

    def emit(self, event: str, data: dict[str, Any] = None):
        """
        Emit an event to all subscribers.

        Delivery is synchronous. A failing handler is logged and skipped so
        observers can never break the emitter.
        """
        self.__init_events__()
        data = dict(data or {})
        data["_event"] = event

        for handler in self._event_handlers.get(event, []) + self._event_handlers.get("*", []):
            try:
                handler(data)
            except Exception:
                logger.debug("Event handler for %s failed", event, exc_info=True)

    def once(self, event: str, handler: Handler) -> Handler:
        """Subscribe for a single emission only."""
        def wrapper(data):
            self.off(event, wrapper)
            handler(data)

        return self.on(event, wrapper)
