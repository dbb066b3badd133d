"""
Reunite — Event System
In-process side-channel between the matching engine and whatever shows notices to the user.
"""

from __future__ import annotations
import logging
from collections import defaultdict
from typing import Any, Callable

logger = logging.getLogger("reunite.events")

EventHandler = Callable[[str, dict[str, Any]], None]

_handlers: dict[str, list[EventHandler]] = defaultdict(list)

# Event types
ORACLE_UNAVAILABLE = "oracle.unavailable"
ORACLE_MATCHES_FOUND = "oracle.matches_found"
MODEL_PROGRESS = "model.progress"
MODEL_READY = "model.ready"


def on(event: str, handler: EventHandler) -> None:
    """Register a handler for an event type."""
    _handlers[event].append(handler)


def off(event: str, handler: EventHandler) -> bool:
    """Unregister a handler. Returns True if it was registered."""
    try:
        _handlers[event].remove(handler)
    except ValueError:
        return False
    return True


def emit(event: str, data: dict[str, Any] | None = None) -> None:
    """Emit an event to all registered handlers."""
    payload = data or {}
    for handler in list(_handlers.get(event, [])):
        try:
            handler(event, payload)
        except Exception:
            logger.exception("Event handler error for %s", event)


def clear() -> None:
    """Remove all handlers (for testing)."""
    _handlers.clear()
