"""Typed lifecycle event bus."""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any

from loom.sessions.types import SessionEvent, SessionEventHandler, SessionEventType

logger = logging.getLogger(__name__)


class SessionEventBus:
    """Fan-out of session events to registered handlers.

    Handlers run synchronously in registration order. A handler that raises
    is logged and skipped; the remaining handlers and the emitting operation
    are unaffected.

    Example:
        bus = SessionEventBus()

        unsubscribe = bus.on(SessionEventType.SESSION_SAVED, show_saved_indicator)
        ...
        unsubscribe()
    """

    def __init__(self) -> None:
        self._handlers: dict[SessionEventType, list[SessionEventHandler]] = {}
        self._any_handlers: list[SessionEventHandler] = []

    def on(
        self, event_type: SessionEventType | str, handler: SessionEventHandler
    ) -> Callable[[], None]:
        """Subscribe to one event type. Returns an unsubscribe callable."""
        handlers = self._handlers.setdefault(SessionEventType(event_type), [])
        handlers.append(handler)

        def unsubscribe() -> None:
            if handler in handlers:
                handlers.remove(handler)

        return unsubscribe

    def on_any(self, handler: SessionEventHandler) -> Callable[[], None]:
        """Subscribe to every event type. Returns an unsubscribe callable."""
        self._any_handlers.append(handler)

        def unsubscribe() -> None:
            if handler in self._any_handlers:
                self._any_handlers.remove(handler)

        return unsubscribe

    def emit(
        self, event_type: SessionEventType, session_id: str, data: Any = None
    ) -> SessionEvent:
        event = SessionEvent(type=event_type, session_id=session_id, data=data)
        handlers = [*self._handlers.get(event_type, []), *self._any_handlers]
        for handler in handlers:
            try:
                handler(event)
            except Exception:
                logger.exception("Session event handler failed for %s", event_type.value)
        return event

    def clear(self) -> None:
        self._handlers.clear()
        self._any_handlers.clear()
