"""Per-engine runtime event emitter."""

from __future__ import annotations

import asyncio
import inspect
from collections.abc import Callable
from typing import Any

from .logger import get_logger

logger = get_logger("events")

EventListener = Callable[[dict[str, Any]], Any]


class EventEmitter:
    """Fire-and-forget event fan-out.

    Listeners may be plain callables or coroutine functions. Coroutine results
    are scheduled on the running loop and not awaited. A failing listener is
    logged and never affects the emitter or other listeners.
    """

    def __init__(self) -> None:
        self._listeners: dict[str, list[EventListener]] = {}
        self._pending: set[asyncio.Task[Any]] = set()

    def on(self, event: str, listener: EventListener) -> None:
        """Subscribe ``listener`` to ``event``."""
        self._listeners.setdefault(event, []).append(listener)

    def off(self, event: str, listener: EventListener) -> bool:
        """Unsubscribe ``listener``; returns False if it was not subscribed."""
        listeners = self._listeners.get(event, [])
        if listener in listeners:
            listeners.remove(listener)
            return True
        return False

    def listeners(self, event: str) -> list[EventListener]:
        return list(self._listeners.get(event, []))

    def emit(self, event: str, payload: dict[str, Any]) -> None:
        for listener in self.listeners(event):
            try:
                outcome = listener(payload)
            except Exception as exc:
                logger.error("Listener for '%s' failed: %s", event, exc, exc_info=True)
                continue
            if inspect.isawaitable(outcome):
                task = asyncio.ensure_future(outcome)
                self._pending.add(task)
                task.add_done_callback(self._on_listener_done(event))

    def _on_listener_done(self, event: str) -> Callable[[asyncio.Task[Any]], None]:
        def _done(task: asyncio.Task[Any]) -> None:
            self._pending.discard(task)
            if task.cancelled():
                return
            exc = task.exception()
            if exc is not None:
                logger.error("Async listener for '%s' failed: %s", event, exc, exc_info=exc)

        return _done
