"""Kind-name to handler lookup table for triggers, conditions and actions."""

from __future__ import annotations

import threading
from enum import Enum
from typing import Any

from ..core.exceptions import HandlerNotFoundError
from ..core.logger import get_logger

logger = get_logger("automation.registry")


class HandlerKind(str, Enum):
    """Handler families that can be registered."""

    TRIGGER = "trigger"
    CONDITION = "condition"
    ACTION = "action"


class TypeRegistry:
    """Registry of handlers keyed by ``(kind, name)``.

    Re-registering a name replaces the previous handler.
    """

    def __init__(self) -> None:
        self._handlers: dict[HandlerKind, dict[str, Any]] = {kind: {} for kind in HandlerKind}
        self._lock = threading.Lock()

    def register(self, kind: HandlerKind | str, name: str, handler: Any) -> None:
        """Register ``handler`` under ``(kind, name)``.

        Args:
            kind: Handler family
            name: Type name as it appears in automation records
            handler: Trigger class, condition predicate or action callable
        """
        kind = HandlerKind(kind)
        with self._lock:
            if name in self._handlers[kind]:
                logger.debug("Replacing %s handler: %s", kind.value, name)
            self._handlers[kind][name] = handler

    def unregister(self, kind: HandlerKind | str, name: str) -> bool:
        kind = HandlerKind(kind)
        with self._lock:
            return self._handlers[kind].pop(name, None) is not None

    def get(self, kind: HandlerKind | str, name: str) -> Any | None:
        """Return the handler for ``(kind, name)`` or None."""
        return self._handlers[HandlerKind(kind)].get(name)

    def lookup(self, kind: HandlerKind | str, name: str) -> Any:
        """Return the handler for ``(kind, name)``.

        Raises:
            HandlerNotFoundError: If nothing is registered under that name
        """
        kind = HandlerKind(kind)
        handler = self._handlers[kind].get(name)
        if handler is None:
            raise HandlerNotFoundError(kind.value, name)
        return handler

    def names(self, kind: HandlerKind | str) -> list[str]:
        return sorted(self._handlers[HandlerKind(kind)])

    def __contains__(self, item: object) -> bool:
        if not isinstance(item, tuple) or len(item) != 2:
            return False
        kind, name = item
        try:
            return name in self._handlers[HandlerKind(kind)]
        except ValueError:
            return False


__all__ = ["HandlerKind", "TypeRegistry"]
