"""Condition evaluation for automation runs.

Conditions are ``(spec, context) -> bool`` predicates registered by kind name.
A list of conditions is AND-ed and short-circuits on the first false result.
"""

from __future__ import annotations

import inspect
from collections.abc import Callable, Iterable, Mapping
from datetime import datetime, time
from fnmatch import fnmatch
from pathlib import PurePath
from typing import Any

from pydantic import BaseModel

from ..core.logger import get_logger
from .registry import HandlerKind, TypeRegistry

logger = get_logger("automation.conditions")

ConditionPredicate = Callable[[dict[str, Any], dict[str, Any]], Any]


def spec_to_dict(spec: BaseModel | Mapping[str, Any]) -> dict[str, Any]:
    """Normalise a condition/action record to a plain dict."""
    if isinstance(spec, BaseModel):
        return spec.model_dump()
    return dict(spec)


class ConditionEvaluator:
    """Evaluates ordered condition lists against an execution context."""

    def __init__(self, registry: TypeRegistry) -> None:
        self.registry = registry

    async def evaluate(
        self,
        conditions: Iterable[BaseModel | Mapping[str, Any]],
        context: dict[str, Any],
    ) -> bool:
        """Return True if every registered condition holds.

        Unregistered condition kinds are skipped with a warning.
        """
        for condition in conditions:
            spec = spec_to_dict(condition)
            kind = spec.get("type", "")
            predicate = self.registry.get(HandlerKind.CONDITION, kind)
            if predicate is None:
                logger.warning("Unknown condition type: %s", kind)
                continue

            met = predicate(spec, context)
            if inspect.isawaitable(met):
                met = await met
            if not met:
                logger.debug("Condition %s not met", kind)
                return False
        return True


# ----------------------------------------------------------------------
# Built-in predicates
# ----------------------------------------------------------------------
def keyword_condition(spec: dict[str, Any], context: dict[str, Any]) -> bool:
    """Substring test of ``value`` against ``context["text"]``.

    ``match`` is ``contains`` (default) or ``not_contains``.
    """
    text = str(context.get("text") or "")
    value = str(spec.get("value") or "")
    found = value in text
    if spec.get("match", "contains") == "not_contains":
        return not found
    return found


def _parse_clock(value: Any) -> time:
    hours, _, minutes = str(value).strip().partition(":")
    return time(int(hours), int(minutes or 0))


def time_range_condition(
    spec: dict[str, Any], context: dict[str, Any], now: datetime | None = None
) -> bool:
    """True when local wall-clock time lies within ``[start, end]``.

    A range whose end is before its start wraps past midnight.
    """
    current = (now or datetime.now()).time().replace(second=0, microsecond=0)
    start = _parse_clock(spec.get("start", "00:00"))
    end = _parse_clock(spec.get("end", "23:59"))
    if start <= end:
        return start <= current <= end
    return current >= start or current <= end


def sender_condition(spec: dict[str, Any], context: dict[str, Any]) -> bool:
    return context.get("sender") == spec.get("value")


def file_pattern_condition(spec: dict[str, Any], context: dict[str, Any]) -> bool:
    """Glob match of ``pattern`` against the changed file's name or full path."""
    pattern = spec.get("pattern") or spec.get("value")
    file_path = context.get("filePath")
    if not pattern or not file_path:
        return False
    return fnmatch(PurePath(str(file_path)).name, pattern) or fnmatch(str(file_path), pattern)


BUILTIN_CONDITIONS: dict[str, ConditionPredicate] = {
    "keyword": keyword_condition,
    "time_range": time_range_condition,
    "sender": sender_condition,
    "file_pattern": file_pattern_condition,
}


__all__ = [
    "BUILTIN_CONDITIONS",
    "ConditionEvaluator",
    "file_pattern_condition",
    "keyword_condition",
    "sender_condition",
    "spec_to_dict",
    "time_range_condition",
]
