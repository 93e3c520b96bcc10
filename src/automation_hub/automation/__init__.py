"""Automation engine for trigger-driven workflows.

This module provides:
- AutomationEngine: binds triggers and runs automations
- Trigger binders for schedule, webhook, file_change, email, calendar and system
- Condition predicates and action handlers dispatched through a type registry
"""

from .actions import ActionExecutor, render_template, render_value
from .conditions import ConditionEvaluator
from .engine import AutomationEngine, EngineHandle
from .registry import HandlerKind, TypeRegistry
from .triggers import (
    BaseTrigger,
    CalendarTrigger,
    EmailTrigger,
    ExecutionContext,
    FileChangeTrigger,
    PollingTrigger,
    ScheduleTrigger,
    SeenIdCache,
    SystemTrigger,
    TriggerBinder,
    WebhookTrigger,
)
from .webhooks import WebhookListener, WebhookServerPool

__all__ = [
    # Engine
    "AutomationEngine",
    "EngineHandle",
    # Registry
    "HandlerKind",
    "TypeRegistry",
    # Actions / conditions
    "ActionExecutor",
    "ConditionEvaluator",
    "render_template",
    "render_value",
    # Triggers
    "BaseTrigger",
    "CalendarTrigger",
    "EmailTrigger",
    "ExecutionContext",
    "FileChangeTrigger",
    "PollingTrigger",
    "ScheduleTrigger",
    "SeenIdCache",
    "SystemTrigger",
    "TriggerBinder",
    "WebhookTrigger",
    # Webhooks
    "WebhookListener",
    "WebhookServerPool",
]
