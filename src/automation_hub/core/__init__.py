"""Core modules for Automation Hub.

This package contains the core functionality including:
- Configuration and automation definition models
- Logging utilities
- Exception hierarchy
- Runtime event emitter
- Automation definition stores
"""

from .config import (
    ActionSpec,
    Automation,
    ConditionSpec,
    HubConfig,
    LoggingConfig,
    PollingConfig,
    SchedulerConfig,
    StorageConfig,
    TriggerSpec,
    WebhookServerConfig,
)
from .events import EventEmitter
from .exceptions import (
    ActionExecutionError,
    AlreadyBoundError,
    AutomationHubError,
    AutomationNotFoundError,
    BindingError,
    HandlerNotFoundError,
    InvalidScheduleError,
    UnknownActionError,
    WebhookConflictError,
)
from .logger import get_logger, setup_logging
from .store import AutomationStore, JsonDirectoryStore, MemoryAutomationStore, create_store

__all__ = [
    # Config
    "ActionSpec",
    "Automation",
    "ConditionSpec",
    "HubConfig",
    "LoggingConfig",
    "PollingConfig",
    "SchedulerConfig",
    "StorageConfig",
    "TriggerSpec",
    "WebhookServerConfig",
    # Events
    "EventEmitter",
    # Exceptions
    "ActionExecutionError",
    "AlreadyBoundError",
    "AutomationHubError",
    "AutomationNotFoundError",
    "BindingError",
    "HandlerNotFoundError",
    "InvalidScheduleError",
    "UnknownActionError",
    "WebhookConflictError",
    # Logging
    "get_logger",
    "setup_logging",
    # Stores
    "AutomationStore",
    "JsonDirectoryStore",
    "MemoryAutomationStore",
    "create_store",
]
