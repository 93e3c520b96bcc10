"""Custom exceptions for Automation Hub."""

from __future__ import annotations


class AutomationHubError(Exception):
    """Base exception for automation runtime errors."""

    pass


class AutomationNotFoundError(AutomationHubError, KeyError):
    """Raised when an operation references an unknown automation id."""

    def __init__(self, automation_id: str) -> None:
        self.automation_id = automation_id
        super().__init__(f"Automation {automation_id} not found")

    def __str__(self) -> str:
        return self.args[0]


class HandlerNotFoundError(AutomationHubError, LookupError):
    """Raised when no handler is registered for a (kind, name) pair."""

    def __init__(self, kind: str, name: str) -> None:
        self.kind = kind
        self.name = name
        super().__init__(f"Unknown {kind} type: {name}")


class UnknownActionError(HandlerNotFoundError):
    """Raised when an action of an unregistered type is executed."""

    def __init__(self, name: str) -> None:
        super().__init__("action", name)


class ActionExecutionError(AutomationHubError):
    """Raised when a built-in action fails."""

    def __init__(self, message: str, action_type: str, details: dict | None = None) -> None:
        """Initialize the exception.

        Args:
            message: Error message
            action_type: Type of the action that failed
            details: Captured output or response data
        """
        self.action_type = action_type
        self.details = details or {}
        super().__init__(message)


class BindingError(AutomationHubError):
    """Raised when a trigger resource cannot be allocated."""

    def __init__(self, message: str, automation_id: str | None = None) -> None:
        self.automation_id = automation_id
        super().__init__(message)


class AlreadyBoundError(BindingError):
    """Raised when binding an automation that already holds a binding."""

    def __init__(self, automation_id: str) -> None:
        super().__init__(f"Automation {automation_id} is already bound", automation_id)


class InvalidScheduleError(BindingError):
    """Raised when a schedule trigger carries an invalid cron expression."""

    def __init__(self, expression: str, automation_id: str | None = None) -> None:
        self.expression = expression
        super().__init__(f"Invalid cron expression: {expression!r}", automation_id)


class WebhookConflictError(BindingError):
    """Raised when a webhook path is already bound on the requested port."""

    def __init__(self, port: int, path: str, owner: str, automation_id: str | None = None) -> None:
        self.port = port
        self.path = path
        self.owner = owner
        super().__init__(
            f"Webhook path {path} on port {port} is already bound by {owner}",
            automation_id,
        )


__all__ = [
    "AutomationHubError",
    "AutomationNotFoundError",
    "HandlerNotFoundError",
    "UnknownActionError",
    "ActionExecutionError",
    "BindingError",
    "AlreadyBoundError",
    "InvalidScheduleError",
    "WebhookConflictError",
]
