"""Automation Hub.

A local automation runtime that binds trigger sources to condition/action
pipelines:
- Cron schedules, inbound webhooks, filesystem changes
- Polled email, calendar and system-resource signals
- Pluggable conditions and actions with ``${...}`` templating
- At most one in-flight run per automation

Example:
    ```python
    import asyncio

    from automation_hub import AutomationEngine, HubConfig

    async def main() -> None:
        async with AutomationEngine(HubConfig.from_yaml("hub.yaml")) as engine:
            await engine.run("nightly-backup")

    asyncio.run(main())
    ```
"""

from importlib.metadata import PackageNotFoundError, version

from .automation import AutomationEngine, ExecutionContext
from .core import (
    Automation,
    HubConfig,
    JsonDirectoryStore,
    MemoryAutomationStore,
    get_logger,
    setup_logging,
)
from .scheduler import TaskScheduler

__all__ = [
    "__version__",
    "AutomationEngine",
    "ExecutionContext",
    "Automation",
    "HubConfig",
    "JsonDirectoryStore",
    "MemoryAutomationStore",
    "TaskScheduler",
    "get_logger",
    "setup_logging",
]

try:  # pragma: no cover - best-effort during development
    __version__ = version("automation-hub")
except PackageNotFoundError:  # pragma: no cover
    __version__ = "0.0.0"
