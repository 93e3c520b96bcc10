"""Test configuration hooks."""

from __future__ import annotations

import pytest

from automation_hub.automation import AutomationEngine
from automation_hub.core.config import (
    HubConfig,
    PollingConfig,
    SchedulerConfig,
    StorageConfig,
    WebhookServerConfig,
)
from automation_hub.core.store import MemoryAutomationStore
from tests.mocks import MockScheduler


# Configure anyio to only use asyncio backend (skip trio tests)
@pytest.fixture(scope="session")
def anyio_backend():
    """Configure anyio to use only asyncio backend."""
    return "asyncio"


@pytest.fixture
def hub_config(tmp_path) -> HubConfig:
    """Config with an in-memory store, ephemeral webhook port and fast polling."""
    return HubConfig(
        storage=StorageConfig(backend="memory", path=str(tmp_path / "automations")),
        scheduler=SchedulerConfig(timezone="UTC"),
        webhook_server=WebhookServerConfig(host="127.0.0.1", port=0),
        polling=PollingConfig(
            email_interval=0.05,
            calendar_interval=0.05,
            system_interval=0.05,
        ),
    )


@pytest.fixture
def memory_store() -> MemoryAutomationStore:
    return MemoryAutomationStore()


@pytest.fixture
def mock_scheduler() -> MockScheduler:
    return MockScheduler(SchedulerConfig(timezone="UTC"))



@pytest.fixture
async def engine(hub_config, memory_store, mock_scheduler):
    """Engine over a memory store with a recording scheduler; shut down after the test."""
    engine = AutomationEngine(hub_config, store=memory_store, scheduler=mock_scheduler)
    yield engine
    await engine.shutdown()
