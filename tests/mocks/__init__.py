"""Mock objects for testing."""

from .mock_scheduler import MockJob, MockScheduler
from .mock_sources import AsyncRecordingSource, FailingSource, RecordingSource
from .waiting import wait_for

__all__ = [
    "AsyncRecordingSource",
    "FailingSource",
    "MockJob",
    "MockScheduler",
    "RecordingSource",
    "wait_for",
]
