"""Scheduler module for cron and interval jobs.

This package provides:
- APScheduler-based task scheduling on the asyncio event loop
- Cron expression validation
"""

from .scheduler import TaskScheduler, is_valid_cron, parse_cron

__all__ = [
    "TaskScheduler",
    "is_valid_cron",
    "parse_cron",
]
