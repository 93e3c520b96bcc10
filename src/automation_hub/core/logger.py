"""Logging utilities for Automation Hub.

This module provides centralized logging configuration with support for:
- Rich console output
- Optional rotating log file
- Named loggers under the ``automation_hub`` namespace
"""

from __future__ import annotations

import logging
from contextlib import suppress
from logging.handlers import RotatingFileHandler
from pathlib import Path

from rich.console import Console
from rich.logging import RichHandler

from .config import LoggingConfig

ROOT_LOGGER_NAME = "automation_hub"

# Global logger registry
_loggers: dict[str, logging.Logger] = {}
_current_level: int = logging.INFO

console = Console(stderr=True)


def setup_logging(config: LoggingConfig | None = None) -> None:
    """Setup logging configuration for the entire application.

    Args:
        config: LoggingConfig instance. If None, uses defaults.
    """
    global _current_level

    if config is None:
        config = LoggingConfig()

    level_value = getattr(logging, config.level)

    hub_root = logging.getLogger(ROOT_LOGGER_NAME)
    for handler in list(hub_root.handlers):
        with suppress(Exception):
            handler.flush()
        with suppress(Exception):
            handler.close()
    hub_root.handlers.clear()
    hub_root.setLevel(level_value)
    hub_root.propagate = False

    console_handler = RichHandler(
        console=console,
        show_time=True,
        show_path=False,
        markup=False,
        rich_tracebacks=True,
    )
    console_handler.setLevel(level_value)
    hub_root.addHandler(console_handler)

    if config.log_file:
        log_path = Path(config.log_file).expanduser()
        log_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            log_path,
            maxBytes=config.max_bytes,
            backupCount=config.backup_count,
            encoding="utf-8",
            delay=True,
        )
        file_handler.setLevel(level_value)
        file_handler.setFormatter(logging.Formatter(config.format))
        hub_root.addHandler(file_handler)

    _current_level = level_value

    # Ensure already-created named loggers align with current level
    for lg in _loggers.values():
        lg.setLevel(level_value)

    logger = get_logger("setup")
    logger.info("Logging configured: level=%s", config.level)
    if config.log_file:
        logger.info("Log file: %s", config.log_file)


def get_logger(name: str) -> logging.Logger:
    """Get or create a logger with the given name.

    Args:
        name: Logger name (typically the dotted component name)

    Returns:
        Logger instance
    """
    if name not in _loggers:
        logger = logging.getLogger(f"{ROOT_LOGGER_NAME}.{name}")
        logger.setLevel(_current_level)
        _loggers[name] = logger

    return _loggers[name]
