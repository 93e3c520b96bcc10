"""Configuration management for Automation Hub.

This module provides configuration models and loading functionality using Pydantic
for validation and type safety. It covers two families of models:

- Runtime settings (``HubConfig`` and its sections) loaded from YAML/JSON/env
- Automation definition records (``Automation`` and the trigger/condition/action
  specs) exchanged with the automation store
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Literal

import yaml
from dotenv import load_dotenv
from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

_DOTENV_LOADED = False

DEFAULT_FILE_EVENTS = ["modify", "add", "delete"]
DEFAULT_FILE_IGNORE = ["*/node_modules/*", "*/.git/*", "*/__pycache__/*", "*/.venv/*"]


def _load_env_once() -> None:
    """Load environment variables from a .env file exactly once."""

    global _DOTENV_LOADED
    if not _DOTENV_LOADED:
        load_dotenv()
        _DOTENV_LOADED = True


def _expand_env_vars(data: Any) -> Any:
    """Recursively expand environment variables in configuration data."""

    if isinstance(data, str):
        return os.path.expandvars(data)
    if isinstance(data, dict):
        return {key: _expand_env_vars(value) for key, value in data.items()}
    if isinstance(data, list):
        return [_expand_env_vars(item) for item in data]
    return data


# ----------------------------------------------------------------------
# Runtime settings
# ----------------------------------------------------------------------
class StorageConfig(BaseModel):
    """Where automation definitions are read from and written to."""

    backend: Literal["json", "memory"] = Field(
        default="json", description="Automation store backend"
    )
    path: str = Field(
        default="~/.automation-hub/automations",
        description="Directory holding one <id>.json file per automation",
    )


class SchedulerConfig(BaseModel):
    """Configuration for the APScheduler job scheduler."""

    enabled: bool = Field(default=True, description="Enable scheduler")
    timezone: str | None = Field(
        default=None, description="Timezone for cron jobs (local timezone when unset)"
    )
    coalesce: bool = Field(default=True, description="Combine missed job runs")
    misfire_grace_time: int = Field(default=60, description="Grace time for missed jobs (seconds)")


class WebhookServerConfig(BaseModel):
    """Defaults for webhook trigger listeners."""

    host: str = Field(default="127.0.0.1", description="Bind host")
    port: int = Field(default=18800, ge=0, le=65535, description="Default bind port")
    log_level: str = Field(default="warning", description="uvicorn log level")


class PollingConfig(BaseModel):
    """Defaults for polling trigger loops."""

    email_interval: float = Field(default=60.0, gt=0, description="Email poll interval (seconds)")
    calendar_interval: float = Field(
        default=300.0, gt=0, description="Calendar poll interval (seconds)"
    )
    system_interval: float = Field(
        default=60.0, gt=0, description="System metrics sample interval (seconds)"
    )
    dedup_max_size: int = Field(
        default=1000, ge=1, description="Maximum remembered email ids per trigger"
    )
    dedup_window: float = Field(
        default=86400.0, gt=0, description="Seconds an email id is remembered"
    )


class LoggingConfig(BaseModel):
    """Configuration for logging."""

    level: str = Field(default="INFO", description="Log level")
    format: str = Field(
        default="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        description="Log format",
    )
    log_file: str | None = Field(default=None, description="Log file path")
    max_bytes: int = Field(default=10485760, description="Max log file size (10MB)")
    backup_count: int = Field(default=5, description="Number of backup files")

    @field_validator("level")
    @classmethod
    def normalise_level(cls, value: str) -> str:
        level = (value or "INFO").strip().upper()
        if level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"Unsupported log level: {value}")
        return level


class HubConfig(BaseSettings):
    """Main configuration for the automation runtime."""

    model_config = SettingsConfigDict(
        env_prefix="AUTOMATION_HUB_",
        env_nested_delimiter="__",
        case_sensitive=False,
        env_file=".env",
        env_file_encoding="utf-8",
    )

    storage: StorageConfig = Field(
        default_factory=StorageConfig, description="Automation store configuration"
    )
    scheduler: SchedulerConfig = Field(
        default_factory=SchedulerConfig, description="Scheduler configuration"
    )
    webhook_server: WebhookServerConfig = Field(
        default_factory=WebhookServerConfig, description="Webhook listener defaults"
    )
    polling: PollingConfig = Field(
        default_factory=PollingConfig, description="Polling trigger defaults"
    )
    logging: LoggingConfig = Field(
        default_factory=LoggingConfig, description="Logging configuration"
    )

    @classmethod
    def from_yaml(cls, path: str | Path) -> HubConfig:
        """Load configuration from a YAML file."""

        _load_env_once()
        config_path = Path(path)
        if not config_path.exists():
            raise FileNotFoundError(f"Configuration file not found: {config_path}")

        with open(config_path, encoding="utf-8") as handle:
            try:
                config_data = yaml.safe_load(handle)
            except yaml.YAMLError as exc:
                raise ValueError(f"Invalid YAML in config file: {exc}") from exc

        if not config_data:
            config_data = {}

        config_data = _expand_env_vars(config_data)
        return cls(**config_data)

    @classmethod
    def from_json(cls, path: str | Path) -> HubConfig:
        """Load configuration from a JSON file."""

        import json

        _load_env_once()
        config_path = Path(path)
        if not config_path.exists():
            raise FileNotFoundError(f"Configuration file not found: {config_path}")

        with open(config_path, encoding="utf-8") as handle:
            try:
                config_data = json.load(handle)
            except json.JSONDecodeError as exc:
                raise ValueError(f"Invalid JSON in config file: {exc}") from exc

        config_data = _expand_env_vars(config_data)
        return cls(**config_data)

    def to_dict(self) -> dict[str, Any]:
        """Convert configuration to dictionary."""

        return self.model_dump()


# ----------------------------------------------------------------------
# Automation definition records
# ----------------------------------------------------------------------
class TriggerSpec(BaseModel):
    """Tagged trigger record; kind-specific fields are kept as extras."""

    model_config = ConfigDict(extra="allow")

    type: str = Field(..., description="Trigger kind")


class ConditionSpec(BaseModel):
    """Tagged condition record."""

    model_config = ConfigDict(extra="allow")

    type: str = Field(..., description="Condition kind")


class ActionSpec(BaseModel):
    """Tagged action record."""

    model_config = ConfigDict(extra="allow")

    type: str = Field(..., description="Action kind")


class Automation(BaseModel):
    """An automation definition: one trigger, a condition list and an action list."""

    model_config = ConfigDict(extra="allow")

    id: str = Field(..., min_length=1, description="Unique automation identifier")
    name: str = Field(default="", description="Human-readable name")
    enabled: bool = Field(default=False, description="Whether the trigger is bound")
    description: str | None = Field(default=None, description="Optional description")
    trigger: TriggerSpec = Field(..., description="Trigger record")
    conditions: list[ConditionSpec] = Field(default_factory=list, description="AND-ed conditions")
    actions: list[ActionSpec] = Field(default_factory=list, description="Sequential actions")

    @field_validator("id")
    @classmethod
    def validate_id(cls, value: str) -> str:
        # Ids double as store file names.
        if "/" in value or "\\" in value or ".." in value:
            raise ValueError(f"Automation id must not contain '/', '\\' or '..': {value!r}")
        return value

    def to_record(self) -> dict[str, Any]:
        """Serialise to the JSON shape exchanged with the store."""
        return self.model_dump(mode="json", exclude_none=True)


# Typed views over TriggerSpec, validated when a trigger is bound.
class ScheduleTriggerConfig(BaseModel):
    """Cron schedule trigger."""

    model_config = ConfigDict(extra="allow")

    type: Literal["schedule"] = "schedule"
    cron: str = Field(..., description="Five-field crontab expression")
    timezone: str | None = Field(default=None, description="Timezone override")


class WebhookTriggerConfig(BaseModel):
    """Inbound HTTP webhook trigger."""

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    type: Literal["webhook"] = "webhook"
    path: str = Field(
        ...,
        validation_alias=AliasChoices("path", "endpoint"),
        description="Exact request path to dispatch",
    )
    port: int | None = Field(default=None, ge=0, le=65535, description="Listener port")
    host: str | None = Field(default=None, description="Listener bind host")

    @field_validator("path")
    @classmethod
    def normalise_path(cls, value: str) -> str:
        value = (value or "").strip()
        if not value:
            raise ValueError("Webhook path must not be empty")
        return value if value.startswith("/") else f"/{value}"


class FileChangeTriggerConfig(BaseModel):
    """Filesystem watch trigger."""

    model_config = ConfigDict(extra="allow")

    type: Literal["file_change"] = "file_change"
    path: str = Field(..., description="File or directory to watch")
    events: list[Literal["modify", "add", "delete"]] = Field(
        default_factory=lambda: list(DEFAULT_FILE_EVENTS),
        description="Event subset to fire on",
    )
    ignore: list[str] = Field(
        default_factory=lambda: list(DEFAULT_FILE_IGNORE),
        description="Glob patterns of paths to ignore",
    )
    recursive: bool = Field(default=True, description="Watch subdirectories")


class EmailTriggerConfig(BaseModel):
    """Polled email trigger."""

    model_config = ConfigDict(extra="allow")

    type: Literal["email"] = "email"
    interval: float | None = Field(default=None, gt=0, description="Poll interval (seconds)")
    source: str = Field(default="email", description="Registered check source name")


class CalendarTriggerConfig(BaseModel):
    """Polled calendar trigger."""

    model_config = ConfigDict(extra="allow")

    type: Literal["calendar"] = "calendar"
    interval: float | None = Field(default=None, gt=0, description="Poll interval (seconds)")
    source: str = Field(default="calendar", description="Registered check source name")


class SystemTriggerConfig(BaseModel):
    """Polled system resource trigger."""

    model_config = ConfigDict(extra="allow")

    type: Literal["system"] = "system"
    interval: float | None = Field(default=None, gt=0, description="Sample interval (seconds)")
    cpu_threshold: float | None = Field(default=None, ge=0, le=100)
    memory_threshold: float | None = Field(default=None, ge=0, le=100)
    disk_threshold: float | None = Field(default=None, ge=0, le=100)
    disk_path: str = Field(default="/", description="Mount point sampled for disk usage")


__all__ = [
    "StorageConfig",
    "SchedulerConfig",
    "WebhookServerConfig",
    "PollingConfig",
    "LoggingConfig",
    "HubConfig",
    "TriggerSpec",
    "ConditionSpec",
    "ActionSpec",
    "Automation",
    "ScheduleTriggerConfig",
    "WebhookTriggerConfig",
    "FileChangeTriggerConfig",
    "EmailTriggerConfig",
    "CalendarTriggerConfig",
    "SystemTriggerConfig",
    "DEFAULT_FILE_EVENTS",
    "DEFAULT_FILE_IGNORE",
]
