"""Automation definition stores.

The engine never interprets storage layout; it loads every record in full and
writes a record back in full on save. Two adapters are provided:

- ``MemoryAutomationStore`` keeps records in a dict (tests, embedding)
- ``JsonDirectoryStore`` keeps one ``<id>.json`` file per automation
"""

from __future__ import annotations

import copy
import json
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

from .config import StorageConfig
from .logger import get_logger

logger = get_logger("store")


@runtime_checkable
class AutomationStore(Protocol):
    """Persistence collaborator for automation definition records."""

    def load_all(self) -> list[dict[str, Any]]: ...

    def save(self, record: dict[str, Any]) -> None: ...

    def delete(self, automation_id: str) -> bool: ...


class MemoryAutomationStore:
    """In-memory store; records are deep-copied on the way in and out."""

    def __init__(self, records: list[dict[str, Any]] | None = None) -> None:
        self._records: dict[str, dict[str, Any]] = {}
        for record in records or []:
            self.save(record)

    def load_all(self) -> list[dict[str, Any]]:
        return [copy.deepcopy(record) for record in self._records.values()]

    def save(self, record: dict[str, Any]) -> None:
        self._records[record["id"]] = copy.deepcopy(record)

    def delete(self, automation_id: str) -> bool:
        return self._records.pop(automation_id, None) is not None

    def __contains__(self, automation_id: object) -> bool:
        return automation_id in self._records


class JsonDirectoryStore:
    """One pretty-printed JSON file per automation in a directory."""

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path).expanduser()

    def _ensure_dir(self) -> None:
        self.path.mkdir(parents=True, exist_ok=True)

    def _file_for(self, automation_id: str) -> Path:
        file_path = self.path / f"{automation_id}.json"
        if not automation_id or file_path.parent != self.path or ".." in automation_id:
            raise ValueError(f"Invalid automation id for file storage: {automation_id!r}")
        return file_path

    def load_all(self) -> list[dict[str, Any]]:
        self._ensure_dir()
        records: list[dict[str, Any]] = []
        for file_path in sorted(self.path.glob("*.json")):
            try:
                with open(file_path, encoding="utf-8") as handle:
                    records.append(json.load(handle))
            except (OSError, json.JSONDecodeError) as exc:
                logger.error("Error loading %s: %s", file_path.name, exc)
        return records

    def save(self, record: dict[str, Any]) -> None:
        self._ensure_dir()
        file_path = self._file_for(record["id"])
        tmp_path = file_path.with_suffix(".json.tmp")
        with open(tmp_path, "w", encoding="utf-8") as handle:
            json.dump(record, handle, indent=2, ensure_ascii=False)
        tmp_path.replace(file_path)

    def delete(self, automation_id: str) -> bool:
        file_path = self._file_for(automation_id)
        if file_path.exists():
            file_path.unlink()
            return True
        return False


def create_store(config: StorageConfig) -> AutomationStore:
    """Build the store selected by ``config.backend``."""
    if config.backend == "memory":
        return MemoryAutomationStore()
    return JsonDirectoryStore(config.path)


__all__ = [
    "AutomationStore",
    "MemoryAutomationStore",
    "JsonDirectoryStore",
    "create_store",
]
