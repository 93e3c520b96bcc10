"""Trigger binding for automations.

Each trigger kind turns an external signal into a call to ``engine.run``:

- ``schedule``: APScheduler cron job
- ``webhook``: path on a shared FastAPI/uvicorn listener
- ``file_change``: watchdog observer
- ``email`` / ``calendar``: polling loop over a registered check source
- ``system``: polling loop over psutil metrics

``TriggerBinder`` owns the live trigger per automation id and is the only
place triggers are started or stopped.
"""

from __future__ import annotations

import asyncio
import time
from abc import ABC, abstractmethod
from collections import OrderedDict
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from fnmatch import fnmatch
from pathlib import Path
from typing import TYPE_CHECKING, Any

import psutil
from pydantic import BaseModel, ValidationError
from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from ..core.config import (
    Automation,
    CalendarTriggerConfig,
    EmailTriggerConfig,
    FileChangeTriggerConfig,
    ScheduleTriggerConfig,
    SystemTriggerConfig,
    WebhookTriggerConfig,
)
from ..core.exceptions import AlreadyBoundError, BindingError, InvalidScheduleError
from ..core.logger import get_logger
from .registry import HandlerKind, TypeRegistry

if TYPE_CHECKING:
    from .engine import AutomationEngine

logger = get_logger("automation.triggers")


def now_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class ExecutionContext:
    """Context handed from a trigger to ``AutomationEngine.run``."""

    trigger: str
    payload: dict[str, Any] = field(default_factory=dict)
    timestamp: int = field(default_factory=now_ms)

    def to_dict(self) -> dict[str, Any]:
        """Flatten to the mapping conditions and actions read."""
        return {**self.payload, "trigger": self.trigger, "timestamp": self.timestamp}


class SeenIdCache:
    """Remembers recently seen ids, bounded by count and age."""

    def __init__(
        self,
        max_size: int = 1000,
        window: float = 86400.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.max_size = max_size
        self.window = window
        self._clock = clock
        self._seen: OrderedDict[str, float] = OrderedDict()

    def _prune(self, now: float) -> None:
        cutoff = now - self.window
        while self._seen:
            key, seen_at = next(iter(self._seen.items()))
            if seen_at > cutoff:
                break
            self._seen.popitem(last=False)

    def add(self, key: str) -> bool:
        """Record ``key``; returns False if it was already seen within the window."""
        now = self._clock()
        self._prune(now)
        if key in self._seen:
            return False
        self._seen[key] = now
        while len(self._seen) > self.max_size:
            self._seen.popitem(last=False)
        return True

    def __contains__(self, key: object) -> bool:
        self._prune(self._clock())
        return key in self._seen

    def __len__(self) -> int:
        return len(self._seen)

    def clear(self) -> None:
        self._seen.clear()


# ----------------------------------------------------------------------
# Trigger base
# ----------------------------------------------------------------------
class BaseTrigger(ABC):
    """Base class for automation triggers.

    Subclasses allocate their resource in ``start`` and release it in ``stop``.
    """

    trigger_type: str
    config_model: type[BaseModel] | None = None

    def __init__(self, automation_id: str, spec: Mapping[str, Any], engine: AutomationEngine):
        self.automation_id = automation_id
        self.spec = dict(spec)
        self.engine = engine
        self.config = self.parse_config(self.spec)

    def parse_config(self, spec: dict[str, Any]) -> Any:
        if self.config_model is None:
            return spec
        try:
            return self.config_model.model_validate(spec)
        except ValidationError as exc:
            raise BindingError(
                f"Invalid {self.trigger_type} trigger for {self.automation_id}: {exc}",
                self.automation_id,
            ) from exc

    @abstractmethod
    async def start(self) -> None:
        """Allocate the trigger resource."""

    @abstractmethod
    async def stop(self) -> None:
        """Release the trigger resource."""

    async def fire(self, payload: dict[str, Any] | None = None) -> dict[str, Any]:
        """Run the automation with a context built from ``payload``."""
        context = ExecutionContext(self.trigger_type, dict(payload or {}))
        return await self.engine.run(self.automation_id, context)

    async def fire_logged(self, payload: dict[str, Any] | None = None) -> dict[str, Any] | None:
        """Like ``fire`` but logs failures instead of raising."""
        try:
            return await self.fire(payload)
        except Exception as exc:
            logger.error(
                "%s trigger run failed for %s: %s",
                self.trigger_type,
                self.automation_id,
                exc,
                exc_info=True,
            )
            return None

    def __repr__(self) -> str:
        return f"{type(self).__name__}(automation_id={self.automation_id!r})"


class ScheduleTrigger(BaseTrigger):
    """Cron trigger backed by the engine's ``TaskScheduler``."""

    trigger_type = "schedule"
    config_model = ScheduleTriggerConfig

    @property
    def job_id(self) -> str:
        return f"automation:{self.automation_id}"

    async def start(self) -> None:
        try:
            self.engine.scheduler.add_job(
                self._tick,
                trigger="cron",
                job_id=self.job_id,
                cron=self.config.cron,
                timezone=self.config.timezone,
            )
        except ValueError as exc:
            raise InvalidScheduleError(self.config.cron, self.automation_id) from exc
        logger.info("Scheduled %s with cron '%s'", self.automation_id, self.config.cron)

    async def stop(self) -> None:
        if self.engine.scheduler.remove_job(self.job_id):
            logger.info("Unscheduled %s", self.automation_id)

    async def _tick(self) -> None:
        await self.fire_logged()


class WebhookTrigger(BaseTrigger):
    """Inbound ``POST`` on a shared per-port listener."""

    trigger_type = "webhook"
    config_model = WebhookTriggerConfig

    async def start(self) -> None:
        await self.engine.webhook_servers.bind(
            self.automation_id,
            self.config.path,
            self.fire,
            port=self.config.port,
            host=self.config.host,
        )

    async def stop(self) -> None:
        await self.engine.webhook_servers.unbind(self.automation_id)


_WATCHDOG_EVENTS = {
    "created": "add",
    "modified": "modify",
    "deleted": "delete",
    "moved": "add",
}


class _FileChangeHandler(FileSystemEventHandler):
    """Forwards watchdog events to the trigger on its event loop."""

    def __init__(self, trigger: FileChangeTrigger) -> None:
        self.trigger = trigger

    def on_any_event(self, event: FileSystemEvent) -> None:
        kind = _WATCHDOG_EVENTS.get(event.event_type)
        if kind is None:
            return
        if event.is_directory and kind == "modify":
            return

        if event.event_type == "moved":
            src_path = getattr(event, "dest_path", "")
        else:
            src_path = event.src_path
        if isinstance(src_path, (bytes, bytearray)):
            src_path = bytes(src_path).decode("utf-8")
        self.trigger.dispatch_threadsafe(str(src_path), kind)


class FileChangeTrigger(BaseTrigger):
    """Filesystem watch via a watchdog observer."""

    trigger_type = "file_change"
    config_model = FileChangeTriggerConfig

    def __init__(self, automation_id: str, spec: Mapping[str, Any], engine: AutomationEngine):
        super().__init__(automation_id, spec, engine)
        self.path = Path(self.config.path).expanduser().resolve()
        self._watch_dir = True
        self._observer: Any = None
        self._loop: asyncio.AbstractEventLoop | None = None

    async def start(self) -> None:
        if not self.path.exists():
            raise BindingError(f"Watch path does not exist: {self.path}", self.automation_id)

        self._loop = asyncio.get_running_loop()
        self._watch_dir = self.path.is_dir()
        watch_dir = self.path if self._watch_dir else self.path.parent
        recursive = self.config.recursive and self._watch_dir

        observer = Observer()
        observer.schedule(_FileChangeHandler(self), str(watch_dir), recursive=recursive)
        self._observer = observer
        try:
            observer.start()
        except Exception:
            self._observer = None
            raise
        logger.info("Watching %s for %s", self.path, self.automation_id)

    async def stop(self) -> None:
        observer, self._observer = self._observer, None
        if observer is None:
            return
        observer.stop()
        await asyncio.to_thread(observer.join, 5)
        logger.info("Stopped watching %s for %s", self.path, self.automation_id)

    def matches(self, file_path: str, event: str) -> bool:
        if event not in self.config.events:
            return False
        if not self._watch_dir and Path(file_path) != self.path:
            return False
        return not any(fnmatch(file_path, pattern) for pattern in self.config.ignore)

    def dispatch_threadsafe(self, file_path: str, event: str) -> None:
        """Called from the observer thread."""
        loop = self._loop
        if self._observer is None or loop is None or loop.is_closed():
            return
        if not self.matches(file_path, event):
            return
        loop.call_soon_threadsafe(self._spawn_fire, file_path, event)

    def _spawn_fire(self, file_path: str, event: str) -> None:
        if self._observer is None:
            return
        self.engine.create_background_task(
            self.fire_logged({"filePath": file_path, "event": event}),
            f"file-change-{self.automation_id}",
        )


class PollingTrigger(BaseTrigger):
    """Base for triggers that poll on a fixed interval in an asyncio task."""

    def __init__(self, automation_id: str, spec: Mapping[str, Any], engine: AutomationEngine):
        super().__init__(automation_id, spec, engine)
        self._task: asyncio.Task[None] | None = None
        self._stop_event = asyncio.Event()

    @property
    def interval(self) -> float:
        return float(self.config.interval or self.default_interval())

    @abstractmethod
    def default_interval(self) -> float: ...

    @abstractmethod
    async def poll(self) -> list[dict[str, Any]]:
        """Return the payloads to fire for one poll cycle."""

    async def start(self) -> None:
        if self._task is not None and not self._task.done():
            return
        self._stop_event.clear()
        self._task = asyncio.create_task(
            self._run(), name=f"{self.trigger_type}-poll-{self.automation_id}"
        )
        logger.info(
            "Polling %s for %s every %ss", self.trigger_type, self.automation_id, self.interval
        )

    async def stop(self) -> None:
        self._stop_event.set()
        task, self._task = self._task, None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        logger.info("Stopped polling %s for %s", self.trigger_type, self.automation_id)

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def _run(self) -> None:
        while not self._stop_event.is_set():
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.interval)
                return
            except asyncio.TimeoutError:
                pass
            await self.poll_once()

    async def poll_once(self) -> None:
        """Poll and hand matching payloads to a background run task."""
        try:
            payloads = await self.poll()
        except Exception as exc:
            logger.error(
                "%s poll failed for %s: %s",
                self.trigger_type,
                self.automation_id,
                exc,
                exc_info=True,
            )
            return
        if payloads:
            self.engine.create_background_task(
                self._fire_all(payloads), f"{self.trigger_type}-fire-{self.automation_id}"
            )

    async def _fire_all(self, payloads: list[dict[str, Any]]) -> None:
        for payload in payloads:
            await self.fire_logged(payload)


def _records_from(result: Any, key: str) -> list[dict[str, Any]]:
    if result is None:
        return []
    if isinstance(result, Mapping):
        result = result.get(key) or []
    return [dict(record) for record in result]


class EmailTrigger(PollingTrigger):
    """Polls the email source and fires once per unseen message id."""

    trigger_type = "email"
    config_model = EmailTriggerConfig

    def __init__(self, automation_id: str, spec: Mapping[str, Any], engine: AutomationEngine):
        super().__init__(automation_id, spec, engine)
        polling = engine.config.polling
        self.seen = SeenIdCache(polling.dedup_max_size, polling.dedup_window)

    def default_interval(self) -> float:
        return self.engine.config.polling.email_interval

    async def poll(self) -> list[dict[str, Any]]:
        records = _records_from(
            await self.engine.poll_source(self.config.source, self.spec), "emails"
        )
        payloads = []
        for record in records:
            message_id = record.get("id")
            if message_id is not None and not self.seen.add(str(message_id)):
                continue
            payloads.append({**record, "email": record})
        return payloads

    async def stop(self) -> None:
        await super().stop()
        self.seen.clear()


class CalendarTrigger(PollingTrigger):
    """Polls the calendar source and fires for every returned event."""

    trigger_type = "calendar"
    config_model = CalendarTriggerConfig

    def default_interval(self) -> float:
        return self.engine.config.polling.calendar_interval

    async def poll(self) -> list[dict[str, Any]]:
        records = _records_from(
            await self.engine.poll_source(self.config.source, self.spec), "events"
        )
        return [{**record, "event": record} for record in records]


def sample_system_metrics(disk_path: str = "/") -> dict[str, float]:
    """Current CPU, memory and disk usage percentages."""
    return {
        "cpu": psutil.cpu_percent(interval=None),
        "memory": psutil.virtual_memory().percent,
        "disk": psutil.disk_usage(disk_path).percent,
    }


class SystemTrigger(PollingTrigger):
    """Fires ``cpu_high``/``memory_high``/``disk_low`` when a metric exceeds its threshold."""

    trigger_type = "system"
    config_model = SystemTriggerConfig

    _CHECKS = (
        ("cpu", "cpu_threshold", "cpu_high"),
        ("memory", "memory_threshold", "memory_high"),
        ("disk", "disk_threshold", "disk_low"),
    )

    def default_interval(self) -> float:
        return self.engine.config.polling.system_interval

    async def start(self) -> None:
        # first cpu_percent(None) call only primes the counters
        psutil.cpu_percent(interval=None)
        await super().start()

    async def poll(self) -> list[dict[str, Any]]:
        metrics = sample_system_metrics(self.config.disk_path)
        payloads = []
        for metric, threshold_field, event in self._CHECKS:
            threshold = getattr(self.config, threshold_field)
            if threshold is None or metrics[metric] <= threshold:
                continue
            payloads.append(
                {
                    "event": event,
                    "metric": metric,
                    "value": metrics[metric],
                    "threshold": threshold,
                    "metrics": dict(metrics),
                }
            )
        return payloads


BUILTIN_TRIGGERS: dict[str, type[BaseTrigger]] = {
    "schedule": ScheduleTrigger,
    "webhook": WebhookTrigger,
    "file_change": FileChangeTrigger,
    "email": EmailTrigger,
    "calendar": CalendarTrigger,
    "system": SystemTrigger,
}


# ----------------------------------------------------------------------
# Binder
# ----------------------------------------------------------------------
TriggerFactory = Callable[[str, Mapping[str, Any], "AutomationEngine"], BaseTrigger]


class TriggerBinder:
    """Owns at most one started trigger per automation id."""

    def __init__(self, registry: TypeRegistry, engine: AutomationEngine) -> None:
        self.registry = registry
        self.engine = engine
        self._bindings: dict[str, BaseTrigger] = {}
        self._binding: set[str] = set()

    async def bind(self, automation: Automation) -> BaseTrigger:
        """Start the trigger for ``automation``.

        Raises:
            AlreadyBoundError: If the automation already holds a binding
            HandlerNotFoundError: If the trigger type is not registered
            BindingError: If the trigger resource cannot be allocated
            OSError: If a listener or watcher fails to start
        """
        automation_id = automation.id
        if automation_id in self._bindings or automation_id in self._binding:
            raise AlreadyBoundError(automation_id)

        spec = automation.trigger.model_dump()
        factory: TriggerFactory = self.registry.lookup(HandlerKind.TRIGGER, spec["type"])

        self._binding.add(automation_id)
        try:
            trigger = factory(automation_id, spec, self.engine)
            await trigger.start()
        finally:
            self._binding.discard(automation_id)

        self._bindings[automation_id] = trigger
        logger.debug("Bound %s trigger for %s", spec["type"], automation_id)
        return trigger

    async def unbind(self, automation_id: str) -> bool:
        """Stop the trigger for ``automation_id``; no-op if unbound."""
        trigger = self._bindings.pop(automation_id, None)
        if trigger is None:
            return False
        await trigger.stop()
        logger.debug("Unbound %s trigger for %s", trigger.trigger_type, automation_id)
        return True

    async def unbind_all(self) -> None:
        for automation_id in list(self._bindings):
            try:
                await self.unbind(automation_id)
            except Exception as exc:
                logger.error("Failed to unbind %s: %s", automation_id, exc, exc_info=True)

    def is_bound(self, automation_id: str) -> bool:
        return automation_id in self._bindings

    def get(self, automation_id: str) -> BaseTrigger | None:
        return self._bindings.get(automation_id)

    @property
    def bound_ids(self) -> list[str]:
        return list(self._bindings)


__all__ = [
    "BUILTIN_TRIGGERS",
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
    "sample_system_metrics",
]
