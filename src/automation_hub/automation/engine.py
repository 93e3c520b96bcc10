"""Automation engine responsible for binding triggers and running automations.

This module provides the main AutomationEngine class that coordinates:
- Automation registration, persistence and enable/disable lifecycle
- Trigger binding (schedule, webhook, file_change, email, calendar, system)
- Guarded runs: condition evaluation then sequential action execution
- Runtime events and execution history
"""

from __future__ import annotations

import asyncio
import inspect
import time
from collections.abc import Callable, Coroutine, Mapping
from datetime import datetime
from typing import Any

from pydantic import ValidationError

from ..core.config import Automation, HubConfig
from ..core.events import EventEmitter
from ..core.exceptions import AutomationNotFoundError
from ..core.logger import get_logger
from ..core.store import AutomationStore, create_store
from ..scheduler import TaskScheduler
from .actions import BUILTIN_ACTIONS, ActionExecutor, ActionHandler
from .conditions import BUILTIN_CONDITIONS, ConditionEvaluator, ConditionPredicate
from .registry import HandlerKind, TypeRegistry
from .triggers import BUILTIN_TRIGGERS, ExecutionContext, TriggerBinder, TriggerFactory
from .webhooks import WebhookServerPool

logger = get_logger("automation.engine")

SourceFunc = Callable[[dict[str, Any]], Any]


class EngineHandle:
    """The engine as seen by action handlers: registration and events only."""

    __slots__ = ("_engine",)

    def __init__(self, engine: AutomationEngine) -> None:
        self._engine = engine

    @property
    def events(self) -> EventEmitter:
        return self._engine.events

    def register_trigger(self, name: str, factory: TriggerFactory) -> None:
        self._engine.register_trigger(name, factory)

    def register_condition(self, name: str, predicate: ConditionPredicate) -> None:
        self._engine.register_condition(name, predicate)

    def register_action(self, name: str, handler: ActionHandler) -> None:
        self._engine.register_action(name, handler)

    def register_source(self, name: str, func: SourceFunc) -> None:
        self._engine.register_source(name, func)


class AutomationEngine:
    """Coordinates automations, their trigger bindings and their runs.

    Example:
        ```python
        engine = AutomationEngine(HubConfig(), store=MemoryAutomationStore())
        async with engine:
            await engine.save_automation({
                "id": "hello",
                "name": "Hello",
                "enabled": True,
                "trigger": {"type": "webhook", "path": "/hello", "port": 18800},
                "actions": [{"type": "notify", "channel": "log", "message": "${body.name}"}],
            })
        ```
    """

    def __init__(
        self,
        config: HubConfig | None = None,
        store: AutomationStore | None = None,
        sources: Mapping[str, SourceFunc] | None = None,
        scheduler: TaskScheduler | None = None,
    ) -> None:
        self.config = config or HubConfig()
        self.store = store if store is not None else create_store(self.config.storage)
        self.registry = TypeRegistry()
        self.events = EventEmitter()
        self.scheduler = scheduler or TaskScheduler(self.config.scheduler)
        self.webhook_servers = WebhookServerPool(self.config.webhook_server)

        self._automations: dict[str, Automation] = {}
        self._running: set[str] = set()
        self._sources: dict[str, SourceFunc] = dict(sources or {})
        self._binder = TriggerBinder(self.registry, self)
        self._condition_evaluator = ConditionEvaluator(self.registry)
        self.handle = EngineHandle(self)
        self._action_executor = ActionExecutor(self.registry, self.handle)
        self._background_tasks: set[asyncio.Task[Any]] = set()
        self._execution_history: list[dict[str, Any]] = []
        self._max_history: int = 500
        self._started = False

        self._register_builtins()

    def _register_builtins(self) -> None:
        for name, trigger_cls in BUILTIN_TRIGGERS.items():
            self.registry.register(HandlerKind.TRIGGER, name, trigger_cls)
        for name, predicate in BUILTIN_CONDITIONS.items():
            self.registry.register(HandlerKind.CONDITION, name, predicate)
        for name, handler in BUILTIN_ACTIONS.items():
            self.registry.register(HandlerKind.ACTION, name, handler)

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------
    def register_trigger(self, name: str, factory: TriggerFactory) -> None:
        """Register a trigger kind.

        ``factory(automation_id, spec, engine)`` must return a ``BaseTrigger``.
        """
        self.registry.register(HandlerKind.TRIGGER, name, factory)
        logger.info("Trigger registered: %s", name)

    def register_condition(self, name: str, predicate: ConditionPredicate) -> None:
        self.registry.register(HandlerKind.CONDITION, name, predicate)
        logger.info("Condition registered: %s", name)

    def register_action(self, name: str, handler: ActionHandler) -> None:
        self.registry.register(HandlerKind.ACTION, name, handler)
        logger.info("Action registered: %s", name)

    def register_source(self, name: str, func: SourceFunc) -> None:
        """Register a check function polled by email/calendar triggers.

        ``func(trigger_config)`` returns a list of records, or a mapping holding
        them under ``emails``/``events``. It may be a coroutine function.
        """
        self._sources[name] = func
        logger.info("Source registered: %s", name)

    async def poll_source(self, name: str, trigger_config: dict[str, Any]) -> Any:
        source = self._sources.get(name)
        if source is None:
            logger.debug("No source registered for '%s'; nothing to poll", name)
            return []
        result = source(trigger_config)
        if inspect.isawaitable(result):
            result = await result
        return result

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    async def start(self) -> None:
        """Start the scheduler, load automations and bind every enabled one."""
        if self._started:
            return

        if self.config.scheduler.enabled:
            self.scheduler.start()
        else:
            logger.warning("Scheduler disabled; schedule triggers will not fire")

        await self.load_automations()
        self._started = True

        bound = failed = 0
        for automation in list(self._automations.values()):
            if not automation.enabled or self._binder.is_bound(automation.id):
                continue
            try:
                await self._binder.bind(automation)
                bound += 1
            except Exception as exc:
                failed += 1
                logger.error(
                    "Failed to bind automation '%s': %s", automation.id, exc, exc_info=True
                )

        logger.info(
            "Automation engine started: %d automations, %d bound, %d failed",
            len(self._automations),
            bound,
            failed,
        )

    async def shutdown(self, timeout: float = 5.0) -> None:
        """Unbind every trigger, stop the scheduler and wait for in-flight runs."""
        await self._binder.unbind_all()
        await self.webhook_servers.close()
        self.scheduler.shutdown(wait=False)

        pending = [task for task in self._background_tasks if not task.done()]
        if pending:
            _, still_pending = await asyncio.wait(pending, timeout=timeout)
            for task in still_pending:
                task.cancel()
            if still_pending:
                logger.warning("Cancelled %d unfinished runs at shutdown", len(still_pending))
                await asyncio.gather(*still_pending, return_exceptions=True)

        if self._started:
            logger.info("Automation engine stopped")
        self._started = False

    async def __aenter__(self) -> AutomationEngine:
        await self.start()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.shutdown()

    @property
    def is_started(self) -> bool:
        return self._started

    def create_background_task(
        self, coro: Coroutine[Any, Any, Any], name: str | None = None
    ) -> asyncio.Task[Any]:
        """Run ``coro`` on the loop, keeping a reference until it finishes."""
        task = asyncio.ensure_future(coro)
        if name:
            task.set_name(name)
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)
        return task

    # ------------------------------------------------------------------
    # Registry operations
    # ------------------------------------------------------------------
    async def load_automations(self) -> list[Automation]:
        """Read every record from the store into the registry."""
        loaded: list[Automation] = []
        for record in self.store.load_all():
            try:
                automation = Automation.model_validate(record)
            except ValidationError as exc:
                record_id = record.get("id", "<missing id>") if isinstance(record, dict) else "?"
                logger.error("Skipping invalid automation %s: %s", record_id, exc)
                continue
            self._automations[automation.id] = automation
            loaded.append(automation)
            logger.info("Loaded: %s", automation.id)
        return loaded

    async def save_automation(self, record: Automation | Mapping[str, Any]) -> Automation:
        """Validate, persist and register an automation, reconciling its binding.

        Raises:
            pydantic.ValidationError: If the record is malformed
            BindingError: If the automation is enabled but its trigger cannot bind
        """
        automation = (
            record if isinstance(record, Automation) else Automation.model_validate(dict(record))
        )
        automation_id = automation.id
        previous = self._automations.get(automation_id)

        self.store.save(automation.to_record())
        self._automations[automation_id] = automation

        bound = self._binder.is_bound(automation_id)
        if bound and not automation.enabled:
            await self._binder.unbind(automation_id)
        elif bound and previous is not None and previous.trigger != automation.trigger:
            await self._binder.unbind(automation_id)
            await self._bind_or_disable(automation)
        elif not bound and automation.enabled and self._started:
            await self._bind_or_disable(automation)

        logger.info("Saved: %s", automation_id)
        return self._automations[automation_id]

    async def _bind_or_disable(self, automation: Automation) -> None:
        try:
            await self._binder.bind(automation)
        except Exception:
            disabled = automation.model_copy(update={"enabled": False})
            self._automations[automation.id] = disabled
            self.store.save(disabled.to_record())
            raise

    async def delete_automation(self, automation_id: str) -> bool:
        """Unbind and remove an automation.

        Raises:
            AutomationNotFoundError: If the id is unknown
        """
        if automation_id not in self._automations:
            raise AutomationNotFoundError(automation_id)

        await self._binder.unbind(automation_id)
        del self._automations[automation_id]
        self.store.delete(automation_id)
        logger.info("Deleted: %s", automation_id)
        return True

    async def enable_automation(self, automation_id: str) -> Automation:
        """Bind the trigger, then mark the automation enabled and persist it.

        Raises:
            AutomationNotFoundError: If the id is unknown
            BindingError: If the trigger cannot be bound
        """
        automation = self._get_or_raise(automation_id)
        if not self._binder.is_bound(automation_id):
            await self._binder.bind(automation)

        enabled = automation.model_copy(update={"enabled": True})
        self._automations[automation_id] = enabled
        self.store.save(enabled.to_record())
        logger.info("Enabled automation: %s", automation_id)
        return enabled

    async def disable_automation(self, automation_id: str) -> Automation:
        """Mark the automation disabled, persist it and release its trigger.

        Raises:
            AutomationNotFoundError: If the id is unknown
        """
        automation = self._get_or_raise(automation_id)
        disabled = automation.model_copy(update={"enabled": False})
        self._automations[automation_id] = disabled
        self.store.save(disabled.to_record())
        await self._binder.unbind(automation_id)
        logger.info("Disabled automation: %s", automation_id)
        return disabled

    def _get_or_raise(self, automation_id: str) -> Automation:
        automation = self._automations.get(automation_id)
        if automation is None:
            raise AutomationNotFoundError(automation_id)
        return automation

    def get_automation(self, automation_id: str) -> Automation | None:
        return self._automations.get(automation_id)

    def list_automations(self) -> list[Automation]:
        return list(self._automations.values())

    def is_running(self, automation_id: str) -> bool:
        return automation_id in self._running

    def is_bound(self, automation_id: str) -> bool:
        return self._binder.is_bound(automation_id)

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------
    async def run(
        self,
        automation_id: str,
        context: ExecutionContext | Mapping[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Run an automation once.

        Returns ``{"skipped": True, "reason": ...}`` when the automation is
        disabled, already running or its conditions are not met, otherwise
        ``{"success": True, "duration": <ms>, "results": [...]}``.

        Raises:
            AutomationNotFoundError: If the id is unknown
            Exception: Whatever the failing action raised
        """
        automation = self._get_or_raise(automation_id)
        ctx = self._context_dict(context)

        if not automation.enabled:
            logger.info("%s is disabled, skipping", automation_id)
            return self._skip(automation_id, ctx, "disabled")

        if automation_id in self._running:
            logger.info("%s is already running, skipping", automation_id)
            return self._skip(automation_id, ctx, "running")

        self._running.add(automation_id)
        start_time = time.perf_counter()
        try:
            self.events.emit("start", {"automationId": automation_id, "context": ctx})
            logger.info("Running: %s", automation_id)

            if automation.conditions:
                met = await self._condition_evaluator.evaluate(automation.conditions, ctx)
                if not met:
                    logger.info("Conditions not met for %s", automation_id)
                    return self._skip(automation_id, ctx, "conditions_not_met")

            results = []
            for action in automation.actions:
                results.append(await self._action_executor.execute(action, ctx))

            duration = int((time.perf_counter() - start_time) * 1000)
            result = {"success": True, "duration": duration, "results": results}
            self.events.emit("complete", {"automationId": automation_id, "result": result})
            self._record_execution(automation_id, ctx, "success", duration=duration)
            logger.info("Completed: %s in %dms", automation_id, duration)
            return result
        except Exception as exc:
            duration = int((time.perf_counter() - start_time) * 1000)
            logger.error("Error in %s: %s", automation_id, exc)
            self.events.emit("error", {"automationId": automation_id, "error": exc})
            self._record_execution(automation_id, ctx, "error", duration=duration, error=str(exc))
            raise
        finally:
            self._running.discard(automation_id)

    @staticmethod
    def _context_dict(context: ExecutionContext | Mapping[str, Any] | None) -> dict[str, Any]:
        if context is None:
            return {}
        if isinstance(context, ExecutionContext):
            return context.to_dict()
        return dict(context)

    def _skip(self, automation_id: str, ctx: dict[str, Any], reason: str) -> dict[str, Any]:
        self._record_execution(automation_id, ctx, "skipped", reason=reason)
        return {"skipped": True, "reason": reason}

    # ------------------------------------------------------------------
    # History
    # ------------------------------------------------------------------
    def _record_execution(
        self,
        automation_id: str,
        context: dict[str, Any],
        status: str,
        reason: str | None = None,
        duration: int | None = None,
        error: str | None = None,
    ) -> None:
        self._execution_history.append(
            {
                "automationId": automation_id,
                "trigger": context.get("trigger"),
                "status": status,
                "reason": reason,
                "duration": duration,
                "error": error,
                "timestamp": datetime.now().isoformat(),
            }
        )
        # Trim history if needed
        if len(self._execution_history) > self._max_history:
            self._execution_history = self._execution_history[-self._max_history :]

    def get_execution_history(
        self,
        automation_id: str | None = None,
        limit: int = 20,
    ) -> list[dict[str, Any]]:
        """Get run history.

        Args:
            automation_id: Optional filter by automation id
            limit: Maximum number of entries to return

        Returns:
            List of execution history entries (newest first)
        """
        history = self._execution_history
        if automation_id:
            history = [h for h in history if h.get("automationId") == automation_id]
        return list(reversed(history[-limit:]))


__all__ = ["AutomationEngine", "EngineHandle", "SourceFunc"]
