"""Action execution for automation runs.

This module provides the ``ActionExecutor`` that dispatches an action record to
its registered handler, the ``${...}`` template renderer used by handlers, and
the built-in action handlers (shell, git, notify, agent, webhook_out).

Handlers have the signature ``handler(spec, context, engine)``, where ``engine`` is an
``EngineHandle``, and may be synchronous or coroutine functions.
"""

from __future__ import annotations

import asyncio
import inspect
import json
import os
import re
import shlex
import time
from collections.abc import Callable, Mapping
from pathlib import Path
from typing import Any

import httpx
from pydantic import BaseModel

from ..core.exceptions import ActionExecutionError, UnknownActionError
from ..core.logger import get_logger
from .conditions import spec_to_dict
from .registry import HandlerKind, TypeRegistry

logger = get_logger("automation.actions")

ActionHandler = Callable[[dict[str, Any], dict[str, Any], Any], Any]

DEFAULT_SHELL_TIMEOUT = 300.0
DEFAULT_HTTP_TIMEOUT = 30.0
DEFAULT_COMMIT_MESSAGE = "Automated commit"

_PLACEHOLDER = re.compile(r"\$\{\s*([^}\s]+)\s*\}")


# ----------------------------------------------------------------------
# Templates
# ----------------------------------------------------------------------
def _extract(data: Any, path: str) -> Any:
    """Extract a value from nested dicts/lists using dot notation."""
    current = data
    for part in path.split("."):
        if isinstance(current, Mapping):
            if part not in current:
                return None
            current = current[part]
        elif isinstance(current, (list, tuple)):
            try:
                current = current[int(part)]
            except (ValueError, IndexError):
                return None
        else:
            return None
    return current


def _stringify(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (dict, list, tuple)):
        return json.dumps(value, ensure_ascii=False, default=str)
    return str(value)


def render_template(template: str, context: Mapping[str, Any]) -> str:
    """Replace ``${name}`` placeholders with values from ``context``.

    Dotted names walk nested mappings. ``${context}`` renders the whole context
    as JSON and ``${timestamp}`` falls back to the current epoch milliseconds.
    Unknown names render as an empty string.
    """

    def _replace(match: re.Match[str]) -> str:
        name = match.group(1)
        if name == "context" and "context" not in context:
            return json.dumps(dict(context), ensure_ascii=False, default=str)
        value = _extract(context, name)
        if value is None and name == "timestamp":
            value = int(time.time() * 1000)
        return _stringify(value)

    return _PLACEHOLDER.sub(_replace, template)


def render_value(value: Any, context: Mapping[str, Any]) -> Any:
    """Render templates in strings nested anywhere inside ``value``."""
    if isinstance(value, str):
        return render_template(value, context)
    if isinstance(value, dict):
        return {k: render_value(v, context) for k, v in value.items()}
    if isinstance(value, list):
        return [render_value(v, context) for v in value]
    return value


# ----------------------------------------------------------------------
# Executor
# ----------------------------------------------------------------------
class ActionExecutor:
    """Runs a single action by dispatching on its ``type``."""

    def __init__(self, registry: TypeRegistry, engine: Any = None) -> None:
        self.registry = registry
        self.engine = engine

    async def execute(
        self, action: BaseModel | Mapping[str, Any], context: dict[str, Any]
    ) -> Any:
        """Execute one action.

        Raises:
            UnknownActionError: If no handler is registered for the action type
        """
        spec = spec_to_dict(action)
        action_type = spec.get("type", "")
        handler = self.registry.get(HandlerKind.ACTION, action_type)
        if handler is None:
            raise UnknownActionError(action_type)

        logger.debug("Executing action: %s", action_type)
        result = handler(spec, context, self.engine)
        if inspect.isawaitable(result):
            result = await result
        return result


# ----------------------------------------------------------------------
# Built-in handlers
# ----------------------------------------------------------------------
def _decode(data: bytes | None) -> str:
    return (data or b"").decode("utf-8", errors="replace")


async def _communicate(
    process: asyncio.subprocess.Process, timeout: float, action_type: str, label: str
) -> tuple[str, str]:
    try:
        stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
    except asyncio.TimeoutError as exc:
        process.kill()
        await process.wait()
        raise ActionExecutionError(
            f"Command timed out after {timeout}s: {label}",
            action_type,
            {"command": label, "timeout": timeout},
        ) from exc
    return _decode(stdout), _decode(stderr)


async def shell_action(spec: dict[str, Any], context: dict[str, Any], engine: Any) -> dict:
    """Run ``command`` through the system shell."""
    command = spec.get("command")
    if not command:
        raise ActionExecutionError("Shell action requires 'command'", "shell")

    command = render_template(str(command), context)
    timeout = float(spec.get("timeout") or DEFAULT_SHELL_TIMEOUT)
    cwd = spec.get("cwd")
    env = None
    if spec.get("env"):
        env = {**os.environ, **{k: str(v) for k, v in render_value(spec["env"], context).items()}}

    logger.info("Running shell command: %s", command)
    process = await asyncio.create_subprocess_shell(
        command,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
        cwd=str(Path(cwd).expanduser()) if cwd else None,
        env=env,
    )
    stdout, stderr = await _communicate(process, timeout, "shell", command)
    result = {"stdout": stdout, "stderr": stderr, "exitCode": process.returncode}

    if process.returncode != 0:
        raise ActionExecutionError(
            f"Command failed with exit code {process.returncode}: {stderr.strip() or command}",
            "shell",
            result,
        )
    return result


async def _run_git(repo: str, args: list[str], timeout: float) -> dict[str, Any]:
    label = "git " + " ".join(shlex.quote(arg) for arg in args)
    process = await asyncio.create_subprocess_exec(
        "git",
        *args,
        cwd=repo,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )
    stdout, stderr = await _communicate(process, timeout, "git", label)
    step = {"command": label, "stdout": stdout, "stderr": stderr, "exitCode": process.returncode}
    if process.returncode != 0:
        raise ActionExecutionError(
            f"{label} failed with exit code {process.returncode}: {stderr.strip()}",
            "git",
            step,
        )
    return step


def git_commands(spec: dict[str, Any], context: dict[str, Any]) -> list[list[str]]:
    """Translate the add/commit/push fields of a git action into argument lists."""
    commands: list[list[str]] = []

    add = spec.get("add")
    if add is True:
        commands.append(["add", "-A"])
    elif isinstance(add, str) and add:
        commands.append(["add", "--", render_template(add, context)])
    elif isinstance(add, list) and add:
        commands.append(["add", "--", *(render_template(str(p), context) for p in add)])

    commit = spec.get("commit")
    if commit is True:
        commands.append(["commit", "-m", DEFAULT_COMMIT_MESSAGE])
    elif isinstance(commit, str) and commit:
        commands.append(["commit", "-m", render_template(commit, context)])

    push = spec.get("push")
    if push is True:
        commands.append(["push"])
    elif isinstance(push, Mapping):
        args = ["push", str(push.get("remote") or "origin")]
        if push.get("branch"):
            args.append(str(push["branch"]))
        commands.append(args)

    return commands


async def git_action(spec: dict[str, Any], context: dict[str, Any], engine: Any) -> dict:
    """Run the configured git sub-steps in add, commit, push order."""
    repo = spec.get("repo")
    if not repo:
        raise ActionExecutionError("Git action requires 'repo'", "git")

    repo_path = str(Path(render_template(str(repo), context)).expanduser())
    timeout = float(spec.get("timeout") or DEFAULT_SHELL_TIMEOUT)

    commands = git_commands(spec, context)
    if not commands:
        logger.warning("Git action for %s has no add/commit/push steps", repo_path)

    steps = []
    for args in commands:
        steps.append(await _run_git(repo_path, args, timeout))
    return {"repo": repo_path, "steps": steps}


def notify_action(spec: dict[str, Any], context: dict[str, Any], engine: Any) -> dict:
    channel = spec.get("channel")
    message = render_template(str(spec.get("message") or ""), context)
    logger.info("Notify [%s]: %s", channel, message)
    return {"channel": channel, "message": message}


def agent_action(spec: dict[str, Any], context: dict[str, Any], engine: Any) -> dict:
    prompt = render_template(str(spec.get("prompt") or ""), context)
    return {"type": "agent", "prompt": prompt, "model": spec.get("model")}


async def webhook_out_action(spec: dict[str, Any], context: dict[str, Any], engine: Any) -> dict:
    """Send an HTTP request; the JSON body defaults to the execution context."""
    url = spec.get("url")
    if not url:
        raise ActionExecutionError("Webhook action requires 'url'", "webhook_out")

    url = render_template(str(url), context)
    method = str(spec.get("method") or "POST").upper()
    headers = render_value(dict(spec.get("headers") or {}), context)
    body = render_value(spec["body"], context) if "body" in spec else context
    timeout = float(spec.get("timeout") or DEFAULT_HTTP_TIMEOUT)

    request_kwargs: dict[str, Any] = {"headers": headers}
    if method not in ("GET", "HEAD", "DELETE"):
        if isinstance(body, str):
            request_kwargs["content"] = body
        else:
            request_kwargs["json"] = json.loads(json.dumps(body, default=str))

    try:
        async with httpx.AsyncClient(timeout=timeout) as client:
            response = await client.request(method, url, **request_kwargs)
    except httpx.HTTPError as exc:
        raise ActionExecutionError(
            f"Request to {url} failed: {exc}", "webhook_out", {"url": url, "method": method}
        ) from exc

    try:
        payload: Any = response.json()
    except ValueError:
        payload = response.text

    result = {
        "url": url,
        "method": method,
        "statusCode": response.status_code,
        "response": payload,
    }
    if not response.is_success:
        raise ActionExecutionError(
            f"{method} {url} returned HTTP {response.status_code}", "webhook_out", result
        )
    return result


BUILTIN_ACTIONS: dict[str, ActionHandler] = {
    "shell": shell_action,
    "git": git_action,
    "notify": notify_action,
    "agent": agent_action,
    "webhook_out": webhook_out_action,
}


__all__ = [
    "BUILTIN_ACTIONS",
    "ActionExecutor",
    "agent_action",
    "git_action",
    "git_commands",
    "notify_action",
    "render_template",
    "render_value",
    "shell_action",
    "webhook_out_action",
]
