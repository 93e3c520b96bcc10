"""FastAPI/uvicorn listeners backing webhook triggers.

One ``WebhookListener`` serves one port and dispatches ``POST`` requests by
exact path to the automation bound there. ``WebhookServerPool`` shares a
listener between every webhook trigger bound on the same port, opening it on
the first bind and closing it when the last path is released.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import socket
from collections.abc import Awaitable, Callable, Iterator
from typing import Any

import uvicorn
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from ..core.config import WebhookServerConfig
from ..core.exceptions import WebhookConflictError
from ..core.logger import get_logger

logger = get_logger("automation.webhooks")

WebhookHandler = Callable[[dict[str, Any]], Awaitable[Any]]

_ALL_METHODS = ["GET", "POST", "PUT", "PATCH", "DELETE", "HEAD", "OPTIONS"]


class _EmbeddedServer(uvicorn.Server):
    """uvicorn server that leaves process signal handlers to the host application."""

    @contextlib.contextmanager
    def capture_signals(self) -> Iterator[None]:
        yield

    def install_signal_handlers(self) -> None:
        pass


class WebhookListener:
    """HTTP listener for a single port, multiplexing automations by path."""

    def __init__(self, host: str, port: int, log_level: str = "warning") -> None:
        self.host = host
        self.port = port
        self.log_level = log_level
        self.app = FastAPI(openapi_url=None, docs_url=None, redoc_url=None)
        self._routes: dict[str, tuple[str, WebhookHandler]] = {}
        self._server: uvicorn.Server | None = None
        self._task: asyncio.Task[None] | None = None
        self._socket: socket.socket | None = None
        self._create_routes()

    # ------------------------------------------------------------------
    # Routing
    # ------------------------------------------------------------------
    def _create_routes(self) -> None:
        @self.app.api_route("/{full_path:path}", methods=_ALL_METHODS)
        async def dispatch(request: Request, full_path: str) -> JSONResponse:
            path = request.url.path
            route = self._routes.get(path)
            if request.method != "POST" or route is None:
                return JSONResponse({"error": "Not found"}, status_code=404)

            automation_id, handler = route
            raw = await request.body()
            try:
                body: Any = json.loads(raw) if raw.strip() else {}
            except ValueError as exc:
                return JSONResponse({"error": f"Invalid JSON body: {exc}"}, status_code=400)

            payload: dict[str, Any] = dict(body) if isinstance(body, dict) else {}
            payload.update(
                {
                    "body": body,
                    "headers": dict(request.headers),
                    "path": path,
                    "method": request.method,
                }
            )

            try:
                await handler(payload)
            except Exception as exc:
                logger.error(
                    "Webhook %s for %s failed: %s", path, automation_id, exc, exc_info=True
                )
                return JSONResponse({"error": str(exc)}, status_code=400)

            return JSONResponse({"success": True, "automationId": automation_id})

    def add_route(self, path: str, automation_id: str, handler: WebhookHandler) -> None:
        """Route ``POST path`` to ``handler``.

        Raises:
            WebhookConflictError: If another automation already owns the path
        """
        existing = self._routes.get(path)
        if existing is not None:
            raise WebhookConflictError(self.port, path, existing[0], automation_id)
        self._routes[path] = (automation_id, handler)

    def remove_route(self, automation_id: str) -> list[str]:
        """Drop every path owned by ``automation_id``; returns the removed paths."""
        removed = [path for path, (owner, _) in self._routes.items() if owner == automation_id]
        for path in removed:
            del self._routes[path]
        return removed

    def owner_of(self, path: str) -> str | None:
        route = self._routes.get(path)
        return route[0] if route else None

    @property
    def paths(self) -> list[str]:
        return sorted(self._routes)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    def _bind_socket(self) -> socket.socket:
        family = socket.AF_INET6 if ":" in self.host else socket.AF_INET
        sock = socket.socket(family, socket.SOCK_STREAM)
        try:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            sock.bind((self.host, self.port))
        except OSError:
            sock.close()
            raise
        return sock

    async def start(self, timeout: float = 5.0) -> None:
        """Bind the port and serve on the running event loop.

        Raises:
            OSError: If the port cannot be bound
        """
        if self.is_running:
            return

        self._socket = self._bind_socket()
        config = uvicorn.Config(
            self.app,
            host=self.host,
            port=self.port,
            log_level=self.log_level,
            lifespan="off",
        )
        self._server = _EmbeddedServer(config)
        self._task = asyncio.create_task(
            self._server.serve(sockets=[self._socket]), name=f"webhook-listener-{self.port}"
        )

        deadline = asyncio.get_running_loop().time() + timeout
        while not self._server.started:
            if self._task.done():
                exc = self._task.exception()
                self._close_socket()
                raise OSError(f"Webhook listener on port {self.port} failed to start") from exc
            if asyncio.get_running_loop().time() > deadline:
                await self.stop()
                raise OSError(f"Webhook listener on port {self.port} did not start in time")
            await asyncio.sleep(0.01)

        logger.info("Webhook listener on http://%s:%s", self.host, self.bound_port)

    async def stop(self, timeout: float = 5.0) -> None:
        port = self.bound_port
        if self._server is not None:
            self._server.should_exit = True
        if self._task is not None:
            try:
                await asyncio.wait_for(self._task, timeout=timeout)
            except asyncio.TimeoutError:
                logger.warning("Webhook listener on port %s did not stop in time", port)
                self._task.cancel()
            except asyncio.CancelledError:
                pass
        self._close_socket()
        self._task = None
        self._server = None
        logger.info("Webhook listener on port %s stopped", port)

    def _close_socket(self) -> None:
        if self._socket is not None:
            self._socket.close()
            self._socket = None

    @property
    def bound_port(self) -> int:
        """Actual listening port (differs from ``port`` when binding port 0)."""
        if self._socket is not None:
            return self._socket.getsockname()[1]
        return self.port

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()


class WebhookServerPool:
    """Shared webhook listeners keyed by port."""

    def __init__(self, config: WebhookServerConfig | None = None) -> None:
        self.config = config or WebhookServerConfig()
        self._listeners: dict[int, WebhookListener] = {}
        self._owners: dict[str, int] = {}
        self._lock = asyncio.Lock()

    async def bind(
        self,
        automation_id: str,
        path: str,
        handler: WebhookHandler,
        port: int | None = None,
        host: str | None = None,
    ) -> WebhookListener:
        """Route ``path`` on ``port`` to ``handler``, opening the listener if needed.

        Raises:
            WebhookConflictError: If ``path`` is already bound on ``port``
            OSError: If a new listener cannot bind its port
        """
        port = self.config.port if port is None else port
        async with self._lock:
            listener = self._listeners.get(port)
            if listener is None:
                listener = WebhookListener(
                    host or self.config.host, port, log_level=self.config.log_level
                )
                listener.add_route(path, automation_id, handler)
                await listener.start()
                self._listeners[port] = listener
            else:
                if host and host != listener.host:
                    logger.warning(
                        "Webhook %s requested host %s; port %s already listens on %s",
                        automation_id,
                        host,
                        port,
                        listener.host,
                    )
                listener.add_route(path, automation_id, handler)
            self._owners[automation_id] = port
            logger.info("Webhook bound: %s -> POST %s (port %s)", automation_id, path, port)
            return listener

    async def unbind(self, automation_id: str) -> bool:
        """Release the path held by ``automation_id``; closes idle listeners."""
        async with self._lock:
            port = self._owners.pop(automation_id, None)
            if port is None:
                return False
            listener = self._listeners.get(port)
            if listener is None:
                return False
            listener.remove_route(automation_id)
            if not listener.paths:
                del self._listeners[port]
                await listener.stop()
            logger.info("Webhook unbound: %s (port %s)", automation_id, port)
            return True

    def get_listener(self, port: int) -> WebhookListener | None:
        return self._listeners.get(port)

    def is_bound(self, automation_id: str) -> bool:
        return automation_id in self._owners

    async def close(self) -> None:
        async with self._lock:
            listeners = list(self._listeners.values())
            self._listeners.clear()
            self._owners.clear()
        for listener in listeners:
            await listener.stop()


__all__ = ["WebhookHandler", "WebhookListener", "WebhookServerPool"]
