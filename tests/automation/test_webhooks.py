"""Tests for webhook listeners and the shared listener pool."""

from __future__ import annotations

import signal
import socket
from unittest.mock import AsyncMock

import httpx
import pytest
from fastapi.testclient import TestClient

from automation_hub.automation.webhooks import WebhookListener, WebhookServerPool
from automation_hub.core.config import WebhookServerConfig
from automation_hub.core.exceptions import WebhookConflictError


@pytest.fixture
def handler():
    """Mock webhook handler."""
    return AsyncMock(return_value={"success": True})


@pytest.fixture
def listener(handler):
    listener = WebhookListener("127.0.0.1", 0)
    listener.add_route("/hooks/deploy", "deploy", handler)
    return listener


@pytest.fixture
def client(listener):
    return TestClient(listener.app)


class TestWebhookRouting:
    def test_post_dispatches_payload(self, client, handler):
        response = client.post("/hooks/deploy", json={"ref": "main", "sha": "abc"})

        assert response.status_code == 200
        assert response.json() == {"success": True, "automationId": "deploy"}
        payload = handler.await_args.args[0]
        assert payload["ref"] == "main"
        assert payload["body"] == {"ref": "main", "sha": "abc"}
        assert payload["path"] == "/hooks/deploy"
        assert payload["method"] == "POST"
        assert payload["headers"]["content-type"] == "application/json"

    def test_unknown_path_is_404(self, client, handler):
        response = client.post("/hooks/other", json={})

        assert response.status_code == 404
        assert response.json() == {"error": "Not found"}
        handler.assert_not_awaited()

    def test_non_post_is_404(self, client, handler):
        assert client.get("/hooks/deploy").status_code == 404
        assert client.put("/hooks/deploy", json={}).status_code == 404
        handler.assert_not_awaited()

    def test_empty_body_is_empty_object(self, client, handler):
        response = client.post("/hooks/deploy", content=b"")

        assert response.status_code == 200
        assert handler.await_args.args[0]["body"] == {}

    def test_invalid_json_is_400(self, client, handler):
        response = client.post(
            "/hooks/deploy", content=b"{not json", headers={"content-type": "application/json"}
        )

        assert response.status_code == 400
        assert response.json()["error"].startswith("Invalid JSON body")
        handler.assert_not_awaited()

    def test_non_object_body_is_kept_under_body(self, client, handler):
        client.post("/hooks/deploy", json=[1, 2])

        payload = handler.await_args.args[0]
        assert payload["body"] == [1, 2]
        assert "0" not in payload

    def test_handler_error_is_400(self, client, handler):
        handler.side_effect = RuntimeError("action failed")

        response = client.post("/hooks/deploy", json={})

        assert response.status_code == 400
        assert response.json() == {"error": "action failed"}


class TestRouteTable:
    def test_duplicate_path_conflicts(self, listener, handler):
        with pytest.raises(WebhookConflictError) as exc_info:
            listener.add_route("/hooks/deploy", "other", handler)

        assert exc_info.value.owner == "deploy"
        assert exc_info.value.automation_id == "other"

    def test_remove_route(self, listener, handler):
        listener.add_route("/hooks/second", "deploy", handler)
        listener.add_route("/hooks/third", "other", handler)

        assert listener.remove_route("deploy") == ["/hooks/deploy", "/hooks/second"]
        assert listener.paths == ["/hooks/third"]
        assert listener.owner_of("/hooks/deploy") is None
        assert listener.owner_of("/hooks/third") == "other"


@pytest.mark.anyio
class TestWebhookServerPool:
    @pytest.fixture
    async def pool(self):
        pool = WebhookServerPool(WebhookServerConfig(host="127.0.0.1", port=0))
        yield pool
        await pool.close()

    async def test_bind_serves_requests(self, pool, handler):
        listener = await pool.bind("deploy", "/hooks/deploy", handler)

        assert listener.is_running
        assert pool.is_bound("deploy")
        url = f"http://127.0.0.1:{listener.bound_port}/hooks/deploy"
        async with httpx.AsyncClient() as http:
            response = await http.post(url, json={"ref": "main"})

        assert response.status_code == 200
        assert response.json() == {"success": True, "automationId": "deploy"}
        assert handler.await_args.args[0]["ref"] == "main"

    async def test_paths_share_one_listener(self, pool, handler):
        first = await pool.bind("a", "/a", handler)
        second = await pool.bind("b", "/b", handler)

        assert first is second
        assert first.paths == ["/a", "/b"]

    async def test_conflicting_path_rejected(self, pool, handler):
        await pool.bind("a", "/same", handler)

        with pytest.raises(WebhookConflictError):
            await pool.bind("b", "/same", handler)

        assert not pool.is_bound("b")
        assert pool.get_listener(0).owner_of("/same") == "a"

    async def test_unbind_closes_idle_listener(self, pool, handler):
        listener = await pool.bind("a", "/a", handler)
        await pool.bind("b", "/b", handler)

        assert await pool.unbind("a") is True
        assert listener.is_running
        assert listener.paths == ["/b"]

        assert await pool.unbind("b") is True
        assert not listener.is_running
        assert pool.get_listener(0) is None
        assert await pool.unbind("b") is False

    async def test_path_can_be_rebound_after_unbind(self, pool, handler):
        await pool.bind("a", "/a", handler)
        await pool.unbind("a")

        listener = await pool.bind("b", "/a", handler)

        assert listener.owner_of("/a") == "b"


@pytest.mark.anyio
async def test_start_fails_when_port_in_use(handler):
    blocker = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    blocker.bind(("127.0.0.1", 0))
    blocker.listen()
    port = blocker.getsockname()[1]
    try:
        listener = WebhookListener("127.0.0.1", port)
        listener.add_route("/hook", "a", handler)

        with pytest.raises(OSError):
            await listener.start()
        assert not listener.is_running
    finally:
        blocker.close()


@pytest.mark.anyio
async def test_listeners_leave_signal_handlers_alone(handler):
    original = signal.getsignal(signal.SIGINT)
    first = WebhookListener("127.0.0.1", 0)
    second = WebhookListener("127.0.0.1", 0)
    first.add_route("/a", "a", handler)
    second.add_route("/b", "b", handler)

    await first.start()
    await second.start()
    assert signal.getsignal(signal.SIGINT) is original

    await first.stop()
    await second.stop()
    assert signal.getsignal(signal.SIGINT) is original


@pytest.mark.anyio
async def test_stop_logs_bound_port(handler, caplog):
    listener = WebhookListener("127.0.0.1", 0)
    listener.add_route("/a", "a", handler)
    await listener.start()
    port = listener.bound_port

    with caplog.at_level("INFO", logger="automation_hub"):
        await listener.stop()

    assert port != 0
    assert f"Webhook listener on port {port} stopped" in caplog.text
