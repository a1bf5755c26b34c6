"""
Hole-in-One Engine - Notification Client Tests
==============================================

Live dispatch against a mocked notification API.
"""

import json

import httpx
import pytest

from holeinone.core.engine.notifications import NotificationClient, NotificationCommand


@pytest.fixture
async def make_client():
    """Factory: a live client whose requests go to ``handler``."""
    clients = []

    def _make(handler, **kwargs):
        kwargs.setdefault("enabled", True)
        client = NotificationClient(
            api_url="http://notify.test",
            transport=httpx.MockTransport(handler),
            **kwargs,
        )
        clients.append(client)
        return client

    yield _make

    for client in clients:
        await client.close()


class TestSend:
    """Tests for the live path of send."""

    async def test_posts_command_with_bearer_key(self, make_client):
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(202, json={"queued": True})

        client = make_client(handler, api_key="k")
        sent = await client.send_magic_link(
            "player@example.com", "https://app.test/m/abc", "2024-06-01T12:15:00+00:00"
        )

        assert sent is True
        [request] = seen
        assert request.method == "POST"
        assert request.url == "http://notify.test/api/v1/notifications"
        assert request.headers["Authorization"] == "Bearer k"
        body = json.loads(request.content)
        assert body["command"] == NotificationCommand.SEND_MAGIC_LINK.value
        assert body["to"] == "player@example.com"
        assert body["data"]["url"] == "https://app.test/m/abc"

    async def test_no_authorization_without_key(self, make_client):
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200)

        client = make_client(handler)
        client.api_key = None
        assert await client.notify_claim_decision("p-1", "e-1", "verified") is True

        assert "Authorization" not in seen[0].headers

    async def test_server_error_reports_false(self, make_client):
        client = make_client(lambda request: httpx.Response(500, text="boom"))

        sent = await client.send_witness_request(
            "pat@example.com", "Pat", "https://app.test/w", "2024-06-03T12:00:00+00:00"
        )

        assert sent is False

    async def test_transport_error_reports_false(self, make_client):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        client = make_client(handler)
        sent = await client.send_witness_request(
            "pat@example.com", "Pat", "https://app.test/w", "2024-06-03T12:00:00+00:00", resend=True
        )

        assert sent is False

    async def test_disabled_client_logs_instead_of_sending(self, make_client):
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200)

        client = make_client(handler, enabled=False)
        assert client.enabled is False
        assert await client.send_magic_link("player@example.com", "https://app.test/m", "x") is True

        assert seen == []
