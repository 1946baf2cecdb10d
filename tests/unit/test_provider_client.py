"""
Unit tests for the conversation provider client.
"""

import asyncio

import httpx
import pytest
import pytest_asyncio
from httpx import Request, Response

from practice_relay.errors import ErrorKind, SessionError
from practice_relay.provider import (
    ConversationProviderClient,
    CourseContextSource,
    ProviderConfigSource,
    build_callback_url,
    build_conversational_context,
)

API_URL = "https://provider.example.com/v2"
ORIGIN = "https://app.example.com"

CONVERSATION = {
    "conversation_id": "c-123",
    "conversation_url": "https://provider.example.com/join/c-123",
    "status": "active",
}


@pytest_asyncio.fixture
async def client(seeded_store, connectivity, clock):
    """Provider client over the seeded store."""
    client = ConversationProviderClient(
        config_source=ProviderConfigSource(seeded_store),
        course_source=CourseContextSource(seeded_store),
        connectivity=connectivity,
        api_url=API_URL,
        callback_origin=ORIGIN,
        clock=clock,
    )
    yield client
    await client.close()


def respond_with(monkeypatch, client, status, body=None, calls=None):
    """Patch ``client.client.post`` to return a fixed response."""

    async def mock_post(url, **kwargs):
        if calls is not None:
            calls.append((url, kwargs))
        return Response(status, json=body if body is not None else {}, request=Request("POST", url))

    monkeypatch.setattr(client.client, "post", mock_post)


class TestCreateConversation:
    @pytest.mark.asyncio
    async def test_success(self, client, monkeypatch):
        calls = []
        respond_with(monkeypatch, client, 200, CONVERSATION, calls)

        result = await client.create_conversation("course-1", "user-1", "session-1")

        assert result.conversation_id == "c-123"
        assert result.conversation_url.endswith("/join/c-123")
        assert result.status == "active"

        url, kwargs = calls[0]
        assert url == f"{API_URL}/conversations"
        assert kwargs["headers"]["x-api-key"] == "test-api-key"
        assert kwargs["timeout"] == 30.0
        payload = kwargs["json"]
        assert payload["replica_id"] == "r-replica-1"
        assert payload["persona_id"] == "p-persona-1"
        assert payload["conversational_context"].startswith("Learn how to split")
        assert payload["callback_url"].startswith(f"{ORIGIN}/api/callback/user-1/session-1/")
        assert result.callback_url == payload["callback_url"]

    @pytest.mark.asyncio
    async def test_missing_settings_fail_before_network(self, store, connectivity, clock, monkeypatch):
        client = ConversationProviderClient(
            ProviderConfigSource(store),
            CourseContextSource(store),
            connectivity,
            API_URL,
            ORIGIN,
            clock=clock,
        )
        calls = []
        respond_with(monkeypatch, client, 200, CONVERSATION, calls)

        with pytest.raises(SessionError) as exc_info:
            await client.create_conversation("course-1", "user-1", "session-1")

        assert exc_info.value.kind is ErrorKind.CONFIG
        assert calls == []
        await client.close()

    @pytest.mark.asyncio
    async def test_disabled_by_administrator(self, client, seeded_store):
        await seeded_store.update("settings", "provider", {"enabled": False})

        with pytest.raises(SessionError) as exc_info:
            await client.create_conversation("course-1", "user-1", "session-1")

        assert exc_info.value.kind is ErrorKind.CONFIG
        assert "disabled" in exc_info.value.message

    @pytest.mark.asyncio
    async def test_incomplete_settings(self, client, seeded_store):
        await seeded_store.update("settings", "provider", {"api_key": ""})

        with pytest.raises(SessionError) as exc_info:
            await client.create_conversation("course-1", "user-1", "session-1")

        assert "incomplete" in exc_info.value.message

    @pytest.mark.asyncio
    async def test_blank_identifier_is_invalid(self, client, seeded_store):
        await seeded_store.update("settings", "provider", {"replica_id": "   "})

        with pytest.raises(SessionError) as exc_info:
            await client.create_conversation("course-1", "user-1", "session-1")

        assert exc_info.value.kind is ErrorKind.CONFIG
        assert exc_info.value.message == "Invalid replica_id format"

    @pytest.mark.asyncio
    async def test_unknown_course(self, client):
        with pytest.raises(SessionError) as exc_info:
            await client.create_conversation("missing-course", "user-1", "session-1")

        assert exc_info.value.kind is ErrorKind.CONFIG

    @pytest.mark.asyncio
    async def test_offline_fails_fast(self, client, connectivity, monkeypatch):
        calls = []
        respond_with(monkeypatch, client, 200, CONVERSATION, calls)
        connectivity.mark_offline()

        with pytest.raises(SessionError) as exc_info:
            await client.create_conversation("course-1", "user-1", "session-1")

        assert exc_info.value.kind is ErrorKind.NETWORK
        assert calls == []

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "status,kind,retryable",
        [
            (401, ErrorKind.CONFIG, False),
            (403, ErrorKind.CONFIG, False),
            (404, ErrorKind.CONFIG, False),
            (400, ErrorKind.API, False),
            (429, ErrorKind.API, True),
            (500, ErrorKind.API, True),
            (503, ErrorKind.API, True),
        ],
    )
    async def test_error_status_mapping(self, client, monkeypatch, status, kind, retryable):
        respond_with(monkeypatch, client, status, {"message": "nope"})

        with pytest.raises(SessionError) as exc_info:
            await client.create_conversation("course-1", "user-1", "session-1")

        assert exc_info.value.kind is kind
        assert exc_info.value.retryable is retryable

    @pytest.mark.asyncio
    async def test_transport_timeout(self, client, monkeypatch):
        async def mock_post(url, **kwargs):
            raise httpx.ReadTimeout("timed out", request=Request("POST", url))

        monkeypatch.setattr(client.client, "post", mock_post)

        with pytest.raises(SessionError) as exc_info:
            await client.create_conversation("course-1", "user-1", "session-1")

        assert exc_info.value.kind is ErrorKind.TIMEOUT
        assert "30 seconds" in exc_info.value.message

    @pytest.mark.asyncio
    async def test_deadline_cancels_hung_request(self, client, monkeypatch):
        client.create_timeout = 0.01
        cancelled = asyncio.Event()

        async def mock_post(url, **kwargs):
            try:
                await asyncio.sleep(10)
            except asyncio.CancelledError:
                cancelled.set()
                raise

        monkeypatch.setattr(client.client, "post", mock_post)

        with pytest.raises(SessionError) as exc_info:
            await client.create_conversation("course-1", "user-1", "session-1")

        assert exc_info.value.kind is ErrorKind.TIMEOUT
        assert cancelled.is_set()

    @pytest.mark.asyncio
    async def test_connection_error(self, client, monkeypatch):
        async def mock_post(url, **kwargs):
            raise httpx.ConnectError("refused", request=Request("POST", url))

        monkeypatch.setattr(client.client, "post", mock_post)

        with pytest.raises(SessionError) as exc_info:
            await client.create_conversation("course-1", "user-1", "session-1")

        assert exc_info.value.kind is ErrorKind.NETWORK

    @pytest.mark.asyncio
    async def test_malformed_response(self, client, monkeypatch):
        respond_with(monkeypatch, client, 200, {"status": "active"})

        with pytest.raises(SessionError) as exc_info:
            await client.create_conversation("course-1", "user-1", "session-1")

        assert exc_info.value.kind is ErrorKind.API


class TestEndConversation:
    @pytest.mark.asyncio
    async def test_success(self, client, monkeypatch):
        calls = []
        respond_with(monkeypatch, client, 200, {}, calls)

        await client.end_conversation("c-123")

        url, kwargs = calls[0]
        assert url == f"{API_URL}/conversations/c-123/end"
        assert kwargs["timeout"] == 15.0

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [404, 409])
    async def test_already_ended_is_success(self, client, monkeypatch, status):
        respond_with(monkeypatch, client, status)

        await client.end_conversation("c-123")
        await client.end_conversation("c-123")

    @pytest.mark.asyncio
    async def test_server_error(self, client, monkeypatch):
        respond_with(monkeypatch, client, 502)

        with pytest.raises(SessionError) as exc_info:
            await client.end_conversation("c-123")

        assert exc_info.value.kind is ErrorKind.API
        assert exc_info.value.retryable is True

    @pytest.mark.asyncio
    async def test_blank_id(self, client):
        with pytest.raises(SessionError) as exc_info:
            await client.end_conversation("  ")

        assert exc_info.value.kind is ErrorKind.CONFIG


class TestHealthCheck:
    @pytest.mark.asyncio
    async def test_healthy(self, client, monkeypatch):
        async def mock_get(url, **kwargs):
            assert kwargs["headers"]["x-api-key"] == "test-api-key"
            return Response(200, json={"status": "ok"}, request=Request("GET", url))

        monkeypatch.setattr(client.client, "get", mock_get)

        assert await client.health_check() is True

    @pytest.mark.asyncio
    async def test_unreachable(self, client, monkeypatch):
        async def mock_get(url, **kwargs):
            raise httpx.ConnectError("refused", request=Request("GET", url))

        monkeypatch.setattr(client.client, "get", mock_get)

        assert await client.health_check() is False

    @pytest.mark.asyncio
    async def test_offline(self, client, connectivity):
        connectivity.mark_offline()

        assert await client.health_check() is False


class TestConversationalContext:
    def test_field_precedence(self):
        course = {
            "conversational_context": "Authored context",
            "provider_conversational_context": "Provider context",
            "description": "Description",
        }
        assert build_conversational_context(course) == "Authored context"

        del course["conversational_context"]
        assert build_conversational_context(course) == "Provider context"

        course["provider_conversational_context"] = "   "
        assert build_conversational_context(course) == "Description"

    def test_template_fallback(self):
        context = build_conversational_context({"title": "OSPF"})

        assert context.startswith("Practice conversation about OSPF.")
        assert "interactive dialogue" in context

    def test_truncated_to_limit(self):
        context = build_conversational_context({"description": "x" * 1500})

        assert len(context) == 1000
        assert context.endswith("...")


class TestCallbackUrl:
    def test_format(self, clock):
        url = build_callback_url(ORIGIN, "user 1", "session-1", clock.now(), suffix="abc")

        timestamp = int(clock.now().timestamp() * 1000)
        assert url == f"{ORIGIN}/api/callback/user%201/session-1/{timestamp}/abc"

    def test_random_suffix(self, clock):
        first = build_callback_url(ORIGIN, "u", "s", clock.now())
        second = build_callback_url(ORIGIN, "u", "s", clock.now())

        assert first != second

    @pytest.mark.parametrize("origin", ["not a url", "ftp://files.example.com", "/relative"])
    def test_rejects_non_http_origin(self, clock, origin):
        with pytest.raises(SessionError) as exc_info:
            build_callback_url(origin, "u", "s", clock.now())

        assert exc_info.value.kind is ErrorKind.CONFIG

    def test_requires_ids(self, clock):
        with pytest.raises(SessionError):
            build_callback_url(ORIGIN, "", "s", clock.now())
