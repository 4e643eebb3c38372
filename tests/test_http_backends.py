"""HTTP-level tests for the hosted backends, using httpx.MockTransport."""

import json
from datetime import datetime, timezone

import httpx
import pytest

from nomi.errors import DecodeError, QuotaExceeded, ServerError, TransportError, Unauthenticated
from nomi.models.schemas import Conversation, QuizData
from nomi.services.edge_functions import EdgeFunctionClient
from nomi.services.supabase_backend import SupabaseBackend

T0 = datetime(2025, 3, 10, 12, 0, tzinfo=timezone.utc)

CONVERSATION_ROW = {
    "id": "c1",
    "user_id": "user-1",
    "title": "New Chat",
    "created_at": "2025-03-10T12:00:00+00:00",
    "updated_at": "2025-03-10T12:00:00+00:00",
    "message_count": 0,
    "context_summary": None,
}


def _client(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


class TestSupabaseBackend:
    @pytest.mark.asyncio
    async def test_list_conversations_request(self, test_settings, session):
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json=[CONVERSATION_ROW])

        async with _client(handler) as client:
            convos = await SupabaseBackend(test_settings, client).list_conversations(session)

        assert [c.id for c in convos] == ["c1"]
        request = seen[0]
        assert request.method == "GET"
        assert request.url.path == "/rest/v1/nomi_conversations"
        assert request.url.params["user_id"] == "eq.user-1"
        assert request.url.params["order"] == "updated_at.desc"
        assert request.headers["authorization"] == "Bearer token-1"
        assert request.headers["apikey"] == "anon-test-key"

    @pytest.mark.asyncio
    async def test_insert_returns_representation(self, test_settings, session):
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(201, json=[CONVERSATION_ROW])

        draft = Conversation(id="c1", user_id="user-1", created_at=T0, updated_at=T0)
        async with _client(handler) as client:
            created = await SupabaseBackend(test_settings, client).insert_conversation(session, draft)

        assert created.id == "c1"
        assert seen[0].headers["prefer"] == "return=representation"
        body = json.loads(seen[0].content)
        assert body["title"] == "New Chat"
        assert body["message_count"] == 0

    @pytest.mark.asyncio
    async def test_query_messages_with_cursor(self, test_settings, session):
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json=[{
                "id": "m1",
                "conversation_id": "c1",
                "role": "assistant",
                "content": "Hi",
                "created_at": "2025-03-10T11:59:00+00:00",
                "token_count": 4,
            }])

        async with _client(handler) as client:
            messages = await SupabaseBackend(test_settings, client).query_messages(
                session, "c1", before=T0, limit=20
            )

        assert messages[0].token_count == 4
        params = seen[0].url.params
        assert params["conversation_id"] == "eq.c1"
        assert params["created_at"] == "lt.2025-03-10T12:00:00+00:00"
        assert params["order"] == "created_at.desc"
        assert params["limit"] == "20"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("payload", [
        {"current": 3, "limit": 40},
        [{"current": 3, "limit": 40}],
    ])
    async def test_increment_usage_accepts_object_or_list(self, test_settings, session, payload):
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json=payload)

        async with _client(handler) as client:
            usage = await SupabaseBackend(test_settings, client).increment_daily_usage(session, 40)

        assert (usage.current, usage.limit) == (3, 40)
        assert seen[0].url.path == "/rest/v1/rpc/increment_daily_usage"
        assert json.loads(seen[0].content) == {"p_limit": 40}

    @pytest.mark.asyncio
    @pytest.mark.parametrize("payload", [[], None])
    async def test_increment_usage_without_result(self, test_settings, session, payload):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json=payload)

        async with _client(handler) as client:
            with pytest.raises(DecodeError):
                await SupabaseBackend(test_settings, client).increment_daily_usage(session, 40)

    @pytest.mark.asyncio
    async def test_expired_token_is_unauthenticated(self, test_settings, session):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(401, json={"message": "JWT expired"})

        async with _client(handler) as client:
            with pytest.raises(Unauthenticated) as exc_info:
                await SupabaseBackend(test_settings, client).list_conversations(session)
        assert exc_info.value.message == "JWT expired"

    @pytest.mark.asyncio
    async def test_server_error_uses_postgrest_message(self, test_settings, session):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(400, json={"code": "22P02", "message": "invalid input syntax"})

        async with _client(handler) as client:
            with pytest.raises(ServerError) as exc_info:
                await SupabaseBackend(test_settings, client).delete_conversation(session, "c1")
        assert exc_info.value.status == 400
        assert exc_info.value.message == "invalid input syntax"

    @pytest.mark.asyncio
    async def test_save_context_updates_existing_row(self, test_settings, session):
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            if request.method == "GET":
                return httpx.Response(200, json=[{"id": "ctx1", "user_id": "user-1"}])
            return httpx.Response(204)

        async with _client(handler) as client:
            await SupabaseBackend(test_settings, client).save_context(session, QuizData(triggers="stress"))

        assert [r.method for r in seen] == ["GET", "PATCH"]
        assert seen[1].url.params["user_id"] == "eq.user-1"
        assert json.loads(seen[1].content)["triggers"] == "stress"


class TestEdgeFunctionClient:
    @pytest.mark.asyncio
    async def test_successful_chat(self, test_settings, session):
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={
                "message": "I'm here for you.",
                "tokensUsed": 12,
                "usage": {"current": 3, "limit": 40},
            })

        async with _client(handler) as client:
            reply = await EdgeFunctionClient(test_settings, client).send_chat(session, "c1", "hello")

        assert reply.message == "I'm here for you."
        assert reply.tokens_used == 12
        assert reply.usage.current == 3
        assert str(seen[0].url) == "https://example.supabase.co/functions/v1/nomi-chat"
        assert json.loads(seen[0].content) == {"conversationId": "c1", "message": "hello"}

    @pytest.mark.asyncio
    async def test_rate_limited(self, test_settings, session):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(429, json={
                "error": "Daily limit reached",
                "usage": {"current": 40, "limit": 40},
            })

        async with _client(handler) as client:
            with pytest.raises(QuotaExceeded) as exc_info:
                await EdgeFunctionClient(test_settings, client).send_chat(session, "c1", "hello")

        assert exc_info.value.message == "Daily limit reached"
        assert (exc_info.value.current, exc_info.value.limit) == (40, 40)

    @pytest.mark.asyncio
    async def test_server_error_message(self, test_settings, session):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(500, json={"error": "Model unavailable"})

        async with _client(handler) as client:
            with pytest.raises(ServerError) as exc_info:
                await EdgeFunctionClient(test_settings, client).send_chat(session, "c1", "hello")

        assert exc_info.value.status == 500
        assert exc_info.value.message == "Model unavailable"

    @pytest.mark.asyncio
    async def test_server_error_without_body_falls_back(self, test_settings, session):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(502, text="Bad Gateway")

        async with _client(handler) as client:
            with pytest.raises(ServerError) as exc_info:
                await EdgeFunctionClient(test_settings, client).send_chat(session, "c1", "hello")

        assert exc_info.value.message == "Unknown error"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("response", [
        httpx.Response(200, json={"message": "missing fields"}),
        httpx.Response(200, text="not json"),
    ])
    async def test_malformed_reply(self, test_settings, session, response):
        def handler(request: httpx.Request) -> httpx.Response:
            return response

        async with _client(handler) as client:
            with pytest.raises(DecodeError):
                await EdgeFunctionClient(test_settings, client).send_chat(session, "c1", "hello")

    @pytest.mark.asyncio
    async def test_connection_failure(self, test_settings, session):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        async with _client(handler) as client:
            with pytest.raises(TransportError):
                await EdgeFunctionClient(test_settings, client).send_chat(session, "c1", "hello")

    @pytest.mark.asyncio
    async def test_summarize_request(self, test_settings, session):
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(202, json={"status": "queued"})

        async with _client(handler) as client:
            await EdgeFunctionClient(test_settings, client).summarize(session, "c1")

        assert seen[0].url.path == "/functions/v1/nomi-summarize"
        assert json.loads(seen[0].content) == {"conversationId": "c1"}
