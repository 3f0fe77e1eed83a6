"""Tests for the chat HTTP endpoints."""

import pytest
from fastapi.testclient import TestClient

from shared.models import Role
from orchestrator.main import app, get_gateway
from helpers import parse_frames, text_message, tool_message


@pytest.fixture
def client(gateway):
    app.dependency_overrides[get_gateway] = lambda: gateway
    yield TestClient(app)
    app.dependency_overrides.clear()


class TestChatEndpoint:
    """Tests for POST /chat."""

    def test_missing_message(self, client):
        response = client.post("/chat", json={"conversation_id": "c1"})

        assert response.status_code == 400
        assert response.json() == {"error": "Message is required"}

    def test_invalid_json_body(self, client):
        response = client.post("/chat", content=b"not json", headers={"Content-Type": "application/json"})

        assert response.status_code == 400
        assert response.json() == {"error": "Message is required"}

    def test_streams_session_events(self, client, llm, mcp_client):
        llm.set_next_response(tool_message("toolu_1", "search_shop_catalog", {"query": "mugs"}))
        llm.set_next_response(text_message("We have mugs."))

        response = client.post(
            "/chat",
            json={"message": "Mugs?", "conversation_id": "conv-http"},
            headers={"Origin": "https://shop.example.com", "X-Shopify-Shop-Id": "7"},
        )

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/event-stream")
        assert response.headers["access-control-allow-origin"] == "https://shop.example.com"

        events = parse_frames(response.content)
        assert events[0] == {"type": "id", "conversation_id": "conv-http"}
        assert events[-1]["type"] == "end_turn"
        assert any(e["type"] == "tool_result" for e in events)
        mcp_client.call_tool.assert_awaited_once_with("search_shop_catalog", {"query": "mugs"})

    def test_new_conversation_gets_id(self, client, llm):
        llm.set_next_response(text_message("Hi."))

        response = client.post("/chat", json={"message": "Hello"})

        first = parse_frames(response.content)[0]
        assert first["type"] == "id"
        assert first["conversation_id"]

    def test_prompt_type_forwarded(self, client, llm):
        llm.set_next_response(text_message("Ok."))

        client.post("/chat", json={"message": "Hello", "prompt_type": "brief"})

        assert llm.call_history[0]["system"] == "Be brief."


class TestHistoryEndpoint:
    """Tests for GET /chat."""

    @pytest.mark.asyncio
    async def test_history_of_known_conversation(self, client, store):
        await store.save_message("c1", Role.USER, "Hello")
        await store.save_message("c1", Role.ASSISTANT, '[{"type": "text", "text": "Hi!"}]')

        response = client.get("/chat", params={"history": "", "conversation_id": "c1"})

        assert response.status_code == 200
        messages = response.json()["messages"]
        assert [m["role"] for m in messages] == ["user", "assistant"]
        assert messages[0]["content"] == "Hello"
        assert messages[1]["content"] == [{"type": "text", "text": "Hi!"}]

    def test_unknown_conversation_is_empty(self, client):
        response = client.get("/chat", params={"history": "true", "conversation_id": "missing"})

        assert response.status_code == 200
        assert response.json() == {"messages": []}

    @pytest.mark.parametrize("params", [{}, {"history": "true"}, {"conversation_id": "c1"}])
    def test_other_get_requests_unsupported(self, client, params):
        response = client.get("/chat", params=params)

        assert response.status_code == 400
        assert response.json() == {
            "error": "This endpoint only supports server-sent events (SSE) requests or history requests."
        }

    def test_event_stream_get_is_not_a_chat_request(self, client, llm):
        response = client.get("/chat", params={"message": "Hello"}, headers={"Accept": "text/event-stream"})

        assert response.status_code == 400
        assert response.headers["content-type"].startswith("application/json")
        assert llm.call_history == []


class TestPreflightAndHealth:

    def test_options_echoes_origin(self, client):
        response = client.options("/chat", headers={"Origin": "https://shop.example.com"})

        assert response.status_code == 204
        assert response.content == b""
        assert response.headers["access-control-allow-origin"] == "https://shop.example.com"

    def test_health(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["llm_provider"] == "mock"
        assert body["storage"]["backend"] == "memory"
