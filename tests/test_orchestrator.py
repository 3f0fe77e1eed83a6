"""Tests for the chat session turn loop."""

import json

import pytest
from unittest.mock import AsyncMock

from shared.models import Role, ToolResponse
from mcp_client.client import MCPConnectionError
from helpers import text_message, tool_message


def types_of(events):
    return [e["type"] for e in events]


class TestTurnLoop:
    """Tests for AIGateway.run_session."""

    @pytest.mark.asyncio
    async def test_single_turn_without_tools(self, llm, run_session):
        """A reply without tool use ends after one model call."""
        llm.set_next_response(text_message("Hello! How can I help you today?"))

        events = await run_session("Hello")
        types = types_of(events)

        assert len(llm.call_history) == 1
        assert types[0] == "id"
        assert events[0]["conversation_id"] == "conv-1"
        assert types[-2:] == ["message_complete", "end_turn"]
        assert set(types[1:-2]) <= {"chunk", "content_block_complete"}
        assert "".join(e["chunk"] for e in events if e["type"] == "chunk") == "Hello! How can I help you today?"

    @pytest.mark.asyncio
    async def test_tool_turn_then_final_answer(self, llm, mcp_client, run_session):
        """A tool-use turn is followed by exactly one tool call and a second model call."""
        llm.set_next_response(tool_message("toolu_1", "search_shop_catalog", {"query": "shoes"}))
        llm.set_next_response(text_message("We have running shoes."))

        events = await run_session("Do you sell shoes?")
        types = types_of(events)

        assert len(llm.call_history) == 2
        mcp_client.call_tool.assert_awaited_once_with("search_shop_catalog", {"query": "shoes"})

        completes = [i for i, t in enumerate(types) if t == "message_complete"]
        tool_result = types.index("tool_result")
        assert len(completes) == 2
        assert completes[0] < tool_result < completes[1]
        assert events[tool_result]["tool_use_id"] == "toolu_1"
        assert events[tool_result]["tool_result"] == {"result": {"content": [{"type": "text", "text": "ok"}]}}
        assert "new_message" in types
        assert types[-1] == "end_turn"

    @pytest.mark.asyncio
    async def test_second_call_sees_tool_result(self, llm, run_session):
        """The follow-up model call carries the assistant turn and the tool result."""
        llm.set_next_response(tool_message("toolu_1", "search_shop_catalog", {"query": "hats"}))
        llm.set_next_response(text_message("Here are some hats."))

        await run_session("Hats?")

        messages = llm.call_history[1]["messages"]
        assert messages[-2]["role"] == "assistant"
        assert messages[-2]["content"][1]["type"] == "tool_use"
        assert messages[-1]["role"] == "user"
        block = messages[-1]["content"][0]
        assert block["type"] == "tool_result"
        assert block["tool_use_id"] == "toolu_1"
        assert block["content"] == [{"type": "text", "text": "ok"}]

    @pytest.mark.asyncio
    async def test_failed_tool_call_continues_loop(self, llm, mcp_client, run_session):
        """A raising tool call is reported and the model is called again."""
        mcp_client.call_tool = AsyncMock(side_effect=MCPConnectionError("Cannot connect to MCP server"))
        llm.set_next_response(tool_message("toolu_9", "search_shop_catalog", {"query": "socks"}))
        llm.set_next_response(text_message("Sorry, search is unavailable."))

        events = await run_session("Socks?")

        tool_results = [e for e in events if e["type"] == "tool_result"]
        assert len(tool_results) == 1
        assert "error" in tool_results[0]["tool_result"]
        assert "Cannot connect" in tool_results[0]["tool_result"]["error"]
        assert "new_message" not in types_of(events)

        assert len(llm.call_history) == 2
        failure = llm.call_history[1]["messages"][-1]["content"][0]
        assert failure["type"] == "tool_result"
        assert failure["is_error"] is True
        assert "Cannot connect" in failure["content"]
        assert types_of(events)[-1] == "end_turn"

    @pytest.mark.asyncio
    async def test_tool_error_response_continues_loop(self, llm, mcp_client, run_session):
        """An error payload from the tool server is forwarded as-is."""
        mcp_client.call_tool = AsyncMock(return_value=ToolResponse(
            error={"type": "auth_required", "data": "Customer authorization is required"}
        ))
        llm.set_next_response(tool_message("toolu_2", "get_orders", {}))
        llm.set_next_response(text_message("Please sign in first."))

        events = await run_session("Where is my order?")

        tool_result = next(e for e in events if e["type"] == "tool_result")
        assert tool_result["tool_result"] == {
            "error": {"type": "auth_required", "data": "Customer authorization is required"}
        }
        failure = llm.call_history[1]["messages"][-1]["content"][0]
        assert failure["content"] == "Customer authorization is required"
        assert failure["is_error"] is True
        types = types_of(events)
        assert "new_message" in types
        assert types.index("new_message") > types.index("tool_result")

    @pytest.mark.asyncio
    async def test_tools_dispatched_in_request_order(self, llm, mcp_client, run_session):
        """Several tool-use blocks in one message are called one at a time, in order."""
        from shared.models import ModelMessage

        llm.set_next_response(ModelMessage(
            content=[
                {"type": "tool_use", "id": "a", "name": "search_shop_catalog", "input": {"query": "1"}},
                {"type": "tool_use", "id": "b", "name": "search_shop_catalog", "input": {"query": "2"}},
            ],
            stop_reason="tool_use",
        ))
        llm.set_next_response(text_message("Done."))

        events = await run_session("Two searches")

        assert [c.args[1]["query"] for c in mcp_client.call_tool.await_args_list] == ["1", "2"]
        assert [e["tool_use_id"] for e in events if e["type"] == "tool_result"] == ["a", "b"]

    @pytest.mark.asyncio
    async def test_discovery_failure_runs_without_tools(self, llm, mcp_client, run_session):
        """Unreachable tool servers leave the session with an empty catalog."""
        mcp_client.connect_to_storefront_server = AsyncMock(side_effect=MCPConnectionError("refused"))
        mcp_client.connect_to_customer_server = AsyncMock(side_effect=MCPConnectionError("refused"))
        llm.set_next_response(text_message("Hi there."))

        events = await run_session("Hello")

        assert llm.call_history[0]["tools"] == []
        assert types_of(events)[-1] == "end_turn"

    @pytest.mark.asyncio
    async def test_no_shop_origin_runs_without_tools(self, llm, run_session):
        llm.set_next_response(text_message("Hi."))

        events = await run_session("Hello", shop_origin=None)

        assert llm.call_history[0]["tools"] == []
        assert types_of(events)[-1] == "end_turn"

    @pytest.mark.asyncio
    async def test_catalog_passed_to_model(self, llm, run_session):
        llm.set_next_response(text_message("Hi."))

        await run_session("Hello")

        assert llm.call_history[0]["tools"] == [{
            "name": "search_shop_catalog",
            "description": "Search the catalog",
            "input_schema": {"type": "object", "properties": {"query": {"type": "string"}}},
        }]

    @pytest.mark.asyncio
    async def test_streaming_failure_falls_back(self, llm, store, run_session):
        """A broken stream is retried without streaming and still completes."""
        llm.stream_failures = 1
        llm.set_next_response(text_message("A complete answer."))

        events = await run_session("Question")

        assert [call["streaming"] for call in llm.call_history] == [True, False]
        assert types_of(events).count("message_complete") == 1
        assert types_of(events)[-1] == "end_turn"

        stored = await store.get_conversation_history("conv-1")
        assert json.loads(stored[-1].content) == [{"type": "text", "text": "A complete answer."}]

    @pytest.mark.asyncio
    async def test_streaming_failure_does_not_repeat_text(self, llm, run_session):
        """Chunks sent before the stream broke are not sent again by the fallback."""
        llm.stream_failures = 1
        llm.set_next_response(text_message("A complete answer."))

        events = await run_session("Question")

        chunks = [e["chunk"] for e in events if e["type"] == "chunk"]
        assert chunks == ["A comple", "te answer."]
        assert "".join(chunks) == "A complete answer."
        blocks = [e for e in events if e["type"] == "content_block_complete"]
        assert len(blocks) == 1

    @pytest.mark.asyncio
    async def test_model_unavailable_ends_with_error(self, llm, run_session):
        """When both model paths fail the client gets an error event and no end_turn."""
        llm.stream_failures = 1
        llm.completion_failures = 1

        events = await run_session("Question")
        types = types_of(events)

        assert types[0] == "id"
        assert types[-1] == "error"
        assert "end_turn" not in types
        assert "message_complete" not in types

    @pytest.mark.asyncio
    async def test_max_turns_stops_loop(self, llm, mcp_client, gateway, run_session):
        """A model that keeps asking for tools is cut off after max_turns calls."""
        gateway.max_turns = 3
        for i in range(5):
            llm.set_next_response(tool_message(f"toolu_{i}", "search_shop_catalog", {"query": "x"}))

        events = await run_session("Loop")

        assert len(llm.call_history) == 3
        assert mcp_client.call_tool.await_count == 3
        assert types_of(events)[-1] == "end_turn"

    @pytest.mark.asyncio
    async def test_product_results_sent_after_end_turn(self, llm, mcp_client, run_session):
        catalog = {"products": [
            {"product_id": "gid://1", "title": "Trail Runner", "price_range": {"currency": "USD", "min": "89.00"},
             "url": "https://shop.example.com/products/trail"},
        ]}
        mcp_client.call_tool = AsyncMock(return_value=ToolResponse(
            result={"content": [{"type": "text", "text": json.dumps(catalog)}]}
        ))
        llm.set_next_response(tool_message("toolu_1", "search_shop_catalog", {"query": "runner"}))
        llm.set_next_response(text_message("Try the Trail Runner."))

        events = await run_session("Running shoes")

        assert types_of(events)[-2:] == ["end_turn", "product_results"]
        product = events[-1]["products"][0]
        assert product["id"] == "gid://1"
        assert product["price"] == "USD 89.00"

    @pytest.mark.asyncio
    async def test_prompt_type_selects_system_prompt(self, llm, run_session):
        llm.set_next_response(text_message("Ok."))
        llm.set_next_response(text_message("Ok."))

        await run_session("Hi", prompt_type="brief")
        await run_session("Hi", prompt_type="unknown")

        assert llm.call_history[0]["system"] == "Be brief."
        assert llm.call_history[1]["system"] == "You are helpful."


class TestPersistence:
    """Tests for history handling during a session."""

    @pytest.mark.asyncio
    async def test_user_message_saved_before_model_call(self, llm, store, run_session):
        llm.set_next_response(text_message("Hi."))

        await run_session("First message")

        first_call = llm.call_history[0]["messages"]
        assert first_call == [{"role": "user", "content": "First message"}]
        stored = await store.get_conversation_history("conv-1")
        assert [m.role for m in stored] == [Role.USER, Role.ASSISTANT]

    @pytest.mark.asyncio
    async def test_history_loaded_from_store(self, llm, store, run_session):
        """Earlier exchanges are reloaded from the store, not kept in memory."""
        await store.save_message("conv-1", Role.USER, "Earlier question")
        await store.save_message("conv-1", Role.ASSISTANT, json.dumps([{"type": "text", "text": "Earlier answer"}]))
        llm.set_next_response(text_message("Follow-up answer."))

        await run_session("Follow-up")

        assert llm.call_history[0]["messages"] == [
            {"role": "user", "content": "Earlier question"},
            {"role": "assistant", "content": [{"type": "text", "text": "Earlier answer"}]},
            {"role": "user", "content": "Follow-up"},
        ]

    @pytest.mark.asyncio
    async def test_tool_results_stored_with_tool_role(self, llm, store, run_session):
        llm.set_next_response(tool_message("toolu_1", "search_shop_catalog", {"query": "a"}))
        llm.set_next_response(text_message("Done."))

        await run_session("Search")

        stored = await store.get_conversation_history("conv-1")
        assert [m.role for m in stored] == [Role.USER, Role.ASSISTANT, Role.TOOL, Role.ASSISTANT]

    @pytest.mark.asyncio
    async def test_history_write_failure_is_not_fatal(self, llm, store, run_session):
        """Failing to persist the assistant message does not abort the turn."""
        original = store.save_message
        calls = {"n": 0}

        async def flaky_save(conversation_id, role, content):
            calls["n"] += 1
            if calls["n"] > 1:
                raise RuntimeError("database is down")
            return await original(conversation_id, role, content)

        store.save_message = flaky_save
        llm.set_next_response(text_message("Still here."))

        events = await run_session("Hello")

        assert types_of(events)[-2:] == ["message_complete", "end_turn"]

    @pytest.mark.asyncio
    async def test_history_load_failure_is_fatal(self, llm, store, run_session):
        store.get_conversation_history = AsyncMock(side_effect=RuntimeError("database is down"))

        events = await run_session("Hello")

        assert types_of(events) == ["id", "error"]
        assert llm.call_history == []
