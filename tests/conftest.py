"""Shared fixtures for chat orchestrator tests."""

from typing import Any, Optional
from unittest.mock import AsyncMock, MagicMock

import pytest

from shared.config import LLMSettings
from shared.models import ToolDescriptor, ToolResponse, ToolSource
from mcp_client.client import MCPClient
from orchestrator.conversation import ConversationManager
from orchestrator.gateway import AIGateway, ChatSession
from orchestrator.llm import MockLLMProvider
from orchestrator.prompts import PromptLibrary
from orchestrator.streaming import EventStream
from storage.base import InMemoryMessageStore
from helpers import collect


@pytest.fixture
def prompts() -> PromptLibrary:
    return PromptLibrary({"standardAssistant": "You are helpful.", "brief": "Be brief."})


@pytest.fixture
def llm(prompts) -> MockLLMProvider:
    return MockLLMProvider(LLMSettings(provider="mock", model="test-model", max_tokens=100), prompts)


@pytest.fixture
def store() -> InMemoryMessageStore:
    return InMemoryMessageStore()


@pytest.fixture
def mcp_client() -> MagicMock:
    client = MagicMock(spec=MCPClient)
    client.connect_to_storefront_server = AsyncMock(return_value=[
        ToolDescriptor(
            name="search_shop_catalog",
            description="Search the catalog",
            input_schema={"type": "object", "properties": {"query": {"type": "string"}}},
            source=ToolSource.STOREFRONT,
        )
    ])
    client.connect_to_customer_server = AsyncMock(return_value=[])
    client.call_tool = AsyncMock(return_value=ToolResponse(result={"content": [{"type": "text", "text": "ok"}]}))
    client.close = AsyncMock()
    return client


@pytest.fixture
def gateway(llm, store, mcp_client) -> AIGateway:
    return AIGateway(
        llm_provider=llm,
        conversation_manager=ConversationManager(store),
        mcp_client_factory=lambda session, endpoint: mcp_client,
        max_turns=5,
    )


@pytest.fixture
def run_session(gateway):
    """Run a chat session and return the events it streamed."""
    async def _run(
        message: str = "Hello",
        conversation_id: str = "conv-1",
        shop_origin: Optional[str] = "https://shop.example.com",
        prompt_type: Optional[str] = None
    ) -> list[dict[str, Any]]:
        session = ChatSession(
            message=message,
            conversation_id=conversation_id,
            prompt_type=prompt_type,
            shop_origin=shop_origin,
        )
        return await collect(EventStream.open(lambda stream: gateway.run_session(session, stream)))

    return _run
