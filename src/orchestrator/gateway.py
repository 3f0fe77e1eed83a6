"""AI Gateway - Core orchestration logic.

Drives one chat session from the user's message to the final
``end_turn`` event:

1. Resolve the conversation, save the user's message, load the history
2. Discover the session's tools (failures leave the catalog empty)
3. Run model turns, streaming text to the client as it arrives
4. Dispatch requested tools one at a time and feed results back
5. Repeat until the model stops without asking for tools
"""

import uuid
from dataclasses import dataclass
from typing import Any, Callable, Optional

import httpx

from shared.config import MCPSettings
from shared.errors import ChatError, ToolInvocationFailure
from shared.logging import get_logger, session_context
from shared.models import (
    EventType,
    HistoryMessage,
    ModelMessage,
    Role,
    ToolCatalog,
    ToolResponse,
    ToolUse,
)
from mcp_client.client import MCPClient, MCPClientError
from mcp_client.discovery import ToolDiscovery
from mcp_client.endpoints import CustomerAccountUrlCache
from orchestrator.conversation import ConversationManager
from orchestrator.llm import LLMProvider, TurnHandlers
from orchestrator.streaming import EventStream
from orchestrator.tools import ToolResultHandler

logger = get_logger(__name__)

GENERIC_ERROR = "An error occurred while processing your request."


@dataclass
class ChatSession:
    """Inputs of one chat request."""
    message: str
    conversation_id: str
    prompt_type: Optional[str] = None
    shop_origin: Optional[str] = None
    shop_id: Optional[str] = None


MCPClientFactory = Callable[[ChatSession, Optional[str]], MCPClient]


class AIGateway:
    """
    AI Gateway - Orchestrates model and MCP interactions for chat sessions.

    One instance serves every session; all per-session state lives in
    ``run_session`` locals so sessions share nothing but the store and
    the tool servers.
    """

    def __init__(
        self,
        llm_provider: LLMProvider,
        conversation_manager: ConversationManager,
        account_urls: Optional[CustomerAccountUrlCache] = None,
        mcp_settings: Optional[MCPSettings] = None,
        mcp_client_factory: Optional[MCPClientFactory] = None,
        max_turns: int = 10
    ) -> None:
        """
        Initialize AI Gateway.

        Args:
            llm_provider: Model gateway
            conversation_manager: Persistence helper for conversations
            account_urls: Customer account URL cache; without it customer tools are skipped
            mcp_settings: Tool server settings for the default client factory
            mcp_client_factory: Builds the MCP client of a session
            max_turns: Maximum model calls per request
        """
        self.llm = llm_provider
        self.conversations = conversation_manager
        self.account_urls = account_urls
        self.mcp_settings = mcp_settings or MCPSettings()
        self.mcp_client_factory = mcp_client_factory or self._default_client_factory
        self.max_turns = max_turns

    def _default_client_factory(self, session: ChatSession, customer_endpoint: Optional[str]) -> MCPClient:
        return MCPClient(
            shop_origin=session.shop_origin or "",
            conversation_id=session.conversation_id,
            shop_id=session.shop_id,
            customer_endpoint=customer_endpoint,
            storefront_path=self.mcp_settings.storefront_path,
            timeout=self.mcp_settings.timeout,
        )

    async def run_session(self, session: ChatSession, stream: EventStream) -> None:
        """
        Run one chat session, writing its events to ``stream``.

        Tolerated failures (tool discovery, tool calls, history writes)
        are reported in-band. Anything else is sent as an ``error`` event
        and re-raised for the stream to log.
        """
        request_id = str(uuid.uuid4())
        with session_context(conversation_id=session.conversation_id, request_id=request_id):
            logger.info("Chat session started", prompt_type=session.prompt_type)
            mcp_client: Optional[MCPClient] = None
            try:
                stream.send(EventType.ID, conversation_id=session.conversation_id)

                await self.conversations.add_user_message(session.conversation_id, session.message)
                history = await self.conversations.load_history(session.conversation_id)

                mcp_client = await self._create_mcp_client(session)
                catalog = await self._discover_tools(mcp_client)

                tool_results = ToolResultHandler(self.conversations, session.conversation_id, history)
                turns = await self._run_turns(session, history, catalog, mcp_client, tool_results, stream)

                stream.send(EventType.END_TURN)
                if tool_results.products:
                    stream.send(
                        EventType.PRODUCT_RESULTS,
                        products=[p.model_dump() for p in tool_results.products]
                    )
                logger.info("Chat session finished", turns=turns, tool_count=len(catalog))

            except ChatError as e:
                stream.send(EventType.ERROR, error=e.message)
                raise
            except Exception:
                stream.send(EventType.ERROR, error=GENERIC_ERROR)
                raise
            finally:
                if mcp_client is not None:
                    await mcp_client.close()

    async def _create_mcp_client(self, session: ChatSession) -> Optional[MCPClient]:
        if not session.shop_origin:
            return None

        customer_endpoint = None
        if self.account_urls is not None:
            customer_endpoint = await self.account_urls.get_customer_endpoint(
                session.conversation_id, session.shop_origin
            )
        return self.mcp_client_factory(session, customer_endpoint)

    async def _discover_tools(self, mcp_client: Optional[MCPClient]) -> ToolCatalog:
        """Get the session's tools once; an unreachable tool server means no tools."""
        if mcp_client is None:
            logger.warning("No shop origin, continuing without tools")
            return ToolCatalog()
        return await ToolDiscovery(mcp_client).get_catalog()

    async def _run_turns(
        self,
        session: ChatSession,
        history: list[HistoryMessage],
        catalog: ToolCatalog,
        mcp_client: Optional[MCPClient],
        tool_results: ToolResultHandler,
        stream: EventStream
    ) -> int:
        """
        Call the model until it stops without requesting tools.

        Returns:
            Number of model calls made
        """
        async def on_message(message: ModelMessage) -> None:
            history.append(HistoryMessage(role=Role.ASSISTANT, content=message.content))
            await self.conversations.record(session.conversation_id, Role.ASSISTANT, message.content)
            stream.send(EventType.MESSAGE_COMPLETE)

        async def on_tool_use(tool_use: ToolUse) -> None:
            await self._dispatch_tool(mcp_client, tool_use, tool_results, stream)

        def on_content_block(block: dict[str, Any]) -> None:
            if block.get("type") == "text":
                stream.send(EventType.CONTENT_BLOCK_COMPLETE, content_block=block)

        handlers = TurnHandlers(
            on_text=lambda text: stream.send(EventType.CHUNK, chunk=text),
            on_message=on_message,
            on_tool_use=on_tool_use,
            on_content_block=on_content_block,
        )

        turns = 0
        while turns < self.max_turns:
            turns += 1
            message = await self.llm.stream_turn(history, catalog, session.prompt_type, handlers)
            if not message.requests_tools:
                return turns

        logger.warning("Max turns reached", turns=turns)
        return turns

    async def _dispatch_tool(
        self,
        mcp_client: Optional[MCPClient],
        tool_use: ToolUse,
        tool_results: ToolResultHandler,
        stream: EventStream
    ) -> None:
        """Call one tool and report its outcome to the client and the history."""
        logger.info("Executing tool", tool=tool_use.name, tool_use_id=tool_use.id)

        if mcp_client is None:
            response = ToolResponse(error={"type": "unavailable", "data": "No tool server is available"})
        else:
            try:
                response = await mcp_client.call_tool(tool_use.name, tool_use.input)
            except (MCPClientError, httpx.HTTPError) as e:
                failure = ToolInvocationFailure(tool_use.name, str(e) or "Tool execution failed")
                logger.error("Tool call failed", tool=tool_use.name, error=failure.message)
                stream.send(
                    EventType.TOOL_RESULT,
                    tool_use_id=tool_use.id,
                    tool_result={"error": failure.message}
                )
                await tool_results.handle_error(tool_use, failure.message)
                return

        stream.send(EventType.TOOL_RESULT, tool_use_id=tool_use.id, tool_result=response.payload())
        logger.info("Tool executed", tool=tool_use.name, status="success" if response.ok else "error")

        if response.ok:
            await tool_results.handle_success(tool_use, response)
        else:
            await tool_results.handle_error(tool_use, response.error)
        stream.send(EventType.NEW_MESSAGE)

    async def get_conversation_history(self, conversation_id: str) -> list[dict[str, Any]]:
        """Get the stored history of a conversation; unknown ids yield an empty list."""
        return await self.conversations.get_history_for_client(conversation_id)

    async def health_check(self) -> dict[str, Any]:
        """Report the gateway's configuration."""
        status: dict[str, Any] = {
            "gateway": "healthy",
            "llm_provider": self.llm.settings.provider,
            "max_turns": self.max_turns,
        }
        get_stats = getattr(self.conversations.store, "get_stats", None)
        status["storage"] = get_stats() if get_stats else {"backend": type(self.conversations.store).__name__}
        return status
