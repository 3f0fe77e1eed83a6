"""MCP Client for tool discovery and execution.

Speaks JSON-RPC 2.0 over HTTP to up to two tool servers for a shop:
- the storefront server (catalog, cart, policies), always available
- the customer account server (orders, account), when its endpoint is known
"""

import itertools
from typing import Any, Optional

import httpx
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from shared.logging import get_logger
from shared.models import ToolDescriptor, ToolResponse, ToolSource
from shared.schema import normalize_input_schema, validate_arguments

logger = get_logger(__name__)


class MCPClientError(Exception):
    """Base exception for MCP Client errors."""
    pass


class MCPConnectionError(MCPClientError):
    """Connection to an MCP server failed."""
    pass


class MCPAuthError(MCPClientError):
    """The MCP server rejected the request as unauthorized."""
    pass


class MCPProtocolError(MCPClientError):
    """The MCP server answered with a JSON-RPC error or a malformed body."""

    def __init__(self, message: str, code: Optional[int] = None) -> None:
        super().__init__(message)
        self.code = code


class MCPClient:
    """
    Client for the tool servers of one shop, scoped to one conversation.

    Tools discovered on either server are remembered with their source so
    that ``call_tool`` routes each call to the server that advertised it.
    """

    def __init__(
        self,
        shop_origin: str,
        conversation_id: str,
        shop_id: Optional[str] = None,
        customer_endpoint: Optional[str] = None,
        customer_access_token: Optional[str] = None,
        storefront_path: str = "/api/mcp",
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ) -> None:
        """
        Initialize MCP Client.

        Args:
            shop_origin: Shop origin URL, e.g. https://shop.example.com
            conversation_id: Conversation the client serves
            shop_id: Optional shop identifier, forwarded as a header
            customer_endpoint: Customer account MCP endpoint, if known
            customer_access_token: Bearer token for the customer server
            storefront_path: Path of the storefront MCP endpoint
            timeout: Request timeout in seconds
            transport: Optional httpx transport (tests)
        """
        self.storefront_endpoint = shop_origin.rstrip("/") + storefront_path
        self.customer_endpoint = customer_endpoint
        self.conversation_id = conversation_id
        self.shop_id = shop_id
        self.customer_access_token = customer_access_token
        self.timeout = timeout
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None
        self._ids = itertools.count(1)

        self.storefront_tools: list[ToolDescriptor] = []
        self.customer_tools: list[ToolDescriptor] = []

    @property
    def tools(self) -> list[ToolDescriptor]:
        """All tools discovered so far, storefront first."""
        return [*self.storefront_tools, *self.customer_tools]

    def _get_headers(self, source: ToolSource) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.shop_id:
            headers["X-Shopify-Shop-Id"] = self.shop_id
        if source == ToolSource.CUSTOMER and self.customer_access_token:
            headers["Authorization"] = self.customer_access_token
        return headers

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=self.timeout, transport=self._transport)
        return self._client

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> "MCPClient":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    def _endpoint_for(self, source: ToolSource) -> str:
        if source == ToolSource.CUSTOMER:
            if not self.customer_endpoint:
                raise MCPClientError("No customer MCP endpoint configured")
            return self.customer_endpoint
        return self.storefront_endpoint

    @retry(
        retry=retry_if_exception_type(MCPConnectionError),
        stop=stop_after_attempt(2),
        wait=wait_exponential(multiplier=0.5, min=0.5, max=5),
        reraise=True
    )
    async def _rpc(
        self,
        source: ToolSource,
        method: str,
        params: Optional[dict[str, Any]] = None
    ) -> dict[str, Any]:
        """
        Send one JSON-RPC request and return its ``result`` member.

        Raises:
            MCPConnectionError: If the server is unreachable
            MCPAuthError: If the server answers 401/403
            MCPProtocolError: If the server answers with a JSON-RPC error
        """
        endpoint = self._endpoint_for(source)
        payload = {
            "jsonrpc": "2.0",
            "method": method,
            "id": next(self._ids),
            "params": params or {},
        }

        try:
            client = await self._get_client()
            response = await client.post(endpoint, json=payload, headers=self._get_headers(source))
        except httpx.TransportError as e:
            raise MCPConnectionError(f"Cannot connect to MCP server at {endpoint}: {e}") from e

        if response.status_code in (401, 403):
            raise MCPAuthError(f"MCP server at {endpoint} requires authorization")

        try:
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPStatusError as e:
            raise MCPProtocolError(f"Request failed: {e}", code=e.response.status_code) from e
        except ValueError as e:
            raise MCPProtocolError(f"Invalid JSON from MCP server: {e}") from e

        if not isinstance(data, dict):
            raise MCPProtocolError("Malformed JSON-RPC response from MCP server")

        if data.get("error"):
            error = data["error"]
            raise MCPProtocolError(error.get("message", "Unknown error"), code=error.get("code"))

        return data.get("result") or {}

    async def connect(self, source: ToolSource) -> list[ToolDescriptor]:
        """
        List the tools of one server and remember them.

        Args:
            source: Which server to connect to

        Returns:
            Tool descriptors advertised by the server

        Raises:
            MCPProtocolError: If the listing is not a list of named tools
        """
        result = await self._rpc(source, "tools/list")
        listed = result.get("tools", []) if isinstance(result, dict) else None
        if not isinstance(listed, list) or not all(
            isinstance(tool, dict) and isinstance(tool.get("name"), str) and tool["name"]
            for tool in listed
        ):
            raise MCPProtocolError(f"Malformed tools/list response from {source.value} server")

        tools = [
            ToolDescriptor(
                name=tool["name"],
                description=tool.get("description") or "",
                input_schema=normalize_input_schema(tool.get("inputSchema") or tool.get("input_schema")),
                source=source,
            )
            for tool in listed
        ]

        if source == ToolSource.CUSTOMER:
            self.customer_tools = tools
        else:
            self.storefront_tools = tools

        logger.info(
            "Connected to MCP server",
            source=source.value,
            tool_count=len(tools)
        )
        return tools

    async def connect_to_storefront_server(self) -> list[ToolDescriptor]:
        return await self.connect(ToolSource.STOREFRONT)

    async def connect_to_customer_server(self) -> list[ToolDescriptor]:
        if not self.customer_endpoint:
            logger.debug("No customer MCP endpoint, skipping customer tools")
            return []
        return await self.connect(ToolSource.CUSTOMER)

    def _find_tool(self, name: str) -> Optional[ToolDescriptor]:
        for tool in self.tools:
            if tool.name == name:
                return tool
        return None

    async def call_tool(self, tool_name: str, arguments: dict[str, Any]) -> ToolResponse:
        """
        Call a tool by name on the server that advertised it.

        Protocol-level failures (unknown tool, invalid arguments, JSON-RPC
        errors, tool errors, missing authorization) come back as an error
        response. Transport failures raise.

        Raises:
            MCPConnectionError: If the server is unreachable after retries
        """
        tool = self._find_tool(tool_name)
        if tool is None:
            return ToolResponse(error={"type": "unknown_tool", "data": f"Tool {tool_name} not found"})

        errors = validate_arguments(arguments, tool.input_schema)
        if errors:
            return ToolResponse(error={"type": "invalid_arguments", "data": errors})

        logger.debug("Calling tool", tool=tool_name, source=tool.source.value)

        try:
            result = await self._rpc(
                tool.source,
                "tools/call",
                {"name": tool_name, "arguments": arguments}
            )
        except MCPAuthError:
            return ToolResponse(error={
                "type": "auth_required",
                "data": "Customer authorization is required to use this tool."
            })
        except MCPProtocolError as e:
            return ToolResponse(error={"type": "tool_error", "data": str(e)})

        if result.get("isError"):
            return ToolResponse(error={"type": "tool_error", "data": _content_text(result)})

        return ToolResponse(result=result)


def _content_text(result: dict[str, Any]) -> str:
    """Join the text items of an MCP tool result."""
    return "\n".join(
        item.get("text", "") for item in result.get("content", []) if item.get("type") == "text"
    ) or "Tool execution failed"
