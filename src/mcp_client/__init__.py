"""MCP Client - Tool discovery and execution.

Connects to a shop's storefront and customer account tool servers,
assembles the session's tool catalog and routes tool calls.
"""

from mcp_client.client import (
    MCPAuthError,
    MCPClient,
    MCPClientError,
    MCPConnectionError,
    MCPProtocolError,
)
from mcp_client.discovery import ToolDiscovery
from mcp_client.endpoints import CustomerAccountUrlCache

__all__ = [
    "CustomerAccountUrlCache",
    "MCPAuthError",
    "MCPClient",
    "MCPClientError",
    "MCPConnectionError",
    "MCPProtocolError",
    "ToolDiscovery",
]
