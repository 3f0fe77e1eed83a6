"""Tool discovery for a chat session.

Builds the session's tool catalog from the storefront server and, when
available, the customer account server. Discovery happens once per
session; a source that cannot be reached contributes no tools.
"""

from typing import Optional

from shared.errors import ToolDiscoveryFailure
from shared.logging import get_logger
from shared.models import ToolCatalog, ToolDescriptor, ToolSource
from mcp_client.client import MCPClient, MCPClientError

logger = get_logger(__name__)


class ToolDiscovery:
    """
    One-shot tool catalog assembly.

    Provides:
    - Per-source connection with failures recorded, not raised
    - A cached catalog for the rest of the session
    """

    def __init__(self, client: MCPClient) -> None:
        self.client = client
        self.failures: dict[ToolSource, str] = {}
        self._catalog: Optional[ToolCatalog] = None

    @property
    def discovered(self) -> bool:
        return self._catalog is not None

    async def discover_source(self, source: ToolSource) -> list[ToolDescriptor]:
        """
        Connect to one tool source.

        Raises:
            ToolDiscoveryFailure: If the source cannot be listed
        """
        try:
            if source == ToolSource.CUSTOMER:
                return await self.client.connect_to_customer_server()
            return await self.client.connect_to_storefront_server()
        except MCPClientError as e:
            raise ToolDiscoveryFailure(
                f"Tool discovery failed for {source.value} server: {e}",
                {"source": source.value}
            ) from e

    async def get_catalog(self) -> ToolCatalog:
        """
        Get the session's tool catalog, discovering it on first use.

        Never raises for unreachable sources; the session then continues
        with whatever tools were found, possibly none.
        """
        if self._catalog is not None:
            return self._catalog

        tools: list[ToolDescriptor] = []
        for source in (ToolSource.STOREFRONT, ToolSource.CUSTOMER):
            try:
                tools.extend(await self.discover_source(source))
            except ToolDiscoveryFailure as e:
                self.failures[source] = e.message
                logger.warning(
                    "MCP connection failed, continuing without its tools",
                    source=source.value,
                    error=e.message
                )

        self._catalog = ToolCatalog(tools=tools)
        logger.info(
            "Tool catalog assembled",
            tool_count=len(tools),
            failed_sources=[s.value for s in self.failures]
        )
        return self._catalog
