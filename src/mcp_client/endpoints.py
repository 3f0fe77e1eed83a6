"""Customer account endpoint resolution.

The customer account MCP server lives under the shop's customer account
URL, which is looked up once per conversation through the storefront API
and then kept in the message store.
"""

from typing import Optional
from urllib.parse import urlparse

import httpx

from shared.logging import get_logger
from storage.base import MessageStore

logger = get_logger(__name__)

SHOP_URL_QUERY = """
query shop {
  shop {
    url
  }
}
"""


class CustomerAccountUrlCache:
    """
    Read-through cache of customer account URLs keyed by conversation.

    Entries are populated on first lookup and never invalidated.
    """

    def __init__(
        self,
        store: MessageStore,
        storefront_access_token: Optional[str] = None,
        api_version: str = "2025-04",
        customer_path: str = "/customer/api/mcp",
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ) -> None:
        self.store = store
        self.storefront_access_token = storefront_access_token
        self.api_version = api_version
        self.customer_path = customer_path
        self.timeout = timeout
        self._transport = transport

    async def get_account_url(self, conversation_id: str, shop_origin: Optional[str]) -> Optional[str]:
        """Get the customer account URL, asking the storefront on a miss."""
        existing = await self.store.get_customer_account_url(conversation_id)
        if existing:
            return existing

        if not shop_origin:
            return None

        shop_url = await self._fetch_shop_url(shop_origin)
        if not shop_url:
            return None

        account_url = f"{shop_url.rstrip('/')}/account"
        await self.store.store_customer_account_url(conversation_id, account_url)
        return account_url

    async def get_customer_endpoint(self, conversation_id: str, shop_origin: Optional[str]) -> Optional[str]:
        """
        Get the customer account MCP endpoint for a conversation.

        Any lookup failure yields None; the session then runs without
        customer tools.
        """
        try:
            account_url = await self.get_account_url(conversation_id, shop_origin)
        except Exception as e:
            logger.error(
                "Error getting customer MCP endpoint",
                conversation_id=conversation_id,
                error=str(e)
            )
            return None

        if not account_url:
            return None
        return f"{account_url}{self.customer_path}"

    async def _fetch_shop_url(self, shop_origin: str) -> Optional[str]:
        hostname = urlparse(shop_origin).hostname
        if not hostname or not self.storefront_access_token:
            logger.debug("Storefront lookup unavailable", shop_origin=shop_origin)
            return None

        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
            response = await client.post(
                f"https://{hostname}/api/{self.api_version}/graphql.json",
                json={"query": SHOP_URL_QUERY},
                headers={
                    "Content-Type": "application/json",
                    "X-Shopify-Storefront-Access-Token": self.storefront_access_token,
                },
            )
            response.raise_for_status()
            body = response.json()

        return ((body.get("data") or {}).get("shop") or {}).get("url")
