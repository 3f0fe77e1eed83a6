"""Side effects of tool results.

After each tool call the result is added to the conversation history so
the next model turn can read it. Catalog search results additionally
feed the list of products shown to the shopper when the session ends.
"""

import json
import uuid
from typing import Any

from shared.logging import get_logger
from shared.models import HistoryMessage, Product, Role, ToolResponse, ToolUse
from orchestrator.conversation import ConversationManager

logger = get_logger(__name__)

PRODUCT_SEARCH_TOOL = "search_shop_catalog"
MAX_PRODUCTS_TO_DISPLAY = 3


class ToolResultHandler:
    """Records tool outcomes in the session history and collects products."""

    def __init__(
        self,
        conversations: ConversationManager,
        conversation_id: str,
        history: list[HistoryMessage],
        max_products: int = MAX_PRODUCTS_TO_DISPLAY
    ) -> None:
        self.conversations = conversations
        self.conversation_id = conversation_id
        self.history = history
        self.max_products = max_products
        self.products: list[Product] = []

    async def handle_success(self, tool_use: ToolUse, response: ToolResponse) -> None:
        """Add a successful result to history; collect products from catalog searches."""
        if tool_use.name == PRODUCT_SEARCH_TOOL:
            self.products.extend(self.extract_products(response.result))

        await self._add_tool_result(tool_use.id, _result_content(response.result), is_error=False)

    async def handle_error(self, tool_use: ToolUse, error: Any) -> None:
        """Add a failed call to history so the model can react to it."""
        if isinstance(error, dict):
            error = error.get("data", error)
        text = error if isinstance(error, str) else json.dumps(error, default=str)
        await self._add_tool_result(tool_use.id, text, is_error=True)

    async def _add_tool_result(self, tool_use_id: str, content: Any, is_error: bool) -> None:
        block: dict[str, Any] = {
            "type": "tool_result",
            "tool_use_id": tool_use_id,
            "content": content,
        }
        if is_error:
            block["is_error"] = True

        blocks = [block]
        self.history.append(HistoryMessage(role=Role.TOOL, content=blocks))
        await self.conversations.record(self.conversation_id, Role.TOOL, blocks)

    def extract_products(self, result: Any) -> list[Product]:
        """Pull displayable products out of a catalog search result."""
        try:
            content = (result or {}).get("content") or []
            if not content:
                return []
            payload = content[0].get("text")
            data = payload if isinstance(payload, dict) else json.loads(payload)
            products = data.get("products")
        except (AttributeError, TypeError, ValueError) as e:
            logger.warning("Could not parse product search result", error=str(e))
            return []

        if not isinstance(products, list):
            return []
        return [format_product(p) for p in products[:self.max_products]]


def format_product(product: dict[str, Any]) -> Product:
    """Shape a catalog product for display."""
    price_range = product.get("price_range")
    variants = product.get("variants") or []
    if price_range:
        price = f"{price_range.get('currency')} {price_range.get('min')}"
    elif variants:
        price = f"{variants[0].get('currency')} {variants[0].get('price')}"
    else:
        price = "Price not available"

    return Product(
        id=str(product.get("product_id") or f"product-{uuid.uuid4().hex[:8]}"),
        title=product.get("title") or "Product",
        price=price,
        image_url=product.get("image_url") or "",
        description=product.get("description") or "",
        url=product.get("url") or "",
    )


def _result_content(result: Any) -> Any:
    """
    Render an MCP tool result as tool_result content.

    Text items pass through as text blocks; anything else is sent as JSON text.
    """
    items = (result or {}).get("content") if isinstance(result, dict) else None
    if isinstance(items, list):
        blocks = [
            {"type": "text", "text": item.get("text", "")}
            for item in items
            if isinstance(item, dict) and item.get("type") == "text"
        ]
        if blocks:
            return blocks
    return json.dumps(result, default=str)
