"""Core data models for the chat backend.

Defines the conversation history shapes, the tool catalog, model turn
results and the transient events passed between the model gateway, the
orchestrator and the output channel.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Literal, Optional, Union

from pydantic import BaseModel, Field


class Role(str, Enum):
    """Author of a history message."""
    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"


# Roles accepted by the model provider; tool results travel as user turns.
PROVIDER_ROLES = {
    Role.USER: "user",
    Role.ASSISTANT: "assistant",
    Role.TOOL: "user",
}


class StoredMessage(BaseModel):
    """A message row as kept by the message store. Content is an opaque string."""
    id: str
    conversation_id: str
    role: Role
    content: str
    created_at: datetime = Field(default_factory=datetime.utcnow)


class HistoryMessage(BaseModel):
    """
    A message in the in-memory conversation history.

    Content is either plain text or a list of content blocks
    (text, tool_use, tool_result).
    """
    role: Role
    content: Union[str, list[dict[str, Any]]]
    created_at: Optional[datetime] = None

    def to_provider(self) -> dict[str, Any]:
        """Render the message in the provider's request format."""
        return {"role": PROVIDER_ROLES[self.role], "content": self.content}


class ToolSource(str, Enum):
    """Which tool server advertised a tool."""
    STOREFRONT = "storefront"
    CUSTOMER = "customer"


class ToolDescriptor(BaseModel):
    """A tool offered to the model."""
    name: str
    description: str = ""
    input_schema: dict[str, Any] = Field(
        default_factory=lambda: {"type": "object", "properties": {}}
    )
    source: ToolSource = ToolSource.STOREFRONT

    def to_provider(self) -> dict[str, Any]:
        """Render the descriptor in the provider's tool format."""
        return {
            "name": self.name,
            "description": self.description,
            "input_schema": self.input_schema,
        }


class ToolCatalog(BaseModel):
    """
    The tools available to one chat session.

    Assembled once per session from the storefront source and, when a
    customer endpoint is known, the customer source.
    """
    tools: list[ToolDescriptor] = Field(default_factory=list)

    def __len__(self) -> int:
        return len(self.tools)

    def __bool__(self) -> bool:
        return bool(self.tools)

    def get(self, name: str) -> Optional[ToolDescriptor]:
        for tool in self.tools:
            if tool.name == name:
                return tool
        return None

    def to_provider(self) -> list[dict[str, Any]]:
        return [tool.to_provider() for tool in self.tools]


class ToolResponse(BaseModel):
    """Outcome of one tool call: exactly one of result or error is set."""
    result: Optional[Any] = None
    error: Optional[Any] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def payload(self) -> dict[str, Any]:
        """The body forwarded to the client in a tool_result event."""
        if self.error is not None:
            return {"error": self.error}
        return {"result": self.result}


class ToolUse(BaseModel):
    """A tool invocation requested by the model."""
    id: str
    name: str
    input: dict[str, Any] = Field(default_factory=dict)


class ModelMessage(BaseModel):
    """The final message of one model turn."""
    id: Optional[str] = None
    role: Literal["assistant"] = "assistant"
    content: list[dict[str, Any]] = Field(default_factory=list)
    stop_reason: Optional[str] = None
    usage: dict[str, int] = Field(default_factory=dict)

    @property
    def tool_uses(self) -> list[ToolUse]:
        """Tool-use blocks in the order they appear in the message."""
        return [
            ToolUse(id=block["id"], name=block["name"], input=block.get("input") or {})
            for block in self.content
            if block.get("type") == "tool_use"
        ]

    @property
    def text(self) -> str:
        return "".join(
            block.get("text", "") for block in self.content if block.get("type") == "text"
        )

    @property
    def requests_tools(self) -> bool:
        """Whether the model stopped to wait for tool results."""
        return self.stop_reason == "tool_use"


# Transient events produced by the model gateway during a turn.

class TextDelta(BaseModel):
    kind: Literal["text"] = "text"
    text: str


class MessageComplete(BaseModel):
    kind: Literal["message"] = "message"
    message: ModelMessage


class ToolUseRequested(BaseModel):
    kind: Literal["tool_use"] = "tool_use"
    tool_use: ToolUse


class ContentBlockComplete(BaseModel):
    kind: Literal["content_block"] = "content_block"
    block: dict[str, Any]


TurnEvent = Union[TextDelta, MessageComplete, ToolUseRequested, ContentBlockComplete]


class EventType(str, Enum):
    """Types of events written to the client stream."""
    ID = "id"
    CHUNK = "chunk"
    MESSAGE_COMPLETE = "message_complete"
    TOOL_RESULT = "tool_result"
    CONTENT_BLOCK_COMPLETE = "content_block_complete"
    END_TURN = "end_turn"
    NEW_MESSAGE = "new_message"
    PRODUCT_RESULTS = "product_results"
    ERROR = "error"


class Product(BaseModel):
    """A catalog product collected for the side-channel display list."""
    id: str
    title: str = "Product"
    price: str = "Price not available"
    image_url: str = ""
    description: str = ""
    url: str = ""
