"""Shared utilities and base classes for the chat backend."""

from shared.models import (
    EventType,
    HistoryMessage,
    ModelMessage,
    Role,
    StoredMessage,
    ToolCatalog,
    ToolDescriptor,
    ToolResponse,
    ToolUse,
)
from shared.config import Settings, get_settings
from shared.logging import get_logger, setup_logging

__all__ = [
    "EventType",
    "HistoryMessage",
    "ModelMessage",
    "Role",
    "StoredMessage",
    "ToolCatalog",
    "ToolDescriptor",
    "ToolResponse",
    "ToolUse",
    "Settings",
    "get_settings",
    "get_logger",
    "setup_logging",
]
