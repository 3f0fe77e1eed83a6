"""Error taxonomy for the chat backend.

Errors are split by where they may surface:
- before a stream opens they become JSON error bodies
- inside the turn loop only ``ModelUnavailable`` ends the session,
  the other failures are tolerated and reported in-band
"""

from typing import Any, Optional


class ChatError(Exception):
    """Base class for all chat backend errors."""

    status_code: int = 500

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}


class ValidationError(ChatError):
    """A required request field is missing or malformed."""

    status_code = 400


class UnsupportedRequest(ChatError):
    """The request shape is not one the chat endpoint serves."""

    status_code = 400


class ToolDiscoveryFailure(ChatError):
    """Connecting to a tool source or listing its tools failed."""


class ToolInvocationFailure(ChatError):
    """A tool call raised instead of returning a result or error payload."""

    def __init__(self, tool_name: str, message: str) -> None:
        super().__init__(message, {"tool_name": tool_name})
        self.tool_name = tool_name


class PersistenceFailure(ChatError):
    """The message store could not read or write."""


class ModelUnavailable(ChatError):
    """Both the streaming and the non-streaming model calls failed."""

    status_code = 502
