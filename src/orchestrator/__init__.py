"""Orchestrator / AI Gateway.

Runs streaming chat sessions: drives the model turn loop, dispatches
tool calls to the shop's MCP servers, persists history and pushes
events to the client.
"""

from orchestrator.llm import LLMProvider, TurnHandlers, create_llm_provider
from orchestrator.conversation import ConversationManager
from orchestrator.gateway import AIGateway, ChatSession
from orchestrator.streaming import EventStream

__all__ = [
    "LLMProvider",
    "TurnHandlers",
    "create_llm_provider",
    "ConversationManager",
    "AIGateway",
    "ChatSession",
    "EventStream",
]
