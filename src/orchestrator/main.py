"""Orchestrator - FastAPI Application.

The chat endpoint:
- POST /chat streams a chat session as server-sent events
- GET /chat?history&conversation_id=<id> returns a conversation's history
- OPTIONS /chat answers CORS preflight requests
"""

from contextlib import asynccontextmanager
from typing import Any, Optional

from fastapi import Depends, FastAPI, HTTPException, Request, Response, status
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, Field
from pydantic import ValidationError as PydanticValidationError

from shared.config import Settings, get_settings
from shared.errors import ChatError, UnsupportedRequest, ValidationError
from shared.logging import get_logger, setup_logging
from storage import MessageStore, create_message_store
from mcp_client.endpoints import CustomerAccountUrlCache
from orchestrator.conversation import ConversationManager
from orchestrator.gateway import GENERIC_ERROR, AIGateway, ChatSession
from orchestrator.llm import create_llm_provider
from orchestrator.streaming import EventStream

logger = get_logger(__name__)


class ChatRequest(BaseModel):
    """Chat request from the storefront widget."""
    message: Optional[str] = Field(default=None, description="User message")
    conversation_id: Optional[str] = Field(default=None, description="Existing conversation ID")
    prompt_type: Optional[str] = Field(default=None, description="System prompt name")


class HealthResponse(BaseModel):
    """Health check response."""
    status: str
    llm_provider: str
    storage: dict[str, Any]


# Global instances
_store: Optional[MessageStore] = None
_gateway: Optional[AIGateway] = None


def build_gateway(settings: Settings, store: MessageStore) -> AIGateway:
    """Wire the gateway and its collaborators from settings."""
    return AIGateway(
        llm_provider=create_llm_provider(settings.llm),
        conversation_manager=ConversationManager(store),
        account_urls=CustomerAccountUrlCache(
            store,
            storefront_access_token=settings.orchestrator.storefront_access_token,
            api_version=settings.orchestrator.storefront_api_version,
            customer_path=settings.mcp.customer_path,
        ),
        mcp_settings=settings.mcp,
        max_turns=settings.orchestrator.max_turns,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    global _store, _gateway

    settings = get_settings()
    setup_logging(settings.log_level, json_output=settings.environment == "production")
    logger.info("Starting chat orchestrator")

    _store = create_message_store(settings.storage)
    await _store.connect()
    _gateway = build_gateway(settings, _store)

    logger.info(
        "Chat orchestrator started",
        llm_provider=settings.llm.provider,
        storage=settings.storage.backend
    )

    yield

    logger.info("Shutting down chat orchestrator")
    await _store.close()
    _store = None
    _gateway = None


app = FastAPI(
    title="Chat Orchestrator",
    description="Streaming chat backend bridging shoppers, Claude and shop MCP tools",
    version="0.1.0",
    lifespan=lifespan
)


def get_gateway() -> AIGateway:
    """Dependency to get the initialized gateway."""
    if _gateway is None:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Gateway not initialized"
        )
    return _gateway


def cors_headers(request: Request) -> dict[str, str]:
    """CORS headers echoing the caller's origin."""
    origin = request.headers.get("Origin") or "*"
    requested = request.headers.get("Access-Control-Request-Headers") or "Content-Type, Accept"
    return {
        "Access-Control-Allow-Origin": origin,
        "Access-Control-Allow-Methods": "GET, POST, OPTIONS",
        "Access-Control-Allow-Headers": requested,
        "Access-Control-Allow-Credentials": "true",
        "Access-Control-Max-Age": "86400",
    }


def sse_headers(request: Request, settings: Settings) -> dict[str, str]:
    """Headers for the event stream response."""
    origin = request.headers.get("Origin") or "*"
    return {
        "Cache-Control": "no-cache",
        "Connection": "keep-alive",
        "X-Accel-Buffering": "no",
        "Access-Control-Allow-Credentials": "true",
        "Access-Control-Allow-Origin": origin,
        "Access-Control-Allow-Methods": "GET,OPTIONS,POST",
        "Access-Control-Allow-Headers": settings.orchestrator.cors_allowed_headers,
    }


@app.exception_handler(ChatError)
async def chat_error_handler(request: Request, exc: ChatError) -> JSONResponse:
    """Render errors raised before a stream opens as JSON bodies."""
    if exc.status_code >= 500:
        logger.error("Chat request failed", error=exc.message, path=request.url.path)
    return JSONResponse(
        {"error": exc.message},
        status_code=exc.status_code,
        headers=cors_headers(request)
    )


@app.exception_handler(Exception)
async def unexpected_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.error("Unhandled error", path=request.url.path, exc_info=exc)
    return JSONResponse(
        {"error": GENERIC_ERROR},
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        headers=cors_headers(request)
    )


@app.get("/health", response_model=HealthResponse, tags=["System"])
async def health_check(gateway: AIGateway = Depends(get_gateway)):
    """Health check endpoint."""
    status_info = await gateway.health_check()
    return HealthResponse(
        status=status_info["gateway"],
        llm_provider=status_info["llm_provider"],
        storage=status_info["storage"],
    )


@app.options("/chat", tags=["Chat"])
async def chat_preflight(request: Request) -> Response:
    """CORS preflight."""
    return Response(status_code=status.HTTP_204_NO_CONTENT, headers=cors_headers(request))


@app.get("/chat", tags=["Chat"])
async def chat_history(
    request: Request,
    gateway: AIGateway = Depends(get_gateway),
    settings: Settings = Depends(get_settings)
):
    """Return a conversation's history."""
    params = request.query_params
    if "history" not in params or not params.get("conversation_id"):
        raise UnsupportedRequest(settings.orchestrator.unsupported_request_error)

    messages = await gateway.get_conversation_history(params["conversation_id"])
    return JSONResponse({"messages": messages}, headers=cors_headers(request))


@app.post("/chat", tags=["Chat"])
async def chat(
    request: Request,
    gateway: AIGateway = Depends(get_gateway),
    settings: Settings = Depends(get_settings)
):
    """
    Stream a chat session.

    This is the main endpoint for the chat widget.
    """
    try:
        chat_request = ChatRequest.model_validate(await request.json())
    except (ValueError, PydanticValidationError):
        raise ValidationError(settings.orchestrator.missing_message_error)

    if not chat_request.message:
        raise ValidationError(settings.orchestrator.missing_message_error)

    session = ChatSession(
        message=chat_request.message,
        conversation_id=ConversationManager.resolve_id(chat_request.conversation_id),
        prompt_type=chat_request.prompt_type or settings.llm.default_prompt_type,
        shop_origin=request.headers.get("Origin"),
        shop_id=request.headers.get("X-Shopify-Shop-Id"),
    )

    async def produce(stream: EventStream) -> None:
        await gateway.run_session(session, stream)

    return StreamingResponse(
        EventStream.open(produce),
        media_type="text/event-stream",
        headers=sse_headers(request, settings)
    )


def main():
    """Run the chat orchestrator server."""
    import uvicorn

    settings = get_settings()

    uvicorn.run(
        "orchestrator.main:app",
        host=settings.orchestrator.host,
        port=settings.orchestrator.port,
        reload=settings.environment == "development"
    )


if __name__ == "__main__":
    main()
