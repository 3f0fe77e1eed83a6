"""Model gateway.

Wraps the model provider's streaming and non-streaming completion calls
behind one turn interface. A turn reports its progress through
``TurnHandlers``:

- ``on_text`` for each text delta, in arrival order
- ``on_content_block`` for each finished content block
- ``on_message`` exactly once with the final message
- ``on_tool_use`` once per tool-use block of the final message, in order

If the stream breaks, the same turn is retried without streaming. The
same handlers fire, but ``on_text`` is called once per text block instead
of once per delta, and only with the part of the block the broken stream
had not delivered yet. Blocks completed before the break are not repeated.
"""

import copy
import inspect
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

import anthropic
import httpx

from shared.config import LLMSettings
from shared.errors import ModelUnavailable
from shared.logging import get_logger
from shared.models import (
    ContentBlockComplete,
    HistoryMessage,
    MessageComplete,
    ModelMessage,
    TextDelta,
    ToolCatalog,
    ToolUse,
    ToolUseRequested,
    TurnEvent,
)
from orchestrator.prompts import PromptLibrary

logger = get_logger(__name__)


@dataclass
class TurnHandlers:
    """Callbacks for the events of one model turn. Each may be sync or async."""
    on_text: Optional[Callable[[str], Any]] = None
    on_message: Optional[Callable[[ModelMessage], Any]] = None
    on_tool_use: Optional[Callable[[ToolUse], Any]] = None
    on_content_block: Optional[Callable[[dict[str, Any]], Any]] = None

    async def emit(self, event: TurnEvent) -> None:
        """Route an event to its handler and wait for it."""
        if isinstance(event, TextDelta):
            handler, arg = self.on_text, event.text
        elif isinstance(event, MessageComplete):
            handler, arg = self.on_message, event.message
        elif isinstance(event, ToolUseRequested):
            handler, arg = self.on_tool_use, event.tool_use
        else:
            handler, arg = self.on_content_block, event.block

        if handler is None:
            return
        result = handler(arg)
        if inspect.isawaitable(result):
            await result


class StreamProgress:
    """
    Forwards turn events to the handlers and remembers what was delivered.

    Text deltas are attributed to the content block that is open when they
    arrive; a block is closed by its ``ContentBlockComplete``. If the stream
    breaks, the fallback uses this to send only what the client has not seen.
    """

    def __init__(self, handlers: TurnHandlers) -> None:
        self.handlers = handlers
        self.blocks_completed = 0
        self.text_sent: dict[int, str] = {}

    async def emit(self, event: TurnEvent) -> None:
        await self.handlers.emit(event)
        if isinstance(event, TextDelta):
            index = self.blocks_completed
            self.text_sent[index] = self.text_sent.get(index, "") + event.text
        elif isinstance(event, ContentBlockComplete):
            self.blocks_completed += 1

    def remaining_text(self, index: int, text: str) -> str:
        """The part of a text block not yet delivered."""
        sent = self.text_sent.get(index, "")
        if text.startswith(sent):
            return text[len(sent):]
        # Partial output is never retracted; a diverging completion is only logged
        logger.warning("Fallback text diverges from streamed text", block_index=index)
        return ""


@dataclass
class TurnRequest:
    """Provider-ready parameters of one turn."""
    model: str
    max_tokens: int
    system: str
    messages: list[dict[str, Any]]
    tools: list[dict[str, Any]] = field(default_factory=list)

    def to_kwargs(self) -> dict[str, Any]:
        kwargs: dict[str, Any] = {
            "model": self.model,
            "max_tokens": self.max_tokens,
            "system": self.system,
            "messages": self.messages,
        }
        if self.tools:
            kwargs["tools"] = self.tools
        return kwargs


class ProviderTransportError(Exception):
    """A provider call failed in transit."""
    pass


class LLMProvider(ABC):
    """
    Abstract base class for model providers.

    Subclasses implement one streaming and one non-streaming call; the
    fallback and the handler ordering live here.
    """

    # Exceptions that mean "the call failed", as opposed to a handler failing
    transport_errors: tuple[type[BaseException], ...] = (ProviderTransportError,)

    def __init__(self, settings: LLMSettings, prompts: Optional[PromptLibrary] = None) -> None:
        self.settings = settings
        self.prompts = prompts or PromptLibrary.from_yaml(
            settings.prompts_path, default=settings.default_prompt_type
        )

    def build_request(
        self,
        messages: list[HistoryMessage],
        tools: Optional[ToolCatalog],
        prompt_type: Optional[str]
    ) -> TurnRequest:
        return TurnRequest(
            model=self.settings.model,
            max_tokens=self.settings.max_tokens,
            system=self.prompts.resolve(prompt_type),
            messages=[m.to_provider() for m in messages],
            tools=tools.to_provider() if tools else [],
        )

    async def stream_turn(
        self,
        messages: list[HistoryMessage],
        tools: Optional[ToolCatalog],
        prompt_type: Optional[str],
        handlers: TurnHandlers
    ) -> ModelMessage:
        """
        Run one model turn.

        Args:
            messages: Full conversation history
            tools: Tool catalog, omitted from the request when empty
            prompt_type: Name of the system prompt to use
            handlers: Turn event callbacks

        Returns:
            The final message of the turn

        Raises:
            ModelUnavailable: If streaming and the fallback both fail
        """
        request = self.build_request(messages, tools, prompt_type)
        progress = StreamProgress(handlers)

        try:
            message = await self._stream(request, progress)
        except self.transport_errors as e:
            logger.warning(
                "Streaming failed, retrying without streaming",
                error=str(e),
                blocks_completed=progress.blocks_completed
            )
            message = await self._fallback(request, progress)

        await handlers.emit(MessageComplete(message=message))
        for tool_use in message.tool_uses:
            await handlers.emit(ToolUseRequested(tool_use=tool_use))

        return message

    async def _fallback(self, request: TurnRequest, progress: StreamProgress) -> ModelMessage:
        """
        Complete the turn without streaming.

        Text and blocks the broken stream already delivered are not sent
        again; only the rest of each text block is emitted.
        """
        try:
            message = await self._complete(request)
        except self.transport_errors as e:
            logger.error("Model unavailable", error=str(e))
            raise ModelUnavailable(f"Model unavailable: {e}") from e

        for index, block in enumerate(message.content):
            if index < progress.blocks_completed:
                continue
            if block.get("type") == "text" and block.get("text"):
                remaining = progress.remaining_text(index, block["text"])
                if remaining:
                    await progress.emit(TextDelta(text=remaining))
            await progress.emit(ContentBlockComplete(block=block))

        return message

    @abstractmethod
    async def _stream(self, request: TurnRequest, handlers: StreamProgress) -> ModelMessage:
        """
        Stream a completion, emitting text deltas and finished content blocks.

        Returns:
            The assembled final message
        """
        pass

    @abstractmethod
    async def _complete(self, request: TurnRequest) -> ModelMessage:
        """Request a completion without streaming."""
        pass


def _dump_block(block: Any) -> dict[str, Any]:
    if isinstance(block, dict):
        return block
    return block.model_dump(mode="json", exclude_none=True)


def _to_model_message(message: Any) -> ModelMessage:
    usage = getattr(message, "usage", None)
    return ModelMessage(
        id=message.id,
        content=[_dump_block(block) for block in message.content],
        stop_reason=message.stop_reason,
        usage={
            "input_tokens": usage.input_tokens,
            "output_tokens": usage.output_tokens,
        } if usage else {},
    )


class AnthropicProvider(LLMProvider):
    """Anthropic Messages API provider."""

    transport_errors = (anthropic.APIError, httpx.HTTPError)

    def __init__(self, settings: LLMSettings, prompts: Optional[PromptLibrary] = None) -> None:
        super().__init__(settings, prompts)
        self._client = None

    def _get_client(self):
        """Lazy initialization of the Anthropic client."""
        if self._client is None:
            self._client = anthropic.AsyncAnthropic(
                api_key=self.settings.api_key,
                base_url=self.settings.api_base,
            )
        return self._client

    async def _stream(self, request: TurnRequest, handlers: StreamProgress) -> ModelMessage:
        client = self._get_client()

        async with client.messages.stream(**request.to_kwargs()) as stream:
            async for event in stream:
                if event.type == "text":
                    await handlers.emit(TextDelta(text=event.text))
                elif event.type == "content_block_stop":
                    await handlers.emit(ContentBlockComplete(block=_dump_block(event.content_block)))

            final = await stream.get_final_message()

        return _to_model_message(final)

    async def _complete(self, request: TurnRequest) -> ModelMessage:
        client = self._get_client()
        response = await client.messages.create(**request.to_kwargs())
        return _to_model_message(response)


class MockLLMProvider(LLMProvider):
    """Mock provider for testing without API calls."""

    def __init__(self, settings: Optional[LLMSettings] = None, prompts: Optional[PromptLibrary] = None) -> None:
        super().__init__(settings or LLMSettings(provider="mock"), prompts)
        self.call_history: list[dict[str, Any]] = []
        self.stream_failures = 0
        self.completion_failures = 0
        self._responses: deque[ModelMessage] = deque()
        self._turn_response: Optional[ModelMessage] = None

    def set_next_response(self, response: ModelMessage) -> None:
        """Queue a response for an upcoming turn."""
        self._responses.append(response)

    async def stream_turn(
        self,
        messages: list[HistoryMessage],
        tools: Optional[ToolCatalog],
        prompt_type: Optional[str],
        handlers: TurnHandlers
    ) -> ModelMessage:
        if self._responses:
            self._turn_response = self._responses.popleft()
        else:
            self._turn_response = ModelMessage(
                content=[{"type": "text", "text": "This is a mock response."}],
                stop_reason="end_turn",
                usage={"input_tokens": 10, "output_tokens": 5},
            )
        return await super().stream_turn(messages, tools, prompt_type, handlers)

    def _record(self, request: TurnRequest, streaming: bool) -> None:
        self.call_history.append({
            "messages": copy.deepcopy(request.messages),
            "tools": copy.deepcopy(request.tools),
            "system": request.system,
            "streaming": streaming,
        })

    async def _stream(self, request: TurnRequest, handlers: StreamProgress) -> ModelMessage:
        self._record(request, streaming=True)
        failing = self.stream_failures > 0
        if failing:
            self.stream_failures -= 1

        message = self._turn_response
        for block in message.content:
            if block.get("type") == "text":
                for chunk in _chunks(block.get("text", "")):
                    await handlers.emit(TextDelta(text=chunk))
                    if failing:
                        raise ProviderTransportError("stream interrupted")
            await handlers.emit(ContentBlockComplete(block=block))

        if failing:
            raise ProviderTransportError("stream interrupted")
        return message

    async def _complete(self, request: TurnRequest) -> ModelMessage:
        self._record(request, streaming=False)
        if self.completion_failures > 0:
            self.completion_failures -= 1
            raise ProviderTransportError("completion failed")
        return self._turn_response


def _chunks(text: str, size: int = 8) -> list[str]:
    return [text[i:i + size] for i in range(0, len(text), size)]


def create_llm_provider(settings: LLMSettings, prompts: Optional[PromptLibrary] = None) -> LLMProvider:
    """
    Factory function to create the configured model provider.

    Supports:
    - anthropic: Anthropic Messages API
    - mock: Mock provider for testing

    Raises:
        ValueError: If provider is not supported
    """
    providers = {
        "anthropic": AnthropicProvider,
        "mock": MockLLMProvider,
    }

    provider_class = providers.get(settings.provider)
    if not provider_class:
        raise ValueError(
            f"Unsupported LLM provider: {settings.provider}. "
            f"Supported: {list(providers.keys())}"
        )

    logger.info("Creating LLM provider", provider=settings.provider, model=settings.model)
    return provider_class(settings, prompts)
