"""Server-sent events output channel.

One channel serves one chat session. The session's producer coroutine
writes events with ``send_message``; the channel frames each event as a
separate ``data:`` line and hands the frames to the HTTP response in
call order. The stream ends when the producer returns or raises.
"""

import asyncio
import json
from contextlib import suppress
from typing import Any, AsyncIterator, Awaitable, Callable

from shared.logging import get_logger
from shared.models import EventType

logger = get_logger(__name__)

_CLOSE = object()


class StreamClosed(RuntimeError):
    """An event was sent after the channel closed."""
    pass


def encode_event(event: dict[str, Any]) -> bytes:
    """Frame one event for the wire."""
    return f"data: {json.dumps(event, default=str)}\n\n".encode("utf-8")


class EventStream:
    """
    Output channel for one chat session.

    The producer is the only writer. Events are queued and yielded in the
    order they were sent; nothing is reordered or merged.
    """

    def __init__(self) -> None:
        self._queue: asyncio.Queue[Any] = asyncio.Queue()
        self._closed = False
        self.sent = 0

    @property
    def closed(self) -> bool:
        return self._closed

    def send_message(self, event: dict[str, Any]) -> None:
        """
        Append one event to the stream.

        Raises:
            StreamClosed: If the stream has already closed
        """
        if self._closed:
            raise StreamClosed(f"Cannot send '{event.get('type')}' event, stream is closed")
        self._queue.put_nowait(encode_event(event))
        self.sent += 1

    def send(self, event_type: EventType, **payload: Any) -> None:
        """Send an event of the given type with extra fields."""
        self.send_message({"type": event_type.value, **payload})

    @classmethod
    def open(cls, producer: Callable[["EventStream"], Awaitable[None]]) -> AsyncIterator[bytes]:
        """
        Start a producer and return the byte stream it writes to.

        If the producer raises, the error is logged and the stream ends
        without any extra frame. If the consumer stops reading, the
        producer is cancelled.
        """
        return cls()._run(producer)

    async def _produce(self, producer: Callable[["EventStream"], Awaitable[None]]) -> None:
        try:
            await producer(self)
        except Exception:
            logger.error("Stream producer failed", events_sent=self.sent, exc_info=True)
        finally:
            self._closed = True
            self._queue.put_nowait(_CLOSE)

    async def _run(self, producer: Callable[["EventStream"], Awaitable[None]]) -> AsyncIterator[bytes]:
        task = asyncio.create_task(self._produce(producer))
        try:
            while True:
                frame = await self._queue.get()
                if frame is _CLOSE:
                    break
                yield frame
        finally:
            self._closed = True
            if not task.done():
                logger.info("Client disconnected, cancelling chat session")
                task.cancel()
                with suppress(asyncio.CancelledError):
                    await task
