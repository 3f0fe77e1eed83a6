"""Helpers shared by the test modules."""

import json
from typing import Any

from shared.models import ModelMessage


def parse_frames(data: bytes) -> list[dict[str, Any]]:
    """Split an event stream body into its JSON events."""
    events = []
    for frame in data.decode("utf-8").split("\n\n"):
        if frame.startswith("data: "):
            events.append(json.loads(frame[len("data: "):]))
    return events


async def collect(stream_iter) -> list[dict[str, Any]]:
    body = b""
    async for frame in stream_iter:
        body += frame
    return parse_frames(body)


def text_message(text: str) -> ModelMessage:
    return ModelMessage(content=[{"type": "text", "text": text}], stop_reason="end_turn")


def tool_message(tool_id: str, name: str, tool_input: dict[str, Any], text: str = "Let me check.") -> ModelMessage:
    return ModelMessage(
        content=[
            {"type": "text", "text": text},
            {"type": "tool_use", "id": tool_id, "name": name, "input": tool_input},
        ],
        stop_reason="tool_use",
    )
