"""
Client-facing Messages API content blocks and stream events.

MessageStreamEmitter is the state machine that produces the SSE event
sequence for one streamed message. Each method returns the encoded events
for one step, so the caller can yield (and flush) them one at a time.
"""

import json
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Union

from tool_parser import ToolInvocation

STOP_END_TURN = "end_turn"
STOP_TOOL_USE = "tool_use"


def generate_message_id() -> str:
    """Generate a unique message ID."""
    return f"msg_{uuid.uuid4().hex[:16]}"


def generate_tool_use_id() -> str:
    """Generate a unique tool_use block ID."""
    return f"toolu_{uuid.uuid4().hex[:16]}"


def estimate_tokens(text: str) -> int:
    """Rough token estimate: about four characters per token, never zero."""
    return max(1, len(text) // 4)


@dataclass
class TextBlock:
    text: str

    def to_dict(self) -> dict[str, Any]:
        return {"type": "text", "text": self.text}


@dataclass
class ToolUseBlock:
    name: str
    input: dict[str, Any]
    id: str = field(default_factory=generate_tool_use_id)

    @classmethod
    def from_invocation(cls, invocation: ToolInvocation) -> "ToolUseBlock":
        return cls(name=invocation.name, input=invocation.input)

    def to_dict(self) -> dict[str, Any]:
        return {"type": "tool_use", "id": self.id, "name": self.name, "input": self.input}


ContentBlock = Union[TextBlock, ToolUseBlock]


def stop_reason_for(blocks: list[ContentBlock]) -> str:
    """tool_use if any block is a tool call, end_turn otherwise."""
    if any(isinstance(block, ToolUseBlock) for block in blocks):
        return STOP_TOOL_USE
    return STOP_END_TURN


def encode_event(name: str, data: dict[str, Any]) -> str:
    """Serialize one named SSE event."""
    payload = json.dumps(data, ensure_ascii=False, separators=(",", ":"))
    return f"event: {name}\ndata: {payload}\n\n"


class ProtocolStateError(RuntimeError):
    """An event was requested that is not legal in the emitter's current state."""


class EmitterState(Enum):
    NOT_STARTED = "not_started"
    TEXT_OPEN = "text_open"
    TEXT_CLOSED = "text_closed"
    TOOL_OPEN = "tool_open"
    TOOL_CLOSED = "tool_closed"
    FINISHED = "finished"


class MessageStreamEmitter:
    """
    Emits the event sequence of one streamed assistant message.

    message_start and the text block at index 0 are opened together; text
    deltas go to block 0 one-for-one; after block 0 closes, further blocks
    (tool calls, recovery text) are emitted whole at strictly increasing
    indices. finish() picks the stop reason from what was emitted.
    """

    def __init__(
        self, model: str, message_id: str | None = None, input_tokens: int = 0
    ) -> None:
        self.model = model
        self.message_id = message_id or generate_message_id()
        self.input_tokens = input_tokens
        self.state = EmitterState.NOT_STARTED
        self.next_index = 0
        self.tool_blocks_emitted = 0

    def _require(self, *states: EmitterState) -> None:
        if self.state not in states:
            allowed = ", ".join(s.value for s in states)
            raise ProtocolStateError(
                f"Illegal transition from {self.state.value} (expected one of: {allowed})"
            )

    def _block_start(self, content_block: dict[str, Any]) -> tuple[int, str]:
        index = self.next_index
        self.next_index += 1
        return index, encode_event(
            "content_block_start",
            {"type": "content_block_start", "index": index, "content_block": content_block},
        )

    @staticmethod
    def _block_delta(index: int, delta: dict[str, Any]) -> str:
        return encode_event(
            "content_block_delta",
            {"type": "content_block_delta", "index": index, "delta": delta},
        )

    @staticmethod
    def _block_stop(index: int) -> str:
        return encode_event("content_block_stop", {"type": "content_block_stop", "index": index})

    def start(self) -> list[str]:
        self._require(EmitterState.NOT_STARTED)
        message_start = encode_event(
            "message_start",
            {
                "type": "message_start",
                "message": {
                    "id": self.message_id,
                    "type": "message",
                    "role": "assistant",
                    "content": [],
                    "model": self.model,
                    "stop_reason": None,
                    "stop_sequence": None,
                    "usage": {"input_tokens": self.input_tokens, "output_tokens": 0},
                },
            },
        )
        _, block_start = self._block_start({"type": "text", "text": ""})
        self.state = EmitterState.TEXT_OPEN
        return [message_start, block_start]

    def text_delta(self, delta: str) -> list[str]:
        self._require(EmitterState.TEXT_OPEN)
        if not delta:
            return []
        return [self._block_delta(0, {"type": "text_delta", "text": delta})]

    def error(self, message: str) -> list[str]:
        self._require(EmitterState.TEXT_OPEN)
        return [encode_event("error", {"type": "error", "error": {"message": message}})]

    def close_text(self) -> list[str]:
        self._require(EmitterState.TEXT_OPEN)
        self.state = EmitterState.TEXT_CLOSED
        return [self._block_stop(0)]

    def text_block(self, text: str) -> list[str]:
        """Emit a complete text block after block 0 has closed."""
        self._require(EmitterState.TEXT_CLOSED, EmitterState.TOOL_CLOSED)
        index, start = self._block_start({"type": "text", "text": ""})
        events = [start]
        if text:
            events.append(self._block_delta(index, {"type": "text_delta", "text": text}))
        events.append(self._block_stop(index))
        return events

    def tool_use_block(self, block: ToolUseBlock) -> list[str]:
        """Emit a complete tool_use block: start, one input_json_delta, stop."""
        self._require(EmitterState.TEXT_CLOSED, EmitterState.TOOL_CLOSED)
        index, start = self._block_start(
            {"type": "tool_use", "id": block.id, "name": block.name, "input": {}}
        )
        self.state = EmitterState.TOOL_OPEN
        partial_json = json.dumps(block.input, ensure_ascii=False)
        events = [
            start,
            self._block_delta(index, {"type": "input_json_delta", "partial_json": partial_json}),
        ]

        self._require(EmitterState.TOOL_OPEN)
        events.append(self._block_stop(index))
        self.state = EmitterState.TOOL_CLOSED
        self.tool_blocks_emitted += 1
        return events

    def blocks(self, blocks: list[ContentBlock]) -> list[str]:
        events: list[str] = []
        for block in blocks:
            if isinstance(block, ToolUseBlock):
                events.extend(self.tool_use_block(block))
            else:
                events.extend(self.text_block(block.text))
        return events

    @property
    def stop_reason(self) -> str:
        return STOP_TOOL_USE if self.tool_blocks_emitted else STOP_END_TURN

    def finish(self, output_tokens: int = 0) -> list[str]:
        self._require(EmitterState.TEXT_CLOSED, EmitterState.TOOL_CLOSED)
        events = [
            encode_event(
                "message_delta",
                {
                    "type": "message_delta",
                    "delta": {"stop_reason": self.stop_reason, "stop_sequence": None},
                    "usage": {"output_tokens": output_tokens},
                },
            ),
            encode_event("message_stop", {"type": "message_stop"}),
        ]
        self.state = EmitterState.FINISHED
        return events
