"""
Upstream-to-Messages API translation.

StreamTranslator drives one streamed response: it reassembles upstream
chunks into frames, forwards every text delta to the client as it arrives,
and once the upstream finishes, appends tool_use blocks (parsed or
recovered) before closing the message.

translate_body does the same for a fully received upstream body and
returns a single Messages API response.
"""

import asyncio
import logging
from collections.abc import AsyncGenerator, AsyncIterator
from typing import Any

from events import (
    MessageStreamEmitter,
    estimate_tokens,
    generate_message_id,
    stop_reason_for,
)
from frames import TEXT_DELTA, ChunkReassembler, collect_text, decode_body, decode_frame
from recovery import Resolution, ResponseResolver
from upstream import UpstreamError

logger = logging.getLogger(__name__)


class StreamTranslator:
    """Translates one upstream stream into Messages API SSE events."""

    def __init__(
        self,
        resolver: ResponseResolver,
        model: str,
        input_tokens: int = 0,
        message_id: str | None = None,
    ):
        self.resolver = resolver
        self.reassembler = ChunkReassembler()
        self.emitter = MessageStreamEmitter(
            model=model, message_id=message_id, input_tokens=input_tokens
        )
        self._text_parts: list[str] = []
        self.resolution: Resolution | None = None
        self.upstream_error: UpstreamError | None = None

    @property
    def message_id(self) -> str:
        return self.emitter.message_id

    @property
    def accumulated_text(self) -> str:
        return "".join(self._text_parts)

    def _accept(self, chunk: str) -> list[str]:
        events = []
        for frame in self.reassembler.feed(chunk):
            event = decode_frame(frame)
            if event is None or event.kind != TEXT_DELTA or not event.delta:
                continue
            self._text_parts.append(event.delta)
            events.extend(self.emitter.text_delta(event.delta))
        return events

    async def translate(self, chunks: AsyncIterator[str]) -> AsyncGenerator[str, None]:
        """Yield encoded events, one per yield, in protocol order."""
        for event in self.emitter.start():
            yield event

        try:
            async for chunk in chunks:
                for event in self._accept(chunk):
                    yield event
        except UpstreamError as e:
            logger.error(f"[{self.message_id}] Upstream failed mid-stream: {e}")
            self.upstream_error = e
        except asyncio.CancelledError:
            logger.info(f"[{self.message_id}] Client disconnected, abandoning stream")
            raise

        if self.reassembler.pending:
            logger.debug(
                f"[{self.message_id}] Discarding unterminated tail: {self.reassembler.pending[:100]}"
            )

        if self.upstream_error is not None:
            for event in self.emitter.error(str(self.upstream_error)):
                yield event

        for event in self.emitter.close_text():
            yield event

        text = self.accumulated_text
        self.resolution = await self.resolver.resolve(text)

        for event in self.emitter.blocks(self.resolution.trailing_blocks()):
            yield event

        for event in self.emitter.finish(output_tokens=estimate_tokens(text)):
            yield event

        logger.info(
            f"[{self.message_id}] Stream complete: {len(text)} chars, "
            f"{self.emitter.next_index} block(s), stop_reason={self.emitter.stop_reason}"
        )


async def translate_body(
    resolver: ResponseResolver,
    body: str,
    model: str,
    input_tokens: int = 0,
    message_id: str | None = None,
) -> tuple[dict[str, Any], Resolution]:
    """Build a complete Messages API response from a full upstream body."""
    text = collect_text(decode_body(body))
    resolution = await resolver.resolve(text)
    blocks = resolution.content_blocks()

    response = {
        "id": message_id or generate_message_id(),
        "type": "message",
        "role": "assistant",
        "content": [block.to_dict() for block in blocks],
        "model": model,
        "stop_reason": stop_reason_for(blocks),
        "stop_sequence": None,
        "usage": {"input_tokens": input_tokens, "output_tokens": estimate_tokens(text)},
    }
    return response, resolution
