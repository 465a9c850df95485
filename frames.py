"""
Upstream stream framing and event decoding.

The upstream backend streams newline-delimited ``data: {...}`` lines, but the
network hands them to us in arbitrary chunks. ChunkReassembler turns those
chunks back into complete lines; decode_frame turns a line into an event.
"""

import json
import logging
from dataclasses import dataclass

logger = logging.getLogger(__name__)

FRAME_PREFIX = "data: "
TEXT_DELTA = "text-delta"


@dataclass
class UpstreamEvent:
    """One decoded upstream event."""

    kind: str
    delta: str = ""


class ChunkReassembler:
    """
    Buffers partial lines across chunks and yields only complete frames.

    At most one partial tail is carried between calls. Empty lines are
    returned like any other frame; the decoder drops them.
    """

    def __init__(self) -> None:
        self._pending = ""

    @property
    def pending(self) -> str:
        """The newline-less tail waiting for the rest of its line."""
        return self._pending

    def feed(self, chunk: str) -> list[str]:
        """Add a chunk and return every line it completed, in order."""
        content = self._pending + chunk
        lines = content.split("\n")

        if content.endswith("\n"):
            self._pending = ""
            # split() leaves an empty string after the final terminator
            lines.pop()
        else:
            self._pending = lines.pop()

        return lines


def decode_frame(frame: str) -> UpstreamEvent | None:
    """
    Decode a single frame into an UpstreamEvent.

    Returns None for anything that is not a well-formed ``data: {json}`` line.
    Corrupt frames are dropped rather than failing the stream.
    """
    if not frame.startswith(FRAME_PREFIX):
        return None

    data = frame[len(FRAME_PREFIX) :]
    if not data:
        return None

    try:
        payload = json.loads(data)
    except json.JSONDecodeError:
        logger.debug(f"Dropping undecodable frame: {data[:100]}")
        return None

    if not isinstance(payload, dict):
        return None

    kind = payload.get("type")
    delta = payload.get("delta", "")
    if delta is None:
        delta = ""
    if not isinstance(kind, str) or not isinstance(delta, str):
        logger.debug(f"Dropping frame with unexpected field types: {data[:100]}")
        return None

    return UpstreamEvent(kind=kind, delta=delta)


def decode_body(body: str) -> list[UpstreamEvent]:
    """Decode every line of a fully received upstream body."""
    events = []
    for line in body.split("\n"):
        event = decode_frame(line)
        if event is not None:
            events.append(event)
    return events


def collect_text(events: list[UpstreamEvent]) -> str:
    """Concatenate the non-empty text deltas of a list of events."""
    return "".join(
        event.delta for event in events if event.kind == TEXT_DELTA and event.delta
    )
