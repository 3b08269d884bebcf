"""
Event-stream framing for both sides of the relay.

Upstream (decode):
    The completion API answers a streaming request with ``text/event-stream``
    framing. Frames are separated by a blank line and made of ``field: value``
    lines::

        data: {"choices": [{"delta": {"content": "Hi"}}]}

        data: [DONE]

    Network chunks do not respect frame boundaries, so decoding is an explicit
    state machine: decode bytes incrementally, append to a buffer, split off
    every complete frame, carry the remainder into the next ``feed()``.

Relay (encode):
    The relay answers its own callers with one JSON payload per frame:

        data: {"token": "<fragment>"}
        data: {"done": true}
        data: {"error": "<message>"}

Last Grunted: 10/19/2026 09:15:00 AM UTC
"""
from __future__ import annotations

import codecs
import json
from dataclasses import dataclass
from typing import List, Optional


@dataclass(frozen=True)
class ServerSentEvent:
    """A fully decoded upstream frame.

    Attributes:
        event: Event name (``message`` when the frame names none).
        data: Data lines joined with ``\\n``.
        id: Last event id carried by the frame, if any.
    """

    event: str = "message"
    data: str = ""
    id: Optional[str] = None


class EventStreamDecoder:
    """Incremental decoder: buffer + split-on-delimiter + carry remainder.

    ``feed()`` accepts raw bytes (or already decoded text) and returns the
    frames completed by that chunk. A partial UTF-8 sequence, a partial line
    or a frame without its terminating blank line stays buffered until the
    next chunk arrives. ``flush()`` decodes whatever is left when the stream
    closes.
    """

    def __init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""
        self._pending_cr = False

    @property
    def buffered(self) -> str:
        """Text received but not yet part of a complete frame."""
        return self._buffer

    def feed(self, chunk: bytes | str) -> List[ServerSentEvent]:
        text = self._decoder.decode(chunk) if isinstance(chunk, bytes) else chunk
        self._append(text)
        return self._drain_complete_frames()

    def flush(self) -> List[ServerSentEvent]:
        self._append(self._decoder.decode(b"", final=True))
        if self._pending_cr:
            self._pending_cr = False
            self._buffer += "\n"
        events = self._drain_complete_frames()
        remainder, self._buffer = self._buffer, ""
        if remainder.strip():
            event = self._parse_frame(remainder)
            if event is not None:
                events.append(event)
        return events

    def _append(self, text: str) -> None:
        if not text:
            return
        if self._pending_cr:
            text = "\r" + text
            self._pending_cr = False
        # A CR at the very end may be the first half of a CRLF split across chunks
        if text.endswith("\r"):
            text = text[:-1]
            self._pending_cr = True
        self._buffer += text.replace("\r\n", "\n").replace("\r", "\n")

    def _drain_complete_frames(self) -> List[ServerSentEvent]:
        events: List[ServerSentEvent] = []
        while "\n\n" in self._buffer:
            block, self._buffer = self._buffer.split("\n\n", 1)
            event = self._parse_frame(block)
            if event is not None:
                events.append(event)
        return events

    @staticmethod
    def _parse_frame(block: str) -> Optional[ServerSentEvent]:
        event_name = "message"
        event_id: Optional[str] = None
        data_lines: List[str] = []

        for line in block.split("\n"):
            if not line or line.startswith(":"):
                continue
            field, sep, value = line.partition(":")
            if sep and value.startswith(" "):
                value = value[1:]
            if field == "event":
                event_name = value or "message"
            elif field == "data":
                data_lines.append(value)
            elif field == "id":
                event_id = value
            # "retry" and unknown fields are ignored

        if not data_lines:
            return None
        return ServerSentEvent(event=event_name, data="\n".join(data_lines), id=event_id)


# ============================================================================
# Relay Frame Encoders
# ============================================================================

def _frame(payload: dict) -> str:
    return f"data: {json.dumps(payload)}\n\n"


def token_frame(fragment: str) -> str:
    return _frame({"token": fragment})


def done_frame() -> str:
    return _frame({"done": True})


def error_frame(message: str) -> str:
    return _frame({"error": message})
