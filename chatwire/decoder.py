"""
Stream decoder — turns raw response bytes into protocol events.

The backend's framing is not negotiated, so every line is classified on its
own. Two structured dialects are understood:

  Typed events (what the backend sends today):
      event:ai_chunk
      data:{"chunk": "Hel"}

  Generic SSE (the older shape):
      data: {"type": "content", "content": "Hel"}
      data: {"type": "conversation", "conversationId": "42"}
      data: {"type": "complete", "totalTokens": 12}
      data: {"type": "error", "message": "model unavailable"}
      data: [DONE]

Anything else that is not blank or an SSE comment is kept as literal text.
Bytes arrive in arbitrary chunks; the trailing partial line is held back
until the next chunk (or flush()) completes it.
"""

from __future__ import annotations

import codecs
import json
import logging
from collections.abc import AsyncIterable, AsyncIterator
from dataclasses import dataclass, field
from typing import Union

logger = logging.getLogger(__name__)

CONTENT_EVENT = "ai_chunk"
CONVERSATION_EVENT = "conversation"
COMPLETE_EVENT = "complete"
ERROR_EVENT = "error"
DONE_SENTINEL = "[DONE]"

# SSE default event type; does not open a typed event
_DEFAULT_EVENT_TYPES = ("", "message")


@dataclass(frozen=True)
class ContentDelta:
    text: str


@dataclass(frozen=True)
class ConversationAssigned:
    conversation_id: str


@dataclass(frozen=True)
class Completed:
    meta: dict = field(default_factory=dict)


@dataclass(frozen=True)
class StreamError:
    message: str


@dataclass(frozen=True)
class Unrecognized:
    raw: str


ProtocolEvent = Union[ContentDelta, ConversationAssigned, Completed, StreamError, Unrecognized]


class StreamDecoder:
    """
    Incremental decoder for one response body.

    feed() takes a chunk of bytes and returns the events from every line it
    completed; flush() drains the last partial line at end of stream. The
    same byte stream yields the same events no matter how it is chunked.
    """

    def __init__(self, encoding: str = "utf-8"):
        self._text = codecs.getincrementaldecoder(encoding)(errors="replace")
        self._buffer = ""
        self._pending_event: str | None = None

    def feed(self, chunk: bytes) -> list[ProtocolEvent]:
        self._buffer += self._text.decode(chunk)
        lines = self._buffer.split("\n")
        self._buffer = lines.pop()
        events: list[ProtocolEvent] = []
        for line in lines:
            events.extend(self.decode_line(line))
        return events

    def flush(self) -> list[ProtocolEvent]:
        """Process whatever is still buffered. Call once, after the last chunk."""
        self._buffer += self._text.decode(b"", final=True)
        rest, self._buffer = self._buffer, ""
        events: list[ProtocolEvent] = []
        for line in rest.split("\n"):
            events.extend(self.decode_line(line))
        if self._pending_event is not None:
            logger.debug("Stream ended after 'event:%s' with no data line", self._pending_event)
            self._pending_event = None
        return events

    async def aiter_events(self, chunks: AsyncIterable[bytes]) -> AsyncIterator[ProtocolEvent]:
        """Pull chunks from an async byte source and yield events as they complete."""
        async for chunk in chunks:
            for event in self.feed(chunk):
                yield event
        for event in self.flush():
            yield event

    def decode_line(self, line: str) -> list[ProtocolEvent]:
        """Classify one complete line. Returns zero or one event."""
        line = line.rstrip("\r")
        stripped = line.strip()
        if not stripped or stripped.startswith(":"):
            return []

        if stripped.startswith("event:"):
            event_type = stripped[6:].strip()
            self._pending_event = None if event_type in _DEFAULT_EVENT_TYPES else event_type
            return []

        if stripped.startswith("data:") and self._pending_event is not None:
            # The announced type applies to exactly one data line
            event_type, self._pending_event = self._pending_event, None
            return self._decode_typed(event_type, stripped[5:].strip())

        if line.startswith("data:"):
            payload = line[5:]
            if payload.startswith(" "):
                payload = payload[1:]
            return self._decode_generic(payload)

        return [ContentDelta(line + "\n")]

    # -- typed-event dialect ---------------------------------------------------

    def _decode_typed(self, event_type: str, payload: str) -> list[ProtocolEvent]:
        try:
            data = json.loads(payload)
        except json.JSONDecodeError as e:
            logger.warning("Skipping malformed '%s' data line: %s (%s)", event_type, payload[:200], e)
            return []

        if not isinstance(data, dict):
            return [self._unrecognized(f"event:{event_type} {payload}")]

        if event_type == CONTENT_EVENT:
            chunk = data.get("chunk")
            if chunk is None:
                return [self._unrecognized(payload)]
            return [ContentDelta(chunk if isinstance(chunk, str) else str(chunk))]

        if event_type == CONVERSATION_EVENT:
            conv_id = data.get("conversationId")
            if conv_id in (None, ""):
                return [self._unrecognized(payload)]
            return [ConversationAssigned(str(conv_id))]

        if event_type == COMPLETE_EVENT:
            return [Completed(meta=data)]

        if event_type == ERROR_EVENT:
            return [StreamError(str(data.get("error") or data.get("message") or "Stream error"))]

        return [self._unrecognized(f"event:{event_type} {payload}")]

    # -- generic SSE dialect ---------------------------------------------------

    def _decode_generic(self, payload: str) -> list[ProtocolEvent]:
        if payload.strip() == DONE_SENTINEL:
            return []

        try:
            data = json.loads(payload)
        except json.JSONDecodeError:
            # Not JSON: the backend sent plain text
            return [ContentDelta(payload)]

        if not isinstance(data, dict):
            return [self._unrecognized(payload)]

        kind = data.get("type")
        if kind == "content":
            content = data.get("content")
            return [ContentDelta(content if isinstance(content, str) else "")]

        if kind == "conversation":
            conv_id = data.get("conversationId")
            if conv_id in (None, ""):
                return [self._unrecognized(payload)]
            return [ConversationAssigned(str(conv_id))]

        if kind == "complete":
            return [Completed(meta={k: v for k, v in data.items() if k != "type"})]

        if kind == "error":
            return [StreamError(str(data.get("message") or data.get("error") or "Stream error"))]

        if kind is None and "choices" in data:
            # OpenAI-compatible chunk
            try:
                delta = data["choices"][0].get("delta", {}).get("content")
            except (IndexError, AttributeError, TypeError):
                delta = None
            if isinstance(delta, str):
                return [ContentDelta(delta)]

        return [self._unrecognized(payload)]

    @staticmethod
    def _unrecognized(raw: str) -> Unrecognized:
        logger.debug("Unrecognized stream event: %s", raw[:200])
        return Unrecognized(raw)
