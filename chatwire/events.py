"""
Event bus — one-way channel from the session to its observers.

The session publishes typed lifecycle and content events; renderers (CLI,
TUI, wire log) subscribe. Two ways to listen:

  - subscribe(name, handler): handler(event) is called synchronously, in
    subscription order, for every event with that name ("*" for all).
  - channel(): an async iterator that yields every published event in
    publish order, for consumers living in their own task.

Observers get a reference to session-owned messages. They must treat them
as read-only. A handler that raises is logged and skipped; it never blocks
the session or the other handlers.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Callable, ClassVar

from chatwire.models import Message

logger = logging.getLogger(__name__)

ALL = "*"


@dataclass(frozen=True)
class ChatEvent:
    name: ClassVar[str] = ""


@dataclass(frozen=True)
class ModelsLoaded(ChatEvent):
    name: ClassVar[str] = "models-loaded"
    registry: Mapping[str, str] = field(default_factory=dict)
    default_code: str = ""
    fallback: bool = False


@dataclass(frozen=True)
class ModelChanged(ChatEvent):
    name: ClassVar[str] = "model-changed"
    old_code: str | None = None
    new_code: str = ""
    new_name: str = ""


@dataclass(frozen=True)
class MessageAdded(ChatEvent):
    name: ClassVar[str] = "message-added"
    message: Message | None = None


@dataclass(frozen=True)
class ContentUpdated(ChatEvent):
    """Re-render signal. `content` is the full accumulated text at publish time."""
    name: ClassVar[str] = "content-updated"
    message: Message | None = None
    content: str = ""


@dataclass(frozen=True)
class StreamComplete(ChatEvent):
    name: ClassVar[str] = "stream-complete"
    message: Message | None = None
    conversation_id: str | None = None


@dataclass(frozen=True)
class StreamStopped(ChatEvent):
    name: ClassVar[str] = "stream-stopped"


@dataclass(frozen=True)
class ConversationCleared(ChatEvent):
    name: ClassVar[str] = "conversation-cleared"


@dataclass(frozen=True)
class ErrorOccurred(ChatEvent):
    name: ClassVar[str] = "error"
    message: str = ""
    code: str = ""


EVENT_TYPES: dict[str, type[ChatEvent]] = {
    cls.name: cls
    for cls in (
        ModelsLoaded, ModelChanged, MessageAdded, ContentUpdated,
        StreamComplete, StreamStopped, ConversationCleared, ErrorOccurred,
    )
}

Handler = Callable[[ChatEvent], None]


class EventChannel:
    """
    Async view of the bus. Iterating yields events in publish order.

    The queue is unbounded unless `maxsize` is given; when a bounded queue is
    full the oldest pending event is dropped to make room (with a warning).
    """

    def __init__(self, bus: "EventBus", maxsize: int = 0):
        self._bus = bus
        self._queue: asyncio.Queue[ChatEvent | None] = asyncio.Queue(maxsize=maxsize)
        self.dropped = 0
        self.closed = False

    def _put(self, event: ChatEvent | None) -> None:
        if self._queue.full():
            self._queue.get_nowait()
            self.dropped += 1
            logger.warning("Event channel full, dropped oldest event (%d so far)", self.dropped)
        self._queue.put_nowait(event)

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self._bus._channels.discard(self)
        self._put(None)

    def __aiter__(self):
        return self

    async def __anext__(self) -> ChatEvent:
        event = await self._queue.get()
        if event is None:
            raise StopAsyncIteration
        return event


class EventBus:
    """Publish/subscribe hub for session events."""

    def __init__(self):
        self._handlers: dict[str, list[Handler]] = {}
        self._channels: set[EventChannel] = set()

    def subscribe(self, name: str, handler: Handler) -> Callable[[], None]:
        """Register a handler. Returns a callable that unsubscribes it."""
        if name != ALL and name not in EVENT_TYPES:
            raise ValueError(f"Unknown event name: {name}")
        self._handlers.setdefault(name, []).append(handler)
        return lambda: self.unsubscribe(name, handler)

    def unsubscribe(self, name: str, handler: Handler) -> None:
        handlers = self._handlers.get(name)
        if handlers and handler in handlers:
            handlers.remove(handler)

    def once(self, name: str, handler: Handler) -> None:
        """Register a handler that is removed after its first call."""
        def _wrapper(event: ChatEvent) -> None:
            self.unsubscribe(name, _wrapper)
            handler(event)
        self.subscribe(name, _wrapper)

    def channel(self, maxsize: int = 0) -> EventChannel:
        ch = EventChannel(self, maxsize=maxsize)
        self._channels.add(ch)
        return ch

    def publish(self, event: ChatEvent) -> None:
        """Deliver an event to named handlers, then wildcard handlers, then channels."""
        handlers = list(self._handlers.get(event.name, ())) + list(self._handlers.get(ALL, ()))
        for handler in handlers:
            try:
                handler(event)
            except Exception as e:
                logger.error("Event handler %r failed on '%s': %s", handler, event.name, e)
        for ch in list(self._channels):
            ch._put(event)

    def handler_count(self, name: str) -> int:
        return len(self._handlers.get(name, ()))
