"""
Chat session — the state machine around one conversation.

    Idle -> Sending -> Streaming -> Completing -> Idle
                \\          \\
                 +----------+--> Error -> Idle      (transport / protocol failure)
                  \\          \\
                   +----------+--> Idle             (stop_streaming)

At most one exchange is in flight. The open assistant message exists exactly
while the state is Sending or Streaming. Everything observers need is
published on the event bus; nothing flows back from them.
"""

from __future__ import annotations

import asyncio
import logging
import re
from collections.abc import AsyncIterator
from datetime import datetime, timezone
from typing import Callable
from uuid import uuid4

from chatwire.config import get_config
from chatwire.decoder import (
    Completed,
    ContentDelta,
    ConversationAssigned,
    ProtocolEvent,
    StreamDecoder,
    StreamError,
    Unrecognized,
)
from chatwire.errors import Busy, ChatError, EmptyMessage, NotReady, ProtocolError, TransportFailure
from chatwire.events import (
    ContentUpdated,
    ConversationCleared,
    ErrorOccurred,
    EventBus,
    MessageAdded,
    StreamComplete,
    StreamStopped,
)
from chatwire.models import Message, ModelInfo, Role, StreamingState
from chatwire.registry import ModelRegistry
from chatwire.transport import BaseTransport, ChatStream, HttpTransport

logger = logging.getLogger(__name__)

NO_RESPONSE_TEXT = "Sorry, I can't respond right now. Please try again later."
SEND_FAILED_TEXT = "Sorry, the message could not be sent. Please try again later."
STREAM_INTERRUPTED_TEXT = "An error occurred while receiving the response. Please try again."

S = StreamingState
_TRANSITIONS: dict[StreamingState, frozenset[StreamingState]] = {
    S.IDLE: frozenset({S.SENDING}),
    S.SENDING: frozenset({S.STREAMING, S.COMPLETING, S.ERROR, S.IDLE}),
    S.STREAMING: frozenset({S.COMPLETING, S.ERROR, S.IDLE}),
    S.COMPLETING: frozenset({S.IDLE}),
    S.ERROR: frozenset({S.IDLE}),
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def generate_title(message: str, max_length: int = 50, suffix: str = "...") -> str:
    """Conversation title: whitespace collapsed, truncated to max_length."""
    clean = re.sub(r"\s+", " ", message).strip()
    if len(clean) <= max_length:
        return clean
    return clean[: max_length - len(suffix)] + suffix


class ChatSession:
    """
    Owns conversation identity, the message list, and the in-flight exchange.

    Collaborators are injected: the transport (network), the registry (model
    selection), the bus (observers), plus a clock and an id factory so tests
    can pin timestamps and message ids.
    """

    def __init__(
        self,
        transport: BaseTransport,
        registry: ModelRegistry | None = None,
        bus: EventBus | None = None,
        *,
        user_id: str = "web-user",
        title_length: int = 50,
        clock: Callable[[], datetime] = _utcnow,
        id_factory: Callable[[], str] = lambda: uuid4().hex,
        decoder_factory: Callable[[], StreamDecoder] = StreamDecoder,
    ):
        self.transport = transport
        self.bus = bus or (registry.bus if registry else EventBus())
        self.registry = registry or ModelRegistry(transport, self.bus)
        self.user_id = user_id
        self.title_length = title_length
        self._clock = clock
        self._new_id = id_factory
        self._decoder_factory = decoder_factory

        self._state = StreamingState.IDLE
        self._conversation_id: str | None = None
        self._messages: list[Message] = []
        self._open_message: Message | None = None
        self._exchange: asyncio.Task | None = None
        self._clearing = False
        self.last_completion: dict = {}

    @classmethod
    def from_config(cls, cfg: dict | None = None, bus: EventBus | None = None) -> "ChatSession":
        """Create a session wired to the HTTP backend from config.yaml settings."""
        cfg = cfg or get_config()
        b_cfg = cfg["backend"]
        m_cfg = cfg.get("models", {})
        c_cfg = cfg.get("chat", {})

        bus = bus or EventBus()
        transport = HttpTransport(
            url=b_cfg["url"],
            endpoints=b_cfg.get("endpoints"),
            timeout=b_cfg.get("timeout", 120),
        )
        registry = ModelRegistry(
            transport,
            bus,
            fallback=m_cfg.get("fallback"),
            fallback_default=m_cfg.get("fallback_default"),
        )
        return cls(
            transport,
            registry,
            bus,
            user_id=c_cfg.get("user_id", "web-user"),
            title_length=c_cfg.get("title_length", 50),
        )

    # -- read side -------------------------------------------------------------

    @property
    def state(self) -> StreamingState:
        return self._state

    @property
    def conversation_id(self) -> str | None:
        return self._conversation_id

    @property
    def messages(self) -> tuple[Message, ...]:
        return tuple(self._messages)

    @property
    def open_message(self) -> Message | None:
        return self._open_message

    @property
    def current_model(self) -> str | None:
        return self.registry.current_code

    @property
    def is_streaming(self) -> bool:
        return self._state.in_flight

    def status(self) -> dict:
        return {
            "ready": self.registry.ready,
            "models": len(self.registry),
            "state": self._state.value,
            "streaming": self.is_streaming,
            "current_model": self.current_model,
            "conversation_id": self._conversation_id,
            "messages": len(self._messages),
        }

    # -- model selection -------------------------------------------------------

    async def start(self):
        """Load the model registry. Safe to call again to refresh it."""
        return await self.registry.load()

    def set_current_model(self, code: str) -> ModelInfo:
        """Switch models for the next message; the conversation is kept."""
        try:
            return self.registry.set_current_model(code)
        except ChatError as e:
            self.bus.publish(ErrorOccurred(message=e.message, code=e.code))
            raise

    # -- state machine ---------------------------------------------------------

    def _transition(self, new: StreamingState) -> None:
        if new not in _TRANSITIONS[self._state]:
            raise RuntimeError(f"Illegal session transition {self._state.value} -> {new.value}")
        logger.debug("Session %s -> %s", self._state.value, new.value)
        self._state = new
        if not new.in_flight:
            self._open_message = None

    def _new_message(self, role: Role, content: str, model_code: str | None = None) -> Message:
        return Message(
            id=self._new_id(),
            role=role,
            content=content,
            created_at=self._clock(),
            model_code=model_code,
        )

    def _build_request(self, text: str, title: str | None, **options) -> dict:
        body = {
            "message": text,
            "modelProvider": self.current_model,
            "conversationId": self._conversation_id,
            "title": title or generate_title(text, self.title_length),
            "userId": self.user_id,
        }
        for key, value in options.items():
            if value is not None:
                body[key] = value
        return body

    async def send_message(
        self,
        text: str,
        *,
        title: str | None = None,
        max_tokens: int | None = None,
        temperature: float | None = None,
    ) -> Message:
        """
        Send one user message and stream the reply into a new assistant message.

        Returns the assistant message once the exchange ends (completed or
        stopped). Raises TransportFailure / ProtocolError after the session has
        published the error and gone back to Idle.
        """
        if self._state is not StreamingState.IDLE or self._clearing:
            raise Busy()
        if not text or not text.strip():
            raise EmptyMessage()
        if not self.registry.ready:
            raise NotReady()

        text = text.strip()
        user = self._new_message(Role.USER, text)
        assistant = self._new_message(Role.ASSISTANT, "", model_code=self.current_model)
        # State and open message change together, before any observer runs
        self._transition(StreamingState.SENDING)
        self._open_message = assistant
        self._messages.extend((user, assistant))
        self.bus.publish(MessageAdded(message=user))
        self.bus.publish(MessageAdded(message=assistant))
        body = self._build_request(text, title, maxTokens=max_tokens, temperature=temperature)
        logger.info("Sending message (%d chars) to model '%s'", len(text), self.current_model)

        task = asyncio.create_task(self._run_exchange(body, assistant))
        self._exchange = task
        try:
            await asyncio.wait({task})
        except asyncio.CancelledError:
            # Caller went away: treat it as a stop
            task.cancel()
            await asyncio.wait({task})
            raise
        finally:
            self._exchange = None
            if task.cancelled():
                # Cancelled before its first step never reaches its own handler
                self._stopped()

        if not task.cancelled() and task.exception() is not None:
            raise task.exception()
        return assistant

    async def _run_exchange(self, body: dict, assistant: Message) -> None:
        stream: ChatStream | None = None
        decoder = self._decoder_factory()
        try:
            stream = await self.transport.open_chat_stream(body)
            async for event in decoder.aiter_events(self._received(stream)):
                self._apply(event, assistant)
            self._complete(assistant)
        except asyncio.CancelledError:
            self._stopped()
            raise
        except ProtocolError as e:
            self._fail(assistant, e, STREAM_INTERRUPTED_TEXT, e.message)
            raise
        except TransportFailure as e:
            if self._state is StreamingState.STREAMING:
                self._fail(assistant, e, STREAM_INTERRUPTED_TEXT, f"Stream interrupted: {e.message}")
            else:
                self._fail(assistant, e, SEND_FAILED_TEXT, f"Send failed: {e.message}")
            raise
        except Exception as e:
            logger.exception("Unexpected failure while streaming")
            self._fail(assistant, e, STREAM_INTERRUPTED_TEXT, f"Stream interrupted: {e}")
            raise
        finally:
            if stream is not None:
                await stream.aclose()

    async def _received(self, stream: ChatStream) -> AsyncIterator[bytes]:
        """Body chunks; the first one moves the session to Streaming."""
        async for chunk in stream.iter_bytes():
            if self._state is StreamingState.SENDING:
                self._transition(StreamingState.STREAMING)
            yield chunk

    def _apply(self, event: ProtocolEvent, assistant: Message) -> None:
        if isinstance(event, ContentDelta):
            assistant.append(event.text)
            self.bus.publish(ContentUpdated(message=assistant, content=assistant.content))
        elif isinstance(event, ConversationAssigned):
            if self._conversation_id is None:
                self._conversation_id = event.conversation_id
                logger.info("Conversation id assigned: %s", event.conversation_id)
            elif event.conversation_id != self._conversation_id:
                logger.debug(
                    "Ignoring conversation id %s, already %s",
                    event.conversation_id, self._conversation_id,
                )
        elif isinstance(event, Completed):
            self.last_completion = dict(event.meta)
            tokens = event.meta.get("totalTokens")
            if tokens:
                logger.info("Reply used %s tokens", tokens)
        elif isinstance(event, StreamError):
            raise ProtocolError(event.message)
        elif isinstance(event, Unrecognized):
            pass

    def _complete(self, assistant: Message) -> None:
        self._transition(StreamingState.COMPLETING)
        if not assistant.content.strip():
            assistant.content = NO_RESPONSE_TEXT
            self.bus.publish(ContentUpdated(message=assistant, content=assistant.content))
        assistant.created_at = self._clock()
        self.bus.publish(StreamComplete(message=assistant, conversation_id=self._conversation_id))
        self._transition(StreamingState.IDLE)
        logger.info("Reply complete (%d chars)", len(assistant.content))

    def _fail(self, assistant: Message, error: Exception, content: str, user_message: str) -> None:
        logger.warning("Exchange failed: %s", error)
        self._transition(StreamingState.ERROR)
        assistant.content = content
        self.bus.publish(ContentUpdated(message=assistant, content=content))
        code = error.code if isinstance(error, ChatError) else "unexpected"
        self.bus.publish(ErrorOccurred(message=user_message, code=code))
        self._transition(StreamingState.IDLE)

    def _stopped(self) -> None:
        if self._state.in_flight:
            self._transition(StreamingState.IDLE)
            self.bus.publish(StreamStopped())
            logger.info("Streaming stopped")

    async def stop_streaming(self) -> bool:
        """
        Cancel the in-flight exchange and release its connection.
        Returns False when nothing was in flight.
        """
        task = self._exchange
        if task is None or task.done():
            return False
        task.cancel()
        await asyncio.wait({task})
        return True

    async def clear_conversation(self) -> None:
        """Forget the conversation locally; the backend is told best-effort."""
        if self._state is not StreamingState.IDLE or self._clearing:
            raise Busy()
        self._clearing = True
        conversation_id = self._conversation_id
        try:
            if conversation_id:
                try:
                    await self.transport.delete_conversation(conversation_id)
                except Exception as e:
                    logger.warning("Failed to release conversation %s on backend: %s", conversation_id, e)
        finally:
            self._conversation_id = None
            self._messages.clear()
            self.last_completion = {}
            self._clearing = False
        self.bus.publish(ConversationCleared())
        logger.info("Conversation cleared")
