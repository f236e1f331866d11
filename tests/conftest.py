"""
Shared fixtures: an in-memory transport that replays canned byte streams.
"""

import asyncio
import itertools
from datetime import datetime, timezone

import pytest
import pytest_asyncio

from chatwire.events import ALL, EventBus
from chatwire.registry import ModelRegistry
from chatwire.session import ChatSession
from chatwire.transport import BaseTransport, ChatStream

MODELS_PAYLOAD = {
    "success": True,
    "models": {"qianwen": "Alibaba Qianwen", "deepseek": "DeepSeek"},
    "defaultModel": "qianwen",
}

FIXED_TIME = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)


class FakeStream(ChatStream):
    """Yields canned chunks. `gate` holds the stream open until set; `fail_with` is raised at the end."""

    def __init__(self, chunks, fail_with=None, gate=None):
        self.chunks = [c.encode() if isinstance(c, str) else c for c in chunks]
        self.fail_with = fail_with
        self.gate = gate
        self.closed = False

    async def iter_bytes(self):
        for chunk in self.chunks:
            yield chunk
            await asyncio.sleep(0)
        if self.gate is not None:
            await self.gate.wait()
        if self.fail_with is not None:
            raise self.fail_with

    async def aclose(self):
        self.closed = True


class FakeTransport(BaseTransport):
    def __init__(self, models=MODELS_PAYLOAD):
        self.models = models
        self.streams: list[FakeStream] = []
        self.opened: list[FakeStream] = []
        self.bodies: list[dict] = []
        self.deleted: list[str] = []
        self.open_error = None
        self.delete_error = None
        self.open_gate: asyncio.Event | None = None
        self.fetch_calls = 0

    def queue_reply(self, *chunks, fail_with=None, gate=None) -> FakeStream:
        stream = FakeStream(chunks, fail_with=fail_with, gate=gate)
        self.streams.append(stream)
        return stream

    async def fetch_models(self):
        self.fetch_calls += 1
        if isinstance(self.models, Exception):
            raise self.models
        return self.models

    async def open_chat_stream(self, body):
        self.bodies.append(body)
        if self.open_gate is not None:
            await self.open_gate.wait()
        if self.open_error is not None:
            raise self.open_error
        stream = self.streams.pop(0)
        self.opened.append(stream)
        return stream

    async def delete_conversation(self, conversation_id):
        self.deleted.append(conversation_id)
        if self.delete_error is not None:
            raise self.delete_error


class Recorder:
    """Collects every event published on a bus."""

    def __init__(self, bus: EventBus):
        self.events = []
        bus.subscribe(ALL, self.events.append)

    @property
    def names(self) -> list[str]:
        return [e.name for e in self.events]

    def of(self, name: str) -> list:
        return [e for e in self.events if e.name == name]


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def bus():
    return EventBus()


@pytest.fixture
def recorder(bus):
    return Recorder(bus)


@pytest.fixture
def session(transport, bus):
    ids = itertools.count(1)
    return ChatSession(
        transport,
        ModelRegistry(transport, bus),
        bus,
        clock=lambda: FIXED_TIME,
        id_factory=lambda: f"m{next(ids)}",
    )


@pytest_asyncio.fixture
async def ready_session(session):
    await session.start()
    return session
