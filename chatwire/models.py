"""
Data models for the chat session.
These define the shape of data flowing between the session and its observers.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from uuid import uuid4


class Role(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"


class StreamingState(str, Enum):
    """Lifecycle of the single in-flight exchange."""
    IDLE = "idle"
    SENDING = "sending"
    STREAMING = "streaming"
    COMPLETING = "completing"
    ERROR = "error"

    @property
    def in_flight(self) -> bool:
        return self in (StreamingState.SENDING, StreamingState.STREAMING)


@dataclass(frozen=True)
class ModelInfo:
    """A backend model: its code and the name shown in selectors."""
    code: str
    display_name: str


@dataclass
class Message:
    """A single message in the conversation. Owned by the session."""
    id: str = field(default_factory=lambda: uuid4().hex)
    role: Role = Role.USER
    content: str = ""
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    model_code: str | None = None  # Only set for assistant messages

    def append(self, text: str) -> None:
        self.content += text
