"""
Errors surfaced by the chat session.

Every error here is recoverable at the session boundary: the session is
always back in Idle by the time one reaches the caller.
"""

from __future__ import annotations


class ChatError(Exception):
    """Base for all chatwire errors. `code` is stable, `message` is user-facing."""
    code = "chat_error"
    default_message = "Chat error"

    def __init__(self, message: str | None = None):
        self.message = message or self.default_message
        super().__init__(self.message)


class EmptyMessage(ChatError):
    code = "empty_message"
    default_message = "Message content cannot be empty"


class Busy(ChatError):
    code = "busy"
    default_message = "Another message is still being processed, please wait"


class NotReady(ChatError):
    code = "not_ready"
    default_message = "Model registry has not been loaded yet"


class UnknownModel(ChatError):
    code = "unknown_model"
    default_message = "Unknown model"

    def __init__(self, model_code: str):
        self.model_code = model_code
        super().__init__(f"Unknown model: {model_code}")


class TransportFailure(ChatError):
    """Network error or non-2xx response from the backend."""
    code = "transport_failure"
    default_message = "Could not reach the chat backend"

    def __init__(self, message: str | None = None, status_code: int | None = None):
        self.status_code = status_code
        super().__init__(message)


class ProtocolError(ChatError):
    """The backend sent an explicit error event in the stream."""
    code = "protocol_error"
    default_message = "The backend reported an error"
