"""
Widgets for the chatwire console.
A MessageView renders one session message; it re-renders the whole text on
every update, the way content-updated events are meant to be consumed.
"""
from __future__ import annotations

from rich.markdown import Markdown
from rich.text import Text
from textual.app import ComposeResult
from textual.containers import Vertical
from textual.widgets import Static

from chatwire.models import Message, Role


class MessageView(Vertical):
    """One chat bubble: a header line and the message body."""

    DEFAULT_CSS = """
    MessageView {
        height: auto;
        margin: 0 1 1 1;
        padding: 0 1;
        border-left: thick $accent;
    }
    MessageView.user {
        border-left: thick $primary;
    }
    MessageView .message-header {
        color: $text-muted;
    }
    """

    def __init__(self, message: Message, **kwargs):
        super().__init__(classes=message.role.value, **kwargs)
        self.message_id = message.id
        self._role = message.role
        self._header = Static(self._header_text(message), classes="message-header")
        self._body = Static(self._renderable(message.content or "…"), classes="message-body")

    @staticmethod
    def _header_text(message: Message) -> str:
        who = "you" if message.role is Role.USER else (message.model_code or "assistant")
        return f"{who} · {message.created_at.astimezone().strftime('%H:%M')}"

    def _renderable(self, content: str):
        # User text is shown verbatim, replies as markdown
        if self._role is Role.USER:
            return Text(content)
        return Markdown(content)

    def compose(self) -> ComposeResult:
        yield self._header
        yield self._body

    def set_content(self, content: str) -> None:
        self._body.update(self._renderable(content))

    def set_header(self, message: Message) -> None:
        self._header.update(self._header_text(message))
