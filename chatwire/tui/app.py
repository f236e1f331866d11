"""
chatwire console — full-screen chat in the terminal.
Textual app that renders a ChatSession. It only reads session state and
listens on the event bus; every change goes through session methods.
Entry point: chatwire console (alias: tui)
"""
from __future__ import annotations

from typing import ClassVar

from textual import on
from textual.app import App, ComposeResult
from textual.binding import Binding
from textual.containers import Horizontal, VerticalScroll
from textual.widgets import Footer, Header, Input, Select, Static

from chatwire.errors import Busy, ChatError
from chatwire.events import (
    ContentUpdated,
    ConversationCleared,
    ErrorOccurred,
    MessageAdded,
    ModelChanged,
    ModelsLoaded,
    StreamComplete,
    StreamStopped,
)
from chatwire.session import ChatSession
from chatwire.tui.widgets import MessageView


class ChatwireApp(App):
    """Chat console bound to one session."""

    TITLE = "chatwire"
    SUB_TITLE = "streaming chat on the wire"
    CSS = """
    #toolbar {
        height: auto;
        padding: 0 1;
    }
    #model-select {
        width: 40;
    }
    #state {
        padding: 1 2;
        color: $text-muted;
    }
    #messages {
        height: 1fr;
    }
    #prompt {
        margin: 0 1;
    }
    """
    BINDINGS: ClassVar[list[Binding]] = [
        Binding("ctrl+q", "quit", "Disconnect", priority=True),
        Binding("escape", "stop", "Stop reply"),
        Binding("ctrl+l", "clear", "New chat"),
        Binding("ctrl+r", "reload_models", "Reload models"),
    ]

    def __init__(self, session: ChatSession, **kwargs):
        super().__init__(**kwargs)
        self.session = session
        self._views: dict[str, MessageView] = {}
        self._unsubscribe: list = []

    def compose(self) -> ComposeResult:
        yield Header(show_clock=True)
        with Horizontal(id="toolbar"):
            yield Select([], prompt="Model", id="model-select", allow_blank=True)
            yield Static("idle", id="state")
        yield VerticalScroll(id="messages")
        yield Input(placeholder="Type a message and press Enter", id="prompt")
        yield Footer()

    def on_mount(self) -> None:
        bus = self.session.bus
        self._unsubscribe = [
            bus.subscribe(ModelsLoaded.name, self._on_models_loaded),
            bus.subscribe(ModelChanged.name, self._on_model_changed),
            bus.subscribe(MessageAdded.name, self._on_message_added),
            bus.subscribe(ContentUpdated.name, self._on_content_updated),
            bus.subscribe(StreamComplete.name, self._on_stream_complete),
            bus.subscribe(StreamStopped.name, self._on_stream_stopped),
            bus.subscribe(ConversationCleared.name, self._on_cleared),
            bus.subscribe(ErrorOccurred.name, self._on_error),
        ]
        self.query_one("#prompt", Input).focus()
        self.action_reload_models()

    async def on_unmount(self) -> None:
        for unsubscribe in self._unsubscribe:
            unsubscribe()
        await self.session.transport.aclose()

    def _set_state(self) -> None:
        status = self.session.status()
        conv = status["conversation_id"] or "new"
        self.query_one("#state", Static).update(f"{status['state']} · conversation {conv}")

    # -- bus handlers ----------------------------------------------------------

    def _on_models_loaded(self, event: ModelsLoaded) -> None:
        select = self.query_one("#model-select", Select)
        select.set_options([(name, code) for code, name in event.registry.items()])
        select.value = event.default_code
        if event.fallback:
            self.notify("Model list unavailable, using built-in models", severity="warning")

    def _on_model_changed(self, event: ModelChanged) -> None:
        self.notify(f"Model: {event.new_name}")

    def _on_message_added(self, event: MessageAdded) -> None:
        view = MessageView(event.message)
        self._views[event.message.id] = view
        messages = self.query_one("#messages", VerticalScroll)
        messages.mount(view)
        messages.scroll_end(animate=False)
        self._set_state()

    def _on_content_updated(self, event: ContentUpdated) -> None:
        view = self._views.get(event.message.id)
        if view is not None:
            view.set_content(event.content)
            self.query_one("#messages", VerticalScroll).scroll_end(animate=False)
        self._set_state()

    def _on_stream_complete(self, event: StreamComplete) -> None:
        view = self._views.get(event.message.id)
        if view is not None:
            view.set_header(event.message)
        self._set_state()

    def _on_stream_stopped(self, event: StreamStopped) -> None:
        self.notify("Reply stopped")
        self._set_state()

    def _on_cleared(self, event: ConversationCleared) -> None:
        self.query_one("#messages", VerticalScroll).remove_children()
        self._views.clear()
        self._set_state()

    def _on_error(self, event: ErrorOccurred) -> None:
        self.notify(event.message, severity="error", timeout=6)
        self._set_state()

    # -- user input ------------------------------------------------------------

    @on(Select.Changed, "#model-select")
    def _model_selected(self, event: Select.Changed) -> None:
        if event.value is Select.BLANK or event.value == self.session.current_model:
            return
        try:
            self.session.set_current_model(str(event.value))
        except ChatError:
            pass  # Reported through the error event

    @on(Input.Submitted, "#prompt")
    def _submit(self, event: Input.Submitted) -> None:
        text = event.value
        if not text.strip():
            return
        event.input.value = ""
        self.run_worker(self._send(text), group="send")

    async def _send(self, text: str) -> None:
        try:
            await self.session.send_message(text)
        except Busy as e:
            self.notify(e.message, severity="warning")
            self._restore_input(text)
        except ChatError:
            # Error already shown; give the user their text back
            self._restore_input(text)

    def _restore_input(self, text: str) -> None:
        prompt = self.query_one("#prompt", Input)
        if not prompt.value:
            prompt.value = text

    # -- actions ---------------------------------------------------------------

    def action_stop(self) -> None:
        self.run_worker(self.session.stop_streaming(), group="control")

    def action_clear(self) -> None:
        async def _clear() -> None:
            try:
                await self.session.clear_conversation()
            except Busy as e:
                self.notify(e.message, severity="warning")
        self.run_worker(_clear(), group="control")

    def action_reload_models(self) -> None:
        self.run_worker(self.session.start(), group="control")
