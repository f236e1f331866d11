#!/usr/bin/env python3
"""
chatwire CLI — talk to the chat backend from a terminal.

Every command has a short name and standard aliases:

    COMMAND         ALIASES         WHAT IT DOES
    -------         -------         ----------------------------------
    chat            repl, talk      Interactive chat, replies stream in live
    send            ask             Send one message, print the reply
    models          list            Show the model registry
    tap             log, tail       Watch the wire log
    console         tui             Launch the full-screen console
    flash           info, config    Show the effective configuration
"""

import argparse
import asyncio
import logging
import sys
from pathlib import Path

from chatwire import __version__
from chatwire.errors import ChatError
from chatwire.events import (
    ContentUpdated,
    ConversationCleared,
    ErrorOccurred,
    EventBus,
    MessageAdded,
    ModelChanged,
    StreamComplete,
    StreamStopped,
)
from chatwire.models import Role

BANNER = r"""
    ┌──────────────────────────────────────────────┐
    │   ┏━╸╻ ╻┏━┓╺┳╸╻ ╻╻┏━┓┏━╸                     │
    │   ┃  ┣━┫┣━┫ ┃ ┃╻┃┃┣┳┛┣╸                      │
    │   ┗━╸╹ ╹╹ ╹ ╹ ┗┻┛╹╹┗╸┗━╸                     │
    │   streaming chat on the wire     v""" + __version__ + r"""        │
    └──────────────────────────────────────────────┘
"""

C_RESET = "\033[0m"
C_DIM = "\033[2m"
C_ASSISTANT = "\033[93m"
C_ERROR = "\033[91m"

SLASH_HELP = """  /models          list models
  /model <code>    switch model (keeps the conversation)
  /clear           start a new conversation
  /status          show session status
  /quit            leave"""


def _setup_logging(cfg: dict):
    log_cfg = cfg.get("logging", {})
    level = getattr(logging, str(log_cfg.get("level", "WARNING")).upper(), logging.WARNING)
    log_file = log_cfg.get("file")

    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_file))

    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        handlers=handlers,
    )


def _load(args) -> dict:
    from chatwire.config import load_config
    cfg = load_config(getattr(args, "config", None))
    if getattr(args, "url", None):
        cfg["backend"]["url"] = args.url
    _setup_logging(cfg)
    return cfg


# ---------------------------------------------------------------------------
# Terminal renderer
# ---------------------------------------------------------------------------

class TerminalRenderer:
    """
    Prints session events to a text stream.

    content-updated carries the full text each time; only the part not yet
    printed is written. If the text was replaced (error substitution) the
    whole new text is printed on a fresh line.
    """

    def __init__(self, out=None, color: bool = True):
        self.out = out or sys.stdout
        self.color = color
        self._printed = ""

    def _c(self, code: str) -> str:
        return code if self.color else ""

    def _write(self, text: str) -> None:
        self.out.write(text)
        self.out.flush()

    def attach(self, bus: EventBus) -> "TerminalRenderer":
        bus.subscribe(MessageAdded.name, self.on_message_added)
        bus.subscribe(ContentUpdated.name, self.on_content_updated)
        bus.subscribe(StreamComplete.name, self.on_stream_complete)
        bus.subscribe(StreamStopped.name, self.on_stream_stopped)
        bus.subscribe(ErrorOccurred.name, self.on_error)
        bus.subscribe(ModelChanged.name, self.on_model_changed)
        bus.subscribe(ConversationCleared.name, self.on_cleared)
        return self

    def on_message_added(self, event: MessageAdded) -> None:
        msg = event.message
        if msg is not None and msg.role is Role.ASSISTANT:
            self._printed = ""
            self._write(f"  {self._c(C_ASSISTANT)}{msg.model_code or 'bot'}>{self._c(C_RESET)} ")

    def on_content_updated(self, event: ContentUpdated) -> None:
        text = event.content
        if text.startswith(self._printed):
            self._write(text[len(self._printed):])
        else:
            self._write("\n    " + text)
        self._printed = text

    def on_stream_complete(self, event: StreamComplete) -> None:
        self._write("\n\n")

    def on_stream_stopped(self, event: StreamStopped) -> None:
        self._write(f"\n  {self._c(C_DIM)}[stopped]{self._c(C_RESET)}\n\n")

    def on_error(self, event: ErrorOccurred) -> None:
        self._write(f"\n  {self._c(C_ERROR)}✗ {event.message}{self._c(C_RESET)}\n\n")

    def on_model_changed(self, event: ModelChanged) -> None:
        self._write(f"  {self._c(C_DIM)}model: {event.new_code} ({event.new_name}){self._c(C_RESET)}\n")

    def on_cleared(self, event: ConversationCleared) -> None:
        self._write(f"  {self._c(C_DIM)}[new conversation]{self._c(C_RESET)}\n")


def _build_session(cfg: dict):
    from chatwire.session import ChatSession
    from chatwire.wiretap import WireLog

    session = ChatSession.from_config(cfg)
    wire = None
    tap_cfg = cfg.get("wiretap", {})
    if tap_cfg.get("enabled"):
        wire = WireLog(tap_cfg.get("path", "./data/wire.jsonl")).attach(session.bus)
    return session, wire


def _print_models(session) -> None:
    for info in session.registry:
        marker = "●" if info.code == session.current_model else " "
        print(f"  {marker} {info.code:<16} {info.display_name}")


async def _slash(session, line: str) -> bool:
    """Run a /command. Returns False when the REPL should exit."""
    cmd, _, arg = line[1:].partition(" ")
    arg = arg.strip()
    if cmd in ("quit", "exit", "q"):
        return False
    if cmd == "models":
        _print_models(session)
    elif cmd == "model":
        if not arg:
            print(f"  current: {session.current_model}")
        else:
            try:
                session.set_current_model(arg)
            except ChatError:
                pass  # Renderer already printed the error
    elif cmd == "clear":
        await session.clear_conversation()
    elif cmd == "status":
        for key, value in session.status().items():
            print(f"  {key:<16} {value}")
    else:
        print(SLASH_HELP)
    return True


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------

def cmd_chat(args):
    """Interactive chat. Ctrl-C while a reply streams stops it."""
    cfg = _load(args)
    session, wire = _build_session(cfg)
    TerminalRenderer(color=not args.no_color).attach(session.bus)

    print(BANNER)
    print(f"  Backend: {cfg['backend']['url']}")
    print("  Type /help for commands, Ctrl-D to leave.\n")

    loop = asyncio.new_event_loop()
    try:
        result = loop.run_until_complete(session.start())
        if result.fallback:
            print(f"  ⚠  Model list unavailable ({result.error}), using built-in models")
        if args.model:
            try:
                session.set_current_model(args.model)
            except ChatError:
                pass
        print(f"  Model: {session.current_model}\n")

        while True:
            try:
                line = input("  you> ").strip()
            except (EOFError, KeyboardInterrupt):
                print()
                break
            if not line:
                continue
            if line.startswith("/"):
                if not loop.run_until_complete(_slash(session, line)):
                    break
                continue

            task = loop.create_task(session.send_message(line))
            try:
                loop.run_until_complete(task)
            except KeyboardInterrupt:
                loop.run_until_complete(session.stop_streaming())
                loop.run_until_complete(asyncio.wait({task}))
                if not task.cancelled():
                    task.exception()
            except ChatError:
                pass  # Shown by the renderer; the input is still in the history
    finally:
        loop.run_until_complete(session.transport.aclose())
        loop.close()
        if wire:
            wire.close()


def cmd_send(args):
    """Send one message and print the reply."""
    cfg = _load(args)
    session, wire = _build_session(cfg)
    TerminalRenderer(color=not args.no_color).attach(session.bus)

    async def _run() -> int:
        try:
            await session.start()
            if args.model:
                session.set_current_model(args.model)
            await session.send_message(" ".join(args.message))
            return 0
        except ChatError as e:
            print(f"  ✗  {e.message}", file=sys.stderr)
            return 1
        finally:
            await session.transport.aclose()

    try:
        code = asyncio.run(_run())
    finally:
        if wire:
            wire.close()
    sys.exit(code)


def cmd_models(args):
    """Show the model registry."""
    cfg = _load(args)
    session, _ = _build_session(cfg)

    async def _run():
        try:
            return await session.start()
        finally:
            await session.transport.aclose()

    result = asyncio.run(_run())
    print(f"  Registry: {cfg['backend']['url']}")
    if result.fallback:
        print(f"  ⚠  Fetch failed ({result.error}), showing built-in models")
    _print_models(session)


def cmd_tap(args):
    """Watch the wire log."""
    from chatwire.wiretap import live_tap
    _load(args)
    live_tap(
        log_path=args.log,
        follow=not args.no_follow,
        last_n=args.last,
        role_filter=args.role,
        raw=args.raw,
    )


def cmd_console(args):
    """Launch the full-screen console."""
    from chatwire.tui.app import ChatwireApp
    cfg = _load(args)
    session, wire = _build_session(cfg)
    try:
        ChatwireApp(session).run()
    finally:
        if wire:
            wire.close()


def cmd_flash(args):
    """Show the effective configuration."""
    cfg = _load(args)
    b_cfg = cfg["backend"]
    endpoints = b_cfg.get("endpoints", {})
    m_cfg = cfg.get("models", {})
    tap_cfg = cfg.get("wiretap", {})

    print(BANNER)
    print("  Backend")
    print(f"  ├─ URL:      {b_cfg['url']}")
    print(f"  ├─ Timeout:  {b_cfg.get('timeout', 120)}s")
    print(f"  ├─ Models:   GET {endpoints.get('models')}")
    print(f"  ├─ Send:     POST {endpoints.get('send')}")
    print(f"  └─ Clear:    DELETE {endpoints.get('clear')}/<conversationId>")
    print()
    print("  Chat")
    print(f"  ├─ User id:  {cfg.get('chat', {}).get('user_id')}")
    fallback = m_cfg.get("fallback", {})
    print(f"  └─ Fallback: {', '.join(fallback) if fallback else 'none'} (default {m_cfg.get('fallback_default')})")
    print()
    print("  Wiretap")
    print(f"  └─ {'on → ' + str(tap_cfg.get('path')) if tap_cfg.get('enabled') else 'off'}")


# ---------------------------------------------------------------------------
# Parser with aliases
# ---------------------------------------------------------------------------

def _add_command(subparsers, names, help_text, func, setup_fn=None):
    """Register a command under multiple names."""
    p = subparsers.add_parser(names[0], help=help_text, aliases=names[1:])
    p.set_defaults(func=func)
    p.add_argument("--config", "-c", default=None, help="Path to config.yaml")
    if setup_fn:
        setup_fn(p)
    return p


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="chatwire",
        description="chatwire — streaming chat client.",
        epilog="Run 'chatwire <command> --help' for command-specific options.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--version", "-V", action="version",
        version=f"chatwire {__version__}",
    )
    sub = parser.add_subparsers(dest="command", metavar="<command>")

    def setup_backend(p):
        p.add_argument("--url", "-u", default=None, help="Override backend URL")
        p.add_argument("--model", "-m", default=None, help="Model code to use")
        p.add_argument("--no-color", action="store_true", help="Plain output")

    _add_command(sub, ["chat", "repl", "talk"],
                 "Interactive chat", cmd_chat, setup_backend)

    def setup_send(p):
        setup_backend(p)
        p.add_argument("message", nargs="+", help="Message to send")

    _add_command(sub, ["send", "ask"],
                 "Send one message and print the reply", cmd_send, setup_send)

    def setup_models(p):
        p.add_argument("--url", "-u", default=None, help="Override backend URL")

    _add_command(sub, ["models", "list"],
                 "Show the model registry", cmd_models, setup_models)

    def setup_tap(p):
        p.add_argument("--log", default=None, help="Path to wire.jsonl (default: from config)")
        p.add_argument("--last", "-n", type=int, default=20, help="Show last N entries before following")
        p.add_argument("--role", "-r", choices=["user", "assistant", "system", "error"], default=None,
                       help="Filter by role")
        p.add_argument("--no-follow", action="store_true", help="Don't follow, just show last entries")
        p.add_argument("--raw", action="store_true", help="Raw JSONL output, no formatting")

    _add_command(sub, ["tap", "log", "tail"],
                 "Watch the wire log", cmd_tap, setup_tap)

    def setup_console(p):
        p.add_argument("--url", "-u", default=None, help="Override backend URL")

    _add_command(sub, ["console", "tui"],
                 "Launch the full-screen console", cmd_console, setup_console)

    _add_command(sub, ["flash", "info", "config"],
                 "Show the effective configuration", cmd_flash)

    return parser


def main():
    parser = build_parser()
    args = parser.parse_args()
    if not args.command:
        print(BANNER)
        parser.print_help()
        return

    args.func(args)


if __name__ == "__main__":
    main()
