"""
Wiretap — a structured record of what the client sent and received.

Two parts:
  1. WireLog: an event-bus observer that appends one JSONL entry per
     lifecycle event (message sent, reply finished, error, stop, model
     switch, clear).
  2. live_tap(): reads the JSONL back and prints a color-coded view,
     optionally following new entries like `tail -f`.

The wire log is separate from the debug log: it only holds conversation
traffic, never internals.
"""

import json
import logging
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable

from chatwire.events import (
    ConversationCleared,
    ErrorOccurred,
    EventBus,
    MessageAdded,
    ModelChanged,
    StreamComplete,
    StreamStopped,
)
from chatwire.models import Role

logger = logging.getLogger(__name__)

# ANSI colors
C_RESET = "\033[0m"
C_BOLD = "\033[1m"
C_DIM = "\033[2m"
C_USER = "\033[96m"       # cyan
C_ASSISTANT = "\033[93m"  # yellow
C_SYSTEM = "\033[90m"     # gray
C_MODEL = "\033[95m"      # magenta
C_ERROR = "\033[91m"      # red

ROLE_COLORS = {
    "user": C_USER,
    "assistant": C_ASSISTANT,
    "system": C_SYSTEM,
    "error": C_ERROR,
}

ROLE_ICONS = {
    "user": "▶",
    "assistant": "◀",
    "system": "●",
    "error": "✗",
}

MAX_CONTENT = 2000


class WireLog:
    """
    JSONL recorder for session traffic.

    Format:
        {"ts": "...", "dir": "outbound|inbound|internal", "event": "...",
         "role": "...", "model": "...", "conv": "...", "len": 12, "content": "..."}
    """

    def __init__(self, log_path: str):
        self.log_path = Path(log_path)
        self.log_path.parent.mkdir(parents=True, exist_ok=True)
        self._file = None
        self._unsubscribe: list[Callable[[], None]] = []
        self._conversation_id = ""

    def _ensure_open(self):
        if self._file is None:
            self._file = open(self.log_path, "a", buffering=1)  # line-buffered

    def log(
        self,
        direction: str,
        event: str,
        role: str,
        content: str = "",
        model: str = "",
        conversation_id: str = "",
    ):
        """Write a wire log entry."""
        self._ensure_open()
        entry = {
            "ts": datetime.now(timezone.utc).isoformat(),
            "dir": direction,
            "event": event,
            "role": role,
            "model": model,
            "conv": conversation_id or "",
            "len": len(content),
        }
        if len(content) <= MAX_CONTENT:
            entry["content"] = content
        else:
            half = MAX_CONTENT // 2
            entry["content"] = (
                content[:half]
                + f"\n\n[... {len(content) - MAX_CONTENT} chars truncated ...]\n\n"
                + content[-half:]
            )
        self._file.write(json.dumps(entry, ensure_ascii=False) + "\n")

    # -- bus wiring ------------------------------------------------------------

    def attach(self, bus: EventBus) -> "WireLog":
        """Start recording events published on `bus`."""
        self._unsubscribe = [
            bus.subscribe(MessageAdded.name, self._on_message_added),
            bus.subscribe(StreamComplete.name, self._on_stream_complete),
            bus.subscribe(ErrorOccurred.name, self._on_error),
            bus.subscribe(StreamStopped.name, self._on_stopped),
            bus.subscribe(ModelChanged.name, self._on_model_changed),
            bus.subscribe(ConversationCleared.name, self._on_cleared),
        ]
        return self

    def detach(self) -> None:
        for unsubscribe in self._unsubscribe:
            unsubscribe()
        self._unsubscribe = []

    def _on_message_added(self, event: MessageAdded) -> None:
        # Assistant placeholders are recorded once complete
        msg = event.message
        if msg is None or msg.role is not Role.USER:
            return
        self.log("outbound", event.name, "user", msg.content, conversation_id=self._conversation_id)

    def _on_stream_complete(self, event: StreamComplete) -> None:
        msg = event.message
        self._conversation_id = event.conversation_id or ""
        self.log(
            "inbound", event.name, "assistant",
            msg.content if msg else "",
            model=(msg.model_code or "") if msg else "",
            conversation_id=self._conversation_id,
        )

    def _on_error(self, event: ErrorOccurred) -> None:
        self.log("internal", event.name, "error", event.message, conversation_id=self._conversation_id)

    def _on_stopped(self, event: StreamStopped) -> None:
        self.log("internal", event.name, "system", "stopped by user", conversation_id=self._conversation_id)

    def _on_model_changed(self, event: ModelChanged) -> None:
        self.log(
            "internal", event.name, "system",
            f"{event.old_code or '-'} -> {event.new_code} ({event.new_name})",
            model=event.new_code,
        )

    def _on_cleared(self, event: ConversationCleared) -> None:
        self.log("internal", event.name, "system", "conversation cleared", conversation_id=self._conversation_id)
        self._conversation_id = ""

    def close(self):
        self.detach()
        if self._file:
            self._file.close()
            self._file = None


def _format_entry(entry: dict, raw: bool = False) -> str:
    """Format a single wire log entry for display."""
    if raw:
        return json.dumps(entry, ensure_ascii=False)

    ts = entry.get("ts", "")
    try:
        time_str = datetime.fromisoformat(ts).strftime("%H:%M:%S")
    except (ValueError, TypeError):
        time_str = ts[:8] if ts else "??:??:??"

    role = entry.get("role", "?")
    direction = entry.get("dir", "?")
    model = entry.get("model", "")
    conv = entry.get("conv", "")
    content = entry.get("content", "")

    color = ROLE_COLORS.get(role, C_RESET)
    icon = ROLE_ICONS.get(role, "?")
    arrow = {"outbound": "──▶", "inbound": "◀──"}.get(direction, "─●─")

    header = f"  {C_DIM}{time_str}{C_RESET} {C_DIM}{arrow}{C_RESET} {color}{C_BOLD}{icon} {role.upper()}{C_RESET}"
    if model:
        header += f"  {C_MODEL}[{model}]{C_RESET}"
    header += f"  {C_DIM}({entry.get('len', 0)} chars){C_RESET}"
    if conv:
        header += f"  {C_DIM}conv:{conv[:16]}{C_RESET}"

    lines = [header]
    if content:
        shown = content if len(content) <= 500 else content[:500] + f"\n{C_DIM}[... truncated]{C_RESET}"
        content_lines = shown.split("\n")
        lines.extend(f"      {cline}" for cline in content_lines[:15])
        if len(content_lines) > 15:
            lines.append(f"      {C_DIM}[... {len(content_lines) - 15} more lines]{C_RESET}")
    lines.append(f"  {C_DIM}{'─' * 60}{C_RESET}")
    return "\n".join(lines)


def _print_line(line: str, role_filter: str | None, raw: bool) -> None:
    line = line.strip()
    if not line:
        return
    try:
        entry = json.loads(line)
    except json.JSONDecodeError:
        return
    if role_filter and entry.get("role") != role_filter:
        return
    print(_format_entry(entry, raw=raw))


def live_tap(
    log_path: str | None = None,
    follow: bool = True,
    last_n: int = 20,
    role_filter: str | None = None,
    raw: bool = False,
):
    """
    Print the last `last_n` wire entries, then keep following the file.

    Args:
        log_path: Path to wire.jsonl. If None, reads from config.
        follow: Keep watching for new entries.
        last_n: Entries to show before following.
        role_filter: Only show entries with this role.
        raw: Print raw JSONL instead of formatted entries.
    """
    if log_path is None:
        from chatwire.config import get_config
        log_path = get_config().get("wiretap", {}).get("path", "./data/wire.jsonl")

    wire_path = Path(log_path)
    if not wire_path.exists():
        print(f"  ✗  No wire log found at {wire_path}")
        print("     Enable it with wiretap.enabled: true and chat for a bit.")
        return

    if not raw:
        print(f"  Tapping {wire_path}")
        print(f"  {C_DIM}{'═' * 60}{C_RESET}")

    with open(wire_path) as f:
        history = f.readlines()
    for line in history[max(0, len(history) - last_n):]:
        _print_line(line, role_filter, raw)

    if not follow:
        return

    if not raw:
        print(f"\n  {C_DIM}[following... Ctrl+C to stop]{C_RESET}\n")
    try:
        with open(wire_path) as f:
            f.seek(0, 2)
            while True:
                line = f.readline()
                if not line:
                    time.sleep(0.1)
                    continue
                _print_line(line, role_filter, raw)
    except KeyboardInterrupt:
        if not raw:
            print(f"\n  {C_DIM}[tap closed]{C_RESET}")
