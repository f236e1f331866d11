"""
Tests for the wire log and tap formatter.
"""

import json
from pathlib import Path

import pytest

from chatwire.wiretap import WireLog, _format_entry, live_tap


@pytest.fixture
def wire_log(tmp_path):
    """Create a WireLog writing to a temp file."""
    return WireLog(str(tmp_path / "wire" / "wire.jsonl"))


def read_entries(wire_log) -> list[dict]:
    lines = Path(wire_log.log_path).read_text().strip().split("\n")
    return [json.loads(line) for line in lines if line]


def test_wire_log_writes_jsonl(wire_log):
    """WireLog writes one JSON object per line."""
    wire_log.log("outbound", "message-added", "user", "hello world", conversation_id="abc123")
    wire_log.log("inbound", "stream-complete", "assistant", "hi there!", model="qianwen")
    wire_log.close()

    first, second = read_entries(wire_log)
    assert first["dir"] == "outbound"
    assert first["role"] == "user"
    assert first["content"] == "hello world"
    assert first["conv"] == "abc123"
    assert second["model"] == "qianwen"
    assert second["len"] == len("hi there!")


def test_wire_log_truncates_long_content(wire_log):
    wire_log.log("inbound", "stream-complete", "assistant", "x" * 5000)
    wire_log.close()

    entry = read_entries(wire_log)[0]
    assert len(entry["content"]) < 5000
    assert "truncated" in entry["content"]
    assert entry["len"] == 5000


@pytest.mark.asyncio
async def test_wire_log_records_session_traffic(wire_log, session, transport):
    """Attached to a bus, the log records the user message and the finished reply."""
    wire_log.attach(session.bus)
    await session.start()
    transport.queue_reply(
        'event:conversation\ndata:{"conversationId":"42"}\n\n'
        'event:ai_chunk\ndata:{"chunk":"pong"}\n\n'
    )
    await session.send_message("ping")
    await session.clear_conversation()
    wire_log.close()

    entries = read_entries(wire_log)
    assert [(e["dir"], e["role"]) for e in entries] == [
        ("outbound", "user"),
        ("inbound", "assistant"),
        ("internal", "system"),
    ]
    assert entries[0]["content"] == "ping"
    assert entries[1]["content"] == "pong"
    assert entries[1]["model"] == "qianwen"
    assert entries[1]["conv"] == "42"
    assert entries[2]["event"] == "conversation-cleared"


@pytest.mark.asyncio
async def test_detached_log_stops_recording(wire_log, session):
    wire_log.attach(session.bus)
    wire_log.detach()
    await session.start()
    await session.clear_conversation()
    wire_log.close()
    assert not Path(wire_log.log_path).exists()


def test_format_entry_raw():
    entry = {"ts": "2026-01-01T00:00:00+00:00", "role": "user", "content": "test"}
    assert json.loads(_format_entry(entry, raw=True)) == entry


def test_format_entry_fancy():
    entry = {
        "ts": "2026-01-01T12:30:00+00:00",
        "dir": "inbound",
        "role": "assistant",
        "model": "deepseek",
        "conv": "abc123",
        "len": 11,
        "content": "hello world",
    }
    result = _format_entry(entry)
    assert "ASSISTANT" in result
    assert "deepseek" in result
    assert "hello world" in result
    assert "12:30:00" in result


def test_live_tap_without_follow(wire_log, capsys):
    wire_log.log("outbound", "message-added", "user", "first")
    wire_log.log("inbound", "stream-complete", "assistant", "second")
    wire_log.close()

    live_tap(str(wire_log.log_path), follow=False, role_filter="assistant", raw=True)
    out = capsys.readouterr().out.strip().split("\n")
    assert len(out) == 1
    assert json.loads(out[0])["content"] == "second"


def test_live_tap_missing_file(tmp_path, capsys):
    live_tap(str(tmp_path / "nope.jsonl"), follow=False)
    assert "No wire log" in capsys.readouterr().out
