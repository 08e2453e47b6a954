"""Tests for the durable fact flush."""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock

import pytest

from ctxguard.config import MemoryFlushConfig
from ctxguard.core.memory.flush import (
    ARCHIVIST_PROMPT,
    NO_REPLY_SENTINEL,
    MemoryFlusher,
    parse_flush_response,
)
from ctxguard.core.types import Role, Turn

FACTS_REPLY = "- The user prefers pytest over unittest\n- Project uses a flat package layout"


def sample_turns(count: int = 6) -> list[Turn]:
    turns = [Turn(role=Role.SYSTEM, content="You are a coding assistant.")]
    for i in range(count):
        role = Role.USER if i % 2 == 0 else Role.ASSISTANT
        turns.append(Turn(role=role, content=f"message {i}"))
    return turns


@pytest.fixture
def home(tmp_path, monkeypatch):
    path = tmp_path / "home"
    monkeypatch.setenv("CODEBUDDY_HOME", str(path))
    return path


# =============================================================
# Reply parsing
# =============================================================

class TestParseFlushResponse:
    def test_bullets(self):
        parsed = parse_flush_response(FACTS_REPLY)
        assert parsed.suppressed is False
        assert parsed.facts == [
            "The user prefers pytest over unittest",
            "Project uses a flat package layout",
        ]

    def test_sentinel_alone(self):
        assert parse_flush_response(NO_REPLY_SENTINEL).suppressed is True
        assert parse_flush_response(f"  {NO_REPLY_SENTINEL}\n").suppressed is True

    def test_sentinel_with_short_acknowledgement(self):
        assert parse_flush_response("NO_REPLY. Nothing new.").suppressed is True

    def test_sentinel_followed_by_payload(self):
        parsed = parse_flush_response(f"{NO_REPLY_SENTINEL}\n{FACTS_REPLY}")
        assert parsed.suppressed is False
        assert len(parsed.facts) == 2

    def test_ambiguous_sentinel_is_suppressed(self):
        parsed = parse_flush_response("- maybe this\nor NO_REPLY, not sure")
        assert parsed.suppressed is True
        assert parsed.facts == []

    def test_empty(self):
        parsed = parse_flush_response("")
        assert parsed.suppressed is False
        assert parsed.facts == []
        assert parse_flush_response(None).facts == []


# =============================================================
# Snapshot
# =============================================================

class TestSnapshot:
    def test_labels_and_separators(self):
        turns = sample_turns(2) + [
            Turn(role=Role.TOOL, content="exit 0", name="bash", tool_call_id="call_1"),
        ]

        snapshot = MemoryFlusher().build_snapshot(turns)

        assert snapshot == "USER:\nmessage 0\n---\nASSISTANT:\nmessage 1\n---\nTOOL (bash):\nexit 0"

    def test_bounded(self):
        flusher = MemoryFlusher(MemoryFlushConfig(max_turns=60, max_chars_per_turn=800))
        turns = [Turn(role=Role.USER, content=f"{i} " + "z" * 2000) for i in range(70)]

        snapshot = flusher.build_snapshot(turns)

        blocks = snapshot.split("\n---\n")
        assert len(blocks) == 60
        assert blocks[0].startswith("USER:\n10 ")
        assert all(len(b) <= len("USER:\n") + 800 for b in blocks)


# =============================================================
# flush()
# =============================================================

class TestFlush:
    @pytest.mark.asyncio
    async def test_writes_facts(self, tmp_path, home):
        chat_fn = AsyncMock(return_value=FACTS_REPLY)
        flusher = MemoryFlusher()

        result = await flusher.flush(sample_turns(), chat_fn, tmp_path)

        assert result.flushed is True
        assert result.suppressed is False
        assert result.facts_count == 2
        assert result.written_to == str(tmp_path / "MEMORY.md")

        text = (tmp_path / "MEMORY.md").read_text(encoding="utf-8")
        assert "## Memory flush (" in text
        assert "- The user prefers pytest over unittest" in text
        assert not home.exists()

    @pytest.mark.asyncio
    async def test_prompt_and_snapshot_sent(self, tmp_path, home):
        chat_fn = AsyncMock(return_value=NO_REPLY_SENTINEL)

        await MemoryFlusher().flush(sample_turns(), chat_fn, tmp_path)

        messages = chat_fn.await_args.args[0]
        assert messages[0] == {"role": "system", "content": ARCHIVIST_PROMPT}
        assert messages[1]["role"] == "user"
        assert "USER:\nmessage 0" in messages[1]["content"]
        assert "You are a coding assistant." not in messages[1]["content"]

    @pytest.mark.asyncio
    async def test_appends_rather_than_overwrites(self, tmp_path, home):
        (tmp_path / "MEMORY.md").write_text("# Notes\n\n- existing fact\n", encoding="utf-8")
        chat_fn = AsyncMock(return_value=FACTS_REPLY)
        flusher = MemoryFlusher()

        await flusher.flush(sample_turns(), chat_fn, tmp_path)
        await flusher.flush(sample_turns(), chat_fn, tmp_path)

        text = (tmp_path / "MEMORY.md").read_text(encoding="utf-8")
        assert text.startswith("# Notes\n\n- existing fact\n")
        assert text.count("## Memory flush (") == 2

    @pytest.mark.asyncio
    async def test_too_few_turns(self, tmp_path, home):
        chat_fn = AsyncMock(return_value=FACTS_REPLY)

        result = await MemoryFlusher().flush(sample_turns(2), chat_fn, tmp_path)

        assert result.flushed is False
        assert result.suppressed is False
        chat_fn.assert_not_called()

    @pytest.mark.asyncio
    async def test_disabled(self, tmp_path, home):
        chat_fn = AsyncMock(return_value=FACTS_REPLY)

        result = await MemoryFlusher(MemoryFlushConfig(enabled=False)).flush(sample_turns(), chat_fn, tmp_path)

        assert result.flushed is False
        chat_fn.assert_not_called()

    @pytest.mark.asyncio
    async def test_sentinel_writes_nothing(self, tmp_path, home):
        chat_fn = AsyncMock(return_value=NO_REPLY_SENTINEL)

        result = await MemoryFlusher().flush(sample_turns(), chat_fn, tmp_path)

        assert result.flushed is False
        assert result.suppressed is True
        assert result.facts_count == 0
        assert not (tmp_path / "MEMORY.md").exists()

    @pytest.mark.asyncio
    async def test_model_error(self, tmp_path, home):
        chat_fn = AsyncMock(side_effect=RuntimeError("provider unavailable"))

        result = await MemoryFlusher().flush(sample_turns(), chat_fn, tmp_path)

        assert result.flushed is False
        assert result.suppressed is False
        assert result.written_to is None

    @pytest.mark.asyncio
    async def test_sync_chat_fn_with_provider_response(self, tmp_path, home):
        chat_fn = MagicMock(return_value={"choices": [{"message": {"content": FACTS_REPLY}}]})

        result = await MemoryFlusher().flush(sample_turns(), chat_fn, tmp_path)

        assert result.flushed is True
        assert result.facts_count == 2

    @pytest.mark.asyncio
    async def test_malformed_response(self, tmp_path, home):
        chat_fn = AsyncMock(return_value={"choices": []})

        result = await MemoryFlusher().flush(sample_turns(), chat_fn, tmp_path)

        assert result.flushed is False
        assert result.suppressed is False
        assert not (tmp_path / "MEMORY.md").exists()

    @pytest.mark.asyncio
    async def test_falls_back_to_home(self, tmp_path, home):
        blocker = tmp_path / "not-a-dir"
        blocker.write_text("", encoding="utf-8")
        chat_fn = AsyncMock(return_value=FACTS_REPLY)

        result = await MemoryFlusher().flush(sample_turns(), chat_fn, blocker)

        assert result.flushed is True
        assert result.written_to == str(home / "MEMORY.md")
        assert "- Project uses a flat package layout" in (home / "MEMORY.md").read_text(encoding="utf-8")

    @pytest.mark.asyncio
    async def test_both_writes_fail(self, tmp_path, monkeypatch):
        blocker = tmp_path / "not-a-dir"
        blocker.write_text("", encoding="utf-8")
        monkeypatch.setenv("CODEBUDDY_HOME", str(blocker))
        chat_fn = AsyncMock(return_value=FACTS_REPLY)

        result = await MemoryFlusher().flush(sample_turns(), chat_fn, blocker)

        assert result.flushed is False
        assert result.written_to is None
        assert result.facts_count == 2
