"""Durable fact flush: distil long-term notes before lossy compaction.

Before older turns are discarded, a bounded snapshot of the conversation
is sent to the model with an archivist instruction. The reply is either
a sentinel meaning "nothing worth keeping" or a bullet list of facts,
which is appended as a dated section to MEMORY.md in the working
directory (or the per-user fallback file).

The flush works on the snapshot it is given and never raises: model
errors, malformed replies and write failures all degrade to a typed
FlushResult.
"""

from __future__ import annotations

import inspect
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Sequence

import structlog

from ctxguard.config import MemoryFlushConfig, get_home
from ctxguard.core.types import FlushResponse, FlushResult, Role, Turn

logger = structlog.get_logger()

# Type for the model call: (messages) -> provider response
ChatFn = Callable[[list[dict[str, Any]]], Any]

NO_REPLY_SENTINEL = "NO_REPLY"

# Sentinel followed by less than this much text counts as an acknowledgement
_MIN_PAYLOAD_CHARS = 40

_RULE = "\n---\n"

ARCHIVIST_PROMPT = (
    "You are a memory archivist. The conversation below is about to be compacted "
    "and its older turns will be lost.\n"
    "Extract only durable facts worth remembering in future sessions:\n"
    "- User preferences and working conventions\n"
    "- Project decisions and their rationale\n"
    "- Important file locations, commands and configuration\n"
    "- Unresolved tasks or known problems\n\n"
    "Reply with a bullet list, one fact per line, each line starting with \"- \".\n"
    f"If nothing is worth remembering, reply with exactly {NO_REPLY_SENTINEL}."
)


def parse_flush_response(text: str | None) -> FlushResponse:
    """Read the archivist reply into a structured contract.

    Sentinel alone or with a short acknowledgement is suppressed. A
    sentinel immediately followed by a real bullet payload is stripped.
    Any other use of the sentinel is ambiguous and treated as suppressed.
    """
    body = (text or "").strip()
    if not body:
        return FlushResponse(suppressed=False)

    if body.startswith(NO_REPLY_SENTINEL):
        rest = body[len(NO_REPLY_SENTINEL):].lstrip(" \t\r\n.:,;")
        facts = _bullet_lines(rest)
        if facts and len(rest) >= _MIN_PAYLOAD_CHARS:
            return FlushResponse(suppressed=False, facts=facts)
        return FlushResponse(suppressed=True)

    if NO_REPLY_SENTINEL in body:
        return FlushResponse(suppressed=True)

    return FlushResponse(suppressed=False, facts=_bullet_lines(body))


def _bullet_lines(text: str) -> list[str]:
    facts: list[str] = []
    for line in text.splitlines():
        stripped = line.strip()
        if stripped.startswith("-"):
            fact = stripped.lstrip("-").strip()
            if fact:
                facts.append(fact)
    return facts


def _response_text(response: Any) -> str:
    """Pull the content string out of a provider response; malformed -> ''."""
    if response is None:
        return ""
    if isinstance(response, str):
        return response
    try:
        if isinstance(response, dict):
            if "choices" in response:
                return response["choices"][0]["message"].get("content") or ""
            return response.get("content") or ""
        if hasattr(response, "choices"):
            return response.choices[0].message.content or ""
        content = getattr(response, "content", None)
        return content if isinstance(content, str) else ""
    except (KeyError, IndexError, TypeError, AttributeError):
        return ""


class MemoryFlusher:
    """Extracts durable facts from a conversation snapshot into MEMORY.md."""

    def __init__(self, config: MemoryFlushConfig | None = None) -> None:
        self.config = config or MemoryFlushConfig()

    def build_snapshot(self, turns: Sequence[Turn]) -> str:
        """Bounded, labeled transcript of the non-system turns."""
        recent = [t for t in turns if t.role != Role.SYSTEM][-self.config.max_turns:]
        blocks: list[str] = []
        for turn in recent:
            label = turn.role.value.upper()
            if turn.role == Role.TOOL and turn.name:
                label = f"TOOL ({turn.name})"
            content = (turn.content or "")[: self.config.max_chars_per_turn]
            blocks.append(f"{label}:\n{content}")
        return _RULE.join(blocks)

    async def flush(
        self,
        turns: Sequence[Turn],
        chat_fn: ChatFn,
        work_dir: str | Path,
    ) -> FlushResult:
        """Run one archivist pass over a snapshot of turns."""
        if not self.config.enabled or len(turns) < self.config.min_turns:
            return FlushResult(flushed=False)

        snapshot = self.build_snapshot(turns)
        messages = [
            {"role": "system", "content": ARCHIVIST_PROMPT},
            {"role": "user", "content": f"CONVERSATION:\n{snapshot}"},
        ]

        try:
            response = chat_fn(messages)
            if inspect.isawaitable(response):
                response = await response
        except Exception as e:
            logger.warning("memory_flush_model_failed", error=str(e))
            return FlushResult(flushed=False)

        parsed = parse_flush_response(_response_text(response))
        if parsed.suppressed:
            logger.debug("memory_flush_suppressed")
            return FlushResult(flushed=False, suppressed=True)

        if not parsed.facts:
            return FlushResult(flushed=False)

        written_to = self._append_facts(parsed.facts, Path(work_dir))
        return FlushResult(
            flushed=written_to is not None,
            facts_count=len(parsed.facts),
            written_to=written_to,
            facts=parsed.facts,
        )

    def _append_facts(self, facts: list[str], work_dir: Path) -> str | None:
        """Append a dated section, local file first, then the per-user file."""
        stamp = datetime.now().strftime("%Y-%m-%d %H:%M")
        section = f"\n## Memory flush ({stamp})\n\n" + "\n".join(f"- {fact}" for fact in facts) + "\n"

        for path in (work_dir / self.config.memory_file, get_home() / self.config.memory_file):
            try:
                path.parent.mkdir(parents=True, exist_ok=True)
                with open(path, "a", encoding="utf-8") as f:
                    f.write(section)
                logger.info("memory_flushed", path=str(path), facts=len(facts))
                return str(path)
            except OSError as e:
                logger.warning("memory_flush_write_failed", path=str(path), error=str(e))

        return None
