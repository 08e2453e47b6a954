"""Restorable compression: replace long messages with recoverable stubs.

Long messages are scanned for identifiers (file paths, URLs, tool-call
IDs). The full text is kept in an insertion-ordered store keyed by each
identifier, and the message is replaced by a short stub listing them.
The model can later ask for any identifier to get the text back.

Restoration falls back from memory to the on-disk tool-result sidecar,
then to reading the file itself, and finally to a labeled hint, so a
miss is always reported and never silent.
"""

from __future__ import annotations

import re
from collections import OrderedDict
from dataclasses import replace
from pathlib import Path

import structlog

from ctxguard.config import RestorableConfig
from ctxguard.core.memory.identifiers import (
    extract_identifiers,
    is_tool_call_id,
    is_url,
    strip_line_range,
)
from ctxguard.core.memory.token_counter import estimate_tokens
from ctxguard.core.types import RestoreResult, StubCompressionResult, Turn

logger = structlog.get_logger()

_UNSAFE_FILENAME_CHARS = re.compile(r"[^\w.-]")

STUB_PREFIX = "[Content compressed:"
_STUB_FLAG = "stubbed"


class RestorableCompressor:
    """Identifier-keyed stub store with oldest-first eviction."""

    def __init__(
        self,
        config: RestorableConfig | None = None,
        work_dir: str | Path | None = None,
    ) -> None:
        self.config = config or RestorableConfig()
        self._store: OrderedDict[str, str] = OrderedDict()
        self._bytes = 0
        self._work_dir = Path(work_dir) if work_dir else None

    def compress(self, messages: list[Turn]) -> StubCompressionResult:
        """Replace long messages carrying identifiers with stubs."""
        result: list[Turn] = []
        identifiers: list[str] = []
        seen: set[str] = set()
        tokens_saved = 0

        for msg in messages:
            content = msg.content
            if not content or len(content) < self.config.min_length or _is_stub(msg):
                result.append(msg)
                continue

            found = extract_identifiers(content)
            if not found:
                result.append(msg)
                continue

            for identifier in found:
                self._put(strip_line_range(identifier), content)
                if identifier not in seen:
                    seen.add(identifier)
                    identifiers.append(identifier)

            stub = self._build_stub(found, len(content))
            tokens_saved += max(0, estimate_tokens(content) - estimate_tokens(stub))
            result.append(replace(msg, content=stub, metadata={**msg.metadata, _STUB_FLAG: True}))

        self._enforce_limits()

        if identifiers:
            logger.debug(
                "messages_stubbed",
                identifiers=len(identifiers),
                tokens_saved=tokens_saved,
                store_entries=len(self._store),
            )
        return StubCompressionResult(messages=result, identifiers=identifiers, tokens_saved=tokens_saved)

    def restore(self, identifier: str) -> RestoreResult:
        """Recover the full text for an identifier. Never raises."""
        key = strip_line_range(identifier.strip())

        if key in self._store:
            return RestoreResult(found=True, content=self._store[key])

        if is_tool_call_id(key):
            path = self._results_dir(self._work_dir or Path.cwd()) / f"{_safe_filename(key)}.txt"
            try:
                if path.is_file():
                    return RestoreResult(found=True, content=path.read_text(encoding="utf-8"))
            except (OSError, ValueError) as e:
                logger.warning("tool_result_read_failed", id=key, error=str(e))

        elif is_url(key):
            return RestoreResult(
                found=False,
                content=f"URL content is no longer cached. Re-fetch it with web_fetch: {key}",
            )

        else:
            try:
                path = Path(key).expanduser()
                if not path.is_absolute():
                    path = (self._work_dir or Path.cwd()) / path
                if path.is_file():
                    return RestoreResult(found=True, content=path.read_text(encoding="utf-8", errors="replace"))
            except (OSError, RuntimeError, ValueError) as e:
                # RuntimeError: "~user" with no such user
                logger.debug("restore_file_read_failed", identifier=key, error=str(e))

        return RestoreResult(found=False, content=f"Identifier not found: {identifier}")

    def write_tool_result(self, call_id: str, content: str, work_dir: str | Path) -> None:
        """Persist a tool result to the sidecar directory and the in-memory store."""
        self._work_dir = Path(work_dir)
        self._put(call_id, content)

        path = self._results_dir(self._work_dir) / f"{_safe_filename(call_id)}.txt"
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(content, encoding="utf-8")
        except OSError as e:
            logger.warning("tool_result_write_failed", id=call_id, path=str(path), error=str(e))

        self._enforce_limits()

    def evict(self, max_bytes: int) -> int:
        """Remove oldest entries until the store holds at most max_bytes. Returns the count removed."""
        removed = 0
        while self._store and self._bytes > max_bytes:
            self._pop_oldest()
            removed += 1
        return removed

    def put(self, identifier: str, content: str) -> None:
        """Store content under an identifier (newest position)."""
        self._put(identifier, content)
        self._enforce_limits()

    def list_identifiers(self) -> list[str]:
        return list(self._store.keys())

    def store_size(self) -> int:
        """Total UTF-8 bytes of stored content."""
        return self._bytes

    def clear(self) -> None:
        self._store.clear()
        self._bytes = 0

    # --- Internals ---

    def _put(self, key: str, content: str) -> None:
        if content.startswith(STUB_PREFIX):
            # Stored text is always the original, never a stub of it
            return
        if key in self._store:
            self._bytes -= _byte_len(self._store[key])
            del self._store[key]
        self._store[key] = content
        self._bytes += _byte_len(content)

    def _pop_oldest(self) -> None:
        _, content = self._store.popitem(last=False)
        self._bytes -= _byte_len(content)

    def _enforce_limits(self) -> None:
        before = len(self._store)
        while len(self._store) > self.config.max_entries:
            self._pop_oldest()
        self.evict(self.config.max_bytes)
        evicted = before - len(self._store)
        if evicted:
            logger.info(
                "stub_store_evicted",
                evicted=evicted,
                remaining=len(self._store),
                store_bytes=self._bytes,
            )

    def _results_dir(self, work_dir: Path) -> Path:
        return work_dir / self.config.results_dir

    def _build_stub(self, identifiers: list[str], original_chars: int) -> str:
        limit = self.config.max_stub_identifiers
        shown = ", ".join(identifiers[:limit])
        if len(identifiers) > limit:
            shown += f" (+{len(identifiers) - limit} more)"
        return (
            f"[Content compressed: {original_chars} chars. Identifiers: {shown}]\n"
            "Call restore_context with one of these identifiers to retrieve the full content."
        )


def _byte_len(text: str) -> int:
    return len(text.encode("utf-8"))


def _safe_filename(identifier: str) -> str:
    return _UNSAFE_FILENAME_CHARS.sub("_", identifier)


def _is_stub(msg: Turn) -> bool:
    return bool(msg.metadata.get(_STUB_FLAG)) or (msg.content or "").startswith(STUB_PREFIX)
