"""Deduplicating compressor: shrinks typed context entries to a token budget.

Instead of dropping whole turns, this module works entry by entry:
1. Drops older copies of repeated tool results (same tool, same output).
2. Masks oversized tool outputs with a head/tail excerpt.
3. Scores entries by importance (recency, type, content, errors).
4. Summarizes old, non-essential entries if still over budget.
5. Drops the least important old entries as a last resort.

Entries flagged as errors are never masked, so failure output reaches
the model verbatim.
"""

from __future__ import annotations

import hashlib
import math
import re
import time
from dataclasses import replace

import structlog

from ctxguard.config import CompressionConfig
from ctxguard.core.events import ContextEventListener, notify
from ctxguard.core.memory.token_counter import estimate_tokens
from ctxguard.core.types import (
    CompressionResult,
    CompressionStats,
    ContextEntry,
    EntryType,
)

logger = structlog.get_logger()

_HISTORY_LIMIT = 100

# Tool families with structure-aware excerpts
SEARCH_TOOLS = frozenset({"search", "find_symbols", "find_references", "list_files", "grep", "glob"})
FILE_READ_TOOLS = frozenset({"read_file", "view_file"})
SHELL_TOOLS = frozenset({"bash", "shell_execute", "git_status", "git_log", "git_diff"})

# Patterns indicating important content to preserve
IMPORTANT_PATTERNS = [
    re.compile(r"error|exception|failed|critical", re.IGNORECASE),
    re.compile(r"TODO|FIXME|HACK|XXX"),
    re.compile(r"def\s+\w+|class\s+\w+|function\s+\w+|interface\s+\w+"),
    re.compile(r"^\s*(import|from)\s+\w+|export\s+\{|require\(", re.MULTILINE),
    re.compile(r"\d+\s+tests?\s+(passed|failed)", re.IGNORECASE),
]

# Patterns for content that can be heavily compressed
COMPRESSIBLE_PATTERNS = [
    re.compile(r"^\s*\d+\s*│", re.MULTILINE),  # Line numbers in file output
    re.compile(r"^\s*at\s+[\w.]+\s*\(.*$", re.MULTILINE),  # JS stack frames
    re.compile(r"^\s*(//|#).*$", re.MULTILINE),  # Comment lines
    re.compile(r"^\s*\n", re.MULTILINE),  # Empty lines
]

_ERROR_LINE = re.compile(r"error|exception|failed", re.IGNORECASE)
_FILE_MENTION = re.compile(r"\b[\w/.-]+\.(?:py|ts|tsx|js|jsx|go|rs|java)\b")
_DIFF_SUMMARY_LINE = re.compile(r"^\s*\d+\s+(file|insertion|deletion|change)", re.IGNORECASE)


class ContextCompressor:
    """Entry-level compression: dedupe, mask, score, summarize, truncate."""

    def __init__(
        self,
        config: CompressionConfig | None = None,
        listener: ContextEventListener | None = None,
    ) -> None:
        self.config = config or CompressionConfig()
        self.listener = listener
        self._stats = CompressionStats()

    def compress(self, entries: list[ContextEntry]) -> CompressionResult:
        """Compress context entries to fit within the token budget."""
        start = time.monotonic()
        original_tokens = self._count_total(entries)

        if original_tokens <= self.config.max_tokens:
            return CompressionResult(
                entries=entries,
                original_tokens=original_tokens,
                compressed_tokens=original_tokens,
                savings=0.0,
            )

        result = list(entries)
        masked_count = 0
        summarized_count = 0
        deduplicated_count = 0

        if self.config.enable_deduplication:
            deduped = self._deduplicate(result)
            deduplicated_count = len(result) - len(deduped)
            result = deduped

        if self.config.enable_observation_masking:
            result, masked_count = self._mask_long_outputs(result)

        result = self._score_importance(result)

        if self._count_total(result) > self.config.max_tokens:
            result, summarized_count = self._summarize_old_entries(result)

        if self._count_total(result) > self.config.max_tokens:
            result = self._truncate_least_important(result)

        compressed_tokens = self._count_total(result)
        savings = (original_tokens - compressed_tokens) / original_tokens * 100

        self._stats.total_compressions += 1
        self._stats.total_tokens_saved += original_tokens - compressed_tokens
        self._stats.average_savings = self._stats.total_tokens_saved / self._stats.total_compressions
        self._stats.compression_history.append({"timestamp": time.time(), "savings": savings})
        if len(self._stats.compression_history) > _HISTORY_LIMIT:
            self._stats.compression_history = self._stats.compression_history[-_HISTORY_LIMIT:]

        duration_ms = int((time.monotonic() - start) * 1000)
        logger.info(
            "entries_compressed",
            original_tokens=original_tokens,
            compressed_tokens=compressed_tokens,
            deduplicated=deduplicated_count,
            masked=masked_count,
            summarized=summarized_count,
        )
        notify(self.listener, "compressed", {
            "original_tokens": original_tokens,
            "compressed_tokens": compressed_tokens,
            "savings": savings,
            "duration_ms": duration_ms,
        })

        return CompressionResult(
            entries=result,
            original_tokens=original_tokens,
            compressed_tokens=compressed_tokens,
            savings=savings,
            masked_count=masked_count,
            summarized_count=summarized_count,
            deduplicated_count=deduplicated_count,
        )

    def compress_tool_result(self, output: str, tool_kind: str) -> str:
        """Compress a single tool output; unchanged below the mask threshold."""
        if len(output) <= self.config.mask_threshold:
            return output

        if tool_kind in SEARCH_TOOLS:
            lines = [line for line in output.split("\n") if line.strip()]
            preview = "\n".join(lines[:10])
            more = f"\n... and {len(lines) - 10} more" if len(lines) > 10 else ""
            return f"[{tool_kind}: {len(lines)} results]\n{preview}{more}"

        if tool_kind in FILE_READ_TOOLS:
            lines = output.split("\n")
            if len(lines) > 30:
                return (
                    f"[File: {len(lines)} lines]\n"
                    + "\n".join(lines[:15])
                    + f"\n[... {len(lines) - 25} lines omitted ...]\n"
                    + "\n".join(lines[-10:])
                )
            return _head_tail_chars(output, self.config.mask_threshold)

        if tool_kind in SHELL_TOOLS:
            lines = [line for line in output.split("\n") if line.strip()]
            errors = [line for line in lines if re.search(r"error|warning|failed", line, re.IGNORECASE)]
            summary_lines = [line for line in lines if _DIFF_SUMMARY_LINE.match(line)]

            summary = f"[{tool_kind}: {len(lines)} lines]"
            if errors:
                summary += "\nErrors:\n" + "\n".join(errors[:5])
            if summary_lines:
                summary += "\nSummary:\n" + "\n".join(summary_lines)
            if len(lines) > 20:
                summary += "\nPreview:\n" + "\n".join(lines[:10]) + f"\n[... {len(lines) - 10} lines omitted ...]"
            else:
                summary += "\n" + _head_tail_chars(output, self.config.mask_threshold)
            return summary

        return self._truncate_with_summary(output)

    def get_stats(self) -> CompressionStats:
        return replace(self._stats, compression_history=list(self._stats.compression_history))

    def reset_stats(self) -> None:
        self._stats = CompressionStats()

    # --- Internals ---

    def _count_total(self, entries: list[ContextEntry]) -> int:
        return sum(_entry_tokens(e) for e in entries)

    def _deduplicate(self, entries: list[ContextEntry]) -> list[ContextEntry]:
        """Drop older tool results repeating a newer one within the look-back window."""
        window = self.config.dedup_window
        newest_seen: dict[tuple[str, str], int] = {}
        keep = [True] * len(entries)

        for i in range(len(entries) - 1, -1, -1):
            entry = entries[i]
            if entry.type != EntryType.TOOL_RESULT:
                continue
            key = (entry.metadata.tool_name or "", _content_hash(entry.content))
            newer = newest_seen.get(key)
            if newer is not None and newer - i <= window:
                keep[i] = False
                continue
            newest_seen[key] = i

        return [e for e, k in zip(entries, keep) if k]

    def _mask_long_outputs(self, entries: list[ContextEntry]) -> tuple[list[ContextEntry], int]:
        masked = 0
        recent_start = len(entries) - self.config.preserve_recent
        result: list[ContextEntry] = []

        for index, entry in enumerate(entries):
            if (
                index < recent_start
                and entry.type == EntryType.TOOL_RESULT
                and not entry.metadata.has_error
                and len(entry.content) > self.config.mask_threshold
            ):
                masked += 1
                summary = self._create_output_summary(entry)
                entry = replace(
                    entry,
                    content=summary,
                    tokens=estimate_tokens(summary),
                    compressed=True,
                    original_tokens=_entry_tokens(entry),
                )
            result.append(entry)

        return result, masked

    def _create_output_summary(self, entry: ContextEntry) -> str:
        content = entry.content
        lines = content.split("\n")
        tool_name = entry.metadata.tool_name or "tool"
        file_count = entry.metadata.file_count or len(_FILE_MENTION.findall(content))

        summary = f"[Masked {tool_name} output: {len(lines)} lines"
        if file_count:
            summary += f", {file_count} files mentioned"

        error_line = next((line for line in lines if _ERROR_LINE.search(line)), None)
        if error_line:
            summary += f"\nFirst error: {error_line[:200]}"

        preview_lines = 3
        if len(lines) > preview_lines * 2:
            summary += "\n--- Preview ---\n"
            summary += "\n".join(line[:200] for line in lines[:preview_lines])
            summary += f"\n[... {len(lines) - preview_lines * 2} lines omitted ...]\n"
            summary += "\n".join(line[:200] for line in lines[-preview_lines:])
        else:
            summary += "\n--- Preview ---\n" + _head_tail_chars(content, 800)

        return summary + "]"

    def _score_importance(self, entries: list[ContextEntry]) -> list[ContextEntry]:
        total = len(entries) or 1
        scored: list[ContextEntry] = []
        for index, entry in enumerate(entries):
            importance = 0.5 + index / total * 0.3

            if entry.type == EntryType.USER:
                importance += 0.2
            elif entry.type == EntryType.ASSISTANT:
                importance += 0.1
            elif entry.type == EntryType.SYSTEM:
                importance += 0.15

            for pattern in IMPORTANT_PATTERNS:
                if pattern.search(entry.content):
                    importance += 0.1

            if entry.metadata.has_error:
                importance += 0.2

            scored.append(replace(entry, importance=min(1.0, max(0.0, importance))))
        return scored

    def _summarize_old_entries(self, entries: list[ContextEntry]) -> tuple[list[ContextEntry], int]:
        recent_start = len(entries) - self.config.preserve_recent
        ranked = sorted(range(len(entries)), key=lambda i: entries[i].importance or 0, reverse=True)
        important = set(ranked[: self.config.preserve_important])

        summarized = 0
        result: list[ContextEntry] = []
        for index, entry in enumerate(entries):
            tokens = _entry_tokens(entry)
            if (
                index >= recent_start
                or index in important
                or entry.compressed
                or entry.type == EntryType.SYSTEM
                or entry.metadata.has_error
                or tokens <= 100
            ):
                result.append(entry)
                continue

            summarized += 1
            target = math.ceil(tokens * self.config.summary_ratio)
            summary = _summarize_content(entry.content, target)
            result.append(replace(
                entry,
                content=summary,
                tokens=estimate_tokens(summary),
                compressed=True,
                original_tokens=tokens,
            ))

        return result, summarized

    def _truncate_least_important(self, entries: list[ContextEntry]) -> list[ContextEntry]:
        recent_start = len(entries) - self.config.preserve_recent
        current = self._count_total(entries)
        remove: set[int] = set()

        for index in sorted(range(len(entries)), key=lambda i: entries[i].importance or 0):
            if current <= self.config.max_tokens:
                break
            if index >= recent_start or entries[index].type == EntryType.SYSTEM:
                continue
            remove.add(index)
            current -= _entry_tokens(entries[index])

        return [e for i, e in enumerate(entries) if i not in remove]

    def _truncate_with_summary(self, content: str) -> str:
        lines = content.split("\n")
        max_lines = 30
        if len(lines) <= max_lines:
            return _head_tail_chars(content, self.config.mask_threshold)

        half = max_lines // 2
        return (
            f"[Truncated: {len(lines)} lines]\n"
            + "\n".join(lines[:half])
            + f"\n[... {len(lines) - max_lines} lines omitted ...]\n"
            + "\n".join(lines[-half:])
        )


def _entry_tokens(entry: ContextEntry) -> int:
    return entry.tokens if entry.tokens is not None else estimate_tokens(entry.content)


def _content_hash(content: str) -> str:
    normalized = re.sub(r"\s+", " ", content.strip().lower())
    return hashlib.sha1(normalized.encode("utf-8")).hexdigest()


def _head_tail_chars(content: str, limit: int) -> str:
    """Keep the start and end of long single-block content."""
    if len(content) <= limit:
        return content
    half = limit // 2
    omitted = len(content) - half * 2
    return f"{content[:half]}\n[... {omitted} chars omitted ...]\n{content[-half:]}"


def _summarize_content(content: str, target_tokens: int) -> str:
    line_count = len(content.split("\n"))
    target_chars = target_tokens * 4

    compressed = content
    for pattern in COMPRESSIBLE_PATTERNS:
        compressed = pattern.sub("", compressed)

    if len(compressed) > target_chars:
        half = target_chars // 2
        compressed = (
            compressed[:half]
            + "\n[... content summarized ...]\n"
            + compressed[len(compressed) - half:]
        )

    kept_lines = len(compressed.split("\n"))
    return f"[Summarized: {line_count} lines → {kept_lines} lines]\n{compressed}"
