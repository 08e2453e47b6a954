"""Token budget orchestrator: keeps a conversation inside the model's window.

Before each model call the turn list is measured against the effective
limit. When usage is high (or the auto-compact threshold is crossed) a
pipeline of increasingly lossy strategies runs, stopping as soon as the
conversation fits:

1. Sliding window: keep the N most recent turns behind a marker turn.
2. Tool-result truncation: cap verbose tool output.
3. Summarization: condense old turns into an extractive bullet summary.
4. Hard truncation: drop oldest turns down to a 2-turn floor, then cut
   remaining content as a last resort.

The identity (first system) turn is set aside before the pipeline and
reattached at the head afterwards, so it survives every strategy.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Sequence

import structlog

from ctxguard.config import ContextManagerConfig
from ctxguard.core.events import ContextEventListener, notify
from ctxguard.core.memory.token_counter import (
    TokenCounter,
    create_token_counter,
    fallback_count,
    format_token_count,
)
from ctxguard.core.types import (
    ContextStats,
    MemoryMetrics,
    Role,
    Turn,
    WarningResult,
)

logger = structlog.get_logger()

NEAR_LIMIT_PERCENT = 75
CRITICAL_PERCENT = 90

# Conversation turns hard truncation never drops below
_HARD_TRUNCATE_FLOOR = 2

_SUMMARY_PREVIEW_CHARS = 100

# Default context limits for common models
MODEL_LIMITS: dict[str, int] = {
    "gpt-4": 8192,
    "gpt-4-turbo": 128_000,
    "gpt-4o": 128_000,
    "gpt-3.5-turbo": 4096,
    "claude-3": 200_000,
    "llama3.2": 131_072,
    "llama3.1": 131_072,
    "mistral": 32_768,
    "qwen2.5": 32_768,
}
_DEFAULT_MODEL_LIMIT = 4096


@dataclass
class ConversationSummary:
    content: str
    token_count: int
    original_message_count: int
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass
class _PipelineOutcome:
    turns: list[Turn]
    applied: list[str]
    summary: ConversationSummary | None = None
    floor_hit: bool = False


class ContextManager:
    """Multi-strategy context manager for a single conversation."""

    def __init__(
        self,
        config: ContextManagerConfig | None = None,
        token_counter: TokenCounter | None = None,
        listener: ContextEventListener | None = None,
    ) -> None:
        self.config = config or ContextManagerConfig()
        self._custom_counter = token_counter is not None
        self._counter = token_counter or create_token_counter(self.config.model)
        self.listener = listener

        self._summaries: list[ConversationSummary] = []
        self._triggered_warnings: set[int] = set()
        self._last_token_count = 0
        self._metrics = MemoryMetrics()

    # --- Measurement ---

    @property
    def effective_limit(self) -> int:
        """Token limit after the response reserve and safety margin."""
        raw = (self.config.max_context_tokens - self.config.response_reserve_tokens) * self.config.safety_factor
        return max(1, int(raw))

    @property
    def last_token_count(self) -> int:
        return self._last_token_count

    def count_tokens(self, turns: Sequence[Turn]) -> int:
        """Count tokens in turns. Falls back to a character estimate on counter errors."""
        try:
            return int(self._counter.count_message_tokens(turns))
        except Exception as e:
            logger.warning("token_count_failed", error=str(e), turns=len(turns))
            return fallback_count(turns)

    def get_stats(self, turns: Sequence[Turn]) -> ContextStats:
        total = self.count_tokens(turns)
        max_tokens = self.effective_limit
        usage = total / max_tokens * 100
        return ContextStats(
            total_tokens=total,
            max_tokens=max_tokens,
            usage_percent=usage,
            message_count=len(turns),
            summarized_sessions=len(self._summaries),
            is_near_limit=usage > NEAR_LIMIT_PERCENT,
            is_critical=usage > CRITICAL_PERCENT,
        )

    def should_auto_compact(self, turns: Sequence[Turn]) -> bool:
        """True once the token count reaches the auto-compact threshold."""
        return self.count_tokens(turns) >= self.config.auto_compact_threshold

    # --- Pipeline ---

    def prepare_turns(self, turns: list[Turn]) -> list[Turn]:
        """Return a turn list that fits the token budget.

        If no compaction is needed the input list is returned as-is.
        """
        stats = self.get_stats(turns)
        self._metrics.peak_message_count = max(self._metrics.peak_message_count, len(turns))

        if not self._needs_compaction(stats):
            self._last_token_count = stats.total_tokens
            return turns

        outcome = self._run_pipeline(turns)
        if not outcome.applied:
            self._last_token_count = stats.total_tokens
            return turns

        new_tokens = self.count_tokens(outcome.turns)
        self._record_compaction(stats.total_tokens, new_tokens, outcome)
        self._last_token_count = new_tokens
        return outcome.turns

    def turns_at_risk(self, turns: list[Turn]) -> list[Turn]:
        """Turns the next prepare_turns() call would drop or rewrite.

        Runs the pipeline without touching metrics. Used to hand the
        about-to-be-lost span to the fact flusher before compaction.
        """
        stats = self.get_stats(turns)
        if not self._needs_compaction(stats):
            return []
        outcome = self._run_pipeline(turns)
        if not outcome.applied:
            return []
        kept = {id(t) for t in outcome.turns}
        return [t for t in turns if id(t) not in kept]

    def _needs_compaction(self, stats: ContextStats) -> bool:
        return stats.total_tokens >= self.config.auto_compact_threshold or stats.is_near_limit

    def _run_pipeline(self, turns: list[Turn]) -> _PipelineOutcome:
        identity, conversation = _split_identity(turns)
        budget = self.effective_limit
        if identity is not None:
            budget = max(0, budget - self.count_tokens([identity]))

        outcome = self._apply_strategies(conversation, budget)
        if identity is not None:
            outcome.turns = [identity, *outcome.turns]
        return outcome

    def _apply_strategies(self, turns: list[Turn], budget: int) -> _PipelineOutcome:
        """Apply compression strategies in order of priority."""
        outcome = _PipelineOutcome(turns=list(turns), applied=[])
        current = self.count_tokens(outcome.turns)

        # Strategy 1: sliding window
        if current > budget:
            result = self._apply_sliding_window(outcome.turns)
            if result is not None:
                outcome.turns = result
                outcome.applied.append("sliding_window")
                current = self.count_tokens(outcome.turns)

        # Strategy 2: truncate tool results
        if current > budget:
            result = self._truncate_tool_results(outcome.turns)
            if result is not None:
                outcome.turns = result
                outcome.applied.append("tool_truncation")
                current = self.count_tokens(outcome.turns)

        # Strategy 3: summarize old turns
        if current > budget and self.config.enable_summarization:
            result, summary = self._apply_summarization(outcome.turns)
            if result is not None:
                outcome.turns = result
                outcome.summary = summary
                outcome.applied.append("summarization")
                current = self.count_tokens(outcome.turns)

        # Strategy 4: hard truncation as last resort
        if current > budget:
            result, floor_hit = self._hard_truncate(outcome.turns, budget)
            outcome.floor_hit = floor_hit
            if result is not None:
                outcome.turns = result
                outcome.applied.append("hard_truncation")

        return outcome

    def _apply_sliding_window(self, turns: list[Turn]) -> list[Turn] | None:
        keep = self.config.recent_messages_count
        if len(turns) <= keep:
            return None

        removed = turns[:-keep] if keep > 0 else list(turns)
        recent = turns[-keep:] if keep > 0 else []

        # Fold the counts of earlier markers into the new one
        removed_count = sum(
            int(t.metadata.get("removed", 0)) if t.is_compaction_marker else 1
            for t in removed
        )
        marker = Turn(
            role=Role.SYSTEM,
            content=f"[Previous {removed_count} messages summarized due to context limits]",
            metadata={"compaction": "sliding_window", "removed": removed_count},
        )
        return [marker, *recent]

    def _truncate_tool_results(self, turns: list[Turn]) -> list[Turn] | None:
        limit = self.config.max_tool_result_length
        changed = False
        result: list[Turn] = []
        for turn in turns:
            if turn.role == Role.TOOL and turn.content and len(turn.content) > limit:
                turn = replace(
                    turn,
                    content=turn.content[:limit] + "\n... [truncated for context limits]",
                    metadata=dict(turn.metadata),
                )
                changed = True
            result.append(turn)
        return result if changed else None

    def _apply_summarization(
        self, turns: list[Turn]
    ) -> tuple[list[Turn] | None, ConversationSummary | None]:
        keep = min(self.config.recent_messages_count, len(turns))
        if len(turns) <= keep:
            return None, None

        old = turns[:-keep] if keep > 0 else list(turns)
        recent = turns[-keep:] if keep > 0 else []

        summary_text = self._create_summary(old)
        removed_count = sum(
            int(t.metadata.get("removed", 0)) if t.is_compaction_marker else 1
            for t in old
        )
        summary_turn = Turn(
            role=Role.SYSTEM,
            content=f"[Conversation Summary]\n{summary_text}",
            metadata={"compaction": "summary", "removed": removed_count},
        )
        summary = ConversationSummary(
            content=summary_text,
            token_count=self.count_tokens([summary_turn]),
            original_message_count=len(old),
        )
        return [summary_turn, *recent], summary

    def _create_summary(self, turns: list[Turn]) -> str:
        """Extractive summary: one bullet per user/assistant turn, sized by the compression ratio."""
        parts: list[str] = []
        for turn in turns:
            if turn.is_compaction_marker and turn.content:
                # Carry forward what earlier compactions kept
                bullets = [line for line in turn.content.splitlines() if line.startswith("- ")]
                parts.extend(bullets or [f"- {turn.content.splitlines()[0]}"])
                continue
            if turn.role not in (Role.USER, Role.ASSISTANT) or not turn.content:
                continue
            label = "User" if turn.role == Role.USER else "Assistant"
            text = turn.content.strip()
            preview = text[:_SUMMARY_PREVIEW_CHARS]
            if len(text) > _SUMMARY_PREVIEW_CHARS:
                preview += "..."
            parts.append(f"- {label}: {preview}")

        if not parts:
            return "- (earlier turns contained only tool activity)"

        max_items = max(1, math.ceil(len(turns) / self.config.compression_ratio))
        return "\n".join(parts[:max_items])

    def _hard_truncate(self, turns: list[Turn], budget: int) -> tuple[list[Turn] | None, bool]:
        """Drop oldest turns, then cut content. Returns (turns, floor_hit)."""
        markers: list[Turn] = []
        body = list(turns)
        while body and body[0].is_compaction_marker:
            markers.append(body.pop(0))

        changed = False
        current = self.count_tokens(markers + body)
        while current > budget and len(body) > _HARD_TRUNCATE_FLOOR:
            body.pop(0)
            changed = True
            current = self.count_tokens(markers + body)

        result = markers + body
        floor_hit = False
        if current > budget:
            floor_hit = True
            limit = self.config.hard_truncate_content_length
            cut: list[Turn] = []
            for turn in result:
                if turn.content and len(turn.content) > limit:
                    turn = replace(
                        turn,
                        content=turn.content[:limit] + "... [truncated]",
                        metadata=dict(turn.metadata),
                    )
                    changed = True
                cut.append(turn)
            result = cut

        return (result if changed else None), floor_hit

    def _record_compaction(self, before: int, after: int, outcome: _PipelineOutcome) -> None:
        m = self._metrics
        m.compression_count += 1
        m.total_tokens_saved += max(0, before - after)
        m.last_compression_time = datetime.now(timezone.utc)
        m.residual_overage = max(0, after - self.effective_limit)
        if outcome.floor_hit:
            m.hard_floor_hits += 1
        if outcome.summary is not None:
            self._summaries.append(outcome.summary)
            m.summary_count += 1
            m.summary_tokens += outcome.summary.token_count

        logger.info(
            "auto_compact",
            strategies=outcome.applied,
            old_tokens=before,
            new_tokens=after,
            saved_tokens=before - after,
        )
        if m.residual_overage:
            logger.warning(
                "context_over_budget_after_compaction",
                residual_overage=m.residual_overage,
                limit=self.effective_limit,
            )

        notify(self.listener, "compressed", {
            "original_tokens": before,
            "compressed_tokens": after,
            "strategies": list(outcome.applied),
            "residual_overage": m.residual_overage,
        })
        notify(self.listener, "metrics_updated", self.get_memory_metrics())

    # --- Warnings ---

    def should_warn(self, turns: Sequence[Turn]) -> WarningResult:
        """Check usage against warning thresholds; each fires once until reset_warnings()."""
        if not self.config.enable_warnings:
            return WarningResult(warn=False)

        stats = self.get_stats(turns)
        for threshold in sorted(self.config.warning_thresholds, reverse=True):
            if stats.usage_percent < threshold or threshold in self._triggered_warnings:
                continue

            self._triggered_warnings.add(threshold)
            self._metrics.warnings_triggered += 1

            if threshold >= CRITICAL_PERCENT:
                level = "Critical"
            elif threshold >= NEAR_LIMIT_PERCENT:
                level = "Warning"
            else:
                level = "Notice"

            result = WarningResult(
                warn=True,
                message=(
                    f"Context {level}: You have used {stats.usage_percent:.1f}% of your "
                    f"total context ({stats.total_tokens:,}/{stats.max_tokens:,} tokens)"
                ),
                threshold=threshold,
            )
            notify(self.listener, "warning", result)
            return result

        return WarningResult(warn=False)

    def reset_warnings(self) -> None:
        """Reset warning triggers (call when starting a new conversation)."""
        self._triggered_warnings.clear()

    # --- Metrics ---

    def get_memory_metrics(self) -> MemoryMetrics:
        return replace(self._metrics)

    def format_memory_metrics(self) -> str:
        m = self._metrics
        last = m.last_compression_time.strftime("%Y-%m-%d %H:%M:%S UTC") if m.last_compression_time else "never"
        lines = [
            "Memory Metrics:",
            f"  Summaries: {m.summary_count} ({format_token_count(m.summary_tokens)} tokens)",
            f"  Peak messages: {m.peak_message_count}",
            f"  Compressions: {m.compression_count}",
            f"  Tokens saved: {format_token_count(m.total_tokens_saved)}",
            f"  Last compression: {last}",
            f"  Warnings triggered: {m.warnings_triggered}",
        ]
        if m.residual_overage or m.hard_floor_hits:
            lines.append(
                f"  Residual overage: {m.residual_overage} tokens "
                f"({m.hard_floor_hits} hard floor hits)"
            )
        return "\n".join(lines)

    def force_cleanup(self) -> None:
        """Reset transient counters. Summaries and compression totals are kept."""
        self._metrics.peak_message_count = 0
        self._metrics.warnings_triggered = 0
        self._triggered_warnings.clear()
        logger.debug("context_metrics_cleanup")
        notify(self.listener, "metrics_updated", self.get_memory_metrics())

    # --- Configuration ---

    def update_config(self, **changes: Any) -> None:
        self.config = self.config.model_copy(update=changes)
        if "model" in changes and not self._custom_counter:
            self._counter = create_token_counter(self.config.model)

    def get_config(self) -> ContextManagerConfig:
        return self.config.model_copy()

    def dispose(self) -> None:
        """Clean up per-conversation state."""
        self._summaries = []
        self._triggered_warnings.clear()
        self._last_token_count = 0


def _split_identity(turns: list[Turn]) -> tuple[Turn | None, list[Turn]]:
    """Separate the first non-marker system turn from the rest of the conversation."""
    for i, turn in enumerate(turns):
        if turn.role == Role.SYSTEM and not turn.is_compaction_marker:
            return turn, turns[:i] + turns[i + 1:]
    return None, list(turns)


def create_context_manager(
    model: str,
    max_tokens: int | None = None,
    listener: ContextEventListener | None = None,
) -> ContextManager:
    """Create a context manager sized for a known model."""
    limit = max_tokens or MODEL_LIMITS.get(model)
    if limit is None:
        # Prefix match, longest key first: "claude-3-opus" -> "claude-3"
        for name in sorted(MODEL_LIMITS, key=len, reverse=True):
            if model.startswith(name):
                limit = MODEL_LIMITS[name]
                break
    limit = limit or _DEFAULT_MODEL_LIMIT

    config = ContextManagerConfig(
        model=model,
        max_context_tokens=limit,
        response_reserve_tokens=int(limit * 0.125),
    )
    return ContextManager(config=config, listener=listener)
