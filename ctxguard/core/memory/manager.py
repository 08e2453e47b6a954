"""Memory manager: wires the memory core together for one conversation.

Coordinates:
- Token budget orchestration (ContextManager)
- Per-entry deduplication and masking (ContextCompressor)
- Restorable stubs and tool-result sidecars (RestorableCompressor)
- Durable fact flush before lossy compaction (MemoryFlusher)

Each instance owns its own stores and metrics; parallel conversations
use separate managers.
"""

from __future__ import annotations

import asyncio
from pathlib import Path

import structlog

from ctxguard.config import CtxGuardConfig
from ctxguard.core.events import ContextEventListener
from ctxguard.core.memory.compressor import ContextCompressor
from ctxguard.core.memory.context_manager import ContextManager
from ctxguard.core.memory.flush import ChatFn, MemoryFlusher
from ctxguard.core.memory.restorable import RestorableCompressor
from ctxguard.core.memory.token_counter import TokenCounter
from ctxguard.core.types import FlushResult, RestoreResult, Turn, WarningResult

logger = structlog.get_logger()

_FLUSHED_FLAG = "memory_flushed"


class MemoryManager:
    """Per-conversation facade over the four memory components."""

    def __init__(
        self,
        config: CtxGuardConfig | None = None,
        work_dir: str | Path | None = None,
        listener: ContextEventListener | None = None,
        token_counter: TokenCounter | None = None,
    ) -> None:
        self._config = config or CtxGuardConfig()
        self.work_dir = Path(work_dir) if work_dir else Path.cwd()

        self.context = ContextManager(self._config.context, token_counter, listener)
        self.compressor = ContextCompressor(self._config.compression, listener)
        self.restorable = RestorableCompressor(self._config.restorable, self.work_dir)
        self.flusher = MemoryFlusher(self._config.memory_flush)

        self.last_flush: FlushResult | None = None
        self._pending_flushes: set[asyncio.Task[FlushResult]] = set()
        self._background_results: list[FlushResult] = []
        self._in_flight: set[int] = set()  # id() of turns in a running flush

    def record_tool_result(
        self,
        call_id: str,
        output: str,
        tool_name: str,
        work_dir: str | Path | None = None,
    ) -> str:
        """Persist a raw tool output and return the content to place in the turn."""
        self.restorable.write_tool_result(call_id, output, work_dir or self.work_dir)
        compact = self.compressor.compress_tool_result(output, tool_name)
        if compact != output:
            compact += f"\n[Full output available: restore_context {call_id}]"
        return compact

    def restore(self, identifier: str) -> RestoreResult:
        return self.restorable.restore(identifier)

    async def build_context(
        self,
        turns: list[Turn],
        chat_fn: ChatFn | None = None,
        work_dir: str | Path | None = None,
        background_flush: bool = False,
    ) -> list[Turn]:
        """Bound the turn list for the next model call.

        If the pipeline is about to drop or rewrite turns and a chat
        function is supplied, those turns are flushed to MEMORY.md first.
        A turn is marked flushed once the model has answered for it;
        turns whose flush failed are offered again on the next call.
        """
        if chat_fn is not None and self.flusher.config.enabled:
            at_risk = [
                t for t in self.context.turns_at_risk(turns)
                if not t.metadata.get(_FLUSHED_FLAG) and id(t) not in self._in_flight
            ]
            if len(at_risk) >= self.flusher.config.min_turns:
                snapshot = list(at_risk)
                self._in_flight.update(id(t) for t in snapshot)
                target = work_dir or self.work_dir
                if background_flush:
                    task = asyncio.ensure_future(self._background_flush(snapshot, chat_fn, target))
                    self._pending_flushes.add(task)
                    task.add_done_callback(self._pending_flushes.discard)
                else:
                    await self._flush(snapshot, chat_fn, target)

        return self.context.prepare_turns(turns)

    async def _flush(self, snapshot: list[Turn], chat_fn: ChatFn, work_dir: str | Path) -> FlushResult:
        try:
            result = await self.flusher.flush(snapshot, chat_fn, work_dir)
        finally:
            self._in_flight.difference_update(id(t) for t in snapshot)

        # Model errors come back neither flushed nor suppressed
        if result.flushed or result.suppressed:
            for turn in snapshot:
                turn.metadata[_FLUSHED_FLAG] = True

        self.last_flush = result
        logger.info(
            "pre_compaction_flush",
            turns=len(snapshot),
            flushed=result.flushed,
            suppressed=result.suppressed,
            facts=result.facts_count,
        )
        return result

    async def _background_flush(self, snapshot: list[Turn], chat_fn: ChatFn, work_dir: str | Path) -> FlushResult:
        result = await self._flush(snapshot, chat_fn, work_dir)
        self._background_results.append(result)
        return result

    async def wait_for_flush(self) -> list[FlushResult]:
        """Await every background flush started by build_context.

        Returns the results collected since the previous call, oldest first.
        """
        if self._pending_flushes:
            outcomes = await asyncio.gather(*self._pending_flushes, return_exceptions=True)
            for outcome in outcomes:
                if isinstance(outcome, BaseException):
                    logger.warning("background_flush_failed", error=str(outcome))
        results, self._background_results = self._background_results, []
        return results

    def warn(self, turns: list[Turn]) -> WarningResult:
        return self.context.should_warn(turns)

    def reset(self) -> None:
        """Start over for a new conversation."""
        self.context.reset_warnings()
        self.context.force_cleanup()
        self.context.dispose()
        self.restorable.clear()
        self.compressor.reset_stats()
        self.last_flush = None
        self._background_results = []
