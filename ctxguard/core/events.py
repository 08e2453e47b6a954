"""Notification interface between the memory core and the surrounding UI."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

import structlog

if TYPE_CHECKING:
    from ctxguard.core.types import MemoryMetrics, WarningResult

logger = structlog.get_logger()


class ContextEventListener:
    """Optional listener for compression and metrics events.

    UI implementations can override these to push live updates
    (status bars, token meters). Every method defaults to a no-op, and
    the core runs the same with no listener attached.
    """

    def on_compressed(self, payload: dict[str, Any]) -> None:
        pass

    def on_metrics_updated(self, metrics: "MemoryMetrics") -> None:
        pass

    def on_warning(self, result: "WarningResult") -> None:
        pass


def notify(listener: ContextEventListener | None, event: str, *args: Any) -> None:
    """Fire-and-forget dispatch: listener errors are logged, never raised."""
    if listener is None:
        return
    handler = getattr(listener, f"on_{event}", None)
    if handler is None:
        return
    try:
        handler(*args)
    except Exception as e:
        logger.warning("context_listener_failed", event=event, error=str(e))
