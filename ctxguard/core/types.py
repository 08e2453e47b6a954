"""Shared data types for the conversation memory core."""

from __future__ import annotations

import json
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any
from uuid import uuid4


class Role(str, Enum):
    """Turn role in conversation."""

    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"


@dataclass
class ToolCall:
    """A tool call requested by the model."""

    id: str
    name: str
    arguments: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Convert to the provider tool_call format."""
        return {
            "id": self.id,
            "type": "function",
            "function": {
                "name": self.name,
                "arguments": json.dumps(self.arguments),
            },
        }


@dataclass
class Turn:
    """A single message in the conversation."""

    role: Role
    content: str | None
    name: str | None = None  # Tool name for tool turns
    tool_call_id: str | None = None  # For tool result turns
    tool_calls: list[ToolCall] | None = None  # For assistant turns with tool calls
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def is_compaction_marker(self) -> bool:
        return self.role == Role.SYSTEM and bool(self.metadata.get("compaction"))

    def to_dict(self) -> dict[str, Any]:
        """Convert to a provider-compatible message dict."""
        msg: dict[str, Any] = {"role": self.role.value, "content": self.content}
        if self.name:
            msg["name"] = self.name
        if self.tool_call_id:
            msg["tool_call_id"] = self.tool_call_id
        if self.tool_calls:
            msg["tool_calls"] = [tc.to_dict() for tc in self.tool_calls]
        return msg


class EntryType(str, Enum):
    """Kind of context entry seen by the deduplicating compressor."""

    USER = "user"
    ASSISTANT = "assistant"
    TOOL_CALL = "tool_call"
    TOOL_RESULT = "tool_result"
    SYSTEM = "system"


@dataclass
class EntryMetadata:
    tool_name: str | None = None
    success: bool | None = None
    has_error: bool = False
    is_code_output: bool = False
    file_count: int | None = None


@dataclass
class ContextEntry:
    """A turn generalized with an explicit token count and tool metadata."""

    type: EntryType
    content: str
    id: str = field(default_factory=lambda: str(uuid4()))
    timestamp: float = field(default_factory=time.time)
    tokens: int | None = None
    importance: float | None = None  # 0-1, higher = more important
    compressed: bool = False
    original_tokens: int | None = None
    metadata: EntryMetadata = field(default_factory=EntryMetadata)


@dataclass
class CompressionResult:
    """Outcome of one deduplicating compression pass."""

    entries: list[ContextEntry]
    original_tokens: int
    compressed_tokens: int
    savings: float  # Percentage saved
    masked_count: int = 0
    summarized_count: int = 0
    deduplicated_count: int = 0


@dataclass
class CompressionStats:
    total_compressions: int = 0
    total_tokens_saved: int = 0
    average_savings: float = 0.0
    compression_history: list[dict[str, float]] = field(default_factory=list)


@dataclass
class StubCompressionResult:
    """Outcome of replacing long messages with identifier stubs."""

    messages: list[Turn]
    identifiers: list[str]
    tokens_saved: int


@dataclass
class RestoreResult:
    found: bool
    content: str


@dataclass
class ContextStats:
    """Token usage snapshot for a turn list."""

    total_tokens: int
    max_tokens: int
    usage_percent: float
    message_count: int
    summarized_sessions: int = 0
    is_near_limit: bool = False
    is_critical: bool = False


@dataclass
class WarningResult:
    warn: bool
    message: str = ""
    threshold: int | None = None


@dataclass
class MemoryMetrics:
    """Running counters for the token budget orchestrator."""

    summary_count: int = 0
    summary_tokens: int = 0
    peak_message_count: int = 0
    compression_count: int = 0
    total_tokens_saved: int = 0
    last_compression_time: datetime | None = None
    warnings_triggered: int = 0
    residual_overage: int = 0  # Tokens still over budget after the last pass
    hard_floor_hits: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "summary_count": self.summary_count,
            "summary_tokens": self.summary_tokens,
            "peak_message_count": self.peak_message_count,
            "compression_count": self.compression_count,
            "total_tokens_saved": self.total_tokens_saved,
            "last_compression_time": (
                self.last_compression_time.isoformat() if self.last_compression_time else None
            ),
            "warnings_triggered": self.warnings_triggered,
            "residual_overage": self.residual_overage,
            "hard_floor_hits": self.hard_floor_hits,
        }


@dataclass
class FlushResponse:
    """Structured reading of the archivist model's reply."""

    suppressed: bool
    facts: list[str] = field(default_factory=list)


@dataclass
class FlushResult:
    """Outcome of a durable fact flush."""

    flushed: bool
    suppressed: bool = False
    facts_count: int = 0
    written_to: str | None = None
    facts: list[str] = field(default_factory=list)
