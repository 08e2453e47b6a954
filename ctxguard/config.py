"""Configuration management for the conversation memory core.

Loads settings from a YAML config file with Pydantic validation.
Config file location: ~/.codebuddy/context.yaml
"""

from __future__ import annotations

import os
from pathlib import Path

import yaml
from pydantic import BaseModel, Field


# === Default paths ===

def get_home() -> Path:
    """Get the per-user data directory (~/.codebuddy)."""
    return Path(os.environ.get("CODEBUDDY_HOME", Path.home() / ".codebuddy"))


# === Configuration Models ===


class ContextManagerConfig(BaseModel):
    """Token budget orchestrator configuration."""

    max_context_tokens: int = 4096
    response_reserve_tokens: int = 512  # ~12.5% reserve for the response
    safety_factor: float = Field(default=0.95, gt=0, le=1)
    recent_messages_count: int = 10
    enable_summarization: bool = True
    compression_ratio: float = Field(default=4, gt=0)  # 4 = compress to 1/4
    model: str = "gpt-4"
    auto_compact_threshold: int = 200_000
    warning_thresholds: list[int] = Field(default_factory=lambda: [50, 75, 90])
    enable_warnings: bool = True
    max_tool_result_length: int = 500  # chars kept per tool turn
    hard_truncate_content_length: int = 200


class CompressionConfig(BaseModel):
    """Deduplicating compressor configuration."""

    max_tokens: int = 100_000
    preserve_recent: int = 10
    preserve_important: int = 5
    summary_ratio: float = 0.2  # 0.2 = 20% of original
    enable_deduplication: bool = True
    enable_observation_masking: bool = True
    mask_threshold: int = 8000  # chars
    dedup_window: int = 20  # entries looked back for duplicates


class RestorableConfig(BaseModel):
    """Reversible stub compressor configuration."""

    min_length: int = 200  # chars below which messages pass through
    max_stub_identifiers: int = 5
    max_entries: int = 500
    max_bytes: int = 50 * 1024 * 1024
    results_dir: str = ".codebuddy/tool-results"


class MemoryFlushConfig(BaseModel):
    """Durable fact flusher configuration."""

    enabled: bool = True
    min_turns: int = 4
    max_turns: int = 60
    max_chars_per_turn: int = 800
    memory_file: str = "MEMORY.md"


class CtxGuardConfig(BaseModel):
    """Root configuration for the memory core."""

    context: ContextManagerConfig = Field(default_factory=ContextManagerConfig)
    compression: CompressionConfig = Field(default_factory=CompressionConfig)
    restorable: RestorableConfig = Field(default_factory=RestorableConfig)
    memory_flush: MemoryFlushConfig = Field(default_factory=MemoryFlushConfig)


# === Config Loading ===


def load_config(config_path: Path | None = None) -> CtxGuardConfig:
    """Load configuration from YAML file.

    Falls back to defaults if the config file doesn't exist.
    """
    if config_path is None:
        config_path = get_home() / "context.yaml"

    if config_path.exists():
        with open(config_path, encoding="utf-8") as f:
            raw = yaml.safe_load(f) or {}
        return CtxGuardConfig(**raw)

    return CtxGuardConfig()


def save_default_config(config_path: Path | None = None) -> Path:
    """Save the default configuration to a YAML file.

    Creates parent directories if needed. Returns the path.
    """
    if config_path is None:
        config_path = get_home() / "context.yaml"

    config_path.parent.mkdir(parents=True, exist_ok=True)

    data = CtxGuardConfig().model_dump()

    with open(config_path, "w", encoding="utf-8") as f:
        yaml.dump(data, f, default_flow_style=False, allow_unicode=True, sort_keys=False)

    return config_path
