"""Conversation memory core: keeps a tool-augmented chat inside its token window.

Components:
- ContextManager: token budget orchestration
- ContextCompressor: per-entry deduplication and masking
- RestorableCompressor: recoverable identifier stubs
- MemoryFlusher: durable facts to MEMORY.md before compaction
"""

from ctxguard.core.memory.compressor import ContextCompressor
from ctxguard.core.memory.context_manager import ContextManager, create_context_manager
from ctxguard.core.memory.flush import MemoryFlusher
from ctxguard.core.memory.manager import MemoryManager
from ctxguard.core.memory.restorable import RestorableCompressor

__all__ = [
    "ContextManager",
    "create_context_manager",
    "ContextCompressor",
    "RestorableCompressor",
    "MemoryFlusher",
    "MemoryManager",
]
