"""Conversation core: messages, token accounting, compaction and buffering."""

from loom.core.buffer import BufferStats, ConversationBuffer, ConversationState
from loom.core.compaction import (
    COMPACTION_PREFIX,
    COMPACTION_SUFFIX,
    CompactionSettings,
    ContextWindowCompactor,
    ExchangeSummarizer,
)
from loom.core.tokens import TokenEstimator, TokenOverheads, estimate_tokens
from loom.core.types import CompactionResult, ConversationMessage, ToolCallRecord

__all__ = [
    "COMPACTION_PREFIX",
    "COMPACTION_SUFFIX",
    "BufferStats",
    "CompactionResult",
    "CompactionSettings",
    "ContextWindowCompactor",
    "ConversationBuffer",
    "ConversationMessage",
    "ConversationState",
    "ExchangeSummarizer",
    "TokenEstimator",
    "TokenOverheads",
    "ToolCallRecord",
    "estimate_tokens",
]
