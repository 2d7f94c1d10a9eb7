"""Token estimation for budget and compaction decisions.

Uses a fixed ~4 characters per token approximation. Counts are not
billing-accurate; they only need to be deterministic and monotonic so
threshold comparisons behave predictably.
"""

from __future__ import annotations

import json
import math
from collections.abc import Iterable
from dataclasses import dataclass
from typing import TYPE_CHECKING

from loom.llm.types import (
    ContentBlock,
    DocumentContent,
    ImageContent,
    MessageContent,
    TextContent,
    ThinkingContent,
    ToolResult,
    ToolUse,
)

if TYPE_CHECKING:
    from loom.core.types import ConversationMessage


@dataclass
class TokenOverheads:
    """Per-structure token costs added on top of raw text."""

    chars_per_token: int = 4
    message: int = 4  # role + delimiters
    tool_use: int = 10
    tool_result: int = 8
    image: int = 1600
    document: int = 3000


class TokenEstimator:
    """Approximates token counts for text, content blocks and messages."""

    def __init__(self, overheads: TokenOverheads | None = None) -> None:
        self.overheads = overheads or TokenOverheads()
        if self.overheads.chars_per_token <= 0:
            raise ValueError("chars_per_token must be positive")

    def estimate(self, text: str) -> int:
        """Estimate tokens for plain text."""
        if not text:
            return 0
        return math.ceil(len(text) / self.overheads.chars_per_token)

    def estimate_block(self, block: ContentBlock) -> int:
        match block:
            case TextContent():
                return self.estimate(block.text)
            case ThinkingContent():
                return self.estimate(block.thinking)
            case ToolUse():
                serialized = json.dumps(block.input, sort_keys=True, ensure_ascii=False)
                return (
                    self.overheads.tool_use
                    + self.estimate(block.name)
                    + self.estimate(serialized)
                )
            case ToolResult():
                return self.overheads.tool_result + self.estimate(block.content)
            case ImageContent():
                return self.overheads.image
            case DocumentContent():
                return self.overheads.document
        return 0

    def estimate_content(self, content: MessageContent) -> int:
        if isinstance(content, str):
            return self.estimate(content)
        return sum(self.estimate_block(block) for block in content)

    def estimate_message(self, message: ConversationMessage) -> int:
        """Estimate tokens for a full message including structure overhead.

        A precomputed ``message.tokens`` value wins over the estimate.
        """
        if message.tokens is not None:
            return message.tokens
        total = self.overheads.message + self.estimate_content(message.content)
        if message.thinking:
            total += self.estimate(message.thinking)
        return total

    def estimate_messages(self, messages: Iterable[ConversationMessage]) -> int:
        return sum(self.estimate_message(message) for message in messages)

    def split_to_fit(self, text: str, max_tokens: int) -> list[str]:
        """Split text into chunks of at most ``max_tokens`` each.

        Prefers to split on a sentence end, then on a word boundary, when one
        exists in the second half of the chunk.
        """
        if max_tokens <= 0:
            raise ValueError("max_tokens must be positive")

        max_chars = max_tokens * self.overheads.chars_per_token
        chunks: list[str] = []
        remaining = text

        while remaining:
            if len(remaining) <= max_chars:
                chunks.append(remaining)
                break

            split_at = max_chars
            sentence_end = remaining.rfind(".", 0, max_chars)
            if sentence_end > max_chars * 0.5:
                split_at = sentence_end + 1
            else:
                word_end = remaining.rfind(" ", 0, max_chars)
                if word_end > max_chars * 0.5:
                    split_at = word_end

            chunks.append(remaining[:split_at].strip())
            remaining = remaining[split_at:].strip()

        return chunks


_default_estimator = TokenEstimator()


def estimate_tokens(text: str) -> int:
    """Estimate tokens for text using the default overheads."""
    return _default_estimator.estimate(text)
