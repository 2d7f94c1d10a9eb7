"""Context compaction for keeping a conversation inside its token budget.

Compaction replaces older messages with a short textual summary. Two
strategies are available:

- ``compact``: keep a recent tail (the larger of ``min_messages_to_preserve``
  and ``preserve_ratio`` of the conversation) and summarize the head.
- ``smart_compact``: keep "important" messages verbatim wherever they are,
  plus the most recent ``min_messages_to_preserve``, and summarize the rest.

Both strategies keep a tool_use message and the message answering it on the
same side of the split, and never summarize a tool_use that is still waiting
for its result.
"""

from __future__ import annotations

import inspect
import logging
import math
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field

from loom.core.pairs import close_over_pairs, pending_tool_use_indices, tool_pair_partners
from loom.core.tokens import TokenEstimator
from loom.core.types import CompactionResult, ConversationMessage
from loom.llm.types import Role, TextContent, ToolResult

logger = logging.getLogger(__name__)

# Prefix/suffix for compaction summaries (helps the model understand context)
COMPACTION_PREFIX = "[Previous conversation summary]\n"
COMPACTION_SUFFIX = "\n[End of summary - conversation continues below]"

DEFAULT_IMPORTANT_KEYWORDS: tuple[str, ...] = (
    "important",
    "critical",
    "remember",
    "key point",
    "summary",
    "conclusion",
    "error",
    "bug",
    "fix",
)

DEFAULT_CONTEXT_LIMIT = 200_000

MODEL_CONTEXT_LIMITS: dict[str, int] = {
    "claude-opus-4-20250514": 200_000,
    "claude-sonnet-4-20250514": 200_000,
    "claude-3-5-sonnet-20241022": 200_000,
    "claude-3-5-haiku-20241022": 200_000,
    "claude-3-opus-20240229": 200_000,
    "claude-3-haiku-20240307": 200_000,
}

Summarizer = Callable[[Sequence[ConversationMessage]], str | Awaitable[str]]


@dataclass
class CompactionSettings:
    """Settings for when and how to compact."""

    max_tokens: int = DEFAULT_CONTEXT_LIMIT
    threshold_ratio: float = 0.8
    reserved_tokens: int = 8192  # Held back for the next response
    min_messages_to_preserve: int = 4
    preserve_ratio: float = 0.25
    user_preview_chars: int = 200
    assistant_preview_chars: int = 300
    important_keywords: tuple[str, ...] = field(
        default_factory=lambda: DEFAULT_IMPORTANT_KEYWORDS
    )


def truncate_text(text: str, max_length: int) -> str:
    """Collapse whitespace runs of newlines and cut to ``max_length``."""
    cleaned = " ".join(part for part in text.splitlines() if part.strip()).strip()
    if len(cleaned) <= max_length:
        return cleaned
    return cleaned[: max(0, max_length - 3)] + "..."


class ExchangeSummarizer:
    """Deterministic text-extraction summarizer.

    Groups messages into user/assistant exchanges, records which tools each
    exchange used and keeps a bounded preview of each side. Drop-in
    replaceable by any callable (sync or async) with the same signature, for
    example one that asks a model for a real summary.
    """

    def __init__(
        self, user_preview_chars: int = 200, assistant_preview_chars: int = 300
    ) -> None:
        self.user_preview_chars = user_preview_chars
        self.assistant_preview_chars = assistant_preview_chars

    def __call__(self, messages: Sequence[ConversationMessage]) -> str:
        if not messages:
            return ""

        earlier: list[str] = []
        exchanges: list[list[str]] = []
        current: list[str] = []
        tools: list[str] = []

        def close_exchange() -> None:
            if tools:
                current.append(f"  - Tools used: {', '.join(tools)}")
            if current:
                exchanges.append(list(current))
            current.clear()
            tools.clear()

        for message in messages:
            results = message.get_tool_results()
            text = message.get_text()

            if message.role == Role.SYSTEM:
                # Carry forward summaries from earlier compactions
                if text.startswith(COMPACTION_PREFIX):
                    body = text.removeprefix(COMPACTION_PREFIX)
                    earlier.append(body.removesuffix(COMPACTION_SUFFIX).strip())
                continue

            if message.role == Role.USER and not (results and not text):
                close_exchange()
                current.append(
                    f"**User:** {truncate_text(text, self.user_preview_chars)}"
                )
            elif message.role == Role.USER:
                failed = sum(1 for r in results if r.is_error)
                line = f"  - Tool results: {len(results)}"
                if failed:
                    line += f" ({failed} failed)"
                current.append(line)
            else:
                if text:
                    preview = truncate_text(text, self.assistant_preview_chars)
                    current.append(f"**Assistant:** {preview}")
                for name in self._tool_names(message):
                    if name not in tools:
                        tools.append(name)

        close_exchange()

        parts = ["## Conversation Summary", ""]
        for body in earlier:
            parts.append("### Earlier context")
            parts.append(body)
            parts.append("")
        for number, lines in enumerate(exchanges, start=1):
            parts.append(f"### Exchange {number}")
            parts.extend(lines)
            parts.append("")
        parts.append("---")
        parts.append(f"Total exchanges: {len(exchanges)}")
        parts.append(f"Messages: {len(messages)}")
        return "\n".join(parts)

    @staticmethod
    def _tool_names(message: ConversationMessage) -> list[str]:
        names = [block.name for block in message.get_tool_uses()]
        names.extend(call.name for call in message.tool_calls)
        return names


class ContextWindowCompactor:
    """Decides when to compact and produces reduced message sets."""

    def __init__(
        self,
        settings: CompactionSettings | None = None,
        estimator: TokenEstimator | None = None,
        summarizer: Summarizer | None = None,
    ) -> None:
        self.settings = settings or CompactionSettings()
        self.estimator = estimator or TokenEstimator()
        self.summarizer: Summarizer = summarizer or ExchangeSummarizer(
            self.settings.user_preview_chars,
            self.settings.assistant_preview_chars,
        )

    # -- Budget accounting -------------------------------------------------

    def current_usage(self, messages: Sequence[ConversationMessage]) -> int:
        return self.estimator.estimate_messages(messages)

    def available_tokens(self, messages: Sequence[ConversationMessage]) -> int:
        used = self.current_usage(messages)
        return self.settings.max_tokens - used - self.settings.reserved_tokens

    def usage_percentage(self, messages: Sequence[ConversationMessage]) -> float:
        return self.current_usage(messages) / self.settings.max_tokens * 100

    def threshold(self) -> float:
        return self.settings.max_tokens * self.settings.threshold_ratio

    def should_compact(self, messages: Sequence[ConversationMessage]) -> bool:
        return self.current_usage(messages) >= self.threshold()

    # -- Strategies ----------------------------------------------------------

    async def compact(
        self, messages: Sequence[ConversationMessage]
    ) -> CompactionResult:
        """Summarize the head of the conversation and keep a recent tail."""
        messages = list(messages)
        count = len(messages)
        min_keep = self.settings.min_messages_to_preserve

        if count <= min_keep:
            return self._noop(messages)

        preserve_count = max(min_keep, math.ceil(count * self.settings.preserve_ratio))
        boundary = count - preserve_count
        if boundary <= 0:
            return self._noop(messages)

        partners = tool_pair_partners(messages)

        # Pull the boundary back while a preserved message answers (or is
        # answered by) a message in the head.
        while boundary > 0:
            straddling = [
                partner
                for index in range(boundary, count)
                for partner in partners.get(index, ())
                if partner < boundary
            ]
            if not straddling:
                break
            boundary = min(straddling)

        keep = set(range(boundary, count)) | pending_tool_use_indices(messages)
        keep = close_over_pairs(keep, partners)
        return await self._build_result(messages, keep)

    def identify_important_messages(
        self, messages: Sequence[ConversationMessage]
    ) -> set[str]:
        """Return ids of messages worth keeping verbatim.

        A message is important when it is the first message, when it holds a
        tool use (together with the message answering it), or when its text
        mentions one of the configured keywords.
        """
        partners = tool_pair_partners(messages)
        keywords = [k.lower() for k in self.settings.important_keywords]
        important: set[str] = set()

        for index, message in enumerate(messages):
            if index == 0:
                important.add(message.id)

            if message.get_tool_uses() or message.tool_calls:
                important.add(message.id)
                for partner in partners.get(index, ()):
                    if partner > index:
                        important.add(messages[partner].id)

            text = self._searchable_text(message).lower()
            if any(keyword in text for keyword in keywords):
                important.add(message.id)

        return important

    async def smart_compact(
        self, messages: Sequence[ConversationMessage]
    ) -> CompactionResult:
        """Keep important and recent messages, summarize everything else."""
        messages = list(messages)
        if not messages:
            return self._noop(messages)

        important_ids = self.identify_important_messages(messages)
        keep = {i for i, message in enumerate(messages) if message.id in important_ids}

        min_keep = self.settings.min_messages_to_preserve
        if min_keep > 0:
            keep.update(range(max(0, len(messages) - min_keep), len(messages)))
        keep |= pending_tool_use_indices(messages)
        keep = close_over_pairs(keep, tool_pair_partners(messages))

        return await self._build_result(messages, keep)

    def create_summary_message(self, summary: str) -> ConversationMessage:
        """Wrap a summary in a system message that can lead the buffer."""
        content = COMPACTION_PREFIX + summary + COMPACTION_SUFFIX
        message = ConversationMessage.create(role=Role.SYSTEM, content=content)
        message.tokens = self.estimator.estimate_message(message)
        return message

    # -- Tuning ----------------------------------------------------------------

    def set_model_context_limit(self, model: str) -> None:
        self.settings.max_tokens = MODEL_CONTEXT_LIMITS.get(model, DEFAULT_CONTEXT_LIMIT)

    def calculate_optimal_window_size(
        self, average_tokens_per_message: float, target_utilization: float = 0.7
    ) -> int:
        """How many average-sized messages fit the window at a utilization."""
        if average_tokens_per_message <= 0:
            raise ValueError("average_tokens_per_message must be positive")
        available = (
            self.settings.max_tokens * target_utilization - self.settings.reserved_tokens
        )
        return max(0, math.floor(available / average_tokens_per_message))

    # -- Internals -------------------------------------------------------------

    def _noop(self, messages: list[ConversationMessage]) -> CompactionResult:
        return CompactionResult(
            summary="",
            preserved_messages=list(messages),
            tokens_removed=0,
            tokens_saved=0,
        )

    async def _build_result(
        self, messages: list[ConversationMessage], keep: set[int]
    ) -> CompactionResult:
        preserved = [m for i, m in enumerate(messages) if i in keep]
        summarized = [m for i, m in enumerate(messages) if i not in keep]

        if not summarized:
            logger.debug("No messages to compact")
            return self._noop(messages)

        summary = await self._summarize(summarized)
        tokens_removed = self.estimator.estimate_messages(summarized)
        tokens_saved = tokens_removed - self.estimator.estimate(summary)

        logger.info(
            "Compacted %d messages into summary, keeping %d (%d tokens saved)",
            len(summarized),
            len(preserved),
            tokens_saved,
        )

        return CompactionResult(
            summary=summary,
            preserved_messages=preserved,
            tokens_removed=tokens_removed,
            tokens_saved=tokens_saved,
            summarized_messages=summarized,
        )

    async def _summarize(self, messages: list[ConversationMessage]) -> str:
        summary = self.summarizer(messages)
        if inspect.isawaitable(summary):
            summary = await summary
        return summary

    @staticmethod
    def _searchable_text(message: ConversationMessage) -> str:
        if isinstance(message.content, str):
            return message.content
        parts: list[str] = []
        for block in message.content:
            if isinstance(block, TextContent):
                parts.append(block.text)
            elif isinstance(block, ToolResult):
                parts.append(block.content)
        return "\n".join(parts)
