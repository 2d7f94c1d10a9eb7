"""In-memory message buffer for the active session."""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Any

from loom.core.pairs import drop_orphaned_tool_results
from loom.core.tokens import TokenEstimator
from loom.core.types import ConversationMessage, ToolCallRecord
from loom.llm.types import Role

logger = logging.getLogger(__name__)

DEFAULT_MAX_MESSAGES = 1000
DEFAULT_MAX_TOKENS = 400_000


@dataclass
class ConversationState:
    """Snapshot of a buffer, safe to hold across awaits."""

    messages: list[ConversationMessage]
    total_tokens: int
    pending_tool_calls: list[ToolCallRecord] = field(default_factory=list)


@dataclass
class BufferStats:
    message_count: int
    total_tokens: int
    user_messages: int
    assistant_messages: int
    system_messages: int
    pending_tool_calls: int
    is_streaming: bool


class ConversationBuffer:
    """Live, append-oriented message sequence.

    The soft caps only bound memory use. Keeping requests inside the model's
    context window is the compactor's job.
    """

    def __init__(
        self,
        estimator: TokenEstimator | None = None,
        max_messages: int = DEFAULT_MAX_MESSAGES,
        max_tokens: int = DEFAULT_MAX_TOKENS,
    ) -> None:
        self.estimator = estimator or TokenEstimator()
        self.max_messages = max_messages
        self.max_tokens = max_tokens
        self._messages: list[ConversationMessage] = []
        self._total_tokens = 0
        self._pending: dict[str, ToolCallRecord] = {}
        self._streaming = False

    def __len__(self) -> int:
        return len(self._messages)

    @property
    def messages(self) -> list[ConversationMessage]:
        """A copy of the current messages."""
        return list(self._messages)

    @property
    def total_tokens(self) -> int:
        return self._total_tokens

    @property
    def is_streaming(self) -> bool:
        return self._streaming

    def set_streaming(self, streaming: bool) -> None:
        self._streaming = streaming

    def _tokens_for(self, message: ConversationMessage) -> int:
        if message.tokens is None:
            message.tokens = self.estimator.estimate_message(message)
        return message.tokens

    def append(self, message: ConversationMessage) -> list[ConversationMessage]:
        """Add a message to the tail.

        Returns the messages dropped by the soft cap cleanup, if any.
        """
        self._messages.append(message)
        self._total_tokens += self._tokens_for(message)

        if len(self._messages) > self.max_messages or self._total_tokens > self.max_tokens:
            return self._cleanup()
        return []

    def _cleanup(self) -> list[ConversationMessage]:
        excess = max(0, len(self._messages) - self.max_messages)
        dropped = self.trim_oldest(excess) if excess else []

        # Token cap: keep dropping one at a time until we fit or only
        # untrimmable messages remain.
        while self._total_tokens > self.max_tokens:
            removed = self.trim_oldest(1)
            if not removed:
                break
            dropped.extend(removed)

        if dropped:
            logger.debug(
                "Buffer soft cap dropped %d messages (%d remaining, %d tokens)",
                len(dropped),
                len(self._messages),
                self._total_tokens,
            )
        return dropped

    def trim_oldest(self, excess: int) -> list[ConversationMessage]:
        """Drop the ``excess`` oldest non-system messages.

        Tool results whose tool_use was dropped go with it. Returns every
        message removed.
        """
        if excess <= 0:
            return []

        dropped_ids: set[str] = set()
        for message in self._messages:
            if len(dropped_ids) >= excess:
                break
            if message.role != Role.SYSTEM:
                dropped_ids.add(message.id)

        if not dropped_ids:
            return []

        kept = [m for m in self._messages if m.id not in dropped_ids]
        kept = drop_orphaned_tool_results(kept)
        kept_ids = {m.id for m in kept}
        removed = [m for m in self._messages if m.id not in kept_ids]

        self._messages = kept
        self._recount()
        return removed

    def messages_within_budget(self, token_budget: int) -> list[ConversationMessage]:
        """Newest messages that fit ``token_budget``, in original order.

        Walks backwards from the newest message and stops at the first one
        that does not fit, so the result is always a contiguous tail.
        """
        selected: list[ConversationMessage] = []
        used = 0
        for message in reversed(self._messages):
            tokens = self._tokens_for(message)
            if used + tokens > token_budget:
                break
            selected.append(message)
            used += tokens
        selected.reverse()
        return drop_orphaned_tool_results(selected)

    def restore_from(self, messages: Sequence[ConversationMessage]) -> None:
        """Replace the buffer contents wholesale.

        Pending tool calls are kept; use ``clear`` first to drop them too.
        The soft caps apply to the restored messages.
        """
        self._messages = list(messages)
        self._recount()
        self._cleanup()

    def export_state(self) -> ConversationState:
        return ConversationState(
            messages=list(self._messages),
            total_tokens=self._total_tokens,
            pending_tool_calls=list(self._pending.values()),
        )

    def get_recent(self, count: int) -> list[ConversationMessage]:
        if count <= 0:
            return []
        return self._messages[-count:]

    def get_message(self, message_id: str) -> ConversationMessage | None:
        for message in self._messages:
            if message.id == message_id:
                return message
        return None

    def last_message(self, role: Role | str | None = None) -> ConversationMessage | None:
        for message in reversed(self._messages):
            if role is None or message.role == Role(role):
                return message
        return None

    def update_message(
        self, message_id: str, **changes: Any
    ) -> ConversationMessage | None:
        """Apply field changes to a message and re-estimate its tokens."""
        message = self.get_message(message_id)
        if message is None:
            return None
        for name, value in changes.items():
            if name == "id" or not hasattr(message, name):
                raise ValueError(f"Cannot update message field: {name}")
            setattr(message, name, value)
        if "tokens" not in changes and {"content", "thinking"} & changes.keys():
            message.tokens = None
        self._recount()
        return message

    def remove_message(self, message_id: str) -> bool:
        before = len(self._messages)
        self._messages = [m for m in self._messages if m.id != message_id]
        if len(self._messages) == before:
            return False
        self._recount()
        return True

    def clear(self) -> None:
        self._messages.clear()
        self._pending.clear()
        self._total_tokens = 0
        self._streaming = False

    def stats(self) -> BufferStats:
        by_role = {role: 0 for role in Role}
        for message in self._messages:
            by_role[message.role] += 1
        return BufferStats(
            message_count=len(self._messages),
            total_tokens=self._total_tokens,
            user_messages=by_role[Role.USER],
            assistant_messages=by_role[Role.ASSISTANT],
            system_messages=by_role[Role.SYSTEM],
            pending_tool_calls=len(self._pending),
            is_streaming=self._streaming,
        )

    # -- Tool call tracking --------------------------------------------------

    def register_tool_call(
        self, tool_id: str, name: str, input: dict[str, Any] | None = None
    ) -> ToolCallRecord:
        record = ToolCallRecord(id=tool_id, name=name, input=dict(input or {}))
        self._pending[tool_id] = record
        return record

    def complete_tool_call(
        self,
        tool_id: str,
        result: str,
        success: bool = True,
        duration: int | None = None,
    ) -> ToolCallRecord | None:
        """Resolve a pending tool call.

        The completed record is attached to the assistant message that issued
        the tool_use (replacing any earlier record with the same id) and is no
        longer tracked as pending. Returns None for an unknown id.
        """
        record = self._pending.pop(tool_id, None)
        if record is None:
            logger.warning("Completed unknown tool call: %s", tool_id)
            return None

        record.result = result
        record.success = success
        record.duration = duration

        owner = self._find_tool_owner(tool_id)
        if owner is not None:
            owner.tool_calls = [c for c in owner.tool_calls if c.id != tool_id]
            owner.tool_calls.append(record)
        return record

    def pending_tool_calls(self) -> list[ToolCallRecord]:
        return list(self._pending.values())

    def has_pending_tool_calls(self) -> bool:
        return bool(self._pending)

    def _find_tool_owner(self, tool_id: str) -> ConversationMessage | None:
        for message in reversed(self._messages):
            if message.role == Role.ASSISTANT and tool_id in message.tool_use_ids():
                return message
        return None

    def _recount(self) -> None:
        self._total_tokens = sum(self._tokens_for(m) for m in self._messages)
