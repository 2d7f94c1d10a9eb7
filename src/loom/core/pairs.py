"""Helpers for keeping tool_use/tool_result messages together."""

from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence

from loom.core.types import ConversationMessage

logger = logging.getLogger(__name__)


def tool_pair_partners(messages: Sequence[ConversationMessage]) -> dict[int, set[int]]:
    """Map each message index to the indices it is tool-paired with.

    A tool_use block in message ``i`` and a tool_result block answering it in a
    later message ``j`` link ``i`` and ``j`` in both directions. Results that
    answer an unknown or later tool_use are ignored.
    """
    owner: dict[str, int] = {}
    partners: dict[int, set[int]] = {}

    for index, message in enumerate(messages):
        for tool_use_id in message.tool_result_ids():
            use_index = owner.get(tool_use_id)
            if use_index is None or use_index == index:
                continue
            partners.setdefault(index, set()).add(use_index)
            partners.setdefault(use_index, set()).add(index)
        for block in message.get_tool_uses():
            owner.setdefault(block.id, index)

    return partners


def close_over_pairs(indices: Iterable[int], partners: dict[int, set[int]]) -> set[int]:
    """Grow ``indices`` until no member has a partner outside the set."""
    closed = set(indices)
    stack = list(closed)
    while stack:
        index = stack.pop()
        for partner in partners.get(index, ()):
            if partner not in closed:
                closed.add(partner)
                stack.append(partner)
    return closed


def pending_tool_use_indices(messages: Sequence[ConversationMessage]) -> set[int]:
    """Indices of messages holding a tool_use that no later message answers."""
    answered: set[str] = set()
    pending: set[int] = set()
    for index in range(len(messages) - 1, -1, -1):
        message = messages[index]
        if any(block.id not in answered for block in message.get_tool_uses()):
            pending.add(index)
        answered.update(message.tool_result_ids())
    return pending


def drop_orphaned_tool_results(
    messages: Sequence[ConversationMessage],
) -> list[ConversationMessage]:
    """Remove messages whose tool_results answer a tool_use not in the list."""
    seen: set[str] = set()
    result: list[ConversationMessage] = []
    for message in messages:
        orphans = message.tool_result_ids() - seen
        if orphans:
            logger.debug("Dropping message %s with orphaned tool results", message.id)
            continue
        seen.update(block.id for block in message.get_tool_uses())
        result.append(message)
    return result
