"""Conversation message records and their JSON form."""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from loom.llm.types import (
    ContentBlock,
    DocumentContent,
    ImageContent,
    MessageContent,
    Role,
    TextContent,
    ThinkingContent,
    ToolResult,
    ToolUse,
    get_text,
    get_tool_results,
    get_tool_uses,
)

logger = logging.getLogger(__name__)


def generate_id() -> str:
    return str(uuid.uuid4())


def now_utc() -> datetime:
    return datetime.now(UTC)


def parse_datetime(value: str | datetime) -> datetime:
    if isinstance(value, datetime):
        dt = value
    else:
        dt = datetime.fromisoformat(value)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=UTC)
    return dt


def content_block_to_dict(block: ContentBlock) -> dict[str, Any]:
    """Convert a content block to its stored dict form."""
    match block:
        case TextContent():
            return {"type": "text", "text": block.text}
        case ThinkingContent():
            result: dict[str, Any] = {"type": "thinking", "thinking": block.thinking}
            if block.signature:
                result["signature"] = block.signature
            return result
        case ToolUse():
            return {
                "type": "tool_use",
                "id": block.id,
                "name": block.name,
                "input": block.input,
            }
        case ToolResult():
            return {
                "type": "tool_result",
                "tool_use_id": block.tool_use_id,
                "content": block.content,
                "is_error": block.is_error,
            }
        case ImageContent():
            return {"type": "image", "source": block.source}
        case DocumentContent():
            result = {"type": "document", "source": block.source}
            if block.title:
                result["title"] = block.title
            return result


def content_block_from_dict(data: dict[str, Any]) -> ContentBlock | None:
    """Create a content block from its stored dict form.

    Returns None when the block type is not recognized.
    """
    match data.get("type"):
        case "text":
            return TextContent(text=data["text"])
        case "thinking":
            return ThinkingContent(
                thinking=data["thinking"], signature=data.get("signature")
            )
        case "tool_use":
            return ToolUse(id=data["id"], name=data["name"], input=data["input"])
        case "tool_result":
            content = data["content"]
            if not isinstance(content, str):
                # Providers may send a list of text blocks as the result body
                content = "\n".join(
                    part.get("text", "") for part in content if isinstance(part, dict)
                )
            return ToolResult(
                tool_use_id=data["tool_use_id"],
                content=content,
                is_error=data.get("is_error", False),
            )
        case "image":
            return ImageContent(source=data.get("source", {}))
        case "document":
            return DocumentContent(source=data.get("source", {}), title=data.get("title"))
        case _:
            return None


def content_to_stored(content: MessageContent) -> str | list[dict[str, Any]]:
    if isinstance(content, str):
        return content
    return [content_block_to_dict(block) for block in content]


def content_from_stored(content: str | list[dict[str, Any]]) -> MessageContent:
    if isinstance(content, str):
        return content
    if not isinstance(content, list):
        raise TypeError(f"content must be a string or a list, not {type(content).__name__}")
    blocks: list[ContentBlock] = []
    for item in content:
        if not isinstance(item, dict):
            raise TypeError(f"content block must be an object, not {type(item).__name__}")
        block = content_block_from_dict(item)
        if block is None:
            logger.warning("Dropping unknown content block type: %s", item.get("type"))
            continue
        blocks.append(block)
    return blocks


@dataclass
class ToolCallRecord:
    """One tool invocation tracked for result correlation."""

    id: str
    name: str
    input: dict[str, Any] = field(default_factory=dict)
    result: str | None = None
    success: bool | None = None
    duration: int | None = None  # milliseconds

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {"id": self.id, "name": self.name, "input": self.input}
        if self.result is not None:
            result["result"] = self.result
        if self.success is not None:
            result["success"] = self.success
        if self.duration is not None:
            result["duration"] = self.duration
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ToolCallRecord:
        return cls(
            id=data["id"],
            name=data["name"],
            input=data.get("input") or {},
            result=data.get("result"),
            success=data.get("success"),
            duration=data.get("duration"),
        )


@dataclass
class ConversationMessage:
    """One turn of the conversation."""

    id: str
    role: Role
    content: MessageContent
    timestamp: datetime
    tokens: int | None = None
    model: str | None = None
    thinking: str | None = None
    tool_calls: list[ToolCallRecord] = field(default_factory=list)
    is_from_history: bool = False

    def get_text(self) -> str:
        return get_text(self.content)

    def get_tool_uses(self) -> list[ToolUse]:
        return get_tool_uses(self.content)

    def get_tool_results(self) -> list[ToolResult]:
        return get_tool_results(self.content)

    def tool_use_ids(self) -> set[str]:
        ids = {block.id for block in self.get_tool_uses()}
        if self.role == Role.ASSISTANT:
            ids.update(call.id for call in self.tool_calls)
        return ids

    def tool_result_ids(self) -> set[str]:
        return {block.tool_use_id for block in self.get_tool_results()}

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "id": self.id,
            "role": self.role.value,
            "content": content_to_stored(self.content),
            "timestamp": self.timestamp.isoformat(),
            "tokens": self.tokens,
        }
        if self.model:
            result["model"] = self.model
        if self.thinking:
            result["thinking"] = self.thinking
        if self.tool_calls:
            result["tool_calls"] = [call.to_dict() for call in self.tool_calls]
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ConversationMessage:
        if not isinstance(data, dict):
            raise TypeError(f"message must be an object, not {type(data).__name__}")
        return cls(
            id=data["id"],
            role=Role(data["role"]),
            content=content_from_stored(data["content"]),
            timestamp=parse_datetime(data["timestamp"]),
            tokens=data.get("tokens"),
            model=data.get("model"),
            thinking=data.get("thinking"),
            tool_calls=[
                ToolCallRecord.from_dict(call) for call in data.get("tool_calls") or []
            ],
        )

    @classmethod
    def create(
        cls,
        role: Role | str,
        content: MessageContent,
        tokens: int | None = None,
        model: str | None = None,
        thinking: str | None = None,
        tool_calls: list[ToolCallRecord] | None = None,
    ) -> ConversationMessage:
        return cls(
            id=generate_id(),
            role=Role(role),
            content=content,
            timestamp=now_utc(),
            tokens=tokens,
            model=model,
            thinking=thinking,
            tool_calls=list(tool_calls or []),
        )


@dataclass
class CompactionResult:
    """Result of a compaction pass over a message list."""

    summary: str
    preserved_messages: list[ConversationMessage]
    tokens_removed: int
    tokens_saved: int
    summarized_messages: list[ConversationMessage] = field(default_factory=list)

    @property
    def is_noop(self) -> bool:
        return not self.summarized_messages
