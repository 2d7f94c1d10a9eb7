"""Message content types shared by the session layer."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class Role(str, Enum):
    """Message role."""

    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


class ContentBlockType(str, Enum):
    """Content block type."""

    TEXT = "text"
    THINKING = "thinking"
    TOOL_USE = "tool_use"
    TOOL_RESULT = "tool_result"
    IMAGE = "image"
    DOCUMENT = "document"


@dataclass
class TextContent:
    """Text content block."""

    text: str
    type: ContentBlockType = ContentBlockType.TEXT


@dataclass
class ThinkingContent:
    """Extended reasoning emitted by the model."""

    thinking: str
    signature: str | None = None
    type: ContentBlockType = ContentBlockType.THINKING


@dataclass
class ToolUse:
    """Tool use request from the model."""

    id: str
    name: str
    input: dict[str, Any]
    type: ContentBlockType = ContentBlockType.TOOL_USE


@dataclass
class ToolResult:
    """Tool execution result sent back to the model."""

    tool_use_id: str
    content: str
    is_error: bool = False
    type: ContentBlockType = ContentBlockType.TOOL_RESULT


@dataclass
class ImageContent:
    """Image attachment. ``source`` is kept opaque (base64 or url payload)."""

    source: dict[str, Any] = field(default_factory=dict)
    type: ContentBlockType = ContentBlockType.IMAGE


@dataclass
class DocumentContent:
    """Document attachment (PDF, plain text file)."""

    source: dict[str, Any] = field(default_factory=dict)
    title: str | None = None
    type: ContentBlockType = ContentBlockType.DOCUMENT


ContentBlock = (
    TextContent
    | ThinkingContent
    | ToolUse
    | ToolResult
    | ImageContent
    | DocumentContent
)

MessageContent = str | list[ContentBlock]


def get_text(content: MessageContent) -> str:
    """Extract the plain text of message content."""
    if isinstance(content, str):
        return content
    texts = [block.text for block in content if isinstance(block, TextContent)]
    return "\n".join(texts)


def get_tool_uses(content: MessageContent) -> list[ToolUse]:
    """Extract tool use requests from message content."""
    if isinstance(content, str):
        return []
    return [block for block in content if isinstance(block, ToolUse)]


def get_tool_results(content: MessageContent) -> list[ToolResult]:
    """Extract tool results from message content."""
    if isinstance(content, str):
        return []
    return [block for block in content if isinstance(block, ToolResult)]
