"""Message content types."""

from loom.llm.types import (
    ContentBlock,
    ContentBlockType,
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

__all__ = [
    "ContentBlock",
    "ContentBlockType",
    "DocumentContent",
    "ImageContent",
    "MessageContent",
    "Role",
    "TextContent",
    "ThinkingContent",
    "ToolResult",
    "ToolUse",
    "get_text",
    "get_tool_results",
    "get_tool_uses",
]
