"""Tests for message and session records."""

from datetime import UTC, datetime

from loom.core.types import (
    ConversationMessage,
    ToolCallRecord,
    content_block_from_dict,
    parse_datetime,
)
from loom.llm.types import (
    DocumentContent,
    ImageContent,
    Role,
    TextContent,
    ThinkingContent,
    ToolResult,
    ToolUse,
)
from loom.sessions.types import SessionFilter, SessionMetadata, SessionSort, SessionStatus


class TestConversationMessage:
    def test_all_block_types_survive_serialization(self):
        message = ConversationMessage.create(
            Role.ASSISTANT,
            [
                TextContent(text="hi"),
                ThinkingContent(thinking="hmm", signature="sig"),
                ToolUse(id="tu1", name="bash", input={"command": "ls"}),
                ToolResult(tool_use_id="tu0", content="done", is_error=True),
                ImageContent(source={"type": "base64", "data": "AAAA"}),
                DocumentContent(source={"type": "url", "url": "x"}, title="Doc"),
            ],
            model="claude-sonnet-4-20250514",
            thinking="plan",
            tool_calls=[ToolCallRecord(id="tu1", name="bash", result="ok", success=True)],
        )

        restored = ConversationMessage.from_dict(message.to_dict())

        assert restored == message

    def test_unknown_blocks_are_dropped(self):
        data = ConversationMessage.create(Role.USER, "x").to_dict()
        data["content"] = [{"type": "text", "text": "kept"}, {"type": "hologram"}]
        restored = ConversationMessage.from_dict(data)
        assert restored.content == [TextContent(text="kept")]

    def test_tool_result_list_content_is_flattened(self):
        block = content_block_from_dict(
            {
                "type": "tool_result",
                "tool_use_id": "tu1",
                "content": [{"type": "text", "text": "a"}, {"type": "text", "text": "b"}],
            }
        )
        assert block == ToolResult(tool_use_id="tu1", content="a\nb")

    def test_tool_ids(self):
        message = ConversationMessage.create(
            Role.ASSISTANT,
            [ToolUse(id="tu1", name="bash", input={})],
            tool_calls=[ToolCallRecord(id="tu2", name="read")],
        )
        assert message.tool_use_ids() == {"tu1", "tu2"}
        assert message.tool_result_ids() == set()

    def test_naive_timestamps_are_utc(self):
        assert parse_datetime("2024-05-01T12:00:00") == datetime(
            2024, 5, 1, 12, tzinfo=UTC
        )


class TestSessionMetadata:
    def test_normalizes_project_path(self, tmp_path):
        metadata = SessionMetadata.create(str(tmp_path) + "/./sub/..")
        assert metadata.project_path == str(tmp_path)
        assert metadata.project_name == tmp_path.name
        assert metadata.status == SessionStatus.ACTIVE

    def test_round_trip(self, tmp_path):
        metadata = SessionMetadata.create(tmp_path, title="t", tags=["a"])
        assert SessionMetadata.from_dict(metadata.to_dict()) == metadata

    def test_copy_is_independent(self, tmp_path):
        metadata = SessionMetadata.create(tmp_path, tags=["a"])
        copy = metadata.copy()
        copy.tags.append("b")
        assert metadata.tags == ["a"]


class TestFilterAndSort:
    def test_empty_filter_matches_everything(self, tmp_path):
        assert SessionFilter().matches(SessionMetadata.create(tmp_path))

    def test_single_status(self, tmp_path):
        metadata = SessionMetadata.create(tmp_path)
        assert SessionFilter(status=SessionStatus.ACTIVE).matches(metadata)
        assert not SessionFilter(status=SessionStatus.ARCHIVED).matches(metadata)

    def test_sort_by_message_count(self, tmp_path):
        small = SessionMetadata.create(tmp_path)
        big = SessionMetadata.create(tmp_path)
        big.message_count = 10
        assert SessionSort("message_count", "desc").apply([small, big]) == [big, small]
