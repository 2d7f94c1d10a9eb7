"""Shared test fixtures and factories."""

from collections.abc import AsyncGenerator, Iterator
from pathlib import Path
from typing import Any

import pytest

from loom.core.tokens import TokenEstimator
from loom.core.types import ConversationMessage
from loom.llm.types import Role, TextContent, ToolResult, ToolUse
from loom.sessions.manager import SessionLifecycleManager
from loom.sessions.store import ConversationStore
from loom.sessions.types import SessionSettings

# =============================================================================
# Message Factories
# =============================================================================


def user_message(text: str, **kwargs: Any) -> ConversationMessage:
    return ConversationMessage.create(role=Role.USER, content=text, **kwargs)


def assistant_message(text: str, **kwargs: Any) -> ConversationMessage:
    return ConversationMessage.create(role=Role.ASSISTANT, content=text, **kwargs)


def tool_use_message(
    tool_id: str,
    name: str = "bash",
    input: dict[str, Any] | None = None,
    text: str = "",
) -> ConversationMessage:
    blocks: list = [TextContent(text=text)] if text else []
    blocks.append(ToolUse(id=tool_id, name=name, input=input or {"command": "ls"}))
    return ConversationMessage.create(role=Role.ASSISTANT, content=blocks)


def tool_result_message(
    tool_id: str, content: str = "ok", is_error: bool = False
) -> ConversationMessage:
    return ConversationMessage.create(
        role=Role.USER,
        content=[ToolResult(tool_use_id=tool_id, content=content, is_error=is_error)],
    )


def conversation(pairs: int, size: int = 40) -> list[ConversationMessage]:
    """Alternating user/assistant messages with ``size`` characters each."""
    messages = []
    for i in range(pairs):
        messages.append(user_message(f"question {i} " + "q" * size))
        messages.append(assistant_message(f"answer {i} " + "a" * size))
    return messages


async def no_branch(project_path: str | Path) -> str | None:
    return None


# =============================================================================
# Session Fixtures
# =============================================================================


@pytest.fixture
def loom_home(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Iterator[Path]:
    """Point LOOM_HOME at a temporary directory."""
    from loom.config.paths import get_loom_home

    home = tmp_path / "loom-home"
    monkeypatch.setenv("LOOM_HOME", str(home))
    get_loom_home.cache_clear()
    yield home
    get_loom_home.cache_clear()


@pytest.fixture
def estimator() -> TokenEstimator:
    return TokenEstimator()


@pytest.fixture
def projects_path(tmp_path: Path) -> Path:
    return tmp_path / "projects"


@pytest.fixture
def store(projects_path: Path, estimator: TokenEstimator) -> ConversationStore:
    return ConversationStore(projects_path, estimator)


@pytest.fixture
def project_dir(tmp_path: Path) -> Path:
    path = tmp_path / "repo"
    path.mkdir()
    return path


@pytest.fixture
async def manager(
    store: ConversationStore,
) -> AsyncGenerator[SessionLifecycleManager, None]:
    """A manager with auto-save off and no git lookups."""
    session_manager = SessionLifecycleManager(
        store,
        settings=SessionSettings(auto_save=False),
        branch_resolver=no_branch,
    )
    yield session_manager
    await session_manager.close()


# =============================================================================
# CLI Fixtures
# =============================================================================


@pytest.fixture
def cli_runner():
    """Create a Typer CLI test runner with colors disabled."""
    from typer.testing import CliRunner

    return CliRunner(env={"NO_COLOR": "1"})
