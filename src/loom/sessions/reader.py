"""JSONL session reader."""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any

import aiofiles

from loom.core.tokens import TokenEstimator
from loom.core.types import ConversationMessage
from loom.sessions.errors import CorruptSessionError
from loom.sessions.types import STORAGE_VERSION, Session, SessionMetadata, SessionSettings

logger = logging.getLogger(__name__)


def parse_header(line: str, path: Path) -> Session:
    """Parse a header line into a Session with no messages."""
    try:
        data = json.loads(line)
    except json.JSONDecodeError as e:
        raise CorruptSessionError(path, f"invalid header JSON: {e}") from e

    if not isinstance(data, dict) or not isinstance(data.get("metadata"), dict):
        raise CorruptSessionError(path, "header has no metadata")

    version = data.get("version")
    if not isinstance(version, int) or version > STORAGE_VERSION:
        raise CorruptSessionError(path, f"unsupported version: {version!r}")

    settings: dict[str, Any] | None = data.get("settings")
    if settings is not None and not isinstance(settings, dict):
        raise CorruptSessionError(path, "header settings is not an object")
    context = data.get("context")
    if context is not None and not isinstance(context, str):
        raise CorruptSessionError(path, "header context is not a string")

    try:
        return Session(
            metadata=SessionMetadata.from_dict(data["metadata"]),
            context=context,
            settings=SessionSettings.from_dict(settings) if settings else None,
        )
    except (AttributeError, KeyError, TypeError, ValueError) as e:
        raise CorruptSessionError(path, f"invalid metadata: {e}") from e


class SessionReader:
    def __init__(self, session_file: Path, estimator: TokenEstimator | None = None) -> None:
        self.session_file = session_file
        self.estimator = estimator or TokenEstimator()
        self.last_error_count = 0

    def exists(self) -> bool:
        return self.session_file.exists()

    async def load_header(self) -> Session | None:
        """Read only the first line of the file."""
        if not self.session_file.exists():
            return None
        async with aiofiles.open(self.session_file, encoding="utf-8") as f:
            line = await f.readline()
        if not line.strip():
            raise CorruptSessionError(self.session_file, "empty file")
        return parse_header(line, self.session_file)

    async def load(self) -> Session | None:
        """Read the header and every message line.

        Malformed message lines are skipped and counted in
        ``last_error_count``. The message count and token total are
        recomputed from what was actually read.
        """
        if not self.session_file.exists():
            return None

        session: Session | None = None
        messages: list[ConversationMessage] = []
        error_count = 0

        async with aiofiles.open(self.session_file, encoding="utf-8") as f:
            line_num = 0
            async for line in f:
                line_num += 1
                if session is None:
                    if not line.strip():
                        raise CorruptSessionError(self.session_file, "empty header line")
                    session = parse_header(line, self.session_file)
                    continue

                line = line.strip()
                if not line:
                    continue
                try:
                    message = ConversationMessage.from_dict(json.loads(line))
                except (
                    json.JSONDecodeError,
                    AttributeError,
                    KeyError,
                    TypeError,
                    ValueError,
                ) as e:
                    error_count += 1
                    logger.warning(
                        "session_line_parse_error",
                        extra={
                            "line_num": line_num,
                            "file": str(self.session_file),
                            "error.message": str(e),
                        },
                    )
                    continue
                message.is_from_history = True
                messages.append(message)

        if session is None:
            raise CorruptSessionError(self.session_file, "empty file")

        self.last_error_count = error_count
        if error_count:
            logger.warning(
                "Skipped %d malformed lines in %s", error_count, self.session_file.name
            )

        session.messages = messages
        metadata = session.metadata
        metadata.message_count = len(messages)
        metadata.total_tokens = self.estimator.estimate_messages(messages)
        if messages and messages[-1].timestamp > metadata.updated_at:
            metadata.updated_at = messages[-1].timestamp
        return session
