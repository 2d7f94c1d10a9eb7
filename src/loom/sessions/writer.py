"""JSONL session writer."""

from __future__ import annotations

import json
import logging
import os
import tempfile
from collections.abc import Sequence
from pathlib import Path
from typing import Any

import aiofiles

from loom.core.types import ConversationMessage
from loom.sessions.types import Session

logger = logging.getLogger(__name__)


def encode_line(data: dict[str, Any]) -> str:
    return json.dumps(data, ensure_ascii=False, separators=(",", ":")) + "\n"


class SessionWriter:
    """Writes one session file: a header line followed by message lines."""

    def __init__(self, session_file: Path) -> None:
        self.session_file = session_file

    def exists(self) -> bool:
        return self.session_file.exists()

    async def write_snapshot(self, session: Session) -> None:
        """Atomically replace the file with the full session.

        Writes to a temp file in the same directory, then renames it over
        the target, so a crash leaves either the old file or the new one.
        """
        self.session_file.parent.mkdir(parents=True, exist_ok=True)

        temp_fd, temp_path = tempfile.mkstemp(
            dir=self.session_file.parent,
            prefix=f".{self.session_file.stem}_",
            suffix=".tmp",
        )

        try:
            async with aiofiles.open(temp_fd, "w", encoding="utf-8") as f:
                await f.write(encode_line(session.header_dict()))
                for message in session.messages:
                    await f.write(encode_line(message.to_dict()))
                await f.flush()
                os.fsync(temp_fd)

            Path(temp_path).replace(self.session_file)
        except BaseException:
            try:
                Path(temp_path).unlink()
            except OSError:
                pass
            raise

        logger.debug(
            "Wrote session snapshot %s (%d messages)",
            self.session_file.name,
            len(session.messages),
        )

    async def append_messages(self, messages: Sequence[ConversationMessage]) -> None:
        """Append message lines in order without touching existing content.

        Raises FileNotFoundError when the session file was never written.
        """
        if not messages:
            return

        payload = "".join(encode_line(message.to_dict()) for message in messages)
        if await self._needs_leading_newline():
            # A previous write was cut short; isolate the torn line.
            payload = "\n" + payload

        async with aiofiles.open(self.session_file, "a", encoding="utf-8") as f:
            await f.write(payload)

        logger.debug(
            "Appended %d messages to %s", len(messages), self.session_file.name
        )

    async def _needs_leading_newline(self) -> bool:
        async with aiofiles.open(self.session_file, "rb") as f:
            size = await f.seek(0, os.SEEK_END)
            if size == 0:
                return False
            await f.seek(size - 1)
            return await f.read(1) != b"\n"
