"""On-disk conversation store.

Layout under the projects root::

    <project_key>/<session_id>.jsonl                      header + messages
    <project_key>/<session_id>/session-memory/summary.md  cached summary

The store is the only component that touches these files. Writes to one
session file are serialized through a per-file lock.
"""

from __future__ import annotations

import asyncio
import logging
import shutil
from collections.abc import Sequence
from datetime import UTC, datetime
from pathlib import Path

import aiofiles

from loom.core.tokens import TokenEstimator
from loom.core.types import ConversationMessage
from loom.sessions.errors import (
    CorruptSessionError,
    SessionNotFoundError,
    SessionStorageError,
)
from loom.sessions.reader import SessionReader
from loom.sessions.types import (
    Session,
    SessionFileInfo,
    SessionFilter,
    SessionListResult,
    SessionMetadata,
    SessionSort,
    project_key,
)
from loom.sessions.writer import SessionWriter

logger = logging.getLogger(__name__)

SESSION_SUFFIX = ".jsonl"
SUMMARY_DIR = "session-memory"
SUMMARY_FILE = "summary.md"


class ConversationStore:
    """Durable session persistence keyed by project path."""

    def __init__(
        self, projects_path: Path, estimator: TokenEstimator | None = None
    ) -> None:
        self.projects_path = projects_path
        self.estimator = estimator or TokenEstimator()
        self._locks: dict[Path, asyncio.Lock] = {}

    # -- Paths -----------------------------------------------------------------

    @staticmethod
    def project_key(project_path: str | Path) -> str:
        return project_key(project_path)

    def project_dir(self, project_path: str | Path) -> Path:
        return self.projects_path / project_key(project_path)

    def session_file(self, project_path: str | Path, session_id: str) -> Path:
        return self.project_dir(project_path) / f"{session_id}{SESSION_SUFFIX}"

    def sidecar_dir(self, project_path: str | Path, session_id: str) -> Path:
        return self.project_dir(project_path) / session_id

    def summary_path(self, project_path: str | Path, session_id: str) -> Path:
        return self.sidecar_dir(project_path, session_id) / SUMMARY_DIR / SUMMARY_FILE

    def _lock(self, path: Path) -> asyncio.Lock:
        lock = self._locks.get(path)
        if lock is None:
            lock = self._locks[path] = asyncio.Lock()
        return lock

    # -- Writes ------------------------------------------------------------------

    async def save(self, session: Session) -> None:
        """Write the full session (header and all messages) atomically."""
        path = self.session_file(session.project_path, session.id)
        async with self._lock(path):
            try:
                await SessionWriter(path).write_snapshot(session)
            except OSError as e:
                raise SessionStorageError("save", path, e) from e

    async def append(
        self,
        project_path: str | Path,
        session_id: str,
        message: ConversationMessage,
    ) -> None:
        await self.append_many(project_path, session_id, [message])

    async def append_many(
        self,
        project_path: str | Path,
        session_id: str,
        messages: Sequence[ConversationMessage],
    ) -> None:
        """Append messages to an existing session file, in order.

        Raises SessionNotFoundError if no save has created the file yet.
        """
        path = self.session_file(project_path, session_id)
        async with self._lock(path):
            if not path.exists():
                raise SessionNotFoundError(session_id, str(project_path))
            try:
                await SessionWriter(path).append_messages(messages)
            except FileNotFoundError as e:
                raise SessionNotFoundError(session_id, str(project_path)) from e
            except OSError as e:
                raise SessionStorageError("append to", path, e) from e

    async def delete(self, project_path: str | Path, session_id: str) -> bool:
        """Remove a session and its sidecar data.

        Returns False when nothing existed.
        """
        path = self.session_file(project_path, session_id)
        sidecar = self.sidecar_dir(project_path, session_id)
        async with self._lock(path):
            removed = False
            try:
                if path.exists():
                    path.unlink()
                    removed = True
                if sidecar.is_dir():
                    shutil.rmtree(sidecar)
                    removed = True
            except OSError as e:
                raise SessionStorageError("delete", path, e) from e
        self._locks.pop(path, None)
        if removed:
            logger.info("Deleted session %s", session_id)
        return removed

    # -- Reads -----------------------------------------------------------------

    def session_exists(self, project_path: str | Path, session_id: str) -> bool:
        return self.session_file(project_path, session_id).exists()

    async def load(self, project_path: str | Path, session_id: str) -> Session | None:
        """Load the full session, or None if it does not exist.

        Malformed message lines are skipped. An unreadable header raises
        CorruptSessionError.
        """
        path = self.session_file(project_path, session_id)
        try:
            return await SessionReader(path, self.estimator).load()
        except FileNotFoundError:
            return None
        except UnicodeDecodeError as e:
            raise CorruptSessionError(path, f"not valid UTF-8: {e}") from e
        except OSError as e:
            raise SessionStorageError("read", path, e) from e

    async def load_metadata_only(
        self, project_path: str | Path, session_id: str
    ) -> SessionMetadata | None:
        path = self.session_file(project_path, session_id)
        return await self._load_metadata_from(path)

    async def _load_metadata_from(self, path: Path) -> SessionMetadata | None:
        try:
            header = await SessionReader(path, self.estimator).load_header()
        except FileNotFoundError:
            return None
        except UnicodeDecodeError as e:
            raise CorruptSessionError(path, f"not valid UTF-8: {e}") from e
        except OSError as e:
            raise SessionStorageError("read", path, e) from e
        return header.metadata if header else None

    async def locate_session(self, session_id: str) -> SessionMetadata | None:
        """Find a session by id in any project."""
        if not self.projects_path.is_dir() or set(session_id) & set("*?[]/\\"):
            return None
        for path in sorted(self.projects_path.glob(f"*/{session_id}{SESSION_SUFFIX}")):
            try:
                metadata = await self._load_metadata_from(path)
            except (CorruptSessionError, SessionStorageError) as e:
                logger.warning("Skipping unreadable session %s: %s", path, e)
                continue
            if metadata is not None:
                return metadata
        return None

    async def get_session_files(self, project_path: str | Path) -> list[SessionFileInfo]:
        """Session files for one project, most recently modified first."""
        return self._scan_project_dir(self.project_dir(project_path))

    def _scan_project_dir(self, project_dir: Path) -> list[SessionFileInfo]:
        if not project_dir.is_dir():
            return []

        files: list[SessionFileInfo] = []
        for path in project_dir.glob(f"*{SESSION_SUFFIX}"):
            try:
                stat = path.stat()
            except OSError as e:
                logger.warning("Cannot stat session file %s: %s", path, e)
                continue
            session_id = path.stem
            summary = project_dir / session_id / SUMMARY_DIR / SUMMARY_FILE
            files.append(
                SessionFileInfo(
                    id=session_id,
                    file_path=path,
                    summary_path=summary if summary.exists() else None,
                    size=stat.st_size,
                    last_modified=datetime.fromtimestamp(stat.st_mtime, UTC),
                )
            )
        files.sort(key=lambda info: info.last_modified, reverse=True)
        return files

    async def list_sessions(
        self,
        filter: SessionFilter | None = None,
        sort: SessionSort | None = None,
        page: int = 0,
        page_size: int = 20,
    ) -> SessionListResult:
        """List session metadata across projects.

        Only header lines are read. Files that cannot be read or parsed are
        skipped with a warning.
        """
        if page < 0 or page_size <= 0:
            raise ValueError("page must be >= 0 and page_size > 0")

        filter = filter or SessionFilter()
        sort = sort or SessionSort()

        if filter.project_path:
            project_dirs = [self.project_dir(filter.project_path)]
        elif self.projects_path.is_dir():
            project_dirs = sorted(p for p in self.projects_path.iterdir() if p.is_dir())
        else:
            project_dirs = []

        matched: list[SessionMetadata] = []
        for project_dir in project_dirs:
            for info in self._scan_project_dir(project_dir):
                try:
                    metadata = await self._load_metadata_from(info.file_path)
                except (CorruptSessionError, SessionStorageError) as e:
                    logger.warning("Skipping unreadable session %s: %s", info.file_path, e)
                    continue
                if metadata is not None and filter.matches(metadata):
                    matched.append(metadata)

        ordered = sort.apply(matched)
        start = page * page_size
        end = start + page_size
        return SessionListResult(
            sessions=ordered[start:end],
            total=len(ordered),
            page=page,
            page_size=page_size,
            has_more=end < len(ordered),
        )

    async def get_recent_sessions(self, limit: int = 10) -> list[SessionMetadata]:
        result = await self.list_sessions(
            sort=SessionSort("updated_at", "desc"), page_size=limit
        )
        return result.sessions

    async def get_sessions_for_project(
        self, project_path: str | Path, limit: int = 50
    ) -> list[SessionMetadata]:
        result = await self.list_sessions(
            SessionFilter(project_path=str(project_path)),
            SessionSort("updated_at", "desc"),
            page_size=limit,
        )
        return result.sessions

    # -- Summary sidecar -----------------------------------------------------

    async def save_summary(
        self, project_path: str | Path, session_id: str, summary: str
    ) -> None:
        path = self.summary_path(project_path, session_id)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            async with aiofiles.open(path, "w", encoding="utf-8") as f:
                await f.write(summary)
        except OSError as e:
            raise SessionStorageError("write summary", path, e) from e

    async def load_summary(self, project_path: str | Path, session_id: str) -> str | None:
        path = self.summary_path(project_path, session_id)
        if not path.exists():
            return None
        try:
            async with aiofiles.open(path, encoding="utf-8") as f:
                return await f.read()
        except OSError as e:
            raise SessionStorageError("read summary", path, e) from e
