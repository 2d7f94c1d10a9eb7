"""Session layer errors."""

from __future__ import annotations

from pathlib import Path
from typing import Any


class SessionError(Exception):
    """Base class for session layer errors."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}


class SessionNotFoundError(SessionError):
    """A session file that an operation requires does not exist."""

    def __init__(self, session_id: str, project_path: str | None = None) -> None:
        super().__init__(
            f"Session not found: {session_id}",
            {"session_id": session_id, "project_path": project_path},
        )
        self.session_id = session_id
        self.project_path = project_path


class ForkSourceNotFoundError(SessionNotFoundError):
    """The session to fork from does not exist."""

    def __init__(self, session_id: str, project_path: str | None = None) -> None:
        super().__init__(session_id, project_path)
        self.message = f"Cannot fork: source session not found: {session_id}"
        self.args = (self.message,)


class CorruptSessionError(SessionError):
    """A session file's header could not be parsed."""

    def __init__(self, path: Path, reason: str) -> None:
        super().__init__(
            f"Corrupt session file {path}: {reason}",
            {"path": str(path), "reason": reason},
        )
        self.path = path


class SessionStorageError(SessionError):
    """Filesystem failure while reading or writing session data."""

    def __init__(self, operation: str, path: Path, error: OSError) -> None:
        super().__init__(
            f"Failed to {operation} {path}: {error}",
            {"operation": operation, "path": str(path), "errno": error.errno},
        )
        self.path = path
        self.__cause__ = error


class NoActiveSessionError(SessionError):
    """An operation needs a current session but none is active."""

    def __init__(self, operation: str) -> None:
        super().__init__(
            f"No active session for {operation}", {"operation": operation}
        )
