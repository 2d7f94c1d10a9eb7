"""Session records, listing queries and lifecycle events."""

from __future__ import annotations

import hashlib
import os
import re
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from pathlib import Path
from typing import Any, Literal

from loom.core.types import ConversationMessage, generate_id, now_utc, parse_datetime

STORAGE_VERSION = 1

DEFAULT_MODEL = "claude-sonnet-4-20250514"


class SessionStatus(StrEnum):
    ACTIVE = "active"
    PAUSED = "paused"
    COMPLETED = "completed"
    ARCHIVED = "archived"


def normalize_project_path(path: str | Path) -> str:
    return os.path.normpath(os.path.abspath(os.path.expanduser(str(path))))


def project_key(path: str | Path) -> str:
    """Directory-safe key for a project path.

    The readable slug alone is lossy (``/a-b`` and ``/a/b`` share one), so a
    hash of the normalized path is appended to keep distinct paths distinct.
    """
    normalized = normalize_project_path(path)
    slug = re.sub(r"[^a-zA-Z0-9]+", "-", normalized).strip("-") or "root"
    if len(slug) > 64:
        slug = slug[-64:].lstrip("-")
    digest = hashlib.sha256(normalized.encode("utf-8")).hexdigest()[:12]
    return f"{slug}-{digest}"


def project_name(path: str | Path) -> str:
    return Path(normalize_project_path(path)).name or "/"


@dataclass
class SessionSettings:
    auto_save: bool = True
    auto_save_interval: float = 5.0  # seconds
    max_messages_in_memory: int = 1000
    thinking_enabled: bool = True

    def to_dict(self) -> dict[str, Any]:
        return {
            "auto_save": self.auto_save,
            "auto_save_interval": self.auto_save_interval,
            "max_messages_in_memory": self.max_messages_in_memory,
            "thinking_enabled": self.thinking_enabled,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SessionSettings:
        defaults = cls()
        return cls(
            auto_save=data.get("auto_save", defaults.auto_save),
            auto_save_interval=data.get("auto_save_interval", defaults.auto_save_interval),
            max_messages_in_memory=data.get(
                "max_messages_in_memory", defaults.max_messages_in_memory
            ),
            thinking_enabled=data.get("thinking_enabled", defaults.thinking_enabled),
        )


@dataclass
class SessionMetadata:
    """Header fields of a stored session."""

    id: str
    created_at: datetime
    updated_at: datetime
    project_path: str
    project_name: str
    status: SessionStatus = SessionStatus.ACTIVE
    model: str = DEFAULT_MODEL
    git_branch: str | None = None
    title: str | None = None
    tags: list[str] = field(default_factory=list)
    parent_session_id: str | None = None
    message_count: int = 0
    total_tokens: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "project_path": self.project_path,
            "project_name": self.project_name,
            "git_branch": self.git_branch,
            "status": self.status.value,
            "title": self.title,
            "tags": list(self.tags),
            "parent_session_id": self.parent_session_id,
            "message_count": self.message_count,
            "total_tokens": self.total_tokens,
            "model": self.model,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SessionMetadata:
        # Fields that listing sorts and searches on
        tags = data.get("tags") or []
        if not isinstance(tags, list) or not all(isinstance(t, str) for t in tags):
            raise TypeError("tags must be a list of strings")
        title = data.get("title")
        if title is not None and not isinstance(title, str):
            raise TypeError("title must be a string")
        for key in ("message_count", "total_tokens"):
            if not isinstance(data.get(key, 0), int):
                raise TypeError(f"{key} must be an integer")

        return cls(
            id=data["id"],
            created_at=parse_datetime(data["created_at"]),
            updated_at=parse_datetime(data["updated_at"]),
            project_path=data["project_path"],
            project_name=data.get("project_name") or project_name(data["project_path"]),
            status=SessionStatus(data.get("status", SessionStatus.ACTIVE)),
            model=data.get("model") or DEFAULT_MODEL,
            git_branch=data.get("git_branch"),
            title=title,
            tags=list(tags),
            parent_session_id=data.get("parent_session_id"),
            message_count=data.get("message_count", 0),
            total_tokens=data.get("total_tokens", 0),
        )

    @classmethod
    def create(
        cls,
        project_path: str | Path,
        model: str = DEFAULT_MODEL,
        git_branch: str | None = None,
        title: str | None = None,
        tags: list[str] | None = None,
        parent_session_id: str | None = None,
    ) -> SessionMetadata:
        normalized = normalize_project_path(project_path)
        created = now_utc()
        return cls(
            id=generate_id(),
            created_at=created,
            updated_at=created,
            project_path=normalized,
            project_name=project_name(normalized),
            model=model,
            git_branch=git_branch,
            title=title,
            tags=list(tags or []),
            parent_session_id=parent_session_id,
        )

    def copy(self) -> SessionMetadata:
        return SessionMetadata.from_dict(self.to_dict())


@dataclass
class Session:
    """A session with its full message history."""

    metadata: SessionMetadata
    messages: list[ConversationMessage] = field(default_factory=list)
    context: str | None = None
    settings: SessionSettings | None = None

    @property
    def id(self) -> str:
        return self.metadata.id

    @property
    def project_path(self) -> str:
        return self.metadata.project_path

    def header_dict(self) -> dict[str, Any]:
        return {
            "version": STORAGE_VERSION,
            "metadata": self.metadata.to_dict(),
            "context": self.context,
            "settings": self.settings.to_dict() if self.settings else None,
        }


@dataclass
class SessionFilter:
    project_path: str | None = None
    status: SessionStatus | list[SessionStatus] | None = None
    tags: list[str] = field(default_factory=list)  # any-of
    date_from: datetime | None = None
    date_to: datetime | None = None
    search: str | None = None

    def __post_init__(self) -> None:
        # Naive bounds are local time; stored timestamps are always aware
        if self.date_from is not None and self.date_from.tzinfo is None:
            self.date_from = self.date_from.astimezone()
        if self.date_to is not None and self.date_to.tzinfo is None:
            self.date_to = self.date_to.astimezone()

    def matches(self, metadata: SessionMetadata) -> bool:
        if self.project_path and metadata.project_path != normalize_project_path(
            self.project_path
        ):
            return False

        if self.status is not None:
            statuses = self.status if isinstance(self.status, list) else [self.status]
            if metadata.status not in statuses:
                return False

        if self.tags and not any(tag in metadata.tags for tag in self.tags):
            return False

        if self.date_from and metadata.updated_at < self.date_from:
            return False
        if self.date_to and metadata.updated_at > self.date_to:
            return False

        if self.search:
            query = self.search.lower()
            title_match = query in (metadata.title or "").lower()
            tag_match = any(query in tag.lower() for tag in metadata.tags)
            if not title_match and not tag_match:
                return False

        return True


SortField = Literal["created_at", "updated_at", "message_count", "title"]


@dataclass
class SessionSort:
    field: SortField = "updated_at"
    direction: Literal["asc", "desc"] = "desc"

    def key(self, metadata: SessionMetadata) -> Any:
        match self.field:
            case "created_at":
                return metadata.created_at
            case "updated_at":
                return metadata.updated_at
            case "message_count":
                return metadata.message_count
            case "title":
                return (metadata.title or "").lower()
        raise ValueError(f"Unknown sort field: {self.field}")

    def apply(self, sessions: list[SessionMetadata]) -> list[SessionMetadata]:
        return sorted(sessions, key=self.key, reverse=self.direction == "desc")


@dataclass
class SessionListResult:
    sessions: list[SessionMetadata]
    total: int
    page: int  # 0-indexed
    page_size: int
    has_more: bool


@dataclass
class SessionFileInfo:
    id: str
    file_path: Path
    summary_path: Path | None
    size: int
    last_modified: datetime


@dataclass
class ForkOptions:
    title: str | None = None
    from_message_index: int | None = None  # inclusive; None copies everything
    tags: list[str] = field(default_factory=list)
    copy_context: bool = False


@dataclass
class ForkResult:
    original_session_id: str
    forked_session_id: str
    messages_copied: int


class SessionEventType(StrEnum):
    SESSION_CREATED = "session:created"
    SESSION_RESUMED = "session:resumed"
    SESSION_FORKED = "session:forked"
    SESSION_SAVED = "session:saved"
    SESSION_COMPLETED = "session:completed"
    SESSION_ARCHIVED = "session:archived"
    MESSAGE_ADDED = "message:added"
    MESSAGE_UPDATED = "message:updated"
    CONTEXT_COMPACTED = "context:compacted"
    ERROR_SAVE = "error:save"
    ERROR_LOAD = "error:load"


@dataclass
class SessionEvent:
    type: SessionEventType
    session_id: str
    timestamp: datetime = field(default_factory=now_utc)
    data: Any = None


SessionEventHandler = Callable[[SessionEvent], None]
