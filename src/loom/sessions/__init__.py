"""JSONL-based session persistence and lifecycle.

Each session is one JSONL file: a header line with metadata, then one line
per message in the order messages were added. Files live under
``<LOOM_HOME>/projects/<project_key>/<session_id>.jsonl``.
"""

from loom.sessions.errors import (
    CorruptSessionError,
    ForkSourceNotFoundError,
    NoActiveSessionError,
    SessionError,
    SessionNotFoundError,
    SessionStorageError,
)
from loom.sessions.events import SessionEventBus
from loom.sessions.manager import SessionLifecycleManager
from loom.sessions.reader import SessionReader
from loom.sessions.store import ConversationStore
from loom.sessions.types import (
    STORAGE_VERSION,
    ForkOptions,
    ForkResult,
    Session,
    SessionEvent,
    SessionEventType,
    SessionFileInfo,
    SessionFilter,
    SessionListResult,
    SessionMetadata,
    SessionSettings,
    SessionSort,
    SessionStatus,
    project_key,
)
from loom.sessions.writer import SessionWriter

__all__ = [
    "STORAGE_VERSION",
    "ConversationStore",
    "CorruptSessionError",
    "ForkOptions",
    "ForkResult",
    "ForkSourceNotFoundError",
    "NoActiveSessionError",
    "Session",
    "SessionError",
    "SessionEvent",
    "SessionEventBus",
    "SessionEventType",
    "SessionFileInfo",
    "SessionFilter",
    "SessionLifecycleManager",
    "SessionListResult",
    "SessionMetadata",
    "SessionNotFoundError",
    "SessionReader",
    "SessionSettings",
    "SessionSort",
    "SessionStatus",
    "SessionStorageError",
    "SessionWriter",
    "project_key",
]
