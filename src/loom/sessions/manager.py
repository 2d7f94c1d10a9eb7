"""Session lifecycle orchestration.

The manager owns the current session: its metadata, its in-memory message
buffer and the background auto-save task. Persistence goes through a
ConversationStore, compaction through a ContextWindowCompactor.

Typical use::

    async with SessionLifecycleManager(store) as manager:
        await manager.create_session("/path/to/project")
        manager.add_message(Role.USER, "hello")
        ...
    # final save has happened here, on every exit path
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import replace
from pathlib import Path
from typing import Any

from loom.core.buffer import DEFAULT_MAX_TOKENS, ConversationBuffer
from loom.core.compaction import ContextWindowCompactor
from loom.core.tokens import TokenEstimator
from loom.core.types import (
    CompactionResult,
    ConversationMessage,
    ToolCallRecord,
    now_utc,
)
from loom.git import get_git_branch_async
from loom.llm.types import MessageContent, Role
from loom.sessions.errors import (
    ForkSourceNotFoundError,
    NoActiveSessionError,
    SessionError,
    SessionNotFoundError,
)
from loom.sessions.events import SessionEventBus
from loom.sessions.store import ConversationStore
from loom.sessions.types import (
    DEFAULT_MODEL,
    ForkOptions,
    ForkResult,
    Session,
    SessionEventHandler,
    SessionEventType,
    SessionMetadata,
    SessionSettings,
    SessionStatus,
)

logger = logging.getLogger(__name__)

DEFAULT_TITLE = "New Session"
TITLE_MAX_CHARS = 80

BranchResolver = Callable[[str | Path], Awaitable[str | None]]


def _dedupe(items: list[str]) -> list[str]:
    return list(dict.fromkeys(items))


class SessionLifecycleManager:
    """Creates, resumes, forks and closes sessions.

    At most one session is current at a time. Switching to another session
    stops the auto-save task and flushes the previous one first.

    The full message history is the persisted record. The buffer is a capped
    view of its tail; trimming the buffer never removes anything from disk.
    """

    def __init__(
        self,
        store: ConversationStore,
        compactor: ContextWindowCompactor | None = None,
        estimator: TokenEstimator | None = None,
        settings: SessionSettings | None = None,
        default_model: str = DEFAULT_MODEL,
        max_tokens_in_memory: int = DEFAULT_MAX_TOKENS,
        events: SessionEventBus | None = None,
        branch_resolver: BranchResolver = get_git_branch_async,
    ) -> None:
        self.store = store
        self.estimator = estimator or store.estimator
        self.compactor = compactor or ContextWindowCompactor(estimator=self.estimator)
        self.settings = settings or SessionSettings()
        self.default_model = default_model
        self.max_tokens_in_memory = max_tokens_in_memory
        self.events = events or SessionEventBus()
        self._branch_resolver = branch_resolver

        self._session: Session | None = None
        self._history: list[ConversationMessage] = []
        self._buffer = self._new_buffer(self.settings)

        # Messages added since the last successful write, in order
        self._queued: list[ConversationMessage] = []
        # Set by anything that an append cannot express (metadata, edits, compaction)
        self._needs_full_save = False
        # Header counts lag behind the file after an append
        self._header_stale = False
        self._write_lock = asyncio.Lock()
        self._autosave_task: asyncio.Task | None = None
        self._autosave_save: asyncio.Future | None = None

    async def __aenter__(self) -> SessionLifecycleManager:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    # -- Accessors ---------------------------------------------------------------

    @property
    def current_session(self) -> Session | None:
        """The current session.

        ``metadata`` is live; ``messages`` is a copy of the full history.
        """
        if self._session is None:
            return None
        return Session(
            metadata=self._session.metadata,
            messages=list(self._history),
            context=self._session.context,
            settings=self._session.settings,
        )

    @property
    def current_session_id(self) -> str | None:
        return self._session.id if self._session else None

    @property
    def metadata(self) -> SessionMetadata | None:
        return self._session.metadata if self._session else None

    @property
    def messages(self) -> list[ConversationMessage]:
        return list(self._history) if self._session else []

    @property
    def buffer(self) -> ConversationBuffer:
        return self._buffer

    @property
    def is_active(self) -> bool:
        return self._session is not None

    @property
    def has_unsaved_changes(self) -> bool:
        return bool(self._queued) or self._needs_full_save or self._header_stale

    def on(
        self, event_type: SessionEventType | str, handler: SessionEventHandler
    ) -> Callable[[], None]:
        return self.events.on(event_type, handler)

    def _require_session(self, operation: str) -> Session:
        if self._session is None:
            raise NoActiveSessionError(operation)
        return self._session

    # -- Lifecycle ---------------------------------------------------------------

    async def create_session(
        self,
        project_path: str | Path,
        title: str | None = None,
        tags: list[str] | None = None,
        model: str | None = None,
        settings: SessionSettings | None = None,
        context: str | None = None,
    ) -> Session:
        """Start a new session for a project and make it current."""
        await self._release_current()

        branch = await self._resolve_branch(project_path)
        metadata = SessionMetadata.create(
            project_path,
            model=model or self.default_model,
            git_branch=branch,
            title=title,
            tags=_dedupe(list(tags or [])),
        )
        session = Session(
            metadata=metadata,
            context=context,
            settings=settings or replace(self.settings),
        )
        await self.store.save(session)

        self._activate(session, [])
        logger.info(
            "Created session %s for %s (branch: %s)",
            metadata.id,
            metadata.project_path,
            branch or "none",
        )
        self.events.emit(SessionEventType.SESSION_CREATED, metadata.id)
        return self.current_session

    async def resume_session(
        self, project_path: str | Path, session_id: str
    ) -> Session | None:
        """Load a stored session and make it current.

        Returns None when the session does not exist. Storage and parse
        errors emit ``error:load`` and propagate.
        """
        if self.current_session_id == session_id:
            await self.save_current_session()

        try:
            session = await self.store.load(project_path, session_id)
        except SessionError as e:
            logger.warning("Failed to load session %s: %s", session_id, e)
            self.events.emit(SessionEventType.ERROR_LOAD, session_id, {"error": str(e)})
            raise

        if session is None:
            logger.info("Session %s not found in %s", session_id, project_path)
            return None

        await self._release_current()

        session.metadata.status = SessionStatus.ACTIVE
        session.metadata.updated_at = now_utc()
        messages = session.messages
        for message in messages:
            message.is_from_history = True
        session.messages = []

        self._activate(session, messages)
        self._needs_full_save = True
        logger.info("Resumed session %s (%d messages)", session_id, len(messages))
        self.events.emit(SessionEventType.SESSION_RESUMED, session_id)
        return self.current_session

    async def resume_or_create(
        self, project_path: str | Path, session_id: str | None = None
    ) -> Session:
        """Resume ``session_id`` if possible, otherwise start a new session."""
        if session_id:
            try:
                session = await self.resume_session(project_path, session_id)
            except SessionError as e:
                logger.warning(
                    "Could not resume session %s, creating new session: %s",
                    session_id,
                    e,
                )
                session = None
            if session is not None:
                return session
            logger.info("Session %s not found, creating new session", session_id)
        return await self.create_session(project_path)

    async def fork_session(
        self,
        project_path: str | Path,
        source_session_id: str,
        options: ForkOptions | None = None,
    ) -> ForkResult:
        """Copy a stored session into a new one and make the copy current.

        The source file is never written.
        """
        options = options or ForkOptions()
        if options.from_message_index is not None and options.from_message_index < 0:
            raise ValueError("from_message_index must be >= 0")

        if self.current_session_id == source_session_id:
            await self.save_current_session()

        source = await self.store.load(project_path, source_session_id)
        if source is None:
            raise ForkSourceNotFoundError(source_session_id, str(project_path))

        copied = source.messages
        if options.from_message_index is not None:
            copied = copied[: options.from_message_index + 1]
        # Fresh objects so the fork never shares state with the source
        messages = [ConversationMessage.from_dict(m.to_dict()) for m in copied]
        for message in messages:
            message.is_from_history = True

        source_meta = source.metadata
        metadata = SessionMetadata.create(
            source_meta.project_path,
            model=source_meta.model,
            git_branch=await self._resolve_branch(project_path),
            title=options.title or f"Fork of {source_meta.title or source_session_id}",
            tags=_dedupe([*source_meta.tags, *options.tags]),
            parent_session_id=source_session_id,
        )
        metadata.message_count = len(messages)
        metadata.total_tokens = self.estimator.estimate_messages(messages)

        forked = Session(
            metadata=metadata,
            messages=messages,
            context=source.context if options.copy_context else None,
            settings=replace(source.settings) if source.settings else replace(self.settings),
        )
        await self.store.save(forked)

        await self._release_current()
        forked.messages = []
        self._activate(forked, messages)

        result = ForkResult(
            original_session_id=source_session_id,
            forked_session_id=metadata.id,
            messages_copied=len(messages),
        )
        logger.info(
            "Forked session %s into %s (%d messages)",
            source_session_id,
            metadata.id,
            len(messages),
        )
        self.events.emit(
            SessionEventType.SESSION_FORKED,
            metadata.id,
            {
                "source_session_id": source_session_id,
                "messages_copied": len(messages),
            },
        )
        return result

    async def fork(
        self, source_session_id: str, project_path: str | Path | None = None
    ) -> Session:
        """Fork with default options and return the new current session."""
        path = project_path or (self._session.project_path if self._session else None)
        if path is None:
            raise NoActiveSessionError("fork without a project path")
        await self.fork_session(path, source_session_id)
        return self.current_session

    async def complete_session(self) -> None:
        """Mark the current session completed, save it and release it."""
        session = self._require_session("complete_session")
        await self._stop_autosave()

        session.metadata.status = SessionStatus.COMPLETED
        self._touch()
        await self.save_current_session(full=True)

        logger.info("Completed session %s", session.id)
        self.events.emit(SessionEventType.SESSION_COMPLETED, session.id)
        self._deactivate()

    async def archive_session(self, project_path: str | Path, session_id: str) -> bool:
        """Mark a session archived.

        Works on the current session or directly on a stored one. Returns
        False when the session does not exist.
        """
        if self.current_session_id == session_id:
            session = self._require_session("archive_session")
            await self._stop_autosave()
            session.metadata.status = SessionStatus.ARCHIVED
            self._touch()
            await self.save_current_session(full=True)
            self._deactivate()
        else:
            stored = await self.store.load(project_path, session_id)
            if stored is None:
                return False
            stored.metadata.status = SessionStatus.ARCHIVED
            stored.metadata.updated_at = now_utc()
            await self.store.save(stored)

        logger.info("Archived session %s", session_id)
        self.events.emit(SessionEventType.SESSION_ARCHIVED, session_id)
        return True

    async def close(self) -> None:
        """Stop auto-save, write a final save and release the current session.

        A failing final save is logged and re-raised; the session is released
        either way.
        """
        await self._stop_autosave()
        if self._session is None:
            return
        try:
            await self.save_current_session(full=True)
        except Exception:
            logger.error("Final save failed for session %s", self._session.id)
            raise
        finally:
            self._deactivate()

    # -- Messages ------------------------------------------------------------------

    def add_message(
        self,
        role: Role | str,
        content: MessageContent,
        *,
        tokens: int | None = None,
        model: str | None = None,
        thinking: str | None = None,
        tool_calls: list[ToolCallRecord] | None = None,
    ) -> ConversationMessage:
        """Append a message to the current session and queue it for saving."""
        session = self._require_session("add_message")

        message = ConversationMessage.create(
            role=role,
            content=content,
            tokens=tokens,
            model=model,
            thinking=thinking,
            tool_calls=tool_calls,
        )
        if message.tokens is None:
            message.tokens = self.estimator.estimate_message(message)

        self._buffer.append(message)
        self._history.append(message)
        self._queued.append(message)

        session.metadata.message_count = len(self._history)
        session.metadata.total_tokens += message.tokens
        self._touch()
        self.events.emit(
            SessionEventType.MESSAGE_ADDED, session.id, {"message_id": message.id}
        )
        return message

    def update_message(self, message_id: str, **changes: Any) -> bool:
        """Edit a message still held in the buffer.

        Returns False for unknown ids and for messages the buffer has already
        trimmed.
        """
        session = self._require_session("update_message")
        if self._buffer.update_message(message_id, **changes) is None:
            return False
        self._needs_full_save = True
        self._sync_counts()
        self._touch()
        self.events.emit(
            SessionEventType.MESSAGE_UPDATED, session.id, {"message_id": message_id}
        )
        return True

    def messages_within_budget(self, token_budget: int) -> list[ConversationMessage]:
        return self._buffer.messages_within_budget(token_budget)

    def register_tool_call(
        self, tool_id: str, name: str, input: dict[str, Any] | None = None
    ) -> ToolCallRecord:
        self._require_session("register_tool_call")
        return self._buffer.register_tool_call(tool_id, name, input)

    def complete_tool_call(
        self,
        tool_id: str,
        result: str,
        success: bool = True,
        duration: int | None = None,
    ) -> ToolCallRecord | None:
        self._require_session("complete_tool_call")
        record = self._buffer.complete_tool_call(tool_id, result, success, duration)
        if record is not None:
            self._needs_full_save = True
            self._touch()
        return record

    # -- Tags, title, context ------------------------------------------------------

    def add_tag(self, tag: str) -> bool:
        """Add a tag. Returns False if it was already present."""
        session = self._require_session("add_tag")
        if tag in session.metadata.tags:
            return False
        session.metadata.tags.append(tag)
        self._metadata_changed()
        return True

    def remove_tag(self, tag: str) -> bool:
        """Remove a tag. Returns False if it was not present."""
        session = self._require_session("remove_tag")
        if tag not in session.metadata.tags:
            return False
        session.metadata.tags.remove(tag)
        self._metadata_changed()
        return True

    def toggle_tag(self, tag: str) -> bool:
        """Add or remove a tag. Returns True if the tag is now present."""
        session = self._require_session("toggle_tag")
        if tag in session.metadata.tags:
            self.remove_tag(tag)
            return False
        self.add_tag(tag)
        return True

    def set_title(self, title: str) -> None:
        session = self._require_session("set_title")
        session.metadata.title = title
        self._metadata_changed()

    def generate_title(self) -> str:
        """Derive a title from the first user message and apply it.

        Returns the placeholder title, without changing anything, when there
        is no current session or no user text yet.
        """
        if self._session is None:
            return DEFAULT_TITLE

        first_user = next(
            (m for m in self._history if m.role == Role.USER and m.get_text()),
            None,
        )
        if first_user is None:
            return DEFAULT_TITLE

        title = first_user.get_text().replace("\r", " ").replace("\n", " ")
        title = title.strip()[:TITLE_MAX_CHARS].strip()
        if not title:
            return DEFAULT_TITLE

        self.set_title(title)
        return title

    def set_context(self, context: str | None) -> None:
        session = self._require_session("set_context")
        session.context = context
        self._metadata_changed()

    # -- Compaction ----------------------------------------------------------------

    def should_compact(self) -> bool:
        return self._session is not None and self.compactor.should_compact(
            self._buffer.messages
        )

    async def compact_context(self, smart: bool = True) -> CompactionResult:
        """Compact the session history into ``[summary] + preserved messages``.

        The buffer is rebuilt from the compacted history. Messages added
        while the summary was being generated are kept after the preserved
        ones.
        """
        session = self._require_session("compact_context")
        snapshot = list(self._history)

        if smart:
            result = await self.compactor.smart_compact(snapshot)
        else:
            result = await self.compactor.compact(snapshot)

        if result.is_noop or self._session is not session:
            return result

        snapshot_ids = {m.id for m in snapshot}
        added_since = [m for m in self._history if m.id not in snapshot_ids]
        summary_message = self.compactor.create_summary_message(result.summary)
        self._history = [summary_message, *result.preserved_messages, *added_since]
        self._buffer.restore_from(self._history)

        self._needs_full_save = True
        self._sync_counts()
        self._touch()

        await self.store.save_summary(session.project_path, session.id, result.summary)

        logger.info(
            "Compacted session %s: %d messages summarized, %d tokens saved",
            session.id,
            len(result.summarized_messages),
            result.tokens_saved,
        )
        self.events.emit(
            SessionEventType.CONTEXT_COMPACTED,
            session.id,
            {
                "messages_summarized": len(result.summarized_messages),
                "tokens_removed": result.tokens_removed,
                "tokens_saved": result.tokens_saved,
            },
        )
        return result

    async def maybe_compact(self, smart: bool = True) -> CompactionResult | None:
        """Compact only when usage has crossed the compactor's threshold."""
        if not self.should_compact():
            return None
        return await self.compact_context(smart=smart)

    # -- Listing -------------------------------------------------------------------

    async def get_recent_sessions(self, limit: int = 10) -> list[SessionMetadata]:
        return await self.store.get_recent_sessions(limit)

    async def get_project_sessions(self, project_path: str | Path) -> list[SessionMetadata]:
        return await self.store.get_sessions_for_project(project_path)

    # -- Saving --------------------------------------------------------------------

    async def save_current_session(
        self, full: bool = False, refresh_header: bool = False
    ) -> bool:
        """Flush pending changes of the current session.

        New messages are appended when nothing else changed, which leaves the
        header counts behind the file. ``refresh_header`` rewrites the file in
        that case; the auto-save task does so once the session goes idle, and
        switching sessions or closing always does.

        Emits ``session:saved`` after a write and ``error:save`` (then
        re-raises) on failure. Returns False when there was nothing to write.
        """
        session = self._session
        if session is None:
            return False
        try:
            wrote = await self._flush(full=full, refresh_header=refresh_header)
        except Exception as e:
            self.events.emit(SessionEventType.ERROR_SAVE, session.id, {"error": str(e)})
            raise
        if wrote:
            self.events.emit(SessionEventType.SESSION_SAVED, session.id)
        return wrote

    async def force_save(self) -> bool:
        """Write a full snapshot now, even if nothing changed."""
        return await self.save_current_session(full=True)

    async def _flush(self, full: bool = False, refresh_header: bool = False) -> bool:
        async with self._write_lock:
            session = self._session
            if session is None:
                return False
            full = full or (refresh_header and self._header_stale)
            if not full and not self._needs_full_save and not self._queued:
                return False

            project_path = session.project_path
            use_full = (
                full
                or self._needs_full_save
                or not self.store.session_exists(project_path, session.id)
            )

            # Snapshot and queue length are taken together, before any await
            flushed = len(self._queued)
            if use_full:
                await self._write_snapshot(self._snapshot())
            else:
                batch = list(self._queued)
                try:
                    await self.store.append_many(project_path, session.id, batch)
                    self._header_stale = True
                except SessionNotFoundError:
                    logger.warning("Session file for %s vanished, rewriting", session.id)
                    await self._write_snapshot(self._snapshot())

            if self._session is session:
                del self._queued[:flushed]
            logger.debug(
                "Flushed session %s (%s, %d queued messages)",
                session.id,
                "snapshot" if use_full else "append",
                flushed,
            )
            return True

    async def _write_snapshot(self, snapshot: Session) -> None:
        needed_full, header_stale = self._needs_full_save, self._header_stale
        self._needs_full_save = False
        self._header_stale = False
        try:
            await self.store.save(snapshot)
        except BaseException:
            self._needs_full_save = needed_full or self._needs_full_save
            self._header_stale = header_stale or self._header_stale
            raise

    def _snapshot(self) -> Session:
        assert self._session is not None
        metadata = self._session.metadata.copy()
        messages = list(self._history)
        metadata.message_count = len(messages)
        metadata.total_tokens = sum(m.tokens or 0 for m in messages)
        return Session(
            metadata=metadata,
            messages=messages,
            context=self._session.context,
            settings=self._session.settings,
        )

    # -- Auto-save -----------------------------------------------------------------

    def _start_autosave(self) -> None:
        settings = self._session.settings if self._session else None
        if settings is None or not settings.auto_save:
            return
        self._autosave_task = asyncio.create_task(
            self._autosave_loop(settings.auto_save_interval)
        )

    async def _stop_autosave(self) -> None:
        task = self._autosave_task
        if task is None:
            return
        self._autosave_task = None
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

        # A shielded save may still be running after the loop was cancelled
        pending, self._autosave_save = self._autosave_save, None
        if pending is None or pending.done():
            return
        try:
            await pending
        except Exception as e:
            logger.warning(
                "session_autosave_failed",
                extra={
                    "session.id": self.current_session_id,
                    "error.message": str(e),
                },
            )

    async def _autosave_loop(self, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            save = asyncio.ensure_future(
                self.save_current_session(refresh_header=not self._queued)
            )
            self._autosave_save = save
            try:
                # Shielded so cancellation never abandons a half-done write
                await asyncio.shield(save)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.warning(
                    "session_autosave_failed",
                    extra={
                        "session.id": self.current_session_id,
                        "error.message": str(e),
                    },
                )

    # -- Internals -----------------------------------------------------------------

    def _new_buffer(self, settings: SessionSettings) -> ConversationBuffer:
        return ConversationBuffer(
            estimator=self.estimator,
            max_messages=settings.max_messages_in_memory,
            max_tokens=self.max_tokens_in_memory,
        )

    def _activate(self, session: Session, messages: list[ConversationMessage]) -> None:
        self._session = session
        self._history = list(messages)
        for message in self._history:
            if message.tokens is None:
                message.tokens = self.estimator.estimate_message(message)
        self._buffer = self._new_buffer(session.settings or self.settings)
        self._buffer.restore_from(self._history)
        self._queued = []
        self._needs_full_save = False
        self._header_stale = False
        self._sync_counts()
        self._start_autosave()

    def _deactivate(self) -> None:
        self._session = None
        self._history = []
        self._buffer.clear()
        self._queued = []
        self._needs_full_save = False
        self._header_stale = False

    async def _release_current(self) -> None:
        await self._stop_autosave()
        if self._session is None:
            return
        await self.save_current_session(refresh_header=True)
        self._deactivate()

    async def _resolve_branch(self, project_path: str | Path) -> str | None:
        try:
            return await self._branch_resolver(project_path)
        except Exception as e:
            logger.debug("Branch lookup failed for %s: %s", project_path, e)
            return None

    def _sync_counts(self) -> None:
        if self._session is None:
            return
        self._session.metadata.message_count = len(self._history)
        self._session.metadata.total_tokens = sum(m.tokens or 0 for m in self._history)

    def _touch(self) -> None:
        if self._session is not None:
            self._session.metadata.updated_at = max(
                now_utc(), self._session.metadata.created_at
            )

    def _metadata_changed(self) -> None:
        self._needs_full_save = True
        self._touch()
