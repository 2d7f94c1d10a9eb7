"""Tests for the session lifecycle manager."""

from __future__ import annotations

import asyncio
import json

import pytest

from loom.core.compaction import (
    COMPACTION_PREFIX,
    CompactionSettings,
    ContextWindowCompactor,
)
from loom.llm.types import Role, ToolUse
from loom.sessions.errors import (
    CorruptSessionError,
    ForkSourceNotFoundError,
    NoActiveSessionError,
    SessionStorageError,
)
from loom.sessions.events import SessionEventBus
from loom.sessions.manager import SessionLifecycleManager
from loom.sessions.types import (
    ForkOptions,
    SessionEventType,
    SessionSettings,
    SessionStatus,
)
from tests.conftest import no_branch


def add_pairs(manager: SessionLifecycleManager, count: int, size: int = 40) -> None:
    for i in range(count):
        manager.add_message(Role.USER, f"question {i} " + "q" * size)
        manager.add_message(Role.ASSISTANT, f"answer {i} " + "a" * size)


def record_events(manager: SessionLifecycleManager) -> list:
    events: list = []
    manager.events.on_any(events.append)
    return events


class TestCreate:
    @pytest.mark.asyncio
    async def test_create_save_load_round_trip(self, manager, store, project_dir):
        session = await manager.create_session(project_dir, title="First")
        add_pairs(manager, 3)
        await manager.save_current_session()

        loaded = await store.load(project_dir, session.id)

        assert [m.get_text() for m in loaded.messages] == [
            m.get_text() for m in manager.messages
        ]
        assert loaded.metadata.message_count == 6
        assert [m.role for m in loaded.messages] == [Role.USER, Role.ASSISTANT] * 3

    @pytest.mark.asyncio
    async def test_create_writes_header_immediately(self, manager, store, project_dir):
        session = await manager.create_session(project_dir, tags=["x", "x", "y"])

        metadata = await store.load_metadata_only(project_dir, session.id)

        assert metadata.status == SessionStatus.ACTIVE
        assert metadata.tags == ["x", "y"]
        assert metadata.message_count == 0

    @pytest.mark.asyncio
    async def test_records_git_branch(self, store, project_dir):
        async def on_main(project_path):
            return "main"

        async with SessionLifecycleManager(
            store, settings=SessionSettings(auto_save=False), branch_resolver=on_main
        ) as manager:
            session = await manager.create_session(project_dir)
        assert session.metadata.git_branch == "main"

    @pytest.mark.asyncio
    async def test_branch_lookup_failure_is_ignored(self, store, project_dir):
        async def broken(project_path):
            raise RuntimeError("git exploded")

        async with SessionLifecycleManager(
            store, settings=SessionSettings(auto_save=False), branch_resolver=broken
        ) as manager:
            session = await manager.create_session(project_dir)
        assert session.metadata.git_branch is None

    @pytest.mark.asyncio
    async def test_creating_second_session_saves_first(self, manager, store, project_dir):
        first = await manager.create_session(project_dir)
        manager.add_message(Role.USER, "hello")
        second = await manager.create_session(project_dir)

        loaded = await store.load(project_dir, first.id)

        assert [m.get_text() for m in loaded.messages] == ["hello"]
        assert manager.current_session_id == second.id
        assert manager.messages == []


class TestResume:
    @pytest.mark.asyncio
    async def test_resume_missing_returns_none(self, manager, project_dir):
        assert await manager.resume_session(project_dir, "no-such-session") is None
        assert not manager.is_active

    @pytest.mark.asyncio
    async def test_resume_restores_messages(self, manager, project_dir):
        session = await manager.create_session(project_dir)
        add_pairs(manager, 2)
        await manager.close()

        resumed = await manager.resume_session(project_dir, session.id)

        assert resumed is not None
        assert len(resumed.messages) == 4
        assert all(m.is_from_history for m in resumed.messages)
        assert resumed.metadata.status == SessionStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_resume_current_session_keeps_queued_messages(
        self, manager, store, project_dir
    ):
        session = await manager.create_session(project_dir)
        manager.add_message(Role.USER, "one")
        manager.add_message(Role.ASSISTANT, "two")

        resumed = await manager.resume_session(project_dir, session.id)
        await manager.close()

        assert [m.get_text() for m in resumed.messages] == ["one", "two"]
        loaded = await store.load(project_dir, session.id)
        assert [m.get_text() for m in loaded.messages] == ["one", "two"]

    @pytest.mark.asyncio
    async def test_resume_corrupt_emits_error_and_raises(self, manager, store, project_dir):
        path = store.session_file(project_dir, "broken")
        path.parent.mkdir(parents=True)
        path.write_text("nope\n")
        events = record_events(manager)

        with pytest.raises(CorruptSessionError):
            await manager.resume_session(project_dir, "broken")

        assert [e.type for e in events] == [SessionEventType.ERROR_LOAD]

    @pytest.mark.asyncio
    async def test_resume_or_create_falls_back(self, manager, store, project_dir):
        path = store.session_file(project_dir, "broken")
        path.parent.mkdir(parents=True)
        path.write_text("nope\n")

        session = await manager.resume_or_create(project_dir, "broken")

        assert session.id != "broken"
        assert manager.is_active

    @pytest.mark.asyncio
    async def test_resume_or_create_resumes(self, manager, project_dir):
        original = await manager.create_session(project_dir)
        await manager.close()

        session = await manager.resume_or_create(project_dir, original.id)

        assert session.id == original.id


class TestMessages:
    @pytest.mark.asyncio
    async def test_add_requires_session(self, manager):
        with pytest.raises(NoActiveSessionError):
            manager.add_message(Role.USER, "hello")

    @pytest.mark.asyncio
    async def test_token_total_tracks_messages(self, manager, project_dir):
        await manager.create_session(project_dir)
        totals = []
        for i in range(5):
            manager.add_message(Role.USER, "x" * (i * 10))
            totals.append(manager.metadata.total_tokens)

        assert totals == sorted(totals)
        assert manager.metadata.total_tokens == manager.estimator.estimate_messages(
            manager.messages
        )
        assert manager.metadata.message_count == 5

    @pytest.mark.asyncio
    async def test_appends_then_snapshot_agree(self, manager, store, project_dir):
        session = await manager.create_session(project_dir)
        manager.add_message(Role.USER, "one")
        await manager.save_current_session()
        manager.add_message(Role.ASSISTANT, "two")
        await manager.save_current_session()

        path = store.session_file(project_dir, session.id)
        lines = path.read_text().splitlines()
        assert len(lines) == 3

        manager.set_title("renamed")
        await manager.save_current_session()

        loaded = await store.load(project_dir, session.id)
        assert loaded.metadata.title == "renamed"
        assert [m.get_text() for m in loaded.messages] == ["one", "two"]
        assert json.loads(path.read_text().splitlines()[0])["metadata"][
            "message_count"
        ] == 2

    @pytest.mark.asyncio
    async def test_nothing_to_save(self, manager, project_dir):
        await manager.create_session(project_dir)
        assert not manager.has_unsaved_changes
        assert not await manager.save_current_session()

    @pytest.mark.asyncio
    async def test_update_message(self, manager, store, project_dir):
        session = await manager.create_session(project_dir)
        message = manager.add_message(Role.ASSISTANT, "draft")
        await manager.save_current_session()

        assert manager.update_message(message.id, content="final answer")
        assert not manager.update_message("missing", content="x")
        await manager.save_current_session()

        loaded = await store.load(project_dir, session.id)
        assert [m.get_text() for m in loaded.messages] == ["final answer"]

    @pytest.mark.asyncio
    async def test_tool_call_completion_is_persisted(self, manager, store, project_dir):
        session = await manager.create_session(project_dir)
        manager.add_message(
            Role.ASSISTANT, [ToolUse(id="tu1", name="bash", input={"command": "ls"})]
        )
        manager.register_tool_call("tu1", "bash", {"command": "ls"})
        await manager.save_current_session()

        record = manager.complete_tool_call("tu1", "a.txt", duration=5)
        await manager.save_current_session()

        assert record is not None
        loaded = await store.load(project_dir, session.id)
        calls = loaded.messages[0].tool_calls
        assert [(c.id, c.result, c.duration) for c in calls] == [("tu1", "a.txt", 5)]

    @pytest.mark.asyncio
    async def test_messages_within_budget(self, manager, project_dir):
        await manager.create_session(project_dir)
        manager.add_message(Role.USER, "old", tokens=100)
        recent = manager.add_message(Role.USER, "recent", tokens=10)

        assert [m.id for m in manager.messages_within_budget(50)] == [recent.id]


class TestMetadata:
    @pytest.mark.asyncio
    async def test_tags(self, manager, project_dir):
        await manager.create_session(project_dir)
        assert manager.add_tag("bug")
        assert not manager.add_tag("bug")
        assert manager.toggle_tag("feature")
        assert not manager.toggle_tag("feature")
        assert manager.remove_tag("bug")
        assert not manager.remove_tag("bug")
        assert manager.metadata.tags == []

    @pytest.mark.asyncio
    async def test_generate_title(self, manager, project_dir):
        await manager.create_session(project_dir)
        manager.add_message(Role.ASSISTANT, "greetings")
        manager.add_message(Role.USER, "Fix the\nflaky test " + "x" * 200)

        title = manager.generate_title()

        assert title.startswith("Fix the flaky test")
        assert len(title) <= 80
        assert manager.metadata.title == title

    @pytest.mark.asyncio
    async def test_generate_title_without_user_text(self, manager, project_dir):
        assert manager.generate_title() == "New Session"
        await manager.create_session(project_dir)
        assert manager.generate_title() == "New Session"
        assert manager.metadata.title is None

    @pytest.mark.asyncio
    async def test_context_is_saved(self, manager, store, project_dir):
        session = await manager.create_session(project_dir)
        manager.set_context("Working on the importer")
        await manager.save_current_session()

        loaded = await store.load(project_dir, session.id)
        assert loaded.context == "Working on the importer"

    @pytest.mark.asyncio
    async def test_mutations_require_session(self, manager):
        with pytest.raises(NoActiveSessionError):
            manager.add_tag("x")
        with pytest.raises(NoActiveSessionError):
            manager.set_title("x")
        with pytest.raises(NoActiveSessionError):
            await manager.complete_session()


class TestFork:
    @pytest.mark.asyncio
    async def test_fork_copies_prefix(self, manager, store, project_dir):
        source = await manager.create_session(project_dir, title="Source", tags=["a"])
        add_pairs(manager, 3)
        await manager.save_current_session()

        result = await manager.fork_session(
            project_dir, source.id, ForkOptions(from_message_index=2, tags=["b", "a"])
        )

        assert result.original_session_id == source.id
        assert result.messages_copied == 3
        assert manager.current_session_id == result.forked_session_id
        fork = manager.current_session
        assert fork.metadata.parent_session_id == source.id
        assert fork.metadata.title == "Fork of Source"
        assert fork.metadata.tags == ["a", "b"]
        assert fork.metadata.total_tokens == manager.estimator.estimate_messages(
            fork.messages
        )

    @pytest.mark.asyncio
    async def test_fork_is_isolated_from_source(self, manager, store, project_dir):
        source = await manager.create_session(project_dir)
        add_pairs(manager, 2)
        await manager.close()
        before = store.session_file(project_dir, source.id).read_bytes()

        await manager.fork_session(project_dir, source.id)
        manager.add_message(Role.USER, "only in the fork")
        manager.update_message(manager.messages[0].id, content="rewritten")
        await manager.close()

        assert store.session_file(project_dir, source.id).read_bytes() == before
        reloaded = await store.load(project_dir, source.id)
        assert len(reloaded.messages) == 4

    @pytest.mark.asyncio
    async def test_fork_context_only_when_asked(self, manager, project_dir):
        source = await manager.create_session(project_dir, context="secret plan")
        await manager.save_current_session()

        await manager.fork_session(project_dir, source.id)
        assert manager.current_session.context is None

        await manager.fork_session(project_dir, source.id, ForkOptions(copy_context=True))
        assert manager.current_session.context == "secret plan"

    @pytest.mark.asyncio
    async def test_fork_missing_source(self, manager, project_dir):
        with pytest.raises(ForkSourceNotFoundError, match="Cannot fork"):
            await manager.fork_session(project_dir, "missing")

    @pytest.mark.asyncio
    async def test_fork_rejects_negative_index(self, manager, project_dir):
        source = await manager.create_session(project_dir)
        with pytest.raises(ValueError):
            await manager.fork_session(
                project_dir, source.id, ForkOptions(from_message_index=-1)
            )

    @pytest.mark.asyncio
    async def test_fork_includes_unsaved_source_messages(self, manager, project_dir):
        source = await manager.create_session(project_dir)
        manager.add_message(Role.USER, "not saved yet")

        session = await manager.fork(source.id)

        assert [m.get_text() for m in session.messages] == ["not saved yet"]


class TestCompleteArchiveClose:
    @pytest.mark.asyncio
    async def test_complete(self, manager, store, project_dir):
        session = await manager.create_session(project_dir)
        manager.add_message(Role.USER, "bye")
        await manager.complete_session()

        metadata = await store.load_metadata_only(project_dir, session.id)
        assert metadata.status == SessionStatus.COMPLETED
        assert metadata.message_count == 1
        assert not manager.is_active

    @pytest.mark.asyncio
    async def test_archive_current(self, manager, store, project_dir):
        session = await manager.create_session(project_dir)
        assert await manager.archive_session(project_dir, session.id)

        metadata = await store.load_metadata_only(project_dir, session.id)
        assert metadata.status == SessionStatus.ARCHIVED
        assert not manager.is_active

    @pytest.mark.asyncio
    async def test_archive_stored(self, manager, store, project_dir):
        stored = await manager.create_session(project_dir)
        manager.add_message(Role.USER, "keep me")
        await manager.create_session(project_dir)

        assert await manager.archive_session(project_dir, stored.id)
        assert not await manager.archive_session(project_dir, "missing")

        loaded = await store.load(project_dir, stored.id)
        assert loaded.metadata.status == SessionStatus.ARCHIVED
        assert [m.get_text() for m in loaded.messages] == ["keep me"]

    @pytest.mark.asyncio
    async def test_context_manager_saves_on_error(self, store, project_dir):
        with pytest.raises(RuntimeError):
            async with SessionLifecycleManager(
                store, settings=SessionSettings(auto_save=False), branch_resolver=no_branch
            ) as manager:
                session = await manager.create_session(project_dir)
                manager.add_message(Role.USER, "before the crash")
                raise RuntimeError("boom")

        loaded = await store.load(project_dir, session.id)
        assert [m.get_text() for m in loaded.messages] == ["before the crash"]
        assert not manager.is_active

    @pytest.mark.asyncio
    async def test_close_without_session(self, manager):
        await manager.close()
        assert not manager.is_active

    @pytest.mark.asyncio
    async def test_failed_final_save_still_releases(self, manager, store, project_dir):
        await manager.create_session(project_dir)
        manager.add_message(Role.USER, "hi")

        async def failing_save(session):
            raise SessionStorageError("save", store.projects_path, OSError(28, "full"))

        store.save = failing_save
        with pytest.raises(SessionStorageError):
            await manager.close()
        assert not manager.is_active


class TestAutoSave:
    @pytest.mark.asyncio
    async def test_periodic_save(self, store, project_dir):
        async with SessionLifecycleManager(
            store,
            settings=SessionSettings(auto_save=True, auto_save_interval=0.01),
            branch_resolver=no_branch,
        ) as manager:
            session = await manager.create_session(project_dir)
            manager.add_message(Role.USER, "saved by the timer")
            for _ in range(100):
                await asyncio.sleep(0.01)
                if not manager.has_unsaved_changes:
                    break

            loaded = await store.load(project_dir, session.id)
            assert [m.get_text() for m in loaded.messages] == ["saved by the timer"]

    @pytest.mark.asyncio
    async def test_failures_do_not_stop_the_loop(self, store, project_dir, caplog):
        async with SessionLifecycleManager(
            store,
            settings=SessionSettings(auto_save=True, auto_save_interval=0.01),
            branch_resolver=no_branch,
        ) as manager:
            session = await manager.create_session(project_dir)
            real_append = store.append_many
            calls = 0

            async def flaky_append(*args):
                nonlocal calls
                calls += 1
                if calls == 1:
                    raise SessionStorageError(
                        "append to", store.projects_path, OSError(5, "io")
                    )
                await real_append(*args)

            store.append_many = flaky_append
            manager.add_message(Role.USER, "eventually saved")
            for _ in range(200):
                await asyncio.sleep(0.01)
                if not manager.has_unsaved_changes:
                    break

            assert calls >= 2
            assert "session_autosave_failed" in caplog.text
            loaded = await store.load(project_dir, session.id)
            assert [m.get_text() for m in loaded.messages] == ["eventually saved"]

    @pytest.mark.asyncio
    async def test_close_stops_timer(self, store, project_dir):
        manager = SessionLifecycleManager(
            store,
            settings=SessionSettings(auto_save=True, auto_save_interval=0.01),
            branch_resolver=no_branch,
        )
        await manager.create_session(project_dir)
        task = manager._autosave_task
        await manager.close()

        assert task is not None and task.done()
        assert manager._autosave_task is None


class TestMemoryCap:
    @pytest.fixture
    async def capped_manager(self, store):
        manager = SessionLifecycleManager(
            store,
            settings=SessionSettings(auto_save=False, max_messages_in_memory=3),
            branch_resolver=no_branch,
        )
        yield manager
        await manager.close()

    @pytest.mark.asyncio
    async def test_trimmed_messages_stay_on_disk(self, capped_manager, store, project_dir):
        session = await capped_manager.create_session(project_dir)
        totals = []
        for i in range(5):
            capped_manager.add_message(Role.USER, f"message {i}")
            totals.append(capped_manager.metadata.total_tokens)
        await capped_manager.save_current_session()

        assert len(capped_manager.buffer) == 3
        assert len(capped_manager.messages) == 5
        assert capped_manager.metadata.message_count == 5
        assert totals == sorted(set(totals))

        loaded = await store.load(project_dir, session.id)
        assert [m.get_text() for m in loaded.messages] == [
            f"message {i}" for i in range(5)
        ]

    @pytest.mark.asyncio
    async def test_snapshot_after_trim_keeps_history(
        self, capped_manager, store, project_dir
    ):
        session = await capped_manager.create_session(project_dir)
        for i in range(5):
            capped_manager.add_message(Role.USER, f"message {i}")
        capped_manager.set_title("renamed")
        await capped_manager.close()

        loaded = await store.load(project_dir, session.id)
        assert loaded.metadata.title == "renamed"
        assert len(loaded.messages) == 5

        resumed = await capped_manager.resume_session(project_dir, session.id)
        assert len(resumed.messages) == 5
        assert len(capped_manager.buffer) == 3


class TestHeaderFreshness:
    @pytest.mark.asyncio
    async def test_idle_autosave_refreshes_header(self, store, project_dir):
        async with SessionLifecycleManager(
            store,
            settings=SessionSettings(auto_save=True, auto_save_interval=0.01),
            branch_resolver=no_branch,
        ) as manager:
            session = await manager.create_session(project_dir)
            add_pairs(manager, 1)
            manager.add_message(Role.USER, "third")
            for _ in range(100):
                await asyncio.sleep(0.01)
                if not manager.has_unsaved_changes:
                    break

            metadata = await store.load_metadata_only(project_dir, session.id)
            assert metadata.message_count == 3
            assert metadata.total_tokens == manager.metadata.total_tokens

    @pytest.mark.asyncio
    async def test_switching_sessions_refreshes_header(self, manager, store, project_dir):
        first = await manager.create_session(project_dir)
        add_pairs(manager, 1)
        await manager.save_current_session()
        assert manager.has_unsaved_changes

        await manager.create_session(project_dir)

        metadata = await store.load_metadata_only(project_dir, first.id)
        assert metadata.message_count == 2

    @pytest.mark.asyncio
    async def test_close_waits_for_in_flight_autosave(self, store, project_dir, caplog):
        started = asyncio.Event()
        release = asyncio.Event()

        async def slow_append(*args):
            started.set()
            await release.wait()
            raise SessionStorageError("append to", store.projects_path, OSError(5, "io"))

        manager = SessionLifecycleManager(
            store,
            settings=SessionSettings(auto_save=True, auto_save_interval=0.01),
            branch_resolver=no_branch,
        )
        session = await manager.create_session(project_dir)
        store.append_many = slow_append
        manager.add_message(Role.USER, "written by close")
        await asyncio.wait_for(started.wait(), timeout=2)

        closing = asyncio.create_task(manager.close())
        await asyncio.sleep(0.01)
        release.set()
        await closing

        assert "session_autosave_failed" in caplog.text
        loaded = await store.load(project_dir, session.id)
        assert [m.get_text() for m in loaded.messages] == ["written by close"]


class TestCompaction:
    @pytest.fixture
    def small_manager(self, store):
        compactor = ContextWindowCompactor(
            CompactionSettings(
                max_tokens=1000,
                threshold_ratio=0.5,
                reserved_tokens=100,
                min_messages_to_preserve=2,
            ),
            estimator=store.estimator,
        )
        return SessionLifecycleManager(
            store,
            compactor=compactor,
            settings=SessionSettings(auto_save=False),
            branch_resolver=no_branch,
        )

    @pytest.mark.asyncio
    async def test_compact_replaces_head_with_summary(self, small_manager, store, project_dir):
        session = await small_manager.create_session(project_dir)
        add_pairs(small_manager, 20, size=400)
        last_two = [m.id for m in small_manager.messages[-2:]]
        before_tokens = small_manager.metadata.total_tokens
        assert small_manager.should_compact()

        result = await small_manager.compact_context(smart=False)

        messages = small_manager.messages
        assert messages[0].role == Role.SYSTEM
        assert messages[0].get_text().startswith(COMPACTION_PREFIX)
        assert [m.id for m in messages[-2:]] == last_two
        assert small_manager.metadata.total_tokens < before_tokens
        assert await store.load_summary(project_dir, session.id) == result.summary

        await small_manager.close()
        loaded = await store.load(project_dir, session.id)
        assert [m.id for m in loaded.messages] == [m.id for m in messages]

    @pytest.mark.asyncio
    async def test_compacted_event(self, small_manager, project_dir):
        await small_manager.create_session(project_dir)
        add_pairs(small_manager, 20)
        events = []
        small_manager.on(SessionEventType.CONTEXT_COMPACTED, events.append)

        result = await small_manager.compact_context()

        assert len(events) == 1
        assert events[0].data["messages_summarized"] == len(result.summarized_messages)
        await small_manager.close()

    @pytest.mark.asyncio
    async def test_maybe_compact_below_threshold(self, small_manager, project_dir):
        await small_manager.create_session(project_dir)
        small_manager.add_message(Role.USER, "short")
        assert await small_manager.maybe_compact() is None
        await small_manager.close()

    @pytest.mark.asyncio
    async def test_messages_added_during_summary_are_kept(self, store, project_dir):
        release = asyncio.Event()

        async def slow_summary(messages):
            await release.wait()
            return "slow summary"

        manager = SessionLifecycleManager(
            store,
            compactor=ContextWindowCompactor(
                CompactionSettings(min_messages_to_preserve=2), summarizer=slow_summary
            ),
            settings=SessionSettings(auto_save=False),
            branch_resolver=no_branch,
        )
        await manager.create_session(project_dir)
        add_pairs(manager, 10)

        task = asyncio.create_task(manager.compact_context(smart=False))
        await asyncio.sleep(0)
        late = manager.add_message(Role.USER, "arrived mid-compaction")
        release.set()
        await task

        assert manager.messages[-1].id == late.id
        await manager.close()


class TestEvents:
    @pytest.mark.asyncio
    async def test_lifecycle_events_in_order(self, manager, project_dir):
        events = record_events(manager)
        session = await manager.create_session(project_dir)
        manager.add_message(Role.USER, "hi")
        await manager.save_current_session()
        await manager.complete_session()

        assert [e.type for e in events] == [
            SessionEventType.SESSION_CREATED,
            SessionEventType.MESSAGE_ADDED,
            SessionEventType.SESSION_SAVED,
            SessionEventType.SESSION_SAVED,
            SessionEventType.SESSION_COMPLETED,
        ]
        assert all(e.session_id == session.id for e in events)

    @pytest.mark.asyncio
    async def test_failing_handler_does_not_break_operation(self, store, project_dir):
        bus = SessionEventBus()

        def broken(event):
            raise ValueError("handler bug")

        bus.on(SessionEventType.MESSAGE_ADDED, broken)
        async with SessionLifecycleManager(
            store,
            settings=SessionSettings(auto_save=False),
            events=bus,
            branch_resolver=no_branch,
        ) as manager:
            await manager.create_session(project_dir)
            message = manager.add_message(Role.USER, "still added")
            assert manager.messages[-1].id == message.id

    @pytest.mark.asyncio
    async def test_save_error_event(self, manager, store, project_dir):
        await manager.create_session(project_dir)
        manager.add_message(Role.USER, "hi")
        events = record_events(manager)

        async def failing_append(*args):
            raise SessionStorageError("append to", store.projects_path, OSError(5, "io"))

        store.append_many = failing_append
        with pytest.raises(SessionStorageError):
            await manager.save_current_session()

        assert [e.type for e in events] == [SessionEventType.ERROR_SAVE]
        assert manager.has_unsaved_changes
        del store.append_many


class TestListing:
    @pytest.mark.asyncio
    async def test_recent_and_project_sessions(self, manager, tmp_path):
        one = await manager.create_session(tmp_path / "one")
        two = await manager.create_session(tmp_path / "two")
        await manager.close()

        recent = await manager.get_recent_sessions()
        for_one = await manager.get_project_sessions(tmp_path / "one")

        assert {m.id for m in recent} == {one.id, two.id}
        assert [m.id for m in for_one] == [one.id]
