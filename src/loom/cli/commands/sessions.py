"""Session management commands."""

from __future__ import annotations

import asyncio
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING, Annotated, Any

import typer
from rich.markup import escape

from loom.cli.console import (
    config_from_context,
    confirm_or_cancel,
    console,
    create_table,
    dim,
    error,
    format_time,
    info,
    success,
    truncate,
    warning,
)

if TYPE_CHECKING:
    from loom.config import LoomConfig
    from loom.core.types import ConversationMessage
    from loom.sessions import ConversationStore, SessionMetadata

ACTIONS = ("list", "show", "delete", "archive", "fork", "compact", "summary")
SORT_FIELDS = ("created_at", "updated_at", "message_count", "title")

_ROLE_STYLES = {
    "user": "cyan",
    "assistant": "green",
    "system": "magenta",
}


def register(app: typer.Typer) -> None:
    """Register the sessions command."""

    @app.command()
    def sessions(
        ctx: typer.Context,
        action: Annotated[
            str,
            typer.Argument(help=f"Action: {', '.join(ACTIONS)}"),
        ] = "list",
        session_id: Annotated[
            str | None,
            typer.Argument(help="Session ID (required for everything but list)"),
        ] = None,
        project: Annotated[
            Path | None,
            typer.Option(
                "--project",
                "-p",
                help="Project directory the session belongs to",
            ),
        ] = None,
        # Options for list
        status: Annotated[
            list[str] | None,
            typer.Option(
                "--status",
                help="Only sessions with this status (repeatable)",
            ),
        ] = None,
        tag: Annotated[
            list[str] | None,
            typer.Option(
                "--tag",
                "-t",
                help="Only sessions carrying any of these tags (repeatable)",
            ),
        ] = None,
        search: Annotated[
            str | None,
            typer.Option(
                "--search",
                "-s",
                help="Case-insensitive match on title and tags",
            ),
        ] = None,
        since: Annotated[
            datetime | None,
            typer.Option(
                "--since",
                help="Only sessions updated at or after this time",
            ),
        ] = None,
        until: Annotated[
            datetime | None,
            typer.Option(
                "--until",
                help="Only sessions updated at or before this time",
            ),
        ] = None,
        sort: Annotated[
            str,
            typer.Option(
                "--sort",
                help=f"Sort field: {', '.join(SORT_FIELDS)}",
            ),
        ] = "updated_at",
        ascending: Annotated[
            bool,
            typer.Option(
                "--asc",
                help="Sort ascending instead of descending",
            ),
        ] = False,
        page: Annotated[
            int,
            typer.Option(
                "--page",
                help="Page number, starting at 0",
            ),
        ] = 0,
        limit: Annotated[
            int,
            typer.Option(
                "--limit",
                "-n",
                "--page-size",
                help="Sessions per page, or messages shown by 'show'",
            ),
        ] = 20,
        # Options for fork
        title: Annotated[
            str | None,
            typer.Option(
                "--title",
                help="Title for the forked session",
            ),
        ] = None,
        at: Annotated[
            int | None,
            typer.Option(
                "--at",
                help="Fork through this message index (inclusive)",
            ),
        ] = None,
        copy_context: Annotated[
            bool,
            typer.Option(
                "--copy-context",
                help="Carry the session context over to the fork",
            ),
        ] = False,
        # Options for compact
        simple: Annotated[
            bool,
            typer.Option(
                "--simple",
                help="Keep only the most recent messages instead of important ones",
            ),
        ] = False,
        # Output
        verbose: Annotated[
            bool,
            typer.Option(
                "--verbose",
                "-v",
                help="Show full message content without truncation",
            ),
        ] = False,
        json_output: Annotated[
            bool,
            typer.Option(
                "--json",
                help="Machine-readable JSON output",
            ),
        ] = False,
        force: Annotated[
            bool,
            typer.Option(
                "--force",
                "-f",
                help="Force action without confirmation",
            ),
        ] = False,
    ) -> None:
        """Browse and manage stored sessions.

        Examples:
            loom sessions                            # Most recent sessions
            loom sessions list -p . --tag bugfix     # Filter one project
            loom sessions show <id>                  # Header and messages
            loom sessions fork <id> --at 5           # Branch off message 5
            loom sessions compact <id>               # Summarize old messages
            loom sessions delete <id> --force
        """
        if action not in ACTIONS:
            error(f"Unknown action: {action}")
            console.print(f"Valid actions: {', '.join(ACTIONS)}")
            raise typer.Exit(1)

        config = config_from_context(ctx)

        from loom.sessions import SessionError

        try:
            if action == "list":
                if sort not in SORT_FIELDS:
                    error(f"Unknown sort field: {sort}")
                    raise typer.Exit(1)
                asyncio.run(
                    _sessions_list(
                        config,
                        project=project,
                        statuses=status or [],
                        tags=tag or [],
                        search=search,
                        since=since,
                        until=until,
                        sort=sort,
                        ascending=ascending,
                        page=page,
                        page_size=limit,
                        json_output=json_output,
                    )
                )
                return

            if session_id is None:
                error(f"Session ID required: loom sessions {action} <session-id>")
                raise typer.Exit(1)

            if action == "show":
                asyncio.run(
                    _sessions_show(
                        config, session_id, project, limit, verbose, json_output
                    )
                )
            elif action == "delete":
                asyncio.run(_sessions_delete(config, session_id, project, force))
            elif action == "archive":
                asyncio.run(_sessions_archive(config, session_id, project))
            elif action == "fork":
                asyncio.run(
                    _sessions_fork(config, session_id, project, title, tag, at, copy_context)
                )
            elif action == "compact":
                asyncio.run(_sessions_compact(config, session_id, project, simple))
            elif action == "summary":
                asyncio.run(_sessions_summary(config, session_id, project))

        except SessionError as e:
            error(str(e))
            raise typer.Exit(1) from None
        except ValueError as e:
            error(str(e))
            raise typer.Exit(1) from None
        except KeyboardInterrupt:
            console.print("\n[dim]Cancelled[/dim]")


async def _find_session(
    store: ConversationStore, session_id: str, project: Path | None
) -> SessionMetadata:
    """Resolve a session header by id, within one project or across all."""
    if project is not None:
        metadata = await store.load_metadata_only(project, session_id)
    else:
        metadata = await store.locate_session(session_id)
    if metadata is None:
        error(f"Session not found: {session_id}")
        raise typer.Exit(1)
    return metadata


async def _sessions_list(
    config: LoomConfig,
    *,
    project: Path | None,
    statuses: list[str],
    tags: list[str],
    search: str | None,
    since: datetime | None,
    until: datetime | None,
    sort: Any,
    ascending: bool,
    page: int,
    page_size: int,
    json_output: bool,
) -> None:
    from loom.runtime import create_store
    from loom.sessions import SessionFilter, SessionSort, SessionStatus

    try:
        status_filter = [SessionStatus(s) for s in statuses] or None
    except ValueError:
        error(f"Unknown status in {statuses}")
        console.print(f"Valid statuses: {', '.join(s.value for s in SessionStatus)}")
        raise typer.Exit(1) from None

    store = create_store(config)
    result = await store.list_sessions(
        SessionFilter(
            project_path=str(project) if project else None,
            status=status_filter,
            tags=tags,
            date_from=since,
            date_to=until,
            search=search,
        ),
        SessionSort(sort, "asc" if ascending else "desc"),
        page=page,
        page_size=page_size,
    )

    if json_output:
        console.print_json(
            data={
                "sessions": [m.to_dict() for m in result.sessions],
                "total": result.total,
                "page": result.page,
                "page_size": result.page_size,
                "has_more": result.has_more,
            }
        )
        return

    if not result.sessions:
        warning("No sessions found")
        return

    table = create_table(
        "Sessions",
        [
            ("ID", {"style": "dim", "no_wrap": True}),
            ("Title", "bold"),
            ("Project", "cyan"),
            ("Branch", "dim"),
            ("Status", "magenta"),
            ("Messages", {"style": "green", "justify": "right"}),
            ("Updated", "dim"),
        ],
    )
    for metadata in result.sessions:
        table.add_row(
            metadata.id,
            escape(truncate(metadata.title or "-", 40)),
            escape(Path(metadata.project_path).name or metadata.project_path),
            escape(metadata.git_branch or "-"),
            metadata.status.value,
            str(metadata.message_count),
            format_time(metadata.updated_at),
        )

    console.print(table)
    shown_from = result.page * result.page_size + 1
    shown_to = shown_from + len(result.sessions) - 1
    dim(f"\nShowing {shown_from}-{shown_to} of {result.total} sessions")
    if result.has_more:
        dim(f"Next page: --page {result.page + 1}")


def _message_preview(message: ConversationMessage, verbose: bool) -> str:
    text = message.get_text()
    parts = [text if verbose else truncate(text, 200)] if text else []

    tool_uses = message.get_tool_uses()
    if tool_uses:
        parts.append(f"[tools: {', '.join(t.name for t in tool_uses)}]")
    tool_results = message.get_tool_results()
    if tool_results:
        failed = sum(1 for r in tool_results if r.is_error)
        label = f"[{len(tool_results)} tool results"
        parts.append(f"{label}, {failed} failed]" if failed else f"{label}]")
    return escape(" ".join(parts)) or "(empty)"


async def _sessions_show(
    config: LoomConfig,
    session_id: str,
    project: Path | None,
    limit: int,
    verbose: bool,
    json_output: bool,
) -> None:
    from loom.runtime import create_store

    store = create_store(config)
    metadata = await _find_session(store, session_id, project)
    session = await store.load(metadata.project_path, session_id)
    if session is None:
        error(f"Session not found: {session_id}")
        raise typer.Exit(1)

    if json_output:
        console.print_json(
            data={
                **session.header_dict(),
                "messages": [m.to_dict() for m in session.messages],
            }
        )
        return

    meta = session.metadata
    console.print(f"[bold]{escape(meta.title or 'Untitled session')}[/bold]")
    console.print(f"[dim]ID:[/dim]        {meta.id}")
    console.print(f"[dim]Project:[/dim]   {escape(meta.project_path)}")
    console.print(f"[dim]Branch:[/dim]    {escape(meta.git_branch or '-')}")
    console.print(f"[dim]Model:[/dim]     {escape(meta.model)}")
    console.print(f"[dim]Status:[/dim]    {meta.status.value}")
    console.print(f"[dim]Created:[/dim]   {format_time(meta.created_at)}")
    console.print(f"[dim]Updated:[/dim]   {format_time(meta.updated_at)}")
    console.print(f"[dim]Messages:[/dim]  {meta.message_count} (~{meta.total_tokens} tokens)")
    if meta.tags:
        console.print(f"[dim]Tags:[/dim]      {escape(', '.join(meta.tags))}")
    if meta.parent_session_id:
        console.print(f"[dim]Forked from:[/dim] {escape(meta.parent_session_id)}")
    if session.context:
        console.print(f"[dim]Context:[/dim]   {escape(truncate(session.context, 200))}")
    console.print()

    messages = session.messages[-limit:] if limit > 0 else session.messages
    skipped = len(session.messages) - len(messages)
    if skipped:
        dim(f"... {skipped} earlier messages not shown (use --limit)\n")

    for message in messages:
        role = message.role.value
        style = _ROLE_STYLES.get(role, "white")
        console.print(
            f"[dim]{format_time(message.timestamp)}[/dim] "
            f"[{style}]{role}[/{style}]: {_message_preview(message, verbose)}",
            markup=True,
            highlight=False,
        )


async def _sessions_delete(
    config: LoomConfig, session_id: str, project: Path | None, force: bool
) -> None:
    from loom.runtime import create_store

    store = create_store(config)
    metadata = await _find_session(store, session_id, project)
    label = metadata.title or session_id
    if not confirm_or_cancel(f"Delete session '{label}'?", force):
        return

    if await store.delete(metadata.project_path, session_id):
        success(f"Deleted session {session_id}")
    else:
        warning(f"Session {session_id} was already gone")


async def _sessions_archive(
    config: LoomConfig, session_id: str, project: Path | None
) -> None:
    from loom.runtime import create_session_manager, create_store

    metadata = await _find_session(create_store(config), session_id, project)
    async with create_session_manager(config) as manager:
        archived = await manager.archive_session(metadata.project_path, session_id)
    if archived:
        success(f"Archived session {session_id}")
    else:
        error(f"Session not found: {session_id}")
        raise typer.Exit(1)


async def _sessions_fork(
    config: LoomConfig,
    session_id: str,
    project: Path | None,
    title: str | None,
    tags: list[str] | None,
    at: int | None,
    copy_context: bool,
) -> None:
    from loom.runtime import create_session_manager, create_store
    from loom.sessions import ForkOptions

    metadata = await _find_session(create_store(config), session_id, project)
    options = ForkOptions(
        title=title,
        from_message_index=at,
        tags=list(tags or []),
        copy_context=copy_context,
    )
    async with create_session_manager(config) as manager:
        result = await manager.fork_session(metadata.project_path, session_id, options)

    success(
        f"Forked {result.original_session_id} into {result.forked_session_id} "
        f"({result.messages_copied} messages)"
    )


async def _sessions_compact(
    config: LoomConfig, session_id: str, project: Path | None, simple: bool
) -> None:
    from loom.core.types import now_utc
    from loom.runtime import create_compactor, create_estimator, create_store

    estimator = create_estimator(config)
    store = create_store(config, estimator)
    metadata = await _find_session(store, session_id, project)
    session = await store.load(metadata.project_path, session_id)
    if session is None:
        error(f"Session not found: {session_id}")
        raise typer.Exit(1)

    compactor = create_compactor(config, estimator)
    if simple:
        result = await compactor.compact(session.messages)
    else:
        result = await compactor.smart_compact(session.messages)

    if result.is_noop:
        info("Nothing to compact")
        return

    session.messages = [
        compactor.create_summary_message(result.summary),
        *result.preserved_messages,
    ]
    session.metadata.message_count = len(session.messages)
    session.metadata.total_tokens = estimator.estimate_messages(session.messages)
    session.metadata.updated_at = now_utc()
    await store.save(session)
    await store.save_summary(session.project_path, session_id, result.summary)

    success(
        f"Compacted {len(result.summarized_messages)} messages "
        f"({result.tokens_saved} tokens saved)"
    )
    dim(f"{session.metadata.message_count} messages remain")


async def _sessions_summary(
    config: LoomConfig, session_id: str, project: Path | None
) -> None:
    from rich.markdown import Markdown

    from loom.runtime import create_store

    store = create_store(config)
    metadata = await _find_session(store, session_id, project)
    summary = await store.load_summary(metadata.project_path, session_id)
    if summary is None:
        warning(f"No summary cached for session {session_id}")
        dim(f"Run 'loom sessions compact {session_id}' to create one")
        return
    console.print(Markdown(summary))
