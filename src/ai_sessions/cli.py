"""Command-line interface for listing, reading and searching sessions."""

import json
import sys
from pathlib import Path
from typing import Any, NoReturn

import click

from ai_sessions.config import Config, load_config
from ai_sessions.errors import SessionsError
from ai_sessions.logging import setup_logging
from ai_sessions.models import Message, SearchResult, Session, SessionPage
from ai_sessions.search import SearchIndex
from ai_sessions.service import DEFAULT_LIST_LIMIT, DEFAULT_PAGE_SIZE, DEFAULT_SEARCH_LIMIT, SessionService
from ai_sessions.sources import build_registry


def build_service(config: Config) -> SessionService:
    """Wire the registry and search index described by a config."""
    index = SearchIndex(
        config.search.cache_path,
        k1=config.search.k1,
        b=config.search.b,
        snippet_length=config.search.snippet_length,
        busy_timeout_ms=config.search.busy_timeout_ms,
        evict_after_missing=config.search.evict_after_missing,
    )
    return SessionService(build_registry(config), index)


def format_timestamp(session: Session) -> str:
    """Format a session timestamp for display."""
    return session.timestamp.astimezone().strftime("%Y-%m-%d %H:%M:%S")


def echo_json(data: Any) -> None:
    click.echo(json.dumps(data, indent=2, ensure_ascii=False))


def fail(error: Exception) -> NoReturn:
    click.echo(f"Error: {error}", err=True)
    sys.exit(1)


def print_session(session: Session, verbose: bool = False) -> None:
    """Print one session listing entry."""
    title = session.summary or session.first_message or "(no messages)"
    click.echo(f"\033[36m[{format_timestamp(session)}]\033[0m \033[1m{title}\033[0m")
    click.echo(f"Source: \033[32m{session.source}\033[0m | User messages: {session.user_message_count}")
    click.echo(f"ID: {session.id}")
    if verbose:
        click.echo(f"Project: {session.project_path or '-'}")
        click.echo(f"Path: {session.file_path}")
    click.echo("-" * 40)


def print_message(message: Message) -> None:
    """Print one message of a session."""
    when = message.timestamp.astimezone().strftime("%Y-%m-%d %H:%M:%S") if message.timestamp else "-"
    click.echo(f"\033[36m[{when}]\033[0m \033[32m{message.role}\033[0m")
    if message.content:
        click.echo(f"\n{message.content}\n")
    if message.has_non_text_parts:
        kinds = ", ".join(f"{kind} x{count}" for kind, count in sorted(message.part_types.items()) if kind != "text")
        click.echo(f"[{kinds}]")
    click.echo("-" * 40)


def print_result(result: SearchResult, verbose: bool = False) -> None:
    """Print a ranked search hit."""
    session = result.session
    title = session.summary or session.first_message or "(no messages)"
    click.echo(f"\033[36m[{format_timestamp(session)}]\033[0m \033[1m{title}\033[0m ({result.score:.2f})")
    click.echo(f"Source: \033[32m{session.source}\033[0m | ID: {session.id}")
    if verbose:
        click.echo(f"Project: {session.project_path or '-'}")
    click.echo(f"\n{result.snippet}\n")
    click.echo("-" * 40)


@click.group()
@click.option(
    "--config",
    "config_path",
    type=click.Path(path_type=Path, dir_okay=False),
    help="Path to config.yaml",
)
@click.option("--verbose", "-v", is_flag=True, help="Log to stderr and show more details")
@click.pass_context
def cli(ctx: click.Context, config_path: Path | None, verbose: bool) -> None:
    """Browse and search AI coding assistant sessions."""
    config = load_config(config_path)
    setup_logging("cli", log_dir=config.logging.dir, level=config.logging.level, console=verbose)
    ctx.obj = {"config": config, "service": build_service(config), "verbose": verbose}


@cli.command()
@click.option("--json", "as_json", is_flag=True, help="Output JSON")
@click.pass_obj
def sources(obj: dict[str, Any], as_json: bool) -> None:
    """List available session sources."""
    available = obj["service"].available_sources()
    if as_json:
        echo_json({"available_sources": available, "count": len(available)})
        return
    for entry in available:
        paging = "pages from end" if entry["paginated"] else "forward only"
        click.echo(f"{entry['source']:<12} {entry['backend']:<6} {paging}")


@cli.command(name="list")
@click.option("--source", default="", help="Filter by source (e.g. opencode, copilot)")
@click.option("--project", default="", help="Filter by project path")
@click.option("--limit", "-n", default=DEFAULT_LIST_LIMIT, help="Number of sessions (0 = all)")
@click.option("--json", "as_json", is_flag=True, help="Output JSON")
@click.pass_obj
def list_command(obj: dict[str, Any], source: str, project: str, limit: int, as_json: bool) -> None:
    """List recent sessions, newest first."""
    try:
        sessions = obj["service"].list_sessions(source, project, limit)
    except SessionsError as e:
        fail(e)

    if as_json:
        echo_json({"sessions": [s.to_dict() for s in sessions], "count": len(sessions)})
        return

    click.echo(f"Found {len(sessions)} sessions:\n")
    for session in sessions:
        print_session(session, obj["verbose"])


@cli.command()
@click.argument("session_id")
@click.option("--source", required=True, help="Source that created the session")
@click.option("--page", default=0, help="Page number (0-indexed)")
@click.option("--page-size", default=DEFAULT_PAGE_SIZE, help="Messages per page")
@click.option(
    "--from-end",
    is_flag=True,
    help=(
        "Count pages from the newest message. Only sources listed as paginated"
        " by `sources` support this; others fail with an error."
    ),
)
@click.option("--json", "as_json", is_flag=True, help="Output JSON")
@click.pass_obj
def get(
    obj: dict[str, Any],
    session_id: str,
    source: str,
    page: int,
    page_size: int,
    from_end: bool,
    as_json: bool,
) -> None:
    """Show one page of a session's messages."""
    try:
        result: SessionPage = obj["service"].get_session_page(source, session_id, page, page_size, from_end)
    except (SessionsError, ValueError) as e:
        fail(e)

    if as_json:
        data = {"session_id": session_id, "source": source, "page": page, "from_end": from_end}
        data.update(result.to_dict())
        echo_json(data)
        return

    position = f"Page {result.resolved_page}"
    if result.total_pages is not None:
        position += f" of {result.total_pages} ({result.total} messages)"
    click.echo(f"{position}\n")
    for message in result.messages:
        print_message(message)
    if result.has_more:
        click.echo("More messages available.")


@cli.command()
@click.argument("query")
@click.option("--source", default="", help="Filter by source")
@click.option("--project", default="", help="Filter by project path")
@click.option("--limit", "-n", default=DEFAULT_SEARCH_LIMIT, help="Number of results")
@click.option("--scan", is_flag=True, help="Plain substring scan without the index")
@click.option("--json", "as_json", is_flag=True, help="Output JSON")
@click.pass_obj
def search(
    obj: dict[str, Any],
    query: str,
    source: str,
    project: str,
    limit: int,
    scan: bool,
    as_json: bool,
) -> None:
    """Search session content."""
    service: SessionService = obj["service"]

    if scan:
        try:
            sessions = service.scan(query, source, project, limit)
        except (SessionsError, ValueError) as e:
            fail(e)
        if as_json:
            echo_json({"query": query, "sessions": [s.to_dict() for s in sessions], "count": len(sessions)})
            return
        click.echo(f"Found {len(sessions)} sessions:\n")
        for session in sessions:
            print_session(session, obj["verbose"])
        return

    try:
        results = service.search(query, source, project, limit)
    except (SessionsError, ValueError) as e:
        fail(e)

    if as_json:
        echo_json({"query": query, "matches": [r.to_dict() for r in results], "count": len(results)})
        return

    click.echo(f"Found {len(results)} sessions:\n")
    for result in results:
        print_result(result, obj["verbose"])


@cli.command()
@click.option("--source", default="", help="Only reindex this source")
@click.option("--project", default="", help="Only reindex sessions for this project")
@click.option("--json", "as_json", is_flag=True, help="Output JSON")
@click.pass_obj
def reindex(obj: dict[str, Any], source: str, project: str, as_json: bool) -> None:
    """Bring the search index up to date."""
    try:
        stats = obj["service"].refresh_index(source, project)
    except SessionsError as e:
        fail(e)

    if as_json:
        echo_json(stats)
        return
    click.echo(f"Checked {stats['checked']} sessions: {stats['indexed']} indexed, {stats['failed']} failed")


def main() -> None:
    cli()


if __name__ == "__main__":
    main()
