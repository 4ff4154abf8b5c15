"""
lorekeep CLI - command-line interface for lorekeep.

Sync conversations, run analysis, review learnings and search.
"""

import logging
import uuid
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

from lorekeep.logging_config import setup_logging

app = typer.Typer(
    name="lorekeep",
    help="lorekeep - Sync AI conversations, extract learnings, search them",
    no_args_is_help=True,
)
learnings_app = typer.Typer(help="Review extracted learnings", no_args_is_help=True)
workflows_app = typer.Typer(help="Review workflow signatures", no_args_is_help=True)
index_app = typer.Typer(help="Maintain the search index", no_args_is_help=True)
queue_app = typer.Typer(help="Inspect and maintain the analysis queue", no_args_is_help=True)
app.add_typer(learnings_app, name="learnings")
app.add_typer(workflows_app, name="workflows")
app.add_typer(index_app, name="index")
app.add_typer(queue_app, name="queue")

console = Console()

STATUS_COLORS = {"pending": "yellow", "approved": "green", "rejected": "red"}


def _init_logging(context: str = "cli") -> None:
    # Fall back to console logging if the log directory is not writable
    try:
        setup_logging(context=context)
    except PermissionError:
        logging.basicConfig(level=logging.INFO)


def _components(database_url: Optional[str] = None, allow_cloud: Optional[bool] = None):
    from sqlalchemy.exc import SQLAlchemyError

    from lorekeep.bootstrap import build_components
    from lorekeep.config import settings

    try:
        return build_components(settings, database_url=database_url, allow_cloud=allow_cloud)
    except ValueError as e:
        console.print(f"[bold red]Error:[/bold red] {e}")
        raise typer.Exit(1)
    except (SQLAlchemyError, OSError) as e:
        console.print(f"[bold red]Cannot open database:[/bold red] {e}")
        raise typer.Exit(1)


def _parse_id(value: str) -> uuid.UUID:
    try:
        return uuid.UUID(value)
    except ValueError:
        console.print(f"[bold red]Error:[/bold red] Not a valid id: {value}")
        raise typer.Exit(1)


@app.command()
def sync(
    provider: Optional[str] = typer.Option(None, help="Sync only this provider"),
    force: bool = typer.Option(
        False, "--force", help="Forget stored cursors and refetch everything"
    ),
) -> None:
    """
    Sync conversations from the enabled providers.

    Prints a per-provider summary. Exits 1 if any unit failed or the
    store became unavailable.
    """
    from lorekeep.exceptions import StoreUnavailableError
    from lorekeep.sync.orchestrator import STATUS_ABORTED, SyncResult

    _init_logging()
    components = _components()

    def show_progress(progress) -> None:
        if progress.done:
            console.print(
                f"  [cyan]{progress.provider}[/cyan] {progress.processed}/{progress.total} done"
            )
        else:
            console.print(
                f"  [dim]{progress.provider} {progress.processed}/{progress.total} "
                f"({progress.percent}%)[/dim]"
            )

    components.progress.subscribe(show_progress)

    try:
        if provider:
            stats = components.orchestrator.sync_one(provider, force=force)
            result = SyncResult(providers={stats.provider: stats})
        else:
            result = components.orchestrator.sync_all(force=force)
    except ValueError as e:
        console.print(f"[bold red]Error:[/bold red] {e}")
        raise typer.Exit(1)
    except StoreUnavailableError as e:
        console.print(f"[bold red]Store unavailable:[/bold red] {e}")
        raise typer.Exit(1)
    finally:
        components.close()

    table = Table(title="Sync summary")
    table.add_column("Provider")
    table.add_column("Status")
    table.add_column("Created", justify="right")
    table.add_column("Updated", justify="right")
    table.add_column("Unchanged", justify="right")
    table.add_column("Skipped", justify="right")
    table.add_column("Failed", justify="right")
    for name, stats in result.providers.items():
        status = stats.status
        if stats.session_expired:
            status = "session expired"
        color = "red" if stats.status == STATUS_ABORTED else "green"
        table.add_row(
            name,
            f"[{color}]{status}[/{color}]",
            str(stats.created),
            str(stats.updated),
            str(stats.unchanged),
            str(stats.skipped),
            str(stats.failed),
        )
    console.print(table)

    for stats in result.providers.values():
        if stats.session_expired:
            console.print(
                f"[yellow]⚠ {stats.provider}: session expired, "
                f"update the session token and sync again[/yellow]"
            )
        for key, message in stats.errors:
            console.print(f"  [red]✗[/red] {stats.provider}:{key}: {message}")

    if not result.ok:
        raise typer.Exit(1)


@app.command()
def scan(
    db: Optional[str] = typer.Option(None, "--db", help="Database URL (defaults to DATABASE_URL)"),
    types: Optional[str] = typer.Option(
        None, "--types", help="Comma-separated analysis types (learning,workflow,dedupe)"
    ),
    batch: Optional[int] = typer.Option(None, "--batch", min=1, help="Items claimed per batch"),
    reset: bool = typer.Option(
        False, "--reset", help="Delete queue, learning and workflow state, then reprocess everything"
    ),
    allow_cloud: bool = typer.Option(
        False, "--allow-cloud", help="Allow cloud-hosted analyzers for this run"
    ),
) -> None:
    """
    Run the analysis queue until it is drained.

    Prints the number of learnings and workflow signatures produced.
    """
    from lorekeep.analysis.dispatcher import parse_analysis_types
    from lorekeep.exceptions import StoreUnavailableError

    _init_logging()

    try:
        analysis_types = (
            parse_analysis_types(t for t in types.split(",") if t.strip()) if types else None
        )
    except ValueError as e:
        console.print(f"[bold red]Error:[/bold red] {e}")
        raise typer.Exit(1)

    try:
        components = _components(database_url=db, allow_cloud=True if allow_cloud else None)
        dispatcher = components.dispatcher
        if reset:
            console.print("[yellow]Resetting analysis state...[/yellow]")
            stats = dispatcher.full_rescan(
                reset=True, analysis_types=analysis_types, batch_size=batch
            )
        else:
            stats = dispatcher.scan(batch_size=batch, analysis_types=analysis_types)
    except StoreUnavailableError as e:
        console.print(f"[bold red]Store unavailable:[/bold red] {e}")
        raise typer.Exit(1)

    if stats.failed:
        console.print(
            f"[yellow]⚠ {stats.failed} item(s) failed; "
            f"run 'lorekeep queue retry-failed' to try again[/yellow]"
        )
    console.print(f"{stats.learnings_created} learnings, {stats.workflows_created} workflows")


@app.command()
def search(
    query: str = typer.Argument(..., help="Search text"),
    limit: int = typer.Option(10, "--limit", min=1, help="Maximum results"),
    no_semantic: bool = typer.Option(
        False, "--no-semantic", help="Rank by keyword matches only"
    ),
) -> None:
    """Search synced conversations."""
    _init_logging()
    components = _components()
    results = components.search.search(query, limit=limit, semantic=not no_semantic)

    if not results:
        console.print("[yellow]No matching conversations[/yellow]")
        return

    table = Table(title=f"Results for {query!r}")
    table.add_column("Score", justify="right")
    table.add_column("Match")
    table.add_column("Provider")
    table.add_column("Title")
    table.add_column("Id", style="dim")
    for result in results:
        table.add_row(
            f"{result.score:.3f}",
            result.match_type,
            result.provider,
            result.title or "(untitled)",
            str(result.conversation_id),
        )
    console.print(table)


# Learnings


def _learning_table(rows, title: str) -> Table:
    table = Table(title=title)
    table.add_column("Id", style="dim")
    table.add_column("Status")
    table.add_column("Type")
    table.add_column("Scope")
    table.add_column("Conf.", justify="right")
    table.add_column("Rule")
    for learning in rows:
        color = STATUS_COLORS.get(learning.status, "white")
        scope = learning.scope
        if learning.project_key:
            scope = f"{scope}:{learning.project_key}"
        rule = learning.rule_text
        if learning.duplicate_of_id:
            rule = f"{rule} [dim](duplicate of {learning.duplicate_of_id})[/dim]"
        table.add_row(
            str(learning.id),
            f"[{color}]{learning.status}[/{color}]",
            learning.type,
            scope,
            f"{learning.confidence:.2f}",
            rule,
        )
    return table


@learnings_app.command("list")
def learnings_list(
    status: Optional[str] = typer.Option(None, help="pending, approved or rejected"),
    scope: Optional[str] = typer.Option(None, help="global or project"),
    project: Optional[str] = typer.Option(None, help="Project path"),
    limit: Optional[int] = typer.Option(None, min=1, help="Maximum rows"),
) -> None:
    """List learnings."""
    _init_logging()
    components = _components()
    try:
        rows = components.lifecycle.list_learnings(
            status=status, scope=scope, project_key=project, limit=limit
        )
    except ValueError as e:
        console.print(f"[bold red]Error:[/bold red] {e}")
        raise typer.Exit(1)

    if not rows:
        console.print("[yellow]No learnings[/yellow]")
        return
    console.print(_learning_table(rows, f"Learnings ({len(rows)})"))


def _review(action, entity: str, id: str) -> None:
    from lorekeep.exceptions import InvalidTransitionError, NotFoundError

    try:
        row = action(_parse_id(id))
    except (NotFoundError, InvalidTransitionError) as e:
        console.print(f"[bold red]Error:[/bold red] {e}")
        raise typer.Exit(1)
    color = STATUS_COLORS.get(row.status, "white")
    console.print(f"[{color}]✓ {entity.capitalize()} {row.id} {row.status}[/{color}]")


@learnings_app.command("approve")
def learnings_approve(id: str = typer.Argument(..., help="Learning id")) -> None:
    """Approve a pending learning."""
    _init_logging()
    _review(_components().lifecycle.approve, "learning", id)


@learnings_app.command("reject")
def learnings_reject(id: str = typer.Argument(..., help="Learning id")) -> None:
    """Reject a pending learning."""
    _init_logging()
    _review(_components().lifecycle.reject, "learning", id)


# Workflows


@workflows_app.command("list")
def workflows_list(
    status: Optional[str] = typer.Option(None, help="pending, approved or rejected"),
    limit: Optional[int] = typer.Option(None, min=1, help="Maximum rows"),
) -> None:
    """List workflow signatures, most frequent first."""
    _init_logging()
    components = _components()
    try:
        rows = components.lifecycle.list_workflows(status=status, limit=limit)
    except ValueError as e:
        console.print(f"[bold red]Error:[/bold red] {e}")
        raise typer.Exit(1)

    if not rows:
        console.print("[yellow]No workflow signatures[/yellow]")
        return

    table = Table(title=f"Workflow signatures ({len(rows)})")
    table.add_column("Id", style="dim")
    table.add_column("Status")
    table.add_column("Seen", justify="right")
    table.add_column("Signature")
    for signature in rows:
        color = STATUS_COLORS.get(signature.status, "white")
        table.add_row(
            str(signature.id),
            f"[{color}]{signature.status}[/{color}]",
            str(signature.occurrence_count),
            signature.signature,
        )
    console.print(table)


@workflows_app.command("approve")
def workflows_approve(id: str = typer.Argument(..., help="Workflow signature id")) -> None:
    """Approve a pending workflow signature."""
    _init_logging()
    _review(_components().lifecycle.approve_workflow, "workflow", id)


@workflows_app.command("reject")
def workflows_reject(id: str = typer.Argument(..., help="Workflow signature id")) -> None:
    """Reject a pending workflow signature."""
    _init_logging()
    _review(_components().lifecycle.reject_workflow, "workflow", id)


# Search index


@index_app.command("rebuild")
def index_rebuild() -> None:
    """Recreate the keyword index from stored conversations."""
    from lorekeep.db.connection import db_session

    _init_logging()
    components = _components()
    with db_session() as session:
        count = components.indexer.rebuild(session)
    console.print(f"[green]✓ Indexed {count} conversation(s)[/green]")


@index_app.command("embed")
def index_embed(
    force: bool = typer.Option(False, "--force", help="Re-embed conversations that already have a vector"),
    allow_cloud: bool = typer.Option(
        False, "--allow-cloud", help="Allow a cloud embedding provider for this run"
    ),
) -> None:
    """Compute embeddings for semantic search."""
    _init_logging()
    components = _components(allow_cloud=True if allow_cloud else None)
    if components.search.embedding_provider is None:
        console.print(
            "[bold red]Error:[/bold red] No embedding provider available "
            "(set EMBEDDING_PROVIDER, and ALLOW_CLOUD_ANALYSIS for openai)"
        )
        raise typer.Exit(1)
    count = components.search.embed_conversations(force=force)
    console.print(f"[green]✓ Embedded {count} conversation(s)[/green]")


# Analysis queue


@queue_app.command("status")
def queue_status() -> None:
    """Show queue and review counts."""
    _init_logging()
    components = _components()
    stats = components.dispatcher.queue_stats()
    counts = components.lifecycle.counts()

    table = Table(title="Analysis queue")
    table.add_column("Status")
    table.add_column("Items", justify="right")
    table.add_row("pending", str(stats.pending))
    table.add_row("in progress", str(stats.in_progress))
    table.add_row("completed", str(stats.completed))
    table.add_row("[red]failed[/red]", str(stats.failed))
    console.print(table)

    review = Table(title="Review")
    review.add_column("Kind")
    for status in STATUS_COLORS:
        review.add_column(status, justify="right")
    for kind, by_status in counts.items():
        review.add_row(kind, *(str(by_status.get(status, 0)) for status in STATUS_COLORS))
    console.print(review)


@queue_app.command("retry-failed")
def queue_retry_failed(
    allow_cloud: bool = typer.Option(
        False, "--allow-cloud", help="Allow cloud-hosted analyzers for this run"
    ),
) -> None:
    """Give failed items a fresh attempt budget and scan them."""
    from lorekeep.exceptions import StoreUnavailableError

    _init_logging()
    components = _components(allow_cloud=True if allow_cloud else None)
    try:
        stats = components.dispatcher.retry_failed()
    except StoreUnavailableError as e:
        console.print(f"[bold red]Store unavailable:[/bold red] {e}")
        raise typer.Exit(1)
    console.print(
        f"{stats.completed} completed, {stats.failed} failed; "
        f"{stats.learnings_created} learnings, {stats.workflows_created} workflows"
    )


@queue_app.command("purge")
def queue_purge(
    days: int = typer.Option(7, min=0, help="Delete completed items older than this"),
) -> None:
    """Reap stale claims and delete old completed items."""
    from lorekeep.analysis.job_queue import AnalysisJobQueue
    from lorekeep.db.connection import db_session

    _init_logging()
    components = _components()
    with db_session() as session:
        queue = AnalysisJobQueue(session)
        reaped = queue.cleanup_stale(components.settings.analysis_stale_timeout_seconds)
        purged = queue.purge_completed(days)
    console.print(f"[green]✓ Reset {reaped} stale claim(s), purged {purged} item(s)[/green]")


@app.command()
def watch(
    allow_cloud: bool = typer.Option(
        False, "--allow-cloud", help="Allow cloud-hosted analyzers while watching"
    ),
) -> None:
    """
    Watch CLI log directories and analyze changes until interrupted.

    Changed session logs are synced as they are written; the analysis
    worker drains the queue in the background.
    """
    _init_logging(context="watch")
    components = _components(allow_cloud=True if allow_cloud else None)
    daemon = components.watch_daemon()

    if not daemon.watched_roots:
        console.print("[bold red]Error:[/bold red] No existing CLI log directories to watch")
        raise typer.Exit(1)

    console.print("[bold green]Watching:[/bold green]")
    for root in daemon.watched_roots:
        console.print(f"  {root}")
    console.print("Press Ctrl+C to stop")

    try:
        daemon.start(blocking=True)
    finally:
        components.close()

    stats = daemon.get_stats_snapshot()
    console.print()
    console.print("[bold]Summary:[/bold]")
    for key, value in stats.items():
        console.print(f"  {key}: {value}")


if __name__ == "__main__":
    app()
