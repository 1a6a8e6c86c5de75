"""
Typer CLI for the medrev revision engine.

Commands:
    medrev db init                          - Initialize database tables
    medrev db seed-taxonomy                 - Seed the cluster taxonomy
    medrev review due USER                  - Show items due for review
    medrev note show USER TYPE ID           - Show (or regenerate) a revision note
    medrev note mark-stale USER             - Flag notes past their maximum age
    medrev stats show USER                  - Show performance breakdowns

Usage:
    medrev --help
    medrev note show user-1 category "Cardiology|Core|any" --refresh
    medrev stats show user-1 --mode ukmla
"""

from __future__ import annotations

from functools import lru_cache

import typer
from loguru import logger
from rich import print as rprint
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from medrev.config import configure_logging, get_settings
from medrev.engine import LearningEngine
from medrev.errors import MedrevError
from medrev.learning.schemas import AnalyticsMode, CacheStatus

app = typer.Typer(help="medrev: adaptive review scheduling and personalised revision notes")
console = Console()

CACHE_STYLES = {
    CacheStatus.HIT: "green",
    CacheStatus.STALE_HIT: "yellow",
    CacheStatus.MISS: "cyan",
}


@app.callback()
def main_callback(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
) -> None:
    settings = get_settings()
    if verbose:
        settings = settings.model_copy(update={"log_level": "DEBUG"})
    configure_logging(settings)


@lru_cache(maxsize=1)
def get_engine() -> LearningEngine:
    return LearningEngine()


def _fail(error: MedrevError) -> None:
    rprint(f"[red]✗[/red] {error}")
    raise typer.Exit(code=1)


# ========================================
# Database Commands
# ========================================

db_app = typer.Typer(help="Database management (init, seed)")
app.add_typer(db_app, name="db")


@db_app.command("init")
def db_init() -> None:
    """
    Initialize database tables from SQLAlchemy models.

    Safe to run multiple times (idempotent).
    """
    from medrev.db.database import init_db

    logger.info("Initializing database tables...")
    init_db()
    rprint("[green]✓[/green] Database initialized!")


@db_app.command("seed-taxonomy")
def db_seed_taxonomy() -> None:
    """Insert or refresh the cluster taxonomy for every seeded domain."""
    from medrev.db.database import session_scope
    from medrev.db.seed import seed_taxonomy

    with session_scope() as session:
        count = seed_taxonomy(session)
    rprint(f"[green]✓[/green] Seeded {count} taxonomy entries")


# ========================================
# Review Commands
# ========================================

review_app = typer.Typer(help="Spaced repetition queue")
app.add_typer(review_app, name="review")


@review_app.command("due")
def review_due(
    user_id: str = typer.Argument(..., help="Learner id"),
    limit: int = typer.Option(50, "--limit", "-n", help="Maximum items to list"),
) -> None:
    """Show cases and questions due for review, most overdue first."""
    engine = get_engine()
    try:
        items = engine.get_due_items(user_id, limit)
        total = engine.get_due_count(user_id)
    except MedrevError as e:
        _fail(e)

    if not items:
        rprint("[green]Nothing due.[/green]")
        return

    table = Table(title=f"Due for review ({total})")
    table.add_column("Kind", style="cyan")
    table.add_column("Item", justify="right")
    table.add_column("Due", style="yellow")
    table.add_column("Interval", justify="right")
    table.add_column("Reps", justify="right")
    table.add_column("Ease", justify="right")

    for item in items:
        table.add_row(
            item.item_kind,
            str(item.item_id),
            item.next_review_date.strftime("%Y-%m-%d %H:%M"),
            f"{item.interval}d",
            str(item.repetitions),
            f"{item.ease_factor / 1000:.2f}",
        )

    console.print(table)


# ========================================
# Revision Note Commands
# ========================================

note_app = typer.Typer(help="Personalised revision notes")
app.add_typer(note_app, name="note")


@note_app.command("show")
def note_show(
    user_id: str = typer.Argument(..., help="Learner id"),
    context_type: str = typer.Argument(..., help="case, ukmla_question or category"),
    context_id: str = typer.Argument(..., help="Item id, or 'domain|difficulty|cluster'"),
    refresh: bool = typer.Option(False, "--refresh", "-r", help="Regenerate before showing"),
) -> None:
    """Show the revision note for a case, question or category."""
    engine = get_engine()
    try:
        result = engine.get_revision_note(user_id, context_type, context_id, force_refresh=refresh)
    except MedrevError as e:
        _fail(e)

    note = result.note
    style = CACHE_STYLES[result.cache_status]
    body = [note.summary, ""]
    for heading, lines in (
        ("Key concepts", note.key_concepts),
        ("Common mistakes", note.common_mistakes),
        ("Rapid checklist", note.rapid_checklist),
        ("Practice plan", note.practice_plan),
    ):
        body.append(f"[bold]{heading}[/bold]")
        body.extend(f"  • {line}" for line in lines)
        body.append("")

    console.print(
        Panel(
            "\n".join(body).rstrip(),
            title=note.title,
            subtitle=f"[{style}]{result.cache_status.value}[/{style}] · {note.source_version}",
        )
    )
    # Let a stale-while-revalidate refresh finish before the process exits
    engine.refresh_queue.drain()


@note_app.command("mark-stale")
def note_mark_stale(user_id: str = typer.Argument(..., help="Learner id")) -> None:
    """Flag notes older than the maximum age for regeneration."""
    try:
        count = get_engine().mark_due_notes_stale(user_id)
    except MedrevError as e:
        _fail(e)
    rprint(f"[green]✓[/green] Marked {count} notes stale")


# ========================================
# Stats Commands
# ========================================

stats_app = typer.Typer(help="Performance analytics")
app.add_typer(stats_app, name="stats")


@stats_app.command("show")
def stats_show(
    user_id: str = typer.Argument(..., help="Learner id"),
    mode: AnalyticsMode = typer.Option(AnalyticsMode.ALL, "--mode", "-m", help="cases, ukmla or all"),
) -> None:
    """Show overall, per-domain and per-difficulty performance."""
    engine = get_engine()
    try:
        overall = engine.get_stats(user_id, mode)
        domains = engine.get_domain_stats(user_id, mode)
        difficulties = engine.get_difficulty_stats(user_id, mode)
    except MedrevError as e:
        _fail(e)

    rprint(
        f"[bold]Overall[/bold] ({mode.value}): "
        f"{overall.total_attempts} attempts, average {overall.average_score}"
    )

    for title, lines in (("By domain", domains), ("By difficulty", difficulties)):
        table = Table(title=title)
        table.add_column("Scope", style="cyan")
        table.add_column("Attempts", justify="right")
        table.add_column("Average", justify="right")
        table.add_column("Last activity", style="dim")
        for line in lines:
            table.add_row(
                line.label or "-",
                str(line.total_attempts),
                str(line.average_score),
                line.last_activity_at.strftime("%Y-%m-%d") if line.last_activity_at else "-",
            )
        console.print(table)


def main() -> None:
    app()


if __name__ == "__main__":
    main()
