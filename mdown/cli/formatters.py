"""
Functions for formatting and displaying data in the console using Rich.
"""

from pathlib import Path
from typing import Any

from rich import box
from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from mdown.core.orchestrator import MangaRunReport
from mdown.models.catalog import BackupSnapshot, LedgerDiff
from mdown.models.stats import RunStats
from mdown.utils.formatting import format_duration, format_size


def format_error_with_suggestions(
    error: Exception, context: dict | None = None
) -> Panel:
    """Formats an error with actionable suggestions into a Rich Panel."""
    error_type = type(error).__name__
    error_msg = str(error)

    suggestions_map = {
        "LockHeldError": [
            "• Another mdown instance is running in this directory.",
            "• If it crashed, run again with `--force-delete` to remove the lock.",
            "• Removing the lock of a live instance can corrupt its downloads.",
        ],
        "LedgerCorruptionError": [
            "• The progress ledger could not be read.",
            "• Restore a snapshot with `mdown database restore <YYYY-MM-DD>`.",
            "• List snapshots with `mdown database backups`.",
        ],
        "StaleArchiveConflictError": [
            "• An archive with the same name belongs to another chapter.",
            "• Re-run with `--force` to overwrite it.",
        ],
        "CatalogError": [
            "• Check the manga URL or id.",
            "• The catalog may be temporarily unavailable.",
        ],
        "ConfigurationError": [
            "• Check the command line options.",
            "• Inspect stored settings with `mdown database show-settings`.",
        ],
        "NetworkTransientError": [
            "• A network connection issue occurred.",
            "• Try lowering `--max-consecutive`.",
            "• Please try again in a few minutes.",
        ],
        "TimeoutError": [
            "• A request timed out, which may indicate throttling.",
            "• Try lowering `--max-consecutive`.",
        ],
    }

    suggestions = suggestions_map.get(
        error_type, ["• Run the command with -vv for detailed logs."]
    )

    error_text = Text()
    error_text.append(f"{error_type}: ", style="bold red")
    error_text.append(error_msg)

    content = Table.grid(padding=(1, 0))
    content.add_row(error_text)
    content.add_row()
    content.add_row(Text("Suggestions", style="bold yellow"))
    content.add_row(Text("\n".join(suggestions)))

    if context:
        content.add_row()
        content.add_row(Text(f"Context: {context}", style="dim"))

    return Panel(
        content,
        title="[bold red]An Error Occurred[/bold red]",
        border_style="red",
        expand=False,
    )


def print_summary_panel(
    stats: RunStats, reports: list[MangaRunReport], console: Console | None = None
):
    """Displays the final summary of a download run."""
    console = console or Console()

    table = Table(show_header=False, box=None, padding=(0, 2))
    table.add_column(style="bold cyan", justify="right", width=18)
    table.add_column(style="white", justify="left")

    table.add_row("✓ Archived:", f"[bold green]{stats.chapters_archived}[/bold green]")
    if stats.skip_reasons:
        parts = [
            f"[yellow]{count} ({reason})[/yellow]"
            for reason, count in stats.skip_reasons.most_common()
        ]
        table.add_row("○ Skipped:", " + ".join(parts))
    if stats.chapters_failed:
        table.add_row("✗ Failed:", f"[bold red]{stats.chapters_failed}[/bold red]")
    if stats.manga_partial:
        table.add_row(
            "⚠ Partial:", f"[yellow]{len(stats.manga_partial)} manga[/yellow]"
        )
    errored = [r for r in reports if r.error]
    if errored:
        table.add_row("✗ Unresolved:", f"[red]{len(errored)} manga[/red]")

    table.add_row("", "")
    table.add_row("Pages:", f"[cyan]{stats.pages_fetched}[/cyan]")
    table.add_row("Total Size:", f"[cyan]{format_size(stats.bytes_fetched)}[/cyan]")
    table.add_row(
        "Avg. Speed:", f"[magenta]{format_size(stats.average_speed_bps)}/s[/magenta]"
    )
    table.add_row("Time Elapsed:", f"[blue]{format_duration(stats.elapsed)}[/blue]")

    clean = not stats.chapters_failed and not errored
    console.print()
    console.print(
        Panel(
            table,
            title="📚 [bold]Download Complete[/bold]" if clean else "⚠ [bold]Finished with failures[/bold]",
            border_style="green" if clean else "yellow",
            box=box.DOUBLE,
            expand=False,
            padding=(1, 2),
        )
    )

    for report in reports:
        if report.failed:
            names = ", ".join(escape(c.label) for c in report.failed)
            title = escape(report.manga.title if report.manga else report.manga_id)
            console.print(f"[red]✗ {title}:[/red] {names}")


def print_manga_table(rows: list[dict[str, Any]], console: Console | None = None):
    """Lists the manga tracked by the ledger."""
    console = console or Console()
    if not rows:
        console.print("[dim]No manga tracked yet.[/dim]")
        return
    table = Table(title="Tracked Manga", box=box.ROUNDED)
    table.add_column("Title", style="cyan")
    table.add_column("Id", style="dim")
    table.add_column("Lang")
    table.add_column("Archived", justify="right", style="green")
    table.add_column("Failed", justify="right", style="red")
    table.add_column("Updated", style="dim")
    for row in rows:
        table.add_row(
            escape(row.get("title") or ""),
            row["id"],
            row.get("language") or "",
            str(row["archived"]),
            str(row["failed"]),
            row.get("updated_at") or "",
        )
    console.print(table)


def print_diff_table(results: list[tuple[dict, LedgerDiff]], console: Console | None = None):
    """Shows what an update would download for each tracked manga."""
    console = console or Console()
    table = Table(title="Update Check", box=box.ROUNDED)
    table.add_column("Title", style="cyan")
    table.add_column("New", justify="right", style="green")
    table.add_column("Updated", justify="right", style="yellow")
    table.add_column("Missing", justify="right", style="red")
    for row, diff in results:
        table.add_row(
            escape(row.get("title") or row["id"]),
            str(len(diff.new)),
            str(len(diff.outdated)),
            str(len(diff.missing)),
        )
    console.print(table)
    if all(diff.is_empty for _, diff in results):
        console.print("[green]✓ Everything is up to date.[/green]")


def print_log(entries: list[dict[str, Any]], console: Console | None = None):
    console = console or Console()
    styles = {"ERROR": "red", "WARNING": "yellow"}
    for entry in entries:
        style = styles.get(entry["level"], "white")
        target = entry.get("chapter_id") or entry.get("manga_id") or ""
        console.print(
            f"[dim]{entry['logged_at']} {entry['run_id']}[/dim] "
            f"[{style}]{escape(entry['message'])}[/{style}] [dim]{target}[/dim]"
        )


def print_runs(runs: list[dict[str, Any]], console: Console | None = None):
    console = console or Console()
    table = Table(title="Recent Runs", box=box.SIMPLE)
    table.add_column("Run", style="cyan")
    table.add_column("Started", style="dim")
    table.add_column("Entries", justify="right")
    table.add_column("Errors", justify="right", style="red")
    for run in runs:
        table.add_row(
            run["run_id"], run["started_at"], str(run["entries"]), str(run["errors"] or 0)
        )
    console.print(table)


def print_settings(settings: dict[str, str], data_dir: Path, console: Console | None = None):
    """Displays persisted settings."""
    console = console or Console()
    content = "\n".join(f"{key} = {value}" for key, value in settings.items())
    console.print(
        Panel(
            content,
            title=f"Settings ([dim]{escape(str(data_dir))}[/dim])",
            border_style="cyan",
        )
    )


def print_backups(snapshots: list[BackupSnapshot], console: Console | None = None):
    console = console or Console()
    if not snapshots:
        console.print("[dim]No backups yet.[/dim]")
        return
    for snapshot in snapshots:
        size = snapshot.path.stat().st_size if snapshot.path.exists() else 0
        console.print(
            f"  [cyan]{snapshot.day_key}[/cyan] [dim]{format_size(size)}[/dim]"
        )
