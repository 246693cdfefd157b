"""
Defines the command-line interface for the application using Typer.
"""

import asyncio
import logging
import signal
from pathlib import Path

import typer
from rich.console import Console
from rich.logging import RichHandler

from mdown import __version__
from mdown.api.client import MangaDexClient
from mdown.core.orchestrator import MangaRunReport
from mdown.core.session import DownloadSession
from mdown.models.config import LOCK_FILENAME, RunConfig
from mdown.storage.backup import BackupManager
from mdown.storage.config_manager import ConfigManager, get_data_dir, parse_bool
from mdown.storage.ledger import LEDGER_FILENAME, ProgressLedger
from mdown.storage.lock import LockManager

from .formatters import (
    print_backups,
    print_diff_table,
    print_log,
    print_manga_table,
    print_runs,
    print_settings,
    print_summary_panel,
)

console = Console()

logging.basicConfig(
    level="INFO",
    format="%(message)s",
    datefmt="[%X]",
    handlers=[
        RichHandler(
            console=console,
            rich_tracebacks=True,
            show_path=False,
            show_level=False,
            markup=True,
        )
    ],
)
log = logging.getLogger("mdown")

app = typer.Typer(
    name="mdown",
    help="Download manga chapters from MangaDex into .cbz archives.",
    rich_markup_mode="rich",
    pretty_exceptions_show_locals=False,
    add_completion=False,
)
database_app = typer.Typer(help="Inspect and maintain the progress ledger.")
settings_app = typer.Typer(help="Change persisted default settings.")
app.add_typer(database_app, name="database")
app.add_typer(settings_app, name="settings")

_state = {"data_dir": get_data_dir()}

_CWD_HELP = "Working directory whose running download must not be disturbed."


def data_dir() -> Path:
    return _state["data_dir"]


@app.callback(invoke_without_command=True)
def main_callback(
    ctx: typer.Context,
    verbose: int = typer.Option(
        0, "--verbose", "-v", count=True, help="-v for debug output, -vv to include aiohttp."
    ),
    version: bool = typer.Option(
        False, "--version", help="Show version and exit.", is_eager=True
    ),
    data_dir_option: Path | None = typer.Option(
        None, "--data-dir", help="Directory holding the ledger and backups."
    ),
):
    """mdown manga downloader"""
    if version:
        console.print(f"[bold]mdown[/bold] version [cyan]{__version__}[/cyan]")
        raise typer.Exit()

    logging.getLogger("mdown").setLevel("DEBUG" if verbose else "INFO")
    # -vv also surfaces the HTTP stack.
    logging.getLogger("aiohttp").setLevel("DEBUG" if verbose >= 2 else "WARNING")

    if data_dir_option is not None:
        _state["data_dir"] = data_dir_option.expanduser()

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())


def _install_interrupt(session: DownloadSession) -> bool:
    """Turns Ctrl+C into a graceful drain instead of an abrupt cancel."""
    try:
        asyncio.get_running_loop().add_signal_handler(signal.SIGINT, session.request_stop)
        return True
    except (NotImplementedError, RuntimeError):
        return False


async def _run_session(config: RunConfig, action) -> tuple[DownloadSession, list[MangaRunReport]]:
    catalog = MangaDexClient(
        max_connections=config.max_consecutive,
        max_attempts=config.max_attempts,
        language=config.lang,
    )
    try:
        session = DownloadSession(config, catalog, data_dir())
        async with session:
            installed = not config.shared_mode and _install_interrupt(session)
            try:
                reports = await action(session)
            finally:
                if installed:
                    asyncio.get_running_loop().remove_signal_handler(signal.SIGINT)
        return session, reports
    finally:
        await catalog.close()


def _finish(session: DownloadSession, reports: list[MangaRunReport]) -> None:
    print_summary_panel(session.stats, reports, console)
    if session.stats.chapters_failed or any(r.error for r in reports):
        raise typer.Exit(code=1)


@app.command(name="download")
def download_command(
    targets: list[str] | None = typer.Argument(  # noqa: B008
        None, help="MangaDex URLs or manga ids."
    ),
    search: str | None = typer.Option(
        None, "--search", help="Search the catalog by title and download the first hit."
    ),
    lang: str | None = typer.Option(
        None, "-l", "--lang", help="Chapter language code, '*' for any (default 'en')."
    ),
    title: str | None = typer.Option(None, "-t", "--title", help="Override the manga title."),
    folder: str | None = typer.Option(
        None, "-f", "--folder", help="Output folder name; 'name' uses the title."
    ),
    volume: str | None = typer.Option(None, "--volume", help="Only this volume ('*' for all)."),
    chapter: str | None = typer.Option(
        None, "-c", "--chapter", help="Only this chapter number ('*' for all)."
    ),
    saver: bool = typer.Option(False, "-s", "--saver", help="Download data-saver images."),
    stat: bool | None = typer.Option(
        None, "--stat/--no-stat", help="Write a _statistics.md file for the manga."
    ),
    max_consecutive: int | None = typer.Option(
        None, "-m", "--max-consecutive", help="Concurrent page downloads (default 40)."
    ),
    force: bool = typer.Option(False, "--force", help="Re-download archived chapters."),
    offset: int = typer.Option(0, "-o", "--offset", help="Skip the first N sorted chapters."),
    database_offset: int = typer.Option(
        0, "--database-offset", help="Skip the first N raw catalog entries."
    ),
    unsorted: bool = typer.Option(
        False, "--unsorted", help="Keep catalog order instead of sorting by number."
    ),
    force_delete: bool = typer.Option(
        False, "--force-delete", help="Delete a leftover lock file before starting."
    ),
    backup: bool | None = typer.Option(
        None, "--backup/--no-backup", help="Snapshot the ledger after the run."
    ),
    cwd: Path = typer.Option(Path("."), "--cwd", help="Working directory for output."),  # noqa: B008
):
    """Download chapters of one or more manga."""
    if not targets and not search:
        console.print(
            "[red]✗ No manga given.[/red] Use: [cyan]mdown download <URL>[/cyan] or"
            " [cyan]--search <title>[/cyan]"
        )
        raise typer.Exit(code=1)

    cli_options = {
        "url": targets[0] if targets else "",
        "search": search,
        "lang": lang,
        "title": title,
        "folder": folder,
        "volume": volume,
        "chapter": chapter,
        "saver": saver,
        "stat": stat,
        "max_consecutive": max_consecutive,
        "force": force,
        "offset": offset,
        "database_offset": database_offset,
        "unsorted": unsorted,
        "force_delete": force_delete,
        "backup": backup,
        "cwd": cwd,
    }
    ledger = ProgressLedger(data_dir())
    config = ConfigManager(ledger).load_config(cli_options)
    queue = [search] if search else list(targets or [])

    console.print("[bold cyan]📚 Starting download session...[/bold cyan]")
    session, reports = asyncio.run(
        _run_session(config, lambda s: s.download(queue))
    )
    _finish(session, reports)


@app.command()
def setup():
    """Create the data directory and an empty ledger."""
    ledger = ProgressLedger(data_dir())
    console.print(f"[green]✓ Ledger ready at[/green] [dim]{ledger.db_path}[/dim]")


@app.command()
def delete(
    yes: bool = typer.Option(False, "--yes", "-y", help="Bypass the confirmation prompt."),
    cwd: Path = typer.Option(Path("."), "--cwd", help=_CWD_HELP),  # noqa: B008
):
    """Delete the ledger file. Backups are kept."""
    path = data_dir() / LEDGER_FILENAME
    if not path.exists():
        console.print("[yellow]No ledger to delete.[/yellow]")
        return
    if not yes and not typer.confirm(f"Delete {path}?"):
        raise typer.Abort()
    with LockManager(cwd / LOCK_FILENAME):
        for candidate in (path, path.with_name(path.name + "-wal"), path.with_name(path.name + "-shm")):
            if candidate.exists():
                candidate.unlink()
    console.print("[green]✓ Ledger deleted.[/green]")


@app.command()
def reset(
    yes: bool = typer.Option(False, "--yes", "-y", help="Bypass the confirmation prompt."),
    cwd: Path = typer.Option(Path("."), "--cwd", help=_CWD_HELP),  # noqa: B008
):
    """Forget all tracked manga, the log and stored settings."""
    if not yes and not typer.confirm(
        "This erases your download history and settings. Continue?"
    ):
        raise typer.Abort()

    async def _reset():
        ledger = ProgressLedger(data_dir())
        await ledger.reset()
        await ledger.clear_settings()

    with LockManager(cwd / LOCK_FILENAME):
        asyncio.run(_reset())
    console.print("[green]✓ Ledger reset.[/green]")


@app.command(name="backup")
def backup_command():
    """Snapshot the ledger now, replacing today's snapshot."""
    snapshot = BackupManager(data_dir()).snapshot(force=True)
    if snapshot is None:
        console.print("[yellow]Nothing to back up yet. Run a download first.[/yellow]")


@database_app.command()
def check():
    """List new, updated and missing chapters of tracked manga."""
    config = ConfigManager(ProgressLedger(data_dir())).load_config()
    session, results = asyncio.run(_run_session(config, lambda s: s.check()))
    print_diff_table(results, console)


@database_app.command()
def update(
    force_delete: bool = typer.Option(
        False, "--force-delete", help="Delete a leftover lock file before starting."
    ),
):
    """Download new, updated and missing chapters of tracked manga."""
    config = ConfigManager(ProgressLedger(data_dir())).load_config(
        {"force_delete": force_delete}
    )
    session, reports = asyncio.run(_run_session(config, lambda s: s.update()))
    if not reports:
        console.print("[green]✓ Everything is up to date.[/green]")
        return
    _finish(session, reports)


@database_app.command()
def show():
    """List tracked manga."""
    rows = asyncio.run(ProgressLedger(data_dir()).list_manga())
    print_manga_table(rows, console)


@database_app.command(name="show-log")
def show_log(
    run: str | None = typer.Option(None, "--run", help="Show the entries of one run."),
    limit: int = typer.Option(200, "--limit", help="Maximum entries to print."),
):
    """Show recent runs, or the log of one run."""
    ledger = ProgressLedger(data_dir())
    if run:
        print_log(asyncio.run(ledger.read_log(run, limit)), console)
    else:
        print_runs(asyncio.run(ledger.list_runs()), console)


@database_app.command(name="show-settings")
def show_settings():
    """Show persisted settings."""
    settings = ProgressLedger(data_dir()).get_settings_blocking()
    print_settings(settings, data_dir(), console)


@database_app.command()
def backups():
    """List ledger snapshots."""
    print_backups(BackupManager(data_dir()).list_snapshots(), console)


@database_app.command()
def restore(
    day: str = typer.Argument(..., help="Snapshot day, YYYY-MM-DD."),
    cwd: Path = typer.Option(Path("."), "--cwd", help=_CWD_HELP),  # noqa: B008
):
    """Replace the ledger with a snapshot."""
    with LockManager(cwd / LOCK_FILENAME):
        BackupManager(data_dir()).restore(day)


def _set(key: str, value: str) -> None:
    asyncio.run(ProgressLedger(data_dir()).set_setting(key, value))
    console.print(f"[green]✓ {key} = {value}[/green]")


@settings_app.command()
def folder(name: str = typer.Argument(..., help="Folder name, or 'name' for the title.")):
    """Default output folder."""
    ConfigManager(ProgressLedger(data_dir())).load_config({"folder": name})
    _set("folder", name)


@settings_app.command(name="stat")
def stat_setting(enabled: str = typer.Argument(..., help="on/off")):
    """Write statistics files by default."""
    _set("stat", "true" if parse_bool(enabled) else "false")


@settings_app.command(name="backup")
def backup_setting(enabled: str = typer.Argument(..., help="on/off")):
    """Snapshot the ledger after every run."""
    _set("backup", "true" if parse_bool(enabled) else "false")


@settings_app.command()
def concurrency(value: int = typer.Argument(..., help="Concurrent page downloads.")):
    """Default page concurrency budget."""
    ConfigManager(ProgressLedger(data_dir())).load_config({"max_consecutive": value})
    _set("max_consecutive", str(value))


@settings_app.command()
def clear():
    """Reset every setting to its default."""
    asyncio.run(ProgressLedger(data_dir()).clear_settings())
    console.print("[green]✓ Settings cleared.[/green]")
