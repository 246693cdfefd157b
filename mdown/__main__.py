"""
Entry point for `mdown` and `python -m mdown`.
Errors that escape a command are rendered as a panel instead of a traceback.
"""

import asyncio
import logging
import os
import sys

import typer
from rich.console import Console

from mdown.cli.app import app
from mdown.cli.formatters import format_error_with_suggestions
from mdown.exceptions import MdownError

EXIT_FAILURE = 1
EXIT_INTERRUPTED = 130


def _use_utf8_streams() -> None:
    # Status glyphs need UTF-8 on Windows consoles.
    if os.name != "nt":
        return
    for stream in (sys.stdout, sys.stderr):
        try:
            stream.reconfigure(encoding="utf-8")
        except (TypeError, AttributeError):
            pass


def main() -> None:
    _use_utf8_streams()
    console = Console(stderr=True)

    try:
        app()
    except (typer.Exit, typer.Abort):
        pass
    except (KeyboardInterrupt, asyncio.CancelledError):
        console.print("\n[yellow]Interrupted. Unfinished chapters resume on the next run.[/yellow]")
        sys.exit(EXIT_INTERRUPTED)
    except MdownError as e:
        console.print(format_error_with_suggestions(e))
        sys.exit(EXIT_FAILURE)
    except Exception as e:
        console.print(format_error_with_suggestions(e, {"type": "Unexpected"}))
        logging.getLogger("mdown").debug("Full traceback:", exc_info=True)
        sys.exit(EXIT_FAILURE)


if __name__ == "__main__":
    main()
