"""``converge`` command line."""

from __future__ import annotations

import logging
import os
import sys

import typer

from converge import __version__

app = typer.Typer(name="converge", no_args_is_help=True, add_completion=False)

state_app = typer.Typer(name="state", help="Inspect the state store.", no_args_is_help=True)
app.add_typer(state_app)

LOG_ENV = "CONVERGE_LOG"
_LOG_FORMAT = "%(levelname)s %(name)s: %(message)s"
_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")
_VERBOSITY = {1: logging.INFO, 2: logging.DEBUG}


def _log_level(verbose: int) -> int | None:
    """Level for the ``converge`` logger, or None to leave logging alone.

    ``CONVERGE_LOG`` wins over ``-v`` flags; an unknown name falls back to INFO.
    """
    name = os.environ.get(LOG_ENV, "").strip().upper()
    if name:
        if name not in _LEVELS:
            typer.echo(
                f"WARNING: invalid {LOG_ENV} level '{name}', "
                f"expected one of {', '.join(_LEVELS)}; defaulting to INFO",
                err=True,
            )
            return logging.INFO
        return getattr(logging, name)
    if verbose <= 0:
        return None
    return _VERBOSITY[min(verbose, 2)]


def _configure_logging(verbose: int) -> None:
    level = _log_level(verbose)
    if level is None:
        return
    # Third-party libraries stay at WARNING; only our own logger gets louder.
    logging.basicConfig(level=logging.WARNING, format=_LOG_FORMAT, stream=sys.stderr, force=True)
    logging.getLogger("converge").setLevel(level)


def _version_callback(value: bool) -> None:
    if value:
        typer.echo(f"converge {__version__}")
        raise typer.Exit


@app.callback()
def main(
    version: bool | None = typer.Option(
        None,
        "--version",
        "-V",
        help="Show version and exit.",
        callback=_version_callback,
        is_eager=True,
    ),
    verbose: int = typer.Option(
        0,
        "--verbose",
        "-v",
        count=True,
        help="Increase log verbosity (-v info, -vv debug).",
    ),
) -> None:
    """Declarative provisioning: converge machines toward a declared state."""
    _ = version
    _configure_logging(verbose)


# Commands register themselves on ``app`` and ``state_app`` at import.
from converge.cli import commands as _commands  # noqa: E402, F401
