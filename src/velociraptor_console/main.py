"""Main CLI entry point for the Velociraptor console."""

import logging
from typing import Optional

import typer

from . import __version__
from .log import setup_logging


# Create main app
app = typer.Typer(
    name="velociraptor-console",
    help="Remote control console for Velociraptor servers",
    no_args_is_help=True,
)

# Global state
class GlobalState:
    json_output: bool = False
    verbose: bool = False

state = GlobalState()


def version_callback(value: bool) -> None:
    """Show version and exit."""
    if value:
        print(f"velociraptor-console version {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    json_output: bool = typer.Option(
        False, "--json", "-j",
        help="Output as JSON instead of tables"
    ),
    verbose: bool = typer.Option(
        False, "--verbose", "-v",
        help="Show debug logs on stderr"
    ),
    version: Optional[bool] = typer.Option(
        None, "--version", "-V",
        callback=version_callback,
        is_eager=True,
        help="Show version and exit"
    ),
) -> None:
    """Velociraptor console - authenticate, query and watch a Velociraptor server."""
    state.json_output = json_output
    state.verbose = verbose
    setup_logging(debug=verbose, level=logging.DEBUG if verbose else logging.WARNING)


# Import and register command groups
from .commands import auth, certs, events, query, server

app.add_typer(auth.app, name="auth")
app.add_typer(server.app, name="server")
app.add_typer(query.app, name="query")
app.add_typer(events.app, name="events")
app.add_typer(certs.app, name="certs")


if __name__ == "__main__":
    app()
