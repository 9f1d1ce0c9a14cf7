"""Server information commands."""

import asyncio

import typer

from ..errors import VelociraptorError
from ..main import state
from ..output import print_dict, print_error, print_json
from ..session import get_session


app = typer.Typer(
    name="server",
    help="Inspect the configured server",
    no_args_is_help=True,
)


async def _server_info() -> dict:
    async with get_session() as session:
        info = await session.api.test_connection()
        return info.model_dump(mode="json", exclude_none=True)


async def _health() -> dict:
    async with get_session() as session:
        health = await session.api.get_health()
        return health.model_dump(mode="json", exclude_none=True)


@app.command("info")
def info() -> None:
    """Connect to the server and show its version information."""
    try:
        data = asyncio.run(_server_info())
    except VelociraptorError as e:
        print_error(str(e))
        raise typer.Exit(1)

    if state.json_output:
        print_json(data)
    else:
        print_dict(data, title="Server")


@app.command("health")
def health() -> None:
    """Show server health metrics."""
    try:
        data = asyncio.run(_health())
    except VelociraptorError as e:
        print_error(str(e))
        raise typer.Exit(1)

    if state.json_output:
        print_json(data)
    else:
        print_dict(data, title="Health")
