"""VQL query commands."""

import asyncio
from pathlib import Path
from typing import List, Optional

import typer

from ..bridge import BridgeConfiguration
from ..errors import VelociraptorError
from ..main import state
from ..models import VQLResult
from ..output import print_error, print_info, print_json, print_json_line, print_table
from ..session import get_session


app = typer.Typer(
    name="query",
    help="Run VQL queries",
    no_args_is_help=True,
)


def _parse_env(pairs: list[str]) -> dict[str, str]:
    env = {}
    for pair in pairs:
        key, sep, value = pair.partition("=")
        if not sep or not key:
            raise typer.BadParameter(f"Expected KEY=VALUE, got: {pair}", param_hint="--env")
        env[key] = value
    return env


def _result_records(result: VQLResult) -> list[dict]:
    return [
        {column: value.to_python() for column, value in zip(result.columns, row)}
        for row in result.rows
    ]


async def _run_remote(vql: str, env: dict[str, str], timeout: int | None) -> VQLResult:
    async with get_session() as session:
        return await session.api.execute_query(vql, env=env or None, timeout=timeout)


async def _run_local(vql: str, binary: Path | None, config: str | None) -> list[dict]:
    """Stream rows from the local binary; JSON mode prints each row as it arrives."""
    async with get_session() as session:
        defaults = BridgeConfiguration.from_settings(session.settings)
        bridge = session.configure_bridge(
            BridgeConfiguration(
                binary_path=binary or defaults.binary_path,
                config_path=config if config is not None else defaults.config_path,
                gui_port=defaults.gui_port,
            )
        )
        records = []
        async for row in bridge.execute_streaming(vql):
            if row.is_complete:
                continue
            record = row.as_dict()
            if state.json_output:
                print_json_line(record)
            records.append(record)
        return records


@app.command("run")
def run(
    vql: str = typer.Argument(..., help="VQL query text"),
    local: bool = typer.Option(
        False, "--local", "-l",
        help="Run through the local velociraptor binary instead of the API"
    ),
    binary: Optional[Path] = typer.Option(None, "--binary", help="Path to the velociraptor binary"),
    config: Optional[str] = typer.Option(None, "--config", "-c", help="Server config for --local"),
    env: Optional[List[str]] = typer.Option(None, "--env", "-e", help="Query variable KEY=VALUE (repeatable)"),
    timeout: Optional[int] = typer.Option(None, "--timeout", help="Server-side timeout in seconds"),
) -> None:
    """Run a VQL query and print the rows."""
    columns = None
    try:
        if local:
            records = asyncio.run(_run_local(vql, binary, config))
            if state.json_output:
                return
        else:
            result = asyncio.run(_run_remote(vql, _parse_env(env or []), timeout))
            records = _result_records(result)
            if state.json_output:
                print_json({"columns": result.columns, "rows": records})
                return
            columns = result.columns or None
    except VelociraptorError as e:
        print_error(str(e))
        raise typer.Exit(1)

    if not records:
        print_info("Query returned no rows")
        return
    print_table(records, columns=columns, title=f"Rows: {len(records)}")
