"""Live event stream commands."""

import asyncio
from typing import List, Optional

import typer

from ..errors import EventStreamError, VelociraptorError
from ..events import ActivityEvent, StreamPhase, StreamState
from ..main import state
from ..output import console, print_error, print_json_line, print_warning
from ..session import get_session


app = typer.Typer(
    name="events",
    help="Watch live server events",
    no_args_is_help=True,
)


def _show(event: ActivityEvent) -> None:
    if state.json_output:
        print_json_line({
            "type": event.type.value,
            "message": event.message,
            "client_id": event.client_id,
            "hunt_id": event.hunt_id,
            "timestamp": event.timestamp.isoformat(),
        })
    else:
        console.print(f"[dim]{event.timestamp:%H:%M:%S}[/dim] [cyan]{event.type.value}[/cyan] {event.message}")


async def _watch(hunts: list[str], client_status: bool, limit: int | None) -> StreamState:
    async with get_session() as session:
        stream = session.events
        enough = asyncio.Event()
        seen = 0
        pending: set[asyncio.Task] = set()

        def on_activity(event: ActivityEvent) -> None:
            nonlocal seen
            _show(event)
            seen += 1
            if limit is not None and seen >= limit:
                enough.set()

        async def subscribe() -> None:
            try:
                for hunt_id in hunts:
                    await stream.subscribe_to_hunt(hunt_id)
                if client_status:
                    await stream.subscribe_to_client_status()
            except EventStreamError as e:
                print_warning(f"Subscription failed: {e}")

        def on_state(new_state: StreamState) -> None:
            if not state.json_output:
                console.print(f"[dim]stream {new_state}[/dim]")
            # Subscriptions do not survive a reconnect
            if new_state.phase is StreamPhase.CONNECTED:
                task = asyncio.get_running_loop().create_task(subscribe())
                pending.add(task)
                task.add_done_callback(pending.discard)

        stream.on_activity.subscribe(on_activity)
        stream.on_state_change.subscribe(on_state)

        await stream.connect()
        closed = asyncio.create_task(stream.wait_closed())
        satisfied = asyncio.create_task(enough.wait())
        try:
            await asyncio.wait({closed, satisfied}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in (closed, satisfied, *pending):
                task.cancel()
            await asyncio.gather(closed, satisfied, *pending, return_exceptions=True)
        return stream.state


@app.command("watch")
def watch(
    hunt: Optional[List[str]] = typer.Option(None, "--hunt", help="Subscribe to a hunt's progress (repeatable)"),
    client_status: bool = typer.Option(False, "--client-status", help="Subscribe to client online status"),
    limit: Optional[int] = typer.Option(None, "--limit", "-n", help="Stop after this many events"),
) -> None:
    """Print server events as they arrive (Ctrl+C to stop)."""
    try:
        final_state = asyncio.run(_watch(hunt or [], client_status, limit))
    except KeyboardInterrupt:
        return
    except VelociraptorError as e:
        print_error(str(e))
        raise typer.Exit(1)

    if final_state.phase is StreamPhase.FAILED:
        print_error(f"Event stream {final_state}")
        raise typer.Exit(1)
