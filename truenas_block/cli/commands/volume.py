"""
Volume management commands.
"""

from typing import List, Optional

import typer

from truenas_block.cli.context import get_orchestrator
from truenas_block.lib.sizing import format_bytes, parse_size

app = typer.Typer(help="Volume management commands")


@app.command()
def alloc(
    ctx: typer.Context,
    owner: str = typer.Argument(..., help="Owner id (e.g., VM id)"),
    size: str = typer.Argument(..., help="Size (e.g., 10G, 512M, bytes)"),
    name: Optional[str] = typer.Option(None, "--name", help="Explicit zvol name"),
):
    """
    Allocate a new volume.

    Creates the zvol, exports it and waits for the local device.
    """
    try:
        size_bytes = parse_size(size)
        typer.echo(f"Allocating {format_bytes(size_bytes)} volume for owner {owner}")

        orchestrator = get_orchestrator(ctx)
        volname = orchestrator.allocate(owner, size_bytes, name=name)
        typer.echo(volname)

    except Exception as e:
        typer.echo(f"Error allocating volume: {e}", err=True)
        raise typer.Exit(1)


@app.command()
def resize(
    ctx: typer.Context,
    volname: str = typer.Argument(..., help="Volume name"),
    size: str = typer.Argument(..., help="New size (e.g., 20G)"),
):
    """
    Grow a volume. Shrinking is not supported.
    """
    try:
        orchestrator = get_orchestrator(ctx)
        new_size = orchestrator.resize(volname, parse_size(size))
        typer.echo(f"Volume {volname} resized to {format_bytes(new_size)} ({new_size} bytes)")

    except Exception as e:
        typer.echo(f"Error resizing volume: {e}", err=True)
        raise typer.Exit(1)


@app.command()
def free(
    ctx: typer.Context,
    volnames: List[str] = typer.Argument(..., help="Volume names"),
):
    """
    Free one or more volumes.

    Removes the export mapping, the export object and the zvol with its
    snapshots. Freeing a volume that does not exist succeeds.
    """
    try:
        orchestrator = get_orchestrator(ctx)
        if len(volnames) == 1:
            outcome = orchestrator.free(volnames[0])
            typer.echo(f"Volume {volnames[0]}: {outcome.value}")
            return

        failed = False
        for volname, result in orchestrator.free_many(volnames).items():
            if isinstance(result, Exception):
                failed = True
                typer.echo(f"Volume {volname}: error: {result}", err=True)
            else:
                typer.echo(f"Volume {volname}: {result.value}")
        if failed:
            raise typer.Exit(1)

    except typer.Exit:
        raise
    except Exception as e:
        typer.echo(f"Error freeing volume: {e}", err=True)
        raise typer.Exit(1)


@app.command()
def clone(
    ctx: typer.Context,
    source: str = typer.Argument(..., help="Source volume name"),
    owner: str = typer.Argument(..., help="Owner id of the clone"),
    snapshot: Optional[str] = typer.Option(None, "--snapshot", help="Snapshot to clone from (default: a new one)"),
    name: Optional[str] = typer.Option(None, "--name", help="Explicit zvol name for the clone"),
):
    """
    Clone a volume from a snapshot.
    """
    try:
        orchestrator = get_orchestrator(ctx)
        volname = orchestrator.clone(source, owner, snapshot=snapshot, name=name)
        typer.echo(volname)

    except Exception as e:
        typer.echo(f"Error cloning volume: {e}", err=True)
        raise typer.Exit(1)


@app.command(name="list")
def list_volumes(
    ctx: typer.Context,
    owner: Optional[str] = typer.Option(None, "--owner", help="Filter by owner id"),
):
    """
    List volumes.
    """
    try:
        orchestrator = get_orchestrator(ctx)
        volumes = orchestrator.list_volumes(owner=owner)
        if not volumes:
            typer.echo("No volumes found")
            return
        for vol in volumes:
            typer.echo(f"{vol.volname} owner={vol.owner or '-'} size={format_bytes(vol.size)} ctime={vol.ctime}")

    except Exception as e:
        typer.echo(f"Error listing volumes: {e}", err=True)
        raise typer.Exit(1)


@app.command()
def path(
    ctx: typer.Context,
    volname: str = typer.Argument(..., help="Volume name"),
):
    """
    Print the local device path of a volume.
    """
    try:
        orchestrator = get_orchestrator(ctx)
        typer.echo(orchestrator.path(volname))

    except Exception as e:
        typer.echo(f"Error resolving volume path: {e}", err=True)
        raise typer.Exit(1)
