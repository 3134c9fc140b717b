"""
Snapshot management commands.
"""

import datetime
from typing import List

import typer

from truenas_block.cli.context import get_orchestrator

app = typer.Typer(help="Snapshot management commands")


@app.command()
def create(
    ctx: typer.Context,
    volname: str = typer.Argument(..., help="Volume name"),
    name: str = typer.Argument(..., help="Snapshot name"),
):
    """
    Create a snapshot of a volume.
    """
    try:
        get_orchestrator(ctx).snapshot_create(volname, name)
        typer.echo(f"Snapshot {name} of {volname} created")

    except Exception as e:
        typer.echo(f"Error creating snapshot: {e}", err=True)
        raise typer.Exit(1)


@app.command()
def delete(
    ctx: typer.Context,
    volname: str = typer.Argument(..., help="Volume name"),
    names: List[str] = typer.Argument(..., help="Snapshot names"),
):
    """
    Delete snapshots. Deleting a snapshot that does not exist succeeds.
    """
    try:
        orchestrator = get_orchestrator(ctx)
        if len(names) == 1:
            orchestrator.snapshot_delete(volname, names[0])
            typer.echo(f"Snapshot {names[0]} of {volname} deleted")
            return

        failed = False
        for name, error in orchestrator.bulk_delete_snapshots(volname, names).items():
            if error:
                failed = True
                typer.echo(f"Snapshot {name}: error: {error}", err=True)
            else:
                typer.echo(f"Snapshot {name} of {volname} deleted")
        if failed:
            raise typer.Exit(1)

    except typer.Exit:
        raise
    except Exception as e:
        typer.echo(f"Error deleting snapshot: {e}", err=True)
        raise typer.Exit(1)


@app.command()
def rollback(
    ctx: typer.Context,
    volname: str = typer.Argument(..., help="Volume name"),
    name: str = typer.Argument(..., help="Snapshot name"),
):
    """
    Roll a volume back to a snapshot.

    Newer snapshots are destroyed when they block the rollback.
    """
    try:
        get_orchestrator(ctx).snapshot_rollback(volname, name)
        typer.echo(f"Volume {volname} rolled back to {name}")

    except Exception as e:
        typer.echo(f"Error rolling back snapshot: {e}", err=True)
        raise typer.Exit(1)


@app.command(name="list")
def list_snapshots(
    ctx: typer.Context,
    volname: str = typer.Argument(..., help="Volume name"),
):
    """
    List the snapshots of a volume.
    """
    try:
        snapshots = get_orchestrator(ctx).snapshot_list(volname)
        if not snapshots:
            typer.echo("No snapshots found")
            return
        for name, ctime in sorted(snapshots.items(), key=lambda item: item[1]):
            created = datetime.datetime.fromtimestamp(ctime).isoformat() if ctime else "-"
            typer.echo(f"{name} created={created}")

    except Exception as e:
        typer.echo(f"Error listing snapshots: {e}", err=True)
        raise typer.Exit(1)
