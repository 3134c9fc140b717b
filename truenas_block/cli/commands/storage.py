"""
Storage activation and status commands.
"""

from typing import Optional

import typer

from truenas_block.cli.context import get_orchestrator
from truenas_block.lib.sizing import align_size, format_bytes, parse_size

app = typer.Typer(help="Storage activation and status commands")


@app.command()
def activate(ctx: typer.Context):
    """
    Prepare this host: target visibility and sessions (iSCSI), or subsystem and
    connections (NVMe/TCP).
    """
    try:
        get_orchestrator(ctx).activate()
        typer.echo("Storage activated")

    except Exception as e:
        typer.echo(f"Error activating storage: {e}", err=True)
        raise typer.Exit(1)


@app.command()
def status(ctx: typer.Context):
    """
    Show the capacity of the parent dataset.
    """
    try:
        result = get_orchestrator(ctx).status()
        typer.echo(f"active={result.active}")
        typer.echo(f"total={format_bytes(result.total)} ({result.total})")
        typer.echo(f"used={format_bytes(result.used)} ({result.used})")
        typer.echo(f"available={format_bytes(result.available)} ({result.available})")
        if not result.active:
            raise typer.Exit(1)

    except typer.Exit:
        raise
    except Exception as e:
        typer.echo(f"Error getting storage status: {e}", err=True)
        raise typer.Exit(1)


@app.command()
def preflight(
    ctx: typer.Context,
    size: Optional[str] = typer.Option(None, "--size", help="Check capacity for a volume of this size (e.g., 10G)"),
):
    """
    Run the allocation pre-flight checks without changing anything.
    """
    try:
        orchestrator = get_orchestrator(ctx)
        size_bytes = None
        if size:
            size_bytes = align_size(parse_size(size), orchestrator.config.zvol_blocksize)
        report = orchestrator.preflight(size_bytes)
        if report.ok:
            typer.echo("All pre-flight checks passed")
            return
        for error in report.errors:
            typer.echo(f"  - {error}", err=True)
        raise typer.Exit(1)

    except typer.Exit:
        raise
    except Exception as e:
        typer.echo(f"Error running pre-flight checks: {e}", err=True)
        raise typer.Exit(1)
