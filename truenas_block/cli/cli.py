#!/usr/bin/env python3
"""
Main CLI entry point using Typer.
"""

import sys
from typing import Optional

import typer

from truenas_block.cli.commands import snapshot, storage, volume

app = typer.Typer(
    name="tnblock",
    help="TrueNAS block volume lifecycle tool",
    add_completion=False,
)

# Add command groups
app.add_typer(volume.app, name="volume", help="Volume management commands")
app.add_typer(snapshot.app, name="snapshot", help="Snapshot management commands")
app.add_typer(storage.app, name="storage", help="Storage activation and status commands")


@app.callback()
def configure(
    ctx: typer.Context,
    config: Optional[str] = typer.Option(None, "--config", "-c", help="Path to the configuration file"),
    debug: bool = typer.Option(False, "--debug", help="Enable debug logging"),
):
    """TrueNAS block volume lifecycle tool."""
    ctx.obj = {"config_path": config, "debug": debug}


def main() -> int:
    """Main entry point."""
    try:
        app()
        return 0
    except KeyboardInterrupt:
        typer.echo("\nOperation cancelled by user", err=True)
        return 130
    except Exception as e:
        typer.echo(f"Error: {e}", err=True)
        return 1


if __name__ == "__main__":
    sys.exit(main())
