"""
Configuration and orchestrator setup shared by the CLI commands.
"""

import typer
from oslo_config import cfg
from oslo_log import log as logging

from truenas_block.configuration import load_config
from truenas_block.orchestrator import VolumeOrchestrator

CONF = cfg.CONF
logging.register_options(CONF)


def get_orchestrator(ctx: typer.Context) -> VolumeOrchestrator:
    """Load and validate the configuration, set up logging and build an orchestrator."""
    options = ctx.obj or {}
    config = load_config(options.get("config_path"), conf=CONF)
    if options.get("debug"):
        CONF.set_override("debug", True)
    logging.setup(CONF, "tnblock")
    config.validate()
    return VolumeOrchestrator(config)
