"""Remote API client for the TrueNAS appliance."""

from truenas_block.client.api import TrueNASClient

__all__ = ["TrueNASClient"]
