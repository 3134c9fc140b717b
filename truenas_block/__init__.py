"""
TrueNAS Block - volume lifecycle orchestration for TrueNAS zvols.

This package provides an API client, initiator session management and a
lifecycle orchestrator for ZFS zvols exported over iSCSI or NVMe/TCP.
"""

__version__ = "0.1.0"
__all__ = ["cli", "client", "initiator", "lib"]
