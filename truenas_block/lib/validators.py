"""
Input validation functions.
"""

import ipaddress
import re
from typing import Tuple


DEFAULT_ISCSI_PORT = 3260
DEFAULT_NVME_PORT = 4420


def validate_dataset(dataset: str) -> None:
    """
    Validate a parent dataset path (e.g. ``tank/vms``).

    Raises:
        ValueError: If dataset is invalid
    """
    if not dataset:
        raise ValueError("Dataset cannot be empty")

    if not re.match(r"^[a-zA-Z0-9_\-./]+$", dataset):
        raise ValueError(
            f"Dataset '{dataset}' contains invalid characters "
            "(allowed: alphanumeric, '_', '-', '.', '/')"
        )

    if dataset.startswith("/") or dataset.endswith("/"):
        raise ValueError(f"Dataset '{dataset}' must not start or end with '/'")

    if "//" in dataset:
        raise ValueError(f"Dataset '{dataset}' must not contain '//'")


def validate_name(name: str) -> None:
    """
    Validate a volume or snapshot name.

    Raises:
        ValueError: If name is invalid
    """
    if not name:
        raise ValueError("Name cannot be empty")

    if len(name) > 200:
        raise ValueError("Name must be at most 200 characters")

    if not re.match(r"^[a-zA-Z0-9][a-zA-Z0-9._:\-]*$", name):
        raise ValueError(
            "Name must start with alphanumeric and contain only alphanumeric, "
            "dots, colons, underscores, or hyphens"
        )


def validate_nqn(nqn: str) -> None:
    """
    Validate an NVMe Qualified Name (``nqn.2005-10.org.freenas.ctl:vms``).

    Raises:
        ValueError: If NQN is invalid
    """
    if not nqn or not re.match(r"^nqn\.\d{4}-\d{2}\.", nqn):
        raise ValueError(f"Invalid NQN '{nqn}': expected format nqn.YYYY-MM.<domain>:<name>")


def validate_hostnqn(hostnqn: str) -> None:
    """
    Validate a host NQN.

    Raises:
        ValueError: If host NQN is invalid
    """
    if not hostnqn or not hostnqn.startswith("nqn."):
        raise ValueError(f"Invalid host NQN '{hostnqn}': must start with 'nqn.'")


def format_portal(host: str, port: int) -> str:
    """
    Canonical ``host:port`` form of a portal.

    IPv6 hosts are bracketed (``[fe80::1]:3260``) so the result parses back
    with :func:`parse_portal`.
    """
    host = host.strip().strip("[]")
    if ":" in host:
        return f"[{host}]:{port}"
    return f"{host}:{port}"


def parse_portal(portal: str, default_port: int = DEFAULT_ISCSI_PORT) -> Tuple[str, int]:
    """
    Parse a portal into (host, port).

    Accepts ``[v6]:port``, ``[v6]``, ``host:port`` and ``host``.

    Raises:
        ValueError: If portal is invalid
    """
    value = (portal or "").strip()
    if not value:
        raise ValueError("Portal cannot be empty")

    match = re.match(r"^\[([^\]]+)\](?::(\d+))?$", value)
    if match:
        host = match.group(1)
        port = int(match.group(2)) if match.group(2) else default_port
    elif value.count(":") == 1:
        host, port_text = value.split(":", 1)
        if not port_text.isdigit():
            raise ValueError(f"Invalid port in portal '{portal}'")
        port = int(port_text)
    elif value.count(":") > 1:
        # bare IPv6 address
        ipaddress.IPv6Address(value)
        host, port = value, default_port
    else:
        host, port = value, default_port

    if not host:
        raise ValueError(f"Invalid portal '{portal}': missing host")
    if port < 1 or port > 65535:
        raise ValueError(f"Invalid port in portal '{portal}': {port}")
    return host, port


def validate_portal(portal: str) -> None:
    """
    Validate a portal string.

    Raises:
        ValueError: If portal is invalid
    """
    parse_portal(portal)
