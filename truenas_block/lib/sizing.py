"""
Size and block size helpers.
"""

import re
from typing import Any, Union

from oslo_log import log as logging

from truenas_block.lib.normalize import ValueKind, decode_value

LOG = logging.getLogger(__name__)

_BLOCKSIZE_RE = re.compile(r"^(\d+)([KMG])?$", re.IGNORECASE)
_SIZE_RE = re.compile(r"^(\d+(?:\.\d+)?)\s*([KMGTP])?(?:I?B)?$", re.IGNORECASE)
_MULTIPLIERS = {
    "": 1,
    "K": 1024,
    "M": 1024**2,
    "G": 1024**3,
    "T": 1024**4,
    "P": 1024**5,
}


def parse_blocksize(value: Any) -> int:
    """
    Parse a ZFS block size into bytes.

    Accepts ``16K``, ``128k``, ``1M``, plain byte counts and API property
    objects. Returns 0 for anything absent or unparseable.
    """
    decoded = decode_value(value)
    if decoded.kind == ValueKind.ABSENT:
        return 0
    if isinstance(decoded.parsed, int) and not isinstance(decoded.parsed, bool):
        return decoded.parsed if decoded.parsed > 0 else 0

    text = decoded.as_str().strip()
    match = _BLOCKSIZE_RE.match(text)
    if not match:
        return 0
    number = int(match.group(1))
    unit = (match.group(2) or "").upper()
    return number * _MULTIPLIERS[unit]


def normalize_blocksize(value: Any) -> str:
    """Return the block size in the uppercase form the appliance expects (``16K``)."""
    if value is None:
        return ""
    return str(value).strip().upper()


def align_size(requested: int, granularity: Any) -> int:
    """
    Round a requested size up to a multiple of the block granularity.

    Args:
        requested: Requested size in bytes
        granularity: Block size (bytes, ``16K`` style string or API value)

    Returns:
        Smallest multiple of the granularity that is >= requested. The input
        is returned unchanged when the granularity cannot be determined.
    """
    block = parse_blocksize(granularity)
    if block <= 0:
        return requested

    remainder = requested % block
    if remainder == 0:
        return requested

    aligned = requested + (block - remainder)
    LOG.info(
        "Aligned requested size %d to %d bytes (volblocksize %s)",
        requested,
        aligned,
        granularity,
    )
    return aligned


def parse_size(value: Union[str, int]) -> int:
    """
    Parse a human size (``10G``, ``512M``, ``1.5T``, ``4096``) into bytes.

    Raises:
        ValueError: If the size cannot be parsed or is not positive
    """
    if isinstance(value, int):
        size = value
    else:
        match = _SIZE_RE.match(str(value).strip())
        if not match:
            raise ValueError(f"Invalid size: {value}")
        unit = (match.group(2) or "").upper()
        size = int(float(match.group(1)) * _MULTIPLIERS[unit])
    if size <= 0:
        raise ValueError(f"Size must be positive: {value}")
    return size


def format_bytes(num: int) -> str:
    """Format a byte count for humans (``1.50 GB``)."""
    value = float(num)
    for unit in ("B", "KB", "MB", "GB", "TB"):
        if abs(value) < 1024:
            return f"{value:.2f} {unit}"
        value /= 1024
    return f"{value:.2f} PB"
