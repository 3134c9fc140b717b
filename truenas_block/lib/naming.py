"""
Volume naming: identity encode/parse and collision-free name allocation.
"""

import re
import threading
from dataclasses import dataclass
from typing import Callable, Iterable, Optional, Set, Tuple, TypeVar

from oslo_log import log as logging

from truenas_block.exceptions import (
    InvalidVolumeName,
    NameAllocationError,
    TrueNASResourceAlreadyExists,
)

LOG = logging.getLogger(__name__)

T = TypeVar("T")

MAX_NAME_ATTEMPTS = 1000

_LUN_RE = re.compile(r"^vol-([A-Za-z0-9:_.\-]+)-lun(\d+)$")
_NS_RE = re.compile(r"^vol-([A-Za-z0-9:_.\-]+)-ns([a-f0-9\-]+)$")
_OWNER_RE = re.compile(r"^vm-(\d+)-")


@dataclass(frozen=True)
class VolumeName:
    """Caller-visible volume identity.

    iSCSI volumes are encoded as ``vol-<zname>-lun<N>`` and NVMe/TCP volumes
    as ``vol-<zname>-ns<uuid>``.
    """

    zname: str
    lun: Optional[int] = None
    ns_uuid: Optional[str] = None

    @classmethod
    def parse(cls, volname: str) -> "VolumeName":
        match = _LUN_RE.match(volname or "")
        if match:
            return cls(zname=match.group(1), lun=int(match.group(2)))
        match = _NS_RE.match(volname or "")
        if match:
            return cls(zname=match.group(1), ns_uuid=match.group(2))
        raise InvalidVolumeName(f"Unable to parse volume name '{volname}'")

    @property
    def owner(self) -> Optional[str]:
        return owner_of(self.zname)

    @property
    def is_nvme(self) -> bool:
        return self.ns_uuid is not None

    def __str__(self) -> str:
        if self.ns_uuid is not None:
            return f"vol-{self.zname}-ns{self.ns_uuid}"
        return f"vol-{self.zname}-lun{self.lun}"


def owner_of(zname: str) -> Optional[str]:
    """Return the owner id encoded in a zvol name (``vm-100-disk-0`` -> ``100``)."""
    match = _OWNER_RE.match(zname or "")
    return match.group(1) if match else None


def sanitize_name(name: str) -> str:
    """Replace characters the appliance rejects in dataset names."""
    return re.sub(r"[^a-zA-Z0-9._\-]", "_", name)


def disk_name(owner: str, index: int) -> str:
    return f"vm-{owner}-disk-{index}"


class NameAllocator:
    """Allocates ``vm-<owner>-disk-<n>`` names that do not collide.

    Candidates are probed against the current listing. Names handed out to
    concurrent allocators in this process are reserved until their create
    call returns, and an "already exists" rejection from the appliance moves
    on to the next candidate.
    """

    def __init__(
        self,
        listing: Callable[[], Iterable[str]],
        dataset: str = "",
        max_attempts: int = MAX_NAME_ATTEMPTS,
    ):
        self._listing = listing
        self._dataset = dataset
        self.max_attempts = max_attempts
        self._reserved: Set[str] = set()
        self._lock = threading.Lock()

    def _reserve(self, name: str, taken: Set[str]) -> bool:
        with self._lock:
            if name in taken or name in self._reserved:
                return False
            self._reserved.add(name)
            return True

    def _release(self, name: str) -> None:
        with self._lock:
            self._reserved.discard(name)

    def allocate(
        self,
        owner: str,
        create: Callable[[str], T],
        name: Optional[str] = None,
    ) -> Tuple[str, T]:
        """
        Allocate a name and create the volume under it.

        Args:
            owner: Owner id
            create: Callable creating the remote volume for a candidate name
            name: Explicit name; when given it is used as-is

        Returns:
            Tuple of (allocated name, result of ``create``)

        Raises:
            NameAllocationError: No free candidate within ``max_attempts``
        """
        if name:
            clean = sanitize_name(name)
            return clean, create(clean)

        taken = set(self._listing())
        for index in range(self.max_attempts):
            candidate = disk_name(owner, index)
            if not self._reserve(candidate, taken):
                continue
            try:
                return candidate, create(candidate)
            except TrueNASResourceAlreadyExists:
                LOG.info("Volume name %s was taken concurrently, trying next candidate", candidate)
                taken.add(candidate)
            finally:
                self._release(candidate)

        raise NameAllocationError(
            f"Unable to allocate a volume name for owner {owner} in dataset "
            f"'{self._dataset}': vm-{owner}-disk-0 .. vm-{owner}-disk-{self.max_attempts - 1} "
            "are all in use"
        )
