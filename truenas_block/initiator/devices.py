"""
Local block device discovery for exported volumes.
"""

import glob
import os
import re
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from oslo_log import log as logging

from truenas_block.configuration import TrueNASBlockConfig
from truenas_block.exceptions import DeviceNotReady
from truenas_block.initiator.iscsi import IscsiSessionManager
from truenas_block.initiator.nvme import NvmeSessionManager
from truenas_block.lib import utils

LOG = logging.getLogger(__name__)

ISCSI_MAX_ATTEMPTS = 20
ISCSI_RESCAN_EVERY = 4
NVME_MAX_POLLS = 50
NVME_POLL_INTERVAL = 0.1
NVME_RECENT_SECONDS = 10

_NVME_STANDARD_RE = re.compile(r"^nvme(\d+)n(\d+)$")
_NVME_CONTROLLER_RE = re.compile(r"^nvme(\d+)c(\d+)n(\d+)$")


def _read(path: str) -> Optional[str]:
    try:
        with open(path, "r", encoding="utf-8") as f:
            return f.read().strip()
    except OSError:
        return None


def iscsi_poll_delay(attempt: int) -> float:
    """Delay before ``attempt`` (1-based): 0, 100ms, then 250ms."""
    if attempt <= 1:
        return 0.0
    if attempt == 2:
        return 0.1
    return 0.25


class IscsiDeviceLocator:
    """Maps an iSCSI LUN of the configured target to a local device path."""

    def __init__(
        self,
        config: TrueNASBlockConfig,
        sessions: IscsiSessionManager,
        by_path_dir: str = "/dev/disk/by-path",
        sysfs_block: str = "/sys/block",
        dev_dir: str = "/dev",
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.config = config
        self.sessions = sessions
        self.by_path_dir = by_path_dir
        self.sysfs_block = sysfs_block
        self.dev_dir = dev_dir
        self._sleep = sleep
        self._clock = clock

    def by_path(self, lun: int) -> Optional[str]:
        pattern = os.path.join(self.by_path_dir, f"ip-*-iscsi-{self.config.target_iqn}-lun-{lun}")
        matches = sorted(glob.glob(pattern))
        return matches[0] if matches else None

    def multipath_device(self, path: str) -> Optional[str]:
        """Return the device-mapper holder of a SCSI device, if any."""
        leaf = os.path.basename(os.path.realpath(path))
        for slave in sorted(glob.glob(os.path.join(self.sysfs_block, "dm-*", "slaves", leaf))):
            dm = slave.split(os.sep)[-3]
            name = _read(os.path.join(self.sysfs_block, dm, "dm", "name"))
            if name:
                mapper = os.path.join(self.dev_dir, "mapper", name)
                if os.path.exists(mapper):
                    return mapper
            return os.path.join(self.dev_dir, dm)
        return None

    def find_device(self, lun: int) -> Optional[str]:
        path = self.by_path(lun)
        if not path:
            return None
        if self.config.use_multipath and not self.config.use_by_path:
            return self.multipath_device(path) or path
        return path

    def wait_for_device(self, lun: int, dataset: Optional[str] = None) -> str:
        """
        Wait for the device of a LUN to appear.

        Raises:
            DeviceNotReady: No device within the attempt or time limit
        """
        timeout = self.config.device_wait_timeout
        deadline = self._clock() + timeout
        for attempt in range(1, ISCSI_MAX_ATTEMPTS + 1):
            delay = iscsi_poll_delay(attempt)
            if delay:
                self._sleep(delay)
            device = self.find_device(lun)
            if device:
                LOG.debug("LUN %d of %s resolved to %s (attempt %d)", lun, self.config.target_iqn, device, attempt)
                return device
            if attempt % ISCSI_RESCAN_EVERY == 0:
                self.sessions.rescan()
            if self._clock() >= deadline:
                break

        raise DeviceNotReady(
            f"Could not locate the local device for LUN {lun} of {self.config.target_iqn} "
            f"(dataset {dataset or 'unknown'}) within {timeout}s; the volume exists on "
            "TrueNAS, check the iSCSI sessions and udev",
            identity=f"lun{lun}",
            dataset=dataset,
        )


@dataclass
class NvmeDevice:
    name: str
    path: str
    nsid: int
    mtime: float


class NvmeDeviceLocator:
    """Maps an NVMe namespace UUID of the configured subsystem to a local device path."""

    def __init__(
        self,
        config: TrueNASBlockConfig,
        sessions: NvmeSessionManager,
        namespace_for_uuid: Callable[[str], Optional[Dict[str, Any]]],
        sysfs_block: str = "/sys/block",
        dev_dir: str = "/dev",
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
        wall_clock: Callable[[], float] = time.time,
    ):
        self.config = config
        self.sessions = sessions
        self._namespace_for_uuid = namespace_for_uuid
        self.sysfs_block = sysfs_block
        self.dev_dir = dev_dir
        self._sleep = sleep
        self._clock = clock
        self._wall_clock = wall_clock

    def scan(self) -> List[NvmeDevice]:
        """Namespace block devices whose subsystem NQN equals the configured one."""
        try:
            entries = sorted(os.listdir(self.sysfs_block))
        except OSError:
            return []

        devices = []
        for entry in entries:
            match = _NVME_STANDARD_RE.match(entry)
            if match:
                nsid = int(match.group(2))
                nqn_path = os.path.join(self.sysfs_block, entry, "device", "subsysnqn")
            else:
                match = _NVME_CONTROLLER_RE.match(entry)
                if not match:
                    continue
                nsid = int(match.group(3))
                nqn_path = os.path.join(self.sysfs_block, entry, "device", "..", "subsysnqn")

            if _read(nqn_path) != self.config.subsystem_nqn:
                continue
            try:
                mtime = os.stat(os.path.join(self.sysfs_block, entry)).st_mtime
            except OSError:
                mtime = 0.0
            devices.append(NvmeDevice(name=entry, path=os.path.join(self.dev_dir, entry), nsid=nsid, mtime=mtime))
        return devices

    def resolve(self, device_uuid: str) -> Optional[str]:
        """
        Resolve a namespace UUID against the current devices.

        The NSID reported by the appliance is matched first. Without a match,
        the newest device created within the last 10 seconds is used.
        """
        devices = self.scan()
        if not devices:
            return None

        info = self._namespace_for_uuid(device_uuid)
        nsid = info.get("nsid") if info else None
        if nsid is not None:
            for device in devices:
                if device.nsid == int(nsid):
                    LOG.debug("Namespace %s resolved to %s (NSID %s)", device_uuid, device.path, nsid)
                    return device.path

        newest = max(devices, key=lambda d: d.mtime)
        if newest.mtime > self._wall_clock() - NVME_RECENT_SECONDS:
            LOG.debug("Namespace %s resolved to newest device %s", device_uuid, newest.path)
            return newest.path
        return None

    def wait_for_device(self, device_uuid: str, dataset: Optional[str] = None) -> str:
        """
        Wait for the device of a namespace to appear.

        Raises:
            DeviceNotReady: No device within the poll or time limit
        """
        timeout = self.config.device_wait_timeout
        deadline = self._clock() + timeout
        for poll in range(NVME_MAX_POLLS):
            device = self.resolve(device_uuid)
            if device:
                return device

            if poll == 5:
                utils.udev_settle(grace=0)
            elif poll == 15:
                utils.udev_settle(grace=0)
                self.sessions.rescan_controllers()
            elif poll == 30:
                utils.udev_trigger()
                utils.udev_settle(grace=0)

            if self._clock() >= deadline:
                break
            self._sleep(NVME_POLL_INTERVAL)

        raise DeviceNotReady(
            f"Could not locate the local device for NVMe namespace {device_uuid} of "
            f"{self.config.subsystem_nqn} (dataset {dataset or 'unknown'}) within {timeout}s",
            identity=device_uuid,
            dataset=dataset,
        )
