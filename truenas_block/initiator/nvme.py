"""
NVMe/TCP connection management with nvme-cli.
"""

import glob
import os
import re
from typing import Dict, List, Optional, Set

from oslo_log import log as logging

from truenas_block.configuration import TrueNASBlockConfig
from truenas_block.exceptions import CommandError, InitiatorError
from truenas_block.initiator.iscsi import SessionReport
from truenas_block.lib import utils
from truenas_block.lib.validators import DEFAULT_NVME_PORT, format_portal, parse_portal

LOG = logging.getLogger(__name__)

HOSTNQN_PATH = "/etc/nvme/hostnqn"
CONNECT_TIMEOUT = 60

_PATH_RE = re.compile(r"traddr=([^,\s]+),\s*trsvcid=(\d+)")


def nvme_portal_key(portal: str) -> str:
    host, port = parse_portal(portal, DEFAULT_NVME_PORT)
    return format_portal(host, port)


class NvmeSessionManager:
    """Ensures NVMe/TCP controllers to every configured portal of the subsystem."""

    def __init__(
        self,
        config: TrueNASBlockConfig,
        hostnqn_path: str = HOSTNQN_PATH,
        sysfs_root: str = "/sys",
        dev_root: str = "/dev",
    ):
        self.config = config
        self.nqn = config.subsystem_nqn
        self.hostnqn_path = hostnqn_path
        self.sysfs_root = sysfs_root
        self.dev_root = dev_root

    @property
    def portals(self) -> List[str]:
        return [nvme_portal_key(p) for p in self.config.all_portals]

    def check_cli(self) -> None:
        """
        Raises:
            InitiatorError: nvme-cli is not installed or not working
        """
        try:
            utils.run_command(["nvme", "version"])
        except CommandError as e:
            raise InitiatorError(f"nvme-cli is not installed or not working ({e.message}); install the nvme-cli package")

    def hostnqn(self) -> str:
        """
        Host NQN from the configuration or /etc/nvme/hostnqn.

        Raises:
            InitiatorError: No host NQN is available
        """
        if self.config.hostnqn:
            return self.config.hostnqn
        try:
            with open(self.hostnqn_path, "r", encoding="utf-8") as f:
                value = f.read().strip()
        except OSError:
            value = ""
        if not value:
            raise InitiatorError(
                f"Could not determine host NQN: {self.hostnqn_path} not found and hostnqn not configured"
            )
        return value

    def connected_portals(self) -> Set[str]:
        """Portals (``host:port``) with a live path to the subsystem."""
        try:
            lines = utils.run_lines(["nvme", "list-subsys"])
        except CommandError as e:
            LOG.debug("nvme list-subsys failed: %s", e.message)
            return set()

        portals = set()
        current: Optional[str] = None
        for line in lines:
            if "NQN=" in line:
                current = line.split("NQN=", 1)[1].strip()
                continue
            if current != self.nqn:
                continue
            match = _PATH_RE.search(line)
            if match:
                portals.add(format_portal(match.group(1), int(match.group(2))))
        return portals

    def _connect_portal(self, portal: str, hostnqn: str) -> None:
        host, port = parse_portal(portal, DEFAULT_NVME_PORT)
        cmd = ["nvme", "connect", "-t", "tcp", "-n", self.nqn, "-a", host, "-s", str(port), "--hostnqn", hostnqn]
        if self.config.nvme_dhchap_secret:
            cmd += ["--dhchap-secret", self.config.nvme_dhchap_secret]
        if self.config.nvme_dhchap_ctrl_secret:
            cmd += ["--dhchap-ctrl-secret", self.config.nvme_dhchap_ctrl_secret]
        try:
            utils.run_command(cmd, timeout=CONNECT_TIMEOUT)
        except CommandError as e:
            if "already connected" not in e.stderr.lower():
                raise
        LOG.info("Connected to %s via %s:%s", self.nqn, host, port)

    def ensure_connected(self) -> SessionReport:
        """
        Ensure a controller to every configured portal.

        Portal failures are logged and do not stop the others.

        Raises:
            InitiatorError: No portal could be connected
        """
        portals = self.portals
        if not portals:
            raise InitiatorError(f"No portals configured for NVMe/TCP subsystem {self.nqn}")

        active = self.connected_portals()
        if all(p in active for p in portals):
            return SessionReport(connected=portals)

        hostnqn = self.hostnqn()
        failures: Dict[str, str] = {}
        connected: List[str] = []
        for portal in portals:
            if portal in active:
                connected.append(portal)
                continue
            try:
                self._connect_portal(portal, hostnqn)
                connected.append(portal)
            except InitiatorError as e:
                LOG.warning("Failed to connect to NVMe portal %s: %s", portal, e.message)
                failures[portal] = e.message

        if not connected:
            details = "; ".join(f"{p}: {reason}" for p, reason in failures.items())
            raise InitiatorError(f"Failed to connect to any NVMe/TCP portal for subsystem {self.nqn} ({details})")

        utils.udev_settle()

        # Verify per portal when nvme-cli reports path addresses
        active = self.connected_portals()
        if active:
            for portal in list(connected):
                if portal not in active:
                    connected.remove(portal)
                    failures[portal] = "no live path after connect"

        report = SessionReport(connected=connected, failed=failures)
        if report.failed:
            LOG.warning("NVMe multipath degraded for %s: no path via %s", self.nqn, ", ".join(report.failed))
        return report

    def disconnect(self) -> None:
        """Disconnect every controller of the subsystem."""
        if utils.try_run(["nvme", "disconnect", "-n", self.nqn]):
            LOG.info("Disconnected from %s", self.nqn)
        else:
            LOG.warning("nvme disconnect -n %s failed", self.nqn)

    def controllers(self) -> List[str]:
        """Controller names (``nvme0``) attached to the subsystem."""
        result = []
        pattern = os.path.join(self.sysfs_root, "class", "nvme-subsystem", "nvme-subsys*")
        for subsys_dir in sorted(glob.glob(pattern)):
            try:
                with open(os.path.join(subsys_dir, "subsysnqn"), "r", encoding="utf-8") as f:
                    if f.read().strip() != self.nqn:
                        continue
            except OSError:
                continue
            for entry in sorted(os.listdir(subsys_dir)):
                if re.match(r"^nvme\d+$", entry):
                    result.append(entry)
        return result

    def rescan_controllers(self) -> None:
        """Run ``nvme ns-rescan`` on the subsystem's controllers (all controllers if none match)."""
        controllers = self.controllers()
        if not controllers:
            controllers = sorted(
                os.path.basename(p)
                for p in glob.glob(os.path.join(self.dev_root, "nvme*"))
                if re.match(r"^nvme\d+$", os.path.basename(p))
            )
        for controller in controllers:
            utils.try_run(["nvme", "ns-rescan", os.path.join(self.dev_root, controller)])
