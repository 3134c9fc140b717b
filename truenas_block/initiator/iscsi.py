"""
iSCSI session management with iscsiadm.
"""

import os
import re
import socket
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Set

from oslo_log import log as logging

from truenas_block.configuration import TrueNASBlockConfig
from truenas_block.exceptions import CommandError, InitiatorError
from truenas_block.lib import utils
from truenas_block.lib.validators import DEFAULT_ISCSI_PORT, format_portal, parse_portal

LOG = logging.getLogger(__name__)

PROBE_TIMEOUT = 5
LOGIN_TIMEOUT = 60

# tcp: [1] 10.15.14.172:3260,1 iqn.2005-10.org.freenas.ctl:target0 (non-flash)
_SESSION_RE = re.compile(r"^\S+:\s+\[\d+\]\s+(\S+)\s+(\S+)")
_LUN_RE = re.compile(r"Lun:\s*\d+")


@dataclass
class SessionReport:
    """Per-portal outcome of a session ensure."""

    connected: List[str] = field(default_factory=list)
    failed: Dict[str, str] = field(default_factory=dict)

    @property
    def complete(self) -> bool:
        return not self.failed


def portal_key(portal: str, default_port: int = DEFAULT_ISCSI_PORT) -> str:
    """Canonical portal form used for comparison and as the iscsiadm ``-p`` argument."""
    host, port = parse_portal(re.sub(r",\d+$", "", portal.strip()), default_port)
    return format_portal(host, port)


def probe_portal(host: str, port: int, timeout: float = PROBE_TIMEOUT) -> None:
    """
    Check that a portal accepts TCP connections.

    Raises:
        InitiatorError: If the TCP connect fails
    """
    try:
        with socket.create_connection((host, port), timeout=timeout):
            pass
    except OSError as e:
        raise InitiatorError(f"iSCSI portal {host}:{port} is not reachable (TCP connect failed: {e})")


class IscsiSessionManager:
    """Ensures iSCSI sessions to every configured portal of the target."""

    def __init__(
        self,
        config: TrueNASBlockConfig,
        probe: Callable[[str, int], None] = probe_portal,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.config = config
        self.iqn = config.target_iqn
        self._probe = probe
        self._sleep = sleep

    @property
    def portals(self) -> List[str]:
        return [portal_key(p) for p in self.config.all_portals]

    def _node(self, portal: str, *args: str) -> List[str]:
        return ["iscsiadm", "-m", "node", "-T", self.iqn, "-p", portal, *args]

    def active_portals(self) -> Set[str]:
        """Portals with a logged-in session for the target."""
        try:
            lines = utils.run_lines(["iscsiadm", "-m", "session"])
        except CommandError:
            # iscsiadm exits non-zero when there are no sessions at all
            return set()

        active = set()
        for line in lines:
            match = _SESSION_RE.match(line.strip())
            if not match or match.group(2) != self.iqn:
                continue
            try:
                active.add(portal_key(match.group(1)))
            except ValueError:
                LOG.debug("Ignoring unparseable session portal in: %s", line)
        return active

    def _login_portal(self, portal: str) -> None:
        host, port = parse_portal(portal)
        self._probe(host, port)

        if not utils.try_run(["iscsiadm", "-m", "discovery", "-t", "sendtargets", "-p", portal]):
            LOG.warning("iSCSI discovery failed on portal %s", portal)

        utils.try_run(self._node(portal, "-o", "update", "-n", "node.startup", "-v", "automatic"))
        if self.config.chap_user and self.config.chap_password:
            for name, value in (
                ("node.session.auth.authmethod", "CHAP"),
                ("node.session.auth.username", self.config.chap_user),
                ("node.session.auth.password", self.config.chap_password),
            ):
                utils.run_command(self._node(portal, "-o", "update", "-n", name, "-v", value))

        try:
            utils.run_command(self._node(portal, "--login"), timeout=LOGIN_TIMEOUT)
        except CommandError as e:
            if "already present" not in e.stderr:
                raise
        LOG.info("Logged in to %s on portal %s", self.iqn, portal)

    def ensure_sessions(self) -> SessionReport:
        """
        Ensure a session to every configured portal.

        A failing portal is logged and does not stop the others. Each portal
        is verified against the session list, and portals still missing after
        the first pass are retried once.

        Returns:
            SessionReport with connected and failed portals

        Raises:
            InitiatorError: No portal could be connected
        """
        portals = self.portals
        if not portals:
            raise InitiatorError("No iSCSI portals configured")

        active = self.active_portals()
        if all(p in active for p in portals):
            return SessionReport(connected=portals)

        failures: Dict[str, str] = {}
        for attempt in (1, 2):
            for portal in portals:
                if portal in active:
                    continue
                try:
                    self._login_portal(portal)
                    failures.pop(portal, None)
                except InitiatorError as e:
                    LOG.warning("iSCSI login to %s via %s failed (attempt %d): %s",
                                self.iqn, portal, attempt, e.message)
                    failures[portal] = e.message
            active = self.active_portals()
            if all(p in active for p in portals):
                break

        utils.udev_settle()

        report = SessionReport()
        for portal in portals:
            if portal in active:
                report.connected.append(portal)
            else:
                report.failed[portal] = failures.get(portal, "no session after login")

        if not report.connected:
            details = "; ".join(f"{p}: {reason}" for p, reason in report.failed.items())
            raise InitiatorError(f"Unable to establish an iSCSI session to {self.iqn} on any portal ({details})")
        if report.failed:
            LOG.warning("iSCSI multipath degraded for %s: no session on %s",
                        self.iqn, ", ".join(report.failed))
        return report

    def rescan(self) -> None:
        """Rescan sessions and, with multipath, reload the maps."""
        utils.try_run(["iscsiadm", "-m", "session", "-R"])
        if self.config.use_multipath:
            utils.try_run(["multipath", "-r"])
        utils.udev_settle()

    def logout_all(self) -> None:
        """Log out of the target on every portal and delete the node records."""
        for portal in self.portals:
            utils.try_run(["iscsiadm", "-m", "node", "-p", portal, "--targetname", self.iqn, "--logout"])
            utils.try_run(["iscsiadm", "-m", "node", "-p", portal, "--targetname", self.iqn, "-o", "delete"])
        LOG.info("Logged out of %s on all portals", self.iqn)

    def session_has_no_luns(self) -> bool:
        """
        True when a session to the target exists but exposes no LUNs.

        Returns False when there is no session or it cannot be inspected.
        """
        try:
            output = utils.run_command(["iscsiadm", "-m", "session", "-P", "3"]).stdout or ""
        except CommandError:
            return False

        blocks = re.split(r"(?m)^\s*Target:\s*", output)
        for block in blocks[1:]:
            name = block.split(None, 1)[0] if block.strip() else ""
            if name != self.iqn:
                continue
            return not _LUN_RE.search(block)
        return False

    def target_discoverable(self) -> bool:
        """True when sendtargets on the primary portal lists the target."""
        portal = portal_key(self.config.discovery_portal)
        try:
            lines = utils.run_lines(["iscsiadm", "-m", "discovery", "-t", "sendtargets", "-p", portal])
        except CommandError as e:
            LOG.debug("Discovery on %s failed: %s", portal, e.message)
            return False
        return any(line.split()[-1] == self.iqn for line in lines if line.split())

    def flush_multipath(self, device: str) -> None:
        """Flush the multipath map backing a SCSI device before it disappears."""
        if not self.config.use_multipath:
            return
        leaf = os.path.basename(os.path.realpath(device))
        try:
            result = utils.run_command(["/lib/udev/scsi_id", "-g", "-u", "-d", f"/dev/{leaf}"])
        except CommandError as e:
            LOG.debug("No SCSI id for %s: %s", leaf, e.message)
            return
        wwid = (result.stdout or "").strip()
        if wwid and utils.try_run(["multipath", "-f", wwid]):
            LOG.info("Flushed multipath map %s", wwid)
