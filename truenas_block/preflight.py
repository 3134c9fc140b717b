"""
Pre-flight validation run before any remote mutation.
"""

from dataclasses import dataclass, field
from typing import List, Optional

from oslo_log import log as logging

from truenas_block.client.api import TrueNASClient
from truenas_block.configuration import TrueNASBlockConfig
from truenas_block.exceptions import (
    InsufficientSpace,
    PreflightValidationError,
    TargetNotFound,
    TrueNASAPIError,
    TrueNASBlockException,
)
from truenas_block.lib.sizing import format_bytes
from truenas_block.mapping import IscsiMappingManager, NvmeMappingManager
from truenas_block.models import DatasetRecord

LOG = logging.getLogger(__name__)

SPACE_OVERHEAD = 1.2
RESIZE_HEADROOM = 0.8


@dataclass
class PreflightReport:
    """Ordered list of failed checks; empty when every check passed."""

    errors: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors

    def add(self, message: str) -> None:
        self.errors.append(message)

    def raise_for_errors(self) -> None:
        if self.errors:
            raise PreflightValidationError(self.errors)


class PreflightValidator:
    """Connectivity, service, capacity and target checks.

    Every call is a single attempt so that an unreachable appliance fails the
    check quickly instead of walking through the retry schedule.
    """

    def __init__(
        self,
        client: TrueNASClient,
        config: TrueNASBlockConfig,
        iscsi: Optional[IscsiMappingManager] = None,
        nvme: Optional[NvmeMappingManager] = None,
    ):
        self.client = client
        self.config = config
        self.iscsi = iscsi or IscsiMappingManager(client, config)
        self.nvme = nvme or NvmeMappingManager(client, config)

    def check_allocation(self, size_bytes: Optional[int] = None) -> PreflightReport:
        """
        Check that a volume of ``size_bytes`` can be allocated.

        Args:
            size_bytes: Aligned size of the new volume, or None to skip the capacity check

        Returns:
            PreflightReport with failures in check order
        """
        report = PreflightReport()
        dataset = self.config.dataset

        # API reachable
        try:
            if not self.client.ping(retry=False):
                report.add("TrueNAS API is unreachable: core.ping returned no response")
        except TrueNASAPIError as e:
            report.add(f"TrueNAS API is unreachable: {e.message}")

        # Transport service running
        service = "nvmet" if self.config.is_nvme else "iscsitarget"
        label = "NVMe-oF" if self.config.is_nvme else "iSCSI"
        try:
            state = self.client.service_state(service, retry=False)
            if state is None:
                report.add(f"Unable to query {label} service status")
            elif state != "RUNNING":
                report.add(f"TrueNAS {label} service is not running (state: {state})")
        except TrueNASAPIError as e:
            report.add(f"Cannot verify {label} service status: {e.message}")

        # The parent dataset is fetched once for the capacity and existence checks
        parent: Optional[DatasetRecord] = None
        parent_error: Optional[str] = None
        try:
            parent = self.client.get_dataset(dataset, retry=False)
        except TrueNASAPIError as e:
            parent_error = e.message

        if size_bytes is not None:
            if parent_error:
                report.add(f"Cannot verify available space: {parent_error}")
            elif parent is not None:
                try:
                    self.check_capacity(size_bytes, parent)
                except InsufficientSpace as e:
                    report.add(e.message)

        # Target or subsystem exists
        if self.config.is_nvme:
            try:
                if self.nvme.subsystem(retry=False) is None:
                    report.add(
                        f"NVMe subsystem not found: {self.config.subsystem_nqn} "
                        "(it will be auto-created during allocation)"
                    )
            except TrueNASAPIError as e:
                LOG.info("NVMe subsystem pre-flight check skipped: %s", e.message)
        else:
            try:
                self.iscsi.resolve_target_id()
            except TargetNotFound as e:
                report.add(f"iSCSI target not found: {e.message}")
            except TrueNASAPIError as e:
                report.add(f"Cannot verify iSCSI target: {e.message}")

        # Parent dataset exists
        if parent_error:
            report.add(f"Cannot verify parent dataset: {parent_error}")
        elif parent is None:
            report.add(f"Parent dataset does not exist: {dataset}")

        for error in report.errors:
            LOG.warning("Pre-flight check failed: %s", error)
        return report

    def check_capacity(self, size_bytes: int, parent: DatasetRecord) -> None:
        """
        Require ``size_bytes`` plus overhead to fit into the parent's free space.

        Raises:
            InsufficientSpace: Not enough free space
        """
        required = int(size_bytes * SPACE_OVERHEAD)
        if parent.available < required:
            raise InsufficientSpace(
                f"Insufficient space on dataset '{parent.id}': need {format_bytes(required)} "
                f"(with 20% overhead), have {format_bytes(parent.available)} available"
            )

    def check_resize(self, full_name: str, current: int, requested: int) -> None:
        """
        Check that a volume may grow from ``current`` to ``requested`` bytes.

        Raises:
            InsufficientSpace: The growth exceeds 80% of the parent's free space
            TrueNASBlockException: The parent dataset is missing
        """
        parent = self.client.get_dataset(self.config.dataset, retry=False)
        if parent is None:
            raise TrueNASBlockException(f"Parent dataset does not exist: {self.config.dataset}")

        delta = requested - current
        if delta > parent.available * RESIZE_HEADROOM:
            raise InsufficientSpace(
                f"Insufficient space to grow {full_name} by {format_bytes(delta)}: "
                f"{format_bytes(parent.available)} available on '{parent.id}' "
                f"(at most {int(RESIZE_HEADROOM * 100)}% may be used)"
            )
