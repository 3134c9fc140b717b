"""
Volume lifecycle orchestration.

:class:`VolumeOrchestrator` composes the API client, the mapping managers,
the session managers and the device locators into the alloc, resize, clone,
snapshot and free flows. Internal steps report typed outcomes; they are
turned into exceptions here, once.
"""

import time
from typing import Callable, Dict, List, Optional, Union

from oslo_log import log as logging

from truenas_block.client.api import TrueNASClient
from truenas_block.client.retry import backoff_delay
from truenas_block.client.transports import classify_error
from truenas_block.configuration import TrueNASBlockConfig
from truenas_block.exceptions import (
    InvalidVolumeName,
    ProtectedVolumeError,
    ShrinkNotSupported,
    TrueNASAPIError,
    TrueNASBlockException,
    TrueNASJobFailed,
    TrueNASResourceAlreadyExists,
    TrueNASResourceBusy,
    TrueNASResourceNotFound,
    TrueNASTransientError,
    TrueNASUnsupportedOperation,
    ValidationError,
    VolumeDeleteError,
)
from truenas_block.initiator.devices import IscsiDeviceLocator, NvmeDeviceLocator
from truenas_block.initiator.iscsi import IscsiSessionManager, SessionReport
from truenas_block.initiator.nvme import NvmeSessionManager
from truenas_block.lib import utils, validators
from truenas_block.lib.naming import NameAllocator, VolumeName, owner_of
from truenas_block.lib.sizing import align_size, normalize_blocksize
from truenas_block.mapping import DeleteOutcome, IscsiMappingManager, NvmeMappingManager, zvol_device_path
from truenas_block.models import (
    DatasetRecord,
    FreeOutcome,
    StorageStatus,
    Volume,
    VolumeInfo,
    VolumeState,
)
from truenas_block.preflight import PreflightReport, PreflightValidator

LOG = logging.getLogger(__name__)

WEIGHT_VOLUME_SIZE = 1024**3
WEIGHT_VOLUME_BLOCKSIZE = "64K"
WEIGHT_VOLUME_LUN = 0
TARGET_SETTLE_SECONDS = 2
LOGOUT_SETTLE_SECONDS = 1

_NEWER_SNAPSHOTS = "more recent snapshots"


class VolumeOrchestrator:
    """Provision and tear down zvol-backed block volumes.

    One orchestrator may be shared by concurrent callers working on distinct
    volumes. Operations on the same volume are not serialized; the
    appliance's uniqueness checks reject the loser, and that rejection is
    treated as "already done".
    """

    def __init__(
        self,
        config: TrueNASBlockConfig,
        client: Optional[TrueNASClient] = None,
        iscsi_sessions: Optional[IscsiSessionManager] = None,
        nvme_sessions: Optional[NvmeSessionManager] = None,
        iscsi_devices: Optional[IscsiDeviceLocator] = None,
        nvme_devices: Optional[NvmeDeviceLocator] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.time,
    ):
        self.config = config
        self.client = client or TrueNASClient(config)
        self.iscsi = IscsiMappingManager(self.client, config)
        self.nvme = NvmeMappingManager(self.client, config)
        self.validator = PreflightValidator(self.client, config, iscsi=self.iscsi, nvme=self.nvme)
        self.iscsi_sessions = iscsi_sessions or IscsiSessionManager(config)
        self.nvme_sessions = nvme_sessions or NvmeSessionManager(config)
        self.iscsi_devices = iscsi_devices or IscsiDeviceLocator(config, self.iscsi_sessions)
        self.nvme_devices = nvme_devices or NvmeDeviceLocator(
            config, self.nvme_sessions, self.nvme.namespace_for_uuid
        )
        self.names = NameAllocator(self._existing_names, dataset=config.dataset)
        self._sleep = sleep
        self._clock = clock

    # Helpers

    def full_name(self, zname: str) -> str:
        return f"{self.config.dataset}/{zname}"

    def _existing_names(self) -> List[str]:
        depth = self.config.dataset.count("/") + 1
        return [r.name for r in self.client.query_datasets(self.config.dataset) if r.id.count("/") == depth]

    def _parse(self, volname: str) -> VolumeName:
        name = VolumeName.parse(volname)
        if name.is_nvme != self.config.is_nvme:
            raise InvalidVolumeName(
                f"Volume '{volname}' does not belong to transport_mode={self.config.transport_mode}"
            )
        return name

    def _dataset(self, volname: str, full_name: str) -> DatasetRecord:
        record = self.client.get_dataset(full_name)
        if record is None:
            raise TrueNASResourceNotFound(f"Volume {volname}: dataset {full_name} does not exist")
        return record

    def _ensure_sessions(self) -> SessionReport:
        if self.config.is_nvme:
            return self.nvme_sessions.ensure_connected()
        return self.iscsi_sessions.ensure_sessions()

    def _rescan_initiator(self) -> None:
        if self.config.is_nvme:
            self.nvme_sessions.rescan_controllers()
            utils.udev_settle()
        else:
            self.iscsi_sessions.rescan()

    def _export(self, volume: Volume) -> VolumeName:
        if self.config.is_nvme:
            namespace = self.nvme.ensure_namespace(volume.full_name)
            name = VolumeName(zname=volume.zname, ns_uuid=namespace["device_uuid"])
        else:
            lun = self.iscsi.export(volume.zname, volume.full_name)
            name = VolumeName(zname=volume.zname, lun=lun)
        volume.export_identity = name.ns_uuid or str(name.lun)
        volume.advance(VolumeState.EXPORTED)
        return name

    def _wait_for_device(self, name: VolumeName, full_name: str) -> str:
        if name.is_nvme:
            return self.nvme_devices.wait_for_device(name.ns_uuid, dataset=full_name)
        return self.iscsi_devices.wait_for_device(name.lun, dataset=full_name)

    def _discard_dataset(self, full_name: str) -> None:
        """Remove a dataset created by a flow that failed later on."""
        try:
            self.client.delete_dataset(full_name, recursive=True, force=True)
            LOG.info("Removed %s after the failed operation", full_name)
        except TrueNASAPIError as e:
            LOG.error("Failed to clean up %s: %s", full_name, e.message)

    # Pre-flight

    def preflight(self, size_bytes: Optional[int] = None) -> PreflightReport:
        """Run the allocation checks without changing anything."""
        return self.validator.check_allocation(size_bytes)

    # Allocation

    def _create_zvol(self, volume: Volume, zname: str, explicit: bool) -> bool:
        """
        Create the zvol for a candidate name.

        Returns:
            True when the dataset was created by this call, False when an
            existing dataset is reused
        """
        full_name = self.full_name(zname)
        attempts = self.config.api_retry_max + 1
        sent = False
        for attempt in range(1, attempts + 1):
            try:
                self.client.create_zvol(full_name, volume.size, volume.blocksize, volume.sparse, retry=False)
                return True
            except TrueNASResourceAlreadyExists:
                # An earlier attempt of this call may have landed before its response was lost
                if sent and self.client.get_dataset(full_name) is not None:
                    LOG.info("Dataset %s was created by an earlier attempt, continuing with it", full_name)
                    return True
                if not explicit or self.client.get_dataset(full_name) is None:
                    raise
                LOG.info("Dataset %s already exists, continuing with it", full_name)
                return False
            except TrueNASTransientError as e:
                sent = True
                if self.client.get_dataset(full_name) is not None:
                    LOG.info("Create of %s failed with '%s' but the dataset exists, continuing", full_name, e.message)
                    return True
                if attempt >= attempts:
                    raise
                delay = backoff_delay(attempt, self.config.api_retry_delay)
                LOG.warning(
                    "Create of %s failed (attempt %d/%d), retrying in %.1fs: %s",
                    full_name,
                    attempt,
                    attempts,
                    delay,
                    e.message,
                )
                self._sleep(delay)
            except TrueNASJobFailed as e:
                if self.client.get_dataset(full_name) is None:
                    raise
                LOG.warning("Create of %s reported '%s' but the dataset exists, continuing", full_name, e.message)
                return False

    def allocate(self, owner_id: Union[int, str], requested_bytes: int, name: Optional[str] = None) -> str:
        """
        Create, export and attach a new volume.

        Args:
            owner_id: Owner of the volume (the ``<owner>`` in ``vm-<owner>-disk-<n>``)
            requested_bytes: Requested size; rounded up to the block size
            name: Explicit zvol name; an existing zvol of that name is reused

        Returns:
            Volume identity (``vol-<zname>-lun<N>`` or ``vol-<zname>-ns<uuid>``)

        Raises:
            PreflightValidationError: A pre-flight check failed
            DeviceNotReady: The volume exists remotely but no local device appeared
        """
        owner = str(owner_id)
        volume = Volume(
            zname=name or "",
            dataset=self.config.dataset,
            owner=owner,
            blocksize=normalize_blocksize(self.config.zvol_blocksize),
            sparse=self.config.sparse,
        )

        volume.size = align_size(requested_bytes, volume.blocksize)
        volume.advance(VolumeState.ALIGNED)

        self.preflight(volume.size).raise_for_errors()
        volume.advance(VolumeState.VALIDATED)

        zname, created = self.names.allocate(
            owner,
            lambda candidate: self._create_zvol(volume, candidate, explicit=bool(name)),
            name=name,
        )
        volume.zname = zname
        volume.advance(VolumeState.REMOTE_CREATED)
        LOG.info("Created zvol %s (%d bytes, volblocksize %s)", volume.full_name, volume.size, volume.blocksize)

        try:
            volname = self._export(volume)
        except TrueNASBlockException:
            if created:
                self._discard_dataset(volume.full_name)
            raise

        self._ensure_sessions()
        volume.advance(VolumeState.SESSION_READY)

        self._rescan_initiator()
        device = self._wait_for_device(volname, volume.full_name)
        volume.advance(VolumeState.DEVICE_RESOLVED)

        volume.advance(VolumeState.READY)
        LOG.info("Volume %s is ready at %s", volname, device)
        return str(volname)

    # Resize

    def resize(self, volname: str, new_bytes: int) -> int:
        """
        Grow a volume.

        Returns:
            New size in bytes (aligned to the volume's block size)

        Raises:
            ShrinkNotSupported: The new size is not larger than the current one
            InsufficientSpace: Not enough free space on the parent dataset
        """
        name = self._parse(volname)
        full_name = self.full_name(name.zname)
        record = self._dataset(volname, full_name)
        volume = Volume(
            zname=name.zname,
            dataset=self.config.dataset,
            size=record.volsize,
            blocksize=record.volblocksize or normalize_blocksize(self.config.zvol_blocksize),
            state=VolumeState.READY,
        )

        aligned = align_size(new_bytes, volume.blocksize)
        if aligned <= record.volsize:
            raise ShrinkNotSupported(record.volsize, new_bytes)

        self.validator.check_resize(full_name, record.volsize, aligned)

        self.client.update_volsize(full_name, aligned)
        volume.size = aligned
        volume.advance(VolumeState.REMOTE_RESIZED)

        self._rescan_initiator()
        volume.advance(VolumeState.READY)
        LOG.info("Resized %s from %d to %d bytes", full_name, record.volsize, aligned)
        return aligned

    # Clone

    def clone(
        self,
        source_volname: str,
        owner_id: Union[int, str],
        snapshot: Optional[str] = None,
        name: Optional[str] = None,
    ) -> str:
        """
        Clone a volume from a snapshot and export the clone.

        Without ``snapshot`` a ``clone-<epoch>`` snapshot of the source is
        taken first.

        Returns:
            Volume identity of the clone
        """
        source = self._parse(source_volname)
        source_full = self.full_name(source.zname)
        self._dataset(source_volname, source_full)

        if not snapshot:
            snapshot = f"clone-{int(self._clock())}"
            self.client.create_snapshot(source_full, snapshot)
            LOG.info("Created snapshot %s@%s for clone", source_full, snapshot)

        owner = str(owner_id)
        zname, _ = self.names.allocate(
            owner,
            lambda candidate: self.client.clone_snapshot(source_full, snapshot, self.full_name(candidate)),
            name=name,
        )
        volume = Volume(zname=zname, dataset=self.config.dataset, owner=owner, state=VolumeState.READY)
        volume.advance(VolumeState.CLONED)
        LOG.info("Cloned %s@%s to %s", source_full, snapshot, volume.full_name)

        try:
            volname = self._export(volume)
        except TrueNASBlockException as e:
            LOG.error("Export of clone %s failed: %s", volume.full_name, e)
            self._discard_dataset(volume.full_name)
            raise
        return str(volname)

    # Snapshots

    def _snapshot_target(self, volname: str, snapshot: str) -> str:
        try:
            validators.validate_name(snapshot)
        except ValueError as e:
            raise ValidationError(f"Invalid snapshot name '{snapshot}': {e}")
        return self.full_name(self._parse(volname).zname)

    def snapshot_create(self, volname: str, snapshot: str) -> None:
        full_name = self._snapshot_target(volname, snapshot)
        self.client.create_snapshot(full_name, snapshot)
        LOG.info("Created snapshot %s@%s", full_name, snapshot)

    def snapshot_delete(self, volname: str, snapshot: str) -> None:
        """Delete a snapshot; deleting an absent snapshot succeeds."""
        full_name = self._snapshot_target(volname, snapshot)
        try:
            self.client.delete_snapshot(full_name, snapshot)
        except TrueNASResourceNotFound:
            LOG.debug("Snapshot %s@%s already absent", full_name, snapshot)
            return
        LOG.info("Deleted snapshot %s@%s", full_name, snapshot)

    def snapshot_rollback(self, volname: str, snapshot: str) -> None:
        """
        Roll a volume back to a snapshot.

        When newer snapshots block the rollback it is retried recursively,
        destroying them.
        """
        full_name = self._snapshot_target(volname, snapshot)
        try:
            self.client.rollback_snapshot(full_name, snapshot)
        except TrueNASAPIError as e:
            if _NEWER_SNAPSHOTS not in e.message.lower():
                raise
            LOG.warning("Newer snapshots exist after %s@%s, rolling back recursively", full_name, snapshot)
            try:
                self.client.rollback_snapshot(full_name, snapshot, recursive=True)
            except TrueNASAPIError as retry_error:
                snapshots = self.client.list_snapshots(full_name)
                target = next((s for s in snapshots if s.name == snapshot), None)
                newer = [s.name for s in snapshots if target and s.ctime > target.ctime]
                raise TrueNASAPIError(
                    f"Cannot roll back {full_name} to {snapshot}: newer snapshots exist "
                    f"({', '.join(newer) or 'unknown'}): {retry_error.message}",
                    method="zfs.snapshot.rollback",
                )
        LOG.info("Rolled back %s to %s", full_name, snapshot)
        self._rescan_initiator()

    def snapshot_list(self, volname: str) -> Dict[str, int]:
        """Return snapshot name to creation time (epoch seconds)."""
        full_name = self.full_name(self._parse(volname).zname)
        return {s.name: s.ctime for s in self.client.list_snapshots(full_name)}

    def bulk_delete_snapshots(self, volname: str, snapshots: List[str]) -> Dict[str, Optional[str]]:
        """
        Delete many snapshots of one volume.

        Returns:
            Snapshot name to error message (None on success or when absent)
        """
        full_name = self.full_name(self._parse(volname).zname)
        results: Dict[str, Optional[str]] = {}
        pending = list(snapshots)

        if self.client.bulk_supported and len(snapshots) > 1:
            try:
                items = self.client.bulk(
                    "zfs.snapshot.delete",
                    [[f"{full_name}@{snap}"] for snap in snapshots],
                    f"Delete {len(snapshots)} snapshots of {full_name}",
                )
            except (TrueNASAPIError, TrueNASUnsupportedOperation) as e:
                LOG.warning("Bulk snapshot delete failed, deleting one by one: %s", e.message)
            else:
                pending = list(snapshots[len(items):])
                for snap, item in zip(snapshots, items):
                    if item.ok or isinstance(classify_error(item.error), TrueNASResourceNotFound):
                        results[snap] = None
                    else:
                        results[snap] = item.error

        for snap in pending:
            try:
                self.snapshot_delete(volname, snap)
                results[snap] = None
            except TrueNASBlockException as e:
                results[snap] = e.message
        return results

    # Free

    def _logout_if_last(self) -> bool:
        """Drop local sessions when at most one LUN or namespace remains."""
        if self.config.is_nvme:
            remaining = self.nvme.namespace_count()
        else:
            try:
                remaining = len(self.iscsi.target_mappings())
            except TrueNASBlockException as e:
                LOG.debug("Could not count target mappings: %s", e.message)
                remaining = 0

        if remaining > 1:
            LOG.info("Skipping logout: %d other exports are active on the target", remaining)
            return False

        if self.config.is_nvme:
            self.nvme_sessions.disconnect()
        else:
            self.iscsi_sessions.logout_all()
        self._sleep(LOGOUT_SETTLE_SECONDS)
        utils.udev_settle()
        return True

    def _delete_in_use(self, delete: Callable[[], DeleteOutcome], what: str, force: bool) -> DeleteOutcome:
        outcome = delete()
        if outcome != DeleteOutcome.IN_USE:
            return outcome
        if not force:
            LOG.warning("%s is in use and force_delete_on_inuse is disabled", what)
            return outcome
        if self._logout_if_last():
            outcome = delete()
        if outcome == DeleteOutcome.IN_USE:
            LOG.warning("%s is still in use (possibly by another host)", what)
        return outcome

    def _flush_multipath(self, lun: Optional[int]) -> None:
        if not self.config.use_multipath or lun is None:
            return
        device = self.iscsi_devices.find_device(lun)
        if device:
            self.iscsi_sessions.flush_multipath(device)

    def _remove_iscsi_export(self, volume: Volume, lun: Optional[int]) -> bool:
        """Remove the mappings and the extent of a zvol. Returns True if an extent existed."""
        force = self.config.force_delete_on_inuse
        extent, mappings = self.iscsi.lookup(volume.full_name)
        self._flush_multipath(lun)

        for mapping in mappings:
            self._delete_in_use(
                lambda mapping_id=mapping["id"]: self.iscsi.delete_mapping(mapping_id),
                f"Target-extent mapping {mapping['id']}",
                force,
            )
        volume.advance(VolumeState.MAPPING_REMOVED)

        if extent is not None:
            self._delete_in_use(
                lambda: self.iscsi.delete_extent(extent["id"]),
                f"Extent {extent['id']}",
                force,
            )
        volume.advance(VolumeState.EXPORT_REMOVED)
        return extent is not None

    def _remove_nvme_export(self, volume: Volume) -> bool:
        outcome = self._delete_in_use(
            lambda: self.nvme.delete_namespaces(volume.full_name),
            f"Namespace of {volume.full_name}",
            self.config.force_delete_on_inuse,
        )
        volume.advance(VolumeState.MAPPING_REMOVED)
        volume.advance(VolumeState.EXPORT_REMOVED)
        return outcome != DeleteOutcome.ABSENT

    def _delete_volume_dataset(self, volume: Volume) -> bool:
        """
        Delete the zvol with its snapshots.

        Returns:
            True if the dataset was deleted, False if it did not exist

        Raises:
            VolumeDeleteError: Child datasets exist, or the delete failed
        """
        full_name = volume.full_name
        if self.client.get_dataset(full_name) is None:
            return False

        children = [d.id for d in self.client.query_datasets(full_name)]
        if children:
            raise VolumeDeleteError(
                f"Refusing recursive delete of {full_name}: it has child datasets {', '.join(children)}"
            )

        try:
            outcome = self._delete_in_use(
                lambda: self._delete_dataset_once(full_name),
                f"Dataset {full_name}",
                force=True,
            )
        except TrueNASAPIError as e:
            raise VolumeDeleteError(f"Failed to delete dataset {full_name}: {e.message}")
        if outcome == DeleteOutcome.IN_USE:
            raise VolumeDeleteError(f"Failed to delete dataset {full_name}: device is busy")

        volume.advance(VolumeState.REMOTE_DELETED)
        LOG.info("Deleted dataset %s", full_name)
        return outcome == DeleteOutcome.DELETED

    def _delete_dataset_once(self, full_name: str) -> DeleteOutcome:
        try:
            self.client.delete_dataset(full_name, recursive=True, force=True)
        except TrueNASResourceNotFound:
            return DeleteOutcome.ABSENT
        except TrueNASResourceBusy:
            return DeleteOutcome.IN_USE
        return DeleteOutcome.DELETED

    def _after_iscsi_free(self) -> None:
        try:
            self.ensure_target_visible()
        except TrueNASBlockException as e:
            LOG.warning("Target visibility check after free failed: %s", e)

        if self.config.logout_on_free and self.iscsi_sessions.session_has_no_luns():
            self.iscsi_sessions.logout_all()

    def free(self, volname: str) -> FreeOutcome:
        """
        Remove a volume: export mapping, export object, then the dataset.

        Freeing a volume that no longer exists succeeds with
        :attr:`FreeOutcome.ALREADY_ABSENT`.

        Raises:
            ProtectedVolumeError: The volume is the weight volume
            VolumeDeleteError: The dataset could not be deleted
        """
        outcome = self._free(volname)
        if not self.config.is_nvme:
            self._after_iscsi_free()
        return outcome

    def _free(self, volname: str, export_removed: bool = False) -> FreeOutcome:
        name = self._parse(volname)
        if name.zname == self.config.weight_volume_name:
            raise ProtectedVolumeError(
                f"Refusing to free {volname}: {name.zname} is the weight volume keeping the target discoverable"
            )
        volume = Volume(zname=name.zname, dataset=self.config.dataset, state=VolumeState.READY)

        if export_removed:
            existed = False
            volume.advance(VolumeState.MAPPING_REMOVED)
            volume.advance(VolumeState.EXPORT_REMOVED)
        elif self.config.is_nvme:
            existed = self._remove_nvme_export(volume)
        else:
            existed = self._remove_iscsi_export(volume, name.lun)

        deleted = self._delete_volume_dataset(volume)
        if not (existed or deleted):
            LOG.info("Volume %s does not exist, nothing to free", volname)
            return FreeOutcome.ALREADY_ABSENT
        LOG.info("Freed volume %s", volname)
        return FreeOutcome.FREED

    def free_many(self, volnames: List[str]) -> Dict[str, Union[FreeOutcome, TrueNASBlockException]]:
        """
        Free several volumes, batching iSCSI mapping and extent deletes.

        Returns:
            Volume identity to :class:`FreeOutcome`, or the exception that
            stopped that volume
        """
        results: Dict[str, Union[FreeOutcome, TrueNASBlockException]] = {}
        if self.config.is_nvme:
            for volname in volnames:
                try:
                    results[volname] = self._free(volname)
                except TrueNASBlockException as e:
                    LOG.error("Failed to free %s: %s", volname, e)
                    results[volname] = e
            return results

        exports: Dict[str, bool] = {}
        mapping_ids: List[int] = []
        extent_ids: List[int] = []
        for volname in volnames:
            try:
                name = self._parse(volname)
                if name.zname == self.config.weight_volume_name:
                    raise ProtectedVolumeError(f"Refusing to free the weight volume {volname}")
                extent, mappings = self.iscsi.lookup(self.full_name(name.zname))
            except TrueNASBlockException as e:
                results[volname] = e
                continue
            self._flush_multipath(name.lun)
            mapping_ids.extend(m["id"] for m in mappings)
            if extent is not None:
                extent_ids.append(extent["id"])
            exports[volname] = extent is not None

        if mapping_ids:
            self.iscsi.delete_mappings(mapping_ids)
        if extent_ids:
            self.iscsi.delete_extents(extent_ids)

        for volname, had_export in exports.items():
            try:
                outcome = self._free(volname, export_removed=True)
            except TrueNASBlockException as e:
                LOG.error("Failed to free %s: %s", volname, e)
                results[volname] = e
                continue
            if had_export:
                outcome = FreeOutcome.FREED
            results[volname] = outcome

        self._after_iscsi_free()
        return results

    # Listing and status

    def list_volumes(self, owner: Optional[str] = None) -> List[VolumeInfo]:
        """List the exported volumes, optionally only those of ``owner``."""
        try:
            records = {r.id: r for r in self.client.query_datasets(self.config.dataset)}
        except TrueNASAPIError as e:
            LOG.warning("Batched dataset query failed, falling back to per-volume lookups: %s", e.message)
            records = {}

        if self.config.is_nvme:
            exports = [
                (ns.get("device_path") or "", VolumeName(zname="", ns_uuid=ns["device_uuid"]))
                for ns in self.nvme.namespaces()
                if ns.get("device_uuid")
            ]
        else:
            extents = {e["id"]: e for e in self.client.query_extents()}
            exports = []
            for mapping in self.iscsi.target_mappings():
                extent = extents.get(mapping.get("extent"))
                if extent is None:
                    continue
                disk = extent.get("disk") or extent.get("path") or ""
                exports.append((disk, VolumeName(zname="", lun=int(mapping["lunid"]))))

        prefix = zvol_device_path(self.config.dataset) + "/"
        volumes = []
        for device_path, export in exports:
            if not device_path.startswith(prefix):
                continue
            zname = device_path[len(prefix):]
            if "/" in zname or zname == self.config.weight_volume_name:
                continue
            volume_owner = owner_of(zname)
            if owner is not None and volume_owner != str(owner):
                continue

            full_name = self.full_name(zname)
            record = records.get(full_name) or self.client.get_dataset(full_name)
            if record is None:
                LOG.debug("Skipping stale export of %s", full_name)
                continue

            volname = VolumeName(zname=zname, lun=export.lun, ns_uuid=export.ns_uuid)
            volumes.append(
                VolumeInfo(
                    volname=str(volname),
                    zname=zname,
                    owner=volume_owner,
                    size=record.volsize,
                    export_identity=export.ns_uuid or str(export.lun),
                    ctime=record.creation or int(self._clock()),
                )
            )
        return volumes

    def size(self, volname: str) -> int:
        name = self._parse(volname)
        return self._dataset(volname, self.full_name(name.zname)).volsize

    def status(self) -> StorageStatus:
        """
        Capacity of the parent dataset.

        With a quota, total is the quota and available is what the quota
        leaves; otherwise total is used plus available. Errors mark the
        storage inactive.
        """
        try:
            record = self.client.get_dataset(self.config.dataset)
            if record is None:
                raise TrueNASResourceNotFound(f"Dataset {self.config.dataset} does not exist")
        except TrueNASBlockException as e:
            LOG.warning("Storage on %s marked inactive: %s", self.config.dataset, e)
            return StorageStatus(active=False)

        used = record.written or record.used
        if record.quota > 0:
            total = record.quota
            available = max(record.quota - used, 0)
        else:
            available = record.available
            total = used + available
        return StorageStatus(total=total, available=available, used=used, active=True)

    # Activation and device access

    def ensure_target_visible(self) -> bool:
        """
        Keep the weight volume mapped so the iSCSI target stays discoverable.

        Returns:
            True if the target is discoverable afterwards

        Raises:
            TargetNotFound: The configured target does not exist
        """
        target_id = self.iscsi.resolve_target_id()
        weight = self.config.weight_volume_name
        full_name = self.full_name(weight)

        if self.client.get_dataset(full_name) is None:
            LOG.info("Creating weight volume %s", full_name)
            try:
                self.client.create_zvol(full_name, WEIGHT_VOLUME_SIZE, WEIGHT_VOLUME_BLOCKSIZE, sparse=True)
            except TrueNASResourceAlreadyExists:
                LOG.debug("Weight volume %s was created concurrently", full_name)

        extent, _ = self.iscsi.ensure_extent(weight, full_name)
        if self.iscsi.find_mapping(target_id, extent["id"]) is None:
            try:
                self.iscsi.ensure_mapping(target_id, extent["id"], lunid=WEIGHT_VOLUME_LUN)
            except TrueNASAPIError as e:
                LOG.warning("Failed to map weight extent: %s", e.message)

        self._sleep(TARGET_SETTLE_SECONDS)
        if self.iscsi_sessions.target_discoverable():
            LOG.info("Target %s is discoverable", self.config.target_iqn)
            return True
        LOG.warning("Target %s is not discoverable despite the weight volume", self.config.target_iqn)
        return False

    def activate(self) -> bool:
        """
        Prepare the host for this storage. Safe to call repeatedly.

        Raises:
            InitiatorError: nvme-cli is missing (NVMe/TCP only)
        """
        if self.config.is_nvme:
            self.nvme_sessions.check_cli()
            try:
                self.nvme.ensure_subsystem()
                self.nvme_sessions.ensure_connected()
            except TrueNASBlockException as e:
                LOG.warning("NVMe/TCP activation for %s incomplete: %s", self.config.subsystem_nqn, e)
            return True

        try:
            self.ensure_target_visible()
        except TrueNASBlockException as e:
            LOG.warning("Target visibility check failed: %s", e)
        try:
            self.iscsi_sessions.ensure_sessions()
        except TrueNASBlockException as e:
            LOG.warning("iSCSI login to %s failed: %s", self.config.target_iqn, e)
        return True

    def path(self, volname: str) -> str:
        """
        Return the local device path of a volume, connecting sessions first.

        Raises:
            DeviceNotReady: No local device appeared
        """
        name = self._parse(volname)
        full_name = self.full_name(name.zname)
        self._ensure_sessions()

        if name.is_nvme:
            return self.nvme_devices.wait_for_device(name.ns_uuid, dataset=full_name)

        device = self.iscsi_devices.find_device(name.lun)
        if device:
            return device

        current = self.iscsi.current_lun(name.zname, full_name)
        if current is not None and current != name.lun:
            LOG.info("LUN of %s moved from %s to %d", name.zname, name.lun, current)
            return self.iscsi_devices.wait_for_device(current, dataset=full_name)
        return self.iscsi_devices.wait_for_device(name.lun, dataset=full_name)
