"""
Export mapping management.

iSCSI volumes are exported as an extent plus a target-extent association
(the LUN). NVMe/TCP volumes are exported as a namespace in a subsystem.
Creation queries first and reuses what exists; deletion of something that
is already gone reports :attr:`DeleteOutcome.ABSENT` instead of failing.
"""

import re
import time
import uuid
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from oslo_log import log as logging

from truenas_block.client.api import TrueNASClient
from truenas_block.client.transports import classify_error
from truenas_block.configuration import TrueNASBlockConfig
from truenas_block.exceptions import (
    TargetNotFound,
    TrueNASAPIError,
    TrueNASResourceAlreadyExists,
    TrueNASResourceBusy,
    TrueNASResourceNotFound,
    TrueNASUnsupportedOperation,
)
from truenas_block.lib.validators import DEFAULT_NVME_PORT, parse_portal

LOG = logging.getLogger(__name__)


class DeleteOutcome(str, Enum):
    """Result of an idempotent delete."""

    DELETED = "deleted"
    ABSENT = "absent"
    IN_USE = "in-use"


def delete_idempotent(func: Callable[[], Any], what: str) -> DeleteOutcome:
    """Run a delete call and classify the outcome.

    Raises:
        TrueNASAPIError: Failures other than not-found and in-use
    """
    try:
        func()
    except TrueNASResourceNotFound:
        LOG.debug("%s already absent", what)
        return DeleteOutcome.ABSENT
    except TrueNASResourceBusy as e:
        LOG.warning("%s is in use: %s", what, e.message)
        return DeleteOutcome.IN_USE
    return DeleteOutcome.DELETED


def zvol_device_path(full_name: str) -> str:
    return f"zvol/{full_name}"


class IscsiMappingManager:
    """Extents and target-extent mappings for iSCSI volumes."""

    def __init__(self, client: TrueNASClient, config: TrueNASBlockConfig):
        self.client = client
        self.config = config

    # Targets

    def resolve_target_id(self) -> int:
        """
        Resolve the configured ``target_iqn`` to a target id.

        A target matches when its ``iqn`` equals the configured value, when
        ``<basename>:<name>`` does, or when the configured IQN ends with
        ``:<name>``.

        Raises:
            TargetNotFound: No target matches
        """
        want = self.config.target_iqn
        targets = self.client.query_targets()
        basename = self.client.iscsi_global_config().get("basename") or ""

        if not targets:
            raise TargetNotFound(
                "TrueNAS API returned no iSCSI targets "
                f"(iSCSI base name: {basename or '(unknown)'}, "
                f"discovery portal: {self.config.discovery_portal or '(none)'}). "
                "Ensure the iSCSI service is running and a target listens on the portal"
            )

        for target in targets:
            name = target.get("name") or ""
            if target.get("iqn") and target["iqn"] == want:
                return target["id"]
            if basename and name and f"{basename}:{name}" == want:
                return target["id"]
            if name and want.endswith(f":{name}"):
                return target["id"]

        available = ", ".join(
            f"{t.get('iqn') or (basename + ':' + (t.get('name') or '') if basename else t.get('name'))} "
            f"(id {t.get('id')})"
            for t in targets
        )
        raise TargetNotFound(
            f"Could not resolve iSCSI target for configured IQN {want} "
            f"(base name: {basename or '(not set)'}); available targets: {available}"
        )

    def target_name(self) -> str:
        """Short target name (the part after the last ':')."""
        return self.config.target_iqn.rsplit(":", 1)[-1]

    # Extents

    def find_extent(self, name: str) -> Optional[Dict[str, Any]]:
        for extent in self.client.query_extents():
            if extent.get("name") == name:
                return extent
        return None

    def find_extent_by_disk(self, full_name: str) -> Optional[Dict[str, Any]]:
        disk = zvol_device_path(full_name)
        for extent in self.client.query_extents():
            if extent.get("disk") == disk or extent.get("path") == disk:
                return extent
        return None

    def ensure_extent(self, zname: str, full_name: str) -> Tuple[Dict[str, Any], bool]:
        """
        Ensure an extent exists for a zvol.

        An extent with the same name and disk is reused. When the name is
        taken by another disk, a timestamp suffix is appended.

        Returns:
            Tuple of (extent, created)
        """
        disk = zvol_device_path(full_name)
        existing = self.find_extent_by_disk(full_name)
        if existing:
            LOG.debug("Reusing extent %s (id %s) for %s", existing.get("name"), existing.get("id"), disk)
            return existing, False

        name = zname
        if self.find_extent(name):
            name = f"{zname}-{int(time.time())}"
            if self.find_extent(name):
                name = f"{name}-{uuid.uuid4().hex[:6]}"
            LOG.info("Extent name %s is taken by another disk, using %s", zname, name)

        try:
            extent = self.client.create_extent(name, disk)
        except TrueNASResourceAlreadyExists:
            extent = self.find_extent_by_disk(full_name)
            if not extent:
                raise
            return extent, False
        LOG.info("Created iSCSI extent %s (id %s) for %s", name, extent.get("id"), disk)
        return extent, True

    # Mappings

    def find_mapping(self, target_id: int, extent_id: int) -> Optional[Dict[str, Any]]:
        for mapping in self.client.query_targetextents():
            if mapping.get("target") == target_id and mapping.get("extent") == extent_id:
                return mapping
        return None

    def ensure_mapping(self, target_id: int, extent_id: int, lunid: Optional[int] = None) -> int:
        """
        Ensure a target-extent mapping exists and return its LUN.

        An existing mapping is returned without any create call.
        """
        existing = self.find_mapping(target_id, extent_id)
        if existing:
            LOG.debug("Target-extent mapping exists for extent %s (LUN %s)", extent_id, existing.get("lunid"))
            return int(existing["lunid"])

        try:
            created = self.client.create_targetextent(target_id, extent_id, lunid)
        except TrueNASResourceAlreadyExists:
            created = None

        if created and created.get("lunid") is not None:
            lun = int(created["lunid"])
        else:
            mapping = self.find_mapping(target_id, extent_id)
            if not mapping:
                raise TrueNASAPIError(
                    f"Target-extent mapping for target {target_id} extent {extent_id} "
                    "was not found after creation"
                )
            lun = int(mapping["lunid"])
        LOG.info("Mapped extent %s to target %s as LUN %d", extent_id, target_id, lun)
        return lun

    def export(self, zname: str, full_name: str) -> int:
        """
        Export a zvol on the configured target.

        A mapping failure removes an extent created by this call.

        Returns:
            LUN number
        """
        target_id = self.resolve_target_id()
        extent, created = self.ensure_extent(zname, full_name)
        try:
            return self.ensure_mapping(target_id, extent["id"])
        except TrueNASAPIError:
            if created:
                LOG.warning("Mapping extent %s failed, removing extent", extent["id"])
                try:
                    self.delete_extent(extent["id"])
                except TrueNASAPIError as e:
                    LOG.error("Failed to clean up extent %s: %s", extent["id"], e.message)
            raise

    def current_lun(self, zname: str, full_name: Optional[str] = None) -> Optional[int]:
        """Return the LUN currently mapped for a zvol, None if unmapped."""
        extent = self.find_extent_by_disk(full_name) if full_name else None
        extent = extent or self.find_extent(zname)
        if not extent:
            return None
        mapping = self.find_mapping(self.resolve_target_id(), extent["id"])
        return int(mapping["lunid"]) if mapping else None

    def lookup(self, full_name: str) -> Tuple[Optional[Dict[str, Any]], List[Dict[str, Any]]]:
        """Return the extent of a zvol and every mapping referencing it."""
        extent = self.find_extent_by_disk(full_name)
        if not extent:
            return None, []
        mappings = [m for m in self.client.query_targetextents() if m.get("extent") == extent["id"]]
        return extent, mappings

    def target_mappings(self, target_id: Optional[int] = None) -> List[Dict[str, Any]]:
        if target_id is None:
            target_id = self.resolve_target_id()
        return [m for m in self.client.query_targetextents() if m.get("target") == target_id]

    def delete_mapping(self, mapping_id: int) -> DeleteOutcome:
        return delete_idempotent(
            lambda: self.client.delete_targetextent(mapping_id),
            f"Target-extent mapping {mapping_id}",
        )

    def delete_extent(self, extent_id: int) -> DeleteOutcome:
        return delete_idempotent(
            lambda: self.client.delete_extent(extent_id),
            f"Extent {extent_id}",
        )

    def delete_mappings(self, mapping_ids: Iterable[int]) -> Dict[int, DeleteOutcome]:
        return self._bulk_delete("iscsi.targetextent.delete", list(mapping_ids), self.delete_mapping)

    def delete_extents(self, extent_ids: Iterable[int]) -> Dict[int, DeleteOutcome]:
        return self._bulk_delete("iscsi.extent.delete", list(extent_ids), self.delete_extent)

    def _bulk_delete(
        self,
        method: str,
        ids: List[int],
        single: Callable[[int], DeleteOutcome],
    ) -> Dict[int, DeleteOutcome]:
        """Delete many objects with core.bulk, falling back to single calls."""
        outcomes: Dict[int, DeleteOutcome] = {}
        if not ids:
            return outcomes

        pending = list(ids)
        if self.client.bulk_supported and len(ids) > 1:
            try:
                results = self.client.bulk(method, [[i] for i in ids], f"Delete {len(ids)} x {method}")
            except (TrueNASAPIError, TrueNASUnsupportedOperation) as e:
                LOG.warning("Bulk %s failed, falling back to individual calls: %s", method, e.message)
            else:
                pending = []
                for object_id, item in zip(ids, results):
                    if item.ok:
                        outcomes[object_id] = DeleteOutcome.DELETED
                        continue
                    error = classify_error(item.error, method=method)
                    if isinstance(error, TrueNASResourceNotFound):
                        outcomes[object_id] = DeleteOutcome.ABSENT
                    elif isinstance(error, TrueNASResourceBusy):
                        outcomes[object_id] = DeleteOutcome.IN_USE
                    else:
                        pending.append(object_id)
                pending.extend(ids[len(results):])

        for object_id in pending:
            outcomes[object_id] = single(object_id)
        return outcomes


class NvmeMappingManager:
    """Subsystems and namespaces for NVMe/TCP volumes."""

    def __init__(self, client: TrueNASClient, config: TrueNASBlockConfig):
        self.client = client
        self.config = config

    @staticmethod
    def subsystem_name(nqn: str) -> str:
        """Short subsystem name derived from the NQN suffix."""
        name = nqn.rsplit(":", 1)[-1] if ":" in nqn else nqn
        return re.sub(r"[^a-zA-Z0-9_\-]", "_", name)

    def subsystem(self, retry: bool = True) -> Optional[Dict[str, Any]]:
        subsystems = self.client.query_subsystems(self.config.subsystem_nqn, retry=retry)
        return subsystems[0] if subsystems else None

    def ensure_subsystem(self) -> int:
        """
        Ensure the configured subsystem exists and return its id.

        A new subsystem gets one TCP port per configured portal. Port
        failures are logged and do not fail the call.
        """
        nqn = self.config.subsystem_nqn
        existing = self.subsystem()
        if existing:
            return existing["id"]

        LOG.info("Creating NVMe subsystem %s", nqn)
        created = self.client.create_subsystem(self.subsystem_name(nqn), nqn)
        subsys_id = created["id"] if isinstance(created, dict) else created

        for portal in self.config.all_portals:
            host, port = parse_portal(portal, DEFAULT_NVME_PORT)
            try:
                self.client.create_port(subsys_id, host, port)
            except TrueNASAPIError as e:
                LOG.warning("Failed to create NVMe port %s:%s for subsystem %s: %s", host, port, nqn, e.message)

        LOG.info("Created NVMe subsystem %s with id %s", nqn, subsys_id)
        return subsys_id

    def find_namespaces(self, subsys_id: int, full_name: str) -> List[Dict[str, Any]]:
        return self.client.query_namespaces(
            [["subsys_id", "=", subsys_id], ["device_path", "=", zvol_device_path(full_name)]]
        )

    def ensure_namespace(self, full_name: str, block_size: Optional[str] = None) -> Dict[str, Any]:
        """
        Ensure a namespace exists for a zvol.

        Returns:
            Namespace record carrying ``device_uuid``
        """
        subsys_id = self.ensure_subsystem()
        existing = self.find_namespaces(subsys_id, full_name)
        if existing and existing[0].get("device_uuid"):
            LOG.debug("Reusing namespace %s for %s", existing[0].get("id"), full_name)
            return existing[0]

        try:
            namespace = self.client.create_namespace(subsys_id, zvol_device_path(full_name), block_size)
        except TrueNASResourceAlreadyExists:
            namespace = None
        if not namespace or not namespace.get("device_uuid"):
            found = self.find_namespaces(subsys_id, full_name)
            namespace = found[0] if found else namespace
        if not namespace or not namespace.get("device_uuid"):
            raise TrueNASAPIError(f"Namespace for {full_name} was created without a device_uuid")

        LOG.info("Created NVMe namespace %s (uuid %s) for %s",
                 namespace.get("id"), namespace["device_uuid"], full_name)
        return namespace

    def namespace_for_uuid(self, device_uuid: str) -> Optional[Dict[str, Any]]:
        try:
            found = self.client.query_namespaces([["device_uuid", "=", device_uuid]])
        except TrueNASAPIError as e:
            LOG.debug("Namespace lookup for %s failed: %s", device_uuid, e.message)
            return None
        return found[0] if found else None

    def namespaces(self) -> List[Dict[str, Any]]:
        """Every namespace of the configured subsystem."""
        subsys = self.subsystem()
        if not subsys:
            return []
        result = []
        for namespace in self.client.query_namespaces():
            owner = namespace.get("subsys_id", namespace.get("subsys"))
            if isinstance(owner, dict):
                owner = owner.get("id")
            if owner == subsys["id"]:
                result.append(namespace)
        return result

    def namespace_count(self) -> int:
        return len(self.namespaces())

    def delete_namespaces(self, full_name: str) -> DeleteOutcome:
        """Delete every namespace backed by a zvol."""
        subsys = self.subsystem()
        if not subsys:
            return DeleteOutcome.ABSENT
        found = self.find_namespaces(subsys["id"], full_name)
        if not found:
            LOG.debug("No namespace for %s", full_name)
            return DeleteOutcome.ABSENT

        outcome = DeleteOutcome.ABSENT
        for namespace in found:
            result = delete_idempotent(
                lambda ns_id=namespace["id"]: self.client.delete_namespace(ns_id),
                f"Namespace {namespace['id']}",
            )
            if result == DeleteOutcome.IN_USE:
                return result
            if result == DeleteOutcome.DELETED:
                outcome = result
        return outcome
