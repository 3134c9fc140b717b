"""
Unit tests for export mapping management.
"""

from unittest.mock import patch

import pytest

from truenas_block.exceptions import (
    TargetNotFound,
    TrueNASAPIError,
    TrueNASResourceAlreadyExists,
    TrueNASResourceBusy,
    TrueNASResourceNotFound,
    TrueNASUnsupportedOperation,
)
from truenas_block.mapping import DeleteOutcome, IscsiMappingManager, NvmeMappingManager
from truenas_block.models import BulkResult

DISK = "zvol/tank/vms/vm-100-disk-0"


@pytest.fixture
def iscsi(mock_client, config):
    mock_client.query_targets.return_value = [{"id": 1, "name": "vms"}]
    mock_client.iscsi_global_config.return_value = {"basename": "iqn.2005-10.org.freenas.ctl"}
    mock_client.query_extents.return_value = []
    mock_client.query_targetextents.return_value = []
    return IscsiMappingManager(mock_client, config)


@pytest.fixture
def nvme_config(make_config):
    return make_config(transport_mode="nvme-tcp", portals=("10.0.0.2",))


@pytest.fixture
def nvme(mock_client, nvme_config):
    mock_client.config = nvme_config
    mock_client.query_subsystems.return_value = [{"id": 4, "subnqn": nvme_config.subsystem_nqn}]
    mock_client.query_namespaces.return_value = []
    return NvmeMappingManager(mock_client, nvme_config)


class TestResolveTarget:
    """Tests for target resolution."""

    @pytest.mark.unit
    def test_basename_and_name(self, iscsi):
        assert iscsi.resolve_target_id() == 1

    @pytest.mark.unit
    def test_iqn_field(self, iscsi, mock_client):
        mock_client.query_targets.return_value = [
            {"id": 2, "name": "other"},
            {"id": 5, "name": "x", "iqn": "iqn.2005-10.org.freenas.ctl:vms"},
        ]
        assert iscsi.resolve_target_id() == 5

    @pytest.mark.unit
    def test_suffix_without_basename(self, iscsi, mock_client):
        mock_client.iscsi_global_config.return_value = {}
        assert iscsi.resolve_target_id() == 1

    @pytest.mark.unit
    def test_no_targets(self, iscsi, mock_client):
        mock_client.query_targets.return_value = []
        with pytest.raises(TargetNotFound, match="returned no iSCSI targets"):
            iscsi.resolve_target_id()

    @pytest.mark.unit
    def test_no_match_lists_available(self, iscsi, mock_client):
        """Test the error names every available target."""
        mock_client.query_targets.return_value = [{"id": 2, "name": "backup"}]
        with pytest.raises(TargetNotFound, match=r"iqn.2005-10.org.freenas.ctl:backup \(id 2\)"):
            iscsi.resolve_target_id()


class TestIscsiExport:
    """Tests for extent and mapping creation."""

    @pytest.mark.unit
    def test_extent_reused(self, iscsi, mock_client):
        """Test an extent for the same disk is reused without a create call."""
        mock_client.query_extents.return_value = [{"id": 3, "name": "vm-100-disk-0", "disk": DISK}]

        extent, created = iscsi.ensure_extent("vm-100-disk-0", "tank/vms/vm-100-disk-0")

        assert extent["id"] == 3
        assert not created
        mock_client.create_extent.assert_not_called()

    @pytest.mark.unit
    def test_extent_name_taken_by_other_disk(self, iscsi, mock_client):
        mock_client.query_extents.return_value = [{"id": 3, "name": "vm-100-disk-0", "disk": "zvol/tank/old/x"}]
        mock_client.create_extent.return_value = {"id": 9}

        with patch("truenas_block.mapping.time.time", return_value=1700000000):
            _, created = iscsi.ensure_extent("vm-100-disk-0", "tank/vms/vm-100-disk-0")

        assert created
        mock_client.create_extent.assert_called_once_with("vm-100-disk-0-1700000000", DISK)

    @pytest.mark.unit
    def test_extent_create_race(self, iscsi, mock_client):
        """Test a concurrent create is resolved by looking the extent up again."""
        mock_client.query_extents.side_effect = [[], [], [{"id": 7, "disk": DISK}]]
        mock_client.create_extent.side_effect = TrueNASResourceAlreadyExists("already exists")

        extent, created = iscsi.ensure_extent("vm-100-disk-0", "tank/vms/vm-100-disk-0")

        assert extent["id"] == 7
        assert not created

    @pytest.mark.unit
    def test_mapping_reused(self, iscsi, mock_client):
        mock_client.query_targetextents.return_value = [{"id": 11, "target": 1, "extent": 3, "lunid": 4}]

        assert iscsi.ensure_mapping(1, 3) == 4
        mock_client.create_targetextent.assert_not_called()

    @pytest.mark.unit
    def test_mapping_created_without_lunid(self, iscsi, mock_client):
        mock_client.create_targetextent.return_value = {"id": 12}
        mock_client.query_targetextents.side_effect = [[], [{"id": 12, "target": 1, "extent": 3, "lunid": 2}]]

        assert iscsi.ensure_mapping(1, 3) == 2

    @pytest.mark.unit
    def test_export(self, iscsi, mock_client):
        mock_client.create_extent.return_value = {"id": 3}
        mock_client.create_targetextent.return_value = {"id": 12, "lunid": 5}

        assert iscsi.export("vm-100-disk-0", "tank/vms/vm-100-disk-0") == 5
        mock_client.create_targetextent.assert_called_once_with(1, 3, None)

    @pytest.mark.unit
    def test_export_failure_removes_created_extent(self, iscsi, mock_client):
        """Test a mapping failure removes the extent created for it."""
        mock_client.create_extent.return_value = {"id": 3}
        mock_client.create_targetextent.side_effect = TrueNASAPIError("mapping failed")

        with pytest.raises(TrueNASAPIError, match="mapping failed"):
            iscsi.export("vm-100-disk-0", "tank/vms/vm-100-disk-0")

        mock_client.delete_extent.assert_called_once_with(3)

    @pytest.mark.unit
    def test_current_lun(self, iscsi, mock_client):
        mock_client.query_extents.return_value = [{"id": 3, "name": "vm-100-disk-0", "disk": DISK}]
        mock_client.query_targetextents.return_value = [{"id": 11, "target": 1, "extent": 3, "lunid": 6}]

        assert iscsi.current_lun("vm-100-disk-0", "tank/vms/vm-100-disk-0") == 6
        assert iscsi.current_lun("vm-999-disk-0") is None


class TestIscsiDelete:
    """Tests for idempotent deletes."""

    @pytest.mark.unit
    def test_delete_outcomes(self, iscsi, mock_client):
        mock_client.delete_targetextent.side_effect = [None, TrueNASResourceNotFound("does not exist")]
        mock_client.delete_extent.side_effect = TrueNASResourceBusy("extent is in use")

        assert iscsi.delete_mapping(11) == DeleteOutcome.DELETED
        assert iscsi.delete_mapping(11) == DeleteOutcome.ABSENT
        assert iscsi.delete_extent(3) == DeleteOutcome.IN_USE

    @pytest.mark.unit
    def test_delete_other_errors_propagate(self, iscsi, mock_client):
        mock_client.delete_extent.side_effect = TrueNASAPIError("boom")
        with pytest.raises(TrueNASAPIError):
            iscsi.delete_extent(3)

    @pytest.mark.unit
    def test_bulk_delete(self, iscsi, mock_client):
        """Test bulk results are classified and failed items retried singly."""
        mock_client.bulk_supported = True
        mock_client.bulk.return_value = [
            BulkResult(result=True),
            BulkResult(error="[ENOENT] extent 2 does not exist"),
            BulkResult(error="boom"),
        ]

        outcomes = iscsi.delete_extents([1, 2, 3])

        assert outcomes == {1: DeleteOutcome.DELETED, 2: DeleteOutcome.ABSENT, 3: DeleteOutcome.DELETED}
        mock_client.bulk.assert_called_once_with("iscsi.extent.delete", [[1], [2], [3]], "Delete 3 x iscsi.extent.delete")
        mock_client.delete_extent.assert_called_once_with(3)

    @pytest.mark.unit
    def test_bulk_unavailable_falls_back(self, iscsi, mock_client):
        mock_client.bulk_supported = True
        mock_client.bulk.side_effect = TrueNASUnsupportedOperation("core.bulk requires api_transport=ws")

        outcomes = iscsi.delete_mappings([11, 12])

        assert outcomes == {11: DeleteOutcome.DELETED, 12: DeleteOutcome.DELETED}
        assert mock_client.delete_targetextent.call_count == 2

    @pytest.mark.unit
    def test_single_item_skips_bulk(self, iscsi, mock_client):
        mock_client.bulk_supported = True

        iscsi.delete_mappings([11])

        mock_client.bulk.assert_not_called()
        mock_client.delete_targetextent.assert_called_once_with(11)


class TestNvmeMapping:
    """Tests for NvmeMappingManager."""

    @pytest.mark.unit
    def test_subsystem_name(self):
        assert NvmeMappingManager.subsystem_name("nqn.2005-10.org.freenas.ctl:vms.fast") == "vms_fast"

    @pytest.mark.unit
    def test_existing_subsystem(self, nvme, mock_client):
        assert nvme.ensure_subsystem() == 4
        mock_client.create_subsystem.assert_not_called()

    @pytest.mark.unit
    def test_subsystem_created_with_ports(self, nvme, mock_client):
        """Test a new subsystem gets a TCP port per portal and port failures are tolerated."""
        mock_client.query_subsystems.return_value = []
        mock_client.create_subsystem.return_value = {"id": 8}
        mock_client.create_port.side_effect = [None, TrueNASAPIError("port exists")]

        assert nvme.ensure_subsystem() == 8

        mock_client.create_subsystem.assert_called_once_with("vms", "nqn.2005-10.org.freenas.ctl:vms")
        assert [c[0] for c in mock_client.create_port.call_args_list] == [
            (8, "192.168.10.5", 4420),
            (8, "10.0.0.2", 4420),
        ]

    @pytest.mark.unit
    def test_namespace_reused(self, nvme, mock_client):
        mock_client.query_namespaces.return_value = [{"id": 2, "device_uuid": "abc"}]

        assert nvme.ensure_namespace("tank/vms/vm-1-disk-0")["device_uuid"] == "abc"
        mock_client.create_namespace.assert_not_called()

    @pytest.mark.unit
    def test_namespace_created_without_uuid(self, nvme, mock_client):
        """Test the UUID is looked up when the create response lacks it."""
        mock_client.query_namespaces.side_effect = [[], [{"id": 2, "device_uuid": "abc"}]]
        mock_client.create_namespace.return_value = {"id": 2}

        namespace = nvme.ensure_namespace("tank/vms/vm-1-disk-0", "16K")

        assert namespace["device_uuid"] == "abc"
        mock_client.create_namespace.assert_called_once_with(4, "zvol/tank/vms/vm-1-disk-0", "16K")

    @pytest.mark.unit
    def test_namespace_without_uuid_fails(self, nvme, mock_client):
        mock_client.create_namespace.return_value = {"id": 2}

        with pytest.raises(TrueNASAPIError, match="without a device_uuid"):
            nvme.ensure_namespace("tank/vms/vm-1-disk-0")

    @pytest.mark.unit
    def test_namespaces_of_subsystem(self, nvme, mock_client):
        mock_client.query_namespaces.return_value = [
            {"id": 1, "subsys_id": 4},
            {"id": 2, "subsys": {"id": 4}},
            {"id": 3, "subsys_id": 9},
        ]
        assert [n["id"] for n in nvme.namespaces()] == [1, 2]
        assert nvme.namespace_count() == 2

    @pytest.mark.unit
    def test_delete_namespaces(self, nvme, mock_client):
        mock_client.query_namespaces.return_value = [{"id": 2, "device_uuid": "abc"}]

        assert nvme.delete_namespaces("tank/vms/vm-1-disk-0") == DeleteOutcome.DELETED
        mock_client.delete_namespace.assert_called_once_with(2)

    @pytest.mark.unit
    def test_delete_namespaces_absent(self, nvme, mock_client):
        assert nvme.delete_namespaces("tank/vms/vm-1-disk-0") == DeleteOutcome.ABSENT

        mock_client.query_subsystems.return_value = []
        assert nvme.delete_namespaces("tank/vms/vm-1-disk-0") == DeleteOutcome.ABSENT
