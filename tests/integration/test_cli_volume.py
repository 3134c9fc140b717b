"""
Integration tests for CLI volume commands.
"""

from unittest.mock import MagicMock, patch

import pytest
from typer.testing import CliRunner

from truenas_block.cli.cli import app
from truenas_block.exceptions import (
    DeviceNotReady,
    InvalidVolumeName,
    PreflightValidationError,
    ShrinkNotSupported,
)
from truenas_block.models import FreeOutcome, VolumeInfo

GiB = 1024**3


@pytest.fixture
def orchestrator():
    with patch("truenas_block.cli.commands.volume.get_orchestrator") as mock_get:
        mock_get.return_value = MagicMock()
        yield mock_get.return_value


class TestVolumeAlloc:
    """Tests for volume alloc command."""

    @pytest.mark.integration
    def test_alloc_success(self, orchestrator):
        """Test the volume identity is printed on its own line."""
        orchestrator.allocate.return_value = "vol-vm-100-disk-0-lun3"

        runner = CliRunner()
        result = runner.invoke(app, ["volume", "alloc", "100", "10G"])

        assert result.exit_code == 0
        assert "Allocating 10.00 GB volume for owner 100" in result.stdout
        assert result.stdout.strip().splitlines()[-1] == "vol-vm-100-disk-0-lun3"
        orchestrator.allocate.assert_called_once_with("100", 10 * GiB, name=None)

    @pytest.mark.integration
    def test_alloc_explicit_name(self, orchestrator):
        orchestrator.allocate.return_value = "vol-base-lun1"

        runner = CliRunner()
        result = runner.invoke(app, ["volume", "alloc", "100", "4096", "--name", "base"])

        assert result.exit_code == 0
        orchestrator.allocate.assert_called_once_with("100", 4096, name="base")

    @pytest.mark.integration
    def test_alloc_invalid_size(self, orchestrator):
        runner = CliRunner()
        result = runner.invoke(app, ["volume", "alloc", "100", "ten"])

        assert result.exit_code == 1
        assert "Invalid size: ten" in result.output
        orchestrator.allocate.assert_not_called()

    @pytest.mark.integration
    def test_alloc_preflight_failure(self, orchestrator):
        orchestrator.allocate.side_effect = PreflightValidationError(
            ["TrueNAS iSCSI service is not running (state: STOPPED)"]
        )

        runner = CliRunner()
        result = runner.invoke(app, ["volume", "alloc", "100", "10G"])

        assert result.exit_code == 1
        assert "not running" in result.output

    @pytest.mark.integration
    def test_alloc_device_not_ready(self, orchestrator):
        orchestrator.allocate.side_effect = DeviceNotReady(
            "Device for lun3 did not appear", identity="lun3", dataset="tank/vms/vm-100-disk-0"
        )

        runner = CliRunner()
        result = runner.invoke(app, ["volume", "alloc", "100", "10G"])

        assert result.exit_code == 1
        assert "Error allocating volume" in result.output


class TestVolumeResize:
    """Tests for volume resize command."""

    @pytest.mark.integration
    def test_resize_success(self, orchestrator):
        orchestrator.resize.return_value = 20 * GiB

        runner = CliRunner()
        result = runner.invoke(app, ["volume", "resize", "vol-vm-100-disk-0-lun3", "20G"])

        assert result.exit_code == 0
        assert f"resized to 20.00 GB ({20 * GiB} bytes)" in result.stdout
        orchestrator.resize.assert_called_once_with("vol-vm-100-disk-0-lun3", 20 * GiB)

    @pytest.mark.integration
    def test_resize_shrink(self, orchestrator):
        orchestrator.resize.side_effect = ShrinkNotSupported(20 * GiB, 10 * GiB)

        runner = CliRunner()
        result = runner.invoke(app, ["volume", "resize", "vol-vm-100-disk-0-lun3", "10G"])

        assert result.exit_code == 1
        assert "shrink not supported" in result.output


class TestVolumeFree:
    """Tests for volume free command."""

    @pytest.mark.integration
    def test_free_single(self, orchestrator):
        orchestrator.free.return_value = FreeOutcome.ALREADY_ABSENT

        runner = CliRunner()
        result = runner.invoke(app, ["volume", "free", "vol-vm-100-disk-0-lun3"])

        assert result.exit_code == 0
        assert f"Volume vol-vm-100-disk-0-lun3: {FreeOutcome.ALREADY_ABSENT.value}" in result.stdout
        orchestrator.free_many.assert_not_called()

    @pytest.mark.integration
    def test_free_many(self, orchestrator):
        """Test several volumes are freed in one batch and each result is reported."""
        orchestrator.free_many.return_value = {
            "vol-vm-100-disk-0-lun3": FreeOutcome.FREED,
            "vol-vm-100-disk-1-lun4": FreeOutcome.FREED,
        }

        runner = CliRunner()
        result = runner.invoke(app, ["volume", "free", "vol-vm-100-disk-0-lun3", "vol-vm-100-disk-1-lun4"])

        assert result.exit_code == 0
        orchestrator.free_many.assert_called_once_with(["vol-vm-100-disk-0-lun3", "vol-vm-100-disk-1-lun4"])
        assert result.stdout.count(FreeOutcome.FREED.value) == 2

    @pytest.mark.integration
    def test_free_many_partial_failure(self, orchestrator):
        orchestrator.free_many.return_value = {
            "vol-vm-100-disk-0-lun3": FreeOutcome.FREED,
            "bogus": InvalidVolumeName("Unable to parse volume name 'bogus'"),
        }

        runner = CliRunner()
        result = runner.invoke(app, ["volume", "free", "vol-vm-100-disk-0-lun3", "bogus"])

        assert result.exit_code == 1
        assert "Volume bogus: error: Unable to parse volume name 'bogus'" in result.output


class TestVolumeOther:
    """Tests for clone, list and path commands."""

    @pytest.mark.integration
    def test_clone(self, orchestrator):
        orchestrator.clone.return_value = "vol-vm-200-disk-0-lun5"

        runner = CliRunner()
        result = runner.invoke(app, ["volume", "clone", "vol-vm-100-disk-0-lun3", "200", "--snapshot", "golden"])

        assert result.exit_code == 0
        assert "vol-vm-200-disk-0-lun5" in result.stdout
        orchestrator.clone.assert_called_once_with("vol-vm-100-disk-0-lun3", "200", snapshot="golden", name=None)

    @pytest.mark.integration
    def test_list(self, orchestrator):
        orchestrator.list_volumes.return_value = [
            VolumeInfo(
                volname="vol-vm-100-disk-0-lun3",
                zname="vm-100-disk-0",
                owner="100",
                size=GiB,
                export_identity="3",
                ctime=1700000000,
            )
        ]

        runner = CliRunner()
        result = runner.invoke(app, ["volume", "list", "--owner", "100"])

        assert result.exit_code == 0
        assert "vol-vm-100-disk-0-lun3 owner=100 size=1.00 GB ctime=1700000000" in result.stdout
        orchestrator.list_volumes.assert_called_once_with(owner="100")

    @pytest.mark.integration
    def test_list_empty(self, orchestrator):
        orchestrator.list_volumes.return_value = []

        runner = CliRunner()
        result = runner.invoke(app, ["volume", "list"])

        assert result.exit_code == 0
        assert "No volumes found" in result.stdout

    @pytest.mark.integration
    def test_path(self, orchestrator):
        orchestrator.path.return_value = "/dev/mapper/mpatha"

        runner = CliRunner()
        result = runner.invoke(app, ["volume", "path", "vol-vm-100-disk-0-lun3"])

        assert result.exit_code == 0
        assert result.stdout.strip() == "/dev/mapper/mpatha"
