"""
Pytest configuration and fixtures.
"""

import shutil
import tempfile
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

from truenas_block.client.api import TrueNASClient
from truenas_block.configuration import TrueNASBlockConfig


def pytest_configure(config):
    config.addinivalue_line("markers", "unit: fast tests without external services")
    config.addinivalue_line("markers", "integration: command-line tests against a mocked orchestrator")


@pytest.fixture
def temp_dir():
    """Create a temporary directory for tests."""
    temp_path = tempfile.mkdtemp()
    yield Path(temp_path)
    shutil.rmtree(temp_path)


@pytest.fixture
def mock_subprocess():
    """Mock subprocess.run for testing."""
    with patch("subprocess.run") as mock:
        mock.return_value = MagicMock(returncode=0, stdout="", stderr="")
        yield mock


@pytest.fixture
def no_sleep():
    """Make udev grace sleeps instant."""
    with patch("truenas_block.lib.utils.time.sleep") as mock:
        yield mock


@pytest.fixture
def make_config():
    """Factory for configurations with test defaults."""

    def _make(**overrides):
        values = {
            "api_host": "truenas.example.com",
            "api_key": "1-secret",
            "dataset": "tank/vms",
            "target_iqn": "iqn.2005-10.org.freenas.ctl:vms",
            "discovery_portal": "192.168.10.5:3260",
        }
        if overrides.get("transport_mode") == "nvme-tcp":
            values.update(
                {
                    "target_iqn": "",
                    "discovery_portal": "192.168.10.5:4420",
                    "subsystem_nqn": "nqn.2005-10.org.freenas.ctl:vms",
                    "hostnqn": "nqn.2014-08.org.nvmexpress:uuid:host-1",
                }
            )
        values.update(overrides)
        return TrueNASBlockConfig(**values)

    return _make


@pytest.fixture
def config(make_config):
    """iSCSI configuration."""
    return make_config()


@pytest.fixture
def mock_client(config):
    """TrueNASClient double with REST-like defaults."""
    client = MagicMock(spec=TrueNASClient)
    client.config = config
    client.bulk_supported = False
    return client
