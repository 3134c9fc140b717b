"""
Unit tests for config loader.
"""

from unittest.mock import patch

import pytest

from truenas_block.configuration import TrueNASBlockConfig, load_config
from truenas_block.exceptions import InvalidConfiguration


@pytest.mark.unit
def test_load_config_missing_file(monkeypatch, temp_dir):
    monkeypatch.setenv("TNBLOCK_CONFIG_PATH", str(temp_dir / "missing.conf"))

    cfg = load_config()
    assert cfg.transport_mode == "iscsi"
    assert cfg.api_transport == "ws"
    assert cfg.zvol_blocksize == "16K"
    assert cfg.portals == ()


@pytest.mark.unit
def test_load_config_reads_values(monkeypatch, temp_dir):
    config_path = temp_dir / "truenas-block.conf"
    config_path.write_text(
        "\n".join(
            [
                "[truenas_block]",
                "api_host = nas.example.com",
                "api_key = 1-abc",
                "api_transport = rest",
                "dataset = tank/vms",
                "zvol_blocksize = 128K",
                "target_iqn = iqn.2005-10.org.freenas.ctl:vms",
                "discovery_portal = 10.0.0.1:3260",
                "portals = 10.0.0.2:3260, 10.0.0.3",
                "cache_ttl = 30",
                "",
            ]
        ),
        encoding="utf-8",
    )
    monkeypatch.setenv("TNBLOCK_CONFIG_PATH", str(config_path))

    cfg = load_config()
    assert cfg.api_host == "nas.example.com"
    assert cfg.api_transport == "rest"
    assert cfg.zvol_blocksize == "128K"
    assert cfg.portals == ("10.0.0.2:3260", "10.0.0.3")
    assert cfg.cache_ttl == 30
    assert cfg.all_portals == ["10.0.0.1:3260", "10.0.0.2:3260", "10.0.0.3"]


@pytest.mark.unit
def test_explicit_path_wins(monkeypatch, temp_dir):
    config_path = temp_dir / "explicit.conf"
    config_path.write_text("[truenas_block]\ndataset = tank/explicit\n", encoding="utf-8")
    monkeypatch.setenv("TNBLOCK_CONFIG_PATH", str(temp_dir / "missing.conf"))

    assert load_config(str(config_path)).dataset == "tank/explicit"


class TestValidate:
    """Tests for TrueNASBlockConfig.validate."""

    @pytest.mark.unit
    def test_valid_iscsi(self, config):
        config.validate()

    @pytest.mark.unit
    def test_valid_nvme(self, make_config):
        make_config(transport_mode="nvme-tcp").validate()

    @pytest.mark.unit
    def test_missing_required(self):
        with pytest.raises(InvalidConfiguration) as exc:
            TrueNASBlockConfig().validate()

        message = str(exc.value)
        for key in ("api_host", "api_key", "dataset", "target_iqn", "discovery_portal"):
            assert f"{key} is required" in message

    @pytest.mark.unit
    def test_nvme_requires_websocket(self, make_config):
        with pytest.raises(InvalidConfiguration, match="requires api_transport=ws"):
            make_config(transport_mode="nvme-tcp", api_transport="rest").validate()

    @pytest.mark.unit
    def test_invalid_values(self, make_config):
        """Test malformed values are all reported together."""
        config = make_config(
            transport_mode="nvme-tcp",
            subsystem_nqn="not-an-nqn",
            hostnqn="host",
            portals=("10.0.0.1:notaport",),
            dataset="/tank",
        )
        with pytest.raises(InvalidConfiguration) as exc:
            config.validate()

        message = str(exc.value)
        assert "Invalid NQN" in message
        assert "Invalid host NQN" in message
        assert "Invalid port" in message
        assert "must not start or end with '/'" in message

    @pytest.mark.unit
    def test_ignored_options_warned(self, make_config):
        config = make_config(hostnqn="nqn.2014-08.org.nvmexpress:uuid:x")
        with patch("truenas_block.configuration.LOG") as mock_log:
            config.validate()

        warned = [call[0][1] for call in mock_log.warning.call_args_list]
        assert "hostnqn" in warned

    @pytest.mark.unit
    def test_plaintext_warned(self, make_config):
        with patch("truenas_block.configuration.LOG") as mock_log:
            make_config(api_scheme="http").validate()
        mock_log.warning.assert_called_once()
