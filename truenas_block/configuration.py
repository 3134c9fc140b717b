"""Configuration options for TrueNAS Block."""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Tuple

from oslo_config import cfg
from oslo_log import log as logging

from truenas_block.exceptions import InvalidConfiguration
from truenas_block.lib import validators

LOG = logging.getLogger(__name__)

# Configuration group name
CONF_GROUP = "truenas_block"

DEFAULT_CONFIG_PATH = Path("/etc/truenas-block/truenas-block.conf")

TRANSPORT_ISCSI = "iscsi"
TRANSPORT_NVME_TCP = "nvme-tcp"

API_TRANSPORT_WS = "ws"
API_TRANSPORT_REST = "rest"

_ISCSI_ONLY = ("target_iqn", "chap_user", "chap_password")
_NVME_ONLY = ("subsystem_nqn", "hostnqn", "nvme_dhchap_secret", "nvme_dhchap_ctrl_secret")


truenas_block_opts = [
    # API Configuration
    cfg.StrOpt(
        "api_host",
        help="TrueNAS API host name or IP address",
    ),
    cfg.StrOpt(
        "api_key",
        secret=True,
        help="TrueNAS API key",
    ),
    cfg.StrOpt(
        "api_transport",
        default=API_TRANSPORT_WS,
        choices=[API_TRANSPORT_WS, API_TRANSPORT_REST],
        help=(
            "API transport. 'ws': persistent JSON-RPC 2.0 WebSocket connection. "
            "'rest': stateless REST v2.0 requests (no NVMe-oF or bulk support)."
        ),
    ),
    cfg.StrOpt(
        "api_scheme",
        default="https",
        choices=["https", "http", "wss", "ws"],
        help="API scheme. http/ws disable TLS",
    ),
    cfg.PortOpt(
        "api_port",
        help="API port (default: 443 for TLS, 80 otherwise)",
    ),
    cfg.BoolOpt(
        "api_insecure",
        default=False,
        help="Skip TLS certificate verification",
    ),
    cfg.IntOpt(
        "api_timeout",
        default=30,
        min=1,
        max=600,
        help="API request timeout in seconds",
    ),
    cfg.IntOpt(
        "api_retry_max",
        default=3,
        min=0,
        max=10,
        help="Number of API retries for transient failures",
    ),
    cfg.FloatOpt(
        "api_retry_delay",
        default=1.0,
        min=0.1,
        max=60.0,
        help="Initial retry delay in seconds, doubled on each attempt",
    ),
    cfg.IntOpt(
        "cache_ttl",
        default=60,
        min=0,
        max=3600,
        help="Time to live of cached API query responses in seconds",
    ),
    cfg.BoolOpt(
        "enable_bulk_operations",
        default=True,
        help="Batch independent deletions with core.bulk (WebSocket only)",
    ),
    # Storage Configuration
    cfg.StrOpt(
        "dataset",
        help="Parent dataset for volumes (e.g., tank/vms)",
    ),
    cfg.StrOpt(
        "zvol_blocksize",
        default="16K",
        help="volblocksize for new zvols (e.g., 16K, 128K)",
    ),
    cfg.BoolOpt(
        "sparse",
        default=True,
        help="Create sparse (thin provisioned) zvols",
    ),
    cfg.StrOpt(
        "weight_volume_name",
        default="tnblock-weight",
        help="Name of the placeholder zvol keeping the iSCSI target discoverable",
    ),
    # Transport Configuration
    cfg.StrOpt(
        "transport_mode",
        default=TRANSPORT_ISCSI,
        choices=[TRANSPORT_ISCSI, TRANSPORT_NVME_TCP],
        help="Block transport used to reach volumes",
    ),
    cfg.StrOpt(
        "discovery_portal",
        help="Primary portal (host:port)",
    ),
    cfg.ListOpt(
        "portals",
        default=[],
        help="Additional portals for multipath",
    ),
    cfg.IntOpt(
        "device_wait_timeout",
        default=10,
        min=1,
        max=300,
        help="Seconds to wait for a local block device to appear",
    ),
    # iSCSI
    cfg.StrOpt(
        "target_iqn",
        help="iSCSI target IQN or target name",
    ),
    cfg.BoolOpt(
        "use_multipath",
        default=True,
        help="Resolve iSCSI devices through device-mapper multipath",
    ),
    cfg.BoolOpt(
        "use_by_path",
        default=False,
        help="Always return /dev/disk/by-path links for iSCSI devices",
    ),
    cfg.BoolOpt(
        "force_delete_on_inuse",
        default=False,
        help="Log out of the target and retry when a delete reports the volume in use",
    ),
    cfg.BoolOpt(
        "logout_on_free",
        default=False,
        help="Log out of the target after free when no LUNs remain",
    ),
    cfg.StrOpt(
        "chap_user",
        help="CHAP user name",
    ),
    cfg.StrOpt(
        "chap_password",
        secret=True,
        help="CHAP password",
    ),
    # NVMe/TCP
    cfg.StrOpt(
        "subsystem_nqn",
        help="NVMe-oF subsystem NQN",
    ),
    cfg.StrOpt(
        "hostnqn",
        help="Host NQN (default: read from /etc/nvme/hostnqn)",
    ),
    cfg.StrOpt(
        "nvme_dhchap_secret",
        secret=True,
        help="DH-HMAC-CHAP host secret",
    ),
    cfg.StrOpt(
        "nvme_dhchap_ctrl_secret",
        secret=True,
        help="DH-HMAC-CHAP controller secret for bidirectional authentication",
    ),
]


def register_opts(conf, group=None):
    """Register TrueNAS Block configuration options.

    Args:
        conf: oslo_config.cfg.ConfigOpts instance
        group: Configuration group name (default: CONF_GROUP)
    """
    conf.register_opts(truenas_block_opts, group=group or CONF_GROUP)


def list_opts():
    """Return a list of options for oslo-config-generator."""
    return [
        (CONF_GROUP, truenas_block_opts),
    ]


@dataclass(frozen=True)
class TrueNASBlockConfig:
    api_host: str = ""
    api_key: str = ""
    dataset: str = ""
    api_transport: str = API_TRANSPORT_WS
    api_scheme: str = "https"
    api_port: Optional[int] = None
    api_insecure: bool = False
    api_timeout: int = 30
    api_retry_max: int = 3
    api_retry_delay: float = 1.0
    cache_ttl: int = 60
    enable_bulk_operations: bool = True
    zvol_blocksize: str = "16K"
    sparse: bool = True
    weight_volume_name: str = "tnblock-weight"
    transport_mode: str = TRANSPORT_ISCSI
    discovery_portal: str = ""
    portals: Tuple[str, ...] = field(default_factory=tuple)
    device_wait_timeout: int = 10
    target_iqn: str = ""
    use_multipath: bool = True
    use_by_path: bool = False
    force_delete_on_inuse: bool = False
    logout_on_free: bool = False
    chap_user: Optional[str] = None
    chap_password: Optional[str] = None
    subsystem_nqn: str = ""
    hostnqn: Optional[str] = None
    nvme_dhchap_secret: Optional[str] = None
    nvme_dhchap_ctrl_secret: Optional[str] = None

    @classmethod
    def from_conf(cls, conf, group: str = CONF_GROUP) -> "TrueNASBlockConfig":
        """Build a config from a parsed oslo_config ConfigOpts."""
        section = conf[group]
        values = {}
        for opt in truenas_block_opts:
            value = section[opt.dest]
            if value is None:
                continue
            if opt.dest == "portals":
                value = tuple(p.strip() for p in value if p.strip())
            values[opt.dest] = value
        return cls(**values)

    @property
    def is_nvme(self) -> bool:
        return self.transport_mode == TRANSPORT_NVME_TCP

    @property
    def uses_tls(self) -> bool:
        return self.api_scheme in ("https", "wss")

    @property
    def all_portals(self) -> List[str]:
        """Primary portal followed by additional portals, without duplicates."""
        result: List[str] = []
        for portal in (self.discovery_portal, *self.portals):
            portal = (portal or "").strip()
            if portal and portal not in result:
                result.append(portal)
        return result

    def validate(self) -> None:
        """
        Validate the configuration.

        Raises:
            InvalidConfiguration: If a required option is missing or malformed
        """
        errors: List[str] = []

        for key in ("api_host", "api_key", "dataset"):
            if not getattr(self, key):
                errors.append(f"{key} is required")

        if self.dataset:
            try:
                validators.validate_dataset(self.dataset)
            except ValueError as e:
                errors.append(str(e))

        if self.transport_mode == TRANSPORT_ISCSI:
            if not self.target_iqn:
                errors.append("target_iqn is required for transport_mode=iscsi")
            if not self.discovery_portal:
                errors.append("discovery_portal is required for transport_mode=iscsi")
        elif self.transport_mode == TRANSPORT_NVME_TCP:
            if not self.subsystem_nqn:
                errors.append("subsystem_nqn is required for transport_mode=nvme-tcp")
            else:
                try:
                    validators.validate_nqn(self.subsystem_nqn)
                except ValueError as e:
                    errors.append(str(e))
            if not self.discovery_portal:
                errors.append("discovery_portal is required for transport_mode=nvme-tcp")
            if self.hostnqn:
                try:
                    validators.validate_hostnqn(self.hostnqn)
                except ValueError as e:
                    errors.append(str(e))
            if self.api_transport != API_TRANSPORT_WS:
                errors.append("transport_mode=nvme-tcp requires api_transport=ws")
        else:
            errors.append(f"Unknown transport_mode '{self.transport_mode}'")

        for portal in self.all_portals:
            try:
                validators.validate_portal(portal)
            except ValueError as e:
                errors.append(str(e))

        if not 0 <= self.api_retry_max <= 10:
            errors.append(f"api_retry_max must be between 0 and 10 (got {self.api_retry_max})")
        if not 0.1 <= self.api_retry_delay <= 60:
            errors.append(f"api_retry_delay must be between 0.1 and 60 (got {self.api_retry_delay})")

        if errors:
            raise InvalidConfiguration("Invalid configuration: " + "; ".join(errors))

        if not self.uses_tls:
            LOG.warning("Using insecure %s transport to %s; the API key is sent unencrypted",
                        self.api_scheme, self.api_host)

        ignored = _NVME_ONLY if self.transport_mode == TRANSPORT_ISCSI else _ISCSI_ONLY
        for key in ignored:
            if getattr(self, key):
                LOG.warning("Option %s is ignored with transport_mode=%s", key, self.transport_mode)


def _config_path(path: Optional[str] = None) -> Path:
    if path:
        return Path(path)
    env = os.environ.get("TNBLOCK_CONFIG_PATH")
    if env:
        return Path(env)
    return DEFAULT_CONFIG_PATH


def load_config(path: Optional[str] = None, conf=None) -> TrueNASBlockConfig:
    """
    Load config from:
    - ``path``, or
    - ``TNBLOCK_CONFIG_PATH``, or
    - ``/etc/truenas-block/truenas-block.conf``

    A missing file is not an error; defaults are returned.
    """
    if conf is None:
        conf = cfg.ConfigOpts()
    register_opts(conf)

    config_file = _config_path(path)
    files = [str(config_file)] if config_file.exists() else []
    conf(args=[], project="truenas-block", default_config_files=files, default_config_dirs=[])
    return TrueNASBlockConfig.from_conf(conf)
