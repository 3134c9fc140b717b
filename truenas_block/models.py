"""
Pydantic models for records decoded from the TrueNAS API and lifecycle results.
"""

from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator

from truenas_block.lib.normalize import decode_timestamp, normalize_str, normalize_value


class VolumeState(str, Enum):
    """Volume lifecycle states."""

    REQUESTED = "requested"
    ALIGNED = "aligned"
    VALIDATED = "validated"
    REMOTE_CREATED = "remote-created"
    EXPORTED = "exported"
    SESSION_READY = "session-ready"
    DEVICE_RESOLVED = "device-resolved"
    READY = "ready"
    REMOTE_RESIZED = "remote-resized"
    CLONED = "cloned"
    MAPPING_REMOVED = "mapping-removed"
    EXPORT_REMOVED = "export-removed"
    REMOTE_DELETED = "remote-deleted"


class FreeOutcome(str, Enum):
    """Result of freeing a volume."""

    FREED = "freed"
    ALREADY_ABSENT = "already-absent"


class DatasetRecord(BaseModel):
    """A zvol or filesystem dataset as reported by pool.dataset.*."""

    id: str = Field(..., description="Full dataset path (pool/parent/name)")
    type: Optional[str] = Field(None, description="VOLUME or FILESYSTEM")
    volsize: int = Field(0, description="zvol size in bytes")
    volblocksize: str = Field("", description="zvol block size (e.g., 16K)")
    available: int = Field(0, description="Available bytes")
    used: int = Field(0, description="Used bytes")
    written: int = Field(0, description="Written bytes")
    quota: int = Field(0, description="Quota in bytes (0 = none)")
    creation: Optional[int] = Field(None, description="Creation time (epoch seconds)")

    @field_validator("volsize", "available", "used", "written", "quota", mode="before")
    @classmethod
    def decode_size(cls, v: Any) -> int:
        return normalize_value(v)

    @field_validator("volblocksize", mode="before")
    @classmethod
    def decode_blocksize(cls, v: Any) -> str:
        return normalize_str(v)

    @field_validator("creation", mode="before")
    @classmethod
    def decode_creation(cls, v: Any) -> Optional[int]:
        return decode_timestamp(v)

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "DatasetRecord":
        """Build a record from a raw pool.dataset response."""
        properties = data.get("properties") or {}
        creation = properties.get("creation") or data.get("creation") or data.get("created")
        return cls(
            id=data.get("id") or data.get("name") or "",
            type=data.get("type"),
            volsize=data.get("volsize"),
            volblocksize=data.get("volblocksize"),
            available=data.get("available"),
            used=data.get("used"),
            written=data.get("written"),
            quota=data.get("quota"),
            creation=creation,
        )

    @property
    def name(self) -> str:
        return self.id.rsplit("/", 1)[-1]


class VolumeInfo(BaseModel):
    """A volume as returned by list_volumes."""

    volname: str = Field(..., description="Volume identity (vol-<zname>-lun<N> / -ns<uuid>)")
    zname: str = Field(..., description="zvol name")
    owner: Optional[str] = Field(None, description="Owner id")
    size: int = Field(0, description="Size in bytes")
    export_identity: str = Field(..., description="LUN number or namespace UUID")
    ctime: int = Field(0, description="Creation time (epoch seconds)")


class SnapshotInfo(BaseModel):
    """A snapshot of a volume."""

    name: str = Field(..., description="Snapshot name (without dataset prefix)")
    ctime: int = Field(0, description="Creation time (epoch seconds)")


class StorageStatus(BaseModel):
    """Capacity of the parent dataset."""

    total: int = 0
    available: int = 0
    used: int = 0
    active: bool = False


class BulkResult(BaseModel):
    """One item of a core.bulk response."""

    result: Any = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


class Volume(BaseModel):
    """A volume tracked through its lifecycle."""

    zname: str
    dataset: str
    owner: Optional[str] = None
    size: int = 0
    blocksize: str = ""
    sparse: bool = True
    export_identity: Optional[str] = None
    state: VolumeState = VolumeState.REQUESTED
    history: List[VolumeState] = Field(default_factory=list)

    @property
    def full_name(self) -> str:
        return f"{self.dataset}/{self.zname}"

    def advance(self, state: VolumeState) -> None:
        self.history.append(self.state)
        self.state = state
