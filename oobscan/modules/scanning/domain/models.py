from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Generic, Optional, TypeVar

from pydantic import BaseModel, ConfigDict, Field, SecretStr, field_validator

from oobscan.core.exceptions import AccessGrantError
from oobscan.shared.core.constants import AssetKind


class ResourceState(str, Enum):
    """Provider-derived state of one ephemeral resource."""

    ABSENT = "absent"
    PROVISIONING = "provisioning"
    READY = "ready"
    FAILED = "failed"


class AssetReference(BaseModel):
    """Identity of the asset under scan, as reported by provider discovery."""

    model_config = ConfigDict(frozen=True)

    asset_id: str = Field(..., min_length=1)
    kind: AssetKind = AssetKind.VIRTUAL_MACHINE
    # OS disk / root volume / container id the snapshot is taken from
    volume_id: str = Field(..., min_length=1)
    region: str = ""
    zone: Optional[str] = None
    name: Optional[str] = None


class ScanJobDescriptor(BaseModel):
    """
    Everything a reconcile call needs to know about one scan attempt.

    Owned by the driving loop and passed unchanged into every call; the
    reconciler never mutates it.
    """

    model_config = ConfigDict(frozen=True)

    asset_scan_id: str = Field(..., min_length=1, max_length=128)
    asset: AssetReference
    source_region: str
    destination_region: str
    volume_storage_class: str = "StandardSSD_LRS"
    compute_size: str = "Standard_D2s_v3"
    os_disk_size_gb: int = Field(default=30, gt=0)
    scanner_image: Optional[str] = None
    scanner_config: str = ""

    @field_validator("asset_scan_id")
    @classmethod
    def _validate_scan_id(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("asset_scan_id must not be blank")
        if value != value.strip():
            raise ValueError("asset_scan_id must not have surrounding whitespace")
        return value

    @property
    def is_cross_region(self) -> bool:
        return self.source_region.strip().lower() != self.destination_region.strip().lower()


@dataclass(frozen=True)
class SnapshotHandle:
    id: str
    name: str
    region: str
    raw: Any = None


@dataclass(frozen=True)
class StagedCopy:
    """Replica of a snapshot in the destination region (blob or regional snapshot)."""

    name: str
    url: str
    region: str
    raw: Any = None
    # Set where the copy is itself a provider resource (AWS snapshot copy)
    id: str = ""


@dataclass(frozen=True)
class VolumeHandle:
    id: str
    name: str
    region: str
    raw: Any = None


@dataclass(frozen=True)
class ComputeHandle:
    id: str
    name: str
    region: str
    raw: Any = None


@dataclass(frozen=True)
class NetworkInterfaceHandle:
    id: str
    name: str
    raw: Any = None


@dataclass(frozen=True)
class VolumeSource:
    """
    Where a scan volume is materialized from: a same-region snapshot or a
    staged copy imported across a region boundary.
    """

    snapshot: Optional[SnapshotHandle] = None
    staged_copy: Optional[StagedCopy] = None

    def __post_init__(self) -> None:
        if (self.snapshot is None) == (self.staged_copy is None):
            raise ValueError("VolumeSource needs exactly one of snapshot or staged_copy")

    @classmethod
    def from_snapshot(cls, snapshot: SnapshotHandle) -> "VolumeSource":
        return cls(snapshot=snapshot)

    @classmethod
    def from_staged_copy(cls, staged_copy: StagedCopy) -> "VolumeSource":
        return cls(staged_copy=staged_copy)

    @property
    def is_import(self) -> bool:
        return self.staged_copy is not None


T = TypeVar("T")


@dataclass(frozen=True)
class Observed(Generic[T]):
    """One lookup of a resource by its deterministic name."""

    state: ResourceState
    value: T
    detail: str = ""


class AccessGrant:
    """
    Time-bounded read grant on a snapshot.

    The access URL is handed out by the provider exactly once, at grant time.
    It can be redeemed exactly once to start the copy and is never persisted,
    logged or re-read; a fresh URL always means a fresh grant.
    """

    __slots__ = ("snapshot_name", "expires_at", "_url")

    def __init__(self, snapshot_name: str, url: str, duration: timedelta):
        self.snapshot_name = snapshot_name
        self.expires_at = datetime.now(timezone.utc) + duration
        self._url: Optional[SecretStr] = SecretStr(url)

    @property
    def redeemed(self) -> bool:
        return self._url is None

    def redeem(self) -> str:
        if self._url is None:
            raise AccessGrantError(
                f"access URL for snapshot {self.snapshot_name} was already redeemed"
            )
        url = self._url.get_secret_value()
        self._url = None
        return url

    def __repr__(self) -> str:
        state = "redeemed" if self.redeemed else "pending"
        return f"AccessGrant(snapshot_name={self.snapshot_name!r}, expires_at={self.expires_at.isoformat()}, {state})"

    __str__ = __repr__

