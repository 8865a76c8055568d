"""
Per-provider resource client contracts.

A client knows how to look a resource up by its deterministic name, start its
creation, and start its deletion. It never waits for a cloud operation to
finish; the reconciler turns "not finished yet" into a retry hint.
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import timedelta
from typing import Generic, Optional, TypeVar

from oobscan.modules.scanning.domain.classifier import ErrorClassifier
from oobscan.modules.scanning.domain.models import (
    AccessGrant,
    ComputeHandle,
    NetworkInterfaceHandle,
    Observed,
    ResourceState,
    ScanJobDescriptor,
    SnapshotHandle,
    StagedCopy,
    VolumeHandle,
    VolumeSource,
)
from oobscan.shared.core.config import Settings

T = TypeVar("T")


@dataclass(frozen=True)
class ReconcileTiming:
    """Retry hints handed back to the driving loop, per resource kind."""

    snapshot: timedelta = timedelta(minutes=2)
    staged_copy: timedelta = timedelta(minutes=2)
    volume: timedelta = timedelta(minutes=2)
    compute: timedelta = timedelta(minutes=1)
    teardown: timedelta = timedelta(seconds=30)
    throttle: timedelta = timedelta(seconds=30)
    access_grant: timedelta = timedelta(hours=1)

    @classmethod
    def from_settings(cls, settings: Settings) -> "ReconcileTiming":
        return cls(
            snapshot=timedelta(seconds=settings.SNAPSHOT_POLL_DELAY_SECONDS),
            staged_copy=timedelta(seconds=settings.STAGED_COPY_POLL_DELAY_SECONDS),
            volume=timedelta(seconds=settings.VOLUME_POLL_DELAY_SECONDS),
            compute=timedelta(seconds=settings.COMPUTE_POLL_DELAY_SECONDS),
            teardown=timedelta(seconds=settings.TEARDOWN_POLL_DELAY_SECONDS),
            throttle=timedelta(seconds=settings.THROTTLE_RETRY_DELAY_SECONDS),
            access_grant=timedelta(seconds=settings.SNAPSHOT_ACCESS_GRANT_SECONDS),
        )


class ResourceClient(ABC, Generic[T]):
    """Lookup-by-name and delete, shared by every resource kind."""

    kind: str = "resource"

    def __init__(self, classifier: ErrorClassifier, timing: ReconcileTiming):
        self.classifier = classifier
        self.timing = timing

    @property
    @abstractmethod
    def provision_delay(self) -> timedelta:
        raise NotImplementedError()

    @abstractmethod
    async def lookup(self, name: str, descriptor: ScanJobDescriptor) -> Optional[Observed[T]]:
        """
        Observe the resource called `name` for the scan described by `descriptor`.
        Returns None when it does not exist; raising the provider's own
        not-found error is equally valid.
        """
        raise NotImplementedError()

    @abstractmethod
    async def delete(self, name: str, descriptor: ScanJobDescriptor) -> None:
        """Start deleting the resource; must not wait for completion."""
        raise NotImplementedError()


class SnapshotClient(ResourceClient[SnapshotHandle]):
    kind = "snapshot"

    @property
    def provision_delay(self) -> timedelta:
        return self.timing.snapshot

    @abstractmethod
    async def create(self, name: str, descriptor: ScanJobDescriptor) -> None:
        """Start a point-in-time snapshot of the asset's storage volume."""
        raise NotImplementedError()


class VolumeClient(ResourceClient[VolumeHandle]):
    kind = "volume"

    @property
    def provision_delay(self) -> timedelta:
        return self.timing.volume

    @abstractmethod
    async def create(self, name: str, descriptor: ScanJobDescriptor, source: VolumeSource) -> None:
        """Start materializing a volume from a same-region snapshot or a staged copy."""
        raise NotImplementedError()


class NetworkInterfaceClient(ResourceClient[NetworkInterfaceHandle]):
    kind = "network_interface"

    @property
    def provision_delay(self) -> timedelta:
        return self.timing.compute

    @abstractmethod
    async def create(self, name: str, descriptor: ScanJobDescriptor) -> None:
        raise NotImplementedError()


class ComputeClient(ResourceClient[ComputeHandle]):
    kind = "compute"

    @property
    def provision_delay(self) -> timedelta:
        return self.timing.compute

    @abstractmethod
    async def create(
        self,
        name: str,
        descriptor: ScanJobDescriptor,
        volume: VolumeHandle,
        network_interface: Optional[NetworkInterfaceHandle] = None,
    ) -> None:
        """Start the scanner compute unit."""
        raise NotImplementedError()

    @abstractmethod
    async def attachment_state(self, compute: ComputeHandle, volume: VolumeHandle) -> ResourceState:
        """Whether `volume` is attached to `compute` (ABSENT, PROVISIONING, READY or FAILED)."""
        raise NotImplementedError()

    @abstractmethod
    async def attach_volume(self, compute: ComputeHandle, volume: VolumeHandle) -> None:
        """Start attaching `volume` to `compute`."""
        raise NotImplementedError()


class StagedCopyClient(ResourceClient[StagedCopy]):
    """
    Destination-region replica of a snapshot.

    Providers whose copy needs a bearer URL (Azure) hand out an AccessGrant;
    providers whose copy is authorized by the caller's identity (AWS) return
    None from `grant_access` and never report an active grant.
    """

    kind = "staged_copy"

    @property
    def provision_delay(self) -> timedelta:
        return self.timing.staged_copy

    @abstractmethod
    async def grant_access(self, snapshot: SnapshotHandle) -> Optional[AccessGrant]:
        raise NotImplementedError()

    @abstractmethod
    async def has_active_grant(self, snapshot: SnapshotHandle) -> bool:
        raise NotImplementedError()

    @abstractmethod
    async def revoke_access(self, snapshot: SnapshotHandle) -> None:
        """Revoke read access; revoking an already revoked or expired grant is not an error."""
        raise NotImplementedError()

    @abstractmethod
    async def start_copy(
        self,
        name: str,
        descriptor: ScanJobDescriptor,
        snapshot: SnapshotHandle,
        grant: Optional[AccessGrant],
    ) -> None:
        """Start the asynchronous copy into the destination region."""
        raise NotImplementedError()
