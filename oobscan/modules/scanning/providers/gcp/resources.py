from typing import Optional

from google.cloud import compute_v1

from oobscan.modules.scanning.domain.classifier import ErrorClassifier
from oobscan.modules.scanning.domain.clients import (
    ComputeClient,
    ReconcileTiming,
    SnapshotClient,
    VolumeClient,
)
from oobscan.modules.scanning.domain.models import (
    ComputeHandle,
    NetworkInterfaceHandle,
    Observed,
    ResourceState,
    ScanJobDescriptor,
    SnapshotHandle,
    VolumeHandle,
    VolumeSource,
)
from oobscan.modules.scanning.providers.gcp.base import (
    ComputeClients,
    GCPScannerConfig,
    call_blocking,
    disk_type,
    gcp_retry,
    machine_type,
    scan_labels,
    status_state,
    zone_region,
)

TARGET_DEVICE_NAME = "oobscan-target"


class GCPSnapshotClient(SnapshotClient):
    """Global snapshot of the asset's boot disk; usable from any region."""

    def __init__(
        self,
        clients: ComputeClients,
        config: GCPScannerConfig,
        classifier: ErrorClassifier,
        timing: ReconcileTiming,
    ):
        super().__init__(classifier, timing)
        self.clients = clients
        self.config = config

    @gcp_retry
    async def lookup(self, name: str, descriptor: ScanJobDescriptor) -> Optional[Observed[SnapshotHandle]]:
        snapshot = await call_blocking(
            self.clients.snapshots.get, project=self.config.project_id, snapshot=name
        )
        return Observed(
            state=status_state(snapshot.status, ready="READY"),
            value=SnapshotHandle(id=snapshot.self_link, name=snapshot.name, region="global", raw=snapshot),
            detail=snapshot.status,
        )

    @gcp_retry
    async def create(self, name: str, descriptor: ScanJobDescriptor) -> None:
        await call_blocking(
            self.clients.snapshots.insert,
            project=self.config.project_id,
            snapshot_resource=compute_v1.Snapshot(
                name=name,
                source_disk=descriptor.asset.volume_id,
                labels=scan_labels(descriptor),
            ),
        )

    @gcp_retry
    async def delete(self, name: str, descriptor: ScanJobDescriptor) -> None:
        await call_blocking(self.clients.snapshots.delete, project=self.config.project_id, snapshot=name)


class GCPDiskClient(VolumeClient):
    """Zonal persistent disk in the scanner zone, restored from the snapshot."""

    def __init__(
        self,
        clients: ComputeClients,
        config: GCPScannerConfig,
        classifier: ErrorClassifier,
        timing: ReconcileTiming,
    ):
        super().__init__(classifier, timing)
        self.clients = clients
        self.config = config

    @gcp_retry
    async def lookup(self, name: str, descriptor: ScanJobDescriptor) -> Optional[Observed[VolumeHandle]]:
        disk = await call_blocking(
            self.clients.disks.get, project=self.config.project_id, zone=self.config.zone, disk=name
        )
        return Observed(
            state=status_state(disk.status, ready="READY"),
            value=VolumeHandle(id=disk.self_link, name=disk.name, region=zone_region(self.config.zone), raw=disk),
            detail=disk.status,
        )

    @gcp_retry
    async def create(self, name: str, descriptor: ScanJobDescriptor, source: VolumeSource) -> None:
        if source.snapshot is None:
            raise ValueError("GCP disks are restored from global snapshots only")
        await call_blocking(
            self.clients.disks.insert,
            project=self.config.project_id,
            zone=self.config.zone,
            disk_resource=compute_v1.Disk(
                name=name,
                source_snapshot=source.snapshot.id,
                type_=disk_type(descriptor, self.config.zone),
                labels=scan_labels(descriptor),
            ),
        )

    @gcp_retry
    async def delete(self, name: str, descriptor: ScanJobDescriptor) -> None:
        await call_blocking(
            self.clients.disks.delete, project=self.config.project_id, zone=self.config.zone, disk=name
        )


class GCPInstanceClient(ComputeClient):
    """Scanner instance, created with the target disk already attached read-only."""

    def __init__(
        self,
        clients: ComputeClients,
        config: GCPScannerConfig,
        classifier: ErrorClassifier,
        timing: ReconcileTiming,
    ):
        super().__init__(classifier, timing)
        self.clients = clients
        self.config = config

    async def _get(self, name: str) -> compute_v1.Instance:
        return await call_blocking(
            self.clients.instances.get, project=self.config.project_id, zone=self.config.zone, instance=name
        )

    @gcp_retry
    async def lookup(self, name: str, descriptor: ScanJobDescriptor) -> Optional[Observed[ComputeHandle]]:
        instance = await self._get(name)
        return Observed(
            state=status_state(instance.status, ready="RUNNING", failed=("TERMINATED", "SUSPENDED")),
            value=ComputeHandle(
                id=instance.self_link,
                name=instance.name,
                region=zone_region(self.config.zone),
                raw=instance,
            ),
            detail=instance.status,
        )

    def _target_disk(self, volume: VolumeHandle) -> compute_v1.AttachedDisk:
        return compute_v1.AttachedDisk(
            boot=False,
            auto_delete=False,
            source=volume.id,
            mode="READ_ONLY",
            device_name=TARGET_DEVICE_NAME,
        )

    @gcp_retry
    async def create(
        self,
        name: str,
        descriptor: ScanJobDescriptor,
        volume: VolumeHandle,
        network_interface: Optional[NetworkInterfaceHandle] = None,
    ) -> None:
        boot_disk = compute_v1.AttachedDisk(
            boot=True,
            auto_delete=True,
            initialize_params=compute_v1.AttachedDiskInitializeParams(
                source_image=descriptor.scanner_image or self.config.source_image,
                disk_size_gb=descriptor.os_disk_size_gb,
            ),
        )
        metadata_items = []
        if descriptor.scanner_config:
            metadata_items.append(compute_v1.Items(key="user-data", value=descriptor.scanner_config))
        await call_blocking(
            self.clients.instances.insert,
            project=self.config.project_id,
            zone=self.config.zone,
            instance_resource=compute_v1.Instance(
                name=name,
                machine_type=machine_type(descriptor, self.config.zone),
                disks=[boot_disk, self._target_disk(volume)],
                network_interfaces=[compute_v1.NetworkInterface(subnetwork=self.config.subnetwork)],
                metadata=compute_v1.Metadata(items=metadata_items),
                labels=scan_labels(descriptor),
            ),
        )

    @gcp_retry
    async def attachment_state(self, compute: ComputeHandle, volume: VolumeHandle) -> ResourceState:
        instance = await self._get(compute.name)
        for disk in instance.disks:
            if disk.source == volume.id:
                return ResourceState.READY
        return ResourceState.ABSENT

    @gcp_retry
    async def attach_volume(self, compute: ComputeHandle, volume: VolumeHandle) -> None:
        await call_blocking(
            self.clients.instances.attach_disk,
            project=self.config.project_id,
            zone=self.config.zone,
            instance=compute.name,
            attached_disk_resource=self._target_disk(volume),
        )

    @gcp_retry
    async def delete(self, name: str, descriptor: ScanJobDescriptor) -> None:
        await call_blocking(
            self.clients.instances.delete, project=self.config.project_id, zone=self.config.zone, instance=name
        )
