from typing import Optional

from azure.mgmt.compute.aio import ComputeManagementClient
from azure.mgmt.compute.models import CreationData, Disk, DiskSku

from oobscan.modules.scanning.domain.classifier import ErrorClassifier
from oobscan.modules.scanning.domain.clients import ReconcileTiming, VolumeClient
from oobscan.modules.scanning.domain.models import (
    Observed,
    ScanJobDescriptor,
    VolumeHandle,
    VolumeSource,
)
from oobscan.modules.scanning.providers.azure.base import (
    AzureScannerConfig,
    azure_retry,
    provisioning_state,
    scan_tags,
)


class AzureDiskClient(VolumeClient):
    """Managed disk in the scanner location, copied from a snapshot or imported from a blob."""

    def __init__(
        self,
        compute: ComputeManagementClient,
        config: AzureScannerConfig,
        classifier: ErrorClassifier,
        timing: ReconcileTiming,
    ):
        super().__init__(classifier, timing)
        self.compute = compute
        self.config = config

    @azure_retry
    async def lookup(self, name: str, descriptor: ScanJobDescriptor) -> Optional[Observed[VolumeHandle]]:
        disk = await self.compute.disks.get(self.config.resource_group, name)
        return Observed(
            state=provisioning_state(disk.provisioning_state),
            value=VolumeHandle(id=disk.id or "", name=disk.name or name, region=disk.location or "", raw=disk),
            detail=disk.provisioning_state or "",
        )

    def _creation_data(self, source: VolumeSource) -> CreationData:
        if source.staged_copy is not None:
            return CreationData(
                create_option="Import",
                source_uri=source.staged_copy.url,
                storage_account_id=self.config.storage_account_id,
            )
        assert source.snapshot is not None
        return CreationData(create_option="Copy", source_resource_id=source.snapshot.id)

    @azure_retry
    async def create(self, name: str, descriptor: ScanJobDescriptor, source: VolumeSource) -> None:
        await self.compute.disks.begin_create_or_update(
            self.config.resource_group,
            name,
            Disk(
                location=descriptor.destination_region,
                tags=scan_tags(descriptor),
                sku=DiskSku(name=descriptor.volume_storage_class),
                creation_data=self._creation_data(source),
            ),
        )

    @azure_retry
    async def delete(self, name: str, descriptor: ScanJobDescriptor) -> None:
        await self.compute.disks.begin_delete(self.config.resource_group, name)
