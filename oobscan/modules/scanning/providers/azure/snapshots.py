from typing import Optional

from azure.mgmt.compute.aio import ComputeManagementClient
from azure.mgmt.compute.models import CreationData, Snapshot

from oobscan.modules.scanning.domain.classifier import ErrorClassifier
from oobscan.modules.scanning.domain.clients import ReconcileTiming, SnapshotClient
from oobscan.modules.scanning.domain.models import (
    Observed,
    ScanJobDescriptor,
    SnapshotHandle,
)
from oobscan.modules.scanning.providers.azure.base import (
    AzureScannerConfig,
    azure_retry,
    provisioning_state,
    scan_tags,
)


def snapshot_handle(snapshot: Snapshot) -> SnapshotHandle:
    return SnapshotHandle(
        id=snapshot.id or "",
        name=snapshot.name or "",
        region=snapshot.location or "",
        raw=snapshot,
    )


class AzureSnapshotClient(SnapshotClient):
    """Managed-disk snapshots, kept in the scanner resource group next to the asset."""

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
    async def lookup(self, name: str, descriptor: ScanJobDescriptor) -> Optional[Observed[SnapshotHandle]]:
        snapshot = await self.compute.snapshots.get(self.config.resource_group, name)
        return Observed(
            state=provisioning_state(snapshot.provisioning_state),
            value=snapshot_handle(snapshot),
            detail=snapshot.provisioning_state or "",
        )

    @azure_retry
    async def create(self, name: str, descriptor: ScanJobDescriptor) -> None:
        # The snapshot has to live in the asset's region; only a copy can leave it.
        await self.compute.snapshots.begin_create_or_update(
            self.config.resource_group,
            name,
            Snapshot(
                location=descriptor.source_region,
                tags=scan_tags(descriptor),
                creation_data=CreationData(
                    create_option="Copy",
                    source_resource_id=descriptor.asset.volume_id,
                ),
            ),
        )

    @azure_retry
    async def delete(self, name: str, descriptor: ScanJobDescriptor) -> None:
        await self.compute.snapshots.begin_delete(self.config.resource_group, name)
