from typing import Optional

from azure.mgmt.compute.aio import ComputeManagementClient
from azure.mgmt.compute.models import GrantAccessData
from azure.storage.blob.aio import BlobClient

from oobscan.modules.scanning.domain.classifier import ErrorClassifier
from oobscan.modules.scanning.domain.clients import ReconcileTiming, StagedCopyClient
from oobscan.modules.scanning.domain.models import (
    AccessGrant,
    Observed,
    ResourceState,
    ScanJobDescriptor,
    SnapshotHandle,
    StagedCopy,
)
from oobscan.modules.scanning.providers.azure.base import (
    AzureAsyncCredential,
    AzureScannerConfig,
    azure_retry,
)

# Snapshot disk states while a SAS URL is outstanding
ACTIVE_SAS_STATES = {"activesas", "activesasfrozen"}

_COPY_STATES = {
    "pending": ResourceState.PROVISIONING,
    "success": ResourceState.READY,
    "aborted": ResourceState.FAILED,
    "failed": ResourceState.FAILED,
}


class AzureBlobStagedCopyClient(StagedCopyClient):
    """
    Cross-region transfer through a page blob in the scanner storage account.

    The snapshot is exported with a SAS grant and copied server-side with
    `start_copy_from_url`; the disk is later imported from the blob.
    """

    def __init__(
        self,
        compute: ComputeManagementClient,
        credential: AzureAsyncCredential,
        config: AzureScannerConfig,
        classifier: ErrorClassifier,
        timing: ReconcileTiming,
    ):
        super().__init__(classifier, timing)
        self.compute = compute
        self.credential = credential
        self.config = config

    def _blob_client(self, name: str) -> BlobClient:
        return BlobClient.from_blob_url(self.config.blob_url(name), credential=self.credential)

    @azure_retry
    async def lookup(self, name: str, descriptor: ScanJobDescriptor) -> Optional[Observed[StagedCopy]]:
        async with self._blob_client(name) as blob:
            properties = await blob.get_blob_properties()
        copy_status = (properties.copy.status or "").lower()
        if not copy_status:
            # A blob that was uploaded rather than copied is complete by definition.
            state = ResourceState.READY
        else:
            state = _COPY_STATES.get(copy_status, ResourceState.PROVISIONING)
        detail = copy_status
        if state is ResourceState.FAILED and properties.copy.status_description:
            detail = f"{copy_status}: {properties.copy.status_description}"
        return Observed(
            state=state,
            value=StagedCopy(
                name=name,
                url=self.config.blob_url(name),
                region=self.config.location,
                raw=properties,
            ),
            detail=detail,
        )

    async def grant_access(self, snapshot: SnapshotHandle) -> Optional[AccessGrant]:
        poller = await self.compute.snapshots.begin_grant_access(
            self.config.resource_group,
            snapshot.name,
            GrantAccessData(
                access="Read",
                duration_in_seconds=int(self.timing.access_grant.total_seconds()),
            ),
        )
        access = await poller.result()
        return AccessGrant(snapshot.name, access.access_sas, self.timing.access_grant)

    @azure_retry
    async def has_active_grant(self, snapshot: SnapshotHandle) -> bool:
        current = await self.compute.snapshots.get(self.config.resource_group, snapshot.name)
        return (current.disk_state or "").lower() in ACTIVE_SAS_STATES

    async def revoke_access(self, snapshot: SnapshotHandle) -> None:
        poller = await self.compute.snapshots.begin_revoke_access(
            self.config.resource_group, snapshot.name
        )
        await poller.result()

    async def start_copy(
        self,
        name: str,
        descriptor: ScanJobDescriptor,
        snapshot: SnapshotHandle,
        grant: Optional[AccessGrant],
    ) -> None:
        if grant is None:
            raise ValueError("Azure snapshot export requires an access grant")
        async with self._blob_client(name) as blob:
            await blob.start_copy_from_url(grant.redeem())

    @azure_retry
    async def delete(self, name: str, descriptor: ScanJobDescriptor) -> None:
        async with self._blob_client(name) as blob:
            await blob.delete_blob(delete_snapshots="include")
