from typing import Optional

import structlog

from oobscan.modules.scanning.domain.clients import ReconcileTiming
from oobscan.modules.scanning.domain.models import AssetReference
from oobscan.modules.scanning.providers.azure.base import (
    AzureScannerConfig,
    build_azure_classifier,
    build_azure_credential,
    build_compute_client,
    build_network_client,
)
from oobscan.modules.scanning.providers.azure.blob import AzureBlobStagedCopyClient
from oobscan.modules.scanning.providers.azure.disks import AzureDiskClient
from oobscan.modules.scanning.providers.azure.snapshots import AzureSnapshotClient
from oobscan.modules.scanning.providers.azure.vm import (
    AzureNetworkInterfaceClient,
    AzureVirtualMachineClient,
)
from oobscan.modules.scanning.providers.base import BaseScanProvider
from oobscan.modules.scanning.providers.factory import ScanProviderFactory
from oobscan.shared.core.config import Settings
from oobscan.shared.core.constants import AssetKind, OWNER_TAG
from oobscan.shared.core.credentials import azure_credentials_from_settings

logger = structlog.get_logger()


@ScanProviderFactory.register("azure")
class AzureScanProvider(BaseScanProvider):
    """
    Azure scanner: managed-disk snapshot, SAS-granted page blob for
    cross-region moves, managed disk, NIC and Linux VM.
    """

    def __init__(self, settings: Settings, timing: Optional[ReconcileTiming] = None):
        super().__init__(settings, timing)
        self.config = AzureScannerConfig.from_settings(settings)
        self.credential = build_azure_credential(azure_credentials_from_settings(settings))
        self.compute_client = build_compute_client(self.credential, self.config.subscription_id)
        self.network_client = build_network_client(self.credential, self.config.subscription_id)

        classifier = build_azure_classifier(self.timing.throttle)
        self.snapshots = AzureSnapshotClient(self.compute_client, self.config, classifier, self.timing)
        self.staged_copies = AzureBlobStagedCopyClient(
            self.compute_client, self.credential, self.config, classifier, self.timing
        )
        self.volumes = AzureDiskClient(self.compute_client, self.config, classifier, self.timing)
        self.network_interfaces = AzureNetworkInterfaceClient(
            self.network_client, self.config, classifier, self.timing
        )
        self.compute = AzureVirtualMachineClient(self.compute_client, self.config, classifier, self.timing)

    async def discover_assets(self) -> list[AssetReference]:
        assets: list[AssetReference] = []
        async for vm in self.compute_client.virtual_machines.list_all():
            if OWNER_TAG in (vm.tags or {}):
                # Our own scanners are not scan targets.
                continue
            os_disk = vm.storage_profile.os_disk if vm.storage_profile else None
            if os_disk is None or os_disk.managed_disk is None or not os_disk.managed_disk.id:
                logger.debug("azure_vm_skipped_unmanaged_disk", vm=vm.name)
                continue
            assets.append(
                AssetReference(
                    asset_id=vm.id,
                    kind=AssetKind.VIRTUAL_MACHINE,
                    volume_id=os_disk.managed_disk.id,
                    region=vm.location or "",
                    zone=vm.zones[0] if vm.zones else None,
                    name=vm.name,
                )
            )
        logger.info("azure_assets_discovered", count=len(assets))
        return assets

    async def close(self) -> None:
        await self.compute_client.close()
        await self.network_client.close()
        await self.credential.close()
