from typing import Optional

import structlog
from google.cloud import compute_v1

from oobscan.modules.scanning.domain.clients import ReconcileTiming
from oobscan.modules.scanning.domain.models import AssetReference
from oobscan.modules.scanning.providers.base import BaseScanProvider
from oobscan.modules.scanning.providers.factory import ScanProviderFactory
from oobscan.modules.scanning.providers.gcp.base import (
    OWNER_LABEL,
    ComputeClients,
    GCPScannerConfig,
    build_gcp_classifier,
    build_gcp_credentials,
    call_blocking,
    gcp_retry,
    zone_region,
)
from oobscan.modules.scanning.providers.gcp.resources import (
    GCPDiskClient,
    GCPInstanceClient,
    GCPSnapshotClient,
)
from oobscan.shared.core.config import Settings
from oobscan.shared.core.constants import AssetKind
from oobscan.shared.core.credentials import gcp_credentials_from_settings

logger = structlog.get_logger()


@ScanProviderFactory.register("gcp")
class GCPScanProvider(BaseScanProvider):
    """
    GCP scanner. Snapshots are global resources, so a disk can be restored in
    the scanner zone directly and no staged copy is ever needed.
    """

    def __init__(
        self,
        settings: Settings,
        timing: Optional[ReconcileTiming] = None,
        clients: Optional[ComputeClients] = None,
    ):
        super().__init__(settings, timing)
        self.config = GCPScannerConfig.from_settings(settings)
        self.clients = clients or ComputeClients(build_gcp_credentials(gcp_credentials_from_settings(settings)))

        classifier = build_gcp_classifier(self.timing.throttle)
        self.snapshots = GCPSnapshotClient(self.clients, self.config, classifier, self.timing)
        self.volumes = GCPDiskClient(self.clients, self.config, classifier, self.timing)
        self.compute = GCPInstanceClient(self.clients, self.config, classifier, self.timing)

    @gcp_retry
    async def discover_assets(self) -> list[AssetReference]:
        assets = await call_blocking(self._list_assets)
        logger.info("gcp_assets_discovered", count=len(assets), project=self.config.project_id)
        return assets

    def _list_assets(self) -> list[AssetReference]:
        request = compute_v1.AggregatedListInstancesRequest(project=self.config.project_id)
        assets: list[AssetReference] = []
        for scope, scoped_list in self.clients.instances.aggregated_list(request=request):
            for instance in scoped_list.instances:
                if OWNER_LABEL in instance.labels:
                    continue
                boot = next((disk for disk in instance.disks if disk.boot), None)
                if boot is None or not boot.source:
                    continue
                zone = scope.rsplit("/", 1)[-1]
                assets.append(
                    AssetReference(
                        asset_id=instance.self_link,
                        kind=AssetKind.VIRTUAL_MACHINE,
                        volume_id=boot.source,
                        region=zone_region(zone),
                        zone=zone,
                        name=instance.name,
                    )
                )
        return assets
