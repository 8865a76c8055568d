from typing import Optional

import structlog

from oobscan.modules.scanning.domain.clients import ReconcileTiming
from oobscan.modules.scanning.domain.models import AssetReference
from oobscan.modules.scanning.providers.base import BaseScanProvider
from oobscan.modules.scanning.providers.docker.engine import (
    DockerEngine,
    build_docker_classifier,
    docker_retry,
)
from oobscan.modules.scanning.providers.docker.resources import (
    DOCKER_LOCATION,
    DockerContainerClient,
    DockerImageSnapshotClient,
    DockerVolumeClient,
)
from oobscan.modules.scanning.providers.factory import ScanProviderFactory
from oobscan.shared.core.config import Settings
from oobscan.shared.core.constants import AssetKind, OWNER_TAG

logger = structlog.get_logger()


@ScanProviderFactory.register("docker")
class DockerScanProvider(BaseScanProvider):
    """
    Container-runtime scanner on a single Docker host.

    Everything lives on one daemon, so there is no region boundary and no
    staged copy.
    """

    def __init__(
        self,
        settings: Settings,
        timing: Optional[ReconcileTiming] = None,
        engine: Optional[DockerEngine] = None,
    ):
        super().__init__(settings, timing)
        self.engine = engine or DockerEngine.from_settings(settings)

        classifier = build_docker_classifier(self.timing.throttle)
        self.snapshots = DockerImageSnapshotClient(self.engine, classifier, self.timing)
        self.volumes = DockerVolumeClient(self.engine, classifier, self.timing)
        self.compute = DockerContainerClient(
            self.engine,
            classifier,
            self.timing,
            default_image=settings.DOCKER_SCANNER_IMAGE,
            network=settings.DOCKER_SCANNER_NETWORK,
        )

    @docker_retry
    async def discover_assets(self) -> list[AssetReference]:
        containers = await self.engine.request("GET", "/containers/json") or []
        assets = []
        for container in containers:
            if OWNER_TAG in (container.get("Labels") or {}):
                continue
            names = container.get("Names") or []
            assets.append(
                AssetReference(
                    asset_id=container["Id"],
                    kind=AssetKind.CONTAINER,
                    volume_id=container["Id"],
                    region=DOCKER_LOCATION,
                    name=names[0].lstrip("/") if names else None,
                )
            )
        logger.info("docker_assets_discovered", count=len(assets))
        return assets

    async def close(self) -> None:
        await self.engine.close()
