from typing import Any, Optional

import aioboto3
import structlog

from oobscan.modules.scanning.domain.clients import ReconcileTiming
from oobscan.modules.scanning.domain.models import AssetReference
from oobscan.modules.scanning.providers.aws.base import (
    AWSScannerConfig,
    EC2Access,
    aws_retry,
    build_aws_classifier,
    tag_value,
)
from oobscan.modules.scanning.providers.aws.instances import AWSInstanceClient
from oobscan.modules.scanning.providers.aws.snapshots import (
    AWSSnapshotClient,
    AWSSnapshotCopyClient,
)
from oobscan.modules.scanning.providers.aws.volumes import AWSVolumeClient
from oobscan.modules.scanning.providers.base import BaseScanProvider
from oobscan.modules.scanning.providers.factory import ScanProviderFactory
from oobscan.shared.core.config import Settings
from oobscan.shared.core.constants import AssetKind, OWNER_TAG, RESOURCE_NAME_TAG
from oobscan.shared.core.credentials import aws_credentials_from_settings

logger = structlog.get_logger()


def root_volume_id(instance: dict[str, Any]) -> Optional[str]:
    root_device = instance.get("RootDeviceName")
    for mapping in instance.get("BlockDeviceMappings", []):
        if mapping.get("DeviceName") == root_device:
            return mapping.get("Ebs", {}).get("VolumeId")
    return None


@ScanProviderFactory.register("aws")
class AWSScanProvider(BaseScanProvider):
    """
    AWS scanner: EBS snapshot in the asset region, CopySnapshot for
    cross-region moves, EBS volume and EC2 instance in the scanner region.
    """

    def __init__(
        self,
        settings: Settings,
        timing: Optional[ReconcileTiming] = None,
        session: Optional[aioboto3.Session] = None,
    ):
        super().__init__(settings, timing)
        self.config = AWSScannerConfig.from_settings(settings)
        self.ec2 = EC2Access(aws_credentials_from_settings(settings), self.config, session)

        classifier = build_aws_classifier(self.timing.throttle)
        self.snapshots = AWSSnapshotClient(self.ec2, classifier, self.timing)
        self.staged_copies = AWSSnapshotCopyClient(self.ec2, classifier, self.timing)
        self.volumes = AWSVolumeClient(self.ec2, classifier, self.timing)
        self.compute = AWSInstanceClient(self.ec2, classifier, self.timing)

    @aws_retry
    async def discover_assets(self) -> list[AssetReference]:
        """EBS-backed instances in the scanner's default region, excluding our own scanners."""
        assets: list[AssetReference] = []
        async with self.ec2.client() as client:
            paginator = client.get_paginator("describe_instances")
            async for page in paginator.paginate(
                Filters=[{"Name": "instance-state-name", "Values": ["running", "stopped"]}]
            ):
                for reservation in page.get("Reservations", []):
                    for instance in reservation.get("Instances", []):
                        asset = self._asset_from_instance(instance)
                        if asset is not None:
                            assets.append(asset)
        logger.info("aws_assets_discovered", count=len(assets), region=self.config.region)
        return assets

    def _asset_from_instance(self, instance: dict[str, Any]) -> Optional[AssetReference]:
        tags = instance.get("Tags", [])
        if tag_value(tags, OWNER_TAG) is not None:
            return None
        volume_id = root_volume_id(instance)
        if not volume_id:
            logger.debug("aws_instance_skipped_no_ebs_root", instance_id=instance.get("InstanceId"))
            return None
        return AssetReference(
            asset_id=instance["InstanceId"],
            kind=AssetKind.VIRTUAL_MACHINE,
            volume_id=volume_id,
            region=self.config.region,
            zone=instance.get("Placement", {}).get("AvailabilityZone"),
            name=tag_value(tags, RESOURCE_NAME_TAG),
        )
