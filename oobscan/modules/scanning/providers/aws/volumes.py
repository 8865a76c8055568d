from typing import Any, Optional

from oobscan.modules.scanning.domain.classifier import ErrorClassifier
from oobscan.modules.scanning.domain.clients import ReconcileTiming, VolumeClient
from oobscan.modules.scanning.domain.models import (
    Observed,
    ResourceState,
    ScanJobDescriptor,
    VolumeHandle,
    VolumeSource,
)
from oobscan.modules.scanning.providers.aws.base import (
    EC2Access,
    aws_retry,
    ebs_volume_type,
    name_filter,
    tag_specifications,
)

_VOLUME_STATES = {
    "creating": ResourceState.PROVISIONING,
    "available": ResourceState.READY,
    "in-use": ResourceState.READY,
    "deleting": ResourceState.PROVISIONING,
    "error": ResourceState.FAILED,
}


async def find_volume(ec2: EC2Access, name: str, region: str) -> Optional[dict[str, Any]]:
    async with ec2.client(region) as client:
        response = await client.describe_volumes(Filters=name_filter(name))
    volumes = [v for v in response.get("Volumes", []) if v.get("State") != "deleted"]
    return volumes[0] if volumes else None


class AWSVolumeClient(VolumeClient):
    """EBS volume in the scanner availability zone, restored from a snapshot."""

    def __init__(self, ec2: EC2Access, classifier: ErrorClassifier, timing: ReconcileTiming):
        super().__init__(classifier, timing)
        self.ec2 = ec2

    @aws_retry
    async def lookup(self, name: str, descriptor: ScanJobDescriptor) -> Optional[Observed[VolumeHandle]]:
        volume = await find_volume(self.ec2, name, descriptor.destination_region)
        if volume is None:
            return None
        state = str(volume.get("State", ""))
        return Observed(
            state=_VOLUME_STATES.get(state, ResourceState.PROVISIONING),
            value=VolumeHandle(
                id=volume["VolumeId"],
                name=name,
                region=descriptor.destination_region,
                raw=volume,
            ),
            detail=state,
        )

    @staticmethod
    def _snapshot_id(source: VolumeSource) -> str:
        if source.staged_copy is not None:
            return source.staged_copy.id
        assert source.snapshot is not None
        return source.snapshot.id

    @aws_retry
    async def create(self, name: str, descriptor: ScanJobDescriptor, source: VolumeSource) -> None:
        async with self.ec2.client(descriptor.destination_region) as client:
            await client.create_volume(
                AvailabilityZone=self.ec2.config.availability_zone,
                SnapshotId=self._snapshot_id(source),
                VolumeType=ebs_volume_type(descriptor),
                TagSpecifications=tag_specifications("volume", name, descriptor),
            )

    @aws_retry
    async def delete(self, name: str, descriptor: ScanJobDescriptor) -> None:
        volume = await find_volume(self.ec2, name, descriptor.destination_region)
        if volume is None:
            return
        async with self.ec2.client(descriptor.destination_region) as client:
            await client.delete_volume(VolumeId=volume["VolumeId"])
