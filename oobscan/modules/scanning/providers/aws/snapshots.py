from typing import Any, Optional

import structlog

from oobscan.modules.scanning.domain.classifier import ErrorClassifier
from oobscan.modules.scanning.domain.clients import (
    ReconcileTiming,
    SnapshotClient,
    StagedCopyClient,
)
from oobscan.modules.scanning.domain.models import (
    AccessGrant,
    Observed,
    ResourceState,
    ScanJobDescriptor,
    SnapshotHandle,
    StagedCopy,
)
from oobscan.modules.scanning.providers.aws.base import (
    EC2Access,
    aws_retry,
    name_filter,
    tag_specifications,
)

logger = structlog.get_logger()

_SNAPSHOT_STATES = {
    "pending": ResourceState.PROVISIONING,
    "completed": ResourceState.READY,
    "error": ResourceState.FAILED,
    "recoverable": ResourceState.FAILED,
    "recovering": ResourceState.PROVISIONING,
}


def snapshot_state(snapshot: dict[str, Any]) -> ResourceState:
    return _SNAPSHOT_STATES.get(str(snapshot.get("State", "")).lower(), ResourceState.PROVISIONING)


def snapshot_detail(snapshot: dict[str, Any]) -> str:
    detail = str(snapshot.get("State", ""))
    if snapshot.get("Progress"):
        detail = f"{detail} ({snapshot['Progress']})"
    if snapshot.get("StateMessage"):
        detail = f"{detail}: {snapshot['StateMessage']}"
    return detail


async def find_snapshot(ec2: EC2Access, name: str, region: str) -> Optional[dict[str, Any]]:
    """Most recent snapshot tagged `name` in `region`, if any."""
    async with ec2.client(region) as client:
        response = await client.describe_snapshots(OwnerIds=["self"], Filters=name_filter(name))
    snapshots = response.get("Snapshots", [])
    if not snapshots:
        return None
    if len(snapshots) > 1:
        logger.warning("aws_duplicate_snapshots", name=name, region=region, count=len(snapshots))
    return max(snapshots, key=lambda s: str(s.get("StartTime", "")))


class AWSSnapshotClient(SnapshotClient):
    """EBS snapshot of the asset's root volume, taken in the asset's region."""

    def __init__(self, ec2: EC2Access, classifier: ErrorClassifier, timing: ReconcileTiming):
        super().__init__(classifier, timing)
        self.ec2 = ec2

    @aws_retry
    async def lookup(self, name: str, descriptor: ScanJobDescriptor) -> Optional[Observed[SnapshotHandle]]:
        snapshot = await find_snapshot(self.ec2, name, descriptor.source_region)
        if snapshot is None:
            return None
        return Observed(
            state=snapshot_state(snapshot),
            value=SnapshotHandle(
                id=snapshot["SnapshotId"],
                name=name,
                region=descriptor.source_region,
                raw=snapshot,
            ),
            detail=snapshot_detail(snapshot),
        )

    @aws_retry
    async def create(self, name: str, descriptor: ScanJobDescriptor) -> None:
        async with self.ec2.client(descriptor.source_region) as client:
            await client.create_snapshot(
                VolumeId=descriptor.asset.volume_id,
                Description=f"oobscan snapshot of {descriptor.asset.asset_id}",
                TagSpecifications=tag_specifications("snapshot", name, descriptor),
            )

    @aws_retry
    async def delete(self, name: str, descriptor: ScanJobDescriptor) -> None:
        snapshot = await find_snapshot(self.ec2, name, descriptor.source_region)
        if snapshot is None:
            return
        async with self.ec2.client(descriptor.source_region) as client:
            await client.delete_snapshot(SnapshotId=snapshot["SnapshotId"])


class AWSSnapshotCopyClient(StagedCopyClient):
    """
    Cross-region replica made with CopySnapshot.

    The copy is authorized by the scanner's own IAM identity, so there is no
    access grant to hand out or revoke.
    """

    def __init__(self, ec2: EC2Access, classifier: ErrorClassifier, timing: ReconcileTiming):
        super().__init__(classifier, timing)
        self.ec2 = ec2

    @aws_retry
    async def lookup(self, name: str, descriptor: ScanJobDescriptor) -> Optional[Observed[StagedCopy]]:
        region = descriptor.destination_region
        snapshot = await find_snapshot(self.ec2, name, region)
        if snapshot is None:
            return None
        snapshot_id = snapshot["SnapshotId"]
        return Observed(
            state=snapshot_state(snapshot),
            value=StagedCopy(
                name=name,
                url=f"arn:aws:ec2:{region}::snapshot/{snapshot_id}",
                region=region,
                raw=snapshot,
                id=snapshot_id,
            ),
            detail=snapshot_detail(snapshot),
        )

    async def grant_access(self, snapshot: SnapshotHandle) -> Optional[AccessGrant]:
        return None

    async def has_active_grant(self, snapshot: SnapshotHandle) -> bool:
        return False

    async def revoke_access(self, snapshot: SnapshotHandle) -> None:
        return None

    @aws_retry
    async def start_copy(
        self,
        name: str,
        descriptor: ScanJobDescriptor,
        snapshot: SnapshotHandle,
        grant: Optional[AccessGrant],
    ) -> None:
        async with self.ec2.client(descriptor.destination_region) as client:
            await client.copy_snapshot(
                SourceRegion=snapshot.region,
                SourceSnapshotId=snapshot.id,
                Description=f"oobscan staged copy of {snapshot.id}",
                TagSpecifications=tag_specifications("snapshot", name, descriptor),
            )

    @aws_retry
    async def delete(self, name: str, descriptor: ScanJobDescriptor) -> None:
        snapshot = await find_snapshot(self.ec2, name, descriptor.destination_region)
        if snapshot is None:
            return
        async with self.ec2.client(descriptor.destination_region) as client:
            await client.delete_snapshot(SnapshotId=snapshot["SnapshotId"])
