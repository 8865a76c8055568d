import base64
from typing import Any, Optional

from oobscan.modules.scanning.domain.classifier import ErrorClassifier
from oobscan.modules.scanning.domain.clients import ComputeClient, ReconcileTiming
from oobscan.modules.scanning.domain.models import (
    ComputeHandle,
    NetworkInterfaceHandle,
    Observed,
    ResourceState,
    ScanJobDescriptor,
    VolumeHandle,
)
from oobscan.modules.scanning.providers.aws.base import (
    EC2Access,
    aws_retry,
    instance_type,
    name_filter,
    tag_specifications,
)
from oobscan.shared.core.constants import AWS_SCANNER_DEVICE_NAME

# Terminated instances linger in describe output for a while; they are gone for our purposes.
LIVE_INSTANCE_STATES = ["pending", "running", "stopping", "stopped", "shutting-down"]

_INSTANCE_STATES = {
    "pending": ResourceState.PROVISIONING,
    "running": ResourceState.READY,
    "shutting-down": ResourceState.PROVISIONING,
    "stopping": ResourceState.FAILED,
    "stopped": ResourceState.FAILED,
}

_ATTACHMENT_STATES = {
    "attaching": ResourceState.PROVISIONING,
    "attached": ResourceState.READY,
    "busy": ResourceState.READY,
    "detaching": ResourceState.FAILED,
}


async def find_instance(ec2: EC2Access, name: str, region: str) -> Optional[dict[str, Any]]:
    filters = name_filter(name) + [{"Name": "instance-state-name", "Values": LIVE_INSTANCE_STATES}]
    async with ec2.client(region) as client:
        response = await client.describe_instances(Filters=filters)
    for reservation in response.get("Reservations", []):
        for instance in reservation.get("Instances", []):
            return instance
    return None


class AWSInstanceClient(ComputeClient):
    """Disposable EC2 scanner instance; the target volume is attached once it runs."""

    def __init__(self, ec2: EC2Access, classifier: ErrorClassifier, timing: ReconcileTiming):
        super().__init__(classifier, timing)
        self.ec2 = ec2

    @aws_retry
    async def lookup(self, name: str, descriptor: ScanJobDescriptor) -> Optional[Observed[ComputeHandle]]:
        instance = await find_instance(self.ec2, name, descriptor.destination_region)
        if instance is None:
            return None
        state = str(instance.get("State", {}).get("Name", ""))
        detail = state
        reason = instance.get("StateReason", {}).get("Message")
        if reason:
            detail = f"{state}: {reason}"
        return Observed(
            state=_INSTANCE_STATES.get(state, ResourceState.PROVISIONING),
            value=ComputeHandle(
                id=instance["InstanceId"],
                name=name,
                region=descriptor.destination_region,
                raw=instance,
            ),
            detail=detail,
        )

    def _run_instances_kwargs(self, name: str, descriptor: ScanJobDescriptor) -> dict[str, Any]:
        config = self.ec2.config
        kwargs: dict[str, Any] = {
            "ImageId": descriptor.scanner_image or config.ami_id,
            "InstanceType": instance_type(descriptor),
            "MinCount": 1,
            "MaxCount": 1,
            "SubnetId": config.subnet_id,
            "Placement": {"AvailabilityZone": config.availability_zone},
            "InstanceInitiatedShutdownBehavior": "terminate",
            "TagSpecifications": tag_specifications("instance", name, descriptor),
        }
        if config.security_group_id:
            kwargs["SecurityGroupIds"] = [config.security_group_id]
        if config.key_pair_name:
            kwargs["KeyName"] = config.key_pair_name
        if descriptor.scanner_config:
            kwargs["UserData"] = base64.b64encode(descriptor.scanner_config.encode("utf-8")).decode("ascii")
        return kwargs

    @aws_retry
    async def create(
        self,
        name: str,
        descriptor: ScanJobDescriptor,
        volume: VolumeHandle,
        network_interface: Optional[NetworkInterfaceHandle] = None,
    ) -> None:
        async with self.ec2.client(descriptor.destination_region) as client:
            await client.run_instances(**self._run_instances_kwargs(name, descriptor))

    @aws_retry
    async def attachment_state(self, compute: ComputeHandle, volume: VolumeHandle) -> ResourceState:
        async with self.ec2.client(volume.region) as client:
            response = await client.describe_volumes(VolumeIds=[volume.id])
        for described in response.get("Volumes", []):
            for attachment in described.get("Attachments", []):
                if attachment.get("InstanceId") != compute.id:
                    # Attached elsewhere; it will never reach our scanner.
                    return ResourceState.FAILED
                return _ATTACHMENT_STATES.get(str(attachment.get("State", "")), ResourceState.ABSENT)
        return ResourceState.ABSENT

    @aws_retry
    async def attach_volume(self, compute: ComputeHandle, volume: VolumeHandle) -> None:
        async with self.ec2.client(compute.region) as client:
            await client.attach_volume(
                Device=AWS_SCANNER_DEVICE_NAME,
                InstanceId=compute.id,
                VolumeId=volume.id,
            )

    @aws_retry
    async def delete(self, name: str, descriptor: ScanJobDescriptor) -> None:
        instance = await find_instance(self.ec2, name, descriptor.destination_region)
        if instance is None or instance.get("State", {}).get("Name") == "shutting-down":
            return
        async with self.ec2.client(descriptor.destination_region) as client:
            await client.terminate_instances(InstanceIds=[instance["InstanceId"]])
