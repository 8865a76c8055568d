import base64
from typing import Optional

from azure.mgmt.compute.aio import ComputeManagementClient
from azure.mgmt.compute.models import (
    DataDisk,
    HardwareProfile,
    ImageReference,
    LinuxConfiguration,
    ManagedDiskParameters,
    NetworkInterfaceReference,
    NetworkProfile,
    OSDisk,
    OSProfile,
    SshConfiguration,
    SshPublicKey,
    StorageProfile,
    VirtualMachine,
)
from azure.mgmt.network.aio import NetworkManagementClient
from azure.mgmt.network.models import (
    NetworkInterface,
    NetworkInterfaceIPConfiguration,
    Subnet,
)

from oobscan.modules.scanning.domain.classifier import ErrorClassifier
from oobscan.modules.scanning.domain.clients import (
    ComputeClient,
    NetworkInterfaceClient,
    ReconcileTiming,
)
from oobscan.modules.scanning.domain.models import (
    ComputeHandle,
    NetworkInterfaceHandle,
    Observed,
    ResourceState,
    ScanJobDescriptor,
    VolumeHandle,
)
from oobscan.modules.scanning.providers.azure.base import (
    AzureScannerConfig,
    azure_retry,
    provisioning_state,
    scan_tags,
)

POWER_STATE_RUNNING = "powerstate/running"
SCANNER_DATA_DISK_LUN = 0


class AzureNetworkInterfaceClient(NetworkInterfaceClient):
    def __init__(
        self,
        network: NetworkManagementClient,
        config: AzureScannerConfig,
        classifier: ErrorClassifier,
        timing: ReconcileTiming,
    ):
        super().__init__(classifier, timing)
        self.network = network
        self.config = config

    @azure_retry
    async def lookup(self, name: str, descriptor: ScanJobDescriptor) -> Optional[Observed[NetworkInterfaceHandle]]:
        nic = await self.network.network_interfaces.get(self.config.resource_group, name)
        return Observed(
            state=provisioning_state(nic.provisioning_state),
            value=NetworkInterfaceHandle(id=nic.id or "", name=nic.name or name, raw=nic),
            detail=nic.provisioning_state or "",
        )

    @azure_retry
    async def create(self, name: str, descriptor: ScanJobDescriptor) -> None:
        await self.network.network_interfaces.begin_create_or_update(
            self.config.resource_group,
            name,
            NetworkInterface(
                location=descriptor.destination_region,
                tags=scan_tags(descriptor),
                ip_configurations=[
                    NetworkInterfaceIPConfiguration(
                        name=f"{name}-ipconfig",
                        subnet=Subnet(id=self.config.subnet_id),
                        private_ip_allocation_method="Dynamic",
                    )
                ],
            ),
        )

    @azure_retry
    async def delete(self, name: str, descriptor: ScanJobDescriptor) -> None:
        await self.network.network_interfaces.begin_delete(self.config.resource_group, name)


class AzureVirtualMachineClient(ComputeClient):
    """Disposable scanner VM; the target disk is attached after the VM is up."""

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
    async def lookup(self, name: str, descriptor: ScanJobDescriptor) -> Optional[Observed[ComputeHandle]]:
        vm = await self.compute.virtual_machines.get(
            self.config.resource_group, name, expand="instanceView"
        )
        state = provisioning_state(vm.provisioning_state)
        detail = vm.provisioning_state or ""
        if state is ResourceState.READY:
            power_state = self._power_state(vm)
            detail = power_state or "unknown power state"
            if power_state != POWER_STATE_RUNNING:
                state = ResourceState.PROVISIONING
        return Observed(
            state=state,
            value=ComputeHandle(id=vm.id or "", name=vm.name or name, region=vm.location or "", raw=vm),
            detail=detail,
        )

    @staticmethod
    def _power_state(vm: VirtualMachine) -> Optional[str]:
        statuses = vm.instance_view.statuses if vm.instance_view and vm.instance_view.statuses else []
        for status in statuses:
            code = (status.code or "").lower()
            if code.startswith("powerstate/"):
                return code
        return None

    def _os_profile(self, name: str, descriptor: ScanJobDescriptor) -> OSProfile:
        user = self.config.admin_username
        custom_data = None
        if descriptor.scanner_config:
            custom_data = base64.b64encode(descriptor.scanner_config.encode("utf-8")).decode("ascii")
        return OSProfile(
            computer_name=name,
            admin_username=user,
            custom_data=custom_data,
            linux_configuration=LinuxConfiguration(
                disable_password_authentication=True,
                ssh=SshConfiguration(
                    public_keys=[
                        SshPublicKey(
                            path=f"/home/{user}/.ssh/authorized_keys",
                            key_data=self.config.ssh_public_key,
                        )
                    ]
                ),
            ),
        )

    @azure_retry
    async def create(
        self,
        name: str,
        descriptor: ScanJobDescriptor,
        volume: VolumeHandle,
        network_interface: Optional[NetworkInterfaceHandle] = None,
    ) -> None:
        if network_interface is None:
            raise ValueError("Azure scanner VM requires a network interface")
        await self.compute.virtual_machines.begin_create_or_update(
            self.config.resource_group,
            name,
            VirtualMachine(
                location=descriptor.destination_region,
                tags=scan_tags(descriptor),
                hardware_profile=HardwareProfile(vm_size=descriptor.compute_size),
                storage_profile=StorageProfile(
                    image_reference=ImageReference(
                        publisher=self.config.image_publisher,
                        offer=self.config.image_offer,
                        sku=self.config.image_sku,
                        version=self.config.image_version,
                    ),
                    os_disk=OSDisk(
                        name=f"{name}-os",
                        create_option="FromImage",
                        delete_option="Delete",
                        disk_size_gb=descriptor.os_disk_size_gb,
                        managed_disk=ManagedDiskParameters(storage_account_type="Standard_LRS"),
                    ),
                ),
                os_profile=self._os_profile(name, descriptor),
                network_profile=NetworkProfile(
                    network_interfaces=[NetworkInterfaceReference(id=network_interface.id, primary=True)]
                ),
            ),
        )

    @azure_retry
    async def attachment_state(self, compute: ComputeHandle, volume: VolumeHandle) -> ResourceState:
        vm = await self.compute.virtual_machines.get(self.config.resource_group, compute.name)
        data_disks = vm.storage_profile.data_disks if vm.storage_profile and vm.storage_profile.data_disks else []
        for disk in data_disks:
            disk_id = disk.managed_disk.id if disk.managed_disk else None
            if (disk_id or "").lower() == volume.id.lower():
                return provisioning_state(vm.provisioning_state)
        return ResourceState.ABSENT

    @azure_retry
    async def attach_volume(self, compute: ComputeHandle, volume: VolumeHandle) -> None:
        vm = await self.compute.virtual_machines.get(self.config.resource_group, compute.name)
        if vm.storage_profile is None:
            vm.storage_profile = StorageProfile()
        data_disks = list(vm.storage_profile.data_disks or [])
        data_disks.append(
            DataDisk(
                lun=SCANNER_DATA_DISK_LUN,
                name=volume.name,
                create_option="Attach",
                managed_disk=ManagedDiskParameters(id=volume.id),
            )
        )
        vm.storage_profile.data_disks = data_disks
        await self.compute.virtual_machines.begin_create_or_update(
            self.config.resource_group, compute.name, vm
        )

    @azure_retry
    async def delete(self, name: str, descriptor: ScanJobDescriptor) -> None:
        await self.compute.virtual_machines.begin_delete(self.config.resource_group, name)
