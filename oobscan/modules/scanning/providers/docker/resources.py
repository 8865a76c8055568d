"""
Docker host resources.

snapshot  -> image committed from the asset container
volume    -> named volume holding the committed filesystem
compute   -> scanner container with the volume mounted read-only

The volume is populated by a detached helper container started from the
snapshot image, which copies its own root filesystem into the mounted
volume. The helper is removed once it exits cleanly.
"""
from typing import Any, Optional

from oobscan.core.exceptions import DockerAPIError, FatalError
from oobscan.modules.scanning.domain.classifier import ErrorClassifier
from oobscan.modules.scanning.domain.clients import (
    ComputeClient,
    ReconcileTiming,
    SnapshotClient,
    VolumeClient,
)
from oobscan.modules.scanning.domain.models import (
    ComputeHandle,
    NetworkInterfaceHandle,
    Observed,
    ResourceState,
    ScanJobDescriptor,
    SnapshotHandle,
    VolumeHandle,
    VolumeSource,
)
from oobscan.modules.scanning.providers.docker.engine import DockerEngine, docker_retry
from oobscan.shared.core.constants import (
    DOCKER_TARGET_MOUNT_PATH,
    OWNER_TAG,
    OWNER_TAG_VALUE,
    SCAN_ID_TAG,
)

DOCKER_LOCATION = "local"
SNAPSHOT_TAG = "latest"

_CONTAINER_STATES = {
    "created": ResourceState.READY,
    "running": ResourceState.READY,
    "restarting": ResourceState.PROVISIONING,
    "paused": ResourceState.PROVISIONING,
    "removing": ResourceState.PROVISIONING,
    "dead": ResourceState.FAILED,
}

# Mount points and kernel filesystems are not part of the committed image.
POPULATE_SCRIPT = (
    f"tar -C / -cf - --exclude=.{DOCKER_TARGET_MOUNT_PATH} --exclude=./proc --exclude=./sys --exclude=./dev . "
    f"| tar -C {DOCKER_TARGET_MOUNT_PATH} -xf -"
)


def scan_labels(descriptor: ScanJobDescriptor) -> dict[str, str]:
    return {OWNER_TAG: OWNER_TAG_VALUE, SCAN_ID_TAG: descriptor.asset_scan_id}


def image_reference(name: str) -> str:
    return f"{name}:{SNAPSHOT_TAG}"


def populate_helper_name(volume_name: str) -> str:
    return f"{volume_name}-populate"


class DockerImageSnapshotClient(SnapshotClient):
    """Commits the asset container; the commit is synchronous, so an image that exists is ready."""

    def __init__(self, engine: DockerEngine, classifier: ErrorClassifier, timing: ReconcileTiming):
        super().__init__(classifier, timing)
        self.engine = engine

    @docker_retry
    async def lookup(self, name: str, descriptor: ScanJobDescriptor) -> Optional[Observed[SnapshotHandle]]:
        image = await self.engine.get_or_none(f"/images/{image_reference(name)}/json")
        if image is None:
            return None
        return Observed(
            state=ResourceState.READY,
            value=SnapshotHandle(id=image["Id"], name=image_reference(name), region=DOCKER_LOCATION, raw=image),
            detail="committed",
        )

    @docker_retry
    async def create(self, name: str, descriptor: ScanJobDescriptor) -> None:
        await self.engine.request(
            "POST",
            "/commit",
            params={
                "container": descriptor.asset.volume_id,
                "repo": name,
                "tag": SNAPSHOT_TAG,
                "comment": f"oobscan snapshot of {descriptor.asset.asset_id}",
                "pause": "true",
            },
            json={"Labels": scan_labels(descriptor)},
        )

    @docker_retry
    async def delete(self, name: str, descriptor: ScanJobDescriptor) -> None:
        await self.engine.request("DELETE", f"/images/{image_reference(name)}", params={"force": "true"})


class DockerVolumeClient(VolumeClient):
    """
    The helper runs detached, so create only starts the copy. The helper's
    exit status is the population state; a clean exit removes it.
    """

    def __init__(self, engine: DockerEngine, classifier: ErrorClassifier, timing: ReconcileTiming):
        super().__init__(classifier, timing)
        self.engine = engine

    @docker_retry
    async def lookup(self, name: str, descriptor: ScanJobDescriptor) -> Optional[Observed[VolumeHandle]]:
        volume = await self.engine.get_or_none(f"/volumes/{name}")
        if volume is None:
            return None
        handle = VolumeHandle(id=volume["Name"], name=volume["Name"], region=DOCKER_LOCATION, raw=volume)
        helper_name = populate_helper_name(name)
        helper = await self.engine.get_or_none(f"/containers/{helper_name}/json")
        if helper is None:
            return Observed(state=ResourceState.READY, value=handle, detail="populated")

        status = helper.get("State", {}).get("Status", "")
        if status == "created":
            # create returned before the helper was started
            await self.engine.request("POST", f"/containers/{helper_name}/start")
            return Observed(state=ResourceState.PROVISIONING, value=handle, detail="population started")
        if status == "exited":
            exit_code = helper.get("State", {}).get("ExitCode", 1)
            if exit_code != 0:
                return Observed(
                    state=ResourceState.FAILED,
                    value=handle,
                    detail=f"volume population exited ({exit_code})",
                )
            await self._remove_helper(name)
            return Observed(state=ResourceState.READY, value=handle, detail="populated")
        if status == "dead":
            return Observed(state=ResourceState.FAILED, value=handle, detail="volume population helper is dead")
        return Observed(state=ResourceState.PROVISIONING, value=handle, detail=f"populating ({status})")

    @docker_retry
    async def create(self, name: str, descriptor: ScanJobDescriptor, source: VolumeSource) -> None:
        if source.snapshot is None:
            raise FatalError("docker volumes can only be populated from a local snapshot image")
        helper = populate_helper_name(name)
        # Creating the helper creates the volume with it, so a volume never
        # exists without either its helper or its contents.
        await self.engine.request(
            "POST",
            "/containers/create",
            params={"name": helper},
            json={
                "Image": source.snapshot.id,
                "Entrypoint": ["/bin/sh", "-c"],
                "Cmd": [POPULATE_SCRIPT],
                "Labels": scan_labels(descriptor),
                "HostConfig": {
                    "Mounts": [
                        {
                            "Type": "volume",
                            "Source": name,
                            "Target": DOCKER_TARGET_MOUNT_PATH,
                            "VolumeOptions": {"NoCopy": True, "Labels": scan_labels(descriptor)},
                        }
                    ]
                },
            },
        )
        await self.engine.request("POST", f"/containers/{helper}/start")

    @docker_retry
    async def delete(self, name: str, descriptor: ScanJobDescriptor) -> None:
        await self._remove_helper(name)
        await self.engine.request("DELETE", f"/volumes/{name}")

    async def _remove_helper(self, volume_name: str) -> None:
        try:
            await self.engine.request(
                "DELETE", f"/containers/{populate_helper_name(volume_name)}", params={"force": "true"}
            )
        except DockerAPIError as exc:
            if exc.status_code != 404:
                raise


class DockerContainerClient(ComputeClient):
    """
    Scanner container. The volume mount is declared at create time; the
    attachment step is starting the container so the mount goes live.
    """

    def __init__(
        self,
        engine: DockerEngine,
        classifier: ErrorClassifier,
        timing: ReconcileTiming,
        default_image: Optional[str] = None,
        network: Optional[str] = None,
    ):
        super().__init__(classifier, timing)
        self.engine = engine
        self.default_image = default_image
        self.network = network

    @docker_retry
    async def lookup(self, name: str, descriptor: ScanJobDescriptor) -> Optional[Observed[ComputeHandle]]:
        container = await self.engine.get_or_none(f"/containers/{name}/json")
        if container is None:
            return None
        status = container.get("State", {}).get("Status", "")
        state = _CONTAINER_STATES.get(status, ResourceState.PROVISIONING)
        if status == "exited":
            # A scanner that ran to completion is done, not broken.
            exit_code = container.get("State", {}).get("ExitCode", 1)
            state = ResourceState.READY if exit_code == 0 else ResourceState.FAILED
            status = f"exited ({exit_code})"
        return Observed(
            state=state,
            value=ComputeHandle(id=container["Id"], name=name, region=DOCKER_LOCATION, raw=container),
            detail=status,
        )

    def _container_spec(self, descriptor: ScanJobDescriptor, volume: VolumeHandle) -> dict[str, Any]:
        image = descriptor.scanner_image or self.default_image
        if not image:
            raise FatalError("no scanner image configured for docker scans")
        host_config: dict[str, Any] = {
            "Mounts": [
                {
                    "Type": "volume",
                    "Source": volume.name,
                    "Target": DOCKER_TARGET_MOUNT_PATH,
                    "ReadOnly": True,
                }
            ]
        }
        if self.network:
            host_config["NetworkMode"] = self.network
        spec: dict[str, Any] = {
            "Image": image,
            "Labels": scan_labels(descriptor),
            "HostConfig": host_config,
        }
        if descriptor.scanner_config:
            spec["Env"] = [f"OOBSCAN_SCANNER_CONFIG={descriptor.scanner_config}"]
        return spec

    @docker_retry
    async def create(
        self,
        name: str,
        descriptor: ScanJobDescriptor,
        volume: VolumeHandle,
        network_interface: Optional[NetworkInterfaceHandle] = None,
    ) -> None:
        await self.engine.request(
            "POST",
            "/containers/create",
            params={"name": name},
            json=self._container_spec(descriptor, volume),
        )

    @docker_retry
    async def attachment_state(self, compute: ComputeHandle, volume: VolumeHandle) -> ResourceState:
        container = await self.engine.get_or_none(f"/containers/{compute.name}/json")
        if container is None:
            return ResourceState.ABSENT
        mounts = container.get("Mounts", [])
        if not any(mount.get("Name") == volume.name for mount in mounts):
            return ResourceState.FAILED
        status = container.get("State", {}).get("Status", "")
        if status == "created":
            return ResourceState.ABSENT
        if status in ("running", "exited"):
            return ResourceState.READY
        return ResourceState.PROVISIONING

    @docker_retry
    async def attach_volume(self, compute: ComputeHandle, volume: VolumeHandle) -> None:
        await self.engine.request("POST", f"/containers/{compute.id}/start")

    @docker_retry
    async def delete(self, name: str, descriptor: ScanJobDescriptor) -> None:
        await self.engine.request("DELETE", f"/containers/{name}", params={"force": "true", "v": "false"})
