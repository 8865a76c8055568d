"""
Docker provider against an in-memory Engine API, routed through respx.
"""
import json

import httpx
import pytest
import respx

from oobscan.core.exceptions import DockerAPIError, FatalError, RetryableError
from oobscan.modules.scanning.domain.classifier import ClassificationKind
from oobscan.modules.scanning.domain.models import (
    ComputeHandle,
    ResourceState,
    SnapshotHandle,
    StagedCopy,
    VolumeHandle,
    VolumeSource,
)
from oobscan.modules.scanning.domain.naming import resource_names
from oobscan.modules.scanning.domain.reconciler import ensure_volume
from oobscan.modules.scanning.providers.docker.engine import DockerEngine, build_docker_classifier
from oobscan.modules.scanning.providers.docker.provider import DockerScanProvider
from oobscan.modules.scanning.providers.docker.resources import (
    DockerContainerClient,
    DockerImageSnapshotClient,
    DockerVolumeClient,
    populate_helper_name,
)
from oobscan.shared.core.config import Settings
from oobscan.shared.core.constants import OWNER_TAG, SCAN_ID_TAG
from tests.fakes import SCAN_ID, collect_retries

NAMES = resource_names(SCAN_ID)
API = "/v1.43"


def _not_found(what):
    return httpx.Response(404, json={"message": f"No such {what}"})


class FakeDockerDaemon:
    """Just enough of the Engine API to run a scan lifecycle."""

    def __init__(self):
        self.images = {}
        self.volumes = {}
        self.containers = {}
        # container name -> exit code it stops with as soon as it is started
        self.exit_on_start = {}
        # (method, path) -> transport error raised once instead of answering
        self.fail_next = {}
        self.requests = []

    def add_container(self, name, status="running", labels=None, exit_code=0, mounts=()):
        self.containers[name] = {
            "Id": f"id-{name}",
            "Names": [f"/{name}"],
            "State": {"Status": status, "ExitCode": exit_code},
            "Labels": labels or {},
            "Mounts": [{"Type": "volume", "Name": m} for m in mounts],
        }
        return self.containers[name]

    def _container(self, ref):
        for name, container in self.containers.items():
            if ref in (name, container["Id"]):
                return name, container
        return None, None

    def __call__(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        assert path.startswith(API), path
        path = path[len(API):]
        method = request.method
        self.requests.append((method, path))
        failure = self.fail_next.pop((method, path), None)
        if failure is not None:
            raise failure
        params = request.url.params
        parts = path.strip("/").split("/")

        if parts[0] == "commit" and method == "POST":
            ref = f"{params['repo']}:{params['tag']}"
            self.images[ref] = {"Id": f"sha256:{len(self.images) + 1:064d}", "Source": params["container"]}
            return httpx.Response(201, json={"Id": self.images[ref]["Id"]})

        if parts[0] == "images":
            ref = parts[1]
            if ref not in self.images:
                return _not_found("image")
            if method == "DELETE":
                del self.images[ref]
                return httpx.Response(200, json=[{"Deleted": ref}])
            return httpx.Response(200, json=self.images[ref])

        if parts[0] == "volumes":
            name = parts[1]
            if name not in self.volumes:
                return _not_found("volume")
            if method == "DELETE":
                del self.volumes[name]
                return httpx.Response(204)
            return httpx.Response(200, json=self.volumes[name])

        if parts[0] == "containers" and parts[1] == "json":
            return httpx.Response(200, json=list(self.containers.values()))

        if parts[0] == "containers" and parts[1] == "create":
            body = json.loads(request.content)
            name = params["name"]
            if name in self.containers:
                return httpx.Response(409, json={"message": f'Conflict. The container name "/{name}" is already in use'})
            mounts = [m["Source"] for m in body.get("HostConfig", {}).get("Mounts", [])]
            for mount in mounts:
                self.volumes.setdefault(mount, {"Name": mount, "Labels": body.get("Labels", {})})
            container = self.add_container(name, status="created", labels=body.get("Labels"), mounts=mounts)
            container["Spec"] = body
            return httpx.Response(201, json={"Id": container["Id"]})

        if parts[0] == "containers":
            name, container = self._container(parts[1])
            if container is None:
                return _not_found("container")
            action = parts[2] if len(parts) > 2 else None
            if method == "DELETE":
                del self.containers[name]
                return httpx.Response(204)
            if action == "json":
                return httpx.Response(200, json=container)
            if action == "start":
                if name in self.exit_on_start:
                    container["State"] = {"Status": "exited", "ExitCode": self.exit_on_start[name]}
                else:
                    container["State"]["Status"] = "running"
                return httpx.Response(204)

        return httpx.Response(500, json={"message": f"unhandled {method} {path}"})


@pytest.fixture
def docker_api():
    return respx.MockRouter(base_url=f"http://docker{API}", assert_all_called=False)


@pytest.fixture
def daemon(docker_api):
    daemon = FakeDockerDaemon()
    docker_api.route().mock(side_effect=daemon)
    return daemon


@pytest.fixture
async def engine(docker_api):
    client = httpx.AsyncClient(transport=httpx.MockTransport(docker_api.handler), base_url="http://docker")
    engine = DockerEngine("/var/run/docker.sock", "v1.43", client=client)
    yield engine
    await engine.close()


@pytest.fixture
def classifier(timing):
    return build_docker_classifier(timing.throttle)


@pytest.fixture
def docker_descriptor(descriptor):
    return descriptor.model_copy(
        update={
            "asset": descriptor.asset.model_copy(update={"asset_id": "id-web", "volume_id": "id-web", "region": "local"}),
            "source_region": "local",
            "destination_region": "local",
            "scanner_image": "registry.example/scanner:1.4",
        }
    )


class TestDockerEngine:
    async def test_error_message_is_taken_from_json_body(self, engine, docker_api):
        docker_api.get("/info").respond(500, json={"message": "daemon on fire"})
        with pytest.raises(DockerAPIError) as exc:
            await engine.request("GET", "/info")
        assert exc.value.status_code == 500
        assert exc.value.message == "daemon on fire"

    async def test_plain_text_error_body(self, engine, docker_api):
        docker_api.post("/anything").respond(400, text="bad parameter")
        with pytest.raises(DockerAPIError, match="bad parameter"):
            await engine.request("POST", "/anything")

    async def test_get_or_none_maps_404(self, engine, docker_api):
        route = docker_api.get("/volumes/missing").respond(404, json={"message": "get missing: no such volume"})
        assert await engine.get_or_none("/volumes/missing") is None
        assert route.called

    async def test_get_or_none_raises_other_errors(self, engine, docker_api):
        docker_api.get("/volumes/broken").respond(500, json={"message": "boom"})
        with pytest.raises(DockerAPIError):
            await engine.get_or_none("/volumes/broken")

    async def test_empty_response_is_none(self, engine, docker_api):
        docker_api.delete("/volumes/v").respond(204)
        assert await engine.request("DELETE", "/volumes/v") is None


class TestDockerClassifier:
    @pytest.mark.parametrize(
        "exc, expected",
        [
            (DockerAPIError("No such container: x", status_code=404), ClassificationKind.NOT_FOUND),
            (DockerAPIError("No such image: scanner:1", status_code=404), ClassificationKind.FATAL),
            (DockerAPIError("pull access denied for scanner", status_code=404), ClassificationKind.FATAL),
            (DockerAPIError('The container name "/x" is already in use', status_code=409), ClassificationKind.RETRYABLE),
            (DockerAPIError("remove v: volume is in use", status_code=409), ClassificationKind.RETRYABLE),
            (DockerAPIError("server error", status_code=500), ClassificationKind.RETRYABLE),
            (DockerAPIError("invalid reference format", status_code=400), ClassificationKind.FATAL),
            (httpx.ConnectError("socket missing"), ClassificationKind.RETRYABLE),
        ],
    )
    def test_classification(self, classifier, exc, expected):
        assert classifier.classify(exc, "testing").kind is expected


class TestDockerImageSnapshotClient:
    async def test_commit_and_lookup(self, engine, daemon, classifier, timing, docker_descriptor):
        client = DockerImageSnapshotClient(engine, classifier, timing)
        assert await client.lookup(NAMES.snapshot, docker_descriptor) is None

        await client.create(NAMES.snapshot, docker_descriptor)
        observed = await client.lookup(NAMES.snapshot, docker_descriptor)

        assert observed.state is ResourceState.READY
        assert observed.value.name == f"{NAMES.snapshot}:latest"
        assert daemon.images[f"{NAMES.snapshot}:latest"]["Source"] == "id-web"

    async def test_delete_removes_image(self, engine, daemon, classifier, timing, docker_descriptor):
        daemon.images[f"{NAMES.snapshot}:latest"] = {"Id": "sha256:1"}
        await DockerImageSnapshotClient(engine, classifier, timing).delete(NAMES.snapshot, docker_descriptor)
        assert daemon.images == {}


class TestDockerVolumeClient:
    snapshot = SnapshotHandle(id="sha256:abc", name=f"{NAMES.snapshot}:latest", region="local")
    helper = populate_helper_name(NAMES.volume)

    async def test_create_starts_detached_helper(self, engine, daemon, classifier, timing, docker_descriptor):
        client = DockerVolumeClient(engine, classifier, timing)
        await client.create(NAMES.volume, docker_descriptor, VolumeSource.from_snapshot(self.snapshot))

        spec = daemon.containers[self.helper]["Spec"]
        assert spec["Image"] == "sha256:abc"
        assert spec["HostConfig"]["Mounts"][0]["Target"] == "/mnt/snapshot"
        assert "tar -C /mnt/snapshot -xf -" in spec["Cmd"][0]
        assert ("POST", f"/containers/{self.helper}/start") in daemon.requests
        assert daemon.volumes[NAMES.volume]["Labels"][SCAN_ID_TAG] == SCAN_ID

        observed = await client.lookup(NAMES.volume, docker_descriptor)
        assert observed.state is ResourceState.PROVISIONING
        assert observed.detail == "populating (running)"

    async def test_clean_helper_exit_is_ready_and_removes_helper(
        self, engine, daemon, classifier, timing, docker_descriptor
    ):
        daemon.volumes[NAMES.volume] = {"Name": NAMES.volume}
        daemon.add_container(self.helper, status="exited", exit_code=0)

        observed = await DockerVolumeClient(engine, classifier, timing).lookup(NAMES.volume, docker_descriptor)

        assert observed.state is ResourceState.READY
        assert self.helper not in daemon.containers

    @pytest.mark.parametrize("status, exit_code", [("exited", 2), ("dead", 0)])
    async def test_failed_helper_is_failed_volume(
        self, engine, daemon, classifier, timing, docker_descriptor, status, exit_code
    ):
        daemon.volumes[NAMES.volume] = {"Name": NAMES.volume}
        daemon.add_container(self.helper, status=status, exit_code=exit_code)

        observed = await DockerVolumeClient(engine, classifier, timing).lookup(NAMES.volume, docker_descriptor)

        assert observed.state is ResourceState.FAILED
        assert self.helper in daemon.containers

    async def test_helper_left_unstarted_is_started_on_lookup(
        self, engine, daemon, classifier, timing, docker_descriptor
    ):
        daemon.volumes[NAMES.volume] = {"Name": NAMES.volume}
        daemon.add_container(self.helper, status="created")

        observed = await DockerVolumeClient(engine, classifier, timing).lookup(NAMES.volume, docker_descriptor)

        assert observed.state is ResourceState.PROVISIONING
        assert daemon.containers[self.helper]["State"]["Status"] == "running"

    async def test_timeout_while_starting_helper_is_retried_not_fatal(
        self, engine, daemon, classifier, timing, docker_descriptor
    ):
        client = DockerVolumeClient(engine, classifier, timing)
        source = VolumeSource.from_snapshot(self.snapshot)
        daemon.fail_next[("POST", f"/containers/{self.helper}/start")] = httpx.ReadTimeout("daemon stopped answering")

        with pytest.raises(RetryableError):
            await ensure_volume(client, docker_descriptor, source)
        assert daemon.containers[self.helper]["State"]["Status"] == "created"

        daemon.exit_on_start[self.helper] = 0
        with pytest.raises(RetryableError, match="population started"):
            await ensure_volume(client, docker_descriptor, source)

        volume = await ensure_volume(client, docker_descriptor, source)
        assert volume.name == NAMES.volume
        assert self.helper not in daemon.containers

    async def test_delete_removes_helper_and_volume(self, engine, daemon, classifier, timing, docker_descriptor):
        daemon.volumes[NAMES.volume] = {"Name": NAMES.volume}
        daemon.add_container(self.helper, status="running")
        await DockerVolumeClient(engine, classifier, timing).delete(NAMES.volume, docker_descriptor)
        assert daemon.volumes == {}
        assert daemon.containers == {}

    async def test_delete_without_helper(self, engine, daemon, classifier, timing, docker_descriptor):
        daemon.volumes[NAMES.volume] = {"Name": NAMES.volume}
        await DockerVolumeClient(engine, classifier, timing).delete(NAMES.volume, docker_descriptor)
        assert daemon.volumes == {}

    async def test_staged_source_is_fatal(self, engine, classifier, timing, docker_descriptor):
        staged = StagedCopy(name=NAMES.staged_copy, url="x", region="local")
        with pytest.raises(FatalError):
            await DockerVolumeClient(engine, classifier, timing).create(
                NAMES.volume, docker_descriptor, VolumeSource.from_staged_copy(staged)
            )


class TestDockerContainerClient:
    volume = VolumeHandle(id=NAMES.volume, name=NAMES.volume, region="local")

    @pytest.mark.parametrize(
        "status, exit_code, expected",
        [
            ("created", 0, ResourceState.READY),
            ("running", 0, ResourceState.READY),
            ("restarting", 0, ResourceState.PROVISIONING),
            ("exited", 0, ResourceState.READY),
            ("exited", 137, ResourceState.FAILED),
            ("dead", 0, ResourceState.FAILED),
        ],
    )
    async def test_lookup_states(self, engine, daemon, classifier, timing, docker_descriptor, status, exit_code, expected):
        daemon.add_container(NAMES.compute, status=status, exit_code=exit_code)
        observed = await DockerContainerClient(engine, classifier, timing).lookup(NAMES.compute, docker_descriptor)
        assert observed.state is expected

    async def test_create_mounts_volume_read_only(self, engine, daemon, classifier, timing, docker_descriptor):
        client = DockerContainerClient(engine, classifier, timing, network="scan-net")
        await client.create(NAMES.compute, docker_descriptor, self.volume)

        spec = daemon.containers[NAMES.compute]["Spec"]
        assert spec["Image"] == "registry.example/scanner:1.4"
        assert spec["HostConfig"]["Mounts"][0]["ReadOnly"] is True
        assert spec["HostConfig"]["Mounts"][0]["Source"] == NAMES.volume
        assert spec["HostConfig"]["NetworkMode"] == "scan-net"
        assert spec["Env"] == ["OOBSCAN_SCANNER_CONFIG=scan: full"]
        assert spec["Labels"][OWNER_TAG] == "oobscan"

    async def test_create_without_image_is_fatal(self, engine, classifier, timing, docker_descriptor):
        descriptor = docker_descriptor.model_copy(update={"scanner_image": None})
        with pytest.raises(FatalError):
            await DockerContainerClient(engine, classifier, timing).create(NAMES.compute, descriptor, self.volume)

    async def test_attach_means_start(self, engine, daemon, classifier, timing):
        container = daemon.add_container(NAMES.compute, status="created", mounts=[NAMES.volume])
        client = DockerContainerClient(engine, classifier, timing)
        compute = ComputeHandle(id=container["Id"], name=NAMES.compute, region="local")

        assert await client.attachment_state(compute, self.volume) is ResourceState.ABSENT
        await client.attach_volume(compute, self.volume)
        assert ("POST", f"/containers/{container['Id']}/start") in daemon.requests
        assert await client.attachment_state(compute, self.volume) is ResourceState.READY

    async def test_missing_mount_is_failed_attachment(self, engine, daemon, classifier, timing):
        container = daemon.add_container(NAMES.compute, status="running", mounts=["something-else"])
        compute = ComputeHandle(id=container["Id"], name=NAMES.compute, region="local")
        state = await DockerContainerClient(engine, classifier, timing).attachment_state(compute, self.volume)
        assert state is ResourceState.FAILED


class TestDockerScanProvider:
    @pytest.fixture
    def provider(self, engine, timing):
        return DockerScanProvider(Settings(), timing, engine=engine)

    async def test_discovery_skips_scanner_containers(self, provider, daemon):
        daemon.add_container("web")
        daemon.add_container(NAMES.compute, labels={OWNER_TAG: "oobscan"})
        assets = await provider.discover_assets()
        assert [(a.asset_id, a.name, a.region) for a in assets] == [("id-web", "web", "local")]

    async def test_full_lifecycle(self, provider, daemon, docker_descriptor):
        daemon.add_container("web")
        daemon.exit_on_start[populate_helper_name(NAMES.volume)] = 0

        retries = await collect_retries(provider.run_asset_scan, docker_descriptor)
        assert len(retries) == 4
        scanner = daemon.containers[NAMES.compute]
        assert scanner["State"]["Status"] == "running"
        assert [m["Name"] for m in scanner["Mounts"]] == [NAMES.volume]

        retries = await collect_retries(provider.remove_asset_scan, docker_descriptor)
        assert len(retries) == 3
        assert list(daemon.containers) == ["web"]
        assert daemon.volumes == {}
        assert daemon.images == {}
