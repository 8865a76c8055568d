from abc import ABC, abstractmethod
from typing import Any, Optional

import structlog

from oobscan.core.exceptions import ScanError
from oobscan.core.tracing import get_tracer
from oobscan.modules.scanning.domain.clients import (
    ComputeClient,
    NetworkInterfaceClient,
    ReconcileTiming,
    SnapshotClient,
    StagedCopyClient,
    VolumeClient,
)
from oobscan.modules.scanning.domain.models import (
    AssetReference,
    ScanJobDescriptor,
    SnapshotHandle,
    VolumeHandle,
    VolumeSource,
)
from oobscan.modules.scanning.domain.naming import resource_names
from oobscan.modules.scanning.domain.reconciler import (
    ensure_absent,
    ensure_compute,
    ensure_network_interface,
    ensure_snapshot,
    ensure_snapshot_absent,
    ensure_staged_copy,
    ensure_volume,
    ensure_volume_attached,
)
from oobscan.shared.core.config import Settings

logger = structlog.get_logger()
tracer = get_tracer(__name__)


class BaseScanProvider(ABC):
    """
    Abstract base class for scan providers.

    One implementation per provider family. Subclasses wire up their resource
    clients; the ordering of the lifecycle lives here so every provider
    provisions and tears down the same way:

        snapshot -> [staged copy] -> volume -> [nic] -> compute -> attachment
    """

    provider: str = "base"

    snapshots: SnapshotClient
    volumes: VolumeClient
    compute: ComputeClient
    staged_copies: Optional[StagedCopyClient] = None
    network_interfaces: Optional[NetworkInterfaceClient] = None

    def __init__(self, settings: Settings, timing: Optional[ReconcileTiming] = None):
        self.settings = settings
        self.timing = timing or ReconcileTiming.from_settings(settings)

    @abstractmethod
    async def discover_assets(self) -> list[AssetReference]:
        """List the assets this provider can scan."""
        raise NotImplementedError()

    async def close(self) -> None:
        """Release SDK clients. Providers without pooled clients need nothing here."""
        return None

    async def __aenter__(self) -> "BaseScanProvider":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    def needs_staged_copy(self, descriptor: ScanJobDescriptor) -> bool:
        return descriptor.is_cross_region and self.staged_copies is not None

    async def run_asset_scan(self, descriptor: ScanJobDescriptor) -> None:
        """
        Advance the scan infrastructure one step.

        Returns once every resource is ready and the volume is attached to a
        running scanner; otherwise raises the first RetryableError/FatalError.
        """
        with structlog.contextvars.bound_contextvars(
            asset_scan_id=descriptor.asset_scan_id, provider=self.provider
        ), tracer.start_as_current_span("run_asset_scan") as span:
            span.set_attribute("asset_scan_id", descriptor.asset_scan_id)
            span.set_attribute("provider", self.provider)
            try:
                snapshot = await ensure_snapshot(self.snapshots, descriptor)
                source = await self._volume_source(descriptor, snapshot)
                volume = await ensure_volume(self.volumes, descriptor, source)
                await self._ensure_scanner(descriptor, volume)
            except ScanError as exc:
                span.set_attribute("outcome", "retryable" if exc.retryable else "fatal")
                raise
            span.set_attribute("outcome", "ready")
            logger.info("asset_scan_resources_ready")

    async def _volume_source(self, descriptor: ScanJobDescriptor, snapshot: SnapshotHandle) -> VolumeSource:
        if self.needs_staged_copy(descriptor):
            assert self.staged_copies is not None
            staged = await ensure_staged_copy(self.staged_copies, descriptor, snapshot)
            return VolumeSource.from_staged_copy(staged)
        return VolumeSource.from_snapshot(snapshot)

    async def _ensure_scanner(self, descriptor: ScanJobDescriptor, volume: VolumeHandle) -> None:
        network_interface = None
        if self.network_interfaces is not None:
            network_interface = await ensure_network_interface(self.network_interfaces, descriptor)
        scanner = await ensure_compute(self.compute, descriptor, volume, network_interface)
        await ensure_volume_attached(self.compute, scanner, volume)

    async def remove_asset_scan(self, descriptor: ScanJobDescriptor) -> None:
        """
        Tear down everything `run_asset_scan` may have created, in reverse order.

        Safe to call repeatedly and after a partial provisioning failure.
        """
        names = resource_names(descriptor.asset_scan_id)
        with structlog.contextvars.bound_contextvars(
            asset_scan_id=descriptor.asset_scan_id, provider=self.provider
        ), tracer.start_as_current_span("remove_asset_scan") as span:
            span.set_attribute("asset_scan_id", descriptor.asset_scan_id)
            span.set_attribute("provider", self.provider)
            await ensure_absent(self.compute, names.compute, descriptor)
            if self.network_interfaces is not None:
                await ensure_absent(self.network_interfaces, names.network_interface, descriptor)
            await ensure_absent(self.volumes, names.volume, descriptor)
            if self.staged_copies is not None:
                await ensure_absent(self.staged_copies, names.staged_copy, descriptor)
            await ensure_snapshot_absent(self.snapshots, descriptor, self.staged_copies)
            logger.info("asset_scan_resources_removed")
