"""
Global pytest fixtures for the oobscan test suite.

Provides:
- Test environment flags (set before any oobscan import)
- A canonical scan job descriptor, same-region and cross-region
- An in-memory scan provider built from scripted fake resource clients
"""
import os

# Set test environment BEFORE any oobscan imports
os.environ["TESTING"] = "true"
os.environ.setdefault("ENVIRONMENT", "local")

from datetime import timedelta  # noqa: E402

import pytest  # noqa: E402

from oobscan.modules.scanning.domain.clients import ReconcileTiming  # noqa: E402
from oobscan.modules.scanning.domain.models import AssetReference, ScanJobDescriptor  # noqa: E402
from oobscan.shared.core.config import get_settings  # noqa: E402
from tests.fakes import SCAN_ID, FakeScanProvider  # noqa: E402


@pytest.fixture(autouse=True)
def _clear_settings_cache():
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def timing() -> ReconcileTiming:
    return ReconcileTiming(
        snapshot=timedelta(seconds=120),
        staged_copy=timedelta(seconds=90),
        volume=timedelta(seconds=60),
        compute=timedelta(seconds=45),
        teardown=timedelta(seconds=30),
        throttle=timedelta(seconds=15),
        access_grant=timedelta(minutes=10),
    )


@pytest.fixture
def asset() -> AssetReference:
    return AssetReference(
        asset_id="/subscriptions/sub/resourceGroups/rg/providers/Microsoft.Compute/virtualMachines/web-1",
        volume_id="/subscriptions/sub/resourceGroups/rg/providers/Microsoft.Compute/disks/web-1-os",
        region="eastus",
        name="web-1",
    )


@pytest.fixture
def descriptor(asset) -> ScanJobDescriptor:
    return ScanJobDescriptor(
        asset_scan_id=SCAN_ID,
        asset=asset,
        source_region="eastus",
        destination_region="eastus",
        scanner_config="scan: full",
    )


@pytest.fixture
def cross_region_descriptor(asset) -> ScanJobDescriptor:
    return ScanJobDescriptor(
        asset_scan_id=SCAN_ID,
        asset=asset,
        source_region="eastus",
        destination_region="westeurope",
        scanner_config="scan: full",
    )


@pytest.fixture
def provider(timing) -> FakeScanProvider:
    return FakeScanProvider(get_settings(), timing)
