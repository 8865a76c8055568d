import pytest

from oobscan.core.exceptions import ProviderNotSupportedError
from oobscan.modules.scanning.providers import ScanProviderFactory
from oobscan.modules.scanning.providers.aws.provider import AWSScanProvider
from oobscan.modules.scanning.providers.base import BaseScanProvider
from oobscan.modules.scanning.providers.docker.provider import DockerScanProvider
from oobscan.shared.core.config import Settings


def test_all_provider_families_are_registered():
    assert ScanProviderFactory.registered() == ["aws", "azure", "docker", "gcp"]


def test_registration_sets_canonical_provider_name():
    assert AWSScanProvider.provider == "aws"
    assert DockerScanProvider.provider == "docker"


def test_unknown_provider_is_rejected():
    with pytest.raises(ProviderNotSupportedError):
        ScanProviderFactory.get_provider("openstack", Settings())


def test_re_registering_same_class_is_idempotent():
    assert ScanProviderFactory.register("aws")(AWSScanProvider) is AWSScanProvider


def test_conflicting_registration_is_rejected():
    class Impostor(BaseScanProvider):
        async def discover_assets(self):
            return []

    with pytest.raises(ValueError, match="Duplicate scan provider registration"):
        ScanProviderFactory.register("docker")(Impostor)


async def test_get_provider_builds_from_settings():
    settings = Settings(SCAN_PROVIDER="Docker", DOCKER_HOST_SOCKET="/tmp/oobscan-test.sock")
    provider = ScanProviderFactory.get_provider(settings=settings)
    try:
        assert isinstance(provider, DockerScanProvider)
        assert provider.settings is settings
    finally:
        await provider.close()
