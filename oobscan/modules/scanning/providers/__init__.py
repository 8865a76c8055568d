from oobscan.modules.scanning.providers.factory import ScanProviderFactory

# Import all provider modules to trigger registration
import oobscan.modules.scanning.providers.aws.provider # noqa
import oobscan.modules.scanning.providers.azure.provider # noqa
import oobscan.modules.scanning.providers.docker.provider # noqa
import oobscan.modules.scanning.providers.gcp.provider # noqa

__all__ = ["ScanProviderFactory"]
