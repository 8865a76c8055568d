from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

from azure.core.exceptions import (
    ClientAuthenticationError,
    HttpResponseError,
    ServiceRequestError,
    ServiceResponseError,
)
from azure.identity.aio import ClientSecretCredential, DefaultAzureCredential
from azure.mgmt.compute.aio import ComputeManagementClient
from azure.mgmt.network.aio import NetworkManagementClient

from oobscan.core.exceptions import ConfigurationError
from oobscan.modules.scanning.domain.classifier import ErrorClassifier, ProviderFailure
from oobscan.modules.scanning.domain.models import ResourceState, ScanJobDescriptor
from oobscan.shared.core.config import Settings
from oobscan.shared.core.constants import OWNER_TAG, OWNER_TAG_VALUE, SCAN_ID_TAG
from oobscan.shared.core.credentials import AzureCredentials
from oobscan.shared.core.retry import with_transient_retry

PROVISIONING_STATE_SUCCEEDED = "succeeded"
PROVISIONING_STATE_FAILED = "failed"

azure_retry = with_transient_retry((ServiceRequestError, ServiceResponseError), provider="azure")

AzureAsyncCredential = ClientSecretCredential | DefaultAzureCredential


@dataclass(frozen=True)
class AzureScannerConfig:
    """Scanner-side Azure account layout."""

    subscription_id: str
    resource_group: str
    location: str
    storage_account: str
    storage_container: str
    subnet_id: str
    image_publisher: str
    image_offer: str
    image_sku: str
    image_version: str
    admin_username: str
    ssh_public_key: str

    @classmethod
    def from_settings(cls, settings: Settings) -> "AzureScannerConfig":
        return cls(
            subscription_id=settings.AZURE_SUBSCRIPTION_ID or "",
            resource_group=settings.AZURE_SCANNER_RESOURCE_GROUP or "",
            location=settings.AZURE_SCANNER_LOCATION or "",
            storage_account=settings.AZURE_SCANNER_STORAGE_ACCOUNT or "",
            storage_container=settings.AZURE_SCANNER_STORAGE_CONTAINER,
            subnet_id=settings.AZURE_SCANNER_SUBNET_ID or "",
            image_publisher=settings.AZURE_SCANNER_IMAGE_PUBLISHER,
            image_offer=settings.AZURE_SCANNER_IMAGE_OFFER,
            image_sku=settings.AZURE_SCANNER_IMAGE_SKU,
            image_version=settings.AZURE_SCANNER_IMAGE_VERSION,
            admin_username=settings.AZURE_SCANNER_ADMIN_USERNAME,
            ssh_public_key=settings.AZURE_SCANNER_SSH_PUBLIC_KEY or "",
        )

    def blob_url(self, blob_name: str) -> str:
        return f"https://{self.storage_account}.blob.core.windows.net/{self.storage_container}/{blob_name}"

    @property
    def storage_account_id(self) -> str:
        return (
            f"/subscriptions/{self.subscription_id}/resourceGroups/{self.resource_group}"
            f"/providers/Microsoft.Storage/storageAccounts/{self.storage_account}"
        )


def extract_azure_failure(exc: BaseException) -> Optional[ProviderFailure]:
    if isinstance(exc, (ServiceRequestError, ServiceResponseError)):
        return ProviderFailure(message=str(exc), transport=True)
    if isinstance(exc, ClientAuthenticationError):
        return ProviderFailure(
            message=str(exc),
            status_code=exc.status_code or 401,
            error_code="AuthenticationFailed",
        )
    if isinstance(exc, HttpResponseError):
        error_code = getattr(exc, "error_code", None)
        if not error_code and exc.error is not None:
            error_code = exc.error.code
        return ProviderFailure(message=exc.message or str(exc), status_code=exc.status_code, error_code=error_code)
    return None


def build_azure_classifier(throttle_delay: timedelta) -> ErrorClassifier:
    return ErrorClassifier(
        "azure",
        extract_azure_failure,
        throttle_delay=throttle_delay,
        not_found_codes=("ResourceNotFound", "NotFound", "BlobNotFound"),
        throttle_codes=("TooManyRequests", "SubscriptionRequestsThrottled", "ServerBusy"),
        retryable_codes=(
            "OperationPreempted",
            "RetryableError",
            "AttachDiskWhileBeingDetached",
            "PendingCopyOperation",
        ),
        fatal_codes=(
            "AuthenticationFailed",
            "AuthorizationFailed",
            "LinkedAuthorizationFailed",
            "InvalidAuthenticationToken",
            "AuthorizationPermissionMismatch",
            "InvalidParameter",
            "InvalidResourceReference",
            "OperationNotAllowed",
            "SkuNotAvailable",
            "ContainerNotFound",
            "ResourceGroupNotFound",
            "SubscriptionNotFound",
        ),
    )


def build_azure_credential(credentials: AzureCredentials) -> AzureAsyncCredential:
    if not credentials.subscription_id:
        raise ConfigurationError("Azure subscription_id is required")
    if credentials.uses_client_secret:
        assert credentials.client_secret is not None
        return ClientSecretCredential(
            tenant_id=credentials.tenant_id or "",
            client_id=credentials.client_id or "",
            client_secret=credentials.client_secret.get_secret_value(),
        )
    return DefaultAzureCredential()


def build_compute_client(credential: AzureAsyncCredential, subscription_id: str) -> ComputeManagementClient:
    return ComputeManagementClient(credential=credential, subscription_id=subscription_id)


def build_network_client(credential: AzureAsyncCredential, subscription_id: str) -> NetworkManagementClient:
    return NetworkManagementClient(credential=credential, subscription_id=subscription_id)


def provisioning_state(raw_state: Optional[str]) -> ResourceState:
    """Map an ARM provisioningState onto the lifecycle states."""
    state = (raw_state or "").lower()
    if state == PROVISIONING_STATE_SUCCEEDED:
        return ResourceState.READY
    if state in (PROVISIONING_STATE_FAILED, "canceled"):
        return ResourceState.FAILED
    return ResourceState.PROVISIONING


def scan_tags(descriptor: ScanJobDescriptor) -> dict[str, str]:
    return {OWNER_TAG: OWNER_TAG_VALUE, SCAN_ID_TAG: descriptor.asset_scan_id}
