"""
Shared plumbing for the GCP scan provider.

google-cloud-compute only ships blocking clients, so every call goes through
`asyncio.to_thread`. Insert/delete calls return once the operation is
accepted; nothing waits on `operation.result()`.
"""
import asyncio
import json
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Callable, Optional, TypeVar

from google.api_core.exceptions import GoogleAPICallError
from google.auth.exceptions import RefreshError, TransportError
from google.cloud import compute_v1
from google.oauth2 import service_account

from oobscan.core.exceptions import ConfigurationError
from oobscan.modules.scanning.domain.classifier import ErrorClassifier, ProviderFailure
from oobscan.modules.scanning.domain.models import ResourceState, ScanJobDescriptor
from oobscan.modules.scanning.domain.naming import scan_key
from oobscan.shared.core.config import Settings
from oobscan.shared.core.credentials import GCPCredentials
from oobscan.shared.core.retry import with_transient_retry

R = TypeVar("R")

gcp_retry = with_transient_retry((TransportError,), provider="gcp")

# GCP label keys only allow [a-z0-9_-]
OWNER_LABEL = "oobscan-owner"
SCAN_ID_LABEL = "oobscan-asset-scan-id"
OWNER_LABEL_VALUE = "oobscan"

GCP_DISK_TYPES = {"pd-standard", "pd-balanced", "pd-ssd", "pd-extreme", "hyperdisk-balanced"}
DEFAULT_DISK_TYPE = "pd-balanced"
DEFAULT_MACHINE_TYPE = "e2-standard-2"


@dataclass(frozen=True)
class GCPScannerConfig:
    project_id: str
    zone: str
    subnetwork: str
    source_image: str

    @classmethod
    def from_settings(cls, settings: Settings) -> "GCPScannerConfig":
        return cls(
            project_id=settings.GCP_PROJECT_ID or "",
            zone=settings.GCP_SCANNER_ZONE or "",
            subnetwork=settings.GCP_SCANNER_SUBNETWORK or "",
            source_image=settings.GCP_SCANNER_SOURCE_IMAGE,
        )


def extract_gcp_failure(exc: BaseException) -> Optional[ProviderFailure]:
    if isinstance(exc, TransportError):
        return ProviderFailure(message=str(exc), transport=True)
    if isinstance(exc, RefreshError):
        return ProviderFailure(message=str(exc), status_code=401, error_code="unauthenticated")
    if isinstance(exc, GoogleAPICallError):
        error_code = getattr(exc, "reason", None)
        if not error_code:
            for error in exc.errors or []:
                if isinstance(error, dict) and error.get("reason"):
                    error_code = error["reason"]
                    break
        status = exc.code if isinstance(exc.code, int) else None
        return ProviderFailure(message=exc.message or str(exc), status_code=status, error_code=error_code)
    return None


def build_gcp_classifier(throttle_delay: timedelta) -> ErrorClassifier:
    return ErrorClassifier(
        "gcp",
        extract_gcp_failure,
        throttle_delay=throttle_delay,
        not_found_codes=("notFound", "RESOURCE_NOT_FOUND"),
        throttle_codes=("rateLimitExceeded", "userRateLimitExceeded", "RATE_LIMIT_EXCEEDED"),
        retryable_codes=(
            "resourceNotReady",
            "resourceInUseByAnotherResource",
            "backendError",
            "internalError",
            "ZONE_RESOURCE_POOL_EXHAUSTED",
        ),
        fatal_codes=(
            "unauthenticated",
            "forbidden",
            "accessNotConfigured",
            "invalid",
            "badRequest",
            "invalidParameter",
            "SERVICE_DISABLED",
        ),
    )


def build_gcp_credentials(credentials: GCPCredentials) -> Any:
    """Service-account credentials from JSON, or None for application default credentials."""
    if not credentials.project_id:
        raise ConfigurationError("GCP project_id is required")
    if credentials.service_account_json is None:
        return None
    try:
        info = json.loads(credentials.service_account_json.get_secret_value())
    except json.JSONDecodeError as exc:
        raise ConfigurationError("GCP_SERVICE_ACCOUNT_JSON is not valid JSON") from exc
    return service_account.Credentials.from_service_account_info(info)  # type: ignore[no-untyped-call]


async def call_blocking(func: Callable[..., R], *args: Any, **kwargs: Any) -> R:
    return await asyncio.to_thread(func, *args, **kwargs)


def scan_labels(descriptor: ScanJobDescriptor) -> dict[str, str]:
    return {OWNER_LABEL: OWNER_LABEL_VALUE, SCAN_ID_LABEL: scan_key(descriptor.asset_scan_id)}


def status_state(status: Optional[str], ready: str, failed: tuple[str, ...] = ("FAILED",)) -> ResourceState:
    status = (status or "").upper()
    if status == ready:
        return ResourceState.READY
    if status in failed:
        return ResourceState.FAILED
    return ResourceState.PROVISIONING


def disk_type(descriptor: ScanJobDescriptor, zone: str) -> str:
    storage_class = descriptor.volume_storage_class.lower()
    name = storage_class if storage_class in GCP_DISK_TYPES else DEFAULT_DISK_TYPE
    return f"zones/{zone}/diskTypes/{name}"


def machine_type(descriptor: ScanJobDescriptor, zone: str) -> str:
    size = descriptor.compute_size
    name = size if "_" not in size and size == size.lower() and "." not in size else DEFAULT_MACHINE_TYPE
    return f"zones/{zone}/machineTypes/{name}"


def zone_region(zone: str) -> str:
    """us-central1-a -> us-central1"""
    return zone.rsplit("-", 1)[0] if "-" in zone else zone


class ComputeClients:
    """Lazily built blocking compute_v1 clients sharing one credential."""

    def __init__(self, credentials: Any = None):
        self.credentials = credentials
        self._snapshots: Optional[compute_v1.SnapshotsClient] = None
        self._disks: Optional[compute_v1.DisksClient] = None
        self._instances: Optional[compute_v1.InstancesClient] = None

    @property
    def snapshots(self) -> compute_v1.SnapshotsClient:
        if self._snapshots is None:
            self._snapshots = compute_v1.SnapshotsClient(credentials=self.credentials)
        return self._snapshots

    @property
    def disks(self) -> compute_v1.DisksClient:
        if self._disks is None:
            self._disks = compute_v1.DisksClient(credentials=self.credentials)
        return self._disks

    @property
    def instances(self) -> compute_v1.InstancesClient:
        if self._instances is None:
            self._instances = compute_v1.InstancesClient(credentials=self.credentials)
        return self._instances
