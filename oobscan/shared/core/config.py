from functools import lru_cache
from threading import Lock
from typing import Optional
import structlog
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import model_validator
from oobscan.shared.core.constants import (
    AWS_SUPPORTED_REGIONS,
    MAX_ACCESS_GRANT_SECONDS,
    ProviderKind,
)

# Environment Constants
ENV_PRODUCTION = "production"
ENV_STAGING = "staging"
ENV_DEVELOPMENT = "development"
ENV_LOCAL = "local"


@lru_cache
def get_settings() -> "Settings":
    """Returns a singleton instance of the application settings."""
    return Settings()


_settings_reload_lock = Lock()


def reload_settings_from_environment() -> "Settings":
    """
    Atomically rebuild and replace cached settings from environment values.

    This avoids mutating the cached singleton instance in-place.
    """
    logger = structlog.get_logger()
    with _settings_reload_lock:
        logger.info("settings_reload_started")
        get_settings.cache_clear()
        refreshed = get_settings()
        logger.info("settings_reload_completed")
        return refreshed


class Settings(BaseSettings):
    """
    Main configuration for oobscan.
    Uses Pydantic-Settings for environment variable parsing from .env.
    """

    APP_NAME: str = "oobscan"
    VERSION: str = "0.1.0"
    DEBUG: bool = False
    # ENVIRONMENT options: local, development, staging, production
    ENVIRONMENT: str = ENV_DEVELOPMENT
    TESTING: bool = False
    OTEL_EXPORTER_OTLP_ENDPOINT: Optional[str] = None
    OTEL_EXPORTER_OTLP_INSECURE: bool = False

    # Provider selection (azure | aws | gcp | docker)
    SCAN_PROVIDER: str = ProviderKind.AZURE.value

    # Azure scanner account
    AZURE_TENANT_ID: Optional[str] = None
    AZURE_CLIENT_ID: Optional[str] = None
    AZURE_CLIENT_SECRET: Optional[str] = None
    AZURE_SUBSCRIPTION_ID: Optional[str] = None
    AZURE_SCANNER_RESOURCE_GROUP: Optional[str] = None
    AZURE_SCANNER_LOCATION: Optional[str] = None
    AZURE_SCANNER_STORAGE_ACCOUNT: Optional[str] = None
    AZURE_SCANNER_STORAGE_CONTAINER: str = "snapshots"
    AZURE_SCANNER_SUBNET_ID: Optional[str] = None
    AZURE_SCANNER_IMAGE_PUBLISHER: str = "Canonical"
    AZURE_SCANNER_IMAGE_OFFER: str = "0001-com-ubuntu-server-jammy"
    AZURE_SCANNER_IMAGE_SKU: str = "22_04-lts-gen2"
    AZURE_SCANNER_IMAGE_VERSION: str = "latest"
    AZURE_SCANNER_ADMIN_USERNAME: str = "oobscan"
    AZURE_SCANNER_SSH_PUBLIC_KEY: Optional[str] = None

    # AWS scanner account
    AWS_ACCESS_KEY_ID: Optional[str] = None
    AWS_SECRET_ACCESS_KEY: Optional[str] = None
    AWS_SESSION_TOKEN: Optional[str] = None
    AWS_DEFAULT_REGION: str = "us-east-1"
    AWS_ENDPOINT_URL: Optional[str] = (
        None  # Local testing (MotoServer/LocalStack)
    )
    AWS_SUPPORTED_REGIONS: list[str] = AWS_SUPPORTED_REGIONS
    AWS_SCANNER_AVAILABILITY_ZONE: Optional[str] = None
    AWS_SCANNER_SUBNET_ID: Optional[str] = None
    AWS_SCANNER_SECURITY_GROUP_ID: Optional[str] = None
    AWS_SCANNER_AMI_ID: Optional[str] = None
    AWS_SCANNER_KEY_PAIR_NAME: Optional[str] = None

    # GCP scanner project
    GCP_PROJECT_ID: Optional[str] = None
    GCP_SERVICE_ACCOUNT_JSON: Optional[str] = None
    GCP_SCANNER_ZONE: Optional[str] = None
    GCP_SCANNER_SUBNETWORK: Optional[str] = None
    GCP_SCANNER_SOURCE_IMAGE: str = (
        "projects/ubuntu-os-cloud/global/images/family/ubuntu-2204-lts"
    )

    # Docker engine
    DOCKER_HOST_SOCKET: str = "/var/run/docker.sock"
    DOCKER_API_VERSION: str = "v1.43"
    DOCKER_SCANNER_IMAGE: Optional[str] = None
    DOCKER_SCANNER_NETWORK: Optional[str] = None
    DOCKER_REQUEST_TIMEOUT_SECONDS: float = 60.0

    # Reconcile timing hints (seconds)
    SNAPSHOT_POLL_DELAY_SECONDS: int = 120
    STAGED_COPY_POLL_DELAY_SECONDS: int = 120
    VOLUME_POLL_DELAY_SECONDS: int = 120
    COMPUTE_POLL_DELAY_SECONDS: int = 60
    TEARDOWN_POLL_DELAY_SECONDS: int = 30
    THROTTLE_RETRY_DELAY_SECONDS: int = 30
    SNAPSHOT_ACCESS_GRANT_SECONDS: int = MAX_ACCESS_GRANT_SECONDS

    # Reference driving loop bounds
    DRIVER_MAX_ATTEMPTS: int = 200
    DRIVER_MAX_DURATION_SECONDS: int = 6 * 3600
    DRIVER_CALL_TIMEOUT_SECONDS: float = 120.0

    model_config = SettingsConfigDict(env_file=".env", env_ignore_empty=True)

    @model_validator(mode="after")
    def validate_all_config(self) -> "Settings":
        """
        Centralized validation orchestrator.
        Timing bounds are always enforced; provider settings only outside tests.
        """
        if self.TESTING and self.ENVIRONMENT in {ENV_PRODUCTION, ENV_STAGING}:
            raise ValueError(
                "TESTING must be false in staging/production runtime environments."
            )

        self._validate_timing_config()
        if self.TESTING:
            return self

        self._validate_provider_config()
        return self

    def _validate_timing_config(self) -> None:
        if not 0 < self.SNAPSHOT_ACCESS_GRANT_SECONDS <= MAX_ACCESS_GRANT_SECONDS:
            raise ValueError(
                f"SNAPSHOT_ACCESS_GRANT_SECONDS must be between 1 and {MAX_ACCESS_GRANT_SECONDS}."
            )
        delays = {
            "SNAPSHOT_POLL_DELAY_SECONDS": self.SNAPSHOT_POLL_DELAY_SECONDS,
            "STAGED_COPY_POLL_DELAY_SECONDS": self.STAGED_COPY_POLL_DELAY_SECONDS,
            "VOLUME_POLL_DELAY_SECONDS": self.VOLUME_POLL_DELAY_SECONDS,
            "COMPUTE_POLL_DELAY_SECONDS": self.COMPUTE_POLL_DELAY_SECONDS,
            "TEARDOWN_POLL_DELAY_SECONDS": self.TEARDOWN_POLL_DELAY_SECONDS,
            "THROTTLE_RETRY_DELAY_SECONDS": self.THROTTLE_RETRY_DELAY_SECONDS,
        }
        for name, value in delays.items():
            if value <= 0:
                raise ValueError(f"{name} must be a positive number of seconds.")
        if self.DRIVER_MAX_ATTEMPTS < 1:
            raise ValueError("DRIVER_MAX_ATTEMPTS must be >= 1.")
        if self.DRIVER_CALL_TIMEOUT_SECONDS <= 0:
            raise ValueError("DRIVER_CALL_TIMEOUT_SECONDS must be positive.")

    def _validate_provider_config(self) -> None:
        """Validates that the selected provider has everything it needs to create resources."""
        provider = self.SCAN_PROVIDER.strip().lower()
        required: dict[str, Optional[str]]
        if provider == ProviderKind.AZURE.value:
            required = {
                "AZURE_SUBSCRIPTION_ID": self.AZURE_SUBSCRIPTION_ID,
                "AZURE_SCANNER_RESOURCE_GROUP": self.AZURE_SCANNER_RESOURCE_GROUP,
                "AZURE_SCANNER_LOCATION": self.AZURE_SCANNER_LOCATION,
                "AZURE_SCANNER_STORAGE_ACCOUNT": self.AZURE_SCANNER_STORAGE_ACCOUNT,
                "AZURE_SCANNER_SUBNET_ID": self.AZURE_SCANNER_SUBNET_ID,
                "AZURE_SCANNER_SSH_PUBLIC_KEY": self.AZURE_SCANNER_SSH_PUBLIC_KEY,
            }
        elif provider == ProviderKind.AWS.value:
            required = {
                "AWS_SCANNER_AVAILABILITY_ZONE": self.AWS_SCANNER_AVAILABILITY_ZONE,
                "AWS_SCANNER_SUBNET_ID": self.AWS_SCANNER_SUBNET_ID,
                "AWS_SCANNER_AMI_ID": self.AWS_SCANNER_AMI_ID,
            }
            if self.AWS_DEFAULT_REGION not in self.AWS_SUPPORTED_REGIONS:
                raise ValueError(
                    f"AWS_DEFAULT_REGION '{self.AWS_DEFAULT_REGION}' is not a supported region."
                )
        elif provider == ProviderKind.GCP.value:
            required = {
                "GCP_PROJECT_ID": self.GCP_PROJECT_ID,
                "GCP_SCANNER_ZONE": self.GCP_SCANNER_ZONE,
                "GCP_SCANNER_SUBNETWORK": self.GCP_SCANNER_SUBNETWORK,
            }
        elif provider == ProviderKind.DOCKER.value:
            required = {"DOCKER_HOST_SOCKET": self.DOCKER_HOST_SOCKET}
        else:
            raise ValueError(f"Unsupported SCAN_PROVIDER '{self.SCAN_PROVIDER}'.")

        missing = sorted(name for name, value in required.items() if not value)
        if missing:
            raise ValueError(
                f"Missing settings for provider '{provider}': {', '.join(missing)}"
            )

    @property
    def is_production(self) -> bool:
        """True only when ENVIRONMENT is explicitly set to 'production'."""
        return self.ENVIRONMENT == ENV_PRODUCTION
