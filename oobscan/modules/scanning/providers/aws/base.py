"""
Shared plumbing for the AWS scan provider.

Every EC2 resource the scanner creates carries a `Name` tag with its
deterministic name; lookups are tag-filtered describe calls in the region the
resource belongs to.
"""
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Optional

import aioboto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import (
    ClientError,
    ConnectTimeoutError,
    EndpointConnectionError,
    NoCredentialsError,
    ReadTimeoutError,
)

from oobscan.modules.scanning.domain.classifier import ErrorClassifier, ProviderFailure
from oobscan.modules.scanning.domain.models import ScanJobDescriptor
from oobscan.shared.core.config import Settings
from oobscan.shared.core.constants import (
    OWNER_TAG,
    OWNER_TAG_VALUE,
    RESOURCE_NAME_TAG,
    SCAN_ID_TAG,
)
from oobscan.shared.core.credentials import AWSCredentials
from oobscan.shared.core.retry import with_transient_retry

# Socket timeouts for all EC2 calls; botocore's own retries stay on for throttling
BOTO_CONFIG = BotoConfig(
    read_timeout=30,
    connect_timeout=10,
    retries={"max_attempts": 3, "mode": "adaptive"},
)

aws_retry = with_transient_retry(
    (ConnectTimeoutError, ReadTimeoutError, EndpointConnectionError), provider="aws"
)

EBS_VOLUME_TYPES = {"gp2", "gp3", "io1", "io2", "st1", "sc1", "standard"}
DEFAULT_EBS_VOLUME_TYPE = "gp3"
DEFAULT_INSTANCE_TYPE = "t3.medium"


@dataclass(frozen=True)
class AWSScannerConfig:
    """Scanner-side AWS account layout."""

    region: str
    availability_zone: str
    subnet_id: str
    security_group_id: Optional[str]
    ami_id: str
    key_pair_name: Optional[str]

    @classmethod
    def from_settings(cls, settings: Settings) -> "AWSScannerConfig":
        return cls(
            region=settings.AWS_DEFAULT_REGION,
            availability_zone=settings.AWS_SCANNER_AVAILABILITY_ZONE or "",
            subnet_id=settings.AWS_SCANNER_SUBNET_ID or "",
            security_group_id=settings.AWS_SCANNER_SECURITY_GROUP_ID,
            ami_id=settings.AWS_SCANNER_AMI_ID or "",
            key_pair_name=settings.AWS_SCANNER_KEY_PAIR_NAME,
        )


def extract_aws_failure(exc: BaseException) -> Optional[ProviderFailure]:
    if isinstance(exc, (ConnectTimeoutError, ReadTimeoutError, EndpointConnectionError)):
        return ProviderFailure(message=str(exc), transport=True)
    if isinstance(exc, NoCredentialsError):
        return ProviderFailure(message=str(exc), status_code=401, error_code="AuthFailure")
    if isinstance(exc, ClientError):
        error = exc.response.get("Error", {})
        metadata = exc.response.get("ResponseMetadata", {})
        return ProviderFailure(
            message=error.get("Message") or str(exc),
            status_code=metadata.get("HTTPStatusCode"),
            error_code=error.get("Code"),
        )
    return None


def build_aws_classifier(throttle_delay: timedelta) -> ErrorClassifier:
    return ErrorClassifier(
        "aws",
        extract_aws_failure,
        throttle_delay=throttle_delay,
        not_found_codes=(
            "InvalidSnapshot.NotFound",
            "InvalidVolume.NotFound",
            "InvalidInstanceID.NotFound",
        ),
        throttle_codes=(
            "RequestLimitExceeded",
            "Throttling",
            "ThrottlingException",
            "SnapshotCreationPerVolumeRateExceeded",
        ),
        retryable_codes=(
            "IncorrectState",
            "IncorrectInstanceState",
            "VolumeInUse",
            "InsufficientInstanceCapacity",
            "InternalError",
            "Unavailable",
            "ServiceUnavailable",
        ),
        fatal_codes=(
            "AuthFailure",
            "UnauthorizedOperation",
            "InvalidClientTokenId",
            "OptInRequired",
            "Blocked",
            "InvalidParameterValue",
            "InvalidParameterCombination",
            "InvalidAMIID.NotFound",
            "InvalidSubnetID.NotFound",
            "InvalidGroup.NotFound",
            "InvalidKeyPair.NotFound",
        ),
    )


def name_filter(name: str) -> list[dict[str, Any]]:
    return [{"Name": f"tag:{RESOURCE_NAME_TAG}", "Values": [name]}]


def tag_specifications(resource_type: str, name: str, descriptor: ScanJobDescriptor) -> list[dict[str, Any]]:
    return [
        {
            "ResourceType": resource_type,
            "Tags": [
                {"Key": RESOURCE_NAME_TAG, "Value": name},
                {"Key": OWNER_TAG, "Value": OWNER_TAG_VALUE},
                {"Key": SCAN_ID_TAG, "Value": descriptor.asset_scan_id},
            ],
        }
    ]


def tag_value(tags: Optional[list[dict[str, str]]], key: str) -> Optional[str]:
    for tag in tags or []:
        if tag.get("Key") == key:
            return tag.get("Value")
    return None


def ebs_volume_type(descriptor: ScanJobDescriptor) -> str:
    storage_class = descriptor.volume_storage_class.lower()
    return storage_class if storage_class in EBS_VOLUME_TYPES else DEFAULT_EBS_VOLUME_TYPE


def instance_type(descriptor: ScanJobDescriptor) -> str:
    # EC2 instance types are "<family>.<size>"; anything else is another cloud's size name
    size = descriptor.compute_size
    return size if "." in size and size == size.lower() else DEFAULT_INSTANCE_TYPE


class EC2Access:
    """aioboto3 session plus scanner layout; hands out per-region EC2 clients."""

    def __init__(
        self,
        credentials: AWSCredentials,
        config: AWSScannerConfig,
        session: Optional[aioboto3.Session] = None,
    ):
        self.credentials = credentials
        self.config = config
        self.session = session or aioboto3.Session()

    def client(self, region: Optional[str] = None) -> Any:
        """EC2 client context manager for `region` (scanner region by default)."""
        return self.session.client(
            "ec2",
            region_name=region or self.config.region,
            config=BOTO_CONFIG,
            **self.credentials.client_kwargs(),
        )
