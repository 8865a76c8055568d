from enum import Enum

# Infrastructure Constants
AWS_SUPPORTED_REGIONS = [
    "us-east-1",
    "us-east-2",
    "us-west-1",
    "us-west-2",
    "af-south-1",
    "ap-east-1",
    "ap-south-1",
    "ap-northeast-3",
    "ap-northeast-2",
    "ap-southeast-1",
    "ap-southeast-2",
    "ap-northeast-1",
    "ca-central-1",
    "eu-central-1",
    "eu-west-1",
    "eu-west-2",
    "eu-south-1",
    "eu-west-3",
    "eu-north-1",
    "me-south-1",
    "sa-east-1",
    "us-gov-east-1",
    "us-gov-west-1",
]

# Upper bound for snapshot read grants. The grant URL is a bearer credential,
# so anything longer than an hour is rejected at configuration time.
MAX_ACCESS_GRANT_SECONDS = 3600

# Tag / label keys written on every ephemeral resource
RESOURCE_NAME_TAG = "Name"
SCAN_ID_TAG = "oobscan.asset-scan-id"
OWNER_TAG = "oobscan.owner"
OWNER_TAG_VALUE = "oobscan"

# Device path the scanner expects the target volume on (AWS block device mapping)
AWS_SCANNER_DEVICE_NAME = "/dev/sdf"
# Mount point of the target volume inside the Docker scanner container
DOCKER_TARGET_MOUNT_PATH = "/mnt/snapshot"


class ProviderKind(str, Enum):
    """Supported scan provider families."""

    AZURE = "azure"
    AWS = "aws"
    GCP = "gcp"
    DOCKER = "docker"


class AssetKind(str, Enum):
    """Kinds of asset a provider can discover and scan."""

    VIRTUAL_MACHINE = "virtual_machine"
    CONTAINER = "container"
