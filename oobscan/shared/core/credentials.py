"""
Typed Credential Classes
Standardizes scanner-account credentials into Pydantic models.
This decouples provider clients from the settings object and keeps secrets in SecretStr.
"""
from pydantic import BaseModel, SecretStr
from typing import Optional

from oobscan.shared.core.config import Settings


class CloudCredentials(BaseModel):
    """Base class for all cloud credentials."""
    pass


class AWSCredentials(CloudCredentials):
    """Static or ambient AWS credentials for the scanner account."""
    region: str = "us-east-1"
    access_key_id: Optional[str] = None
    secret_access_key: Optional[SecretStr] = None
    session_token: Optional[SecretStr] = None
    endpoint_url: Optional[str] = None

    def client_kwargs(self) -> dict[str, str]:
        """Keyword arguments for aioboto3 `session.client(...)`; empty means ambient chain."""
        kwargs: dict[str, str] = {}
        if self.access_key_id and self.secret_access_key:
            kwargs["aws_access_key_id"] = self.access_key_id
            kwargs["aws_secret_access_key"] = self.secret_access_key.get_secret_value()
            if self.session_token:
                kwargs["aws_session_token"] = self.session_token.get_secret_value()
        if self.endpoint_url:
            kwargs["endpoint_url"] = self.endpoint_url
        return kwargs


class AzureCredentials(CloudCredentials):
    """Azure Service Principal Credentials."""
    subscription_id: str
    tenant_id: Optional[str] = None
    client_id: Optional[str] = None
    client_secret: Optional[SecretStr] = None

    @property
    def uses_client_secret(self) -> bool:
        return bool(self.tenant_id and self.client_id and self.client_secret)


class GCPCredentials(CloudCredentials):
    """GCP Service Account or ambient (workload identity) credentials."""
    project_id: str
    service_account_json: Optional[SecretStr] = None


def aws_credentials_from_settings(settings: Settings) -> AWSCredentials:
    return AWSCredentials(
        region=settings.AWS_DEFAULT_REGION,
        access_key_id=settings.AWS_ACCESS_KEY_ID,
        secret_access_key=SecretStr(settings.AWS_SECRET_ACCESS_KEY) if settings.AWS_SECRET_ACCESS_KEY else None,
        session_token=SecretStr(settings.AWS_SESSION_TOKEN) if settings.AWS_SESSION_TOKEN else None,
        endpoint_url=settings.AWS_ENDPOINT_URL,
    )


def azure_credentials_from_settings(settings: Settings) -> AzureCredentials:
    return AzureCredentials(
        subscription_id=settings.AZURE_SUBSCRIPTION_ID or "",
        tenant_id=settings.AZURE_TENANT_ID,
        client_id=settings.AZURE_CLIENT_ID,
        client_secret=SecretStr(settings.AZURE_CLIENT_SECRET) if settings.AZURE_CLIENT_SECRET else None,
    )


def gcp_credentials_from_settings(settings: Settings) -> GCPCredentials:
    return GCPCredentials(
        project_id=settings.GCP_PROJECT_ID or "",
        service_account_json=SecretStr(settings.GCP_SERVICE_ACCOUNT_JSON) if settings.GCP_SERVICE_ACCOUNT_JSON else None,
    )
