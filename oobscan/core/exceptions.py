from datetime import timedelta
from typing import Optional, Dict, Any


class OobscanException(Exception):
    """Base exception for all oobscan errors."""
    def __init__(
        self,
        message: str,
        code: str = "internal_error",
        status_code: int = 500,
        details: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message)
        self.message = message
        self.code = code
        self.status_code = status_code
        self.details = details or {}

    def __str__(self) -> str:
        return f"[{self.code}:{self.status_code}] {self.message}"


class ConfigurationError(OobscanException):
    """Raised when application or provider configuration is invalid or missing."""
    def __init__(self, message: str, code: str = "config_error", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code=code, status_code=500, details=details)


class ProviderNotSupportedError(ConfigurationError):
    """Raised when no scan provider is registered under the requested name."""
    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code="provider_not_supported", details=details)


class ScanError(OobscanException):
    """
    Terminal outcome of a single reconcile step.

    Raised out of `run_asset_scan` / `remove_asset_scan` and interpreted by the
    driving loop. Subclasses decide whether calling again can help.
    """

    retryable: bool = False

    @property
    def reason(self) -> str:
        return self.message


class RetryableError(ScanError):
    """The condition is expected to resolve with time; call again after `suggested_delay`."""

    retryable = True

    def __init__(
        self,
        reason: str,
        suggested_delay: timedelta,
        code: str = "retryable",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(reason, code=code, status_code=503, details=details)
        self.suggested_delay = suggested_delay

    def __str__(self) -> str:
        return f"{self.message} (retry in {int(self.suggested_delay.total_seconds())}s)"


class FatalError(ScanError):
    """Unrecoverable failure; the caller has to intervene."""

    def __init__(self, reason: str, code: str = "fatal", details: Optional[Dict[str, Any]] = None):
        super().__init__(reason, code=code, status_code=500, details=details)

    def __str__(self) -> str:
        return self.message


class ScanDeadlineExceeded(FatalError):
    """Raised by the driving loop once its attempt or duration bound is spent."""
    def __init__(self, reason: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(reason, code="deadline_exceeded", details=details)


class AccessGrantError(OobscanException):
    """Raised when an access grant is misused (e.g. its URL is redeemed twice)."""
    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code="access_grant_error", status_code=500, details=details)


class DockerAPIError(OobscanException):
    """Raised when the Docker Engine API answers with an error status."""
    def __init__(self, message: str, status_code: int, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code="docker_api_error", status_code=status_code, details=details)
