"""
Minimal async Docker Engine API client over the daemon's unix socket.
"""
import json
from datetime import timedelta
from typing import Any, Optional

import httpx

from oobscan.core.exceptions import DockerAPIError
from oobscan.modules.scanning.domain.classifier import ErrorClassifier, ProviderFailure
from oobscan.shared.core.config import Settings
from oobscan.shared.core.retry import with_transient_retry

docker_retry = with_transient_retry((httpx.ConnectError, httpx.ReadError), provider="docker")

# The daemon reports errors as free text; these fragments map onto classifier codes
_ERROR_CODES = {
    "no such image": "NoSuchImage",
    "pull access denied": "PullAccessDenied",
    "is already in use": "Conflict",
    "volume is in use": "VolumeInUse",
}


def docker_error_code(message: str) -> Optional[str]:
    lowered = message.lower()
    for fragment, code in _ERROR_CODES.items():
        if fragment in lowered:
            return code
    return None


def extract_docker_failure(exc: BaseException) -> Optional[ProviderFailure]:
    if isinstance(exc, httpx.TransportError):
        return ProviderFailure(message=str(exc) or type(exc).__name__, transport=True)
    if isinstance(exc, DockerAPIError):
        return ProviderFailure(
            message=exc.message,
            status_code=exc.status_code,
            error_code=docker_error_code(exc.message),
        )
    return None


def build_docker_classifier(throttle_delay: timedelta) -> ErrorClassifier:
    return ErrorClassifier(
        "docker",
        extract_docker_failure,
        throttle_delay=throttle_delay,
        retryable_codes=("Conflict", "VolumeInUse"),
        fatal_codes=("NoSuchImage", "PullAccessDenied"),
    )


class DockerEngine:
    """Versioned Engine API calls; error statuses become DockerAPIError."""

    def __init__(
        self,
        socket_path: str,
        api_version: str,
        timeout: float = 60.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.api_version = api_version
        self.client = client or httpx.AsyncClient(
            transport=httpx.AsyncHTTPTransport(uds=socket_path),
            base_url="http://docker",
            timeout=httpx.Timeout(timeout, connect=10.0),
        )

    @classmethod
    def from_settings(cls, settings: Settings) -> "DockerEngine":
        return cls(
            settings.DOCKER_HOST_SOCKET,
            settings.DOCKER_API_VERSION,
            timeout=settings.DOCKER_REQUEST_TIMEOUT_SECONDS,
        )

    def _url(self, path: str) -> str:
        return f"/{self.api_version}{path}"

    @staticmethod
    def _raise_for_status(response: httpx.Response, body: bytes) -> None:
        if response.status_code < 400:
            return
        message = body.decode("utf-8", errors="replace")
        try:
            payload = json.loads(body)
        except ValueError:
            payload = None
        if isinstance(payload, dict) and payload.get("message"):
            message = str(payload["message"])
        raise DockerAPIError(message or response.reason_phrase, status_code=response.status_code)

    async def request(self, method: str, path: str, **kwargs: Any) -> Any:
        """JSON body of the response, or None when the daemon sends no content."""
        response = await self.client.request(method, self._url(path), **kwargs)
        self._raise_for_status(response, response.content)
        if not response.content:
            return None
        if response.headers.get("content-type", "").startswith("application/json"):
            return response.json()
        return None

    async def get_or_none(self, path: str, **kwargs: Any) -> Optional[Any]:
        """GET that maps 404 to None."""
        try:
            return await self.request("GET", path, **kwargs)
        except DockerAPIError as exc:
            if exc.status_code == 404:
                return None
            raise

    async def close(self) -> None:
        await self.client.aclose()
