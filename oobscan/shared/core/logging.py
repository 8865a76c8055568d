import re
import sys
import structlog
import logging
from typing import Any, cast
from oobscan.shared.core.config import get_settings

_SENSITIVE_FIELDS = {
    "password",
    "token",
    "secret",
    "authorization",
    "auth",
    "api_key",
    "apikey",
    "access_token",
    "client_secret",
    "private_key",
    "session_token",
    "access_sas",
    "access_url",
    "sas_url",
    "user_data",
    "custom_data",
}
_SENSITIVE_SUFFIXES = ("_token", "_secret", "_password", "_key", "_sas")
_SENSITIVE_CONTAINS = ("authorization", "secret", "token", "apikey", "api_key")

# Signed URL query parameters (Azure SAS, AWS/GCS presigned URLs)
_SIGNATURE_PARAM_REGEX = re.compile(
    r"(?i)\b(sig|signature|x-amz-signature|x-amz-security-token|x-goog-signature)=([^&\s\"']+)"
)


def _is_sensitive_key(key: Any) -> bool:
    key_norm = str(key).lower().strip().replace("-", "_")
    if key_norm in _SENSITIVE_FIELDS:
        return True
    if key_norm.endswith(_SENSITIVE_SUFFIXES):
        return True
    tokens = [t for t in re.split(r"[^a-z0-9]+", key_norm) if t]
    if any(t in _SENSITIVE_FIELDS for t in tokens):
        return True
    return any(fragment in key_norm for fragment in _SENSITIVE_CONTAINS)


def _redact_text(text: str) -> str:
    return _SIGNATURE_PARAM_REGEX.sub(lambda m: f"{m.group(1)}=[REDACTED]", text)


def secret_redactor(
    _logger: Any, _method_name: str, event_dict: dict[str, Any]
) -> dict[str, Any]:
    """
    Recursively redact credentials and signed-URL signatures from logs.

    Snapshot access grants are bearer URLs; they must never reach a log sink
    even when embedded in an SDK error message.
    """

    def redact_recursive(data: Any) -> Any:
        if isinstance(data, dict):
            return {
                k: ("[REDACTED]" if _is_sensitive_key(k) else redact_recursive(v))
                for k, v in data.items()
            }
        elif isinstance(data, (list, tuple)):
            return [redact_recursive(item) for item in data]
        elif isinstance(data, str):
            return _redact_text(data)
        return data

    redacted = redact_recursive(event_dict)
    if isinstance(redacted, dict):
        return cast(dict[str, Any], redacted)
    return {}


def add_otel_trace_id(
    _logger: Any, _method_name: str, event_dict: dict[str, Any]
) -> dict[str, Any]:
    """Integrate OTel Trace IDs into structured logs."""
    from oobscan.core.tracing import get_current_trace_id

    trace_id = get_current_trace_id()
    if trace_id:
        event_dict["trace_id"] = trace_id
    return event_dict


def setup_logging() -> None:
    settings = get_settings()

    base_processors = [
        structlog.contextvars.merge_contextvars,  # asset_scan_id bound per invocation
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        add_otel_trace_id,
        secret_redactor,
    ]

    if settings.DEBUG:
        renderer: Any = structlog.dev.ConsoleRenderer()
        processors = base_processors + [renderer]
        min_level = logging.DEBUG
    else:
        renderer = structlog.processors.JSONRenderer()
        processors = base_processors + [structlog.processors.dict_tracebacks, renderer]
        min_level = logging.INFO

    structlog.configure(
        processors=cast(Any, processors),
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=True,
    )

    # Cloud SDKs log through the standard library; keep them on stderr too.
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stderr,
        level=min_level,
    )
    for noisy in ("azure.core.pipeline.policies.http_logging_policy", "botocore", "urllib3"):
        logging.getLogger(noisy).setLevel(logging.WARNING)
