"""
Tests for structured logging: secret redaction and processor wiring.
"""
from unittest.mock import patch

from oobscan.shared.core.logging import add_otel_trace_id, secret_redactor, setup_logging

SAS_URL = "https://acct.blob.core.windows.net/c/snap?sv=2023-01-03&se=2026&sig=AbCdEf%2B123"


def test_redacts_sensitive_keys_recursively():
    event = {
        "event": "client_built",
        "client_secret": "s3cr3t",
        "nested": {"access_sas": SAS_URL, "region": "eastus"},
        "items": [{"session_token": "t"}],
    }
    out = secret_redactor(None, "info", event)
    assert out["client_secret"] == "[REDACTED]"
    assert out["nested"]["access_sas"] == "[REDACTED]"
    assert out["nested"]["region"] == "eastus"
    assert out["items"][0]["session_token"] == "[REDACTED]"


def test_redacts_signatures_embedded_in_messages():
    out = secret_redactor(None, "warning", {"event": "copy_failed", "error": f"403 for {SAS_URL}"})
    assert "AbCdEf" not in out["error"]
    assert "sig=[REDACTED]" in out["error"]
    assert "sv=2023-01-03" in out["error"]


def test_redacts_presigned_aws_and_gcs_urls():
    text = "GET https://b.s3.amazonaws.com/k?X-Amz-Signature=deadbeef&X-Goog-Signature=cafe"
    out = secret_redactor(None, "info", {"error": text})
    assert "deadbeef" not in out["error"]
    assert "cafe" not in out["error"]


def test_scanner_user_data_is_redacted():
    out = secret_redactor(None, "info", {"user_data": "c2Nhbjo=", "custom_data": "x"})
    assert out == {"user_data": "[REDACTED]", "custom_data": "[REDACTED]"}


def test_trace_id_absent_without_span():
    assert "trace_id" not in add_otel_trace_id(None, "info", {"event": "x"})


def test_setup_logging_installs_redactor_last_before_render():
    with patch("oobscan.shared.core.logging.structlog.configure") as configure, patch(
        "oobscan.shared.core.logging.logging.basicConfig"
    ):
        setup_logging()
    processors = configure.call_args.kwargs["processors"]
    assert secret_redactor in processors
    assert processors.index(secret_redactor) < len(processors) - 1
