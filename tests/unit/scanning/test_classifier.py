"""Tests for the provider-neutral failure classification rules."""
from datetime import timedelta

import pytest

from oobscan.core.exceptions import FatalError, RetryableError
from oobscan.modules.scanning.domain.classifier import ClassificationKind
from tests.fakes import FakeAPIError, build_fake_classifier

THROTTLE = timedelta(seconds=15)


@pytest.fixture
def classifier():
    return build_fake_classifier(THROTTLE)


@pytest.mark.parametrize(
    "exc, expected",
    [
        (FakeAPIError(404), ClassificationKind.NOT_FOUND),
        (FakeAPIError(400, "ResourceNotFound"), ClassificationKind.NOT_FOUND),
        (FakeAPIError(429), ClassificationKind.RETRYABLE),
        (FakeAPIError(400, "TooManyRequests"), ClassificationKind.RETRYABLE),
        (FakeAPIError(409), ClassificationKind.RETRYABLE),
        (FakeAPIError(408), ClassificationKind.RETRYABLE),
        (FakeAPIError(503), ClassificationKind.RETRYABLE),
        (FakeAPIError(400, "Conflict"), ClassificationKind.RETRYABLE),
        (FakeAPIError(None, transport=True), ClassificationKind.RETRYABLE),
        (FakeAPIError(403, "AuthorizationFailed"), ClassificationKind.FATAL),
        (FakeAPIError(400, "InvalidParameter"), ClassificationKind.FATAL),
        (FakeAPIError(409, "QuotaExceeded"), ClassificationKind.FATAL),
        (FakeAPIError(400, "VcpuLimitExceeded"), ClassificationKind.FATAL),
        (FakeAPIError(None, "Weird"), ClassificationKind.FATAL),
    ],
)
def test_failure_taxonomy(classifier, exc, expected):
    assert classifier.classify(exc, "testing").kind is expected


def test_fatal_code_wins_over_404(classifier):
    verdict = classifier.classify(FakeAPIError(404, "AuthorizationFailed"), "reading disk")
    assert verdict.kind is ClassificationKind.FATAL


def test_unrecognized_exception_is_fatal(classifier):
    verdict = classifier.classify(KeyError("boom"), "reading disk")
    assert verdict.kind is ClassificationKind.FATAL
    assert "reading disk" in verdict.reason


def test_retryable_carries_throttle_delay(classifier):
    error = classifier.classify(FakeAPIError(429), "creating volume").to_error()
    assert isinstance(error, RetryableError)
    assert error.suggested_delay == THROTTLE
    assert "creating volume" in error.reason


def test_fatal_to_error(classifier):
    error = classifier.classify(FakeAPIError(400, "InvalidParameter"), "creating volume").to_error()
    assert isinstance(error, FatalError)


def test_scan_errors_pass_through_unchanged(classifier):
    original = RetryableError("already classified", timedelta(seconds=7))
    verdict = classifier.classify(original, "anything")
    assert verdict.kind is ClassificationKind.RETRYABLE
    assert verdict.to_error() is original

    fatal = FatalError("stop")
    assert classifier.classify(fatal, "anything").to_error() is fatal


def test_not_found_has_no_error_form(classifier):
    verdict = classifier.classify(FakeAPIError(404), "reading disk")
    assert verdict.not_found
    with pytest.raises(ValueError):
        verdict.to_error()


def test_codes_match_case_insensitively(classifier):
    assert classifier.classify(FakeAPIError(400, "resourcenotfound"), "x").not_found
