"""
Failure classification for cloud API errors.

Each provider reduces its SDK exceptions to a `ProviderFailure` (HTTP status
plus provider error code); the rules below turn that into one of three
outcomes. `NOT_FOUND` only means "this step has not started yet" and never
leaves the reconciler.
"""
from dataclasses import dataclass
from datetime import timedelta
from enum import Enum
from typing import Callable, FrozenSet, Iterable, Optional

from oobscan.core.exceptions import FatalError, RetryableError, ScanError


class ClassificationKind(str, Enum):
    NOT_FOUND = "not_found"
    RETRYABLE = "retryable"
    FATAL = "fatal"


@dataclass(frozen=True)
class ProviderFailure:
    """Provider-neutral view of a failed API call."""

    message: str
    status_code: Optional[int] = None
    error_code: Optional[str] = None
    # Connection reset, DNS failure, socket timeout: nothing reached the API.
    transport: bool = False


FailureExtractor = Callable[[BaseException], Optional[ProviderFailure]]


@dataclass(frozen=True)
class Classification:
    kind: ClassificationKind
    reason: str
    delay: Optional[timedelta] = None
    error: Optional[ScanError] = None

    @property
    def not_found(self) -> bool:
        return self.kind is ClassificationKind.NOT_FOUND

    def to_error(self) -> ScanError:
        """Terminal error for this outcome. Not-found has none; asking for one is a bug."""
        if self.error is not None:
            return self.error
        if self.kind is ClassificationKind.RETRYABLE:
            return RetryableError(self.reason, self.delay or timedelta(seconds=30))
        if self.kind is ClassificationKind.FATAL:
            return FatalError(self.reason)
        raise ValueError("not-found is an internal outcome and has no error form")


def _normalize_codes(codes: Iterable[str]) -> FrozenSet[str]:
    return frozenset(code.lower() for code in codes)


class ErrorClassifier:
    """
    Maps raw provider failures into the not-found / retryable / fatal taxonomy.

    Unknown failures are fatal: retrying something we do not understand
    forever is worse than surfacing it.
    """

    def __init__(
        self,
        provider: str,
        extractor: FailureExtractor,
        *,
        throttle_delay: timedelta = timedelta(seconds=30),
        not_found_codes: Iterable[str] = (),
        throttle_codes: Iterable[str] = (),
        retryable_codes: Iterable[str] = (),
        fatal_codes: Iterable[str] = (),
    ):
        self.provider = provider
        self.extractor = extractor
        self.throttle_delay = throttle_delay
        self.not_found_codes = _normalize_codes(not_found_codes)
        self.throttle_codes = _normalize_codes(throttle_codes)
        self.retryable_codes = _normalize_codes(retryable_codes)
        self.fatal_codes = _normalize_codes(fatal_codes)

    def classify(self, exc: BaseException, action: str) -> Classification:
        if isinstance(exc, ScanError):
            kind = ClassificationKind.RETRYABLE if exc.retryable else ClassificationKind.FATAL
            return Classification(kind=kind, reason=exc.reason, error=exc)

        failure = self.extractor(exc)
        if failure is None:
            return self._fatal(f"unexpected error from {self.provider} while {action}: {exc}")

        code = (failure.error_code or "").lower()
        status = failure.status_code

        if failure.transport:
            return self._retryable(f"transport error while {action}: {failure.message}")
        if code in self.not_found_codes or (status == 404 and code not in self.fatal_codes):
            return Classification(kind=ClassificationKind.NOT_FOUND, reason=f"not found while {action}")
        if code in self.throttle_codes or status == 429:
            return self._retryable(f"throttled while {action}: {failure.message}")
        if code in self.fatal_codes or self._is_quota_code(code):
            return self._fatal(f"{self.provider} rejected {action}: {failure.message}")
        if code in self.retryable_codes:
            return self._retryable(f"transient {self.provider} error while {action}: {failure.message}")
        if status is not None and (status >= 500 or status in (408, 409)):
            return self._retryable(f"{self.provider} returned {status} while {action}: {failure.message}")
        if status is not None and 400 <= status < 500:
            return self._fatal(f"{self.provider} returned {status} while {action}: {failure.message}")
        return self._fatal(f"unrecognized {self.provider} failure while {action}: {failure.message}")

    def _is_quota_code(self, code: str) -> bool:
        return "quota" in code or code.endswith("limitexceeded")

    def _retryable(self, reason: str) -> Classification:
        return Classification(kind=ClassificationKind.RETRYABLE, reason=reason, delay=self.throttle_delay)

    def _fatal(self, reason: str) -> Classification:
        return Classification(kind=ClassificationKind.FATAL, reason=reason)
