"""
Reference driving loop for the reconciler.

Calls `run_asset_scan` / `remove_asset_scan` until they return, sleeping the
delay each RetryableError suggests. The loop is bounded by attempts and total
duration, and every invocation gets its own timeout so one hung API call
cannot stall the scan. A FatalError stops the loop immediately.
"""
import asyncio
from datetime import timedelta
from typing import Any, Awaitable, Callable, Optional

import structlog
import tenacity

from oobscan.core.exceptions import RetryableError, ScanDeadlineExceeded
from oobscan.modules.scanning.domain.models import ScanJobDescriptor
from oobscan.modules.scanning.providers.base import BaseScanProvider
from oobscan.shared.core.config import Settings

logger = structlog.get_logger()

Sleep = Callable[[float], Awaitable[Any]]


def _suggested_delay(retry_state: tenacity.RetryCallState) -> float:
    exc = retry_state.outcome.exception() if retry_state.outcome else None
    if isinstance(exc, RetryableError):
        return max(exc.suggested_delay.total_seconds(), 0.0)
    return 0.0


def _log_retry(retry_state: tenacity.RetryCallState) -> None:
    exc = retry_state.outcome.exception() if retry_state.outcome else None
    wait = retry_state.next_action.sleep if retry_state.next_action else None
    logger.info(
        "scan_step_retry_scheduled",
        attempt=retry_state.attempt_number,
        wait_seconds=wait,
        reason=exc.reason if isinstance(exc, RetryableError) else str(exc),
    )


class ScanDriver:
    """Drives one provider's scans to completion, one asset scan id at a time."""

    def __init__(
        self,
        provider: BaseScanProvider,
        *,
        max_attempts: int = 200,
        max_duration: timedelta = timedelta(hours=6),
        call_timeout: timedelta = timedelta(minutes=2),
        sleep: Optional[Sleep] = None,
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self.provider = provider
        self.max_attempts = max_attempts
        self.max_duration = max_duration
        self.call_timeout = call_timeout
        self._sleep = sleep or asyncio.sleep

    @classmethod
    def from_settings(
        cls,
        provider: BaseScanProvider,
        settings: Settings,
        sleep: Optional[Sleep] = None,
    ) -> "ScanDriver":
        return cls(
            provider,
            max_attempts=settings.DRIVER_MAX_ATTEMPTS,
            max_duration=timedelta(seconds=settings.DRIVER_MAX_DURATION_SECONDS),
            call_timeout=timedelta(seconds=settings.DRIVER_CALL_TIMEOUT_SECONDS),
            sleep=sleep,
        )

    async def run(self, descriptor: ScanJobDescriptor) -> None:
        """Provision until the scanner is up with the volume attached."""
        await self._drive("run_asset_scan", self.provider.run_asset_scan, descriptor)

    async def remove(self, descriptor: ScanJobDescriptor) -> None:
        """Tear down until every resource of the scan is observed absent."""
        await self._drive("remove_asset_scan", self.provider.remove_asset_scan, descriptor)

    async def _invoke(
        self,
        operation: str,
        step: Callable[[ScanJobDescriptor], Awaitable[None]],
        descriptor: ScanJobDescriptor,
    ) -> None:
        try:
            await asyncio.wait_for(step(descriptor), timeout=self.call_timeout.total_seconds())
        except asyncio.TimeoutError as exc:
            # Only the round-trip is cancelled; a cloud operation it started keeps going.
            raise RetryableError(
                f"{operation} timed out after {self.call_timeout.total_seconds():.0f}s",
                self.provider.timing.throttle,
                code="call_timeout",
            ) from exc

    async def _drive(
        self,
        operation: str,
        step: Callable[[ScanJobDescriptor], Awaitable[None]],
        descriptor: ScanJobDescriptor,
    ) -> None:
        retrying = tenacity.AsyncRetrying(
            retry=tenacity.retry_if_exception_type(RetryableError),
            wait=_suggested_delay,
            stop=(
                tenacity.stop_after_attempt(self.max_attempts)
                | tenacity.stop_after_delay(self.max_duration.total_seconds())
            ),
            sleep=self._sleep,
            before_sleep=_log_retry,
        )
        with structlog.contextvars.bound_contextvars(
            asset_scan_id=descriptor.asset_scan_id, operation=operation
        ):
            try:
                async for attempt in retrying:
                    with attempt:
                        await self._invoke(operation, step, descriptor)
            except tenacity.RetryError as exc:
                last = exc.last_attempt.exception()
                attempts = exc.last_attempt.attempt_number
                logger.error("scan_driver_gave_up", attempts=attempts, error=str(last))
                raise ScanDeadlineExceeded(
                    f"{operation} for {descriptor.asset_scan_id} did not converge "
                    f"after {attempts} attempts: {last}",
                    details={"attempts": attempts},
                ) from last
            logger.info("scan_driver_completed")
