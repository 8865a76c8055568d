"""
In-call retry for transient transport failures.

A reconcile step never waits on a cloud operation, but a single lookup or
create call can still hit a dropped connection. Those are retried a few times
inside the call before the error is classified; everything else propagates
on the first failure.
"""
import inspect
from functools import wraps
from typing import Any, Callable, Dict, Tuple, Type, TypeVar

import structlog
import tenacity

from oobscan.shared.core.config import get_settings

logger = structlog.get_logger()
F = TypeVar("F", bound=Callable[..., Any])


def with_transient_retry(
    exceptions: Tuple[Type[BaseException], ...],
    *,
    provider: str,
    max_attempts: int = 3,
) -> Callable[[F], F]:
    """
    Exponential backoff retry decorator for coroutine SDK calls.
    Targets transport failures only; API errors are left to the classifier.
    """

    def _before_sleep(retry_state: tenacity.RetryCallState) -> None:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        wait = retry_state.next_action.sleep if retry_state.next_action else None
        logger.debug(
            "transient_retrying",
            provider=provider,
            attempt=retry_state.attempt_number,
            wait_seconds=wait,
            error=str(exc) if exc else None,
            function=getattr(retry_state.fn, "__name__", "unknown"),
        )

    retry_config: Dict[str, Any] = {
        "retry": tenacity.retry_if_exception_type(exceptions),
        "wait": tenacity.wait_exponential(multiplier=1, min=1, max=8),
        "stop": tenacity.stop_after_attempt(max_attempts),
        "before_sleep": _before_sleep,
        "reraise": True,
    }

    def _build_retry_config() -> Dict[str, Any]:
        config = dict(retry_config)
        if get_settings().TESTING:
            # Avoid real sleeps during tests while preserving retry semantics.
            async def _no_sleep(_seconds: float) -> None:
                return None

            config["sleep"] = _no_sleep
            config["wait"] = tenacity.wait_none()
        return config

    def decorator(func: F) -> F:
        if not inspect.iscoroutinefunction(func):
            raise TypeError(f"{func.__name__} must be a coroutine function")

        @wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> Any:
            retrying = tenacity.AsyncRetrying(**_build_retry_config())
            async for attempt in retrying:
                with attempt:
                    return await func(*args, **kwargs)

        return wrapper  # type: ignore[return-value]

    return decorator
