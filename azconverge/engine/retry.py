"""Exponential backoff for transient provider errors."""

from __future__ import annotations

import random
from collections.abc import Awaitable, Callable
from typing import TypeVar

import structlog
from tenacity import AsyncRetrying, RetryCallState, retry_if_exception_type, stop_after_attempt

from azconverge.errors import ProviderTransientError
from azconverge.observability.metrics import provider_retries_total

T = TypeVar("T")

_log = structlog.get_logger(component="engine.retry")


def backoff_delay(attempt: int, base: float, cap: float, retry_after: float | None = None) -> float:
    """Full-jitter delay before retry number ``attempt`` (0-based).

    A provider-supplied ``retry_after`` is a floor, still capped at ``cap``.
    """
    ceiling = min(cap, base * (2**attempt))
    delay = random.uniform(0, ceiling)
    if retry_after is not None:
        delay = max(delay, min(retry_after, cap))
    return delay


async def with_retries(
    operation: Callable[[], Awaitable[T]],
    *,
    max_attempts: int,
    base: float,
    cap: float,
    resource_id: str = "",
    resource_type: str = "",
    on_attempt: Callable[[int], None] | None = None,
) -> T:
    """Run ``operation``, retrying ProviderTransientError up to ``max_attempts`` times.

    Any other exception propagates immediately.  The last transient error is
    re-raised once attempts are exhausted.
    """

    def _wait(state: RetryCallState) -> float:
        exc = state.outcome.exception() if state.outcome is not None else None
        retry_after = exc.retry_after if isinstance(exc, ProviderTransientError) else None
        return backoff_delay(state.attempt_number - 1, base, cap, retry_after)

    def _before(state: RetryCallState) -> None:
        if on_attempt is not None:
            on_attempt(state.attempt_number)

    def _before_sleep(state: RetryCallState) -> None:
        provider_retries_total.labels(type=resource_type or "unknown").inc()
        exc = state.outcome.exception() if state.outcome is not None else None
        delay = state.next_action.sleep if state.next_action is not None else 0.0
        _log.info(
            "provider_transient_error",
            resource_id=resource_id,
            attempt=state.attempt_number,
            retry_in_s=round(delay, 2),
            error=str(exc),
        )

    retrying = AsyncRetrying(
        retry=retry_if_exception_type(ProviderTransientError),
        stop=stop_after_attempt(max_attempts),
        wait=_wait,
        before=_before,
        before_sleep=_before_sleep,
        reraise=True,
    )
    try:
        return await retrying(operation)
    except ProviderTransientError as exc:
        _log.warning("provider_retries_exhausted", resource_id=resource_id, attempts=max_attempts, error=str(exc))
        raise
