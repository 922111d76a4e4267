"""
Retry with exponential backoff for Razorpay calls.

Transient failures (timeouts, connection errors, 5xx) are retried with
delays of base_delay * 2^(attempt - 1): 2s, 4s, 8s... Provider 4xx answers
are returned to the caller immediately.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable

from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from backend.src.billing.shared.exceptions import UpstreamUnavailableError

logger = logging.getLogger(__name__)


def is_transient(error: BaseException) -> bool:
    """Provider failures worth another attempt: everything but a 4xx answer."""
    return isinstance(error, UpstreamUnavailableError) and not error.is_client_error


async def call_with_retry(
    operation: Callable[[], Awaitable[Any]],
    *,
    max_attempts: int = 3,
    base_delay: float = 2.0,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    operation_name: str = "razorpay call",
) -> Any:
    """
    Await `operation()` until it succeeds or attempts run out.

    Raises:
        UpstreamUnavailableError: The last failure, with the attempt count in
            its details, once every attempt failed or on a 4xx answer
    """
    retrying = AsyncRetrying(
        stop=stop_after_attempt(max_attempts),
        wait=wait_exponential(multiplier=base_delay),
        retry=retry_if_exception(is_transient),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        sleep=sleep,
        reraise=True,
    )

    attempt_number = 0
    try:
        async for attempt in retrying:
            with attempt:
                attempt_number = attempt.retry_state.attempt_number
                return await operation()
    except UpstreamUnavailableError as e:
        logger.warning(f"[RAZORPAY] {operation_name} failed on attempt {attempt_number}/{max_attempts}: {e.message}")
        e.details['attempts'] = attempt_number
        if not e.is_client_error:
            e.message = f"Razorpay API failed after {attempt_number} attempts: {e.message}"
            e.args = (e.message,)
        raise
