"""
Bounded-retry wrapper around outbound payment provider calls.

Policy:
- Fixed attempt budget (3 by default)
- Linear backoff: sleep ``attempt * base_delay`` before the next attempt
- Overall deadline across all attempts
- Only TransientProviderError is retried; anything else surfaces at once
- The last attempt's error is re-raised unchanged
"""
import asyncio
import time
from typing import Any, Awaitable, Callable, Optional, Tuple, Type, TypeVar

import structlog
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    stop_after_delay,
    wait_incrementing,
)

from payment_events.core.exceptions import TransientProviderError
from payment_events.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

T = TypeVar("T")


class RetryingGateway:
    """Runs provider calls with a bounded, linearly backed-off retry loop."""

    def __init__(
        self,
        max_attempts: int = 3,
        base_delay: float = 1.0,
        deadline_seconds: float = 30.0,
        retry_on: Tuple[Type[BaseException], ...] = (TransientProviderError,),
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        """
        Initialize gateway.

        Args:
            max_attempts: Attempts per call unless overridden
            base_delay: Backoff step in seconds
            deadline_seconds: No new attempt starts after this much time
            retry_on: Exception types that are retried
            sleep: Async sleep used between attempts
        """
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.deadline_seconds = deadline_seconds
        self.retry_on = retry_on
        self._sleep = sleep

    @staticmethod
    def _log_retry(operation: str) -> Callable[[RetryCallState], None]:
        def before_sleep(retry_state: RetryCallState) -> None:
            exc = retry_state.outcome.exception() if retry_state.outcome else None
            logger.warning(
                "provider_call_retrying",
                operation=operation,
                attempt=retry_state.attempt_number,
                next_delay_seconds=retry_state.next_action.sleep if retry_state.next_action else None,
                error=str(exc),
            )

        return before_sleep

    async def call(
        self,
        action: Callable[[], Awaitable[T]],
        max_attempts: Optional[int] = None,
        operation: str = "provider_call",
    ) -> T:
        """
        Run ``action`` until it succeeds or the attempt budget is spent.

        Args:
            action: Zero-argument coroutine function performing one attempt
            max_attempts: Override of the attempt budget for this call
            operation: Name used in logs and metrics

        Returns:
            The action's result

        Raises:
            Exception: The final attempt's error, unchanged
        """
        attempts = max_attempts or self.max_attempts
        start_time = time.monotonic()

        retrying = AsyncRetrying(
            stop=stop_after_attempt(attempts) | stop_after_delay(self.deadline_seconds),
            wait=wait_incrementing(start=self.base_delay, increment=self.base_delay),
            retry=retry_if_exception_type(self.retry_on),
            reraise=True,
            sleep=self._sleep,
            before_sleep=self._log_retry(operation),
        )

        try:
            async for attempt in retrying:
                with attempt:
                    try:
                        result = await action()
                    except self.retry_on:
                        metrics.record_provider_attempt(operation, "transient_error")
                        raise
                    except Exception:
                        metrics.record_provider_attempt(operation, "permanent_error")
                        raise
                    metrics.record_provider_attempt(operation, "success")
        except Exception as e:
            logger.error(
                "provider_call_failed",
                operation=operation,
                error=str(e),
                error_type=type(e).__name__,
            )
            raise
        finally:
            metrics.record_provider_duration(operation, time.monotonic() - start_time)

        return result
