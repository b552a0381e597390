"""Retry wrapper for provider calls: exponential backoff plus a per-attempt timeout."""
import asyncio
from typing import Any, Callable, Tuple, Type

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from utils.logger import setup_logger

logger = setup_logger(__name__)


class AttemptTimeoutError(TimeoutError):
    """Raised when a single attempt exceeds its time limit."""
    pass


class RetryHandler:
    def __init__(
        self,
        max_retries: int = 3,
        base_delay: float = 1.0,
        timeout: float | None = 30.0,
        max_delay: float = 60.0,
        non_retryable: Tuple[Type[BaseException], ...] = ()
    ):
        """
        Args:
            max_retries: Total attempts before giving up
            base_delay: Delay before the first retry; doubles each attempt
            timeout: Per-attempt time limit in seconds (None disables it)
            max_delay: Upper bound for a single backoff delay
            non_retryable: Exception types raised immediately without retrying
        """
        self.max_retries = max(1, max_retries)
        self.base_delay = base_delay
        self.timeout = timeout
        self.max_delay = max_delay
        self.non_retryable = non_retryable

    def _should_retry(self, error: BaseException) -> bool:
        return isinstance(error, Exception) and not isinstance(error, self.non_retryable)

    def _log_retry(self, retry_state: RetryCallState) -> None:
        error = retry_state.outcome.exception() if retry_state.outcome else None
        delay = retry_state.next_action.sleep if retry_state.next_action else 0
        logger.warning(
            f"Attempt {retry_state.attempt_number}/{self.max_retries} failed: {error}. "
            f"Retrying in {delay:.1f}s"
        )

    async def _attempt(self, func: Callable, *args, **kwargs) -> Any:
        if self.timeout is None:
            return await func(*args, **kwargs)
        try:
            return await asyncio.wait_for(func(*args, **kwargs), timeout=self.timeout)
        except asyncio.TimeoutError:
            raise AttemptTimeoutError(f"Request timed out after {self.timeout:g}s")

    async def execute_with_retry(
        self,
        func: Callable,
        *args,
        **kwargs
    ) -> Any:
        """Await func(*args, **kwargs), retrying failed attempts.

        The delay before retry n (1-based) is base_delay * 2^(n-1). The
        timeout applies to each attempt separately. After the last attempt
        the original exception is re-raised unchanged.
        """
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.max_retries),
            wait=wait_exponential(multiplier=self.base_delay, min=0, max=self.max_delay),
            retry=retry_if_exception(self._should_retry),
            before_sleep=self._log_retry,
            reraise=True
        )
        async for attempt in retrying:
            with attempt:
                return await self._attempt(func, *args, **kwargs)
