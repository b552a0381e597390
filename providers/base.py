"""
Common base for embedding and generation providers.

Every provider call goes through a RetryHandler and updates the provider's
running statistics.
"""

import time
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Callable, List, Sequence, TypeVar

from execution.retry_handler import RetryHandler
from providers.models import ModelInfo, ProviderConfig, ProviderStats
from utils.logger import setup_logger

logger = setup_logger(__name__)

T = TypeVar("T")


class ProviderError(Exception):
    """Base error for provider failures."""
    pass


class ProviderConfigurationError(ProviderError):
    """Missing credentials, unsupported model or invalid settings. Never retried."""
    pass


class DimensionMismatchError(ProviderConfigurationError):
    """An embedding's length differs from the deployment's dimensionality."""
    pass


class ProviderValidationError(ProviderError):
    """Request rejected before it was sent. Never retried."""
    pass


class ProviderUnavailableError(ProviderError):
    """Neither the primary nor the secondary provider is reachable."""
    pass


NON_RETRYABLE = (ProviderConfigurationError, ProviderValidationError)


class BaseProvider(ABC):
    """Retry, timing and statistics shared by all providers."""

    provider_name: str = ""

    def __init__(self, model: str, provider_config: ProviderConfig):
        self.model = model
        self.config = provider_config
        self.retry_handler = RetryHandler(
            max_retries=provider_config.max_retries,
            base_delay=provider_config.retry_delay,
            timeout=provider_config.timeout,
            non_retryable=NON_RETRYABLE
        )
        self._stats = ProviderStats()
        self._failed_requests = 0

    async def _with_retry(self, func: Callable[..., Any], *args, **kwargs) -> Any:
        return await self.retry_handler.execute_with_retry(func, *args, **kwargs)

    def _record(self, elapsed: float, tokens: int = 0, cost: float = 0.0, failed: bool = False) -> None:
        """Fold one request into the running statistics."""
        stats = self._stats
        stats.total_requests += 1
        if failed:
            self._failed_requests += 1
        n = stats.total_requests
        stats.avg_processing_time = (stats.avg_processing_time * (n - 1) + elapsed) / n
        stats.error_rate = self._failed_requests / n
        stats.total_tokens += tokens
        stats.total_cost += cost
        stats.last_request_time = datetime.now(timezone.utc)

    @staticmethod
    def _elapsed(started: float) -> float:
        return time.perf_counter() - started

    def get_stats(self) -> ProviderStats:
        return self._stats.model_copy()

    def reset_stats(self) -> None:
        self._stats = ProviderStats()
        self._failed_requests = 0

    @staticmethod
    def split_batch(items: Sequence[T], size: int) -> List[List[T]]:
        """Split items into consecutive batches of at most `size`."""
        return [list(items[i:i + size]) for i in range(0, len(items), size)]

    @abstractmethod
    async def test_connection(self) -> bool:
        """Check that the backend is reachable and serves the model. Never raises."""
        pass

    @abstractmethod
    def get_model_info(self) -> ModelInfo:
        pass
