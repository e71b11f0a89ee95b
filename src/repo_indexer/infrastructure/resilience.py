"""
Resilience Infrastructure

Retry policies for outbound HTTP calls, built on tenacity:
- Transport errors and timeouts are retried
- HTTP 429 and 5xx responses are retried
- Other 4xx responses fail immediately

Callers translate the final exception into the indexer error taxonomy.
"""

import logging
from dataclasses import dataclass

import httpx
from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

logger = logging.getLogger(__name__)

RETRYABLE_STATUS_CODES = frozenset({429, 500, 502, 503, 504})


@dataclass
class RetryConfig:
    """Configuration for retry behaviour of one outbound client"""
    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 10.0


def is_retryable_http_error(error: BaseException) -> bool:
    """Retry transport failures and throttling/server errors only"""
    if isinstance(error, httpx.TransportError):
        return True
    if isinstance(error, httpx.HTTPStatusError):
        return error.response.status_code in RETRYABLE_STATUS_CODES
    return False


def async_http_retrying(config: RetryConfig) -> AsyncRetrying:
    """Build an AsyncRetrying controller for one HTTP call

    Usage:
        async for attempt in async_http_retrying(config):
            with attempt:
                response = await client.get(...)
                response.raise_for_status()
    """
    return AsyncRetrying(
        stop=stop_after_attempt(max(1, config.max_attempts)),
        wait=wait_exponential(multiplier=config.base_delay, max=config.max_delay),
        retry=retry_if_exception(is_retryable_http_error),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        reraise=True,
    )
