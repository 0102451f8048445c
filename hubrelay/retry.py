"""Retry policy with named per-operation configurations."""

import asyncio
import random
import time
from typing import Any, Awaitable, Callable, Dict, Optional, TypeVar, Union

from loguru import logger

from .errors import MaxRetriesExceededError, ValidationError
from .models import BackoffStrategy, RetryConfig
from .timeouts import TimeoutExecutor

T = TypeVar("T")

log = logger.bind(component="retry_policy")

PAYMENT = "payment"

DEFAULT_RETRY_CONFIGS: Dict[str, RetryConfig] = {
    "submit": RetryConfig(
        max_attempts=3,
        base_delay=1.0,
        max_delay=10.0,
        backoff_multiplier=2.0,
        strategy=BackoffStrategy.EXPONENTIAL,
        retryable_patterns=["NetworkError", "TimeoutError", "ConnectError", "ReadTimeout"],
        retryable_statuses=[408, 429, 500, 502, 503, 504],
        timeout=45.0,
    ),
    "poll": RetryConfig(
        max_attempts=3,
        base_delay=0.5,
        max_delay=5.0,
        backoff_multiplier=2.0,
        strategy=BackoffStrategy.JITTER,
        retryable_patterns=["NetworkError", "TimeoutError"],
        retryable_statuses=[408, 429, 500, 502, 503, 504],
        timeout=15.0,
    ),
    "result": RetryConfig(
        max_attempts=3,
        base_delay=1.0,
        max_delay=10.0,
        backoff_multiplier=2.0,
        strategy=BackoffStrategy.EXPONENTIAL,
        retryable_patterns=["NetworkError", "TimeoutError"],
        retryable_statuses=[408, 429, 500, 502, 503, 504],
        timeout=30.0,
    ),
    "upload": RetryConfig(
        max_attempts=5,
        base_delay=2.0,
        max_delay=30.0,
        backoff_multiplier=1.5,
        strategy=BackoffStrategy.EXPONENTIAL,
        retryable_patterns=["NetworkError", "UploadError", "TimeoutError"],
        retryable_statuses=[413, 429, 500, 502, 503, 504],
        timeout=120.0,
    ),
    "auth": RetryConfig(
        max_attempts=2,
        base_delay=1.0,
        max_delay=5.0,
        backoff_multiplier=2.0,
        strategy=BackoffStrategy.FIXED,
        retryable_patterns=["NetworkError", "TimeoutError"],
        retryable_statuses=[429, 500, 502, 503, 504],
        timeout=15.0,
    ),
    # A second attempt could charge twice.
    PAYMENT: RetryConfig(
        max_attempts=1,
        base_delay=0.1,
        max_delay=0.1,
        backoff_multiplier=1.0,
        strategy=BackoffStrategy.FIXED,
        retryable_patterns=[],
        retryable_statuses=[],
        timeout=30.0,
    ),
    "cancel": RetryConfig(
        max_attempts=1,
        base_delay=0.1,
        max_delay=0.1,
        strategy=BackoffStrategy.FIXED,
        timeout=5.0,
    ),
    "database": RetryConfig(
        max_attempts=3,
        base_delay=0.5,
        max_delay=5.0,
        backoff_multiplier=2.0,
        strategy=BackoffStrategy.JITTER,
        retryable_patterns=["DatabaseConnectionError", "TimeoutError"],
        retryable_statuses=[500, 503, 504],
        timeout=10.0,
    ),
}


def _status_of(error: BaseException) -> Optional[int]:
    status = getattr(error, "status", None)
    if isinstance(status, int):
        return status
    response = getattr(error, "response", None)
    status = getattr(response, "status_code", None)
    if isinstance(status, int):
        return status
    return None


class RetryPolicy:
    """Executes operations with retries, backoff and a per-attempt deadline.

    Configurations are registered by operation type ("submit", "poll", ...).
    The payment configuration is pinned to a single attempt.

    Example:
        >>> policy = RetryPolicy()
        >>> job_id = await policy.execute(lambda: client.submit(spec), "submit")
    """

    def __init__(
        self,
        configs: Optional[Dict[str, RetryConfig]] = None,
        timeouts: Optional[TimeoutExecutor] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        rng: Optional[random.Random] = None,
    ) -> None:
        self._configs: Dict[str, RetryConfig] = {}
        self._timeouts = timeouts or TimeoutExecutor()
        self._sleep = sleep
        self._random = rng or random.Random()
        self._stats = self._empty_stats()
        for name, config in (DEFAULT_RETRY_CONFIGS if configs is None else configs).items():
            self.register(name, config)

    @staticmethod
    def _empty_stats() -> Dict[str, Any]:
        return {
            "total_attempts": 0,
            "successful_operations": 0,
            "failed_operations": 0,
            "total_retries": 0,
            "last_retry_at": None,
        }

    def register(self, name: str, config: RetryConfig) -> None:
        """Register or replace the configuration for an operation type."""
        if name == PAYMENT and config.max_attempts != 1:
            raise ValueError("payment operations must use max_attempts=1")
        self._configs[name] = config

    def config_for(self, name: str) -> RetryConfig:
        try:
            return self._configs[name]
        except KeyError:
            raise KeyError(f"No retry configuration for operation type: {name}") from None

    def is_retryable(self, error: BaseException, config: RetryConfig) -> bool:
        if isinstance(error, ValidationError):
            return False

        text = f"{type(error).__name__} {error}".lower()
        if any(pattern.lower() in text for pattern in config.retryable_patterns):
            return True

        status = _status_of(error)
        if status is not None and status in config.retryable_statuses:
            return True

        return bool(getattr(error, "retryable", False))

    def compute_delay(self, attempt: int, config: RetryConfig) -> float:
        """Delay in seconds after the given (1-based) failed attempt."""
        if config.strategy == BackoffStrategy.FIXED:
            delay = config.base_delay
        elif config.strategy == BackoffStrategy.LINEAR:
            delay = config.base_delay * attempt
        else:
            delay = config.base_delay * config.backoff_multiplier ** (attempt - 1)
            if config.strategy == BackoffStrategy.JITTER:
                # Scale into [0.5, 1.0] so clients do not retry in lockstep.
                delay *= 0.5 + 0.5 * self._random.random()
        return min(delay, config.max_delay)

    async def execute(
        self,
        op: Callable[[], Awaitable[T]],
        config: Union[RetryConfig, str],
    ) -> T:
        """Run op until it succeeds, fails permanently or attempts run out.

        Non-retryable errors propagate untouched. Exhausted retries raise
        MaxRetriesExceededError carrying the last error.
        """
        name = config if isinstance(config, str) else "custom"
        if isinstance(config, str):
            config = self.config_for(config)
        max_attempts = 1 if name == PAYMENT else config.max_attempts

        attempt = 0
        while True:
            attempt += 1
            self._stats["total_attempts"] += 1
            try:
                result = await self._timeouts.run(op, config.timeout)
            except Exception as e:
                if not self.is_retryable(e, config):
                    self._stats["failed_operations"] += 1
                    raise
                if attempt >= max_attempts:
                    self._stats["failed_operations"] += 1
                    log.error(f"{name} failed after {attempt} attempts: {e}")
                    raise MaxRetriesExceededError(e, attempt) from e

                delay = self.compute_delay(attempt, config)
                self._stats["total_retries"] += 1
                self._stats["last_retry_at"] = time.time()
                log.warning(
                    f"Attempt {attempt}/{max_attempts} failed for {name}. "
                    f"Retrying in {delay:.2f}s. Error: {e}"
                )
                await self._sleep(delay)
            else:
                self._stats["successful_operations"] += 1
                return result

    def stats(self) -> Dict[str, Any]:
        return dict(self._stats)

    def reset_stats(self) -> None:
        self._stats = self._empty_stats()
