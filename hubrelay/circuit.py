"""Circuit breaker state machine for graceful degradation.

Implements the circuit breaker pattern with three states:
- CLOSED: Normal operation, calls pass through
- OPEN: Dependency failing, calls go to the fallback
- HALF_OPEN: Testing recovery, a limited number of probe calls allowed

Only failures classified as transient count towards tripping the breaker.
Calls that are not admitted never see the upstream error; they get the
breaker's fallback instead.
"""

import asyncio
import time
from collections import deque
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Awaitable, Callable, Deque, Dict, List, Optional, Union

from loguru import logger

from .errors import CircuitBreakerOpenError, is_transient
from .events import Listeners
from .models import (
    CircuitBreakerConfig,
    CircuitBreakerState,
    CircuitState,
    FallbackKind,
    OfflineAction,
    Priority,
    QueuedResult,
    utcnow,
)
from .offline import OfflineQueue

log = logger.bind(component="circuit_breaker")


@dataclass(frozen=True)
class RejectFallback:
    """Fail fast with CircuitBreakerOpenError."""


@dataclass(frozen=True)
class CacheFallback:
    """Serve the last successful response, if there is one."""


@dataclass(frozen=True)
class QueueFallback:
    """Hand the call's payload to the offline queue and report it queued."""
    queue: OfflineQueue
    action_type: str
    priority: Priority = Priority.NORMAL
    max_retries: int = 5
    action_id: Optional[str] = None


@dataclass(frozen=True)
class CustomFallback:
    """Delegate to a caller-supplied coroutine function."""
    handler: Callable[[CircuitBreakerOpenError], Awaitable[Any]]


Fallback = Union[RejectFallback, CacheFallback, QueueFallback, CustomFallback]


DEFAULT_BREAKER_CONFIGS: Dict[str, CircuitBreakerConfig] = {
    "external-ai-api": CircuitBreakerConfig(
        failure_threshold=5,
        recovery_timeout=30.0,
        monitoring_window=60.0,
        half_open_max_calls=3,
        fallback_strategy=FallbackKind.QUEUE,
    ),
    "payment-gateway": CircuitBreakerConfig(
        failure_threshold=2,
        recovery_timeout=60.0,
        monitoring_window=120.0,
        half_open_max_calls=1,
        fallback_strategy=FallbackKind.REJECT,
    ),
    "file-upload": CircuitBreakerConfig(
        failure_threshold=3,
        recovery_timeout=15.0,
        monitoring_window=60.0,
        half_open_max_calls=2,
        fallback_strategy=FallbackKind.QUEUE,
    ),
    "database": CircuitBreakerConfig(
        failure_threshold=3,
        recovery_timeout=10.0,
        monitoring_window=30.0,
        half_open_max_calls=2,
        fallback_strategy=FallbackKind.CACHE,
    ),
}


class CircuitBreaker:
    """Per-dependency circuit breaker.

    State transitions:
    - CLOSED -> OPEN: transient failures within monitoring_window reach failure_threshold
    - OPEN -> HALF_OPEN: first call after recovery_timeout since the last failure
    - HALF_OPEN -> CLOSED: a probe succeeds
    - HALF_OPEN -> OPEN: a probe fails
    """

    def __init__(
        self,
        name: str,
        config: Optional[CircuitBreakerConfig] = None,
        fallback: Optional[Fallback] = None,
        clock: Callable[[], float] = time.monotonic,
        classifier: Callable[[BaseException], bool] = is_transient,
    ) -> None:
        self.name = name
        self.config = config or CircuitBreakerConfig()
        self.fallback: Fallback = fallback or RejectFallback()
        self._clock = clock
        self._classifier = classifier
        self._lock = asyncio.Lock()
        self._state = CircuitState.CLOSED
        self._failures: Deque[float] = deque()
        self._success_count = 0
        self._total_calls = 0
        self._last_failure_at: Optional[float] = None
        self._last_success_at: Optional[float] = None
        self._probes_used = 0
        self._cache: Dict[str, Any] = {}
        self._state_listeners: Listeners[CircuitState] = Listeners(f"circuit:{name}")

    @property
    def state(self) -> CircuitState:
        return self._state

    @property
    def is_available(self) -> bool:
        """True if a call made now would reach the dependency."""
        if self._state == CircuitState.CLOSED:
            return True
        if self._state == CircuitState.OPEN:
            return self._recovery_due()
        return self._probes_used < self.config.half_open_max_calls

    def on_state_change(self, listener: Callable[[CircuitState], None]) -> Callable[[], None]:
        return self._state_listeners.subscribe(listener)

    async def execute(
        self,
        op: Callable[[], Awaitable[Any]],
        *,
        fallback: Optional[Fallback] = None,
        payload: Optional[Dict[str, Any]] = None,
        cache_key: str = "",
    ) -> Any:
        """Run op through the breaker.

        Args:
            op: Zero-argument coroutine function performing the call
            fallback: Overrides the breaker's fallback for this call
            payload: Data handed to a QueueFallback
            cache_key: Slot used by CacheFallback

        Returns:
            The operation's result, or whatever the fallback produces
        """
        effective = fallback or self.fallback
        async with self._lock:
            self._total_calls += 1
            admitted, probe = self._admit()
        if not admitted:
            return await self._run_fallback(effective, payload, cache_key)

        try:
            result = await op()
        except asyncio.CancelledError:
            if probe:
                async with self._lock:
                    self._release_probe()
            raise
        except Exception as e:
            async with self._lock:
                self._record_failure(e, probe)
            raise

        async with self._lock:
            self._record_success()
        if isinstance(effective, CacheFallback):
            self._cache[cache_key] = result
        return result

    def _recovery_due(self) -> bool:
        if self._last_failure_at is None:
            return True
        return self._clock() - self._last_failure_at >= self.config.recovery_timeout

    def _admit(self):
        """Decide whether a call may proceed. Returns (admitted, is_probe)."""
        if self._state == CircuitState.OPEN:
            if not self._recovery_due():
                return False, False
            self._set_state(CircuitState.HALF_OPEN)

        if self._state == CircuitState.HALF_OPEN:
            if self._probes_used >= self.config.half_open_max_calls:
                return False, False
            self._probes_used += 1
            return True, True

        return True, False

    def _release_probe(self) -> None:
        if self._state == CircuitState.HALF_OPEN and self._probes_used > 0:
            self._probes_used -= 1

    def _prune(self, now: float) -> None:
        horizon = now - self.config.monitoring_window
        while self._failures and self._failures[0] <= horizon:
            self._failures.popleft()

    def _record_failure(self, error: BaseException, probe: bool) -> None:
        if not self._classifier(error):
            # The dependency answered; this says nothing about its health.
            if probe:
                self._release_probe()
            return

        now = self._clock()
        self._last_failure_at = now
        self._prune(now)
        self._failures.append(now)

        if self._state == CircuitState.HALF_OPEN:
            self._set_state(CircuitState.OPEN, error)
        elif self._state == CircuitState.CLOSED and len(self._failures) >= self.config.failure_threshold:
            self._set_state(CircuitState.OPEN, error)

    def _record_success(self) -> None:
        self._success_count += 1
        self._last_success_at = self._clock()
        if self._state == CircuitState.HALF_OPEN:
            self._set_state(CircuitState.CLOSED)

    def _set_state(self, new_state: CircuitState, error: Optional[BaseException] = None) -> None:
        if self._state == new_state:
            return
        previous = self._state
        self._state = new_state
        if new_state == CircuitState.OPEN:
            self._probes_used = 0
        elif new_state == CircuitState.HALF_OPEN:
            self._probes_used = 0
        elif new_state == CircuitState.CLOSED:
            self._probes_used = 0
            self._failures.clear()

        if new_state == CircuitState.OPEN:
            log.warning(f"[{self.name}] {previous.value} -> {new_state.value}: {error}")
        else:
            log.info(f"[{self.name}] {previous.value} -> {new_state.value}")
        self._state_listeners.emit(new_state)

    async def _run_fallback(
        self,
        fallback: Fallback,
        payload: Optional[Dict[str, Any]],
        cache_key: str,
    ) -> Any:
        open_error = CircuitBreakerOpenError(self.name)

        if isinstance(fallback, RejectFallback):
            raise open_error

        if isinstance(fallback, CacheFallback):
            if cache_key in self._cache:
                log.debug(f"[{self.name}] serving cached response for '{cache_key}'")
                return self._cache[cache_key]
            raise CircuitBreakerOpenError(
                self.name, f"Circuit breaker '{self.name}' is open and no cached response is available"
            )

        if isinstance(fallback, QueueFallback):
            retry_at = utcnow() + timedelta(seconds=self.config.recovery_timeout)
            action = OfflineAction(
                type=fallback.action_type,
                payload=dict(payload or {}),
                priority=fallback.priority,
                max_retries=fallback.max_retries,
            )
            if fallback.action_id:
                action.id = fallback.action_id
            action_id = await fallback.queue.enqueue(action)
            log.info(f"[{self.name}] open, queued {fallback.action_type} as {action_id}")
            return QueuedResult(action_id=action_id, retry_at=retry_at)

        if isinstance(fallback, CustomFallback):
            try:
                return await fallback.handler(open_error)
            except Exception as e:
                raise CircuitBreakerOpenError(
                    self.name, f"Circuit breaker '{self.name}' is open and fallback failed: {e}"
                ) from e

        raise TypeError(f"Unknown fallback: {fallback!r}")

    def snapshot(self) -> CircuitBreakerState:
        self._prune(self._clock())
        return CircuitBreakerState(
            name=self.name,
            state=self._state,
            failure_count_in_window=len(self._failures),
            success_count=self._success_count,
            total_calls=self._total_calls,
            last_failure_at=self._last_failure_at,
            last_success_at=self._last_success_at,
            half_open_probes_used=self._probes_used,
        )

    def reset(self) -> None:
        """Return to CLOSED with all counters cleared."""
        self._set_state(CircuitState.CLOSED)
        self._failures.clear()
        self._success_count = 0
        self._total_calls = 0
        self._probes_used = 0
        self._last_failure_at = None
        log.info(f"[{self.name}] reset")

    def force_open(self) -> None:
        self._last_failure_at = self._clock()
        self._set_state(CircuitState.OPEN)

    def force_close(self) -> None:
        self._set_state(CircuitState.CLOSED)


class CircuitBreakerRegistry:
    """Named, lazily created breakers so unrelated dependencies fail independently.

    Lookups never suspend, so creation is atomic with respect to other tasks.
    The registry never changes a breaker's state except through reset_all().
    """

    def __init__(
        self,
        configs: Optional[Dict[str, CircuitBreakerConfig]] = None,
        offline_queue: Optional[OfflineQueue] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._configs = dict(DEFAULT_BREAKER_CONFIGS if configs is None else configs)
        self._offline_queue = offline_queue
        self._clock = clock
        self._breakers: Dict[str, CircuitBreaker] = {}

    def get(self, name: str) -> Optional[CircuitBreaker]:
        return self._breakers.get(name)

    def get_or_create(
        self,
        name: str,
        config: Optional[CircuitBreakerConfig] = None,
        fallback: Optional[Fallback] = None,
    ) -> CircuitBreaker:
        breaker = self._breakers.get(name)
        if breaker is None:
            config = config or self._configs.get(name) or CircuitBreakerConfig()
            breaker = CircuitBreaker(
                name,
                config,
                fallback=fallback or self._default_fallback(name, config),
                clock=self._clock,
            )
            self._breakers[name] = breaker
        return breaker

    def _default_fallback(self, name: str, config: CircuitBreakerConfig) -> Fallback:
        kind = config.fallback_strategy
        if kind == FallbackKind.REJECT:
            return RejectFallback()
        if kind == FallbackKind.CACHE:
            return CacheFallback()
        if kind == FallbackKind.QUEUE:
            if self._offline_queue is None:
                raise ValueError(f"Breaker '{name}' queues on open but the registry has no offline queue")
            return QueueFallback(self._offline_queue, action_type=f"{name}:request")
        if kind == FallbackKind.CUSTOM:
            raise ValueError(f"Breaker '{name}' needs an explicit CustomFallback")
        raise TypeError(f"Unknown fallback kind: {kind!r}")

    def names(self) -> List[str]:
        return sorted(self._breakers)

    def snapshots(self) -> Dict[str, CircuitBreakerState]:
        return {name: breaker.snapshot() for name, breaker in self._breakers.items()}

    def reset_all(self) -> None:
        for breaker in self._breakers.values():
            breaker.reset()
