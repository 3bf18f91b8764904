from __future__ import annotations

import asyncio
import logging
import random
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

import httpx
from redis.asyncio import Redis

from docsign.core.config import get_settings
from docsign.core.errors import DependencyUnavailable
from docsign.services.telemetry import increment_counter, set_gauge


logger = logging.getLogger(__name__)


TransientException = (TimeoutError, OSError, httpx.TransportError)

SleepFn = Callable[[float], Awaitable[None]]


_redis_pool: Redis | None = None
_redis_loop: asyncio.AbstractEventLoop | None = None
_redis_lock = asyncio.Lock()


async def get_resilience_redis() -> Redis | None:
    # Share breaker state across instances only when enabled; otherwise stay local.
    settings = get_settings()
    if not settings.cb_use_redis:
        return None
    try:
        current_loop = asyncio.get_running_loop()
    except RuntimeError:
        return None
    global _redis_pool, _redis_loop
    if _redis_pool is not None and _redis_loop == current_loop:
        return _redis_pool
    if _redis_pool is not None and _redis_loop != current_loop:
        _redis_pool = None
    async with _redis_lock:
        if _redis_pool is None:
            try:
                _redis_pool = Redis.from_url(settings.redis_url, encoding="utf-8", decode_responses=True)
                _redis_loop = current_loop
            except Exception as exc:  # noqa: BLE001 - Redis might be unavailable in dev
                logger.warning("resilience_redis_unavailable", exc_info=exc)
                return None
    return _redis_pool


def default_retryable(exc: Exception) -> bool:
    # Retry only transient network/timeout failures by default.
    if isinstance(exc, TransientException):
        return True
    if isinstance(exc, DependencyUnavailable):
        return True
    status = getattr(exc, "status_code", None)
    if isinstance(status, int) and status >= 500:
        return True
    return False


@dataclass(frozen=True)
class RetryPolicy:
    timeout_s: float
    max_attempts: int
    backoff_s: float
    jitter: bool = True

    def delay_for(self, attempt: int) -> float:
        # attempt is zero-based: backoff * 2^attempt.
        delay = self.backoff_s * (2**attempt)
        if self.jitter:
            delay *= random.uniform(0.5, 1.5)
        return delay


async def retry_async(
    func: Callable[[], Awaitable[Any]],
    *,
    policy: RetryPolicy,
    retryable: Callable[[Exception], bool] | None = None,
    sleep: SleepFn | None = None,
    on_retry: Callable[[int, Exception], None] | None = None,
) -> Any:
    # Retry helper with exponential backoff for transient failures only.
    retryable = retryable or default_retryable
    sleep = sleep or asyncio.sleep
    attempt = 0
    while True:
        try:
            return await asyncio.wait_for(func(), timeout=policy.timeout_s)
        except Exception as exc:  # noqa: BLE001 - caller handles non-transient failures
            if attempt + 1 >= max(policy.max_attempts, 1) or not retryable(exc):
                raise
            increment_counter("external_retries_total")
            if on_retry is not None:
                on_retry(attempt, exc)
            await sleep(policy.delay_for(attempt))
            attempt += 1


@dataclass(frozen=True)
class CircuitBreakerConfig:
    failure_threshold: int
    open_seconds: int
    half_open_trials: int


@dataclass
class CircuitBreakerState:
    state: str
    failures: int
    opened_at: float | None
    half_open_trials: int


class CircuitBreaker:
    def __init__(
        self,
        name: str,
        *,
        redis: Redis | None = None,
        config: CircuitBreakerConfig | None = None,
        time_source: Callable[[], float] | None = None,
    ) -> None:
        settings = get_settings()
        self._name = name
        self._redis = redis
        self._config = config or CircuitBreakerConfig(
            failure_threshold=settings.cb_failure_threshold,
            open_seconds=settings.cb_open_seconds,
            half_open_trials=settings.cb_half_open_trials,
        )
        self._time = time_source or time.monotonic
        self._local_state = CircuitBreakerState("closed", 0, None, 0)

    @property
    def name(self) -> str:
        return self._name

    def _key(self) -> str:
        return f"{get_settings().cb_redis_prefix}:{self._name}"

    async def _load(self) -> CircuitBreakerState:
        # Read breaker state from Redis when available; otherwise fall back to local.
        if self._redis is None:
            return self._local_state
        raw = await self._redis.hgetall(self._key())
        if not raw:
            return self._local_state
        return CircuitBreakerState(
            raw.get("state", "closed"),
            int(raw.get("failures", 0)),
            float(raw["opened_at"]) if raw.get("opened_at") else None,
            int(raw.get("half_open_trials", 0)),
        )

    async def _save(self, state: CircuitBreakerState) -> None:
        if self._redis is None:
            self._local_state = state
            return
        payload = {
            "state": state.state,
            "failures": str(state.failures),
            "opened_at": str(state.opened_at or ""),
            "half_open_trials": str(state.half_open_trials),
        }
        await self._redis.hset(self._key(), mapping=payload)
        await self._redis.expire(self._key(), max(self._config.open_seconds * 4, 60))

    def _transition(self, state: CircuitBreakerState, target: str) -> CircuitBreakerState:
        if state.state != target:
            logger.warning("circuit_breaker_transition name=%s from=%s to=%s", self._name, state.state, target)
            increment_counter(f"circuit_breaker_transition_total.{self._name}.{target}")
            set_gauge(
                f"circuit_breaker_state.{self._name}",
                {"closed": 0.0, "half_open": 0.5, "open": 1.0}.get(target, 0.0),
            )
        return CircuitBreakerState(target, 0, self._time() if target == "open" else None, 0)

    async def is_available(self) -> bool:
        # Non-mutating health probe used to rank providers.
        state = await self._load()
        if state.state != "open":
            return True
        return state.opened_at is not None and (self._time() - state.opened_at) >= self._config.open_seconds

    async def before_call(self) -> None:
        state = await self._load()
        now = self._time()
        if state.state == "open":
            if state.opened_at is not None and (now - state.opened_at) >= self._config.open_seconds:
                state = self._transition(state, "half_open")
                await self._save(state)
            else:
                raise DependencyUnavailable(f"{self._name} is temporarily unavailable")
        if state.state == "half_open":
            if state.half_open_trials >= self._config.half_open_trials:
                raise DependencyUnavailable(f"{self._name} is temporarily unavailable")
            state.half_open_trials += 1
            await self._save(state)

    async def record_success(self) -> None:
        state = await self._load()
        if state.state != "closed":
            state = self._transition(state, "closed")
        else:
            state.failures = 0
            state.half_open_trials = 0
        await self._save(state)

    async def record_failure(self) -> None:
        state = await self._load()
        if state.state == "half_open":
            await self._save(self._transition(state, "open"))
            return
        failures = state.failures + 1
        if failures >= self._config.failure_threshold:
            state = self._transition(state, "open")
        else:
            state.failures = failures
        await self._save(state)
