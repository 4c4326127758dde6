"""Cutover adapters: bounded retry for flag writes, fail-soft telemetry.

Includes:
- Retry with exponential backoff and per-attempt timeout (flag updates only)
- Last-known-good substitution when the metrics backend is unavailable
"""
from __future__ import annotations
import asyncio, functools, logging, time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, TypeVar

from .errors import FlagUpdateError
from .models import HealthSample

logger = logging.getLogger("cutover.adapters")
T = TypeVar("T")

@dataclass(frozen=True, slots=True)
class RetryConfig:
    max_retries: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0
    exponential_base: float = 2.0
    timeout: float = 15.0

    def delay(self, attempt: int) -> float:
        return min(self.base_delay * (self.exponential_base ** attempt), self.max_delay)

async def retry_call(func: Callable[..., Awaitable[T]], *args, config: RetryConfig | None = None, **kwargs) -> T:
    """Await func with retries. Exhaustion raises FlagUpdateError chained to the last failure."""
    cfg = config or RetryConfig()
    name = getattr(func, "__name__", "call")
    last_exc: BaseException | None = None
    attempts = cfg.max_retries + 1
    for attempt in range(attempts):
        try:
            return await asyncio.wait_for(func(*args, **kwargs), timeout=cfg.timeout)
        except asyncio.TimeoutError as e:
            last_exc = e
            logger.warning(f"{name} timeout (attempt {attempt + 1}/{attempts})")
        except Exception as e:
            last_exc = e
            logger.warning(f"{name} failed (attempt {attempt + 1}/{attempts}): {e}")
        if attempt < cfg.max_retries:
            await asyncio.sleep(cfg.delay(attempt))
    flag = args[0] if args and isinstance(args[0], str) else kwargs.get("name")
    raise FlagUpdateError(f"{name} failed after {attempts} attempts: {last_exc}", flag=flag,
                          attempts=attempts) from last_exc

def with_retry(config: RetryConfig | None = None):
    """Decorator form of retry_call."""
    def decorator(func: Callable[..., Awaitable[T]]) -> Callable[..., Awaitable[T]]:
        @functools.wraps(func)
        async def wrapper(*args, **kwargs) -> T:
            return await retry_call(func, *args, config=config, **kwargs)
        return wrapper
    return decorator


# Documented fallbacks, used only when no last-known-good value exists.
METRIC_DEFAULTS: dict[str, Any] = {"error_rate": 0.0, "latency_ms": 500.0, "baseline_latency_ms": 250.0,
                                   "user_success_rate": 1.0, "data_integrity_ok": False}

class ResilientMetrics:
    """Wraps a MetricsSource; telemetry outages degrade to last-known-good, never raise."""

    def __init__(self, source: Any):
        self._source = source
        self._last: dict[str, Any] = {}
        self.degraded: dict[str, int] = {}

    async def _read(self, metric: str, *args) -> Any:
        try:
            value = await getattr(self._source, metric)(*args)
            if value is None: raise ValueError("no data")
        except Exception as e:
            self.degraded[metric] = self.degraded.get(metric, 0) + 1
            fallback = self._last.get(metric, METRIC_DEFAULTS[metric])
            logger.warning(f"metrics unavailable: {metric} ({e}); using {'last-known' if metric in self._last else 'default'} value {fallback}")
            return fallback
        self._last[metric] = value
        return value

    async def error_rate(self, window_seconds: int) -> float:
        return min(max(float(await self._read("error_rate", window_seconds)), 0.0), 1.0)

    async def latency_ms(self, window_seconds: int) -> float:
        return float(await self._read("latency_ms", window_seconds))

    async def baseline_latency_ms(self) -> float:
        value = float(await self._read("baseline_latency_ms"))
        return value if value > 0 else METRIC_DEFAULTS["baseline_latency_ms"]

    async def user_success_rate(self, window_seconds: int) -> float:
        return min(max(float(await self._read("user_success_rate", window_seconds)), 0.0), 1.0)

    async def data_integrity_ok(self) -> bool:
        return bool(await self._read("data_integrity_ok"))

    async def sample(self, error_window: int = 300, latency_window: int = 300, success_window: int = 600) -> HealthSample:
        """Query order: error rate, latency + baseline, integrity, user success."""
        err = await self.error_rate(error_window)
        lat = await self.latency_ms(latency_window)
        base = await self.baseline_latency_ms()
        ok = await self.data_integrity_ok()
        usr = await self.user_success_rate(success_window)
        return HealthSample(time.time(), err, lat, base, usr, ok)

__all__ = ["RetryConfig", "retry_call", "with_retry", "ResilientMetrics", "METRIC_DEFAULTS"]
