"""Cutover health monitoring.

Samples telemetry on a fixed interval while a phase is live and classifies each tick.

Thresholds (strict):
- Error rate > 5% of requests (5 min window)          -> breach error_rate_exceeded
- Latency / baseline latency > 2.0x                     -> breach latency_degradation
- Data integrity check false                            -> breach data_integrity_failure
- User success rate < 95% (10 min window)               -> warn (monitoring continues)
"""
from __future__ import annotations
import asyncio, json, logging, time
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, AsyncIterator

from .adapters import ResilientMetrics
from .models import HealthSample

if TYPE_CHECKING:
    from .models import RolloutPhase
    from .stores import MetricsSource

logger = logging.getLogger("cutover.monitoring")

class VerdictKind(str, Enum):
    CONTINUE = "continue"; WARN = "warn"; BREACH = "breach"; HEALTHY_TIMEOUT = "healthy_timeout"

@dataclass
class HealthThresholds:
    max_error_rate: float = 0.05; max_latency_ratio: float = 2.0; min_user_success_rate: float = 0.95
    error_window: int = 300; latency_window: int = 300; success_window: int = 600

@dataclass(frozen=True, slots=True)
class Verdict:
    kind: VerdictKind
    reason: str = ""
    sample: HealthSample | None = None

    @property
    def terminal(self) -> bool:
        return self.kind in (VerdictKind.BREACH, VerdictKind.HEALTHY_TIMEOUT)

def breach(reason: str, sample: HealthSample | None = None) -> Verdict:
    return Verdict(VerdictKind.BREACH, reason, sample)

def classify(sample: HealthSample, thresholds: HealthThresholds | None = None) -> Verdict:
    """Most severe wins. Breaches are checked in order error rate, latency, integrity."""
    t = thresholds or HealthThresholds()
    if sample.error_rate > t.max_error_rate:
        return breach("error_rate_exceeded", sample)
    if sample.latency_ratio > t.max_latency_ratio:
        return breach("latency_degradation", sample)
    if not sample.data_integrity:
        return breach("data_integrity_failure", sample)
    if sample.user_success_rate < t.min_user_success_rate:
        return Verdict(VerdictKind.WARN, "user_success_rate_degraded", sample)
    return Verdict(VerdictKind.CONTINUE, "healthy", sample)

class HealthMonitor:
    """Background health sampler bound to one rollout phase."""

    def __init__(self, metrics: "MetricsSource | ResilientMetrics", thresholds: HealthThresholds | None = None):
        self.metrics = metrics if isinstance(metrics, ResilientMetrics) else ResilientMetrics(metrics)
        self.thresholds = thresholds or HealthThresholds()
        self.ticks = 0

    async def sample(self) -> HealthSample:
        t = self.thresholds
        return await self.metrics.sample(t.error_window, t.latency_window, t.success_window)

    async def evaluate_once(self) -> Verdict:
        return classify(await self.sample(), self.thresholds)

    def _log(self, phase_id: str, v: Verdict) -> None:
        s = v.sample
        payload = {"phase": phase_id, "verdict": v.kind.value, "reason": v.reason}
        if s:
            payload.update({"error_rate": round(s.error_rate, 4), "latency_ms": round(s.latency_ms, 1),
                            "latency_ratio": round(s.latency_ratio, 2), "user_success_rate": round(s.user_success_rate, 4),
                            "data_integrity": s.data_integrity})
        msg = f"Health check: {json.dumps(payload)}"
        if v.kind == VerdictKind.BREACH: logger.error(msg)
        elif v.kind == VerdictKind.WARN: logger.warning(msg)
        else: logger.info(msg)

    async def watch(self, phase: "RolloutPhase", interval: float = 30.0, max_duration: float = 1800.0) -> AsyncIterator[Verdict]:
        """Yield one verdict per tick; stop after a breach or HealthyTimeout."""
        deadline = time.monotonic() + max_duration
        logger.info(f"Monitoring {phase.phase_id} every {interval}s for up to {max_duration}s")
        while True:
            sample = await self.sample()
            self.ticks += 1
            phase.last_sample = sample
            verdict = classify(sample, self.thresholds)
            self._log(phase.phase_id, verdict)
            yield verdict
            if verdict.kind == VerdictKind.BREACH:
                return
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                break
            await asyncio.sleep(min(interval, remaining))
            if time.monotonic() >= deadline:
                break
        done = Verdict(VerdictKind.HEALTHY_TIMEOUT, "monitoring_window_elapsed", phase.last_sample)
        self._log(phase.phase_id, done)
        yield done

    async def run_until_terminal(self, phase: "RolloutPhase", interval: float, max_duration: float) -> Verdict:
        """Drain watch() and return its terminal verdict."""
        async for verdict in self.watch(phase, interval, max_duration):
            if verdict.terminal:
                return verdict
        raise RuntimeError("health monitor ended without a terminal verdict")

__all__ = ["HealthMonitor", "HealthThresholds", "Verdict", "VerdictKind", "classify", "breach"]
