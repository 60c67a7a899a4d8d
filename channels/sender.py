"""
Sender Adapter — Resilience wrapper shared by every outbound gateway.

Provides:
- TokenBucketRateLimiter: async token bucket with configurable burst
- CircuitBreaker: failure-counting breaker with half-open probe
- SenderMetrics: send/fail/latency tracking per sender
- MessageSender: abstract base; validates the payload, then wraps every
  gateway call with rate limiting, the breaker and metrics

The contract of MessageSender.send is that it never raises. Every outcome,
including programming errors inside a subclass, comes back as a SendResult
whose ``retryable`` flag tells the dispatcher what to do next. Retrying is
the dispatcher's job; the sender makes exactly one attempt.
"""
from __future__ import annotations

import abc
import asyncio
import time
import structlog
from collections import deque
from typing import Any, Optional

from job_queue.errors import ValidationError
from models.schemas import MessageType, SendResult, parse_payload

logger = structlog.get_logger()


# ══════════════════════════════════════════════════════════════
#  TOKEN BUCKET RATE LIMITER
# ══════════════════════════════════════════════════════════════

class TokenBucketRateLimiter:
    """
    Async token bucket rate limiter.
    Tokens refill at `rate` per second up to `burst` capacity.
    """

    def __init__(self, rate: float = 10.0, burst: int = 10):
        self.rate = rate
        self.burst = burst
        self._tokens: float = float(burst)
        self._last_refill = time.monotonic()
        self._lock = asyncio.Lock()

    async def acquire(self, timeout: float = 5.0) -> bool:
        deadline = time.monotonic() + timeout
        while True:
            async with self._lock:
                self._refill()
                if self._tokens >= 1.0:
                    self._tokens -= 1.0
                    return True
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return False
            await asyncio.sleep(min(1.0 / max(self.rate, 0.001), remaining))

    def _refill(self):
        now = time.monotonic()
        elapsed = now - self._last_refill
        self._tokens = min(self.burst, self._tokens + elapsed * self.rate)
        self._last_refill = now


# ══════════════════════════════════════════════════════════════
#  CIRCUIT BREAKER
# ══════════════════════════════════════════════════════════════

class CircuitBreaker:
    """
    Failure-counting circuit breaker.

    closed → open (after threshold consecutive failures) → half_open (after
    recovery_timeout) → closed (on success) or open (on failure).
    Only retryable gateway failures count; a 4xx says nothing about the
    gateway's health.
    """

    def __init__(self, failure_threshold: int = 5, recovery_timeout: float = 30.0):
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self._state = "closed"
        self._failure_count = 0
        self._opened_at: float = 0.0
        self._total_failures = 0
        self._total_successes = 0

    @property
    def state(self) -> str:
        if self._state == "open" and time.monotonic() - self._opened_at >= self.recovery_timeout:
            return "half_open"
        return self._state

    @property
    def is_open(self) -> bool:
        return self.state == "open"

    def record_failure(self):
        self._total_failures += 1
        self._failure_count += 1
        if self.state == "half_open" or self._failure_count >= self.failure_threshold:
            self._open()

    def record_success(self):
        self._total_successes += 1
        self._state = "closed"
        self._failure_count = 0

    def _open(self):
        self._state = "open"
        self._opened_at = time.monotonic()
        logger.warning("circuit_opened", failures=self._failure_count)

    def reset(self):
        self._state = "closed"
        self._failure_count = 0

    @property
    def stats(self) -> dict[str, Any]:
        return {
            "state": self.state,
            "failure_count": self._failure_count,
            "total_failures": self._total_failures,
            "total_successes": self._total_successes,
        }


# ══════════════════════════════════════════════════════════════
#  SENDER METRICS
# ══════════════════════════════════════════════════════════════

class SenderMetrics:
    """Tracks send, failure and latency figures for one sender."""

    def __init__(self, name: str):
        self.name = name
        self.messages_sent: int = 0
        self.messages_failed: int = 0
        self.retryable_failures: int = 0
        self._latencies: deque[float] = deque(maxlen=500)
        self._errors: deque[str] = deque(maxlen=10)

    def record_send(self, latency_ms: float = 0.0):
        self.messages_sent += 1
        if latency_ms > 0:
            self._latencies.append(latency_ms)

    def record_failure(self, error: str = "", retryable: bool = False):
        self.messages_failed += 1
        if retryable:
            self.retryable_failures += 1
        if error:
            self._errors.append(error)

    @property
    def avg_latency_ms(self) -> float:
        return sum(self._latencies) / len(self._latencies) if self._latencies else 0.0

    @property
    def failure_rate(self) -> float:
        total = self.messages_sent + self.messages_failed
        return self.messages_failed / total if total > 0 else 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "sender": self.name,
            "sent": self.messages_sent,
            "failed": self.messages_failed,
            "retryable_failures": self.retryable_failures,
            "avg_latency_ms": round(self.avg_latency_ms, 1),
            "failure_rate": round(self.failure_rate, 4),
            "recent_errors": list(self._errors),
        }


# ══════════════════════════════════════════════════════════════
#  MESSAGE SENDER — Abstract Base
# ══════════════════════════════════════════════════════════════

class MessageSender(abc.ABC):
    """
    Base class for outbound gateways.

    Subclasses implement ``_do_send`` for an already validated payload model
    and may raise; the base class turns everything into a SendResult.
    """

    name: str = "sender"

    def __init__(self, rate_per_second: float = 0, burst: int = 10,
                 failure_threshold: int = 5, recovery_timeout: float = 30.0,
                 rate_limit_timeout: float = 10.0):
        self._breaker = CircuitBreaker(failure_threshold, recovery_timeout)
        self._rate_limiter: Optional[TokenBucketRateLimiter] = (
            TokenBucketRateLimiter(rate=rate_per_second, burst=burst) if rate_per_second > 0 else None
        )
        self._rate_limit_timeout = rate_limit_timeout
        self._metrics = SenderMetrics(self.name)

    @abc.abstractmethod
    async def _do_send(self, message_type: MessageType, payload: Any) -> SendResult:
        ...

    async def send(self, message_type: MessageType | str, payload: dict[str, Any]) -> SendResult:
        try:
            model = parse_payload(message_type, payload)
            message_type = MessageType(message_type)
        except ValidationError as e:
            self._metrics.record_failure(str(e), retryable=False)
            return SendResult.failure(str(e), retryable=False)

        if self._rate_limiter and not await self._rate_limiter.acquire(timeout=self._rate_limit_timeout):
            self._metrics.record_failure("rate_limited", retryable=True)
            return SendResult.failure("rate limited", retryable=True)

        if self._breaker.is_open:
            self._metrics.record_failure("circuit_open", retryable=True)
            return SendResult.failure("circuit open", retryable=True)

        start = time.monotonic()
        try:
            result = await self._do_send(message_type, model)
        except Exception as e:
            logger.exception("sender_unexpected_error", sender=self.name,
                             message_type=message_type.value)
            result = SendResult.failure(f"{type(e).__name__}: {e}", retryable=True)
        latency = (time.monotonic() - start) * 1000

        if result.ok:
            self._breaker.record_success()
            self._metrics.record_send(latency)
        else:
            if result.retryable:
                self._breaker.record_failure()
            self._metrics.record_failure(result.error or "", retryable=result.retryable)
        return result

    async def health_check(self) -> dict[str, Any]:
        return {
            "sender": self.name,
            "circuit_breaker": self._breaker.stats,
            "metrics": self._metrics.to_dict(),
        }

    @property
    def metrics(self) -> SenderMetrics:
        return self._metrics

    async def close(self) -> None:
        pass
