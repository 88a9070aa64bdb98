"""
Channel Adapters: shared plumbing for email, SMS and call delivery.

Provides:
- ChannelError: provider-side failure with a retryable flag
- CircuitBreaker: consecutive-failure breaker with a single half-open trial request
- ChannelMetrics: per-channel counters and recent latencies
- OutboundMessage / SendResult: what the dispatcher hands over and gets back
- ChannelAdapter: abstract base wrapping every send with breaker + metrics
- ChannelRegistry: adapter lookup, initialization, health, shutdown
"""
from __future__ import annotations

import abc
import time
import structlog
from collections import Counter, deque
from dataclasses import dataclass, field
from typing import Any, Optional

import httpx

from models.schemas import ChannelType

logger = structlog.get_logger()


class ChannelError(Exception):
    """Raised by ``_do_send`` for failures the dispatcher should record, not crash on."""

    def __init__(self, message: str, channel: str = "", retryable: bool = False):
        super().__init__(message)
        self.channel = channel
        self.retryable = retryable


# ══════════════════════════════════════════════════════════════
#  CIRCUIT BREAKER
# ══════════════════════════════════════════════════════════════

class CircuitBreaker:
    """
    Opens after ``failure_threshold`` consecutive failures.

    Once ``recovery_timeout`` seconds have passed the breaker is half open and
    lets exactly one trial request through. Its outcome closes it again or
    re-opens it for another full timeout.
    """

    def __init__(self, failure_threshold: int = 5, recovery_timeout: float = 60.0):
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self._consecutive = 0
        self._opened_at: Optional[float] = None
        self._probing = False

    @property
    def state(self) -> str:
        if self._opened_at is None:
            return "closed"
        if time.monotonic() - self._opened_at < self.recovery_timeout:
            return "open"
        return "half_open"

    @property
    def is_open(self) -> bool:
        return self.state == "open"

    def allow_request(self) -> bool:
        state = self.state
        if state == "closed":
            return True
        if state == "half_open" and not self._probing:
            self._probing = True
            return True
        return False

    def record_success(self) -> None:
        if self._opened_at is not None:
            logger.info("circuit_closed")
        self._consecutive = 0
        self._opened_at = None
        self._probing = False

    def record_failure(self) -> None:
        self._consecutive += 1
        if self._probing or self._consecutive >= self.failure_threshold:
            self._opened_at = time.monotonic()
            self._probing = False
            logger.warning("circuit_opened", consecutive_failures=self._consecutive)

    @property
    def stats(self) -> dict[str, Any]:
        return {"state": self.state, "failure_count": self._consecutive}


# ══════════════════════════════════════════════════════════════
#  METRICS
# ══════════════════════════════════════════════════════════════

class ChannelMetrics:
    """Send counters for one channel. Latency and error history are bounded."""

    def __init__(self, channel: ChannelType, window: int = 200):
        self.channel = channel
        self.sent = 0
        self.failed = 0
        self.errors: Counter[str] = Counter()
        self._latencies: deque[float] = deque(maxlen=window)

    def record(self, result: SendResult, latency_ms: float) -> None:
        self._latencies.append(latency_ms)
        if result.success:
            self.sent += 1
        else:
            self.failed += 1
            self.errors[result.error or "unknown"] += 1

    def to_dict(self) -> dict[str, Any]:
        attempts = self.sent + self.failed
        latencies = list(self._latencies)
        return {
            "channel": self.channel.value,
            "sent": self.sent,
            "failed": self.failed,
            "failure_rate": round(self.failed / attempts, 4) if attempts else 0.0,
            "avg_latency_ms": round(sum(latencies) / len(latencies), 1) if latencies else 0.0,
            "top_errors": dict(self.errors.most_common(5)),
        }


# ══════════════════════════════════════════════════════════════
#  CONTRACT
# ══════════════════════════════════════════════════════════════

@dataclass
class OutboundMessage:
    """One rendered communication. ``agent_id`` replaces content for calls."""
    destination: str
    content: str = ""
    subject: str = ""
    agent_id: Optional[str] = None
    voice_config: dict[str, Any] = field(default_factory=dict)
    variables: dict[str, Any] = field(default_factory=dict)
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class SendResult:
    success: bool
    external_id: Optional[str] = None
    error: str = ""
    retryable: bool = False
    details: dict[str, Any] = field(default_factory=dict)


def _http_failure(e: httpx.HTTPError) -> SendResult:
    if isinstance(e, httpx.HTTPStatusError):
        code = e.response.status_code
        return SendResult(success=False, error=f"HTTP {code}", retryable=code >= 500 or code == 429,
                          details={"body": e.response.text[:500]})
    # Transport level: connect errors, read timeouts
    return SendResult(success=False, error=str(e) or type(e).__name__, retryable=True)


# ══════════════════════════════════════════════════════════════
#  CHANNEL ADAPTER
# ══════════════════════════════════════════════════════════════

class ChannelAdapter(abc.ABC):
    """
    Base class for the email, SMS and call adapters.

    Subclasses implement ``initialize`` and ``_do_send``. ``send`` turns
    ChannelError and httpx errors into a failed SendResult and feeds the
    breaker and metrics. Any other exception propagates to the dispatcher,
    which puts the action back to pending.
    """

    channel_type: ChannelType

    def __init__(self):
        self._initialized = False
        self._config: dict[str, Any] = {}
        self._breaker = CircuitBreaker()
        self._metrics = ChannelMetrics(self.channel_type)

    @abc.abstractmethod
    async def initialize(self, config: dict[str, Any]) -> None:
        ...

    @abc.abstractmethod
    async def _do_send(self, message: OutboundMessage) -> SendResult:
        ...

    async def send(self, message: OutboundMessage) -> SendResult:
        if not self._breaker.allow_request():
            result = SendResult(success=False, error="circuit_open", retryable=True)
            self._metrics.record(result, 0.0)
            return result

        start = time.monotonic()
        try:
            result = await self._do_send(message)
        except ChannelError as e:
            result = SendResult(success=False, error=str(e), retryable=e.retryable)
        except httpx.HTTPError as e:
            result = _http_failure(e)
        latency = round((time.monotonic() - start) * 1000, 1)

        self._metrics.record(result, latency)
        if result.success:
            self._breaker.record_success()
        else:
            self._breaker.record_failure()
            logger.warning("channel_send_failed", channel=self.channel_type.value,
                           error=result.error, retryable=result.retryable)
        result.details.setdefault("latency_ms", latency)
        return result

    @property
    def simulated(self) -> bool:
        """No provider client configured: sends succeed without leaving the process."""
        return getattr(self, "_client", None) is None

    async def health_check(self) -> dict[str, Any]:
        return {
            "channel": self.channel_type.value,
            "initialized": self._initialized,
            "simulated": self.simulated,
            "circuit_breaker": self._breaker.stats,
            "metrics": self._metrics.to_dict(),
        }

    async def shutdown(self) -> None:
        pass


# ══════════════════════════════════════════════════════════════
#  REGISTRY
# ══════════════════════════════════════════════════════════════

class ChannelRegistry:
    def __init__(self):
        self._adapters: dict[ChannelType, ChannelAdapter] = {}

    def register(self, adapter: ChannelAdapter) -> None:
        self._adapters[adapter.channel_type] = adapter

    def get(self, channel_type: ChannelType) -> Optional[ChannelAdapter]:
        return self._adapters.get(channel_type)

    def get_available(self) -> list[ChannelType]:
        return list(self._adapters)

    async def initialize_all(self, configs: dict[str, Any]) -> None:
        """
        ``configs`` maps channel name to a ChannelConfig (or a plain credentials
        dict). A ChannelConfig with ``enabled: false`` unregisters its adapter,
        so actions for that channel fail with "no adapter" instead of being
        faked. A channel left without a provider client simulates sends and
        says so in the log.
        """
        for channel, adapter in list(self._adapters.items()):
            cfg = configs.get(channel.value) or {}
            if getattr(cfg, "enabled", True) is False:
                del self._adapters[channel]
                logger.info("channel_disabled", channel=channel.value)
                continue
            credentials = getattr(cfg, "credentials", cfg)
            try:
                await adapter.initialize(dict(credentials or {}))
            except (ChannelError, KeyError, ValueError) as e:
                logger.error("channel_init_failed", channel=channel.value, error=str(e))
            if adapter.simulated:
                logger.warning("channel_simulated", channel=channel.value)

    async def health_check_all(self) -> dict[str, Any]:
        return {channel.value: await adapter.health_check() for channel, adapter in self._adapters.items()}

    async def shutdown_all(self) -> None:
        for channel, adapter in self._adapters.items():
            try:
                await adapter.shutdown()
            except httpx.HTTPError as e:
                logger.warning("channel_shutdown_failed", channel=channel.value, error=str(e))
