"""Per (vendor, api type) circuit breakers for outbound agent calls.

A breaker opens when the error rate over its rolling window reaches the
threshold, once at least ``volume_threshold`` calls have been observed. After
``reset_timeout`` it lets exactly one trial call through (half-open); the trial
closes or re-opens it.
"""
from __future__ import annotations
import logging
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Any, TypeVar, Optional
from prometheus_client import Counter, Histogram, Gauge
from erp_sync.infrastructure.structured_logging import log_event

T = TypeVar('T')

logger = logging.getLogger(__name__)


class CircuitState(Enum):
    CLOSED = "closed"      # Normal operation
    OPEN = "open"          # Failing fast
    HALF_OPEN = "half_open"  # One trial call allowed


@dataclass
class CircuitConfig:
    error_threshold: float = 0.5     # error rate that opens the circuit
    volume_threshold: int = 5        # calls observed before the rate is evaluated
    reset_timeout: float = 60.0      # seconds open before the half-open trial call
    timeout: float = 30.0            # per-call timeout, enforced by the caller's client
    rolling_window: float = 10.0     # seconds of history used for the error rate
    ignored_exceptions: tuple = field(default_factory=tuple)  # raised through, counted as success


# Metrics
CIRCUIT_BREAKER_STATE = Gauge('circuit_breaker_state_info', 'Circuit breaker current state', ['breaker', 'state'])
CIRCUIT_BREAKER_CALLS = Counter('circuit_breaker_calls_total', 'Total calls through circuit breaker', ['breaker', 'result'])
CIRCUIT_BREAKER_DURATION = Histogram('circuit_breaker_call_duration_seconds', 'Call duration', ['breaker'])


class CircuitBreakerOpenError(Exception):
    retryable = True

    def __init__(self, name: str):
        super().__init__(f"Circuit breaker open for {name}")
        self.name = name


TransitionListener = Callable[["CircuitBreaker", CircuitState, CircuitState], None]


class CircuitBreaker:
    def __init__(self, name: str, config: Optional[CircuitConfig] = None,
                 clock: Callable[[], float] = time.monotonic,
                 on_transition: Optional[TransitionListener] = None):
        self.name = name
        self.config = config or CircuitConfig()
        self.state = CircuitState.CLOSED
        self.opened_at: Optional[float] = None
        self.trial_in_flight = False
        self._window: deque[tuple[float, bool]] = deque()
        self._clock = clock
        self._on_transition = on_transition
        self._lock = threading.RLock()
        self._unannounced: list[tuple[CircuitState, CircuitState]] = []
        self._update_state_metric()

    def call(self, func: Callable[..., T], *args, **kwargs) -> T:
        """Execute ``func`` with breaker protection; the call itself runs outside the lock."""
        with self._lock:
            admitted = self._admit()
        self._announce()
        if not admitted:
            CIRCUIT_BREAKER_CALLS.labels(breaker=self.name, result='rejected').inc()
            raise CircuitBreakerOpenError(self.name)
        start = time.time()
        try:
            result = func(*args, **kwargs)
        except self.config.ignored_exceptions:
            self._record(True)
            CIRCUIT_BREAKER_CALLS.labels(breaker=self.name, result='ignored').inc()
            raise
        except Exception:
            self._record(False)
            CIRCUIT_BREAKER_CALLS.labels(breaker=self.name, result='failure').inc()
            raise
        finally:
            CIRCUIT_BREAKER_DURATION.labels(breaker=self.name).observe(time.time() - start)
        self._record(True)
        CIRCUIT_BREAKER_CALLS.labels(breaker=self.name, result='success').inc()
        return result

    def _admit(self) -> bool:
        if self.state == CircuitState.CLOSED:
            return True
        if self.state == CircuitState.OPEN:
            if self.opened_at is not None and self._clock() - self.opened_at >= self.config.reset_timeout:
                self._transition(CircuitState.HALF_OPEN)
            else:
                return False
        # HALF_OPEN
        if self.trial_in_flight:
            return False
        self.trial_in_flight = True
        return True

    def _record(self, ok: bool) -> None:
        with self._lock:
            self._apply_result(ok)
        self._announce()

    def _apply_result(self, ok: bool) -> None:
        now = self._clock()
        if self.state == CircuitState.HALF_OPEN:
            self.trial_in_flight = False
            if ok:
                self._window.clear()
                self._transition(CircuitState.CLOSED)
            else:
                self._trip(now)
            return
        if self.state == CircuitState.OPEN:
            return  # late result from a call admitted before the trip
        self._window.append((now, ok))
        self._prune(now)
        total = len(self._window)
        if total >= self.config.volume_threshold:
            failures = sum(1 for _, good in self._window if not good)
            if failures / total >= self.config.error_threshold:
                self._trip(now)

    def _prune(self, now: float) -> None:
        horizon = now - self.config.rolling_window
        while self._window and self._window[0][0] < horizon:
            self._window.popleft()

    def _trip(self, now: float) -> None:
        self.opened_at = now
        self._window.clear()
        self._transition(CircuitState.OPEN)

    def _transition(self, new_state: CircuitState) -> None:
        old = self.state
        if old == new_state:
            return
        self.state = new_state
        if new_state != CircuitState.HALF_OPEN:
            self.trial_in_flight = False
        self._update_state_metric()
        vendor_id, _, api_type = self.name.partition(":")
        level = logging.WARNING if new_state == CircuitState.OPEN else logging.INFO
        log_event(level, "circuit_breaker_transition", breaker=self.name, vendor_id=vendor_id,
                  api_type=api_type, from_state=old.value, to_state=new_state.value,
                  timestamp=datetime.now(timezone.utc).isoformat())
        if self._on_transition is not None:
            self._unannounced.append((old, new_state))

    def _announce(self) -> None:
        """Run the transition listener for queued transitions; never called with the lock held."""
        with self._lock:
            pending, self._unannounced = self._unannounced, []
        for old, new_state in pending:
            try:
                self._on_transition(self, old, new_state)
            except Exception as e:
                logger.error(f"Circuit transition listener failed for {self.name}: {e}")

    def reset(self) -> None:
        """Operator override: force the breaker closed and forget history."""
        with self._lock:
            self._window.clear()
            self.opened_at = None
            self._transition(CircuitState.CLOSED)
        self._announce()

    def status(self) -> dict:
        with self._lock:
            self._prune(self._clock())
            total = len(self._window)
            failures = sum(1 for _, good in self._window if not good)
            return {
                "name": self.name,
                "state": self.state.value,
                "calls": total,
                "failures": failures,
                "errorRate": round(failures / total, 4) if total else 0.0,
            }

    def _update_state_metric(self):
        for state in CircuitState:
            CIRCUIT_BREAKER_STATE.labels(breaker=self.name, state=state.value).set(0)
        CIRCUIT_BREAKER_STATE.labels(breaker=self.name, state=self.state.value).set(1)


class CircuitBreakerRegistry:
    """Process-local breakers keyed ``vendor:apiType``."""

    def __init__(self, config: Optional[CircuitConfig] = None, clock: Callable[[], float] = time.monotonic,
                 on_transition: Optional[TransitionListener] = None):
        self.config = config or CircuitConfig()
        self._clock = clock
        self._on_transition = on_transition
        self._breakers: dict[str, CircuitBreaker] = {}
        self._lock = threading.Lock()

    @staticmethod
    def key(vendor_id: str, api_type: str) -> str:
        return f"{vendor_id}:{api_type}"

    def get(self, vendor_id: str, api_type: str) -> CircuitBreaker:
        name = self.key(vendor_id, api_type)
        with self._lock:
            breaker = self._breakers.get(name)
            if breaker is None:
                breaker = CircuitBreaker(name, self.config, self._clock, self._on_transition)
                self._breakers[name] = breaker
            return breaker

    def find(self, vendor_id: str, api_type: str) -> CircuitBreaker | None:
        return self._breakers.get(self.key(vendor_id, api_type))

    def reset(self, vendor_id: str, api_type: str) -> bool:
        breaker = self.find(vendor_id, api_type)
        if breaker is None:
            return False
        breaker.reset()
        return True

    def reset_all(self) -> int:
        with self._lock:
            breakers = list(self._breakers.values())
        for b in breakers:
            b.reset()
        return len(breakers)

    def statuses(self) -> list[dict]:
        with self._lock:
            breakers = list(self._breakers.values())
        return [b.status() for b in breakers]
