import threading
import pytest
from erp_sync.infrastructure.circuit_breaker import (
    CircuitBreaker, CircuitBreakerOpenError, CircuitBreakerRegistry, CircuitConfig, CircuitState,
)
from erp_sync.sync.agent_client import AgentRequestError


class Downstream:
    def __init__(self):
        self.calls = 0
        self.fail = True

    def __call__(self):
        self.calls += 1
        if self.fail:
            raise ConnectionError("agent unreachable")
        return "ok"


def _breaker(clock, **overrides):
    config = CircuitConfig(error_threshold=0.5, volume_threshold=5, reset_timeout=60, rolling_window=10,
                           ignored_exceptions=(AgentRequestError,))
    for k, v in overrides.items():
        setattr(config, k, v)
    transitions = []
    breaker = CircuitBreaker("V1:orders", config, clock=clock.monotonic,
                             on_transition=lambda b, old, new: transitions.append((old, new)))
    return breaker, transitions


def _fail_times(breaker, downstream, n):
    for _ in range(n):
        with pytest.raises(ConnectionError):
            breaker.call(downstream)


def test_opens_after_volume_threshold_and_short_circuits(clock):
    breaker, transitions = _breaker(clock)
    downstream = Downstream()
    _fail_times(breaker, downstream, 5)
    assert breaker.state is CircuitState.OPEN
    with pytest.raises(CircuitBreakerOpenError):
        breaker.call(downstream)
    assert downstream.calls == 5
    assert transitions == [(CircuitState.CLOSED, CircuitState.OPEN)]


def test_stays_closed_below_volume_threshold(clock):
    breaker, _ = _breaker(clock)
    downstream = Downstream()
    _fail_times(breaker, downstream, 4)
    assert breaker.state is CircuitState.CLOSED


def test_old_failures_leave_the_rolling_window(clock):
    breaker, _ = _breaker(clock)
    downstream = Downstream()
    _fail_times(breaker, downstream, 4)
    clock.tick(11)
    _fail_times(breaker, downstream, 1)
    assert breaker.state is CircuitState.CLOSED


def test_half_open_trial_success_closes(clock):
    breaker, transitions = _breaker(clock)
    downstream = Downstream()
    _fail_times(breaker, downstream, 5)
    clock.tick(60)
    downstream.fail = False
    assert breaker.call(downstream) == "ok"
    assert breaker.state is CircuitState.CLOSED
    assert transitions[-2:] == [(CircuitState.OPEN, CircuitState.HALF_OPEN),
                                (CircuitState.HALF_OPEN, CircuitState.CLOSED)]


def test_half_open_trial_failure_reopens(clock):
    breaker, _ = _breaker(clock)
    downstream = Downstream()
    _fail_times(breaker, downstream, 5)
    clock.tick(60)
    _fail_times(breaker, downstream, 1)
    assert breaker.state is CircuitState.OPEN
    with pytest.raises(CircuitBreakerOpenError):
        breaker.call(downstream)
    assert downstream.calls == 6


def test_half_open_admits_a_single_trial(clock):
    breaker, _ = _breaker(clock)
    downstream = Downstream()
    _fail_times(breaker, downstream, 5)
    clock.tick(60)
    assert breaker._admit() is True
    assert breaker._admit() is False


def test_client_errors_do_not_trip(clock):
    breaker, _ = _breaker(clock)

    def rejected():
        raise AgentRequestError("bad order", status_code=422)

    for _ in range(6):
        with pytest.raises(AgentRequestError):
            breaker.call(rejected)
    assert breaker.state is CircuitState.CLOSED


def test_manual_reset(clock):
    breaker, _ = _breaker(clock)
    _fail_times(breaker, Downstream(), 5)
    breaker.reset()
    assert breaker.state is CircuitState.CLOSED
    assert breaker.status()["calls"] == 0


def test_registry_keys_breakers_per_vendor_and_api(clock):
    registry = CircuitBreakerRegistry(CircuitConfig(), clock=clock.monotonic)
    assert registry.get("V1", "orders") is registry.get("V1", "orders")
    assert registry.get("V1", "orders") is not registry.get("V1", "items")
    assert registry.reset("V2", "orders") is False
    assert registry.reset_all() == 2
    assert {s["name"] for s in registry.statuses()} == {"V1:orders", "V1:items"}


def test_transition_listener_runs_after_lock_is_released(clock):
    lock_free_from_other_thread = []

    def listener(breaker, old, new):
        def try_lock():
            acquired = breaker._lock.acquire(blocking=False)
            if acquired:
                breaker._lock.release()
            lock_free_from_other_thread.append(acquired)
        t = threading.Thread(target=try_lock)
        t.start()
        t.join()

    config = CircuitConfig(volume_threshold=5, reset_timeout=60)
    breaker = CircuitBreaker("V1:orders", config, clock=clock.monotonic, on_transition=listener)
    downstream = Downstream()
    _fail_times(breaker, downstream, 5)
    clock.tick(61)
    downstream.fail = False
    assert breaker.call(downstream) == "ok"
    breaker.reset()
    _fail_times(breaker, Downstream(), 5)
    breaker.reset()
    # open, half-open, closed, open, closed
    assert lock_free_from_other_thread == [True] * 5
