from chorus_core.safety import CircuitBreaker, backoff_delays


def test_circuit_breaker_trips_and_cools_down(monkeypatch):
    base_time = 1000.0
    monkeypatch.setattr("chorus_core.safety.time.time", lambda: base_time)
    breaker = CircuitBreaker("test", threshold=2, window_seconds=10.0, cooldown_seconds=5.0)

    assert breaker.allow()
    breaker.record_failure("first")
    assert breaker.allow()
    breaker.record_failure("second")
    assert not breaker.allow()
    assert breaker.status() == (True, "second")

    # Move past cooldown; breaker should recover
    monkeypatch.setattr("chorus_core.safety.time.time", lambda: base_time + 6.0)
    assert breaker.allow()
    assert breaker.status() == (False, "")


def test_failures_outside_window_do_not_trip():
    now = [0.0]
    breaker = CircuitBreaker("windowed", threshold=2, window_seconds=10.0, cooldown_seconds=5.0, clock=lambda: now[0])

    breaker.record_failure("old")
    now[0] = 11.0
    breaker.record_failure("new")
    assert breaker.allow()
    breaker.record_success()
    assert len(breaker.failures) == 1


def test_backoff_delays_double_and_cap():
    assert backoff_delays(5.0, 4) == [5.0, 10.0, 20.0, 40.0]
    assert backoff_delays(100.0, 3, cap=150.0) == [100.0, 150.0, 150.0]
    assert backoff_delays(1.0, 0) == []
