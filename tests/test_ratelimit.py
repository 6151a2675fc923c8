"""Tests for the sliding-window rate limiter."""

from __future__ import annotations

import threading

from veilgate.ratelimit import RateLimiter
from tests.simulate.timing import AlwaysSweep, FakeClock, NeverSweep


def _limiter(clock: FakeClock, rng: object = None) -> RateLimiter:
    return RateLimiter(
        window_seconds=60.0,
        max_requests=10,
        clock=clock,
        rng=rng or NeverSweep(),  # type: ignore[arg-type]
    )


def test_counts_requests_in_window() -> None:
    """Each admit() returns the number of requests in the window."""
    limiter = _limiter(FakeClock())
    assert [limiter.admit("10.0.0.1") for _ in range(3)] == [1, 2, 3]


def test_ceiling_exceeded_on_eleventh_call() -> None:
    """The (ceiling + 1)-th request in one window is over the limit."""
    limiter = _limiter(FakeClock())
    counts = [limiter.admit("10.0.0.1") for _ in range(11)]
    assert not any(limiter.exceeded(c) for c in counts[:10])
    assert counts[10] == 11
    assert limiter.exceeded(counts[10])


def test_window_elapses() -> None:
    """After a full window with no calls the count starts over."""
    clock = FakeClock()
    limiter = _limiter(clock)
    for _ in range(15):
        limiter.admit("10.0.0.1")
    clock.advance(60.0)
    assert limiter.admit("10.0.0.1") == 1


def test_window_slides() -> None:
    """Only timestamps older than the window are evicted."""
    clock = FakeClock()
    limiter = _limiter(clock)
    limiter.admit("10.0.0.1")
    clock.advance(30.0)
    limiter.admit("10.0.0.1")
    clock.advance(31.0)
    assert limiter.admit("10.0.0.1") == 2


def test_identities_are_independent() -> None:
    """Requests from one IP do not count against another."""
    limiter = _limiter(FakeClock())
    for _ in range(12):
        limiter.admit("10.0.0.1")
    assert limiter.admit("10.0.0.2") == 1


def test_sweep_drops_idle_identities() -> None:
    """A sweep removes identities whose window has drained."""
    clock = FakeClock()
    limiter = _limiter(clock)
    limiter.admit("10.0.0.1")
    limiter.admit("10.0.0.2")
    clock.advance(45.0)
    limiter.admit("10.0.0.2")
    clock.advance(20.0)
    assert limiter.sweep() == 1
    assert len(limiter) == 1


def test_probabilistic_sweep_runs_from_admit() -> None:
    """admit() sweeps when the random draw falls under the probability."""
    clock = FakeClock()
    limiter = _limiter(clock, AlwaysSweep())
    for i in range(50):
        limiter.admit(f"10.0.0.{i}")
    clock.advance(120.0)
    limiter.admit("10.0.1.1")
    assert len(limiter) == 1


def test_concurrent_admits_are_all_counted() -> None:
    """Concurrent callers never lose an update."""
    limiter = _limiter(FakeClock())

    def worker() -> None:
        for _ in range(100):
            limiter.admit("10.0.0.1")

    threads = [threading.Thread(target=worker) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert limiter.admit("10.0.0.1") == 801
